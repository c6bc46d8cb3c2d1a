# models/session.py

from dataclasses import dataclass, field
from typing import Dict, Any, Optional
from datetime import datetime
import uuid


@dataclass
class Session:
    """A drawing objective plus the canvas it is drawn on."""
    objective: str
    width: int
    height: int
    session_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    active: bool = True
    max_iterations: Optional[int] = None
    created_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "objective": self.objective,
            "width": self.width,
            "height": self.height,
            "active": self.active,
            "max_iterations": self.max_iterations,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Session":
        created = data.get("created_at")
        return cls(
            session_id=data["session_id"],
            objective=data.get("objective", ""),
            width=int(data.get("width", 0)),
            height=int(data.get("height", 0)),
            active=bool(data.get("active", True)),
            max_iterations=data.get("max_iterations"),
            created_at=datetime.fromisoformat(created) if created else datetime.utcnow(),
        )
