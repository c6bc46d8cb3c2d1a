# models/attempt.py

from dataclasses import dataclass, field
from typing import Dict, Any, Optional, List, Iterable
from datetime import datetime
import uuid

SCORE_MIN = 0.0
SCORE_MAX = 100.0


def clamp_score(score: Optional[float]) -> Optional[float]:
    """Clamp a score into [0, 100]. None clears the score."""
    if score is None:
        return None
    value = float(score)
    if value != value:  # NaN
        raise ValueError("score must be a number")
    return max(SCORE_MIN, min(SCORE_MAX, value))


def normalize_tags(tags: Optional[Iterable[str]]) -> List[str]:
    """Lower-case, trim, drop empties, de-duplicate. Returned sorted."""
    if not tags:
        return []
    if isinstance(tags, str):
        tags = [tags]
    cleaned = {str(t).strip().lower() for t in tags}
    cleaned.discard("")
    return sorted(cleaned)


@dataclass
class Attempt:
    code: str
    attempt_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    session_id: Optional[str] = None
    index: Optional[int] = None
    critique: Optional[str] = None
    image_url: Optional[str] = None
    score: Optional[float] = None
    tags: List[str] = field(default_factory=list)
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=datetime.utcnow)

    def __post_init__(self):
        self.score = clamp_score(self.score)
        self.tags = normalize_tags(self.tags)

    @property
    def succeeded(self) -> bool:
        return bool(self.image_url) and not self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempt_id": self.attempt_id,
            "session_id": self.session_id,
            "index": self.index,
            "code": self.code,
            "critique": self.critique,
            "image_url": self.image_url,
            "score": self.score,
            "tags": list(self.tags),
            "error": self.error,
            "metadata": dict(self.metadata),
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Attempt":
        created = data.get("created_at")
        return cls(
            attempt_id=data["attempt_id"],
            session_id=data.get("session_id"),
            index=data.get("index"),
            code=data.get("code", ""),
            critique=data.get("critique"),
            image_url=data.get("image_url"),
            score=data.get("score"),
            tags=data.get("tags", []),
            error=data.get("error"),
            metadata=data.get("metadata") or {},
            created_at=datetime.fromisoformat(created) if created else datetime.utcnow(),
        )
