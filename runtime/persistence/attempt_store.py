"""
Attempt Store - flat JSON persistence for sessions, attempts and images.

Layout under the data directory:
    sessions/<session_id>/session.json
    sessions/<session_id>/attempts.json        (JSON array ordered by index)
    sessions/<session_id>/images/<attempt_id>.png

Every mutation is read-whole / modify / write-whole, serialized per session
with a lock. Files are replaced atomically. Writers in other processes
sharing the same directory are not coordinated.
"""

from __future__ import annotations

import os
import json
import logging
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional, Iterable, Any

from models.attempt import Attempt, clamp_score, normalize_tags
from models.session import Session

logger = logging.getLogger(__name__)

_UNSET = object()


class StoreError(RuntimeError):
    """Storage failure (unreadable or unwritable data)."""


class SessionNotFound(KeyError):
    pass


class AttemptNotFound(KeyError):
    pass


class SessionInactive(RuntimeError):
    """Raised when appending to a stopped session."""


class AttemptStore:
    def __init__(self, root: Optional[str] = None):
        if root is None:
            from config import get_data_dir
            root = get_data_dir()
        self.root = Path(root)
        self.sessions_dir = self.root / "sessions"
        self.sessions_dir.mkdir(parents=True, exist_ok=True)

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

        logger.info(f"[attempt_store] using {self.root.resolve()}")

    # -------------------------------------------------
    # Internal
    # -------------------------------------------------

    def _lock(self, session_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(session_id)
            if lock is None:
                lock = self._locks[session_id] = threading.Lock()
            return lock

    def _session_dir(self, session_id: str) -> Path:
        # ids are used as directory names
        if not session_id or "/" in session_id or "\\" in session_id or session_id in (".", ".."):
            raise SessionNotFound(session_id)
        return self.sessions_dir / session_id

    def _read_json(self, path: Path, default: Any) -> Any:
        if not path.exists():
            return default
        try:
            with path.open("r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise StoreError(f"Cannot read {path}: {e}") from e

    def _write_json(self, path: Path, data: Any) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(tmp, path)
        except OSError as e:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise StoreError(f"Cannot write {path}: {e}") from e

    def _load_session(self, session_id: str) -> Session:
        data = self._read_json(self._session_dir(session_id) / "session.json", None)
        if data is None:
            raise SessionNotFound(session_id)
        return Session.from_dict(data)

    def _load_attempts(self, session_id: str) -> List[Attempt]:
        raw = self._read_json(self._session_dir(session_id) / "attempts.json", [])
        return [Attempt.from_dict(a) for a in raw]

    def _save_attempts(self, session_id: str, attempts: List[Attempt]) -> None:
        self._write_json(
            self._session_dir(session_id) / "attempts.json",
            [a.to_dict() for a in attempts],
        )

    # -------------------------------------------------
    # Sessions
    # -------------------------------------------------

    def create_session(self, objective: str, width: int, height: int, max_iterations: Optional[int] = None) -> Session:
        session = Session(
            objective=objective,
            width=int(width),
            height=int(height),
            max_iterations=max_iterations,
        )
        with self._lock(session.session_id):
            self._write_json(self._session_dir(session.session_id) / "session.json", session.to_dict())
            self._write_json(self._session_dir(session.session_id) / "attempts.json", [])
        logger.info(f"[attempt_store] created session {session.session_id}")
        return session

    def get_session(self, session_id: str) -> Optional[Session]:
        try:
            return self._load_session(session_id)
        except SessionNotFound:
            return None

    def list_sessions(self) -> List[Session]:
        sessions = []
        for path in self.sessions_dir.glob("*/session.json"):
            session = self.get_session(path.parent.name)
            if session:
                sessions.append(session)
        sessions.sort(key=lambda s: s.created_at, reverse=True)
        return sessions

    def set_active(self, session_id: str, active: bool) -> Session:
        with self._lock(session_id):
            session = self._load_session(session_id)
            session.active = bool(active)
            self._write_json(self._session_dir(session_id) / "session.json", session.to_dict())
        logger.info(f"[attempt_store] session {session_id} active={session.active}")
        return session

    def is_active(self, session_id: str) -> bool:
        session = self.get_session(session_id)
        return bool(session and session.active)

    # -------------------------------------------------
    # Attempts
    # -------------------------------------------------

    def append_attempt(self, session_id: str, attempt: Attempt) -> Attempt:
        """Append to the session; the store owns the index."""
        with self._lock(session_id):
            session = self._load_session(session_id)
            if not session.active:
                raise SessionInactive(f"Session {session_id} is stopped")

            attempts = self._load_attempts(session_id)
            if any(a.attempt_id == attempt.attempt_id for a in attempts):
                raise StoreError(f"Attempt {attempt.attempt_id} already exists")

            attempt.session_id = session_id
            attempt.index = attempts[-1].index + 1 if attempts else 0
            attempts.append(attempt)
            self._save_attempts(session_id, attempts)

        logger.info(f"[attempt_store] session {session_id} attempt #{attempt.index} appended")
        return attempt

    def get_attempts(self, session_id: str) -> List[Attempt]:
        self._load_session(session_id)
        return self._load_attempts(session_id)

    def get_attempt(self, session_id: str, attempt_id: str) -> Attempt:
        for attempt in self.get_attempts(session_id):
            if attempt.attempt_id == attempt_id:
                return attempt
        raise AttemptNotFound(attempt_id)

    def latest_attempt(self, session_id: str) -> Optional[Attempt]:
        attempts = self.get_attempts(session_id)
        return attempts[-1] if attempts else None

    def update_attempt(
        self,
        session_id: str,
        attempt_id: str,
        score: Any = _UNSET,
        tags: Any = _UNSET,
        critique: Any = _UNSET,
        image_url: Any = _UNSET,
    ) -> Attempt:
        """Update score/tags/critique/image_url in place. Omitted fields are untouched."""
        with self._lock(session_id):
            self._load_session(session_id)
            attempts = self._load_attempts(session_id)
            for attempt in attempts:
                if attempt.attempt_id == attempt_id:
                    break
            else:
                raise AttemptNotFound(attempt_id)

            if score is not _UNSET:
                attempt.score = clamp_score(score)
            if tags is not _UNSET:
                attempt.tags = normalize_tags(tags)
            if critique is not _UNSET:
                attempt.critique = critique
            if image_url is not _UNSET:
                attempt.image_url = image_url
            self._save_attempts(session_id, attempts)
        return attempt

    def query_attempts(
        self,
        session_id: str,
        min_score: Optional[float] = None,
        max_score: Optional[float] = None,
        tags: Optional[Iterable[str]] = None,
    ) -> List[Attempt]:
        """
        Filter a session's attempts.

        Score bounds are inclusive; unscored attempts never match a bound.
        Tags match by intersection: every requested tag must be present.
        """
        wanted = set(normalize_tags(tags))
        result = []
        for attempt in self.get_attempts(session_id):
            if min_score is not None or max_score is not None:
                if attempt.score is None:
                    continue
                if min_score is not None and attempt.score < min_score:
                    continue
                if max_score is not None and attempt.score > max_score:
                    continue
            if wanted and not wanted.issubset(attempt.tags):
                continue
            result.append(attempt)
        return result

    # -------------------------------------------------
    # Images
    # -------------------------------------------------

    @staticmethod
    def image_url(session_id: str, attempt_id: str) -> str:
        return f"/sessions/{session_id}/attempts/{attempt_id}/image"

    def image_path(self, session_id: str, attempt_id: str) -> Path:
        if not attempt_id or "/" in attempt_id or "\\" in attempt_id or attempt_id in (".", ".."):
            raise AttemptNotFound(attempt_id)
        return self._session_dir(session_id) / "images" / f"{attempt_id}.png"

    def save_image(self, session_id: str, attempt_id: str, png_bytes: bytes) -> str:
        self._load_session(session_id)
        path = self.image_path(session_id, attempt_id)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=str(path.parent), suffix=".tmp")
        except OSError as e:
            raise StoreError(f"Cannot write image {path}: {e}") from e
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(png_bytes)
            os.replace(tmp, path)
        except OSError as e:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise StoreError(f"Cannot write image {path}: {e}") from e
        return self.image_url(session_id, attempt_id)

    def load_image(self, session_id: str, attempt_id: str) -> Optional[bytes]:
        path = self.image_path(session_id, attempt_id)
        if not path.exists():
            return None
        return path.read_bytes()

    def delete_image(self, session_id: str, attempt_id: str) -> None:
        path = self.image_path(session_id, attempt_id)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
