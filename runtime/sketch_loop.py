"""
Sketch Loop - generate → render → record → improve orchestration.

One loop drives one session, strictly sequentially:
    1. Code Generator → initial code, or improved code from the previous
       attempt's code / image / render error
    2. Sandbox Renderer → PNG or error text (fixed timeout)
    3. Attempt Store → image saved, attempt appended
    4. fixed delay, stop flag re-checked, repeat

Stops on an explicit stop (in-memory flag or session marked inactive), on the
iteration cap, or on an unrecoverable generation/renderer/storage fault.
"""

from __future__ import annotations

import random
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional, Dict, Any, Callable

from models.attempt import Attempt
from models.session import Session
from agents.code_generator import GenerationError
from agents.sandbox_renderer import RendererUnavailable
from runtime.persistence.attempt_store import (
    StoreError,
    SessionInactive,
    SessionNotFound,
)

logger = logging.getLogger(__name__)

# Faults that end the loop; render errors of the sketch itself never do
FATAL_ERRORS = (GenerationError, RendererUnavailable, StoreError, OSError)


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class LoopConfig:
    """
    Configuration for the sketch loop.

    max_iterations caps the rounds of one run, not the session's total:
    restarting a session that already holds attempts runs up to the full
    cap again, continuing the index sequence.
    """
    # None or 0 runs until stopped
    max_iterations: Optional[int] = 10
    delay_sec: float = 2.0

    @classmethod
    def from_env(cls, **overrides) -> "LoopConfig":
        from config import get_loop_policies
        policies = get_loop_policies()
        policies.update({k: v for k, v in overrides.items() if v is not None})
        return cls(**policies)


class LoopState(Enum):
    """State of the sketch loop."""
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETE = "complete"
    ERROR = "error"


# ============================================================================
# Loop Status
# ============================================================================

@dataclass
class LoopStatus:
    """Current status of the sketch loop."""
    session_id: str
    state: LoopState = LoopState.IDLE

    # Progress
    iterations_completed: int = 0
    render_failures: int = 0
    current_index: Optional[int] = None

    # Timing
    started_at: Optional[datetime] = None
    last_update: Optional[datetime] = None

    # Errors
    last_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "state": self.state.value,
            "iterations_completed": self.iterations_completed,
            "render_failures": self.render_failures,
            "current_index": self.current_index,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "last_update": self.last_update.isoformat() if self.last_update else None,
            "last_error": self.last_error,
            "elapsed_sec": (
                (datetime.utcnow() - self.started_at).total_seconds()
                if self.started_at else 0
            ),
        }


# ============================================================================
# Sketch Loop
# ============================================================================

class SketchLoop:
    """
    Usage:
        loop = SketchLoop(
            session_id=session.session_id,
            store=AttemptStore(),
            generator=create_generator(),
            renderer=create_renderer(),
            config=LoopConfig(max_iterations=5, delay_sec=1.0),
        )
        result = loop.run()
        print(f"Completed: {result['iterations_completed']} rounds")
    """

    def __init__(
        self,
        session_id: str,
        store,
        generator,
        renderer,
        config: Optional[LoopConfig] = None,
    ):
        self.session_id = session_id
        self.store = store
        self.generator = generator
        self.renderer = renderer
        self.config = config or LoopConfig()

        self.status = LoopStatus(session_id=session_id)
        self._stop_event = threading.Event()

        # Event callbacks
        self._on_attempt: Optional[Callable[[Attempt], None]] = None
        self._on_error: Optional[Callable[[str], None]] = None

        logger.info(f"[sketch_loop] initialized for {session_id}")

    def on_attempt(self, callback: Callable[[Attempt], None]) -> None:
        self._on_attempt = callback

    def on_error(self, callback: Callable[[str], None]) -> None:
        self._on_error = callback

    # =========================================================================
    # Control
    # =========================================================================

    def stop(self) -> None:
        """Cooperative: takes effect between rounds, never mid-render."""
        self._stop_event.set()

    @property
    def stop_requested(self) -> bool:
        return self._stop_event.is_set()

    def _should_stop(self) -> bool:
        if self._stop_event.is_set():
            return True
        return not self.store.is_active(self.session_id)

    def _cap_reached(self) -> bool:
        cap = self.config.max_iterations
        return bool(cap) and self.status.iterations_completed >= cap

    # =========================================================================
    # Main Run Loop
    # =========================================================================

    def run(self) -> Dict[str, Any]:
        session = self.store.get_session(self.session_id)
        if session is None:
            raise SessionNotFound(self.session_id)

        self.status.state = LoopState.RUNNING
        self.status.started_at = datetime.utcnow()
        logger.info(
            f"[sketch_loop] starting session {self.session_id} "
            f"(max_iterations={self.config.max_iterations or 'unbounded'}, delay={self.config.delay_sec}s)"
        )

        try:
            while True:
                if self._should_stop():
                    self.status.state = LoopState.STOPPED
                    break
                if self._cap_reached():
                    self.status.state = LoopState.COMPLETE
                    break

                attempt = self.run_round(session)
                self.status.last_update = datetime.utcnow()
                if attempt is None:
                    # session stopped while the round was in flight
                    self.status.state = LoopState.STOPPED
                    break

                if self._cap_reached():
                    self.status.state = LoopState.COMPLETE
                    break
                self._stop_event.wait(self.config.delay_sec)

        except FATAL_ERRORS as e:
            self._fail(e)
        except Exception as e:
            self._fail(e)
            raise

        logger.info(
            f"[sketch_loop] session {self.session_id} finished: "
            f"state={self.status.state.value}, rounds={self.status.iterations_completed}"
        )
        return self.get_result()

    def _fail(self, e: Exception) -> None:
        self.status.state = LoopState.ERROR
        self.status.last_error = f"{type(e).__name__}: {e}"
        self.status.last_update = datetime.utcnow()
        logger.error(f"[sketch_loop] session {self.session_id} error: {self.status.last_error}")
        if self._on_error:
            self._on_error(self.status.last_error)

    # =========================================================================
    # One Round
    # =========================================================================

    def run_round(self, session: Session) -> Optional[Attempt]:
        """
        Generate (or improve), render, record.

        Returns the stored attempt, or None if the session was stopped
        before the attempt could be appended.
        """
        previous = self.store.latest_attempt(self.session_id)
        seed = random.randrange(2 ** 31)

        if previous is None:
            generation = self.generator.generate(session.objective, session.width, session.height)
        else:
            image_png = (
                self.store.load_image(self.session_id, previous.attempt_id)
                if previous.image_url else None
            )
            generation = self.generator.improve(
                session.objective,
                session.width,
                session.height,
                previous_code=previous.code,
                image_png=image_png,
                error=previous.error,
            )

        result = self.renderer.render(generation.code, session.width, session.height, seed=seed)

        metadata = generation.to_metadata()
        metadata.update({
            "seed": seed,
            "render_ms": result.duration_ms,
            "duration_ms": generation.duration_ms + result.duration_ms,
            "console": result.console,
            "error_type": result.error_type,
            "timed_out": result.timed_out,
        })
        attempt = Attempt(
            code=generation.code,
            critique=generation.critique,
            error=result.error,
            metadata=metadata,
        )

        if result.ok:
            attempt.image_url = self.store.save_image(
                self.session_id, attempt.attempt_id, result.image_png
            )

        try:
            self.store.append_attempt(self.session_id, attempt)
        except SessionInactive:
            if attempt.image_url:
                self.store.delete_image(self.session_id, attempt.attempt_id)
            logger.info(f"[sketch_loop] session {self.session_id} stopped mid-round; attempt discarded")
            return None

        self.status.iterations_completed += 1
        self.status.current_index = attempt.index
        if not result.ok:
            self.status.render_failures += 1
            logger.info(f"[sketch_loop] attempt #{attempt.index} render failed: {result.error}")
        else:
            logger.info(f"[sketch_loop] attempt #{attempt.index} rendered in {result.duration_ms}ms")

        if self._on_attempt:
            self._on_attempt(attempt)
        return attempt

    # =========================================================================
    # Results
    # =========================================================================

    def get_status(self) -> Dict[str, Any]:
        return self.status.to_dict()

    def get_result(self) -> Dict[str, Any]:
        return self.status.to_dict()
