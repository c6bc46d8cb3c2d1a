"""
Loop Registry - one background loop per session, at most.

Each loop runs on its own daemon thread. Starting a second loop for a session
whose loop is still alive is refused, which keeps a single writer per session
inside this process.
"""

from __future__ import annotations

import logging
import threading
from typing import Dict, Optional, Any, Callable

from runtime.sketch_loop import SketchLoop, LoopConfig
from runtime.persistence.attempt_store import SessionInactive, SessionNotFound

logger = logging.getLogger(__name__)


class LoopAlreadyRunning(RuntimeError):
    pass


class LoopRegistry:
    def __init__(
        self,
        store,
        generator_factory: Optional[Callable[[], Any]] = None,
        renderer_factory: Optional[Callable[[], Any]] = None,
    ):
        if generator_factory is None:
            from agents.code_generator import create_generator
            generator_factory = create_generator
        if renderer_factory is None:
            from agents.sandbox_renderer import create_renderer
            renderer_factory = create_renderer

        self.store = store
        self.generator_factory = generator_factory
        self.renderer_factory = renderer_factory

        self._loops: Dict[str, SketchLoop] = {}
        self._threads: Dict[str, threading.Thread] = {}
        self._lock = threading.Lock()

    def _alive(self, session_id: str) -> bool:
        thread = self._threads.get(session_id)
        return bool(thread and thread.is_alive())

    def is_running(self, session_id: str) -> bool:
        with self._lock:
            return self._alive(session_id)

    def start(
        self,
        session_id: str,
        max_iterations: Optional[int] = None,
        delay_sec: Optional[float] = None,
    ) -> SketchLoop:
        with self._lock:
            if self._alive(session_id):
                raise LoopAlreadyRunning(f"Loop already running for session {session_id}")

            session = self.store.get_session(session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if not session.active:
                raise SessionInactive(f"Session {session_id} is stopped")

            if max_iterations is None:
                max_iterations = session.max_iterations
            config = LoopConfig.from_env(max_iterations=max_iterations, delay_sec=delay_sec)

            loop = SketchLoop(
                session_id=session_id,
                store=self.store,
                generator=self.generator_factory(),
                renderer=self.renderer_factory(),
                config=config,
            )
            thread = threading.Thread(
                target=self._run,
                args=(loop,),
                name=f"sketch-loop-{session_id[:8]}",
                daemon=True,
            )
            self._loops[session_id] = loop
            self._threads[session_id] = thread
            thread.start()

        logger.info(f"[loop_registry] started loop for {session_id}")
        return loop

    def _run(self, loop: SketchLoop) -> None:
        try:
            loop.run()
        except Exception:
            logger.exception(f"[loop_registry] loop for {loop.session_id} crashed")

    def get(self, session_id: str) -> Optional[SketchLoop]:
        with self._lock:
            return self._loops.get(session_id)

    def status(self, session_id: str) -> Optional[Dict[str, Any]]:
        loop = self.get(session_id)
        return loop.get_status() if loop else None

    def stop(self, session_id: str) -> bool:
        """Signal the session's loop to stop. Returns False if none is running."""
        with self._lock:
            loop = self._loops.get(session_id)
            running = self._alive(session_id)
        if loop is None or not running:
            return False
        loop.stop()
        logger.info(f"[loop_registry] stop requested for {session_id}")
        return True

    def join(self, session_id: str, timeout: Optional[float] = None) -> bool:
        """Wait for the session's loop thread; True once it has exited."""
        with self._lock:
            thread = self._threads.get(session_id)
        if thread is None:
            return True
        thread.join(timeout)
        return not thread.is_alive()

    def stop_all(self, timeout: float = 5.0) -> None:
        with self._lock:
            loops = list(self._loops.values())
        for loop in loops:
            loop.stop()
        for loop in loops:
            self.join(loop.session_id, timeout)
