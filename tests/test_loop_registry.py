"""
Tests for the background Loop Registry.
"""

import threading

import pytest

from agents.code_generator import StubGenerator
from runtime.loop_registry import LoopRegistry, LoopAlreadyRunning
from runtime.persistence.attempt_store import SessionInactive, SessionNotFound


class BlockingGenerator(StubGenerator):
    """Holds the first round until released."""

    def __init__(self):
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def generate(self, objective, width, height):
        self.entered.set()
        self.release.wait(5)
        return super().generate(objective, width, height)


@pytest.fixture
def make_registry(store, fake_renderer_cls, monkeypatch):
    monkeypatch.setenv("LOOP_DELAY_SEC", "0")
    created = []

    def factory(generator=None):
        registry = LoopRegistry(
            store,
            generator_factory=lambda: generator or StubGenerator(),
            renderer_factory=fake_renderer_cls,
        )
        created.append(registry)
        return registry

    yield factory
    for registry in created:
        registry.stop_all()


def test_start_runs_to_completion(store, session, make_registry):
    registry = make_registry()
    registry.start(session.session_id, max_iterations=2)

    assert registry.join(session.session_id, timeout=5)
    assert registry.status(session.session_id)["state"] == "complete"
    assert len(store.get_attempts(session.session_id)) == 2
    assert registry.is_running(session.session_id) is False


def test_session_cap_used_by_default(store, make_registry):
    session = store.create_session("three rounds", 16, 16, max_iterations=3)
    registry = make_registry()
    registry.start(session.session_id)

    assert registry.join(session.session_id, timeout=5)
    assert len(store.get_attempts(session.session_id)) == 3


def test_second_start_refused(session, make_registry):
    generator = BlockingGenerator()
    registry = make_registry(generator)
    registry.start(session.session_id, max_iterations=1)
    assert generator.entered.wait(5)

    with pytest.raises(LoopAlreadyRunning):
        registry.start(session.session_id)

    generator.release.set()
    assert registry.join(session.session_id, timeout=5)


def test_restart_after_completion(store, session, make_registry):
    registry = make_registry()
    registry.start(session.session_id, max_iterations=1)
    assert registry.join(session.session_id, timeout=5)

    registry.start(session.session_id, max_iterations=1)
    assert registry.join(session.session_id, timeout=5)
    assert [a.index for a in store.get_attempts(session.session_id)] == [0, 1]


def test_stopped_session_refused(store, session, make_registry):
    store.set_active(session.session_id, False)
    with pytest.raises(SessionInactive):
        make_registry().start(session.session_id)


def test_unknown_session(make_registry):
    with pytest.raises(SessionNotFound):
        make_registry().start("missing")


def test_stop_signals_running_loop(store, session, make_registry):
    generator = BlockingGenerator()
    registry = make_registry(generator)
    registry.start(session.session_id, max_iterations=0)
    assert generator.entered.wait(5)

    assert registry.stop(session.session_id) is True
    generator.release.set()

    assert registry.join(session.session_id, timeout=5)
    assert registry.status(session.session_id)["state"] == "stopped"
    assert len(store.get_attempts(session.session_id)) == 1


def test_stop_without_loop(session, make_registry):
    registry = make_registry()
    assert registry.stop(session.session_id) is False
    assert registry.status(session.session_id) is None
