"""
Tests for the foreground command-line runner.
"""

import pytest

from runtime import run_sketch_loop
from runtime.persistence.attempt_store import AttemptStore


@pytest.fixture(autouse=True)
def offline(monkeypatch):
    monkeypatch.setenv("GENERATOR_BACKEND", "stub")
    monkeypatch.setenv("LOOP_DELAY_SEC", "0")


def test_new_session_runs(tmp_path, capsys):
    code = run_sketch_loop.main([
        "a small red ball", "--width", "32", "--height", "32",
        "--iterations", "2", "--data-dir", str(tmp_path),
    ])

    assert code == 0
    out = capsys.readouterr().out
    assert "#0 image=" in out
    assert "finished: complete after 2 rounds" in out

    session = AttemptStore(str(tmp_path)).list_sessions()[0]
    assert session.objective == "a small red ball"


def test_resume_session(tmp_path):
    store = AttemptStore(str(tmp_path))
    session = store.create_session("a kite", 24, 24)

    code = run_sketch_loop.main([
        "--session", session.session_id, "--iterations", "1", "--data-dir", str(tmp_path),
    ])

    assert code == 0
    assert len(store.get_attempts(session.session_id)) == 1


def test_stopped_session_refused(tmp_path):
    store = AttemptStore(str(tmp_path))
    session = store.create_session("a kite", 24, 24)
    store.set_active(session.session_id, False)

    assert run_sketch_loop.main(["--session", session.session_id, "--data-dir", str(tmp_path)]) == 1


def test_unknown_session(tmp_path):
    assert run_sketch_loop.main(["--session", "nope", "--data-dir", str(tmp_path)]) == 1
