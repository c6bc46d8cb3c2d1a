import io
import threading

import pytest
from PIL import Image

from agents.sandbox_renderer import RenderResult
from runtime.persistence.attempt_store import AttemptStore


def png_bytes(width=8, height=8, color=(200, 30, 30)) -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeRenderer:
    """Renderer double: returns queued results, then a plain PNG forever."""

    def __init__(self, results=None, on_render=None):
        self.results = list(results or [])
        self.on_render = on_render
        self.calls = []
        self._lock = threading.Lock()

    def render(self, code, width, height, seed=None):
        with self._lock:
            self.calls.append({"code": code, "width": width, "height": height, "seed": seed})
            result = self.results.pop(0) if self.results else None
        if self.on_render:
            self.on_render(code)
        if isinstance(result, Exception):
            raise result
        return result or RenderResult(image_png=png_bytes(width, height), duration_ms=5)


@pytest.fixture
def store(tmp_path):
    return AttemptStore(str(tmp_path / "data"))


@pytest.fixture
def session(store):
    return store.create_session("a red circle on cream paper", 64, 48)


@pytest.fixture
def make_png():
    return png_bytes


@pytest.fixture
def fake_renderer_cls():
    return FakeRenderer
