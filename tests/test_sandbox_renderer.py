"""
Test Suite for the Sandboxed Renderer.

These spawn real sandbox processes (Pillow required).
"""

import io
import time
import base64

import pytest
from PIL import Image

from agents import sandbox_renderer
from agents.sandbox_renderer import (
    SandboxRenderer,
    RendererConfig,
    RendererUnavailable,
    RenderResult,
)


@pytest.fixture
def renderer():
    return SandboxRenderer(RendererConfig(timeout_sec=10.0))


def _open(result):
    return Image.open(io.BytesIO(result.image_png))


class TestRenderResult:

    def test_ok_requires_image_and_no_error(self):
        assert RenderResult(image_png=b"png").ok
        assert not RenderResult(error="boom").ok
        assert not RenderResult(image_png=b"png", error="boom").ok

    def test_to_dict_encodes_image(self):
        data = RenderResult(image_png=b"abc").to_dict()
        assert data["ok"] is True
        assert data["image_base64"] == "YWJj"


class TestSuccessfulRenders:

    def test_draws_on_canvas(self, renderer):
        code = "draw.rectangle([0, 0, width, height], fill=(255, 0, 0))\n"
        result = renderer.render(code, 64, 48)

        assert result.ok, result.error
        img = _open(result)
        assert img.size == (64, 48)
        assert img.convert("RGB").getpixel((32, 24)) == (255, 0, 0)

    def test_blank_canvas_is_white(self, renderer):
        result = renderer.render("pass\n", 16, 16)
        assert result.ok
        assert _open(result).convert("RGB").getpixel((8, 8)) == (255, 255, 255)

    def test_sketch_function_called(self, renderer):
        code = (
            "def sketch(draw, width, height):\n"
            "    draw.rectangle([0, 0, width, height], fill=(0, 0, 255))\n"
        )
        result = renderer.render(code, 20, 20)
        assert _open(result).convert("RGB").getpixel((10, 10)) == (0, 0, 255)

    def test_image_may_be_reassigned(self, renderer):
        code = "image = Image.new('RGB', (width, height), (0, 128, 0))\n"
        result = renderer.render(code, 10, 10)
        assert _open(result).convert("RGB").getpixel((5, 5)) == (0, 128, 0)

    def test_seeded_random_is_deterministic(self, renderer):
        code = (
            "for _ in range(50):\n"
            "    x, y = random.randint(0, width), random.randint(0, height)\n"
            "    draw.point((x, y), fill=(0, 0, 0))\n"
        )
        a = renderer.render(code, 32, 32, seed=7)
        b = renderer.render(code, 32, 32, seed=7)
        assert a.image_png == b.image_png

    def test_console_captured(self, renderer):
        result = renderer.render("print('hello')\nprint('world')\n", 8, 8)
        assert result.ok
        assert result.console == ["hello", "world"]


class TestFailedRenders:

    def test_syntax_error(self, renderer):
        result = renderer.render("a = 1\nb = = 2\n", 8, 8)

        assert not result.ok
        assert result.image_png is None
        assert result.error_type == "syntax"
        assert result.error.startswith("SyntaxError")
        assert "(line 2)" in result.error

    def test_runtime_error_reports_line(self, renderer):
        result = renderer.render("a = 1\nb = 2\nc = a / 0\n", 8, 8)

        assert result.error_type == "runtime"
        assert result.error.startswith("ZeroDivisionError")
        assert "(line 3)" in result.error

    def test_console_kept_on_failure(self, renderer):
        result = renderer.render("print('before')\nraise ValueError('nope')\n", 8, 8)
        assert result.error == "ValueError: nope (line 2)"
        assert result.console == ["before"]

    def test_image_must_stay_an_image(self, renderer):
        result = renderer.render("image = 42\n", 8, 8)
        assert not result.ok
        assert "TypeError" in result.error

    def test_sys_exit_is_an_error(self, renderer):
        result = renderer.render("import sys\nsys.exit(3)\n", 8, 8)
        assert not result.ok
        assert result.error.startswith("SystemExit")

    def test_base_exception_is_a_sketch_error(self, renderer):
        result = renderer.render("raise GeneratorExit('x')\n", 8, 8)
        assert result.error == "GeneratorExit: x (line 1)"
        assert result.error_type == "runtime"

    def test_keyboard_interrupt_is_a_sketch_error(self, renderer):
        result = renderer.render("a = 1\nraise KeyboardInterrupt\n", 8, 8)
        assert result.error.startswith("KeyboardInterrupt")
        assert result.error_type == "runtime"

    def test_hard_exit_is_a_sketch_error(self, renderer):
        result = renderer.render("import os\nos._exit(3)\n", 8, 8)
        assert result.error == "Sketch process exited with code 3"
        assert result.error_type == "runtime"


class TestTimeout:

    def test_infinite_loop_times_out(self):
        renderer = SandboxRenderer(RendererConfig(timeout_sec=1.0))
        start = time.time()
        result = renderer.render("while True:\n    pass\n", 8, 8)

        assert time.time() - start < 10
        assert result.timed_out is True
        assert result.error_type == "timeout"
        assert result.error == "Render timed out after 1.0s"
        assert result.image_png is None


class TestIsolation:

    def test_network_blocked(self, renderer):
        result = renderer.render("import socket\nsocket.socket()\n", 8, 8)
        assert not result.ok
        assert result.error.startswith("PermissionError")

    def test_file_write_blocked(self, renderer):
        result = renderer.render("open('leak.txt', 'w').write('x')\n", 8, 8)
        assert not result.ok
        assert result.error.startswith("PermissionError")

    def test_subprocess_blocked(self, renderer):
        result = renderer.render("import subprocess\nsubprocess.run(['echo', 'hi'])\n", 8, 8)
        assert not result.ok
        assert result.error.startswith("PermissionError")

    def test_no_state_between_renders(self, renderer):
        renderer.render("import builtins\nbuiltins.leaked = 1\n", 8, 8)
        result = renderer.render("import builtins\nprint(hasattr(builtins, 'leaked'))\n", 8, 8)
        assert result.console == ["False"]

    def test_environment_not_inherited(self, renderer, monkeypatch):
        monkeypatch.setenv("GEMINI_API_KEY", "secret-value")
        result = renderer.render("import os\nprint(os.environ.get('GEMINI_API_KEY'))\n", 8, 8)
        assert result.console == ["None"]


class TestHostFiles:

    def test_host_files_unreadable(self, renderer, tmp_path):
        secret = tmp_path / "secret.env"
        secret.write_text("GEMINI_API_KEY=secret-value\n")

        result = renderer.render(f"print(open({str(secret)!r}).read())\n", 8, 8)

        assert result.error.startswith("PermissionError")
        assert "secret-value" not in " ".join(result.console)

    def test_stdlib_still_importable(self, renderer):
        result = renderer.render("import colorsys\nprint(colorsys.rgb_to_hsv(1.0, 0.0, 0.0))\n", 8, 8)
        assert result.ok, result.error
        assert result.console == ["(0.0, 1.0, 1.0)"]


class TestResultChannel:

    def test_forged_result_line_ignored(self, renderer):
        code = (
            "import os, sys\n"
            "sys.__stdout__.write('@@SKETCH_RESULT@@{\"ok\": true}\\n')\n"
            "sys.__stdout__.flush()\n"
            "os._exit(0)\n"
        )
        result = renderer.render(code, 8, 8)

        assert not result.ok
        assert result.error_type == "runtime"
        assert result.error == "Sketch process exited with code 0"

    def test_stray_stdout_does_not_hide_result(self, renderer):
        code = "import sys\nsys.__stdout__.write('no newline here')\n"
        result = renderer.render(code, 8, 8)
        assert result.ok, result.error

    def test_garbled_payload_is_a_render_error(self):
        payload = SandboxRenderer._parse_output(["@@SKETCH_RESULT@@abc{not json"], "abc")
        assert payload["ok"] is False

    def test_result_without_nonce_ignored(self):
        assert SandboxRenderer._parse_output(['@@SKETCH_RESULT@@{"ok": true}'], "abc") is None

    def test_image_must_be_a_real_png(self, make_png):
        assert SandboxRenderer._decode_png(base64.b64encode(b"not an image").decode("ascii")) is None
        assert SandboxRenderer._decode_png("%%%") is None
        assert SandboxRenderer._decode_png(None) is None
        png = make_png()
        assert SandboxRenderer._decode_png(base64.b64encode(png).decode("ascii")) == png


class TestUnavailable:

    def test_missing_interpreter(self):
        renderer = SandboxRenderer(RendererConfig(python_executable="/nonexistent/python3"))
        with pytest.raises(RendererUnavailable):
            renderer.render("pass\n", 8, 8)

    def test_runner_failing_before_sketch(self, tmp_path, monkeypatch):
        broken = tmp_path / "runner.py"
        broken.write_text("raise RuntimeError('runner is broken')\n")
        monkeypatch.setattr(sandbox_renderer, "RUNNER_PATH", broken)

        with pytest.raises(RendererUnavailable) as info:
            SandboxRenderer(RendererConfig()).render("pass\n", 8, 8)
        assert "runner is broken" in str(info.value)
