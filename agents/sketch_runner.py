"""
Sketch Runner - executes one drawing sketch inside a throw-away interpreter.

Launched by SandboxRenderer as `python -I -B sketch_runner.py`. Reads a JSON
job from stdin, runs the sketch against a Pillow canvas and writes to stdout:

    ARMED_MARKER<nonce>            just before the sketch code starts
    RESULT_MARKER<nonce><json>     exactly once, when the sketch is done

The nonce comes with the job, so lines the sketch writes to the real stdout
cannot pass for runner output.

Must only import the standard library and Pillow: it runs in isolated mode,
so the project's packages are not importable here.
"""

import io
import os
import sys
import json
import math
import base64
import random
import traceback
import contextlib

from PIL import Image, ImageDraw, ImageFilter, ImageFont, PngImagePlugin  # noqa: F401

RESULT_MARKER = "@@SKETCH_RESULT@@"
ARMED_MARKER = "@@SKETCH_ARMED@@"
SKETCH_FILENAME = "<sketch>"
MAX_CONSOLE_LINES = 200

# Audit events refused once the sketch starts running
_BLOCKED_PREFIXES = (
    "socket.",
    "urllib.",
    "http.",
    "ftplib.",
    "smtplib.",
    "subprocess.",
    "ctypes.",
    "os.exec",
    "os.spawn",
    "os.posix_spawn",
    "os.fork",
    "os.system",
    "os.kill",
    "os.remove",
    "os.rename",
    "os.rmdir",
    "os.mkdir",
    "os.chmod",
    "os.chown",
    "os.truncate",
    "os.symlink",
    "os.link",
    "os.putenv",
    "os.unsetenv",
    "shutil.",
    "pty.",
    "webbrowser.",
)
_WRITE_FLAGS = os.O_WRONLY | os.O_RDWR | os.O_APPEND | os.O_CREAT | os.O_TRUNC

_FONT_DIRS = (
    "/usr/share/fonts",
    "/usr/local/share/fonts",
    "/Library/Fonts",
    "/System/Library/Fonts",
    os.path.join(os.environ.get("SYSTEMROOT", "C:\\Windows"), "Fonts"),
)


def _read_roots():
    """Directories the sketch may still read from: the interpreter, its imports and fonts."""
    candidates = {sys.prefix, sys.base_prefix, sys.exec_prefix, sys.base_exec_prefix}
    candidates.update(p for p in sys.path if p)
    candidates.update(_FONT_DIRS)
    candidates.add(os.path.dirname(os.path.abspath(__file__)))

    roots = []
    for path in candidates:
        real = os.path.realpath(path)
        if os.path.dirname(real) == real:
            continue  # never the filesystem root
        roots.append(os.path.join(real, ""))
        if os.path.isfile(real):  # zipped stdlib
            roots.append(real)
    return tuple(roots)


def _readable(path, roots):
    if isinstance(path, int):
        return True
    try:
        real = os.path.realpath(os.fsdecode(path))
    except (TypeError, ValueError):
        return False
    return real.startswith(roots) or real in roots


def _install_guard(read_roots):
    armed = [False]

    def guard(event, args):
        if not armed[0]:
            return
        if event == "open":
            path = args[0] if args else None
            mode = args[1] if len(args) > 1 else None
            flags = args[2] if len(args) > 2 else 0
            if isinstance(mode, str) and any(c in mode for c in "wax+"):
                raise PermissionError("sketch may not write files")
            if mode is None and isinstance(flags, int) and flags & _WRITE_FLAGS:
                raise PermissionError("sketch may not write files")
            if not _readable(path, read_roots):
                raise PermissionError("sketch may not read files outside the Python installation")
            return
        if event.startswith(_BLOCKED_PREFIXES):
            raise PermissionError(f"operation not permitted in sketch: {event}")

    sys.addaudithook(guard)
    return armed


def _apply_limits(job):
    try:
        import resource
    except ImportError:  # not available on Windows
        return
    limits = [(resource.RLIMIT_FSIZE, 0)]
    if job.get("memory_mb"):
        limits.append((resource.RLIMIT_AS, int(job["memory_mb"]) * 1024 * 1024))
    if job.get("cpu_sec"):
        limits.append((resource.RLIMIT_CPU, int(job["cpu_sec"])))
    for which, value in limits:
        try:
            resource.setrlimit(which, (value, value))
        except (ValueError, OSError):
            pass


def _sketch_line(exc):
    if isinstance(exc, SyntaxError) and exc.filename == SKETCH_FILENAME:
        return exc.lineno
    line = None
    for frame in traceback.extract_tb(exc.__traceback__):
        if frame.filename == SKETCH_FILENAME:
            line = frame.lineno
    return line


def _describe(exc):
    message = exc.msg if isinstance(exc, SyntaxError) else str(exc)
    text = f"{type(exc).__name__}: {message}"
    line = _sketch_line(exc)
    if line:
        text += f" (line {line})"
    return text


def _writer(out, nonce):
    def emit(marker, payload=None):
        line = marker + nonce
        if payload is not None:
            line += json.dumps(payload)
        out.write(line + "\n")
        out.flush()
    return emit


def run(job, out):
    width = int(job["width"])
    height = int(job["height"])
    seed = job.get("seed")
    emit = _writer(out, str(job.pop("nonce", "")))

    image = Image.new("RGB", (width, height), "white")
    namespace = {
        "__name__": "__sketch__",
        "image": image,
        "draw": ImageDraw.Draw(image, "RGBA"),
        "width": width,
        "height": height,
        "random": random.Random(seed),
        "math": math,
        "Image": Image,
        "ImageDraw": ImageDraw,
        "ImageFilter": ImageFilter,
        "ImageFont": ImageFont,
    }

    try:
        compiled = compile(job.get("code", ""), SKETCH_FILENAME, "exec")
    except SyntaxError as e:
        emit(RESULT_MARKER, {"ok": False, "error": _describe(e), "error_type": "syntax", "console": []})
        return

    console = io.StringIO()
    _apply_limits(job)
    armed = _install_guard(_read_roots())
    emit(ARMED_MARKER)
    armed[0] = True
    try:
        with contextlib.redirect_stdout(console), contextlib.redirect_stderr(console):
            exec(compiled, namespace)
            sketch = namespace.get("sketch")
            if callable(sketch):
                sketch(namespace["draw"], width, height)
        result = namespace.get("image")
        if not isinstance(result, Image.Image):
            raise TypeError("'image' must remain a PIL Image")
        buffer = io.BytesIO()
        result.save(buffer, format="PNG")
    except BaseException as e:
        lines = console.getvalue().splitlines()[-MAX_CONSOLE_LINES:]
        emit(RESULT_MARKER, {"ok": False, "error": _describe(e), "error_type": "runtime", "console": lines})
        return

    lines = console.getvalue().splitlines()[-MAX_CONSOLE_LINES:]
    emit(RESULT_MARKER, {
        "ok": True,
        "image_base64": base64.b64encode(buffer.getvalue()).decode("ascii"),
        "console": lines,
    })


def main():
    out = sys.stdout
    job = json.loads(sys.stdin.read())
    run(job, out)


if __name__ == "__main__":
    main()
