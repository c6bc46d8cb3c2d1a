"""
Sandboxed Renderer

Runs untrusted drawing code in a fresh interpreter and returns a PNG
snapshot or an error string. One process per render; the process and its
working directory are gone when render() returns.

Architecture:
    code → SandboxRenderer → sketch_runner.py (child) → RenderResult
"""

from __future__ import annotations

import io
import os
import sys
import json
import time
import base64
import shutil
import logging
import secrets
import tempfile
import subprocess
from pathlib import Path
from dataclasses import dataclass, field
from typing import Optional, List, Dict, Any

from PIL import Image, UnidentifiedImageError

logger = logging.getLogger(__name__)

RUNNER_PATH = Path(__file__).resolve().parent / "sketch_runner.py"
RESULT_MARKER = "@@SKETCH_RESULT@@"
ARMED_MARKER = "@@SKETCH_ARMED@@"
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


class RendererUnavailable(RuntimeError):
    """The sandbox itself could not run (not a problem with the sketch)."""


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class RendererConfig:
    """Configuration for SandboxRenderer."""
    timeout_sec: float = 10.0
    memory_mb: int = 512
    python_executable: str = sys.executable

    @classmethod
    def from_env(cls) -> "RendererConfig":
        from config import get_render_settings
        settings = get_render_settings()
        return cls(
            timeout_sec=settings["timeout_sec"],
            memory_mb=settings["memory_mb"],
        )


@dataclass
class RenderResult:
    image_png: Optional[bytes] = None
    error: Optional[str] = None
    error_type: Optional[str] = None  # syntax | runtime | timeout
    console: List[str] = field(default_factory=list)
    duration_ms: int = 0
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.image_png is not None and not self.error

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "error": self.error,
            "error_type": self.error_type,
            "console": self.console,
            "duration_ms": self.duration_ms,
            "timed_out": self.timed_out,
            "image_base64": (
                base64.b64encode(self.image_png).decode("ascii") if self.image_png else None
            ),
        }


# ============================================================================
# Renderer
# ============================================================================

class SandboxRenderer:
    """
    Usage:
        renderer = SandboxRenderer(RendererConfig(timeout_sec=5))
        result = renderer.render(code, 512, 512, seed=42)
        if result.ok:
            Path("out.png").write_bytes(result.image_png)
    """

    def __init__(self, config: Optional[RendererConfig] = None):
        self.config = config or RendererConfig()

    def _child_env(self) -> Dict[str, str]:
        env = {"PYTHONIOENCODING": "utf-8"}
        # Windows cannot start an interpreter without these
        for key in ("SYSTEMROOT", "SystemRoot"):
            if key in os.environ:
                env[key] = os.environ[key]
        return env

    def render(self, code: str, width: int, height: int, seed: Optional[int] = None) -> RenderResult:
        timeout = self.config.timeout_sec
        nonce = secrets.token_hex(16)
        job = json.dumps({
            "code": code,
            "width": int(width),
            "height": int(height),
            "seed": seed,
            "nonce": nonce,
            "memory_mb": self.config.memory_mb,
            "cpu_sec": max(1, int(timeout) + 1),
        })

        workdir = tempfile.mkdtemp(prefix="sketch-")
        start = time.time()
        try:
            proc = subprocess.run(
                [self.config.python_executable, "-I", "-B", str(RUNNER_PATH)],
                input=job,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=timeout,
                cwd=workdir,
                env=self._child_env(),
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"[sandbox_renderer] render timed out after {timeout:.1f}s")
            return RenderResult(
                error=f"Render timed out after {timeout:.1f}s",
                error_type="timeout",
                timed_out=True,
                duration_ms=int((time.time() - start) * 1000),
            )
        except OSError as e:
            raise RendererUnavailable(f"Cannot start sandbox: {e}") from e
        finally:
            shutil.rmtree(workdir, ignore_errors=True)

        duration_ms = int((time.time() - start) * 1000)
        lines = (proc.stdout or "").splitlines()
        armed = any(ARMED_MARKER + nonce in line for line in lines)
        payload = self._parse_output(lines, nonce)
        stderr_tail = (proc.stderr or "").strip().splitlines()[-5:]

        if payload is None:
            if not armed:
                # The runner broke before any sketch code ran
                raise RendererUnavailable(
                    f"Sandbox runner failed (exit {proc.returncode}): "
                    + (" | ".join(stderr_tail) or "no output")
                )
            if proc.returncode < 0:
                error = f"Sketch process killed by signal {-proc.returncode}"
            else:
                error = f"Sketch process exited with code {proc.returncode}"
            logger.warning(f"[sandbox_renderer] {error}")
            return RenderResult(error=error, error_type="runtime", console=stderr_tail, duration_ms=duration_ms)

        console = payload.get("console")
        if not isinstance(console, list):
            console = []
        console = [str(line) for line in console]

        if not payload.get("ok"):
            logger.info(f"[sandbox_renderer] sketch failed: {payload.get('error')}")
            return RenderResult(
                error=str(payload.get("error") or "Unknown render error"),
                error_type="syntax" if payload.get("error_type") == "syntax" else "runtime",
                console=console,
                duration_ms=duration_ms,
            )

        image_png = self._decode_png(payload.get("image_base64"))
        if image_png is None:
            logger.warning("[sandbox_renderer] sketch produced an unreadable image")
            return RenderResult(
                error="Sketch produced an unreadable image",
                error_type="runtime",
                console=console,
                duration_ms=duration_ms,
            )

        logger.info(f"[sandbox_renderer] rendered {width}x{height} in {duration_ms}ms")
        return RenderResult(image_png=image_png, console=console, duration_ms=duration_ms)

    @staticmethod
    def _parse_output(lines: List[str], nonce: str) -> Optional[Dict[str, Any]]:
        """The first result line carrying this job's nonce, or None if the runner never wrote one."""
        prefix = RESULT_MARKER + nonce
        for line in lines:
            at = line.find(prefix)
            if at >= 0:
                try:
                    payload = json.loads(line[at + len(prefix):])
                except ValueError:
                    return {"ok": False, "error": "Sketch produced a garbled result"}
                if not isinstance(payload, dict):
                    return {"ok": False, "error": "Sketch produced a garbled result"}
                return payload
        return None

    @staticmethod
    def _decode_png(data: Any) -> Optional[bytes]:
        if not isinstance(data, str):
            return None
        try:
            image_png = base64.b64decode(data, validate=True)
        except ValueError:
            return None
        if not image_png.startswith(PNG_SIGNATURE):
            return None
        try:
            Image.open(io.BytesIO(image_png)).verify()
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError):
            return None
        return image_png


def create_renderer(config: Optional[RendererConfig] = None) -> SandboxRenderer:
    """Factory reading RENDER_* settings when no config is given."""
    return SandboxRenderer(config or RendererConfig.from_env())
