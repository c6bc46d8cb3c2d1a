"""
Central configuration for SketchLoop.
All production values come from environment variables with sensible defaults.
"""

import os


def _env_bool(key: str, default: bool = False) -> bool:
    val = os.getenv(key, "").lower()
    if val in ("true", "1", "yes"):
        return True
    if val in ("false", "0", "no"):
        return False
    return default


def _env_float(key: str, default: float) -> float:
    try:
        return float(os.getenv(key, str(default)))
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    try:
        return int(os.getenv(key, str(default)))
    except ValueError:
        return default


# ---------------------------------------------------------------------------
# Paths & Logging
# ---------------------------------------------------------------------------
# On Vercel/Fly, /tmp is the only writable location (ephemeral)
_use_tmp = os.getenv("VERCEL") or os.getenv("FLY_APP_NAME")
_default_data_dir = "/tmp/sketchloop" if _use_tmp else "./data"


def get_data_dir() -> str:
    return os.getenv("DATA_DIR", _default_data_dir)


LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()


# ---------------------------------------------------------------------------
# Generation service
# ---------------------------------------------------------------------------
def get_generator_settings() -> dict:
    """Settings for the code generation backend (read at call time)."""
    return {
        "backend": os.getenv("GENERATOR_BACKEND", "gemini").lower(),
        "gemini_model": os.getenv("GEMINI_MODEL", "gemini-2.0-flash"),
        "fallback_enabled": _env_bool("GENERATOR_FALLBACK_ENABLED", False),
        "ollama_base_url": os.getenv("OLLAMA_BASE_URL", "http://localhost:11434"),
        "ollama_model": os.getenv("OLLAMA_MODEL", "llava"),
        "timeout_sec": _env_float("GENERATION_TIMEOUT_SEC", 60.0),
    }


# ---------------------------------------------------------------------------
# Renderer
# ---------------------------------------------------------------------------
def get_render_settings() -> dict:
    return {
        "timeout_sec": _env_float("RENDER_TIMEOUT_SEC", 10.0),
        "memory_mb": _env_int("RENDER_MEMORY_MB", 512),
    }


# ---------------------------------------------------------------------------
# Loop
# ---------------------------------------------------------------------------
def get_loop_policies() -> dict:
    """Defaults for new loops; max_iterations of 0 means unbounded."""
    return {
        "max_iterations": _env_int("LOOP_MAX_ITERATIONS", 10),
        "delay_sec": _env_float("LOOP_DELAY_SEC", 2.0),
    }


DEFAULT_CANVAS_WIDTH = _env_int("DEFAULT_CANVAS_WIDTH", 512)
DEFAULT_CANVAS_HEIGHT = _env_int("DEFAULT_CANVAS_HEIGHT", 512)
MAX_CANVAS_SIDE = _env_int("MAX_CANVAS_SIDE", 2048)
