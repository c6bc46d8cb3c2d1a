"""
Code Generator Agent

Asks a vision-capable language model for drawing code, and for improved
code after looking at the previous render.

Backends:
    gemini  - Google Gemini via google-genai (default)
    ollama  - local Ollama vision model (llava) over HTTP
    stub    - deterministic offline generator for local runs and tests
"""

from __future__ import annotations

import os
import re
import json
import time
import base64
import logging
from dataclasses import dataclass, field
from typing import Optional, Dict, Any, Tuple

logger = logging.getLogger(__name__)


class GenerationError(RuntimeError):
    """The generation service failed or returned nothing usable."""


# ============================================================================
# Configuration
# ============================================================================

@dataclass
class GeneratorConfig:
    backend: str = "gemini"
    gemini_model: str = "gemini-2.0-flash"

    # Hand a Gemini 429 RESOURCE_EXHAUSTED to Ollama once
    fallback_enabled: bool = False
    ollama_base_url: str = "http://localhost:11434"
    ollama_model: str = "llava"

    timeout_sec: float = 60.0

    @classmethod
    def from_env(cls) -> "GeneratorConfig":
        from config import get_generator_settings
        return cls(**get_generator_settings())


@dataclass
class Generation:
    code: str
    critique: Optional[str] = None
    model: str = ""
    prompt_tokens: Optional[int] = None
    output_tokens: Optional[int] = None
    duration_ms: int = 0
    raw_response: str = field(default="", repr=False)

    def to_metadata(self) -> Dict[str, Any]:
        return {
            "model": self.model,
            "prompt_tokens": self.prompt_tokens,
            "output_tokens": self.output_tokens,
            "generation_ms": self.duration_ms,
        }


# ============================================================================
# Prompts (shared by every backend so parsing stays uniform)
# ============================================================================

SKETCH_API = """The sketch is Python 3 code run against a Pillow canvas. These names are predefined:
- image: a {width}x{height} RGB PIL.Image, white background
- draw: PIL.ImageDraw.Draw(image, "RGBA") (colors may carry alpha)
- width, height: canvas size in pixels
- random: a seeded random.Random instance (use it instead of importing random)
- math, Image, ImageDraw, ImageFilter, ImageFont
You may optionally define sketch(draw, width, height); it is called after the code runs.
You may reassign `image` (for example image = image.filter(...)), but it must stay a PIL Image.
The sketch cannot access files, the network or subprocesses."""

GENERATE_PROMPT = """You are a generative artist writing code for a drawing sketch.

OBJECTIVE:
{objective}

{sketch_api}

Return ONLY the complete sketch code in a single ```python code block."""

IMPROVE_PROMPT = """You are a generative artist improving a drawing sketch.

OBJECTIVE:
{objective}

{sketch_api}

PREVIOUS CODE:
```python
{previous_code}
```

{render_feedback}

Look at the attached render (if any) and critique it against the objective:
what works, what is missing, what looks wrong. Then write an improved version.

Return ONLY valid JSON in this exact format:
{{
    "critique": "<what to change and why, 1-5 sentences>",
    "code": "<the complete improved sketch code>"
}}"""


def _render_feedback(image_png: Optional[bytes], error: Optional[str]) -> str:
    if error:
        return (
            "THE PREVIOUS CODE FAILED TO RENDER:\n"
            f"{error}\n"
            "Fix this error first."
        )
    if image_png:
        return "The previous code rendered successfully. Its output image is attached."
    return "No render of the previous code is available."


# ============================================================================
# Response parsing
# ============================================================================

_FENCE_RE = re.compile(r"```([a-zA-Z0-9_+-]*)[ \t]*\n(.*?)```", re.DOTALL)


def extract_code(text: str) -> str:
    """Pull sketch code out of a model response (fenced block or bare text)."""
    if not text:
        return ""
    blocks = _FENCE_RE.findall(text)
    if blocks:
        python_blocks = [body for lang, body in blocks if lang.lower() in ("python", "py", "")]
        chosen = python_blocks or [body for _, body in blocks]
        return max(chosen, key=len).strip()
    return text.strip()


def parse_improvement(text: str) -> Tuple[Optional[str], str]:
    """Return (critique, code) from an improve response."""
    if not text:
        return None, ""

    candidates = [body for lang, body in _FENCE_RE.findall(text) if lang.lower() in ("json", "")]
    start, end = text.find("{"), text.rfind("}")
    if start >= 0 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            data = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(data, dict) and data.get("code"):
            critique = data.get("critique")
            return (str(critique).strip() if critique else None), extract_code(str(data["code"]))

    # Free-form answer: prose then a code block
    code = extract_code(text)
    fence = text.find("```")
    critique = text[:fence].strip() if fence > 0 else None
    return critique or None, code


# ============================================================================
# Base generator
# ============================================================================

class CodeGenerator:
    """
    Backends implement _complete(prompt, image_png) ->
    (text, prompt_tokens, output_tokens, model), where model names whichever
    backend actually answered.

    Usage:
        generator = create_generator()
        first = generator.generate("a lighthouse at dusk", 512, 512)
        better = generator.improve("a lighthouse at dusk", 512, 512,
                                   previous_code=first.code, image_png=png, error=None)
    """

    model_name = "unknown"

    def _complete(
        self, prompt: str, image_png: Optional[bytes]
    ) -> Tuple[str, Optional[int], Optional[int], str]:
        raise NotImplementedError

    def generate(self, objective: str, width: int, height: int) -> Generation:
        prompt = GENERATE_PROMPT.format(
            objective=objective,
            sketch_api=SKETCH_API.format(width=width, height=height),
        )
        start = time.time()
        text, prompt_tokens, output_tokens, model = self._complete(prompt, None)
        code = extract_code(text)
        if not code:
            raise GenerationError(f"{model} returned no code")
        return Generation(
            code=code,
            model=model,
            prompt_tokens=prompt_tokens,
            output_tokens=output_tokens,
            duration_ms=int((time.time() - start) * 1000),
            raw_response=text,
        )

    def improve(
        self,
        objective: str,
        width: int,
        height: int,
        previous_code: str,
        image_png: Optional[bytes] = None,
        error: Optional[str] = None,
    ) -> Generation:
        prompt = IMPROVE_PROMPT.format(
            objective=objective,
            sketch_api=SKETCH_API.format(width=width, height=height),
            previous_code=previous_code,
            render_feedback=_render_feedback(image_png, error),
        )
        start = time.time()
        text, prompt_tokens, output_tokens, model = self._complete(prompt, None if error else image_png)
        critique, code = parse_improvement(text)
        if not code:
            raise GenerationError(f"{model} returned no code")
        return Generation(
            code=code,
            critique=critique,
            model=model,
            prompt_tokens=prompt_tokens,
            output_tokens=output_tokens,
            duration_ms=int((time.time() - start) * 1000),
            raw_response=text,
        )


# ============================================================================
# Ollama
# ============================================================================

class OllamaGenerator(CodeGenerator):
    def __init__(self, config: GeneratorConfig):
        self.config = config
        self.model_name = f"ollama/{config.ollama_model}"

    def _complete(self, prompt, image_png):
        import requests

        body: Dict[str, Any] = {
            "model": self.config.ollama_model,
            "prompt": prompt,
            "stream": False,
        }
        if image_png:
            body["images"] = [base64.b64encode(image_png).decode("ascii")]

        url = f"{self.config.ollama_base_url.rstrip('/')}/api/generate"
        try:
            resp = requests.post(url, json=body, timeout=self.config.timeout_sec)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise GenerationError(f"Ollama request failed: {e}") from e

        text = data.get("response") or ""
        if not text.strip():
            raise GenerationError("Ollama returned an empty response")
        logger.info(f"[code_generator] ollama {self.config.ollama_model} responded ({len(text)} chars)")
        return text, data.get("prompt_eval_count"), data.get("eval_count"), self.model_name


# ============================================================================
# Gemini
# ============================================================================

class GeminiGenerator(CodeGenerator):
    def __init__(self, config: GeneratorConfig, fallback: Optional[CodeGenerator] = None, client=None):
        self.config = config
        self.model_name = config.gemini_model
        self.fallback = fallback
        self.client = client
        if self.client is None:
            self._init_client()

    def _init_client(self) -> None:
        from google import genai
        api_key = os.getenv("GEMINI_API_KEY")
        if api_key:
            self.client = genai.Client(api_key=api_key)
            logger.info(f"[code_generator] gemini initialized with {self.config.gemini_model}")
        else:
            logger.warning("[code_generator] GEMINI_API_KEY not set")

    @staticmethod
    def _is_rate_limited(e: Exception) -> bool:
        code = getattr(e, "code", None)
        if code is None:
            resp = getattr(e, "response", None)
            code = getattr(resp, "status_code", None) if resp is not None else None
        text = (str(e) + " " + repr(e)).upper()
        return code == 429 or "RESOURCE_EXHAUSTED" in text or "429" in text

    @staticmethod
    def _extract_text(response) -> str:
        try:
            return response.text or ""
        except (AttributeError, ValueError, KeyError, IndexError, TypeError):
            pass
        try:
            parts = response.candidates[0].content.parts
            return "".join(getattr(p, "text", "") or "" for p in parts)
        except (AttributeError, IndexError, TypeError):
            return ""

    def _complete(self, prompt, image_png):
        if self.client is None:
            raise GenerationError("Gemini client unavailable (GEMINI_API_KEY not set)")

        parts: list = [{"text": prompt}]
        if image_png:
            parts.append({"inline_data": {"mime_type": "image/png", "data": image_png}})

        try:
            response = self.client.models.generate_content(
                model=self.config.gemini_model,
                contents=[{"role": "user", "parts": parts}],
            )
        except Exception as e:
            if self.fallback is not None and self._is_rate_limited(e):
                logger.warning("[code_generator] gemini 429/RESOURCE_EXHAUSTED, handing round to fallback")
                return self.fallback._complete(prompt, image_png)
            raise GenerationError(f"Gemini request failed: {e}") from e

        text = self._extract_text(response)
        if not text.strip():
            raise GenerationError("Gemini returned empty or blocked content")

        usage = getattr(response, "usage_metadata", None)
        prompt_tokens = getattr(usage, "prompt_token_count", None) if usage else None
        output_tokens = getattr(usage, "candidates_token_count", None) if usage else None
        logger.info(
            f"[code_generator] gemini responded: "
            f"prompt_tokens={prompt_tokens}, output_tokens={output_tokens}"
        )
        return text, prompt_tokens, output_tokens, self.model_name


# ============================================================================
# Stub
# ============================================================================

STUB_SKETCH = """cx, cy = width // 2, height // 2
r = min(width, height) // 4
draw.rectangle([0, 0, width, height], fill=(240, 236, 226))
draw.ellipse([cx - r, cy - r, cx + r, cy + r], fill=(220, 90, 60), outline=(40, 40, 40), width=3)
"""


class StubGenerator(CodeGenerator):
    """Offline generator: a fixed sketch, then one extra shape per round."""

    model_name = "stub"

    def __init__(self, config: Optional[GeneratorConfig] = None):
        self.config = config

    def _complete(self, prompt, image_png):
        if "PREVIOUS CODE" not in prompt:
            return f"```python\n{STUB_SKETCH}```", len(prompt.split()), 0, self.model_name
        if "FAILED TO RENDER" in prompt:
            critique = "The previous sketch crashed; starting again from a known-good sketch."
            code = STUB_SKETCH
        else:
            previous = prompt.split("```python\n", 2)[-1].split("```", 1)[0]
            n = previous.count("draw.line")
            critique = f"Composition is sparse; adding stroke {n + 1}."
            code = previous.rstrip("\n") + (
                f"\ndraw.line([0, {10 + 12 * n}, width, {10 + 12 * n}], fill=(40, 40, 40), width=2)\n"
            )
        return json.dumps({"critique": critique, "code": code}), len(prompt.split()), 0, self.model_name


# ============================================================================
# Factory
# ============================================================================

GENERATOR_BACKENDS = {
    "gemini": GeminiGenerator,
    "ollama": OllamaGenerator,
    "stub": StubGenerator,
}


def create_generator(config: Optional[GeneratorConfig] = None) -> CodeGenerator:
    config = config or GeneratorConfig.from_env()
    if config.backend not in GENERATOR_BACKENDS:
        raise RuntimeError(f"Unknown generator backend '{config.backend}'")

    if config.backend == "gemini":
        fallback = OllamaGenerator(config) if config.fallback_enabled else None
        return GeminiGenerator(config, fallback=fallback)
    return GENERATOR_BACKENDS[config.backend](config)
