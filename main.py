import io
import os
import base64
import logging
from pathlib import Path
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field
from dotenv import load_dotenv

# Load .env from project root (works regardless of cwd when uvicorn --reload runs)
env_path = Path(__file__).resolve().parent / ".env"
load_dotenv(env_path)

from config import (
    LOG_LEVEL,
    DEFAULT_CANVAS_WIDTH,
    DEFAULT_CANVAS_HEIGHT,
    MAX_CANVAS_SIDE,
)
from models.attempt import Attempt
from agents.code_generator import GenerationError, create_generator
from agents.sandbox_renderer import RendererUnavailable, create_renderer
from runtime.loop_registry import LoopRegistry, LoopAlreadyRunning
from runtime.persistence.attempt_store import (
    AttemptStore,
    AttemptNotFound,
    SessionInactive,
    SessionNotFound,
)

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
)
logger = logging.getLogger(__name__)

# DO NOT initialize heavy objects at import time
store = None
registry = None

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
MAX_IMAGE_BYTES = 20 * 1024 * 1024

app = FastAPI(title="SketchLoop")


def get_store() -> AttemptStore:
    global store
    if store is None:
        store = AttemptStore()
    return store


def get_registry() -> LoopRegistry:
    global registry
    if registry is None:
        registry = LoopRegistry(get_store())
    return registry


@app.on_event("startup")
async def startup_event():
    get_registry()
    logger.info(f"[main] store ready at {get_store().root}, generator={os.getenv('GENERATOR_BACKEND', 'gemini')}")


@app.on_event("shutdown")
async def shutdown_event():
    if registry is not None:
        registry.stop_all()


@app.get("/health")
async def health():
    """Minimal health check - no deps."""
    return {"status": "ok", "service": "sketchloop"}


# -----------------------------------------
# Models
# -----------------------------------------
class CreateSessionRequest(BaseModel):
    objective: str = Field(min_length=1)
    width: int = Field(default=DEFAULT_CANVAS_WIDTH, gt=0, le=MAX_CANVAS_SIDE)
    height: int = Field(default=DEFAULT_CANVAS_HEIGHT, gt=0, le=MAX_CANVAS_SIDE)
    max_iterations: Optional[int] = Field(default=None, ge=0)
    autostart: bool = True


class StartLoopRequest(BaseModel):
    max_iterations: Optional[int] = Field(default=None, ge=0)
    delay_sec: Optional[float] = Field(default=None, ge=0)


class CreateAttemptRequest(BaseModel):
    code: str
    critique: Optional[str] = None
    score: Optional[float] = Field(default=None, allow_inf_nan=False)
    tags: List[str] = Field(default_factory=list)
    error: Optional[str] = None
    metadata: dict = Field(default_factory=dict)


class PatchAttemptRequest(BaseModel):
    score: Optional[float] = Field(default=None, allow_inf_nan=False)
    tags: Optional[List[str]] = None
    critique: Optional[str] = None


class GenerateRequest(BaseModel):
    objective: str = Field(min_length=1)
    width: int = Field(default=DEFAULT_CANVAS_WIDTH, gt=0, le=MAX_CANVAS_SIDE)
    height: int = Field(default=DEFAULT_CANVAS_HEIGHT, gt=0, le=MAX_CANVAS_SIDE)


class ImproveRequest(GenerateRequest):
    previous_code: str
    image_base64: Optional[str] = None
    error: Optional[str] = None


class RenderRequest(BaseModel):
    code: str
    width: int = Field(default=DEFAULT_CANVAS_WIDTH, gt=0, le=MAX_CANVAS_SIDE)
    height: int = Field(default=DEFAULT_CANVAS_HEIGHT, gt=0, le=MAX_CANVAS_SIDE)
    seed: Optional[int] = None


def _session_or_404(session_id: str):
    session = get_store().get_session(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return session


def _session_payload(session) -> dict:
    data = session.to_dict()
    data["loop"] = get_registry().status(session.session_id)
    return data


# -----------------------------------------
# Sessions
# -----------------------------------------
@app.post("/sessions")
def create_session(req: CreateSessionRequest):
    session = get_store().create_session(
        objective=req.objective,
        width=req.width,
        height=req.height,
        max_iterations=req.max_iterations,
    )
    if req.autostart:
        get_registry().start(session.session_id)
    return _session_payload(session)


@app.get("/sessions")
def list_sessions():
    return {"sessions": [_session_payload(s) for s in get_store().list_sessions()]}


@app.get("/sessions/{session_id}")
def get_session(session_id: str):
    return _session_payload(_session_or_404(session_id))


@app.post("/sessions/{session_id}/start")
def start_session(session_id: str, req: Optional[StartLoopRequest] = None):
    _session_or_404(session_id)
    req = req or StartLoopRequest()
    try:
        loop = get_registry().start(
            session_id,
            max_iterations=req.max_iterations,
            delay_sec=req.delay_sec,
        )
    except LoopAlreadyRunning as e:
        raise HTTPException(status_code=409, detail=str(e))
    except SessionInactive as e:
        raise HTTPException(status_code=409, detail=str(e))
    return loop.get_status()


@app.post("/sessions/{session_id}/stop")
def stop_session(session_id: str):
    _session_or_404(session_id)
    session = get_store().set_active(session_id, False)
    signalled = get_registry().stop(session_id)
    data = _session_payload(session)
    data["loop_signalled"] = signalled
    return data


@app.get("/sessions/{session_id}/status")
def session_status(session_id: str):
    session = _session_or_404(session_id)
    status = get_registry().status(session_id)
    if status is None:
        status = {"session_id": session_id, "state": "idle"}
    status["active"] = session.active
    return status


# -----------------------------------------
# Attempts
# -----------------------------------------
@app.get("/sessions/{session_id}/attempts")
def query_attempts(
    session_id: str,
    min_score: Optional[float] = None,
    max_score: Optional[float] = None,
    tags: Optional[str] = None,
):
    _session_or_404(session_id)
    tag_list = tags.split(",") if tags else None
    attempts = get_store().query_attempts(
        session_id,
        min_score=min_score,
        max_score=max_score,
        tags=tag_list,
    )
    return {"attempts": [a.to_dict() for a in attempts]}


@app.post("/sessions/{session_id}/attempts")
def create_attempt(session_id: str, req: CreateAttemptRequest):
    _session_or_404(session_id)
    try:
        attempt = Attempt(
            code=req.code,
            critique=req.critique,
            score=req.score,
            tags=req.tags,
            error=req.error,
            metadata=req.metadata,
        )
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    try:
        get_store().append_attempt(session_id, attempt)
    except SessionInactive as e:
        raise HTTPException(status_code=409, detail=str(e))
    return attempt.to_dict()


@app.patch("/sessions/{session_id}/attempts/{attempt_id}")
def patch_attempt(session_id: str, attempt_id: str, req: PatchAttemptRequest):
    _session_or_404(session_id)
    # only fields the client actually sent
    fields = req.model_dump(exclude_unset=True)
    try:
        attempt = get_store().update_attempt(session_id, attempt_id, **fields)
    except AttemptNotFound:
        raise HTTPException(status_code=404, detail="Attempt not found")
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))
    return attempt.to_dict()


@app.put("/sessions/{session_id}/attempts/{attempt_id}/image")
async def upload_image(session_id: str, attempt_id: str, request: Request):
    _session_or_404(session_id)
    body = await request.body()
    if not body.startswith(PNG_SIGNATURE):
        raise HTTPException(status_code=415, detail="Body must be a PNG image")
    if len(body) > MAX_IMAGE_BYTES:
        raise HTTPException(status_code=413, detail="Image too large")

    from PIL import Image, UnidentifiedImageError
    try:
        Image.open(io.BytesIO(body)).verify()
    except (UnidentifiedImageError, OSError, SyntaxError) as e:
        raise HTTPException(status_code=415, detail=f"Unreadable PNG: {e}")

    s = get_store()
    try:
        attempt = s.get_attempt(session_id, attempt_id)
    except AttemptNotFound:
        raise HTTPException(status_code=404, detail="Attempt not found")
    if attempt.error:
        raise HTTPException(status_code=409, detail="Failed renders carry no image")

    url = s.save_image(session_id, attempt_id, body)
    attempt = s.update_attempt(session_id, attempt_id, image_url=url)
    return attempt.to_dict()


@app.get("/sessions/{session_id}/attempts/{attempt_id}/image")
def get_image(session_id: str, attempt_id: str):
    _session_or_404(session_id)
    try:
        data = get_store().load_image(session_id, attempt_id)
    except AttemptNotFound:
        data = None
    if data is None:
        raise HTTPException(status_code=404, detail="Image not found")
    return Response(content=data, media_type="image/png")


# -----------------------------------------
# Generation & rendering (single shot)
# -----------------------------------------
@app.post("/generate")
def generate(req: GenerateRequest):
    try:
        generation = create_generator().generate(req.objective, req.width, req.height)
    except GenerationError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"code": generation.code, **generation.to_metadata()}


@app.post("/improve")
def improve(req: ImproveRequest):
    image_png = None
    if req.image_base64:
        try:
            image_png = base64.b64decode(req.image_base64, validate=True)
        except ValueError:
            raise HTTPException(status_code=422, detail="image_base64 is not valid base64")
    try:
        generation = create_generator().improve(
            req.objective,
            req.width,
            req.height,
            previous_code=req.previous_code,
            image_png=image_png,
            error=req.error,
        )
    except GenerationError as e:
        raise HTTPException(status_code=502, detail=str(e))
    return {"code": generation.code, "critique": generation.critique, **generation.to_metadata()}


@app.post("/render")
def render(req: RenderRequest):
    try:
        result = create_renderer().render(req.code, req.width, req.height, seed=req.seed)
    except RendererUnavailable as e:
        raise HTTPException(status_code=503, detail=str(e))
    return result.to_dict()


@app.exception_handler(SessionNotFound)
async def session_not_found_handler(request: Request, exc: SessionNotFound):
    return JSONResponse(status_code=404, content={"detail": "Session not found"})
