"""OpenAI-compatible FastAPI front for the grid's asynchronous text and image API.

Endpoints:
- GET  /health
- GET  /v1/models             ?type=text|image
- POST /v1/chat/completions   { "messages": [...], "stream": bool, ... }
- POST /v1/completions        { "prompt": "...", ... }
- POST /generate              { "prompt": "...", "sessionId": "..." }
- POST /generate-image        { "prompt": "...", "model": "...", "customSettings": {"nsfw": bool} }
"""
from __future__ import annotations
import contextlib
import logging
import time
import uuid
from functools import partial
from typing import Any, AsyncIterator

from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse, Response, StreamingResponse

from grid_adapter.common.config import Settings, load_settings
from grid_adapter.common.errors import AdapterError, InternalError, InvalidRequest, MissingPrompt
from grid_adapter.common.logging_setup import setup_logging
from grid_adapter.common.schema import GenerateOut, ModelCard, ModelList
from grid_adapter.common.templates import extract_final_answer, load_template, render_prompt
from grid_adapter.grid.emitter import (
    SSE_HEADERS,
    chat_completion,
    new_fingerprint,
    stream_chat,
    text_completion,
)
from grid_adapter.grid.poller import GridClient
from grid_adapter.grid.translator import (
    build_image_payload,
    build_payload,
    resolve_api_key,
    translate_chat,
    translate_completion,
    translate_image,
)

LOGGER = logging.getLogger("grid_adapter.app")
SETTINGS = load_settings()
setup_logging(SETTINGS.log_level)


def _validate_template(path: str) -> None:
    """Warn at startup when the prompt template has no {{input}} slot."""
    try:
        template = load_template(path)
    except OSError as e:
        LOGGER.warning("Failed to read prompt template %s: %s", path, e)
        return
    if "{{input}}" not in template:
        LOGGER.warning("Prompt template %s has no {{input}} placeholder", path)


@contextlib.asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    _validate_template(SETTINGS.template_path)
    app.state.grid = GridClient(SETTINGS)
    LOGGER.info("Grid adapter ready (grid=%s)", SETTINGS.base_url)
    yield
    await app.state.grid.aclose()
    del app.state.grid


app = FastAPI(title="Grid Adapter", version="0.1.0", lifespan=lifespan)


def get_settings() -> Settings:
    return SETTINGS


def get_grid(request: Request) -> GridClient:
    grid = getattr(request.app.state, "grid", None)
    if grid is None:
        LOGGER.error("Grid client requested outside the app lifespan")
        raise InternalError("grid client not started")
    return grid


@app.exception_handler(AdapterError)
async def _adapter_error(_request: Request, exc: AdapterError) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": exc.public_message})


@app.exception_handler(Exception)
async def _unexpected_error(_request: Request, exc: Exception) -> JSONResponse:
    LOGGER.exception("Unhandled error: %s", exc)
    err = InternalError()
    return JSONResponse(status_code=err.status_code, content={"error": err.public_message})


async def _read_body(request: Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequest("Request body must be a JSON object")
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return body


@app.get("/health")
def health(settings: Settings = Depends(get_settings)) -> dict[str, str]:
    return {"status": "ok", "grid": settings.base_url}


@app.get("/v1/models", response_model=ModelList)
async def list_models(type: str | None = None, grid: GridClient = Depends(get_grid)) -> ModelList:  # noqa: A002
    raw = await grid.list_models(type)
    now = int(time.time())
    cards = []
    for m in raw:
        if not isinstance(m, dict):
            continue
        created = m.get("created")
        try:
            created = int(created) if created else now
        except (TypeError, ValueError):
            created = now
        cards.append(
            ModelCard(
                id=str(m.get("id") or m.get("model") or m.get("name") or "unknown-model"),
                created=created,
                owned_by=str(m.get("owned_by") or m.get("owner") or "aipowergrid"),
            )
        )
    return ModelList(data=cards)


@app.post("/v1/chat/completions")
async def chat_completions(
    request: Request,
    settings: Settings = Depends(get_settings),
    grid: GridClient = Depends(get_grid),
) -> Response:
    body = await _read_body(request)
    api_key = resolve_api_key(request.headers.get("Authorization"), body)
    req = translate_chat(body, api_key, settings)
    payload = build_payload(req)
    finalize = partial(extract_final_answer, marker=settings.answer_marker)
    fingerprint = new_fingerprint()

    if req.stream:
        if settings.stream_before_result:
            result: Any = grid.generate(payload, api_key)
        else:
            result = await grid.generate(payload, api_key, cancel_check=request.is_disconnected)
        return StreamingResponse(
            stream_chat(
                result,
                req.model,
                token_delay=settings.token_delay,
                fingerprint=fingerprint,
                transform=finalize,
            ),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    text = finalize(await grid.generate(payload, api_key, cancel_check=request.is_disconnected))
    return JSONResponse(content=chat_completion(text, req.model, fingerprint).model_dump())


@app.post("/v1/completions")
async def completions(
    request: Request,
    settings: Settings = Depends(get_settings),
    grid: GridClient = Depends(get_grid),
) -> Response:
    body = await _read_body(request)
    api_key = resolve_api_key(request.headers.get("Authorization"), body)
    req = translate_completion(body, api_key, settings)
    payload = build_payload(req, legacy_image_params=settings.legacy_image_params)
    text = await grid.generate(payload, api_key, cancel_check=request.is_disconnected)
    text = extract_final_answer(text, settings.answer_marker)
    return JSONResponse(content=text_completion(text, req.model).model_dump())


@app.post("/generate", response_model=GenerateOut)
async def generate(
    request: Request,
    settings: Settings = Depends(get_settings),
    grid: GridClient = Depends(get_grid),
) -> GenerateOut:
    body = await _read_body(request)
    api_key = resolve_api_key(request.headers.get("Authorization"), body)
    prompt = body.get("prompt")
    if not prompt or not isinstance(prompt, str):
        raise MissingPrompt()

    template = load_template(settings.template_path)
    # Rendered before translation so the template is sent verbatim.
    req = translate_completion({**body, "prompt": render_prompt(template, prompt)}, api_key, settings)
    payload = build_payload(req, legacy_image_params=settings.legacy_image_params)
    text = await grid.generate(payload, api_key, cancel_check=request.is_disconnected)
    return GenerateOut(
        response=extract_final_answer(text, settings.answer_marker),
        sessionId=req.session_id or str(uuid.uuid4()),
    )


@app.post("/generate-image", response_model=GenerateOut)
async def generate_image(request: Request, grid: GridClient = Depends(get_grid)) -> GenerateOut:
    body = await _read_body(request)
    api_key = resolve_api_key(request.headers.get("Authorization"), body)
    req = translate_image(body, api_key)
    url = await grid.generate_image(build_image_payload(req), api_key, cancel_check=request.is_disconnected)
    return GenerateOut(response=url, sessionId=req.session_id or str(uuid.uuid4()))
