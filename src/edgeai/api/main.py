"""EdgeAI Gateway — FastAPI Application.

This module is the single entry point for the HTTP gateway.  It defines the
application factory, the CORS / failure-boundary middleware, all routes, and
the ``main()`` CLI function that launches the uvicorn server.

Architecture
------------
- **Model catalog** is loaded once at startup from ``config.models_file``.
- **Inference** goes through :class:`~edgeai.core.service.InferenceService`:
  every call leases a fresh native session (clean up, initialize, generate,
  clean up) while holding the model's lock.
- **Blocking work** (image decoding, inference) is run in the worker thread
  pool, so each request waits on its own thread and the event loop stays
  responsive.
- **Uploaded images** are stored as PNG files and served back at
  ``/images/{filename}``.

Endpoints
---------
========  ==========================  ======================================
Method    Path                        Purpose
========  ==========================  ======================================
GET       ``/health``                 Liveness check (``OK``)
OPTIONS   ``*``                       CORS preflight
GET       ``/images/{filename}``      Stored upload (streamed PNG)
POST      ``/edgeai``                 Text prompt
POST      ``/edgeai_chat``            Chat messages
POST      ``/edgeai_image``           Image to structured attributes
POST      ``/edgeai_image_url``       Prompt referencing an image URL
POST      ``/edgeai_image_direct``    Single-stage prompt with an image
========  ==========================  ======================================

Usage
-----
CLI (installed entry point)::

    edgeai

Direct invocation::

    python -m edgeai.api.main
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import APIRouter, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse, Response, StreamingResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from edgeai import __version__
from edgeai.api.codec import (
    chat_body,
    decode_base64_image,
    extract_chat_text,
    parse_request,
    text_body,
)
from edgeai.api.models import ChatRequest, ImageRequest, ImageUrlRequest, TextRequest
from edgeai.core.bridge import SyncBridge
from edgeai.core.config import EdgeAIConfig, config
from edgeai.core.engine import EngineFactory
from edgeai.core.errors import EdgeAIError, InferenceOutcome
from edgeai.core.image_store import ImageStore
from edgeai.core.pipeline import AttributeExtractionPipeline
from edgeai.core.registry import ModelRegistry
from edgeai.core.service import InferenceRequest, InferenceService
from edgeai.core.session_manager import SessionManager

logger = logging.getLogger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "GET, POST, OPTIONS",
    "Access-Control-Allow-Headers": "origin, content-type, accept, authorization",
}
CORS_MAX_AGE = "3600"

router = APIRouter()


# ---------------------------------------------------------------------------
# Middleware and exception handlers.
# ---------------------------------------------------------------------------


async def cors_and_failure_boundary(request: Request, call_next) -> Response:
    """Answer preflights, convert uncaught faults to 500, add CORS headers.

    ``OPTIONS`` is answered for any path before routing.  Any exception
    escaping a route becomes ``500 Error: {message}`` so that a malformed
    request can never take the server down.
    """
    if request.method == "OPTIONS":
        response = Response(status_code=200)
        response.headers.update(CORS_HEADERS)
        response.headers["Access-Control-Max-Age"] = CORS_MAX_AGE
        return response

    try:
        response = await call_next(request)
    except Exception as exc:
        logger.exception("Unhandled error on %s %s", request.method, request.url.path)
        response = PlainTextResponse(f"Error: {exc}", status_code=500)

    response.headers.update(CORS_HEADERS)
    return response


async def http_exception_handler(request: Request, exc: StarletteHTTPException) -> Response:
    # Unknown paths and unsupported methods are both reported as 404.
    if exc.status_code in (404, 405):
        return PlainTextResponse("Not Found", status_code=404)
    return PlainTextResponse(str(exc.detail), status_code=exc.status_code)


async def gateway_error_handler(request: Request, exc: EdgeAIError) -> Response:
    if exc.status_code >= 500:
        logger.error("Gateway error on %s: %s", request.url.path, exc.message)
    return _outcome_response(exc.to_outcome())


# ---------------------------------------------------------------------------
# Helpers.
# ---------------------------------------------------------------------------


def _service(request: Request) -> InferenceService:
    return request.app.state.service


def _image_store(request: Request) -> ImageStore:
    return request.app.state.image_store


def _outcome_response(outcome: InferenceOutcome, body: dict | None = None) -> Response:
    """Serve an outcome with the status its kind maps to.

    Soft failures (no model, init failure, generation failure, timeout) map
    to 200 and are delivered like a normal reply.  Request errors are served
    as their bare message; internal errors as ``Error: {message}``.
    """
    status_code = outcome.status_code
    if status_code >= 500:
        return PlainTextResponse(f"Error: {outcome.text}", status_code=status_code)
    if status_code != 200:
        return PlainTextResponse(outcome.text, status_code=status_code)
    return JSONResponse(content=body if body is not None else text_body(outcome.text))


# ---------------------------------------------------------------------------
# Routes.
# ---------------------------------------------------------------------------


@router.get("/health")
async def health() -> Response:
    """Liveness check; independent of model and session state."""
    return PlainTextResponse("OK")


@router.get("/images/{filename}")
async def get_image(filename: str, request: Request) -> Response:
    """Stream a stored upload as ``image/png``.

    Returns:
        The file in chunks, or ``404 Image not found`` for unknown or
        rejected filenames.
    """
    store = _image_store(request)
    path = store.resolve(filename)
    if path is None:
        return PlainTextResponse("Image not found", status_code=404)
    return StreamingResponse(store.iter_chunks(path), media_type="image/png")


@router.post("/edgeai")
async def edgeai(request: Request) -> Response:
    """Run a text-only prompt.

    Body: ``{prompt, model?, temperature?, top_p?, topK?, maxTokens?}``.
    Returns ``{text}``.
    """
    req = parse_request(TextRequest, await request.body())
    logger.info("POST /edgeai (model=%s)", req.model or "<default>")

    outcome = await run_in_threadpool(
        _service(request).generate,
        InferenceRequest(prompt=req.prompt, model_name=req.model, overrides=req.overrides()),
    )
    return _outcome_response(outcome)


@router.post("/edgeai_chat")
async def edgeai_chat(request: Request) -> Response:
    """Answer the last message of a chat transcript.

    Only the text blocks of the last message are sent to the model.
    Returns ``{messages: [{role: "assistant", content: [{type: "text", text}]}]}``.
    """
    req = parse_request(ChatRequest, await request.body())
    prompt = extract_chat_text(req.messages)
    logger.info(
        "POST /edgeai_chat (model=%s, messages=%d)", req.model or "<default>", len(req.messages)
    )

    outcome = await run_in_threadpool(
        _service(request).generate,
        InferenceRequest(prompt=prompt, model_name=req.model, overrides=req.overrides()),
    )
    return _outcome_response(outcome, chat_body(outcome.text))


@router.post("/edgeai_image")
async def edgeai_image(request: Request) -> Response:
    """Describe an image, then extract structured person attributes.

    Runs the two-stage pipeline; only the extraction result is returned.
    Returns ``{text, image_url}``.
    """
    req = parse_request(ImageRequest, await request.body())
    image = await run_in_threadpool(decode_base64_image, req.image)
    filename = await run_in_threadpool(_image_store(request).save_png, image)
    logger.info("POST /edgeai_image (model=%s, image=%s)", req.model or "<default>", filename)

    pipeline: AttributeExtractionPipeline = request.app.state.pipeline
    result = await run_in_threadpool(
        pipeline.run, image, req.prompt, req.model, req.overrides()
    )
    outcome = result.outcome
    return _outcome_response(
        outcome, text_body(outcome.text, image_url=ImageStore.url_for(filename))
    )


@router.post("/edgeai_image_url")
async def edgeai_image_url(request: Request) -> Response:
    """Run a prompt that references an image by URL.

    The URL is appended to the prompt as ``" url:{imageUrl}"``; it is not
    fetched.  Returns ``{text}``.
    """
    req = parse_request(ImageUrlRequest, await request.body())
    prompt = f"{req.prompt or ''} url:{req.image_url}"
    logger.info("POST /edgeai_image_url (model=%s)", req.model or "<default>")

    outcome = await run_in_threadpool(
        _service(request).generate,
        InferenceRequest(prompt=prompt, model_name=req.model, overrides=req.overrides()),
    )
    return _outcome_response(outcome)


@router.post("/edgeai_image_direct")
async def edgeai_image_direct(request: Request) -> Response:
    """Run a single prompt with the uploaded image attached.

    Returns ``{text, image_url}``.
    """
    req = parse_request(ImageRequest, await request.body())
    image = await run_in_threadpool(decode_base64_image, req.image)
    filename = await run_in_threadpool(_image_store(request).save_png, image)
    logger.info(
        "POST /edgeai_image_direct (model=%s, image=%s)", req.model or "<default>", filename
    )

    outcome = await run_in_threadpool(
        _service(request).generate,
        InferenceRequest(
            prompt=req.prompt or "",
            images=[image],
            model_name=req.model,
            overrides=req.overrides(),
        ),
    )
    return _outcome_response(
        outcome, text_body(outcome.text, image_url=ImageStore.url_for(filename))
    )


# ---------------------------------------------------------------------------
# Application factory.
# ---------------------------------------------------------------------------


def create_app(
    settings: EdgeAIConfig | None = None,
    engine_factory: EngineFactory | None = None,
) -> FastAPI:
    """Build the gateway application.

    Args:
        settings: Configuration; the global :data:`~edgeai.core.config.config`
            when omitted.
        engine_factory: Engine constructor passed to the
            :class:`SessionManager`; the built-in backends when omitted.

    Returns:
        A FastAPI application whose lifespan wires the registry, session
        manager, bridge, service, pipeline and image store onto ``app.state``.
    """
    settings = settings or config

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        """Load the catalog and build the services; release sessions on shutdown."""
        # --- Startup -------------------------------------------------------
        registry = ModelRegistry.from_file(settings.models_file)
        logger.info(
            "Loaded %d model(s) from %s: %s",
            len(registry),
            settings.models_file,
            ", ".join(registry.names) or "<none>",
        )

        sessions = SessionManager(settings, engine_factory)
        service = InferenceService(
            registry,
            sessions,
            SyncBridge(settings.inference_timeout_seconds),
        )
        image_store = ImageStore(settings.images_dir, settings.image_retention_hours)
        image_store.purge_expired()

        app.state.registry = registry
        app.state.sessions = sessions
        app.state.service = service
        app.state.pipeline = AttributeExtractionPipeline(service, settings.default_image_prompt)
        app.state.image_store = image_store
        logger.info("EdgeAI Gateway started.")

        yield  # Application runs here.

        # --- Shutdown ------------------------------------------------------
        sessions.shutdown()
        logger.info("EdgeAI Gateway stopped.")

    app = FastAPI(
        title="EdgeAI Gateway",
        description="Local HTTP gateway for on-device generative models.",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings

    app.middleware("http")(cors_and_failure_boundary)
    app.add_exception_handler(StarletteHTTPException, http_exception_handler)
    app.add_exception_handler(EdgeAIError, gateway_error_handler)
    app.include_router(router)
    return app


app = create_app()


# ---------------------------------------------------------------------------
# CLI entry point.
# ---------------------------------------------------------------------------


def main() -> None:
    """Launch the uvicorn ASGI server.

    Reads host, port and log level from :data:`~edgeai.core.config.config`
    (``EDGEAI_SERVER_HOST``, ``EDGEAI_SERVER_PORT``, ``EDGEAI_LOG_LEVEL``).
    Defaults to ``0.0.0.0:12345``.

    This function is registered as the ``edgeai`` console script in
    ``pyproject.toml``.
    """
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, config.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    uvicorn.run(
        "edgeai.api.main:app",
        host=config.server_host,
        port=config.server_port,
        log_level=config.log_level.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
