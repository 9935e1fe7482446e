from __future__ import annotations

import asyncio
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from omegaconf import DictConfig
from starlette.requests import ClientDisconnect

from .aggregator import AggregateResult, aggregate
from .auth import require_bearer_token
from .configuration import (
    allowed_origins,
    build_resize_defaults,
    configure_logging,
    make_runtime_config,
)
from .errors import (
    RenderCancelled,
    ResizeServiceError,
    UnsupportedMediaError,
    ValidationError,
)
from .middleware import AdmissionMiddleware, build_admission_guard, client_identity
from .models import MAX_DIMENSION, HealthStatus, OutputSpec, PipelineStage, ResizeDefaults
from .normalizer import build_render_options, coerce_flag, normalize_outputs
from .render_engine import SourceImage, decode_source
from .upload import MultipartForm, UploadedImage, max_body_bytes, read_multipart
from .utils import attachment_header, base_name_for

logger = logging.getLogger(__name__)

EXPOSED_HEADERS = ["Content-Disposition", "Content-Length", "Content-Type"]
UPLOAD_FIELD = "logo"
GENERIC_FAILURE = "Something went wrong."
CLIENT_CLOSED_REQUEST = 499

router = APIRouter()


def get_config(request: Request) -> DictConfig:
    return request.app.state.config


def _get_executor(request: Request) -> Optional[Executor]:
    return getattr(request.app.state, "executor", None)


@router.get("/health", response_model=HealthStatus)
def healthcheck() -> HealthStatus:
    return HealthStatus(status="ok")


@router.get("/config/defaults", response_model=ResizeDefaults)
def get_config_defaults(config: DictConfig = Depends(get_config)) -> ResizeDefaults:
    return build_resize_defaults(config)


def _validate_media_type(content_type: str) -> None:
    mime = content_type.lower()
    if not mime.startswith("image/"):
        raise UnsupportedMediaError("Unsupported file type")
    if "heic" in mime or "heif" in mime:
        raise UnsupportedMediaError("HEIC/HEIF not supported")


async def _read_form(request: Request, max_bytes: int) -> MultipartForm:
    try:
        return await read_multipart(request.headers.get("content-type", ""), request.stream(), max_bytes)
    except ClientDisconnect as exc:
        raise RenderCancelled() from exc


def _require_image(upload: Optional[UploadedImage]) -> UploadedImage:
    if upload is None:
        raise ValidationError("No file uploaded")
    _validate_media_type(upload.content_type)
    if not upload.data:
        raise ValidationError("No file uploaded")
    return upload


def _build_response(result: AggregateResult) -> Response:
    return Response(
        content=result.data,
        media_type=result.content_type,
        headers={"Content-Disposition": attachment_header(result.filename)},
    )


@router.post("/resize", dependencies=[Depends(require_bearer_token)])
async def resize(request: Request, config: DictConfig = Depends(get_config)) -> Response:
    """
    Resize the uploaded ``logo`` into the requested outputs.

    The multipart body is read here rather than through FastAPI form
    parameters so that it stays in memory and is only read once admission
    and authentication have passed.
    """
    client_id = getattr(request.state, "client_id", None) or client_identity(request)
    executor = _get_executor(request)
    loop = asyncio.get_running_loop()
    stage = PipelineStage.ADMITTED
    specs: List[OutputSpec] = []

    try:
        form = await _read_form(request, config.limits.max_upload_bytes)
        upload = _require_image(form.files.get(UPLOAD_FIELD))
        if await request.is_disconnected():
            raise RenderCancelled()
        source: SourceImage = await loop.run_in_executor(executor, decode_source, upload.data)
        stage = PipelineStage.SOURCE_VALIDATED

        options = build_render_options(
            maintain_aspect=form.get("maintainAspect"),
            fit=form.get("fit"),
            jpeg_quality=form.get("jpegQuality"),
            webp_quality=form.get("webpQuality"),
            default_jpeg_quality=config.render.default_jpeg_quality,
            default_webp_quality=config.render.default_webp_quality,
        )
        force = coerce_flag(form.get("single"), default=False, field="single") or coerce_flag(
            form.get("forceSingle"), default=False, field="forceSingle"
        )
        specs = normalize_outputs(
            form.get("outputs"),
            fallback_width=form.get("width"),
            fallback_height=form.get("height"),
            fallback_format=form.get("format"),
            ceiling=min(config.limits.max_dimension, MAX_DIMENSION),
        )
        stage = PipelineStage.OUTPUTS_NORMALIZED

        base_name = base_name_for(upload.filename, fallback=config.render.fallback_name)
        stage = PipelineStage.RENDERING
        result = await aggregate(
            source,
            specs,
            options,
            force_single=force,
            base_name=base_name,
            executor=executor,
            is_cancelled=request.is_disconnected,
        )
        stage = PipelineStage.RESPONDING
        response = _build_response(result)
    except RenderCancelled:
        logger.info("Client %s disconnected during %s; abandoning request", client_id, stage.value)
        return Response(status_code=CLIENT_CLOSED_REQUEST)
    except ResizeServiceError as exc:
        _log_failure(client_id, stage, specs, exc)
        detail = exc.message if exc.status_code < 500 else GENERIC_FAILURE
        raise HTTPException(status_code=exc.status_code, detail=detail) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception(
            "Unexpected failure for client %s during %s (outputs: %s)",
            client_id,
            stage.value,
            _describe(specs),
        )
        raise HTTPException(status_code=500, detail=GENERIC_FAILURE) from exc

    logger.info(
        "Resized upload for %s into %s (%s, %d bytes)",
        client_id,
        result.filename,
        result.kind,
        len(result.data),
    )
    return response


def _describe(specs: List[OutputSpec]) -> str:
    return ", ".join(spec.describe() for spec in specs) or "-"


def _log_failure(client_id: str, stage: PipelineStage, specs: List[OutputSpec], exc: ResizeServiceError) -> None:
    if exc.status_code >= 500:
        logger.error(
            "Resize failed for client %s during %s (outputs: %s): %s",
            client_id,
            stage.value,
            _describe(specs),
            exc.message,
            exc_info=exc,
        )
    else:
        logger.info("Rejected request from %s during %s: %s", client_id, stage.value, exc.message)


def create_app(config: Optional[DictConfig] = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Runtime configuration; loaded from the packaged defaults and
            environment when omitted

    Returns:
        The configured application with admission control and CORS installed
    """
    config = config if config is not None else make_runtime_config()
    configure_logging(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.executor = ThreadPoolExecutor(
            max_workers=config.render.max_workers,
            thread_name_prefix="render",
        )
        try:
            yield
        finally:
            app.state.executor.shutdown(wait=False, cancel_futures=True)
            app.state.executor = None

    app = FastAPI(title="Logo Resize API", version="0.1.0", lifespan=lifespan)
    app.state.config = config
    app.state.executor = None

    limits = config.limits
    guard = build_admission_guard(
        max_requests=limits.requests_per_window,
        window_seconds=limits.window_seconds,
        max_concurrent=limits.max_concurrent_per_client,
        max_clients=limits.max_tracked_clients,
    )
    app.state.admission_guard = guard

    app.add_middleware(
        AdmissionMiddleware,
        guard=guard,
        max_body_bytes=max_body_bytes(limits.max_upload_bytes),
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins(config),
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )
    app.include_router(router)
    return app


app = create_app()


def run() -> None:
    server = app.state.config.server
    uvicorn.run(app, host=server.host, port=int(server.port))
