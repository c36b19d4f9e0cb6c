from __future__ import annotations

import base64
import io
from collections.abc import Callable
from typing import Annotated, Final

import anyio
import anyio.to_thread
from anyio.lowlevel import RunVar
from fastapi import Depends, FastAPI, File, Header, Query, Request, UploadFile
from fastapi.params import Depends as DependsParamType
from fastapi.responses import JSONResponse
from PIL import Image, ImageFile, UnidentifiedImageError
from starlette.concurrency import run_in_threadpool
from starlette.datastructures import FormData

from ..config import Limits, Settings
from ..errors import AppError, ErrorCode, new_error, status_for
from ..inference.engine import InferenceEngine
from ..inference.types import PredictionResult
from ..logging import get_logger, init_logging
from ..middleware import RequestIdMiddleware, api_key_dependency
from ..pipeline import FrameOutcome, FramePipeline, PipelineOptions, ResultSlot, ResultSnapshot
from ..request_context import request_id_var
from ..version import get_version
from .schemas import ClassScoreOut, FrameResponse, PredictionOut, SnapshotResponse

ImageFile.LOAD_TRUNCATED_IMAGES = False

_MAX_WAIT_SECONDS: Final[float] = 30.0
# Long-poll waiters get their own thread budget, separate from frame processing
_MAX_WAITERS: Final[int] = 256
_waiter_limiter: RunVar[anyio.CapacityLimiter] = RunVar("camera_digits_waiter_limiter")


def _get_waiter_limiter() -> anyio.CapacityLimiter:
    try:
        return _waiter_limiter.get()
    except LookupError:
        limiter = anyio.CapacityLimiter(_MAX_WAITERS)
        _waiter_limiter.set(limiter)
        return limiter


async def _handle_app_error(_: Request, exc: Exception) -> JSONResponse:
    rid = request_id_var.get()
    if not isinstance(exc, AppError):
        body = new_error(ErrorCode.internal_error, rid, message=str(exc))
        return JSONResponse(status_code=500, content=body.to_dict())
    body = new_error(exc.code, rid, message=exc.message)
    return JSONResponse(status_code=exc.http_status, content=body.to_dict())


async def _handle_unexpected(_: Request, exc: Exception) -> JSONResponse:
    get_logger().error("unhandled_error type=%s", type(exc).__name__)
    body = new_error(ErrorCode.internal_error, request_id_var.get())
    return JSONResponse(status_code=500, content=body.to_dict())


def _b64(raw: bytes | None) -> str | None:
    return base64.b64encode(raw).decode("ascii") if raw else None


def prediction_out(result: PredictionResult) -> PredictionOut:
    return PredictionOut(
        top=[ClassScoreOut(class_index=s.class_index, confidence=s.confidence) for s in result.top],
        has_prediction=result.has_prediction,
        model_id=result.model_id,
        frame_id=result.frame_id,
        latency_ms=result.latency_ms,
        visualization_b64=_b64(result.visualization),
        visualization_png_b64=_b64(result.visualization_png),
        frame_png_b64=_b64(result.stages.frame_png),
        crop_png_b64=_b64(result.stages.crop_png),
        intensity_png_b64=_b64(result.stages.intensity_png),
        resized_png_b64=_b64(result.stages.resized_png),
    )


def _snapshot_out(snap: ResultSnapshot) -> SnapshotResponse:
    return SnapshotResponse(sequence=snap.sequence, result=prediction_out(snap.result))


def _frame_out(outcome: FrameOutcome) -> FrameResponse:
    snap = outcome.snapshot
    return FrameResponse(
        status=outcome.status.value,
        frame_id=outcome.frame_id,
        sequence=snap.sequence if snap is not None else None,
        error=outcome.error.value if outcome.error is not None else None,
        message=outcome.message,
        result=prediction_out(snap.result) if snap is not None else None,
    )


def _register_basic(app: FastAPI, engine: InferenceEngine) -> None:
    async def _healthz() -> dict[str, str]:
        return {"status": "ok"}

    async def _readyz() -> dict[str, object]:
        return {"status": "ready", "model_id": engine.model_id}

    async def _version() -> dict[str, object]:
        v = get_version()
        return {"service": v.service, "version": v.version, "build": v.build, "commit": v.commit}

    async def _model_active() -> dict[str, object]:
        out: dict[str, object] = {"model_loaded": True}
        out.update(engine.manifest.to_dict())
        return out

    app.add_api_route("/healthz", _healthz, methods=["GET"])
    app.add_api_route("/readyz", _readyz, methods=["GET"])
    app.add_api_route("/version", _version, methods=["GET"])
    app.add_api_route("/v1/models/active", _model_active, methods=["GET"])


def _strict_validate_multipart(form: FormData) -> None:
    for key in form:
        if key != "file":
            raise AppError(
                ErrorCode.malformed_multipart,
                status_for(ErrorCode.malformed_multipart),
                "Unexpected form field",
            )
    n_files = len(form.getlist("file"))
    if n_files != 1:
        raise AppError(
            ErrorCode.malformed_multipart,
            status_for(ErrorCode.malformed_multipart),
            "Multiple file parts not allowed" if n_files > 1 else "Missing file part",
        )


def _ensure_supported_content_type(ctype: str) -> None:
    if ctype not in ("image/png", "image/jpeg", "image/jpg"):
        raise AppError(
            ErrorCode.unsupported_media_type,
            status_for(ErrorCode.unsupported_media_type),
            "Only PNG and JPEG are supported",
        )


def _open_frame(raw: bytes, limits: Limits) -> Image.Image:
    if len(raw) > limits.max_bytes:
        raise AppError(ErrorCode.too_large, status_for(ErrorCode.too_large), "File too large")
    try:
        img = Image.open(io.BytesIO(raw))
        w, h = img.size
        if max(w, h) > limits.max_side_px:
            raise AppError(
                ErrorCode.bad_dimensions,
                status_for(ErrorCode.bad_dimensions),
                "Image dimensions too large",
            )
        img.load()
    except UnidentifiedImageError:
        raise AppError(
            ErrorCode.invalid_image, status_for(ErrorCode.invalid_image), "Failed to decode image"
        ) from None
    except Image.DecompressionBombError:
        raise AppError(
            ErrorCode.too_large, status_for(ErrorCode.too_large), "Decompression bomb triggered"
        ) from None
    except OSError:
        raise AppError(
            ErrorCode.invalid_image, status_for(ErrorCode.invalid_image), "Truncated image data"
        ) from None
    return img


def _register_frames(
    app: FastAPI,
    api_dep: DependsParamType,
    pipeline: FramePipeline,
    limits: Limits,
) -> None:
    async def _submit_frame(
        request: Request,
        file: Annotated[UploadFile, File(...)],
        content_length: int | None = Header(default=None, alias="Content-Length"),
    ) -> FrameResponse:
        form = await request.form()
        _strict_validate_multipart(form)
        _ensure_supported_content_type((file.content_type or "").lower())
        if content_length is not None and content_length > limits.max_bytes:
            raise AppError(
                ErrorCode.too_large, status_for(ErrorCode.too_large), "Request body too large"
            )
        raw = await file.read()
        img = _open_frame(raw, limits)
        outcome = await run_in_threadpool(pipeline.process, img)
        return _frame_out(outcome)

    async def _latest(
        after: Annotated[int | None, Query(ge=0)] = None,
        wait_seconds: Annotated[float, Query(ge=0.0)] = 0.0,
    ) -> SnapshotResponse:
        slot = pipeline.slot
        if after is not None and wait_seconds > 0.0:
            timeout = min(wait_seconds, _MAX_WAIT_SECONDS)
            snap = await anyio.to_thread.run_sync(
                slot.wait_for, after, timeout, limiter=_get_waiter_limiter()
            )
            if snap is not None:
                return _snapshot_out(snap)
        return _snapshot_out(slot.latest())

    app.add_api_route(
        "/v1/frames",
        _submit_frame,
        methods=["POST"],
        response_model=FrameResponse,
        dependencies=[api_dep],
    )
    app.add_api_route(
        "/v1/predictions/latest",
        _latest,
        methods=["GET"],
        response_model=SnapshotResponse,
        dependencies=[api_dep],
    )


def create_app(
    settings: Settings | None = None,
    engine_provider: Callable[[], InferenceEngine] | None = None,
) -> FastAPI:
    """Application factory.

    The engine is loaded here, once; a ``LoadError`` propagates and the
    service does not start. Serve with ``uvicorn --factory
    camera_digits.api.app:create_app``.
    """
    s = settings or Settings.load()
    init_logging()
    engine = engine_provider() if engine_provider is not None else InferenceEngine.load(s)
    slot = ResultSlot()
    pipeline = FramePipeline(engine, slot, PipelineOptions.from_settings(s))

    app = FastAPI(title="camera-digits", version=get_version().version)
    app.add_middleware(RequestIdMiddleware)
    app.add_exception_handler(AppError, _handle_app_error)
    app.add_exception_handler(Exception, _handle_unexpected)
    app.state.pipeline = pipeline

    api_dep: DependsParamType = Depends(api_key_dependency(s))
    _register_basic(app, engine)
    _register_frames(app, api_dep, pipeline, Limits.from_settings(s))
    return app
