from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Final

from fastapi import status


class ErrorCode(str, Enum):
    invalid_geometry = "invalid_geometry"
    filter_unavailable = "filter_unavailable"
    resize_failed = "resize_failed"
    render_failed = "render_failed"
    inference_failed = "inference_failed"
    model_load_failed = "model_load_failed"
    invalid_image = "invalid_image"
    unsupported_media_type = "unsupported_media_type"
    bad_dimensions = "bad_dimensions"
    too_large = "too_large"
    internal_error = "internal_error"
    unauthorized = "unauthorized"
    malformed_multipart = "malformed_multipart"


_DEFAULT_MESSAGE: Final[dict[ErrorCode, str]] = {
    ErrorCode.invalid_geometry: "Frame dimensions are invalid or degenerate.",
    ErrorCode.filter_unavailable: "Intensity transform unavailable.",
    ErrorCode.resize_failed: "Downsample did not produce a 28x28 grid.",
    ErrorCode.render_failed: "Display bitmap could not be rendered.",
    ErrorCode.inference_failed: "Inference failed.",
    ErrorCode.model_load_failed: "Model could not be loaded.",
    ErrorCode.invalid_image: "Failed to decode image.",
    ErrorCode.unsupported_media_type: "Unsupported media type.",
    ErrorCode.bad_dimensions: "Image dimensions exceed allowed limits.",
    ErrorCode.too_large: "File exceeds size limit.",
    ErrorCode.internal_error: "Internal server error.",
    ErrorCode.unauthorized: "Unauthorized.",
    ErrorCode.malformed_multipart: "Malformed multipart body.",
}


@dataclass(frozen=True)
class ErrorResponse:
    code: ErrorCode
    message: str
    request_id: str

    def to_dict(self) -> dict[str, str]:
        return {
            "code": self.code.value,
            "message": self.message,
            "request_id": self.request_id,
        }


class AppError(Exception):
    def __init__(self, code: ErrorCode, http_status: int, message: str) -> None:
        super().__init__(message)
        self.code = code
        self.http_status = http_status
        self.message = message


class _StageError(AppError):
    """Base for errors with a fixed code; the HTTP status follows the code."""

    code_for_class: ErrorCode = ErrorCode.internal_error

    def __init__(self, message: str | None = None) -> None:
        code = type(self).code_for_class
        msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
        super().__init__(code, status_for(code), msg)


class GeometryError(_StageError):
    code_for_class = ErrorCode.invalid_geometry


class FilterError(_StageError):
    code_for_class = ErrorCode.filter_unavailable


class ResizeError(_StageError):
    code_for_class = ErrorCode.resize_failed


class RenderError(_StageError):
    code_for_class = ErrorCode.render_failed


class InferenceError(_StageError):
    code_for_class = ErrorCode.inference_failed


class LoadError(_StageError):
    code_for_class = ErrorCode.model_load_failed


def new_error(code: ErrorCode, request_id: str, message: str | None = None) -> ErrorResponse:
    msg = message if message is not None else _DEFAULT_MESSAGE.get(code, "")
    return ErrorResponse(code=code, message=msg, request_id=request_id)


def status_for(code: ErrorCode) -> int:
    if code is ErrorCode.invalid_geometry:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.filter_unavailable:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.resize_failed:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.render_failed:
        return status.HTTP_500_INTERNAL_SERVER_ERROR
    if code is ErrorCode.inference_failed:
        return status.HTTP_502_BAD_GATEWAY
    if code is ErrorCode.model_load_failed:
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if code is ErrorCode.invalid_image:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.unsupported_media_type:
        return status.HTTP_415_UNSUPPORTED_MEDIA_TYPE
    if code is ErrorCode.bad_dimensions:
        return status.HTTP_400_BAD_REQUEST
    if code is ErrorCode.too_large:
        return status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    if code is ErrorCode.unauthorized:
        return status.HTTP_401_UNAUTHORIZED
    if code is ErrorCode.malformed_multipart:
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR
