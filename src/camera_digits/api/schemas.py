from __future__ import annotations

from pydantic.dataclasses import dataclass as pydantic_dataclass


@pydantic_dataclass(frozen=True)
class ClassScoreOut:
    class_index: int
    confidence: float


@pydantic_dataclass(frozen=True)
class PredictionOut:
    top: list[ClassScoreOut]
    has_prediction: bool
    model_id: str | None
    frame_id: str | None
    latency_ms: int | None
    visualization_b64: str | None
    visualization_png_b64: str | None
    frame_png_b64: str | None
    crop_png_b64: str | None
    intensity_png_b64: str | None
    resized_png_b64: str | None


@pydantic_dataclass(frozen=True)
class SnapshotResponse:
    sequence: int
    result: PredictionOut


@pydantic_dataclass(frozen=True)
class FrameResponse:
    status: str
    frame_id: str
    sequence: int | None
    error: str | None
    message: str | None
    result: PredictionOut | None
