from __future__ import annotations

from dataclasses import dataclass, field

from torch import Tensor

from ..ranking import SENTINEL, ClassScore


@dataclass(frozen=True)
class StageImages:
    """Display-only PNGs of intermediate stages; any may be missing."""

    frame_png: bytes | None = None
    crop_png: bytes | None = None
    intensity_png: bytes | None = None
    resized_png: bytes | None = None


@dataclass(frozen=True)
class PreprocessOutput:
    tensor: Tensor  # 1x1x28x28 float32
    grid: bytes  # 784 reoriented pixel bytes
    stages: StageImages


@dataclass(frozen=True)
class PredictionResult:
    first: ClassScore
    second: ClassScore
    third: ClassScore
    visualization: bytes | None = None
    visualization_png: bytes | None = None
    stages: StageImages = field(default_factory=StageImages)
    model_id: str | None = None
    frame_id: str | None = None
    latency_ms: int | None = None

    @staticmethod
    def empty(frame_id: str | None = None) -> PredictionResult:
        return PredictionResult(first=SENTINEL, second=SENTINEL, third=SENTINEL, frame_id=frame_id)

    @property
    def top(self) -> tuple[ClassScore, ClassScore, ClassScore]:
        return (self.first, self.second, self.third)

    @property
    def has_prediction(self) -> bool:
        return not self.first.is_sentinel
