from __future__ import annotations

import itertools
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from enum import Enum
from typing import Final, Protocol

from PIL import Image
from torch import Tensor

from .config import Settings
from .errors import (
    AppError,
    ErrorCode,
    FilterError,
    GeometryError,
    InferenceError,
    RenderError,
    ResizeError,
)
from .inference.types import PredictionResult
from .logging import get_logger, log_event
from .preprocess import PreprocessOptions, run_preprocess
from .ranking import rank, scores_from_outputs
from .request_context import frame_id_var
from .visualize import grid_image, render_png, to_ascii, to_visualization_grid

ResultSink = Callable[[PredictionResult], None]
DebugSink = Callable[[str], None]

_ABANDON_ERRORS: Final[tuple[type[AppError], ...]] = (
    GeometryError,
    FilterError,
    ResizeError,
)


class ScoreEngine(Protocol):
    @property
    def model_id(self) -> str: ...

    def infer(self, tensor: Tensor) -> tuple[float, ...]: ...


@dataclass(frozen=True)
class ResultSnapshot:
    sequence: int
    result: PredictionResult


class ResultSlot:
    """Holds the latest published result as one immutable snapshot.

    Readers either poll ``latest()`` or block in ``wait_for`` until a newer
    sequence number is published.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition()
        self._snapshot = ResultSnapshot(sequence=0, result=PredictionResult.empty())

    def publish(self, result: PredictionResult) -> ResultSnapshot:
        with self._cond:
            snap = ResultSnapshot(sequence=self._snapshot.sequence + 1, result=result)
            self._snapshot = snap
            self._cond.notify_all()
        return snap

    def latest(self) -> ResultSnapshot:
        with self._cond:
            return self._snapshot

    def wait_for(self, after: int, timeout: float | None = None) -> ResultSnapshot | None:
        """Return the first snapshot newer than ``after``, or None on timeout."""
        with self._cond:
            ok = self._cond.wait_for(lambda: self._snapshot.sequence > after, timeout=timeout)
            return self._snapshot if ok else None


class FrameStatus(str, Enum):
    published = "published"
    no_prediction = "no_prediction"
    abandoned = "abandoned"


@dataclass(frozen=True)
class FrameOutcome:
    status: FrameStatus
    frame_id: str
    snapshot: ResultSnapshot | None = None
    error: ErrorCode | None = None
    message: str | None = None


@dataclass(frozen=True)
class PipelineOptions:
    invert: bool = False
    render_stages: bool = False
    debug_ascii: bool = False
    visualize_scale: int = 4
    visualize_max_kb: int = 64

    @staticmethod
    def from_settings(s: Settings) -> PipelineOptions:
        p = s.pipeline
        return PipelineOptions(
            invert=p.invert,
            render_stages=p.render_stages,
            debug_ascii=p.debug_ascii,
            visualize_scale=p.visualize_scale,
            visualize_max_kb=p.visualize_max_kb,
        )

    def preprocess_options(self) -> PreprocessOptions:
        return PreprocessOptions(
            invert=self.invert,
            render_stages=self.render_stages,
            visualize_scale=self.visualize_scale,
            visualize_max_kb=self.visualize_max_kb,
        )


class FramePipeline:
    """Runs one frame at a time through preprocessing, inference and ranking.

    Failures before inference abandon the frame and leave the published result
    untouched. An inference failure publishes the empty (sentinel) result.
    """

    def __init__(
        self,
        engine: ScoreEngine,
        slot: ResultSlot,
        options: PipelineOptions | None = None,
        result_sink: ResultSink | None = None,
        debug_sink: DebugSink | None = None,
    ) -> None:
        self._engine = engine
        self._slot = slot
        self._opts = options or PipelineOptions()
        self._result_sink = result_sink
        self._debug_sink = debug_sink
        self._counter = itertools.count(1)
        self._logger = get_logger()

    @property
    def slot(self) -> ResultSlot:
        return self._slot

    def process(self, frame: Image.Image, frame_id: str | None = None) -> FrameOutcome:
        fid = frame_id if frame_id is not None else f"f{next(self._counter)}"
        token = frame_id_var.set(fid)
        try:
            return self._process(frame, fid)
        finally:
            frame_id_var.reset(token)

    def _process(self, frame: Image.Image, fid: str) -> FrameOutcome:
        t0 = time.perf_counter()
        try:
            pre = run_preprocess(frame, self._opts.preprocess_options())
        except _ABANDON_ERRORS as exc:
            self._logger.warning("frame_abandoned code=%s error=%s", exc.code.value, exc.message)
            return FrameOutcome(
                status=FrameStatus.abandoned, frame_id=fid, error=exc.code, message=exc.message
            )

        if self._opts.debug_ascii and self._debug_sink is not None:
            self._emit_debug(self._debug_sink, to_ascii(pre.tensor))

        try:
            outputs = self._engine.infer(pre.tensor)
        except InferenceError as exc:
            self._logger.error("inference_failed error=%s", exc.message)
            snap = self._publish(PredictionResult.empty(frame_id=fid))
            log_event("frame_done", fields={"status": FrameStatus.no_prediction.value})
            return FrameOutcome(
                status=FrameStatus.no_prediction,
                frame_id=fid,
                snapshot=snap,
                error=exc.code,
                message=exc.message,
            )

        first, second, third = rank(scores_from_outputs(outputs))
        visualization = to_visualization_grid(pre.tensor)
        dt_ms = int((time.perf_counter() - t0) * 1000.0)
        result = PredictionResult(
            first=first,
            second=second,
            third=third,
            visualization=visualization,
            visualization_png=self._render_visualization(visualization),
            stages=pre.stages,
            model_id=self._engine.model_id,
            frame_id=fid,
            latency_ms=dt_ms,
        )
        snap = self._publish(result)
        log_event(
            "frame_done",
            fields={
                "status": FrameStatus.published.value,
                "digit": first.class_index,
                "confidence": first.confidence,
                "latency_ms": dt_ms,
                "model_id": self._engine.model_id,
                "sequence": snap.sequence,
            },
        )
        return FrameOutcome(status=FrameStatus.published, frame_id=fid, snapshot=snap)

    def _render_visualization(self, grid: bytes) -> bytes | None:
        if not self._opts.render_stages:
            return None
        try:
            return render_png(
                grid_image(grid), self._opts.visualize_scale, self._opts.visualize_max_kb
            )
        except RenderError as exc:
            self._logger.info("visualization_dropped error=%s", exc.message)
            return None

    def _publish(self, result: PredictionResult) -> ResultSnapshot:
        snap = self._slot.publish(result)
        if self._result_sink is not None:
            try:
                self._result_sink(result)
            except Exception as exc:
                self._logger.error("result_sink_failed type=%s error=%s", type(exc).__name__, exc)
        return snap

    def _emit_debug(self, sink: DebugSink, text: str) -> None:
        try:
            sink(text)
        except Exception as exc:
            self._logger.warning("debug_sink_failed type=%s error=%s", type(exc).__name__, exc)
