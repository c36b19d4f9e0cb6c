from __future__ import annotations

import argparse
import sys
from collections.abc import Iterator
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Final

from PIL import Image, UnidentifiedImageError

from camera_digits.config import Settings
from camera_digits.errors import LoadError
from camera_digits.inference.engine import InferenceEngine
from camera_digits.inference.types import PredictionResult
from camera_digits.logging import get_logger, init_logging
from camera_digits.pipeline import FramePipeline, FrameStatus, PipelineOptions, ResultSlot

_IMAGE_SUFFIXES: Final[frozenset[str]] = frozenset({".png", ".jpg", ".jpeg", ".bmp"})


@dataclass(frozen=True)
class _Args:
    source: Path
    debug_ascii: bool


def _parse_args(argv: list[str]) -> _Args:
    ap = argparse.ArgumentParser(description="Run image files through the digit pipeline")
    ap.add_argument("source", type=Path, help="Image file or directory of frames")
    ap.add_argument("--debug-ascii", action="store_true", help="Print ASCII tensor renderings")
    ns = ap.parse_args(argv)
    return _Args(source=Path(str(ns.source)), debug_ascii=bool(ns.debug_ascii))


class ImageDirSource:
    """Frame source over a single image file or the images of a directory, sorted by name."""

    def __init__(self, root: Path) -> None:
        self._root = root

    def paths(self) -> list[Path]:
        if self._root.is_file():
            return [self._root]
        return sorted(
            p for p in self._root.iterdir() if p.is_file() and p.suffix.lower() in _IMAGE_SUFFIXES
        )

    def __iter__(self) -> Iterator[tuple[str, Image.Image]]:
        log = get_logger()
        for p in self.paths():
            try:
                with Image.open(p) as img:
                    img.load()
                    frame = img.copy()
            except (UnidentifiedImageError, OSError) as exc:
                log.warning("frame_unreadable path=%s error=%s", p.as_posix(), exc)
                continue
            yield p.name, frame


def _print_result(result: PredictionResult) -> None:
    names = ("first", "second", "third")
    for name, s in zip(names, result.top, strict=True):
        sys.stdout.write(f"{name:<7} {s.class_index:>2}  conf={s.confidence:.4f}\n")


def _print_ascii(text: str) -> None:
    sys.stdout.write(text + "\n")


def main(argv: list[str] | None = None) -> int:
    init_logging()
    args = _parse_args(list(argv) if argv is not None else sys.argv[1:])
    settings = Settings.load()
    log = get_logger()
    try:
        engine = InferenceEngine.load(settings)
    except LoadError as exc:
        log.error("model_load_failed error=%s", exc.message)
        return 1

    opts = PipelineOptions.from_settings(settings)
    if args.debug_ascii:
        opts = replace(opts, debug_ascii=True)
    pipeline = FramePipeline(
        engine, ResultSlot(), opts, result_sink=_print_result, debug_sink=_print_ascii
    )

    counts: dict[FrameStatus, int] = {s: 0 for s in FrameStatus}
    for name, frame in ImageDirSource(args.source):
        outcome = pipeline.process(frame, frame_id=name)
        counts[outcome.status] += 1
    log.info(
        "run_finished published=%d no_prediction=%d abandoned=%d",
        counts[FrameStatus.published],
        counts[FrameStatus.no_prediction],
        counts[FrameStatus.abandoned],
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
