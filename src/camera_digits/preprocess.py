from __future__ import annotations

from dataclasses import dataclass
from typing import Final

from PIL import Image, ImageOps

from .errors import FilterError, GeometryError, RenderError, ResizeError
from .inference.types import PreprocessOutput, StageImages
from .logging import get_logger
from .normalize import normalize
from .orientation import GRID_SIDE, GRID_SIZE, reorient
from .visualize import render_png

_CROP_DIVISOR: Final[int] = 5
_PREPROCESS_SIGNATURE: Final[str] = "v1/centercrop5+luma+bicubic28+rot90+mnistnorm"
_FRAME_PREVIEW_SIDE: Final[int] = 256


@dataclass(frozen=True)
class SquareCrop:
    image: Image.Image
    side: int
    offset_x: int
    offset_y: int


@dataclass(frozen=True)
class PreprocessOptions:
    invert: bool = False
    render_stages: bool = False
    visualize_scale: int = 4
    visualize_max_kb: int = 64


def preprocess_signature() -> str:
    return _PREPROCESS_SIGNATURE


def crop_box(width: int, height: int) -> tuple[int, int, int]:
    """Return ``(side, offset_x, offset_y)`` of the centered square for a frame size."""
    if width <= 0 or height <= 0:
        raise GeometryError(f"frame must have positive size, got {width}x{height}")
    side = width // _CROP_DIVISOR
    if side <= 0:
        raise GeometryError(f"frame width {width} too small for a crop")
    if side > height:
        raise GeometryError(f"crop side {side} exceeds frame height {height}")
    return side, (width - side) // 2, (height - side) // 2


def crop(frame: Image.Image) -> SquareCrop:
    width, height = frame.size
    side, ox, oy = crop_box(width, height)
    region = frame.crop((ox, oy, ox + side, oy + side))
    return SquareCrop(image=region, side=side, offset_x=ox, offset_y=oy)


def _luminance(img: Image.Image) -> Image.Image:
    if img.mode == "RGBA":
        bg = Image.new("RGBA", img.size, (255, 255, 255, 255))
        img = Image.alpha_composite(bg, img).convert("RGB")
    if img.mode == "P":
        img = img.convert("RGB")
    return ImageOps.grayscale(img)


def to_intensity(sq: SquareCrop, invert: bool = False) -> Image.Image:
    """Single-channel 8-bit luminance of the crop, optionally negated.

    When the transform is unavailable the crop is passed through only if it is
    already an 8-bit single-channel image; otherwise ``FilterError`` is raised.
    """
    img = sq.image
    try:
        gray = _luminance(img)
        if invert:
            gray = ImageOps.invert(gray)
    except (ValueError, OSError) as exc:
        if img.mode == "L":
            get_logger().warning("filter_fallback mode=%s error=%s", img.mode, exc)
            return img
        raise FilterError(f"intensity transform failed: {exc}") from None
    if gray.size != img.size or gray.mode != "L":
        raise FilterError("intensity transform changed the grid shape")
    return gray


def downsample(gray: Image.Image) -> tuple[Image.Image, bytes]:
    width, height = gray.size
    if width != height:
        raise ResizeError(f"downsample expects a square grid, got {width}x{height}")
    try:
        resized = gray.resize((GRID_SIDE, GRID_SIDE), resample=Image.Resampling.BICUBIC)
    except (ValueError, OSError) as exc:
        raise ResizeError(str(exc)) from None
    buf: bytes = resized.tobytes()
    if len(buf) != GRID_SIZE:
        raise ResizeError(f"downsample produced {len(buf)} values, expected {GRID_SIZE}")
    return resized, buf


def _frame_preview(frame: Image.Image) -> Image.Image:
    preview = frame.copy()
    preview.thumbnail((_FRAME_PREVIEW_SIDE, _FRAME_PREVIEW_SIDE))
    return preview


def _stage_png(
    img: Image.Image, opts: PreprocessOptions, stage: str, scale: int | None = None
) -> bytes | None:
    try:
        return render_png(img, scale or opts.visualize_scale, opts.visualize_max_kb)
    except RenderError as exc:
        get_logger().info("stage_render_dropped stage=%s error=%s", stage, exc.message)
        return None


def run_preprocess(frame: Image.Image, opts: PreprocessOptions) -> PreprocessOutput:
    """Crop, intensity, downsample, reorient and normalize one frame.

    Raises ``GeometryError``, ``FilterError`` or ``ResizeError``; the caller
    abandons the frame on any of them.
    """
    sq = crop(frame)
    gray = to_intensity(sq, invert=opts.invert)
    resized, grid = downsample(gray)
    reoriented = reorient(grid)
    tensor = normalize(reoriented)

    stages = StageImages()
    if opts.render_stages:
        stages = StageImages(
            frame_png=_stage_png(_frame_preview(frame), opts, "frame", scale=1),
            crop_png=_stage_png(sq.image, opts, "crop"),
            intensity_png=_stage_png(gray, opts, "intensity"),
            resized_png=_stage_png(resized, opts, "resized"),
        )
    return PreprocessOutput(tensor=tensor, grid=reoriented, stages=stages)
