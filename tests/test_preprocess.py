from __future__ import annotations

import io

import pytest
import torch
from PIL import Image, ImageOps

from camera_digits.errors import ErrorCode, FilterError, GeometryError, ResizeError
from camera_digits.preprocess import (
    PreprocessOptions,
    SquareCrop,
    crop,
    crop_box,
    downsample,
    preprocess_signature,
    run_preprocess,
    to_intensity,
)


def _mk_frame(size: tuple[int, int], color: tuple[int, int, int] = (90, 120, 200)) -> Image.Image:
    return Image.new("RGB", size, color)


def test_crop_geometry_500x400() -> None:
    sq = crop(_mk_frame((500, 400)))
    assert (sq.side, sq.offset_x, sq.offset_y) == (100, 200, 150)
    assert sq.image.size == (100, 100)


def test_crop_takes_centered_region() -> None:
    frame = Image.new("L", (140, 140), 0)
    frame.putpixel((56, 56), 255)
    frame.putpixel((55, 55), 128)
    sq = crop(frame)
    assert sq.side == 28 and sq.offset_x == 56 and sq.offset_y == 56
    assert sq.image.getpixel((0, 0)) == 255
    assert sq.image.getextrema() == (0, 255)


@pytest.mark.parametrize("size", [(4, 100), (0, 10), (10, 0)])
def test_crop_degenerate_sizes_raise(size: tuple[int, int]) -> None:
    with pytest.raises(GeometryError) as ei:
        _ = crop_box(*size)
    assert ei.value.code is ErrorCode.invalid_geometry


def test_crop_wider_than_tall_raises() -> None:
    with pytest.raises(GeometryError):
        _ = crop(_mk_frame((1000, 100)))


def test_to_intensity_luma_and_invert() -> None:
    sq = crop(_mk_frame((50, 50), (255, 255, 255)))
    gray = to_intensity(sq)
    assert gray.mode == "L" and gray.size == sq.image.size
    assert gray.getextrema() == (255, 255)
    neg = to_intensity(sq, invert=True)
    assert neg.getextrema() == (0, 0)


def test_to_intensity_composites_alpha_on_white() -> None:
    frame = Image.new("RGBA", (50, 50), (0, 0, 0, 0))
    gray = to_intensity(crop(frame))
    assert gray.getextrema() == (255, 255)


def test_to_intensity_failure_on_color_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    def _boom(_: Image.Image) -> Image.Image:
        raise ValueError("no luma")

    monkeypatch.setattr(ImageOps, "grayscale", _boom, raising=True)
    with pytest.raises(FilterError) as ei:
        _ = to_intensity(crop(_mk_frame((50, 50))))
    assert ei.value.code is ErrorCode.filter_unavailable


def test_to_intensity_failure_on_single_channel_passes_through(
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _boom(_: Image.Image) -> Image.Image:
        raise OSError("filter missing")

    monkeypatch.setattr(ImageOps, "grayscale", _boom, raising=True)
    sq = crop(Image.new("L", (50, 50), 42))
    out = to_intensity(sq)
    assert out is sq.image


def test_to_intensity_shape_change_raises(monkeypatch: pytest.MonkeyPatch) -> None:
    def _shrink(img: Image.Image) -> Image.Image:
        return Image.new("L", (3, 3), 0)

    monkeypatch.setattr(ImageOps, "grayscale", _shrink, raising=True)
    sq = SquareCrop(image=Image.new("RGB", (10, 10)), side=10, offset_x=0, offset_y=0)
    with pytest.raises(FilterError):
        _ = to_intensity(sq)


def test_downsample_exact_grid() -> None:
    resized, grid = downsample(Image.new("L", (100, 100), 17))
    assert resized.size == (28, 28)
    assert len(grid) == 784
    assert max(grid) - min(grid) <= 1 and abs(grid[0] - 17) <= 1


def test_downsample_rejects_multichannel_and_non_square() -> None:
    with pytest.raises(ResizeError):
        _ = downsample(Image.new("RGB", (56, 56)))
    with pytest.raises(ResizeError) as ei:
        _ = downsample(Image.new("L", (56, 40)))
    assert ei.value.code is ErrorCode.resize_failed


def test_run_preprocess_uniform_frame_zero_variance() -> None:
    out = run_preprocess(Image.new("L", (140, 140), 200), PreprocessOptions())
    assert list(out.tensor.shape) == [1, 1, 28, 28]
    assert out.tensor.dtype == torch.float32
    assert torch.unique(out.tensor).numel() == 1
    assert out.stages.crop_png is None


def test_run_preprocess_reorients_before_normalizing() -> None:
    frame = Image.new("L", (140, 140), 0)
    # Bright top-left quadrant of the 28x28 crop
    for y in range(56, 70):
        for x in range(56, 70):
            frame.putpixel((x, y), 255)
    out = run_preprocess(frame, PreprocessOptions())
    # After a clockwise quarter turn the quadrant sits top-right
    assert float(out.tensor[0, 0, 2, 25].item()) > 2.0
    assert float(out.tensor[0, 0, 2, 2].item()) < 0.0
    assert out.grid[2 * 28 + 25] == 255


def test_run_preprocess_renders_stages() -> None:
    opts = PreprocessOptions(render_stages=True, visualize_scale=2, visualize_max_kb=64)
    out = run_preprocess(_mk_frame((300, 200)), opts)
    assert out.stages.crop_png is not None
    assert out.stages.intensity_png is not None
    assert out.stages.resized_png is not None


def test_run_preprocess_renders_full_frame_preview() -> None:
    opts = PreprocessOptions(render_stages=True, visualize_scale=4, visualize_max_kb=64)
    out = run_preprocess(_mk_frame((1000, 500)), opts)
    assert out.stages.frame_png is not None
    with Image.open(io.BytesIO(out.stages.frame_png)) as img:
        assert img.size == (256, 128)
    assert run_preprocess(_mk_frame((300, 200)), PreprocessOptions()).stages.frame_png is None


def test_run_preprocess_drops_oversized_stage() -> None:
    opts = PreprocessOptions(render_stages=True, visualize_scale=1, visualize_max_kb=0)
    out = run_preprocess(_mk_frame((300, 200)), opts)
    assert out.stages.crop_png is None and out.stages.resized_png is None
    assert len(out.grid) == 784


def test_preprocess_signature_constant() -> None:
    assert preprocess_signature().startswith("v1/")
