from __future__ import annotations

import io
from typing import Final

from PIL import Image
from torch import Tensor

from .errors import RenderError
from .orientation import GRID_SIDE, GRID_SIZE

# (exclusive lower bound, signed output), checked in order
_BUCKETS: Final[tuple[tuple[float, int], ...]] = (
    (3.0, -127),
    (2.0, -75),
    (1.0, -25),
    (0.0, 0),
    (-1.0, 25),
    (-2.0, 75),
)
_FLOOR_VALUE: Final[int] = 127


def to_visualization_byte(v: float) -> int:
    """Coarse diagnostic quantization of one normalized value (signed)."""
    for bound, out in _BUCKETS:
        if v > bound:
            return out
    return _FLOOR_VALUE


def _flat_values(tensor: Tensor) -> list[float]:
    flat = tensor.detach().reshape(-1)
    if int(flat.shape[0]) != GRID_SIZE:
        raise ValueError(f"expected {GRID_SIZE} values, got {int(flat.shape[0])}")
    return [float(x) for x in flat.tolist()]


def to_visualization_grid(tensor: Tensor) -> bytes:
    """Quantize a model tensor into 784 bytes (two's complement of the signed levels)."""
    return bytes(to_visualization_byte(v) & 0xFF for v in _flat_values(tensor))


def to_ascii(tensor: Tensor) -> str:
    vals = _flat_values(tensor)
    rows: list[str] = []
    for y in range(GRID_SIDE):
        row = vals[y * GRID_SIDE : (y + 1) * GRID_SIDE]
        rows.append(" ".join("*" if v > 0 else "." for v in row))
    return "\n".join(rows)


def grid_image(grid: bytes) -> Image.Image:
    if len(grid) != GRID_SIZE:
        raise RenderError(f"grid must hold {GRID_SIZE} bytes, got {len(grid)}")
    return Image.frombytes("L", (GRID_SIDE, GRID_SIDE), grid)


def render_png(img: Image.Image, scale: int, max_kb: int) -> bytes:
    """Nearest-neighbour upscale and PNG-encode a display bitmap."""
    if scale < 1:
        raise RenderError("scale must be >= 1")
    try:
        vis = img.resize(
            (img.size[0] * scale, img.size[1] * scale), resample=Image.Resampling.NEAREST
        )
        buf = io.BytesIO()
        vis.save(buf, format="PNG", optimize=True)
    except (OSError, ValueError) as exc:
        raise RenderError(str(exc)) from None
    b = buf.getvalue()
    if len(b) > max_kb * 1024:
        raise RenderError(f"rendered bitmap exceeds {max_kb} KB")
    return b
