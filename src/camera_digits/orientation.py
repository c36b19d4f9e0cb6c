from __future__ import annotations

from typing import Final

GRID_SIDE: Final[int] = 28
GRID_SIZE: Final[int] = GRID_SIDE * GRID_SIDE


def reorient_index(index: int) -> int:
    """Destination of row-major source ``index``: (r, c) moves to (c, 27 - r)."""
    row, col = divmod(index, GRID_SIDE)
    return col * GRID_SIDE + (GRID_SIDE - 1 - row)


def reorient(grid: bytes) -> bytes:
    """Rotate a 28x28 row-major grid a quarter turn clockwise.

    The destination buffer is filled by explicit index assignment, so each of
    the 784 cells is written exactly once.
    """
    if len(grid) != GRID_SIZE:
        raise ValueError(f"expected {GRID_SIZE} values, got {len(grid)}")
    out = bytearray(GRID_SIZE)
    for i in range(GRID_SIZE):
        out[reorient_index(i)] = grid[i]
    return bytes(out)
