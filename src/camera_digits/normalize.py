from __future__ import annotations

from typing import Final

import torch
from torch import Tensor

from .orientation import GRID_SIDE, GRID_SIZE

# Training-set statistics of the classifier; never derived at runtime.
MNIST_MEAN: Final[float] = 0.1307
MNIST_STD: Final[float] = 0.3081


def normalize_value(v: int) -> float:
    return ((v / 255.0) - MNIST_MEAN) / MNIST_STD


def normalize(grid: bytes) -> Tensor:
    """Map 784 pixel bytes to a 1x1x28x28 float32 tensor, unclamped."""
    if len(grid) != GRID_SIZE:
        raise ValueError(f"expected {GRID_SIZE} values, got {len(grid)}")
    data: list[float] = [normalize_value(p) for p in grid]
    return torch.tensor(data, dtype=torch.float32).reshape(1, 1, GRID_SIDE, GRID_SIDE)
