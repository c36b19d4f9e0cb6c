from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Final


@dataclass(frozen=True)
class ClassScore:
    class_index: int
    confidence: float

    @property
    def is_sentinel(self) -> bool:
        return self.class_index < 0


SENTINEL: Final[ClassScore] = ClassScore(class_index=-1, confidence=0.0)
TOP_K: Final[int] = 3


def scores_from_outputs(values: Iterable[float]) -> list[ClassScore]:
    return [ClassScore(class_index=i, confidence=float(v)) for i, v in enumerate(values)]


def _confidence_key(s: ClassScore) -> float:
    # NaN never compares, so rank it below every real score
    if math.isnan(s.confidence):
        return math.inf
    return -s.confidence


def rank(scores: Sequence[ClassScore]) -> tuple[ClassScore, ClassScore, ClassScore]:
    """Return the three highest scores, ties resolved by ascending class index.

    Inputs are first ordered by class index; ``sorted`` is stable, so equal
    confidences keep that order. Missing slots are filled with ``SENTINEL``.
    """
    by_index = sorted(scores, key=lambda s: s.class_index)
    ordered = sorted(by_index, key=_confidence_key)
    top = list(ordered[:TOP_K])
    while len(top) < TOP_K:
        top.append(SENTINEL)
    return top[0], top[1], top[2]
