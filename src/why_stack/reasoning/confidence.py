"""Confidence calculation from evidence.

A hypothesis starts at a base confidence of 50. Each piece of evidence moves
it by ``direction_weight * strength * SCALE_FACTOR`` where the direction
weights are SUPPORTS=+1, WEAKLY_SUPPORTS=+0.5, NEUTRAL=0, WEAKLY_REFUTES=-0.5
and REFUTES=-1. The result is clamped to 0-100 and rounded half up.

Examples:
    - 2 supporting (strength 4): 50 + 2 * 4 * 3 = 74
    - then 1 refuting (strength 5): 74 - 5 * 3 = 59

A hypothesis with children combines its own score with each child's final
score as equally weighted components.
"""

from __future__ import annotations

import math
from collections.abc import Iterable, Sequence
from typing import Protocol

from why_stack.types import EvidenceDirection

BASE_CONFIDENCE = 50
SCALE_FACTOR = 3
MIN_STRENGTH = 1
MAX_STRENGTH = 5

DIRECTION_WEIGHTS: dict[EvidenceDirection, float] = {
    EvidenceDirection.SUPPORTS: 1.0,
    EvidenceDirection.WEAKLY_SUPPORTS: 0.5,
    EvidenceDirection.NEUTRAL: 0.0,
    EvidenceDirection.WEAKLY_REFUTES: -0.5,
    EvidenceDirection.REFUTES: -1.0,
}


class EvidenceLike(Protocol):
    """Anything carrying a direction and a strength (ORM rows, schemas)."""

    direction: EvidenceDirection
    strength: int


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def round_half_up(value: float) -> int:
    """Round .5 towards positive infinity (``round`` would round to even)."""
    return math.floor(value + 0.5)


def clamp_strength(strength: int | float) -> int:
    """Clamp an evidence strength into the 1-5 scale."""
    return int(clamp(round_half_up(strength), MIN_STRENGTH, MAX_STRENGTH))


def calculate_confidence(evidence: Iterable[EvidenceLike]) -> int:
    """
    Calculate a 0-100 confidence score from evidence.

    Out-of-range strengths are clamped rather than rejected.

    Args:
        evidence: Items with ``direction`` and ``strength`` attributes.

    Returns:
        Confidence score; ``BASE_CONFIDENCE`` when there is no evidence.
    """
    total = 0.0
    for item in evidence:
        weight = DIRECTION_WEIGHTS[EvidenceDirection(item.direction)]
        strength = clamp(item.strength, MIN_STRENGTH, MAX_STRENGTH)
        total += weight * strength * SCALE_FACTOR

    return round_half_up(clamp(BASE_CONFIDENCE + total, 0, 100))


def calculate_cascading_confidence(own_confidence: int, children_confidences: Sequence[int]) -> int:
    """
    Combine a hypothesis' own score with its children's final scores.

    Own evidence and every child count as one component each, so with ``n``
    children each component weighs ``1 / (n + 1)``.

    Args:
        own_confidence: Score from the hypothesis' own evidence.
        children_confidences: Final scores of the direct children.

    Returns:
        The combined score, or ``own_confidence`` unchanged for a leaf.
    """
    if not children_confidences:
        return own_confidence

    components = 1 + len(children_confidences)
    average = (own_confidence + sum(children_confidences)) / components
    return round_half_up(clamp(average, 0, 100))
