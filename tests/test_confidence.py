from dataclasses import dataclass

import pytest

from why_stack.reasoning.confidence import (
    calculate_cascading_confidence,
    calculate_confidence,
    clamp_strength,
    round_half_up,
)
from why_stack.types import ConfidenceMode, EvidenceDirection, next_confidence_mode

S = EvidenceDirection.SUPPORTS
WS = EvidenceDirection.WEAKLY_SUPPORTS
N = EvidenceDirection.NEUTRAL
WR = EvidenceDirection.WEAKLY_REFUTES
R = EvidenceDirection.REFUTES


@dataclass
class Ev:
    direction: EvidenceDirection
    strength: int


def test_no_evidence_is_base_confidence() -> None:
    assert calculate_confidence([]) == 50


@pytest.mark.parametrize("strength", [1, 2, 3, 4, 5])
def test_single_evidence_moves_three_points_per_strength(strength: int) -> None:
    assert calculate_confidence([Ev(S, strength)]) == 50 + 3 * strength
    assert calculate_confidence([Ev(R, strength)]) == 50 - 3 * strength


def test_weak_directions_round_half_up() -> None:
    # 50 + 0.5 * 3 * 3 = 54.5
    assert calculate_confidence([Ev(WS, 3)]) == 55
    # 50 - 4.5 = 45.5
    assert calculate_confidence([Ev(WR, 3)]) == 46
    assert calculate_confidence([Ev(N, 5)]) == 50


def test_mixed_evidence() -> None:
    assert calculate_confidence([Ev(S, 4), Ev(R, 3)]) == 53
    assert calculate_confidence([Ev(S, 4), Ev(S, 4), Ev(R, 5)]) == 59


def test_out_of_range_strength_is_clamped() -> None:
    assert calculate_confidence([Ev(S, 10)]) == 65
    assert calculate_confidence([Ev(S, 0)]) == 53
    assert calculate_confidence([Ev(R, -7)]) == 47


def test_result_is_clamped_to_bounds() -> None:
    assert calculate_confidence([Ev(S, 5)] * 5) == 100
    assert calculate_confidence([Ev(R, 5)] * 5) == 0


def test_direction_accepts_plain_strings() -> None:
    assert calculate_confidence([Ev("SUPPORTS", 5)]) == 65  # type: ignore[arg-type]


@pytest.mark.parametrize("own", [0, 17, 50, 99, 100])
def test_cascading_without_children_returns_own(own: int) -> None:
    assert calculate_cascading_confidence(own, []) == own


def test_cascading_is_equal_weight_average() -> None:
    assert calculate_cascading_confidence(50, [50]) == 50
    assert calculate_cascading_confidence(80, [20]) == 50
    assert calculate_cascading_confidence(50, [65]) == 58
    assert calculate_cascading_confidence(50, [80, 20, 90]) == 60


def test_round_half_up_and_strength_clamp() -> None:
    assert round_half_up(57.5) == 58
    assert round_half_up(2.4999) == 2
    assert clamp_strength(2.5) == 3
    assert clamp_strength(9) == 5
    assert clamp_strength(-1) == 1


def test_manual_confidence_mode_is_terminal() -> None:
    assert next_confidence_mode(ConfidenceMode.AUTO, False) is ConfidenceMode.AUTO
    assert next_confidence_mode(ConfidenceMode.AUTO, True) is ConfidenceMode.MANUAL
    assert next_confidence_mode(ConfidenceMode.MANUAL, False) is ConfidenceMode.MANUAL
    assert next_confidence_mode(ConfidenceMode.MANUAL, True) is ConfidenceMode.MANUAL
