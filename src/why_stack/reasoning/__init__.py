"""
Reasoning core: evidence-to-confidence math and graph integrity queries.

Everything in this package is pure and database-free.
"""

from why_stack.reasoning.confidence import (
    BASE_CONFIDENCE,
    calculate_cascading_confidence,
    calculate_confidence,
    clamp_strength,
)
from why_stack.reasoning.graph import HypothesisGraph, ProcessingOrder

__all__ = [
    "BASE_CONFIDENCE",
    "calculate_confidence",
    "calculate_cascading_confidence",
    "clamp_strength",
    "HypothesisGraph",
    "ProcessingOrder",
]
