"""
Orchestrator module for hypothesis mutations and confidence cascades.
"""

from why_stack.orchestrator.cascade_engine import CascadeEngine
from why_stack.orchestrator.hypothesis_orchestrator import (
    HypothesisOrchestrator,
    MutationRejected,
    parse_tags,
)
from why_stack.orchestrator.schemas import (
    ActionResult,
    Actor,
    BatchRecalculationResult,
    CascadeResult,
    ConfidenceChange,
    EvidenceForm,
    ExecutiveSummary,
    HypothesisForm,
    HypothesisRead,
    HypothesisUpdateForm,
    HypothesisWithRelations,
    NodePosition,
    RefutationForm,
)

__all__ = [
    "CascadeEngine",
    "HypothesisOrchestrator",
    "MutationRejected",
    "parse_tags",
    "ActionResult",
    "Actor",
    "BatchRecalculationResult",
    "CascadeResult",
    "ConfidenceChange",
    "EvidenceForm",
    "ExecutiveSummary",
    "HypothesisForm",
    "HypothesisRead",
    "HypothesisUpdateForm",
    "HypothesisWithRelations",
    "NodePosition",
    "RefutationForm",
]
