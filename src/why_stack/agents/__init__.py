"""
Agents module containing the AI collaborators consumed by the core.
"""

from why_stack.agents.evidence_classifier import (
    EvidenceClassification,
    EvidenceClassifier,
    EvidenceClassifierBase,
)

__all__ = [
    "EvidenceClassification",
    "EvidenceClassifier",
    "EvidenceClassifierBase",
]
