"""
Enumerations shared by the persistence layer, the reasoning core and the API.
"""

from enum import Enum


class EvidenceDirection(str, Enum):
    """How a piece of evidence bears on its hypothesis."""

    SUPPORTS = "SUPPORTS"
    WEAKLY_SUPPORTS = "WEAKLY_SUPPORTS"
    NEUTRAL = "NEUTRAL"
    WEAKLY_REFUTES = "WEAKLY_REFUTES"
    REFUTES = "REFUTES"

    @property
    def is_refuting(self) -> bool:
        return self in (EvidenceDirection.WEAKLY_REFUTES, EvidenceDirection.REFUTES)


class EvidenceKind(str, Enum):
    """Where a piece of evidence came from."""

    EXPERIMENT = "EXPERIMENT"
    RESEARCH = "RESEARCH"
    DATA_ANALYSIS = "DATA_ANALYSIS"
    EXTERNAL = "EXTERNAL"
    OPS = "OPS"


class RefutationType(str, Enum):
    """Kind of challenge raised against a hypothesis."""

    COUNTEREXAMPLE = "COUNTEREXAMPLE"
    ALTERNATIVE_HYPOTHESIS = "ALTERNATIVE_HYPOTHESIS"
    EVIDENCE_CRITIQUE = "EVIDENCE_CRITIQUE"
    SCOPE_MISMATCH = "SCOPE_MISMATCH"


class ActivityType(str, Enum):
    """Structured activity events emitted by mutations."""

    HYPOTHESIS_CREATED = "HYPOTHESIS_CREATED"
    HYPOTHESIS_UPDATED = "HYPOTHESIS_UPDATED"
    CONFIDENCE_CHANGED = "CONFIDENCE_CHANGED"
    EVIDENCE_ADDED = "EVIDENCE_ADDED"
    EVIDENCE_UPDATED = "EVIDENCE_UPDATED"
    TAGS_CHANGED = "TAGS_CHANGED"
    OWNER_CHANGED = "OWNER_CHANGED"
    CHILD_ADDED = "CHILD_ADDED"
    HYPOTHESIS_ARCHIVED = "HYPOTHESIS_ARCHIVED"
    HYPOTHESIS_DELETED = "HYPOTHESIS_DELETED"


class ConfidenceMode(str, Enum):
    """
    Who owns a hypothesis' confidence value.

    AUTO values are written by the cascade engine. MANUAL values were pinned
    by a user edit and are never recalculated. There is no way back to AUTO.
    """

    AUTO = "auto"
    MANUAL = "manual"


def next_confidence_mode(current: ConfidenceMode, confidence_changed: bool) -> ConfidenceMode:
    """Return the mode after a user edit; MANUAL is terminal."""
    if current is ConfidenceMode.MANUAL or confidence_changed:
        return ConfidenceMode.MANUAL
    return ConfidenceMode.AUTO
