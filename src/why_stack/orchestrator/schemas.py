"""
Pydantic schemas for the orchestrator module.

Defines mutation inputs, read models handed back to callers and the uniform
``ActionResult`` envelope.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Any
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from why_stack.agents.evidence_classifier import EvidenceClassification
from why_stack.types import ConfidenceMode, EvidenceDirection, EvidenceKind, RefutationType

if TYPE_CHECKING:
    from why_stack.db.models import HypothesisModel


class ActionResult(BaseModel):
    """
    Uniform result of every mutation.

    ``error`` is a short human readable message for the presentation layer.
    """

    ok: bool = Field(..., description="Whether the operation succeeded")
    data: Any = Field(default=None, description="Operation payload on success")
    error: str | None = Field(default=None, description="Failure message")

    @classmethod
    def success(cls, data: Any = None) -> ActionResult:
        return cls(ok=True, data=data)

    @classmethod
    def failure(cls, error: str) -> ActionResult:
        return cls(ok=False, error=error)


class Actor(BaseModel):
    """Who performed a mutation; passed through to activity events untouched."""

    id: str | None = Field(default=None, description="Opaque actor identifier")
    name: str | None = Field(default=None, description="Actor display name")


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------


class HypothesisForm(BaseModel):
    """Input for creating a hypothesis (root or child)."""

    statement: str = Field(default="", description="Hypothesis statement (required)")
    description: str | None = Field(default=None, description="Optional longer description")
    confidence: int = Field(default=50, description="Initial confidence, clamped to 0-100")
    tags: str | list[str] = Field(default="", description="Comma separated tags or a list")
    owner_id: UUID | None = Field(default=None, description="Owning user")


class HypothesisUpdateForm(BaseModel):
    """Input for editing a hypothesis."""

    statement: str = Field(default="", description="Hypothesis statement (required)")
    description: str | None = Field(default=None, description="Optional longer description")
    confidence: int = Field(..., description="Confidence, clamped to 0-100")
    tags: str | list[str] = Field(default="", description="Comma separated tags or a list")


class EvidenceForm(BaseModel):
    """Input for structured evidence."""

    direction: EvidenceDirection
    kind: EvidenceKind = EvidenceKind.RESEARCH
    strength: int = Field(default=3, description="Clamped to 1-5")
    quality: int = Field(default=3, description="Clamped to 1-5; not used in confidence math")
    summary: str = Field(default="", description="Evidence text (required)")
    source_url: str | None = None


class RefutationForm(BaseModel):
    """Input for a structured challenge."""

    type: RefutationType
    summary: str = Field(default="", description="Challenge text (required)")
    proposed_test: str | None = None
    impact: str | None = None


class NodePosition(BaseModel):
    """Graph view position of one node."""

    id: UUID
    x: float
    y: float


class ExecutiveSummary(BaseModel):
    """Cached executive summary produced by an external generator."""

    validation_plan: str
    progress_summary: str
    bigger_picture: str | None = None


# ---------------------------------------------------------------------------
# Read models
# ---------------------------------------------------------------------------


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    name: str | None
    email: str
    image: str | None = None


class HypothesisRead(BaseModel):
    """Column-level view of a hypothesis."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    statement: str
    description: str | None
    confidence: int
    confidence_mode: ConfidenceMode
    tags: list[str]
    order: int
    is_archived: bool
    owner_id: UUID | None
    owner_name: str | None
    graph_x: float | None = None
    graph_y: float | None = None
    content_updated_at: datetime
    created_at: datetime


class EvidenceRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    hypothesis_id: UUID
    kind: EvidenceKind
    direction: EvidenceDirection
    strength: int
    quality: int
    summary: str
    source_url: str | None
    owner_name: str | None
    created_at: datetime


class RefutationRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    hypothesis_id: UUID
    type: RefutationType
    summary: str
    proposed_test: str | None
    impact: str | None
    created_at: datetime


class ChildSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    statement: str
    confidence: int
    tags: list[str]
    is_archived: bool


class ChildEdgeRead(BaseModel):
    child_id: UUID
    order: int
    label: str | None
    child: ChildSummary


class HypothesisWithRelations(HypothesisRead):
    """A hypothesis with evidence, refutations, edges, owner and watchers attached."""

    evidence: list[EvidenceRead] = Field(default_factory=list)
    refutations: list[RefutationRead] = Field(default_factory=list)
    children: list[ChildEdgeRead] = Field(default_factory=list)
    parent_ids: list[UUID] = Field(default_factory=list)
    owner: UserRead | None = None
    watchers: list[UserRead] = Field(default_factory=list)

    @classmethod
    def from_model(cls, hypothesis: HypothesisModel) -> HypothesisWithRelations:
        """Build from a model whose relations were eagerly loaded."""
        base = HypothesisRead.model_validate(hypothesis).model_dump()
        return cls(
            **base,
            evidence=[EvidenceRead.model_validate(e) for e in hypothesis.evidence],
            refutations=[RefutationRead.model_validate(r) for r in hypothesis.refutations],
            children=[
                ChildEdgeRead(
                    child_id=edge.child_id,
                    order=edge.order,
                    label=edge.label,
                    child=ChildSummary.model_validate(edge.child),
                )
                for edge in hypothesis.child_edges
            ],
            parent_ids=[edge.parent_id for edge in hypothesis.parent_edges],
            owner=UserRead.model_validate(hypothesis.owner) if hypothesis.owner else None,
            watchers=[UserRead.model_validate(w.user) for w in hypothesis.watchers],
        )


# ---------------------------------------------------------------------------
# Cascade results
# ---------------------------------------------------------------------------


class ConfidenceChange(BaseModel):
    """One persisted confidence change."""

    id: UUID
    old: int
    new: int


class CascadeResult(BaseModel):
    """Every node whose confidence changed during an upward cascade, in processing order."""

    updated: list[ConfidenceChange] = Field(default_factory=list)


class BatchConfidenceChange(ConfidenceChange):
    base: int = Field(..., description="Confidence from the node's own evidence only")


class BatchRecalculationResult(BaseModel):
    """Outcome of a full-graph recalculation."""

    total: int
    updated: int
    updates: list[BatchConfidenceChange] = Field(default_factory=list)
    cycle_detected: bool = False
    unresolved_ids: list[UUID] = Field(default_factory=list)
    message: str = ""


class EvidenceMutationResult(BaseModel):
    """Payload of evidence create/update/delete operations."""

    evidence: EvidenceRead | None = None
    classification: EvidenceClassification | None = None
    cascade_result: CascadeResult | None = None
    skipped_auto_calc: bool = False


class ReclassifiedEvidence(BaseModel):
    evidence_id: UUID
    summary: str
    old_direction: EvidenceDirection
    new_direction: EvidenceDirection
    old_strength: int
    new_strength: int
    reasoning: str


class ReclassificationResult(BaseModel):
    evidence_reclassified: int
    confidence_updated: int
    evidence: list[ReclassifiedEvidence] = Field(default_factory=list)
    confidence: list[ConfidenceChange] = Field(default_factory=list)


class ConfidenceAuditEntry(BaseModel):
    """Stored confidence next to the value implied by a node's own evidence."""

    hypothesis_id: UUID
    statement: str
    current_confidence: int
    calculated_confidence: int
    confidence_mode: ConfidenceMode
    needs_update: bool
    evidence: list[EvidenceRead] = Field(default_factory=list)
