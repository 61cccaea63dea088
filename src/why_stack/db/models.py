"""
SQLAlchemy models for database persistence.

Defines the schema for hypotheses, their "depends on" edges, evidence,
refutations, watchers and the activity log.
"""

from datetime import datetime, timezone
from typing import Any
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from why_stack.types import (
    ActivityType,
    ConfidenceMode,
    EvidenceDirection,
    EvidenceKind,
    RefutationType,
)


def _now_utc() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all database models."""

    pass


class UserModel(Base):
    """Database model for users (identity is managed elsewhere)."""

    __tablename__ = "users"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)
    image: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now_utc,
        nullable=False,
    )


class HypothesisModel(Base):
    """Database model for hypotheses (graph nodes)."""

    __tablename__ = "hypotheses"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    statement: Mapped[str] = mapped_column(Text, nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    confidence: Mapped[int] = mapped_column(Integer, default=50, nullable=False)
    confidence_is_manual: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    tags: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    order: Mapped[int] = mapped_column("order", Integer, default=0, nullable=False, index=True)
    is_archived: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False, index=True)

    owner_id: Mapped[UUID | None] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)

    # Graph view layout
    graph_x: Mapped[float | None] = mapped_column(Float, nullable=True)
    graph_y: Mapped[float | None] = mapped_column(Float, nullable=True)

    # Cache slots written by AI collaborators; never interpreted here
    exec_summary_validation: Mapped[str | None] = mapped_column(Text, nullable=True)
    exec_summary_progress: Mapped[str | None] = mapped_column(Text, nullable=True)
    exec_summary_big_picture: Mapped[str | None] = mapped_column(Text, nullable=True)
    exec_summary_generated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    validation_suggestions: Mapped[list[dict[str, Any]] | None] = mapped_column(JSON, nullable=True)
    validation_suggestions_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    content_updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now_utc,
        nullable=False,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now_utc,
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now_utc,
        onupdate=_now_utc,
        nullable=False,
    )

    # Relationships
    owner: Mapped[UserModel | None] = relationship()
    evidence: Mapped[list["EvidenceModel"]] = relationship(
        back_populates="hypothesis",
        cascade="all, delete-orphan",
        order_by="EvidenceModel.created_at.desc()",
    )
    refutations: Mapped[list["RefutationModel"]] = relationship(
        back_populates="hypothesis",
        cascade="all, delete-orphan",
        order_by="RefutationModel.created_at.desc()",
    )
    child_edges: Mapped[list["HypothesisEdgeModel"]] = relationship(
        back_populates="parent",
        foreign_keys="HypothesisEdgeModel.parent_id",
        order_by="HypothesisEdgeModel.order",
    )
    parent_edges: Mapped[list["HypothesisEdgeModel"]] = relationship(
        back_populates="child",
        foreign_keys="HypothesisEdgeModel.child_id",
    )
    watchers: Mapped[list["WatcherModel"]] = relationship(
        back_populates="hypothesis",
        cascade="all, delete-orphan",
    )

    @property
    def confidence_mode(self) -> ConfidenceMode:
        return ConfidenceMode.MANUAL if self.confidence_is_manual else ConfidenceMode.AUTO

    @confidence_mode.setter
    def confidence_mode(self, mode: ConfidenceMode) -> None:
        self.confidence_is_manual = mode is ConfidenceMode.MANUAL


class HypothesisEdgeModel(Base):
    """Database model for "depends on" edges (parent -> child)."""

    __tablename__ = "hypothesis_edges"
    __table_args__ = (
        UniqueConstraint("parent_id", "child_id", name="uq_hypothesis_edges_parent_child"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    parent_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("hypotheses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    child_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("hypotheses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    label: Mapped[str | None] = mapped_column(String(255), nullable=True)
    order: Mapped[int] = mapped_column("order", Integer, default=0, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now_utc,
        nullable=False,
    )

    # Relationships
    parent: Mapped["HypothesisModel"] = relationship(
        back_populates="child_edges",
        foreign_keys=[parent_id],
    )
    child: Mapped["HypothesisModel"] = relationship(
        back_populates="parent_edges",
        foreign_keys=[child_id],
    )


class EvidenceModel(Base):
    """Database model for evidence attached to a hypothesis."""

    __tablename__ = "evidence"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    hypothesis_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("hypotheses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    kind: Mapped[EvidenceKind] = mapped_column(
        Enum(EvidenceKind, native_enum=False, length=32),
        default=EvidenceKind.RESEARCH,
        nullable=False,
    )
    direction: Mapped[EvidenceDirection] = mapped_column(
        Enum(EvidenceDirection, native_enum=False, length=32),
        nullable=False,
    )
    strength: Mapped[int] = mapped_column(Integer, nullable=False)
    quality: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    source_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now_utc,
        nullable=False,
    )

    # Relationships
    hypothesis: Mapped["HypothesisModel"] = relationship(back_populates="evidence")


class RefutationModel(Base):
    """Database model for structured challenges (not used in confidence math)."""

    __tablename__ = "refutations"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    hypothesis_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("hypotheses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    type: Mapped[RefutationType] = mapped_column(
        Enum(RefutationType, native_enum=False, length=32),
        nullable=False,
    )
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    proposed_test: Mapped[str | None] = mapped_column(Text, nullable=True)
    impact: Mapped[str | None] = mapped_column(Text, nullable=True)
    owner_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now_utc,
        nullable=False,
    )

    # Relationships
    hypothesis: Mapped["HypothesisModel"] = relationship(back_populates="refutations")


class WatcherModel(Base):
    """Database model for users watching a hypothesis."""

    __tablename__ = "hypothesis_watchers"
    __table_args__ = (
        UniqueConstraint("hypothesis_id", "user_id", name="uq_hypothesis_watchers_hypothesis_user"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    hypothesis_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("hypotheses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now_utc,
        nullable=False,
    )

    # Relationships
    hypothesis: Mapped["HypothesisModel"] = relationship(back_populates="watchers")
    user: Mapped["UserModel"] = relationship()


class ActivityLogModel(Base):
    """Database model for activity events (actor fields are opaque)."""

    __tablename__ = "activity_logs"
    __table_args__ = (Index("ix_activity_logs_created_at", "created_at"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    hypothesis_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("hypotheses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    actor_id: Mapped[str | None] = mapped_column(String(255), nullable=True, index=True)
    actor_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    type: Mapped[ActivityType] = mapped_column(
        Enum(ActivityType, native_enum=False, length=32),
        nullable=False,
    )
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    metadata_: Mapped[dict[str, Any] | None] = mapped_column(
        "metadata",
        JSON,
        nullable=True,
    )
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=_now_utc,
        nullable=False,
    )
