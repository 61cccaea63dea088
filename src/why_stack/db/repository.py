"""
Repository pattern for database operations.

Provides a clean abstraction over SQLAlchemy for the hypothesis graph. All
repositories work inside the caller's session; committing is the caller's
job so that one mutation spans one transaction.
"""

from abc import ABC, abstractmethod
from collections import defaultdict
from collections.abc import Iterable, Sequence
from datetime import datetime
from typing import Generic, TypeVar
from uuid import UUID

from sqlalchemy import delete, exists, func, or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from why_stack.db.models import (
    ActivityLogModel,
    Base,
    EvidenceModel,
    HypothesisEdgeModel,
    HypothesisModel,
    RefutationModel,
    UserModel,
    WatcherModel,
)
from why_stack.reasoning.graph import HypothesisGraph

T = TypeVar("T", bound=Base)

DEFAULT_EDGE_LABEL = "depends on"
# Arbitrary application-wide key for pg_advisory_xact_lock
STRUCTURE_LOCK_KEY = 0x5748595354


class BaseRepository(ABC, Generic[T]):
    """Abstract base repository with common CRUD operations."""

    def __init__(self, session: AsyncSession) -> None:
        """
        Initialize the repository.

        Args:
            session: SQLAlchemy async session.
        """
        self._session = session

    @property
    @abstractmethod
    def _model_class(self) -> type[T]:
        """Get the model class for this repository."""
        ...

    async def get_by_id(self, entity_id: UUID) -> T | None:
        """
        Get an entity by its ID.

        Args:
            entity_id: The entity's UUID.

        Returns:
            The entity if found, None otherwise.
        """
        return await self._session.get(self._model_class, entity_id)

    async def create(self, entity: T) -> T:
        """
        Create a new entity.

        Args:
            entity: The entity to create.

        Returns:
            The created entity.
        """
        self._session.add(entity)
        await self._session.flush()
        return entity

    async def update(self, entity: T) -> T:
        """
        Flush pending changes of an existing entity.

        Args:
            entity: The entity to update.

        Returns:
            The updated entity.
        """
        await self._session.flush()
        return entity


class UserRepository(BaseRepository[UserModel]):
    """Repository for user lookups."""

    @property
    def _model_class(self) -> type[UserModel]:
        """Get the model class."""
        return UserModel

    async def get_display_name(self, user_id: UUID | None) -> str | None:
        """Resolve a user's display name, or None if unknown."""
        if user_id is None:
            return None
        stmt = select(UserModel.name).where(UserModel.id == user_id)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_all(self) -> list[UserModel]:
        stmt = select(UserModel).order_by(UserModel.name.asc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


class HypothesisRepository(BaseRepository[HypothesisModel]):
    """Repository for hypothesis nodes."""

    @property
    def _model_class(self) -> type[HypothesisModel]:
        """Get the model class."""
        return HypothesisModel

    async def get_for_update(self, hypothesis_id: UUID) -> HypothesisModel | None:
        """
        Get a hypothesis and lock its row until the transaction ends.

        The lock serialises writers that derive values (like the next child
        order) from this node. SQLite ignores ``FOR UPDATE``.
        """
        stmt = select(HypothesisModel).where(HypothesisModel.id == hypothesis_id).with_for_update()
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def get_many(self, hypothesis_ids: Iterable[UUID]) -> dict[UUID, HypothesisModel]:
        ids = list(hypothesis_ids)
        if not ids:
            return {}
        stmt = select(HypothesisModel).where(HypothesisModel.id.in_(ids))
        result = await self._session.execute(stmt)
        return {h.id: h for h in result.scalars().all()}

    async def list_all(self) -> list[HypothesisModel]:
        stmt = select(HypothesisModel).order_by(HypothesisModel.order.asc(), HypothesisModel.created_at.asc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def max_root_order(self) -> int:
        """
        Get the highest order among active root hypotheses.

        Returns:
            The maximum order, or -1 when there are no roots.
        """
        has_parent = exists().where(HypothesisEdgeModel.child_id == HypothesisModel.id)
        stmt = select(func.max(HypothesisModel.order)).where(
            HypothesisModel.is_archived.is_(False),
            ~has_parent,
        )
        result = await self._session.execute(stmt)
        value = result.scalar_one_or_none()
        return -1 if value is None else value

    async def touch_content(self, hypothesis_ids: Sequence[UUID], when: datetime) -> None:
        """Set ``content_updated_at`` on the given hypotheses."""
        if not hypothesis_ids:
            return
        stmt = (
            update(HypothesisModel)
            .where(HypothesisModel.id.in_(list(hypothesis_ids)))
            .values(content_updated_at=when)
            .execution_options(synchronize_session="fetch")
        )
        await self._session.execute(stmt)

    async def set_root_order(self, ordered_ids: Sequence[UUID]) -> None:
        """Assign ``order = index`` to each listed hypothesis."""
        for index, hypothesis_id in enumerate(ordered_ids):
            stmt = (
                update(HypothesisModel)
                .where(HypothesisModel.id == hypothesis_id)
                .values(order=index)
                .execution_options(synchronize_session="fetch")
            )
            await self._session.execute(stmt)

    async def list_with_relations(self) -> list[HypothesisModel]:
        """
        Fetch every non-archived hypothesis with its relations eagerly loaded.

        Returns:
            Hypotheses ordered by (order, created_at).
        """
        stmt = (
            select(HypothesisModel)
            .where(HypothesisModel.is_archived.is_(False))
            .order_by(HypothesisModel.order.asc(), HypothesisModel.created_at.asc())
            .options(
                selectinload(HypothesisModel.evidence),
                selectinload(HypothesisModel.refutations),
                selectinload(HypothesisModel.child_edges).selectinload(HypothesisEdgeModel.child),
                selectinload(HypothesisModel.parent_edges),
                selectinload(HypothesisModel.owner),
                selectinload(HypothesisModel.watchers).selectinload(WatcherModel.user),
            )
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_with_evidence(self) -> list[HypothesisModel]:
        """Fetch hypotheses that have evidence, with the evidence loaded."""
        has_evidence = exists().where(EvidenceModel.hypothesis_id == HypothesisModel.id)
        stmt = select(HypothesisModel).where(has_evidence).options(selectinload(HypothesisModel.evidence))
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def owned_ids(self, user_id: UUID) -> list[UUID]:
        stmt = select(HypothesisModel.id).where(
            HypothesisModel.owner_id == user_id,
            HypothesisModel.is_archived.is_(False),
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete_by_id(self, hypothesis_id: UUID) -> None:
        await self._session.execute(delete(HypothesisModel).where(HypothesisModel.id == hypothesis_id))


class EdgeRepository(BaseRepository[HypothesisEdgeModel]):
    """Repository for "depends on" edges."""

    @property
    def _model_class(self) -> type[HypothesisEdgeModel]:
        """Get the model class."""
        return HypothesisEdgeModel

    async def load_graph(self) -> HypothesisGraph[UUID]:
        """
        Load the whole edge set into an adjacency index.

        Returns:
            Graph with children listed in per-parent order.
        """
        stmt = select(HypothesisEdgeModel.parent_id, HypothesisEdgeModel.child_id).order_by(
            HypothesisEdgeModel.parent_id,
            HypothesisEdgeModel.order,
        )
        result = await self._session.execute(stmt)
        return HypothesisGraph((row.parent_id, row.child_id) for row in result.all())

    async def lock_structure(self) -> None:
        """
        Serialise structural edits for the rest of the transaction.

        Takes a transaction-scoped advisory lock on PostgreSQL, so two edits
        touching disjoint rows still run their cycle checks one after the
        other. SQLite already serialises writers, so nothing is done there.
        """
        if self._session.get_bind().dialect.name != "postgresql":
            return
        await self._session.execute(select(func.pg_advisory_xact_lock(STRUCTURE_LOCK_KEY)))

    async def parent_ids(self, child_id: UUID) -> list[UUID]:
        stmt = select(HypothesisEdgeModel.parent_id).where(HypothesisEdgeModel.child_id == child_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def max_order(self, parent_id: UUID) -> int:
        """
        Get the highest edge order under a parent.

        Returns:
            The maximum order, or -1 when the parent has no children.
        """
        stmt = select(func.max(HypothesisEdgeModel.order)).where(HypothesisEdgeModel.parent_id == parent_id)
        result = await self._session.execute(stmt)
        value = result.scalar_one_or_none()
        return -1 if value is None else value

    async def append_child(
        self,
        parent_id: UUID,
        child_id: UUID,
        label: str = DEFAULT_EDGE_LABEL,
    ) -> HypothesisEdgeModel:
        """Create an edge placed after the parent's existing children."""
        edge = HypothesisEdgeModel(
            parent_id=parent_id,
            child_id=child_id,
            label=label,
            order=await self.max_order(parent_id) + 1,
        )
        return await self.create(edge)

    async def detach_child(self, child_id: UUID) -> None:
        """Delete every parent edge of a hypothesis."""
        await self._session.execute(delete(HypothesisEdgeModel).where(HypothesisEdgeModel.child_id == child_id))

    async def delete_touching(self, hypothesis_id: UUID) -> None:
        """Delete every edge where the hypothesis is parent or child."""
        stmt = delete(HypothesisEdgeModel).where(
            or_(
                HypothesisEdgeModel.parent_id == hypothesis_id,
                HypothesisEdgeModel.child_id == hypothesis_id,
            )
        )
        await self._session.execute(stmt)

    async def reorder_children(self, parent_id: UUID, ordered_child_ids: Sequence[UUID]) -> None:
        """Assign ``order = index`` to the listed edges under one parent."""
        for index, child_id in enumerate(ordered_child_ids):
            stmt = (
                update(HypothesisEdgeModel)
                .where(
                    HypothesisEdgeModel.parent_id == parent_id,
                    HypothesisEdgeModel.child_id == child_id,
                )
                .values(order=index)
                .execution_options(synchronize_session="fetch")
            )
            await self._session.execute(stmt)


class EvidenceRepository(BaseRepository[EvidenceModel]):
    """Repository for evidence rows."""

    @property
    def _model_class(self) -> type[EvidenceModel]:
        """Get the model class."""
        return EvidenceModel

    async def get_with_hypothesis(self, evidence_id: UUID) -> EvidenceModel | None:
        stmt = (
            select(EvidenceModel)
            .where(EvidenceModel.id == evidence_id)
            .options(selectinload(EvidenceModel.hypothesis))
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_by_hypothesis(self, hypothesis_ids: Iterable[UUID]) -> dict[UUID, list[EvidenceModel]]:
        """Group the evidence of several hypotheses by hypothesis id."""
        ids = list(hypothesis_ids)
        grouped: dict[UUID, list[EvidenceModel]] = defaultdict(list)
        if not ids:
            return grouped
        stmt = select(EvidenceModel).where(EvidenceModel.hypothesis_id.in_(ids))
        result = await self._session.execute(stmt)
        for evidence in result.scalars().all():
            grouped[evidence.hypothesis_id].append(evidence)
        return grouped

    async def list_all(self) -> list[EvidenceModel]:
        """List all evidence with the owning hypothesis loaded."""
        stmt = (
            select(EvidenceModel)
            .options(selectinload(EvidenceModel.hypothesis))
            .order_by(EvidenceModel.created_at.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete_by_id(self, evidence_id: UUID) -> None:
        await self._session.execute(delete(EvidenceModel).where(EvidenceModel.id == evidence_id))

    async def delete_for_hypothesis(self, hypothesis_id: UUID) -> None:
        await self._session.execute(delete(EvidenceModel).where(EvidenceModel.hypothesis_id == hypothesis_id))


class RefutationRepository(BaseRepository[RefutationModel]):
    """Repository for refutation rows."""

    @property
    def _model_class(self) -> type[RefutationModel]:
        """Get the model class."""
        return RefutationModel

    async def delete_for_hypothesis(self, hypothesis_id: UUID) -> None:
        await self._session.execute(delete(RefutationModel).where(RefutationModel.hypothesis_id == hypothesis_id))


class WatcherRepository(BaseRepository[WatcherModel]):
    """Repository for hypothesis watchers."""

    @property
    def _model_class(self) -> type[WatcherModel]:
        """Get the model class."""
        return WatcherModel

    async def find(self, hypothesis_id: UUID, user_id: UUID) -> WatcherModel | None:
        stmt = select(WatcherModel).where(
            WatcherModel.hypothesis_id == hypothesis_id,
            WatcherModel.user_id == user_id,
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def list_users(self, hypothesis_id: UUID) -> list[UserModel]:
        stmt = (
            select(UserModel)
            .join(WatcherModel, WatcherModel.user_id == UserModel.id)
            .where(WatcherModel.hypothesis_id == hypothesis_id)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def watched_ids(self, user_id: UUID) -> list[UUID]:
        stmt = select(WatcherModel.hypothesis_id).where(WatcherModel.user_id == user_id)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def remove(self, hypothesis_id: UUID, user_id: UUID) -> None:
        stmt = delete(WatcherModel).where(
            WatcherModel.hypothesis_id == hypothesis_id,
            WatcherModel.user_id == user_id,
        )
        await self._session.execute(stmt)

    async def delete_for_hypothesis(self, hypothesis_id: UUID) -> None:
        await self._session.execute(delete(WatcherModel).where(WatcherModel.hypothesis_id == hypothesis_id))


class ActivityRepository(BaseRepository[ActivityLogModel]):
    """Repository for activity log rows."""

    @property
    def _model_class(self) -> type[ActivityLogModel]:
        """Get the model class."""
        return ActivityLogModel

    async def list_for_hypothesis(self, hypothesis_id: UUID, limit: int = 100) -> list[ActivityLogModel]:
        stmt = (
            select(ActivityLogModel)
            .where(ActivityLogModel.hypothesis_id == hypothesis_id)
            .order_by(ActivityLogModel.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def list_for_hypotheses(
        self,
        hypothesis_ids: Iterable[UUID],
        exclude_actor_id: str | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[ActivityLogModel]:
        """
        List activity across several hypotheses, newest first.

        Args:
            hypothesis_ids: Hypotheses to include.
            exclude_actor_id: Drop events performed by this actor.
            since: Only events created at or after this time.
            limit: Maximum number to return.

        Returns:
            Matching activity rows.
        """
        ids = list(hypothesis_ids)
        if not ids:
            return []
        stmt = select(ActivityLogModel).where(ActivityLogModel.hypothesis_id.in_(ids))
        if exclude_actor_id is not None:
            stmt = stmt.where(
                or_(
                    ActivityLogModel.actor_id.is_(None),
                    ActivityLogModel.actor_id != exclude_actor_id,
                )
            )
        if since is not None:
            stmt = stmt.where(ActivityLogModel.created_at >= since)
        stmt = stmt.order_by(ActivityLogModel.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def delete_for_hypothesis(self, hypothesis_id: UUID) -> None:
        await self._session.execute(delete(ActivityLogModel).where(ActivityLogModel.hypothesis_id == hypothesis_id))
