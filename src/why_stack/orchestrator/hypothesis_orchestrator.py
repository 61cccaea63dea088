"""
Hypothesis orchestrator.

The mutation API over the hypothesis graph. Every operation runs in one
database transaction, returns an ``ActionResult`` and never raises: validation
and structural problems come back as short messages, persistence failures are
logged and reported as ``"Failed to <operation>"``.

Activity events produced by a mutation are collected while it runs and handed
to the ``ActivityRecorder`` only after the transaction has committed.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Iterable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from why_stack.activity import ActivityEvent, ActivityRead, ActivityRecorder
from why_stack.agents.evidence_classifier import (
    UNAVAILABLE_REASONING,
    EvidenceClassification,
    EvidenceClassifier,
    EvidenceClassifierBase,
)
from why_stack.db.models import EvidenceModel, HypothesisModel, RefutationModel, WatcherModel
from why_stack.db.repository import (
    ActivityRepository,
    EdgeRepository,
    EvidenceRepository,
    HypothesisRepository,
    RefutationRepository,
    UserRepository,
    WatcherRepository,
)
from why_stack.orchestrator.cascade_engine import CascadeEngine
from why_stack.orchestrator.schemas import (
    ActionResult,
    Actor,
    ConfidenceAuditEntry,
    ConfidenceChange,
    EvidenceForm,
    EvidenceMutationResult,
    EvidenceRead,
    ExecutiveSummary,
    HypothesisForm,
    HypothesisRead,
    HypothesisUpdateForm,
    HypothesisWithRelations,
    NodePosition,
    ReclassificationResult,
    ReclassifiedEvidence,
    RefutationForm,
    RefutationRead,
    UserRead,
)
from why_stack.reasoning.confidence import calculate_confidence, clamp, clamp_strength
from why_stack.types import ActivityType, EvidenceDirection, EvidenceKind, next_confidence_mode

EVENT_TEXT_LIMIT = 100
DEFAULT_STRENGTH = 3


class MutationRejected(Exception):
    """A validation or graph-integrity check refused the mutation."""


def parse_tags(tags: str | Iterable[str] | None) -> list[str]:
    """
    Normalise tags into an ordered, case-insensitively unique list.

    Args:
        tags: Comma separated string or an iterable of tags.

    Returns:
        Trimmed tags in first-seen order, keeping the first casing.
    """
    if not tags:
        return []
    raw = tags.split(",") if isinstance(tags, str) else tags

    seen: set[str] = set()
    result: list[str] = []
    for tag in raw:
        cleaned = tag.strip()
        key = cleaned.lower()
        if cleaned and key not in seen:
            seen.add(key)
            result.append(cleaned)
    return result


def _clean_optional(text: str | None) -> str | None:
    if text is None:
        return None
    return text.strip() or None


def _clamp_confidence(value: int | float) -> int:
    return int(clamp(value, 0, 100))


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes
    return value if value.tzinfo is not None else value.replace(tzinfo=timezone.utc)


def _excerpt(text: str) -> str:
    return f"{text[:EVENT_TEXT_LIMIT]}..."


class HypothesisOrchestrator:
    """
    Orchestrates mutations of the hypothesis graph.

    Coordinates the repositories, the graph integrity checks, the evidence
    classifier, the cascade engine and the activity recorder.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        classifier: EvidenceClassifierBase | None = None,
        recorder: ActivityRecorder | None = None,
        cascade_engine: CascadeEngine | None = None,
    ) -> None:
        """
        Initialize the hypothesis orchestrator.

        Args:
            session_factory: Factory for per-operation sessions.
            classifier: Evidence classifier. Creates the LLM-backed one if None.
            recorder: Activity recorder. Writes through ``session_factory`` if None.
            cascade_engine: Confidence cascade engine.
        """
        self._logger = logging.getLogger(__name__)
        self._session_factory = session_factory
        self._classifier = classifier or EvidenceClassifier()
        self._recorder = recorder or ActivityRecorder(session_factory)
        self._cascade = cascade_engine or CascadeEngine()

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._session_factory() as session, session.begin():
            yield session

    async def _run(
        self,
        action: str,
        work: Callable[[list[ActivityEvent]], Awaitable[Any]],
    ) -> ActionResult:
        """
        Run one mutation and convert its outcome into an ``ActionResult``.

        Args:
            action: Operation name used in the generic failure message.
            work: Coroutine doing the mutation; it appends activity events
                to the list it receives.

        Returns:
            Success with the work's return value, or a failure.
        """
        events: list[ActivityEvent] = []
        try:
            data = await work(events)
        except MutationRejected as e:
            return ActionResult.failure(str(e))
        except Exception as e:
            self._logger.error(f"Failed to {action}: {e}", exc_info=True)
            return ActionResult.failure(f"Failed to {action}")

        if events:
            await self._recorder.record_all(events)
        return ActionResult.success(data)

    async def _mark_content_updated(self, session: AsyncSession, hypothesis_id: UUID) -> None:
        """Bump ``content_updated_at`` on a hypothesis and all of its ancestors."""
        graph = await EdgeRepository(session).load_graph()
        affected = [hypothesis_id, *graph.ancestor_ids(hypothesis_id)]
        await HypothesisRepository(session).touch_content(affected, datetime.now(timezone.utc))

    async def _require_hypothesis(
        self,
        session: AsyncSession,
        hypothesis_id: UUID,
        message: str = "Hypothesis not found",
        lock: bool = False,
    ) -> HypothesisModel:
        repo = HypothesisRepository(session)
        hypothesis = await (repo.get_for_update(hypothesis_id) if lock else repo.get_by_id(hypothesis_id))
        if hypothesis is None:
            raise MutationRejected(message)
        return hypothesis

    async def _classify(self, statement: str, text: str) -> EvidenceClassification:
        try:
            return await self._classifier.classify(statement, text)
        except Exception as e:
            self._logger.error(f"Evidence classifier raised: {e}", exc_info=True)
            return EvidenceClassification.neutral(UNAVAILABLE_REASONING)

    # ------------------------------------------------------------------
    # Hypotheses
    # ------------------------------------------------------------------

    async def _insert_hypothesis(
        self,
        session: AsyncSession,
        form: HypothesisForm,
        statement: str,
        order: int,
    ) -> HypothesisModel:
        owner_name = await UserRepository(session).get_display_name(form.owner_id)
        hypothesis = HypothesisModel(
            statement=statement,
            description=_clean_optional(form.description),
            confidence=_clamp_confidence(form.confidence),
            tags=parse_tags(form.tags),
            order=order,
            owner_id=form.owner_id,
            owner_name=owner_name,
        )
        return await HypothesisRepository(session).create(hypothesis)

    async def create_hypothesis(self, form: HypothesisForm, actor: Actor | None = None) -> ActionResult:
        """
        Create a root hypothesis placed after the existing roots.

        Args:
            form: Statement, description, confidence, tags and owner.
            actor: Who is acting. Defaults to the owner.

        Returns:
            ActionResult carrying the new ``HypothesisRead``.
        """
        statement = form.statement.strip()
        if not statement:
            return ActionResult.failure("Statement is required")

        async def work(events: list[ActivityEvent]) -> HypothesisRead:
            async with self._transaction() as session:
                order = await HypothesisRepository(session).max_root_order() + 1
                hypothesis = await self._insert_hypothesis(session, form, statement, order)
                who = actor or Actor(
                    id=str(hypothesis.owner_id) if hypothesis.owner_id else None,
                    name=hypothesis.owner_name,
                )
                events.append(
                    ActivityEvent(
                        hypothesis_id=hypothesis.id,
                        actor_id=who.id,
                        actor_name=who.name,
                        type=ActivityType.HYPOTHESIS_CREATED,
                        summary=f"Created hypothesis: {hypothesis.statement}",
                    )
                )
                return HypothesisRead.model_validate(hypothesis)

        return await self._run("create hypothesis", work)

    async def update_hypothesis(
        self,
        hypothesis_id: UUID,
        form: HypothesisUpdateForm,
        actor: Actor | None = None,
    ) -> ActionResult:
        """
        Edit a hypothesis and log one event per changed category.

        Changing the confidence pins it: the hypothesis switches to MANUAL
        mode for good.

        Args:
            hypothesis_id: Hypothesis to edit.
            form: New statement, description, confidence and tags.
            actor: Who is acting.

        Returns:
            ActionResult carrying the updated ``HypothesisRead``.
        """
        statement = form.statement.strip()
        if not statement:
            return ActionResult.failure("Statement is required")
        who = actor or Actor()

        async def work(events: list[ActivityEvent]) -> HypothesisRead:
            async with self._transaction() as session:
                hypothesis = await self._require_hypothesis(session, hypothesis_id)

                description = _clean_optional(form.description)
                new_confidence = _clamp_confidence(form.confidence)
                new_tags = parse_tags(form.tags)
                old_confidence = hypothesis.confidence
                old_tags = list(hypothesis.tags or [])

                text_changed = hypothesis.statement != statement or hypothesis.description != description
                confidence_changed = old_confidence != new_confidence
                tags_changed = old_tags != new_tags

                hypothesis.statement = statement
                hypothesis.description = description
                hypothesis.confidence = new_confidence
                hypothesis.tags = new_tags
                hypothesis.confidence_mode = next_confidence_mode(hypothesis.confidence_mode, confidence_changed)
                await HypothesisRepository(session).update(hypothesis)
                await self._mark_content_updated(session, hypothesis.id)

                def event(type_: ActivityType, summary: str, metadata: dict | None = None) -> ActivityEvent:
                    return ActivityEvent(
                        hypothesis_id=hypothesis.id,
                        actor_id=who.id,
                        actor_name=who.name,
                        type=type_,
                        summary=summary,
                        metadata=metadata,
                    )

                if text_changed:
                    events.append(event(ActivityType.HYPOTHESIS_UPDATED, f"Updated hypothesis: {statement}"))
                if confidence_changed:
                    events.append(
                        event(
                            ActivityType.CONFIDENCE_CHANGED,
                            f"Changed confidence from {old_confidence}% to {new_confidence}%",
                            {"oldConfidence": old_confidence, "newConfidence": new_confidence},
                        )
                    )
                if tags_changed:
                    events.append(
                        event(
                            ActivityType.TAGS_CHANGED,
                            f"Updated tags on: {statement}",
                            {"oldTags": old_tags, "newTags": new_tags},
                        )
                    )
                return HypothesisRead.model_validate(hypothesis)

        return await self._run("update hypothesis", work)

    async def create_child_hypothesis_and_edge(
        self,
        parent_id: UUID,
        form: HypothesisForm,
        actor: Actor | None = None,
    ) -> ActionResult:
        """
        Create a hypothesis and attach it as the last child of ``parent_id``.

        The parent row is locked before the next edge order is read, so two
        concurrent calls on one parent cannot pick the same order.

        Args:
            parent_id: Parent hypothesis.
            form: The child's fields.
            actor: Who is acting. Defaults to the owner.

        Returns:
            ActionResult carrying the child's ``HypothesisRead``.
        """
        statement = form.statement.strip()
        if not statement:
            return ActionResult.failure("Statement is required")

        async def work(events: list[ActivityEvent]) -> HypothesisRead:
            async with self._transaction() as session:
                await EdgeRepository(session).lock_structure()
                await self._require_hypothesis(session, parent_id, "Parent hypothesis not found", lock=True)
                child = await self._insert_hypothesis(session, form, statement, order=0)
                await EdgeRepository(session).append_child(parent_id, child.id)
                await self._mark_content_updated(session, parent_id)

                who = actor or Actor(
                    id=str(child.owner_id) if child.owner_id else None,
                    name=child.owner_name,
                )
                events.append(
                    ActivityEvent(
                        hypothesis_id=child.id,
                        actor_id=who.id,
                        actor_name=who.name,
                        type=ActivityType.HYPOTHESIS_CREATED,
                        summary=f"Created hypothesis: {child.statement}",
                    )
                )
                events.append(
                    ActivityEvent(
                        hypothesis_id=parent_id,
                        actor_id=who.id,
                        actor_name=who.name,
                        type=ActivityType.CHILD_ADDED,
                        summary=f'Linked "{child.statement}" as sub-hypothesis',
                        metadata={"childId": str(child.id), "childStatement": child.statement},
                    )
                )
                return HypothesisRead.model_validate(child)

        return await self._run("create child hypothesis", work)

    async def _check_new_edge(
        self,
        session: AsyncSession,
        parent_id: UUID,
        child_id: UUID,
        cycle_message: str,
    ) -> HypothesisModel:
        """Validate a prospective edge and return the child."""
        if parent_id == child_id:
            raise MutationRejected("Cannot make hypothesis a child of itself")

        edges = EdgeRepository(session)
        # Taken before any read so concurrent edits see each other's edges
        await edges.lock_structure()
        child = await self._require_hypothesis(session, child_id)
        await self._require_hypothesis(session, parent_id, "Parent hypothesis not found", lock=True)

        graph = await edges.load_graph()
        if graph.would_create_cycle(parent_id, child_id):
            raise MutationRejected(cycle_message)
        if graph.has_edge(parent_id, child_id):
            raise MutationRejected("This relationship already exists")
        return child

    async def move_hypothesis_to_parent(self, hypothesis_id: UUID, new_parent_id: UUID) -> ActionResult:
        """
        Reparent a hypothesis: drop every current parent edge, then attach it
        as the last child of ``new_parent_id``.

        Args:
            hypothesis_id: Hypothesis to move.
            new_parent_id: Its only parent afterwards.

        Returns:
            ActionResult without data.
        """

        async def work(events: list[ActivityEvent]) -> None:
            async with self._transaction() as session:
                await self._check_new_edge(
                    session,
                    new_parent_id,
                    hypothesis_id,
                    "Cannot move: would create a cycle (target is a descendant)",
                )
                edges = EdgeRepository(session)
                await edges.detach_child(hypothesis_id)
                await edges.append_child(new_parent_id, hypothesis_id)

        return await self._run("move hypothesis", work)

    async def link_existing_hypothesis(
        self,
        parent_id: UUID | None,
        child_id: UUID,
        actor: Actor | None = None,
    ) -> ActionResult:
        """
        Add a parent edge without removing existing ones.

        A ``None`` parent detaches ``child_id`` from all parents instead,
        turning it into a root.

        Args:
            parent_id: New additional parent, or None.
            child_id: Hypothesis to link.
            actor: Who is acting.

        Returns:
            ActionResult without data.
        """
        who = actor or Actor()

        async def work(events: list[ActivityEvent]) -> None:
            async with self._transaction() as session:
                if parent_id is None:
                    await EdgeRepository(session).detach_child(child_id)
                    return

                child = await self._check_new_edge(
                    session,
                    parent_id,
                    child_id,
                    "Cannot link: would create a cycle (target is a descendant)",
                )
                await EdgeRepository(session).append_child(parent_id, child_id)
                await self._mark_content_updated(session, parent_id)
                events.append(
                    ActivityEvent(
                        hypothesis_id=parent_id,
                        actor_id=who.id,
                        actor_name=who.name,
                        type=ActivityType.CHILD_ADDED,
                        summary=f'Linked "{child.statement}" as sub-hypothesis',
                        metadata={"childId": str(child_id), "childStatement": child.statement},
                    )
                )

        return await self._run("link hypothesis", work)

    async def reorder_hypotheses(self, ordered_ids: Sequence[UUID], parent_id: UUID | None = None) -> ActionResult:
        """
        Rewrite dense ordering for root hypotheses or for one parent's edges.

        Args:
            ordered_ids: Hypotheses in their new order; each gets its index.
            parent_id: Parent whose edges to reorder, or None for roots.

        Returns:
            ActionResult without data.
        """

        async def work(events: list[ActivityEvent]) -> None:
            async with self._transaction() as session:
                if parent_id is None:
                    await HypothesisRepository(session).set_root_order(ordered_ids)
                else:
                    await EdgeRepository(session).reorder_children(parent_id, ordered_ids)

        return await self._run("reorder", work)

    async def archive_hypothesis(
        self,
        hypothesis_id: UUID,
        is_archived: bool,
        actor: Actor | None = None,
    ) -> ActionResult:
        """Set or clear the archive flag; children are left untouched."""
        who = actor or Actor()

        async def work(events: list[ActivityEvent]) -> HypothesisRead:
            async with self._transaction() as session:
                hypothesis = await self._require_hypothesis(session, hypothesis_id)
                hypothesis.is_archived = is_archived
                await HypothesisRepository(session).update(hypothesis)
                if is_archived:
                    events.append(
                        ActivityEvent(
                            hypothesis_id=hypothesis.id,
                            actor_id=who.id,
                            actor_name=who.name,
                            type=ActivityType.HYPOTHESIS_ARCHIVED,
                            summary=f"Archived hypothesis: {hypothesis.statement}",
                        )
                    )
                return HypothesisRead.model_validate(hypothesis)

        return await self._run("archive hypothesis", work)

    async def delete_hypothesis(self, hypothesis_id: UUID, actor: Actor | None = None) -> ActionResult:
        """
        Hard-delete a hypothesis and every row that references it.

        The removal is logged on each former parent, since the hypothesis'
        own feed goes away with it.

        Args:
            hypothesis_id: Hypothesis to delete.
            actor: Who is acting.

        Returns:
            ActionResult without data.
        """
        who = actor or Actor()

        async def work(events: list[ActivityEvent]) -> None:
            async with self._transaction() as session:
                hypothesis = await self._require_hypothesis(session, hypothesis_id)
                statement = hypothesis.statement
                parent_ids = await EdgeRepository(session).parent_ids(hypothesis_id)

                await ActivityRepository(session).delete_for_hypothesis(hypothesis_id)
                await EdgeRepository(session).delete_touching(hypothesis_id)
                await EvidenceRepository(session).delete_for_hypothesis(hypothesis_id)
                await RefutationRepository(session).delete_for_hypothesis(hypothesis_id)
                await WatcherRepository(session).delete_for_hypothesis(hypothesis_id)
                await HypothesisRepository(session).delete_by_id(hypothesis_id)

            for parent_id in parent_ids:
                events.append(
                    ActivityEvent(
                        hypothesis_id=parent_id,
                        actor_id=who.id,
                        actor_name=who.name,
                        type=ActivityType.HYPOTHESIS_DELETED,
                        summary=f"Deleted sub-hypothesis: {statement}",
                        metadata={"deletedId": str(hypothesis_id), "deletedStatement": statement},
                    )
                )

        return await self._run("delete hypothesis", work)

    # ------------------------------------------------------------------
    # Evidence and refutations
    # ------------------------------------------------------------------

    async def _store_evidence(
        self,
        events: list[ActivityEvent],
        evidence: EvidenceModel,
        event_summary: str,
        actor: Actor,
        classification: EvidenceClassification | None = None,
    ) -> EvidenceMutationResult:
        """Insert evidence, mark staleness, log it and cascade unless pinned."""
        async with self._transaction() as session:
            hypothesis = await self._require_hypothesis(session, evidence.hypothesis_id, lock=True)
            manual = hypothesis.confidence_is_manual

            await EvidenceRepository(session).create(evidence)
            await self._mark_content_updated(session, hypothesis.id)
            cascade_result = None if manual else await self._cascade.recalculate_with_cascade(session, hypothesis.id)

            events.append(
                ActivityEvent(
                    hypothesis_id=hypothesis.id,
                    actor_id=actor.id,
                    actor_name=actor.name,
                    type=ActivityType.EVIDENCE_ADDED,
                    summary=event_summary,
                )
            )
            return EvidenceMutationResult(
                evidence=EvidenceRead.model_validate(evidence),
                classification=classification,
                cascade_result=cascade_result,
                skipped_auto_calc=manual,
            )

    async def _add_free_text(
        self,
        hypothesis_id: UUID,
        text: str,
        actor: Actor | None,
        challenge: bool,
    ) -> ActionResult:
        summary = (text or "").strip()
        if not summary:
            return ActionResult.failure("Challenge text is required" if challenge else "Evidence text is required")
        who = actor or Actor()
        default_direction = EvidenceDirection.REFUTES if challenge else EvidenceDirection.SUPPORTS

        async def work(events: list[ActivityEvent]) -> EvidenceMutationResult:
            # Classification happens outside the write transaction
            async with self._session_factory() as session:
                hypothesis = await self._require_hypothesis(session, hypothesis_id)
                statement, manual = hypothesis.statement, hypothesis.confidence_is_manual

            if manual:
                classification = EvidenceClassification(direction=default_direction, strength=DEFAULT_STRENGTH)
            else:
                classification = await self._classify(statement, summary)
                if challenge and not classification.direction.is_refuting:
                    classification = classification.model_copy(update={"direction": EvidenceDirection.REFUTES})

            evidence = EvidenceModel(
                hypothesis_id=hypothesis_id,
                kind=EvidenceKind.RESEARCH,
                direction=classification.direction,
                strength=classification.strength,
                quality=DEFAULT_STRENGTH,
                summary=summary,
                source_url=None,
            )
            prefix = "Added challenge" if challenge else "Added evidence"
            return await self._store_evidence(events, evidence, f"{prefix}: {_excerpt(summary)}", who, classification)

        return await self._run("add challenge" if challenge else "add evidence", work)

    async def add_evidence_simple(self, hypothesis_id: UUID, text: str, actor: Actor | None = None) -> ActionResult:
        """
        Add free-text evidence, classified by the evidence classifier.

        Classification is skipped for MANUAL hypotheses (SUPPORTS/3 is used).

        Args:
            hypothesis_id: Target hypothesis.
            text: Evidence text.
            actor: Who is acting.

        Returns:
            ActionResult carrying an ``EvidenceMutationResult``.
        """
        return await self._add_free_text(hypothesis_id, text, actor, challenge=False)

    async def add_challenge_simple(self, hypothesis_id: UUID, text: str, actor: Actor | None = None) -> ActionResult:
        """
        Add a free-text challenge.

        Challenges are always refuting: a supporting or neutral classification
        is turned into REFUTES, keeping the classified strength.
        """
        return await self._add_free_text(hypothesis_id, text, actor, challenge=True)

    async def add_evidence(
        self,
        hypothesis_id: UUID,
        form: EvidenceForm,
        actor: Actor | None = None,
    ) -> ActionResult:
        """Add structured evidence with an explicit direction and strength."""
        summary = form.summary.strip()
        if not summary:
            return ActionResult.failure("Summary is required")
        who = actor or Actor()

        async def work(events: list[ActivityEvent]) -> EvidenceMutationResult:
            evidence = EvidenceModel(
                hypothesis_id=hypothesis_id,
                kind=form.kind,
                direction=form.direction,
                strength=clamp_strength(form.strength),
                quality=clamp_strength(form.quality),
                summary=summary,
                source_url=_clean_optional(form.source_url),
                owner_name=who.name,
            )
            return await self._store_evidence(events, evidence, f"Added evidence: {_excerpt(summary)}", who)

        return await self._run("add evidence", work)

    async def update_evidence(self, evidence_id: UUID, text: str, actor: Actor | None = None) -> ActionResult:
        """
        Replace an evidence text and reclassify it.

        MANUAL hypotheses keep the stored direction and strength.

        Args:
            evidence_id: Evidence to edit.
            text: New evidence text.
            actor: Who is acting.

        Returns:
            ActionResult carrying an ``EvidenceMutationResult``.
        """
        summary = (text or "").strip()
        if not summary:
            return ActionResult.failure("Evidence text is required")
        who = actor or Actor()

        async def work(events: list[ActivityEvent]) -> EvidenceMutationResult:
            async with self._session_factory() as session:
                existing = await EvidenceRepository(session).get_with_hypothesis(evidence_id)
                if existing is None:
                    raise MutationRejected("Evidence not found")
                statement = existing.hypothesis.statement
                manual = existing.hypothesis.confidence_is_manual
                classification = EvidenceClassification(
                    direction=existing.direction,
                    strength=clamp_strength(existing.strength),
                )

            if not manual:
                classification = await self._classify(statement, summary)

            async with self._transaction() as session:
                evidence = await EvidenceRepository(session).get_by_id(evidence_id)
                if evidence is None:
                    raise MutationRejected("Evidence not found")
                hypothesis = await self._require_hypothesis(session, evidence.hypothesis_id, lock=True)
                manual = hypothesis.confidence_is_manual

                evidence.summary = summary
                evidence.direction = classification.direction
                evidence.strength = classification.strength
                await EvidenceRepository(session).update(evidence)
                await self._mark_content_updated(session, hypothesis.id)
                cascade_result = None if manual else await self._cascade.recalculate_with_cascade(session, hypothesis.id)

                events.append(
                    ActivityEvent(
                        hypothesis_id=hypothesis.id,
                        actor_id=who.id,
                        actor_name=who.name,
                        type=ActivityType.EVIDENCE_UPDATED,
                        summary=f"Updated evidence: {_excerpt(summary)}",
                    )
                )
                return EvidenceMutationResult(
                    evidence=EvidenceRead.model_validate(evidence),
                    classification=classification,
                    cascade_result=cascade_result,
                    skipped_auto_calc=manual,
                )

        return await self._run("update evidence", work)

    async def delete_evidence(self, evidence_id: UUID, actor: Actor | None = None) -> ActionResult:
        """Delete evidence and recalculate its hypothesis unless pinned."""
        who = actor or Actor()

        async def work(events: list[ActivityEvent]) -> EvidenceMutationResult:
            async with self._transaction() as session:
                evidence = await EvidenceRepository(session).get_by_id(evidence_id)
                if evidence is None:
                    raise MutationRejected("Evidence not found")
                hypothesis = await self._require_hypothesis(session, evidence.hypothesis_id, lock=True)
                manual = hypothesis.confidence_is_manual

                await EvidenceRepository(session).delete_by_id(evidence_id)
                await self._mark_content_updated(session, hypothesis.id)
                cascade_result = None if manual else await self._cascade.recalculate_with_cascade(session, hypothesis.id)

                # There is no EVIDENCE_DELETED type
                events.append(
                    ActivityEvent(
                        hypothesis_id=hypothesis.id,
                        actor_id=who.id,
                        actor_name=who.name,
                        type=ActivityType.EVIDENCE_UPDATED,
                        summary=f"Deleted evidence from: {hypothesis.statement}",
                    )
                )
                return EvidenceMutationResult(cascade_result=cascade_result, skipped_auto_calc=manual)

        return await self._run("delete evidence", work)

    async def add_refutation(self, hypothesis_id: UUID, form: RefutationForm, actor: Actor | None = None) -> ActionResult:
        """Record a structured challenge. Refutations do not affect confidence."""
        summary = form.summary.strip()
        if not summary:
            return ActionResult.failure("Summary is required")

        async def work(events: list[ActivityEvent]) -> RefutationRead:
            async with self._transaction() as session:
                await self._require_hypothesis(session, hypothesis_id)
                refutation = await RefutationRepository(session).create(
                    RefutationModel(
                        hypothesis_id=hypothesis_id,
                        type=form.type,
                        summary=summary,
                        proposed_test=_clean_optional(form.proposed_test),
                        impact=_clean_optional(form.impact),
                        owner_name=actor.name if actor else None,
                    )
                )
                return RefutationRead.model_validate(refutation)

        return await self._run("add refutation", work)

    # ------------------------------------------------------------------
    # Confidence
    # ------------------------------------------------------------------

    async def recalculate_confidence(self, hypothesis_id: UUID) -> ActionResult:
        """
        Recalculate one hypothesis from its evidence and its children's
        stored confidences, without cascading.

        Returns:
            ActionResult with ``{"confidence": int, "change": ConfidenceChange | None}``.
        """

        async def work(events: list[ActivityEvent]) -> dict[str, Any]:
            async with self._transaction() as session:
                hypothesis = await self._require_hypothesis(session, hypothesis_id, lock=True)
                change = await self._cascade.recalculate_node(session, hypothesis_id)
                return {"confidence": hypothesis.confidence, "change": change}

        return await self._run("recalculate confidence", work)

    async def recalculate_all_confidences(self) -> ActionResult:
        """Recalculate the whole graph leaves-first; returns a ``BatchRecalculationResult``."""

        async def work(events: list[ActivityEvent]) -> Any:
            async with self._transaction() as session:
                return await self._cascade.recalculate_all(session)

        return await self._run("recalculate confidences", work)

    async def reclassify_all_evidence(self) -> ActionResult:
        """
        Re-run the classifier over the evidence of every AUTO hypothesis.

        Changed classifications are saved, then each affected hypothesis is
        cascaded. Confidence changes are merged per hypothesis.

        Returns:
            ActionResult carrying a ``ReclassificationResult``.
        """

        async def work(events: list[ActivityEvent]) -> ReclassificationResult:
            async with self._session_factory() as session:
                candidates = [
                    e for e in await EvidenceRepository(session).list_all() if not e.hypothesis.confidence_is_manual
                ]
                statements = {e.id: e.hypothesis.statement for e in candidates}

            reclassified: list[ReclassifiedEvidence] = []
            for evidence in candidates:
                classification = await self._classify(statements[evidence.id], evidence.summary)
                if classification.direction == evidence.direction and classification.strength == evidence.strength:
                    continue
                reclassified.append(
                    ReclassifiedEvidence(
                        evidence_id=evidence.id,
                        summary=evidence.summary[:50],
                        old_direction=evidence.direction,
                        new_direction=classification.direction,
                        old_strength=evidence.strength,
                        new_strength=classification.strength,
                        reasoning=classification.reasoning,
                    )
                )

            merged: dict[UUID, ConfidenceChange] = {}
            if reclassified:
                changed_ids = {r.evidence_id for r in reclassified}
                hypothesis_ids = list(dict.fromkeys(e.hypothesis_id for e in candidates if e.id in changed_ids))
                async with self._transaction() as session:
                    repo = EvidenceRepository(session)
                    for change in reclassified:
                        evidence = await repo.get_by_id(change.evidence_id)
                        if evidence is None:
                            continue
                        evidence.direction = change.new_direction
                        evidence.strength = change.new_strength
                    await session.flush()

                    for hypothesis_id in hypothesis_ids:
                        result = await self._cascade.recalculate_with_cascade(session, hypothesis_id)
                        for update in result.updated:
                            first = merged.get(update.id)
                            merged[update.id] = ConfidenceChange(
                                id=update.id,
                                old=first.old if first else update.old,
                                new=update.new,
                            )

            self._logger.info(f"Reclassified {len(reclassified)} evidence item(s), {len(merged)} confidence change(s)")
            return ReclassificationResult(
                evidence_reclassified=len(reclassified),
                confidence_updated=len(merged),
                evidence=reclassified,
                confidence=list(merged.values()),
            )

        return await self._run("reclassify evidence", work)

    async def audit_confidences(self) -> ActionResult:
        """Compare stored confidence with the value implied by each node's own evidence."""

        async def work(events: list[ActivityEvent]) -> list[ConfidenceAuditEntry]:
            async with self._session_factory() as session:
                hypotheses = await HypothesisRepository(session).list_with_evidence()
                entries = []
                for hypothesis in hypotheses:
                    calculated = calculate_confidence(hypothesis.evidence)
                    entries.append(
                        ConfidenceAuditEntry(
                            hypothesis_id=hypothesis.id,
                            statement=hypothesis.statement,
                            current_confidence=hypothesis.confidence,
                            calculated_confidence=calculated,
                            confidence_mode=hypothesis.confidence_mode,
                            needs_update=hypothesis.confidence != calculated,
                            evidence=[EvidenceRead.model_validate(e) for e in hypothesis.evidence],
                        )
                    )
                return entries

        return await self._run("audit confidences", work)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def get_ancestor_ids(self, hypothesis_id: UUID) -> list[UUID]:
        """Get every ancestor of a hypothesis, nearest first."""
        async with self._session_factory() as session:
            graph = await EdgeRepository(session).load_graph()
        return graph.ancestor_ids(hypothesis_id)

    async def get_hypotheses_with_relations(self) -> list[HypothesisWithRelations]:
        """
        Fetch every non-archived hypothesis with all relations attached.

        Returns:
            Hypotheses ordered by (order, created_at).
        """
        async with self._session_factory() as session:
            hypotheses = await HypothesisRepository(session).list_with_relations()
            return [HypothesisWithRelations.from_model(h) for h in hypotheses]

    async def get_activities(self, hypothesis_id: UUID, limit: int = 100) -> list[ActivityRead]:
        return await self._recorder.activities_for_hypothesis(hypothesis_id, limit=limit)

    async def get_user_activities(
        self,
        user_id: UUID,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[ActivityRead]:
        return await self._recorder.activities_for_user(user_id, since=since, limit=limit)

    # ------------------------------------------------------------------
    # Ownership and watchers
    # ------------------------------------------------------------------

    async def get_all_users(self) -> ActionResult:
        async def work(events: list[ActivityEvent]) -> list[UserRead]:
            async with self._session_factory() as session:
                return [UserRead.model_validate(u) for u in await UserRepository(session).list_all()]

        return await self._run("get users", work)

    async def set_owner(self, hypothesis_id: UUID, owner_id: UUID | None, actor: Actor | None = None) -> ActionResult:
        """Assign or clear the owner; the display name is copied onto the hypothesis."""
        who = actor or Actor()

        async def work(events: list[ActivityEvent]) -> HypothesisRead:
            async with self._transaction() as session:
                hypothesis = await self._require_hypothesis(session, hypothesis_id)
                owner_name = await UserRepository(session).get_display_name(owner_id)
                hypothesis.owner_id = owner_id
                hypothesis.owner_name = owner_name
                await HypothesisRepository(session).update(hypothesis)
                events.append(
                    ActivityEvent(
                        hypothesis_id=hypothesis_id,
                        actor_id=who.id,
                        actor_name=who.name,
                        type=ActivityType.OWNER_CHANGED,
                        summary=f"Assigned to {owner_name or 'no one'}",
                        metadata={
                            "newOwnerId": str(owner_id) if owner_id else None,
                            "newOwnerName": owner_name,
                        },
                    )
                )
                return HypothesisRead.model_validate(hypothesis)

        return await self._run("set owner", work)

    async def watch(self, hypothesis_id: UUID, user_id: UUID) -> ActionResult:
        """Start watching a hypothesis; watching twice is a no-op."""

        async def work(events: list[ActivityEvent]) -> None:
            async with self._transaction() as session:
                repo = WatcherRepository(session)
                if await repo.find(hypothesis_id, user_id) is None:
                    await repo.create(WatcherModel(hypothesis_id=hypothesis_id, user_id=user_id))

        return await self._run("watch hypothesis", work)

    async def unwatch(self, hypothesis_id: UUID, user_id: UUID) -> ActionResult:
        async def work(events: list[ActivityEvent]) -> None:
            async with self._transaction() as session:
                await WatcherRepository(session).remove(hypothesis_id, user_id)

        return await self._run("unwatch hypothesis", work)

    async def is_watching(self, hypothesis_id: UUID, user_id: UUID) -> ActionResult:
        async def work(events: list[ActivityEvent]) -> bool:
            async with self._session_factory() as session:
                return await WatcherRepository(session).find(hypothesis_id, user_id) is not None

        return await self._run("check watch status", work)

    async def get_watchers(self, hypothesis_id: UUID) -> ActionResult:
        async def work(events: list[ActivityEvent]) -> list[UserRead]:
            async with self._session_factory() as session:
                users = await WatcherRepository(session).list_users(hypothesis_id)
                return [UserRead.model_validate(u) for u in users]

        return await self._run("get watchers", work)

    # ------------------------------------------------------------------
    # Graph layout
    # ------------------------------------------------------------------

    async def save_node_position(self, hypothesis_id: UUID, x: float, y: float) -> ActionResult:
        return await self.save_node_positions([NodePosition(id=hypothesis_id, x=x, y=y)], action="save position")

    async def save_node_positions(self, positions: Sequence[NodePosition], action: str = "save positions") -> ActionResult:
        """Store graph view coordinates for several nodes in one transaction."""

        async def work(events: list[ActivityEvent]) -> None:
            async with self._transaction() as session:
                for position in positions:
                    hypothesis = await self._require_hypothesis(session, position.id)
                    hypothesis.graph_x = position.x
                    hypothesis.graph_y = position.y

        return await self._run(action, work)

    # ------------------------------------------------------------------
    # AI cache slots
    # ------------------------------------------------------------------

    async def save_executive_summary(self, hypothesis_id: UUID, summary: ExecutiveSummary) -> ActionResult:
        """
        Cache an executive summary produced elsewhere.

        Returns:
            ActionResult with the summary fields plus ``generated_at``.
        """

        async def work(events: list[ActivityEvent]) -> dict[str, Any]:
            async with self._transaction() as session:
                hypothesis = await self._require_hypothesis(session, hypothesis_id)
                now = datetime.now(timezone.utc)
                hypothesis.exec_summary_validation = summary.validation_plan
                hypothesis.exec_summary_progress = summary.progress_summary
                hypothesis.exec_summary_big_picture = summary.bigger_picture
                hypothesis.exec_summary_generated_at = now
                await HypothesisRepository(session).update(hypothesis)
                return {**summary.model_dump(), "generated_at": now}

        return await self._run("save executive summary", work)

    async def delete_executive_summary(self, hypothesis_id: UUID) -> ActionResult:
        async def work(events: list[ActivityEvent]) -> None:
            async with self._transaction() as session:
                hypothesis = await self._require_hypothesis(session, hypothesis_id)
                hypothesis.exec_summary_validation = None
                hypothesis.exec_summary_progress = None
                hypothesis.exec_summary_big_picture = None
                hypothesis.exec_summary_generated_at = None
                await HypothesisRepository(session).update(hypothesis)

        return await self._run("delete executive summary", work)

    async def is_executive_summary_stale(self, hypothesis_id: UUID) -> ActionResult:
        """
        Check whether the cached summary predates the last content change.

        A hypothesis without a summary counts as stale.
        """

        async def work(events: list[ActivityEvent]) -> bool:
            async with self._session_factory() as session:
                hypothesis = await self._require_hypothesis(session, hypothesis_id)
                if hypothesis.exec_summary_generated_at is None:
                    return True
                return _as_utc(hypothesis.content_updated_at) > _as_utc(hypothesis.exec_summary_generated_at)

        return await self._run("check summary staleness", work)

    async def save_validation_suggestions(
        self,
        hypothesis_id: UUID,
        suggestions: Sequence[dict[str, Any]],
    ) -> ActionResult:
        async def work(events: list[ActivityEvent]) -> dict[str, Any]:
            async with self._transaction() as session:
                hypothesis = await self._require_hypothesis(session, hypothesis_id)
                now = datetime.now(timezone.utc)
                hypothesis.validation_suggestions = list(suggestions)
                hypothesis.validation_suggestions_at = now
                await HypothesisRepository(session).update(hypothesis)
                return {"suggestions": list(suggestions), "generated_at": now}

        return await self._run("save suggestions", work)

    async def remove_validation_suggestion(self, hypothesis_id: UUID, index: int) -> ActionResult:
        """Drop one cached suggestion, typically after it was turned into a child."""

        async def work(events: list[ActivityEvent]) -> None:
            async with self._transaction() as session:
                hypothesis = await HypothesisRepository(session).get_by_id(hypothesis_id)
                if hypothesis is None or not hypothesis.validation_suggestions:
                    raise MutationRejected("No suggestions found")
                hypothesis.validation_suggestions = [
                    s for i, s in enumerate(hypothesis.validation_suggestions) if i != index
                ]
                await HypothesisRepository(session).update(hypothesis)

        return await self._run("remove suggestion", work)

    async def delete_validation_suggestions(self, hypothesis_id: UUID) -> ActionResult:
        async def work(events: list[ActivityEvent]) -> None:
            async with self._transaction() as session:
                hypothesis = await self._require_hypothesis(session, hypothesis_id)
                hypothesis.validation_suggestions = None
                hypothesis.validation_suggestions_at = None
                await HypothesisRepository(session).update(hypothesis)

        return await self._run("delete suggestions", work)
