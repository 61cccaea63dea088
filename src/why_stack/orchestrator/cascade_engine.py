"""
Cascade engine.

Recomputes stored confidences from evidence and pushes changes up the
hypothesis DAG. Each hypothesis' final confidence is its own evidence score
averaged with the final confidences of its direct children, so a change to
one node can only affect that node and its ancestors.

The engine works inside a session supplied by the caller and only flushes;
committing belongs to the orchestrator. MANUAL nodes are never written, but
their pinned value still feeds their parents.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from why_stack.db.models import EvidenceModel, HypothesisModel
from why_stack.db.repository import EdgeRepository, EvidenceRepository, HypothesisRepository
from why_stack.orchestrator.schemas import (
    BatchConfidenceChange,
    BatchRecalculationResult,
    CascadeResult,
    ConfidenceChange,
)
from why_stack.reasoning.confidence import (
    BASE_CONFIDENCE,
    calculate_cascading_confidence,
    calculate_confidence,
)
from why_stack.reasoning.graph import HypothesisGraph

logger = logging.getLogger(__name__)


class CascadeEngine:
    """Recalculates hypothesis confidence for one node, its ancestors or the whole graph."""

    def _final_confidence(
        self,
        node_id: UUID,
        graph: HypothesisGraph[UUID],
        evidence: Mapping[UUID, Sequence[EvidenceModel]],
        finals: Mapping[UUID, int],
    ) -> tuple[int, int]:
        """Return ``(own, final)`` for a node given its children's current finals."""
        own = calculate_confidence(evidence.get(node_id, []))
        children = [finals.get(child_id, BASE_CONFIDENCE) for child_id in graph.children_of(node_id)]
        return own, calculate_cascading_confidence(own, children)

    async def _load_neighbourhood(
        self,
        session: AsyncSession,
        graph: HypothesisGraph[UUID],
        node_ids: Sequence[UUID],
    ) -> tuple[dict[UUID, HypothesisModel], dict[UUID, list[EvidenceModel]]]:
        needed = set(node_ids)
        for node_id in node_ids:
            needed.update(graph.children_of(node_id))
        nodes = await HypothesisRepository(session).get_many(needed)
        evidence = await EvidenceRepository(session).list_by_hypothesis(node_ids)
        return nodes, evidence

    async def recalculate_node(self, session: AsyncSession, hypothesis_id: UUID) -> ConfidenceChange | None:
        """
        Recalculate one hypothesis without propagating to its parents.

        Children contribute their currently stored confidence.

        Args:
            session: Active session.
            hypothesis_id: Hypothesis to recalculate.

        Returns:
            The change, or None if the value was already current or pinned.
        """
        graph = await EdgeRepository(session).load_graph()
        nodes, evidence = await self._load_neighbourhood(session, graph, [hypothesis_id])
        node = nodes.get(hypothesis_id)
        if node is None or node.confidence_is_manual:
            return None

        finals = {node_id: n.confidence for node_id, n in nodes.items()}
        _, new_confidence = self._final_confidence(hypothesis_id, graph, evidence, finals)
        if new_confidence == node.confidence:
            return None

        change = ConfidenceChange(id=hypothesis_id, old=node.confidence, new=new_confidence)
        node.confidence = new_confidence
        await session.flush()
        return change

    async def recalculate_with_cascade(self, session: AsyncSession, start_id: UUID) -> CascadeResult:
        """
        Recalculate a hypothesis and every ancestor above it.

        The affected set is ``start_id`` plus its ancestors. It is processed in
        waves so that each node is recomputed exactly once, after all of its
        affected children, even when several paths lead to the same ancestor.
        Siblings, unrelated trees and descendants are not touched. Nodes the
        waves cannot order because of a cycle are still recomputed once each,
        nearest to ``start_id`` first.

        Args:
            session: Active session.
            start_id: The hypothesis whose evidence changed.

        Returns:
            Changed nodes with old and new values, in processing order.
        """
        graph = await EdgeRepository(session).load_graph()
        affected = [start_id, *graph.ancestor_ids(start_id)]
        order = graph.processing_order(affected)
        nodes, evidence = await self._load_neighbourhood(session, graph, affected)

        finals = {node_id: n.confidence for node_id, n in nodes.items()}
        updated: list[ConfidenceChange] = []

        # Nodes caught in a cycle follow in BFS order, reading whatever their children hold by then
        unresolved = set(order.unresolved)
        leftovers = [node_id for node_id in affected if node_id in unresolved]

        for node_id in [*order.ordered, *leftovers]:
            node = nodes.get(node_id)
            if node is None or node.confidence_is_manual:
                continue

            _, new_confidence = self._final_confidence(node_id, graph, evidence, finals)
            if new_confidence != node.confidence:
                updated.append(ConfidenceChange(id=node_id, old=node.confidence, new=new_confidence))
                node.confidence = new_confidence
                finals[node_id] = new_confidence

        await session.flush()
        logger.debug(f"Cascade from {start_id} updated {len(updated)} hypothesis(es)")
        return CascadeResult(updated=updated)

    async def recalculate_all(self, session: AsyncSession) -> BatchRecalculationResult:
        """
        Recalculate every hypothesis, leaves first.

        A cycle in historical data does not abort the batch: nodes on or above
        the cycle keep their stored value and are reported as unresolved.

        Args:
            session: Active session.

        Returns:
            Totals and the list of persisted changes.
        """
        hypotheses = await HypothesisRepository(session).list_all()
        graph = await EdgeRepository(session).load_graph()
        by_id = {h.id: h for h in hypotheses}
        evidence = await EvidenceRepository(session).list_by_hypothesis(by_id)

        base = {h.id: calculate_confidence(evidence.get(h.id, [])) for h in hypotheses}
        order = graph.processing_order(list(by_id))

        finals: dict[UUID, int] = {}
        for node_id in order.ordered:
            node = by_id[node_id]
            if node.confidence_is_manual:
                finals[node_id] = node.confidence
                continue
            children = [finals.get(child_id, BASE_CONFIDENCE) for child_id in graph.children_of(node_id)]
            finals[node_id] = calculate_cascading_confidence(base[node_id], children)

        updates: list[BatchConfidenceChange] = []
        for hypothesis in hypotheses:
            new_confidence = finals.get(hypothesis.id, hypothesis.confidence)
            if hypothesis.confidence_is_manual or new_confidence == hypothesis.confidence:
                continue
            updates.append(
                BatchConfidenceChange(
                    id=hypothesis.id,
                    old=hypothesis.confidence,
                    new=new_confidence,
                    base=base[hypothesis.id],
                )
            )
            hypothesis.confidence = new_confidence

        await session.flush()

        message = f"Recalculated {len(updates)} of {len(hypotheses)} hypotheses with cascading"
        if order.cycle_detected:
            message += f"; {len(order.unresolved)} left unresolved by a cycle"
        logger.info(message)

        return BatchRecalculationResult(
            total=len(hypotheses),
            updated=len(updates),
            updates=updates,
            cycle_detected=order.cycle_detected,
            unresolved_ids=order.unresolved,
            message=message,
        )
