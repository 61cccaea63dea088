"""Graph integrity over the "depends on" edge set.

The hypothesis graph is a DAG: edges point from a parent to a child and a
node may have several parents. ``HypothesisGraph`` is an in-memory adjacency
index built from the edge rows of one transaction. Every traversal keeps a
visited set, so queries terminate even on corrupt (cyclic) data.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Collection, Hashable, Iterable
from dataclasses import dataclass, field
from typing import Generic, TypeVar

logger = logging.getLogger(__name__)

NodeId = TypeVar("NodeId", bound=Hashable)


@dataclass
class ProcessingOrder(Generic[NodeId]):
    """Result of ordering nodes so children come before their parents."""

    waves: list[list[NodeId]] = field(default_factory=list)
    unresolved: list[NodeId] = field(default_factory=list)

    @property
    def ordered(self) -> list[NodeId]:
        return [node for wave in self.waves for node in wave]

    @property
    def cycle_detected(self) -> bool:
        return bool(self.unresolved)


class HypothesisGraph(Generic[NodeId]):
    """Parent/child adjacency index for the hypothesis DAG."""

    def __init__(self, edges: Iterable[tuple[NodeId, NodeId]] = ()) -> None:
        """
        Build the index.

        Args:
            edges: ``(parent_id, child_id)`` pairs, in per-parent order.
        """
        self._children: dict[NodeId, list[NodeId]] = {}
        self._parents: dict[NodeId, list[NodeId]] = {}
        for parent_id, child_id in edges:
            self.add_edge(parent_id, child_id)

    def add_edge(self, parent_id: NodeId, child_id: NodeId) -> None:
        children = self._children.setdefault(parent_id, [])
        if child_id not in children:
            children.append(child_id)
            self._parents.setdefault(child_id, []).append(parent_id)

    def has_edge(self, parent_id: NodeId, child_id: NodeId) -> bool:
        return child_id in self._children.get(parent_id, [])

    def parents_of(self, node_id: NodeId) -> list[NodeId]:
        return list(self._parents.get(node_id, []))

    def children_of(self, node_id: NodeId) -> list[NodeId]:
        return list(self._children.get(node_id, []))

    def is_descendant(self, candidate_descendant: NodeId, ancestor_id: NodeId) -> bool:
        """
        Check whether ``ancestor_id`` is reachable upwards from ``candidate_descendant``.

        A node counts as reachable from itself. Attaching X under P must be
        rejected when ``is_descendant(P, X)`` holds.
        """
        visited: set[NodeId] = set()
        queue: deque[NodeId] = deque([candidate_descendant])

        while queue:
            current = queue.popleft()
            if current in visited:
                continue
            visited.add(current)

            if current == ancestor_id:
                return True

            for parent_id in self._parents.get(current, []):
                if parent_id not in visited:
                    queue.append(parent_id)

        return False

    def would_create_cycle(self, parent_id: NodeId, child_id: NodeId) -> bool:
        """Check whether adding ``parent_id -> child_id`` closes a cycle."""
        return self.is_descendant(parent_id, child_id)

    def ancestor_ids(self, node_id: NodeId) -> list[NodeId]:
        """Collect all ancestors breadth-first, nearest first, without duplicates."""
        ancestors: list[NodeId] = []
        visited: set[NodeId] = {node_id}
        queue: deque[NodeId] = deque([node_id])

        while queue:
            current = queue.popleft()
            for parent_id in self._parents.get(current, []):
                if parent_id in visited:
                    continue
                visited.add(parent_id)
                ancestors.append(parent_id)
                queue.append(parent_id)

        return ancestors

    def processing_order(self, node_ids: Collection[NodeId]) -> ProcessingOrder[NodeId]:
        """
        Order ``node_ids`` so every node comes after its children.

        Nodes are released in waves: a node is eligible once each of its
        children that belongs to ``node_ids`` has been released. Children
        outside the set are treated as already final. A wave that releases
        nothing means the remaining nodes sit on a cycle; they are returned
        as ``unresolved`` instead of raising.
        """
        members = set(node_ids)
        done: set[NodeId] = set()
        remaining = [node for node in dict.fromkeys(node_ids)]
        result: ProcessingOrder[NodeId] = ProcessingOrder()

        while remaining:
            wave: list[NodeId] = []
            next_remaining: list[NodeId] = []
            for node in remaining:
                pending = [c for c in self._children.get(node, []) if c in members and c not in done]
                if pending:
                    next_remaining.append(node)
                else:
                    wave.append(node)

            if not wave:
                logger.warning(f"Cycle detected in hypothesis graph; {len(remaining)} node(s) unresolved")
                result.unresolved = next_remaining
                break

            done.update(wave)
            result.waves.append(wave)
            remaining = next_remaining

        return result
