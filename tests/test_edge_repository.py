from types import SimpleNamespace
from uuid import uuid4

import pytest

from why_stack.db.repository import STRUCTURE_LOCK_KEY, EdgeRepository
from why_stack.orchestrator import HypothesisForm


class RecordingSession:
    """Stands in for an AsyncSession bound to a given dialect."""

    def __init__(self, dialect: str) -> None:
        self._bind = SimpleNamespace(dialect=SimpleNamespace(name=dialect))
        self.statements: list = []

    def get_bind(self):
        return self._bind

    async def execute(self, statement):
        self.statements.append(statement)


@pytest.mark.asyncio
async def test_lock_structure_takes_advisory_lock_on_postgres() -> None:
    session = RecordingSession("postgresql")

    await EdgeRepository(session).lock_structure()  # type: ignore[arg-type]

    assert len(session.statements) == 1
    statement = session.statements[0]
    assert "pg_advisory_xact_lock" in str(statement)
    assert list(statement.compile().params.values()) == [STRUCTURE_LOCK_KEY]


@pytest.mark.asyncio
async def test_lock_structure_is_a_no_op_on_sqlite(session_factory) -> None:
    recording = RecordingSession("sqlite")
    await EdgeRepository(recording).lock_structure()  # type: ignore[arg-type]
    assert recording.statements == []

    async with session_factory() as session, session.begin():
        await EdgeRepository(session).lock_structure()
        assert (await EdgeRepository(session).load_graph()).children_of(uuid4()) == []


@pytest.mark.asyncio
async def test_structural_edits_take_the_lock(orchestrator, monkeypatch) -> None:
    calls: list[str] = []

    async def counting_lock(self) -> None:
        calls.append("lock")

    root = (await orchestrator.create_hypothesis(HypothesisForm(statement="Root"))).data.id
    other = (await orchestrator.create_hypothesis(HypothesisForm(statement="Other"))).data.id
    target = (await orchestrator.create_hypothesis(HypothesisForm(statement="Target"))).data.id
    monkeypatch.setattr(EdgeRepository, "lock_structure", counting_lock)

    child = await orchestrator.create_child_hypothesis_and_edge(root, HypothesisForm(statement="Child"))
    assert child.ok and calls == ["lock"]

    assert (await orchestrator.link_existing_hypothesis(other, child.data.id)).ok
    assert calls == ["lock", "lock"]

    assert (await orchestrator.move_hypothesis_to_parent(child.data.id, target)).ok
    assert len(calls) == 3
