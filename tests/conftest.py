from collections.abc import AsyncIterator

import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from why_stack.agents.evidence_classifier import EvidenceClassification, EvidenceClassifierBase
from why_stack.db.session import create_engine, create_schema, create_session_factory
from why_stack.orchestrator import HypothesisOrchestrator
from why_stack.types import EvidenceDirection


class StubClassifier(EvidenceClassifierBase):
    """Deterministic classifier; records every call it receives."""

    def __init__(self, direction: EvidenceDirection = EvidenceDirection.SUPPORTS, strength: int = 5) -> None:
        self.result = EvidenceClassification(direction=direction, strength=strength, reasoning="stub")
        self.calls: list[tuple[str, str]] = []

    async def classify(self, hypothesis_statement: str, evidence_text: str) -> EvidenceClassification:
        self.calls.append((hypothesis_statement, evidence_text))
        return self.result


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncIterator[AsyncEngine]:
    engine = create_engine(url=f"sqlite+aiosqlite:///{tmp_path / 'why_stack.db'}")
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture
async def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest_asyncio.fixture
async def classifier() -> StubClassifier:
    return StubClassifier()


@pytest_asyncio.fixture
async def orchestrator(
    session_factory: async_sessionmaker[AsyncSession],
    classifier: StubClassifier,
) -> HypothesisOrchestrator:
    return HypothesisOrchestrator(session_factory, classifier=classifier)
