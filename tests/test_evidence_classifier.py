"""
Tests for the LLM-backed evidence classifier.

The LLM client is replaced with a fake that returns canned JSON, so these
tests cover prompt construction and response parsing only.
"""

from typing import Any

import pytest

from why_stack.agents.evidence_classifier import (
    NOT_CONFIGURED_REASONING,
    UNAVAILABLE_REASONING,
    EvidenceClassifier,
)
from why_stack.models.llm_client import LLMClient, Message
from why_stack.types import EvidenceDirection


class FakeLLMClient(LLMClient):
    """LLM client that answers every JSON request with a fixed payload."""

    def __init__(self, payload: dict[str, Any] | None = None, error: Exception | None = None) -> None:
        super().__init__(endpoint="http://ollama.test", model="fake")
        self.payload = payload or {}
        self.error = error
        self.prompts: list[str] = []

    async def chat_with_json(
        self,
        messages: list[Message],
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        self.prompts.append(messages[-1].content)
        if self.error is not None:
            raise self.error
        return self.payload


class TestEvidenceClassifier:
    """Tests for EvidenceClassifier."""

    @pytest.mark.asyncio
    async def test_disabled_classifier_returns_neutral_default(self) -> None:
        """A disabled classifier never calls the model."""
        client = FakeLLMClient({"direction": "SUPPORTS", "strength": 5})
        classifier = EvidenceClassifier(llm_client=client, enabled=False)

        result = await classifier.classify("Users churn because of pricing", "Survey says so")

        assert result.direction is EvidenceDirection.NEUTRAL
        assert result.strength == 3
        assert result.reasoning == NOT_CONFIGURED_REASONING
        assert client.prompts == []

    @pytest.mark.asyncio
    async def test_parses_model_answer(self) -> None:
        client = FakeLLMClient({"direction": "weakly_refutes", "strength": 2, "reasoning": "Single anecdote."})
        classifier = EvidenceClassifier(llm_client=client)

        result = await classifier.classify("H", "E")

        assert result.direction is EvidenceDirection.WEAKLY_REFUTES
        assert result.strength == 2
        assert result.reasoning == "Single anecdote."

    @pytest.mark.asyncio
    async def test_unknown_direction_becomes_neutral(self) -> None:
        classifier = EvidenceClassifier(llm_client=FakeLLMClient({"direction": "MAYBE", "strength": 4}))

        result = await classifier.classify("H", "E")

        assert result.direction is EvidenceDirection.NEUTRAL
        assert result.strength == 4

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("raw", "expected"),
        [(9, 5), (0, 1), (2.6, 3), ("4", 4), ("strong", 3), (None, 3)],
    )
    async def test_strength_is_clamped_or_defaulted(self, raw: Any, expected: int) -> None:
        classifier = EvidenceClassifier(llm_client=FakeLLMClient({"direction": "SUPPORTS", "strength": raw}))

        result = await classifier.classify("H", "E")

        assert result.strength == expected

    @pytest.mark.asyncio
    async def test_empty_or_failed_response_falls_back(self) -> None:
        """Unusable model output yields NEUTRAL/3 instead of an error."""
        empty = EvidenceClassifier(llm_client=FakeLLMClient({}))
        broken = EvidenceClassifier(llm_client=FakeLLMClient(error=RuntimeError("connection reset")))

        for classifier in (empty, broken):
            result = await classifier.classify("H", "E")
            assert result.direction is EvidenceDirection.NEUTRAL
            assert result.strength == 3
            assert result.reasoning == UNAVAILABLE_REASONING

    @pytest.mark.asyncio
    async def test_prompt_includes_company_context(self) -> None:
        client = FakeLLMClient({"direction": "SUPPORTS", "strength": 3})
        classifier = EvidenceClassifier(llm_client=client, company_context="  B2B analytics startup  ")

        await classifier.classify("Onboarding is too slow", "Median setup takes 9 days")

        prompt = client.prompts[0]
        assert "COMPANY/PROJECT CONTEXT:\nB2B analytics startup\n" in prompt
        assert 'HYPOTHESIS: "Onboarding is too slow"' in prompt
        assert 'EVIDENCE: "Median setup takes 9 days"' in prompt

    def test_prompt_without_context_has_no_context_section(self) -> None:
        classifier = EvidenceClassifier(llm_client=FakeLLMClient())

        assert "COMPANY/PROJECT CONTEXT" not in classifier.build_prompt("H", "E")
