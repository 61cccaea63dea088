"""
Evidence classifier agent.

Infers how a free-text observation bears on a hypothesis (direction) and how
convincing it is (strength 1-5). Classification is best-effort: callers always
get a usable result, falling back to NEUTRAL/3 when the model is unavailable
or answers with something unusable.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from pydantic import BaseModel, Field

from why_stack.models.llm_client import LLMClient, Message
from why_stack.reasoning.confidence import clamp_strength
from why_stack.types import EvidenceDirection

logger = logging.getLogger(__name__)

FALLBACK_STRENGTH = 3
NOT_CONFIGURED_REASONING = "AI classification not configured - using default"
UNAVAILABLE_REASONING = "Auto-classification unavailable"


class EvidenceClassification(BaseModel):
    """Result of evidence classification."""

    direction: EvidenceDirection = Field(..., description="How the evidence relates to the hypothesis")
    strength: int = Field(..., ge=1, le=5, description="How convincing the evidence is")
    reasoning: str = Field(default="", description="Short explanation of the classification")

    @classmethod
    def neutral(cls, reasoning: str) -> EvidenceClassification:
        return cls(direction=EvidenceDirection.NEUTRAL, strength=FALLBACK_STRENGTH, reasoning=reasoning)


class EvidenceClassifierBase(ABC):
    """Abstract base class for evidence classifiers."""

    @abstractmethod
    async def classify(self, hypothesis_statement: str, evidence_text: str) -> EvidenceClassification:
        """
        Classify evidence in the context of a hypothesis.

        Implementations must not raise.

        Args:
            hypothesis_statement: Statement of the hypothesis.
            evidence_text: Free-text evidence.

        Returns:
            Direction, strength and reasoning.
        """
        ...


class EvidenceClassifier(EvidenceClassifierBase):
    """
    LLM-based evidence classifier.

    The organisation context is injected at construction time and included in
    every prompt.
    """

    CLASSIFICATION_PROMPT = """You are analyzing evidence in the context of a hypothesis. Your task is to classify how the evidence relates to the hypothesis.
{context_section}
HYPOTHESIS: "{hypothesis_statement}"

EVIDENCE: "{evidence_text}"

Analyze the evidence and respond with a JSON object containing:
1. "direction": How the evidence relates to the hypothesis. Must be one of:
   - "SUPPORTS" - Directly supports/validates the hypothesis
   - "WEAKLY_SUPPORTS" - Somewhat supports the hypothesis, but not strongly
   - "NEUTRAL" - Neither supports nor refutes, or is tangential
   - "WEAKLY_REFUTES" - Raises some doubt about the hypothesis
   - "REFUTES" - Directly contradicts/invalidates the hypothesis

2. "strength": How strong or convincing is this evidence (1-5):
   - 1 = Very weak (anecdotal, opinion, single data point)
   - 2 = Weak (limited data, indirect connection)
   - 3 = Moderate (reasonable data, clear connection)
   - 4 = Strong (substantial data, direct connection)
   - 5 = Very strong (comprehensive data, definitive connection)

3. "reasoning": A brief (1-2 sentence) explanation of your classification.

Respond ONLY with valid JSON, no other text."""

    def __init__(
        self,
        llm_client: LLMClient | None = None,
        company_context: str = "",
        enabled: bool = True,
    ) -> None:
        """
        Initialize the evidence classifier.

        Args:
            llm_client: LLM client for classification. Creates default if None.
            company_context: Organisation context for the prompt.
            enabled: When False every call returns the not-configured fallback.
        """
        self._llm_client = llm_client or LLMClient()
        self._company_context = company_context.strip()
        self._enabled = enabled

    def build_prompt(self, hypothesis_statement: str, evidence_text: str) -> str:
        context_section = (
            f"\nCOMPANY/PROJECT CONTEXT:\n{self._company_context}\n" if self._company_context else ""
        )
        return self.CLASSIFICATION_PROMPT.format(
            context_section=context_section,
            hypothesis_statement=hypothesis_statement,
            evidence_text=evidence_text,
        )

    async def classify(self, hypothesis_statement: str, evidence_text: str) -> EvidenceClassification:
        if not self._enabled:
            return EvidenceClassification.neutral(NOT_CONFIGURED_REASONING)

        prompt = self.build_prompt(hypothesis_statement, evidence_text)
        try:
            response = await self._llm_client.chat_with_json(
                messages=[Message(role="user", content=prompt)],
                max_tokens=256,
            )
        except Exception as e:
            logger.error(f"AI classification error: {e}", exc_info=True)
            return EvidenceClassification.neutral(UNAVAILABLE_REASONING)

        if not response:
            return EvidenceClassification.neutral(UNAVAILABLE_REASONING)

        return self._parse_response(response)

    def _parse_response(self, response: dict) -> EvidenceClassification:
        raw_direction = str(response.get("direction", "")).strip().upper()
        try:
            direction = EvidenceDirection(raw_direction)
        except ValueError:
            logger.warning(f"Unknown evidence direction '{raw_direction}', defaulting to NEUTRAL")
            direction = EvidenceDirection.NEUTRAL

        try:
            strength = clamp_strength(float(response.get("strength", FALLBACK_STRENGTH)))
        except (TypeError, ValueError, OverflowError):
            logger.warning(f"Invalid evidence strength {response.get('strength')!r}, using {FALLBACK_STRENGTH}")
            strength = FALLBACK_STRENGTH

        return EvidenceClassification(
            direction=direction,
            strength=strength,
            reasoning=str(response.get("reasoning") or ""),
        )
