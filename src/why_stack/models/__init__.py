"""
Model clients for the external AI services.
"""

from why_stack.models.llm_client import (
    LLMClient,
    LLMClientBase,
    LLMResponse,
    LLMServiceError,
    Message,
)

__all__ = [
    "LLMClient",
    "LLMClientBase",
    "LLMResponse",
    "LLMServiceError",
    "Message",
]
