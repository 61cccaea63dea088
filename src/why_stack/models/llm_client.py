"""
LLM client abstraction.

Talks to a local Ollama server over its HTTP chat API. Callers that need
structured output use ``chat_with_json``, which repairs the usual ways a
model mangles JSON before giving up.
"""

import ast
import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any

import httpx
from pydantic import BaseModel, Field

from why_stack.config import get_settings

logger = logging.getLogger(__name__)


class Message(BaseModel):
    """A message in a conversation."""

    role: str = Field(..., description="Role of the speaker (system, user, assistant)")
    content: str = Field(..., description="Message content")


class LLMResponse(BaseModel):
    """Response from an LLM."""

    content: str = Field(..., description="Generated text content")
    finish_reason: str = Field(default="stop", description="Reason for completion")
    usage: dict[str, int] = Field(
        default_factory=dict,
        description="Token usage information",
    )
    model: str = Field(default="", description="Model used for generation")


class LLMServiceError(Exception):
    """Exception raised when the LLM service cannot produce a response."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class LLMClientBase(ABC):
    """Abstract base class for LLM clients."""

    @abstractmethod
    async def chat(
        self,
        messages: list[Message],
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a chat completion.

        Args:
            messages: Conversation history.
            temperature: Sampling temperature.
            max_tokens: Maximum tokens to generate.

        Returns:
            Generated response; ``finish_reason == "error"`` on failure.
        """
        ...


class LLMClient(LLMClientBase):
    """
    Ollama-based LLM client.

    Sends non-streaming requests to ``POST /api/chat`` and retries transient
    failures up to ``max_retries`` times.
    """

    def __init__(
        self,
        endpoint: str | None = None,
        model: str | None = None,
        max_retries: int | None = None,
        timeout: int | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the Ollama LLM client.

        Args:
            endpoint: Ollama base URL (uses config if not provided).
            model: Model name (uses config if not provided).
            max_retries: Number of retries on failure (uses config if not provided).
            timeout: Request timeout in seconds (uses config if not provided).
            transport: Optional httpx transport, mainly for tests.
        """
        settings = get_settings()
        self._endpoint = endpoint or settings.llm_endpoint
        self._model = model or settings.llm_model_name
        self._max_retries = settings.llm_max_retries if max_retries is None else max_retries
        self._timeout = timeout or settings.llm_timeout
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

        logger.info(f"Initialized Ollama LLM client with model: {self._model}")

    @property
    def model(self) -> str:
        """Get the model name."""
        return self._model

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                base_url=self._endpoint,
                timeout=self._timeout,
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client:
            await self._client.aclose()
            self._client = None

    async def _post_chat(self, payload: dict[str, Any]) -> dict[str, Any]:
        """
        Send a chat request with retry logic.

        Raises:
            LLMServiceError: If every attempt failed.
        """
        client = await self._get_client()
        last_error: LLMServiceError | None = None

        for attempt in range(1, self._max_retries + 2):
            try:
                response = await client.post("/api/chat", json=payload)
                response.raise_for_status()
                return response.json()
            except httpx.HTTPStatusError as e:
                status = e.response.status_code
                logger.warning(f"Ollama returned HTTP {status} (attempt {attempt})")
                last_error = LLMServiceError(f"Ollama returned HTTP {status}", status_code=status)
                if status < 500:
                    break
            except httpx.TimeoutException:
                logger.warning(f"Ollama timed out after {self._timeout}s (attempt {attempt})")
                last_error = LLMServiceError(f"Ollama timed out after {self._timeout} seconds")
            except (httpx.HTTPError, ValueError) as e:
                logger.warning(f"Ollama error (attempt {attempt}): {e}")
                last_error = LLMServiceError(str(e))

        raise last_error or LLMServiceError("Ollama failed after all retries")

    async def chat(
        self,
        messages: list[Message],
        temperature: float = 0.7,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        """
        Generate a chat completion using Ollama.

        Args:
            messages: Conversation history.
            temperature: Sampling temperature.
            max_tokens: Maximum tokens to generate.

        Returns:
            Generated response.
        """
        options: dict[str, Any] = {"temperature": temperature}
        if max_tokens is not None:
            options["num_predict"] = max_tokens

        payload = {
            "model": self._model,
            "messages": [m.model_dump() for m in messages],
            "stream": False,
            "options": options,
        }

        try:
            data = await self._post_chat(payload)
        except LLMServiceError as e:
            logger.error(f"Ollama chat failed: {e}")
            return LLMResponse(content="", finish_reason="error", model=self._model)

        usage = {
            key: int(data[key])
            for key in ("prompt_eval_count", "eval_count")
            if isinstance(data.get(key), int)
        }
        return LLMResponse(
            content=(data.get("message") or {}).get("content", "").strip(),
            finish_reason=data.get("done_reason") or "stop",
            usage=usage,
            model=data.get("model") or self._model,
        )

    async def chat_with_json(
        self,
        messages: list[Message],
        temperature: float = 0.2,
        max_tokens: int | None = None,
    ) -> dict[str, Any]:
        """
        Generate a chat completion and parse it as a JSON object.

        Args:
            messages: Conversation history.
            temperature: Sampling temperature (lower for more deterministic).
            max_tokens: Maximum tokens to generate.

        Returns:
            Parsed JSON response, or empty dict on error.
        """
        json_instruction = Message(
            role="system",
            content="You must respond with valid JSON only. No additional text or explanation.",
        )
        response = await self.chat([json_instruction, *messages], temperature, max_tokens)

        if response.finish_reason == "error" or not response.content:
            logger.warning("JSON chat failed, returning empty dict")
            return {}

        content = response.content.strip()
        parsed = None
        for candidate in [*_balanced_spans(content), content]:
            parsed = _parse_json_loose(candidate)
            if isinstance(parsed, (dict, list)):
                break

        if isinstance(parsed, dict):
            return parsed
        if isinstance(parsed, list):
            return {"items": parsed}

        logger.warning("Failed to parse JSON from response")
        logger.debug(f"Response content: {response.content[:500]}")
        return {}


def _balanced_spans(text: str) -> list[str]:
    """
    Return the balanced ``{...}`` and ``[...]`` spans of ``text``.

    The span whose opener comes first is listed first, so a top-level array
    is not mistaken for its first element.
    """
    starts = sorted(text.find(c) for c in "{[" if c in text)
    return [_extract_balanced(text, start) for start in starts]


def _extract_balanced(text: str, start: int) -> str:
    """Return the balanced span opening at ``text[start]``, or the rest of the text."""
    open_char = text[start]
    close_char = "}" if open_char == "{" else "]"
    depth = 0
    for i in range(start, len(text)):
        if text[i] == open_char:
            depth += 1
        elif text[i] == close_char:
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return text[start:]


def _fix_json_string(raw: str) -> str:
    """Repair common JSON defects in model output."""
    result = raw.strip()

    # Code fences
    result = re.sub(r"^```(?:json)?\s*", "", result, flags=re.IGNORECASE)
    result = re.sub(r"\s*```$", "", result)

    result = result.replace("“", '"').replace("”", '"').replace("‘", "'").replace("’", "'")
    result = re.sub(r",(\s*[}\]])", r"\1", result)

    result = re.sub(r"\bNone\b", "null", result)
    result = re.sub(r"\bTrue\b", "true", result)
    result = re.sub(r"\bFalse\b", "false", result)

    # Bare keys directly after { or ,
    result = re.sub(r"([\{,]\s*)([A-Za-z_][A-Za-z0-9_\-]*)(\s*:)", r'\1"\2"\3', result)

    if "'" in result and '"' not in result:
        result = result.replace("'", '"')

    return result


def _parse_json_loose(raw: str) -> dict[str, Any] | list[Any] | None:
    """Parse JSON with best-effort repair; None when nothing works."""
    if not raw:
        return None

    cleaned = _fix_json_string(raw)
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    # Python literal fallback (single quotes, tuples)
    for source in (raw.strip(), cleaned):
        try:
            obj = ast.literal_eval(source)
        except (ValueError, SyntaxError):
            continue
        if isinstance(obj, (dict, list, tuple)):
            try:
                return json.loads(json.dumps(obj, default=str))
            except (TypeError, ValueError):
                return None
    return None
