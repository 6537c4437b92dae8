# backend.py
# Reasoning Backend: the contract the harness consumes, and the OpenRouter
# implementation built on the OpenAI client.
#
# The harness never sees provider objects. Every call returns a
# BackendResponse; every provider failure is re-raised as BackendError with
# the HTTP status when there is one, so the harness can spot rate limits.

import json
import logging
from typing import Protocol

from openai import APIConnectionError, APIStatusError, AsyncOpenAI

from browse_pilot.config import Settings
from browse_pilot.models import BackendResponse, ToolCall, Usage

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """Raised when the reasoning backend call fails."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def rate_limited(self) -> bool:
        text = str(self).lower()
        return self.status_code == 429 or "rate limit" in text or "429" in text


class ReasoningBackend(Protocol):
    async def propose(
        self,
        messages: list[dict],
        tools: list[dict],
        *,
        tool_choice: str | None = None,
    ) -> BackendResponse: ...


# ---------------------------------------------------------------------------
# OpenRouter
# ---------------------------------------------------------------------------


class OpenRouterBackend:
    """
    Chat-completions backend pointed at OpenRouter.

    `tools` entries are bare function schemas ({name, description,
    parameters}); they are wrapped in the chat-completions envelope here.

    Example:
        backend = OpenRouterBackend(model="anthropic/claude-3.5-haiku")
        response = await backend.propose(messages, [REFLECTION_TOOL], tool_choice="required")
    """

    def __init__(
        self,
        model: str | None = None,
        base_url: str | None = None,
        api_key: str | None = None,
        temperature: float = 0.2,
        max_tokens: int = 1024,
    ) -> None:
        self.model = model or Settings.MODEL
        self.temperature = temperature
        self.max_tokens = max_tokens
        self._client = AsyncOpenAI(
            base_url=base_url or Settings.BASE_URL,
            api_key=api_key or Settings.OPENROUTER_API_KEY,
        )

    async def propose(
        self,
        messages: list[dict],
        tools: list[dict],
        *,
        tool_choice: str | None = None,
    ) -> BackendResponse:
        kwargs = {
            "model": self.model,
            "messages": messages,
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
        }
        if tools:
            kwargs["tools"] = [{"type": "function", "function": schema} for schema in tools]
            if tool_choice:
                kwargs["tool_choice"] = tool_choice

        try:
            response = await self._client.chat.completions.create(**kwargs)
        except APIStatusError as exc:
            raise BackendError(f"Backend returned HTTP {exc.status_code}: {exc.message}", exc.status_code) from exc
        except APIConnectionError as exc:
            raise BackendError(f"Backend connection failed: {exc}") from exc

        if not response.choices:
            raise BackendError("Backend returned no choices")
        return _to_response(response)


def _to_response(response) -> BackendResponse:
    message = response.choices[0].message
    calls = []
    for call in message.tool_calls or []:
        raw = call.function.arguments or ""
        try:
            # strict=False tolerates literal newlines inside strings
            arguments = json.loads(raw, strict=False) if raw.strip() else {}
        except json.JSONDecodeError:
            logger.debug("Tool call %s arguments are not valid JSON", call.function.name)
            arguments = {}
        if not isinstance(arguments, dict):
            arguments = {}
        calls.append(ToolCall(id=call.id, name=call.function.name, arguments=arguments, raw_arguments=raw))

    usage = Usage()
    if response.usage is not None:
        usage = Usage(
            prompt_tokens=response.usage.prompt_tokens or 0,
            completion_tokens=response.usage.completion_tokens or 0,
            total_tokens=response.usage.total_tokens or 0,
        )
    return BackendResponse(text=message.content, tool_calls=calls, usage=usage)
