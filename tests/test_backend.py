import httpx
import pytest
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch
from openai import RateLimitError
from browse_pilot.backend import BackendError, OpenRouterBackend


def completion(content=None, tool_calls=None, usage=(120, 30, 150)):
    message = SimpleNamespace(content=content, tool_calls=tool_calls)
    prompt, completion_tokens, total = usage
    return SimpleNamespace(
        choices=[SimpleNamespace(message=message)],
        usage=SimpleNamespace(prompt_tokens=prompt, completion_tokens=completion_tokens, total_tokens=total),
    )


def tool_call(arguments, name="submit_reflection", call_id="call_1"):
    return SimpleNamespace(id=call_id, function=SimpleNamespace(name=name, arguments=arguments))


def backend_with(create):
    client = MagicMock()
    client.chat.completions.create = create
    with patch("browse_pilot.backend.AsyncOpenAI", return_value=client):
        return OpenRouterBackend(model="test/model", api_key="sk-test")


# ---------------------------------------------------------------------------
# Response mapping
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_tool_calls_and_usage_are_mapped():
    create = AsyncMock(return_value=completion(tool_calls=[tool_call('{"facts": ["18C"]}')]))
    backend = backend_with(create)

    response = await backend.propose([{"role": "user", "content": "hi"}], [{"name": "submit_reflection"}],
                                     tool_choice="required")

    assert response.tool_calls[0].name == "submit_reflection"
    assert response.tool_calls[0].arguments == {"facts": ["18C"]}
    assert response.usage.total_tokens == 150
    kwargs = create.await_args.kwargs
    assert kwargs["model"] == "test/model"
    assert kwargs["tools"] == [{"type": "function", "function": {"name": "submit_reflection"}}]
    assert kwargs["tool_choice"] == "required"

@pytest.mark.asyncio
async def test_malformed_arguments_are_kept_raw():
    create = AsyncMock(return_value=completion(tool_calls=[tool_call('{"facts": [')]))
    response = await backend_with(create).propose([], [{"name": "submit_reflection"}])

    call = response.tool_calls[0]
    assert call.arguments == {}
    assert call.raw_arguments == '{"facts": ['

@pytest.mark.asyncio
async def test_text_only_call_sends_no_tools():
    create = AsyncMock(return_value=completion(content='{"summary": "ok"}'))
    response = await backend_with(create).propose([{"role": "user", "content": "merge"}], [])

    assert response.text == '{"summary": "ok"}'
    assert "tools" not in create.await_args.kwargs

# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_rate_limit_becomes_backend_error():
    request = httpx.Request("POST", "https://openrouter.ai/api/v1/chat/completions")
    error = RateLimitError("slow down", response=httpx.Response(429, request=request), body=None)
    backend = backend_with(AsyncMock(side_effect=error))

    with pytest.raises(BackendError) as info:
        await backend.propose([], [])
    assert info.value.status_code == 429
    assert info.value.rate_limited is True

@pytest.mark.asyncio
async def test_empty_choices_raise():
    backend = backend_with(AsyncMock(return_value=SimpleNamespace(choices=[], usage=None)))
    with pytest.raises(BackendError, match="no choices"):
        await backend.propose([], [])
