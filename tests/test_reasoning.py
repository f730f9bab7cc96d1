from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest
from openai.types.chat import ChatCompletion

from opsassistant.agent.reasoning import ReasoningClient, ReasoningOptions
from opsassistant.errors import EngineUnavailable, InvalidRequest, QuotaExceeded, RateLimited

_REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def _completion(content=None, tool_calls=None, usage=True) -> ChatCompletion:
    message = {"role": "assistant", "content": content}
    if tool_calls:
        message["tool_calls"] = tool_calls
    data = {
        "id": "chatcmpl-1",
        "object": "chat.completion",
        "created": 1700000000,
        "model": "gpt-4o-mini",
        "choices": [
            {
                "index": 0,
                "finish_reason": "tool_calls" if tool_calls else "stop",
                "message": message,
            }
        ],
    }
    if usage:
        data["usage"] = {"prompt_tokens": 10, "completion_tokens": 5, "total_tokens": 15}
    return ChatCompletion.model_validate(data)


def _client_returning(result) -> tuple[ReasoningClient, AsyncMock]:
    create = AsyncMock(side_effect=result) if isinstance(result, Exception) else AsyncMock(return_value=result)
    openai_client = MagicMock()
    openai_client.chat.completions.create = create
    return ReasoningClient(model="gpt-4o-mini", client=openai_client), create


def _status_error(cls, status: int, body=None):
    response = httpx.Response(status, request=_REQUEST)
    return cls("engine said no", response=response, body=body)


MESSAGES = [
    {"role": "system", "content": "You are SupervIA."},
    {"role": "user", "content": "How is auth-service doing?"},
]


@pytest.mark.asyncio
async def test_invoke_returns_text_answer() -> None:
    """A plain completion becomes a terminal Answer with usage."""
    client, create = _client_returning(_completion("All services are healthy."))

    answer = await client.invoke(MESSAGES)

    assert answer.is_terminal
    assert answer.text == "All services are healthy."
    assert answer.model == "gpt-4o-mini"
    assert answer.usage["total_tokens"] == 15
    kwargs = create.await_args.kwargs
    assert kwargs["messages"] == MESSAGES
    assert kwargs["max_tokens"] == 2000
    assert "tools" not in kwargs
    assert "response_format" not in kwargs


@pytest.mark.asyncio
async def test_invoke_returns_tool_invocations() -> None:
    """Tool calls are returned as invocations; empty arguments become "{}"."""
    tool_calls = [
        {
            "id": "call_1",
            "type": "function",
            "function": {"name": "get_service_health", "arguments": '{"service": "auth-service"}'},
        },
        {
            "id": "call_2",
            "type": "function",
            "function": {"name": "get_active_alerts", "arguments": ""},
        },
    ]
    client, _ = _client_returning(_completion(None, tool_calls))

    answer = await client.invoke(MESSAGES)

    assert not answer.is_terminal
    assert answer.text is None
    assert [(i.id, i.name) for i in answer.tool_invocations] == [
        ("call_1", "get_service_health"),
        ("call_2", "get_active_alerts"),
    ]
    assert answer.tool_invocations[0].arguments == '{"service": "auth-service"}'
    assert answer.tool_invocations[1].arguments == "{}"


@pytest.mark.asyncio
async def test_options_shape_the_request() -> None:
    """Per-call options override model, temperature, length, JSON mode and tools."""
    client, create = _client_returning(_completion('{"dashboard": {}}'))
    tools = [{"type": "function", "function": {"name": "x", "parameters": {"type": "object"}}}]

    await client.invoke(
        MESSAGES,
        ReasoningOptions(model="gpt-4o", temperature=0.0, max_tokens=50, json_mode=True, tools=tools),
    )

    kwargs = create.await_args.kwargs
    assert kwargs["model"] == "gpt-4o"
    assert kwargs["temperature"] == 0.0
    assert kwargs["max_tokens"] == 50
    assert kwargs["response_format"] == {"type": "json_object"}
    assert kwargs["tools"] == tools
    assert kwargs["tool_choice"] == "auto"


@pytest.mark.asyncio
async def test_empty_answer_is_engine_unavailable() -> None:
    client, _ = _client_returning(_completion("   "))
    with pytest.raises(EngineUnavailable):
        await client.invoke(MESSAGES)


@pytest.mark.asyncio
async def test_missing_usage_is_tolerated() -> None:
    client, _ = _client_returning(_completion("ok", usage=False))
    answer = await client.invoke(MESSAGES)
    assert answer.usage is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, expected",
    [
        (_status_error(openai.RateLimitError, 429), RateLimited),
        (
            _status_error(openai.RateLimitError, 429, body={"code": "insufficient_quota"}),
            QuotaExceeded,
        ),
        (_status_error(openai.BadRequestError, 400), InvalidRequest),
        (_status_error(openai.NotFoundError, 404), InvalidRequest),
        (_status_error(openai.InternalServerError, 500), EngineUnavailable),
        (openai.APIConnectionError(request=_REQUEST), EngineUnavailable),
        (openai.APITimeoutError(request=_REQUEST), EngineUnavailable),
    ],
)
async def test_sdk_errors_are_translated(error, expected) -> None:
    """SDK exceptions map onto the reasoning error classes without retries."""
    client, create = _client_returning(error)

    with pytest.raises(expected):
        await client.invoke(MESSAGES)
    assert create.await_count == 1
