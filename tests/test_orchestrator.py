import asyncio
import copy
import json
from typing import Any, Callable, Dict, List
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from prometheus_client import CollectorRegistry
from pydantic import BaseModel

from opsassistant.agent.fallback import FALLBACK_ANSWERS
from opsassistant.agent.orchestrator import (
    ABANDONED_TOOL_MESSAGE,
    EXHAUSTED_MESSAGE,
    AgentOrchestrator,
)
from opsassistant.agent.tools import ToolDefinition, ToolRegistry
from opsassistant.errors import EngineUnavailable, InvalidRequest, QuotaExceeded, RateLimited
from opsassistant.metrics import MetricsSink
from opsassistant.models import Answer, ToolInvocation, TurnState
from opsassistant.services.backends import MetricsServiceClient
from opsassistant.services.cache import InMemoryCacheBackend, ResponseCache
from opsassistant.services.session_store import SessionStore
from opsassistant.settings import Settings


class ScriptedEngine:
    """Stands in for ReasoningClient: answers come from a script function.

    The script receives (messages, call_index) and returns an Answer or an
    exception instance to raise.
    """

    def __init__(self, script: Callable[[List[Dict[str, Any]], int], Any], delay: float = 0.0):
        self._script = script
        self._delay = delay
        self.calls: List[List[Dict[str, Any]]] = []
        self.options: List[Any] = []

    async def invoke(self, messages, options=None) -> Answer:
        index = len(self.calls)
        self.calls.append(copy.deepcopy(messages))
        self.options.append(options)
        if self._delay:
            await asyncio.sleep(self._delay)
        result = self._script(messages, index)
        if isinstance(result, Exception):
            raise result
        return result


def text(content: str) -> Answer:
    return Answer(text=content, model="gpt-4o-mini")


def tool_request(*invocations: ToolInvocation) -> Answer:
    return Answer(tool_invocations=list(invocations), model="gpt-4o-mini")


class EchoArgs(BaseModel):
    text: str


async def echo(args: EchoArgs) -> str:
    return f"echo:{args.text}"


async def slow(args: EchoArgs) -> str:
    await asyncio.sleep(5)
    return "too late"


async def boom(args: EchoArgs) -> str:
    raise RuntimeError("service down")


def build_registry() -> ToolRegistry:
    registry = ToolRegistry()
    for name, executor in (("echo", echo), ("slow", slow), ("boom", boom)):
        registry.register(
            ToolDefinition(
                name=name,
                description=f"{name} tool",
                arguments_model=EchoArgs,
                executor=executor,
            )
        )
    return registry


@pytest.fixture
def settings() -> Settings:
    return Settings(
        max_tool_rounds=3,
        max_parallel_tools=4,
        turn_timeout_seconds=5.0,
        use_cache=True,
    )


@pytest.fixture
def metrics_registry() -> CollectorRegistry:
    return CollectorRegistry()


@pytest.fixture
def make_orchestrator(settings: Settings, metrics_registry: CollectorRegistry):
    """Factory: orchestrator around a scripted engine with fresh store and cache."""

    def _make(
        engine: ScriptedEngine,
        cache: ResponseCache | None = None,
        metrics_service: Any = None,
        **overrides: Any,
    ) -> AgentOrchestrator:
        cfg = settings.model_copy(update=overrides) if overrides else settings
        return AgentOrchestrator(
            reasoning=engine,
            tools=build_registry(),
            sessions=SessionStore(),
            cache=cache or ResponseCache(InMemoryCacheBackend()),
            metrics=MetricsSink(metrics_registry),
            settings=cfg,
            metrics_service=metrics_service,
        )

    return _make


# ---------------------------------------------------------------------------
# Chat turns
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_text_answer_finishes_turn(make_orchestrator, metrics_registry) -> None:
    """A text answer ends the turn in FINAL and is appended to history."""
    engine = ScriptedEngine(lambda messages, i: text("All green."))
    orchestrator = make_orchestrator(engine)

    result = await orchestrator.handle_turn(None, "Status?")

    assert result.state is TurnState.FINAL
    assert result.message.content == "All green."
    assert result.tools_used_count == 0
    assert result.cached is False
    assert len(engine.calls) == 1
    assert engine.calls[0][0]["role"] == "system"
    assert engine.calls[0][1] == {"role": "user", "content": "Status?"}
    history = orchestrator.sessions.get(result.session_id)
    assert [(m.role, m.content) for m in history] == [("user", "Status?"), ("assistant", "All green.")]
    assert metrics_registry.get_sample_value("ops_assistant_turns_total", {"state": "final"}) == 1.0


@pytest.mark.asyncio
async def test_tool_round_feeds_results_back(make_orchestrator) -> None:
    """Tool results are appended and sent back on the next engine call."""

    def script(messages, i):
        if i == 0:
            return tool_request(ToolInvocation("call_1", "echo", '{"text": "cpu"}'))
        return text("CPU is fine.")

    engine = ScriptedEngine(script)
    orchestrator = make_orchestrator(engine)

    result = await orchestrator.handle_turn("s1", "How is CPU?")

    assert result.state is TurnState.FINAL
    assert result.tools_used_count == 1
    second = engine.calls[1]
    assert second[-2]["tool_calls"][0]["id"] == "call_1"
    assert second[-1] == {
        "role": "tool",
        "content": "echo:cpu",
        "tool_call_id": "call_1",
        "name": "echo",
    }
    roles = [m.role for m in orchestrator.sessions.get("s1")]
    assert roles == ["user", "assistant", "tool", "assistant"]
    assert engine.options[0].tools and engine.options[0].tools[0]["type"] == "function"


@pytest.mark.asyncio
async def test_loop_is_bounded_by_max_tool_rounds(make_orchestrator) -> None:
    """An engine that always asks for tools is stopped after max_tool_rounds."""
    engine = ScriptedEngine(
        lambda messages, i: tool_request(ToolInvocation(f"call_{i}", "echo", '{"text": "again"}'))
    )
    orchestrator = make_orchestrator(engine)

    result = await orchestrator.handle_turn("s1", "Loop forever")

    assert result.state is TurnState.EXHAUSTED
    assert result.message.content == EXHAUSTED_MESSAGE
    assert result.tools_used_count == 3
    assert len(engine.calls) == 4
    history = orchestrator.sessions.get("s1")
    assert sum(1 for m in history if m.role == "tool") == 3
    assert history[-1].content == EXHAUSTED_MESSAGE


@pytest.mark.asyncio
async def test_tool_failures_become_tool_messages(make_orchestrator) -> None:
    """Each failed invocation gets an error tool message; the turn continues."""

    def script(messages, i):
        if i == 0:
            return tool_request(
                ToolInvocation("a", "echo", '{"text": "ok"}'),
                ToolInvocation("b", "missing_tool", "{}"),
                ToolInvocation("c", "echo", "{oops"),
                ToolInvocation("d", "boom", '{"text": "x"}'),
            )
        return text("Partial data only.")

    engine = ScriptedEngine(script)
    orchestrator = make_orchestrator(engine)

    result = await orchestrator.handle_turn("s1", "Check everything")

    assert result.state is TurnState.FINAL
    tool_messages = {m.tool_call_id: m.content for m in orchestrator.sessions.get("s1") if m.role == "tool"}
    assert tool_messages["a"] == "echo:ok"
    assert tool_messages["b"].startswith("Error:") and "missing_tool" in tool_messages["b"]
    assert tool_messages["c"].startswith("Error:")
    assert tool_messages["d"].startswith("Error:") and "service down" in tool_messages["d"]

    # the engine saw every result, failures included, on the following round
    sent = {m["tool_call_id"]: m["content"] for m in engine.calls[1] if m["role"] == "tool"}
    assert set(sent) == {"a", "b", "c", "d"}
    assert sent["a"] == "echo:ok"
    assert all(sent[call_id].startswith("Error:") for call_id in ("b", "c", "d"))


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error",
    [EngineUnavailable("down"), RateLimited("slow down"), QuotaExceeded("no credit")],
)
async def test_engine_failure_degrades_to_fallback(make_orchestrator, error) -> None:
    """Unavailable, rate limited or out-of-quota engines yield the chat fallback."""
    engine = ScriptedEngine(lambda messages, i: error)
    orchestrator = make_orchestrator(engine)

    result = await orchestrator.handle_turn("s1", "Hello")

    assert result.state is TurnState.DEGRADED
    assert result.degraded
    assert result.cached is False
    assert result.message.content == FALLBACK_ANSWERS["chat"]
    assert [m.role for m in orchestrator.sessions.get("s1")] == ["user", "assistant"]
    assert result.to_response()["metadata"]["degraded"] is True


@pytest.mark.asyncio
async def test_invalid_request_reaches_caller(make_orchestrator) -> None:
    engine = ScriptedEngine(lambda messages, i: InvalidRequest("bad schema"))
    orchestrator = make_orchestrator(engine)

    with pytest.raises(InvalidRequest):
        await orchestrator.handle_turn("s1", "Hello")


@pytest.mark.asyncio
async def test_identical_conversation_is_served_from_cache(make_orchestrator) -> None:
    """A second identical conversation is answered from the cache."""
    engine = ScriptedEngine(lambda messages, i: text("Cached answer"))
    orchestrator = make_orchestrator(engine)

    first = await orchestrator.handle_turn("s1", "Same question")
    second = await orchestrator.handle_turn("s2", "Same question")

    assert first.cached is False
    assert second.cached is True
    assert second.message.content == "Cached answer"
    assert len(engine.calls) == 1


@pytest.mark.asyncio
async def test_session_continuity(make_orchestrator) -> None:
    engine = ScriptedEngine(lambda messages, i: text(f"reply {i}"))
    orchestrator = make_orchestrator(engine)

    first = await orchestrator.handle_turn(None, "first")
    await orchestrator.handle_turn(first.session_id, "second")

    second_call = engine.calls[1]
    assert [m["content"] for m in second_call[1:]] == ["first", "reply 0", "second"]
    assert len(orchestrator.sessions.get(first.session_id)) == 4


@pytest.mark.asyncio
async def test_context_is_rendered_into_system_prompt(make_orchestrator) -> None:
    engine = ScriptedEngine(lambda messages, i: text("ok"))
    orchestrator = make_orchestrator(engine)

    await orchestrator.handle_turn("s1", "Hi", context={"page": "alerts"})

    assert '"page": "alerts"' in engine.calls[0][0]["content"]
    assert len(orchestrator.sessions.get("s1")) == 2


@pytest.mark.asyncio
async def test_turns_on_one_session_are_serialized(make_orchestrator) -> None:
    """Concurrent turns on one session run one after the other in arrival order."""

    def script(messages, i):
        return text(f"reply to {messages[-1]['content']}")

    engine = ScriptedEngine(script, delay=0.02)
    orchestrator = make_orchestrator(engine)
    orchestrator.sessions.get_or_create("s1")

    await asyncio.gather(
        orchestrator.handle_turn("s1", "one"),
        orchestrator.handle_turn("s1", "two"),
    )

    contents = [m.content for m in orchestrator.sessions.get("s1")]
    assert contents == ["one", "reply to one", "two", "reply to two"]


@pytest.mark.asyncio
async def test_sessions_do_not_share_history(make_orchestrator) -> None:
    def script(messages, i):
        return text(f"reply to {messages[-1]['content']}")

    engine = ScriptedEngine(script, delay=0.01)
    orchestrator = make_orchestrator(engine)

    results = await asyncio.gather(
        *(orchestrator.handle_turn(f"s{n}", f"question {n}") for n in range(5))
    )

    for n, result in enumerate(results):
        history = orchestrator.sessions.get(result.session_id)
        assert [m.content for m in history] == [f"question {n}", f"reply to question {n}"]


@pytest.mark.asyncio
async def test_turn_timeout_answers_pending_tools(make_orchestrator) -> None:
    """A timed out turn answers pending invocations and degrades."""

    def script(messages, i):
        return tool_request(ToolInvocation("call_slow", "slow", '{"text": "x"}'))

    engine = ScriptedEngine(script)
    orchestrator = make_orchestrator(engine, turn_timeout_seconds=0.05)

    result = await orchestrator.handle_turn("s1", "Take your time")

    assert result.state is TurnState.DEGRADED
    assert result.message.content == FALLBACK_ANSWERS["chat"]
    history = orchestrator.sessions.get("s1")
    assert [m.role for m in history] == ["user", "assistant", "tool", "assistant"]
    assert history[2].tool_call_id == "call_slow"
    assert history[2].content == ABANDONED_TOOL_MESSAGE


# ---------------------------------------------------------------------------
# Single-shot agents
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_explain_metric_is_cached(make_orchestrator) -> None:
    engine = ScriptedEngine(lambda messages, i: text("CPU usage is..."))
    orchestrator = make_orchestrator(engine)

    first = await orchestrator.explain_metric("cpu_usage")
    second = await orchestrator.explain_metric("cpu_usage")

    assert first.text == second.text == "CPU usage is..."
    assert (first.cached, second.cached) == (False, True)
    assert len(engine.calls) == 1
    assert "cpu_usage" in engine.calls[0][1]["content"]
    assert engine.options[0].tools is None


@pytest.mark.asyncio
async def test_diagnose_degrades(make_orchestrator) -> None:
    engine = ScriptedEngine(lambda messages, i: EngineUnavailable("down"))
    orchestrator = make_orchestrator(engine)

    result = await orchestrator.diagnose("Logins are slow", "high", ["auth-service"])

    assert result.degraded
    assert result.cached is False
    assert result.text == FALLBACK_ANSWERS["opsAssistant"]


@pytest.mark.asyncio
async def test_generate_dashboard_returns_parsed_config(make_orchestrator) -> None:
    dashboard = {
        "dashboard": {
            "title": "Auth overview",
            "layout": "grid",
            "blocks": [
                {
                    "id": "cpu",
                    "type": "MetricBlock",
                    "title": "CPU",
                    "position": {"x": 0, "y": 0, "w": 4, "h": 2},
                }
            ],
        },
        "recommendations": [],
        "explanation": "CPU at a glance",
    }
    engine = ScriptedEngine(lambda messages, i: text(json.dumps(dashboard)))
    orchestrator = make_orchestrator(engine)

    generated = await orchestrator.generate_dashboard("auth CPU", "overview", "simple")

    assert generated["dashboard"]["title"] == "Auth overview"
    assert generated["metadata"]["degraded"] is False
    assert generated["metadata"]["templateType"] == "overview"
    assert engine.options[0].json_mode is True


@pytest.mark.asyncio
async def test_generate_dashboard_rejects_invalid_answer(make_orchestrator) -> None:
    engine = ScriptedEngine(lambda messages, i: text('{"dashboard": "nope"}'))
    orchestrator = make_orchestrator(engine)

    generated = await orchestrator.generate_dashboard("anything")

    assert generated["dashboard"]["title"] == "Default dashboard"
    assert generated["metadata"]["degraded"] is True
    assert generated["metadata"]["cached"] is False


@pytest.mark.asyncio
async def test_invalid_dashboard_is_not_cached(make_orchestrator) -> None:
    """A rejected dashboard answer is dropped from the cache so the next request asks again."""
    engine = ScriptedEngine(lambda messages, i: text('{"dashboard": "nope"}'))
    orchestrator = make_orchestrator(engine)

    await orchestrator.generate_dashboard("anything")
    second = await orchestrator.generate_dashboard("anything")

    assert len(engine.calls) == 2
    assert second["metadata"]["cached"] is False
    assert (await orchestrator.cache.list_keys("dashboard"))["totalFound"] == 0


@pytest.mark.asyncio
async def test_broken_cache_backend_does_not_fail_the_turn(make_orchestrator) -> None:
    """A backend raising arbitrary errors behaves like an empty cache."""
    backend = MagicMock()
    backend.get = AsyncMock(side_effect=RuntimeError("corrupted entry"))
    backend.set = AsyncMock(side_effect=RuntimeError("corrupted entry"))
    engine = ScriptedEngine(lambda messages, i: text("Fresh answer"))
    orchestrator = make_orchestrator(engine, cache=ResponseCache(backend))

    result = await orchestrator.handle_turn("s1", "Status?")

    assert result.state is TurnState.FINAL
    assert result.message.content == "Fresh answer"
    assert result.cached is False
    assert len(engine.calls) == 1


def metrics_service(handler: Callable[[httpx.Request], httpx.Response]) -> MetricsServiceClient:
    client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler), base_url="http://metrics.local"
    )
    return MetricsServiceClient(client)


def healthy_backend(request: httpx.Request) -> httpx.Response:
    if request.url.path == "/api/v1/metrics/health":
        return httpx.Response(200, json={"auth-service": "up", "db-service": "up"})
    if request.url.path == "/api/v1/alerts":
        return httpx.Response(200, json={"alerts": [{"name": "HighLatency", "severity": "warning"}]})
    return httpx.Response(404)


@pytest.mark.asyncio
async def test_quick_status_summarizes_live_snapshot(make_orchestrator) -> None:
    """Health and alerts are fetched and handed to the engine with the request."""
    engine = ScriptedEngine(lambda messages, i: text("All green, one latency warning."))
    orchestrator = make_orchestrator(engine, metrics_service=metrics_service(healthy_backend))

    result, snapshot = await orchestrator.quick_status()

    assert result.text == "All green, one latency warning."
    assert result.degraded is False
    assert snapshot["health"] == {"auth-service": "up", "db-service": "up"}
    assert snapshot["alerts"]["alerts"][0]["name"] == "HighLatency"
    prompt = engine.calls[0][-1]["content"]
    assert "HighLatency" in prompt and "db-service" in prompt
    assert engine.options[0].temperature == 0.1


@pytest.mark.asyncio
async def test_quick_status_marks_unreachable_parts(make_orchestrator) -> None:
    """A failing alerts endpoint is reported in the snapshot; the summary is still produced."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v1/alerts":
            return httpx.Response(503, text="alertmanager down")
        return healthy_backend(request)

    engine = ScriptedEngine(lambda messages, i: text("Health ok, alerts unknown."))
    orchestrator = make_orchestrator(engine, metrics_service=metrics_service(handler))

    result, snapshot = await orchestrator.quick_status()

    assert result.text == "Health ok, alerts unknown."
    assert snapshot["health"]["auth-service"] == "up"
    assert "503" in snapshot["alerts"]["unavailable"]


@pytest.mark.asyncio
async def test_quick_status_only_fetches_what_is_asked(make_orchestrator) -> None:
    requested: List[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(request.url.path)
        return healthy_backend(request)

    engine = ScriptedEngine(lambda messages, i: text("ok"))
    orchestrator = make_orchestrator(engine, metrics_service=metrics_service(handler))

    _, snapshot = await orchestrator.quick_status(include_metrics=True, include_alerts=False)

    assert requested == ["/api/v1/metrics/health"]
    assert set(snapshot) == {"health"}


@pytest.mark.asyncio
async def test_quick_status_degrades_without_engine(make_orchestrator) -> None:
    engine = ScriptedEngine(lambda messages, i: EngineUnavailable("down"))
    orchestrator = make_orchestrator(engine)

    result, snapshot = await orchestrator.quick_status()

    assert result.degraded is True
    assert result.text == FALLBACK_ANSWERS["quick-status"]
    assert snapshot["health"] == {"unavailable": "metrics service not configured"}


@pytest.mark.asyncio
async def test_performance_insights_is_cached(make_orchestrator) -> None:
    """Insights for the same service and window are asked once."""
    engine = ScriptedEngine(lambda messages, i: text("p99 latency doubled at night."))
    orchestrator = make_orchestrator(engine)

    first = await orchestrator.performance_insights("auth-service", "7d", "trends")
    second = await orchestrator.performance_insights("auth-service", "7d", "trends")

    assert first.text == second.text == "p99 latency doubled at night."
    assert second.cached is True
    assert len(engine.calls) == 1
    prompt = engine.calls[0][-1]["content"]
    assert "auth-service" in prompt and "7d" in prompt and "trends" in prompt
    assert engine.options[0].temperature == 0.2


@pytest.mark.asyncio
async def test_performance_insights_degrades(make_orchestrator) -> None:
    engine = ScriptedEngine(lambda messages, i: RateLimited("slow down"))
    orchestrator = make_orchestrator(engine)

    result = await orchestrator.performance_insights("all")

    assert result.degraded is True
    assert result.text == FALLBACK_ANSWERS["performance-insights"]
