import asyncio
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

from ..errors import EngineUnavailable, QuotaExceeded, RateLimited, ToolError
from ..metrics import MetricsSink, get_metrics
from ..models import Answer, AskResult, Message, ToolInvocation, TurnResult, TurnState
from ..services.backends import BackendError, MetricsServiceClient
from ..services.cache import ResponseCache
from ..services.session_store import SessionStore
from ..settings import Settings, get_settings
from .fallback import FallbackProvider
from .prompts import (
    build_dashboard_prompt,
    build_diagnostic_prompt,
    build_metric_explanation_prompt,
    build_performance_insights_prompt,
    build_quick_status_prompt,
    validate_dashboard_json,
)
from .reasoning import ReasoningClient, ReasoningOptions
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

CHAT_AGENT = "chat"

# Failures that degrade to a fallback answer instead of failing the turn.
DEGRADABLE_ERRORS = (EngineUnavailable, RateLimited, QuotaExceeded)

EXHAUSTED_MESSAGE = (
    "I ran into difficulties answering your request after several tool calls. "
    "Could you rephrase it?"
)
ABANDONED_TOOL_MESSAGE = "Error: tool execution abandoned because the turn timed out"


@dataclass
class _TurnProgress:
    """Mutable bookkeeping shared with the timeout handler."""

    rounds: int = 0
    state: TurnState = TurnState.AWAITING_ANSWER
    pending: List[ToolInvocation] = field(default_factory=list)


class AgentOrchestrator:
    """Drives one user turn through the reasoning engine and the tools.

    Each turn runs under the session's lock. The engine is called through the
    response cache; tool requests are executed concurrently and their results
    fed back until the engine answers with text, the engine fails (fallback
    answer) or ``max_tool_rounds`` tool rounds have been spent (apology).
    """

    def __init__(
        self,
        reasoning: ReasoningClient,
        tools: ToolRegistry,
        sessions: SessionStore,
        cache: ResponseCache,
        fallback: FallbackProvider | None = None,
        metrics: MetricsSink | None = None,
        settings: Settings | None = None,
        metrics_service: MetricsServiceClient | None = None,
    ) -> None:
        self._reasoning = reasoning
        self._tools = tools
        self._sessions = sessions
        self._cache = cache
        self._fallback = fallback or FallbackProvider()
        self._metrics = metrics or get_metrics()
        self._settings = settings or get_settings()
        self._metrics_service = metrics_service
        self._agent_prompts: Dict[str, str] = {
            CHAT_AGENT: self._settings.chat_system_prompt,
            "opsAssistant": self._settings.ops_system_prompt,
            "metricExplanation": self._settings.ops_system_prompt,
            "dashboard": self._settings.dashboard_system_prompt,
        }

    @property
    def sessions(self) -> SessionStore:
        return self._sessions

    @property
    def cache(self) -> ResponseCache:
        return self._cache

    # ------------------------------------------------------------------
    # Reasoning through the cache
    # ------------------------------------------------------------------

    async def _complete(
        self,
        agent_type: str,
        messages: List[Dict[str, Any]],
        options: ReasoningOptions,
        ttl_seconds: int,
    ) -> Tuple[Answer, bool]:
        """Return (answer, from_cache), calling the engine only on a cache miss."""
        key = self._cache.key(agent_type, messages)
        cached = await self._cache.get(key)
        self._metrics.record_cache_lookup(agent_type, cached is not None)
        if isinstance(cached, dict):
            logger.info("Cache hit for %s", agent_type)
            self._metrics.record_ai_call(agent_type, "success", cached=True)
            return Answer.from_dict(cached), True

        started = time.perf_counter()
        try:
            answer = await self._reasoning.invoke(messages, options)
        except Exception:
            self._metrics.record_ai_call(agent_type, "error")
            raise
        finally:
            self._metrics.record_response_time(agent_type, time.perf_counter() - started)
        self._metrics.record_ai_call(agent_type, "success")
        await self._cache.set(key, answer.to_dict(), ttl_seconds)
        return answer, False

    # ------------------------------------------------------------------
    # Chat turn
    # ------------------------------------------------------------------

    def _chat_messages(
        self, history: List[Message], context: Dict[str, Any] | None
    ) -> List[Dict[str, Any]]:
        system = self._agent_prompts[CHAT_AGENT]
        if context:
            system += "\n\nClient context:\n" + json.dumps(context, sort_keys=True, default=str)
        return [{"role": "system", "content": system}] + [m.to_chat_dict() for m in history]

    def _finish(
        self,
        session_id: str,
        content: str,
        state: TurnState,
        progress: _TurnProgress,
        cached: bool = False,
    ) -> TurnResult:
        reply = Message.assistant(content)
        self._sessions.append(session_id, reply)
        progress.state = state
        return TurnResult(
            session_id=session_id,
            message=reply,
            state=state,
            tools_used_count=progress.rounds,
            cached=cached,
        )

    async def _execute_one(
        self, invocation: ToolInvocation, semaphore: asyncio.Semaphore
    ) -> Tuple[ToolInvocation, str]:
        async with semaphore:
            try:
                content = await self._tools.execute(invocation.name, invocation.arguments)
            except ToolError as e:
                logger.warning("Tool %s (%s) failed: %s", invocation.name, invocation.id, e.message)
                self._metrics.record_tool_call(invocation.name, type(e).__name__)
                return invocation, f"Error: {e.message}"
        self._metrics.record_tool_call(invocation.name, "success")
        return invocation, content

    async def _execute_tools(
        self, invocations: List[ToolInvocation]
    ) -> List[Tuple[ToolInvocation, str]]:
        """Run every invocation concurrently; failures become error text."""
        semaphore = asyncio.Semaphore(max(1, self._settings.max_parallel_tools))
        return list(
            await asyncio.gather(*(self._execute_one(inv, semaphore) for inv in invocations))
        )

    async def _run_turn(
        self,
        session_id: str,
        context: Dict[str, Any] | None,
        progress: _TurnProgress,
    ) -> TurnResult:
        options = ReasoningOptions(
            temperature=self._settings.chat_temperature,
            tools=self._tools.describe_all() or None,
        )
        while True:
            progress.state = TurnState.AWAITING_ANSWER
            messages = self._chat_messages(self._sessions.get(session_id), context)
            try:
                answer, cached = await self._complete(
                    CHAT_AGENT, messages, options, self._settings.chat_cache_ttl_seconds
                )
            except DEGRADABLE_ERRORS as e:
                logger.warning("Session %s degraded: %s", session_id, e.message)
                return self._finish(
                    session_id,
                    self._fallback.answer_for(CHAT_AGENT),
                    TurnState.DEGRADED,
                    progress,
                )

            if answer.is_terminal:
                return self._finish(
                    session_id, answer.text or "", TurnState.FINAL, progress, cached=cached
                )

            progress.state = TurnState.TOOLS_REQUESTED
            if progress.rounds >= self._settings.max_tool_rounds:
                logger.warning(
                    "Session %s: maximum of %d tool rounds reached",
                    session_id,
                    self._settings.max_tool_rounds,
                )
                return self._finish(session_id, EXHAUSTED_MESSAGE, TurnState.EXHAUSTED, progress)

            invocations = answer.tool_invocations
            logger.info(
                "Session %s tool round #%d: %s",
                session_id,
                progress.rounds + 1,
                ", ".join(inv.name for inv in invocations),
            )
            self._sessions.append(session_id, Message.tool_request(invocations))
            progress.pending = list(invocations)
            progress.state = TurnState.EXECUTING_TOOLS

            outcomes = await self._execute_tools(invocations)
            for invocation, content in outcomes:
                self._sessions.append(session_id, Message.tool_result(invocation, content))
            progress.pending = []
            progress.rounds += 1

    def _abandon_pending(self, session_id: str, progress: _TurnProgress) -> None:
        """Answer invocations left without a tool message so history stays well formed."""
        answered = {
            m.tool_call_id for m in self._sessions.get(session_id) if m.role == "tool"
        }
        for invocation in progress.pending:
            if invocation.id not in answered:
                self._sessions.append(
                    session_id, Message.tool_result(invocation, ABANDONED_TOOL_MESSAGE)
                )
        progress.pending = []

    async def handle_turn(
        self,
        session_id: str | None,
        message: str,
        context: Dict[str, Any] | None = None,
        principal: str | None = None,
    ) -> TurnResult:
        """Process one user message and return the assistant's reply.

        Args:
            session_id: Existing session id, or None to start a new session.
            message: User message text (already validated upstream).
            context: Optional client context, rendered into the system prompt.
            principal: Authenticated caller id, used for log correlation only.

        Returns:
            TurnResult: reply message, terminal state, tool rounds and cache flag.
        """
        sid, _ = self._sessions.get_or_create(session_id)
        async with self._sessions.lock(sid):
            logger.info("Chat turn start session_id=%s principal=%s", sid, principal or "anonymous")
            self._sessions.append(sid, Message.user(message))
            progress = _TurnProgress()
            try:
                result = await asyncio.wait_for(
                    self._run_turn(sid, context, progress),
                    self._settings.turn_timeout_seconds,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    "Session %s: turn timed out after %ss in state %s",
                    sid,
                    self._settings.turn_timeout_seconds,
                    progress.state.value,
                )
                self._abandon_pending(sid, progress)
                result = self._finish(
                    sid, self._fallback.answer_for(CHAT_AGENT), TurnState.DEGRADED, progress
                )
        self._metrics.record_turn(result.state.value)
        logger.info(
            "Chat turn done session_id=%s state=%s tool_rounds=%d cached=%s",
            sid,
            result.state.value,
            result.tools_used_count,
            result.cached,
        )
        return result

    # ------------------------------------------------------------------
    # Single-shot agents
    # ------------------------------------------------------------------

    def _single_shot_messages(self, agent_type: str, prompt: str) -> List[Dict[str, Any]]:
        system = self._agent_prompts.get(agent_type, self._settings.ops_system_prompt)
        return [
            {"role": "system", "content": system},
            {"role": "user", "content": prompt},
        ]

    async def ask(
        self,
        agent_type: str,
        prompt: str,
        options: ReasoningOptions | None = None,
        ttl_seconds: int = 3600,
    ) -> AskResult:
        """One tool-less engine call for agent_type, cached and degradable."""
        messages = self._single_shot_messages(agent_type, prompt)
        try:
            answer, cached = await self._complete(
                agent_type, messages, options or ReasoningOptions(), ttl_seconds
            )
        except DEGRADABLE_ERRORS as e:
            logger.warning("Agent %s degraded: %s", agent_type, e.message)
            return AskResult(
                agent_type=agent_type,
                text=self._fallback.answer_for(agent_type),
                degraded=True,
            )
        return AskResult(
            agent_type=agent_type,
            text=answer.text or "",
            cached=cached,
            model=answer.model,
        )

    async def explain_metric(self, metric_name: str, language: str = "en") -> AskResult:
        return await self.ask(
            "metricExplanation",
            build_metric_explanation_prompt(metric_name, language),
            ReasoningOptions(temperature=0.3),
            self._settings.metric_explanation_cache_ttl_seconds,
        )

    async def diagnose(
        self,
        symptoms: str,
        urgency: str = "medium",
        affected_services: List[str] | None = None,
    ) -> AskResult:
        return await self.ask(
            "opsAssistant",
            build_diagnostic_prompt(symptoms, urgency, affected_services),
            ReasoningOptions(temperature=0.1),
            self._settings.diagnostic_cache_ttl_seconds,
        )

    async def _status_snapshot(self, include_metrics: bool, include_alerts: bool) -> Dict[str, Any]:
        """Health and alerts from the metrics service; unreachable parts are marked."""
        wanted: Dict[str, Any] = {}
        if self._metrics_service is not None:
            if include_metrics:
                wanted["health"] = self._metrics_service.service_health()
            if include_alerts:
                wanted["alerts"] = self._metrics_service.active_alerts()
        elif include_metrics or include_alerts:
            logger.warning("Quick status requested without a metrics service client")
        results = await asyncio.gather(*wanted.values(), return_exceptions=True)
        snapshot: Dict[str, Any] = {}
        for name, outcome in zip(wanted, results):
            if isinstance(outcome, BackendError):
                logger.warning("Quick status: %s unavailable: %s", name, outcome)
                snapshot[name] = {"unavailable": str(outcome)}
            elif isinstance(outcome, BaseException):
                raise outcome
            else:
                snapshot[name] = outcome
        if include_metrics and "health" not in snapshot:
            snapshot["health"] = {"unavailable": "metrics service not configured"}
        if include_alerts and "alerts" not in snapshot:
            snapshot["alerts"] = {"unavailable": "metrics service not configured"}
        return snapshot

    async def quick_status(
        self, include_metrics: bool = True, include_alerts: bool = True
    ) -> Tuple[AskResult, Dict[str, Any]]:
        """Brief system status summary built from a live health and alerts snapshot.

        Returns:
            Tuple[AskResult, Dict[str, Any]]: the summary and the snapshot it was built from.
        """
        snapshot = await self._status_snapshot(include_metrics, include_alerts)
        result = await self.ask(
            "quick-status",
            build_quick_status_prompt(snapshot, include_metrics, include_alerts),
            ReasoningOptions(temperature=0.1),
            self._settings.quick_status_cache_ttl_seconds,
        )
        return result, snapshot

    async def performance_insights(
        self, service: str, time_range: str = "24h", analysis_type: str = "overview"
    ) -> AskResult:
        return await self.ask(
            "performance-insights",
            build_performance_insights_prompt(service, time_range, analysis_type),
            ReasoningOptions(temperature=0.2),
            self._settings.performance_insights_cache_ttl_seconds,
        )

    async def generate_dashboard(
        self,
        requirements: str,
        template_type: str = "custom",
        complexity: str = "medium",
    ) -> Dict[str, Any]:
        """Generate a dashboard configuration in JSON mode.

        An answer that does not match the dashboard structure is replaced by
        the degraded dashboard.
        """
        prompt = build_dashboard_prompt(requirements, template_type, complexity)
        result = await self.ask(
            "dashboard",
            prompt,
            ReasoningOptions(temperature=0.3, json_mode=True),
            self._settings.dashboard_cache_ttl_seconds,
        )
        valid, parsed = validate_dashboard_json(result.text)
        degraded = result.degraded
        if not valid:
            logger.warning("Generated dashboard rejected: %s", parsed)
            if not result.degraded:
                # the rejected answer must not be served again from the cache
                await self._cache.delete(
                    self._cache.key("dashboard", self._single_shot_messages("dashboard", prompt))
                )
            valid, parsed = validate_dashboard_json(self._fallback.answer_for("dashboard"))
            degraded = True
        return {
            **parsed,
            "metadata": {
                "templateType": template_type,
                "complexity": complexity,
                "cached": result.cached and not degraded,
                "degraded": degraded,
                "model": result.model,
            },
        }
