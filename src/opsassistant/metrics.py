import logging

from prometheus_client import REGISTRY, CollectorRegistry, Counter, Histogram

logger = logging.getLogger(__name__)


class MetricsSink:
    """Prometheus counters for the assistant. Recording never raises."""

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        registry = registry if registry is not None else REGISTRY
        self.ai_calls = Counter(
            "ai_calls_total",
            "Reasoning engine calls by agent type",
            ["agent_type", "status", "cached"],
            registry=registry,
        )
        self.ai_response_time = Histogram(
            "ai_response_time_seconds",
            "Reasoning engine response time",
            ["agent_type"],
            buckets=[0.1, 0.5, 1, 2, 5, 10, 30],
            registry=registry,
        )
        self.turns = Counter(
            "ops_assistant_turns_total",
            "Chat turns by terminal state",
            ["state"],
            registry=registry,
        )
        self.tool_calls = Counter(
            "ops_assistant_tool_calls_total",
            "Tool executions by tool and outcome",
            ["tool", "status"],
            registry=registry,
        )
        self.cache_ops = Counter(
            "ai_cache_operations_total",
            "Response cache lookups by result",
            ["agent_type", "result"],
            registry=registry,
        )

    def record_ai_call(self, agent_type: str, status: str, cached: bool = False) -> None:
        try:
            self.ai_calls.labels(agent_type, status, "true" if cached else "false").inc()
        except Exception as e:
            logger.debug("Metric ai_calls_total not recorded: %s", e)

    def record_response_time(self, agent_type: str, seconds: float) -> None:
        try:
            self.ai_response_time.labels(agent_type).observe(seconds)
        except Exception as e:
            logger.debug("Metric ai_response_time_seconds not recorded: %s", e)

    def record_turn(self, state: str) -> None:
        try:
            self.turns.labels(state).inc()
        except Exception as e:
            logger.debug("Metric ops_assistant_turns_total not recorded: %s", e)

    def record_tool_call(self, tool: str, status: str) -> None:
        try:
            self.tool_calls.labels(tool, status).inc()
        except Exception as e:
            logger.debug("Metric ops_assistant_tool_calls_total not recorded: %s", e)

    def record_cache_lookup(self, agent_type: str, hit: bool) -> None:
        try:
            self.cache_ops.labels(agent_type, "hit" if hit else "miss").inc()
        except Exception as e:
            logger.debug("Metric ai_cache_operations_total not recorded: %s", e)


_metrics_instance: MetricsSink | None = None


def get_metrics() -> MetricsSink:
    """Return the process-wide sink bound to the default Prometheus registry."""
    global _metrics_instance
    if _metrics_instance is None:
        _metrics_instance = MetricsSink()
    return _metrics_instance
