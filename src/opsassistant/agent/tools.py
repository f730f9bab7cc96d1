import asyncio
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Callable, Dict, List, Literal, Type

from pydantic import BaseModel, Field, ValidationError

from ..errors import DuplicateTool, InvalidArguments, ToolExecutionFailed, ToolNotFound
from ..services.backends import DashboardServiceClient, MetricsServiceClient

logger = logging.getLogger(__name__)

ServiceName = Literal[
    "auth-service",
    "db-service",
    "ai-service",
    "metrics-service",
    "notification-service",
    "payment-service",
]

TIME_RANGES: Dict[str, timedelta] = {
    "1h": timedelta(hours=1),
    "6h": timedelta(hours=6),
    "24h": timedelta(hours=24),
    "7d": timedelta(days=7),
    "30d": timedelta(days=30),
}


@dataclass(frozen=True)
class ToolDefinition:
    """A callable tool: its name, description, argument model and async executor.

    The JSON schema of ``arguments_model`` is what the reasoning engine sees;
    the executor only ever receives a validated instance of it.
    """

    name: str
    description: str
    arguments_model: Type[BaseModel]
    executor: Callable[[Any], Awaitable[str]]

    @property
    def parameters(self) -> Dict[str, Any]:
        return self.arguments_model.model_json_schema()

    def to_tool_schema(self) -> Dict[str, Any]:
        """OpenAI function-calling schema."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters,
            },
        }


class ToolRegistry:
    """Name → ToolDefinition map used to describe and execute tools."""

    def __init__(self, timeout_seconds: float | None = None) -> None:
        self._tools: Dict[str, ToolDefinition] = {}
        self._timeout = timeout_seconds

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    @property
    def names(self) -> List[str]:
        return list(self._tools)

    def register(self, definition: ToolDefinition) -> None:
        if definition.name in self._tools:
            raise DuplicateTool(f"Tool already registered: {definition.name}")
        self._tools[definition.name] = definition
        logger.debug("Registered tool %s", definition.name)

    def describe_all(self) -> List[Dict[str, Any]]:
        """Schemas of every registered tool, in registration order."""
        return [tool.to_tool_schema() for tool in self._tools.values()]

    def _validate(self, tool: ToolDefinition, raw_arguments: str | Dict[str, Any] | None) -> BaseModel:
        if raw_arguments is None or raw_arguments == "":
            payload: Any = {}
        elif isinstance(raw_arguments, str):
            try:
                payload = json.loads(raw_arguments)
            except json.JSONDecodeError as e:
                raise InvalidArguments(f"{tool.name}: arguments are not valid JSON ({e})") from e
        else:
            payload = raw_arguments
        if not isinstance(payload, dict):
            raise InvalidArguments(f"{tool.name}: arguments must be a JSON object")
        try:
            return tool.arguments_model.model_validate(payload)
        except ValidationError as e:
            details = "; ".join(
                f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
                for err in e.errors()
            )
            raise InvalidArguments(f"{tool.name}: {details}") from e

    async def execute(self, name: str, raw_arguments: str | Dict[str, Any] | None) -> str:
        """Validate the payload and run the tool.

        Args:
            name: Registered tool name (str).
            raw_arguments: JSON text or dict supplied by the engine.

        Returns:
            str: Tool output.

        Raises:
            ToolNotFound: name is not registered.
            InvalidArguments: payload is not JSON or fails validation.
            ToolExecutionFailed: the executor or its back-end failed or timed out.
        """
        tool = self._tools.get(name)
        if tool is None:
            raise ToolNotFound(f"Tool {name} not found")
        arguments = self._validate(tool, raw_arguments)
        logger.info("Executing tool: %s", name)
        try:
            if self._timeout is not None:
                result = await asyncio.wait_for(tool.executor(arguments), self._timeout)
            else:
                result = await tool.executor(arguments)
        except asyncio.TimeoutError as e:
            raise ToolExecutionFailed(f"{name} timed out after {self._timeout}s") from e
        except Exception as e:
            logger.error("Error executing tool %s: %s", name, e)
            raise ToolExecutionFailed(f"{name} failed: {e}") from e
        return result if isinstance(result, str) else json.dumps(result, default=str)


# ---------------------------------------------------------------------------
# Argument models
# ---------------------------------------------------------------------------


class PrometheusQueryArgs(BaseModel):
    query: str = Field(
        min_length=1,
        description='PromQL query, e.g. rate(http_requests_total{job="auth-service"}[5m])',
    )


class PrometheusRangeQueryArgs(BaseModel):
    query: str = Field(min_length=1, description="PromQL query string")
    start: str = Field(description='Start time (RFC3339 or Unix timestamp), e.g. "2024-01-01T00:00:00Z"')
    end: str = Field(description='End time (RFC3339 or Unix timestamp), e.g. "2024-01-01T01:00:00Z"')
    step: str = Field(description='Resolution step, e.g. "15s", "1m", "5m", "1h"')


class ServiceHealthArgs(BaseModel):
    service: ServiceName | None = Field(
        default=None, description="Service to check. Omit to get every service."
    )


class ActiveAlertsArgs(BaseModel):
    severity: Literal["critical", "warning", "info"] | None = Field(
        default=None, description="Filter alerts by severity"
    )
    state: Literal["firing", "pending", "resolved"] | None = Field(
        default=None, description="Filter alerts by state"
    )


class GenerateDashboardArgs(BaseModel):
    requirements: str = Field(
        min_length=1,
        description="What the dashboard must show. Be specific about metrics and visualizations.",
    )
    templateType: Literal["overview", "performance", "errors", "custom"] = Field(
        default="custom", description="Dashboard template"
    )
    complexity: Literal["simple", "medium", "complex"] = Field(
        default="medium", description="Dashboard complexity"
    )


class AnalyzePerformanceArgs(BaseModel):
    service: ServiceName | Literal["all"] = Field(description="Service to analyze")
    timeRange: Literal["1h", "6h", "24h", "7d", "30d"] = Field(
        default="24h", description="Analysis window"
    )
    analysisType: Literal["overview", "detailed", "trends", "bottlenecks"] = Field(
        default="overview", description="Kind of analysis"
    )


class DiagnoseIssueArgs(BaseModel):
    symptoms: str = Field(min_length=1, description="Symptoms or issues being experienced")
    affectedServices: List[str] = Field(
        default_factory=list, description="Services that might be affected"
    )
    urgency: Literal["low", "medium", "high", "critical"] = Field(
        default="medium", description="Urgency of the issue"
    )


# ---------------------------------------------------------------------------
# Executors
# ---------------------------------------------------------------------------


def _job_selector(service: str) -> str:
    return "" if service == "all" else f'{{job="{service}"}}'


def build_default_tools(
    metrics: MetricsServiceClient,
    dashboards: DashboardServiceClient,
    now: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
) -> List[ToolDefinition]:
    """Built-in monitoring tools bound to the given back-end clients."""

    async def prometheus_query(args: PrometheusQueryArgs) -> str:
        return json.dumps(await metrics.query(args.query))

    async def prometheus_range_query(args: PrometheusRangeQueryArgs) -> str:
        return json.dumps(await metrics.query_range(args.query, args.start, args.end, args.step))

    async def get_service_health(args: ServiceHealthArgs) -> str:
        return json.dumps(await metrics.service_health(args.service))

    async def get_active_alerts(args: ActiveAlertsArgs) -> str:
        return json.dumps(await metrics.active_alerts(args.severity, args.state))

    async def generate_dashboard(args: GenerateDashboardArgs) -> str:
        return json.dumps(
            await dashboards.generate(args.requirements, args.templateType, args.complexity)
        )

    async def analyze_performance(args: AnalyzePerformanceArgs) -> str:
        end = now()
        start = end - TIME_RANGES[args.timeRange]
        selector = _job_selector(args.service)
        queries = {
            "cpu": f"rate(process_cpu_seconds_total{selector}[5m]) * 100",
            "memory": f"process_resident_memory_bytes{selector}",
            "requests": f"rate(http_requests_total{selector}[5m])",
        }
        results = await asyncio.gather(
            *(
                metrics.query_range(q, start.isoformat(), end.isoformat(), "5m")
                for q in queries.values()
            )
        )
        return json.dumps(
            {
                "service": args.service,
                "timeRange": args.timeRange,
                "analysisType": args.analysisType,
                "metrics": dict(zip(queries, results)),
                "summary": f"Performance analysis for {args.service} over the last {args.timeRange}",
            }
        )

    async def diagnose_issue(args: DiagnoseIssueArgs) -> str:
        health, alerts = await asyncio.gather(
            metrics.service_health(), metrics.active_alerts()
        )
        return json.dumps(
            {
                "symptoms": args.symptoms,
                "affectedServices": args.affectedServices,
                "urgency": args.urgency,
                "currentState": {"health": health, "alerts": alerts},
                "analysis": f'Diagnostic analysis based on symptoms: "{args.symptoms}"',
                "recommendations": [
                    "Check service health status",
                    "Review active alerts",
                    "Monitor error rates",
                    "Verify resource usage",
                ],
            }
        )

    return [
        ToolDefinition(
            name="prometheus_query",
            description=(
                "Executes a PromQL instant query against the monitoring system. "
                "Use it for current values such as CPU usage or error rates."
            ),
            arguments_model=PrometheusQueryArgs,
            executor=prometheus_query,
        ),
        ToolDefinition(
            name="prometheus_range_query",
            description=(
                "Executes a PromQL range query to get metrics over time for charts "
                "and trend analysis."
            ),
            arguments_model=PrometheusRangeQueryArgs,
            executor=prometheus_range_query,
        ),
        ToolDefinition(
            name="get_service_health",
            description="Gets the health status of one or all monitored services.",
            arguments_model=ServiceHealthArgs,
            executor=get_service_health,
        ),
        ToolDefinition(
            name="get_active_alerts",
            description="Retrieves currently active alerts, optionally filtered by severity or state.",
            arguments_model=ActiveAlertsArgs,
            executor=get_active_alerts,
        ),
        ToolDefinition(
            name="generate_dashboard",
            description="Generates a monitoring dashboard configuration from user requirements.",
            arguments_model=GenerateDashboardArgs,
            executor=generate_dashboard,
        ),
        ToolDefinition(
            name="analyze_performance",
            description=(
                "Performs a performance analysis of a service using CPU, memory and "
                "request-rate series over a time range."
            ),
            arguments_model=AnalyzePerformanceArgs,
            executor=analyze_performance,
        ),
        ToolDefinition(
            name="diagnose_issue",
            description=(
                "Collects current health and alerts to diagnose reported symptoms. "
                "Use it when users report problems."
            ),
            arguments_model=DiagnoseIssueArgs,
            executor=diagnose_issue,
        ),
    ]


def build_default_registry(
    metrics: MetricsServiceClient,
    dashboards: DashboardServiceClient,
    timeout_seconds: float | None = None,
) -> ToolRegistry:
    """Registry pre-loaded with the built-in monitoring tools."""
    registry = ToolRegistry(timeout_seconds=timeout_seconds)
    for tool in build_default_tools(metrics, dashboards):
        registry.register(tool)
    return registry
