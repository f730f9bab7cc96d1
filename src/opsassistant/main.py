import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Literal

from fastapi import FastAPI, Header, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, ConfigDict, Field

from .agent import (
    AgentOrchestrator,
    FallbackProvider,
    build_default_registry,
    get_reasoning_client,
)
from .agent.tools import ServiceName
from .errors import ForeignCacheKey, InvalidRequest, OpsAssistantError
from .metrics import get_metrics
from .services.backends import DashboardServiceClient, MetricsServiceClient, build_http_client
from .services.cache import ResponseCache, build_response_cache, close_response_cache
from .services.session_store import get_session_store
from .settings import get_settings


def setup_server_logging() -> logging.Logger:
    """Configure and return the server logger."""
    logs_dir = Path("logs")
    logs_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger("opsassistant")
    if logger.handlers:
        return logger

    logger.setLevel(get_settings().log_level)
    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s - %(message)s")

    ch = logging.StreamHandler()
    ch.setFormatter(fmt)
    logger.addHandler(ch)

    fh = RotatingFileHandler(logs_dir / "server.log", maxBytes=5_000_000, backupCount=3)
    fh.setFormatter(fmt)
    logger.addHandler(fh)

    return logger


def _cors_origins_list(origins: str) -> list[str]:
    """Parse CORS_ORIGINS into a list."""
    if not origins or origins.strip() == "*":
        return ["*"]
    return [o.strip() for o in origins.split(",") if o.strip()]


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


LOGGER = setup_server_logging()
settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Wire cache, sessions, tools and the reasoning client; close clients on shutdown."""
    cache = await build_response_cache()
    metrics_http = build_http_client(settings.metrics_service_url)
    dashboard_http = build_http_client(settings.dashboard_service_url)
    metrics_service = MetricsServiceClient(metrics_http)
    registry = build_default_registry(
        metrics_service,
        DashboardServiceClient(dashboard_http),
        timeout_seconds=settings.tool_timeout_seconds,
    )
    LOGGER.info("Registered tools: %s", ", ".join(registry.names))

    app.state.cache = cache
    app.state.orchestrator = AgentOrchestrator(
        reasoning=get_reasoning_client(),
        tools=registry,
        sessions=get_session_store(),
        cache=cache,
        fallback=FallbackProvider(),
        metrics=get_metrics(),
        settings=settings,
        metrics_service=metrics_service,
    )

    yield

    LOGGER.info("Shutting down...")
    await metrics_http.aclose()
    await dashboard_http.aclose()
    await close_response_cache(cache)


app = FastAPI(
    title="SupervIA Ops Assistant",
    version="0.1.0",
    debug=settings.debug,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins_list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    session_id: str | None = Field(default=None, alias="sessionId", max_length=128)
    message: str = Field(min_length=1, max_length=2000)
    context: Dict[str, Any] | None = None


class ExplainMetricRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    metric_name: str = Field(alias="metricName", min_length=1, max_length=200)
    language: str = "en"


class DiagnoseRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    symptoms: str = Field(min_length=1, max_length=2000)
    urgency: Literal["low", "medium", "high", "critical"] = "medium"
    affected_services: List[str] = Field(default_factory=list, alias="affectedServices")


class QuickStatusRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    include_metrics: bool = Field(default=True, alias="includeMetrics")
    include_alerts: bool = Field(default=True, alias="includeAlerts")


class PerformanceInsightsRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    service: ServiceName | Literal["all"] = "all"
    time_range: Literal["1h", "6h", "24h", "7d", "30d"] = Field(default="24h", alias="timeRange")
    analysis_type: Literal["overview", "bottlenecks", "trends", "recommendations"] = Field(
        default="overview", alias="analysisType"
    )


class DashboardRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    requirements: str = Field(min_length=1, max_length=2000)
    template_type: Literal["overview", "performance", "errors", "custom"] = Field(
        default="custom", alias="templateType"
    )
    complexity: Literal["simple", "medium", "complex"] = "medium"


def _orchestrator(request: Request) -> AgentOrchestrator:
    return request.app.state.orchestrator


def _cache(request: Request) -> ResponseCache:
    return request.app.state.cache


@app.exception_handler(ForeignCacheKey)
async def foreign_cache_key_handler(request: Request, exc: ForeignCacheKey) -> JSONResponse:
    return JSONResponse(status_code=400, content={"success": False, "message": exc.message})


@app.exception_handler(InvalidRequest)
async def invalid_request_handler(request: Request, exc: InvalidRequest) -> JSONResponse:
    LOGGER.error("Reasoning engine rejected the request: %s", exc.message)
    return JSONResponse(
        status_code=502,
        content={"success": False, "message": "The reasoning engine rejected the request"},
    )


@app.exception_handler(OpsAssistantError)
async def ops_assistant_error_handler(request: Request, exc: OpsAssistantError) -> JSONResponse:
    LOGGER.exception("Unexpected assistant error: %s", exc.message)
    return JSONResponse(status_code=500, content={"success": False, "message": "Internal error"})


@app.get("/health")
async def health() -> dict[str, Any]:
    """Health check for load balancers and monitoring.

    Returns:
        dict[str, Any]: JSON response with status field.
    """
    return {"status": "ok"}


@app.get("/metrics")
async def metrics() -> Response:
    """Prometheus exposition of the assistant counters."""
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


@app.post("/api/ops-assistant/chat")
async def chat(
    body: ChatRequest,
    request: Request,
    x_user_id: str | None = Header(default=None),
) -> dict[str, Any]:
    """Chat with the ops assistant: one user message in, one assistant message out.

    Expected Input (JSON):
        {
            "sessionId": str | null - existing session, omitted to start a new one,
            "message": str - user message (1..2000 chars),
            "context": object | null - optional client context
        }

    Response Format:
        {"success": true, "sessionId": str,
         "message": {"id", "role", "content", "timestamp"},
         "metadata": {"toolsUsedCount", "cached", "degraded", "state", "hasContext"}}
    """
    result = await _orchestrator(request).handle_turn(
        body.session_id,
        body.message,
        context=body.context,
        principal=x_user_id,
    )
    return result.to_response(has_context=bool(body.context))


@app.post("/api/ops-assistant/explain-metric")
async def explain_metric(body: ExplainMetricRequest, request: Request) -> dict[str, Any]:
    result = await _orchestrator(request).explain_metric(body.metric_name, body.language)
    return {
        "success": True,
        "explanation": result.text,
        "metadata": {
            "metricName": body.metric_name,
            "language": body.language,
            "cached": result.cached,
            "degraded": result.degraded,
            "model": result.model,
        },
    }


@app.post("/api/ops-assistant/diagnose")
async def diagnose(body: DiagnoseRequest, request: Request) -> dict[str, Any]:
    result = await _orchestrator(request).diagnose(
        body.symptoms, body.urgency, body.affected_services
    )
    return {
        "success": True,
        "diagnosis": result.text,
        "metadata": {
            "urgency": body.urgency,
            "affectedServices": len(body.affected_services),
            "cached": result.cached,
            "degraded": result.degraded,
            "timestamp": _now_iso(),
        },
    }


@app.post("/api/ops-assistant/quick-status")
async def quick_status(body: QuickStatusRequest, request: Request) -> dict[str, Any]:
    result, snapshot = await _orchestrator(request).quick_status(
        body.include_metrics, body.include_alerts
    )
    return {
        "success": True,
        "status": result.text,
        "snapshot": snapshot,
        "metadata": {
            "includeMetrics": body.include_metrics,
            "includeAlerts": body.include_alerts,
            "cached": result.cached,
            "degraded": result.degraded,
            "timestamp": _now_iso(),
        },
    }


@app.post("/api/ops-assistant/performance-insights")
async def performance_insights(body: PerformanceInsightsRequest, request: Request) -> dict[str, Any]:
    result = await _orchestrator(request).performance_insights(
        body.service, body.time_range, body.analysis_type
    )
    return {
        "success": True,
        "insights": result.text,
        "metadata": {
            "service": body.service,
            "timeRange": body.time_range,
            "analysisType": body.analysis_type,
            "cached": result.cached,
            "degraded": result.degraded,
            "timestamp": _now_iso(),
        },
    }


@app.post("/api/dashboard-agent/generate")
async def generate_dashboard(body: DashboardRequest, request: Request) -> dict[str, Any]:
    generated = await _orchestrator(request).generate_dashboard(
        body.requirements, body.template_type, body.complexity
    )
    return {"success": True, **generated}


@app.get("/api/cache/stats")
async def cache_stats(request: Request) -> dict[str, Any]:
    return {"success": True, "stats": await _cache(request).stats(), "timestamp": _now_iso()}


@app.get("/api/cache/keys")
async def cache_keys(
    request: Request, pattern: str | None = None, limit: int = 100
) -> dict[str, Any]:
    return {"success": True, **await _cache(request).list_keys(pattern, limit)}


@app.delete("/api/cache/keys/{key:path}")
async def cache_delete_key(
    key: str, request: Request, x_user_id: str | None = Header(default=None)
) -> JSONResponse:
    deleted = await _cache(request).delete(key)
    if not deleted:
        return JSONResponse(
            status_code=404, content={"success": False, "message": "Key not found", "key": key}
        )
    LOGGER.info("Cache key deleted key=%s user=%s", key, x_user_id or "anonymous")
    return JSONResponse(content={"success": True, "message": "Key deleted", "key": key})


@app.delete("/api/cache")
async def cache_flush(
    request: Request, prefix: str | None = None, x_user_id: str | None = Header(default=None)
) -> dict[str, Any]:
    removed = await _cache(request).flush(prefix)
    LOGGER.info("Cache flushed prefix=%s removed=%d user=%s", prefix, removed, x_user_id or "anonymous")
    return {"success": True, "removed": removed, "timestamp": _now_iso()}
