from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application configuration."""

    host: str = "0.0.0.0"
    port: int = 8000
    debug: bool = True
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    openai_api_key: str | None = None
    openai_base_url: str | None = "https://api.openai.com/v1"
    model: str = "gpt-4o-mini"
    temperature: float = 0.7
    max_tokens: int = 2000
    reasoning_timeout_seconds: float = 60.0
    reasoning_max_retries: int = 0

    chat_temperature: float = 0.1
    max_tool_rounds: int = 5
    max_parallel_tools: int = 4
    tool_timeout_seconds: float = 30.0
    turn_timeout_seconds: float = 120.0

    use_cache: bool = True
    cache_backend: Literal["memory", "redis"] = "memory"
    cache_namespace: str = "ai:"
    cache_timeout_seconds: float = 1.0
    cache_max_entries: int = 10000  # memory backend only
    chat_cache_ttl_seconds: int = 300
    metric_explanation_cache_ttl_seconds: int = 3600
    dashboard_cache_ttl_seconds: int = 7200
    diagnostic_cache_ttl_seconds: int = 900
    quick_status_cache_ttl_seconds: int = 60
    performance_insights_cache_ttl_seconds: int = 1800

    redis_url: str | None = None

    session_ttl_seconds: int = 86400  # 24 hours
    max_sessions: int = 10000

    metrics_service_url: str = "http://localhost:3003"
    dashboard_service_url: str = "http://localhost:3004"
    backend_request_timeout_seconds: float = 15.0

    cors_origins: str = "*"

    chat_system_prompt: str = (
        "You are SupervIA, an expert-level AI operations assistant for a "
        "microservices monitoring platform.\n\n"
        " Your Capabilities\n"
        "You have tools that let you query real-time metrics from Prometheus, "
        "fetch historical performance data, check service health, list active "
        "alerts, generate dashboards and run automated diagnostics.\n\n"
        " How to Use Your Tools\n"
        " - Current metrics: prometheus_query.\n"
        " - Trends and charts: prometheus_range_query.\n"
        " - System status: get_service_health.\n"
        " - Open issues: get_active_alerts.\n"
        " - Dashboards: generate_dashboard.\n"
        " - Deep performance review: analyze_performance.\n"
        " - Troubleshooting reported problems: diagnose_issue.\n\n"
        " Response Strategy\n"
        " - Always use tools when you need data. Do not guess.\n"
        " - Prioritize critical issues and propose concrete next actions.\n"
        " - If a tool returns an error, say so and work with what you have.\n\n"
        "Answer in the user's language. Keep answers precise and actionable."
    )
    ops_system_prompt: str = (
        "You are an infrastructure and operational monitoring expert for SupervIA. "
        "Analyze system and application metrics, diagnose performance problems, "
        "recommend optimizations and alerting rules, and explain complex metrics "
        "in simple terms. Always consider normal versus abnormal thresholds, "
        "temporal trends, business impact and the criticality of affected services."
    )
    dashboard_system_prompt: str = (
        "You are an expert in monitoring dashboard generation for SupervIA. "
        "Analyze the monitoring needs expressed by the user and answer ONLY with "
        "a JSON object of the form: "
        '{"dashboard": {"title": str, "description": str, "layout": "grid", '
        '"blocks": [{"id": str, "type": one of MetricBlock, LineChartBlock, '
        "BarChartBlock, TableBlock, AlertListBlock, StatusBlock, TextBlock, "
        '"title": str, "position": {"x": int, "y": int, "w": int, "h": int}, '
        '"config": object}]}, "recommendations": [str], "explanation": str}. '
        "Do not write any text outside this JSON."
    )

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="",
        extra="allow",
    )


def get_settings() -> Settings:
    """Return the application settings singleton (loaded from env / .env)."""
    global _SETTINGS
    try:
        return _SETTINGS
    except NameError:
        _SETTINGS = Settings()
        return _SETTINGS
