import logging
from typing import Any, Dict

import httpx

from ..settings import get_settings

logger = logging.getLogger(__name__)


class BackendError(Exception):
    """A tool back-end answered with an error or could not be reached."""


def _describe_http_error(e: httpx.HTTPError) -> str:
    if isinstance(e, httpx.HTTPStatusError):
        return f"{e.response.status_code} {e.response.text[:500]}"
    return str(e) or e.__class__.__name__


class MetricsServiceClient:
    """Client for the metrics service (Prometheus proxy, health, alerts)."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = await self._client.request(method, path, **kwargs)
            response.raise_for_status()
            return response.json()
        except httpx.HTTPError as e:
            raise BackendError(_describe_http_error(e)) from e
        except ValueError as e:
            raise BackendError(f"invalid JSON from metrics service: {e}") from e

    @staticmethod
    def _unwrap(payload: Any, what: str) -> Any:
        if isinstance(payload, dict) and payload.get("success"):
            return payload.get("data")
        message = payload.get("message") if isinstance(payload, dict) else None
        raise BackendError(message or f"Failed to execute {what}")

    async def query(self, query: str) -> Any:
        """Instant PromQL query."""
        payload = await self._request(
            "POST", "/api/v1/metrics/prometheus/query", json={"query": query}
        )
        return self._unwrap(payload, "Prometheus query")

    async def query_range(self, query: str, start: str, end: str, step: str) -> Any:
        """PromQL range query."""
        payload = await self._request(
            "POST",
            "/api/v1/metrics/prometheus/query_range",
            json={"query": query, "start": start, "end": end, "step": step},
        )
        return self._unwrap(payload, "Prometheus range query")

    async def service_health(self, service: str | None = None) -> Any:
        path = f"/api/v1/metrics/health/{service}" if service else "/api/v1/metrics/health"
        return await self._request("GET", path)

    async def active_alerts(self, severity: str | None = None, state: str | None = None) -> Any:
        params: Dict[str, str] = {}
        if severity:
            params["severity"] = severity
        if state:
            params["state"] = state
        return await self._request("GET", "/api/v1/alerts", params=params)


class DashboardServiceClient:
    """Client for the dashboard generator service."""

    def __init__(self, client: httpx.AsyncClient) -> None:
        self._client = client

    async def generate(self, requirements: str, template_type: str, complexity: str) -> Any:
        try:
            response = await self._client.post(
                "/api/v1/dashboard/generate",
                json={
                    "requirements": requirements,
                    "templateType": template_type,
                    "complexity": complexity,
                },
            )
            response.raise_for_status()
            payload = response.json()
        except httpx.HTTPError as e:
            raise BackendError(_describe_http_error(e)) from e
        except ValueError as e:
            raise BackendError(f"invalid JSON from dashboard service: {e}") from e
        if not (isinstance(payload, dict) and payload.get("success")):
            message = payload.get("message") if isinstance(payload, dict) else None
            raise BackendError(message or "Failed to generate dashboard")
        return payload


def build_http_client(base_url: str) -> httpx.AsyncClient:
    """AsyncClient bound to a back-end base URL with the configured timeout."""
    settings = get_settings()
    return httpx.AsyncClient(
        base_url=base_url,
        timeout=settings.backend_request_timeout_seconds,
    )
