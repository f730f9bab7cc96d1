import json
import logging
from typing import Dict

logger = logging.getLogger(__name__)

_DEGRADED_DASHBOARD = json.dumps(
    {
        "dashboard": {
            "title": "Default dashboard",
            "description": "Configuration generated in degraded mode",
            "layout": "grid",
            "blocks": [
                {
                    "id": "default-metric",
                    "type": "MetricBlock",
                    "title": "System metrics",
                    "position": {"x": 0, "y": 0, "w": 6, "h": 3},
                    "config": {"metric": "cpu_usage"},
                }
            ],
        },
        "recommendations": ["Check the metrics configuration"],
        "explanation": "Dashboard generated in degraded mode after a reasoning engine error",
    }
)

FALLBACK_ANSWERS: Dict[str, str] = {
    "chat": (
        "I'm sorry, I am having technical difficulties processing your request. "
        "Try rephrasing your question, or contact the technical team if the "
        "problem persists."
    ),
    "opsAssistant": (
        "I am currently experiencing technical difficulties. Please check:\n\n"
        "- The state of critical services\n"
        "- Basic metrics (CPU, memory, storage)\n"
        "- Recent error logs\n\n"
        "Contact the technical team if the problem persists."
    ),
    "dashboard": _DEGRADED_DASHBOARD,
    "quick-status": (
        "System status: unavailable. Real-time metrics cannot be reached. "
        "Check the services manually or try again later."
    ),
    "performance-insights": (
        "Performance analysis unavailable. The metrics service seems unreachable. "
        "Check service status and network connectivity before retrying."
    ),
    "metricExplanation": (
        "The metric explanation is temporarily unavailable. Please try again later."
    ),
}


class FallbackProvider:
    """Static degraded answers per agent type. Never raises."""

    def __init__(self, answers: Dict[str, str] | None = None) -> None:
        self._answers = dict(FALLBACK_ANSWERS)
        if answers:
            self._answers.update({k: v for k, v in answers.items() if v})

    def answer_for(self, agent_type: str) -> str:
        """Return the degraded answer for agent_type.

        Unknown types are matched by substring ("chat", "dashboard") and
        otherwise get the generic operations answer.
        """
        answer = self._answers.get(agent_type)
        if answer is None:
            kind = agent_type or ""
            if "chat" in kind:
                answer = self._answers["chat"]
            elif "dashboard" in kind:
                answer = self._answers["dashboard"]
            else:
                answer = self._answers["opsAssistant"]
        logger.warning("Using fallback answer for %s", agent_type)
        return answer
