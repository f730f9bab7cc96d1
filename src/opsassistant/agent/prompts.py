"""User prompts for the single-shot agents and validation of structured answers."""

import json
from typing import Any, Dict, List, Tuple

REQUIRED_BLOCK_FIELDS = ("id", "type", "title", "position")


def build_metric_explanation_prompt(metric_name: str, language: str = "en") -> str:
    return (
        f'Explain the metric "{metric_name}" (answer language: {language}).\n\n'
        "Provide:\n"
        "- A clear and simple definition\n"
        "- What it means in a monitoring context\n"
        "- Typical thresholds (normal, warning, critical)\n"
        "- Actions to take depending on the value"
    )


def build_diagnostic_prompt(
    symptoms: str, urgency: str = "medium", affected_services: List[str] | None = None
) -> str:
    services = ", ".join(affected_services) if affected_services else "unknown"
    return (
        "Diagnose the following problem:\n\n"
        f"Symptoms: {symptoms}\n"
        f"Urgency: {urgency}\n"
        f"Affected services: {services}\n\n"
        "Provide:\n"
        "- The probable diagnosis with a confidence level\n"
        "- Possible causes ordered by likelihood\n"
        "- Immediate resolution actions\n"
        "- Preventive actions to avoid recurrence"
    )


def build_dashboard_prompt(requirements: str, template_type: str, complexity: str) -> str:
    return (
        f"Requirements: {requirements}\n"
        f"Template: {template_type}\n"
        f"Complexity: {complexity}\n\n"
        "Generate the dashboard configuration JSON."
    )


def validate_dashboard_json(text: str) -> Tuple[bool, Dict[str, Any] | str]:
    """Check a dashboard answer for the expected structure.

    Returns:
        Tuple[bool, Dict[str, Any] | str]: (True, parsed) when valid,
            (False, reason) otherwise.
    """
    try:
        parsed = json.loads(text)
    except (json.JSONDecodeError, TypeError) as e:
        return False, f"not valid JSON: {e}"
    if not isinstance(parsed, dict):
        return False, "top level must be an object"
    dashboard = parsed.get("dashboard")
    if not isinstance(dashboard, dict) or not dashboard.get("title") or "blocks" not in dashboard:
        return False, "invalid dashboard structure"
    blocks = dashboard["blocks"]
    if not isinstance(blocks, list):
        return False, "blocks must be a list"
    for block in blocks:
        if not isinstance(block, dict) or any(not block.get(f) for f in REQUIRED_BLOCK_FIELDS):
            return False, "invalid block: missing properties"
    return True, parsed


def build_quick_status_prompt(
    snapshot: Dict[str, Any], include_metrics: bool = True, include_alerts: bool = True
) -> str:
    lines = ["Perform a quick check of the system state."]
    if include_metrics:
        lines.append("Include the key service health and performance indicators.")
    if include_alerts:
        lines.append("Review the active alerts.")
    lines.append("Give a brief, professional summary.")
    lines.append("")
    lines.append("Current snapshot:")
    lines.append(json.dumps(snapshot, sort_keys=True, default=str))
    return "\n".join(lines)


def build_performance_insights_prompt(service: str, time_range: str, analysis_type: str) -> str:
    return (
        f"Analyze the performance of the {service} service over the last {time_range} "
        f"and provide insights in {analysis_type} form.\n"
        "Include concrete recommendations and points of attention."
    )
