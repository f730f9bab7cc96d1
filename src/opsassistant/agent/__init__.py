from __future__ import annotations

"""Agent package for the ops assistant.

Exposes the orchestrator that runs the tool-calling loop together with its
collaborators: the reasoning client, the tool registry and the fallback
provider.
"""

from .fallback import FallbackProvider
from .orchestrator import AgentOrchestrator
from .reasoning import ReasoningClient, ReasoningOptions, get_reasoning_client
from .tools import ToolDefinition, ToolRegistry, build_default_registry

__all__ = [
    "AgentOrchestrator",
    "FallbackProvider",
    "ReasoningClient",
    "ReasoningOptions",
    "ToolDefinition",
    "ToolRegistry",
    "build_default_registry",
    "get_reasoning_client",
]
