import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List


def _iso_now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass(frozen=True)
class ToolInvocation:
    """A tool call requested by the reasoning engine (arguments are raw, untrusted JSON)."""

    id: str
    name: str
    arguments: str = "{}"

    def to_chat_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": "function",
            "function": {"name": self.name, "arguments": self.arguments},
        }

    @classmethod
    def from_chat_dict(cls, data: Dict[str, Any]) -> "ToolInvocation":
        function = data.get("function") or {}
        return cls(
            id=str(data.get("id", "")),
            name=str(function.get("name", "")),
            arguments=function.get("arguments") or "{}",
        )


@dataclass
class Message:
    """One entry of a session history.

    ``id`` and ``timestamp`` are for the caller only and are left out of
    ``to_chat_dict`` so identical conversations serialize identically.
    """

    role: str  # "user" | "assistant" | "tool"
    content: str | None = None
    tool_invocations: List[ToolInvocation] | None = None
    tool_call_id: str | None = None
    name: str | None = None
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    timestamp: str = field(default_factory=_iso_now)

    @classmethod
    def user(cls, content: str) -> "Message":
        return cls(role="user", content=content)

    @classmethod
    def assistant(cls, content: str) -> "Message":
        return cls(role="assistant", content=content)

    @classmethod
    def tool_request(cls, invocations: List[ToolInvocation]) -> "Message":
        return cls(role="assistant", content=None, tool_invocations=list(invocations))

    @classmethod
    def tool_result(cls, invocation: ToolInvocation, content: str) -> "Message":
        return cls(
            role="tool",
            content=content,
            tool_call_id=invocation.id,
            name=invocation.name,
        )

    def to_chat_dict(self) -> Dict[str, Any]:
        """Format for the chat completions API."""
        out: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_invocations:
            out["tool_calls"] = [inv.to_chat_dict() for inv in self.tool_invocations]
        if self.tool_call_id is not None:
            out["tool_call_id"] = self.tool_call_id
        if self.name is not None:
            out["name"] = self.name
        return out


@dataclass
class Session:
    """Per-session conversation state, owned by the session store."""

    session_id: str
    messages: List[Message] = field(default_factory=list)
    created_at: str = field(default_factory=_iso_now)
    last_access: float = 0.0


@dataclass
class Answer:
    """Result of one reasoning engine call: final text or tool invocations."""

    text: str | None = None
    tool_invocations: List[ToolInvocation] = field(default_factory=list)
    model: str = ""
    usage: Dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return not self.tool_invocations

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "tool_calls": [inv.to_chat_dict() for inv in self.tool_invocations],
            "model": self.model,
            "usage": self.usage,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Answer":
        return cls(
            text=data.get("text"),
            tool_invocations=[
                ToolInvocation.from_chat_dict(tc) for tc in data.get("tool_calls") or []
            ],
            model=data.get("model", ""),
            usage=data.get("usage"),
        )


class TurnState(str, Enum):
    AWAITING_ANSWER = "awaiting_answer"
    TOOLS_REQUESTED = "tools_requested"
    EXECUTING_TOOLS = "executing_tools"
    FINAL = "final"
    DEGRADED = "degraded"
    EXHAUSTED = "exhausted"


@dataclass
class TurnResult:
    """Outcome of one handle_turn call."""

    session_id: str
    message: Message
    state: TurnState
    tools_used_count: int = 0
    cached: bool = False

    @property
    def degraded(self) -> bool:
        return self.state is TurnState.DEGRADED

    def to_response(self, has_context: bool = False) -> Dict[str, Any]:
        """Caller-facing JSON payload."""
        return {
            "success": True,
            "sessionId": self.session_id,
            "message": {
                "id": self.message.id,
                "role": "assistant",
                "content": self.message.content,
                "timestamp": self.message.timestamp,
            },
            "metadata": {
                "toolsUsedCount": self.tools_used_count,
                "cached": self.cached,
                "degraded": self.degraded,
                "state": self.state.value,
                "hasContext": has_context,
            },
        }


@dataclass
class AskResult:
    """Outcome of a single-shot (tool-less) agent call."""

    agent_type: str
    text: str
    cached: bool = False
    degraded: bool = False
    model: str = ""
