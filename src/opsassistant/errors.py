"""Error taxonomy for the ops assistant core.

Tool errors are recovered inside the loop and turned into tool message
content. Reasoning errors are recovered by the orchestrator through the
fallback provider, except ``InvalidRequest`` which reaches the caller.
Cache errors never leave the cache layer.
"""


class OpsAssistantError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


class SessionNotFound(OpsAssistantError):
    """Raised when a session id is unknown to the session store."""


class ToolError(OpsAssistantError):
    """Base class for tool registry failures."""


class DuplicateTool(ToolError):
    """Raised when registering a tool whose name is already taken."""


class ToolNotFound(ToolError):
    """Raised when the engine asks for a tool that is not registered."""


class InvalidArguments(ToolError):
    """Raised when a tool payload is not valid JSON or fails validation."""


class ToolExecutionFailed(ToolError):
    """Raised when a tool executor or its back-end fails."""


class ReasoningError(OpsAssistantError):
    """Base class for reasoning engine failures."""


class EngineUnavailable(ReasoningError):
    """Network error, timeout, server error or unusable engine response."""


class RateLimited(ReasoningError):
    """The engine rejected the call because of rate limiting."""


class QuotaExceeded(ReasoningError):
    """The account behind the engine has no quota left."""


class InvalidRequest(ReasoningError):
    """The engine rejected the request as malformed."""


class CacheUnavailable(OpsAssistantError):
    """Raised by cache backends when the store cannot be reached."""


class ForeignCacheKey(OpsAssistantError, ValueError):
    """Raised when an administrative call targets a key outside the namespace."""
