import logging
from dataclasses import dataclass
from typing import Any, Dict, List

import openai
from openai import AsyncOpenAI

from ..errors import EngineUnavailable, InvalidRequest, QuotaExceeded, RateLimited, ReasoningError
from ..models import Answer, ToolInvocation
from ..settings import get_settings

logger = logging.getLogger(__name__)


@dataclass
class ReasoningOptions:
    """Per-call options; None means "use the client default"."""

    model: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    json_mode: bool = False
    tools: List[Dict[str, Any]] | None = None
    tool_choice: str = "auto"


def _translate_error(e: Exception) -> ReasoningError:
    """Map an OpenAI SDK exception onto the reasoning error classes."""
    if isinstance(e, openai.RateLimitError):
        if getattr(e, "code", None) == "insufficient_quota":
            return QuotaExceeded(f"Insufficient API quota: {e}")
        return RateLimited(f"API rate limit exceeded: {e}")
    if isinstance(
        e,
        (openai.BadRequestError, openai.NotFoundError, openai.UnprocessableEntityError),
    ):
        return InvalidRequest(f"Invalid request: {e}")
    if isinstance(e, (openai.APITimeoutError, openai.APIConnectionError)):
        return EngineUnavailable(f"Reasoning engine unreachable: {e}")
    return EngineUnavailable(f"Reasoning engine error: {e}")


class ReasoningClient:
    """One chat-completions call per invoke; no automatic retries."""

    def __init__(
        self,
        api_key: str | None = None,
        base_url: str | None = None,
        model: str = "gpt-4o-mini",
        temperature: float = 0.7,
        max_tokens: int = 2000,
        timeout_seconds: float = 60.0,
        max_retries: int = 0,
        client: AsyncOpenAI | None = None,
    ) -> None:
        self._api_key = api_key
        self._base_url = base_url
        self._timeout = timeout_seconds
        self._max_retries = max_retries
        self._client = client
        self.model = model
        self.temperature = temperature
        self.max_tokens = max_tokens

    def _get_client(self) -> AsyncOpenAI:
        if self._client is None:
            self._client = AsyncOpenAI(
                api_key=self._api_key,
                base_url=self._base_url,
                timeout=self._timeout,
                max_retries=self._max_retries,
            )
        return self._client

    def _build_request(
        self, messages: List[Dict[str, Any]], options: ReasoningOptions
    ) -> Dict[str, Any]:
        request: Dict[str, Any] = {
            "model": options.model or self.model,
            "messages": messages,
            "max_tokens": options.max_tokens or self.max_tokens,
            "temperature": (
                options.temperature if options.temperature is not None else self.temperature
            ),
        }
        if options.json_mode:
            request["response_format"] = {"type": "json_object"}
        if options.tools:
            request["tools"] = options.tools
            request["tool_choice"] = options.tool_choice
        return request

    async def invoke(
        self, messages: List[Dict[str, Any]], options: ReasoningOptions | None = None
    ) -> Answer:
        """Send messages to the engine and return its answer.

        Args:
            messages: Chat-completions formatted messages, system prompt first.
            options: Model, creativity, length bound, JSON mode and tools.

        Returns:
            Answer: final text, or the tool invocations the engine requests.

        Raises:
            RateLimited, QuotaExceeded, InvalidRequest, EngineUnavailable.
        """
        opts = options or ReasoningOptions()
        request = self._build_request(messages, opts)
        try:
            response = await self._get_client().chat.completions.create(**request)
        except openai.OpenAIError as e:
            error = _translate_error(e)
            logger.error("Reasoning call failed (%s): %s", type(error).__name__, e)
            raise error from e

        if not response or not response.choices or response.choices[0].message is None:
            raise EngineUnavailable("Reasoning engine returned no choices")
        message = response.choices[0].message

        invocations: List[ToolInvocation] = []
        for tc in message.tool_calls or []:
            function = getattr(tc, "function", None)
            if function is None or not function.name:
                continue
            invocations.append(
                ToolInvocation(id=tc.id, name=function.name, arguments=function.arguments or "{}")
            )

        if not invocations and not (message.content or "").strip():
            raise EngineUnavailable("Reasoning engine returned an empty answer")

        usage = response.usage.model_dump() if response.usage is not None else None
        logger.info(
            "Reasoning answer received model=%s tool_calls=%d tokens=%s",
            response.model,
            len(invocations),
            usage.get("total_tokens") if usage else "n/a",
        )
        return Answer(
            text=message.content if not invocations else None,
            tool_invocations=invocations,
            model=response.model or request["model"],
            usage=usage,
        )


def get_reasoning_client() -> ReasoningClient:
    """Build a ReasoningClient from settings."""
    settings = get_settings()
    return ReasoningClient(
        api_key=settings.openai_api_key,
        base_url=settings.openai_base_url,
        model=settings.model,
        temperature=settings.temperature,
        max_tokens=settings.max_tokens,
        timeout_seconds=settings.reasoning_timeout_seconds,
        max_retries=settings.reasoning_max_retries,
    )
