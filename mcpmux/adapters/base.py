"""Base adapter for LLM provider integrations.

Every adapter exposes one operation, :meth:`BaseProviderAdapter.stream_with_tools`,
which takes canonical messages and tools and yields canonical
:class:`~mcpmux.streaming.StreamEvent` objects. Internally each adapter runs
its own request / tool-execute / re-request loop against the backend's native
API; this base class owns that loop and subclasses supply one streamed
round-trip at a time plus the native message conversion.
"""

import json
import logging
import math
import re
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Awaitable, Callable, Optional

from mcpmux.config import UNLIMITED_ITERATIONS
from mcpmux.exceptions import CapabilityRejectedError, ProviderError, ToolNotFoundError
from mcpmux.models import (
    CANCELLED_RESULT,
    Message,
    Pairing,
    TokenUsage,
    Tool,
    ToolCall,
    ToolExecutionResult,
    ToolResult,
    drop_orphan_results,
)
from mcpmux.streaming import StreamEvent

logger = logging.getLogger("mcpmux.adapters")

ToolExecutor = Callable[[str, dict[str, Any]], Awaitable[ToolExecutionResult]]
CancelCheck = Callable[[], bool]

IMAGE_FOLLOWUP_TEXT = (
    "Here are the image(s) returned by the tool(s) above. "
    "Please analyze them as part of the tool results."
)

SUMMARY_INSTRUCTION = (
    "Summarize the above conversation concisely, preserving key decisions, context, "
    "important information, and any tool usage patterns. Focus on what was accomplished "
    "and what context is needed to continue the conversation."
)

_THINKING_REJECTION = re.compile(
    r"(does not support|doesn't support|not supported|unsupported|unknown|invalid)"
    r".{0,60}\b(think|thinking|reasoning|reasoning_effort)\b"
    r"|\b(think|thinking|reasoning|reasoning_effort)\b.{0,60}"
    r"(not supported|unsupported|is not available|not allowed)",
    re.IGNORECASE | re.DOTALL,
)


def is_thinking_rejection(error_text: str) -> bool:
    """True when a backend error says the model rejected a reasoning parameter."""
    return bool(_THINKING_REJECTION.search(error_text or ""))


def parse_arguments(raw: Any) -> dict[str, Any]:
    """Decode tool-call arguments that may arrive as a JSON string or a dict."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        parsed = json.loads(raw)
    except (json.JSONDecodeError, TypeError):
        return {}
    return parsed if isinstance(parsed, dict) else {}


def new_call_id(prefix: str = "call") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def tools_to_openai_format(tools: list[Tool]) -> list[dict[str, Any]]:
    """Convert canonical tools to OpenAI function-calling format."""
    return [
        {
            "type": "function",
            "function": {
                "name": t.name,
                "description": t.description,
                "parameters": t.input_schema,
            },
        }
        for t in tools
    ]


def tools_to_anthropic_format(tools: list[Tool]) -> list[dict[str, Any]]:
    """Convert canonical tools to Anthropic tool format."""
    return [
        {
            "name": t.name,
            "description": t.description,
            "input_schema": t.input_schema,
        }
        for t in tools
    ]


def estimate_tokens(text: str) -> int:
    """Rough token estimate (four characters per token)."""
    return math.ceil(len(text or "") / 4)


@dataclass
class AdapterConfig:
    """Configuration for provider adapters.

    Attributes:
        api_key: Backend credential. Falls back to the SDK's own environment
            lookup when omitted.
        base_url: Optional endpoint override.
        system_prompt: Optional system instruction sent with every request.
        thinking: Request reasoning/"thinking" output where the backend
            supports it.
        thinking_budget: Token budget for backends that take one.
        timeout: Request timeout in seconds.
    """

    api_key: Optional[str] = None
    base_url: Optional[str] = None
    system_prompt: Optional[str] = None
    thinking: bool = False
    thinking_budget: int = 4096
    timeout: float = 600.0
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass
class RoundState:
    """Accumulates what one backend round-trip produced."""

    iteration: int
    text: str = ""
    thinking: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    stop_reason: Optional[str] = None
    usage: Optional[TokenUsage] = None
    final_message: Optional[dict[str, Any]] = None
    native: Any = None


class BaseProviderAdapter(ABC):
    """Base class for provider adapters.

    Subclasses implement :meth:`to_native`, :meth:`_stream_round`,
    :meth:`_append_round` and :meth:`complete`; the tool loop, cancellation
    checks and iteration accounting live here.
    """

    provider: str = ""
    default_model: str = ""
    pairing: Pairing = Pairing.BY_ID
    exact_token_counting: bool = False

    def __init__(self, config: Optional[AdapterConfig] = None):
        self._config = config or AdapterConfig()

    @property
    def config(self) -> AdapterConfig:
        """The adapter configuration."""
        return self._config

    @property
    def thinking(self) -> bool:
        return self._config.thinking

    @thinking.setter
    def thinking(self, enabled: bool) -> None:
        self._config.thinking = enabled

    # -- canonical contract ------------------------------------------------

    async def stream_with_tools(
        self,
        messages: list[Message],
        model: str,
        tools: list[Tool],
        max_output_tokens: int,
        execute_tool: ToolExecutor,
        max_iterations: int = 10,
        is_cancelled: Optional[CancelCheck] = None,
    ) -> AsyncIterator[StreamEvent]:
        """Run the agentic loop, yielding canonical events.

        Each round-trip yields ``message_start``, the streamed block events,
        ``token_usage``, one ``tool_use_complete`` per requested tool and
        finally ``message_stop``. The loop ends when the model stops asking for
        tools, when cancellation is observed before a new round-trip, or when
        ``max_iterations`` round-trips have run.
        """
        cancelled = is_cancelled or (lambda: False)
        if max_iterations < 0:
            max_iterations = UNLIMITED_ITERATIONS
        conversation = self.to_native(drop_orphan_results(messages))
        iteration = 0

        while True:
            if cancelled():
                logger.info("%s: cancelled before round-trip %d", self.provider, iteration + 1)
                break
            if iteration >= max_iterations:
                yield StreamEvent.max_iterations_reached(iteration)
                break
            iteration += 1

            state = RoundState(iteration=iteration)
            yield StreamEvent.message_start(iteration)
            async for event in self._stream_round(conversation, model, tools, max_output_tokens, state):
                yield event
            if state.usage is not None:
                yield StreamEvent.token_usage(state.usage)

            if not state.tool_calls:
                yield StreamEvent.message_stop(state.stop_reason, state.final_message)
                break

            results: list[ToolResult] = []
            for call in state.tool_calls:
                result = await self._run_tool(call, execute_tool, cancelled)
                results.append(result)
                yield StreamEvent.tool_use_complete(
                    call.name,
                    call.arguments,
                    result.content,
                    call.id,
                    cancelled=result.cancelled,
                    content_blocks=result.content_blocks,
                )
            self._append_round(conversation, state, results)
            yield StreamEvent.message_stop(state.stop_reason or "tool_use", state.final_message)

    async def _run_tool(
        self, call: ToolCall, execute_tool: ToolExecutor, cancelled: CancelCheck
    ) -> ToolResult:
        if cancelled():
            return ToolResult(call.id, call.name, CANCELLED_RESULT, cancelled=True)
        try:
            outcome = await execute_tool(call.name, call.arguments)
        except ToolNotFoundError as exc:
            return ToolResult(call.id, call.name, f"Error: {exc.message}")
        except Exception as exc:
            logger.warning("%s: tool %s raised %s", self.provider, call.name, exc)
            return ToolResult(call.id, call.name, f'Error executing tool "{call.name}": {exc}')
        return ToolResult(
            call.id,
            call.name,
            outcome.display_text,
            content_blocks=[b for b in outcome.content_blocks if b.get("type") == "image"],
            cancelled=outcome.cancelled,
        )

    # -- subclass hooks ----------------------------------------------------

    @abstractmethod
    def to_native(self, messages: list[Message]) -> list[Any]:
        """Translate canonical messages into the backend's conversation format."""

    @abstractmethod
    def _stream_round(
        self,
        conversation: list[Any],
        model: str,
        tools: list[Tool],
        max_output_tokens: int,
        state: RoundState,
    ) -> AsyncIterator[StreamEvent]:
        """Stream one backend round-trip, filling ``state`` as it goes."""

    @abstractmethod
    def _append_round(
        self, conversation: list[Any], state: RoundState, results: list[ToolResult]
    ) -> None:
        """Append the assistant turn and its tool results in native shape."""

    @abstractmethod
    async def complete(self, messages: list[Message], model: str, max_output_tokens: int) -> str:
        """One non-streaming, tool-less completion; returns the text."""

    # -- shared services ---------------------------------------------------

    async def summarize(self, messages: list[Message], model: str, max_output_tokens: int = 2000) -> str:
        """Ask the backend for a concise summary of ``messages``."""
        request = list(messages) + [Message.user(SUMMARY_INSTRUCTION)]
        return await self.complete(request, model, max_output_tokens)

    async def count_tokens(self, messages: list[Message], model: str, tools: Optional[list[Tool]] = None) -> Optional[int]:
        """Exact input-token count, or None when the backend has no counting API."""
        return None

    async def prepare(self, model: str) -> None:
        """Fetch any per-model metadata the adapter needs before its first request."""

    def context_window(self, model: str) -> int:
        return 128000

    def resolve_model(self, model: Optional[str]) -> str:
        return model or self.default_model

    def _provider_error(self, exc: Exception) -> ProviderError:
        """Wrap a backend SDK error, recognising reasoning-parameter rejections."""
        message = getattr(exc, "message", None) or str(exc)
        status = getattr(exc, "status_code", None)
        if self.thinking and is_thinking_rejection(message):
            return CapabilityRejectedError(message, capability="thinking", status_code=status)
        return ProviderError(message, status_code=status)
