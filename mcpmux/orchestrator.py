"""
mcpmux - Conversation orchestrator.

Owns the canonical message log and drives one provider adapter per turn,
turning its canonical event stream into committed messages:

    orchestrator = ConversationOrchestrator(
        servers=load_servers_config("mcp_config.json"),
        adapter=create_adapter(config),
        config=config,
    )
    await orchestrator.start()
    try:
        answer = await orchestrator.process_query("What's in my inbox?")
    finally:
        await orchestrator.cleanup()
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from .adapters.base import BaseProviderAdapter
from .capabilities import Capabilities
from .config import ClientConfig
from .context import ContextBudget, ContextManager, count_message_tokens, count_messages_tokens
from .dispatcher import ToolDispatcher
from .exceptions import AlreadyProcessingError, CapabilityRejectedError, ProviderError
from .hooks import HookManager
from .mcp import ConnectReport, ServerRegistry, ServerSpec
from .models import (
    Message,
    Pairing,
    Prompt,
    Role,
    TokenUsage,
    Tool,
    ToolCall,
    ToolExecutionResult,
    ToolResult,
    drop_orphan_results,
    fill_missing_results,
)
from .streaming import DeltaType, StreamEvent, StreamEventType
from .tool_state import ToolStateStore

logger = logging.getLogger("mcpmux.orchestrator")

_THINKING_BLOCKS = ("thinking", "redacted_thinking")

PROVIDER_LABELS = {
    "anthropic": "Anthropic",
    "openai": "OpenAI",
    "grok": "xAI",
    "gemini": "Gemini",
    "ollama": "Ollama",
}


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------


class ChatLog(Protocol):
    """Persistent record of a conversation, fed in causal order.

    Tool executions may arrive before the assistant text of the same turn.
    """

    def on_user_message(self, message: Message) -> None: ...

    def on_assistant_message(self, message: Message) -> None: ...

    def on_tool_execution(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        result: str,
        external: bool = False,
        from_hook: bool = False,
    ) -> None: ...

    def on_token_usage(self, usage: TokenUsage) -> None: ...


class ConversationObserver(Protocol):
    """Live display of a conversation. Purely additive."""

    def on_event(self, event: StreamEvent) -> None: ...

    def on_tool_start(self, tool_name: str, arguments: dict[str, Any], external: bool) -> None: ...

    def on_tool_end(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        result: ToolExecutionResult,
        external: bool,
        from_hook: bool,
    ) -> None: ...

    def on_warning(self, message: str) -> None: ...

    def on_done(self, text: str) -> None: ...

    def on_error(self, message: str) -> None: ...


# ---------------------------------------------------------------------------
# Admission control
# ---------------------------------------------------------------------------


class AdmissionGate:
    """One unit of work at a time, shared by the conversation and the IPC listener.

    An external (IPC) call made while a user query is running is treated as
    part of that query. An external call made while idle holds the gate, so a
    user query arriving meanwhile is rejected. Overlapping external calls are
    rejected.
    """

    def __init__(self) -> None:
        self._query_active = False
        self._external_active = False

    @property
    def busy(self) -> bool:
        return self._query_active or self._external_active

    @property
    def query_active(self) -> bool:
        return self._query_active

    def acquire_query(self) -> None:
        if self.busy:
            raise AlreadyProcessingError("Already processing a query")
        self._query_active = True

    def release_query(self) -> None:
        self._query_active = False

    def try_acquire_external(self) -> bool:
        if self._external_active:
            return False
        self._external_active = True
        return True

    def release_external(self) -> None:
        self._external_active = False


# ---------------------------------------------------------------------------
# Error rewriting
# ---------------------------------------------------------------------------

_STATUS_BEFORE_HTML = re.compile(r"(\d{3})\s*<!DOCTYPE", re.IGNORECASE)
_STATUS_IN_TITLE = re.compile(r"<title>.*?(\d{3}):\s*([^<]+)</title>", re.IGNORECASE | re.DOTALL)
_BARE_STATUS = re.compile(r"\b([45]\d{2})\b")


def clean_error_message(error: Any, provider: str = "Provider") -> str:
    """Rewrite noisy backend errors (proxy HTML pages, bare status codes) into short text."""
    raw = getattr(error, "message", None) or str(error) or "An unknown error occurred"
    label = f"{provider} API error"

    if "<!doctype html" in raw.lower() or "<html" in raw.lower():
        status = _STATUS_BEFORE_HTML.search(raw)
        if status is None and getattr(error, "status_code", None):
            code = str(error.status_code)
        else:
            code = status.group(1) if status else None
        if code == "520":
            return (
                f"{label} 520: Connection issue between Cloudflare and the origin server. "
                "Please try again in a few minutes."
            )
        if code:
            return f"{label} {code}: Server connection issue. Please try again."
        title = _STATUS_IN_TITLE.search(raw)
        if title:
            return f"{label} {title.group(1)}: {title.group(2).strip()}"
        return f"{label}: Server connection issue. Please try again."

    status = _BARE_STATUS.search(raw)
    if status and "error" not in raw.lower():
        code = status.group(1)
        if code.startswith("5"):
            return f"{label} {code}: Server error. Please try again."
        return f"{label} {code}: Client error. {raw}"
    return raw


# ---------------------------------------------------------------------------
# Orchestrator
# ---------------------------------------------------------------------------


@dataclass
class _ToolRecord:
    call_id: str
    name: str
    arguments: dict[str, Any]
    result: str
    content_blocks: list[dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False


@dataclass
class _TurnBuffer:
    """Deltas and tool records accumulated since the last commit."""

    text: str = ""
    thinking: str = ""
    tools: list[_ToolRecord] = field(default_factory=list)
    usage_reported: bool = False

    @property
    def empty(self) -> bool:
        return not self.text and not self.thinking and not self.tools


class ConversationOrchestrator:
    """Drives the agentic loop for one conversation.

    Args:
        servers: Tool-servers to connect. A single server is a one-element list.
        adapter: The active provider adapter.
        config: Client configuration.
        capabilities: Canceller / Approver / ForceStopper bundle.
        chat_log: Optional persistent log collaborator.
        observer: Optional live-display collaborator.
        registry: Optional pre-built registry (tests inject fakes here).
    """

    def __init__(
        self,
        servers: list[ServerSpec],
        adapter: BaseProviderAdapter,
        config: Optional[ClientConfig] = None,
        capabilities: Optional[Capabilities] = None,
        chat_log: Optional[ChatLog] = None,
        observer: Optional[ConversationObserver] = None,
        registry: Optional[ServerRegistry] = None,
        hooks: Optional[HookManager] = None,
    ) -> None:
        self.config = config or ClientConfig()
        self.servers = list(servers)
        self.adapter = adapter
        self.model = adapter.resolve_model(self.config.model if self.config.provider == adapter.provider else None)
        self.capabilities = capabilities or Capabilities()
        self.chat_log = chat_log
        self.observer = observer

        self.registry = registry or ServerRegistry(ToolStateStore(self.config.tool_state_path))
        self.hooks = hooks if hooks is not None else HookManager(self.config.hooks_path)
        self.dispatcher = ToolDispatcher(
            self.registry,
            capabilities=self.capabilities,
            hooks=self.hooks,
            tool_timeout=self.config.tool_timeout,
            force_stop_grace=self.config.force_stop_grace,
            poll_interval=self.config.force_stop_poll_interval,
            observer=self,
        )
        self.context = ContextManager(
            ContextBudget(
                context_window=adapter.context_window(self.model),
                threshold=self.config.summarize_threshold,
                recent_messages_to_keep=self.config.recent_messages_to_keep,
                enabled=self.config.summarize_enabled,
            )
        )
        self.gate = AdmissionGate()
        self.messages: list[Message] = []
        self.token_count = 0
        self.tool_filter: Optional[Callable[[Tool], bool]] = None
        self.connect_report: Optional[ConnectReport] = None

    # -- lifecycle ---------------------------------------------------------

    async def start(self) -> ConnectReport:
        """Connect every configured server; raises if none connects."""
        self.connect_report = await self.registry.connect_all(self.servers)
        for name, error in self.connect_report.failed.items():
            self._warn(f"Failed to connect to MCP server '{name}': {error}")
        await self.adapter.prepare(self.model)
        self.context.budget.context_window = self.adapter.context_window(self.model)
        logger.info(
            "Connected to %d MCP server(s), %d tool(s) exposed",
            len(self.connect_report.connected),
            len(self.tools),
        )
        return self.connect_report

    async def cleanup(self) -> None:
        await self.registry.disconnect_all()

    @property
    def tools(self) -> list[Tool]:
        """Tools currently visible to the model."""
        tools = self.registry.exposed_tools()
        if self.tool_filter is not None:
            tools = [t for t in tools if self.tool_filter(t)]
        return tools

    @property
    def pairing(self) -> Pairing:
        return self.adapter.pairing

    # -- queries -----------------------------------------------------------

    async def process_query(
        self,
        text: str,
        attachments: Optional[list[dict[str, Any]]] = None,
        preamble: Optional[str] = None,
    ) -> str:
        """Run one user turn to completion and return the final assistant text.

        ``preamble`` is added as a separate user message ahead of ``text``.

        Raises:
            AlreadyProcessingError: If another query (or an idle-time external
                call) is in flight.
        """
        self.gate.acquire_query()
        try:
            return await self._process(text, attachments, preamble)
        finally:
            self.gate.release_query()

    async def _process(
        self,
        text: str,
        attachments: Optional[list[dict[str, Any]]],
        preamble: Optional[str],
    ) -> str:
        await self._maybe_compact()
        if preamble:
            self.add_user_message(preamble)
        self.add_user_message(text, attachments)
        await self._maybe_compact()

        try:
            answer = await self._run_with_thinking_fallback()
        except ProviderError as exc:
            return self._recover(exc)

        await self._resync_tokens()
        self._notify("on_done", answer)
        return answer

    def add_user_message(self, text: str, attachments: Optional[list[dict[str, Any]]] = None) -> Message:
        message = Message.user(text, attachments)
        self.messages.append(message)
        self.token_count += count_message_tokens(message)
        self._log("on_user_message", message)
        return message

    async def _run_with_thinking_fallback(self) -> str:
        try:
            return await self._run_turn()
        except CapabilityRejectedError as exc:
            if exc.capability != "thinking" or not self.adapter.thinking:
                raise
            logger.warning("%s rejected thinking, retrying without it: %s", self.model, exc.message)
            self._warn(f"{self.model} does not support thinking; retrying with thinking disabled.")
            self.adapter.thinking = False
            self._strip_thinking()
            return await self._run_turn()

    def _strip_thinking(self) -> None:
        for message in self.messages:
            message.thinking = None
            if message.content_blocks:
                message.content_blocks = [
                    b for b in message.content_blocks if b.get("type") not in _THINKING_BLOCKS
                ]

    def _recover(self, exc: ProviderError) -> str:
        cleaned = clean_error_message(exc, PROVIDER_LABELS.get(self.adapter.provider, "Provider"))
        logger.error("Error during query processing: %s", cleaned)
        apology = f"I apologize, but I encountered an error: {cleaned}"
        message = Message.assistant(apology)
        self.messages.append(message)
        self.token_count += count_message_tokens(message)
        self._log("on_assistant_message", message)
        self._notify("on_error", cleaned)
        return apology

    # -- event state machine -----------------------------------------------

    async def _run_turn(self) -> str:
        self.messages = fill_missing_results(drop_orphan_results(self.messages), self.pairing)
        stream = self.adapter.stream_with_tools(
            self.messages,
            self.model,
            self.tools,
            self.config.max_tokens,
            self.dispatcher.execute,
            max_iterations=self.config.max_iterations,
            is_cancelled=self.capabilities.is_cancelled,
        )
        buffer = _TurnBuffer()
        answer = ""
        try:
            async for event in stream:
                self._notify("on_event", event)
                if event.type == StreamEventType.MESSAGE_START:
                    buffer = _TurnBuffer()
                elif event.type == StreamEventType.CONTENT_BLOCK_DELTA:
                    delta = event.data.get("delta_type")
                    if delta == DeltaType.TEXT:
                        buffer.text += event.data.get("text", "")
                    elif delta == DeltaType.THINKING:
                        buffer.thinking += event.data.get("text", "")
                elif event.type == StreamEventType.TOOL_USE_COMPLETE:
                    self._record_tool(buffer, event)
                elif event.type == StreamEventType.TOKEN_USAGE:
                    usage = event.usage
                    self.token_count = usage.total
                    buffer.usage_reported = True
                    self._log("on_token_usage", usage)
                elif event.type == StreamEventType.MESSAGE_STOP:
                    committed = self._commit(buffer, event.data.get("final_message"))
                    if committed is not None and committed.content:
                        answer = committed.content
                    buffer = _TurnBuffer()
                    await self._maybe_compact()
                elif event.type == StreamEventType.CLIENT_INFO:
                    self._warn(event.data.get("message", ""))
                elif event.type == StreamEventType.MAX_ITERATIONS_REACHED:
                    self._warn(f"Reached maximum of {event.data.get('iterations')} iterations")
        finally:
            if not buffer.empty:
                committed = self._commit(buffer, None)
                if committed is not None and committed.content:
                    answer = committed.content
            self.messages = fill_missing_results(self.messages, self.pairing)
        return answer

    def _record_tool(self, buffer: _TurnBuffer, event: StreamEvent) -> None:
        data = event.data
        record = _ToolRecord(
            call_id=data.get("block_id") or "",
            name=data.get("tool_name", ""),
            arguments=data.get("tool_input") or {},
            result=data.get("result", ""),
            content_blocks=data.get("content_blocks") or [],
            cancelled=bool(data.get("cancelled")),
        )
        buffer.tools.append(record)
        self._log("on_tool_execution", record.name, record.arguments, record.result, False, False)
        if self.capabilities.is_cancelled():
            logger.info("Cancellation observed after tool %s; keeping its result", record.name)

    def _commit(self, buffer: _TurnBuffer, final_message: Optional[dict[str, Any]]) -> Optional[Message]:
        """Commit one assistant turn plus its tool results to the log."""
        calls = [ToolCall(r.call_id, r.name, r.arguments) for r in buffer.tools]
        if final_message is not None:
            assistant = Message.assistant(
                final_message.get("content", ""),
                content_blocks=list(final_message.get("content_blocks") or []),
                tool_calls=calls,
                thinking=final_message.get("thinking"),
            )
        elif buffer.empty:
            return None
        else:
            assistant = Message.assistant(
                buffer.text, tool_calls=calls, thinking=buffer.thinking or None
            )

        added = [assistant]
        self.messages.append(assistant)
        self._log("on_assistant_message", assistant)

        results = [
            ToolResult(r.call_id, r.name, r.result, content_blocks=r.content_blocks, cancelled=r.cancelled)
            for r in buffer.tools
        ]
        if results and self.pairing == Pairing.BY_ID:
            tool_message = Message(role=Role.TOOL, tool_results=results)
            self.messages.append(tool_message)
            added.append(tool_message)
        else:
            for result in results:
                added.append(self._attach_positional(result))

        if not buffer.usage_reported:
            self.token_count += count_messages_tokens(added)
        return assistant

    def _attach_positional(self, result: ToolResult) -> Message:
        """Place a result right after the nearest assistant message still awaiting it."""
        message = Message(role=Role.TOOL, tool_results=[result])
        answered = {
            tr.tool_call_id for m in self.messages if m.role == Role.TOOL for tr in m.tool_results
        }
        for index in range(len(self.messages) - 1, -1, -1):
            candidate = self.messages[index]
            if candidate.role != Role.ASSISTANT:
                continue
            if result.tool_call_id in candidate.call_ids and result.tool_call_id not in answered:
                insert_at = index + 1
                while insert_at < len(self.messages) and self.messages[insert_at].role == Role.TOOL:
                    insert_at += 1
                self.messages.insert(insert_at, message)
                return message
        self.messages.append(message)
        return message

    # -- context -----------------------------------------------------------

    async def _maybe_compact(self) -> None:
        if not self.context.should_summarize(self.token_count):
            return
        logger.info("Context at %s%%, summarizing", self.context.usage(self.token_count)["percentage"])
        self.messages, self.token_count = await self.context.summarize(
            self.messages, self.token_count, self.adapter, self.model
        )

    async def _resync_tokens(self) -> None:
        if not self.adapter.exact_token_counting:
            return
        exact = await self.adapter.count_tokens(self.messages, self.model, self.tools)
        if exact is not None:
            self.token_count = exact

    def token_usage(self) -> dict[str, Any]:
        return self.context.usage(self.token_count)

    def clear_context(self) -> None:
        self.messages = []
        self.token_count = 0
        self.context.budget.current_tokens = 0

    # -- backend switching -------------------------------------------------

    async def switch_adapter(self, adapter: BaseProviderAdapter, model: Optional[str] = None) -> None:
        """Swap the active backend, keeping the canonical log."""
        if self.gate.query_active:
            raise AlreadyProcessingError("Cannot switch provider while a query is running")
        self.adapter = adapter
        self.model = adapter.resolve_model(model)
        await adapter.prepare(self.model)
        self.context.budget.context_window = adapter.context_window(self.model)
        self.messages = fill_missing_results(drop_orphan_results(self.messages), adapter.pairing)
        logger.info("Switched to %s (%s)", adapter.provider, self.model)

    # -- tool and prompt management ----------------------------------------

    def enable_tool(self, name: str) -> None:
        self.registry.tool_state.set_enabled(name, True)

    def disable_tool(self, name: str) -> None:
        self.registry.tool_state.set_enabled(name, False)

    def enable_all_tools(self) -> None:
        self.registry.tool_state.enable_all(t.name for t in self.registry.all_tools())

    def disable_all_tools(self) -> None:
        self.registry.tool_state.disable_all(t.name for t in self.registry.all_tools())

    def set_server_exposed(self, server: str, exposed: bool) -> None:
        self.registry.tool_state.set_server_exposed(server, exposed)

    def list_prompts(self) -> list[Prompt]:
        return self.registry.exposed_prompts()

    async def get_prompt(
        self, server: str, name: str, arguments: Optional[dict[str, str]] = None
    ) -> list[dict[str, Any]]:
        return await self.registry.get_prompt(server, name, arguments)

    async def refresh_servers(self) -> set[str]:
        return await self.registry.refresh_catalogs()

    # -- ToolObserver (called by the dispatcher) ---------------------------

    def on_tool_start(self, tool_name: str, arguments: dict[str, Any], external: bool) -> None:
        self._notify("on_tool_start", tool_name, arguments, external)

    def on_tool_end(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        result: ToolExecutionResult,
        external: bool,
        from_hook: bool,
    ) -> None:
        self._notify("on_tool_end", tool_name, arguments, result, external, from_hook)
        # Model-issued calls reach the chat log through tool_use_complete.
        if external or from_hook:
            self._log("on_tool_execution", tool_name, arguments, result.display_text, external, from_hook)

    # -- collaborator plumbing ---------------------------------------------

    def _warn(self, message: str) -> None:
        logger.warning("%s", message)
        self._notify("on_warning", message)

    def _notify(self, method: str, *args: Any) -> None:
        if self.observer is None:
            return
        try:
            getattr(self.observer, method)(*args)
        except Exception as exc:
            logger.debug("Observer %s failed: %s", method, exc)

    def _log(self, method: str, *args: Any) -> None:
        if self.chat_log is None:
            return
        try:
            getattr(self.chat_log, method)(*args)
        except Exception as exc:
            logger.warning("Chat log %s failed: %s", method, exc)
