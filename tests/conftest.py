"""Shared fakes for the mcpmux test suite.

``FakeSession`` stands in for an ``mcp.ClientSession`` and ``FakeConnection``
for the stdio transport, so the registry, dispatcher and orchestrator run their
real code paths without spawning processes. ``ScriptedAdapter`` replays a list
of canned backend rounds through the shared tool loop.
"""

import inspect
from typing import Any, Callable, Optional

import pytest
from mcp import types

from mcpmux.adapters.base import AdapterConfig, BaseProviderAdapter
from mcpmux.capabilities import ApprovalDecision
from mcpmux.exceptions import ServerConnectionError
from mcpmux.mcp import ServerConnection, ServerRegistry, ServerSpec
from mcpmux.models import Message, Pairing, TokenUsage, ToolCall
from mcpmux.streaming import BlockType, StreamEvent
from mcpmux.tool_state import ToolStateStore


def text_result(text: str, is_error: bool = False) -> types.CallToolResult:
    return types.CallToolResult(content=[types.TextContent(type="text", text=text)], isError=is_error)


# ---------------------------------------------------------------------------
# MCP fakes
# ---------------------------------------------------------------------------


class FakeSession:
    """In-memory MCP session. ``tools`` maps raw tool names to handlers."""

    def __init__(
        self,
        tools: dict[str, Callable[[dict[str, Any]], Any]],
        prompts: Optional[list[types.Prompt]] = None,
    ) -> None:
        self.tools = tools
        self.prompts = prompts or []
        self.calls: list[tuple[str, dict[str, Any]]] = []

    async def list_tools(self) -> types.ListToolsResult:
        return types.ListToolsResult(
            tools=[
                types.Tool(
                    name=name,
                    description=f"{name} tool",
                    inputSchema={"type": "object", "properties": {"q": {"type": "string"}}},
                )
                for name in self.tools
            ]
        )

    async def list_prompts(self) -> types.ListPromptsResult:
        return types.ListPromptsResult(prompts=self.prompts)

    async def get_prompt(self, name: str, arguments: dict[str, str]) -> types.GetPromptResult:
        topic = arguments.get("topic", "")
        return types.GetPromptResult(
            messages=[
                types.PromptMessage(
                    role="user", content=types.TextContent(type="text", text=f"{name}: {topic}")
                )
            ]
        )

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> types.CallToolResult:
        self.calls.append((name, arguments))
        result = self.tools[name](arguments)
        if inspect.isawaitable(result):
            result = await result
        if isinstance(result, str):
            return text_result(result)
        return result


class FakeConnection(ServerConnection):
    """A ServerConnection whose transport is a :class:`FakeSession`."""

    def __init__(self, spec: ServerSpec, session: Optional[FakeSession], error: Optional[str] = None):
        super().__init__(spec)
        self.fake_session = session
        self.error = error
        self.opened = 0
        self.terminated = 0

    async def open(self) -> None:
        if self.error:
            raise ServerConnectionError(self.error, server=self.name)
        self.opened += 1
        self._session = self.fake_session

    async def terminate(self, grace: float = 0.0) -> None:
        self.terminated += 1
        self._session = None


class ConnectionFactory:
    """Builds FakeConnections and remembers every one it built."""

    def __init__(self, sessions: dict[str, FakeSession], failing: Optional[dict[str, str]] = None):
        self.sessions = sessions
        self.failing = failing or {}
        self.built: list[FakeConnection] = []

    def __call__(self, spec: ServerSpec) -> FakeConnection:
        conn = FakeConnection(spec, self.sessions.get(spec.name), self.failing.get(spec.name))
        self.built.append(conn)
        return conn


def specs(*names: str) -> list[ServerSpec]:
    return [ServerSpec(name=name, command="fake-server") for name in names]


def make_registry(
    sessions: dict[str, FakeSession],
    failing: Optional[dict[str, str]] = None,
    tool_state: Optional[ToolStateStore] = None,
) -> tuple[ServerRegistry, ConnectionFactory]:
    factory = ConnectionFactory(sessions, failing)
    return ServerRegistry(tool_state or ToolStateStore(), connection_factory=factory), factory


def search_sessions() -> dict[str, FakeSession]:
    """Two servers that both offer a tool called ``search``."""
    return {
        "alpha": FakeSession({"search": lambda args: f"alpha results for {args.get('q')}"}),
        "beta": FakeSession(
            {
                "search": lambda args: f"beta results for {args.get('q')}",
                "fetch": lambda args: '{"status": "ok"}',
            }
        ),
    }


# ---------------------------------------------------------------------------
# Provider fake
# ---------------------------------------------------------------------------


class ScriptedAdapter(BaseProviderAdapter):
    """Replays canned rounds.

    Each round is either an exception (raised when the round starts) or a dict
    with optional ``chunks`` (text deltas), ``tools`` (``(name, arguments)``
    pairs), ``usage`` (``(input, output)``) and ``final`` (the authoritative
    final message).
    """

    provider = "scripted"
    default_model = "scripted-model"

    def __init__(
        self,
        rounds: Optional[list[Any]] = None,
        pairing: Pairing = Pairing.BY_ID,
        summary: Any = "The user searched for cats.",
        config: Optional[AdapterConfig] = None,
    ):
        super().__init__(config)
        self.rounds = list(rounds or [])
        self.pairing = pairing
        self.summary = summary
        self.requests: list[list[Message]] = []
        self.tool_names: list[list[str]] = []
        self.summarized: list[list[Message]] = []
        self.rounds_run = 0

    def to_native(self, messages: list[Message]) -> list[Any]:
        self.requests.append(list(messages))
        return [m.to_dict() for m in messages]

    async def _stream_round(self, conversation, model, tools, max_output_tokens, state):
        self.tool_names.append([t.name for t in tools])
        self.rounds_run += 1
        step = self.rounds.pop(0)
        if isinstance(step, Exception):
            raise step
        block_id = f"text_{state.iteration}"
        chunks = step.get("chunks", [])
        if chunks:
            yield StreamEvent.block_start(BlockType.TEXT, block_id)
        for chunk in chunks:
            state.text += chunk
            yield StreamEvent.text_delta(chunk, block_id)
        for index, (name, arguments) in enumerate(step.get("tools", [])):
            call = ToolCall(id=f"call_{self.rounds_run}_{index}", name=name, arguments=arguments)
            state.tool_calls.append(call)
            yield StreamEvent.block_start(BlockType.TOOL_USE, call.id, name=name)
        if "usage" in step:
            state.usage = TokenUsage(*step["usage"])
        if "final" in step:
            state.final_message = step["final"]
        state.stop_reason = "tool_use" if state.tool_calls else "end_turn"

    def _append_round(self, conversation, state, results):
        conversation.append({"role": "assistant", "content": state.text})
        conversation.append({"role": "tool", "content": [r.content for r in results]})

    async def complete(self, messages, model, max_output_tokens):
        self.summarized.append(list(messages))
        if isinstance(self.summary, Exception):
            raise self.summary
        return self.summary


# ---------------------------------------------------------------------------
# Collaborator fakes
# ---------------------------------------------------------------------------


class RecordingObserver:
    def __init__(self) -> None:
        self.events: list[StreamEvent] = []
        self.tool_starts: list[tuple[str, bool]] = []
        self.tool_ends: list[tuple[str, bool, bool]] = []
        self.warnings: list[str] = []
        self.done: list[str] = []
        self.errors: list[str] = []

    def on_event(self, event):
        self.events.append(event)

    def on_tool_start(self, tool_name, arguments, external):
        self.tool_starts.append((tool_name, external))

    def on_tool_end(self, tool_name, arguments, result, external, from_hook):
        self.tool_ends.append((tool_name, external, from_hook))

    def on_warning(self, message):
        self.warnings.append(message)

    def on_done(self, text):
        self.done.append(text)

    def on_error(self, message):
        self.errors.append(message)


class RecordingChatLog:
    def __init__(self) -> None:
        self.entries: list[tuple[str, Any]] = []

    def on_user_message(self, message):
        self.entries.append(("user", message.content))

    def on_assistant_message(self, message):
        self.entries.append(("assistant", message.content))

    def on_tool_execution(self, tool_name, tool_input, result, external=False, from_hook=False):
        self.entries.append(("tool", (tool_name, external, from_hook)))

    def on_token_usage(self, usage):
        self.entries.append(("usage", usage.total))


class RejectingApprover:
    def __init__(self, message: str = "") -> None:
        self.message = message
        self.asked: list[str] = []

    async def request_approval(self, tool_name, arguments):
        self.asked.append(tool_name)
        return ApprovalDecision.reject(self.message)


class AlwaysForceStop:
    def __init__(self) -> None:
        self.asked = 0

    async def should_force_stop(self, tool_name, elapsed, completed):
        self.asked += 1
        return True


@pytest.fixture
def sessions() -> dict[str, FakeSession]:
    return search_sessions()
