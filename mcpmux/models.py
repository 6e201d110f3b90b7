"""
mcpmux - Canonical data models shared by the registry, dispatcher, adapters
and orchestrator.

Content blocks are plain dicts using the following shapes::

    {"type": "text", "text": "..."}
    {"type": "thinking", "thinking": "...", "signature": "..."}
    {"type": "image", "source": {"type": "base64", "media_type": "...", "data": "..."}}
    {"type": "document", "source": {...}, "title": "..."}
    {"type": "tool_use", "id": "...", "name": "...", "input": {...}}
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

TOOL_SEPARATOR = "__"


class Role(str, Enum):
    """Author of a canonical message."""

    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class Pairing(str, Enum):
    """How a backend links tool results to the invocations that produced them."""

    BY_ID = "by_id"
    POSITIONAL = "positional"


def namespaced(server: str, raw_name: str) -> str:
    return f"{server}{TOOL_SEPARATOR}{raw_name}"


def split_namespaced(name: str) -> tuple[Optional[str], str]:
    """Split ``server__tool`` into its parts; un-namespaced names give ``(None, name)``."""
    if TOOL_SEPARATOR not in name:
        return None, name
    server, raw = name.split(TOOL_SEPARATOR, 1)
    return server, raw


@dataclass
class Tool:
    """A tool exposed to the model under its namespaced identity."""

    name: str
    description: str
    input_schema: dict[str, Any] = field(default_factory=dict)
    server: str = ""
    raw_name: str = ""

    @classmethod
    def from_mcp(cls, server: str, tool: Any) -> "Tool":
        """Build from an MCP ``types.Tool`` (or an equivalent dict)."""
        if isinstance(tool, dict):
            raw = tool["name"]
            description = tool.get("description") or ""
            schema = tool.get("inputSchema") or tool.get("input_schema") or {}
        else:
            raw = tool.name
            description = getattr(tool, "description", None) or ""
            schema = getattr(tool, "inputSchema", None) or {}
        return cls(
            name=namespaced(server, raw),
            description=f"[{server}] {description}",
            input_schema=dict(schema) or {"type": "object", "properties": {}},
            server=server,
            raw_name=raw,
        )


@dataclass
class Prompt:
    """A prompt template advertised by a tool-server."""

    name: str
    server: str
    description: str = ""
    arguments: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class ToolCall:
    """A tool invocation requested by the model."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}


@dataclass
class ToolResult:
    """The outcome of one tool invocation, linked to it by ``tool_call_id``."""

    tool_call_id: str
    tool_name: str
    content: str
    content_blocks: list[dict[str, Any]] = field(default_factory=list)
    cancelled: bool = False

    @property
    def has_images(self) -> bool:
        return any(b.get("type") == "image" for b in self.content_blocks)


@dataclass
class Message:
    """A canonical conversation message.

    Assistant messages carry ``tool_calls``; tool messages carry one
    ``tool_results`` entry per paired invocation. Backends that pair by
    call-id receive one tool message listing every result of a turn, while
    positional backends receive one tool message per result.
    """

    role: Role
    content: str = ""
    content_blocks: list[dict[str, Any]] = field(default_factory=list)
    tool_calls: list[ToolCall] = field(default_factory=list)
    tool_results: list[ToolResult] = field(default_factory=list)
    thinking: Optional[str] = None

    @classmethod
    def user(cls, text: str, blocks: Optional[list[dict[str, Any]]] = None) -> "Message":
        return cls(role=Role.USER, content=text, content_blocks=list(blocks or []))

    @classmethod
    def assistant(cls, text: str, **kwargs: Any) -> "Message":
        return cls(role=Role.ASSISTANT, content=text, **kwargs)

    @property
    def call_ids(self) -> list[str]:
        return [tc.id for tc in self.tool_calls]

    @property
    def result_ids(self) -> list[str]:
        return [tr.tool_call_id for tr in self.tool_results]

    @property
    def images(self) -> list[dict[str, Any]]:
        return [b for b in self.content_blocks if b.get("type") == "image"]

    @property
    def documents(self) -> list[dict[str, Any]]:
        return [b for b in self.content_blocks if b.get("type") == "document"]

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role.value, "content": self.content}
        if self.content_blocks:
            data["content_blocks"] = self.content_blocks
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_results:
            data["tool_results"] = [
                {
                    "tool_call_id": tr.tool_call_id,
                    "tool_name": tr.tool_name,
                    "content": tr.content,
                    "cancelled": tr.cancelled,
                }
                for tr in self.tool_results
            ]
        if self.thinking:
            data["thinking"] = self.thinking
        return data


@dataclass
class ToolExecutionResult:
    """What a dispatched tool call produced."""

    display_text: str
    content_blocks: list[dict[str, Any]] = field(default_factory=list)
    has_images: bool = False
    is_error: bool = False
    cancelled: bool = False

    def __str__(self) -> str:
        return self.display_text


@dataclass
class TokenUsage:
    """Token counts reported by a backend for one round-trip."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_creation_tokens: Optional[int] = None
    cache_read_tokens: Optional[int] = None

    @property
    def total(self) -> int:
        return self.input_tokens + self.output_tokens

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
        }
        if self.cache_creation_tokens is not None:
            data["cache_creation_tokens"] = self.cache_creation_tokens
        if self.cache_read_tokens is not None:
            data["cache_read_tokens"] = self.cache_read_tokens
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TokenUsage":
        return cls(
            input_tokens=data.get("input_tokens", 0),
            output_tokens=data.get("output_tokens", 0),
            cache_creation_tokens=data.get("cache_creation_tokens"),
            cache_read_tokens=data.get("cache_read_tokens"),
        )


class PreExistingTasks(str, Enum):
    """What to do with todos that already exist when enforcement is enabled."""

    CLEAR = "clear"
    SKIP_ALL = "skip"
    LEAVE = "leave"


@dataclass
class TaskEnforcementState:
    """Per-conversation task enforcement flags."""

    enabled: bool = False
    briefed: bool = False
    pre_existing: PreExistingTasks = PreExistingTasks.LEAVE
    carried_tasks: str = ""

    def reset(self) -> None:
        self.enabled = False
        self.briefed = False
        self.pre_existing = PreExistingTasks.LEAVE
        self.carried_tasks = ""


CANCELLED_RESULT = "[Tool execution cancelled by user]"


def drop_orphan_results(messages: list[Message]) -> list[Message]:
    """Remove tool results whose call id was never issued by an earlier assistant message."""
    issued: set[str] = set()
    cleaned: list[Message] = []
    for message in messages:
        if message.role == Role.ASSISTANT:
            issued.update(message.call_ids)
        elif message.role == Role.TOOL:
            kept = [tr for tr in message.tool_results if tr.tool_call_id in issued]
            if not kept:
                continue
            if len(kept) != len(message.tool_results):
                message = Message(role=Role.TOOL, tool_results=kept)
        cleaned.append(message)
    return cleaned


def fill_missing_results(messages: list[Message], pairing: Pairing = Pairing.BY_ID) -> list[Message]:
    """Give every unanswered tool call a synthetic cancelled result.

    The synthetic results are placed immediately after the assistant message
    that issued the calls, following the backend's pairing convention.
    """
    answered = {tr.tool_call_id for m in messages if m.role == Role.TOOL for tr in m.tool_results}
    repaired: list[Message] = []
    for index, message in enumerate(messages):
        repaired.append(message)
        if message.role != Role.ASSISTANT:
            continue
        missing = [tc for tc in message.tool_calls if tc.id not in answered]
        if not missing:
            continue
        synthetic = [
            ToolResult(tool_call_id=tc.id, tool_name=tc.name, content=CANCELLED_RESULT, cancelled=True)
            for tc in missing
        ]
        nxt = messages[index + 1] if index + 1 < len(messages) else None
        if pairing == Pairing.BY_ID and nxt is not None and nxt.role == Role.TOOL:
            nxt.tool_results.extend(synthetic)
        elif pairing == Pairing.BY_ID:
            repaired.append(Message(role=Role.TOOL, tool_results=synthetic))
        else:
            repaired.extend(Message(role=Role.TOOL, tool_results=[tr]) for tr in synthetic)
    return repaired
