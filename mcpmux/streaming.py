"""
mcpmux - Canonical stream events.

Every provider adapter translates its backend's native streaming payloads into
this closed set of events; nothing backend-specific crosses that boundary.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from .models import TokenUsage


class StreamEventType(str, Enum):
    """Types of events an adapter can emit."""

    MESSAGE_START = "message_start"
    CONTENT_BLOCK_START = "content_block_start"
    CONTENT_BLOCK_DELTA = "content_block_delta"
    TOOL_USE_COMPLETE = "tool_use_complete"
    TOKEN_USAGE = "token_usage"
    MESSAGE_STOP = "message_stop"
    CLIENT_INFO = "client_info"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"


class BlockType(str, Enum):
    """Kinds of content block an adapter may open."""

    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"


class DeltaType(str, Enum):
    """Kinds of incremental fragment."""

    TEXT = "text_delta"
    THINKING = "thinking_delta"
    INPUT_JSON = "input_json_delta"


@dataclass
class StreamEvent:
    """One canonical event produced by a provider adapter."""

    type: StreamEventType
    data: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def message_start(cls, iteration: int = 0) -> "StreamEvent":
        return cls(StreamEventType.MESSAGE_START, {"iteration": iteration})

    @classmethod
    def block_start(
        cls,
        block_type: BlockType,
        block_id: str,
        name: Optional[str] = None,
    ) -> "StreamEvent":
        data: dict[str, Any] = {"block_type": block_type, "block_id": block_id}
        if name is not None:
            data["name"] = name
        return cls(StreamEventType.CONTENT_BLOCK_START, data)

    @classmethod
    def text_delta(cls, text: str, block_id: str = "") -> "StreamEvent":
        return cls(
            StreamEventType.CONTENT_BLOCK_DELTA,
            {"delta_type": DeltaType.TEXT, "text": text, "block_id": block_id},
        )

    @classmethod
    def thinking_delta(cls, text: str, block_id: str = "") -> "StreamEvent":
        return cls(
            StreamEventType.CONTENT_BLOCK_DELTA,
            {"delta_type": DeltaType.THINKING, "text": text, "block_id": block_id},
        )

    @classmethod
    def input_json_delta(cls, partial_json: str, block_id: str) -> "StreamEvent":
        return cls(
            StreamEventType.CONTENT_BLOCK_DELTA,
            {
                "delta_type": DeltaType.INPUT_JSON,
                "partial_json": partial_json,
                "block_id": block_id,
            },
        )

    @classmethod
    def tool_use_complete(
        cls,
        tool_name: str,
        tool_input: dict[str, Any],
        result: str,
        block_id: str,
        cancelled: bool = False,
        content_blocks: Optional[list[dict[str, Any]]] = None,
    ) -> "StreamEvent":
        return cls(
            StreamEventType.TOOL_USE_COMPLETE,
            {
                "tool_name": tool_name,
                "tool_input": tool_input,
                "result": result,
                "block_id": block_id,
                "cancelled": cancelled,
                "content_blocks": list(content_blocks or []),
            },
        )

    @classmethod
    def token_usage(cls, usage: TokenUsage) -> "StreamEvent":
        return cls(StreamEventType.TOKEN_USAGE, usage.to_dict())

    @classmethod
    def message_stop(
        cls,
        stop_reason: Optional[str] = None,
        final_message: Optional[dict[str, Any]] = None,
    ) -> "StreamEvent":
        data: dict[str, Any] = {"stop_reason": stop_reason}
        if final_message is not None:
            data["final_message"] = final_message
        return cls(StreamEventType.MESSAGE_STOP, data)

    @classmethod
    def client_info(cls, message: str) -> "StreamEvent":
        return cls(StreamEventType.CLIENT_INFO, {"message": message})

    @classmethod
    def max_iterations_reached(cls, iterations: int) -> "StreamEvent":
        return cls(StreamEventType.MAX_ITERATIONS_REACHED, {"iterations": iterations})

    @property
    def block_id(self) -> Optional[str]:
        return self.data.get("block_id")

    @property
    def usage(self) -> TokenUsage:
        return TokenUsage.from_dict(self.data)
