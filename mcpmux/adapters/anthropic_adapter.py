"""Anthropic provider adapter.

Streams Claude responses through ``messages.stream`` and uses the final
message object as the authoritative record of each turn (it carries thinking
signatures and fully-parsed tool inputs that deltas only approximate).

Installation:
    pip install mcpmux[anthropic]

Example:
    from anthropic import AsyncAnthropic
    from mcpmux.adapters import AnthropicAdapter

    adapter = AnthropicAdapter(AsyncAnthropic())
    async for event in adapter.stream_with_tools(
        messages, "claude-haiku-4-5-20251001", tools, 8192, dispatcher.execute
    ):
        ...
"""

import logging
from typing import Any, AsyncIterator, Optional

from mcpmux.adapters.base import (
    AdapterConfig,
    BaseProviderAdapter,
    RoundState,
    tools_to_anthropic_format,
)
from mcpmux.models import Message, Role, TokenUsage, Tool, ToolCall, ToolResult
from mcpmux.streaming import BlockType, StreamEvent

logger = logging.getLogger("mcpmux.adapters.anthropic")

_PASSTHROUGH_BLOCKS = {"text", "thinking", "redacted_thinking", "tool_use"}


def _check_anthropic_installed() -> None:
    """Check if the anthropic package is installed."""
    try:
        import anthropic  # noqa: F401
    except ImportError:
        raise ImportError(
            "AnthropicAdapter requires the 'anthropic' package. "
            "Install it with: pip install mcpmux[anthropic]"
        ) from None


def _block_to_dict(block: Any) -> dict[str, Any]:
    if isinstance(block, dict):
        return block
    kind = block.type
    if kind == "text":
        return {"type": "text", "text": block.text}
    if kind == "thinking":
        return {"type": "thinking", "thinking": block.thinking, "signature": block.signature}
    if kind == "redacted_thinking":
        return {"type": "redacted_thinking", "data": block.data}
    if kind == "tool_use":
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": dict(block.input or {})}
    return {"type": kind}


class AnthropicAdapter(BaseProviderAdapter):
    """Adapter for the Anthropic Messages API."""

    provider = "anthropic"
    default_model = "claude-haiku-4-5-20251001"
    exact_token_counting = True

    def __init__(self, client: Any = None, config: Optional[AdapterConfig] = None):
        """Initialize the Anthropic adapter.

        Args:
            client: An ``anthropic.AsyncAnthropic`` instance. Built from
                ``config.api_key`` when omitted.
            config: Optional adapter configuration.
        """
        super().__init__(config)
        if client is None:
            _check_anthropic_installed()
            import anthropic

            client = anthropic.AsyncAnthropic(
                api_key=self._config.api_key,
                base_url=self._config.base_url,
                timeout=self._config.timeout,
            )
        self._client = client

    @property
    def client(self) -> Any:
        """The wrapped Anthropic client."""
        return self._client

    def context_window(self, model: str) -> int:
        return 200000

    # -- message conversion ------------------------------------------------

    def to_native(self, messages: list[Message]) -> list[dict[str, Any]]:
        native: list[dict[str, Any]] = []
        for message in messages:
            if message.role == Role.USER:
                native.append({"role": "user", "content": self._user_content(message)})
            elif message.role == Role.ASSISTANT:
                content = self._assistant_content(message)
                if content:
                    native.append({"role": "assistant", "content": content})
            else:
                native.append(
                    {"role": "user", "content": [self._tool_result(tr) for tr in message.tool_results]}
                )
        return native

    @staticmethod
    def _user_content(message: Message) -> Any:
        attachments = [b for b in message.content_blocks if b.get("type") in ("image", "document")]
        if not attachments:
            return message.content
        return attachments + [{"type": "text", "text": message.content or "(see attachments)"}]

    def _assistant_content(self, message: Message) -> list[dict[str, Any]]:
        if message.content_blocks:
            blocks = [b for b in message.content_blocks if b.get("type") in _PASSTHROUGH_BLOCKS]
            if not self.thinking:
                blocks = [b for b in blocks if b["type"] not in ("thinking", "redacted_thinking")]
            known = {b.get("id") for b in blocks if b["type"] == "tool_use"}
            blocks += [
                {"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments}
                for tc in message.tool_calls
                if tc.id not in known
            ]
            return blocks
        blocks = []
        if message.content:
            blocks.append({"type": "text", "text": message.content})
        blocks += [
            {"type": "tool_use", "id": tc.id, "name": tc.name, "input": tc.arguments}
            for tc in message.tool_calls
        ]
        return blocks

    @staticmethod
    def _tool_result(result: ToolResult) -> dict[str, Any]:
        content: Any = result.content
        if result.content_blocks:
            content = [{"type": "text", "text": result.content}] + [
                b for b in result.content_blocks if b.get("type") == "image"
            ]
        return {"type": "tool_result", "tool_use_id": result.tool_call_id, "content": content}

    # -- streaming ---------------------------------------------------------

    def _request(
        self,
        conversation: list[dict[str, Any]],
        model: str,
        tools: list[Tool],
        max_output_tokens: int,
    ) -> dict[str, Any]:
        params: dict[str, Any] = {
            "model": model,
            "max_tokens": max_output_tokens,
            "messages": conversation,
        }
        if self._config.system_prompt:
            params["system"] = self._config.system_prompt
        if tools:
            native_tools = tools_to_anthropic_format(tools)
            native_tools[-1] = {**native_tools[-1], "cache_control": {"type": "ephemeral"}}
            params["tools"] = native_tools
        if self.thinking:
            budget = min(self._config.thinking_budget, max(1024, max_output_tokens - 1024))
            params["thinking"] = {"type": "enabled", "budget_tokens": budget}
            params["max_tokens"] = max(max_output_tokens, budget + 1024)
        return params

    async def _stream_round(
        self,
        conversation: list[dict[str, Any]],
        model: str,
        tools: list[Tool],
        max_output_tokens: int,
        state: RoundState,
    ) -> AsyncIterator[StreamEvent]:
        params = self._request(conversation, model, tools, max_output_tokens)
        block_ids: dict[int, str] = {}
        try:
            async with self._client.messages.stream(**params) as stream:
                async for event in stream:
                    if event.type == "content_block_start":
                        block = event.content_block
                        block_id = getattr(block, "id", None) or f"blk_{state.iteration}_{event.index}"
                        block_ids[event.index] = block_id
                        if block.type == "text":
                            yield StreamEvent.block_start(BlockType.TEXT, block_id)
                        elif block.type == "thinking":
                            yield StreamEvent.block_start(BlockType.THINKING, block_id)
                        elif block.type == "tool_use":
                            yield StreamEvent.block_start(BlockType.TOOL_USE, block_id, name=block.name)
                    elif event.type == "content_block_delta":
                        delta = event.delta
                        block_id = block_ids.get(event.index, "")
                        if delta.type == "text_delta":
                            state.text += delta.text
                            yield StreamEvent.text_delta(delta.text, block_id)
                        elif delta.type == "thinking_delta":
                            state.thinking += delta.thinking
                            yield StreamEvent.thinking_delta(delta.thinking, block_id)
                        elif delta.type == "input_json_delta":
                            yield StreamEvent.input_json_delta(delta.partial_json, block_id)
                final = await stream.get_final_message()
        except Exception as exc:
            raise self._provider_error(exc) from exc

        blocks = [_block_to_dict(b) for b in final.content]
        state.native = blocks
        state.stop_reason = final.stop_reason
        state.tool_calls = [
            ToolCall(id=b["id"], name=b["name"], arguments=b["input"])
            for b in blocks
            if b["type"] == "tool_use"
        ]
        state.final_message = {
            "content": "".join(b["text"] for b in blocks if b["type"] == "text"),
            "content_blocks": blocks,
            "thinking": "".join(b["thinking"] for b in blocks if b["type"] == "thinking") or None,
        }
        usage = final.usage
        cache_creation = getattr(usage, "cache_creation_input_tokens", None) or 0
        cache_read = getattr(usage, "cache_read_input_tokens", None) or 0
        state.usage = TokenUsage(
            input_tokens=usage.input_tokens + cache_creation + cache_read,
            output_tokens=usage.output_tokens,
            cache_creation_tokens=cache_creation,
            cache_read_tokens=cache_read,
        )

    def _append_round(
        self, conversation: list[dict[str, Any]], state: RoundState, results: list[ToolResult]
    ) -> None:
        conversation.append({"role": "assistant", "content": state.native})
        conversation.append({"role": "user", "content": [self._tool_result(r) for r in results]})

    # -- non-streaming services -------------------------------------------

    async def complete(self, messages: list[Message], model: str, max_output_tokens: int) -> str:
        params: dict[str, Any] = {
            "model": model,
            "max_tokens": max_output_tokens,
            "messages": self.to_native(messages),
        }
        if self._config.system_prompt:
            params["system"] = self._config.system_prompt
        try:
            response = await self._client.messages.create(**params)
        except Exception as exc:
            raise self._provider_error(exc) from exc
        return "".join(getattr(b, "text", "") for b in response.content if b.type == "text")

    async def count_tokens(
        self, messages: list[Message], model: str, tools: Optional[list[Tool]] = None
    ) -> Optional[int]:
        params: dict[str, Any] = {"model": model, "messages": self.to_native(messages)}
        if tools:
            params["tools"] = tools_to_anthropic_format(tools)
        if self._config.system_prompt:
            params["system"] = self._config.system_prompt
        try:
            result = await self._client.messages.count_tokens(**params)
        except Exception as exc:
            logger.debug("Anthropic token counting failed: %s", exc)
            return None
        return result.input_tokens
