"""OpenAI provider adapter.

Streams chat completions with ``stream_options={"include_usage": True}`` and
reassembles tool calls from their per-index argument fragments. Tool results
are sent as ``role: tool`` messages keyed by ``tool_call_id``; images returned
by tools travel in a follow-up user message because tool messages only carry
text.

Installation:
    pip install mcpmux[openai]

Example:
    from openai import AsyncOpenAI
    from mcpmux.adapters import OpenAIAdapter

    adapter = OpenAIAdapter(AsyncOpenAI())
"""

import json
import logging
from typing import Any, AsyncIterator, Optional

from mcpmux.adapters.base import (
    IMAGE_FOLLOWUP_TEXT,
    AdapterConfig,
    BaseProviderAdapter,
    RoundState,
    new_call_id,
    parse_arguments,
    tools_to_openai_format,
)
from mcpmux.exceptions import ProviderError
from mcpmux.models import Message, Role, TokenUsage, Tool, ToolCall, ToolResult
from mcpmux.streaming import BlockType, StreamEvent

logger = logging.getLogger("mcpmux.adapters.openai")

OPENAI_CONTEXT_WINDOWS = {
    "gpt-4o-mini": 128000,
    "gpt-4o": 128000,
    "gpt-4-turbo": 128000,
    "gpt-4": 8192,
    "gpt-3.5-turbo": 16385,
    "o1-preview": 200000,
    "gpt-5": 200000,
}

IMAGE_OMITTED_TEXT = "[image omitted: this model does not accept images here]"


class _ImagesRejected(Exception):
    """The backend refused image parts; the conversation was stripped of them."""


def _check_openai_installed() -> None:
    """Check if the openai package is installed."""
    try:
        import openai  # noqa: F401
    except ImportError:
        raise ImportError(
            "OpenAIAdapter requires the 'openai' package. "
            "Install it with: pip install mcpmux[openai]"
        ) from None


def _image_part(block: dict[str, Any]) -> dict[str, Any]:
    source = block.get("source", {})
    media_type = source.get("media_type", "image/png")
    return {
        "type": "image_url",
        "image_url": {"url": f"data:{media_type};base64,{source.get('data', '')}"},
    }


def _is_image_rejection(exc: Exception) -> bool:
    text = (getattr(exc, "message", None) or str(exc)).lower()
    return getattr(exc, "status_code", None) == 400 and "image" in text


def _strip_images(conversation: list[dict[str, Any]]) -> bool:
    """Replace every image part in ``conversation`` with a text note; True if any was found."""
    stripped = False
    for message in conversation:
        content = message.get("content")
        if not isinstance(content, list):
            continue
        parts = []
        for part in content:
            if part.get("type") == "image_url":
                parts.append({"type": "text", "text": IMAGE_OMITTED_TEXT})
                stripped = True
            else:
                parts.append(part)
        message["content"] = parts
    return stripped


class OpenAIAdapter(BaseProviderAdapter):
    """Adapter for OpenAI-compatible chat completion APIs."""

    provider = "openai"
    default_model = "gpt-4o-mini"
    context_windows = OPENAI_CONTEXT_WINDOWS
    default_context_window = 128000
    max_tokens_param = "max_completion_tokens"
    document_note = "PDF attachments are not supported by OpenAI"

    def __init__(self, client: Any = None, config: Optional[AdapterConfig] = None):
        """Initialize the adapter.

        Args:
            client: An ``openai.AsyncOpenAI`` instance. Built from
                ``config.api_key`` / ``config.base_url`` when omitted.
            config: Optional adapter configuration.
        """
        super().__init__(config)
        if client is None:
            client = self._build_client()
        self._client = client
        self._images_rejected = False

    def _build_client(self) -> Any:
        _check_openai_installed()
        import openai

        return openai.AsyncOpenAI(
            api_key=self._config.api_key,
            base_url=self._config.base_url,
            timeout=self._config.timeout,
        )

    @property
    def client(self) -> Any:
        """The wrapped OpenAI-compatible client."""
        return self._client

    def context_window(self, model: str) -> int:
        for prefix in sorted(self.context_windows, key=len, reverse=True):
            if model.startswith(prefix):
                return self.context_windows[prefix]
        return self.default_context_window

    # -- message conversion ------------------------------------------------

    def to_native(self, messages: list[Message]) -> list[dict[str, Any]]:
        native: list[dict[str, Any]] = []
        if self._config.system_prompt:
            native.append({"role": "system", "content": self._config.system_prompt})
        for message in messages:
            if message.role == Role.USER:
                native.append({"role": "user", "content": self._user_content(message)})
            elif message.role == Role.ASSISTANT:
                native.append(self._assistant_message(message.content, message.tool_calls))
            else:
                native.extend(self._tool_messages(message.tool_results))
        return native

    def _user_content(self, message: Message) -> Any:
        if not message.images and not message.documents:
            return message.content
        parts: list[dict[str, Any]] = [{"type": "text", "text": message.content}]
        for block in message.content_blocks:
            if block.get("type") == "image":
                parts.append(_image_part(block))
            elif block.get("type") == "document":
                title = block.get("title") or "document.pdf"
                parts.append({"type": "text", "text": f"[PDF File: {title}]\n{self.document_note}."})
        return parts

    @staticmethod
    def _assistant_message(text: str, tool_calls: list[ToolCall]) -> dict[str, Any]:
        msg: dict[str, Any] = {"role": "assistant", "content": text or None}
        if tool_calls:
            msg["tool_calls"] = [
                {
                    "id": tc.id,
                    "type": "function",
                    "function": {"name": tc.name, "arguments": json.dumps(tc.arguments)},
                }
                for tc in tool_calls
            ]
        return msg

    def _tool_messages(self, results: list[ToolResult]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [
            {"role": "tool", "tool_call_id": r.tool_call_id, "content": r.content} for r in results
        ]
        images = [b for r in results for b in r.content_blocks if b.get("type") == "image"]
        if images and not self._images_rejected:
            messages.append(
                {
                    "role": "user",
                    "content": [{"type": "text", "text": IMAGE_FOLLOWUP_TEXT}]
                    + [_image_part(b) for b in images],
                }
            )
        return messages

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
            "messages": conversation,
            "stream": True,
            "stream_options": {"include_usage": True},
            self.max_tokens_param: max_output_tokens,
        }
        if tools:
            params["tools"] = tools_to_openai_format(tools)
        if self.thinking:
            params["reasoning_effort"] = "high"
        return params

    async def _open_stream(self, conversation: list[dict[str, Any]], params: dict[str, Any]) -> Any:
        """Open the completion stream, retrying once without images if they are rejected."""
        try:
            return await self._client.chat.completions.create(**params)
        except Exception as exc:
            if _is_image_rejection(exc) and _strip_images(conversation):
                self._images_rejected = True
                raise _ImagesRejected() from exc
            raise self._provider_error(exc) from exc

    async def _stream_round(
        self,
        conversation: list[dict[str, Any]],
        model: str,
        tools: list[Tool],
        max_output_tokens: int,
        state: RoundState,
    ) -> AsyncIterator[StreamEvent]:
        params = self._request(conversation, model, tools, max_output_tokens)
        try:
            stream = await self._open_stream(conversation, params)
        except _ImagesRejected:
            yield StreamEvent.client_info(
                f"{model} rejected images in tool results; retrying without them."
            )
            try:
                stream = await self._client.chat.completions.create(**params)
            except Exception as exc:
                raise self._provider_error(exc) from exc

        text_block: Optional[str] = None
        thinking_block: Optional[str] = None
        tracker: dict[int, dict[str, Any]] = {}
        try:
            async for chunk in stream:
                if getattr(chunk, "usage", None):
                    state.usage = self._usage(chunk.usage)
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                delta = choice.delta

                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    if thinking_block is None:
                        thinking_block = f"thinking_{state.iteration}"
                        yield StreamEvent.block_start(BlockType.THINKING, thinking_block)
                    state.thinking += reasoning
                    yield StreamEvent.thinking_delta(reasoning, thinking_block)

                if delta.content:
                    if text_block is None:
                        text_block = f"text_{state.iteration}"
                        yield StreamEvent.block_start(BlockType.TEXT, text_block)
                    state.text += delta.content
                    yield StreamEvent.text_delta(delta.content, text_block)

                for tc in delta.tool_calls or []:
                    entry = tracker.get(tc.index)
                    if entry is None:
                        entry = {
                            "id": tc.id or new_call_id(),
                            "name": (tc.function.name if tc.function else "") or "",
                            "arguments": "",
                        }
                        tracker[tc.index] = entry
                        yield StreamEvent.block_start(BlockType.TOOL_USE, entry["id"], name=entry["name"])
                    if tc.function and tc.function.arguments:
                        entry["arguments"] += tc.function.arguments
                        yield StreamEvent.input_json_delta(tc.function.arguments, entry["id"])

                if choice.finish_reason:
                    state.stop_reason = choice.finish_reason
        except ProviderError:
            raise
        except Exception as exc:
            raise self._provider_error(exc) from exc

        state.tool_calls = [
            ToolCall(id=e["id"], name=e["name"], arguments=parse_arguments(e["arguments"]))
            for _, e in sorted(tracker.items())
        ]

    def _usage(self, usage: Any) -> TokenUsage:
        details = getattr(usage, "prompt_tokens_details", None)
        cached = getattr(details, "cached_tokens", None) if details is not None else None
        return TokenUsage(
            input_tokens=usage.prompt_tokens or 0,
            output_tokens=usage.completion_tokens or 0,
            cache_read_tokens=cached,
        )

    def _append_round(
        self, conversation: list[dict[str, Any]], state: RoundState, results: list[ToolResult]
    ) -> None:
        conversation.append(self._assistant_message(state.text, state.tool_calls))
        conversation.extend(self._tool_messages(results))

    # -- non-streaming services -------------------------------------------

    async def complete(self, messages: list[Message], model: str, max_output_tokens: int) -> str:
        try:
            response = await self._client.chat.completions.create(
                model=model,
                messages=self.to_native(messages),
                **{self.max_tokens_param: max_output_tokens},
            )
        except Exception as exc:
            raise self._provider_error(exc) from exc
        return response.choices[0].message.content or ""
