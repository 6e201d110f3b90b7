"""Ollama provider adapter.

Talks to a local Ollama server's ``/api/chat`` endpoint over ``httpx``,
consuming its newline-delimited JSON stream. Ollama identifies tool results by
``tool_name`` rather than by call id, so results are paired positionally.

Example:
    from mcpmux.adapters import OllamaAdapter

    adapter = OllamaAdapter(host="http://localhost:11434", max_context=32768)
"""

import json
import logging
from typing import Any, AsyncIterator, Optional

import httpx

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
from mcpmux.models import Message, Pairing, Role, TokenUsage, Tool, ToolCall, ToolResult
from mcpmux.streaming import BlockType, StreamEvent

logger = logging.getLogger("mcpmux.adapters.ollama")

DEFAULT_OLLAMA_HOST = "http://localhost:11434"
DEFAULT_CONTEXT_WINDOW = 32768


def _images(blocks: list[dict[str, Any]]) -> list[str]:
    return [b["source"]["data"] for b in blocks if b.get("type") == "image" and "source" in b]


class OllamaAdapter(BaseProviderAdapter):
    """Adapter for a local Ollama server."""

    provider = "ollama"
    default_model = "llama3.1"
    pairing = Pairing.POSITIONAL

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        config: Optional[AdapterConfig] = None,
        host: Optional[str] = None,
        max_context: Optional[int] = None,
    ):
        """Initialize the adapter.

        Args:
            client: An ``httpx.AsyncClient`` whose base URL is the Ollama host.
            config: Optional adapter configuration.
            host: Ollama endpoint; defaults to ``config.base_url`` or
                ``http://localhost:11434``.
            max_context: Upper bound for ``num_ctx`` to cap memory use.
        """
        super().__init__(config)
        self.host = host or self._config.base_url or DEFAULT_OLLAMA_HOST
        self.max_context = max_context
        self._client = client or httpx.AsyncClient(
            base_url=self.host, timeout=httpx.Timeout(self._config.timeout, connect=10.0)
        )
        self._context_windows: dict[str, int] = {}

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def prepare(self, model: str) -> None:
        """Look up the model's native context length once."""
        if model in self._context_windows:
            return
        window = DEFAULT_CONTEXT_WINDOW
        try:
            response = await self._client.post("/api/show", json={"model": model})
            response.raise_for_status()
            info = response.json().get("model_info", {}) or {}
            for key, value in info.items():
                if key.endswith("context_length") and isinstance(value, int):
                    window = value
                    break
        except (httpx.HTTPError, ValueError) as exc:
            logger.debug("Could not read Ollama model info for %s: %s", model, exc)
        self._context_windows[model] = window

    def context_window(self, model: str) -> int:
        window = self._context_windows.get(model, DEFAULT_CONTEXT_WINDOW)
        if self.max_context:
            return min(window, self.max_context)
        return window

    async def list_models(self) -> list[str]:
        response = await self._client.get("/api/tags")
        response.raise_for_status()
        return [m["name"] for m in response.json().get("models", [])]

    # -- message conversion ------------------------------------------------

    def to_native(self, messages: list[Message]) -> list[dict[str, Any]]:
        native: list[dict[str, Any]] = []
        if self._config.system_prompt:
            native.append({"role": "system", "content": self._config.system_prompt})
        for message in messages:
            if message.role == Role.USER:
                entry: dict[str, Any] = {"role": "user", "content": message.content}
                images = _images(message.content_blocks)
                if images:
                    entry["images"] = images
                native.append(entry)
            elif message.role == Role.ASSISTANT:
                native.append(self._assistant_message(message.content, message.tool_calls))
            else:
                native.extend(self._tool_messages(message.tool_results))
        return native

    @staticmethod
    def _assistant_message(text: str, tool_calls: list[ToolCall]) -> dict[str, Any]:
        entry: dict[str, Any] = {"role": "assistant", "content": text}
        if tool_calls:
            entry["tool_calls"] = [
                {"function": {"name": tc.name, "arguments": tc.arguments}} for tc in tool_calls
            ]
        return entry

    @staticmethod
    def _tool_messages(results: list[ToolResult]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = [
            {"role": "tool", "content": r.content, "tool_name": r.tool_name} for r in results
        ]
        images = [img for r in results for img in _images(r.content_blocks)]
        if images:
            messages.append({"role": "user", "content": IMAGE_FOLLOWUP_TEXT, "images": images})
        return messages

    # -- streaming ---------------------------------------------------------

    def _request(
        self,
        conversation: list[dict[str, Any]],
        model: str,
        tools: list[Tool],
        max_output_tokens: int,
    ) -> dict[str, Any]:
        options: dict[str, Any] = {"num_predict": max_output_tokens}
        if self.max_context:
            options["num_ctx"] = self.context_window(model)
        payload: dict[str, Any] = {
            "model": model,
            "messages": conversation,
            "stream": True,
            "options": options,
        }
        if tools:
            payload["tools"] = tools_to_openai_format(tools)
        if self.thinking:
            payload["think"] = True
        return payload

    async def _stream_round(
        self,
        conversation: list[dict[str, Any]],
        model: str,
        tools: list[Tool],
        max_output_tokens: int,
        state: RoundState,
    ) -> AsyncIterator[StreamEvent]:
        await self.prepare(model)
        payload = self._request(conversation, model, tools, max_output_tokens)
        text_block: Optional[str] = None
        thinking_block: Optional[str] = None
        try:
            async with self._client.stream("POST", "/api/chat", json=payload) as response:
                if response.status_code >= 400:
                    body = (await response.aread()).decode("utf-8", "replace")
                    raise self._provider_error(self._http_error(response.status_code, body))
                async for line in response.aiter_lines():
                    if not line.strip():
                        continue
                    chunk = json.loads(line)
                    if chunk.get("error"):
                        raise self._provider_error(ProviderError(chunk["error"]))
                    message = chunk.get("message") or {}

                    thinking = message.get("thinking")
                    if thinking:
                        if thinking_block is None:
                            thinking_block = f"thinking_{state.iteration}"
                            yield StreamEvent.block_start(BlockType.THINKING, thinking_block)
                        state.thinking += thinking
                        yield StreamEvent.thinking_delta(thinking, thinking_block)

                    content = message.get("content")
                    if content:
                        if text_block is None:
                            text_block = f"text_{state.iteration}"
                            yield StreamEvent.block_start(BlockType.TEXT, text_block)
                        state.text += content
                        yield StreamEvent.text_delta(content, text_block)

                    for tc in message.get("tool_calls") or []:
                        function = tc.get("function", {})
                        call = ToolCall(
                            id=tc.get("id") or new_call_id("ollama"),
                            name=function.get("name", ""),
                            arguments=parse_arguments(function.get("arguments")),
                        )
                        state.tool_calls.append(call)
                        yield StreamEvent.block_start(BlockType.TOOL_USE, call.id, name=call.name)
                        yield StreamEvent.input_json_delta(json.dumps(call.arguments), call.id)

                    if chunk.get("done"):
                        state.stop_reason = chunk.get("done_reason")
                        state.usage = TokenUsage(
                            input_tokens=chunk.get("prompt_eval_count", 0) or 0,
                            output_tokens=chunk.get("eval_count", 0) or 0,
                        )
        except ProviderError:
            raise
        except (httpx.HTTPError, json.JSONDecodeError) as exc:
            raise self._provider_error(exc) from exc

    @staticmethod
    def _http_error(status: int, body: str) -> ProviderError:
        try:
            message = json.loads(body).get("error", body)
        except (json.JSONDecodeError, AttributeError):
            message = body
        return ProviderError(f"{status} {message}", status_code=status)

    def _append_round(
        self, conversation: list[dict[str, Any]], state: RoundState, results: list[ToolResult]
    ) -> None:
        conversation.append(self._assistant_message(state.text, state.tool_calls))
        conversation.extend(self._tool_messages(results))

    # -- non-streaming services -------------------------------------------

    async def complete(self, messages: list[Message], model: str, max_output_tokens: int) -> str:
        payload = {
            "model": model,
            "messages": self.to_native(messages),
            "stream": False,
            "options": {"num_predict": max_output_tokens},
        }
        try:
            response = await self._client.post("/api/chat", json=payload)
        except httpx.HTTPError as exc:
            raise self._provider_error(exc) from exc
        if response.status_code >= 400:
            raise self._provider_error(self._http_error(response.status_code, response.text))
        return (response.json().get("message") or {}).get("content", "")
