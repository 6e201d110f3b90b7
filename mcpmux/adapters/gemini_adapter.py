"""Google Gemini provider adapter.

Gemini pairs function responses with function calls by name and position, so
this adapter declares positional pairing. Tool input schemas are reduced to
the OpenAPI subset Gemini accepts.

Installation:
    pip install mcpmux[gemini]

Example:
    import google.generativeai as genai
    from mcpmux.adapters import GeminiAdapter

    genai.configure(api_key="...")
    adapter = GeminiAdapter(genai)
"""

import base64
import logging
from typing import Any, AsyncIterator, Optional

from mcpmux.adapters.base import (
    IMAGE_FOLLOWUP_TEXT,
    AdapterConfig,
    BaseProviderAdapter,
    RoundState,
    new_call_id,
)
from mcpmux.models import Message, Pairing, Role, TokenUsage, Tool, ToolCall, ToolResult
from mcpmux.streaming import BlockType, StreamEvent

logger = logging.getLogger("mcpmux.adapters.gemini")

_SCHEMA_KEYS = {
    "type",
    "format",
    "description",
    "nullable",
    "enum",
    "properties",
    "required",
    "items",
    "minItems",
    "maxItems",
    "minimum",
    "maximum",
}


def _check_gemini_installed() -> None:
    """Check if the google-generativeai package is installed."""
    try:
        import google.generativeai  # noqa: F401
    except ImportError:
        raise ImportError(
            "GeminiAdapter requires the 'google-generativeai' package. "
            "Install it with: pip install mcpmux[gemini]"
        ) from None


def clean_schema(schema: Any) -> Any:
    """Drop JSON-schema keywords Gemini rejects, recursively."""
    if not isinstance(schema, dict):
        return schema
    cleaned: dict[str, Any] = {}
    for key, value in schema.items():
        if key not in _SCHEMA_KEYS:
            continue
        if key == "properties":
            cleaned[key] = {name: clean_schema(sub) for name, sub in value.items()}
        elif key == "items":
            cleaned[key] = clean_schema(value)
        elif key == "type" and isinstance(value, list):
            non_null = [t for t in value if t != "null"]
            cleaned[key] = non_null[0] if non_null else "string"
            if "null" in value:
                cleaned["nullable"] = True
        else:
            cleaned[key] = value
    if cleaned.get("type") == "object" and not cleaned.get("properties"):
        cleaned.pop("required", None)
    return cleaned


def _plain(value: Any) -> Any:
    """Convert proto map/repeated composites into plain dicts and lists."""
    if hasattr(value, "items"):
        return {k: _plain(v) for k, v in value.items()}
    if isinstance(value, (str, bytes)):
        return value
    if hasattr(value, "__iter__"):
        return [_plain(v) for v in value]
    return value


def _inline_image(block: dict[str, Any]) -> dict[str, Any]:
    source = block.get("source", {})
    return {
        "inline_data": {
            "mime_type": source.get("media_type", "image/png"),
            "data": base64.b64decode(source.get("data", "")),
        }
    }


class GeminiAdapter(BaseProviderAdapter):
    """Adapter for the ``google.generativeai`` SDK."""

    provider = "gemini"
    default_model = "gemini-2.5-flash"
    pairing = Pairing.POSITIONAL

    def __init__(self, client: Any = None, config: Optional[AdapterConfig] = None):
        """Initialize the adapter.

        Args:
            client: The ``google.generativeai`` module (or any object with a
                compatible ``GenerativeModel``). Imported and configured from
                ``config.api_key`` when omitted.
            config: Optional adapter configuration.
        """
        super().__init__(config)
        if client is None:
            _check_gemini_installed()
            import google.generativeai as genai

            if self._config.api_key:
                genai.configure(api_key=self._config.api_key)
            client = genai
        self._genai = client

    def context_window(self, model: str) -> int:
        if model.startswith("gemini-1.5-pro"):
            return 2097152
        return 1048576

    def _model(self, model: str, tools: list[Tool]) -> Any:
        kwargs: dict[str, Any] = {"model_name": model}
        if self._config.system_prompt:
            kwargs["system_instruction"] = self._config.system_prompt
        if tools:
            kwargs["tools"] = [
                {
                    "function_declarations": [
                        {
                            "name": t.name,
                            "description": t.description,
                            "parameters": clean_schema(t.input_schema),
                        }
                        for t in tools
                    ]
                }
            ]
        return self._genai.GenerativeModel(**kwargs)

    # -- message conversion ------------------------------------------------

    def to_native(self, messages: list[Message]) -> list[dict[str, Any]]:
        contents: list[dict[str, Any]] = []
        results: list[ToolResult] = []
        for message in messages:
            if message.role == Role.TOOL:
                # Consecutive tool messages form one function-response turn.
                results.extend(message.tool_results)
                continue
            if results:
                contents.extend(self._function_responses(results))
                results = []
            if message.role == Role.USER:
                parts: list[dict[str, Any]] = [_inline_image(b) for b in message.images]
                parts.append({"text": message.content or "(see attachments)"})
                contents.append({"role": "user", "parts": parts})
            else:
                parts = [{"text": message.content}] if message.content else []
                parts += [
                    {"function_call": {"name": tc.name, "args": tc.arguments}}
                    for tc in message.tool_calls
                ]
                if parts:
                    contents.append({"role": "model", "parts": parts})
        if results:
            contents.extend(self._function_responses(results))
        return contents

    @staticmethod
    def _function_responses(results: list[ToolResult]) -> list[dict[str, Any]]:
        contents = [
            {
                "role": "user",
                "parts": [
                    {"function_response": {"name": r.tool_name, "response": {"result": r.content}}}
                    for r in results
                ],
            }
        ]
        images = [b for r in results for b in r.content_blocks if b.get("type") == "image"]
        if images:
            contents.append(
                {"role": "user", "parts": [{"text": IMAGE_FOLLOWUP_TEXT}] + [_inline_image(b) for b in images]}
            )
        return contents

    # -- streaming ---------------------------------------------------------

    async def _stream_round(
        self,
        conversation: list[dict[str, Any]],
        model: str,
        tools: list[Tool],
        max_output_tokens: int,
        state: RoundState,
    ) -> AsyncIterator[StreamEvent]:
        text_block: Optional[str] = None
        try:
            response = await self._model(model, tools).generate_content_async(
                conversation,
                generation_config={"max_output_tokens": max_output_tokens},
                stream=True,
            )
            async for chunk in response:
                metadata = getattr(chunk, "usage_metadata", None)
                if metadata is not None and getattr(metadata, "prompt_token_count", None):
                    state.usage = TokenUsage(
                        input_tokens=metadata.prompt_token_count or 0,
                        output_tokens=getattr(metadata, "candidates_token_count", 0) or 0,
                        cache_read_tokens=getattr(metadata, "cached_content_token_count", None) or None,
                    )
                candidates = getattr(chunk, "candidates", None) or []
                if not candidates:
                    continue
                candidate = candidates[0]
                finish = getattr(candidate, "finish_reason", None)
                if finish:
                    state.stop_reason = getattr(finish, "name", str(finish)).lower()
                content = getattr(candidate, "content", None)
                for part in getattr(content, "parts", None) or []:
                    fc = getattr(part, "function_call", None)
                    if fc is not None and getattr(fc, "name", ""):
                        call = ToolCall(id=new_call_id("gemini"), name=fc.name, arguments=_plain(fc.args or {}))
                        state.tool_calls.append(call)
                        yield StreamEvent.block_start(BlockType.TOOL_USE, call.id, name=call.name)
                        continue
                    text = getattr(part, "text", "")
                    if text:
                        if text_block is None:
                            text_block = f"text_{state.iteration}"
                            yield StreamEvent.block_start(BlockType.TEXT, text_block)
                        state.text += text
                        yield StreamEvent.text_delta(text, text_block)
        except Exception as exc:
            raise self._provider_error(exc) from exc

    def _append_round(
        self, conversation: list[dict[str, Any]], state: RoundState, results: list[ToolResult]
    ) -> None:
        parts = [{"text": state.text}] if state.text else []
        parts += [{"function_call": {"name": c.name, "args": c.arguments}} for c in state.tool_calls]
        conversation.append({"role": "model", "parts": parts})
        conversation.extend(self._function_responses(results))

    # -- non-streaming services -------------------------------------------

    async def complete(self, messages: list[Message], model: str, max_output_tokens: int) -> str:
        try:
            response = await self._model(model, []).generate_content_async(
                self.to_native(messages),
                generation_config={"max_output_tokens": max_output_tokens},
            )
        except Exception as exc:
            raise self._provider_error(exc) from exc
        return response.text
