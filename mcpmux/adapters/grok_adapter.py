"""xAI Grok provider adapter.

Grok uses an OpenAI-compatible API, so this adapter is the OpenAI adapter
pointed at xAI's endpoint with Grok's context windows. Reasoning models
stream their thoughts as ``reasoning_content`` deltas, and cached prompt
tokens are reported under ``prompt_tokens_details``.

Installation:
    pip install mcpmux[openai]

Example:
    from mcpmux.adapters import AdapterConfig, GrokAdapter

    adapter = GrokAdapter(config=AdapterConfig(api_key="xai-..."))
"""

from typing import Any, Optional

from mcpmux.adapters.base import AdapterConfig
from mcpmux.adapters.openai_adapter import OpenAIAdapter

XAI_BASE_URL = "https://api.x.ai/v1"

GROK_CONTEXT_WINDOWS = {
    "grok-4-fast": 2000000,
    "grok-4": 256000,
    "grok-code-fast": 256000,
    "grok-3-mini": 131072,
    "grok-3": 131072,
    "grok-2-vision": 32768,
    "grok-2": 131072,
}


class GrokAdapter(OpenAIAdapter):
    """Adapter for the xAI Grok API (OpenAI-compatible client)."""

    provider = "grok"
    default_model = "grok-4"
    context_windows = GROK_CONTEXT_WINDOWS
    default_context_window = 131072
    max_tokens_param = "max_tokens"
    document_note = "PDF attachments are not supported by Grok"

    def __init__(self, client: Any = None, config: Optional[AdapterConfig] = None):
        config = config or AdapterConfig()
        if config.base_url is None:
            config.base_url = XAI_BASE_URL
        super().__init__(client, config)

    def _request(self, conversation, model, tools, max_output_tokens):
        params = super()._request(conversation, model, tools, max_output_tokens)
        # Only the mini reasoning models accept an explicit effort.
        if "reasoning_effort" in params and "mini" not in model:
            del params["reasoning_effort"]
        return params
