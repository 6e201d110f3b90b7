"""Provider adapters for the mcpmux conversation loop.

Each adapter turns one backend's streaming wire format into the canonical
:class:`~mcpmux.streaming.StreamEvent` sequence and runs the tool-use loop
against that backend.

Supported providers:
- Anthropic (Claude models, extended thinking, exact token counting)
- OpenAI (GPT-4o, GPT-5, o-series)
- xAI Grok (OpenAI-compatible endpoint)
- Google Gemini
- Ollama (local models over HTTP)

Provider SDKs are optional extras; an adapter imports its SDK only when it
has to build a client itself.

Example usage:

    from mcpmux.adapters import create_adapter
    from mcpmux.config import ClientConfig

    config = ClientConfig(model="gpt-4o-mini")
    adapter = create_adapter(config)

    async for event in adapter.stream_with_tools(
        messages, config.model, tools, config.max_tokens, dispatcher.execute
    ):
        print(event.type, event.data)
"""

from typing import Any, Optional

from mcpmux.adapters.anthropic_adapter import AnthropicAdapter
from mcpmux.adapters.base import AdapterConfig, BaseProviderAdapter
from mcpmux.adapters.gemini_adapter import GeminiAdapter
from mcpmux.adapters.grok_adapter import GrokAdapter
from mcpmux.adapters.ollama_adapter import OllamaAdapter
from mcpmux.adapters.openai_adapter import OpenAIAdapter
from mcpmux.config import ClientConfig
from mcpmux.exceptions import ConfigurationError

ADAPTERS: dict[str, type[BaseProviderAdapter]] = {
    "anthropic": AnthropicAdapter,
    "openai": OpenAIAdapter,
    "grok": GrokAdapter,
    "gemini": GeminiAdapter,
    "ollama": OllamaAdapter,
}


def create_adapter(
    config: ClientConfig,
    provider: Optional[str] = None,
    client: Any = None,
    system_prompt: Optional[str] = None,
) -> BaseProviderAdapter:
    """Build the adapter for ``provider`` (default: ``config.provider``).

    Raises:
        ConfigurationError: If the provider name is unknown.
    """
    name = (provider or config.provider).lower()
    adapter_cls = ADAPTERS.get(name)
    if adapter_cls is None:
        raise ConfigurationError(
            f"Unknown provider '{name}'. Choose one of: {', '.join(sorted(ADAPTERS))}"
        )
    adapter_config = AdapterConfig(
        api_key=config.api_key_for(name),
        system_prompt=system_prompt,
        thinking=config.thinking,
    )
    if adapter_cls is OllamaAdapter:
        return OllamaAdapter(
            client=client,
            config=adapter_config,
            host=config.ollama_host,
            max_context=config.ollama_max_context,
        )
    return adapter_cls(client, adapter_config)


__all__ = [
    "ADAPTERS",
    "AdapterConfig",
    "AnthropicAdapter",
    "BaseProviderAdapter",
    "GeminiAdapter",
    "GrokAdapter",
    "OllamaAdapter",
    "OpenAIAdapter",
    "create_adapter",
]
