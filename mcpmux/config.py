"""
Client configuration for mcpmux.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

UNLIMITED_ITERATIONS = 10**9
UNLIMITED_TOOL_TIMEOUT = 3600.0

DEFAULT_MODELS = {
    "anthropic": "claude-haiku-4-5-20251001",
    "openai": "gpt-4o-mini",
    "grok": "grok-4",
    "gemini": "gemini-2.5-flash",
    "ollama": "llama3.1",
}


def resolve_provider(model: str) -> str:
    """Infer provider from model name if not explicitly set."""
    m = model.lower()
    if m.startswith("claude"):
        return "anthropic"
    if m.startswith("gemini"):
        return "gemini"
    if m.startswith("grok"):
        return "grok"
    if m.startswith(("gpt", "o1", "o3", "o4", "chatgpt")):
        return "openai"
    if ":" in m or m.startswith(("llama", "qwen", "mistral", "phi", "gemma")):
        return "ollama"
    return "openai"


def _int_env(name: str, default: int) -> int:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return int(value)


@dataclass
class ClientConfig:
    """Configuration for an mcpmux client session."""

    provider: str = ""
    model: str = ""

    max_tokens: int = 8192
    max_iterations: int = 100
    tool_timeout: float = 60.0
    force_stop_grace: float = 10.0
    force_stop_poll_interval: float = 0.5

    summarize_enabled: bool = True
    summarize_threshold: float = 80.0
    recent_messages_to_keep: int = 10

    thinking: bool = False

    state_dir: Path = field(default_factory=lambda: Path.home() / ".mcpmux")

    ipc_host: str = "127.0.0.1"
    ipc_port: int = 0

    anthropic_api_key: Optional[str] = None
    openai_api_key: Optional[str] = None
    xai_api_key: Optional[str] = None
    gemini_api_key: Optional[str] = None
    ollama_host: str = "http://localhost:11434"
    ollama_max_context: Optional[int] = None

    log_level: str = "warning"

    def __post_init__(self):
        if not self.provider:
            self.provider = resolve_provider(self.model) if self.model else "anthropic"
        if not self.model:
            self.model = DEFAULT_MODELS.get(self.provider, "")
        if self.max_iterations < 0:
            self.max_iterations = UNLIMITED_ITERATIONS
        if self.tool_timeout < 0:
            self.tool_timeout = UNLIMITED_TOOL_TIMEOUT
        self.state_dir = Path(self.state_dir).expanduser()

    @property
    def tool_state_path(self) -> Path:
        return self.state_dir / "tool_state.json"

    @property
    def hooks_path(self) -> Path:
        return self.state_dir / "hooks.yaml"

    def api_key_for(self, provider: str) -> Optional[str]:
        """Return the credential configured for a backend family."""
        return {
            "anthropic": self.anthropic_api_key,
            "openai": self.openai_api_key,
            "grok": self.xai_api_key,
            "gemini": self.gemini_api_key,
        }.get(provider)

    @classmethod
    def from_env(cls) -> "ClientConfig":
        """Create configuration from environment variables."""
        max_context = os.environ.get("OLLAMA_MAX_CONTEXT")
        return cls(
            provider=os.environ.get("MCPMUX_PROVIDER", ""),
            model=os.environ.get("MCPMUX_MODEL", ""),
            max_tokens=_int_env("MCPMUX_MAX_TOKENS", 8192),
            max_iterations=_int_env("MCPMUX_MAX_ITERATIONS", 100),
            tool_timeout=float(os.environ.get("MCPMUX_TOOL_TIMEOUT", "60")),
            summarize_threshold=float(os.environ.get("MCPMUX_SUMMARIZE_THRESHOLD", "80")),
            state_dir=Path(os.environ.get("MCPMUX_STATE_DIR", str(Path.home() / ".mcpmux"))),
            anthropic_api_key=os.environ.get("ANTHROPIC_API_KEY"),
            openai_api_key=os.environ.get("OPENAI_API_KEY"),
            xai_api_key=os.environ.get("XAI_API_KEY"),
            gemini_api_key=os.environ.get("GOOGLE_API_KEY") or os.environ.get("GEMINI_API_KEY"),
            ollama_host=os.environ.get("OLLAMA_HOST", "http://localhost:11434"),
            ollama_max_context=int(max_context) if max_context else None,
            thinking=os.environ.get("MCPMUX_THINKING", "").lower() == "true",
            log_level=os.environ.get("MCPMUX_LOG_LEVEL", "warning"),
        )
