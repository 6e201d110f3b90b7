"""
mcpmux - One conversational agent, many MCP tool-servers, any LLM backend.

Connects to several MCP servers over stdio, exposes their tools under
collision-free ``server__tool`` names and drives a tool-using conversation
through Anthropic, OpenAI, xAI Grok, Google Gemini or Ollama behind one
canonical event stream.
"""

from .capabilities import (
    ApprovalDecision,
    Approver,
    Canceller,
    CancellationFlag,
    Capabilities,
    ForceStopper,
)
from .config import UNLIMITED_ITERATIONS, ClientConfig, resolve_provider
from .context import ContextBudget, ContextManager
from .dispatcher import ToolDispatcher
from .exceptions import (
    AlreadyProcessingError,
    CapabilityRejectedError,
    ConfigurationError,
    HookError,
    MCPMuxError,
    NoServersConnectedError,
    ProviderError,
    ServerConnectionError,
    ServerNotFoundError,
    ToolNotFoundError,
)
from .hooks import Hook, HookManager
from .mcp import (
    ConnectReport,
    ServerRegistry,
    ServerSpec,
    load_servers_config,
    parse_servers_config,
)
from .models import (
    Message,
    Pairing,
    PreExistingTasks,
    Role,
    TokenUsage,
    Tool,
    ToolCall,
    ToolExecutionResult,
    ToolResult,
)
from .orchestrator import AdmissionGate, ConversationOrchestrator, clean_error_message
from .streaming import BlockType, DeltaType, StreamEvent, StreamEventType
from .tasks import TaskEnforcementController
from .tool_state import ToolStateStore


def get_ipc_listener():
    """Lazy import for the IPC listener (pulls in FastAPI and uvicorn)."""
    from .ipc import IPCListener, create_ipc_app

    return IPCListener, create_ipc_app


__version__ = "0.1.0"
__all__ = [
    "ClientConfig",
    "UNLIMITED_ITERATIONS",
    "resolve_provider",
    "ServerSpec",
    "ServerRegistry",
    "ConnectReport",
    "parse_servers_config",
    "load_servers_config",
    "ToolStateStore",
    "Hook",
    "HookManager",
    "ToolDispatcher",
    "ContextBudget",
    "ContextManager",
    "ConversationOrchestrator",
    "AdmissionGate",
    "clean_error_message",
    "TaskEnforcementController",
    "Message",
    "Role",
    "Pairing",
    "Tool",
    "ToolCall",
    "ToolResult",
    "ToolExecutionResult",
    "TokenUsage",
    "PreExistingTasks",
    "StreamEvent",
    "StreamEventType",
    "BlockType",
    "DeltaType",
    "Canceller",
    "Approver",
    "ForceStopper",
    "ApprovalDecision",
    "CancellationFlag",
    "Capabilities",
    "MCPMuxError",
    "ConfigurationError",
    "ServerNotFoundError",
    "ServerConnectionError",
    "NoServersConnectedError",
    "ToolNotFoundError",
    "ProviderError",
    "CapabilityRejectedError",
    "AlreadyProcessingError",
    "HookError",
    "get_ipc_listener",
]
