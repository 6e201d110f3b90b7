"""
mcpmux - Custom exceptions for error handling.
"""

from typing import Any, Optional


class MCPMuxError(Exception):
    """Base exception for all mcpmux errors."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.response = response


class ConfigurationError(MCPMuxError):
    """Raised when client or server configuration is invalid."""

    pass


class ServerNotFoundError(MCPMuxError):
    """Raised when a named tool-server is not connected."""

    pass


class ServerConnectionError(MCPMuxError):
    """Raised when a tool-server cannot be spawned or fails its handshake."""

    def __init__(self, message: str, server: Optional[str] = None, **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.server = server


class NoServersConnectedError(MCPMuxError):
    """Raised when a batch connect produced zero live connections."""

    def __init__(
        self,
        message: str,
        failures: Optional[dict[str, str]] = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message, **kwargs)
        self.failures = failures or {}


class ToolNotFoundError(MCPMuxError):
    """Raised when a tool name resolves to no connected server."""

    pass


class ProviderError(MCPMuxError):
    """Raised when a model backend request fails."""

    pass


class CapabilityRejectedError(ProviderError):
    """Raised when a backend rejects an optional feature such as thinking."""

    def __init__(self, message: str, capability: str = "thinking", **kwargs: Any) -> None:
        super().__init__(message, **kwargs)
        self.capability = capability


class AlreadyProcessingError(MCPMuxError):
    """Raised when a query arrives while another one is still in flight."""

    pass


class HookError(MCPMuxError):
    """Raised for malformed hook definitions."""

    pass
