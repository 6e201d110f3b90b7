"""
mcpmux - MCP (Model Context Protocol) server registry.

Owns one stdio connection per configured tool-server and exposes their tool and
prompt catalogs under collision-free ``server__tool`` names:
  - Concurrent ``connect_all`` with per-server failure isolation
  - Transparent ``reconnect`` of a single server (used by force-stop)
  - Catalog refresh with stale tool-state pruning
  - Servers that stay connected but are hidden from the model
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from contextlib import AsyncExitStack
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import anyio
import yaml
from mcp import ClientSession, StdioServerParameters
from mcp.client.stdio import stdio_client
from mcp.shared.exceptions import McpError

from .exceptions import (
    ConfigurationError,
    NoServersConnectedError,
    ServerConnectionError,
    ServerNotFoundError,
)
from .models import Prompt, Tool
from .tool_state import ToolStateStore

logger = logging.getLogger("mcpmux.mcp")

TERMINATE_GRACE_SECONDS = 2.0

# Errors that mean the transport itself is gone, as opposed to the server
# answering a request with a protocol-level error.
_CONNECTION_ERRORS = (
    anyio.ClosedResourceError,
    anyio.BrokenResourceError,
    anyio.EndOfStream,
    ConnectionError,
    EOFError,
)


@dataclass
class ServerSpec:
    """How to spawn one MCP server."""

    name: str
    command: str
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    cwd: Optional[str] = None
    timeout: float = 30.0
    allowed_tools: Optional[list[str]] = None
    disabled: bool = False

    def resolved_env(self) -> Optional[dict[str, str]]:
        """Expand ``${VAR}`` values from the environment, layered over ``os.environ``."""
        if not self.env:
            return None
        resolved = {
            k: os.environ.get(v[2:-1], "") if v.startswith("${") and v.endswith("}") else v
            for k, v in self.env.items()
        }
        return {**os.environ, **resolved}


def _spec_from_dict(name: str, server_def: dict[str, Any]) -> ServerSpec:
    if not server_def.get("command"):
        raise ConfigurationError(f"MCP server '{name}' has no command")
    return ServerSpec(
        name=name,
        command=server_def["command"],
        args=[str(a) for a in server_def.get("args", [])],
        env={k: str(v) for k, v in (server_def.get("env") or {}).items()},
        cwd=server_def.get("cwd"),
        timeout=float(server_def.get("timeout", 30)),
        allowed_tools=server_def.get("allowed_tools"),
        disabled=bool(server_def.get("disabled", False)),
    )


def parse_servers_config(config: Any) -> list[ServerSpec]:
    """Parse a servers document into specs.

    Accepts the ``{"mcpServers": {name: {...}}}`` layout used by most MCP
    clients, a ``{"servers": {name: {...}}}`` block, or a list of dicts that
    each carry a ``name``.
    """
    if isinstance(config, list):
        return [_spec_from_dict(d["name"], d) for d in config]
    if not isinstance(config, dict):
        raise ConfigurationError("Server configuration must be a mapping or a list")
    block = config.get("mcpServers", config.get("servers"))
    if block is None:
        raise ConfigurationError("Server configuration has no 'mcpServers' or 'servers' block")
    if isinstance(block, list):
        return [_spec_from_dict(d["name"], d) for d in block]
    return [_spec_from_dict(name, d) for name, d in block.items()]


def load_servers_config(path: str | Path) -> list[ServerSpec]:
    """Read a JSON or YAML servers file."""
    p = Path(path).expanduser()
    text = p.read_text(encoding="utf-8")
    if p.suffix in (".yaml", ".yml"):
        data = yaml.safe_load(text) or {}
    else:
        data = json.loads(text)
    return parse_servers_config(data)


class ServerConnection:
    """A live stdio session with one MCP server.

    The transport and session contexts are entered and exited inside a
    dedicated runner task, so teardown always happens in the task that
    opened them regardless of who asks for it.
    """

    def __init__(self, spec: ServerSpec) -> None:
        self.spec = spec
        self.tools: list[Tool] = []
        self.prompts: list[Prompt] = []
        self._session: Any = None
        self._runner: Optional[asyncio.Task] = None
        self._ready = asyncio.Event()
        self._shutdown = asyncio.Event()
        self._error: Optional[BaseException] = None

    @property
    def name(self) -> str:
        return self.spec.name

    @property
    def connected(self) -> bool:
        return self._session is not None

    @property
    def session(self) -> Any:
        if self._session is None:
            raise ServerConnectionError(
                f"Not connected to MCP server '{self.name}'", server=self.name
            )
        return self._session

    async def _run(self) -> None:
        params = StdioServerParameters(
            command=self.spec.command,
            args=self.spec.args,
            env=self.spec.resolved_env(),
            cwd=self.spec.cwd,
        )
        try:
            async with AsyncExitStack() as stack:
                read_stream, write_stream = await stack.enter_async_context(
                    stdio_client(params)
                )
                session = await stack.enter_async_context(
                    ClientSession(read_stream, write_stream)
                )
                await session.initialize()
                self._session = session
                self._ready.set()
                await self._shutdown.wait()
        except Exception as exc:
            self._error = exc
        finally:
            self._session = None
            self._ready.set()

    async def open(self) -> None:
        """Spawn the server process and complete the MCP handshake."""
        logger.info(
            "Connecting to MCP server '%s': %s %s",
            self.name,
            self.spec.command,
            " ".join(self.spec.args),
        )
        self._runner = asyncio.create_task(self._run(), name=f"mcp-{self.name}")
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=self.spec.timeout)
        except asyncio.TimeoutError:
            await self.terminate()
            raise ServerConnectionError(
                f"Timed out connecting to MCP server '{self.name}'", server=self.name
            ) from None
        if self._session is None:
            raise ServerConnectionError(
                f"Failed to connect to MCP server '{self.name}': {self._error}",
                server=self.name,
            )
        logger.info("Connected to MCP server '%s'", self.name)

    async def close(self) -> None:
        """Ask the runner to exit its contexts and wait for it."""
        await self.terminate()

    async def terminate(self, grace: float = TERMINATE_GRACE_SECONDS) -> None:
        """Shut the server down, cancelling the runner if it does not exit in time.

        Exiting the stdio context closes the child's stdin and then signals it;
        cancelling the runner forces the same cleanup path. A runner that has
        already finished makes this a no-op.
        """
        runner = self._runner
        if runner is None or runner.done():
            self._session = None
            return
        self._shutdown.set()
        try:
            await asyncio.wait_for(asyncio.shield(runner), timeout=grace)
        except asyncio.TimeoutError:
            logger.warning("MCP server '%s' did not exit within %.1fs, killing", self.name, grace)
            runner.cancel()
            try:
                await runner
            except asyncio.CancelledError:
                pass
        self._session = None

    async def fetch_tools(self) -> list[Tool]:
        response = await self.session.list_tools()
        tools = []
        for t in response.tools:
            if self.spec.allowed_tools is not None and t.name not in self.spec.allowed_tools:
                continue
            tools.append(Tool.from_mcp(self.name, t))
        self.tools = tools
        return tools

    async def fetch_prompts(self) -> list[Prompt]:
        response = await self.session.list_prompts()
        self.prompts = [
            Prompt(
                name=p.name,
                server=self.name,
                description=getattr(p, "description", None) or "",
                arguments=[
                    a.model_dump() if hasattr(a, "model_dump") else dict(a)
                    for a in (getattr(p, "arguments", None) or [])
                ],
            )
            for p in response.prompts
        ]
        return self.prompts

    async def call_tool(self, raw_name: str, arguments: dict[str, Any]) -> Any:
        return await self.session.call_tool(raw_name, arguments)

    async def get_prompt(self, name: str, arguments: Optional[dict[str, str]] = None) -> Any:
        return await self.session.get_prompt(name, arguments or {})


@dataclass
class ConnectReport:
    """Outcome of a batch connect."""

    connected: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)


ConnectionFactory = Callable[[ServerSpec], ServerConnection]


class ServerRegistry:
    """Connections to every configured MCP server, keyed by server name."""

    def __init__(
        self,
        tool_state: Optional[ToolStateStore] = None,
        connection_factory: ConnectionFactory = ServerConnection,
    ) -> None:
        self.tool_state = tool_state or ToolStateStore()
        self._factory = connection_factory
        self._connections: dict[str, ServerConnection] = {}
        self._specs: dict[str, ServerSpec] = {}
        self.errors: dict[str, str] = {}

    @property
    def server_names(self) -> list[str]:
        return list(self._connections)

    def is_connected(self, name: str) -> bool:
        conn = self._connections.get(name)
        return conn is not None and conn.connected

    def get(self, name: str) -> ServerConnection:
        conn = self._connections.get(name)
        if conn is None:
            raise ServerNotFoundError(f'Server "{name}" not found')
        return conn

    # -- lifecycle ---------------------------------------------------------

    async def connect(self, spec: ServerSpec) -> ServerConnection:
        """Connect one server and load its catalogs."""
        self._specs[spec.name] = spec
        conn = self._factory(spec)
        try:
            await conn.open()
            await self._load_catalogs(conn)
        except ServerConnectionError as exc:
            self.errors[spec.name] = exc.message
            await conn.terminate()
            raise
        except Exception as exc:
            self.errors[spec.name] = str(exc)
            await conn.terminate()
            raise ServerConnectionError(
                f"Failed to connect to MCP server '{spec.name}': {exc}", server=spec.name
            ) from exc
        self.errors.pop(spec.name, None)
        self._connections[spec.name] = conn
        if spec.disabled:
            self.tool_state.set_server_exposed(spec.name, False)
        return conn

    async def connect_all(self, specs: list[ServerSpec]) -> ConnectReport:
        """Connect every server concurrently; one failure never blocks the others."""
        results = await asyncio.gather(
            *(self.connect(spec) for spec in specs), return_exceptions=True
        )
        report = ConnectReport()
        for spec, result in zip(specs, results):
            if isinstance(result, BaseException):
                logger.error("Failed to connect to MCP server '%s': %s", spec.name, result)
                report.failed[spec.name] = str(result)
            else:
                report.connected.append(spec.name)
        if specs and not report.connected:
            raise NoServersConnectedError(
                "Failed to connect to any MCP server", failures=report.failed
            )
        return report

    async def disconnect(self, name: str) -> None:
        conn = self._connections.pop(name, None)
        if conn is None:
            return
        try:
            await conn.close()
        except Exception as exc:
            logger.warning("Error disconnecting from MCP server '%s': %s", name, exc)
        logger.info("Disconnected from MCP server '%s'", name)

    async def disconnect_all(self) -> None:
        for name in list(self._connections):
            await self.disconnect(name)

    async def reconnect(self, name: str) -> ServerConnection:
        """Kill and re-spawn one server, leaving every other connection untouched."""
        spec = self._specs.get(name)
        if spec is None:
            raise ServerNotFoundError(f'Server "{name}" not found')
        old = self._connections.pop(name, None)
        if old is not None:
            try:
                await old.terminate()
            except Exception as exc:
                logger.warning("Error terminating MCP server '%s': %s", name, exc)
        logger.info("Reconnecting MCP server '%s'", name)
        return await self.connect(spec)

    # -- catalogs ----------------------------------------------------------

    async def _load_catalogs(self, conn: ServerConnection, strict: bool = False) -> None:
        await self._fetch_tools(conn, strict=strict)
        await self._fetch_prompts(conn)
        self.tool_state.register_tools(t.name for t in conn.tools)

    async def _fetch_tools(self, conn: ServerConnection, strict: bool = False) -> list[Tool]:
        try:
            return await asyncio.wait_for(conn.fetch_tools(), timeout=conn.spec.timeout)
        except _CONNECTION_ERRORS as exc:
            raise ServerConnectionError(
                f"MCP server '{conn.name}' connection lost: {exc}", server=conn.name
            ) from exc
        except (McpError, asyncio.TimeoutError) as exc:
            if strict:
                raise
            logger.warning("MCP server '%s' did not list tools: %s", conn.name, exc)
            conn.tools = []
            return []

    async def _fetch_prompts(self, conn: ServerConnection) -> list[Prompt]:
        try:
            return await asyncio.wait_for(conn.fetch_prompts(), timeout=conn.spec.timeout)
        except _CONNECTION_ERRORS as exc:
            raise ServerConnectionError(
                f"MCP server '{conn.name}' connection lost: {exc}", server=conn.name
            ) from exc
        except (McpError, asyncio.TimeoutError) as exc:
            logger.debug("MCP server '%s' does not serve prompts: %s", conn.name, exc)
            conn.prompts = []
            return []

    async def list_tools(self, name: str) -> list[Tool]:
        """Re-fetch one server's tool catalog."""
        conn = self.get(name)
        tools = await self._fetch_tools(conn)
        self.tool_state.register_tools(t.name for t in tools)
        return tools

    async def list_prompts(self, name: str) -> list[Prompt]:
        """Re-fetch one server's prompt catalog."""
        return await self._fetch_prompts(self.get(name))

    async def get_prompt(
        self, server: str, name: str, arguments: Optional[dict[str, str]] = None
    ) -> list[dict[str, Any]]:
        """Render a prompt into ``[{role, content}]`` messages."""
        conn = self._connections.get(server)
        if conn is None:
            raise ServerNotFoundError(f'Server "{server}" not found')
        result = await conn.get_prompt(name, arguments)
        messages = []
        for m in result.messages:
            content = m.content
            text = getattr(content, "text", None)
            messages.append({"role": m.role, "content": text if text is not None else str(content)})
        return messages

    async def refresh_catalogs(self) -> set[str]:
        """Re-fetch every catalog and prune tool state for tools that disappeared.

        Returns the names of servers whose refresh failed; their tools keep
        their persisted state.
        """
        failed: set[str] = set()
        for name, conn in list(self._connections.items()):
            try:
                await self._load_catalogs(conn, strict=True)
            except Exception as exc:
                logger.warning("Failed to refresh MCP server '%s': %s", name, exc)
                failed.add(name)
        valid = [t.name for t in self.all_tools() if t.server not in failed]
        self.tool_state.prune(valid, preserve_servers=failed)
        return failed

    def all_tools(self) -> list[Tool]:
        """Every tool of every connected server, enabled or not."""
        return [t for conn in self._connections.values() for t in conn.tools]

    def all_prompts(self) -> list[Prompt]:
        return [p for conn in self._connections.values() for p in conn.prompts]

    def exposed_tools(self) -> list[Tool]:
        """Tools the model may see: enabled tools of exposed servers."""
        return [
            t
            for t in self.all_tools()
            if self.tool_state.is_server_exposed(t.server) and self.tool_state.is_enabled(t.name)
        ]

    def exposed_prompts(self) -> list[Prompt]:
        return [p for p in self.all_prompts() if self.tool_state.is_server_exposed(p.server)]

    def find_tool(self, raw_name: str) -> Optional[Tool]:
        """Linear scan for an un-namespaced tool name; first match wins."""
        suffix = f"__{raw_name}"
        for tool in self.all_tools():
            if tool.raw_name == raw_name or tool.name.endswith(suffix):
                return tool
        return None

    def tools_by_server(self) -> dict[str, list[dict[str, Any]]]:
        return {
            name: [
                {"name": t.raw_name, "description": t.description, "input_schema": t.input_schema}
                for t in conn.tools
            ]
            for name, conn in self._connections.items()
        }
