"""
mcpmux - Local IPC listener for sub-agent tool routing.

A collaborating process (for example a code-execution sandbox spawned by one
of the tools) reaches the orchestrator's connected servers through this
loopback HTTP endpoint. Its URL is handed explicitly to whatever spawns that
process; nothing is published through the environment.
"""

import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from .exceptions import MCPMuxError

if TYPE_CHECKING:
    from .orchestrator import ConversationOrchestrator

logger = logging.getLogger("mcpmux.ipc")

ABORTED_MESSAGE = "[ABORTED] User cancelled operation"


class CallToolRequest(BaseModel):
    server: Optional[str] = None
    tool: Optional[str] = None
    arguments: Dict[str, Any] = Field(default_factory=dict)


def _aborted() -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"success": False, "error": ABORTED_MESSAGE, "status": "aborted", "aborted": True},
    )


def _parse_result(text: str) -> Any:
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return text


def create_ipc_app(orchestrator: "ConversationOrchestrator") -> FastAPI:
    """Build the FastAPI app serving ``/call_tool``, ``/list_tools`` and ``/health``."""
    app = FastAPI(title="mcpmux IPC", docs_url=None, redoc_url=None, openapi_url=None)

    @app.get("/health")
    async def health():
        return {"status": "ok", "timestamp": datetime.now(timezone.utc).isoformat()}

    @app.post("/call_tool")
    async def call_tool(request: CallToolRequest):
        if orchestrator.capabilities.is_cancelled():
            return _aborted()
        if not request.server or not request.tool:
            return JSONResponse(
                status_code=400, content={"error": "Missing required fields: server, tool"}
            )

        gate = orchestrator.gate
        if not gate.try_acquire_external():
            return JSONResponse(
                status_code=409,
                content={"success": False, "error": "Another tool call is already in progress"},
            )
        name = f"{request.server}__{request.tool}"
        try:
            if orchestrator.capabilities.is_cancelled():
                return _aborted()
            result = await orchestrator.dispatcher.execute_direct(
                request.server, request.tool, request.arguments
            )
        except MCPMuxError as exc:
            logger.error("IPC tool call failed (%s): %s", name, exc.message)
            return JSONResponse(status_code=500, content={"success": False, "error": exc.message})
        finally:
            gate.release_external()

        if result.is_error:
            return {"success": False, "error": _parse_result(result.display_text)}
        return {"success": True, "result": _parse_result(result.display_text)}

    @app.get("/list_tools")
    async def list_tools():
        servers = orchestrator.registry.tools_by_server()
        return {
            "success": True,
            "servers": servers,
            "total_servers": len(servers),
            "total_tools": sum(len(tools) for tools in servers.values()),
        }

    return app


class IPCListener:
    """Runs the IPC app with uvicorn on a loopback port (0 picks a free one)."""

    def __init__(
        self,
        orchestrator: "ConversationOrchestrator",
        host: Optional[str] = None,
        port: Optional[int] = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.host = host or orchestrator.config.ipc_host
        self.port = orchestrator.config.ipc_port if port is None else port
        self.app = create_ipc_app(orchestrator)
        self._server: Any = None
        self._task: Optional[asyncio.Task] = None

    @property
    def url(self) -> str:
        return f"http://{self.host}:{self.port}"

    async def start(self) -> str:
        """Start serving in a background task and return the listener URL."""
        import uvicorn

        config = uvicorn.Config(
            self.app, host=self.host, port=self.port, log_level="warning", lifespan="off"
        )
        self._server = uvicorn.Server(config)
        self._task = asyncio.create_task(self._server.serve())
        while not self._server.started:
            if self._task.done():
                self._task.result()
                raise RuntimeError("IPC listener exited during startup")
            await asyncio.sleep(0.05)
        sockets = self._server.servers[0].sockets
        self.port = sockets[0].getsockname()[1]
        logger.info("IPC listener on %s", self.url)
        return self.url

    async def stop(self) -> None:
        if self._server is None or self._task is None:
            return
        self._server.should_exit = True
        await self._task
        self._server = None
        self._task = None
