"""
mcpmux - Tool execution dispatcher.

Routes a namespaced tool call to its server and wraps every call with the
approval gate, before/after hooks, the per-call timeout and the force-stop
path. Tool failures never raise: they come back as ordinary result text so the
model can react to them.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Optional, Protocol

from .capabilities import Capabilities
from .config import UNLIMITED_TOOL_TIMEOUT
from .exceptions import ServerNotFoundError, ToolNotFoundError
from .hooks import AFTER, BEFORE, HookManager, HookOutput
from .mcp import ServerRegistry
from .models import ToolExecutionResult, namespaced, split_namespaced

logger = logging.getLogger("mcpmux.dispatcher")


class ToolObserver(Protocol):
    """Receives tool lifecycle notifications."""

    def on_tool_start(self, tool_name: str, arguments: dict[str, Any], external: bool) -> None: ...

    def on_tool_end(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        result: ToolExecutionResult,
        external: bool,
        from_hook: bool,
    ) -> None: ...


def _format_json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False)


def format_tool_result(result: Any, tool_name: Optional[str] = None) -> ToolExecutionResult:
    """Turn an MCP ``CallToolResult`` into display text and content blocks.

    An ``isError`` result from a named tool renders as
    ``Error executing tool "<name>": <text>``.
    """
    texts: list[str] = []
    blocks: list[dict[str, Any]] = []
    for item in getattr(result, "content", None) or []:
        kind = getattr(item, "type", "text")
        if kind == "text":
            texts.append(item.text)
        elif kind == "image":
            blocks.append(
                {
                    "type": "image",
                    "source": {
                        "type": "base64",
                        "media_type": getattr(item, "mimeType", "image/png"),
                        "data": item.data,
                    },
                }
            )
        elif kind == "resource":
            resource = item.resource
            text = getattr(resource, "text", None)
            if text is not None:
                texts.append(text)
            else:
                texts.append(f"[resource {getattr(resource, 'uri', '')}]")

    text_content = "".join(texts)
    is_error = bool(getattr(result, "isError", False))
    if is_error and tool_name:
        display = f'Error executing tool "{tool_name}": {text_content}'
    else:
        try:
            display = _format_json(json.loads(text_content))
        except json.JSONDecodeError:
            display = _format_json([text_content])

    blocks.insert(0, {"type": "text", "text": display})
    return ToolExecutionResult(
        display_text=display,
        content_blocks=blocks,
        has_images=any(b["type"] == "image" for b in blocks),
        is_error=is_error,
    )


def _error_result(kind: str, message: str, details: str) -> ToolExecutionResult:
    text = _format_json([{"error": kind, "message": message, "details": details}])
    return ToolExecutionResult(
        display_text=text,
        content_blocks=[{"type": "text", "text": text}],
        is_error=True,
        cancelled=kind == "force_stopped",
    )


def _text_result(text: str, is_error: bool = True) -> ToolExecutionResult:
    return ToolExecutionResult(
        display_text=text,
        content_blocks=[{"type": "text", "text": text}],
        is_error=is_error,
    )


class ToolDispatcher:
    """Executes namespaced tool calls against a :class:`ServerRegistry`."""

    def __init__(
        self,
        registry: ServerRegistry,
        capabilities: Optional[Capabilities] = None,
        hooks: Optional[HookManager] = None,
        tool_timeout: float = 60.0,
        force_stop_grace: float = 10.0,
        poll_interval: float = 0.5,
        observer: Optional[ToolObserver] = None,
    ) -> None:
        self._registry = registry
        self._caps = capabilities or Capabilities()
        self._hooks = hooks
        self.tool_timeout = UNLIMITED_TOOL_TIMEOUT if tool_timeout < 0 else tool_timeout
        self.force_stop_grace = force_stop_grace
        self.poll_interval = poll_interval
        self.observer = observer

    @property
    def registry(self) -> ServerRegistry:
        return self._registry

    def resolve(self, tool_name: str) -> tuple[str, str]:
        """Map a tool name to ``(server, raw_name)``.

        Namespaced names go straight to their server. Anything else (legacy
        un-namespaced calls, or a prefix that names no live server) falls back
        to a scan of every connected catalog.
        """
        server, raw = split_namespaced(tool_name)
        if server is not None and self._registry.is_connected(server):
            return server, raw
        tool = self._registry.find_tool(tool_name)
        if tool is None:
            raise ToolNotFoundError(f'Tool "{tool_name}" not found in any server')
        return tool.server, tool.raw_name

    async def execute(self, tool_name: str, arguments: dict[str, Any]) -> ToolExecutionResult:
        """Run a tool on behalf of the model."""
        server, raw = self.resolve(tool_name)
        return await self._dispatch(server, raw, arguments or {}, external=False)

    async def execute_direct(
        self, server: str, tool: str, arguments: dict[str, Any]
    ) -> ToolExecutionResult:
        """Run a tool for an externally-routed caller that already knows its server."""
        if not self._registry.is_connected(server):
            raise ServerNotFoundError(f'Server "{server}" not found')
        return await self._dispatch(server, tool, arguments or {}, external=True)

    async def _dispatch(
        self, server: str, raw: str, arguments: dict[str, Any], external: bool
    ) -> ToolExecutionResult:
        name = namespaced(server, raw)

        decision = await self._caps.request_approval(name, arguments)
        if not decision.execute:
            reason = decision.message or "no reason given"
            result = _text_result(f"Tool execution rejected by user: {reason}")
            self._notify_end(name, arguments, result, external)
            return result

        before = await self._run_hooks(BEFORE, name, arguments)

        self._notify_start(name, arguments, external)
        result = await self._call(server, raw, arguments)

        after = await self._run_hooks(AFTER, name, arguments, result.display_text)
        result = self._inject(result, before, after)
        self._notify_end(name, arguments, result, external)
        return result

    async def _call(self, server: str, raw: str, arguments: dict[str, Any]) -> ToolExecutionResult:
        name = namespaced(server, raw)
        try:
            conn = self._registry.get(server)
        except ServerNotFoundError as exc:
            return _text_result(f'Error executing tool "{name}": {exc.message}')

        loop = asyncio.get_running_loop()
        completed = asyncio.Event()
        task = asyncio.create_task(conn.call_tool(raw, arguments))
        task.add_done_callback(lambda _t: completed.set())
        started = loop.time()
        cancel_requested: Optional[float] = None
        cancel_seen: Optional[float] = None

        while not task.done():
            await asyncio.wait({task}, timeout=self.poll_interval)
            if task.done():
                break
            now = loop.time()
            elapsed = now - started
            if elapsed >= self.tool_timeout:
                await self._abandon(task)
                message = (
                    f'Tool execution timed out. The tool "{name}" did not complete within '
                    f"{self.tool_timeout:g}s. Previous tool results are still available. "
                    "You can try again with different parameters or continue with other tasks."
                )
                logger.warning("Tool %s timed out after %.1fs", name, elapsed)
                return _error_result("timeout", message, f"timed out after {elapsed:.1f}s")
            if not self._caps.is_cancelled():
                cancel_requested = cancel_seen = None
                continue
            if cancel_seen is None:
                cancel_requested = cancel_seen = now
                continue
            if now - cancel_seen < self.force_stop_grace:
                continue
            # The prompt reports time since the cancel request.
            if await self._ask_force_stop(name, now - cancel_requested, completed, task):
                await self._abandon(task)
                await self._restart(server)
                message = (
                    f'Tool execution was force stopped by the user. The tool "{name}" was '
                    "taking too long and the user chose to abort. You should continue with "
                    "other tasks or try a different approach."
                )
                return _error_result("force_stopped", message, f"stopped after {elapsed:.1f}s")
            cancel_seen = loop.time()

        try:
            return format_tool_result(task.result(), name)
        except asyncio.CancelledError:
            return _text_result(f'Error executing tool "{name}": call was cancelled')
        except Exception as exc:
            logger.warning("Tool %s failed: %s", name, exc)
            return _text_result(f'Error executing tool "{name}": {exc}')

    async def _ask_force_stop(
        self, name: str, elapsed: float, completed: asyncio.Event, task: asyncio.Task
    ) -> bool:
        """Solicit a force-stop decision, abandoning the question if the tool finishes first."""
        ask = asyncio.create_task(self._caps.force_stopper.should_force_stop(name, elapsed, completed))
        await asyncio.wait({ask, task}, return_when=asyncio.FIRST_COMPLETED)
        if task.done():
            if not ask.done():
                ask.cancel()
                try:
                    await ask
                except asyncio.CancelledError:
                    pass
            return False
        try:
            return bool(ask.result())
        except Exception as exc:
            logger.warning("Force-stop prompt failed for %s: %s", name, exc)
            return False

    @staticmethod
    async def _abandon(task: asyncio.Task) -> None:
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        except Exception as exc:
            logger.debug("Abandoned tool call raised %s", exc)

    async def _restart(self, server: str) -> None:
        try:
            await self._registry.reconnect(server)
        except Exception as exc:
            logger.error("Failed to restart MCP server '%s' after force stop: %s", server, exc)

    async def _run_hooks(
        self,
        phase: str,
        tool_name: str,
        arguments: dict[str, Any],
        display_text: Optional[str] = None,
    ) -> list[HookOutput]:
        if self._hooks is None:
            return []
        try:
            return await self._hooks.run_hooks(
                phase, tool_name, arguments, self._run_hook_tool, display_text
            )
        except Exception as exc:
            logger.warning("%s-hooks for %s failed: %s", phase, tool_name, exc)
            return []

    async def _run_hook_tool(self, tool_name: str, arguments: dict[str, Any]) -> ToolExecutionResult:
        try:
            server, raw = self.resolve(tool_name)
        except ToolNotFoundError as exc:
            result = _text_result(exc.message)
        else:
            result = await self._call(server, raw, arguments)
        self._notify_end(tool_name, arguments, result, external=False, from_hook=True)
        return result

    @staticmethod
    def _inject(
        result: ToolExecutionResult, before: list[HookOutput], after: list[HookOutput]
    ) -> ToolExecutionResult:
        prefix = [f"[Hook {o.tool_name}]: {o.result.display_text}" for o in before if o.inject]
        suffix = [f"[Hook {o.tool_name}]: {o.result.display_text}" for o in after if o.inject]
        if not prefix and not suffix:
            return result
        text = "\n\n".join(prefix + [result.display_text] + suffix)
        blocks = [{"type": "text", "text": text}] + [
            b for b in result.content_blocks if b.get("type") != "text"
        ]
        return ToolExecutionResult(
            display_text=text,
            content_blocks=blocks,
            has_images=result.has_images,
            is_error=result.is_error,
            cancelled=result.cancelled,
        )

    def _notify_start(self, name: str, arguments: dict[str, Any], external: bool) -> None:
        if self.observer is None:
            return
        try:
            self.observer.on_tool_start(name, arguments, external)
        except Exception as exc:
            logger.debug("Tool observer failed on start: %s", exc)

    def _notify_end(
        self,
        name: str,
        arguments: dict[str, Any],
        result: ToolExecutionResult,
        external: bool,
        from_hook: bool = False,
    ) -> None:
        if self.observer is None:
            return
        try:
            self.observer.on_tool_end(name, arguments, result, external, from_hook)
        except Exception as exc:
            logger.debug("Tool observer failed on end: %s", exc)
