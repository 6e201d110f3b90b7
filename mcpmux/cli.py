"""
mcpmux CLI - Command-line interface for multi-server tool use.

Commands:
    mcpmux tools -c mcp_config.json              List the tools exposed to the model
    mcpmux query -c mcp_config.json "question"   Run one query and stream the answer
    mcpmux hooks list                            List configured tool hooks
    mcpmux hooks add --after TOOL --run CMD      Add a hook
    mcpmux hooks remove ID                       Remove a hook
"""

import argparse
import asyncio
import logging
import signal
import sys
from typing import Any

from .config import DEFAULT_MODELS, ClientConfig, resolve_provider
from .exceptions import MCPMuxError
from .models import ToolExecutionResult
from .streaming import DeltaType, StreamEvent, StreamEventType


class StreamPrinter:
    """Observer that writes the live conversation to stdout."""

    def __init__(self, quiet: bool = False) -> None:
        self.quiet = quiet

    def on_event(self, event: StreamEvent) -> None:
        if event.type != StreamEventType.CONTENT_BLOCK_DELTA:
            return
        if event.data.get("delta_type") == DeltaType.TEXT:
            sys.stdout.write(event.data.get("text", ""))
            sys.stdout.flush()

    def on_tool_start(self, tool_name: str, arguments: dict[str, Any], external: bool) -> None:
        if not self.quiet:
            origin = " (external)" if external else ""
            print(f"\n[Calling tool {tool_name}{origin}]", file=sys.stderr)

    def on_tool_end(
        self,
        tool_name: str,
        arguments: dict[str, Any],
        result: ToolExecutionResult,
        external: bool,
        from_hook: bool,
    ) -> None:
        if not self.quiet:
            label = "Hook tool executed" if from_hook else "Tool executed"
            print(f"[{label}: {tool_name}]", file=sys.stderr)

    def on_warning(self, message: str) -> None:
        print(f"\nWarning: {message}", file=sys.stderr)

    def on_done(self, text: str) -> None:
        print()

    def on_error(self, message: str) -> None:
        print(f"\nError: {message}", file=sys.stderr)


def _load_servers(path: str):
    import yaml

    from .mcp import load_servers_config

    try:
        return load_servers_config(path)
    except (OSError, MCPMuxError, ValueError, yaml.YAMLError) as e:
        print(f"Error: cannot read server config {path}: {e}", file=sys.stderr)
        sys.exit(1)


def _build_config(args: argparse.Namespace) -> ClientConfig:
    config = ClientConfig.from_env()
    if getattr(args, "model", None):
        config.model = args.model
        if not getattr(args, "provider", None):
            config.provider = resolve_provider(args.model)
    if getattr(args, "provider", None):
        config.provider = args.provider
        if not getattr(args, "model", None):
            config.model = DEFAULT_MODELS[args.provider]
    if getattr(args, "thinking", False):
        config.thinking = True
    return config


async def _list_tools(args: argparse.Namespace) -> None:
    from .mcp import ServerRegistry
    from .tool_state import ToolStateStore

    config = _build_config(args)
    registry = ServerRegistry(ToolStateStore(config.tool_state_path))
    report = await registry.connect_all(_load_servers(args.config))
    try:
        for name, error in report.failed.items():
            print(f"✗ {name}: {error}", file=sys.stderr)
        exposed = {t.name for t in registry.exposed_tools()}
        for server, tools in registry.tools_by_server().items():
            hidden = "" if registry.tool_state.is_server_exposed(server) else " (hidden)"
            print(f"{server}{hidden}")
            for tool in tools:
                full = f"{server}__{tool['name']}"
                mark = "✓" if full in exposed else "✗"
                print(f"  {mark} {full}")
    finally:
        await registry.disconnect_all()


def cmd_tools(args: argparse.Namespace) -> None:
    """Connect to every configured server and list its tools."""
    try:
        asyncio.run(_list_tools(args))
    except MCPMuxError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)


async def _run_query(args: argparse.Namespace) -> None:
    from .adapters import create_adapter
    from .capabilities import Capabilities, CancellationFlag
    from .orchestrator import ConversationOrchestrator
    from .tasks import TaskEnforcementController

    config = _build_config(args)
    cancel = CancellationFlag()
    orchestrator = ConversationOrchestrator(
        servers=_load_servers(args.config),
        adapter=create_adapter(config, system_prompt=args.system),
        config=config,
        capabilities=Capabilities(canceller=cancel),
        observer=StreamPrinter(quiet=args.quiet),
    )

    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, cancel.cancel)
    except NotImplementedError:
        pass

    await orchestrator.start()
    try:
        if args.todo:
            controller = TaskEnforcementController(orchestrator)
            await controller.enable()
            await controller.run_turn(args.query)
        else:
            await orchestrator.process_query(args.query)
        if not args.quiet:
            usage = orchestrator.token_usage()
            print(
                f"[Token usage: {usage['current']}/{usage['limit']} ({usage['percentage']}%)]",
                file=sys.stderr,
            )
    finally:
        await orchestrator.cleanup()


def cmd_query(args: argparse.Namespace) -> None:
    """Run one query against the configured servers."""
    try:
        asyncio.run(_run_query(args))
    except MCPMuxError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        sys.exit(1)
    except ImportError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def cmd_hooks(args: argparse.Namespace) -> None:
    """List, add or remove tool hooks."""
    from .hooks import Hook, HookError, HookManager

    config = ClientConfig.from_env()
    manager = HookManager(config.hooks_path)

    if args.hooks_command == "add":
        try:
            hook = manager.add_hook(
                Hook(
                    run=args.run,
                    before=args.before,
                    after=args.after,
                    description=args.description or "",
                )
            )
        except HookError as e:
            print(f"Error: {e}", file=sys.stderr)
            sys.exit(1)
        print(f"Added hook {hook.id}")
        return

    if args.hooks_command == "remove":
        if not manager.remove_hook(args.id):
            print(f"Error: no hook with id {args.id}", file=sys.stderr)
            sys.exit(1)
        print(f"Removed hook {args.id}")
        return

    hooks = manager.list_hooks()
    if not hooks:
        print("No hooks configured")
        return
    for hook in hooks:
        state = "enabled" if hook.enabled else "disabled"
        print(f"{hook.id}  {hook.phase}:{hook.target}  {hook.run}  ({state})")
        if hook.description:
            print(f"          {hook.description}")


def main() -> None:
    """Main entry point for the CLI."""
    parser = argparse.ArgumentParser(
        prog="mcpmux",
        description="mcpmux CLI - Drive MCP tool-servers from any LLM backend",
    )
    parser.add_argument("--version", action="version", version="%(prog)s 0.1.0")
    parser.add_argument(
        "--log-level",
        default=None,
        help="Logging level (default: MCPMUX_LOG_LEVEL or warning)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    # Tools command
    tools_parser = subparsers.add_parser("tools", help="List tools exposed by the configured servers")
    tools_parser.add_argument("--config", "-c", required=True, help="Path to MCP server config (JSON or YAML)")
    tools_parser.set_defaults(func=cmd_tools)

    # Query command
    query_parser = subparsers.add_parser("query", help="Run one query and stream the answer")
    query_parser.add_argument("query", help="The question or task")
    query_parser.add_argument("--config", "-c", required=True, help="Path to MCP server config (JSON or YAML)")
    query_parser.add_argument("--model", "-m", help="Model name (provider inferred when omitted)")
    query_parser.add_argument(
        "--provider",
        "-p",
        choices=["anthropic", "openai", "grok", "gemini", "ollama"],
        help="Backend to use",
    )
    query_parser.add_argument("--system", help="System prompt")
    query_parser.add_argument("--thinking", action="store_true", help="Request reasoning output")
    query_parser.add_argument("--todo", action="store_true", help="Enforce todo completion")
    query_parser.add_argument("--quiet", "-q", action="store_true", help="Only print the answer")
    query_parser.set_defaults(func=cmd_query)

    # Hooks command
    hooks_parser = subparsers.add_parser("hooks", help="Manage tool hooks")
    hooks_sub = hooks_parser.add_subparsers(dest="hooks_command")
    hooks_sub.add_parser("list", help="List hooks")
    add_parser = hooks_sub.add_parser("add", help="Add a hook")
    phase = add_parser.add_mutually_exclusive_group(required=True)
    phase.add_argument("--before", help="Tool name (or *) to run before")
    phase.add_argument("--after", help="Tool name (or *) to run after")
    add_parser.add_argument("--run", required=True, help="@tool:server__tool(args) or @tool-exec:...")
    add_parser.add_argument("--description", help="Free-form description")
    remove_parser = hooks_sub.add_parser("remove", help="Remove a hook")
    remove_parser.add_argument("id", help="Hook id")
    hooks_parser.set_defaults(func=cmd_hooks, hooks_command="list")

    args = parser.parse_args()

    if args.command is None:
        parser.print_help()
        sys.exit(0)

    level = args.log_level or ClientConfig.from_env().log_level
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    args.func(args)


if __name__ == "__main__":
    main()
