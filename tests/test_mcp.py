"""Tests for the MCP server registry and server configuration parsing."""

import json
from unittest.mock import AsyncMock

import pytest
from conftest import FakeSession, make_registry, specs
from mcp import types
from mcp.shared.exceptions import McpError

from mcpmux.exceptions import (
    ConfigurationError,
    NoServersConnectedError,
    ServerConnectionError,
    ServerNotFoundError,
)
from mcpmux.mcp import (
    ServerConnection,
    ServerSpec,
    load_servers_config,
    parse_servers_config,
)
from mcpmux.models import Tool
from mcpmux.tool_state import ToolStateStore

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


class TestParseServersConfig:
    def test_mcp_servers_block(self):
        parsed = parse_servers_config(
            {
                "mcpServers": {
                    "files": {"command": "npx", "args": ["-y", "server-fs", 3], "timeout": 5},
                    "git": {"command": "uvx", "env": {"TOKEN": "${GIT_TOKEN}"}, "disabled": True},
                }
            }
        )
        assert [s.name for s in parsed] == ["files", "git"]
        assert parsed[0].args == ["-y", "server-fs", "3"]
        assert parsed[0].timeout == 5.0
        assert parsed[1].disabled is True

    def test_list_layout(self):
        parsed = parse_servers_config([{"name": "todo", "command": "todo-server"}])
        assert parsed[0].name == "todo"
        assert parsed[0].command == "todo-server"

    def test_missing_command_rejected(self):
        with pytest.raises(ConfigurationError, match="no command"):
            parse_servers_config({"servers": {"broken": {"args": []}}})

    def test_missing_block_rejected(self):
        with pytest.raises(ConfigurationError):
            parse_servers_config({"something": {}})

    def test_load_yaml_file(self, tmp_path):
        path = tmp_path / "servers.yaml"
        path.write_text("servers:\n  notes:\n    command: notes-server\n    allowed_tools: [read]\n")
        parsed = load_servers_config(path)
        assert parsed[0].name == "notes"
        assert parsed[0].allowed_tools == ["read"]

    def test_load_json_file(self, tmp_path):
        path = tmp_path / "mcp_config.json"
        path.write_text(json.dumps({"mcpServers": {"a": {"command": "a-server"}}}))
        assert load_servers_config(path)[0].command == "a-server"

    def test_resolved_env_expands_variables(self, monkeypatch):
        monkeypatch.setenv("GIT_TOKEN", "secret")
        spec = ServerSpec(name="git", command="git-server", env={"TOKEN": "${GIT_TOKEN}", "MODE": "ro"})
        env = spec.resolved_env()
        assert env["TOKEN"] == "secret"
        assert env["MODE"] == "ro"
        assert "PATH" in env

    def test_resolved_env_none_when_empty(self):
        assert ServerSpec(name="a", command="a").resolved_env() is None


# ---------------------------------------------------------------------------
# ServerConnection catalogs
# ---------------------------------------------------------------------------


class TestServerConnection:
    def test_session_requires_connection(self):
        conn = ServerConnection(ServerSpec(name="a", command="a"))
        assert conn.connected is False
        with pytest.raises(ServerConnectionError, match="Not connected"):
            conn.session

    @pytest.mark.asyncio
    async def test_fetch_tools_namespaces_and_filters(self):
        conn = ServerConnection(ServerSpec(name="fs", command="fs", allowed_tools=["read"]))
        session = AsyncMock()
        session.list_tools.return_value = types.ListToolsResult(
            tools=[
                types.Tool(name="read", description="Read a file", inputSchema={"type": "object"}),
                types.Tool(name="write", description="Write a file", inputSchema={"type": "object"}),
            ]
        )
        conn._session = session

        tools = await conn.fetch_tools()

        assert [t.name for t in tools] == ["fs__read"]
        assert tools[0].raw_name == "read"
        assert tools[0].server == "fs"
        assert tools[0].description == "[fs] Read a file"

    @pytest.mark.asyncio
    async def test_terminate_without_runner_is_noop(self):
        conn = ServerConnection(ServerSpec(name="a", command="a"))
        await conn.terminate()
        assert conn.connected is False


# ---------------------------------------------------------------------------
# ServerRegistry
# ---------------------------------------------------------------------------


class TestServerRegistry:
    @pytest.mark.asyncio
    async def test_same_tool_name_on_two_servers(self, sessions):
        registry, _ = make_registry(sessions)
        await registry.connect_all(specs("alpha", "beta"))

        names = {t.name for t in registry.exposed_tools()}
        assert {"alpha__search", "beta__search", "beta__fetch"} == names

    @pytest.mark.asyncio
    async def test_partial_connect_reports_failures(self, sessions):
        sessions["gamma"] = FakeSession({"noop": lambda args: "ok"})
        registry, _ = make_registry(sessions, failing={"beta": "spawn failed"})

        report = await registry.connect_all(specs("alpha", "beta", "gamma"))

        assert sorted(report.connected) == ["alpha", "gamma"]
        assert list(report.failed) == ["beta"]
        assert "spawn failed" in report.failed["beta"]
        assert registry.is_connected("alpha")
        assert not registry.is_connected("beta")
        assert registry.errors["beta"] == "spawn failed"

    @pytest.mark.asyncio
    async def test_no_servers_connected(self, sessions):
        registry, _ = make_registry(sessions, failing={"alpha": "boom", "beta": "bang"})

        with pytest.raises(NoServersConnectedError) as exc_info:
            await registry.connect_all(specs("alpha", "beta"))

        assert set(exc_info.value.failures) == {"alpha", "beta"}

    @pytest.mark.asyncio
    async def test_disabled_server_stays_connected_but_hidden(self, sessions):
        registry, _ = make_registry(sessions)
        alpha, beta = specs("alpha", "beta")
        beta.disabled = True
        await registry.connect_all([alpha, beta])

        assert registry.is_connected("beta")
        assert {t.server for t in registry.exposed_tools()} == {"alpha"}
        assert len(registry.all_tools()) == 3

    @pytest.mark.asyncio
    async def test_get_unknown_server(self, sessions):
        registry, _ = make_registry(sessions)
        with pytest.raises(ServerNotFoundError):
            registry.get("missing")

    @pytest.mark.asyncio
    async def test_reconnect_replaces_only_that_server(self, sessions):
        registry, factory = make_registry(sessions)
        await registry.connect_all(specs("alpha", "beta"))
        old_alpha = registry.get("alpha")
        beta = registry.get("beta")

        await registry.reconnect("alpha")

        assert old_alpha.terminated == 1
        assert registry.get("alpha") is not old_alpha
        assert registry.get("beta") is beta
        assert beta.terminated == 0
        assert len(factory.built) == 3

    @pytest.mark.asyncio
    async def test_disconnect_all(self, sessions):
        registry, factory = make_registry(sessions)
        await registry.connect_all(specs("alpha", "beta"))
        await registry.disconnect_all()

        assert registry.server_names == []
        assert all(conn.terminated == 1 for conn in factory.built)

    @pytest.mark.asyncio
    async def test_refresh_prunes_vanished_tools(self, sessions):
        state = ToolStateStore()
        registry, _ = make_registry(sessions, tool_state=state)
        await registry.connect_all(specs("alpha", "beta"))
        state.set_enabled("beta__fetch", False)

        del sessions["beta"].tools["fetch"]
        failed = await registry.refresh_catalogs()

        assert failed == set()
        assert "beta__fetch" not in state.states
        assert "beta__search" in state.states

    @pytest.mark.asyncio
    async def test_refresh_keeps_state_of_failing_server(self, sessions):
        state = ToolStateStore()
        registry, _ = make_registry(sessions, tool_state=state)
        await registry.connect_all(specs("alpha", "beta"))
        state.set_enabled("beta__fetch", False)

        sessions["beta"].list_tools = AsyncMock(side_effect=ConnectionError("pipe closed"))
        failed = await registry.refresh_catalogs()

        assert failed == {"beta"}
        assert state.states["beta__fetch"] is False

    @pytest.mark.asyncio
    async def test_refresh_treats_listing_error_as_failure(self, sessions):
        state = ToolStateStore()
        registry, _ = make_registry(sessions, tool_state=state)
        await registry.connect_all(specs("alpha", "beta"))
        state.set_enabled("beta__fetch", False)

        sessions["beta"].list_tools = AsyncMock(
            side_effect=McpError(types.ErrorData(code=-32603, message="busy"))
        )
        failed = await registry.refresh_catalogs()

        assert failed == {"beta"}
        assert state.states["beta__fetch"] is False
        assert "beta__search" in state.states
        assert [t.name for t in registry.get("beta").tools] == ["beta__search", "beta__fetch"]

    @pytest.mark.asyncio
    async def test_listing_error_on_connect_gives_empty_catalog(self):
        session = FakeSession({"search": lambda args: "x"})
        session.list_tools = AsyncMock(side_effect=McpError(types.ErrorData(code=-32601, message="nope")))
        registry, _ = make_registry({"alpha": session})

        report = await registry.connect_all(specs("alpha"))

        assert report.connected == ["alpha"]
        assert registry.get("alpha").tools == []

    @pytest.mark.asyncio
    async def test_find_tool_first_match_wins(self, sessions):
        registry, _ = make_registry(sessions)
        await registry.connect_all(specs("alpha", "beta"))

        assert registry.find_tool("search").server == "alpha"
        assert registry.find_tool("fetch").server == "beta"
        assert registry.find_tool("nothing") is None

    @pytest.mark.asyncio
    async def test_prompts(self):
        prompt = types.Prompt(
            name="brainstorm",
            description="Brainstorm ideas",
            arguments=[types.PromptArgument(name="topic", required=True)],
        )
        registry, _ = make_registry({"ideas": FakeSession({}, prompts=[prompt])})
        await registry.connect_all(specs("ideas"))

        prompts = registry.exposed_prompts()
        assert prompts[0].name == "brainstorm"
        assert prompts[0].arguments[0]["name"] == "topic"

        rendered = await registry.get_prompt("ideas", "brainstorm", {"topic": "tea"})
        assert rendered == [{"role": "user", "content": "brainstorm: tea"}]

    @pytest.mark.asyncio
    async def test_tools_by_server(self, sessions):
        registry, _ = make_registry(sessions)
        await registry.connect_all(specs("alpha", "beta"))

        listing = registry.tools_by_server()
        assert [t["name"] for t in listing["beta"]] == ["search", "fetch"]
        assert listing["alpha"][0]["input_schema"]["type"] == "object"


def test_tool_from_dict():
    tool = Tool.from_mcp("docs", {"name": "lookup", "description": None})
    assert tool.name == "docs__lookup"
    assert tool.input_schema == {"type": "object", "properties": {}}
