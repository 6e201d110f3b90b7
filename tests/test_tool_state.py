"""Tests for persisted tool enable/disable state."""

import json

from mcpmux.tool_state import ToolStateStore


class TestToolStateStore:
    def test_unknown_tools_are_enabled(self):
        store = ToolStateStore()
        assert store.is_enabled("fs__read") is True
        assert store.is_server_exposed("fs") is True

    def test_state_survives_reload(self, tmp_path):
        path = tmp_path / "state" / "tool_state.json"
        store = ToolStateStore(path)
        store.register_tools(["fs__read", "fs__write"])
        store.set_enabled("fs__write", False)
        store.set_server_exposed("git", False)

        reloaded = ToolStateStore(path)
        assert reloaded.is_enabled("fs__read") is True
        assert reloaded.is_enabled("fs__write") is False
        assert reloaded.is_server_exposed("git") is False
        assert json.loads(path.read_text())["disabled_servers"] == ["git"]

    def test_register_reports_only_new_tools(self):
        store = ToolStateStore()
        assert store.register_tools(["a__x", "a__y"]) == ["a__x", "a__y"]
        store.set_enabled("a__x", False)
        assert store.register_tools(["a__x", "a__z"]) == ["a__z"]
        assert store.is_enabled("a__x") is False

    def test_set_server_tools(self):
        store = ToolStateStore()
        store.register_tools(["fs__read", "fs__write", "git__log"])
        assert store.set_server_tools("fs", False) == 2
        assert store.set_server_tools("fs", False) == 0
        assert store.is_enabled("git__log") is True

    def test_prune_preserves_failed_servers(self):
        store = ToolStateStore()
        store.register_tools(["fs__read", "fs__old", "git__log"])
        stale = store.prune(["fs__read"], preserve_servers=["git"])
        assert stale == ["fs__old"]
        assert set(store.states) == {"fs__read", "git__log"}

    def test_bulk_enable_disable(self):
        store = ToolStateStore()
        store.register_tools(["a__x", "a__y"])
        store.disable_all()
        assert not any(store.states.values())
        store.enable_all(["a__y"])
        assert store.states == {"a__x": False, "a__y": True}

    def test_corrupt_file_ignored(self, tmp_path):
        path = tmp_path / "tool_state.json"
        path.write_text("{not json")
        assert ToolStateStore(path).states == {}
