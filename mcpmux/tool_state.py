"""
mcpmux - Persisted tool enable/disable state.
"""

import json
import logging
from pathlib import Path
from typing import Iterable, Optional

from .models import TOOL_SEPARATOR

logger = logging.getLogger("mcpmux.tool_state")


class ToolStateStore:
    """Tracks which namespaced tools and which servers are exposed to the model.

    Unknown tools are enabled. A disabled server stays connected and its tools
    remain directly invokable; it is only hidden from the model's tool list.
    State is written back to ``path`` after every mutation when a path is set.
    """

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path is not None else None
        self._tools: dict[str, bool] = {}
        self._disabled_servers: set[str] = set()
        self._load()

    def _load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Ignoring unreadable tool state file %s: %s", self._path, exc)
            return
        self._tools = {str(k): bool(v) for k, v in data.get("tools", {}).items()}
        self._disabled_servers = set(data.get("disabled_servers", []))

    def save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        payload = {
            "tools": self._tools,
            "disabled_servers": sorted(self._disabled_servers),
        }
        self._path.write_text(json.dumps(payload, indent=2), encoding="utf-8")

    @property
    def states(self) -> dict[str, bool]:
        return dict(self._tools)

    @property
    def disabled_servers(self) -> set[str]:
        return set(self._disabled_servers)

    def is_enabled(self, name: str) -> bool:
        return self._tools.get(name, True)

    def set_enabled(self, name: str, enabled: bool) -> None:
        self._tools[name] = enabled
        self.save()

    def register_tools(self, names: Iterable[str]) -> list[str]:
        """Record tools seen for the first time as enabled; return the new ones."""
        added = [n for n in names if n not in self._tools]
        for name in added:
            self._tools[name] = True
        if added:
            self.save()
        return added

    def enable_all(self, names: Optional[Iterable[str]] = None) -> None:
        for name in list(names) if names is not None else list(self._tools):
            self._tools[name] = True
        self.save()

    def disable_all(self, names: Optional[Iterable[str]] = None) -> None:
        for name in list(names) if names is not None else list(self._tools):
            self._tools[name] = False
        self.save()

    def set_server_tools(self, server: str, enabled: bool) -> int:
        """Enable or disable every known tool of one server; returns how many changed."""
        prefix = f"{server}{TOOL_SEPARATOR}"
        changed = 0
        for name in self._tools:
            if name.startswith(prefix) and self._tools[name] != enabled:
                self._tools[name] = enabled
                changed += 1
        self.save()
        return changed

    def is_server_exposed(self, server: str) -> bool:
        return server not in self._disabled_servers

    def set_server_exposed(self, server: str, exposed: bool) -> None:
        if exposed:
            self._disabled_servers.discard(server)
        else:
            self._disabled_servers.add(server)
        self.save()

    def prune(self, valid_names: Iterable[str], preserve_servers: Iterable[str] = ()) -> list[str]:
        """Drop state for tools no longer offered by any server.

        Tools belonging to ``preserve_servers`` (servers whose catalog refresh
        failed) are kept untouched since their absence may be transient.
        """
        valid = set(valid_names)
        prefixes = tuple(f"{s}{TOOL_SEPARATOR}" for s in preserve_servers)
        stale = [
            name
            for name in self._tools
            if name not in valid and not (prefixes and name.startswith(prefixes))
        ]
        for name in stale:
            del self._tools[name]
        if stale:
            logger.info("Pruned %d stale tool state entries", len(stale))
            self.save()
        return stale
