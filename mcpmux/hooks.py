"""
mcpmux - Declarative tool hooks.

A hook runs another tool before or after a matching tool call. Hooks live in a
YAML file::

    hooks:
      - id: 3f9a1c2b
        after: fs__write_file
        run: "@tool-exec:git__status()"
      - id: 77d0e4aa
        before: "*"
        run: '@tool:memory__recall {"topic": "current task"}'
        when_input: {mode: "careful"}

``@tool:`` hooks inject their result into the triggering tool's result text;
``@tool-exec:`` hooks only run. Arguments are given either as a JSON object or
in call syntax, ``server__tool(key='value', n=3)``.
"""

from __future__ import annotations

import ast
import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

import yaml

from .exceptions import HookError
from .models import ToolExecutionResult

logger = logging.getLogger("mcpmux.hooks")

BEFORE = "before"
AFTER = "after"

_CALL_SYNTAX = re.compile(r"^([A-Za-z0-9_-]+__[A-Za-z0-9_-]+)\s*\((.*)\)\s*$", re.DOTALL)
_JSON_SYNTAX = re.compile(r"^([A-Za-z0-9_-]+__[A-Za-z0-9_-]+)\s*(\{.*\})?\s*$", re.DOTALL)
_ANSI = re.compile(r"\x1b\[[0-9;]*m")
_LITERAL_NAMES = {"true": True, "false": False, "null": None}


@dataclass
class ToolCommand:
    """A parsed ``@tool:`` / ``@tool-exec:`` command."""

    tool_name: str
    arguments: dict[str, Any]
    inject: bool


def _parse_call_args(args_str: str) -> dict[str, Any]:
    if not args_str.strip():
        return {}
    call = ast.parse(f"_({args_str})", mode="eval").body
    if not isinstance(call, ast.Call) or call.args:
        raise HookError(f"Hook arguments must be keyword arguments: {args_str!r}")
    args: dict[str, Any] = {}
    for kw in call.keywords:
        if kw.arg is None:
            raise HookError(f"Unsupported argument unpacking in {args_str!r}")
        if isinstance(kw.value, ast.Name) and kw.value.id in _LITERAL_NAMES:
            args[kw.arg] = _LITERAL_NAMES[kw.value.id]
        else:
            args[kw.arg] = ast.literal_eval(kw.value)
    return args


def parse_tool_command(command: str) -> Optional[ToolCommand]:
    """Parse a hook ``run`` string; returns None when it is not a tool command."""
    if command.startswith("@tool-exec:"):
        inject, rest = False, command[len("@tool-exec:"):].strip()
    elif command.startswith("@tool:"):
        inject, rest = True, command[len("@tool:"):].strip()
    else:
        return None

    match = _CALL_SYNTAX.match(rest)
    if match:
        try:
            return ToolCommand(match.group(1), _parse_call_args(match.group(2)), inject)
        except (SyntaxError, ValueError, HookError) as exc:
            logger.warning("Invalid hook arguments in %r: %s", command, exc)
            return None

    match = _JSON_SYNTAX.match(rest)
    if match:
        try:
            arguments = json.loads(match.group(2) or "{}")
        except json.JSONDecodeError:
            return None
        if not isinstance(arguments, dict):
            return None
        return ToolCommand(match.group(1), arguments, inject)
    return None


def matches_condition(
    condition: dict[str, Any],
    display_text: Optional[str] = None,
    tool_input: Optional[dict[str, Any]] = None,
) -> bool:
    """True when every key of ``condition`` equals the same key in the tool
    result (parsed as JSON) or, failing that, in the tool input."""

    def subset(obj: Any) -> bool:
        return isinstance(obj, dict) and all(obj.get(k) == v for k, v in condition.items())

    if display_text:
        try:
            if subset(json.loads(_ANSI.sub("", display_text))):
                return True
        except json.JSONDecodeError:
            pass
    return bool(tool_input) and subset(tool_input)


@dataclass
class Hook:
    """A single before/after tool hook."""

    run: str
    before: Optional[str] = None
    after: Optional[str] = None
    when_input: Optional[dict[str, Any]] = None
    when_output: Optional[dict[str, Any]] = None
    enabled: bool = True
    description: str = ""
    id: str = field(default_factory=lambda: uuid.uuid4().hex[:8])

    def __post_init__(self) -> None:
        if bool(self.before) == bool(self.after):
            raise HookError("A hook needs exactly one of 'before' or 'after'")
        if parse_tool_command(self.run) is None:
            raise HookError(f"Unrecognized hook command: {self.run!r}")

    @property
    def phase(self) -> str:
        return BEFORE if self.before else AFTER

    @property
    def target(self) -> str:
        return self.before or self.after or ""

    @property
    def command(self) -> ToolCommand:
        parsed = parse_tool_command(self.run)
        if parsed is None:
            raise HookError(f"Unrecognized hook command: {self.run!r}")
        return parsed

    def applies_to(
        self,
        phase: str,
        tool_name: str,
        tool_input: dict[str, Any],
        display_text: Optional[str] = None,
    ) -> bool:
        if not self.enabled or phase != self.phase:
            return False
        if self.target not in ("*", tool_name):
            return False
        if self.when_input and not matches_condition(self.when_input, None, tool_input):
            return False
        if self.when_output:
            if phase == BEFORE:
                return False
            if not matches_condition(self.when_output, display_text, tool_input):
                return False
        return True

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"id": self.id, "run": self.run, "enabled": self.enabled}
        for key in ("before", "after", "when_input", "when_output"):
            value = getattr(self, key)
            if value:
                data[key] = value
        if self.description:
            data["description"] = self.description
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Hook":
        kwargs = {
            "run": data["run"],
            "before": data.get("before"),
            "after": data.get("after"),
            "when_input": data.get("when_input") or data.get("whenInput"),
            "when_output": data.get("when_output") or data.get("whenOutput"),
            "enabled": data.get("enabled", True),
            "description": data.get("description", ""),
        }
        if data.get("id"):
            kwargs["id"] = str(data["id"])
        return cls(**kwargs)


@dataclass
class HookOutput:
    """The result of one executed hook."""

    hook: Hook
    tool_name: str
    arguments: dict[str, Any]
    result: ToolExecutionResult
    inject: bool


ToolRunner = Callable[[str, dict[str, Any]], Awaitable[ToolExecutionResult]]


class HookManager:
    """Loads, persists and runs hooks."""

    def __init__(self, path: Optional[Path] = None) -> None:
        self._path = Path(path) if path is not None else None
        self._hooks: list[Hook] = []
        self._executing = False
        self.load()

    def list_hooks(self) -> list[Hook]:
        return list(self._hooks)

    @property
    def executing(self) -> bool:
        return self._executing

    def load(self) -> None:
        if self._path is None or not self._path.exists():
            return
        try:
            with open(self._path, encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as exc:
            logger.warning("Ignoring unreadable hooks file %s: %s", self._path, exc)
            return
        hooks = []
        for entry in data.get("hooks", []):
            try:
                hooks.append(Hook.from_dict(entry))
            except (HookError, KeyError) as exc:
                logger.warning("Skipping invalid hook %r: %s", entry, exc)
        self._hooks = hooks

    def save(self) -> None:
        if self._path is None:
            return
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with open(self._path, "w", encoding="utf-8") as f:
            yaml.safe_dump({"hooks": [h.to_dict() for h in self._hooks]}, f, sort_keys=False)

    def add_hook(self, hook: Hook) -> Hook:
        self._hooks.append(hook)
        self.save()
        return hook

    def remove_hook(self, hook_id: str) -> bool:
        before = len(self._hooks)
        self._hooks = [h for h in self._hooks if h.id != hook_id]
        removed = len(self._hooks) != before
        if removed:
            self.save()
        return removed

    def set_enabled(self, hook_id: str, enabled: bool) -> bool:
        for hook in self._hooks:
            if hook.id == hook_id:
                hook.enabled = enabled
                self.save()
                return True
        return False

    def matching(
        self,
        phase: str,
        tool_name: str,
        tool_input: dict[str, Any],
        display_text: Optional[str] = None,
    ) -> list[Hook]:
        return [h for h in self._hooks if h.applies_to(phase, tool_name, tool_input, display_text)]

    async def run_hooks(
        self,
        phase: str,
        tool_name: str,
        tool_input: dict[str, Any],
        runner: ToolRunner,
        display_text: Optional[str] = None,
    ) -> list[HookOutput]:
        """Run every hook matching this tool call.

        Tools run by a hook never trigger hooks themselves.
        """
        if self._executing:
            return []
        hooks = self.matching(phase, tool_name, tool_input, display_text)
        if not hooks:
            return []
        outputs: list[HookOutput] = []
        self._executing = True
        try:
            for hook in hooks:
                command = hook.command
                logger.info("Running %s-hook %s for %s: %s", phase, hook.id, tool_name, command.tool_name)
                result = await runner(command.tool_name, command.arguments)
                outputs.append(
                    HookOutput(
                        hook=hook,
                        tool_name=command.tool_name,
                        arguments=command.arguments,
                        result=result,
                        inject=command.inject,
                    )
                )
        finally:
            self._executing = False
        return outputs
