"""
mcpmux - Task-completion enforcement.

While enforcement is active the agent keeps a todo list on the ``todo``
tool-server and may not end its turn while items are outstanding: after every
user turn the controller re-prompts the model until every todo is completed or
skipped, or the user cancels.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Optional

from .exceptions import ConfigurationError
from .models import PreExistingTasks, TaskEnforcementState, Tool

if TYPE_CHECKING:
    from .orchestrator import ConversationOrchestrator

logger = logging.getLogger("mcpmux.tasks")

TODO_SERVER = "todo"

TODO_TOOLS = frozenset(
    {
        "create-todo",
        "insert-todo",
        "list-todos",
        "read-next-todo",
        "complete-todo",
        "delete-todo",
        "skip-todo",
        "clear-todo-list",
        "mark-todos-not-completed",
        "update-todo",
    }
)

SKIPPED_COUNT = re.compile(r"(\d+)\s+Todos?\s+Skipped", re.IGNORECASE)
_ITEM_START = re.compile(r"^(\d+\.|[✓✗⁉])")

BRIEFING = (
    "You are now in todo mode. When the user provides a task, you must: "
    "1) Decompose the task into actionable todos using create-todo, "
    "2) As you complete each task, mark it complete using complete-todo. "
    "You cannot exit until all todos are completed or skipped using skip-todo."
)

Decide = Callable[[str], Awaitable[PreExistingTasks]]
AfterCompletion = Callable[[str], Awaitable[bool]]


@dataclass
class TodoItem:
    """One entry of the todo list."""

    id: str = ""
    text: str = ""
    completed: bool = False
    skipped: bool = False

    @property
    def outstanding(self) -> bool:
        return not self.completed and not self.skipped


def _status(line: str) -> tuple[bool, bool]:
    """(completed, skipped) for a ``Status:`` line."""
    low = line.lower()
    if "not completed" in low or "not-completed" in low:
        return False, False
    if "completed" in low:
        return True, False
    if "skipped" in low:
        return False, True
    return False, False


def parse_todos(text: str) -> list[TodoItem]:
    """Parse ``list-todos`` output: a JSON list (or ``{"todos": [...]}``) or the text listing."""
    try:
        data = json.loads(text)
    except (json.JSONDecodeError, TypeError):
        data = None
    if isinstance(data, dict):
        data = data.get("todos")
    if isinstance(data, list):
        return [
            TodoItem(
                id=str(t.get("id", "")),
                text=str(t.get("title") or t.get("text") or t.get("description") or ""),
                completed=bool(t.get("completed")),
                skipped=bool(t.get("skipped")),
            )
            for t in data
            if isinstance(t, dict)
        ]

    items: list[TodoItem] = []
    for raw in (text or "").splitlines():
        line = raw.strip()
        if not line:
            continue
        low = line.lower()
        if _ITEM_START.match(line):
            item = TodoItem(text=line)
            if "✓" in line:
                item.completed = True
            elif "⁉" in line:
                item.skipped = True
            items.append(item)
        elif low.startswith("id:"):
            if not items or items[-1].id:
                items.append(TodoItem())
            items[-1].id = line[3:].strip()
        elif low.startswith("status:"):
            if not items:
                items.append(TodoItem())
            items[-1].completed, items[-1].skipped = _status(line)
    return items


def reminder_text(pending: list[TodoItem], listing: str) -> str:
    return (
        f"You have {len(pending)} incomplete todo(s). Please complete them using complete-todo. "
        "Only skip them using skip-todo if you cannot perform these tasks. Before executing the "
        "next action, first update the previous action you completed (mark it as complete using "
        "complete-todo), then read the next todo using read-next-todo.\n\n"
        f"Active todos:\n{listing}\n\n"
        "You cannot exit until all todos are completed or skipped."
    )


def _result_text(result: Any) -> str:
    return "".join(
        getattr(item, "text", "") for item in getattr(result, "content", None) or []
        if getattr(item, "type", "text") == "text"
    )


class TaskEnforcementController:
    """Keeps the agent working until its todo list is empty.

    Example:
        controller = TaskEnforcementController(orchestrator)
        await controller.enable(decide=ask_user)
        answer = await controller.run_turn("Refactor the billing module")
    """

    def __init__(self, orchestrator: "ConversationOrchestrator", server: str = TODO_SERVER) -> None:
        self.orchestrator = orchestrator
        self.server = server
        self.state = TaskEnforcementState()
        self.after_completion: Optional[AfterCompletion] = None

    @property
    def enabled(self) -> bool:
        return self.state.enabled

    async def _call(self, tool: str, arguments: Optional[dict[str, Any]] = None) -> str:
        conn = self.orchestrator.registry.get(self.server)
        return _result_text(await conn.call_tool(tool, arguments or {}))

    async def list_todos(self) -> tuple[str, list[TodoItem]]:
        try:
            text = await self._call("list-todos")
        except Exception as exc:
            logger.warning("Failed to list todos: %s", exc)
            return "", []
        return text, parse_todos(text)

    async def outstanding(self) -> list[TodoItem]:
        _, items = await self.list_todos()
        return [t for t in items if t.outstanding]

    async def clear(self) -> None:
        try:
            await self._call("clear-todo-list")
        except Exception as exc:
            logger.warning("Failed to clear todos: %s", exc)

    async def skip_all(self) -> int:
        """Skip every outstanding todo; returns how many the server reports skipped."""
        ids = [t.id for t in await self.outstanding() if t.id]
        if not ids:
            return 0
        try:
            text = await self._call("skip-todo", {"ids": ids})
        except Exception as exc:
            logger.warning("Failed to skip todos: %s", exc)
            return 0
        match = SKIPPED_COUNT.search(text)
        return int(match.group(1)) if match else len(ids)

    def _filter(self, tool: Tool) -> bool:
        return tool.server != self.server or tool.raw_name in TODO_TOOLS

    # -- lifecycle ---------------------------------------------------------

    async def enable(
        self,
        decide: Optional[Decide] = None,
        after_completion: Optional[AfterCompletion] = None,
    ) -> PreExistingTasks:
        """Turn enforcement on, resolving any todos left from an earlier session.

        Raises:
            ConfigurationError: If the todo server is not connected.
        """
        if not self.orchestrator.registry.is_connected(self.server):
            raise ConfigurationError(
                f'Todo server not configured. Add a "{self.server}" server to the MCP config.'
            )
        listing, items = await self.list_todos()
        pending = [t for t in items if t.outstanding]
        skipped = [t for t in items if t.skipped]

        if not items:
            choice = PreExistingTasks.LEAVE
        elif not pending and not skipped:
            await self.clear()
            choice = PreExistingTasks.CLEAR
        elif decide is not None:
            choice = await decide(listing)
        else:
            choice = PreExistingTasks.LEAVE

        if choice == PreExistingTasks.CLEAR and (pending or skipped):
            await self.clear()
            logger.info("Cleared existing todos")
        elif choice == PreExistingTasks.SKIP_ALL:
            count = await self.skip_all()
            logger.info("Skipped %d incomplete todo(s)", count)

        self.state.enabled = True
        self.state.briefed = False
        self.state.pre_existing = choice
        self.state.carried_tasks = listing if choice == PreExistingTasks.LEAVE and items else ""
        self.after_completion = after_completion
        self.orchestrator.tool_filter = self._filter
        logger.info("Todo mode enabled")
        return choice

    def disable(self) -> None:
        self.state.reset()
        self.after_completion = None
        self.orchestrator.tool_filter = None
        logger.info("Todo mode disabled")

    # -- turns -------------------------------------------------------------

    async def briefing(self) -> str:
        """The one-time instructions sent ahead of the first enforced turn."""
        if not self.state.carried_tasks:
            return BRIEFING
        listing, items = await self.list_todos()
        active = sum(1 for t in items if t.outstanding)
        skipped = sum(1 for t in items if t.skipped)
        if active and skipped:
            note = (
                f"There are {active} existing incomplete todo(s) and {skipped} skipped todo(s) in "
                "the todo list. You must resume and complete the incomplete tasks before starting "
                "any new tasks."
            )
        elif active:
            note = (
                f"There are {active} existing incomplete todo(s) in the todo list. You must resume "
                "and complete these existing tasks before starting any new tasks."
            )
        elif skipped:
            note = f"There are {skipped} skipped todo(s) in the todo list."
        else:
            return BRIEFING
        return (
            f"{BRIEFING}\n\nIMPORTANT: {note} Here is the current todo list:\n\n{listing}\n\n"
            "Continue working on these todos or create new ones as needed."
        )

    async def run_turn(
        self, text: str, attachments: Optional[list[dict[str, Any]]] = None
    ) -> str:
        """Process a user turn, then re-prompt until no todo is outstanding."""
        if not self.state.enabled:
            return await self.orchestrator.process_query(text, attachments)

        preamble = None
        if not self.state.briefed:
            preamble = await self.briefing()
            self.state.briefed = True
            self.state.carried_tasks = ""
        answer = await self.orchestrator.process_query(text, attachments, preamble=preamble)

        while not self.orchestrator.capabilities.is_cancelled():
            listing, items = await self.list_todos()
            pending = [t for t in items if t.outstanding]
            if not pending:
                if self.after_completion is not None and await self.after_completion(listing):
                    await self.clear()
                break
            logger.warning(
                "Agent attempted to exit with %d incomplete todo(s); prompting to continue",
                len(pending),
            )
            answer = await self.orchestrator.process_query(reminder_text(pending, listing))
        return answer
