"""Tests for todo-list task enforcement."""

import json
from unittest.mock import AsyncMock

import pytest
from conftest import FakeSession, ScriptedAdapter, make_registry, search_sessions, specs

from mcpmux.capabilities import Capabilities, CancellationFlag
from mcpmux.config import ClientConfig
from mcpmux.exceptions import ConfigurationError
from mcpmux.hooks import HookManager
from mcpmux.models import PreExistingTasks, Role
from mcpmux.orchestrator import ConversationOrchestrator
from mcpmux.tasks import BRIEFING, TaskEnforcementController, parse_todos


class TodoServer:
    """In-memory stand-in for the todo tool-server."""

    def __init__(self, todos=None):
        self.todos = list(todos or [])
        self.skipped_ids: list = []

    def _create(self, args):
        todo = {"id": str(len(self.todos) + 1), "title": args["title"], "completed": False}
        self.todos.append(todo)
        return f"Created todo {todo['id']}"

    def _complete(self, args):
        for todo in self.todos:
            if todo["id"] == args["id"]:
                todo["completed"] = True
        return "Todo completed"

    def _skip(self, args):
        self.skipped_ids = list(args["ids"])
        for todo in self.todos:
            if todo["id"] in args["ids"]:
                todo["skipped"] = True
        return f"{len(args['ids'])} Todos Skipped"

    def _clear(self, args):
        self.todos = []
        return "Todo list cleared"

    def session(self) -> FakeSession:
        return FakeSession(
            {
                "create-todo": self._create,
                "list-todos": lambda args: json.dumps(self.todos),
                "complete-todo": self._complete,
                "skip-todo": self._skip,
                "clear-todo-list": self._clear,
                "export-todos": lambda args: "exported",
            }
        )


async def _controller(adapter, todo_server=None, **kwargs):
    sessions = search_sessions()
    if todo_server is not None:
        sessions["todo"] = todo_server.session()
    registry, _ = make_registry(sessions)
    orchestrator = ConversationOrchestrator(
        servers=specs(*sessions),
        adapter=adapter,
        config=ClientConfig(),
        registry=registry,
        hooks=HookManager(),
        **kwargs,
    )
    await orchestrator.start()
    return TaskEnforcementController(orchestrator), orchestrator


def _user_texts(orchestrator):
    return [m.content for m in orchestrator.messages if m.role == Role.USER]


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestParseTodos:
    def test_json_list(self):
        items = parse_todos(
            json.dumps(
                [
                    {"id": 1, "title": "Book flights", "completed": True},
                    {"id": 2, "title": "Rent car", "skipped": True},
                    {"id": 3, "title": "Pack bags"},
                ]
            )
        )
        assert [t.id for t in items] == ["1", "2", "3"]
        assert [t.outstanding for t in items] == [False, False, True]

    def test_json_object(self):
        items = parse_todos(json.dumps({"todos": [{"id": "a", "text": "Write tests"}]}))
        assert items[0].text == "Write tests"

    def test_text_listing(self):
        listing = (
            "✓ Book flights\n"
            "ID: 1\n"
            "⁉ Rent car\n"
            "ID: 2\n"
            "3. Pack bags\n"
            "ID: 3\n"
            "Status: not completed\n"
        )
        items = parse_todos(listing)
        assert [t.id for t in items] == ["1", "2", "3"]
        assert items[0].completed is True
        assert items[1].skipped is True
        assert [t.id for t in items if t.outstanding] == ["3"]

    def test_empty(self):
        assert parse_todos("") == []
        assert parse_todos("No todos found.") == []


# ---------------------------------------------------------------------------
# Enabling
# ---------------------------------------------------------------------------


class TestEnable:
    @pytest.mark.asyncio
    async def test_requires_todo_server(self):
        controller, _ = await _controller(ScriptedAdapter())
        with pytest.raises(ConfigurationError, match="Todo server not configured"):
            await controller.enable()

    @pytest.mark.asyncio
    async def test_empty_list(self):
        controller, orchestrator = await _controller(ScriptedAdapter(), TodoServer())

        assert await controller.enable() == PreExistingTasks.LEAVE
        assert controller.enabled is True
        names = {t.name for t in orchestrator.tools}
        assert "todo__create-todo" in names
        assert "todo__export-todos" not in names
        assert "alpha__search" in names

    @pytest.mark.asyncio
    async def test_completed_list_is_cleared_without_asking(self):
        server = TodoServer([{"id": "1", "title": "Old task", "completed": True}])
        decide = AsyncMock()
        controller, _ = await _controller(ScriptedAdapter(), server)

        assert await controller.enable(decide=decide) == PreExistingTasks.CLEAR
        assert server.todos == []
        decide.assert_not_called()

    @pytest.mark.asyncio
    async def test_skip_all(self):
        server = TodoServer(
            [
                {"id": "1", "title": "Old task", "completed": False},
                {"id": "2", "title": "Done task", "completed": True},
            ]
        )
        decide = AsyncMock(return_value=PreExistingTasks.SKIP_ALL)
        controller, _ = await _controller(ScriptedAdapter(), server)

        assert await controller.enable(decide=decide) == PreExistingTasks.SKIP_ALL
        assert "Old task" in decide.call_args.args[0]
        assert server.skipped_ids == ["1"]
        assert await controller.outstanding() == []

    @pytest.mark.asyncio
    async def test_leave_carries_tasks_into_briefing(self):
        server = TodoServer([{"id": "1", "title": "Old task", "completed": False}])
        controller, _ = await _controller(ScriptedAdapter(), server)

        assert await controller.enable() == PreExistingTasks.LEAVE
        briefing = await controller.briefing()
        assert briefing.startswith(BRIEFING)
        assert "There are 1 existing incomplete todo(s)" in briefing
        assert "Old task" in briefing

    @pytest.mark.asyncio
    async def test_disable_restores_tools(self):
        controller, orchestrator = await _controller(ScriptedAdapter(), TodoServer())
        await controller.enable()
        controller.disable()

        assert controller.enabled is False
        assert orchestrator.tool_filter is None
        assert "todo__export-todos" in {t.name for t in orchestrator.tools}


# ---------------------------------------------------------------------------
# Enforced turns
# ---------------------------------------------------------------------------


class TestRunTurn:
    @pytest.mark.asyncio
    async def test_reprompts_until_all_todos_done(self):
        server = TodoServer()
        create = [("todo__create-todo", {"title": t}) for t in ("Flights", "Hotel", "Car")]
        complete = [("todo__complete-todo", {"id": i}) for i in ("1", "2", "3")]
        adapter = ScriptedAdapter(
            [
                {"tools": create},
                {"chunks": ["Created todos"]},
                {"tools": complete},
                {"chunks": ["All done"]},
            ]
        )
        controller, orchestrator = await _controller(adapter, server)
        await controller.enable()

        answer = await controller.run_turn("Plan a trip")

        assert answer == "All done"
        assert adapter.rounds == []
        texts = _user_texts(orchestrator)
        assert texts[0] == BRIEFING
        assert texts[1] == "Plan a trip"
        assert texts[2].startswith("You have 3 incomplete todo(s).")
        assert len(texts) == 3
        assert all(t["completed"] for t in server.todos)

    @pytest.mark.asyncio
    async def test_briefing_sent_only_once(self):
        adapter = ScriptedAdapter([{"chunks": ["one"]}, {"chunks": ["two"]}])
        controller, orchestrator = await _controller(adapter, TodoServer())
        await controller.enable()

        await controller.run_turn("first")
        await controller.run_turn("second")

        assert _user_texts(orchestrator) == [BRIEFING, "first", "second"]

    @pytest.mark.asyncio
    async def test_cancellation_stops_enforcement(self):
        flag = CancellationFlag()
        server = TodoServer()
        adapter = ScriptedAdapter(
            [
                {"tools": [("todo__create-todo", {"title": "Long task"})]},
                {"chunks": ["never"]},
            ]
        )
        controller, orchestrator = await _controller(
            adapter, server, capabilities=Capabilities(canceller=flag)
        )
        await controller.enable()
        original_create = server._create

        def create_then_cancel(args):
            flag.cancel()
            return original_create(args)

        orchestrator.registry.get("todo").session.tools["create-todo"] = create_then_cancel

        await controller.run_turn("Start something long")

        assert adapter.rounds_run == 1
        assert len(server.todos) == 1
        assert not any(t.startswith("You have") for t in _user_texts(orchestrator))

    @pytest.mark.asyncio
    async def test_after_completion_can_clear(self):
        server = TodoServer()
        adapter = ScriptedAdapter(
            [
                {
                    "tools": [
                        ("todo__create-todo", {"title": "Quick task"}),
                        ("todo__complete-todo", {"id": "1"}),
                    ]
                },
                {"chunks": ["done"]},
            ]
        )
        after_completion = AsyncMock(return_value=True)
        controller, _ = await _controller(adapter, server)
        await controller.enable(after_completion=after_completion)

        await controller.run_turn("Do it")

        after_completion.assert_awaited_once()
        assert server.todos == []

    @pytest.mark.asyncio
    async def test_disabled_controller_is_a_plain_query(self):
        adapter = ScriptedAdapter([{"chunks": ["plain"]}])
        controller, orchestrator = await _controller(adapter, TodoServer())

        assert await controller.run_turn("hello") == "plain"
        assert _user_texts(orchestrator) == ["hello"]
