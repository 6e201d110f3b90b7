"""Tests for the context budget and conversation compaction."""

import pytest
from conftest import ScriptedAdapter

from mcpmux.context import (
    ContextBudget,
    ContextManager,
    count_message_tokens,
    count_messages_tokens,
)
from mcpmux.exceptions import ProviderError
from mcpmux.models import Message, Role, ToolCall, ToolResult


def _conversation(count: int) -> list[Message]:
    messages = []
    for i in range(count):
        if i % 2 == 0:
            messages.append(Message.user(f"question number {i} about the quarterly report"))
        else:
            messages.append(Message.assistant(f"answer number {i} with a few details attached"))
    return messages


class TestTokenCounting:
    def test_message_estimate(self):
        # "user" -> 1, 16 chars -> 4, plus overhead
        assert count_message_tokens(Message.user("a" * 16)) == 1 + 4 + 4

    def test_tool_message_counts_result_text(self):
        message = Message(role=Role.TOOL, tool_results=[ToolResult("c1", "fs__read", "x" * 40)])
        assert count_message_tokens(message) == 1 + 10 + 4

    def test_sum(self):
        messages = _conversation(4)
        assert count_messages_tokens(messages) == sum(count_message_tokens(m) for m in messages)


class TestShouldSummarize:
    def test_threshold(self):
        manager = ContextManager(ContextBudget(context_window=1000, threshold=80))
        assert manager.should_summarize(799) is False
        assert manager.should_summarize(800) is True

    def test_monotonic(self):
        manager = ContextManager(ContextBudget(context_window=1000, threshold=80))
        seen_true = False
        for tokens in range(0, 1200, 7):
            result = manager.should_summarize(tokens)
            assert not (seen_true and not result)
            seen_true = seen_true or result

    def test_disabled(self):
        manager = ContextManager(ContextBudget(context_window=1000, enabled=False))
        assert manager.should_summarize(999) is False

    def test_usage_suggestions(self):
        manager = ContextManager(ContextBudget(context_window=1000))
        assert manager.usage(100)["suggestion"] == "continue"
        assert manager.usage(650)["suggestion"] == "warn"
        usage = manager.usage(812)
        assert usage == {"current": 812, "limit": 1000, "percentage": 81.2, "suggestion": "break"}


class TestSummarize:
    @pytest.mark.asyncio
    async def test_compacts_all_but_recent_messages(self):
        manager = ContextManager(
            ContextBudget(context_window=1000, threshold=80, recent_messages_to_keep=2)
        )
        adapter = ScriptedAdapter(summary="The user reviewed the quarterly report.")
        messages = _conversation(10)

        assert manager.should_summarize(850)
        compacted, tokens = await manager.summarize(messages, 850, adapter, "scripted-model")

        assert len(compacted) == 3
        assert compacted[0].role == Role.USER
        assert compacted[0].content == (
            "[Previous conversation summary: The user reviewed the quarterly report.]"
        )
        assert compacted[1:] == messages[-2:]
        assert tokens < 850
        assert manager.budget.current_tokens == tokens
        assert len(adapter.summarized[0]) == 9
        assert "Summarize the above conversation" in adapter.summarized[0][-1].content

    @pytest.mark.asyncio
    async def test_compaction_is_repeatable(self):
        manager = ContextManager(ContextBudget(context_window=1000, recent_messages_to_keep=2))
        adapter = ScriptedAdapter()

        once, tokens = await manager.summarize(_conversation(10), 850, adapter, "m")
        twice, _ = await manager.summarize(once, tokens, adapter, "m")

        assert len(once) == 3
        assert len(twice) == 3
        assert twice[-2:] == once[-2:]

    @pytest.mark.asyncio
    async def test_nothing_to_compact(self):
        manager = ContextManager(ContextBudget(recent_messages_to_keep=10))
        adapter = ScriptedAdapter()
        messages = _conversation(6)

        result, tokens = await manager.summarize(messages, 500, adapter, "m")

        assert result is messages
        assert tokens == 500
        assert adapter.summarized == []

    @pytest.mark.asyncio
    async def test_kept_tail_never_starts_with_tool_results(self):
        manager = ContextManager(ContextBudget(recent_messages_to_keep=2))
        messages = [
            Message.user("list files"),
            Message.assistant("", tool_calls=[ToolCall("c1", "fs__list", {})]),
            Message(role=Role.TOOL, tool_results=[ToolResult("c1", "fs__list", "a.txt")]),
            Message.assistant("There is one file."),
        ]

        compacted, _ = await manager.summarize(messages, 100, ScriptedAdapter(), "m")

        assert [m.role for m in compacted] == [Role.USER, Role.ASSISTANT]
        assert compacted[1].content == "There is one file."

    @pytest.mark.asyncio
    async def test_backend_failure_leaves_log_unchanged(self):
        manager = ContextManager(ContextBudget(recent_messages_to_keep=2))
        adapter = ScriptedAdapter(summary=ProviderError("overloaded"))
        messages = _conversation(8)

        result, tokens = await manager.summarize(messages, 700, adapter, "m")

        assert result is messages
        assert tokens == 700
