"""Tests for canonical models and conversation repair helpers."""

from mcpmux.models import (
    CANCELLED_RESULT,
    Message,
    Pairing,
    Role,
    TaskEnforcementState,
    TokenUsage,
    ToolCall,
    ToolResult,
    drop_orphan_results,
    fill_missing_results,
    namespaced,
    split_namespaced,
)
from mcpmux.streaming import BlockType, DeltaType, StreamEvent, StreamEventType


def _assistant_with_calls(*ids):
    return Message.assistant("", tool_calls=[ToolCall(i, f"alpha__t{i}", {}) for i in ids])


def _tool_message(*ids):
    return Message(role=Role.TOOL, tool_results=[ToolResult(i, f"alpha__t{i}", "ok") for i in ids])


class TestNamespacing:
    def test_round_trip(self):
        assert namespaced("files", "read") == "files__read"
        assert split_namespaced("files__read") == ("files", "read")

    def test_only_first_separator_splits(self):
        assert split_namespaced("files__read__all") == ("files", "read__all")

    def test_plain_name(self):
        assert split_namespaced("read") == (None, "read")


class TestMessage:
    def test_call_and_result_ids(self):
        assert _assistant_with_calls("a", "b").call_ids == ["a", "b"]
        assert _tool_message("a").result_ids == ["a"]

    def test_images_and_documents(self):
        message = Message.user(
            "look",
            [
                {"type": "image", "source": {"data": "x"}},
                {"type": "document", "source": {"data": "y"}, "title": "a.pdf"},
            ],
        )
        assert len(message.images) == 1
        assert message.documents[0]["title"] == "a.pdf"

    def test_to_dict(self):
        data = _assistant_with_calls("a").to_dict()
        assert data["role"] == "assistant"
        assert data["tool_calls"] == [{"id": "a", "name": "alpha__ta", "arguments": {}}]


class TestDropOrphanResults:
    def test_keeps_paired_results(self):
        messages = [Message.user("hi"), _assistant_with_calls("a"), _tool_message("a")]
        assert drop_orphan_results(messages) == messages

    def test_drops_unissued_ids(self):
        messages = [Message.user("hi"), _tool_message("ghost"), _assistant_with_calls("a"), _tool_message("a", "b")]

        cleaned = drop_orphan_results(messages)

        assert [m.role for m in cleaned] == [Role.USER, Role.ASSISTANT, Role.TOOL]
        assert cleaned[-1].result_ids == ["a"]

    def test_result_before_its_call_is_orphaned(self):
        messages = [_tool_message("a"), _assistant_with_calls("a")]
        assert [m.role for m in drop_orphan_results(messages)] == [Role.ASSISTANT]


class TestFillMissingResults:
    def test_by_id_appends_to_existing_tool_message(self):
        messages = [_assistant_with_calls("a", "b"), _tool_message("a")]

        repaired = fill_missing_results(messages)

        assert len(repaired) == 2
        assert repaired[1].result_ids == ["a", "b"]
        assert repaired[1].tool_results[1].content == CANCELLED_RESULT
        assert repaired[1].tool_results[1].cancelled is True

    def test_by_id_inserts_one_message(self):
        messages = [_assistant_with_calls("a", "b"), Message.user("next")]

        repaired = fill_missing_results(messages)

        assert [m.role for m in repaired] == [Role.ASSISTANT, Role.TOOL, Role.USER]
        assert repaired[1].result_ids == ["a", "b"]

    def test_positional_inserts_one_message_per_result(self):
        messages = [_assistant_with_calls("a", "b")]

        repaired = fill_missing_results(messages, Pairing.POSITIONAL)

        assert [m.result_ids for m in repaired[1:]] == [["a"], ["b"]]

    def test_complete_log_unchanged(self):
        messages = [_assistant_with_calls("a"), _tool_message("a")]
        assert fill_missing_results(messages) == messages


class TestTokenUsage:
    def test_total_and_dict(self):
        usage = TokenUsage(100, 20, cache_read_tokens=50)
        assert usage.total == 120
        assert usage.to_dict() == {"input_tokens": 100, "output_tokens": 20, "cache_read_tokens": 50}
        assert TokenUsage.from_dict(usage.to_dict()) == usage


class TestTaskEnforcementState:
    def test_reset(self):
        state = TaskEnforcementState(enabled=True, briefed=True, carried_tasks="1. Old")
        state.reset()
        assert state == TaskEnforcementState()


class TestStreamEvent:
    def test_deltas(self):
        text = StreamEvent.text_delta("Hi", "b1")
        assert text.type == StreamEventType.CONTENT_BLOCK_DELTA
        assert text.data["delta_type"] == DeltaType.TEXT
        assert text.block_id == "b1"
        assert StreamEvent.thinking_delta("hmm").data["delta_type"] == DeltaType.THINKING

    def test_block_start_with_name(self):
        event = StreamEvent.block_start(BlockType.TOOL_USE, "t1", name="alpha__search")
        assert event.data == {"block_type": BlockType.TOOL_USE, "block_id": "t1", "name": "alpha__search"}

    def test_usage_event(self):
        event = StreamEvent.token_usage(TokenUsage(3, 4))
        assert event.usage == TokenUsage(3, 4)

    def test_message_stop_final_message_optional(self):
        assert "final_message" not in StreamEvent.message_stop("end_turn").data
        stop = StreamEvent.message_stop("end_turn", {"content": "done"})
        assert stop.data["final_message"] == {"content": "done"}
