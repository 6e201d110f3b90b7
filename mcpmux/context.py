"""
mcpmux - Context-window budget and conversation compaction.

The running token count is an estimate (four characters per token) unless the
active adapter exposes exact counting, in which case the orchestrator
re-synchronizes it after every completed turn.
"""

import logging
from dataclasses import dataclass
from typing import Any, Optional

from .adapters.base import BaseProviderAdapter, estimate_tokens
from .models import Message

logger = logging.getLogger("mcpmux.context")

SUMMARY_PREFIX = "[Previous conversation summary: "
SUMMARY_MAX_TOKENS = 2000


@dataclass
class ContextBudget:
    """Token budget for one conversation."""

    context_window: int = 200000
    current_tokens: int = 0
    threshold: float = 80.0
    recent_messages_to_keep: int = 10
    enabled: bool = True

    @property
    def percentage(self) -> float:
        if self.context_window <= 0:
            return 0.0
        return self.current_tokens / self.context_window * 100


def count_message_tokens(message: Message) -> int:
    """Estimated tokens for one message, including a fixed per-message overhead."""
    content = message.content
    if not content and message.tool_results:
        content = "".join(tr.content for tr in message.tool_results)
    return estimate_tokens(message.role.value) + estimate_tokens(content) + 4


def count_messages_tokens(messages: list[Message]) -> int:
    return sum(count_message_tokens(m) for m in messages)


def summary_message(text: str) -> Message:
    return Message.user(f"{SUMMARY_PREFIX}{text}]")


class ContextManager:
    """Decides when to compact the log and performs the compaction.

    Example:
        manager = ContextManager(ContextBudget(context_window=1000, threshold=80))
        if manager.should_summarize(850):
            messages, tokens = await manager.summarize(messages, 850, adapter, model)
    """

    def __init__(self, budget: Optional[ContextBudget] = None):
        self.budget = budget or ContextBudget()

    def should_summarize(self, current_tokens: Optional[int] = None) -> bool:
        if not self.budget.enabled or self.budget.context_window <= 0:
            return False
        current = self.budget.current_tokens if current_tokens is None else current_tokens
        return current / self.budget.context_window * 100 >= self.budget.threshold

    def usage(self, current_tokens: Optional[int] = None) -> dict[str, Any]:
        """Report context usage with a coarse suggestion for the caller."""
        current = self.budget.current_tokens if current_tokens is None else current_tokens
        limit = self.budget.context_window
        percentage = round(current / limit * 100, 2) if limit > 0 else 0.0
        if percentage < 60:
            suggestion = "continue"
        elif percentage < 80:
            suggestion = "warn"
        else:
            suggestion = "break"
        return {
            "current": current,
            "limit": limit,
            "percentage": percentage,
            "suggestion": suggestion,
        }

    async def summarize(
        self,
        messages: list[Message],
        current_tokens: int,
        adapter: BaseProviderAdapter,
        model: str,
    ) -> tuple[list[Message], int]:
        """Replace everything but the most recent messages with one summary.

        Returns the new log and the new token estimate. When there is nothing
        to compact, or the backend fails, the inputs are returned unchanged.
        """
        keep = self.budget.recent_messages_to_keep
        if len(messages) <= keep:
            return messages, current_tokens

        split = len(messages) - keep
        # Never start the kept tail on a tool message whose call was compacted away.
        while split < len(messages) and messages[split].tool_results:
            split += 1
        to_compact, to_keep = messages[:split], messages[split:]

        try:
            text = await adapter.summarize(to_compact, model, SUMMARY_MAX_TOKENS)
        except Exception as exc:
            logger.warning("Summarization failed, continuing without compaction: %s", exc)
            return messages, current_tokens

        summary = summary_message(text)
        new_tokens = current_tokens - count_messages_tokens(to_compact) + count_message_tokens(summary)
        new_tokens = max(new_tokens, count_message_tokens(summary))
        logger.info(
            "Compacted %d messages into a summary (%d -> %d tokens)",
            len(to_compact),
            current_tokens,
            new_tokens,
        )
        self.budget.current_tokens = new_tokens
        return [summary] + to_keep, new_tokens
