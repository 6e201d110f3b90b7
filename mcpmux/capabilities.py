"""
mcpmux - Capability interfaces injected into the orchestrator and dispatcher.

Each capability has exactly one method. Callers compose the ones they need
into a :class:`Capabilities` bundle; anything left out falls back to a
permissive default (never cancelled, always approved, never force-stopped).
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable


@runtime_checkable
class Canceller(Protocol):
    """Reports whether the user asked to stop the current turn."""

    def is_cancelled(self) -> bool: ...


@dataclass
class ApprovalDecision:
    """Outcome of a human-approval request."""

    execute: bool = True
    message: str = ""

    @classmethod
    def approve(cls) -> "ApprovalDecision":
        return cls(execute=True)

    @classmethod
    def reject(cls, message: str = "") -> "ApprovalDecision":
        return cls(execute=False, message=message)


@runtime_checkable
class Approver(Protocol):
    """Gates tool execution behind a human decision."""

    async def request_approval(
        self, tool_name: str, arguments: dict[str, Any]
    ) -> ApprovalDecision: ...


@runtime_checkable
class ForceStopper(Protocol):
    """Decides whether a hung tool call should be killed.

    ``elapsed`` counts seconds since cancellation was requested.
    ``completed`` is set the instant the tool finishes on its own, so an
    implementation waiting on user input can abandon the prompt.
    """

    async def should_force_stop(
        self, tool_name: str, elapsed: float, completed: asyncio.Event
    ) -> bool: ...


class CancellationFlag:
    """A simple settable :class:`Canceller`."""

    def __init__(self) -> None:
        self._cancelled = False

    def cancel(self) -> None:
        self._cancelled = True

    def reset(self) -> None:
        self._cancelled = False

    def is_cancelled(self) -> bool:
        return self._cancelled


class _NeverCancelled:
    def is_cancelled(self) -> bool:
        return False


class _AlwaysApprove:
    async def request_approval(
        self, tool_name: str, arguments: dict[str, Any]
    ) -> ApprovalDecision:
        return ApprovalDecision.approve()


class _NeverForceStop:
    async def should_force_stop(
        self, tool_name: str, elapsed: float, completed: asyncio.Event
    ) -> bool:
        return False


@dataclass
class Capabilities:
    """The capability set shared by one orchestrator and its dispatcher."""

    canceller: Canceller = field(default_factory=_NeverCancelled)
    approver: Approver = field(default_factory=_AlwaysApprove)
    force_stopper: ForceStopper = field(default_factory=_NeverForceStop)

    def is_cancelled(self) -> bool:
        return self.canceller.is_cancelled()

    async def request_approval(
        self, tool_name: str, arguments: dict[str, Any]
    ) -> ApprovalDecision:
        return await self.approver.request_approval(tool_name, arguments)
