"""Interfaces for the execution loop's external collaborators."""

from __future__ import annotations

from typing import Protocol


class BranchOperations(Protocol):
    """Version-control side of one work item."""

    def create_branch(self, name: str) -> None:
        """Create (or reset) and check out the work branch."""

    def push(self, name: str) -> None:
        """Publish the work branch."""


class WorkInvoker(Protocol):
    """Starts the opaque work command; completion is reported out of band."""

    def invoke(self, *, agent_id: int, group: int, item: int, branch_name: str) -> None:
        """Start work and return immediately."""

    def cancel(self, agent_id: int) -> None:
        """Terminate the agent's in-flight work, if any."""


class CompletionSignal(Protocol):
    """Out-of-band "work finished" indicator, one per agent."""

    def is_signalled(self, agent_id: int) -> bool: ...

    def consume(self, agent_id: int) -> bool:
        """Acknowledge the signal; ``True`` at most once per signal."""

    def discard(self, agent_id: int) -> None:
        """Remove a stale signal left by an earlier run."""
