"""Exception taxonomy for claims, execution and operator controls."""

from __future__ import annotations

from agent_fleet.coordination.models import FailureClass


class ClaimStoreError(RuntimeError):
    """Claim store write failed after exhausting retries."""


class ExecutionError(RuntimeError):
    """Post-claim execution failure; always releases the lease."""

    failure_class = FailureClass.UNEXPECTED


class ExecutionTimeoutError(ExecutionError):
    failure_class = FailureClass.TIMEOUT


class ExecutionCancelledError(ExecutionError):
    """In-flight execution interrupted by stop or reassignment."""

    failure_class = FailureClass.CANCELLED


class BranchOperationError(ExecutionError):
    failure_class = FailureClass.BRANCH


class WorkInvocationError(ExecutionError):
    failure_class = FailureClass.INVOCATION


class BacklogError(ExecutionError):
    """Backlog query or status update failed."""

    failure_class = FailureClass.BACKLOG


class AgentLifecycleError(RuntimeError):
    """Operator lifecycle request is invalid for the agent's current state."""


class OverrideError(RuntimeError):
    """Override operation cannot be performed."""


def classify_failure(error: BaseException) -> FailureClass:
    if isinstance(error, ExecutionError):
        return error.failure_class
    if isinstance(error, ClaimStoreError):
        return FailureClass.CLAIM_STORE
    return FailureClass.UNEXPECTED
