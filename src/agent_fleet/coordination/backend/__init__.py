"""Collaborators driven by the execution loop: branches, work command, completion marker."""

from agent_fleet.coordination.backend.base import BranchOperations, CompletionSignal, WorkInvoker
from agent_fleet.coordination.backend.git_ops import DryRunBranchOperations, GitBranchOperations
from agent_fleet.coordination.backend.invoker import CommandWorkInvoker, SimulatedWorkInvoker
from agent_fleet.coordination.backend.signals import MarkerFileSignal

__all__ = [
    "BranchOperations",
    "CommandWorkInvoker",
    "CompletionSignal",
    "DryRunBranchOperations",
    "GitBranchOperations",
    "MarkerFileSignal",
    "SimulatedWorkInvoker",
    "WorkInvoker",
]
