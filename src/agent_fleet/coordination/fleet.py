"""Explicit wiring of stores, collaborators and controllers for one process."""

from __future__ import annotations

import contextlib
import logging
from collections.abc import Iterator
from dataclasses import dataclass
from datetime import timedelta

from agent_fleet.config import Settings
from agent_fleet.coordination.backend import (
    BranchOperations,
    CommandWorkInvoker,
    CompletionSignal,
    DryRunBranchOperations,
    GitBranchOperations,
    MarkerFileSignal,
    SimulatedWorkInvoker,
    WorkInvoker,
)
from agent_fleet.coordination.backlog import BacklogSource, HttpBacklog, JsonFileBacklog
from agent_fleet.coordination.claims import ClaimStore
from agent_fleet.coordination.executor import AgentExecutor
from agent_fleet.coordination.lifecycle import LifecycleManager
from agent_fleet.coordination.overrides import OverrideController
from agent_fleet.coordination.sessions import SessionRepository

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Fleet:
    settings: Settings
    claims: ClaimStore
    sessions: SessionRepository
    backlog: BacklogSource
    executor: AgentExecutor
    lifecycle: LifecycleManager
    overrides: OverrideController


def build_backlog(settings: Settings) -> BacklogSource:
    if settings.backlog.url is not None:
        return HttpBacklog(
            settings.backlog.url,
            token=settings.backlog.token,
            timeout_seconds=settings.backlog.timeout_seconds,
        )
    return JsonFileBacklog(
        settings.backlog_file,
        lock_timeout_seconds=settings.claims.lock_timeout_seconds,
    )


def build_branches(settings: Settings) -> BranchOperations:
    if settings.execution.git_repo is None:
        return DryRunBranchOperations()
    return GitBranchOperations(
        settings.execution.git_repo,
        remote=settings.execution.git_remote,
        push_enabled=settings.execution.git_push,
    )


def build_invoker(settings: Settings) -> WorkInvoker:
    if not settings.execution.work_command_template:
        logger.warning("No work command configured, using simulated work")
        return SimulatedWorkInvoker(settings.workspace)
    return CommandWorkInvoker(
        settings.execution.work_command_template,
        workspace=settings.workspace,
    )


@contextlib.contextmanager
def open_fleet(
    settings: Settings,
    *,
    backlog: BacklogSource | None = None,
    branches: BranchOperations | None = None,
    invoker: WorkInvoker | None = None,
    signal: CompletionSignal | None = None,
) -> Iterator[Fleet]:
    """Build every component for ``settings`` and dispose of them on exit."""

    settings.workspace.mkdir(parents=True, exist_ok=True)
    sessions = SessionRepository(
        settings.db_path,
        busy_timeout_ms=settings.sqlite_busy_timeout_ms,
    )
    owned_backlog = backlog is None
    resolved_backlog = backlog if backlog is not None else build_backlog(settings)
    try:
        sessions.init_schema()
        claims = ClaimStore(
            settings.claims_path,
            lease_ttl=timedelta(seconds=settings.claims.lease_ttl_seconds),
            retry_attempts=settings.claims.retry_attempts,
            retry_base_seconds=settings.claims.retry_base_seconds,
            lock_timeout_seconds=settings.claims.lock_timeout_seconds,
        )
        executor = AgentExecutor(
            claims=claims,
            sessions=sessions,
            backlog=resolved_backlog,
            branches=branches if branches is not None else build_branches(settings),
            invoker=invoker if invoker is not None else build_invoker(settings),
            signal=signal if signal is not None else MarkerFileSignal(settings.workspace),
            group=settings.loop.group,
            tick_interval_seconds=settings.loop.tick_interval_seconds,
            completion_poll_seconds=settings.loop.completion_poll_seconds,
            execution_timeout_seconds=settings.loop.execution_timeout_seconds,
            working_deadline_seconds=settings.loop.working_deadline_seconds,
            heartbeat_stale_seconds=settings.lifecycle.heartbeat_stale_seconds,
        )
        lifecycle = LifecycleManager(
            sessions=sessions,
            executor=executor,
            heartbeat_stale_seconds=settings.lifecycle.heartbeat_stale_seconds,
            stop_grace_seconds=settings.lifecycle.stop_grace_seconds,
            stop_all_timeout_seconds=settings.lifecycle.stop_all_timeout_seconds,
        )
        overrides = OverrideController(
            claims=claims,
            sessions=sessions,
            executor=executor,
            lifecycle=lifecycle,
            emergency_stop_timeout_seconds=settings.lifecycle.emergency_stop_timeout_seconds,
        )
        yield Fleet(
            settings=settings,
            claims=claims,
            sessions=sessions,
            backlog=resolved_backlog,
            executor=executor,
            lifecycle=lifecycle,
            overrides=overrides,
        )
    finally:
        if owned_backlog and isinstance(resolved_backlog, HttpBacklog):
            resolved_backlog.close()
        sessions.close()
