"""Shared test fixtures."""

from __future__ import annotations

import os
from collections.abc import Iterator
from pathlib import Path

import pytest

from agent_fleet.config import LifecycleSettings, LoopSettings, Settings
from agent_fleet.coordination.backend import DryRunBranchOperations, MarkerFileSignal
from agent_fleet.coordination.backlog import JsonFileBacklog
from agent_fleet.coordination.claims import ClaimStore
from agent_fleet.coordination.executor import AgentExecutor
from agent_fleet.coordination.lifecycle import LifecycleManager
from agent_fleet.coordination.overrides import OverrideController
from agent_fleet.coordination.sessions import SessionRepository
from tests.support import GROUP, FakeClock, ManualInvoker, write_backlog


@pytest.fixture(autouse=True)
def _clean_fleet_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in list(os.environ):
        if name.startswith("AGENT_FLEET_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    root = tmp_path / "workspace"
    root.mkdir()
    return root


@pytest.fixture()
def claim_store(workspace: Path) -> ClaimStore:
    return ClaimStore(workspace / "claims.json", sleep=lambda _: None)


@pytest.fixture()
def sessions(workspace: Path) -> Iterator[SessionRepository]:
    repository = SessionRepository(workspace / "fleet.db")
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def backlog(workspace: Path) -> JsonFileBacklog:
    path = workspace / "backlog.json"
    write_backlog(path, GROUP, [(79, "Todo"), (80, "backlog"), (81, "In Progress"), (82, "done")])
    return JsonFileBacklog(path)


@pytest.fixture()
def invoker(workspace: Path) -> ManualInvoker:
    return ManualInvoker(workspace)


@pytest.fixture()
def branches() -> DryRunBranchOperations:
    return DryRunBranchOperations()


@pytest.fixture()
def executor(
    workspace: Path,
    claim_store: ClaimStore,
    sessions: SessionRepository,
    backlog: JsonFileBacklog,
    branches: DryRunBranchOperations,
    invoker: ManualInvoker,
) -> Iterator[AgentExecutor]:
    agent_executor = AgentExecutor(
        claims=claim_store,
        sessions=sessions,
        backlog=backlog,
        branches=branches,
        invoker=invoker,
        signal=MarkerFileSignal(workspace),
        group=GROUP,
        tick_interval_seconds=0.05,
        completion_poll_seconds=0.02,
        execution_timeout_seconds=30,
    )
    try:
        yield agent_executor
    finally:
        for agent_id in agent_executor.hosted_agents():
            agent_executor.cancel_execution(agent_id)
            agent_executor.stop_loop(agent_id, timeout_seconds=5)


@pytest.fixture()
def lifecycle(sessions: SessionRepository, executor: AgentExecutor) -> LifecycleManager:
    return LifecycleManager(
        sessions=sessions,
        executor=executor,
        stop_grace_seconds=0.5,
        stop_all_timeout_seconds=3.0,
    )


@pytest.fixture()
def overrides(
    claim_store: ClaimStore,
    sessions: SessionRepository,
    executor: AgentExecutor,
    lifecycle: LifecycleManager,
) -> OverrideController:
    return OverrideController(
        claims=claim_store,
        sessions=sessions,
        executor=executor,
        lifecycle=lifecycle,
        emergency_stop_timeout_seconds=3.0,
    )


@pytest.fixture()
def fleet_settings(workspace: Path) -> Settings:
    write_backlog(workspace / "backlog.json", GROUP, [(79, "Todo"), (80, "Backlog")])
    return Settings(
        workspace=workspace,
        db_path=workspace / "fleet.db",
        claims_path=workspace / "claims.json",
        loop=LoopSettings(group=GROUP, tick_interval_seconds=0.05, completion_poll_seconds=0.02),
        lifecycle=LifecycleSettings(
            stop_grace_seconds=0.5,
            stop_all_timeout_seconds=3.0,
            emergency_stop_timeout_seconds=3.0,
        ),
    )
