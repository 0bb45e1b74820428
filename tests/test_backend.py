from __future__ import annotations

import shutil
import subprocess
import sys
import time
from pathlib import Path

import allure
import pytest

from agent_fleet.coordination.backend import (
    CommandWorkInvoker,
    DryRunBranchOperations,
    GitBranchOperations,
    MarkerFileSignal,
    SimulatedWorkInvoker,
)
from agent_fleet.coordination.errors import BranchOperationError, WorkInvocationError
from tests.support import GROUP

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Execution Backends"),
]


def _wait_for(path: Path, timeout_seconds: float = 10.0) -> bool:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        if path.exists():
            return True
        time.sleep(0.05)
    return False


def test_marker_signal_is_consumed_once(workspace: Path) -> None:
    signal = MarkerFileSignal(workspace)
    assert signal.marker_path(3).name == "agent-3.response.md"
    assert not signal.is_signalled(3)
    assert signal.consume(3) is False

    signal.marker_path(3).write_text("done", encoding="utf-8")

    assert signal.is_signalled(3)
    assert signal.consume(3) is True
    assert signal.consume(3) is False
    assert not signal.is_signalled(3)


def test_marker_signal_discard_removes_stale_marker(workspace: Path) -> None:
    signal = MarkerFileSignal(workspace)
    signal.marker_path(1).write_text("old", encoding="utf-8")

    signal.discard(1)
    signal.discard(1)

    assert not signal.is_signalled(1)


def test_simulated_invoker_signals_immediately(workspace: Path) -> None:
    invoker = SimulatedWorkInvoker(workspace)

    invoker.invoke(agent_id=2, group=GROUP, item=79, branch_name="agent-2/item-79")

    assert invoker.invocations == [(2, GROUP, 79, "agent-2/item-79")]
    assert MarkerFileSignal(workspace).is_signalled(2)
    invoker.cancel(2)


def test_command_invoker_renders_placeholders(workspace: Path) -> None:
    invoker = CommandWorkInvoker(
        "worker --item {group}-{item} --branch {branch} --done {marker_file} --agent {agent_id}",
        workspace=workspace,
    )

    argv = invoker.render(agent_id=1, group=GROUP, item=79, branch_name="agent-1/item-79")

    assert argv == [
        "worker",
        "--item",
        "5-79",
        "--branch",
        "agent-1/item-79",
        "--done",
        str(workspace / "agent-1.response.md"),
        "--agent",
        "1",
    ]


def test_command_invoker_rejects_unknown_placeholder(workspace: Path) -> None:
    invoker = CommandWorkInvoker("worker {issue}", workspace=workspace)

    with pytest.raises(WorkInvocationError, match="placeholder"):
        invoker.render(agent_id=1, group=GROUP, item=79, branch_name="b")


def test_command_invoker_rejects_empty_template(workspace: Path) -> None:
    with pytest.raises(ValueError, match="empty"):
        CommandWorkInvoker("   ", workspace=workspace)


def test_command_invoker_runs_in_background_and_logs(workspace: Path) -> None:
    script = "import sys, pathlib; print('working on', sys.argv[1]); pathlib.Path(sys.argv[2]).touch()"
    template = f"{sys.executable} -c {script!r} {{item}} {{marker_file}}"
    invoker = CommandWorkInvoker(template, workspace=workspace)

    invoker.invoke(agent_id=1, group=GROUP, item=79, branch_name="agent-1/item-79")

    assert _wait_for(MarkerFileSignal(workspace).marker_path(1))
    log_path = workspace / "logs" / "agent-1.log"
    assert _wait_for(log_path)
    deadline = time.monotonic() + 5
    while "working on 79" not in log_path.read_text(encoding="utf-8"):
        assert time.monotonic() < deadline
        time.sleep(0.05)


def test_command_invoker_cancel_terminates_process(workspace: Path) -> None:
    template = f"{sys.executable} -c 'import time; time.sleep(60)'"
    invoker = CommandWorkInvoker(template, workspace=workspace)
    invoker.invoke(agent_id=4, group=GROUP, item=80, branch_name="agent-4/item-80")
    process = invoker._processes[4]

    invoker.cancel(4)

    assert process.poll() is not None
    invoker.cancel(4)


def test_command_invoker_missing_executable(workspace: Path) -> None:
    invoker = CommandWorkInvoker("definitely-not-a-real-binary-xyz", workspace=workspace)

    with pytest.raises(WorkInvocationError, match="not found"):
        invoker.invoke(agent_id=1, group=GROUP, item=79, branch_name="b")


def test_dry_run_branch_operations_record_calls() -> None:
    branches = DryRunBranchOperations()

    branches.create_branch("agent-1/item-79")
    branches.push("agent-1/item-79")

    assert branches.created == ["agent-1/item-79"]
    assert branches.pushed == ["agent-1/item-79"]


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_git_branch_operations_create_branch(tmp_path: Path) -> None:
    repo = tmp_path / "repo"
    repo.mkdir()
    identity = ["-c", "user.email=fleet@example.com", "-c", "user.name=fleet"]
    for args in (
        ["init", "-q"],
        [*identity, "commit", "-q", "--allow-empty", "-m", "init"],
    ):
        subprocess.run(["git", *args], cwd=repo, check=True, capture_output=True)
    branches = GitBranchOperations(repo, push_enabled=False)

    branches.create_branch("agent-1/item-79")
    branches.push("agent-1/item-79")

    head = subprocess.run(
        ["git", "rev-parse", "--abbrev-ref", "HEAD"],
        cwd=repo,
        check=True,
        capture_output=True,
        text=True,
    )
    assert head.stdout.strip() == "agent-1/item-79"


@pytest.mark.skipif(shutil.which("git") is None, reason="git is not installed")
def test_git_branch_operations_failure(tmp_path: Path) -> None:
    branches = GitBranchOperations(tmp_path)

    with pytest.raises(BranchOperationError, match="exited with"):
        branches.create_branch("agent-1/item-79")
