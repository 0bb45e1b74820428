"""Work command invokers."""

from __future__ import annotations

import logging
import os
import shlex
import subprocess
import threading
from pathlib import Path

from agent_fleet.coordination.backend.signals import MarkerFileSignal
from agent_fleet.coordination.errors import WorkInvocationError

logger = logging.getLogger(__name__)


class CommandWorkInvoker:
    """Spawn a command template per item and return without waiting.

    Placeholders: ``{agent_id}``, ``{group}``, ``{item}``, ``{branch}``,
    ``{marker_file}``, ``{workspace}``. The command must create the marker file
    when it is done. Output goes to ``{workspace}/logs/agent-{id}.log``.
    """

    def __init__(self, command_template: str, *, workspace: Path) -> None:
        if not command_template.strip():
            raise ValueError("Work command template is empty.")
        self.command_template = command_template
        self.workspace = workspace
        self._signal = MarkerFileSignal(workspace)
        self._processes: dict[int, subprocess.Popen[bytes]] = {}
        self._lock = threading.Lock()

    def render(self, *, agent_id: int, group: int, item: int, branch_name: str) -> list[str]:
        try:
            rendered = self.command_template.strip().format(
                agent_id=agent_id,
                group=group,
                item=item,
                branch=shlex.quote(branch_name),
                marker_file=shlex.quote(str(self._signal.marker_path(agent_id))),
                workspace=shlex.quote(str(self.workspace)),
            )
        except (KeyError, IndexError) as error:
            raise WorkInvocationError(
                f"Unsupported command template placeholder: {error}",
            ) from error
        argv = shlex.split(rendered)
        if not argv:
            raise WorkInvocationError("Work command template rendered empty command.")
        return argv

    def invoke(self, *, agent_id: int, group: int, item: int, branch_name: str) -> None:
        argv = self.render(agent_id=agent_id, group=group, item=item, branch_name=branch_name)
        log_path = self.workspace / "logs" / f"agent-{agent_id}.log"
        log_path.parent.mkdir(parents=True, exist_ok=True)

        env = os.environ.copy()
        env["AGENT_FLEET_AGENT_ID"] = str(agent_id)
        env["AGENT_FLEET_ITEM_GROUP"] = str(group)
        env["AGENT_FLEET_ITEM"] = str(item)
        env["AGENT_FLEET_BRANCH"] = branch_name
        env["AGENT_FLEET_MARKER_FILE"] = str(self._signal.marker_path(agent_id))

        try:
            with log_path.open("ab") as log_handle:
                process = subprocess.Popen(  # noqa: S603
                    argv,
                    cwd=self.workspace,
                    env=env,
                    stdin=subprocess.DEVNULL,
                    stdout=log_handle,
                    stderr=subprocess.STDOUT,
                    start_new_session=True,
                )
        except FileNotFoundError as error:
            raise WorkInvocationError(f"Work command not found: {argv[0]}") from error
        except OSError as error:
            raise WorkInvocationError(f"Work command failed to start: {error}") from error

        with self._lock:
            previous = self._processes.pop(agent_id, None)
            self._processes[agent_id] = process
        if previous is not None and previous.poll() is None:
            logger.warning("Agent %s started new work while pid %s still runs", agent_id, previous.pid)
        logger.info(
            "Started work command for agent %s item %s-%s (pid %s)",
            agent_id,
            group,
            item,
            process.pid,
        )

    def cancel(self, agent_id: int) -> None:
        with self._lock:
            process = self._processes.pop(agent_id, None)
        if process is None or process.poll() is not None:
            return
        logger.warning("Terminating work command of agent %s (pid %s)", agent_id, process.pid)
        process.terminate()
        try:
            process.wait(timeout=5)
        except subprocess.TimeoutExpired:
            process.kill()
            process.wait()


class SimulatedWorkInvoker:
    """Write the completion marker at once; used for dry runs and tests."""

    def __init__(self, workspace: Path, *, body: str = "Simulated work completed.\n") -> None:
        self._signal = MarkerFileSignal(workspace)
        self.body = body
        self.invocations: list[tuple[int, int, int, str]] = []

    def invoke(self, *, agent_id: int, group: int, item: int, branch_name: str) -> None:
        self.invocations.append((agent_id, group, item, branch_name))
        path = self._signal.marker_path(agent_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(self.body, encoding="utf-8")
        logger.info("Simulated work for agent %s item %s-%s", agent_id, group, item)

    def cancel(self, agent_id: int) -> None:
        logger.debug("Nothing to cancel for simulated agent %s", agent_id)
