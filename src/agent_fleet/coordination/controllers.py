"""Controllers for fleet CLI commands."""

from __future__ import annotations

import logging
import signal
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path

from agent_fleet.config import Settings
from agent_fleet.coordination.backlog import filter_eligible
from agent_fleet.coordination.errors import AgentLifecycleError
from agent_fleet.coordination.fleet import Fleet, open_fleet
from agent_fleet.coordination.models import AgentSessionView, ExecutionResult

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RunAgentsCommand:
    """CLI input for hosting agent loops in the foreground."""

    workspace: Path | None
    agent_ids: tuple[int, ...]
    max_seconds: float | None = None


@dataclass(slots=True)
class AgentCommand:
    """CLI input addressing one agent."""

    workspace: Path | None
    agent_id: int


@dataclass(slots=True)
class ReassignCommand:
    workspace: Path | None
    agent_id: int
    new_agent_id: int | None


@dataclass(slots=True)
class EmergencyStopCommand:
    workspace: Path | None
    skip_confirmation: bool
    confirm: Callable[[int], bool] | None = None


@dataclass(slots=True)
class AgentEventsCommand:
    workspace: Path | None
    agent_id: int
    limit: int


@dataclass(slots=True)
class FleetCommand:
    """CLI input for fleet-wide queries and actions."""

    workspace: Path | None


@dataclass(slots=True)
class AvailableItemsCommand:
    workspace: Path | None
    group: int | None


@dataclass(slots=True)
class ReleaseClaimCommand:
    workspace: Path | None
    group: int
    item: int


class FleetCliController:
    """Coordinates agent, override and claim CLI operations."""

    def run_agents(
        self,
        command: RunAgentsCommand,
        *,
        stop_requested: threading.Event | None = None,
    ) -> list[str]:
        stop = stop_requested or threading.Event()
        lines: list[str] = []
        with _fleet(command.workspace) as fleet:
            started: list[int] = []
            for agent_id in command.agent_ids:
                try:
                    fleet.lifecycle.start(agent_id)
                except AgentLifecycleError as error:
                    lines.append(f"Skipped agent {agent_id}: {error}")
                    continue
                started.append(agent_id)
            if not started:
                lines.append("No agents started.")
                return lines

            logger.info("Hosting agents %s", started)
            deadline = (
                time.monotonic() + command.max_seconds if command.max_seconds is not None else None
            )
            with _signal_handlers(stop):
                while not stop.is_set():
                    if deadline is not None and time.monotonic() >= deadline:
                        break
                    remaining = 1.0 if deadline is None else max(0.0, deadline - time.monotonic())
                    stop.wait(timeout=min(1.0, remaining))

            outcome = fleet.lifecycle.stop_all(reason="shutdown")
            sessions = [fleet.sessions.get(agent_id) for agent_id in started]
        lines.append(f"Stopped agents: {_format_ids(outcome.stopped)}")
        if outcome.unfinished:
            lines.append(f"Did not finish in time: {_format_ids(outcome.unfinished)}")
        lines.extend(_session_line(session) for session in sessions if session is not None)
        return lines

    def tick_agent(self, command: AgentCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            fleet.sessions.ensure(command.agent_id)
            result = fleet.executor.tick(command.agent_id)
            session = fleet.sessions.get(command.agent_id)
        lines = [_result_line(command.agent_id, result)]
        if session is not None:
            lines.append(_session_line(session))
        return lines

    def pause_agent(self, command: AgentCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            changed = fleet.overrides.pause_agent(command.agent_id)
        return [_change_line(command.agent_id, "paused", changed)]

    def resume_agent(self, command: AgentCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            changed = fleet.overrides.resume_agent(command.agent_id)
        return [_change_line(command.agent_id, "resumed", changed)]

    def stop_agent(self, command: AgentCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            changed = fleet.overrides.stop_agent(command.agent_id)
        return [_change_line(command.agent_id, "stopped", changed)]

    def pause_all(self, command: FleetCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            paused = fleet.overrides.pause_all()
        return [f"Paused agents: {_format_ids(paused)}"]

    def resume_all(self, command: FleetCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            resumed = fleet.overrides.resume_all()
        return [f"Resumed agents: {_format_ids(resumed)}"]

    def reassign(self, command: ReassignCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            result = fleet.overrides.reassign_project(command.agent_id, command.new_agent_id)
        lines = [
            f"Agent {result.agent_id} released item {result.group}-{result.item} "
            f"(lease released: {'yes' if result.released else 'no'})",
        ]
        if result.new_agent_id is not None:
            if result.reclaimed:
                lines.append(f"Item handed to agent {result.new_agent_id}")
            else:
                lines.append(
                    f"Could not hand item to agent {result.new_agent_id}; "
                    "it returned to the backlog",
                )
        return lines

    def emergency_stop(self, command: EmergencyStopCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            result = fleet.overrides.emergency_stop_all(
                confirm=command.confirm,
                skip_confirmation=command.skip_confirmation,
            )
        if result.cancelled:
            return ["Emergency stop cancelled."]
        lines = [f"Emergency stopped agents: {_format_ids(result.stopped)}"]
        if result.unfinished:
            lines.append(f"Did not finish in time: {_format_ids(result.unfinished)}")
        return lines

    def agent_status(self, command: FleetCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            sessions = fleet.sessions.list_sessions()
            running = set(fleet.lifecycle.running_agents())
            summary = fleet.overrides.status_summary()
        lines = [
            "Agents: "
            f"total={summary.total} running={summary.running} idle={summary.idle} "
            f"working={summary.working} paused={summary.paused} stopped={summary.stopped}",
        ]
        lines.extend(
            f"{_session_line(session)} running={'yes' if session.agent_id in running else 'no'}"
            for session in sessions
        )
        return lines

    def agent_events(self, command: AgentEventsCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            events = fleet.sessions.list_events(command.agent_id, limit=command.limit)
        if not events:
            return [f"No events for agent {command.agent_id}."]
        lines: list[str] = []
        for event in events:
            transition = (
                f"{event.status_from.value if event.status_from else '-'}"
                f"->{event.status_to.value if event.status_to else '-'}"
            )
            details = " ".join(f"{key}={value}" for key, value in sorted(event.details.items()))
            lines.append(
                f"{event.created_at.isoformat()} {event.event_type} {transition} {details}".rstrip(),
            )
        return lines

    def list_claims(self, command: FleetCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            leases = fleet.claims.active_leases()
        if not leases:
            return ["No active leases."]
        return [
            f"{lease.key} owner={lease.owner_id} claimed_at={lease.claimed_at.isoformat()}"
            for lease in leases
        ]

    def sweep_claims(self, command: FleetCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            removed = fleet.claims.sweep_expired()
        return [f"Removed {removed} expired lease(s)."]

    def available_items(self, command: AvailableItemsCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            group = command.group if command.group is not None else fleet.settings.loop.group
            candidates = filter_eligible(fleet.backlog.get_available_items(group))
            available = fleet.claims.available_items(group, candidates)
        if not available:
            return [f"No available items in group {group}."]
        return [f"{group}-{item.number} [{item.status}] {item.title}".rstrip() for item in available]

    def release_claim(self, command: ReleaseClaimCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            released = fleet.claims.release(command.group, command.item)
        if released:
            return [f"Released lease {command.group}-{command.item}."]
        return [f"No lease for {command.group}-{command.item}."]

    def clear_claims(self, command: FleetCommand) -> list[str]:
        with _fleet(command.workspace) as fleet:
            fleet.claims.clear()
        return ["All leases cleared."]


def load_settings(workspace: Path | None) -> Settings:
    settings = Settings.from_env(workspace=workspace)
    settings.validate()
    return settings


@contextmanager
def _fleet(workspace: Path | None) -> Iterator[Fleet]:
    with open_fleet(load_settings(workspace)) as fleet:
        yield fleet


@contextmanager
def _signal_handlers(stop: threading.Event) -> Iterator[None]:
    if not hasattr(signal, "SIGINT"):
        yield
        return

    original_sigint = signal.getsignal(signal.SIGINT)
    original_sigterm = signal.getsignal(signal.SIGTERM)

    def _handler(signum: int, _: object | None) -> None:
        try:
            name = signal.Signals(signum).name
        except ValueError:
            name = str(signum)
        logger.warning("Received %s, stopping agents", name)
        stop.set()

    try:
        signal.signal(signal.SIGINT, _handler)
        signal.signal(signal.SIGTERM, _handler)
        yield
    except ValueError:
        # Signal handlers can only be installed in main thread.
        yield
    finally:
        try:
            signal.signal(signal.SIGINT, original_sigint)
            signal.signal(signal.SIGTERM, original_sigterm)
        except ValueError:
            pass


def _format_ids(agent_ids: list[int]) -> str:
    return ", ".join(str(agent_id) for agent_id in agent_ids) if agent_ids else "none"


def _change_line(agent_id: int, action: str, changed: bool) -> str:
    if changed:
        return f"Agent {agent_id} {action}."
    return f"Agent {agent_id}: nothing to do."


def _result_line(agent_id: int, result: ExecutionResult | None) -> str:
    if result is None:
        return f"Agent {agent_id}: no work this tick."
    if result.success:
        return (
            f"Agent {agent_id} completed {result.group}-{result.item} "
            f"on {result.branch_name} in {result.duration_seconds:.1f}s"
        )
    failure = result.failure_class.value if result.failure_class else "unexpected"
    return f"Agent {agent_id} failed {result.group}-{result.item} ({failure}): {result.error}"


def _session_line(session: AgentSessionView) -> str:
    key = session.active_key
    line = (
        f"agent={session.agent_id} status={session.status.value} "
        f"item={key if key is not None else '-'} "
        f"tasks_completed={session.tasks_completed} errors={session.error_count}"
    )
    if session.last_error:
        line += f" last_error={session.last_error!r}"
    return line
