"""Agent lifecycle: start, pause, resume and stop over the durable session."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from agent_fleet.coordination.errors import AgentLifecycleError
from agent_fleet.coordination.executor import (
    DEFAULT_HEARTBEAT_STALE_SECONDS,
    AgentExecutor,
)
from agent_fleet.coordination.models import AgentSessionView, AgentStatus
from agent_fleet.coordination.sessions import SessionRepository
from agent_fleet.storage.common import seconds_since, utc_now

logger = logging.getLogger(__name__)

DEFAULT_STOP_GRACE_SECONDS = 5.0
DEFAULT_STOP_ALL_TIMEOUT_SECONDS = 10.0
_STOP_POLL_SECONDS = 0.1


@dataclass(slots=True)
class StopAllResult:
    """Agents stopped by ``stop_all`` and those whose loop had not exited in time."""

    stopped: list[int] = field(default_factory=list)
    unfinished: list[int] = field(default_factory=list)


class LifecycleManager:
    """Owns session status transitions requested by operators."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        sessions: SessionRepository,
        executor: AgentExecutor,
        heartbeat_stale_seconds: float = DEFAULT_HEARTBEAT_STALE_SECONDS,
        stop_grace_seconds: float = DEFAULT_STOP_GRACE_SECONDS,
        stop_all_timeout_seconds: float = DEFAULT_STOP_ALL_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sessions = sessions
        self.executor = executor
        self.heartbeat_stale_seconds = heartbeat_stale_seconds
        self.stop_grace_seconds = stop_grace_seconds
        self.stop_all_timeout_seconds = stop_all_timeout_seconds
        self._clock = clock
        self._monotonic = monotonic

    def is_running(self, agent_id: int) -> bool:
        """Loop hosted here, or a non-stopped session with a fresh heartbeat."""

        if self.executor.hosts(agent_id):
            return True
        session = self.sessions.get(agent_id)
        return session is not None and self._alive_elsewhere(session)

    def running_agents(self) -> list[int]:
        running = set(self.executor.hosted_agents())
        running.update(
            session.agent_id
            for session in self.sessions.list_sessions()
            if self._alive_elsewhere(session)
        )
        return sorted(running)

    def start(self, agent_id: int) -> AgentSessionView:
        if self.is_running(agent_id):
            raise AgentLifecycleError(f"Agent {agent_id} is already running")
        session = self.sessions.create_or_load(agent_id)
        self.executor.start_loop(agent_id)
        logger.info("Agent %s started (%s)", agent_id, session.status.value)
        return session

    def pause(self, agent_id: int) -> bool:
        """Stop new claims; in-flight work finishes its current cycle.

        Returns ``False`` when the agent is already paused.
        """

        if not self.is_running(agent_id):
            raise AgentLifecycleError(f"Agent {agent_id} is not running")
        paused = self.sessions.set_status(
            agent_id,
            AgentStatus.PAUSED,
            expected={AgentStatus.IDLE, AgentStatus.WORKING},
            event_type="paused",
        )
        if paused:
            logger.info("Agent %s paused", agent_id)
        return paused

    def resume(self, agent_id: int) -> bool:
        """Paused agent goes back to ``working`` if it still holds an item, else ``idle``."""

        session = self.sessions.get(agent_id)
        if session is None or session.status != AgentStatus.PAUSED:
            raise AgentLifecycleError(f"Agent {agent_id} is not paused")
        resumed = self.sessions.resume(agent_id)
        if resumed:
            logger.info("Agent %s resumed", agent_id)
        return resumed

    def stop(
        self,
        agent_id: int,
        *,
        force: bool = False,
        timeout_seconds: float | None = None,
        reason: str = "operator",
    ) -> bool:
        """Halt the loop, cancel in-flight work after the grace period, mark stopped.

        No-op (``False``) when the agent is not running. ``timeout_seconds``
        bounds the whole stop and defaults to the grace period plus the
        stop-all timeout.
        """

        if not self.is_running(agent_id):
            logger.debug("Agent %s is not running, nothing to stop", agent_id)
            return False

        if timeout_seconds is None:
            budget = self.stop_grace_seconds + self.stop_all_timeout_seconds
        else:
            budget = timeout_seconds
        deadline = self._monotonic() + budget
        grace = 0.0 if force else min(self.stop_grace_seconds, budget)

        exited = self.executor.stop_loop(agent_id, timeout_seconds=grace)
        if not exited and self.executor.is_executing(agent_id):
            logger.warning("Agent %s still busy after %.1fs, cancelling its work", agent_id, grace)
        if not exited and not self._join_loop(agent_id, deadline=deadline):
            logger.warning("Agent %s loop did not exit before the stop deadline", agent_id)

        self.sessions.mark_stopped(agent_id, reason=reason)
        self.executor.forget(agent_id)
        logger.info("Agent %s stopped", agent_id)
        return True

    def stop_all(
        self,
        *,
        timeout_seconds: float | None = None,
        force: bool = False,
        reason: str = "operator",
    ) -> StopAllResult:
        """Stop every running agent within ``timeout_seconds`` of wall-clock time."""

        budget = self.stop_all_timeout_seconds if timeout_seconds is None else timeout_seconds
        deadline = self._monotonic() + budget
        agent_ids = self.running_agents()
        result = StopAllResult()
        if not agent_ids:
            return result

        logger.warning("Stopping %d agent(s): %s", len(agent_ids), agent_ids)
        self.executor.halt_all()
        if force:
            for agent_id in agent_ids:
                self.executor.cancel_execution(agent_id, reason="Agent stopped")

        grace_deadline = deadline if force else min(
            deadline,
            self._monotonic() + self.stop_grace_seconds,
        )
        for agent_id in agent_ids:
            self.executor.wait_until_idle(
                agent_id,
                timeout_seconds=max(0.0, grace_deadline - self._monotonic()),
            )
        for agent_id in agent_ids:
            exited = self._join_loop(agent_id, deadline=deadline)
            self.sessions.mark_stopped(agent_id, reason=reason)
            self.executor.forget(agent_id)
            result.stopped.append(agent_id)
            if not exited:
                result.unfinished.append(agent_id)

        if result.unfinished:
            logger.warning("Agents %s did not finish within %.1fs", result.unfinished, budget)
        return result

    def stats(self) -> dict[str, int]:
        executor_stats = self.executor.stats()
        return {
            "running": len(self.running_agents()),
            "loops": executor_stats["loops"],
            "executing": executor_stats["executing"],
        }

    def _join_loop(self, agent_id: int, *, deadline: float) -> bool:
        """Cancel in-flight work and wait for the halted loop until ``deadline``."""

        while True:
            # a tick may begin executing between checks
            self.executor.cancel_execution(agent_id, reason="Agent stopped")
            remaining = deadline - self._monotonic()
            exited = self.executor.stop_loop(
                agent_id,
                timeout_seconds=max(0.0, min(_STOP_POLL_SECONDS, remaining)),
            )
            if exited or remaining <= 0:
                return exited

    def _alive_elsewhere(self, session: AgentSessionView) -> bool:
        if session.status == AgentStatus.STOPPED or session.heartbeat_at is None:
            return False
        age = seconds_since(session.heartbeat_at, now=self._clock())
        return age < self.heartbeat_stale_seconds
