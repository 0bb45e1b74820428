"""Operator overrides composed over claims, lifecycle and the execution loop."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field

from agent_fleet.coordination.claims import ClaimStore
from agent_fleet.coordination.errors import AgentLifecycleError, ClaimStoreError, OverrideError
from agent_fleet.coordination.executor import AgentExecutor
from agent_fleet.coordination.lifecycle import LifecycleManager
from agent_fleet.coordination.models import AgentStatus, FleetStatusSummary, owner_id_for
from agent_fleet.coordination.sessions import SessionRepository

logger = logging.getLogger(__name__)

DEFAULT_EMERGENCY_STOP_TIMEOUT_SECONDS = 5.0


@dataclass(slots=True)
class EmergencyStopResult:
    cancelled: bool
    stopped: list[int] = field(default_factory=list)
    unfinished: list[int] = field(default_factory=list)


@dataclass(slots=True)
class ReassignResult:
    agent_id: int
    group: int
    item: int
    released: bool
    new_agent_id: int | None = None
    reclaimed: bool = False


class OverrideController:
    """Idempotent pause/resume/stop/reassign/emergency-stop. Holds no state of its own."""

    def __init__(  # noqa: PLR0913
        self,
        *,
        claims: ClaimStore,
        sessions: SessionRepository,
        executor: AgentExecutor,
        lifecycle: LifecycleManager,
        emergency_stop_timeout_seconds: float = DEFAULT_EMERGENCY_STOP_TIMEOUT_SECONDS,
    ) -> None:
        self.claims = claims
        self.sessions = sessions
        self.executor = executor
        self.lifecycle = lifecycle
        self.emergency_stop_timeout_seconds = emergency_stop_timeout_seconds

    def pause_agent(self, agent_id: int) -> bool:
        """Pause a running agent. ``False`` when there was nothing to do."""

        if not self.lifecycle.is_running(agent_id):
            logger.debug("Agent %s is not running, pause ignored", agent_id)
            return False
        session = self.sessions.get(agent_id)
        if session is None or session.status in {AgentStatus.PAUSED, AgentStatus.STOPPED}:
            logger.debug("Agent %s needs no pause", agent_id)
            return False
        try:
            return self.lifecycle.pause(agent_id)
        except AgentLifecycleError as error:
            logger.debug("Agent %s pause skipped: %s", agent_id, error)
            return False

    def resume_agent(self, agent_id: int) -> bool:
        if not self.lifecycle.is_running(agent_id):
            logger.debug("Agent %s is not running, resume ignored", agent_id)
            return False
        session = self.sessions.get(agent_id)
        if session is None or session.status != AgentStatus.PAUSED:
            logger.debug("Agent %s is not paused, resume ignored", agent_id)
            return False
        try:
            return self.lifecycle.resume(agent_id)
        except AgentLifecycleError as error:
            logger.debug("Agent %s resume skipped: %s", agent_id, error)
            return False

    def pause_all(self) -> list[int]:
        return [agent_id for agent_id in self.lifecycle.running_agents() if self.pause_agent(agent_id)]

    def resume_all(self) -> list[int]:
        return [
            agent_id for agent_id in self.lifecycle.running_agents() if self.resume_agent(agent_id)
        ]

    def stop_agent(self, agent_id: int) -> bool:
        """Halt the agent's loop, then stop it through the lifecycle manager."""

        if not self.lifecycle.is_running(agent_id):
            logger.debug("Agent %s is not running, stop ignored", agent_id)
            return False
        self.executor.stop_loop(agent_id, timeout_seconds=0)
        return self.lifecycle.stop(agent_id)

    def emergency_stop_all(
        self,
        *,
        confirm: Callable[[int], bool] | None = None,
        skip_confirmation: bool = False,
        timeout_seconds: float | None = None,
    ) -> EmergencyStopResult:
        """Force-stop every running agent after operator confirmation.

        ``confirm`` receives the number of running agents. Without a confirmer
        the call must pass ``skip_confirmation=True``.
        """

        agent_ids = self.lifecycle.running_agents()
        if not skip_confirmation:
            if confirm is None:
                raise OverrideError("Emergency stop requires confirmation")
            if not confirm(len(agent_ids)):
                logger.info("Emergency stop cancelled by operator")
                return EmergencyStopResult(cancelled=True)

        budget = self.emergency_stop_timeout_seconds if timeout_seconds is None else timeout_seconds
        logger.warning("Emergency stop of %d agent(s)", len(agent_ids))
        self.executor.halt_all()
        outcome = self.lifecycle.stop_all(
            timeout_seconds=budget,
            force=True,
            reason="emergency_stop",
        )
        return EmergencyStopResult(
            cancelled=False,
            stopped=outcome.stopped,
            unfinished=outcome.unfinished,
        )

    def reassign_project(self, agent_id: int, new_agent_id: int | None = None) -> ReassignResult:
        """Take the agent's active item away and return it to the backlog.

        With ``new_agent_id`` the item is re-claimed for that agent, best effort.
        """

        session = self.sessions.get(agent_id)
        if session is None:
            raise OverrideError(f"Agent {agent_id} has no session")
        key = session.active_key
        if key is None:
            raise OverrideError(f"Agent {agent_id} has no active item to reassign")

        owner_id = owner_id_for(agent_id)
        released = self.claims.release(key.group, key.item, owner_id=owner_id)
        for lease in self.claims.leases_for_owner(owner_id):
            logger.warning("Releasing leftover lease %s of agent %s", lease.key, agent_id)
            self.claims.release(lease.group, lease.item, owner_id=owner_id)
        self.executor.cancel_execution(agent_id, reason=f"Item {key} reassigned")

        reclaimed = False
        if new_agent_id is not None:
            try:
                reclaimed = self.claims.claim(key.group, key.item, owner_id_for(new_agent_id))
            except ClaimStoreError as error:
                logger.warning("Re-claim of %s for agent %s failed: %s", key, new_agent_id, error)
            if reclaimed:
                logger.info("Reassigned %s from agent %s to agent %s", key, agent_id, new_agent_id)
            else:
                logger.warning(
                    "Could not hand %s to agent %s, item returned to the backlog",
                    key,
                    new_agent_id,
                )

        self.sessions.clear_work(
            agent_id,
            details={"reason": "reassigned", "new_agent_id": new_agent_id},
        )
        logger.info("Agent %s released %s", agent_id, key)
        return ReassignResult(
            agent_id=agent_id,
            group=key.group,
            item=key.item,
            released=released,
            new_agent_id=new_agent_id,
            reclaimed=reclaimed,
        )

    def has_active_work(self, agent_id: int) -> bool:
        if self.executor.is_executing(agent_id):
            return True
        session = self.sessions.get(agent_id)
        return session is not None and session.active_key is not None

    def status_summary(self) -> FleetStatusSummary:
        sessions = self.sessions.list_sessions()
        running = set(self.lifecycle.running_agents())
        summary = FleetStatusSummary(total=len(sessions))
        for session in sessions:
            if session.agent_id in running:
                summary.running += 1
            if session.status == AgentStatus.IDLE:
                summary.idle += 1
            elif session.status == AgentStatus.WORKING:
                summary.working += 1
            elif session.status == AgentStatus.PAUSED:
                summary.paused += 1
            else:
                summary.stopped += 1
        return summary
