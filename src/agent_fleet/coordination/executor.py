"""Per-agent execution loop: claim, execute, monitor, complete or fail."""

from __future__ import annotations

import dataclasses
import logging
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime

from agent_fleet.coordination.backend.base import BranchOperations, CompletionSignal, WorkInvoker
from agent_fleet.coordination.backlog import BacklogSource, filter_eligible
from agent_fleet.coordination.claims import ClaimStore
from agent_fleet.coordination.errors import (
    ClaimStoreError,
    ExecutionCancelledError,
    ExecutionError,
    ExecutionTimeoutError,
    classify_failure,
)
from agent_fleet.coordination.models import (
    AgentSessionView,
    AgentStatus,
    ExecutionResult,
    ExecutionState,
    lease_key,
    owner_id_for,
)
from agent_fleet.coordination.scheduler import PollOutcome, Ticker, poll_until
from agent_fleet.coordination.sessions import SessionRepository
from agent_fleet.storage.common import seconds_since, utc_now

logger = logging.getLogger(__name__)

DEFAULT_TICK_INTERVAL_SECONDS = 10.0
DEFAULT_COMPLETION_POLL_SECONDS = 5.0
DEFAULT_EXECUTION_TIMEOUT_SECONDS = 8 * 60 * 60
DEFAULT_WORKING_DEADLINE_SECONDS = 30.0
DEFAULT_HEARTBEAT_STALE_SECONDS = 60.0


def branch_name_for(agent_id: int, item: int) -> str:
    return f"agent-{agent_id}/item-{item}"


@dataclass(slots=True)
class _AgentHandle:
    agent_id: int
    state: ExecutionState
    tick_lock: threading.Lock = field(default_factory=threading.Lock)
    cancel: threading.Event = field(default_factory=threading.Event)
    idle: threading.Event = field(default_factory=threading.Event)
    cancel_reason: str | None = None
    ticker: Ticker | None = None

    def __post_init__(self) -> None:
        self.idle.set()


class AgentExecutor:
    """Drives each agent's claim -> work -> complete/fail cycle.

    One ``Ticker`` per agent calls ``tick``; ticks are never re-entrant for the
    same agent. Post-claim failures always release the lease and never stop
    the loop.
    """

    def __init__(  # noqa: PLR0913
        self,
        *,
        claims: ClaimStore,
        sessions: SessionRepository,
        backlog: BacklogSource,
        branches: BranchOperations,
        invoker: WorkInvoker,
        signal: CompletionSignal,
        group: int,
        tick_interval_seconds: float = DEFAULT_TICK_INTERVAL_SECONDS,
        completion_poll_seconds: float = DEFAULT_COMPLETION_POLL_SECONDS,
        execution_timeout_seconds: float = DEFAULT_EXECUTION_TIMEOUT_SECONDS,
        working_deadline_seconds: float = DEFAULT_WORKING_DEADLINE_SECONDS,
        heartbeat_stale_seconds: float = DEFAULT_HEARTBEAT_STALE_SECONDS,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
    ) -> None:
        self.claims = claims
        self.sessions = sessions
        self.backlog = backlog
        self.branches = branches
        self.invoker = invoker
        self.signal = signal
        self.group = group
        self.tick_interval_seconds = tick_interval_seconds
        self.completion_poll_seconds = completion_poll_seconds
        self.execution_timeout_seconds = execution_timeout_seconds
        self.working_deadline_seconds = working_deadline_seconds
        self.heartbeat_stale_seconds = heartbeat_stale_seconds
        self._clock = clock
        self._monotonic = monotonic
        self._handles: dict[int, _AgentHandle] = {}
        self._handles_lock = threading.Lock()

    # -- loop control ---------------------------------------------------------

    def start_loop(self, agent_id: int) -> bool:
        """Start ticking for the agent; ``False`` if a loop is already running."""

        handle = self._handle(agent_id)
        with self._handles_lock:
            if handle.ticker is not None and handle.ticker.is_alive:
                if not handle.ticker.stop_requested:
                    return False
                logger.warning("Agent %s loop still finishing, starting a new one", agent_id)
            handle.ticker = Ticker(
                name=f"agent-{agent_id}-loop",
                interval_seconds=self.tick_interval_seconds,
                callback=lambda: self._tick_from_loop(agent_id),
            )
            ticker = handle.ticker
        ticker.start()
        logger.info(
            "Started execution loop for agent %s (every %.1fs)",
            agent_id,
            self.tick_interval_seconds,
        )
        return True

    def stop_loop(self, agent_id: int, *, timeout_seconds: float | None = None) -> bool:
        """Stop scheduling ticks and wait for the loop thread.

        In-flight work is not interrupted. Returns ``True`` once the loop has
        exited (or never existed).
        """

        handle = self._existing_handle(agent_id)
        if handle is None or handle.ticker is None:
            return True
        ticker = handle.ticker
        ticker.stop()
        exited = ticker.join(timeout=timeout_seconds)
        if exited:
            with self._handles_lock:
                if handle.ticker is ticker:
                    handle.ticker = None
            logger.info("Execution loop for agent %s stopped", agent_id)
        return exited

    def cancel_execution(self, agent_id: int, *, reason: str = "Execution cancelled") -> bool:
        """Interrupt the agent's in-flight completion wait, if any."""

        handle = self._existing_handle(agent_id)
        if handle is None or not handle.state.is_executing:
            return False
        if handle.cancel.is_set():
            return True
        handle.cancel_reason = reason
        handle.cancel.set()
        logger.warning("Cancelling in-flight execution of agent %s: %s", agent_id, reason)
        return True

    def wait_until_idle(self, agent_id: int, *, timeout_seconds: float | None = None) -> bool:
        handle = self._existing_handle(agent_id)
        if handle is None:
            return True
        return handle.idle.wait(timeout=timeout_seconds)

    def halt_all(self) -> list[int]:
        """Stop scheduling ticks for every loop without waiting."""

        with self._handles_lock:
            handles = list(self._handles.values())
        halted: list[int] = []
        for handle in handles:
            if handle.ticker is not None and not handle.ticker.stop_requested:
                handle.ticker.stop()
                halted.append(handle.agent_id)
        if halted:
            logger.warning("Halted execution loops for agents %s", halted)
        return halted

    def forget(self, agent_id: int) -> None:
        """Drop the agent's handle once it is neither executing nor looping."""

        with self._handles_lock:
            handle = self._handles.get(agent_id)
            if handle is None or handle.state.is_executing:
                return
            if handle.ticker is not None and handle.ticker.is_alive:
                return
            del self._handles[agent_id]

    # -- queries --------------------------------------------------------------

    def execution_state(self, agent_id: int) -> ExecutionState:
        handle = self._existing_handle(agent_id)
        if handle is None:
            return ExecutionState(agent_id=agent_id)
        return dataclasses.replace(handle.state)

    def is_executing(self, agent_id: int) -> bool:
        handle = self._existing_handle(agent_id)
        return handle is not None and handle.state.is_executing

    def has_loop(self, agent_id: int) -> bool:
        handle = self._existing_handle(agent_id)
        if handle is None or handle.ticker is None:
            return False
        return handle.ticker.is_alive and not handle.ticker.stop_requested

    def hosts(self, agent_id: int) -> bool:
        """Agent has a live loop thread (possibly winding down) or in-flight work here."""

        handle = self._existing_handle(agent_id)
        if handle is None:
            return False
        if handle.state.is_executing:
            return True
        return handle.ticker is not None and handle.ticker.is_alive

    def hosted_agents(self) -> list[int]:
        with self._handles_lock:
            agent_ids = list(self._handles)
        return sorted(agent_id for agent_id in agent_ids if self.hosts(agent_id))

    def stats(self) -> dict[str, int]:
        with self._handles_lock:
            handles = list(self._handles.values())
        return {
            "loops": sum(1 for handle in handles if self.has_loop(handle.agent_id)),
            "executing": sum(1 for handle in handles if handle.state.is_executing),
        }

    # -- ticking --------------------------------------------------------------

    def tick(self, agent_id: int) -> ExecutionResult | None:
        """Run one tick synchronously. Returns the execution result, if any."""

        handle = self._handle(agent_id)
        if handle.state.is_executing or not handle.tick_lock.acquire(blocking=False):
            logger.debug("Agent %s is busy, skipping tick", agent_id)
            return None
        try:
            return self._tick_locked(handle)
        finally:
            handle.tick_lock.release()

    def _tick_from_loop(self, agent_id: int) -> None:
        self.tick(agent_id)

    def _tick_locked(self, handle: _AgentHandle) -> ExecutionResult | None:
        agent_id = handle.agent_id
        session = self.sessions.get(agent_id)
        if session is None:
            logger.debug("Agent %s has no session, skipping tick", agent_id)
            return None
        if session.status == AgentStatus.PAUSED:
            # a held item keeps its heartbeat from the work that owns it
            if session.active_key is None:
                self.sessions.touch(agent_id)
            logger.debug("Agent %s is paused, skipping tick", agent_id)
            return None
        if session.status == AgentStatus.STOPPED:
            if handle.ticker is not None and not handle.ticker.stop_requested:
                logger.info("Agent %s session is stopped, halting its loop", agent_id)
                handle.ticker.stop()
            return None
        if session.status == AgentStatus.WORKING:
            return self._recover(handle, session)

        self.sessions.touch(agent_id)
        self.claims.sweep_expired()
        owner_id = owner_id_for(agent_id)
        candidates = filter_eligible(self.backlog.get_available_items(self.group))
        available = self.claims.available_items(self.group, candidates, owner_id=owner_id)
        if not available:
            logger.debug("Agent %s found no available items in group %s", agent_id, self.group)
            return None

        handed_over = {
            lease.item for lease in self.claims.leases_for_owner(owner_id) if lease.group == self.group
        }
        target = next(
            (candidate for candidate in available if candidate.number in handed_over),
            available[0],
        )
        if not self.claims.claim(self.group, target.number, owner_id):
            logger.info(
                "Agent %s lost the claim race for %s",
                agent_id,
                lease_key(self.group, target.number),
            )
            return None
        claimed_mono = self._monotonic()
        started_at = self._clock()
        branch_name = branch_name_for(agent_id, target.number)
        key = lease_key(self.group, target.number)

        try:
            still_eligible = self._still_eligible(target.number)
            started = still_eligible and self.sessions.begin_work(
                agent_id,
                group=self.group,
                item=target.number,
                branch_name=branch_name,
                started_at=started_at,
            )
        except Exception:
            logger.warning("Agent %s could not start %s, releasing its lease", agent_id, key)
            self.claims.release(self.group, target.number, owner_id=owner_id)
            raise
        if not started:
            if still_eligible:
                logger.info("Agent %s is no longer idle, releasing %s", agent_id, key)
            else:
                logger.info("Item %s left the backlog before agent %s started it", key, agent_id)
            self.claims.release(self.group, target.number, owner_id=owner_id)
            return None
        elapsed = self._monotonic() - claimed_mono
        if elapsed > self.working_deadline_seconds:
            logger.warning("Agent %s took %.1fs to record work on %s", agent_id, elapsed, key)

        return self._execute(
            handle,
            group=self.group,
            item=target.number,
            branch_name=branch_name,
            started_at=started_at,
            resume=False,
        )

    def _recover(self, handle: _AgentHandle, session: AgentSessionView) -> ExecutionResult | None:
        agent_id = handle.agent_id
        key = session.active_key
        if key is None:
            logger.warning("Agent %s is working without an item, resetting to idle", agent_id)
            self.sessions.clear_work(agent_id, error="Working session had no current item")
            return None
        if self._hosted_elsewhere(session):
            logger.debug("Agent %s is executing in another process, skipping tick", agent_id)
            return None

        lease = self.claims.get_lease(key.group, key.item)
        if lease is None or lease.owner_id != session.owner_id:
            holder = lease.owner_id if lease is not None else "nobody"
            logger.warning(
                "Agent %s lost lease %s before recovery (held by %s)",
                agent_id,
                key,
                holder,
            )
            self.sessions.clear_work(
                agent_id,
                error=f"Lease {key} lost before restart recovery",
                details={"reason": "lease_lost", "holder": holder},
            )
            return None

        logger.info("Agent %s resuming monitoring of %s after restart", agent_id, key)
        return self._execute(
            handle,
            group=key.group,
            item=key.item,
            branch_name=session.branch_name or branch_name_for(agent_id, key.item),
            started_at=session.started_at or self._clock(),
            resume=True,
        )

    def _still_eligible(self, item: int) -> bool:
        # another agent may have finished the item since the snapshot was read
        current = filter_eligible(self.backlog.get_available_items(self.group))
        return any(candidate.number == item for candidate in current)

    def _hosted_elsewhere(self, session: AgentSessionView) -> bool:
        if session.heartbeat_at is None:
            return False
        age = seconds_since(session.heartbeat_at, now=self._clock())
        return age < self.heartbeat_stale_seconds

    # -- execution ------------------------------------------------------------

    def _execute(  # noqa: PLR0913
        self,
        handle: _AgentHandle,
        *,
        group: int,
        item: int,
        branch_name: str,
        started_at: datetime,
        resume: bool,
    ) -> ExecutionResult:
        agent_id = handle.agent_id
        handle.state.begin(group=group, item=item, started_at=started_at)
        handle.idle.clear()
        started_mono = self._monotonic()
        released = False
        try:
            if not resume:
                self.branches.create_branch(branch_name)
                self.signal.discard(agent_id)
                self.invoker.invoke(
                    agent_id=agent_id,
                    group=group,
                    item=item,
                    branch_name=branch_name,
                )

            self._await_completion(handle, group=group, item=item, started_at=started_at)
            self.signal.consume(agent_id)
            self.branches.push(branch_name)
            self.backlog.mark_done(group, item)
            self.claims.release(group, item, owner_id=owner_id_for(agent_id))
            released = True
            self.sessions.complete_work(agent_id, group=group, item=item)
            duration = self._monotonic() - started_mono
            logger.info(
                "Agent %s completed %s in %.1fs",
                agent_id,
                lease_key(group, item),
                duration,
            )
            return ExecutionResult(
                agent_id=agent_id,
                group=group,
                item=item,
                branch_name=branch_name,
                success=True,
                duration_seconds=duration,
            )
        except Exception as error:  # noqa: BLE001
            return self._fail(
                handle,
                group=group,
                item=item,
                branch_name=branch_name,
                error=error,
                released=released,
                duration=self._monotonic() - started_mono,
            )
        finally:
            handle.state.reset()
            handle.cancel.clear()
            handle.cancel_reason = None
            handle.idle.set()

    def _await_completion(
        self,
        handle: _AgentHandle,
        *,
        group: int,
        item: int,
        started_at: datetime,
    ) -> None:
        agent_id = handle.agent_id
        elapsed = seconds_since(started_at, now=self._clock())
        remaining = max(0.0, self.execution_timeout_seconds - elapsed)
        outcome = poll_until(
            lambda: self.signal.is_signalled(agent_id),
            interval_seconds=self.completion_poll_seconds,
            timeout_seconds=remaining,
            cancel=handle.cancel,
            abort=lambda: self._work_revoked(agent_id, group=group, item=item),
            clock=self._monotonic,
        )
        if outcome is PollOutcome.CANCELLED:
            raise ExecutionCancelledError(handle.cancel_reason or "Execution cancelled")
        if outcome is PollOutcome.ABORTED:
            raise ExecutionCancelledError("Work was stopped or reassigned by another process")
        if outcome is PollOutcome.TIMED_OUT:
            raise ExecutionTimeoutError(
                f"No completion signal within {self.execution_timeout_seconds:.0f}s",
            )

    def _work_revoked(self, agent_id: int, *, group: int, item: int) -> bool:
        self.sessions.touch(agent_id)
        session = self.sessions.get(agent_id)
        if session is None or session.status == AgentStatus.STOPPED:
            return True
        return session.current_group != group or session.current_item != item

    def _fail(  # noqa: PLR0913
        self,
        handle: _AgentHandle,
        *,
        group: int,
        item: int,
        branch_name: str,
        error: Exception,
        released: bool,
        duration: float,
    ) -> ExecutionResult:
        agent_id = handle.agent_id
        key = lease_key(group, item)
        failure_class = classify_failure(error)
        message = str(error) or type(error).__name__
        cancelled = isinstance(error, ExecutionCancelledError)
        if cancelled:
            logger.warning("Agent %s execution of %s cancelled: %s", agent_id, key, message)
        elif isinstance(error, ExecutionError | ClaimStoreError):
            logger.error(
                "Agent %s execution of %s failed (%s): %s",
                agent_id,
                key,
                failure_class.value,
                message,
            )
        else:
            logger.exception("Agent %s execution of %s failed unexpectedly", agent_id, key)

        try:
            self.invoker.cancel(agent_id)
        except Exception:
            logger.exception("Agent %s: failed to terminate work command", agent_id)

        if not released:
            try:
                self.claims.release(group, item, owner_id=owner_id_for(agent_id))
            except ClaimStoreError:
                logger.exception("Agent %s could not release %s; it will expire", agent_id, key)

        try:
            self.sessions.record_failure(
                agent_id,
                group=group,
                item=item,
                error=message,
                failure_class=failure_class,
                count_error=not cancelled,
            )
        except Exception:
            logger.exception("Agent %s: failed to record failure of %s", agent_id, key)

        return ExecutionResult(
            agent_id=agent_id,
            group=group,
            item=item,
            branch_name=branch_name,
            success=False,
            duration_seconds=duration,
            error=message,
            failure_class=failure_class,
        )

    # -- handles --------------------------------------------------------------

    def _handle(self, agent_id: int) -> _AgentHandle:
        with self._handles_lock:
            handle = self._handles.get(agent_id)
            if handle is None:
                handle = _AgentHandle(agent_id=agent_id, state=ExecutionState(agent_id=agent_id))
                self._handles[agent_id] = handle
            return handle

    def _existing_handle(self, agent_id: int) -> _AgentHandle | None:
        with self._handles_lock:
            return self._handles.get(agent_id)
