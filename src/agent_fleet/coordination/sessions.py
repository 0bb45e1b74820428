"""Durable agent session repository backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from sqlalchemy import update as sa_update
from sqlmodel import Session, col, select

from agent_fleet.coordination.models import (
    AgentSessionEventView,
    AgentSessionView,
    AgentStatus,
    FailureClass,
)
from agent_fleet.storage.alembic_runner import upgrade_head
from agent_fleet.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware,
    utc_now,
)
from agent_fleet.storage.sqlmodel_models import AgentSessionEvent, AgentSessionRow

logger = logging.getLogger(__name__)

_WORK_CLEARED: dict[str, Any] = {
    "current_group": None,
    "current_item": None,
    "branch_name": None,
    "started_at": None,
}


@dataclass(slots=True)
class _Change:
    """Column values and audit entry for one compare-and-set update."""

    event_type: str
    values: dict[str, Any]
    details: dict[str, object] = field(default_factory=dict)


class SessionRepository:
    """Session persistence facade; every transition is a compare-and-set."""

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = 5_000,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self.db_path = db_path
        self._clock = clock
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Dispose engine resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations up to head."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def create_or_load(self, agent_id: int) -> AgentSessionView:
        """Session for a starting agent.

        A missing or stopped session becomes a fresh ``idle`` one. Any other
        session is adopted as-is, so a crashed process's ``working`` record is
        picked up by restart recovery on the next tick.
        """

        now = self._clock()
        with Session(self.engine) as session:
            row = session.get(AgentSessionRow, agent_id)
            if row is None:
                row = AgentSessionRow(
                    agent_id=agent_id,
                    status=AgentStatus.IDLE.value,
                    heartbeat_at=to_db_datetime(now),
                    created_at=to_db_datetime(now),
                    updated_at=to_db_datetime(now),
                )
                status_from = None
                adopted = False
            else:
                status_from = _parse_status(row.status)
                adopted = status_from not in {None, AgentStatus.STOPPED}
                if not adopted:
                    row.status = AgentStatus.IDLE.value
                    row.current_group = None
                    row.current_item = None
                    row.branch_name = None
                    row.started_at = None
                if row.current_item is None:
                    row.heartbeat_at = to_db_datetime(now)
                row.updated_at = to_db_datetime(now)
            session.add(row)
            # events reference the session row; no relationship() orders the inserts
            session.flush()
            status_to = _parse_status(row.status)
            self._add_event(
                session=session,
                agent_id=agent_id,
                event_type="started",
                status_from=status_from,
                status_to=status_to,
                details={"adopted": adopted} if adopted else {},
            )
            session.commit()
            session.refresh(row)
            view = _to_session_view(row)
        if view is None:
            raise RuntimeError(f"Agent session {agent_id} has an unreadable status")
        if adopted:
            logger.info("Adopted existing %s session for agent %s", view.status.value, agent_id)
        else:
            logger.info("Created idle session for agent %s", agent_id)
        return view

    def ensure(self, agent_id: int) -> AgentSessionView:
        """Existing session, or a new ``idle`` one without touching its state."""

        existing = self.get(agent_id)
        if existing is not None:
            return existing
        return self.create_or_load(agent_id)

    def get(self, agent_id: int) -> AgentSessionView | None:
        with Session(self.engine) as session:
            row = session.get(AgentSessionRow, agent_id)
            if row is None:
                return None
            return _to_session_view(row)

    def list_sessions(self, *, status: AgentStatus | None = None) -> list[AgentSessionView]:
        with Session(self.engine) as session:
            query = select(AgentSessionRow)
            if status is not None:
                query = query.where(AgentSessionRow.status == status.value)
            rows = session.exec(query.order_by(col(AgentSessionRow.agent_id).asc())).all()
            views = [_to_session_view(row) for row in rows]
        return [view for view in views if view is not None]

    def set_status(
        self,
        agent_id: int,
        status: AgentStatus,
        *,
        expected: Iterable[AgentStatus] | None = None,
        event_type: str,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Move to ``status`` if the current one is in ``expected``.

        Returns ``False`` when the session is missing, already in ``status``,
        or in a status outside ``expected``.
        """

        allowed = frozenset(expected) if expected is not None else None

        def _decide(view: AgentSessionView) -> _Change | None:
            if view.status == status:
                return None
            if allowed is not None and view.status not in allowed:
                return None
            return _Change(
                event_type=event_type,
                values={"status": status.value},
                details=dict(details or {}),
            )

        return self._apply(agent_id, _decide) is not None

    def resume(self, agent_id: int) -> bool:
        """``paused`` -> ``working`` while an item is still held, else ``idle``."""

        def _decide(view: AgentSessionView) -> _Change | None:
            if view.status != AgentStatus.PAUSED:
                return None
            target = AgentStatus.WORKING if view.active_key is not None else AgentStatus.IDLE
            return _Change(event_type="resumed", values={"status": target.value})

        return self._apply(agent_id, _decide) is not None

    def begin_work(
        self,
        agent_id: int,
        *,
        group: int,
        item: int,
        branch_name: str,
        started_at: datetime,
    ) -> bool:
        """``idle`` -> ``working`` with the claimed item recorded."""

        def _decide(view: AgentSessionView) -> _Change | None:
            if view.status != AgentStatus.IDLE:
                return None
            return _Change(
                event_type="work_started",
                values={
                    "status": AgentStatus.WORKING.value,
                    "current_group": group,
                    "current_item": item,
                    "branch_name": branch_name,
                    "started_at": to_db_datetime(started_at),
                    "heartbeat_at": to_db_datetime(self._clock()),
                },
                details={"group": group, "item": item, "branch_name": branch_name},
            )

        return self._apply(agent_id, _decide) is not None

    def complete_work(self, agent_id: int, *, group: int, item: int) -> bool:
        """Count a finished item and clear work fields.

        The status returns to ``idle`` only when it is still ``working``.
        """

        def _decide(view: AgentSessionView) -> _Change | None:
            if not _holds(view, group=group, item=item):
                return None
            values = {**_WORK_CLEARED, "tasks_completed": view.tasks_completed + 1}
            if view.status == AgentStatus.WORKING:
                values["status"] = AgentStatus.IDLE.value
            return _Change(
                event_type="work_completed",
                values=values,
                details={"group": group, "item": item},
            )

        return self._apply(agent_id, _decide) is not None

    def record_failure(  # noqa: PLR0913
        self,
        agent_id: int,
        *,
        group: int,
        item: int,
        error: str,
        failure_class: FailureClass,
        count_error: bool = True,
    ) -> bool:
        """Record ``last_error`` and clear the failed item's work fields."""

        def _decide(view: AgentSessionView) -> _Change | None:
            values: dict[str, Any] = {"last_error": error}
            if count_error:
                values["error_count"] = view.error_count + 1
            if _holds(view, group=group, item=item):
                values.update(_WORK_CLEARED)
                if view.status == AgentStatus.WORKING:
                    values["status"] = AgentStatus.IDLE.value
            return _Change(
                event_type="work_failed",
                values=values,
                details={
                    "group": group,
                    "item": item,
                    "failure_class": failure_class.value,
                    "error": error,
                },
            )

        return self._apply(agent_id, _decide) is not None

    def clear_work(
        self,
        agent_id: int,
        *,
        error: str | None = None,
        details: dict[str, object] | None = None,
    ) -> bool:
        """Drop the active item; ``working`` becomes ``idle``."""

        def _decide(view: AgentSessionView) -> _Change | None:
            if view.active_key is None and view.status != AgentStatus.WORKING:
                return None
            values: dict[str, Any] = dict(_WORK_CLEARED)
            if view.status == AgentStatus.WORKING:
                values["status"] = AgentStatus.IDLE.value
            if error is not None:
                values["last_error"] = error
            return _Change(
                event_type="work_cleared",
                values=values,
                details={
                    "group": view.current_group,
                    "item": view.current_item,
                    **(details or {}),
                },
            )

        return self._apply(agent_id, _decide) is not None

    def mark_stopped(
        self,
        agent_id: int,
        *,
        clear_work: bool = True,
        reason: str = "operator",
    ) -> bool:
        def _decide(view: AgentSessionView) -> _Change | None:
            if view.status == AgentStatus.STOPPED:
                return None
            values: dict[str, Any] = {"status": AgentStatus.STOPPED.value}
            if clear_work:
                values.update(_WORK_CLEARED)
            return _Change(event_type="stopped", values=values, details={"reason": reason})

        return self._apply(agent_id, _decide) is not None

    def touch(self, agent_id: int) -> None:
        """Refresh the heartbeat of a non-stopped session."""

        now = to_db_datetime(self._clock())
        with Session(self.engine) as session:
            session.execute(
                sa_update(AgentSessionRow)
                .where(
                    col(AgentSessionRow.agent_id) == agent_id,
                    col(AgentSessionRow.status) != AgentStatus.STOPPED.value,
                )
                .values(heartbeat_at=now),
            )
            session.commit()

    def list_events(self, agent_id: int, *, limit: int = 50) -> list[AgentSessionEventView]:
        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentSessionEvent)
                .where(AgentSessionEvent.agent_id == agent_id)
                .order_by(
                    col(AgentSessionEvent.created_at).desc(),
                    col(AgentSessionEvent.id).desc(),
                )
                .limit(limit),
            ).all()
            events = [
                AgentSessionEventView(
                    event_id=row.id or 0,
                    agent_id=row.agent_id,
                    event_type=row.event_type,
                    status_from=_parse_status(row.status_from),
                    status_to=_parse_status(row.status_to),
                    created_at=to_utc_aware(row.created_at),
                    details=json.loads(row.details_json) if row.details_json else {},
                )
                for row in rows
            ]
        events.reverse()
        return events

    def _apply(
        self,
        agent_id: int,
        decide: Callable[[AgentSessionView], _Change | None],
    ) -> AgentSessionView | None:
        while True:
            with Session(self.engine) as session:
                row = session.get(AgentSessionRow, agent_id)
                if row is None:
                    return None
                current = _to_session_view(row)
                if current is None:
                    return None
                change = decide(current)
                if change is None:
                    return None

                now = to_db_datetime(self._clock())
                result = session.execute(
                    sa_update(AgentSessionRow)
                    .where(*_unchanged_since(current))
                    .values(**change.values, updated_at=now),
                )
                if result.rowcount != 1:  # type: ignore[attr-defined]
                    session.rollback()
                    continue

                session.expire_all()
                updated = session.get(AgentSessionRow, agent_id)
                if updated is None:
                    session.rollback()
                    return None
                status_to = _parse_status(updated.status)
                self._add_event(
                    session=session,
                    agent_id=agent_id,
                    event_type=change.event_type,
                    status_from=current.status,
                    status_to=status_to,
                    details=change.details,
                )
                session.commit()
                session.refresh(updated)
                view = _to_session_view(updated)
            if view is not None and status_to != current.status:
                logger.info(
                    "Agent %s: %s -> %s (%s)",
                    agent_id,
                    current.status.value,
                    view.status.value,
                    change.event_type,
                )
            return view

    def _add_event(  # noqa: PLR0913
        self,
        *,
        session: Session,
        agent_id: int,
        event_type: str,
        status_from: AgentStatus | None,
        status_to: AgentStatus | None,
        details: dict[str, object],
    ) -> None:
        session.add(
            AgentSessionEvent(
                agent_id=agent_id,
                event_type=event_type,
                status_from=status_from.value if status_from is not None else None,
                status_to=status_to.value if status_to is not None else None,
                details_json=json.dumps(details, ensure_ascii=False, sort_keys=True, default=str)
                if details
                else None,
                created_at=to_db_datetime(self._clock()),
            ),
        )


def _holds(view: AgentSessionView, *, group: int, item: int) -> bool:
    return view.current_group == group and view.current_item == item


def _unchanged_since(view: AgentSessionView) -> list[Any]:
    conditions: list[Any] = [
        col(AgentSessionRow.agent_id) == view.agent_id,
        col(AgentSessionRow.status) == view.status.value,
    ]
    for column, value in (
        (col(AgentSessionRow.current_group), view.current_group),
        (col(AgentSessionRow.current_item), view.current_item),
    ):
        conditions.append(column.is_(None) if value is None else column == value)
    conditions.append(col(AgentSessionRow.tasks_completed) == view.tasks_completed)
    conditions.append(col(AgentSessionRow.error_count) == view.error_count)
    return conditions


def _parse_status(value: str | None) -> AgentStatus | None:
    if value is None:
        return None
    try:
        return AgentStatus(value)
    except ValueError:
        return None


def _to_session_view(row: AgentSessionRow) -> AgentSessionView | None:
    status = _parse_status(row.status)
    if status is None:
        logger.warning(
            "Agent session %s has unknown status %r, treating as absent",
            row.agent_id,
            row.status,
        )
        return None
    return AgentSessionView(
        agent_id=row.agent_id,
        status=status,
        current_group=row.current_group,
        current_item=row.current_item,
        branch_name=row.branch_name,
        started_at=to_utc_aware(row.started_at) if row.started_at is not None else None,
        tasks_completed=row.tasks_completed,
        error_count=row.error_count,
        last_error=row.last_error,
        heartbeat_at=to_utc_aware(row.heartbeat_at) if row.heartbeat_at is not None else None,
        created_at=to_utc_aware(row.created_at),
        updated_at=to_utc_aware(row.updated_at),
    )
