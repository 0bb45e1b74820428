from __future__ import annotations

import logging
import threading
from datetime import timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy import text

from agent_fleet.coordination.models import AgentStatus, FailureClass
from agent_fleet.coordination.sessions import SessionRepository
from tests.support import GROUP, FakeClock

pytestmark = [
    allure.epic("Coordination"),
    allure.feature("Agent Sessions"),
]


def _begin(repository: SessionRepository, agent_id: int, item: int, clock: FakeClock) -> bool:
    return repository.begin_work(
        agent_id,
        group=GROUP,
        item=item,
        branch_name=f"agent-{agent_id}/item-{item}",
        started_at=clock(),
    )


@pytest.fixture()
def clocked_sessions(workspace: Path, clock: FakeClock):
    repository = SessionRepository(workspace / "fleet.db", clock=clock)
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


def test_create_or_load_creates_idle_session(sessions: SessionRepository) -> None:
    view = sessions.create_or_load(1)

    assert view.agent_id == 1
    assert view.status == AgentStatus.IDLE
    assert view.active_key is None
    assert view.tasks_completed == 0
    assert view.error_count == 0
    assert view.heartbeat_at is not None
    assert [event.event_type for event in sessions.list_events(1)] == ["started"]


def test_new_agents_get_sessions_on_fresh_database(tmp_path: Path) -> None:
    repository = SessionRepository(tmp_path / "fresh" / "fleet.db")
    repository.init_schema()

    views = [repository.create_or_load(agent_id) for agent_id in (3, 1, 2)]

    with repository.engine.connect() as connection:
        foreign_keys = connection.execute(text("PRAGMA foreign_keys")).scalar_one()
        event_owners = connection.execute(
            text("SELECT agent_id FROM agent_session_events ORDER BY agent_id"),
        ).scalars().all()
    repository.close()

    assert [view.status for view in views] == [AgentStatus.IDLE] * 3
    assert foreign_keys == 1
    assert event_owners == [1, 2, 3]


def test_create_or_load_resets_stopped_and_adopts_others(
    sessions: SessionRepository,
    clock: FakeClock,
) -> None:
    sessions.create_or_load(1)
    assert _begin(sessions, 1, 79, clock)
    sessions.mark_stopped(1)
    restarted = sessions.create_or_load(1)
    assert restarted.status == AgentStatus.IDLE

    sessions.create_or_load(2)
    assert _begin(sessions, 2, 80, clock)
    adopted = sessions.create_or_load(2)
    assert adopted.status == AgentStatus.WORKING
    assert adopted.current_item == 80
    assert sessions.list_events(2)[-1].details == {"adopted": True}


def test_adopting_working_session_keeps_heartbeat(
    clocked_sessions: SessionRepository,
    clock: FakeClock,
) -> None:
    clocked_sessions.create_or_load(1)
    assert _begin(clocked_sessions, 1, 79, clock)
    before = clocked_sessions.get(1)

    clock.advance(minutes=10)
    adopted = clocked_sessions.create_or_load(1)

    assert before is not None
    assert adopted.heartbeat_at == before.heartbeat_at


def test_begin_work_only_from_idle(sessions: SessionRepository, clock: FakeClock) -> None:
    sessions.create_or_load(1)

    assert _begin(sessions, 1, 79, clock) is True
    assert _begin(sessions, 1, 80, clock) is False

    view = sessions.get(1)
    assert view is not None
    assert view.status == AgentStatus.WORKING
    assert view.current_group == GROUP
    assert view.current_item == 79
    assert view.branch_name == "agent-1/item-79"

    sessions.set_status(1, AgentStatus.PAUSED, event_type="paused")
    assert _begin(sessions, 1, 80, clock) is False


def test_complete_work_counts_task_and_returns_to_idle(
    sessions: SessionRepository,
    clock: FakeClock,
) -> None:
    sessions.create_or_load(1)
    _begin(sessions, 1, 79, clock)

    assert sessions.complete_work(1, group=GROUP, item=79) is True

    view = sessions.get(1)
    assert view is not None
    assert view.status == AgentStatus.IDLE
    assert view.tasks_completed == 1
    assert view.active_key is None
    assert view.branch_name is None
    assert view.started_at is None


def test_complete_work_preserves_pause(sessions: SessionRepository, clock: FakeClock) -> None:
    sessions.create_or_load(1)
    _begin(sessions, 1, 79, clock)
    assert sessions.set_status(
        1,
        AgentStatus.PAUSED,
        expected=(AgentStatus.IDLE, AgentStatus.WORKING),
        event_type="paused",
    )

    assert sessions.complete_work(1, group=GROUP, item=79) is True

    view = sessions.get(1)
    assert view is not None
    assert view.status == AgentStatus.PAUSED
    assert view.tasks_completed == 1
    assert view.active_key is None


def test_complete_work_for_other_item_is_ignored(
    sessions: SessionRepository,
    clock: FakeClock,
) -> None:
    sessions.create_or_load(1)
    _begin(sessions, 1, 79, clock)

    assert sessions.complete_work(1, group=GROUP, item=80) is False

    view = sessions.get(1)
    assert view is not None
    assert view.current_item == 79
    assert view.tasks_completed == 0


def test_record_failure_counts_errors_unless_cancelled(
    sessions: SessionRepository,
    clock: FakeClock,
) -> None:
    sessions.create_or_load(1)
    _begin(sessions, 1, 79, clock)

    assert sessions.record_failure(
        1,
        group=GROUP,
        item=79,
        error="work timed out",
        failure_class=FailureClass.TIMEOUT,
    )
    failed = sessions.get(1)
    assert failed is not None
    assert failed.status == AgentStatus.IDLE
    assert failed.error_count == 1
    assert failed.last_error == "work timed out"
    assert failed.active_key is None

    _begin(sessions, 1, 80, clock)
    sessions.record_failure(
        1,
        group=GROUP,
        item=80,
        error="cancelled by operator",
        failure_class=FailureClass.CANCELLED,
        count_error=False,
    )
    cancelled = sessions.get(1)
    assert cancelled is not None
    assert cancelled.error_count == 1
    assert cancelled.last_error == "cancelled by operator"
    assert sessions.list_events(1)[-1].details["failure_class"] == "cancelled"


def test_set_status_respects_expected_states(sessions: SessionRepository) -> None:
    sessions.create_or_load(1)

    assert not sessions.set_status(
        1,
        AgentStatus.IDLE,
        expected=(AgentStatus.PAUSED,),
        event_type="resumed",
    )
    assert sessions.set_status(1, AgentStatus.PAUSED, event_type="paused")
    assert not sessions.set_status(1, AgentStatus.PAUSED, event_type="paused")
    assert not sessions.set_status(99, AgentStatus.PAUSED, event_type="paused")


def test_resume_restores_working_only_with_active_item(
    sessions: SessionRepository,
    clock: FakeClock,
) -> None:
    sessions.create_or_load(1)
    sessions.create_or_load(2)
    _begin(sessions, 2, 80, clock)
    for agent_id in (1, 2):
        sessions.set_status(agent_id, AgentStatus.PAUSED, event_type="paused")

    assert sessions.resume(1) is True
    assert sessions.resume(2) is True
    assert sessions.resume(2) is False

    idle, working = sessions.get(1), sessions.get(2)
    assert idle is not None
    assert working is not None
    assert idle.status == AgentStatus.IDLE
    assert working.status == AgentStatus.WORKING
    assert working.current_item == 80


def test_mark_stopped_clears_work_and_blocks_heartbeat(
    clocked_sessions: SessionRepository,
    clock: FakeClock,
) -> None:
    clocked_sessions.create_or_load(1)
    _begin(clocked_sessions, 1, 79, clock)

    assert clocked_sessions.mark_stopped(1, reason="shutdown") is True
    assert clocked_sessions.mark_stopped(1) is False
    stopped = clocked_sessions.get(1)
    assert stopped is not None
    assert stopped.status == AgentStatus.STOPPED
    assert stopped.active_key is None

    clock.advance(minutes=5)
    clocked_sessions.touch(1)
    after_touch = clocked_sessions.get(1)
    assert after_touch is not None
    assert after_touch.heartbeat_at == stopped.heartbeat_at
    assert clocked_sessions.list_events(1)[-1].details == {"reason": "shutdown"}


def test_touch_refreshes_heartbeat(clocked_sessions: SessionRepository, clock: FakeClock) -> None:
    created = clocked_sessions.create_or_load(1)

    clock.advance(seconds=30)
    clocked_sessions.touch(1)

    view = clocked_sessions.get(1)
    assert view is not None
    assert created.heartbeat_at is not None
    assert view.heartbeat_at == created.heartbeat_at + timedelta(seconds=30)


def test_clear_work_records_reason(sessions: SessionRepository, clock: FakeClock) -> None:
    sessions.create_or_load(1)
    _begin(sessions, 1, 79, clock)

    assert sessions.clear_work(1, error="lease lost", details={"reason": "recovery"})
    assert sessions.clear_work(1) is False

    view = sessions.get(1)
    assert view is not None
    assert view.status == AgentStatus.IDLE
    assert view.last_error == "lease lost"
    event = sessions.list_events(1)[-1]
    assert event.event_type == "work_cleared"
    assert event.details == {"group": GROUP, "item": 79, "reason": "recovery"}


def test_list_sessions_filters_by_status(sessions: SessionRepository) -> None:
    for agent_id in (3, 1, 2):
        sessions.create_or_load(agent_id)
    sessions.set_status(2, AgentStatus.PAUSED, event_type="paused")

    assert [view.agent_id for view in sessions.list_sessions()] == [1, 2, 3]
    assert [view.agent_id for view in sessions.list_sessions(status=AgentStatus.PAUSED)] == [2]


def test_list_events_returns_latest_in_order(sessions: SessionRepository) -> None:
    sessions.create_or_load(1)
    sessions.set_status(1, AgentStatus.PAUSED, event_type="paused")
    sessions.set_status(1, AgentStatus.IDLE, event_type="resumed")

    events = sessions.list_events(1, limit=2)

    assert [event.event_type for event in events] == ["paused", "resumed"]
    assert events[0].status_from == AgentStatus.IDLE
    assert events[0].status_to == AgentStatus.PAUSED


def test_unknown_status_is_treated_as_absent(
    sessions: SessionRepository,
    caplog: pytest.LogCaptureFixture,
) -> None:
    sessions.create_or_load(1)
    with sessions.engine.begin() as connection:
        connection.execute(text("UPDATE agent_sessions SET status = 'exploded' WHERE agent_id = 1"))

    with caplog.at_level(logging.WARNING, logger="agent_fleet.coordination.sessions"):
        assert sessions.get(1) is None
        assert sessions.list_sessions() == []
        assert sessions.set_status(1, AgentStatus.PAUSED, event_type="paused") is False

    assert "unknown status" in caplog.text


def test_concurrent_begin_work_has_single_winner(
    sessions: SessionRepository,
    workspace: Path,
    clock: FakeClock,
) -> None:
    sessions.create_or_load(1)
    contenders = 6
    barrier = threading.Barrier(contenders)
    results: list[bool] = []
    results_lock = threading.Lock()

    def _contend(item: int) -> None:
        repository = SessionRepository(workspace / "fleet.db")
        try:
            barrier.wait(timeout=5)
            won = _begin(repository, 1, item, clock)
        finally:
            repository.close()
        with results_lock:
            results.append(won)

    threads = [threading.Thread(target=_contend, args=(79 + index,)) for index in range(contenders)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=20)

    assert results.count(True) == 1
    view = sessions.get(1)
    assert view is not None
    assert view.status == AgentStatus.WORKING
