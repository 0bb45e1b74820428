"""Test doubles and helpers shared across test modules."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path

from agent_fleet.coordination.backend import MarkerFileSignal

GROUP = 5


class FakeClock:
    """Settable UTC clock for lease expiry tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2026, 10, 19, 9, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta: float) -> None:
        self.now += timedelta(**delta)


class ManualInvoker:
    """Records invocations; the test decides when the marker appears."""

    def __init__(self, workspace: Path, *, complete_immediately: bool = False) -> None:
        self.signal = MarkerFileSignal(workspace)
        self.complete_immediately = complete_immediately
        self.invocations: list[tuple[int, int, int, str]] = []
        self.cancelled: list[int] = []

    def invoke(self, *, agent_id: int, group: int, item: int, branch_name: str) -> None:
        self.invocations.append((agent_id, group, item, branch_name))
        if self.complete_immediately:
            self.complete(agent_id)

    def complete(self, agent_id: int) -> None:
        path = self.signal.marker_path(agent_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text("done\n", encoding="utf-8")

    def cancel(self, agent_id: int) -> None:
        self.cancelled.append(agent_id)


def write_backlog(path: Path, group: int, items: list[tuple[int, str]]) -> None:
    document = {
        str(group): [
            {"number": number, "status": status, "title": f"Item {number}"}
            for number, status in items
        ],
    }
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(document), encoding="utf-8")


def read_claims(path: Path) -> dict[str, dict[str, object]]:
    return json.loads(path.read_text(encoding="utf-8"))
