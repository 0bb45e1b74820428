"""Domain models for leases, agent sessions and execution state."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class AgentStatus(str, Enum):
    """Durable agent session states."""

    IDLE = "idle"
    WORKING = "working"
    PAUSED = "paused"
    STOPPED = "stopped"


class ItemStatus(str, Enum):
    """Backlog item states reported by the backlog source."""

    TODO = "todo"
    BACKLOG = "backlog"
    IN_PROGRESS = "in-progress"
    DONE = "done"

    @classmethod
    def parse(cls, value: str) -> ItemStatus | None:
        normalized = value.strip().lower().replace("_", "-").replace(" ", "-")
        try:
            return cls(normalized)
        except ValueError:
            return None


ELIGIBLE_ITEM_STATUSES = frozenset({ItemStatus.TODO, ItemStatus.BACKLOG})


class FailureClass(str, Enum):
    """Normalized classes for recorded execution failures."""

    TIMEOUT = "timeout"
    CANCELLED = "cancelled"
    BRANCH = "branch"
    INVOCATION = "invocation"
    BACKLOG = "backlog"
    CLAIM_STORE = "claim_store"
    INTERRUPTED = "interrupted"
    UNEXPECTED = "unexpected"


@dataclass(frozen=True, slots=True)
class LeaseKey:
    """(backlog group, item) pair identifying one claimable unit."""

    group: int
    item: int

    def __str__(self) -> str:
        return lease_key(self.group, self.item)


def lease_key(group: int, item: int) -> str:
    return f"{group}-{item}"


def owner_id_for(agent_id: int) -> str:
    return f"agent-{agent_id}"


@dataclass(frozen=True, slots=True)
class Lease:
    """Time-bounded exclusive assignment of one backlog item to one owner."""

    owner_id: str
    claimed_at: datetime
    group: int
    item: int

    @property
    def key(self) -> LeaseKey:
        return LeaseKey(group=self.group, item=self.item)


@dataclass(frozen=True, slots=True)
class BacklogItem:
    """One backlog entry; ``number`` doubles as the priority key."""

    number: int
    status: str
    title: str = ""

    @property
    def item_status(self) -> ItemStatus | None:
        return ItemStatus.parse(self.status)

    @property
    def is_eligible(self) -> bool:
        return self.item_status in ELIGIBLE_ITEM_STATUSES


@dataclass(slots=True)
class AgentSessionView:
    """Readable agent session for loop, lifecycle and CLI logic."""

    agent_id: int
    status: AgentStatus
    current_group: int | None
    current_item: int | None
    branch_name: str | None
    started_at: datetime | None
    tasks_completed: int
    error_count: int
    last_error: str | None
    heartbeat_at: datetime | None
    created_at: datetime
    updated_at: datetime

    @property
    def owner_id(self) -> str:
        return owner_id_for(self.agent_id)

    @property
    def active_key(self) -> LeaseKey | None:
        if self.current_group is None or self.current_item is None:
            return None
        return LeaseKey(group=self.current_group, item=self.current_item)


@dataclass(slots=True)
class AgentSessionEventView:
    """Session event entry for audit trail."""

    event_id: int
    agent_id: int
    event_type: str
    status_from: AgentStatus | None
    status_to: AgentStatus | None
    created_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ExecutionState:
    """Transient per-agent execution state, never persisted."""

    agent_id: int
    is_executing: bool = False
    current_group: int | None = None
    current_item: int | None = None
    started_at: datetime | None = None

    def begin(self, *, group: int, item: int, started_at: datetime) -> None:
        self.is_executing = True
        self.current_group = group
        self.current_item = item
        self.started_at = started_at

    def reset(self) -> None:
        self.is_executing = False
        self.current_group = None
        self.current_item = None
        self.started_at = None


@dataclass(slots=True)
class ExecutionResult:
    """Outcome of one claimed item's execution cycle."""

    agent_id: int
    group: int
    item: int
    branch_name: str
    success: bool
    duration_seconds: float
    error: str | None = None
    failure_class: FailureClass | None = None


@dataclass(slots=True)
class FleetStatusSummary:
    """Counts of agents per state for operator displays."""

    total: int = 0
    running: int = 0
    idle: int = 0
    working: int = 0
    paused: int = 0
    stopped: int = 0
