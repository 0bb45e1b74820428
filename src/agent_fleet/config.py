"""Runtime configuration for the agent fleet."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import urlparse

DEFAULT_WORKSPACE = Path(".agent_fleet")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


@dataclass(slots=True)
class ClaimSettings:
    """Lease store settings."""

    lease_ttl_seconds: int = 8 * 60 * 60
    retry_attempts: int = 3
    retry_base_seconds: float = 1.0
    lock_timeout_seconds: float = 5.0


@dataclass(slots=True)
class LoopSettings:
    """Execution loop timing."""

    group: int = 1
    tick_interval_seconds: float = 10.0
    completion_poll_seconds: float = 5.0
    execution_timeout_seconds: int = 8 * 60 * 60
    working_deadline_seconds: float = 30.0


@dataclass(slots=True)
class LifecycleSettings:
    """Stop and liveness timing."""

    heartbeat_stale_seconds: float = 60.0
    stop_grace_seconds: float = 5.0
    stop_all_timeout_seconds: float = 10.0
    emergency_stop_timeout_seconds: float = 5.0


@dataclass(slots=True)
class BacklogSettings:
    """Where candidate items come from."""

    file: Path | None = None
    url: str | None = None
    token: str | None = None
    timeout_seconds: float = 30.0


@dataclass(slots=True)
class ExecutionSettings:
    """Work command and branch handling."""

    work_command_template: str = ""
    git_repo: Path | None = None
    git_remote: str = "origin"
    git_push: bool = True


@dataclass(slots=True)
class Settings:
    """Application settings grouped by concern."""

    workspace: Path = DEFAULT_WORKSPACE
    db_path: Path = DEFAULT_WORKSPACE / "fleet.db"
    claims_path: Path = DEFAULT_WORKSPACE / "claims.json"
    sqlite_busy_timeout_ms: int = 5_000
    log_level: str = "WARNING"
    claims: ClaimSettings = field(default_factory=ClaimSettings)
    loop: LoopSettings = field(default_factory=LoopSettings)
    lifecycle: LifecycleSettings = field(default_factory=LifecycleSettings)
    backlog: BacklogSettings = field(default_factory=BacklogSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)

    @classmethod
    def from_env(cls, workspace: Path | None = None) -> Settings:
        """Load settings from environment with sane defaults for local development."""

        root = workspace or Path(os.getenv("AGENT_FLEET_WORKSPACE", str(DEFAULT_WORKSPACE)))
        backlog_file = os.getenv("AGENT_FLEET_BACKLOG_FILE", "").strip()
        git_repo = os.getenv("AGENT_FLEET_GIT_REPO", "").strip()
        return cls(
            workspace=root,
            db_path=Path(os.getenv("AGENT_FLEET_DB_PATH", str(root / "fleet.db"))),
            claims_path=Path(os.getenv("AGENT_FLEET_CLAIMS_PATH", str(root / "claims.json"))),
            sqlite_busy_timeout_ms=_env_int("AGENT_FLEET_SQLITE_BUSY_TIMEOUT_MS", 5_000),
            log_level=os.getenv("AGENT_FLEET_LOG_LEVEL", "WARNING").strip().upper(),
            claims=ClaimSettings(
                lease_ttl_seconds=_env_int("AGENT_FLEET_LEASE_TTL_SECONDS", 8 * 60 * 60),
                retry_attempts=_env_int("AGENT_FLEET_CLAIM_RETRY_ATTEMPTS", 3),
                retry_base_seconds=_env_float("AGENT_FLEET_CLAIM_RETRY_BASE_SECONDS", 1.0),
                lock_timeout_seconds=_env_float("AGENT_FLEET_CLAIM_LOCK_TIMEOUT_SECONDS", 5.0),
            ),
            loop=LoopSettings(
                group=_env_int("AGENT_FLEET_GROUP", 1),
                tick_interval_seconds=_env_float("AGENT_FLEET_TICK_INTERVAL_SECONDS", 10.0),
                completion_poll_seconds=_env_float("AGENT_FLEET_COMPLETION_POLL_SECONDS", 5.0),
                execution_timeout_seconds=_env_int(
                    "AGENT_FLEET_EXECUTION_TIMEOUT_SECONDS",
                    8 * 60 * 60,
                ),
                working_deadline_seconds=_env_float(
                    "AGENT_FLEET_WORKING_DEADLINE_SECONDS",
                    30.0,
                ),
            ),
            lifecycle=LifecycleSettings(
                heartbeat_stale_seconds=_env_float("AGENT_FLEET_HEARTBEAT_STALE_SECONDS", 60.0),
                stop_grace_seconds=_env_float("AGENT_FLEET_STOP_GRACE_SECONDS", 5.0),
                stop_all_timeout_seconds=_env_float("AGENT_FLEET_STOP_ALL_TIMEOUT_SECONDS", 10.0),
                emergency_stop_timeout_seconds=_env_float(
                    "AGENT_FLEET_EMERGENCY_STOP_TIMEOUT_SECONDS",
                    5.0,
                ),
            ),
            backlog=BacklogSettings(
                file=Path(backlog_file) if backlog_file else None,
                url=os.getenv("AGENT_FLEET_BACKLOG_URL", "").strip() or None,
                token=os.getenv("AGENT_FLEET_BACKLOG_TOKEN", "").strip() or None,
                timeout_seconds=_env_float("AGENT_FLEET_BACKLOG_TIMEOUT_SECONDS", 30.0),
            ),
            execution=ExecutionSettings(
                work_command_template=os.getenv("AGENT_FLEET_WORK_COMMAND_TEMPLATE", "").strip(),
                git_repo=Path(git_repo) if git_repo else None,
                git_remote=os.getenv("AGENT_FLEET_GIT_REMOTE", "origin").strip() or "origin",
                git_push=_env_bool("AGENT_FLEET_GIT_PUSH", default=True),
            ),
        )

    @property
    def backlog_file(self) -> Path:
        return self.backlog.file or self.workspace / "backlog.json"

    def validate(self) -> None:
        """Raise configuration error naming the offending variable."""

        if self.log_level not in LOG_LEVELS:
            raise ValueError(
                f"AGENT_FLEET_LOG_LEVEL must be one of {', '.join(LOG_LEVELS)}: {self.log_level!r}",
            )
        if self.sqlite_busy_timeout_ms <= 0:
            raise ValueError("AGENT_FLEET_SQLITE_BUSY_TIMEOUT_MS must be > 0.")
        if self.claims.lease_ttl_seconds <= 0:
            raise ValueError("AGENT_FLEET_LEASE_TTL_SECONDS must be > 0.")
        if self.claims.retry_attempts < 1:
            raise ValueError("AGENT_FLEET_CLAIM_RETRY_ATTEMPTS must be >= 1.")
        if self.claims.retry_base_seconds < 0:
            raise ValueError("AGENT_FLEET_CLAIM_RETRY_BASE_SECONDS must be >= 0.")
        if self.claims.lock_timeout_seconds <= 0:
            raise ValueError("AGENT_FLEET_CLAIM_LOCK_TIMEOUT_SECONDS must be > 0.")
        if self.loop.tick_interval_seconds <= 0:
            raise ValueError("AGENT_FLEET_TICK_INTERVAL_SECONDS must be > 0.")
        if self.loop.completion_poll_seconds <= 0:
            raise ValueError("AGENT_FLEET_COMPLETION_POLL_SECONDS must be > 0.")
        if self.loop.execution_timeout_seconds <= 0:
            raise ValueError("AGENT_FLEET_EXECUTION_TIMEOUT_SECONDS must be > 0.")
        if self.loop.execution_timeout_seconds > self.claims.lease_ttl_seconds:
            raise ValueError(
                "AGENT_FLEET_EXECUTION_TIMEOUT_SECONDS must not exceed "
                "AGENT_FLEET_LEASE_TTL_SECONDS.",
            )
        if self.loop.working_deadline_seconds <= 0:
            raise ValueError("AGENT_FLEET_WORKING_DEADLINE_SECONDS must be > 0.")
        if self.lifecycle.heartbeat_stale_seconds <= max(
            self.loop.tick_interval_seconds,
            self.loop.completion_poll_seconds,
        ):
            raise ValueError(
                "AGENT_FLEET_HEARTBEAT_STALE_SECONDS must exceed both the tick interval "
                "and the completion poll interval.",
            )
        for name, value in (
            ("AGENT_FLEET_STOP_GRACE_SECONDS", self.lifecycle.stop_grace_seconds),
            ("AGENT_FLEET_STOP_ALL_TIMEOUT_SECONDS", self.lifecycle.stop_all_timeout_seconds),
            (
                "AGENT_FLEET_EMERGENCY_STOP_TIMEOUT_SECONDS",
                self.lifecycle.emergency_stop_timeout_seconds,
            ),
        ):
            if value < 0:
                raise ValueError(f"{name} must be >= 0.")
        if self.backlog.file is not None and self.backlog.url is not None:
            raise ValueError("Set only one of AGENT_FLEET_BACKLOG_FILE and AGENT_FLEET_BACKLOG_URL.")
        if self.backlog.url is not None:
            parsed = urlparse(self.backlog.url)
            if parsed.scheme not in {"http", "https"} or not parsed.netloc:
                raise ValueError(
                    f"Invalid AGENT_FLEET_BACKLOG_URL: {self.backlog.url!r}. "
                    "Expected an absolute http:// or https:// URL.",
                )
        if self.backlog.timeout_seconds <= 0:
            raise ValueError("AGENT_FLEET_BACKLOG_TIMEOUT_SECONDS must be > 0.")
        if self.execution.git_repo is not None and not self.execution.git_repo.is_dir():
            raise ValueError(f"AGENT_FLEET_GIT_REPO is not a directory: {self.execution.git_repo}")


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {raw!r}") from error


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw.strip())
    except ValueError as error:
        raise ValueError(f"Invalid number for {name}: {raw!r}") from error


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
