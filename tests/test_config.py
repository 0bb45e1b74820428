from __future__ import annotations

from pathlib import Path

import allure
import pytest

from agent_fleet.config import (
    BacklogSettings,
    ClaimSettings,
    ExecutionSettings,
    LifecycleSettings,
    LoopSettings,
    Settings,
)

pytestmark = [
    allure.epic("Operations"),
    allure.feature("Configuration"),
]


def test_defaults_match_documented_timings() -> None:
    settings = Settings.from_env()

    assert settings.workspace == Path(".agent_fleet")
    assert settings.claims_path == Path(".agent_fleet") / "claims.json"
    assert settings.claims.lease_ttl_seconds == 8 * 60 * 60
    assert settings.loop.tick_interval_seconds == 10.0
    assert settings.loop.completion_poll_seconds == 5.0
    assert settings.loop.working_deadline_seconds == 30.0
    assert settings.lifecycle.stop_all_timeout_seconds == 10.0
    assert settings.lifecycle.emergency_stop_timeout_seconds == 5.0
    assert settings.backlog_file == Path(".agent_fleet") / "backlog.json"
    settings.validate()


def test_from_env_reads_overrides(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_FLEET_WORKSPACE", str(tmp_path))
    monkeypatch.setenv("AGENT_FLEET_GROUP", "5")
    monkeypatch.setenv("AGENT_FLEET_TICK_INTERVAL_SECONDS", "2.5")
    monkeypatch.setenv("AGENT_FLEET_LOG_LEVEL", "info")
    monkeypatch.setenv("AGENT_FLEET_BACKLOG_URL", "https://backlog.example/api")
    monkeypatch.setenv("AGENT_FLEET_GIT_PUSH", "no")

    settings = Settings.from_env()

    assert settings.workspace == tmp_path
    assert settings.db_path == tmp_path / "fleet.db"
    assert settings.loop.group == 5
    assert settings.loop.tick_interval_seconds == 2.5
    assert settings.log_level == "INFO"
    assert settings.backlog.url == "https://backlog.example/api"
    assert settings.execution.git_push is False
    settings.validate()


def test_explicit_workspace_wins_over_env(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("AGENT_FLEET_WORKSPACE", "/somewhere/else")

    settings = Settings.from_env(workspace=tmp_path)

    assert settings.workspace == tmp_path
    assert settings.claims_path == tmp_path / "claims.json"


@pytest.mark.parametrize(
    ("name", "value", "message"),
    [
        ("AGENT_FLEET_GROUP", "five", "Invalid integer value for AGENT_FLEET_GROUP"),
        ("AGENT_FLEET_TICK_INTERVAL_SECONDS", "soon", "Invalid number"),
        ("AGENT_FLEET_GIT_PUSH", "maybe", "Invalid boolean value"),
    ],
)
def test_from_env_rejects_malformed_values(
    monkeypatch: pytest.MonkeyPatch,
    name: str,
    value: str,
    message: str,
) -> None:
    monkeypatch.setenv(name, value)

    with pytest.raises(ValueError, match=message):
        Settings.from_env()


def test_validate_rejects_unknown_log_level() -> None:
    with pytest.raises(ValueError, match="AGENT_FLEET_LOG_LEVEL"):
        Settings(log_level="LOUD").validate()


def test_validate_rejects_execution_timeout_beyond_lease_ttl() -> None:
    settings = Settings(
        claims=ClaimSettings(lease_ttl_seconds=3600),
        loop=LoopSettings(execution_timeout_seconds=7200),
    )

    with pytest.raises(ValueError, match="must not exceed"):
        settings.validate()


def test_validate_rejects_heartbeat_shorter_than_tick() -> None:
    settings = Settings(
        loop=LoopSettings(tick_interval_seconds=30),
        lifecycle=LifecycleSettings(heartbeat_stale_seconds=20),
    )

    with pytest.raises(ValueError, match="AGENT_FLEET_HEARTBEAT_STALE_SECONDS"):
        settings.validate()


def test_validate_rejects_non_positive_retry_attempts() -> None:
    with pytest.raises(ValueError, match="AGENT_FLEET_CLAIM_RETRY_ATTEMPTS"):
        Settings(claims=ClaimSettings(retry_attempts=0)).validate()


def test_validate_rejects_two_backlog_sources() -> None:
    settings = Settings(
        backlog=BacklogSettings(file=Path("backlog.json"), url="https://backlog.example"),
    )

    with pytest.raises(ValueError, match="Set only one"):
        settings.validate()


def test_validate_rejects_relative_backlog_url() -> None:
    with pytest.raises(ValueError, match="Invalid AGENT_FLEET_BACKLOG_URL"):
        Settings(backlog=BacklogSettings(url="backlog.example/api")).validate()


def test_validate_rejects_missing_git_repo(tmp_path: Path) -> None:
    settings = Settings(execution=ExecutionSettings(git_repo=tmp_path / "missing"))

    with pytest.raises(ValueError, match="AGENT_FLEET_GIT_REPO"):
        settings.validate()
