"""CLI entrypoint for agent-fleet."""

import logging
from collections.abc import Callable
from pathlib import Path

import rich_click as click

from agent_fleet import __version__
from agent_fleet.config import LOG_LEVELS, Settings
from agent_fleet.coordination.controllers import (
    AgentCommand,
    AgentEventsCommand,
    AvailableItemsCommand,
    EmergencyStopCommand,
    FleetCliController,
    FleetCommand,
    ReassignCommand,
    ReleaseClaimCommand,
    RunAgentsCommand,
)
from agent_fleet.coordination.errors import (
    AgentLifecycleError,
    ClaimStoreError,
    ExecutionError,
    OverrideError,
)

click.rich_click.USE_MARKDOWN = True
FLEET_CONTROLLER = FleetCliController()

_workspace_option = click.option(
    "--workspace",
    type=click.Path(file_okay=False, path_type=Path),
    default=None,
    help="Workspace directory (claims, session DB, markers). Defaults to AGENT_FLEET_WORKSPACE.",
)


@click.group()
@click.version_option(version=__version__, prog_name="agent-fleet")
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS, case_sensitive=False),
    default=None,
    help="Logging level. Defaults to AGENT_FLEET_LOG_LEVEL or WARNING.",
)
def agent_fleet(log_level: str | None) -> None:
    """Coordinate worker agents pulling items from a shared backlog."""

    try:
        settings = Settings.from_env()
    except ValueError as error:
        raise click.ClickException(str(error)) from error
    level = (log_level or settings.log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@agent_fleet.command("run")
@_workspace_option
@click.option(
    "--agent",
    "agent_ids",
    type=click.IntRange(min=1),
    multiple=True,
    required=True,
    help="Agent id to host. Can be repeated.",
)
@click.option(
    "--max-seconds",
    type=click.FloatRange(min=0),
    default=None,
    help="Stop all agents after this many seconds (default: until SIGINT/SIGTERM).",
)
def run(workspace: Path | None, agent_ids: tuple[int, ...], max_seconds: float | None) -> None:
    """Host agent execution loops in the foreground."""

    _emit(
        lambda: FLEET_CONTROLLER.run_agents(
            RunAgentsCommand(workspace=workspace, agent_ids=agent_ids, max_seconds=max_seconds),
        ),
    )


@agent_fleet.group()
def agent() -> None:
    """Agent lifecycle and override commands."""


@agent.command("tick")
@_workspace_option
@click.argument("agent_id", type=click.IntRange(min=1))
def agent_tick(workspace: Path | None, agent_id: int) -> None:
    """Run one synchronous tick for an agent (creates its session if needed)."""

    _emit(lambda: FLEET_CONTROLLER.tick_agent(AgentCommand(workspace=workspace, agent_id=agent_id)))


@agent.command("pause")
@_workspace_option
@click.argument("agent_id", type=click.IntRange(min=1))
def agent_pause(workspace: Path | None, agent_id: int) -> None:
    """Pause a running agent; in-flight work finishes its current cycle."""

    _emit(lambda: FLEET_CONTROLLER.pause_agent(AgentCommand(workspace=workspace, agent_id=agent_id)))


@agent.command("resume")
@_workspace_option
@click.argument("agent_id", type=click.IntRange(min=1))
def agent_resume(workspace: Path | None, agent_id: int) -> None:
    """Resume a paused agent."""

    _emit(
        lambda: FLEET_CONTROLLER.resume_agent(AgentCommand(workspace=workspace, agent_id=agent_id)),
    )


@agent.command("stop")
@_workspace_option
@click.argument("agent_id", type=click.IntRange(min=1))
def agent_stop(workspace: Path | None, agent_id: int) -> None:
    """Stop an agent and release its in-flight item."""

    _emit(lambda: FLEET_CONTROLLER.stop_agent(AgentCommand(workspace=workspace, agent_id=agent_id)))


@agent.command("pause-all")
@_workspace_option
def agent_pause_all(workspace: Path | None) -> None:
    """Pause every running agent."""

    _emit(lambda: FLEET_CONTROLLER.pause_all(FleetCommand(workspace=workspace)))


@agent.command("resume-all")
@_workspace_option
def agent_resume_all(workspace: Path | None) -> None:
    """Resume every paused agent."""

    _emit(lambda: FLEET_CONTROLLER.resume_all(FleetCommand(workspace=workspace)))


@agent.command("reassign")
@_workspace_option
@click.argument("agent_id", type=click.IntRange(min=1))
@click.option(
    "--to",
    "new_agent_id",
    type=click.IntRange(min=1),
    default=None,
    help="Hand the item to this agent instead of returning it to the backlog.",
)
def agent_reassign(workspace: Path | None, agent_id: int, new_agent_id: int | None) -> None:
    """Take an agent's active item away from it."""

    _emit(
        lambda: FLEET_CONTROLLER.reassign(
            ReassignCommand(workspace=workspace, agent_id=agent_id, new_agent_id=new_agent_id),
        ),
    )


@agent.command("emergency-stop")
@_workspace_option
@click.option("--yes", "skip_confirmation", is_flag=True, help="Skip the confirmation prompt.")
def agent_emergency_stop(workspace: Path | None, skip_confirmation: bool) -> None:
    """Force-stop every running agent."""

    _emit(
        lambda: FLEET_CONTROLLER.emergency_stop(
            EmergencyStopCommand(
                workspace=workspace,
                skip_confirmation=skip_confirmation,
                confirm=_confirm_emergency_stop,
            ),
        ),
    )


@agent.command("status")
@_workspace_option
def agent_status(workspace: Path | None) -> None:
    """Show every agent session."""

    _emit(lambda: FLEET_CONTROLLER.agent_status(FleetCommand(workspace=workspace)))


@agent.command("events")
@_workspace_option
@click.argument("agent_id", type=click.IntRange(min=1))
@click.option(
    "--limit",
    type=click.IntRange(min=1, max=500),
    default=50,
    show_default=True,
    help="Max events to print.",
)
def agent_events(workspace: Path | None, agent_id: int, limit: int) -> None:
    """Show an agent's session event trail."""

    _emit(
        lambda: FLEET_CONTROLLER.agent_events(
            AgentEventsCommand(workspace=workspace, agent_id=agent_id, limit=limit),
        ),
    )


@agent_fleet.group()
def claims() -> None:
    """Lease store commands."""


@claims.command("list")
@_workspace_option
def claims_list(workspace: Path | None) -> None:
    """List live leases."""

    _emit(lambda: FLEET_CONTROLLER.list_claims(FleetCommand(workspace=workspace)))


@claims.command("sweep")
@_workspace_option
def claims_sweep(workspace: Path | None) -> None:
    """Remove expired leases."""

    _emit(lambda: FLEET_CONTROLLER.sweep_claims(FleetCommand(workspace=workspace)))


@claims.command("available")
@_workspace_option
@click.option("--group", type=int, default=None, help="Backlog group (default: AGENT_FLEET_GROUP).")
def claims_available(workspace: Path | None, group: int | None) -> None:
    """List eligible backlog items without a live lease."""

    _emit(
        lambda: FLEET_CONTROLLER.available_items(
            AvailableItemsCommand(workspace=workspace, group=group),
        ),
    )


@claims.command("release")
@_workspace_option
@click.argument("group", type=int)
@click.argument("item", type=int)
def claims_release(workspace: Path | None, group: int, item: int) -> None:
    """Release one lease regardless of its owner."""

    _emit(
        lambda: FLEET_CONTROLLER.release_claim(
            ReleaseClaimCommand(workspace=workspace, group=group, item=item),
        ),
    )


@claims.command("clear")
@_workspace_option
@click.option("--yes", "confirmed", is_flag=True, help="Confirm dropping every lease.")
def claims_clear(workspace: Path | None, confirmed: bool) -> None:
    """Drop every lease."""

    if not confirmed:
        raise click.ClickException("Refusing to clear all leases without --yes.")
    _emit(lambda: FLEET_CONTROLLER.clear_claims(FleetCommand(workspace=workspace)))


def _confirm_emergency_stop(agent_count: int) -> bool:
    return click.confirm(
        f"Emergency stop all {agent_count} agent(s)? In-flight work will be cancelled.",
        default=False,
    )


def _emit(action: Callable[[], list[str]]) -> None:
    try:
        lines = action()
    except (AgentLifecycleError, OverrideError, ClaimStoreError, ExecutionError, ValueError) as error:
        raise click.ClickException(str(error)) from error
    _emit_lines(lines)


def _emit_lines(lines: list[str]) -> None:
    for line in lines:
        click.echo(line)


if __name__ == "__main__":  # pragma: no cover
    agent_fleet()
