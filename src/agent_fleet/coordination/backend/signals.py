"""Completion marker files written by the work command."""

from __future__ import annotations

import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def marker_file_name(agent_id: int) -> str:
    return f"agent-{agent_id}.response.md"


class MarkerFileSignal:
    """Completion is signalled by ``{workspace}/agent-{id}.response.md`` appearing."""

    def __init__(self, workspace: Path) -> None:
        self.workspace = workspace

    def marker_path(self, agent_id: int) -> Path:
        return self.workspace / marker_file_name(agent_id)

    def is_signalled(self, agent_id: int) -> bool:
        return self.marker_path(agent_id).is_file()

    def consume(self, agent_id: int) -> bool:
        path = self.marker_path(agent_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Consumed completion marker %s", path)
        return True

    def discard(self, agent_id: int) -> None:
        path = self.marker_path(agent_id)
        try:
            path.unlink()
        except FileNotFoundError:
            return
        logger.warning("Removed stale completion marker %s", path)
