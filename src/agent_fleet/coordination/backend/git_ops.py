"""Branch operations through the ``git`` command line."""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from agent_fleet.coordination.errors import BranchOperationError

logger = logging.getLogger(__name__)

DEFAULT_GIT_TIMEOUT_SECONDS = 120


class GitBranchOperations:
    """Create work branches in a local clone and push them to a remote."""

    def __init__(
        self,
        repo_path: Path,
        *,
        remote: str = "origin",
        push_enabled: bool = True,
        timeout_seconds: int = DEFAULT_GIT_TIMEOUT_SECONDS,
    ) -> None:
        self.repo_path = repo_path
        self.remote = remote
        self.push_enabled = push_enabled
        self.timeout_seconds = timeout_seconds

    def create_branch(self, name: str) -> None:
        self._git("checkout", "-B", name)
        logger.info("Checked out branch %s in %s", name, self.repo_path)

    def push(self, name: str) -> None:
        if not self.push_enabled:
            logger.info("Push disabled, keeping branch %s local", name)
            return
        self._git("push", "--set-upstream", self.remote, name)
        logger.info("Pushed branch %s to %s", name, self.remote)

    def _git(self, *args: str) -> str:
        command = ["git", *args]
        try:
            completed = subprocess.run(  # noqa: S603
                command,
                cwd=self.repo_path,
                capture_output=True,
                text=True,
                timeout=self.timeout_seconds,
                check=False,
            )
        except FileNotFoundError as error:
            raise BranchOperationError("git executable not found") from error
        except subprocess.TimeoutExpired as error:
            raise BranchOperationError(
                f"git {args[0]} timed out after {self.timeout_seconds}s",
            ) from error
        except OSError as error:
            raise BranchOperationError(f"git {args[0]} failed to start: {error}") from error
        if completed.returncode != 0:
            stderr = completed.stderr.strip() or completed.stdout.strip()
            raise BranchOperationError(
                f"git {' '.join(args)} exited with {completed.returncode}: {stderr}",
            )
        return completed.stdout


class DryRunBranchOperations:
    """Log branch operations without touching any repository."""

    def __init__(self) -> None:
        self.created: list[str] = []
        self.pushed: list[str] = []

    def create_branch(self, name: str) -> None:
        logger.info("[dry-run] create branch %s", name)
        self.created.append(name)

    def push(self, name: str) -> None:
        logger.info("[dry-run] push branch %s", name)
        self.pushed.append(name)
