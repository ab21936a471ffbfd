"""Unified diff source for workflow branches.

Usage:
    >>> source = GitDiffSource(timeout_seconds=30)
    >>> diff = await source.get_diff("/repo", "main", "autarch/wf_abc123")
"""

import asyncio
from typing import Protocol

import structlog

logger = structlog.get_logger()


class DiffUnavailableError(RuntimeError):
    """Raised when the diff between two refs cannot be produced."""


class DiffSource(Protocol):
    async def get_diff(self, project_root: str, base_branch: str, branch: str) -> str:
        """Return the unified diff of ``branch`` against ``base_branch``."""
        ...


class GitDiffSource:
    """Diff source backed by the ``git`` command line.

    Runs ``git diff base...branch``: the changes on ``branch`` since it
    diverged from ``base_branch``.
    """

    def __init__(self, git_binary: str = "git", timeout_seconds: float = 60.0) -> None:
        self.git_binary = git_binary
        self.timeout_seconds = timeout_seconds

    async def get_diff(self, project_root: str, base_branch: str, branch: str) -> str:
        """Get the diff between two branches.

        Args:
            project_root: Repository to run git in
            base_branch: Branch the work started from
            branch: Workflow branch

        Returns:
            The unified diff text (empty if the branches do not differ).

        Raises:
            DiffUnavailableError: If git is missing, fails, or times out.
        """
        command = [self.git_binary, "diff", f"{base_branch}...{branch}"]
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=project_root,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise DiffUnavailableError(f"git binary not found: {self.git_binary}") from exc

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.timeout_seconds
            )
        except TimeoutError as exc:
            process.kill()
            await process.wait()
            raise DiffUnavailableError(
                f"git diff timed out after {self.timeout_seconds}s"
            ) from exc

        if process.returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise DiffUnavailableError(
                f"git diff exited with {process.returncode}: {message}"
            )

        diff = stdout.decode("utf-8", errors="replace")
        logger.debug(
            "git_diff_loaded",
            base_branch=base_branch,
            branch=branch,
            size=len(diff),
        )
        return diff
