"""Git worktree lifecycle for sessions.

Reads go through GitBackend; mutations shell out to the git binary.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .errors import CommandFailed, NotFound, PermanentFailure, ResourceConflict
from .git_backend import GitBackend
from .tmux_executor import CommandOutput, CommandRunner, SubprocessRunner

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 64
GIT_TIMEOUT_SECONDS = 30.0

_UNSAFE_CHARS_RE = re.compile(r'[^a-z0-9_-]+')


def sanitize_name(name: str) -> str:
    """
    Normalize a human session name for use as a branch and directory name.

    Lowercases, replaces runs of anything other than letters, digits, ``-``
    and ``_`` with a single ``-``, and trims leading/trailing dashes.

    Raises:
        PermanentFailure: empty result or longer than MAX_NAME_LENGTH
    """
    sanitized = _UNSAFE_CHARS_RE.sub("-", name.strip().lower()).strip("-")
    if not sanitized:
        raise PermanentFailure(f"Invalid session name: {name!r}")
    if len(sanitized) > MAX_NAME_LENGTH:
        raise PermanentFailure(f"Session name too long ({len(sanitized)} > {MAX_NAME_LENGTH}): {name!r}")
    return sanitized


def branch_name(name: str, prefix: str = "") -> str:
    sanitized = sanitize_name(name)
    prefix = prefix.strip().strip("/")
    return f"{prefix}/{sanitized}" if prefix else sanitized


@dataclass
class CreatedWorktree:
    path: str
    branch: str
    head: Optional[str]


class WorktreeOrchestrator:
    """Creates and removes the worktree + branch pair backing a session."""

    def __init__(
        self,
        worktrees_dir: str,
        backend: Optional[GitBackend] = None,
        runner: Optional[CommandRunner] = None,
        timeout: float = GIT_TIMEOUT_SECONDS,
    ):
        self.worktrees_dir = Path(worktrees_dir).expanduser()
        self.backend = backend or GitBackend()
        self.runner = runner or SubprocessRunner()
        self.timeout = timeout

    def session_path(self, project_id: str, session_name: str) -> str:
        """``<worktrees_dir>/<project_id>/<session_name>``"""
        return str(self.worktrees_dir / project_id / sanitize_name(session_name))

    async def _git(self, project_root: str, *args: str) -> CommandOutput:
        argv = ["git", "-C", project_root, *args]
        logger.debug(f"Running git command: {' '.join(argv)}")
        output = await self.runner.run(argv, self.timeout)
        if not output.ok:
            raise CommandFailed(f"git {args[0]}", output.exit_code, output.stderr)
        return output

    async def check_available(self, project_root: str, branch: str, path: str):
        """
        Reject a branch/path pair that is already taken.

        Raises:
            ResourceConflict: path exists on disk or is registered as a worktree,
                or the branch already exists
        """
        if Path(path).exists():
            raise ResourceConflict(f"Worktree path already exists: {path}")

        if await asyncio.to_thread(self.backend.branch_exists, project_root, branch):
            raise ResourceConflict(f"Branch already exists: {branch}")

        resolved = str(Path(path).resolve())
        worktrees = await asyncio.to_thread(self.backend.list_worktrees, project_root)
        for wt in worktrees:
            if str(Path(wt.path).resolve()) == resolved:
                raise ResourceConflict(f"Path is already registered as a worktree: {path}")

    async def create_worktree(self, project_root: str, branch: str, path: str) -> CreatedWorktree:
        """
        Create a new branch from HEAD checked out at ``path``.

        Args:
            project_root: Main working tree of the repository
            branch: New branch name (must not exist)
            path: Worktree directory (must not exist)

        Returns:
            CreatedWorktree with the new worktree's HEAD sha
        """
        await self.check_available(project_root, branch, path)

        Path(path).parent.mkdir(parents=True, exist_ok=True)
        try:
            await self._git(project_root, "worktree", "add", "-b", branch, path)
        except CommandFailed as e:
            if "already exists" in e.stderr:
                raise ResourceConflict(f"git worktree add: {e.stderr.strip()}") from e
            raise

        head = await asyncio.to_thread(self.backend.head_commit, path)
        logger.info(f"Created worktree at {path} with branch {branch}")
        return CreatedWorktree(path=path, branch=branch, head=head)

    async def delete_worktree(
        self,
        project_root: str,
        path: str,
        branch: Optional[str] = None,
        delete_branch: bool = True,
    ):
        """
        Remove a worktree and, unless told otherwise, its branch.

        A worktree directory that has already vanished is pruned instead of
        removed. A branch that no longer exists is skipped.
        """
        if Path(path).exists():
            try:
                await self._git(project_root, "worktree", "remove", "--force", path)
                logger.info(f"Removed worktree at {path}")
            except CommandFailed as e:
                if "is not a working tree" not in e.stderr:
                    raise
                logger.warning(f"{path} is not a registered worktree, leaving directory in place")
        else:
            logger.warning(f"Worktree {path} already gone")

        await self.prune(project_root)

        if delete_branch and branch:
            if await asyncio.to_thread(self.backend.branch_exists, project_root, branch):
                await self._git(project_root, "branch", "-D", branch)
                logger.info(f"Deleted branch {branch}")
            else:
                logger.warning(f"Branch {branch} already gone")

    async def prune(self, project_root: str):
        await self._git(project_root, "worktree", "prune")

    async def validate_project(self, path: str) -> tuple[str, str]:
        """
        Resolve a project path to ``(root, main_branch)``.

        Raises:
            NotFound: path does not exist
            PermanentFailure: not a git repository or bare
        """
        if not Path(path).expanduser().exists():
            raise NotFound(f"Path does not exist: {path}")
        root = await asyncio.to_thread(self.backend.repository_root, str(Path(path).expanduser()))
        main_branch = await asyncio.to_thread(self.backend.detect_main_branch, root)
        return root, main_branch
