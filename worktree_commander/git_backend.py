"""Read-only git access through GitPython.

Everything here is synchronous; async callers run it with
``asyncio.to_thread``. Mutations (worktree add/remove, branch deletion) live
in worktree.py and go through the git binary instead.

Every read that spawns git passes ``kill_after_timeout`` so a hung git
process is killed instead of pinning a worker thread.
"""

import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from git import Repo
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from .errors import CommandFailed, CommandTimeout, NotFound, PermanentFailure
from .models import CommitInfo, DiffModel, FileDiff, Hunk

logger = logging.getLogger(__name__)

# Untracked files larger than this are listed without content
MAX_UNTRACKED_BYTES = 512 * 1024
GIT_READ_TIMEOUT_SECONDS = 30.0

# GitPython's stderr replacement when kill_after_timeout fires
_TIMEOUT_MARKER = "did not complete in"

_DIFF_HEADER_RE = re.compile(r'^diff --git a/(.*) b/(.*)$')
_HUNK_HEADER_RE = re.compile(r'^@@ -(\d+)(?:,(\d+))? \+(\d+)(?:,(\d+))? @@')


@dataclass
class WorktreeInfo:
    """One entry of ``git worktree list --porcelain``."""
    path: str
    head: Optional[str] = None
    branch: Optional[str] = None
    bare: bool = False
    detached: bool = False
    prunable: bool = False


class GitBackend:
    """Embedded git read layer."""

    def __init__(self, timeout: float = GIT_READ_TIMEOUT_SECONDS):
        self.timeout = timeout

    def open(self, path: str) -> Repo:
        """
        Open the repository containing ``path``.

        Raises:
            NotFound: path does not exist
            PermanentFailure: path is not inside a git repository
        """
        try:
            return Repo(path, search_parent_directories=False)
        except NoSuchPathError as e:
            raise NotFound(f"Path does not exist: {path}") from e
        except InvalidGitRepositoryError as e:
            raise PermanentFailure(f"Not a git repository: {path}") from e

    def _git(self, repo: Repo, command: str, *args: str) -> str:
        """
        Run ``git <command> <args>`` in ``repo`` with the read deadline.

        Raises:
            CommandTimeout: git was killed after ``self.timeout`` seconds
            CommandFailed: git exited non-zero
        """
        label = f"git {command} {args[0]}" if args else f"git {command}"
        try:
            return getattr(repo.git, command)(*args, kill_after_timeout=self.timeout)
        except GitCommandError as e:
            stderr = str(e.stderr or "")
            if _TIMEOUT_MARKER in stderr:
                logger.warning(f"{label} in {repo.working_dir} killed after {self.timeout}s")
                raise CommandTimeout(label, self.timeout) from e
            raise CommandFailed(label, e.status or 1, stderr) from e

    def is_repository(self, path: str) -> bool:
        try:
            self.open(path)
            return True
        except (NotFound, PermanentFailure):
            return False

    def repository_root(self, path: str) -> str:
        repo = self.open(path)
        if repo.working_tree_dir is None:
            raise PermanentFailure(f"Bare repositories are not supported: {path}")
        return str(Path(repo.working_tree_dir).resolve())

    def detect_main_branch(self, path: str) -> str:
        """Return ``main`` or ``master`` if present, else the current branch."""
        repo = self.open(path)
        names = {head.name for head in repo.heads}
        for candidate in ("main", "master"):
            if candidate in names:
                return candidate
        try:
            return repo.active_branch.name
        except TypeError:
            # Detached HEAD
            return "HEAD"

    def branch_exists(self, path: str, branch: str) -> bool:
        repo = self.open(path)
        return any(head.name == branch for head in repo.heads)

    def head_commit(self, path: str) -> Optional[str]:
        """HEAD sha, or None for a repository without commits."""
        repo = self.open(path)
        try:
            return repo.head.commit.hexsha
        except ValueError:
            return None

    def is_dirty(self, path: str) -> bool:
        """True if the worktree has staged, unstaged or untracked changes."""
        repo = self.open(path)
        return bool(self._git(repo, "status", "--porcelain", "--untracked-files=normal").strip())

    def untracked_files(self, repo: Repo) -> list[str]:
        raw = self._git(repo, "ls-files", "--others", "--exclude-standard", "-z")
        return [name for name in raw.split("\0") if name]

    def recent_commits(self, path: str, limit: int = 10) -> list[CommitInfo]:
        """Newest-first commits reachable from HEAD; empty for a repository without commits."""
        repo = self.open(path)
        if not repo.head.is_valid():
            return []
        raw = self._git(repo, "log", f"--max-count={limit}", "--format=%H%x00%s%x00%an")
        commits = []
        for line in raw.splitlines():
            parts = line.split("\0")
            if len(parts) == 3:
                commits.append(CommitInfo(parts[0][:8], parts[1], parts[2]))
        return commits

    def list_worktrees(self, path: str) -> list[WorktreeInfo]:
        repo = self.open(path)
        return parse_worktree_list(self._git(repo, "worktree", "list", "--porcelain"))

    def compute_diff(self, path: str, base_ref: str = "HEAD") -> DiffModel:
        """
        Diff the working tree (staged + unstaged) against ``base_ref``.

        Untracked files are reported as whole-file additions.

        Args:
            path: Worktree directory
            base_ref: Commit-ish to diff against

        Returns:
            DiffModel with files in git's output order, untracked files last

        Raises:
            CommandTimeout: git diff or the untracked listing hung
            CommandFailed: git rejected the reference
        """
        repo = self.open(path)
        if repo.head.is_valid():
            raw = self._git(repo, "diff", base_ref, "--no-color", "--no-ext-diff", "-M")
        else:
            # No commits yet: everything staged is an addition
            raw = self._git(repo, "diff", "--cached", "--no-color", "--no-ext-diff")
        untracked = self.untracked_files(repo)

        files = parse_unified_diff(raw)
        root = Path(repo.working_tree_dir or path)
        for rel in sorted(untracked):
            files.append(_untracked_file_diff(root, rel))
        return DiffModel(files=tuple(files), base_ref=base_ref)


def parse_worktree_list(raw: str) -> list[WorktreeInfo]:
    """Parse ``git worktree list --porcelain`` output."""
    entries: list[WorktreeInfo] = []
    current: Optional[WorktreeInfo] = None
    for line in raw.splitlines():
        if line.startswith("worktree "):
            current = WorktreeInfo(path=line[len("worktree "):])
            entries.append(current)
        elif current is None:
            continue
        elif line.startswith("HEAD "):
            current.head = line[len("HEAD "):]
        elif line.startswith("branch "):
            current.branch = line[len("branch "):].removeprefix("refs/heads/")
        elif line == "bare":
            current.bare = True
        elif line == "detached":
            current.detached = True
        elif line.startswith("prunable"):
            current.prunable = True
    return entries


def parse_unified_diff(raw: str) -> list[FileDiff]:
    """Split ``git diff`` output into per-file hunks."""
    files: list[FileDiff] = []
    current: Optional[dict] = None
    hunk: Optional[dict] = None

    def close_hunk():
        nonlocal hunk
        if current is not None and hunk is not None:
            current["hunks"].append(Hunk(
                header=hunk["header"],
                old_start=hunk["old_start"],
                old_lines=hunk["old_lines"],
                new_start=hunk["new_start"],
                new_lines=hunk["new_lines"],
                lines=tuple(hunk["lines"]),
            ))
        hunk = None

    def close_file():
        close_hunk()
        if current is not None:
            old_path = current["old_path"] if current["old_path"] != current["path"] else None
            files.append(FileDiff(
                path=current["path"],
                change_type=current["change_type"],
                hunks=tuple(current["hunks"]),
                old_path=old_path,
                is_binary=current["is_binary"],
            ))

    for line in raw.splitlines():
        header = _DIFF_HEADER_RE.match(line)
        if header:
            close_file()
            current = {
                "old_path": header.group(1),
                "path": header.group(2),
                "change_type": "M",
                "hunks": [],
                "is_binary": False,
            }
            continue
        if current is None:
            continue

        hunk_header = _HUNK_HEADER_RE.match(line)
        if hunk_header:
            close_hunk()
            old_start, old_lines, new_start, new_lines = hunk_header.groups()
            hunk = {
                "header": line,
                "old_start": int(old_start),
                "old_lines": int(old_lines) if old_lines is not None else 1,
                "new_start": int(new_start),
                "new_lines": int(new_lines) if new_lines is not None else 1,
                "lines": [],
            }
            continue

        if hunk is not None and line[:1] in (" ", "+", "-", "\\"):
            hunk["lines"].append(line)
        elif hunk is not None and line == "":
            # git emits context lines for blank content as a bare space, but
            # some tools strip trailing whitespace
            hunk["lines"].append(" ")
        elif line.startswith("new file mode"):
            current["change_type"] = "A"
        elif line.startswith("deleted file mode"):
            current["change_type"] = "D"
        elif line.startswith("rename from "):
            current["change_type"] = "R"
            current["old_path"] = line[len("rename from "):]
        elif line.startswith("rename to "):
            current["path"] = line[len("rename to "):]
        elif line.startswith("Binary files"):
            current["is_binary"] = True

    close_file()
    return files


def _untracked_file_diff(root: Path, rel: str) -> FileDiff:
    file_path = root / rel
    try:
        if file_path.stat().st_size > MAX_UNTRACKED_BYTES:
            return FileDiff(path=rel, change_type="?", is_binary=True)
        data = file_path.read_bytes()
    except OSError as e:
        logger.debug(f"Could not read untracked file {file_path}: {e}")
        return FileDiff(path=rel, change_type="?")

    if b"\0" in data[:8000]:
        return FileDiff(path=rel, change_type="?", is_binary=True)

    lines = data.decode("utf-8", errors="replace").splitlines()
    if not lines:
        return FileDiff(path=rel, change_type="?")
    hunk = Hunk(
        header=f"@@ -0,0 +1,{len(lines)} @@",
        old_start=0,
        old_lines=0,
        new_start=1,
        new_lines=len(lines),
        lines=tuple(f"+{line}" for line in lines),
    )
    return FileDiff(path=rel, change_type="?", hunks=(hunk,))
