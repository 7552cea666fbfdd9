"""Shared pytest fixtures for Worktree Commander tests."""

import asyncio
import shutil
from pathlib import Path
from typing import Optional
from unittest.mock import MagicMock

import pytest

from worktree_commander.config import Config
from worktree_commander.content_cache import ContentCache
from worktree_commander.diff_cache import DiffCache
from worktree_commander.errors import ResourceConflict
from worktree_commander.models import DiffModel
from worktree_commander.orchestrator import SessionOrchestrator
from worktree_commander.state_store import JsonStateStore
from worktree_commander.tmux_executor import CommandOutput, TmuxExecutor
from worktree_commander.worktree import CreatedWorktree, sanitize_name


class FakeTmuxRunner:
    """
    In-memory stand-in for the tmux binary.

    Keeps a table of sessions and answers the subset of tmux commands the
    executor issues. ``failures`` maps a tmux subcommand to a queue of
    outputs returned instead of the simulated result.
    """

    def __init__(self, delay: float = 0.0):
        self.sessions: dict[str, dict] = {}
        self.calls: list[list[str]] = []
        self.failures: dict[str, list[CommandOutput]] = {}
        self.delay = delay
        self.in_flight = 0
        self.peak_in_flight = 0

    def fail(self, subcommand: str, *outputs: CommandOutput):
        self.failures.setdefault(subcommand, []).extend(outputs)

    def calls_for(self, subcommand: str, target: Optional[str] = None) -> list[list[str]]:
        return [
            argv for argv in self.calls
            if argv[1] == subcommand and (target is None or target in argv)
        ]

    def set_content(self, session_name: str, content: str):
        self.sessions[session_name]["content"] = content

    async def run(self, argv: list[str], timeout: float, cwd: Optional[str] = None) -> CommandOutput:
        self.calls.append(list(argv))
        self.in_flight += 1
        self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            queued = self.failures.get(argv[1])
            if queued:
                return queued.pop(0)
            return self._handle(argv[1:])
        finally:
            self.in_flight -= 1

    def _handle(self, args: list[str]) -> CommandOutput:
        cmd = args[0]
        if cmd == "-V":
            return CommandOutput(0, "tmux 3.4\n")
        if cmd == "new-session":
            name = args[args.index("-s") + 1]
            if name in self.sessions:
                return CommandOutput(1, "", f"duplicate session: {name}\n")
            self.sessions[name] = {
                "cwd": args[args.index("-c") + 1],
                "program": args[-1],
                "content": "",
                "dead": False,
                "keys": [],
            }
            return CommandOutput(0)
        if cmd == "list-sessions":
            if not self.sessions:
                return CommandOutput(1, "", "no server running on /tmp/tmux-1000/default\n")
            return CommandOutput(0, "".join(f"{name}\n" for name in self.sessions))

        target = args[args.index("-t") + 1]
        if target not in self.sessions:
            return CommandOutput(1, "", f"can't find session: {target}\n")
        session = self.sessions[target]
        if cmd in ("has-session", "set-option"):
            return CommandOutput(0)
        if cmd == "kill-session":
            del self.sessions[target]
            return CommandOutput(0)
        if cmd == "capture-pane":
            return CommandOutput(0, session["content"])
        if cmd == "send-keys":
            session["keys"].append(args[args.index("-t") + 2:])
            return CommandOutput(0)
        if cmd == "list-panes":
            return CommandOutput(0, "1\n" if session["dead"] else "0\n")
        return CommandOutput(1, "", f"unknown command {cmd}\n")


class FakeWorktreeOrchestrator:
    """Worktree layer that creates plain directories instead of git worktrees."""

    def __init__(self, worktrees_dir: str):
        self.worktrees_dir = Path(worktrees_dir)
        self.backend = MagicMock()
        self.backend.compute_diff.return_value = DiffModel()
        self.branches: set[str] = set()
        self.created: list[tuple[str, str]] = []
        self.deleted: list[tuple[str, Optional[str], bool]] = []
        self.delete_error: Optional[Exception] = None

    def session_path(self, project_id: str, session_name: str) -> str:
        return str(self.worktrees_dir / project_id / sanitize_name(session_name))

    async def validate_project(self, path: str) -> tuple[str, str]:
        return str(Path(path).resolve()), "main"

    async def create_worktree(self, project_root: str, branch: str, path: str) -> CreatedWorktree:
        if Path(path).exists():
            raise ResourceConflict(f"Worktree path already exists: {path}")
        if branch in self.branches:
            raise ResourceConflict(f"Branch already exists: {branch}")
        await asyncio.sleep(0)
        Path(path).mkdir(parents=True)
        self.branches.add(branch)
        self.created.append((path, branch))
        return CreatedWorktree(path=path, branch=branch, head="abc1234")

    async def delete_worktree(self, project_root: str, path: str, branch: Optional[str] = None,
                              delete_branch: bool = True):
        if self.delete_error:
            raise self.delete_error
        shutil.rmtree(path, ignore_errors=True)
        if delete_branch and branch:
            self.branches.discard(branch)
        self.deleted.append((path, branch, delete_branch))


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def fake_runner() -> FakeTmuxRunner:
    return FakeTmuxRunner()


@pytest.fixture
def executor(fake_runner: FakeTmuxRunner) -> TmuxExecutor:
    """TmuxExecutor over the fake runner, with no real sleeping between retries."""
    async def no_sleep(seconds: float):
        return None

    return TmuxExecutor(runner=fake_runner, send_keys_settle_seconds=0, sleep=no_sleep)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config(tmp_path: Path) -> Config:
    return Config(
        worktrees_dir=str(tmp_path / "worktrees"),
        state_file=str(tmp_path / "state.json"),
        default_program="claude",
    )


@pytest.fixture
def repo_dir(tmp_path: Path) -> Path:
    path = tmp_path / "repo"
    path.mkdir()
    return path


@pytest.fixture
def fake_worktrees(config: Config) -> FakeWorktreeOrchestrator:
    return FakeWorktreeOrchestrator(config.worktrees_dir)


@pytest.fixture
def orchestrator(config, executor, fake_worktrees, clock) -> SessionOrchestrator:
    """
    SessionOrchestrator wired to fakes: no tmux or git binary needed.

    Both caches run on the manual clock so TTL windows only pass when a test
    advances it.
    """
    return SessionOrchestrator(
        config,
        executor=executor,
        worktrees=fake_worktrees,
        content_cache=ContentCache(executor, ttl_ms=config.content_cache_ttl_ms, clock=clock),
        diff_cache=DiffCache(fake_worktrees.backend, ttl_ms=config.diff_cache_ttl_ms, clock=clock),
        store=JsonStateStore(config.state_file),
    )



@pytest.fixture
def git_repo(tmp_path: Path) -> Path:
    """A real git repository with one commit on its default branch."""
    from git import Repo

    path = tmp_path / "project"
    path.mkdir()
    repo = Repo.init(path)
    (path / "README.md").write_text("hello\n")
    repo.index.add(["README.md"])
    repo.index.commit("initial")
    return path
