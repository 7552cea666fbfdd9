"""tmux invocation behind a bounded admission gate."""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Protocol

from .errors import (
    CommandFailed,
    CommandTimeout,
    NotFound,
    PermanentFailure,
    ResourceConflict,
    TransientExternalFailure,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_CONCURRENT = 16
DEFAULT_TIMEOUT_SECONDS = 5.0
DEFAULT_MAX_RETRIES = 3
BACKOFF_BASE_SECONDS = 0.05
BACKOFF_CAP_SECONDS = 1.0

# stderr fragments, lowercased
NOT_FOUND_MARKERS = (
    "can't find session",
    "can't find pane",
    "can't find window",
    "session not found",
    "no server running",
    "no such file or directory",
)
TRANSIENT_MARKERS = (
    "error connecting",
    "resource temporarily unavailable",
    "server exited unexpectedly",
    "lost server",
)
CONFLICT_MARKERS = ("duplicate session",)


@dataclass
class CommandOutput:
    """Result of one external process invocation."""
    exit_code: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_code == 0


class CommandRunner(Protocol):
    """Spawns a process and collects its output.

    Implementations raise CommandTimeout when ``timeout`` expires, after
    killing the process. ``cwd`` is the working directory for the process.
    """

    async def run(self, argv: list[str], timeout: float, cwd: Optional[str] = None) -> CommandOutput:
        ...


class SubprocessRunner:
    """CommandRunner backed by asyncio subprocesses."""

    async def run(self, argv: list[str], timeout: float, cwd: Optional[str] = None) -> CommandOutput:
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=cwd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as e:
            raise PermanentFailure(f"{argv[0]} is not installed", detail=str(e)) from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CommandTimeout(" ".join(argv[:2]), timeout)

        return CommandOutput(
            exit_code=proc.returncode,
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
        )


class TmuxExecutor:
    """Runs tmux commands with an admission limit, timeouts and failure classification.

    At most ``max_concurrent`` tmux processes exist at any time; callers over
    the limit wait on the semaphore in arrival order. Transient failures are
    retried with exponential backoff outside the gate so a sleeping retry does
    not hold a slot.
    """

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        max_concurrent: int = DEFAULT_MAX_CONCURRENT,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        max_retries: int = DEFAULT_MAX_RETRIES,
        backoff_base: float = BACKOFF_BASE_SECONDS,
        backoff_cap: float = BACKOFF_CAP_SECONDS,
        send_keys_settle_seconds: float = 0.3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if max_concurrent < 1:
            raise ValueError("max_concurrent must be at least 1")
        self.runner = runner or SubprocessRunner()
        self.max_concurrent = max_concurrent
        self.timeout = timeout
        self.max_retries = max_retries
        self.backoff_base = backoff_base
        self.backoff_cap = backoff_cap
        self.send_keys_settle_seconds = send_keys_settle_seconds
        self._sleep = sleep
        self._semaphore = asyncio.Semaphore(max_concurrent)

        self.in_flight = 0
        self.peak_in_flight = 0
        self.invocations: Counter = Counter()  # target -> count

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number ``attempt`` (0-based)."""
        return min(self.backoff_base * (2 ** attempt), self.backoff_cap)

    async def run(self, *args: str, target: Optional[str] = None, timeout: Optional[float] = None) -> CommandOutput:
        """
        Run a tmux command, retrying transient failures.

        Args:
            args: tmux arguments (without the leading "tmux")
            target: Session name used for invocation accounting
            timeout: Override of the per-call deadline

        Returns:
            CommandOutput of the successful invocation

        Raises:
            NotFound, CommandFailed, CommandTimeout, ResourceConflict, or
            TransientExternalFailure once retries are exhausted.
        """
        argv = ["tmux", *args]
        deadline = timeout if timeout is not None else self.timeout
        attempt = 0
        while True:
            try:
                output = await self._invoke(argv, target, deadline)
                return self._check(argv, output)
            except TransientExternalFailure as e:
                if attempt >= self.max_retries:
                    logger.warning(f"Giving up on {' '.join(argv[:2])} after {attempt + 1} attempts: {e}")
                    raise
                delay = self.backoff_delay(attempt)
                logger.debug(f"Transient tmux failure ({e}), retrying in {delay:.2f}s")
                attempt += 1
                await self._sleep(delay)

    async def _invoke(self, argv: list[str], target: Optional[str], timeout: float) -> CommandOutput:
        async with self._semaphore:
            self.in_flight += 1
            self.peak_in_flight = max(self.peak_in_flight, self.in_flight)
            if target:
                self.invocations[target] += 1
            logger.debug(f"Running tmux command: {' '.join(argv)}")
            try:
                return await self.runner.run(argv, timeout)
            finally:
                self.in_flight -= 1

    def _check(self, argv: list[str], output: CommandOutput) -> CommandOutput:
        if output.ok:
            return output

        command = " ".join(argv[:2])
        stderr = output.stderr.lower()
        if any(marker in stderr for marker in CONFLICT_MARKERS):
            raise ResourceConflict(f"{command}: {output.stderr.strip()}")
        if any(marker in stderr for marker in NOT_FOUND_MARKERS):
            raise NotFound(f"{command}: {output.stderr.strip()}")
        if any(marker in stderr for marker in TRANSIENT_MARKERS):
            raise TransientExternalFailure(f"{command}: {output.stderr.strip()}")
        raise CommandFailed(command, output.exit_code, output.stderr)

    # --- tmux operations ---

    async def is_installed(self) -> bool:
        try:
            await self.run("-V")
            return True
        except PermanentFailure:
            return False

    async def session_exists(self, session_name: str) -> bool:
        """Check if a tmux session exists."""
        try:
            await self.run("has-session", "-t", session_name, target=session_name)
            return True
        except NotFound:
            return False
        except CommandFailed:
            # has-session exits 1 with an empty stderr on some tmux builds
            return False

    async def new_session(
        self,
        session_name: str,
        working_dir: str,
        program: str,
        width: int = 200,
        height: int = 50,
    ):
        """
        Create a detached tmux session running ``program`` in ``working_dir``.

        The pane is kept after the program exits so its last output stays
        inspectable and pane death can be detected.
        """
        await self.run(
            "new-session",
            "-d",
            "-s", session_name,
            "-c", working_dir,
            "-x", str(width),
            "-y", str(height),
            program,
            target=session_name,
        )
        await self.run("set-option", "-t", session_name, "remain-on-exit", "on", target=session_name)
        logger.info(f"Created tmux session {session_name} in {working_dir} running {program}")

    async def kill_session(self, session_name: str) -> bool:
        """Kill a tmux session. Returns False if it was already gone."""
        try:
            await self.run("kill-session", "-t", session_name, target=session_name)
            logger.info(f"Killed tmux session {session_name}")
            return True
        except NotFound:
            logger.warning(f"tmux session {session_name} was already gone")
            return False

    async def send_keys(self, session_name: str, *keys: str):
        """Send tmux key names (Enter, C-c, Up, ...) to a session."""
        await self.run("send-keys", "-t", session_name, *keys, target=session_name)

    async def send_text(self, session_name: str, text: str, enter: bool = True):
        """
        Send literal text to a session, optionally followed by Enter.

        Enter is sent as a separate keystroke after a settle delay; agent TUIs
        treat a fast burst ending in a newline as a paste.
        """
        if text:
            await self.run("send-keys", "-t", session_name, "-l", "--", text, target=session_name)
        if enter:
            if text and self.send_keys_settle_seconds > 0:
                await self._sleep(self.send_keys_settle_seconds)
            await self.run("send-keys", "-t", session_name, "Enter", target=session_name)
        logger.debug(f"Sent input to {session_name}: {text[:50]}")

    async def capture_pane(self, session_name: str, lines: int = 1000) -> str:
        """Capture the visible pane plus ``lines`` of scrollback."""
        output = await self.run(
            "capture-pane", "-p", "-t", session_name, "-S", f"-{lines}",
            target=session_name,
        )
        return output.stdout

    async def list_sessions(self) -> list[str]:
        """List tmux session names. An absent server means no sessions."""
        try:
            output = await self.run("list-sessions", "-F", "#{session_name}")
        except NotFound:
            return []
        return [line.strip() for line in output.stdout.splitlines() if line.strip()]

    async def is_pane_dead(self, session_name: str) -> bool:
        """True if every pane in the session has exited (remain-on-exit keeps them)."""
        output = await self.run("list-panes", "-t", session_name, "-F", "#{pane_dead}", target=session_name)
        flags = [line.strip() for line in output.stdout.splitlines() if line.strip()]
        return bool(flags) and all(flag == "1" for flag in flags)
