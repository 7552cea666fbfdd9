"""Interactive attach: bridge the local terminal to a tmux session through a PTY."""

import asyncio
import fcntl
import logging
import os
import pty
import signal
import struct
import sys
import termios
import tty
from enum import Enum
from typing import Callable, Optional, Protocol

from .errors import CommanderError, NotFound
from .tmux_executor import TmuxExecutor

logger = logging.getLogger(__name__)

# Ctrl+Q
DETACH_BYTE = b"\x11"
READ_CHUNK = 4096


class AttachResult(Enum):
    DETACHED = "detached"            # Operator pressed the detach key or detached via tmux
    SESSION_ENDED = "session_ended"  # tmux session or its program went away


def get_winsize(fd: int) -> Optional[tuple[int, int]]:
    """Return ``(rows, cols)`` of a terminal, or None if ``fd`` is not one."""
    try:
        packed = fcntl.ioctl(fd, termios.TIOCGWINSZ, b"\0" * 8)
    except OSError:
        return None
    rows, cols, _, _ = struct.unpack("HHHH", packed)
    return rows, cols


def set_winsize(fd: int, rows: int, cols: int):
    # TIOCSWINSZ expects rows, cols, xpixels, ypixels (unsigned short)
    fcntl.ioctl(fd, termios.TIOCSWINSZ, struct.pack("HHHH", rows, cols, 0, 0))


class PtyProcess(Protocol):
    """A child process whose controlling terminal is ``fd``."""

    fd: int

    def resize(self, rows: int, cols: int):
        ...

    def terminate(self):
        ...


class ForkedPty:
    """Child spawned with ``pty.fork``."""

    def __init__(self, argv: list[str]):
        pid, fd = pty.fork()
        if pid == 0:
            try:
                os.execvp(argv[0], argv)
            finally:
                os._exit(127)
        self.pid = pid
        self.fd = fd

    def resize(self, rows: int, cols: int):
        set_winsize(self.fd, rows, cols)
        try:
            os.kill(self.pid, signal.SIGWINCH)
        except ProcessLookupError:
            pass

    def terminate(self):
        try:
            os.kill(self.pid, signal.SIGTERM)
        except ProcessLookupError:
            pass
        try:
            os.waitpid(self.pid, 0)
        except ChildProcessError:
            pass
        try:
            os.close(self.fd)
        except OSError:
            pass


class NonBlockingWriter:
    """
    Write to a non-blocking fd from inside event-loop callbacks.

    Bytes the fd cannot take right away are buffered and flushed by a loop
    writer callback, so a slow terminal or a stalled tmux client never blocks
    the loop. ``on_error`` is called once if the fd fails for good.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, fd: int, on_error: Optional[Callable[[], None]] = None):
        self.loop = loop
        self.fd = fd
        self.on_error = on_error
        self._buffer = bytearray()
        self._watching = False
        self._closed = False
        self._failed = False
        self._was_blocking = os.get_blocking(fd)
        os.set_blocking(fd, False)

    @property
    def pending(self) -> int:
        return len(self._buffer)

    def write(self, data: bytes):
        if self._closed or self._failed:
            return
        self._buffer += data
        self._flush()

    def _flush(self):
        while self._buffer:
            try:
                written = os.write(self.fd, self._buffer)
            except BlockingIOError:
                break
            except OSError as e:
                logger.debug(f"Write to fd {self.fd} failed: {e}")
                self._failed = True
                self._buffer.clear()
                self._unwatch()
                if self.on_error:
                    self.on_error()
                return
            del self._buffer[:written]

        if self._buffer and not self._watching:
            self.loop.add_writer(self.fd, self._flush)
            self._watching = True
        elif not self._buffer:
            self._unwatch()

    def _unwatch(self):
        if self._watching:
            self.loop.remove_writer(self.fd)
            self._watching = False

    def close(self):
        """Stop flushing and restore the fd's blocking mode. Unflushed bytes are dropped."""
        if self._closed:
            return
        self._closed = True
        self._unwatch()
        self._buffer.clear()
        try:
            os.set_blocking(self.fd, self._was_blocking)
        except OSError:
            pass


class AttachBridge:
    """
    Forward bytes between the local terminal and ``tmux attach-session``.

    Input is read with event-loop readers so nothing blocks; Ctrl+Q returns
    control to the caller. A tmux-side detach (prefix + d) or the session
    disappearing ends the bridge as well. While a pane-dead watcher sees the
    program exit, the bridge returns SESSION_ENDED.
    """

    def __init__(
        self,
        executor: TmuxExecutor,
        stdin_fd: Optional[int] = None,
        stdout_fd: Optional[int] = None,
        spawn=ForkedPty,
        liveness_interval: float = 1.0,
    ):
        self.executor = executor
        self.stdin_fd = stdin_fd
        self.stdout_fd = stdout_fd
        self._spawn = spawn
        self.liveness_interval = liveness_interval

    async def attach(self, tmux_session: str) -> AttachResult:
        """
        Attach to ``tmux_session`` until detach or session exit.

        Raises:
            NotFound: the tmux session does not exist
        """
        if not await self.executor.session_exists(tmux_session):
            raise NotFound(f"tmux session {tmux_session} does not exist")

        stdin_fd = self.stdin_fd if self.stdin_fd is not None else sys.stdin.fileno()
        stdout_fd = self.stdout_fd if self.stdout_fd is not None else sys.stdout.fileno()
        loop = asyncio.get_running_loop()
        done: asyncio.Future = loop.create_future()
        proc: PtyProcess = self._spawn(["tmux", "attach-session", "-t", tmux_session])
        logger.info(f"Attached to {tmux_session}")

        def finish(result: Optional[AttachResult]):
            if not done.done():
                done.set_result(result)

        to_tmux = NonBlockingWriter(loop, proc.fd, on_error=lambda: finish(None))
        to_terminal = NonBlockingWriter(loop, stdout_fd, on_error=lambda: finish(AttachResult.DETACHED))

        def on_input():
            try:
                data = os.read(stdin_fd, READ_CHUNK)
            except OSError:
                data = b""
            if not data:
                finish(AttachResult.DETACHED)
                return
            idx = data.find(DETACH_BYTE)
            if idx >= 0:
                if idx:
                    to_tmux.write(data[:idx])
                finish(AttachResult.DETACHED)
                return
            to_tmux.write(data)

        def on_output():
            try:
                data = os.read(proc.fd, READ_CHUNK)
            except BlockingIOError:
                return
            except OSError:
                # EIO once the tmux client exits
                data = b""
            if not data:
                finish(None)
                return
            to_terminal.write(data)

        def on_resize():
            size = get_winsize(stdin_fd)
            if size:
                proc.resize(*size)

        async def watch_pane():
            while not done.done():
                await asyncio.sleep(self.liveness_interval)
                try:
                    if await self.executor.is_pane_dead(tmux_session):
                        finish(AttachResult.SESSION_ENDED)
                except NotFound:
                    finish(AttachResult.SESSION_ENDED)
                except CommanderError as e:
                    logger.debug(f"Liveness check for {tmux_session} failed: {e}")

        saved_attrs = None
        is_tty = os.isatty(stdin_fd)
        if is_tty:
            saved_attrs = termios.tcgetattr(stdin_fd)
            tty.setraw(stdin_fd)
            on_resize()
            loop.add_signal_handler(signal.SIGWINCH, on_resize)

        loop.add_reader(stdin_fd, on_input)
        loop.add_reader(proc.fd, on_output)
        watcher = asyncio.create_task(watch_pane())
        try:
            result = await done
        finally:
            watcher.cancel()
            loop.remove_reader(stdin_fd)
            loop.remove_reader(proc.fd)
            to_tmux.close()
            to_terminal.close()
            if is_tty:
                loop.remove_signal_handler(signal.SIGWINCH)
                termios.tcsetattr(stdin_fd, termios.TCSADRAIN, saved_attrs)
            proc.terminate()
            try:
                await watcher
            except asyncio.CancelledError:
                pass

        if result is None:
            # tmux client exited on its own: detach or session end
            exists = await self.executor.session_exists(tmux_session)
            result = AttachResult.DETACHED if exists else AttachResult.SESSION_ENDED

        logger.info(f"Left {tmux_session}: {result.value}")
        return result
