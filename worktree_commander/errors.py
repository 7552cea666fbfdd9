"""Error taxonomy shared by the executor, worktree layer and orchestrator."""

from typing import Optional


class CommanderError(RuntimeError):
    """Base class for all orchestration errors.

    ``kind`` is a stable tag that callers (and the HTTP layer) switch on
    instead of matching class names.
    """

    kind = "error"

    def __init__(self, message: str = "", detail: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "detail": self.detail}


class TransientExternalFailure(CommanderError):
    """Retryable failure: busy control socket, momentary lock contention."""

    kind = "transient"


class PermanentFailure(CommanderError):
    """Invalid path, malformed name, or a command that cannot succeed on retry."""

    kind = "permanent"


class CommandFailed(PermanentFailure):
    """External command exited non-zero."""

    kind = "command_failed"

    def __init__(self, command: str, exit_code: int, stderr: str = ""):
        super().__init__(f"{command} exited with {exit_code}: {stderr.strip()}", detail=stderr)
        self.command = command
        self.exit_code = exit_code
        self.stderr = stderr


class InvalidState(PermanentFailure):
    """Operation not allowed in the session's current status."""

    kind = "invalid_state"


class ResourceConflict(CommanderError):
    """Worktree path or branch already exists."""

    kind = "conflict"


class CommandTimeout(CommanderError):
    """External invocation exceeded its deadline."""

    kind = "timeout"

    def __init__(self, command: str, timeout: float):
        super().__init__(f"{command} timed out after {timeout:.1f}s")
        self.command = command
        self.timeout = timeout


class NotFound(CommanderError):
    """Referenced session, project or tmux handle no longer exists."""

    kind = "not_found"


class StateLoadError(CommanderError):
    """Persisted state could not be read. Fatal at startup."""

    kind = "state_load"
