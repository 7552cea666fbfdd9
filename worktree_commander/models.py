"""Data models for the worktree session orchestrator."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Optional
import uuid


def _new_id() -> str:
    return uuid.uuid4().hex[:8]


class SessionStatus(Enum):
    """Session lifecycle status."""
    ACTIVE = "active"    # Polled by the background loop
    PAUSED = "paused"    # tmux + worktree kept, not polled
    ERRORED = "errored"  # Repeated capture failure, waiting for the operator

    def can_pause(self) -> bool:
        return self is SessionStatus.ACTIVE

    def can_resume(self) -> bool:
        return self in (SessionStatus.PAUSED, SessionStatus.ERRORED)

    def can_attach(self) -> bool:
        return self in (SessionStatus.ACTIVE, SessionStatus.PAUSED)


class ActivityState(Enum):
    """Classified activity of the agent inside a session."""
    IDLE = "idle"
    WAITING_FOR_INPUT = "waiting_for_input"
    PROCESSING = "processing"
    ERRORED = "errored"
    UNKNOWN = "unknown"


@dataclass
class Project:
    """A git repository that owns a set of worktree sessions.

    Sessions are referenced by id only; the orchestrator's registry owns the
    Session objects themselves.
    """
    root_path: str
    id: str = field(default_factory=_new_id)
    name: str = ""
    main_branch: str = "main"
    created_at: datetime = field(default_factory=datetime.now)
    session_ids: list[str] = field(default_factory=list)

    def __post_init__(self):
        if not self.name:
            self.name = Path(self.root_path).name or "unknown"

    def add_session(self, session_id: str):
        if session_id not in self.session_ids:
            self.session_ids.append(session_id)

    def remove_session(self, session_id: str):
        self.session_ids = [sid for sid in self.session_ids if sid != session_id]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "rootPath": self.root_path,
            "sessionIds": list(self.session_ids),
            "name": self.name,
            "mainBranch": self.main_branch,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Project":
        return cls(
            id=data["id"],
            root_path=data["rootPath"],
            session_ids=list(data.get("sessionIds", [])),
            name=data.get("name", ""),
            main_branch=data.get("mainBranch", "main"),
            created_at=datetime.fromisoformat(data["createdAt"]) if data.get("createdAt") else datetime.now(),
        )


@dataclass
class Session:
    """A worktree + branch + tmux session running one agent program."""
    project_id: str
    name: str
    branch: str
    worktree_path: str
    id: str = field(default_factory=_new_id)
    program: str = "claude"
    tmux_session: str = ""
    status: SessionStatus = SessionStatus.ACTIVE
    activity_state: ActivityState = ActivityState.UNKNOWN
    created_at: datetime = field(default_factory=datetime.now)
    last_activity_at: datetime = field(default_factory=datetime.now)
    content_generation: int = 0
    diff_generation: int = 0
    base_commit: Optional[str] = None
    error_message: Optional[str] = None

    def __post_init__(self):
        if not self.tmux_session:
            self.tmux_session = f"wc-{self.id}"

    def set_status(self, status: SessionStatus):
        self.status = status
        if status == SessionStatus.ACTIVE:
            self.last_activity_at = datetime.now()

    def set_activity(self, state: ActivityState):
        self.activity_state = state
        self.last_activity_at = datetime.now()

    def to_dict(self) -> dict:
        """Convert session to the persisted record."""
        return {
            "id": self.id,
            "projectId": self.project_id,
            "name": self.name,
            "branch": self.branch,
            "worktreePath": self.worktree_path,
            "status": self.status.value,
            "activityState": self.activity_state.value,
            "createdAt": self.created_at.isoformat(),
            "lastActivityAt": self.last_activity_at.isoformat(),
            "program": self.program,
            "tmuxSession": self.tmux_session,
            "baseCommit": self.base_commit,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Session":
        """Create session from a persisted record."""
        return cls(
            id=data["id"],
            project_id=data["projectId"],
            name=data["name"],
            branch=data["branch"],
            worktree_path=data["worktreePath"],
            status=SessionStatus(data.get("status", "active")),
            activity_state=ActivityState(data.get("activityState", "unknown")),
            created_at=datetime.fromisoformat(data["createdAt"]),
            last_activity_at=datetime.fromisoformat(data["lastActivityAt"]),
            program=data.get("program", "claude"),
            tmux_session=data.get("tmuxSession", ""),
            base_commit=data.get("baseCommit"),
        )


@dataclass
class State:
    """Persisted registry: what JsonStateStore loads and saves."""
    projects: list[Project] = field(default_factory=list)
    sessions: list[Session] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "projects": [p.to_dict() for p in self.projects],
            "sessions": [s.to_dict() for s in self.sessions],
        }

    @classmethod
    def from_dict(cls, data: dict) -> "State":
        return cls(
            projects=[Project.from_dict(p) for p in data.get("projects", [])],
            sessions=[Session.from_dict(s) for s in data.get("sessions", [])],
        )


# Read-only views handed to the presentation layer


@dataclass(frozen=True)
class SessionSnapshot:
    id: str
    project_id: str
    name: str
    branch: str
    worktree_path: str
    tmux_session: str
    program: str
    status: SessionStatus
    activity_state: ActivityState
    created_at: datetime
    last_activity_at: datetime
    content_generation: int
    diff_generation: int
    attached: bool = False
    error_message: Optional[str] = None

    @classmethod
    def of(cls, session: Session, attached: bool = False) -> "SessionSnapshot":
        return cls(
            id=session.id,
            project_id=session.project_id,
            name=session.name,
            branch=session.branch,
            worktree_path=session.worktree_path,
            tmux_session=session.tmux_session,
            program=session.program,
            status=session.status,
            activity_state=session.activity_state,
            created_at=session.created_at,
            last_activity_at=session.last_activity_at,
            content_generation=session.content_generation,
            diff_generation=session.diff_generation,
            attached=attached,
            error_message=session.error_message,
        )

    def matches_query(self, query: str) -> bool:
        """Case-insensitive substring match on name, branch or program."""
        query = query.lower()
        return (
            query in self.name.lower()
            or query in self.branch.lower()
            or query in self.program.lower()
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "branch": self.branch,
            "worktree_path": self.worktree_path,
            "tmux_session": self.tmux_session,
            "program": self.program,
            "status": self.status.value,
            "activity_state": self.activity_state.value,
            "created_at": self.created_at.isoformat(),
            "last_activity_at": self.last_activity_at.isoformat(),
            "content_generation": self.content_generation,
            "diff_generation": self.diff_generation,
            "attached": self.attached,
            "error_message": self.error_message,
        }


@dataclass(frozen=True)
class ProjectSnapshot:
    id: str
    name: str
    root_path: str
    main_branch: str
    session_ids: tuple[str, ...]

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "root_path": self.root_path,
            "main_branch": self.main_branch,
            "session_ids": list(self.session_ids),
        }


@dataclass(frozen=True)
class Snapshot:
    """Point-in-time copy of the whole registry."""
    projects: tuple[ProjectSnapshot, ...]
    sessions: tuple[SessionSnapshot, ...]
    taken_at: datetime

    def session(self, session_id: str) -> Optional[SessionSnapshot]:
        for s in self.sessions:
            if s.id == session_id:
                return s
        return None

    def session_ids(self) -> list[str]:
        return [s.id for s in self.sessions]

    def to_dict(self) -> dict:
        return {
            "projects": [p.to_dict() for p in self.projects],
            "sessions": [s.to_dict() for s in self.sessions],
            "taken_at": self.taken_at.isoformat(),
        }


# Structured diffs


@dataclass(frozen=True)
class Hunk:
    header: str
    old_start: int
    old_lines: int
    new_start: int
    new_lines: int
    lines: tuple[str, ...] = ()

    @property
    def added(self) -> int:
        return sum(1 for line in self.lines if line.startswith("+"))

    @property
    def removed(self) -> int:
        return sum(1 for line in self.lines if line.startswith("-"))


@dataclass(frozen=True)
class FileDiff:
    path: str
    change_type: str  # "A", "D", "M", "R", "?" (untracked)
    hunks: tuple[Hunk, ...] = ()
    old_path: Optional[str] = None
    is_binary: bool = False

    @property
    def added(self) -> int:
        return sum(h.added for h in self.hunks)

    @property
    def removed(self) -> int:
        return sum(h.removed for h in self.hunks)

    def to_dict(self) -> dict:
        return {
            "path": self.path,
            "old_path": self.old_path,
            "change_type": self.change_type,
            "is_binary": self.is_binary,
            "hunks": [
                {
                    "header": h.header,
                    "old_start": h.old_start,
                    "old_lines": h.old_lines,
                    "new_start": h.new_start,
                    "new_lines": h.new_lines,
                    "lines": list(h.lines),
                }
                for h in self.hunks
            ],
        }


@dataclass(frozen=True)
class DiffModel:
    """Ordered per-file hunks for one worktree against a base reference."""
    files: tuple[FileDiff, ...] = ()
    base_ref: str = "HEAD"

    @property
    def files_changed(self) -> int:
        return len(self.files)

    @property
    def lines_added(self) -> int:
        return sum(f.added for f in self.files)

    @property
    def lines_removed(self) -> int:
        return sum(f.removed for f in self.files)

    def has_changes(self) -> bool:
        return bool(self.files)

    def summary(self) -> str:
        if not self.has_changes():
            return "No changes"
        return f"{self.files_changed} file(s), +{self.lines_added} -{self.lines_removed} lines"

    def to_dict(self) -> dict:
        return {
            "base_ref": self.base_ref,
            "files_changed": self.files_changed,
            "lines_added": self.lines_added,
            "lines_removed": self.lines_removed,
            "summary": self.summary(),
            "files": [f.to_dict() for f in self.files],
        }


# Branch status


@dataclass(frozen=True)
class CommitInfo:
    sha: str
    summary: str
    author: str

    def to_dict(self) -> dict:
        return {"sha": self.sha, "summary": self.summary, "author": self.author}


@dataclass(frozen=True)
class PrInfo:
    """Open pull request for a session's branch."""
    number: int
    url: str

    def to_dict(self) -> dict:
        return {"number": self.number, "url": self.url}


@dataclass(frozen=True)
class GitStatus:
    """Branch state of one session's worktree."""
    session_id: str
    branch: str
    dirty: bool
    commits: tuple[CommitInfo, ...] = ()
    pull_request: Optional[PrInfo] = None

    def to_dict(self) -> dict:
        return {
            "session_id": self.session_id,
            "branch": self.branch,
            "dirty": self.dirty,
            "commits": [c.to_dict() for c in self.commits],
            "pull_request": self.pull_request.to_dict() if self.pull_request else None,
        }
