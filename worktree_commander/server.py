"""FastAPI control surface for the session orchestrator."""

import logging
import time
from typing import Optional

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from .config import Config
from .errors import (
    CommanderError,
    CommandTimeout,
    NotFound,
    PermanentFailure,
    ResourceConflict,
    TransientExternalFailure,
)
from .models import SessionSnapshot

logger = logging.getLogger(__name__)

# Checked in order; subclasses before their bases
ERROR_STATUS_CODES = (
    (NotFound, 404),
    (ResourceConflict, 409),
    (PermanentFailure, 400),
    (CommandTimeout, 504),
    (TransientExternalFailure, 503),
)


def status_code_for(error: CommanderError) -> int:
    for error_type, code in ERROR_STATUS_CODES:
        if isinstance(error, error_type):
            return code
    return 500


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests for debugging."""

    def __init__(self, app, slow_threshold: float = 1.0, timing_threshold: float = 0.1):
        super().__init__(app)
        self.slow_threshold = slow_threshold
        self.timing_threshold = timing_threshold

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start

        if elapsed > self.slow_threshold:
            logger.warning(
                f"SLOW REQUEST: {request.method} {request.url.path} "
                f"took {elapsed:.2f}s"
            )
        elif elapsed > self.timing_threshold:
            logger.info(
                f"Request: {request.method} {request.url.path} "
                f"took {elapsed*1000:.0f}ms"
            )

        return response


class AddProjectRequest(BaseModel):
    """Request to register a git repository."""
    path: str


class CreateSessionRequest(BaseModel):
    """Request to create a new session."""
    project_id: str
    name: str
    program: Optional[str] = None


class SendInputRequest(BaseModel):
    """Request to send input to a session."""
    text: str
    enter: bool = True


class SendKeyRequest(BaseModel):
    """Request to press a named key or a Ctrl chord. Exactly one field is set."""
    key: Optional[str] = None
    control: Optional[str] = None


class SessionResponse(BaseModel):
    """Response containing session info."""
    id: str
    project_id: str
    name: str
    branch: str
    worktree_path: str
    tmux_session: str
    program: str
    status: str
    activity_state: str
    created_at: str
    last_activity_at: str
    content_generation: int
    diff_generation: int
    attached: bool = False
    error_message: Optional[str] = None


def _session_response(snapshot: SessionSnapshot) -> SessionResponse:
    return SessionResponse(**snapshot.to_dict())


def create_app(orchestrator=None, config: Optional[Config] = None, lifespan=None) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        orchestrator: SessionOrchestrator instance
        config: Runtime configuration
        lifespan: Optional ASGI lifespan context manager

    Returns:
        Configured FastAPI app
    """
    app = FastAPI(
        title="Worktree Commander",
        description="Run coding agents in isolated git worktrees and tmux sessions",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config or Config()
    app.state.orchestrator = orchestrator
    app.add_middleware(RequestTimingMiddleware)

    @app.exception_handler(CommanderError)
    async def commander_error_handler(request: Request, exc: CommanderError):
        code = status_code_for(exc)
        if code >= 500:
            logger.warning(f"{request.method} {request.url.path} failed: {exc}")
        return JSONResponse(status_code=code, content={"detail": exc.message, "kind": exc.kind})

    def get_orchestrator():
        if not app.state.orchestrator:
            raise HTTPException(status_code=503, detail="Orchestrator not configured")
        return app.state.orchestrator

    @app.get("/")
    async def root():
        """Health check endpoint."""
        return {"status": "ok", "service": "worktree-commander"}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        orchestrator = app.state.orchestrator
        if not orchestrator:
            return {"status": "healthy"}
        executor = orchestrator.executor
        return {
            "status": "healthy",
            "sessions": len(orchestrator.sessions),
            "projects": len(orchestrator.projects),
            "commands_in_flight": executor.in_flight,
            "peak_commands_in_flight": executor.peak_in_flight,
        }

    @app.get("/projects")
    async def list_projects():
        """List registered projects."""
        snapshot = get_orchestrator().list_sessions()
        return {"projects": [p.to_dict() for p in snapshot.projects]}

    @app.post("/projects", status_code=201)
    async def add_project(request: AddProjectRequest):
        """Register a git repository as a project."""
        orchestrator = get_orchestrator()
        project_id = await orchestrator.add_project(request.path)
        project = orchestrator.get_project(project_id)
        return {
            "id": project.id,
            "name": project.name,
            "root_path": project.root_path,
            "main_branch": project.main_branch,
        }

    @app.delete("/projects/{project_id}")
    async def remove_project(project_id: str):
        """Delete all sessions of a project (branches kept) and forget the project."""
        await get_orchestrator().remove_project(project_id)
        return {"status": "removed", "project_id": project_id}

    @app.get("/sessions")
    async def list_sessions(project_id: Optional[str] = None, q: Optional[str] = None):
        """List sessions, optionally for one project or matching a name/branch/program query."""
        snapshot = get_orchestrator().list_sessions()
        sessions = [
            _session_response(s) for s in snapshot.sessions
            if (project_id is None or s.project_id == project_id)
            and (not q or s.matches_query(q))
        ]
        return {"sessions": sessions}

    @app.post("/sessions", response_model=SessionResponse, status_code=201)
    async def create_session(request: CreateSessionRequest):
        """Create a session: worktree, branch and tmux session."""
        orchestrator = get_orchestrator()
        session_id = await orchestrator.create_session(request.project_id, request.name, request.program)
        return _session_response(orchestrator.list_sessions().session(session_id))

    @app.get("/sessions/{session_id}", response_model=SessionResponse)
    async def get_session(session_id: str):
        """Get session details."""
        snapshot = get_orchestrator().list_sessions().session(session_id)
        if snapshot is None:
            raise HTTPException(status_code=404, detail="Session not found")
        return _session_response(snapshot)

    @app.post("/sessions/{session_id}/pause", response_model=SessionResponse)
    async def pause_session(session_id: str):
        orchestrator = get_orchestrator()
        await orchestrator.pause_session(session_id)
        return _session_response(orchestrator.list_sessions().session(session_id))

    @app.post("/sessions/{session_id}/resume", response_model=SessionResponse)
    async def resume_session(session_id: str):
        orchestrator = get_orchestrator()
        await orchestrator.resume_session(session_id)
        return _session_response(orchestrator.list_sessions().session(session_id))

    @app.delete("/sessions/{session_id}")
    async def delete_session(session_id: str, keep_branch: bool = False):
        """Kill the tmux session, remove the worktree and (unless kept) the branch."""
        await get_orchestrator().delete_session(session_id, keep_branch=keep_branch)
        return {"status": "deleted", "session_id": session_id, "keep_branch": keep_branch}

    @app.get("/sessions/{session_id}/output")
    async def get_output(session_id: str, lines: Optional[int] = None):
        """Captured pane text; ``lines`` keeps only the last N lines."""
        content = await get_orchestrator().get_content(session_id)
        if lines is not None and lines > 0:
            content = "\n".join(content.splitlines()[-lines:])
        return {"session_id": session_id, "output": content}

    @app.get("/sessions/{session_id}/diff")
    async def get_diff(session_id: str, base_ref: Optional[str] = None):
        diff = await get_orchestrator().get_diff(session_id, base_ref=base_ref)
        return {"session_id": session_id, **diff.to_dict()}

    @app.post("/sessions/{session_id}/input")
    async def send_input(session_id: str, request: SendInputRequest):
        """Send text to a session's pane."""
        await get_orchestrator().send_input(session_id, request.text, enter=request.enter)
        return {"status": "sent", "session_id": session_id}

    @app.post("/sessions/{session_id}/keys")
    async def send_key(session_id: str, request: SendKeyRequest):
        """Press a named key (Escape, Up, PageDown, ...) or a Ctrl chord in a session's pane."""
        if (request.key is None) == (request.control is None):
            raise HTTPException(status_code=400, detail="Set exactly one of key or control")
        orchestrator = get_orchestrator()
        if request.key is not None:
            await orchestrator.send_key(session_id, request.key)
        else:
            await orchestrator.send_control(session_id, request.control)
        return {"status": "sent", "session_id": session_id}

    @app.get("/sessions/{session_id}/git")
    async def get_git_status(session_id: str, commits: int = 10, pr: bool = True):
        """Uncommitted changes, recent commits and the open pull request of a session's branch."""
        status = await get_orchestrator().get_git_status(
            session_id, commit_limit=max(commits, 0), include_pull_request=pr,
        )
        return status.to_dict()

    return app
