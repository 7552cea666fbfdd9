"""Integration tests for the HTTP control surface."""

from datetime import datetime
from unittest.mock import AsyncMock, MagicMock

import pytest
from fastapi.testclient import TestClient

from worktree_commander.errors import (
    CommandFailed,
    CommandTimeout,
    InvalidState,
    NotFound,
    PermanentFailure,
    ResourceConflict,
    StateLoadError,
    TransientExternalFailure,
)
from worktree_commander.models import (
    CommitInfo,
    DiffModel,
    FileDiff,
    GitStatus,
    Hunk,
    PrInfo,
    Project,
    ProjectSnapshot,
    Session,
    SessionSnapshot,
    SessionStatus,
    Snapshot,
)
from worktree_commander.server import create_app, status_code_for


@pytest.fixture
def sample_session():
    """Create a sample session for testing."""
    return Session(
        id="test1234",
        project_id="proj0001",
        name="feature-auth",
        branch="feature-auth",
        worktree_path="/wt/proj0001/feature-auth",
        program="claude",
        created_at=datetime(2024, 1, 15, 10, 0, 0),
        last_activity_at=datetime(2024, 1, 15, 11, 0, 0),
    )


@pytest.fixture
def mock_orchestrator(sample_session):
    """Create a mock SessionOrchestrator whose snapshot holds one session."""
    project = Project(root_path="/repo", id="proj0001", session_ids=[sample_session.id])
    mock = MagicMock()
    mock.sessions = {sample_session.id: sample_session}
    mock.projects = {project.id: project}
    mock.executor.in_flight = 2
    mock.executor.peak_in_flight = 16

    def snapshot():
        return Snapshot(
            projects=(ProjectSnapshot(project.id, project.name, project.root_path,
                                      project.main_branch, tuple(project.session_ids)),),
            sessions=tuple(SessionSnapshot.of(s) for s in mock.sessions.values()),
            taken_at=datetime.now(),
        )

    mock.list_sessions.side_effect = snapshot
    mock.get_project.return_value = project
    mock.add_project = AsyncMock(return_value=project.id)
    mock.remove_project = AsyncMock()
    mock.create_session = AsyncMock(return_value=sample_session.id)
    mock.pause_session = AsyncMock()
    mock.resume_session = AsyncMock()
    mock.delete_session = AsyncMock()
    mock.get_content = AsyncMock(return_value="line 1\nline 2\nline 3")
    mock.get_diff = AsyncMock(return_value=DiffModel())
    mock.send_input = AsyncMock()
    mock.send_key = AsyncMock()
    mock.send_control = AsyncMock()
    mock.get_git_status = AsyncMock(return_value=GitStatus(
        session_id=sample_session.id,
        branch=sample_session.branch,
        dirty=True,
        commits=(CommitInfo("1a2b3c4d", "Add login form", "Dev"),),
        pull_request=PrInfo(42, "https://github.com/acme/app/pull/42"),
    ))
    return mock


@pytest.fixture
def test_client(mock_orchestrator):
    """Create a FastAPI TestClient with a mocked orchestrator."""
    return TestClient(create_app(orchestrator=mock_orchestrator))


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    def test_root_endpoint(self, test_client):
        response = test_client.get("/")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "service": "worktree-commander"}

    def test_health_reports_counts(self, test_client):
        data = test_client.get("/health").json()
        assert data["status"] == "healthy"
        assert data["sessions"] == 1
        assert data["projects"] == 1
        assert data["commands_in_flight"] == 2
        assert data["peak_commands_in_flight"] == 16

    def test_missing_orchestrator(self):
        client = TestClient(create_app())
        assert client.get("/health").json() == {"status": "healthy"}
        assert client.get("/sessions").status_code == 503


class TestProjectEndpoints:

    def test_add_project(self, test_client, mock_orchestrator):
        response = test_client.post("/projects", json={"path": "/repo"})

        assert response.status_code == 201
        assert response.json()["id"] == "proj0001"
        assert response.json()["name"] == "repo"
        mock_orchestrator.add_project.assert_awaited_once_with("/repo")

    def test_add_project_not_a_repository(self, test_client, mock_orchestrator):
        mock_orchestrator.add_project.side_effect = CommandFailed("git rev-parse", 128, "not a git repository")

        response = test_client.post("/projects", json={"path": "/tmp"})

        assert response.status_code == 400
        assert response.json()["kind"] == "command_failed"

    def test_list_projects(self, test_client):
        projects = test_client.get("/projects").json()["projects"]
        assert projects == [{
            "id": "proj0001",
            "name": "repo",
            "root_path": "/repo",
            "main_branch": "main",
            "session_ids": ["test1234"],
        }]

    def test_remove_project(self, test_client, mock_orchestrator):
        response = test_client.delete("/projects/proj0001")
        assert response.status_code == 200
        mock_orchestrator.remove_project.assert_awaited_once_with("proj0001")


class TestSessionEndpoints:

    def test_list_sessions(self, test_client):
        sessions = test_client.get("/sessions").json()["sessions"]
        assert len(sessions) == 1
        assert sessions[0]["branch"] == "feature-auth"
        assert sessions[0]["status"] == "active"
        assert sessions[0]["activity_state"] == "unknown"

    def test_list_sessions_filtered_by_project(self, test_client):
        assert test_client.get("/sessions", params={"project_id": "other"}).json()["sessions"] == []
        assert len(test_client.get("/sessions", params={"project_id": "proj0001"}).json()["sessions"]) == 1

    def test_list_sessions_matching_query(self, test_client):
        assert len(test_client.get("/sessions", params={"q": "AUTH"}).json()["sessions"]) == 1
        assert test_client.get("/sessions", params={"q": "billing"}).json()["sessions"] == []

    def test_create_session(self, test_client, mock_orchestrator):
        response = test_client.post("/sessions", json={
            "project_id": "proj0001", "name": "feature-auth", "program": "agent",
        })

        assert response.status_code == 201
        assert response.json()["id"] == "test1234"
        assert response.json()["worktree_path"] == "/wt/proj0001/feature-auth"
        mock_orchestrator.create_session.assert_awaited_once_with("proj0001", "feature-auth", "agent")

    def test_create_session_conflict(self, test_client, mock_orchestrator):
        mock_orchestrator.create_session.side_effect = ResourceConflict("Branch already exists: feature-auth")

        response = test_client.post("/sessions", json={"project_id": "proj0001", "name": "feature-auth"})

        assert response.status_code == 409
        assert response.json() == {"detail": "Branch already exists: feature-auth", "kind": "conflict"}

    def test_create_session_requires_name(self, test_client):
        response = test_client.post("/sessions", json={"project_id": "proj0001"})
        assert response.status_code == 422

    def test_get_session(self, test_client):
        response = test_client.get("/sessions/test1234")
        assert response.status_code == 200
        assert response.json()["tmux_session"] == "wc-test1234"

    def test_get_unknown_session(self, test_client):
        assert test_client.get("/sessions/nope").status_code == 404

    def test_pause_and_resume(self, test_client, mock_orchestrator, sample_session):
        async def pause(session_id):
            sample_session.status = SessionStatus.PAUSED

        mock_orchestrator.pause_session.side_effect = pause

        response = test_client.post("/sessions/test1234/pause")

        assert response.status_code == 200
        assert response.json()["status"] == "paused"
        assert test_client.post("/sessions/test1234/resume").status_code == 200
        mock_orchestrator.resume_session.assert_awaited_once_with("test1234")

    def test_pause_in_wrong_state(self, test_client, mock_orchestrator):
        mock_orchestrator.pause_session.side_effect = InvalidState("Cannot pause session in status paused")
        response = test_client.post("/sessions/test1234/pause")
        assert response.status_code == 400
        assert response.json()["kind"] == "invalid_state"

    def test_delete_session(self, test_client, mock_orchestrator):
        response = test_client.delete("/sessions/test1234", params={"keep_branch": "true"})

        assert response.status_code == 200
        assert response.json()["keep_branch"] is True
        mock_orchestrator.delete_session.assert_awaited_once_with("test1234", keep_branch=True)

    def test_delete_unknown_session(self, test_client, mock_orchestrator):
        mock_orchestrator.delete_session.side_effect = NotFound("Session nope not found")
        assert test_client.delete("/sessions/nope").status_code == 404


class TestContentEndpoints:

    def test_output(self, test_client):
        response = test_client.get("/sessions/test1234/output")
        assert response.json()["output"] == "line 1\nline 2\nline 3"

    def test_output_last_lines(self, test_client):
        response = test_client.get("/sessions/test1234/output", params={"lines": 2})
        assert response.json()["output"] == "line 2\nline 3"

    def test_output_timeout(self, test_client, mock_orchestrator):
        mock_orchestrator.get_content.side_effect = CommandTimeout("tmux capture-pane", 5.0)
        response = test_client.get("/sessions/test1234/output")
        assert response.status_code == 504
        assert response.json()["kind"] == "timeout"

    def test_output_tmux_busy(self, test_client, mock_orchestrator):
        mock_orchestrator.get_content.side_effect = TransientExternalFailure("error connecting")
        assert test_client.get("/sessions/test1234/output").status_code == 503

    def test_diff(self, test_client, mock_orchestrator):
        hunk = Hunk("@@ -1 +1,2 @@", 1, 1, 1, 2, ("-a", "+b", "+c"))
        mock_orchestrator.get_diff.return_value = DiffModel(files=(FileDiff("a.py", "M", hunks=(hunk,)),),
                                                             base_ref="main")

        data = test_client.get("/sessions/test1234/diff", params={"base_ref": "main"}).json()

        assert data["summary"] == "1 file(s), +2 -1 lines"
        assert data["files"][0]["path"] == "a.py"
        mock_orchestrator.get_diff.assert_awaited_once_with("test1234", base_ref="main")

    def test_send_input(self, test_client, mock_orchestrator):
        response = test_client.post("/sessions/test1234/input", json={"text": "run the tests"})

        assert response.status_code == 200
        mock_orchestrator.send_input.assert_awaited_once_with("test1234", "run the tests", enter=True)

    def test_send_input_without_enter(self, test_client, mock_orchestrator):
        test_client.post("/sessions/test1234/input", json={"text": "y", "enter": False})
        mock_orchestrator.send_input.assert_awaited_once_with("test1234", "y", enter=False)

    def test_send_key(self, test_client, mock_orchestrator):
        response = test_client.post("/sessions/test1234/keys", json={"key": "Escape"})

        assert response.status_code == 200
        mock_orchestrator.send_key.assert_awaited_once_with("test1234", "Escape")
        mock_orchestrator.send_control.assert_not_awaited()

    def test_send_control(self, test_client, mock_orchestrator):
        test_client.post("/sessions/test1234/keys", json={"control": "c"})
        mock_orchestrator.send_control.assert_awaited_once_with("test1234", "c")

    @pytest.mark.parametrize("body", [{}, {"key": "Escape", "control": "c"}])
    def test_send_key_needs_exactly_one_field(self, test_client, mock_orchestrator, body):
        assert test_client.post("/sessions/test1234/keys", json=body).status_code == 400
        mock_orchestrator.send_key.assert_not_awaited()

    def test_send_unknown_key(self, test_client, mock_orchestrator):
        mock_orchestrator.send_key.side_effect = PermanentFailure("Unknown key: 'hyper'")
        response = test_client.post("/sessions/test1234/keys", json={"key": "hyper"})
        assert response.status_code == 400
        assert response.json()["kind"] == "permanent"

    def test_git_status(self, test_client, mock_orchestrator):
        data = test_client.get("/sessions/test1234/git", params={"commits": 3}).json()

        assert data["dirty"] is True
        assert data["commits"][0]["sha"] == "1a2b3c4d"
        assert data["pull_request"] == {"number": 42, "url": "https://github.com/acme/app/pull/42"}
        mock_orchestrator.get_git_status.assert_awaited_once_with(
            "test1234", commit_limit=3, include_pull_request=True,
        )

    def test_git_status_without_pr(self, test_client, mock_orchestrator):
        test_client.get("/sessions/test1234/git", params={"pr": "false"})
        mock_orchestrator.get_git_status.assert_awaited_once_with(
            "test1234", commit_limit=10, include_pull_request=False,
        )


@pytest.mark.parametrize("error,code", [
    (NotFound("x"), 404),
    (ResourceConflict("x"), 409),
    (InvalidState("x"), 400),
    (CommandFailed("tmux", 1, "x"), 400),
    (CommandTimeout("tmux", 1.0), 504),
    (TransientExternalFailure("x"), 503),
    (StateLoadError("x"), 500),
])
def test_status_code_mapping(error, code):
    assert status_code_for(error) == code
