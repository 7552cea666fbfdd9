"""Unit tests for data models and their persisted form."""

import dataclasses
from datetime import datetime

import pytest

from worktree_commander.models import (
    ActivityState,
    CommitInfo,
    DiffModel,
    FileDiff,
    GitStatus,
    Hunk,
    PrInfo,
    Project,
    Session,
    SessionSnapshot,
    SessionStatus,
    State,
)


def _session(**kwargs) -> Session:
    defaults = dict(
        id="abcd1234",
        project_id="proj0001",
        name="feature-auth",
        branch="feature-auth",
        worktree_path="/wt/proj0001/feature-auth",
        created_at=datetime(2024, 1, 1, 12, 0, 0),
        last_activity_at=datetime(2024, 1, 1, 12, 30, 0),
    )
    defaults.update(kwargs)
    return Session(**defaults)


def test_session_defaults():
    session = _session()
    assert session.tmux_session == "wc-abcd1234"
    assert session.status == SessionStatus.ACTIVE
    assert session.activity_state == ActivityState.UNKNOWN
    assert session.content_generation == 0


def test_session_persisted_record_uses_state_schema():
    record = _session(status=SessionStatus.PAUSED, activity_state=ActivityState.IDLE).to_dict()

    for key in ("id", "projectId", "name", "branch", "worktreePath", "status",
                "activityState", "createdAt", "lastActivityAt"):
        assert key in record
    assert record["status"] == "paused"
    assert record["activityState"] == "idle"


def test_session_from_dict_restores_fields():
    original = _session(status=SessionStatus.ERRORED, program="aider", base_commit="deadbeef")
    restored = Session.from_dict(original.to_dict())

    assert restored.id == original.id
    assert restored.status == SessionStatus.ERRORED
    assert restored.program == "aider"
    assert restored.base_commit == "deadbeef"
    assert restored.created_at == original.created_at
    assert restored.tmux_session == "wc-abcd1234"


def test_session_from_minimal_record():
    record = {
        "id": "s1", "projectId": "p1", "name": "n", "branch": "n",
        "worktreePath": "/wt/p1/n", "status": "active", "activityState": "unknown",
        "createdAt": "2024-01-01T00:00:00", "lastActivityAt": "2024-01-01T00:00:00",
    }
    session = Session.from_dict(record)
    assert session.program == "claude"
    assert session.tmux_session == "wc-s1"


def test_status_transitions_allowed():
    assert SessionStatus.ACTIVE.can_pause()
    assert not SessionStatus.PAUSED.can_pause()
    assert SessionStatus.PAUSED.can_resume()
    assert SessionStatus.ERRORED.can_resume()
    assert not SessionStatus.ACTIVE.can_resume()
    assert not SessionStatus.ERRORED.can_attach()


def test_project_name_and_session_ids():
    project = Project(root_path="/home/me/code/widget")
    assert project.name == "widget"

    project.add_session("s1")
    project.add_session("s1")
    project.add_session("s2")
    assert project.session_ids == ["s1", "s2"]

    project.remove_session("s1")
    assert project.session_ids == ["s2"]


def test_state_round_trip():
    project = Project(root_path="/repo", id="p1", session_ids=["abcd1234"])
    state = State(projects=[project], sessions=[_session(project_id="p1")])

    data = state.to_dict()
    assert data["projects"][0]["rootPath"] == "/repo"
    assert data["projects"][0]["sessionIds"] == ["abcd1234"]

    restored = State.from_dict(data)
    assert restored.projects[0].id == "p1"
    assert restored.sessions[0].worktree_path == "/wt/proj0001/feature-auth"


def test_snapshot_is_a_frozen_copy():
    session = _session()
    snapshot = SessionSnapshot.of(session, attached=True)

    session.status = SessionStatus.PAUSED
    assert snapshot.status == SessionStatus.ACTIVE
    assert snapshot.attached is True
    with pytest.raises(dataclasses.FrozenInstanceError):
        snapshot.status = SessionStatus.PAUSED


def test_diff_model_counters_and_summary():
    assert DiffModel().summary() == "No changes"

    hunk = Hunk("@@ -1,2 +1,3 @@", 1, 2, 1, 3, (" keep", "-old", "+new", "+added"))
    diff = DiffModel(files=(
        FileDiff("a.py", "M", hunks=(hunk,)),
        FileDiff("logo.png", "A", is_binary=True),
    ))

    assert diff.files_changed == 2
    assert diff.lines_added == 2
    assert diff.lines_removed == 1
    assert diff.summary() == "2 file(s), +2 -1 lines"
    assert diff.to_dict()["files"][0]["hunks"][0]["lines"] == [" keep", "-old", "+new", "+added"]


def test_set_activity_stamps_last_activity():
    session = _session()

    session.set_activity(ActivityState.PROCESSING)

    assert session.activity_state == ActivityState.PROCESSING
    assert session.last_activity_at > datetime(2024, 1, 1, 12, 30, 0)


def test_snapshot_matches_query():
    snapshot = SessionSnapshot.of(_session(branch="agents/feature-auth", program="aider"))

    assert snapshot.matches_query("AUTH")
    assert snapshot.matches_query("agents/")
    assert snapshot.matches_query("aider")
    assert not snapshot.matches_query("billing")


def test_git_status_to_dict():
    status = GitStatus(
        session_id="abcd1234",
        branch="feature-auth",
        dirty=True,
        commits=(CommitInfo("1a2b3c4d", "Add login form", "Dev"),),
        pull_request=PrInfo(42, "https://github.com/acme/app/pull/42"),
    )

    assert status.to_dict() == {
        "session_id": "abcd1234",
        "branch": "feature-auth",
        "dirty": True,
        "commits": [{"sha": "1a2b3c4d", "summary": "Add login form", "author": "Dev"}],
        "pull_request": {"number": 42, "url": "https://github.com/acme/app/pull/42"},
    }
    assert GitStatus("abcd1234", "feature-auth", False).to_dict()["pull_request"] is None
