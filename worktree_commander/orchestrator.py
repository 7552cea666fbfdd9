"""Session orchestration: the single owner of the project/session registry."""

import asyncio
import inspect
import logging
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, TypeVar

from .activity_detector import ActivityDetector
from .attach import AttachBridge, AttachResult
from .config import Config
from .content_cache import ContentCache
from .diff_cache import DiffCache
from .errors import CommanderError, InvalidState, NotFound, PermanentFailure, ResourceConflict
from .git_backend import GitBackend
from .keys import control_key, special_key
from .models import (
    ActivityState,
    DiffModel,
    GitStatus,
    Project,
    ProjectSnapshot,
    Session,
    SessionSnapshot,
    SessionStatus,
    Snapshot,
    State,
)
from .pull_requests import PullRequestLookup
from .state_store import JsonStateStore
from .tmux_executor import TmuxExecutor
from .worktree import WorktreeOrchestrator, branch_name

logger = logging.getLogger(__name__)

T = TypeVar("T")

SnapshotListener = Callable[[Snapshot], Any]


class SessionMailbox:
    """FIFO command queue for one session, drained by a single worker task.

    Commands for the same session never overlap. Closing the mailbox fails
    every queued command with NotFound and lets the in-flight one finish.
    """

    def __init__(self, session_id: str):
        self.session_id = session_id
        self.closed = False
        self._queue: asyncio.Queue = asyncio.Queue()
        self._worker: Optional[asyncio.Task] = None

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    async def submit(self, command: Callable[[], Awaitable[T]]) -> T:
        if self.closed:
            raise NotFound(f"Session {self.session_id} not found")
        if self._worker is None:
            self._worker = asyncio.create_task(self._run())
        future = asyncio.get_running_loop().create_future()
        self._queue.put_nowait((command, future))
        return await future

    async def _run(self):
        while True:
            item = await self._queue.get()
            if item is None:
                return
            command, future = item
            if future.done():
                # Caller went away
                continue
            try:
                result = await command()
            except asyncio.CancelledError:
                if not future.done():
                    future.cancel()
                raise
            except Exception as e:
                if not future.done():
                    future.set_exception(e)
            else:
                if not future.done():
                    future.set_result(result)

    async def close(self):
        """Reject queued commands, wait for the in-flight one, stop the worker."""
        self.closed = True
        while not self._queue.empty():
            item = self._queue.get_nowait()
            if item is None:
                continue
            _, future = item
            if not future.done():
                future.set_exception(NotFound(f"Session {self.session_id} is being deleted"))
        if self._worker is not None:
            self._queue.put_nowait(None)
            await self._worker
            self._worker = None

    def reopen(self):
        self.closed = False


class SessionOrchestrator:
    """Owns projects and sessions and serializes every command per session.

    Registry mutation happens only here. Readers get Snapshot copies from
    ``list_sessions`` or from snapshot listeners. A background tick polls
    active, non-attached sessions: capture, classify on new content, refresh
    the diff, publish.
    """

    def __init__(
        self,
        config: Config,
        executor: Optional[TmuxExecutor] = None,
        worktrees: Optional[WorktreeOrchestrator] = None,
        content_cache: Optional[ContentCache] = None,
        diff_cache: Optional[DiffCache] = None,
        detector: Optional[ActivityDetector] = None,
        attach_bridge: Optional[AttachBridge] = None,
        store: Optional[JsonStateStore] = None,
        pull_requests: Optional[PullRequestLookup] = None,
    ):
        self.config = config
        self.executor = executor or TmuxExecutor(
            max_concurrent=config.max_concurrent_commands,
            timeout=config.command_timeout,
            max_retries=config.max_retries,
        )
        self.worktrees = worktrees or WorktreeOrchestrator(
            config.worktrees_dir,
            backend=GitBackend(timeout=config.git_timeout),
            timeout=config.git_timeout,
        )
        self.content_cache = content_cache or ContentCache(
            self.executor,
            ttl_ms=config.content_cache_ttl_ms,
            capture_lines=config.capture_lines,
        )
        self.diff_cache = diff_cache or DiffCache(
            self.worktrees.backend,
            ttl_ms=config.diff_cache_ttl_ms,
            timeout=config.git_timeout,
        )
        self.detector = detector or ActivityDetector()
        self.attach_bridge = attach_bridge or AttachBridge(self.executor)
        self.store = store or JsonStateStore(config.state_file)
        self.pull_requests = pull_requests or PullRequestLookup(timeout=config.git_timeout)

        self.projects: dict[str, Project] = {}
        self.sessions: dict[str, Session] = {}
        self._mailboxes: dict[str, SessionMailbox] = {}
        self._project_locks: dict[str, asyncio.Lock] = {}
        # Names claimed by in-progress creates, taken before the first await
        self._reserved_branches: set[tuple[str, str]] = set()
        self._reserved_paths: set[str] = set()
        self._removing_projects: set[str] = set()
        self._attached: set[str] = set()
        self._poll_pending: set[str] = set()
        self._poll_tasks: set[asyncio.Task] = set()
        self._poll_failures: dict[str, int] = {}
        self._listeners: list[SnapshotListener] = []
        self._tick_task: Optional[asyncio.Task] = None
        self._running = False
        # Set once persisted state was loaded; until then stop() must not overwrite it
        self._restored = False
        self.latest_snapshot: Snapshot = self._build_snapshot()

    # --- persistence ---

    def restore(self):
        """
        Load persisted projects and sessions.

        Raises:
            StateLoadError: the state file exists but is unreadable. There is
                no safe default session set, so callers treat this as fatal.
        """
        state = self.store.load()
        for project in state.projects:
            self.projects[project.id] = project
        for session in state.sessions:
            project = self.projects.get(session.project_id)
            if project is None:
                logger.warning(f"Dropping session {session.id}: unknown project {session.project_id}")
                continue
            project.add_session(session.id)
            self.sessions[session.id] = session
            self._mailboxes[session.id] = SessionMailbox(session.id)
        for project in self.projects.values():
            project.session_ids = [sid for sid in project.session_ids if sid in self.sessions]
        self._restored = True
        logger.info(f"Restored {len(self.projects)} projects, {len(self.sessions)} sessions")
        self._publish()

    async def reconcile(self):
        """Mark restored sessions whose tmux session or worktree vanished as errored."""
        for session in list(self.sessions.values()):
            if session.status == SessionStatus.ERRORED:
                continue
            if not Path(session.worktree_path).exists():
                self._mark_errored(session, f"Worktree missing: {session.worktree_path}")
            elif not await self.executor.session_exists(session.tmux_session):
                self._mark_errored(session, f"tmux session {session.tmux_session} missing after restart")
        self._save_state()
        self._publish()

    def _save_state(self) -> bool:
        state = State(projects=list(self.projects.values()), sessions=list(self.sessions.values()))
        return self.store.save(state)

    # --- snapshots ---

    def add_snapshot_listener(self, listener: SnapshotListener):
        """Register a callable invoked with every published Snapshot."""
        self._listeners.append(listener)

    def _build_snapshot(self) -> Snapshot:
        return Snapshot(
            projects=tuple(
                ProjectSnapshot(p.id, p.name, p.root_path, p.main_branch, tuple(p.session_ids))
                for p in self.projects.values()
            ),
            sessions=tuple(
                SessionSnapshot.of(s, attached=s.id in self._attached)
                for s in self.sessions.values()
            ),
            taken_at=datetime.now(),
        )

    def _publish(self):
        self.latest_snapshot = self._build_snapshot()
        for listener in list(self._listeners):
            try:
                result = listener(self.latest_snapshot)
                if inspect.isawaitable(result):
                    task = asyncio.ensure_future(result)
                    self._poll_tasks.add(task)
                    task.add_done_callback(self._poll_tasks.discard)
            except Exception as e:
                logger.error(f"Snapshot listener {listener!r} failed: {e}")

    def list_sessions(self) -> Snapshot:
        """Immutable copy of the current registry."""
        return self._build_snapshot()

    # --- lookups ---

    def get_session(self, session_id: str) -> Session:
        session = self.sessions.get(session_id)
        if session is None:
            raise NotFound(f"Session {session_id} not found")
        return session

    def get_project(self, project_id: str) -> Project:
        project = self.projects.get(project_id)
        if project is None:
            raise NotFound(f"Project {project_id} not found")
        return project

    def _mailbox(self, session_id: str) -> SessionMailbox:
        mailbox = self._mailboxes.get(session_id)
        if mailbox is None:
            raise NotFound(f"Session {session_id} not found")
        return mailbox

    def _project_lock(self, project_id: str) -> asyncio.Lock:
        if project_id not in self._project_locks:
            self._project_locks[project_id] = asyncio.Lock()
        return self._project_locks[project_id]

    def is_attached(self, session_id: str) -> bool:
        return session_id in self._attached

    # --- projects ---

    async def add_project(self, path: str) -> str:
        """
        Register a git repository as a project.

        Args:
            path: Repository working tree

        Returns:
            Project id (the existing one if the repository is already registered)
        """
        root, main_branch = await self.worktrees.validate_project(path)
        for project in self.projects.values():
            if project.root_path == root:
                logger.info(f"Project {root} already registered as {project.id}")
                return project.id

        project = Project(root_path=root, main_branch=main_branch)
        self.projects[project.id] = project
        logger.info(f"Added project {project.name} ({project.id}) at {root}, main branch {main_branch}")
        self._save_state()
        self._publish()
        return project.id

    async def remove_project(self, project_id: str):
        """
        Delete every session of a project (branches kept), then the project.

        New creates for the project fail with NotFound from the moment removal
        starts; a create already in progress finishes first and its session
        is deleted with the rest.
        """
        project = self.get_project(project_id)
        if project_id in self._removing_projects:
            raise NotFound(f"Project {project_id} is already being removed")

        self._removing_projects.add(project_id)
        try:
            async with self._project_lock(project_id):
                for session_id in list(project.session_ids):
                    await self.delete_session(session_id, keep_branch=True)
                self.projects.pop(project_id, None)
        finally:
            self._removing_projects.discard(project_id)
        self._project_locks.pop(project_id, None)
        logger.info(f"Removed project {project.name} ({project_id})")
        self._save_state()
        self._publish()

    # --- session lifecycle ---

    def _check_name_free(self, project: Project, branch: str, path: str):
        resolved = str(Path(path).resolve())
        for session in self.sessions.values():
            if str(Path(session.worktree_path).resolve()) == resolved:
                raise ResourceConflict(f"Worktree path already in use: {path}")
            if session.project_id == project.id and session.branch == branch:
                raise ResourceConflict(f"Branch {branch} already used by session {session.id}")
        if resolved in self._reserved_paths:
            raise ResourceConflict(f"Worktree path is being created: {path}")
        if (project.id, branch) in self._reserved_branches:
            raise ResourceConflict(f"Branch {branch} is being created")

    async def create_session(self, project_id: str, name: str, program: Optional[str] = None) -> str:
        """
        Create worktree, branch and tmux session for a new agent.

        Args:
            project_id: Owning project
            name: Human session name; sanitized into the branch and directory name
            program: Command to run in tmux (defaults to config.default_program)

        Returns:
            New session id

        Raises:
            NotFound: unknown project
            PermanentFailure: invalid name or program
            ResourceConflict: branch or worktree path already taken
        """
        project = self.get_project(project_id)
        if project_id in self._removing_projects:
            raise NotFound(f"Project {project_id} is being removed")
        branch = branch_name(name, self.config.branch_prefix)
        path = self.worktrees.session_path(project_id, name)
        program = (program or self.config.default_program).strip()
        if not program:
            raise PermanentFailure("Program must not be empty")

        # Reserve synchronously so two concurrent creates cannot claim the same names
        self._check_name_free(project, branch, path)
        reserved_path = str(Path(path).resolve())
        self._reserved_paths.add(reserved_path)
        self._reserved_branches.add((project_id, branch))
        try:
            async with self._project_lock(project_id):
                return await self._create_session_locked(project, name.strip(), branch, path, program)
        finally:
            self._reserved_paths.discard(reserved_path)
            self._reserved_branches.discard((project_id, branch))

    async def _create_session_locked(self, project: Project, name: str, branch: str, path: str, program: str) -> str:
        if project.id not in self.projects:
            raise NotFound(f"Project {project.id} was removed")

        session = Session(
            project_id=project.id,
            name=name,
            branch=branch,
            worktree_path=path,
            program=program,
        )

        created = await self.worktrees.create_worktree(project.root_path, branch, path)
        try:
            await self.executor.new_session(session.tmux_session, path, program)
        except (Exception, asyncio.CancelledError) as e:
            logger.warning(f"tmux session for {name} failed ({e!r}), rolling back worktree {path}")
            # new_session is two tmux calls; the session may exist even though it failed.
            # A duplicate name means the session belongs to someone else.
            if not isinstance(e, ResourceConflict):
                await self._rollback_tmux(session.tmux_session)
            await self._rollback_worktree(project.root_path, path, branch)
            raise

        session.base_commit = created.head
        self.sessions[session.id] = session
        self._mailboxes[session.id] = SessionMailbox(session.id)
        project.add_session(session.id)
        logger.info(f"Created session {session.name} ({session.id}) on branch {branch} at {path}")
        self._save_state()
        self._publish()
        return session.id

    async def _rollback_tmux(self, tmux_session: str):
        try:
            await self.executor.kill_session(tmux_session)
        except CommanderError as e:
            logger.warning(f"Rollback of tmux session {tmux_session} failed: {e}")

    async def _rollback_worktree(self, project_root: str, path: str, branch: str):
        try:
            await self.worktrees.delete_worktree(project_root, path, branch, delete_branch=True)
            logger.info(f"Rolled back worktree {path} and branch {branch}")
        except CommanderError as e:
            logger.warning(f"Rollback of worktree {path} failed: {e}")

    async def pause_session(self, session_id: str):
        """Stop polling a session. tmux session and worktree stay."""
        session = self.get_session(session_id)

        async def pause():
            if not session.status.can_pause():
                raise InvalidState(f"Cannot pause session in status {session.status.value}")
            session.set_status(SessionStatus.PAUSED)
            logger.info(f"Paused session {session.name} ({session.id})")
            self._save_state()
            self._publish()

        await self._mailbox(session_id).submit(pause)

    async def resume_session(self, session_id: str):
        """
        Resume a paused or errored session.

        The tmux session is recreated in the existing worktree if it vanished
        or its program exited.
        """
        session = self.get_session(session_id)

        async def resume():
            if not session.status.can_resume():
                raise InvalidState(f"Cannot resume session in status {session.status.value}")
            await self._ensure_tmux(session)
            self._poll_failures.pop(session.id, None)
            session.error_message = None
            session.set_status(SessionStatus.ACTIVE)
            self.content_cache.invalidate(session.id)
            logger.info(f"Resumed session {session.name} ({session.id})")
            self._save_state()
            self._publish()

        await self._mailbox(session_id).submit(resume)

    async def _ensure_tmux(self, session: Session):
        if not Path(session.worktree_path).exists():
            raise PermanentFailure(f"Worktree missing: {session.worktree_path}")

        if await self.executor.session_exists(session.tmux_session):
            if not await self.executor.is_pane_dead(session.tmux_session):
                return
            logger.info(f"Program in {session.tmux_session} exited, recreating tmux session")
            await self.executor.kill_session(session.tmux_session)

        await self.executor.new_session(session.tmux_session, session.worktree_path, session.program)

    async def delete_session(self, session_id: str, keep_branch: bool = False):
        """
        Tear down a session: tmux session, worktree and (unless kept) branch.

        Queued commands for the session fail with NotFound; the in-flight one
        completes first. If the worktree cannot be removed the session stays
        registered as errored so the delete can be retried.
        """
        session = self.get_session(session_id)
        project = self.projects.get(session.project_id)
        mailbox = self._mailbox(session_id)
        if mailbox.closed:
            raise NotFound(f"Session {session_id} is already being deleted")

        await mailbox.close()
        self._attached.discard(session_id)

        try:
            await self.executor.kill_session(session.tmux_session)
            if project is not None:
                await self.worktrees.delete_worktree(
                    project.root_path,
                    session.worktree_path,
                    session.branch,
                    delete_branch=not keep_branch,
                )
        except CommanderError as e:
            self._mark_errored(session, f"Delete failed: {e}")
            mailbox.reopen()
            self._save_state()
            self._publish()
            raise

        self.sessions.pop(session_id, None)
        self._mailboxes.pop(session_id, None)
        self._poll_failures.pop(session_id, None)
        self.content_cache.forget(session_id)
        self.diff_cache.invalidate(session_id)
        if project is not None:
            project.remove_session(session_id)
        logger.info(f"Deleted session {session.name} ({session_id}), keep_branch={keep_branch}")
        self._save_state()
        self._publish()

    # --- reads and input ---

    async def get_content(self, session_id: str) -> str:
        """Current pane text of a session (served from the content cache within its TTL)."""
        session = self.get_session(session_id)

        async def read():
            entry = await self.content_cache.get(session.id, session.tmux_session)
            return entry.text

        return await self._mailbox(session_id).submit(read)

    async def get_diff(self, session_id: str, base_ref: Optional[str] = None) -> DiffModel:
        """Diff of the session's worktree against ``base_ref`` (default: commit it was created from)."""
        session = self.get_session(session_id)
        ref = base_ref or session.base_commit or "HEAD"

        async def read():
            entry = await self.diff_cache.get(session.id, session.worktree_path, ref)
            return entry.diff

        return await self._mailbox(session_id).submit(read)

    async def send_input(self, session_id: str, text: str, enter: bool = True):
        """Type ``text`` into the session's pane."""
        session = self.get_session(session_id)

        async def send():
            if session.status == SessionStatus.ERRORED:
                raise InvalidState("Cannot send input to an errored session")
            await self.executor.send_text(session.tmux_session, text, enter=enter)
            self.content_cache.invalidate(session.id)

        await self._mailbox(session_id).submit(send)

    async def send_key(self, session_id: str, key: str):
        """Press a named key (Escape, Up, PageDown, ...) in the session's pane."""
        await self._send_keys(session_id, special_key(key))

    async def send_control(self, session_id: str, char: str):
        """Press Ctrl+``char`` in the session's pane."""
        await self._send_keys(session_id, control_key(char))

    async def _send_keys(self, session_id: str, tmux_key: str):
        session = self.get_session(session_id)

        async def send():
            if session.status == SessionStatus.ERRORED:
                raise InvalidState("Cannot send keys to an errored session")
            await self.executor.send_keys(session.tmux_session, tmux_key)
            self.content_cache.invalidate(session.id)
            logger.debug(f"Sent {tmux_key} to {session.tmux_session}")

        await self._mailbox(session_id).submit(send)

    async def get_git_status(self, session_id: str, commit_limit: int = 10,
                             include_pull_request: bool = True) -> GitStatus:
        """
        Branch state of a session: uncommitted changes, recent commits and
        the open pull request for its branch.

        The worktree reads go through the session's queue. The pull request
        lookup talks to GitHub only, so it runs outside it and never holds up
        polling; any failure there reads as no pull request.
        """
        session = self.get_session(session_id)
        backend = self.worktrees.backend

        async def read():
            dirty = await asyncio.to_thread(backend.is_dirty, session.worktree_path)
            commits = await asyncio.to_thread(backend.recent_commits, session.worktree_path, commit_limit)
            return dirty, commits

        dirty, commits = await self._mailbox(session_id).submit(read)
        pull_request = None
        if include_pull_request:
            pull_request = await self.pull_requests.check_branch(session.worktree_path, session.branch)
        return GitStatus(
            session_id=session.id,
            branch=session.branch,
            dirty=dirty,
            commits=tuple(commits),
            pull_request=pull_request,
        )

    # --- attach ---

    async def attach(self, session_id: str) -> AttachResult:
        """
        Hand the local terminal to the session's tmux session.

        Polling for the session is suspended until the bridge returns.
        """
        session = self.get_session(session_id)
        mailbox = self._mailbox(session_id)

        async def prepare():
            if not session.status.can_attach():
                raise InvalidState(f"Cannot attach to session in status {session.status.value}")
            if session.id in self._attached:
                raise InvalidState(f"Session {session.id} is already attached")
            if not await self.executor.session_exists(session.tmux_session):
                self._mark_errored(session, f"tmux session {session.tmux_session} is gone")
                self._save_state()
                self._publish()
                raise NotFound(f"tmux session {session.tmux_session} is gone")
            if await self.executor.is_pane_dead(session.tmux_session):
                self._mark_errored(session, "Program exited")
                self._save_state()
                self._publish()
                raise InvalidState(f"Program in {session.tmux_session} has exited")
            self._attached.add(session.id)
            self._publish()

        await mailbox.submit(prepare)
        try:
            result = await self.attach_bridge.attach(session.tmux_session)
        finally:
            self._attached.discard(session.id)
            self.content_cache.invalidate(session.id)

        if result == AttachResult.SESSION_ENDED and session.id in self.sessions:
            self._mark_errored(session, "tmux session ended while attached")
            self._save_state()
        self._publish()
        return result

    # --- polling ---

    def _mark_errored(self, session: Session, message: str):
        session.set_status(SessionStatus.ERRORED)
        session.activity_state = ActivityState.UNKNOWN
        session.error_message = message
        logger.warning(f"Session {session.name} ({session.id}) errored: {message}")

    async def poll_session(self, session_id: str) -> bool:
        """
        Refresh content, activity and diff for one session.

        Returns:
            True if anything visible changed
        """
        session = self.sessions.get(session_id)
        if session is None or session.status != SessionStatus.ACTIVE or session_id in self._attached:
            return False

        changed = False
        try:
            entry = await self.content_cache.get(session.id, session.tmux_session)
        except CommanderError as e:
            failures = self._poll_failures.get(session.id, 0) + 1
            self._poll_failures[session.id] = failures
            logger.warning(f"Capture failed for {session.id} ({failures}/{self.config.max_poll_failures}): {e}")
            if failures >= self.config.max_poll_failures:
                self._mark_errored(session, str(e))
                self._save_state()
                self._publish()
                return True
            return False

        self._poll_failures.pop(session.id, None)
        if entry.generation != session.content_generation:
            session.content_generation = entry.generation
            previous = session.activity_state
            state = self.detector.classify(previous, entry.text)
            session.set_activity(state)
            if state != previous:
                logger.info(f"Session {session.id} activity {previous.value} -> {state.value}")
                self._save_state()
            changed = True

        try:
            diff = await self.diff_cache.get(session.id, session.worktree_path, session.base_commit or "HEAD")
            if diff.generation != session.diff_generation:
                session.diff_generation = diff.generation
                changed = True
        except CommanderError as e:
            logger.warning(f"Diff refresh failed for {session.id}: {e}")

        if changed:
            self._publish()
        return changed

    def tick(self) -> list[str]:
        """
        Submit a poll for each active, non-attached session.

        Sessions whose previous poll is still outstanding are skipped, not
        queued.

        Returns:
            Ids of sessions polled this tick
        """
        submitted = []
        for session in list(self.sessions.values()):
            if session.status != SessionStatus.ACTIVE or session.id in self._attached:
                continue
            if session.id in self._poll_pending:
                continue
            mailbox = self._mailboxes.get(session.id)
            if mailbox is None or mailbox.closed:
                continue
            self._poll_pending.add(session.id)
            task = asyncio.create_task(self._run_poll(session.id, mailbox))
            self._poll_tasks.add(task)
            task.add_done_callback(self._poll_tasks.discard)
            submitted.append(session.id)
        return submitted

    async def _run_poll(self, session_id: str, mailbox: SessionMailbox):
        try:
            await mailbox.submit(lambda: self.poll_session(session_id))
        except NotFound:
            logger.debug(f"Skipped poll for deleted session {session_id}")
        except Exception as e:
            logger.error(f"Poll for {session_id} failed: {e}")
        finally:
            self._poll_pending.discard(session_id)

    async def _tick_loop(self):
        while self._running:
            await asyncio.sleep(self.config.poll_interval)
            self.tick()

    async def start(self):
        """Start the background poll loop."""
        if self._running:
            return
        self._running = True
        self._tick_task = asyncio.create_task(self._tick_loop())
        logger.info(f"Polling every {self.config.poll_interval}s")

    async def stop(self):
        """
        Stop polling and session workers. tmux sessions keep running.

        State is saved only if ``restore`` succeeded, so a failed start never
        replaces an unreadable state file with an empty registry.
        """
        self._running = False
        if self._tick_task:
            self._tick_task.cancel()
            try:
                await self._tick_task
            except asyncio.CancelledError:
                pass
            self._tick_task = None
        for task in list(self._poll_tasks):
            task.cancel()
        for mailbox in list(self._mailboxes.values()):
            await mailbox.close()
            mailbox.reopen()
        if self._restored:
            self._save_state()
        else:
            logger.warning("State was never loaded, leaving the state file untouched")
        logger.info("Orchestrator stopped")
