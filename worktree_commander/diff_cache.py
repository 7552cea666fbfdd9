"""TTL cache of structured worktree diffs."""

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import xxhash

from .errors import CommandTimeout
from .git_backend import GitBackend
from .models import DiffModel

logger = logging.getLogger(__name__)

DIFF_TIMEOUT_SECONDS = 30.0
# Distinct base refs cached per session; API callers choose the ref freely
MAX_REFS_PER_SESSION = 8


def diff_hash(diff: DiffModel) -> str:
    h = xxhash.xxh3_64()
    for f in diff.files:
        h.update(f"{f.change_type}\0{f.old_path}\0{f.path}\0{f.is_binary}\n".encode("utf-8"))
        for hunk in f.hunks:
            h.update(hunk.header.encode("utf-8"))
            for line in hunk.lines:
                h.update(line.encode("utf-8", errors="replace"))
                h.update(b"\n")
    return h.hexdigest()


@dataclass(frozen=True)
class DiffEntry:
    diff: DiffModel
    hash: str
    computed_at: float
    generation: int


class DiffCache:
    """Same discipline as ContentCache, over ``(session_id, base_ref)`` keys.

    Diffs are computed in a worker thread since GitPython blocks. A
    computation that outlives ``timeout`` fails with CommandTimeout. Each
    session keeps at most ``max_refs_per_session`` refs; the least recently
    computed one is dropped first.
    """

    def __init__(
        self,
        backend: Optional[GitBackend] = None,
        ttl_ms: int = 500,
        clock: Callable[[], float] = time.monotonic,
        timeout: float = DIFF_TIMEOUT_SECONDS,
        max_refs_per_session: int = MAX_REFS_PER_SESSION,
    ):
        if max_refs_per_session < 1:
            raise ValueError("max_refs_per_session must be at least 1")
        self.backend = backend or GitBackend()
        self.ttl = ttl_ms / 1000.0
        self.timeout = timeout
        self.max_refs_per_session = max_refs_per_session
        self._clock = clock
        self._entries: dict[tuple[str, str], DiffEntry] = {}

    def peek(self, session_id: str, base_ref: str = "HEAD") -> Optional[DiffEntry]:
        return self._entries.get((session_id, base_ref))

    def refs(self, session_id: str) -> list[str]:
        return [ref for sid, ref in self._entries if sid == session_id]

    async def get(self, session_id: str, worktree_path: str, base_ref: str = "HEAD") -> DiffEntry:
        """
        Return the diff for a session's worktree, recomputing after the TTL.

        Raises:
            CommandTimeout: the diff took longer than ``timeout``
            CommandFailed: git rejected the reference
        """
        key = (session_id, base_ref)
        now = self._clock()
        entry = self._entries.get(key)
        if entry is not None and now - entry.computed_at < self.ttl:
            logger.debug(f"Diff cache hit for {session_id}@{base_ref}")
            return entry

        logger.debug(f"Diff cache miss for {session_id}@{base_ref}, computing")
        try:
            diff = await asyncio.wait_for(
                asyncio.to_thread(self.backend.compute_diff, worktree_path, base_ref),
                timeout=self.timeout,
            )
        except asyncio.TimeoutError:
            logger.warning(f"Diff for {session_id}@{base_ref} timed out after {self.timeout}s")
            raise CommandTimeout(f"git diff {base_ref}", self.timeout)
        digest = diff_hash(diff)
        computed_at = self._clock()

        if entry is not None and entry.hash == digest:
            entry = DiffEntry(entry.diff, entry.hash, computed_at, entry.generation)
        else:
            generation = entry.generation + 1 if entry else 1
            entry = DiffEntry(diff, digest, computed_at, generation)

        self._entries[key] = entry
        self._evict(session_id, keep=key)
        return entry

    def _evict(self, session_id: str, keep: tuple[str, str]):
        others = [k for k in self._entries if k[0] == session_id and k != keep]
        excess = len(others) + 1 - self.max_refs_per_session
        if excess <= 0:
            return
        others.sort(key=lambda k: self._entries[k].computed_at)
        for k in others[:excess]:
            logger.debug(f"Evicting diff for {session_id}@{k[1]}")
            del self._entries[k]

    def invalidate(self, session_id: str):
        """Drop every cached diff for a session."""
        for key in [k for k in self._entries if k[0] == session_id]:
            del self._entries[key]

    def clear(self):
        self._entries.clear()
