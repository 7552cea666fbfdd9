"""TTL + hash cache over captured pane text."""

import logging
import time
from dataclasses import dataclass
from typing import Callable, Optional

import xxhash

from .tmux_executor import TmuxExecutor

logger = logging.getLogger(__name__)


def content_hash(text: str) -> str:
    """Non-cryptographic 64-bit content hash (XXH3)."""
    return xxhash.xxh3_64_hexdigest(text.encode("utf-8", errors="replace"))


@dataclass(frozen=True)
class ContentEntry:
    text: str
    hash: str
    captured_at: float
    generation: int


class ContentCache:
    """
    Per-session cache of the last capture-pane output.

    A read within ``ttl_ms`` of the previous capture is served from memory.
    Otherwise the pane is captured again; ``generation`` only advances when
    the captured text actually changed, so consumers can skip recomputation
    by comparing generations.
    """

    def __init__(
        self,
        executor: TmuxExecutor,
        ttl_ms: int = 50,
        capture_lines: int = 1000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.executor = executor
        self.ttl = ttl_ms / 1000.0
        self.capture_lines = capture_lines
        self._clock = clock
        self._entries: dict[str, ContentEntry] = {}

    def peek(self, session_id: str) -> Optional[ContentEntry]:
        """Return the cached entry without capturing."""
        return self._entries.get(session_id)

    def generation(self, session_id: str) -> int:
        entry = self._entries.get(session_id)
        return entry.generation if entry else 0

    async def get(self, session_id: str, tmux_session: str) -> ContentEntry:
        """
        Return current pane content for a session.

        Args:
            session_id: Cache key
            tmux_session: tmux session name to capture from

        Returns:
            Fresh or cached ContentEntry

        Raises:
            Errors from TmuxExecutor.capture_pane propagate; the cached entry
            is left untouched.
        """
        now = self._clock()
        entry = self._entries.get(session_id)
        if entry is not None and now - entry.captured_at < self.ttl:
            logger.debug(f"Content cache hit for {session_id} (gen {entry.generation})")
            return entry

        text = await self.executor.capture_pane(tmux_session, lines=self.capture_lines)
        digest = content_hash(text)
        captured_at = self._clock()

        if entry is not None and entry.hash == digest:
            entry = ContentEntry(entry.text, entry.hash, captured_at, entry.generation)
            logger.debug(f"Content unchanged for {session_id} (gen {entry.generation})")
        else:
            generation = entry.generation + 1 if entry else 1
            entry = ContentEntry(text, digest, captured_at, generation)
            logger.debug(f"Content changed for {session_id} (gen {generation})")

        self._entries[session_id] = entry
        return entry

    def invalidate(self, session_id: str):
        """Force the next read to capture. The generation counter is kept."""
        entry = self._entries.get(session_id)
        if entry is not None:
            self._entries[session_id] = ContentEntry(entry.text, entry.hash, float("-inf"), entry.generation)

    def forget(self, session_id: str):
        self._entries.pop(session_id, None)

    def clear(self):
        self._entries.clear()
