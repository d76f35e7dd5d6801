"""
Entry store for search jobs.

Holds one JobEntry per admitted search, indexed by request id, provider job id
and normalized query. Entries are replaced, never mutated in place: callers
build an updated copy with dataclasses.replace and put() it back, so the same
code path works for the in-memory backend and the Neo4j backend.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Literal, Protocol

from search_relay.core.errors import ConflictError, EntryNotFoundError
from search_relay.schemas.models import SearchResult

logger = logging.getLogger(__name__)

JobStatus = Literal["pending", "queued", "completed", "error", "timeout"]

TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "error", "timeout"})


def normalize_query(query: str) -> str:
    """Dedup key: trimmed, case-folded, inner whitespace collapsed."""
    return " ".join(query.split()).casefold()


@dataclass
class JobEntry:
    """State for one external search submission."""

    request_id: str
    query: str
    normalized_query: str
    status: JobStatus
    created_at: float
    expires_at: float
    sequence: int
    job_id: str | None = None
    submit_query: str | None = None
    started_at: float | None = None
    finished_at: float | None = None
    queue_position: int | None = None
    results: list[SearchResult] = field(default_factory=list)
    error_message: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def entry_id(self) -> str:
        """Preferred public identifier: provider job id once known."""
        return self.job_id or self.request_id

    def is_expired(self, now: float | None = None) -> bool:
        # In-flight entries never expire, only terminal ones.
        if not self.is_terminal:
            return False
        return (now if now is not None else time.time()) >= self.expires_at


class EntryStore(Protocol):
    """Storage backend interface shared by the in-memory and Neo4j stores."""

    async def put(self, entry: JobEntry) -> None: ...

    async def get_by_id(self, entry_id: str, now: float | None = None) -> JobEntry: ...

    async def get_by_query(self, query: str, now: float | None = None) -> JobEntry: ...

    async def sweep_expired(self, now: float | None = None) -> int: ...

    async def count_by_status(self, status: JobStatus) -> int: ...

    async def list_by_status(self, status: JobStatus) -> list[JobEntry]: ...

    async def list_entries(self) -> list[JobEntry]: ...

    async def delete(self, entry_id: str) -> JobEntry: ...

    async def clear_terminal(self) -> int: ...


class InMemoryEntryStore:
    """Dict-backed store for tests and single-instance deployments."""

    def __init__(
        self, clock: Callable[[], float] = time.time, max_entries: int | None = None
    ) -> None:
        self._clock = clock
        self.max_entries = max_entries
        self._entries: dict[str, JobEntry] = {}
        self._job_index: dict[str, str] = {}
        self._query_index: dict[str, list[str]] = {}
        # request_id -> last read or write, for LRU eviction
        self._accessed: dict[str, float] = {}

    async def put(self, entry: JobEntry) -> None:
        """
        Insert or replace an entry by request id, keeping all indexes in sync.

        Inserting a new entry into a full store evicts least recently used
        terminal entries first.
        """
        if entry.job_id is not None:
            owner = self._job_index.get(entry.job_id)
            if owner is not None and owner != entry.request_id:
                raise ConflictError(
                    f"Job {entry.job_id} already belongs to request {owner}",
                    existing=self._entries.get(owner),
                )

        if not entry.is_terminal:
            live = self._live_for_query(entry.normalized_query)
            if live is not None and live.request_id != entry.request_id:
                raise ConflictError(
                    f"Search for '{entry.normalized_query}' is already {live.status}",
                    existing=live,
                )

        previous = self._entries.get(entry.request_id)
        if previous is not None:
            self._unindex(previous)
        else:
            self._make_room()

        self._entries[entry.request_id] = entry
        self._accessed[entry.request_id] = self._clock()
        if entry.job_id is not None:
            self._job_index[entry.job_id] = entry.request_id
        self._query_index.setdefault(entry.normalized_query, []).append(entry.request_id)

    async def get_by_id(self, entry_id: str, now: float | None = None) -> JobEntry:
        """Look up by provider job id first, then by request id."""
        request_id = self._job_index.get(entry_id, entry_id)
        entry = self._entries.get(request_id)
        now = self._now(now)
        if entry is None or entry.is_expired(now):
            raise EntryNotFoundError(f"No search entry for id {entry_id}")
        self._accessed[entry.request_id] = now
        return entry

    async def get_by_query(self, query: str, now: float | None = None) -> JobEntry:
        """Freshest non-expired entry for the query; a live entry always wins."""
        normalized = normalize_query(query)
        now = self._now(now)
        live = self._live_for_query(normalized)
        if live is not None:
            self._accessed[live.request_id] = now
            return live

        candidates = [
            self._entries[request_id]
            for request_id in self._query_index.get(normalized, [])
            if not self._entries[request_id].is_expired(now)
        ]
        if not candidates:
            raise EntryNotFoundError(f"No search entry for query '{normalized}'")
        entry = max(candidates, key=lambda e: (e.created_at, e.sequence))
        self._accessed[entry.request_id] = now
        return entry

    async def sweep_expired(self, now: float | None = None) -> int:
        now = self._now(now)
        expired = [entry for entry in self._entries.values() if entry.is_expired(now)]
        for entry in expired:
            self._remove(entry)
        return len(expired)

    async def count_by_status(self, status: JobStatus) -> int:
        return sum(1 for entry in self._entries.values() if entry.status == status)

    async def list_by_status(self, status: JobStatus) -> list[JobEntry]:
        matching = [entry for entry in self._entries.values() if entry.status == status]
        return sorted(matching, key=lambda e: (e.created_at, e.sequence))

    async def list_entries(self) -> list[JobEntry]:
        return sorted(self._entries.values(), key=lambda e: (e.created_at, e.sequence))

    async def delete(self, entry_id: str) -> JobEntry:
        request_id = self._job_index.get(entry_id, entry_id)
        entry = self._entries.get(request_id)
        if entry is None:
            raise EntryNotFoundError(f"No search entry for id {entry_id}")
        self._remove(entry)
        return entry

    async def clear_terminal(self) -> int:
        terminal = [entry for entry in self._entries.values() if entry.is_terminal]
        for entry in terminal:
            self._remove(entry)
        return len(terminal)

    def _now(self, now: float | None) -> float:
        return now if now is not None else self._clock()

    def _live_for_query(self, normalized: str) -> JobEntry | None:
        for request_id in self._query_index.get(normalized, []):
            entry = self._entries[request_id]
            if not entry.is_terminal:
                return entry
        return None

    def _make_room(self) -> None:
        """Drop expired, then least recently used terminal entries, below max_entries."""
        if self.max_entries is None or len(self._entries) < self.max_entries:
            return
        now = self._clock()
        for entry in [e for e in self._entries.values() if e.is_expired(now)]:
            self._remove(entry)

        evictable = sorted(
            (e for e in self._entries.values() if e.is_terminal),
            key=lambda e: self._accessed.get(e.request_id, e.created_at),
        )
        while len(self._entries) >= self.max_entries and evictable:
            victim = evictable.pop(0)
            self._remove(victim)
            logger.info(f"Evicted cached search '{victim.query}' ({victim.entry_id}), store full")

    def _remove(self, entry: JobEntry) -> None:
        self._unindex(entry)
        self._entries.pop(entry.request_id, None)
        self._accessed.pop(entry.request_id, None)

    def _unindex(self, entry: JobEntry) -> None:
        if entry.job_id is not None and self._job_index.get(entry.job_id) == entry.request_id:
            del self._job_index[entry.job_id]
        request_ids = self._query_index.get(entry.normalized_query)
        if request_ids is None:
            return
        if entry.request_id in request_ids:
            request_ids.remove(entry.request_id)
        if not request_ids:
            del self._query_index[entry.normalized_query]
