"""
Admission Controller - dedup, concurrency ceiling and FIFO wait list for search jobs.

Every state change of an entry goes through this class under one coarse
asyncio.Lock. Provider I/O never happens while the lock is held: callers get
an AdmissionResult back and talk to the provider afterwards.

Pending count and queue order are read from the store rather than kept in
local counters, so the store stays the single source of truth.
"""

import asyncio
import itertools
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, replace
from uuid import uuid4

from search_relay.core.errors import ConflictError, EntryNotFoundError, JobTimeoutError
from search_relay.schemas.models import SearchResult
from search_relay.services.job_store import EntryStore, JobEntry, JobStatus, normalize_query
from search_relay.services.lifecycle import transition
from search_relay.services.transform import UNKNOWN_QUERY

logger = logging.getLogger(__name__)

PromoteCallback = Callable[[JobEntry], None]

# Terminal outcomes that do not block a fresh admission of the same query.
RETRYABLE_STATUSES = frozenset({"error", "timeout"})


@dataclass
class AdmissionResult:
    """Outcome of admit_or_queue."""

    entry: JobEntry
    must_submit: bool
    cached: bool = False


class AdmissionController:
    """Owns entry creation, slot accounting and lifecycle transitions."""

    def __init__(
        self,
        store: EntryStore,
        capacity: int,
        entry_ttl_seconds: float,
        job_timeout_seconds: float,
        clock: Callable[[], float] = time.time,
        on_promote: PromoteCallback | None = None,
    ):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.store = store
        self.capacity = capacity
        self.entry_ttl_seconds = entry_ttl_seconds
        self.job_timeout_seconds = job_timeout_seconds
        self.on_promote = on_promote
        self._clock = clock
        self._lock = asyncio.Lock()
        self._sequence = itertools.count(1)
        self._waiters: dict[str, asyncio.Event] = {}

    async def admit_or_queue(self, query: str, submit_query: str | None = None) -> AdmissionResult:
        """
        Reuse a live or freshly completed entry, admit a new pending job, or queue it.

        Returns:
            AdmissionResult. must_submit is True only when the caller now holds
            a slot and has to submit the job to the provider.

        Raises:
            ValueError: If the query is empty after normalization.
        """
        normalized = normalize_query(query)
        if not normalized:
            raise ValueError("Query is required")

        async with self._lock:
            now = self._clock()

            existing = await self._find_reusable(normalized, now)
            if existing is not None:
                logger.info(f"Reusing {existing.status} entry {existing.entry_id} for '{normalized}'")
                return AdmissionResult(entry=existing, must_submit=False, cached=True)

            pending = await self.store.count_by_status("pending")
            has_slot = pending < self.capacity
            queue_length = 0 if has_slot else len(await self.store.list_by_status("queued"))

            cleaned = " ".join(query.split())
            entry = JobEntry(
                request_id=uuid4().hex,
                query=cleaned,
                normalized_query=normalized,
                status="pending" if has_slot else "queued",
                created_at=now,
                expires_at=now + self.entry_ttl_seconds,
                sequence=next(self._sequence),
                submit_query=submit_query or cleaned,
                started_at=now if has_slot else None,
                queue_position=None if has_slot else queue_length + 1,
            )

            try:
                await self.store.put(entry)
            except ConflictError as e:
                if e.existing is None:
                    raise
                logger.info(f"Admission race for '{normalized}' resolved to {e.existing.entry_id}")
                return AdmissionResult(entry=e.existing, must_submit=False, cached=True)

            if has_slot:
                logger.info(
                    f"Admitted '{normalized}' as {entry.request_id} "
                    f"({pending + 1}/{self.capacity} slots)"
                )
            else:
                self._waiters[entry.request_id] = asyncio.Event()
                logger.info(
                    f"Queued '{normalized}' as {entry.request_id} "
                    f"(position {entry.queue_position})"
                )
            return AdmissionResult(entry=entry, must_submit=has_slot)

    async def bind_job_id(self, request_id: str, job_id: str) -> JobEntry:
        """
        Record the provider-issued job id against an admitted entry.

        Raises:
            EntryNotFoundError: If the entry is gone.
            ConflictError: If the entry or the job id is already bound elsewhere.
        """
        async with self._lock:
            entry = await self.store.get_by_id(request_id, now=self._clock())
            if entry.job_id == job_id:
                return entry
            if entry.job_id is not None:
                raise ConflictError(
                    f"Entry {request_id} is already bound to job {entry.job_id}",
                    existing=entry,
                )
            updated = replace(entry, job_id=job_id)
            await self.store.put(updated)
            logger.info(f"Bound job {job_id} to request {request_id}")
            return updated

    async def complete(self, entry_id: str, results: list[SearchResult]) -> JobEntry:
        return await self._finish(entry_id, "completed", results=list(results), error_message=None)

    async def fail(self, entry_id: str, message: str) -> JobEntry:
        return await self._finish(entry_id, "error", error_message=message or "Unknown error")

    async def time_out(self, entry_id: str, message: str) -> JobEntry:
        return await self._finish(entry_id, "timeout", error_message=message)

    async def register_completed(
        self, job_id: str, query: str, results: list[SearchResult]
    ) -> JobEntry:
        """
        Attach results for a job this system has no record of.

        A live pending entry for the same query takes the results (and the job
        id when it has none yet). A fresh completed entry is left as is.
        Otherwise a new completed entry is registered; it never held a slot.
        """
        normalized = normalize_query(query) or f"{UNKNOWN_QUERY}:{job_id}"
        promoted: list[JobEntry] = []

        async with self._lock:
            now = self._clock()

            try:
                known = await self.store.get_by_id(job_id, now=now)
            except EntryNotFoundError:
                known = None
            if known is not None:
                if known.is_terminal:
                    return known
                updated, promoted = await self._finish_locked(
                    known, "completed", now, results=list(results), error_message=None
                )
                result = updated
            else:
                result, promoted = await self._register_locked(job_id, query, normalized, results, now)

        self._notify_promoted(promoted)
        return result

    async def register_failed(self, job_id: str, message: str) -> JobEntry:
        """
        Record a failure for a job this system has no live entry for.

        A known job is failed as usual. Otherwise a minimal error entry is
        registered under the unknown_query placeholder with the job id bound,
        so polling by that job id reports the error.
        """
        promoted: list[JobEntry] = []

        async with self._lock:
            now = self._clock()

            try:
                known = await self.store.get_by_id(job_id, now=now)
            except EntryNotFoundError:
                known = None
            if known is not None:
                result, promoted = await self._finish_locked(
                    known, "error", now, error_message=message or "Unknown error"
                )
            else:
                placeholder = f"{UNKNOWN_QUERY}:{job_id}"
                result = JobEntry(
                    request_id=uuid4().hex,
                    job_id=job_id,
                    query=placeholder,
                    normalized_query=placeholder,
                    status="error",
                    created_at=now,
                    expires_at=now + self.entry_ttl_seconds,
                    sequence=next(self._sequence),
                    finished_at=now,
                    error_message=message or "Unknown error",
                )
                await self.store.put(result)
                logger.info(f"Registered error entry for unknown job {job_id}: {message}")

        self._notify_promoted(promoted)
        return result

    async def expire_overdue(self) -> list[JobEntry]:
        """Time out pending entries whose deadline passed. Local bookkeeping only."""
        timed_out: list[JobEntry] = []
        promoted: list[JobEntry] = []

        async with self._lock:
            now = self._clock()
            for entry in await self.store.list_by_status("pending"):
                started = entry.started_at if entry.started_at is not None else entry.created_at
                if now < started + self.job_timeout_seconds:
                    continue
                error = JobTimeoutError(
                    f"Search timed out after {int(self.job_timeout_seconds)} seconds"
                )
                updated, _ = await self._finish_locked(
                    entry, "timeout", now, promote=False, error_message=str(error)
                )
                timed_out.append(updated)
                logger.warning(f"Search {updated.entry_id} for '{updated.query}' timed out")

            if timed_out:
                promoted = await self._promote_locked(now)

        self._notify_promoted(promoted)
        return timed_out

    async def wait_for_slot(self, request_id: str, timeout: float | None = None) -> JobEntry:
        """Block until a queued entry is promoted, then return its current state."""
        event = self._waiters.get(request_id)
        if event is not None:
            await asyncio.wait_for(event.wait(), timeout)
        return await self.store.get_by_id(request_id)

    async def snapshot(self) -> dict[str, int]:
        pending = await self.store.count_by_status("pending")
        queued = await self.store.count_by_status("queued")
        return {"capacity": self.capacity, "pending": pending, "queued": queued}

    async def _find_reusable(self, normalized: str, now: float) -> JobEntry | None:
        try:
            entry = await self.store.get_by_query(normalized, now=now)
        except EntryNotFoundError:
            return None
        if entry.status in RETRYABLE_STATUSES:
            return None
        return entry

    async def _finish(self, entry_id: str, target: JobStatus, **changes) -> JobEntry:
        async with self._lock:
            now = self._clock()
            entry = await self.store.get_by_id(entry_id, now=now)
            updated, promoted = await self._finish_locked(entry, target, now, **changes)
        self._notify_promoted(promoted)
        return updated

    async def _finish_locked(
        self, entry: JobEntry, target: JobStatus, now: float, promote: bool = True, **changes
    ) -> tuple[JobEntry, list[JobEntry]]:
        if entry.is_terminal:
            logger.info(f"Entry {entry.entry_id} already {entry.status}, ignoring {target}")
            return entry, []

        # Finished results stay cached for a full TTL, however long the job waited.
        changes.setdefault("expires_at", now + self.entry_ttl_seconds)
        updated = transition(entry, target, now, **changes)
        await self.store.put(updated)
        logger.info(f"Entry {updated.entry_id} for '{updated.query}' -> {target}")

        if not promote:
            return updated, []
        return updated, await self._promote_locked(now)

    async def _register_locked(
        self,
        job_id: str,
        query: str,
        normalized: str,
        results: list[SearchResult],
        now: float,
    ) -> tuple[JobEntry, list[JobEntry]]:
        try:
            live = await self.store.get_by_query(normalized, now=now)
        except EntryNotFoundError:
            live = None

        if live is not None and live.status == "pending":
            changes = {"results": list(results), "error_message": None}
            if live.job_id is None:
                changes["job_id"] = job_id
            return await self._finish_locked(live, "completed", now, **changes)
        if live is not None and live.status in ("queued", "completed"):
            logger.warning(
                f"Dropping results of unknown job {job_id}: '{normalized}' is already {live.status}"
            )
            return live, []

        entry = JobEntry(
            request_id=uuid4().hex,
            job_id=job_id,
            query=" ".join(query.split()) or normalized,
            normalized_query=normalized,
            status="completed",
            created_at=now,
            expires_at=now + self.entry_ttl_seconds,
            sequence=next(self._sequence),
            finished_at=now,
            results=list(results),
        )
        await self.store.put(entry)
        logger.info(f"Registered retroactive entry for job {job_id}, query '{normalized}'")
        return entry, []

    async def _promote_locked(self, now: float) -> list[JobEntry]:
        """Move queue heads to pending while slots are free, then renumber the queue."""
        promoted: list[JobEntry] = []
        pending = await self.store.count_by_status("pending")
        queued = await self.store.list_by_status("queued")

        while queued and pending < self.capacity:
            head = queued.pop(0)
            updated = transition(head, "pending", now)
            await self.store.put(updated)
            pending += 1
            promoted.append(updated)
            logger.info(f"Promoted '{updated.query}' ({updated.request_id}) to pending")

            event = self._waiters.pop(updated.request_id, None)
            if event is not None:
                event.set()

        if promoted:
            for position, entry in enumerate(queued, start=1):
                if entry.queue_position != position:
                    await self.store.put(replace(entry, queue_position=position))

        return promoted

    def _notify_promoted(self, promoted: list[JobEntry]) -> None:
        if self.on_promote is None:
            return
        for entry in promoted:
            self.on_promote(entry)
