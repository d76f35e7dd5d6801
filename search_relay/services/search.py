"""
Search Service - the search job cache as one object with an explicit lifecycle.

Combines:
1. Admission (dedup, concurrency ceiling, FIFO queue) via AdmissionController
2. Provider submission via ApifyClient, outside the admission lock
3. Webhook ingestion via WebhookIngestionService
4. Periodic timeout/expiry sweeps and on-demand cache administration

Constructed once in the FastAPI lifespan: start() launches the background
workers and the sweep task, stop() cancels them.
"""

import asyncio
import logging
from dataclasses import dataclass

from search_relay.core.errors import ConflictError, EntryNotFoundError, UpstreamSubmissionError
from search_relay.services.admission import AdmissionController
from search_relay.services.apify import ApifyClient, format_query
from search_relay.services.ingestion import WebhookIngestionService
from search_relay.services.job_store import EntryStore, JobEntry
from search_relay.services.worker import BackgroundWorker

logger = logging.getLogger(__name__)

# Polling hint for clients while a job is in flight
IN_FLIGHT_RETRY_AFTER_MS = 3000


@dataclass
class SearchStatus:
    """Read-only view of an entry for polling clients."""

    entry: JobEntry
    cached: bool = False

    @property
    def retry_after_ms(self) -> int | None:
        return None if self.entry.is_terminal else IN_FLIGHT_RETRY_AFTER_MS


class SearchService:
    """Service owning the search job cache and its background tasks."""

    def __init__(
        self,
        store: EntryStore,
        client: ApifyClient,
        capacity: int = 2,
        entry_ttl_seconds: float = 1800,
        job_timeout_seconds: float = 300,
        sweep_interval_seconds: float = 30,
        queue_size: int = 100,
        controller: AdmissionController | None = None,
    ):
        self.store = store
        self.client = client
        self.sweep_interval_seconds = sweep_interval_seconds
        self.controller = controller or AdmissionController(
            store,
            capacity=capacity,
            entry_ttl_seconds=entry_ttl_seconds,
            job_timeout_seconds=job_timeout_seconds,
        )
        self.controller.on_promote = self._on_promote
        self.ingestion = WebhookIngestionService(self.controller, client, queue_size=queue_size)
        self.submissions: BackgroundWorker[JobEntry] = BackgroundWorker(
            "submission", self._submit_promoted, maxsize=queue_size
        )
        self._sweep_task: asyncio.Task | None = None

    async def start(self) -> None:
        self.submissions.start()
        self.ingestion.worker.start()
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop(), name="search-cache-sweep")
        logger.info(
            f"Search service started (capacity={self.controller.capacity}, "
            f"sweep every {self.sweep_interval_seconds}s)"
        )

    async def stop(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            self._sweep_task = None
        await self.ingestion.worker.stop()
        await self.submissions.stop()
        logger.info("Search service stopped")

    async def search(self, query: str, domains: list[str] | None = None) -> SearchStatus:
        """
        Admit a search and, when it got a slot, submit it to Apify.

        Raises:
            ValueError: If the query is empty.
            UpstreamSubmissionError: If Apify rejects the run. The entry is
                marked as error and its slot released before re-raising.
        """
        result = await self.controller.admit_or_queue(query, submit_query=format_query(query, domains))
        if not result.must_submit:
            return SearchStatus(entry=result.entry, cached=result.cached)

        entry = await self._submit(result.entry)
        return SearchStatus(entry=entry)

    async def get_status(self, job_id: str | None = None, query: str | None = None) -> SearchStatus:
        """
        Current state by job id (preferred) or query text. No side effects.

        Raises:
            EntryNotFoundError: If the entry is unknown or expired.
            ValueError: If neither job_id nor query is given.
        """
        if job_id:
            return SearchStatus(entry=await self.store.get_by_id(job_id))
        if query and query.strip():
            return SearchStatus(entry=await self.store.get_by_query(query))
        raise ValueError("Either jobId or query is required")

    async def sweep(self) -> tuple[int, int]:
        """Time out overdue jobs, then drop expired terminal entries."""
        timed_out = await self.controller.expire_overdue()
        removed = await self.store.sweep_expired()
        if timed_out or removed:
            logger.info(f"Sweep: {len(timed_out)} timed out, {removed} expired entries removed")
        return len(timed_out), removed

    async def purge_expired(self) -> int:
        removed = await self.store.sweep_expired()
        logger.info(f"Purged {removed} expired search cache entries")
        return removed

    async def clear(self) -> int:
        """Remove every terminal entry. In-flight and queued jobs are kept."""
        removed = await self.store.clear_terminal()
        logger.info(f"Cleared {removed} search cache entries")
        return removed

    async def delete_entry(self, entry_id: str) -> JobEntry:
        """
        Remove one terminal entry.

        Raises:
            EntryNotFoundError: If the entry does not exist.
            ConflictError: If the entry is still pending or queued.
        """
        entry = await self.store.get_by_id(entry_id)
        if not entry.is_terminal:
            raise ConflictError(f"Search {entry_id} is still {entry.status}", existing=entry)
        return await self.store.delete(entry_id)

    async def cache_state(self) -> tuple[dict[str, int], list[JobEntry]]:
        return await self.controller.snapshot(), await self.store.list_entries()

    async def _submit(self, entry: JobEntry) -> JobEntry:
        submit_query = entry.submit_query or entry.query
        try:
            job_id = await self.client.submit_job(submit_query)
        except UpstreamSubmissionError as e:
            logger.error(f"Submission of '{entry.query}' failed: {e}")
            await self.controller.fail(entry.request_id, str(e))
            raise

        try:
            return await self.controller.bind_job_id(entry.request_id, job_id)
        except ConflictError as e:
            # The webhook can beat the bind and register the job under another entry.
            logger.warning(f"Could not bind job {job_id} to {entry.request_id}: {e}")
            owner = e.existing
            if owner is not None and owner.request_id != entry.request_id and owner.job_id == job_id:
                return await self._settle_from_owner(entry, owner)
            return await self.store.get_by_id(entry.request_id)
        except EntryNotFoundError as e:
            logger.warning(f"Could not bind job {job_id} to {entry.request_id}: {e}")
            return await self.store.get_by_id(entry.request_id)

    async def _settle_from_owner(self, entry: JobEntry, owner: JobEntry) -> JobEntry:
        """Copy the outcome of the entry that already holds the job onto ours."""
        if not owner.is_terminal:
            return await self.store.get_by_id(entry.request_id)
        logger.info(
            f"Job {owner.job_id} already {owner.status} under {owner.request_id}, "
            f"settling {entry.request_id} from it"
        )
        if owner.status == "completed":
            return await self.controller.complete(entry.request_id, owner.results)
        return await self.controller.fail(
            entry.request_id, owner.error_message or f"Search {owner.status}"
        )

    async def _submit_promoted(self, entry: JobEntry) -> None:
        try:
            await self._submit(entry)
        except UpstreamSubmissionError:
            # Already recorded on the entry by _submit.
            return

    def _on_promote(self, entry: JobEntry) -> None:
        try:
            self.submissions.enqueue(entry)
        except asyncio.QueueFull:
            logger.error(
                f"Submission backlog full, promoted search {entry.request_id} "
                "will time out without being submitted"
            )

    async def _sweep_loop(self) -> None:
        while True:
            await asyncio.sleep(self.sweep_interval_seconds)
            try:
                await self.sweep()
            except Exception as e:
                logger.error(f"Search cache sweep failed: {e}", exc_info=True)
