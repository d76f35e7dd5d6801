"""
Neo4j Entry Store - persistent backend for multi-instance deployments.

Each entry is one (:SearchJob) node. Results are stored as a JSON string
property; the store never needs to query inside them. Same semantics as
InMemoryEntryStore, with the live-query and job-id checks done inside the
write transaction.
"""

import json
import logging
import time
from typing import Any

from neo4j import AsyncDriver, AsyncManagedTransaction

from search_relay.core.errors import ConflictError, EntryNotFoundError
from search_relay.schemas.models import SearchResult
from search_relay.services.job_store import TERMINAL_STATUSES, JobEntry, JobStatus, normalize_query

logger = logging.getLogger(__name__)

SCHEMA_QUERIES = [
    "CREATE CONSTRAINT search_job_request_id IF NOT EXISTS "
    "FOR (j:SearchJob) REQUIRE j.request_id IS UNIQUE",
    "CREATE CONSTRAINT search_job_job_id IF NOT EXISTS "
    "FOR (j:SearchJob) REQUIRE j.job_id IS UNIQUE",
    "CREATE INDEX search_job_normalized_query IF NOT EXISTS "
    "FOR (j:SearchJob) ON (j.normalized_query)",
    "CREATE INDEX search_job_status IF NOT EXISTS FOR (j:SearchJob) ON (j.status)",
]

# Cypher: another live entry already owns this normalized query
FIND_LIVE_FOR_QUERY = """
MATCH (j:SearchJob {normalized_query: $normalized_query})
WHERE j.status IN ['pending', 'queued']
  AND j.request_id <> $request_id
RETURN j
LIMIT 1
"""

# Cypher: provider job id already bound to a different request
FIND_JOB_OWNER = """
MATCH (j:SearchJob {job_id: $job_id})
WHERE j.request_id <> $request_id
RETURN j
LIMIT 1
"""

UPSERT_ENTRY = """
MERGE (j:SearchJob {request_id: $request_id})
SET j += $props
"""

GET_BY_ID = """
MATCH (j:SearchJob)
WHERE j.job_id = $entry_id OR j.request_id = $entry_id
RETURN j
"""

GET_BY_QUERY = """
MATCH (j:SearchJob {normalized_query: $normalized_query})
RETURN j
ORDER BY j.created_at DESC, j.sequence DESC
"""

SWEEP_EXPIRED = """
MATCH (j:SearchJob)
WHERE j.status IN $terminal AND j.expires_at <= $now
DETACH DELETE j
RETURN count(*) AS removed
"""

COUNT_BY_STATUS = """
MATCH (j:SearchJob {status: $status})
RETURN count(j) AS total
"""

LIST_BY_STATUS = """
MATCH (j:SearchJob {status: $status})
RETURN j
ORDER BY j.created_at ASC, j.sequence ASC
"""

LIST_ALL = """
MATCH (j:SearchJob)
RETURN j
ORDER BY j.created_at ASC, j.sequence ASC
"""

DELETE_BY_REQUEST_ID = """
MATCH (j:SearchJob {request_id: $request_id})
DETACH DELETE j
"""

CLEAR_TERMINAL = """
MATCH (j:SearchJob)
WHERE j.status IN $terminal
DETACH DELETE j
RETURN count(*) AS removed
"""

TOUCH_ENTRY = """
MATCH (j:SearchJob {request_id: $request_id})
SET j.last_accessed = $now
"""

COUNT_ALL = """
MATCH (j:SearchJob)
RETURN count(j) AS total
"""

# Cypher: drop expired terminal entries, then the least recently used terminal ones
DELETE_EXPIRED = """
MATCH (j:SearchJob)
WHERE j.status IN $terminal AND j.expires_at <= $now AND j.request_id <> $request_id
DETACH DELETE j
"""

EVICT_LRU = """
MATCH (j:SearchJob)
WHERE j.status IN $terminal AND j.request_id <> $request_id
WITH j ORDER BY coalesce(j.last_accessed, j.created_at) ASC
LIMIT $excess
DETACH DELETE j
RETURN count(*) AS evicted
"""


def entry_to_props(entry: JobEntry) -> dict[str, Any]:
    """Node properties for an entry (request_id is the MERGE key)."""
    return {
        "job_id": entry.job_id,
        "query": entry.query,
        "normalized_query": entry.normalized_query,
        "status": entry.status,
        "created_at": entry.created_at,
        "expires_at": entry.expires_at,
        "sequence": entry.sequence,
        "submit_query": entry.submit_query,
        "started_at": entry.started_at,
        "finished_at": entry.finished_at,
        "queue_position": entry.queue_position,
        "error_message": entry.error_message,
        "results_json": json.dumps([r.model_dump() for r in entry.results]),
    }


def entry_from_props(props: dict[str, Any]) -> JobEntry:
    raw_results = props.get("results_json") or "[]"
    return JobEntry(
        request_id=props["request_id"],
        job_id=props.get("job_id"),
        query=props.get("query", ""),
        normalized_query=props.get("normalized_query", ""),
        status=props.get("status", "error"),
        created_at=float(props.get("created_at", 0.0)),
        expires_at=float(props.get("expires_at", 0.0)),
        sequence=int(props.get("sequence", 0)),
        submit_query=props.get("submit_query"),
        started_at=props.get("started_at"),
        finished_at=props.get("finished_at"),
        queue_position=props.get("queue_position"),
        error_message=props.get("error_message"),
        results=[SearchResult.model_validate(item) for item in json.loads(raw_results)],
    )


class Neo4jEntryStore:
    """EntryStore backed by Neo4j through the async driver."""

    def __init__(self, driver: AsyncDriver, max_entries: int | None = None):
        self.driver = driver
        self.max_entries = max_entries

    async def ensure_schema(self) -> None:
        """Create constraints and indexes (safe to call multiple times)."""
        async with self.driver.session() as session:
            for query in SCHEMA_QUERIES:
                await session.run(query)
        logger.info("SearchJob constraints and indexes initialized")

    async def put(self, entry: JobEntry) -> None:
        async with self.driver.session() as session:
            await session.execute_write(self._put_tx, entry, time.time())

    async def _put_tx(self, tx: AsyncManagedTransaction, entry: JobEntry, now: float) -> None:
        if entry.job_id is not None:
            result = await tx.run(FIND_JOB_OWNER, job_id=entry.job_id, request_id=entry.request_id)
            records = await result.data()
            if records:
                owner = entry_from_props(records[0]["j"])
                raise ConflictError(
                    f"Job {entry.job_id} already belongs to request {owner.request_id}",
                    existing=owner,
                )

        if entry.status not in TERMINAL_STATUSES:
            result = await tx.run(
                FIND_LIVE_FOR_QUERY,
                normalized_query=entry.normalized_query,
                request_id=entry.request_id,
            )
            records = await result.data()
            if records:
                live = entry_from_props(records[0]["j"])
                raise ConflictError(
                    f"Search for '{entry.normalized_query}' is already {live.status}",
                    existing=live,
                )

        props = {**entry_to_props(entry), "last_accessed": now}
        await tx.run(UPSERT_ENTRY, request_id=entry.request_id, props=props)

        if self.max_entries is not None:
            await self._enforce_limit_tx(tx, entry.request_id, now)

    async def _enforce_limit_tx(
        self, tx: AsyncManagedTransaction, request_id: str, now: float
    ) -> None:
        """Keep at most max_entries nodes; live entries are never evicted."""
        result = await tx.run(COUNT_ALL)
        records = await result.data()
        if not records or records[0]["total"] <= self.max_entries:
            return

        terminal = sorted(TERMINAL_STATUSES)
        await tx.run(DELETE_EXPIRED, terminal=terminal, now=now, request_id=request_id)
        result = await tx.run(COUNT_ALL)
        records = await result.data()
        excess = records[0]["total"] - self.max_entries if records else 0
        if excess <= 0:
            return

        result = await tx.run(EVICT_LRU, terminal=terminal, request_id=request_id, excess=excess)
        records = await result.data()
        evicted = records[0]["evicted"] if records else 0
        logger.info(f"Evicted {evicted} least recently used search entries, store full")

    async def get_by_id(self, entry_id: str, now: float | None = None) -> JobEntry:
        records = await self._run(GET_BY_ID, entry_id=entry_id)
        entries = [entry_from_props(record["j"]) for record in records]
        # A job id match wins over a request id match.
        entries.sort(key=lambda e: e.job_id != entry_id)
        if not entries or entries[0].is_expired(now):
            raise EntryNotFoundError(f"No search entry for id {entry_id}")
        await self._touch(entries[0], now)
        return entries[0]

    async def get_by_query(self, query: str, now: float | None = None) -> JobEntry:
        normalized = normalize_query(query)
        records = await self._run(GET_BY_QUERY, normalized_query=normalized)
        entries = [entry_from_props(record["j"]) for record in records]

        live = [entry for entry in entries if not entry.is_terminal]
        fresh = [entry for entry in entries if not entry.is_expired(now)]
        found = (live or fresh or [None])[0]
        if found is None:
            raise EntryNotFoundError(f"No search entry for query '{normalized}'")
        await self._touch(found, now)
        return found

    async def sweep_expired(self, now: float | None = None) -> int:
        now = now if now is not None else time.time()
        records = await self._run(SWEEP_EXPIRED, terminal=sorted(TERMINAL_STATUSES), now=now)
        return records[0]["removed"] if records else 0

    async def count_by_status(self, status: JobStatus) -> int:
        records = await self._run(COUNT_BY_STATUS, status=status)
        return records[0]["total"] if records else 0

    async def list_by_status(self, status: JobStatus) -> list[JobEntry]:
        records = await self._run(LIST_BY_STATUS, status=status)
        return [entry_from_props(record["j"]) for record in records]

    async def list_entries(self) -> list[JobEntry]:
        records = await self._run(LIST_ALL)
        return [entry_from_props(record["j"]) for record in records]

    async def delete(self, entry_id: str) -> JobEntry:
        entry = await self.get_by_id(entry_id, now=0.0)
        await self._run(DELETE_BY_REQUEST_ID, request_id=entry.request_id)
        return entry

    async def clear_terminal(self) -> int:
        records = await self._run(CLEAR_TERMINAL, terminal=sorted(TERMINAL_STATUSES))
        return records[0]["removed"] if records else 0

    async def _touch(self, entry: JobEntry, now: float | None) -> None:
        # Access times only matter for eviction.
        if self.max_entries is None:
            return
        now = now if now is not None else time.time()
        await self._run(TOUCH_ENTRY, request_id=entry.request_id, now=now)

    async def _run(self, query: str, **params) -> list[dict[str, Any]]:
        async with self.driver.session() as session:
            result = await session.run(query, **params)
            return await result.data()
