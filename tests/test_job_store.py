"""
Tests for the in-memory entry store

Tests cover:
- Query normalization
- Lookup by request id, job id and query
- Conflict detection for live entries and job ids
- Expiry of terminal entries only
- Sweeps and cache administration helpers
- LRU eviction under a size bound
"""

from dataclasses import replace

import pytest

from conftest import START_TIME
from search_relay.core.errors import ConflictError, EntryNotFoundError
from search_relay.services.job_store import InMemoryEntryStore, JobEntry, normalize_query

TTL = 1800


def make_entry(request_id: str, query: str, status: str = "pending", **kwargs) -> JobEntry:
    created_at = kwargs.pop("created_at", START_TIME)
    return JobEntry(
        request_id=request_id,
        query=query,
        normalized_query=normalize_query(query),
        status=status,
        created_at=created_at,
        expires_at=created_at + TTL,
        sequence=kwargs.pop("sequence", 1),
        **kwargs,
    )


class TestNormalizeQuery:
    """Test the dedup key."""

    def test_trims_and_casefolds(self):
        assert normalize_query("  Rust Programming ") == "rust programming"

    def test_collapses_inner_whitespace(self):
        assert normalize_query("machine \t  learning\n") == "machine learning"

    def test_empty_query_normalizes_to_empty(self):
        assert normalize_query("   ") == ""


class TestLookups:
    """Test id and query lookups."""

    @pytest.mark.asyncio
    async def test_get_by_request_id_and_job_id(self, store):
        entry = make_entry("req-1", "rust", job_id="run-1")
        await store.put(entry)

        assert await store.get_by_id("req-1") is entry
        assert await store.get_by_id("run-1") is entry

    @pytest.mark.asyncio
    async def test_unknown_id_raises_not_found(self, store):
        with pytest.raises(EntryNotFoundError):
            await store.get_by_id("missing")

    @pytest.mark.asyncio
    async def test_get_by_query_normalizes_input(self, store):
        entry = make_entry("req-1", "Rust")
        await store.put(entry)

        assert await store.get_by_query("  RUST ") is entry

    @pytest.mark.asyncio
    async def test_live_entry_wins_over_newer_terminal_one(self, store):
        done = make_entry("req-1", "rust", status="completed", created_at=START_TIME + 10, sequence=2)
        live = make_entry("req-2", "rust", status="pending", sequence=3)
        await store.put(done)
        await store.put(live)

        assert (await store.get_by_query("rust")).request_id == "req-2"

    @pytest.mark.asyncio
    async def test_freshest_terminal_entry_returned(self, store):
        await store.put(make_entry("req-1", "rust", status="error", sequence=1))
        await store.put(make_entry("req-2", "rust", status="completed", created_at=START_TIME + 5, sequence=2))

        assert (await store.get_by_query("rust")).request_id == "req-2"

    @pytest.mark.asyncio
    async def test_rebinding_job_id_updates_index(self, store):
        entry = make_entry("req-1", "rust")
        await store.put(entry)
        await store.put(replace(entry, job_id="run-7"))

        assert (await store.get_by_id("run-7")).request_id == "req-1"


class TestConflicts:
    """Test uniqueness invariants."""

    @pytest.mark.asyncio
    async def test_second_live_entry_for_query_conflicts(self, store):
        first = make_entry("req-1", "Python")
        await store.put(first)

        with pytest.raises(ConflictError) as exc_info:
            await store.put(make_entry("req-2", "python", status="queued"))

        assert exc_info.value.existing is first

    @pytest.mark.asyncio
    async def test_terminal_entry_may_coexist_with_live_one(self, store):
        await store.put(make_entry("req-1", "python"))
        await store.put(make_entry("req-2", "python", status="completed"))

        assert len(await store.list_entries()) == 2

    @pytest.mark.asyncio
    async def test_job_id_owned_by_other_request_conflicts(self, store):
        await store.put(make_entry("req-1", "rust", job_id="run-1"))

        with pytest.raises(ConflictError):
            await store.put(make_entry("req-2", "go", job_id="run-1"))

    @pytest.mark.asyncio
    async def test_replacing_same_request_is_not_a_conflict(self, store):
        entry = make_entry("req-1", "rust")
        await store.put(entry)
        await store.put(replace(entry, status="completed"))

        assert (await store.get_by_id("req-1")).status == "completed"


class TestExpiry:
    """Test expiry and sweeps."""

    @pytest.mark.asyncio
    async def test_expired_terminal_entry_is_invisible_before_sweep(self, store, clock):
        await store.put(make_entry("req-1", "rust", status="completed", job_id="run-1"))
        clock.advance(TTL + 60)

        with pytest.raises(EntryNotFoundError):
            await store.get_by_id("run-1")
        with pytest.raises(EntryNotFoundError):
            await store.get_by_query("rust")
        # Still physically present until swept
        assert len(await store.list_entries()) == 1

    @pytest.mark.asyncio
    async def test_sweep_never_removes_in_flight_entries(self, store, clock):
        await store.put(make_entry("req-1", "rust", status="pending"))
        await store.put(make_entry("req-2", "go", status="queued", sequence=2))
        await store.put(make_entry("req-3", "zig", status="timeout", sequence=3))
        clock.advance(TTL * 2)

        removed = await store.sweep_expired()

        assert removed == 1
        assert {e.request_id for e in await store.list_entries()} == {"req-1", "req-2"}
        assert (await store.get_by_id("req-1")).status == "pending"

    @pytest.mark.asyncio
    async def test_sweep_cleans_indexes(self, store, clock):
        await store.put(make_entry("req-1", "rust", status="completed", job_id="run-1"))
        clock.advance(TTL)
        await store.sweep_expired()

        # A new live entry for the same job id and query must be accepted
        await store.put(make_entry("req-2", "rust", job_id="run-1", created_at=clock(), sequence=2))
        assert (await store.get_by_query("rust")).request_id == "req-2"


class TestAdministration:
    """Test delete/clear helpers."""

    @pytest.mark.asyncio
    async def test_clear_terminal_keeps_live_entries(self, store):
        await store.put(make_entry("req-1", "rust", status="completed"))
        await store.put(make_entry("req-2", "go", status="error", sequence=2))
        await store.put(make_entry("req-3", "zig", status="pending", sequence=3))

        assert await store.clear_terminal() == 2
        assert [e.request_id for e in await store.list_entries()] == ["req-3"]

    @pytest.mark.asyncio
    async def test_delete_by_job_id(self, store):
        await store.put(make_entry("req-1", "rust", status="completed", job_id="run-1"))

        deleted = await store.delete("run-1")

        assert deleted.request_id == "req-1"
        with pytest.raises(EntryNotFoundError):
            await store.get_by_id("req-1")

    @pytest.mark.asyncio
    async def test_count_and_list_by_status_in_admission_order(self, store):
        await store.put(make_entry("req-b", "go", status="queued", sequence=2))
        await store.put(make_entry("req-a", "rust", status="queued", sequence=1))

        assert await store.count_by_status("queued") == 2
        assert [e.request_id for e in await store.list_by_status("queued")] == ["req-a", "req-b"]


class TestSizeBound:
    """Test LRU eviction when max_entries is set."""

    @pytest.mark.asyncio
    async def test_least_recently_used_terminal_entry_is_evicted(self, clock):
        store = InMemoryEntryStore(clock=clock, max_entries=2)
        await store.put(make_entry("req-a", "rust", status="completed", sequence=1))
        await store.put(make_entry("req-b", "go", status="completed", sequence=2))
        clock.advance(1)
        await store.get_by_id("req-a")
        clock.advance(1)

        await store.put(make_entry("req-c", "zig", status="completed", sequence=3))

        assert {e.request_id for e in await store.list_entries()} == {"req-a", "req-c"}
        with pytest.raises(EntryNotFoundError):
            await store.get_by_query("go")

    @pytest.mark.asyncio
    async def test_live_entries_are_never_evicted(self, clock):
        store = InMemoryEntryStore(clock=clock, max_entries=2)
        await store.put(make_entry("req-a", "rust", status="pending", sequence=1))
        await store.put(make_entry("req-b", "go", status="queued", sequence=2))

        await store.put(make_entry("req-c", "zig", status="queued", sequence=3))

        assert len(await store.list_entries()) == 3

    @pytest.mark.asyncio
    async def test_expired_entries_go_before_fresh_ones(self, clock):
        store = InMemoryEntryStore(clock=clock, max_entries=2)
        await store.put(
            make_entry("req-new", "go", status="completed", created_at=START_TIME + 100, sequence=1)
        )
        clock.advance(10)
        # Written later, so plain LRU order would evict req-new first
        await store.put(make_entry("req-old", "rust", status="completed", sequence=2))
        clock.advance(TTL - 10)

        await store.put(make_entry("req-c", "zig", status="pending", created_at=clock(), sequence=3))

        assert {e.request_id for e in await store.list_entries()} == {"req-new", "req-c"}

    @pytest.mark.asyncio
    async def test_replacing_an_entry_never_evicts(self, clock):
        store = InMemoryEntryStore(clock=clock, max_entries=1)
        entry = make_entry("req-a", "rust")
        await store.put(entry)

        await store.put(replace(entry, status="completed"))

        assert [e.status for e in await store.list_entries()] == ["completed"]
