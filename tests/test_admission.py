"""
Tests for the admission controller

Tests cover:
- Dedup of concurrent and repeated searches
- The concurrency ceiling and FIFO wait list
- Promotion on completion, failure and timeout
- Terminal immutability
- Retroactive registration of unknown jobs
"""

import asyncio

import pytest

from search_relay.schemas.models import SearchResult
from search_relay.services.admission import AdmissionController

RESULT = SearchResult(
    title="Rust Fundamentals",
    url="https://www.coursera.org/learn/rust-fundamentals",
    type="COURSE",
    source="Coursera",
)


class TestDedup:
    """Test that equivalent searches share one entry."""

    @pytest.mark.asyncio
    async def test_concurrent_identical_searches_create_one_entry(self, controller, store):
        results = await asyncio.gather(*(controller.admit_or_queue("Python") for _ in range(5)))

        request_ids = {r.entry.request_id for r in results}
        assert len(request_ids) == 1
        assert sum(1 for r in results if r.must_submit) == 1
        assert len(await store.list_entries()) == 1

    @pytest.mark.asyncio
    async def test_normalized_variants_share_an_entry(self, controller):
        first = await controller.admit_or_queue("Machine  Learning")
        second = await controller.admit_or_queue("  machine learning ")

        assert second.entry.request_id == first.entry.request_id
        assert second.cached is True
        assert second.must_submit is False

    @pytest.mark.asyncio
    async def test_completed_entry_is_served_from_cache(self, controller):
        first = await controller.admit_or_queue("rust")
        await controller.complete(first.entry.request_id, [RESULT])

        again = await controller.admit_or_queue("RUST")

        assert again.entry.status == "completed"
        assert again.entry.results == [RESULT]
        assert again.must_submit is False

    @pytest.mark.asyncio
    async def test_failed_search_can_be_retried(self, controller):
        first = await controller.admit_or_queue("rust")
        await controller.fail(first.entry.request_id, "boom")

        retry = await controller.admit_or_queue("rust")

        assert retry.entry.request_id != first.entry.request_id
        assert retry.must_submit is True

    @pytest.mark.asyncio
    async def test_empty_query_rejected(self, controller):
        with pytest.raises(ValueError):
            await controller.admit_or_queue("   ")

    def test_capacity_must_be_positive(self, store):
        with pytest.raises(ValueError):
            AdmissionController(store, capacity=0, entry_ttl_seconds=60, job_timeout_seconds=60)


class TestConcurrencyCeiling:
    """Test the pending bound and the wait list."""

    @pytest.mark.asyncio
    async def test_second_distinct_query_is_queued(self, controller):
        python = await controller.admit_or_queue("python")
        java = await controller.admit_or_queue("java")

        assert python.entry.status == "pending"
        assert java.entry.status == "queued"
        assert java.entry.queue_position == 1
        assert java.must_submit is False

    @pytest.mark.asyncio
    async def test_pending_never_exceeds_capacity(self, store, clock):
        controller = AdmissionController(
            store, capacity=2, entry_ttl_seconds=1800, job_timeout_seconds=300, clock=clock
        )
        await asyncio.gather(*(controller.admit_or_queue(f"topic {i}") for i in range(6)))

        snapshot = await controller.snapshot()
        assert snapshot == {"capacity": 2, "pending": 2, "queued": 4}
        positions = [e.queue_position for e in await store.list_by_status("queued")]
        assert positions == [1, 2, 3, 4]

    @pytest.mark.asyncio
    async def test_completion_promotes_queue_head(self, controller, store):
        promoted = []
        controller.on_promote = promoted.append
        python = await controller.admit_or_queue("python")
        java = await controller.admit_or_queue("java")
        go = await controller.admit_or_queue("go")

        await controller.complete(python.entry.request_id, [RESULT])

        java_now = await store.get_by_id(java.entry.request_id)
        go_now = await store.get_by_id(go.entry.request_id)
        assert java_now.status == "pending"
        assert java_now.started_at is not None
        assert go_now.status == "queued"
        assert go_now.queue_position == 1
        assert [e.request_id for e in promoted] == [java.entry.request_id]

    @pytest.mark.asyncio
    async def test_failure_releases_slot(self, controller, store):
        python = await controller.admit_or_queue("python")
        java = await controller.admit_or_queue("java")

        await controller.fail(python.entry.request_id, "provider down")

        assert (await store.get_by_id(java.entry.request_id)).status == "pending"
        assert await store.count_by_status("pending") == 1

    @pytest.mark.asyncio
    async def test_wait_for_slot_returns_after_promotion(self, controller):
        python = await controller.admit_or_queue("python")
        java = await controller.admit_or_queue("java")

        waiter = asyncio.create_task(controller.wait_for_slot(java.entry.request_id, timeout=1))
        await asyncio.sleep(0)
        assert not waiter.done()

        await controller.complete(python.entry.request_id, [])
        promoted = await waiter

        assert promoted.status == "pending"


class TestTerminalImmutability:
    """Test that terminal entries never change."""

    @pytest.mark.asyncio
    async def test_late_completion_after_timeout_is_ignored(self, controller, clock):
        python = await controller.admit_or_queue("python")
        clock.advance(5 * 60 + 1)
        await controller.expire_overdue()

        after = await controller.complete(python.entry.request_id, [RESULT])

        assert after.status == "timeout"
        assert after.results == []

    @pytest.mark.asyncio
    async def test_double_completion_keeps_first_results(self, controller):
        python = await controller.admit_or_queue("python")
        await controller.complete(python.entry.request_id, [RESULT])

        second = await controller.complete(python.entry.request_id, [])

        assert second.results == [RESULT]


class TestTimeouts:
    """Test expire_overdue."""

    @pytest.mark.asyncio
    async def test_overdue_job_times_out_and_promotes(self, controller, store, clock):
        python = await controller.admit_or_queue("python")
        java = await controller.admit_or_queue("java")
        clock.advance(5 * 60)

        timed_out = await controller.expire_overdue()

        assert [e.request_id for e in timed_out] == [python.entry.request_id]
        assert timed_out[0].error_message == "Search timed out after 300 seconds"
        assert (await store.get_by_id(java.entry.request_id)).status == "pending"

    @pytest.mark.asyncio
    async def test_promoted_entry_gets_fresh_deadline(self, controller, store, clock):
        python = await controller.admit_or_queue("python")
        java = await controller.admit_or_queue("java")
        clock.advance(4 * 60)
        await controller.complete(python.entry.request_id, [])
        clock.advance(2 * 60)

        assert await controller.expire_overdue() == []
        assert (await store.get_by_id(java.entry.request_id)).status == "pending"

    @pytest.mark.asyncio
    async def test_queued_entries_do_not_time_out(self, controller, store, clock):
        await controller.admit_or_queue("python")
        java = await controller.admit_or_queue("java")
        clock.advance(60 * 60)

        await controller.expire_overdue()

        # java was promoted by the sweep, not timed out
        assert (await store.get_by_id(java.entry.request_id)).status == "pending"


class TestBindJobId:
    """Test binding provider job ids."""

    @pytest.mark.asyncio
    async def test_bind_makes_entry_findable_by_job_id(self, controller, store):
        python = await controller.admit_or_queue("python")

        await controller.bind_job_id(python.entry.request_id, "run-1")

        assert (await store.get_by_id("run-1")).request_id == python.entry.request_id

    @pytest.mark.asyncio
    async def test_rebinding_same_job_id_is_noop(self, controller):
        python = await controller.admit_or_queue("python")
        await controller.bind_job_id(python.entry.request_id, "run-1")

        again = await controller.bind_job_id(python.entry.request_id, "run-1")

        assert again.job_id == "run-1"


class TestRegisterCompleted:
    """Test results for jobs the controller has no record of."""

    @pytest.mark.asyncio
    async def test_unknown_job_creates_completed_entry(self, controller, store):
        entry = await controller.register_completed("run-x", "Linux", [RESULT])

        assert entry.status == "completed"
        assert entry.job_id == "run-x"
        assert (await store.get_by_query("linux")).request_id == entry.request_id
        assert await store.count_by_status("pending") == 0

    @pytest.mark.asyncio
    async def test_unknown_job_completes_matching_pending_entry(self, controller, store):
        python = await controller.admit_or_queue("python")
        java = await controller.admit_or_queue("java")

        entry = await controller.register_completed("run-x", "Python", [RESULT])

        assert entry.request_id == python.entry.request_id
        assert entry.job_id == "run-x"
        assert (await store.get_by_id(java.entry.request_id)).status == "pending"

    @pytest.mark.asyncio
    async def test_results_for_already_completed_query_are_dropped(self, controller):
        python = await controller.admit_or_queue("python")
        await controller.complete(python.entry.request_id, [RESULT])

        entry = await controller.register_completed("run-x", "python", [])

        assert entry.request_id == python.entry.request_id
        assert entry.results == [RESULT]

    @pytest.mark.asyncio
    async def test_known_job_is_completed(self, controller):
        python = await controller.admit_or_queue("python")
        await controller.bind_job_id(python.entry.request_id, "run-1")

        entry = await controller.register_completed("run-1", "whatever", [RESULT])

        assert entry.request_id == python.entry.request_id
        assert entry.status == "completed"


class TestFinishedEntryExpiry:
    """Test that finished entries stay cached for a full TTL."""

    @pytest.mark.asyncio
    async def test_entry_that_waited_past_ttl_is_still_served(self, controller, store, clock):
        python = await controller.admit_or_queue("python")
        go = await controller.admit_or_queue("go")
        clock.advance(25 * 60)
        await controller.fail(python.entry.request_id, "provider down")
        clock.advance(6 * 60)

        done = await controller.complete(go.entry.request_id, [RESULT])

        assert done.expires_at == clock() + 30 * 60
        assert (await store.get_by_id(go.entry.request_id)).status == "completed"
        reused = await controller.admit_or_queue("go")
        assert reused.must_submit is False
        assert reused.entry.request_id == go.entry.request_id

    @pytest.mark.asyncio
    async def test_timed_out_entry_expiry_counts_from_timeout(self, controller, clock):
        await controller.admit_or_queue("python")
        clock.advance(5 * 60)

        [timed_out] = await controller.expire_overdue()

        assert timed_out.expires_at == clock() + 30 * 60


class TestRegisterFailed:
    """Test failures for jobs with no live entry."""

    @pytest.mark.asyncio
    async def test_unknown_job_gets_error_entry(self, controller, store):
        entry = await controller.register_failed("run-x", "Apify run FAILED: boom")

        assert entry.status == "error"
        assert entry.query == "unknown_query:run-x"
        found = await store.get_by_id("run-x")
        assert found.error_message == "Apify run FAILED: boom"

    @pytest.mark.asyncio
    async def test_repeated_failure_is_idempotent(self, controller, store):
        first = await controller.register_failed("run-x", "first")

        second = await controller.register_failed("run-x", "second")

        assert second.request_id == first.request_id
        assert second.error_message == "first"
        assert len(await store.list_entries()) == 1

    @pytest.mark.asyncio
    async def test_known_job_is_failed_and_slot_released(self, controller, store):
        python = await controller.admit_or_queue("python")
        java = await controller.admit_or_queue("java")
        await controller.bind_job_id(python.entry.request_id, "run-1")

        entry = await controller.register_failed("run-1", "boom")

        assert entry.request_id == python.entry.request_id
        assert entry.status == "error"
        assert (await store.get_by_id(java.entry.request_id)).status == "pending"
