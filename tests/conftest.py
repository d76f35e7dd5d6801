"""
Shared fixtures: a controllable clock, an in-memory store and a fake Apify client.
"""

import os

os.environ.setdefault("SEARCH_RELAY_API_SECRET", "test-secret")

from typing import Any

import pytest

from search_relay.core.errors import UpstreamFetchError, UpstreamSubmissionError
from search_relay.schemas.models import ApifyWebhookPayload
from search_relay.services.admission import AdmissionController
from search_relay.services.job_store import InMemoryEntryStore
from search_relay.services.search import SearchService

START_TIME = 1_700_000_000.0


class FakeClock:
    """Manually advanced replacement for time.time."""

    def __init__(self, start: float = START_TIME):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeApifyClient:
    """Records submissions and serves canned datasets."""

    configured = True

    def __init__(self):
        self.submitted: list[str] = []
        self.fetched: list[str] = []
        self.datasets: dict[str, Any] = {}
        self.submit_error: UpstreamSubmissionError | None = None
        self.fetch_error: UpstreamFetchError | None = None
        self._runs = 0

    async def submit_job(self, formatted_query: str) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self._runs += 1
        self.submitted.append(formatted_query)
        return f"run-{self._runs}"

    async def fetch_dataset(self, dataset_id: str) -> Any:
        self.fetched.append(dataset_id)
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.datasets.get(dataset_id, [])

    async def close(self) -> None:
        pass


def serp_page(term: str, *items: dict[str, Any]) -> dict[str, Any]:
    """One page of Google SERP actor output."""
    return {"searchQuery": {"term": term}, "organicResults": list(items)}


def webhook_payload(
    job_id: str,
    dataset_id: str | None = "ds-1",
    event_type: str = "ACTOR.RUN.SUCCEEDED",
    event_data: dict[str, Any] | None = None,
    **resource: Any,
) -> ApifyWebhookPayload:
    return ApifyWebhookPayload.model_validate(
        {
            "eventType": event_type,
            "eventData": {"actorRunId": job_id, **(event_data or {})},
            "resource": {"id": job_id, "defaultDatasetId": dataset_id, **resource},
        }
    )


RUST_RESULTS = [
    serp_page(
        "rust",
        {
            "title": "Rust Fundamentals",
            "url": "https://www.coursera.org/learn/rust-fundamentals",
            "description": "Learn Rust",
        },
        {"title": "Rust in 100 seconds", "url": "https://www.youtube.com/watch?v=5C_HPTJg5ek"},
        {"title": "", "url": "https://example.com/no-title"},
    )
]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock) -> InMemoryEntryStore:
    return InMemoryEntryStore(clock=clock)


@pytest.fixture
def controller(store, clock) -> AdmissionController:
    return AdmissionController(
        store,
        capacity=1,
        entry_ttl_seconds=30 * 60,
        job_timeout_seconds=5 * 60,
        clock=clock,
    )


@pytest.fixture
def apify() -> FakeApifyClient:
    return FakeApifyClient()


@pytest.fixture
def service(store, controller, apify) -> SearchService:
    return SearchService(store, apify, controller=controller, sweep_interval_seconds=3600)
