"""
Webhook Ingestion Service - turns Apify run notifications into completed entries.

Async flow: accept() validates the notification, hands it to the ingestion
worker and returns an acknowledgment right away; process() runs on the worker,
fetches the dataset outside the admission lock, transforms it and completes
the entry.

Fetch and transform failures mark the entry as error but are still
acknowledged: a redelivered notification would only fetch the same dataset
again.
"""

import logging

from opentelemetry import trace

from search_relay.core.errors import EntryNotFoundError, UpstreamFetchError
from search_relay.schemas.models import ApifyWebhookPayload, WebhookAckResponse
from search_relay.services.admission import AdmissionController
from search_relay.services.apify import ApifyClient
from search_relay.services.job_store import JobEntry
from search_relay.services.transform import (
    UNKNOWN_QUERY,
    extract_query,
    extract_query_from_dataset,
    transform_dataset,
)
from search_relay.services.worker import BackgroundWorker

logger = logging.getLogger(__name__)

SUCCEEDED_EVENT = "ACTOR.RUN.SUCCEEDED"
FAILURE_EVENTS = frozenset({"ACTOR.RUN.FAILED", "ACTOR.RUN.TIMED_OUT", "ACTOR.RUN.ABORTED"})
TEST_EVENT = "TEST"


class WebhookIngestionService:
    """Resolves, fetches and completes search jobs reported by Apify webhooks."""

    def __init__(self, controller: AdmissionController, client: ApifyClient, queue_size: int = 100):
        self.controller = controller
        self.client = client
        self.worker: BackgroundWorker[ApifyWebhookPayload] = BackgroundWorker(
            "ingestion", self.process, maxsize=queue_size
        )

    def accept(self, payload: ApifyWebhookPayload) -> WebhookAckResponse:
        """
        Validate a notification and queue it for processing.

        Raises:
            ValueError: If a non-test notification carries no run resource.
            asyncio.QueueFull: If the ingestion backlog is full.
        """
        if payload.eventType == TEST_EVENT:
            logger.info("Received test webhook from Apify")
            return WebhookAckResponse(message="Test webhook received successfully")

        if payload.resource is None or not payload.job_id:
            raise ValueError("Invalid webhook payload structure")

        if payload.eventType != SUCCEEDED_EVENT and payload.eventType not in FAILURE_EVENTS:
            logger.info(f"Received webhook event type: {payload.eventType}")
            return WebhookAckResponse(
                message=f"Received {payload.eventType} webhook, acknowledged but no action taken",
                jobId=payload.job_id,
            )

        self.worker.enqueue(payload)
        logger.info(f"Queued {payload.eventType} for job {payload.job_id}")
        return WebhookAckResponse(message="Webhook accepted for processing", jobId=payload.job_id)

    async def process(self, payload: ApifyWebhookPayload) -> None:
        """Handle one notification. Safe to call repeatedly for the same job."""
        job_id = payload.job_id
        if not job_id:
            return

        tracer = trace.get_tracer(__name__)
        with tracer.start_as_current_span(
            "ingest.process_webhook",
            attributes={"ingest.job_id": job_id, "ingest.event_type": payload.eventType},
        ):
            entry = await self._lookup(job_id)
            if entry is not None and entry.is_terminal:
                logger.info(f"Job {job_id} already {entry.status}, ignoring duplicate delivery")
                return

            if payload.eventType in FAILURE_EVENTS:
                resource = payload.resource
                status = (resource.status if resource else None) or payload.eventType
                detail = resource.statusMessage if resource and resource.statusMessage else "no details"
                await self._fail(entry, payload, f"Apify run {status}: {detail}")
                return

            dataset_id = payload.dataset_id
            if not dataset_id:
                await self._fail(entry, payload, "Missing dataset ID in webhook response")
                return

            try:
                raw = await self.client.fetch_dataset(dataset_id)
                results = transform_dataset(raw)
            except UpstreamFetchError as e:
                logger.error(f"Dataset {dataset_id} for job {job_id} failed: {e}")
                await self._fail(entry, payload, str(e))
                return
            except Exception as e:
                logger.error(f"Error processing dataset {dataset_id}: {e}", exc_info=True)
                await self._fail(entry, payload, f"Error processing dataset: {e}")
                return

            if entry is not None:
                await self.controller.complete(entry.request_id, results)
            else:
                query = (
                    extract_query(payload)
                    or extract_query_from_dataset(raw)
                    or f"{UNKNOWN_QUERY}:{job_id}"
                )
                await self.controller.register_completed(job_id, query, results)

            logger.info(f"Processed job {job_id}: {len(results)} results from dataset {dataset_id}")

    async def _lookup(self, job_id: str) -> JobEntry | None:
        try:
            return await self.controller.store.get_by_id(job_id)
        except EntryNotFoundError:
            return None

    async def _fail(self, entry: JobEntry | None, payload: ApifyWebhookPayload, message: str) -> None:
        if entry is None:
            entry = await self._live_entry_for_payload(payload)
        if entry is None:
            logger.warning(f"No entry for failed job {payload.job_id}, registering one: {message}")
            await self.controller.register_failed(payload.job_id, message)
            return
        try:
            await self.controller.fail(entry.request_id, message)
        except EntryNotFoundError:
            logger.warning(f"Entry {entry.entry_id} vanished before it could be marked as error")

    async def _live_entry_for_payload(self, payload: ApifyWebhookPayload) -> JobEntry | None:
        """Pending entry the unknown job most likely belongs to, matched by query."""
        query = extract_query(payload)
        if not query:
            return None
        try:
            entry = await self.controller.store.get_by_query(query)
        except EntryNotFoundError:
            return None
        if entry.status != "pending" or entry.job_id not in (None, payload.job_id):
            return None
        return entry
