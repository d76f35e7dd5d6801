"""
API Routes - Endpoint definitions for Search Relay.
"""

import asyncio
import logging
from datetime import datetime, timezone

from fastapi import APIRouter, HTTPException, Query
from opentelemetry import trace

from search_relay.api.dependencies import ApiKeyDep, SearchServiceDep, WebhookSecretDep
from search_relay.core.errors import ConflictError, EntryNotFoundError, UpstreamSubmissionError
from search_relay.schemas.models import (
    ApifyWebhookPayload,
    CacheDeleteResponse,
    CacheEntrySummary,
    CacheStateResponse,
    HealthResponse,
    SearchRequest,
    SearchStatusResponse,
    WebhookAckResponse,
)
from search_relay.services.search import SearchStatus

logger = logging.getLogger(__name__)

router = APIRouter()


def _timestamp(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def _status_response(status: SearchStatus) -> SearchStatusResponse:
    entry = status.entry
    return SearchStatusResponse(
        jobId=entry.job_id,
        requestId=entry.request_id,
        query=entry.query,
        status=entry.status,
        cached=status.cached,
        results=entry.results if entry.status == "completed" else None,
        errorMessage=entry.error_message if entry.status in ("error", "timeout") else None,
        queuePosition=entry.queue_position if entry.status == "queued" else None,
        createdAt=_timestamp(entry.created_at),
        retryAfterMs=status.retry_after_ms,
    )


@router.get("/health", response_model=HealthResponse, tags=["Health"])
async def health_check() -> HealthResponse:
    """
    Health check endpoint for load balancers and monitoring.

    No authentication required.
    """
    return HealthResponse()


@router.post(
    "/search",
    response_model=SearchStatusResponse,
    status_code=202,
    tags=["Search"],
)
async def start_search(
    request: SearchRequest,
    _api_key: ApiKeyDep,
    search_service: SearchServiceDep,
) -> SearchStatusResponse:
    """
    Start (or join) a search for learning content.

    Returns 202 with the entry state: "completed" with results when a fresh
    cached search exists, "pending" when the job was submitted to Apify,
    "queued" when the concurrency ceiling is reached. Poll
    GET /search/status with the returned jobId (or requestId) until the
    status is terminal.

    Requires X-API-SECRET header for authentication.
    """
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attribute("search.query", request.query)
    try:
        status = await search_service.search(request.query, request.domains)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except UpstreamSubmissionError as e:
        raise HTTPException(status_code=502, detail=f"Failed to start search task: {e}")

    if span.is_recording():
        span.set_attribute("search.request_id", status.entry.request_id)
        span.set_attribute("search.status", status.entry.status)
    return _status_response(status)


@router.get(
    "/search/status",
    response_model=SearchStatusResponse,
    tags=["Search"],
)
async def search_status(
    _api_key: ApiKeyDep,
    search_service: SearchServiceDep,
    job_id: str | None = Query(default=None, alias="jobId"),
    query: str | None = Query(default=None),
) -> SearchStatusResponse:
    """
    Poll a search by jobId (or requestId) or by query text.

    Returns 404 when the search is unknown or expired: start a new search.

    Requires X-API-SECRET header for authentication.
    """
    try:
        status = await search_service.get_status(job_id=job_id, query=query)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except EntryNotFoundError:
        raise HTTPException(status_code=404, detail="Search not found")
    return _status_response(status)


@router.post(
    "/webhooks/apify",
    response_model=WebhookAckResponse,
    tags=["Webhooks"],
)
async def apify_webhook(
    payload: ApifyWebhookPayload,
    _secret: WebhookSecretDep,
    search_service: SearchServiceDep,
) -> WebhookAckResponse:
    """
    Receive Apify run notifications.

    The notification is queued for background processing and acknowledged
    immediately. Dataset fetch failures are recorded on the search entry and
    still acknowledged, so Apify does not redeliver.
    """
    span = trace.get_current_span()
    if span.is_recording():
        span.set_attribute("webhook.event_type", payload.eventType)
        if payload.job_id:
            span.set_attribute("webhook.job_id", payload.job_id)
    try:
        return search_service.ingestion.accept(payload)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except asyncio.QueueFull:
        logger.error(f"Ingestion backlog full, rejecting webhook for job {payload.job_id}")
        raise HTTPException(status_code=503, detail="Webhook backlog full, retry later")


@router.post(
    "/search/cache/purge",
    response_model=CacheDeleteResponse,
    tags=["Cache"],
)
async def purge_expired_cache(
    _api_key: ApiKeyDep,
    search_service: SearchServiceDep,
) -> CacheDeleteResponse:
    """
    Remove terminal searches past their expiry, on demand.

    Requires X-API-SECRET header for authentication.
    """
    removed = await search_service.purge_expired()
    return CacheDeleteResponse(
        deletedCount=removed,
        message=f"Removed {removed} expired cached searches.",
    )


@router.delete(
    "/search/cache",
    response_model=CacheDeleteResponse,
    tags=["Cache"],
)
async def clear_cache(
    _api_key: ApiKeyDep,
    search_service: SearchServiceDep,
) -> CacheDeleteResponse:
    """
    Remove all finished searches. Pending and queued searches are kept.

    Requires X-API-SECRET header for authentication.
    """
    removed = await search_service.clear()
    return CacheDeleteResponse(
        deletedCount=removed,
        message=f"Successfully cleared search cache. Removed {removed} cached entries.",
    )


@router.delete(
    "/search/cache/{entry_id}",
    response_model=CacheDeleteResponse,
    tags=["Cache"],
)
async def delete_cache_entry(
    entry_id: str,
    _api_key: ApiKeyDep,
    search_service: SearchServiceDep,
) -> CacheDeleteResponse:
    """
    Remove one finished search by jobId or requestId.

    Returns 409 while the search is still pending or queued.

    Requires X-API-SECRET header for authentication.
    """
    try:
        entry = await search_service.delete_entry(entry_id)
    except EntryNotFoundError:
        raise HTTPException(status_code=404, detail="Search cache entry not found")
    except ConflictError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return CacheDeleteResponse(
        deletedCount=1,
        message=f'Cache entry for "{entry.query}" has been deleted',
    )


@router.get(
    "/search/cache/state",
    response_model=CacheStateResponse,
    tags=["Cache"],
)
async def cache_state(
    _api_key: ApiKeyDep,
    search_service: SearchServiceDep,
) -> CacheStateResponse:
    """
    Dump admission counters and every cached search, for debugging.

    Requires X-API-SECRET header for authentication.
    """
    counters, entries = await search_service.cache_state()
    return CacheStateResponse(
        capacity=counters["capacity"],
        pendingCount=counters["pending"],
        queueLength=counters["queued"],
        entries=[
            CacheEntrySummary(
                entryId=entry.entry_id,
                requestId=entry.request_id,
                jobId=entry.job_id,
                query=entry.query,
                status=entry.status,
                createdAt=_timestamp(entry.created_at),
                expiresAt=_timestamp(entry.expires_at),
                resultCount=len(entry.results),
                queuePosition=entry.queue_position,
            )
            for entry in entries
        ],
    )
