from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Search Result Models
# =============================================================================


ContentType = Literal["COURSE", "VIDEO", "ARTICLE", "OTHER"]


class SearchResult(BaseModel):
    """A single learning-content link extracted from a provider dataset."""

    title: str
    url: str
    description: str = ""
    type: ContentType = "OTHER"
    source: str = Field(..., description="Known provider name or URL host without www.")


# =============================================================================
# Search Endpoint Models
# =============================================================================


class SearchRequest(BaseModel):
    """Request body for the POST /search endpoint."""

    query: str = Field(..., description="Free-text search query")
    domains: list[str] = Field(
        default_factory=list,
        description="Optional domain hints appended to the provider query",
    )


class SearchStatusResponse(BaseModel):
    """Current state of a search job, returned by POST /search and GET /search/status."""

    jobId: str | None = Field(default=None, description="Provider run id once accepted")
    requestId: str = Field(..., description="Identifier assigned at admission")
    query: str
    status: Literal["pending", "queued", "completed", "error", "timeout"]
    cached: bool = Field(default=False, description="True when an existing entry was reused")
    results: list[SearchResult] | None = None
    errorMessage: str | None = None
    queuePosition: int | None = None
    createdAt: datetime
    retryAfterMs: int | None = Field(
        default=None, description="Suggested polling delay while the job is in flight"
    )


# =============================================================================
# Apify Webhook Models
# =============================================================================


class ApifyEventData(BaseModel):
    """eventData block of an Apify webhook. Only the fields we read are typed."""

    model_config = ConfigDict(extra="allow")

    actorId: str | None = None
    actorTaskId: str | None = None
    actorRunId: str | None = None
    originalQuery: str | None = None
    searchQuery: str | None = None
    input: dict[str, Any] | None = None


class ApifyResource(BaseModel):
    """resource block of an Apify webhook (the actor run object)."""

    model_config = ConfigDict(extra="allow")

    id: str | None = None
    actId: str | None = None
    defaultDatasetId: str | None = None
    status: str | None = None
    statusMessage: str | None = None


class ApifyWebhookPayload(BaseModel):
    """Request body Apify posts to /webhooks/apify."""

    model_config = ConfigDict(extra="allow")

    eventType: str
    userId: str | None = None
    createdAt: str | None = None
    originalQuery: str | None = None
    eventData: ApifyEventData | None = None
    resource: ApifyResource | None = None

    @property
    def job_id(self) -> str | None:
        if self.eventData and self.eventData.actorRunId:
            return self.eventData.actorRunId
        return self.resource.id if self.resource else None

    @property
    def dataset_id(self) -> str | None:
        return self.resource.defaultDatasetId if self.resource else None


class WebhookAckResponse(BaseModel):
    """Acknowledgment returned to the provider."""

    success: bool = True
    message: str
    jobId: str | None = None


# =============================================================================
# Cache Administration Models
# =============================================================================


class CacheDeleteResponse(BaseModel):
    """Response body for cache purge/clear/delete endpoints."""

    success: bool = True
    deletedCount: int
    message: str | None = None


class CacheEntrySummary(BaseModel):
    """One row of the cache state dump."""

    entryId: str
    requestId: str
    jobId: str | None = None
    query: str
    status: str
    createdAt: datetime
    expiresAt: datetime
    resultCount: int = 0
    queuePosition: int | None = None


class CacheStateResponse(BaseModel):
    """Response body for GET /search/cache/state."""

    capacity: int
    pendingCount: int
    queueLength: int
    entries: list[CacheEntrySummary]


# =============================================================================
# Health Check Models
# =============================================================================


class HealthResponse(BaseModel):
    """Response body for the /health endpoint."""

    status: str = "ok"
    service: str = "search-relay"
