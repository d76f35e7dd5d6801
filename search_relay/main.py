"""
Search Relay - Main Application Entrypoint

Search job cache and admission controller in front of the Apify scraping
provider: deduplicates searches, bounds concurrent provider jobs, ingests
completion webhooks and serves polling clients.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from neo4j import AsyncGraphDatabase

from search_relay.api.routes import router
from search_relay.core.config import Settings, get_settings
from search_relay.core.telemetry import setup_telemetry, shutdown_telemetry
from search_relay.services.apify import ApifyClient, build_webhook_url
from search_relay.services.job_store import EntryStore, InMemoryEntryStore
from search_relay.services.neo4j_store import Neo4jEntryStore
from search_relay.services.search import SearchService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def build_store(settings: Settings, app: FastAPI) -> EntryStore:
    """Select the storage backend at construction time."""
    if settings.storage_backend == "memory":
        logger.info("Using in-memory search cache")
        return InMemoryEntryStore(max_entries=settings.max_cache_entries)

    neo4j_driver = AsyncGraphDatabase.driver(
        settings.neo4j_uri,
        auth=(settings.neo4j_user, settings.neo4j_password),
    )
    try:
        await neo4j_driver.verify_connectivity()
        logger.info("Connected to Neo4j")
    except Exception as e:
        logger.error(f"Failed to connect to Neo4j: {e}")
        await neo4j_driver.close()
        raise

    store = Neo4jEntryStore(neo4j_driver, max_entries=settings.max_cache_entries)
    await store.ensure_schema()
    app.state.neo4j_driver = neo4j_driver
    return store


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    Application lifespan manager.

    Builds the search service once, starts its workers and sweep task on
    startup, stops them and closes connections on shutdown.
    """
    settings = get_settings()
    logger.info("Starting Search Relay...")

    store = await build_store(settings, app)
    apify_client = ApifyClient(
        api_token=settings.apify_api_token,
        task_id=settings.apify_task_id,
        webhook_url=build_webhook_url(settings.public_base_url, settings.webhook_secret),
        base_url=settings.apify_base_url,
        timeout=settings.http_timeout_seconds,
    )
    if not apify_client.configured:
        logger.warning("APIFY_API_TOKEN / APIFY_TASK_ID not set, searches will be rejected")

    search_service = SearchService(
        store,
        apify_client,
        capacity=settings.admission_capacity,
        entry_ttl_seconds=settings.entry_ttl_seconds,
        job_timeout_seconds=settings.job_timeout_seconds,
        sweep_interval_seconds=settings.sweep_interval_seconds,
        queue_size=settings.work_queue_size,
    )
    await search_service.start()

    # Store in app state for dependency injection
    app.state.search_service = search_service

    logger.info("Search Relay started successfully")

    yield

    # Cleanup on shutdown
    logger.info("Shutting down Search Relay...")
    await search_service.stop()
    await apify_client.close()
    neo4j_driver = getattr(app.state, "neo4j_driver", None)
    if neo4j_driver is not None:
        await neo4j_driver.close()
    shutdown_telemetry()
    logger.info("Search Relay shutdown complete")


# Create FastAPI application
app = FastAPI(
    title="Search Relay",
    description="Search job cache and admission controller for the Apify scraping provider",
    version="1.0.0",
    lifespan=lifespan,
)

# Configure CORS
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],  # Configure appropriately for production
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include API routes
app.include_router(router)

# OpenTelemetry instrumentation (after app is fully configured)
setup_telemetry(app)
