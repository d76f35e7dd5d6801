"""
Transformation of raw Apify SERP datasets into SearchResult lists.

Malformed items are skipped and missing fields fall back to defaults. Nothing
here raises on unexpected provider output.
"""

import logging
import re
from typing import Any
from urllib.parse import urlparse

from search_relay.schemas.models import ApifyWebhookPayload, SearchResult

logger = logging.getLogger(__name__)

UNKNOWN_QUERY = "unknown_query"

# (url fragment, content type, source) checked in order, first match wins
URL_PATTERNS: list[tuple[str, str, str]] = [
    ("coursera.org/learn/", "COURSE", "coursera.org"),
    ("coursera.org/specializations/", "COURSE", "coursera.org"),
    ("coursera.org/specialization/", "COURSE", "coursera.org"),
    ("coursera.org/professional-certificates/", "COURSE", "coursera.org"),
    ("udemy.com/course/", "COURSE", "udemy.com"),
    ("edx.org/course/", "COURSE", "edx.org"),
    ("edx.org/learn/", "COURSE", "edx.org"),
    ("edx.org/professional-certificate/", "COURSE", "edx.org"),
    ("youtube.com/watch", "VIDEO", "youtube.com"),
    ("youtube.com/playlist", "VIDEO", "youtube.com"),
    ("youtu.be/", "VIDEO", "youtube.com"),
    ("medium.com/", "ARTICLE", "medium.com"),
    ("dev.to/", "ARTICLE", "dev.to"),
]

_URL_RE = re.compile(r"https?://\S+")


def classify_url(url: str) -> tuple[str, str]:
    """Return (type, source) for a result URL."""
    lowered = url.lower()
    for fragment, content_type, source in URL_PATTERNS:
        if fragment in lowered:
            return content_type, source
    return "OTHER", host_of(url)


def host_of(url: str) -> str:
    try:
        host = urlparse(url).hostname or ""
    except ValueError:
        host = ""
    if host.startswith("www."):
        host = host[4:]
    return host or "unknown"


def flatten_dataset(data: Any) -> list[dict[str, Any]]:
    """
    Collect organic result items from the shapes Apify datasets come in.

    Handles a list of SERP pages (each with organicResults), a list of bare
    result items, a single page object, and a {"data": [...]} wrapper.
    """
    if isinstance(data, dict):
        if isinstance(data.get("organicResults"), list):
            return [item for item in data["organicResults"] if isinstance(item, dict)]
        if isinstance(data.get("data"), list):
            return flatten_dataset(data["data"])
        return []

    if not isinstance(data, list):
        return []

    items: list[dict[str, Any]] = []
    for page in data:
        if not isinstance(page, dict):
            continue
        if isinstance(page.get("organicResults"), list):
            items.extend(item for item in page["organicResults"] if isinstance(item, dict))
        elif page.get("url") and page.get("title"):
            items.append(page)
    return items


def transform_dataset(data: Any) -> list[SearchResult]:
    """Filter and classify dataset items, preserving provider order."""
    results: list[SearchResult] = []
    skipped = 0
    for item in flatten_dataset(data):
        title = item.get("title")
        url = item.get("url")
        if not isinstance(title, str) or not isinstance(url, str) or not title.strip() or not url.strip():
            skipped += 1
            continue

        content_type, source = classify_url(url.strip())
        description = item.get("description")
        results.append(
            SearchResult(
                title=title.strip(),
                url=url.strip(),
                description=description.strip() if isinstance(description, str) else "",
                type=content_type,
                source=source,
            )
        )

    if skipped:
        logger.debug(f"Skipped {skipped} dataset items without title or url")
    return results


def extract_query(payload: ApifyWebhookPayload) -> str | None:
    """Original query from the webhook payload, checked in priority order."""
    event_data = payload.eventData
    candidates = [
        event_data.originalQuery if event_data else None,
        payload.originalQuery,
        event_data.searchQuery if event_data else None,
    ]
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()

    if event_data is None:
        return None

    task_input = event_data.input or {}
    queries = task_input.get("queries")
    if isinstance(queries, str) and queries.strip():
        return queries.strip()

    search_queries = task_input.get("searchQueries")
    if isinstance(search_queries, list) and search_queries:
        first = search_queries[0]
        if isinstance(first, dict) and isinstance(first.get("term"), str) and first["term"].strip():
            return first["term"].strip()

    return None


def extract_query_from_dataset(data: Any) -> str | None:
    """Query recorded on the first dataset page, with URLs stripped."""
    if not isinstance(data, list) or not data or not isinstance(data[0], dict):
        return None
    search_query = data[0].get("searchQuery")
    if not isinstance(search_query, dict):
        return None
    term = search_query.get("term")
    if not isinstance(term, str):
        return None
    cleaned = " ".join(_URL_RE.sub("", term).split())
    return cleaned or None
