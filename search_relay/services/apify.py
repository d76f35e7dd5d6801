"""
Apify Client - submits Google SERP runs and fetches their datasets.

Runs are started on a saved actor task with an ad-hoc webhook, so Apify calls
back /webhooks/apify when the run finishes. Nothing here touches entry state;
errors surface as UpstreamSubmissionError / UpstreamFetchError.
"""

import base64
import json
import logging
from typing import Any
from urllib.parse import urlencode

import httpx

from search_relay.core.errors import UpstreamFetchError, UpstreamSubmissionError

logger = logging.getLogger(__name__)

WEBHOOK_EVENT_TYPES = [
    "ACTOR.RUN.SUCCEEDED",
    "ACTOR.RUN.FAILED",
    "ACTOR.RUN.TIMED_OUT",
    "ACTOR.RUN.ABORTED",
]

# Google Search Results Scraper input, first page only
SERP_INPUT_DEFAULTS: dict[str, Any] = {
    "countryCode": "us",
    "languageCode": "en",
    "resultsPerPage": 20,
    "maxPagesPerQuery": 1,
    "mobileResults": False,
    "saveHtml": False,
    "saveHtmlToKeyValueStore": False,
    "includeUnfilteredResults": True,
}


def format_query(query: str, domains: list[str] | None = None) -> str:
    """Append domain hints to the query the provider searches for."""
    parts = [query.strip()]
    parts.extend(domain.strip() for domain in domains or [] if domain.strip())
    return " ".join(parts)


class ApifyClient:
    """Thin async client for the two Apify calls the search cache needs."""

    def __init__(
        self,
        api_token: str | None,
        task_id: str | None,
        webhook_url: str,
        base_url: str = "https://api.apify.com/v2",
        timeout: float = 30.0,
        http_client: httpx.AsyncClient | None = None,
    ):
        self.api_token = api_token
        self.task_id = task_id
        self.webhook_url = webhook_url
        self.base_url = base_url.rstrip("/")
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def configured(self) -> bool:
        return bool(self.api_token and self.task_id)

    async def submit_job(self, formatted_query: str) -> str:
        """
        Start a SERP run for the query.

        Returns:
            The Apify run id, used as the job id.

        Raises:
            UpstreamSubmissionError: If Apify is not configured, unreachable,
                rejects the run or answers without a run id.
        """
        if not self.configured:
            raise UpstreamSubmissionError("Search service is not properly configured")

        url = f"{self.base_url}/actor-tasks/{self.task_id}/runs"
        body = {"queries": formatted_query, **SERP_INPUT_DEFAULTS}

        try:
            response = await self._client.post(
                url,
                params={"webhooks": self._encoded_webhooks()},
                headers=self._headers(),
                json=body,
            )
        except httpx.HTTPError as e:
            raise UpstreamSubmissionError(f"Failed to reach Apify: {e}") from e

        if response.status_code >= 400:
            raise UpstreamSubmissionError(
                f"Apify rejected the run ({response.status_code}): {response.text[:500]}"
            )

        try:
            payload = response.json()
        except ValueError as e:
            raise UpstreamSubmissionError("Invalid Apify response format") from e

        data = payload.get("data") if isinstance(payload, dict) else None
        run_id = data.get("id") if isinstance(data, dict) else None
        if not run_id:
            raise UpstreamSubmissionError("Apify response did not contain a run id")

        logger.info(f"Apify run {run_id} started for '{formatted_query}'")
        return run_id

    async def fetch_dataset(self, dataset_id: str) -> Any:
        """
        Fetch all items of a run's default dataset.

        Raises:
            UpstreamFetchError: On transport errors, non-2xx answers or bad JSON.
        """
        if not self.api_token:
            raise UpstreamFetchError("Apify API token not configured")

        url = f"{self.base_url}/datasets/{dataset_id}/items"
        try:
            response = await self._client.get(
                url, params={"format": "json", "clean": "true"}, headers=self._headers()
            )
        except httpx.HTTPError as e:
            raise UpstreamFetchError(f"Failed to reach Apify: {e}") from e

        if response.status_code >= 400:
            raise UpstreamFetchError(
                f"Failed to fetch dataset: {response.status_code} {response.text[:500]}"
            )

        try:
            return response.json()
        except ValueError as e:
            raise UpstreamFetchError(f"Dataset {dataset_id} is not valid JSON") from e

    async def close(self) -> None:
        await self._client.aclose()

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self.api_token}"}

    def _encoded_webhooks(self) -> str:
        webhooks = [{"eventTypes": WEBHOOK_EVENT_TYPES, "requestUrl": self.webhook_url}]
        return base64.b64encode(json.dumps(webhooks).encode()).decode()


def build_webhook_url(public_base_url: str, secret: str | None = None) -> str:
    url = f"{public_base_url.rstrip('/')}/webhooks/apify"
    if secret:
        url += "?" + urlencode({"secret": secret})
    return url
