"""
Error taxonomy for the search job cache.

Routes translate these into HTTP responses; services raise them.
"""

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from search_relay.services.job_store import JobEntry


class SearchRelayError(Exception):
    """Base class for all search relay errors."""


class ConflictError(SearchRelayError):
    """A second live entry would be created for the same normalized query."""

    def __init__(self, message: str, existing: "JobEntry | None" = None):
        super().__init__(message)
        self.existing = existing


class EntryNotFoundError(SearchRelayError):
    """Unknown or expired job id / query."""


class InvalidTransitionError(SearchRelayError):
    """Requested status change is not allowed by the lifecycle."""


class UpstreamSubmissionError(SearchRelayError):
    """The scraping provider rejected a job at submission time."""


class UpstreamFetchError(SearchRelayError):
    """Fetching or decoding a provider dataset failed."""


class JobTimeoutError(SearchRelayError):
    """No terminal signal arrived within the job deadline."""
