"""
API Dependencies - Dependency injection for the search service and auth checks.
"""

from typing import Annotated

from fastapi import Depends, Request

from search_relay.core.security import verify_api_key, verify_webhook_secret
from search_relay.services.search import SearchService


# Type aliases for auth dependencies
ApiKeyDep = Annotated[str, Depends(verify_api_key)]
WebhookSecretDep = Annotated[None, Depends(verify_webhook_secret)]


def get_search_service(request: Request) -> SearchService:
    """Get the search service from app state."""
    return request.app.state.search_service


SearchServiceDep = Annotated[SearchService, Depends(get_search_service)]
