import secrets

from fastapi import Header, HTTPException, Query, status

from search_relay.core.config import get_settings


async def verify_api_key(x_api_secret: str = Header(..., alias="X-API-SECRET")) -> str:
    """
    Verify the API key from the X-API-SECRET header.

    Raises:
        HTTPException: If the API key is invalid or missing.

    Returns:
        The validated API key.
    """
    settings = get_settings()
    if not secrets.compare_digest(x_api_secret, settings.search_relay_api_secret):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid API key",
        )
    return x_api_secret


async def verify_webhook_secret(secret: str | None = Query(default=None)) -> None:
    """
    Check the ?secret= query parameter on provider callbacks.

    No-op when WEBHOOK_SECRET is not configured.
    """
    expected = get_settings().webhook_secret
    if expected is None:
        return
    if secret is None or not secrets.compare_digest(secret, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid webhook secret",
        )
