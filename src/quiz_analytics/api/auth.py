"""API key check for the sync trigger and report endpoints."""
import os
import secrets
from typing import Annotated

from fastapi import HTTPException, Security, status
from fastapi.security import APIKeyHeader


api_key_header = APIKeyHeader(name="X-QUIZ-API-KEY", auto_error=False)


def _configured_keys() -> list[str]:
    """Accepted keys; QUIZ_API_KEY may hold several, comma-separated, for rotation."""
    raw = os.getenv("QUIZ_API_KEY", "")
    return [key.strip() for key in raw.split(",") if key.strip()]


async def require_api_key(
    api_key: Annotated[str | None, Security(api_key_header)] = None
) -> str:
    """Reject requests whose X-QUIZ-API-KEY header is not a configured key.

    Raises:
        RuntimeError: QUIZ_API_KEY is not set (server misconfiguration)
        HTTPException: 401 if the header is missing or does not match
    """
    accepted = _configured_keys()
    if not accepted:
        raise RuntimeError("QUIZ_API_KEY environment variable not configured")

    if api_key and any(
        secrets.compare_digest(api_key.encode(), key.encode()) for key in accepted
    ):
        return api_key

    raise HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Invalid API key",
        headers={"WWW-Authenticate": "API-Key"},
    )
