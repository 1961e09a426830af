"""Shared-secret guard for the local HTTP adapter."""

from __future__ import annotations

import hmac

from fastapi import HTTPException, Request, Security, status
from fastapi.security import APIKeyHeader

from slurmlink.config import settings
from slurmlink.utils.logging import get_logger

log = get_logger(__name__)

API_KEY_HEADER = "X-API-Key"
_api_key_header = APIKeyHeader(name=API_KEY_HEADER, auto_error=False)


def _key_matches(presented: str | None, expected: str) -> bool:
    if presented is None:
        return False
    return hmac.compare_digest(presented.encode("utf-8"), expected.encode("utf-8"))


async def require_api_key(
    request: Request,
    api_key: str | None = Security(_api_key_header),
) -> None:
    """Reject requests whose X-API-Key does not match SLURMLINK_API_KEY.

    The desktop UI and this adapter usually share a machine; with
    SLURMLINK_API_KEY unset the guard is off.
    """
    expected = settings.api_key
    if not expected:
        return
    if not _key_matches(api_key, expected):
        log.warning("auth.rejected", path=request.url.path, key_present=api_key is not None)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing API key",
            headers={"WWW-Authenticate": API_KEY_HEADER},
        )
