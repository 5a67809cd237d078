from __future__ import annotations

import hmac

from fastapi import Header, HTTPException, status

from catalogq.core.config import get_settings

WORKER_AUTH_SCHEME = "Worker"


def require_worker_auth(authorization: str | None = Header(default=None)) -> None:
    settings = get_settings()
    if not settings.worker_api_enabled:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Worker API is disabled")

    if not authorization:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing Authorization header")

    scheme, _, key = authorization.strip().partition(" ")
    if scheme != WORKER_AUTH_SCHEME or not key.strip():
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Authorization must use the '{WORKER_AUTH_SCHEME} <key>' scheme",
        )

    if not hmac.compare_digest(key.strip().encode("utf-8"), settings.worker_api_key.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid worker API key")
