"""Admin authentication: X-Admin-Key header checked against ADMIN_API_KEY."""
import logging
from typing import Optional

from fastapi import HTTPException, Request, Security
from fastapi.security import APIKeyHeader

logger = logging.getLogger(__name__)

_admin_key_header = APIKeyHeader(name="X-Admin-Key", auto_error=False)


async def require_admin_key(
    request: Request,
    api_key: Optional[str] = Security(_admin_key_header),
) -> str:
    """
    Dependency: require a valid ADMIN_API_KEY via the X-Admin-Key header.
    If ADMIN_API_KEY is empty, admin endpoints are open (dev mode).
    """
    configured_key = request.app.state.settings.admin_api_key

    if not configured_key:
        logger.warning("ADMIN_API_KEY not set, admin endpoints are UNPROTECTED")
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing X-Admin-Key header",
            headers={"WWW-Authenticate": "ApiKey"},
        )

    if api_key != configured_key:
        logger.warning("Invalid admin API key attempt from %s", request.client.host if request.client else "unknown")
        raise HTTPException(status_code=403, detail="Invalid admin API key")

    return api_key
