"""Security dependencies for the scheduler's admin routes."""

import hmac
import os

import structlog
from fastapi import HTTPException, Request, status

logger = structlog.get_logger(__name__)


def require_admin_token(request: Request) -> bool:
    """
    Require a valid admin token on control-plane routes.

    - Token comes from the ADMIN_TOKEN environment variable
    - Clients send it in the X-Admin-Token header
    - Comparison is constant-time (hmac.compare_digest)
    - 401 for a missing token, 403 for a wrong or unconfigured one

    Usage:
        @router.post("/jobs/{job_name}/run")
        async def run(..., _: bool = Depends(require_admin_token)):
            ...
    """
    admin_token = os.environ.get("ADMIN_TOKEN")

    if not admin_token:
        # Development only: allow localhost when explicitly enabled
        allow_localhost = (
            os.environ.get("ALLOW_LOCALHOST_ADMIN", "false").lower() == "true"
        )
        if allow_localhost:
            host = request.headers.get("host", "")
            if "localhost" in host or "127.0.0.1" in host:
                logger.warning(
                    "admin_access_localhost_no_token",
                    path=request.url.path,
                    client=request.client.host if request.client else "unknown",
                )
                return True

        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="ADMIN_TOKEN not configured. Contact system administrator.",
        )

    provided_token = request.headers.get("X-Admin-Token")
    if not provided_token:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin token required. Provide X-Admin-Token header.",
            headers={"WWW-Authenticate": "Bearer"},
        )

    if not hmac.compare_digest(provided_token.encode(), admin_token.encode()):
        logger.warning(
            "admin_token_invalid",
            path=request.url.path,
            client=request.client.host if request.client else "unknown",
        )
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid admin token",
        )

    return True
