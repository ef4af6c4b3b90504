"""
Caller identity supplied by the upstream authenticating proxy.

The proxy verifies the user and forwards the id in a trusted header
(``X-User-Id`` by default). This module only reads it.
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request, status

from app.core.config import Settings, get_settings
from app.core.logging import get_logger

logger = get_logger(__name__)


def _settings_for(request: Request) -> Settings:
    settings: Settings | None = getattr(request.app.state, "settings", None)
    return settings or get_settings()


async def get_caller_id(request: Request) -> str:
    """Dependency returning the verified caller id, or 401 when absent."""
    header = _settings_for(request).identity_header
    caller_id = (request.headers.get(header) or "").strip()
    if not caller_id:
        logger.warning("caller_identity_missing", header=header, path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Caller identity required",
        )
    return caller_id


# Type alias for dependency injection
CallerId = Annotated[str, Depends(get_caller_id)]


async def require_admin(request: Request, caller_id: CallerId) -> str:
    """Dependency that requires the caller to be a history administrator."""
    if caller_id not in _settings_for(request).admin_users:
        logger.warning("admin_access_denied", caller_id=caller_id, path=request.url.path)
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin role required",
        )
    return caller_id


AdminId = Annotated[str, Depends(require_admin)]
