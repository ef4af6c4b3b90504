"""Caller identity dependencies."""

from app.core.security.identity import AdminId, CallerId, get_caller_id, require_admin

__all__ = [
    "AdminId",
    "CallerId",
    "get_caller_id",
    "require_admin",
]
