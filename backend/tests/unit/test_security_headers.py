"""
Unit tests for security headers middleware.
"""

from __future__ import annotations

import base64
from unittest.mock import MagicMock

import pytest

from app.core.config import Settings
from app.core.middleware import SecurityHeadersMiddleware


async def _dispatch(path: str, settings: Settings) -> MagicMock:
    middleware = SecurityHeadersMiddleware(app=MagicMock())

    request = MagicMock()
    request.url.path = path
    request.app.state.settings = settings
    response = MagicMock()
    response.headers = {}

    async def call_next(_request):  # type: ignore[no-untyped-def]
        return response

    return await middleware.dispatch(request, call_next)


@pytest.mark.asyncio
async def test_response_includes_basic_headers(settings: Settings) -> None:
    result = await _dispatch("/health", settings)
    assert result.headers["X-Content-Type-Options"] == "nosniff"
    assert result.headers["X-Frame-Options"] == "DENY"
    assert "frame-ancestors 'none'" in result.headers["Content-Security-Policy"]


@pytest.mark.asyncio
async def test_history_responses_are_not_cached(settings: Settings) -> None:
    result = await _dispatch("/api/v1/history/subjects/c1/versions", settings)
    assert result.headers["Cache-Control"] == "no-store"


@pytest.mark.asyncio
async def test_health_is_cacheable(settings: Settings) -> None:
    result = await _dispatch("/health", settings)
    assert "Cache-Control" not in result.headers


@pytest.mark.asyncio
async def test_docs_allow_cdn_assets(settings: Settings) -> None:
    result = await _dispatch("/api/v1/docs", settings)
    assert "https://cdn.jsdelivr.net" in result.headers["Content-Security-Policy"]


@pytest.mark.asyncio
async def test_no_hsts_outside_production(settings: Settings) -> None:
    result = await _dispatch("/health", settings)
    assert "Strict-Transport-Security" not in result.headers


@pytest.mark.asyncio
async def test_hsts_in_production() -> None:
    key = base64.b64encode(bytes(32)).decode("ascii")
    settings = Settings(environment="production", encryption_master_key=key)
    result = await _dispatch("/health", settings)
    assert result.headers["Strict-Transport-Security"].startswith("max-age=")
