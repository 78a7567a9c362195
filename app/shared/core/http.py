"""
Shared async HTTP client

One process-wide httpx.AsyncClient, opened in the FastAPI lifespan and reused
by every identity-provider call so sync runs share a connection pool.
"""

import inspect
from typing import Optional
import httpx
import structlog

from app.shared.core.config import get_settings

logger = structlog.get_logger()

_client: Optional[httpx.AsyncClient] = None


def _build_client() -> httpx.AsyncClient:
    settings = get_settings()
    return httpx.AsyncClient(
        http2=True,
        timeout=httpx.Timeout(settings.GRAPH_TIMEOUT_SECONDS, connect=10.0),
        limits=httpx.Limits(
            max_connections=100,
            max_keepalive_connections=20,
            keepalive_expiry=30.0,
        ),
        headers={"User-Agent": f"{settings.APP_NAME}/{settings.VERSION}"},
    )


def get_http_client() -> httpx.AsyncClient:
    """Returns the shared client, creating it on first use outside the lifespan."""
    global _client
    if _client is None:
        logger.warning(
            "http_client_lazy_initialized",
            msg="Client was not pre-initialized",
        )
        _client = _build_client()
    return _client


async def init_http_client() -> None:
    global _client
    if _client is not None:
        logger.warning("http_client_already_initialized")
        return

    _client = _build_client()
    logger.info("http_client_initialized", http2=True)


async def close_http_client() -> None:
    """
    Gracefully shuts down the shared client, flushing its connection pool.
    """
    global _client
    client = _client
    _client = None
    if client is None:
        return

    close_result = client.aclose()
    if inspect.isawaitable(close_result):
        await close_result
    logger.info("http_client_closed")
