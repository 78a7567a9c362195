import asyncio
from collections.abc import Awaitable, Callable

import httpx
import structlog

from app.shared.core.exceptions import ExternalAPIError

logger = structlog.get_logger()

# Upper bound on a server-provided Retry-After so one throttled call cannot
# stall a whole run.
_MAX_RETRY_AFTER_SECONDS = 10.0


def _retry_after_seconds(response: httpx.Response, fallback: float) -> float:
    raw = response.headers.get("Retry-After")
    if not raw:
        return fallback
    try:
        return min(max(float(raw), 0.0), _MAX_RETRY_AFTER_SECONDS)
    except ValueError:
        return fallback


async def execute_with_http_retry(
    *,
    request: Callable[[], Awaitable[httpx.Response]],
    url: str,
    max_retries: int,
    retryable_status_codes: set[int],
    retry_http_status_log_event: str,
    retry_transport_log_event: str,
    error_prefix: str,
    retry_sleep_base_seconds: float = 0.05,
) -> httpx.Response:
    """
    Execute an HTTP request coroutine with unified retry/error semantics.

    Non-retryable and exhausted failures surface as ExternalAPIError carrying
    the upstream status code (when there was one) in ``details``.
    """
    last_error: Exception | None = None
    attempts = max(1, int(max_retries))

    for attempt in range(1, attempts + 1):
        try:
            response = await request()
            response.raise_for_status()
            return response
        except httpx.HTTPStatusError as exc:
            last_error = exc
            status_code = exc.response.status_code
            if status_code in retryable_status_codes and attempt < attempts:
                delay = _retry_after_seconds(
                    exc.response, retry_sleep_base_seconds * attempt
                )
                logger.warning(
                    retry_http_status_log_event,
                    attempt=attempt,
                    max_attempts=attempts,
                    status_code=status_code,
                    delay_seconds=delay,
                    url=url,
                )
                await asyncio.sleep(delay)
                continue
            raise ExternalAPIError(
                f"{error_prefix} with status {status_code}",
                details={"status_code": status_code, "url": url},
            ) from exc
        except (httpx.TimeoutException, httpx.TransportError) as exc:
            last_error = exc
            if attempt < attempts:
                logger.warning(
                    retry_transport_log_event,
                    attempt=attempt,
                    max_attempts=attempts,
                    url=url,
                    error=str(exc),
                )
                await asyncio.sleep(retry_sleep_base_seconds * attempt)
                continue
            raise ExternalAPIError(f"{error_prefix}: {exc}", details={"url": url}) from exc

    raise ExternalAPIError(f"{error_prefix}: {last_error}", details={"url": url})
