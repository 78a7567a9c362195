"""
Access-token caches for the Graph client.

The client only talks to the ``TokenCache`` protocol, so callers decide the
scope of a cache. ``TokenCacheRegistry`` hands out one in-memory cache per
(directory tenant, client id) so different orgs never share a token slot.
"""

import threading
import time
from typing import Callable, Protocol


class TokenCache(Protocol):
    def get(self) -> str | None: ...

    def set(self, token: str, expires_at: float) -> None: ...


class InMemoryTokenCache:
    """Single-slot cache; a token is served until ``expires_at - skew``."""

    def __init__(
        self, skew_seconds: float = 60.0, clock: Callable[[], float] = time.time
    ) -> None:
        self._skew = skew_seconds
        self._clock = clock
        self._token: str | None = None
        self._expires_at = 0.0
        self._lock = threading.Lock()

    def get(self) -> str | None:
        with self._lock:
            if self._token and self._clock() < self._expires_at - self._skew:
                return self._token
            return None

    def set(self, token: str, expires_at: float) -> None:
        with self._lock:
            self._token = token
            self._expires_at = expires_at

    def clear(self) -> None:
        with self._lock:
            self._token = None
            self._expires_at = 0.0


class TokenCacheRegistry:
    def __init__(
        self, skew_seconds: float = 60.0, clock: Callable[[], float] = time.time
    ) -> None:
        self._skew = skew_seconds
        self._clock = clock
        self._caches: dict[tuple[str, str], InMemoryTokenCache] = {}
        self._lock = threading.Lock()

    def for_credentials(self, tenant_id: str, client_id: str) -> InMemoryTokenCache:
        key = (tenant_id, client_id)
        with self._lock:
            cache = self._caches.get(key)
            if cache is None:
                cache = InMemoryTokenCache(self._skew, self._clock)
                self._caches[key] = cache
            return cache

    def clear(self) -> None:
        with self._lock:
            self._caches.clear()
