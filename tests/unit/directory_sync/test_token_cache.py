from app.modules.directory_sync.domain.token_cache import (
    InMemoryTokenCache,
    TokenCacheRegistry,
)


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


def test_token_served_until_skewed_expiry():
    clock = _Clock()
    cache = InMemoryTokenCache(skew_seconds=60, clock=clock)
    assert cache.get() is None

    cache.set("tok", expires_at=clock.now + 3600)
    assert cache.get() == "tok"

    clock.now += 3600 - 61
    assert cache.get() == "tok"
    clock.now += 1
    assert cache.get() is None


def test_clear_drops_token():
    cache = InMemoryTokenCache(clock=_Clock())
    cache.set("tok", expires_at=10_000)
    cache.clear()
    assert cache.get() is None


def test_registry_isolates_credentials():
    registry = TokenCacheRegistry(skew_seconds=0, clock=_Clock())
    first = registry.for_credentials("tenant-a", "client-1")
    assert registry.for_credentials("tenant-a", "client-1") is first

    other_tenant = registry.for_credentials("tenant-b", "client-1")
    other_client = registry.for_credentials("tenant-a", "client-2")
    first.set("tok-a", expires_at=10_000)

    assert other_tenant.get() is None
    assert other_client.get() is None
    assert first.get() == "tok-a"


def test_registry_clear_forgets_caches():
    registry = TokenCacheRegistry(clock=_Clock())
    first = registry.for_credentials("tenant-a", "client-1")
    registry.clear()
    assert registry.for_credentials("tenant-a", "client-1") is not first
