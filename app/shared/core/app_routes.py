from typing import Any

from fastapi import FastAPI
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app

from app.shared.core.ops_metrics import SYSTEM_HEALTH
from app.shared.db import session as db_session

# Admin API for operators and the provisioning callback for the identity provider.
API_PREFIXES = frozenset({"/api/v1", "/scim/v2"})

RouteEntry = tuple[Any, str]


def _validate_router_registry(routes: list[RouteEntry]) -> None:
    prefixes: set[str] = set()
    for router, prefix in routes:
        if not getattr(router, "routes", None):
            raise RuntimeError(f"Router for {prefix!r} defines no routes")
        normalized = prefix.strip().rstrip("/")
        if not normalized.startswith("/"):
            raise RuntimeError(f"Router prefix must start with '/': {prefix!r}")
        prefixes.add(normalized)

    missing = sorted(API_PREFIXES - prefixes)
    if missing:
        raise RuntimeError("Router registry is missing required API prefixes: " + ", ".join(missing))
    unexpected = sorted(prefixes - API_PREFIXES)
    if unexpected:
        raise RuntimeError("Router registry includes unexpected API prefixes: " + ", ".join(unexpected))


def register_lifecycle_routes(
    app: FastAPI,
    *,
    app_name: str,
    version: str,
) -> None:
    """Liveness, readiness and the Prometheus scrape endpoint."""

    @app.get("/", tags=["Lifecycle"])
    async def root() -> dict[str, str]:
        return {"status": "ok", "app": app_name, "version": version}

    @app.get("/health/live", tags=["Lifecycle"])
    async def liveness_check() -> dict[str, str]:
        """Process is up; touches nothing else."""
        return {"status": "healthy"}

    @app.get("/health", tags=["Lifecycle"])
    async def readiness_check() -> Any:
        """Ready only while the database answers; 503 otherwise."""
        database = await db_session.health_check()
        ready = database["status"] == "up"
        SYSTEM_HEALTH.set(1.0 if ready else 0.0)

        body = {"status": "healthy" if ready else "unhealthy", "database": database}
        if ready:
            return body
        return JSONResponse(status_code=503, content=body)

    app.mount("/metrics", make_asgi_app())


def register_api_routers(app: FastAPI) -> None:
    from app.modules.directory_sync.api.v1.scim import router as scim_router
    from app.modules.directory_sync.api.v1.sync import router as sync_router

    routes: list[RouteEntry] = [
        (sync_router, "/api/v1"),
        (scim_router, "/scim/v2"),
    ]
    _validate_router_registry(routes)

    for router, prefix in routes:
        app.include_router(router, prefix=prefix)
