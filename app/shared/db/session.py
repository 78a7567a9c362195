"""
Async database engine and sessions.

The engine is built lazily on first use so importing the app (tests, Alembic,
one-off scripts) never opens a connection. PostgreSQL goes through asyncpg;
SQLite (tests, local runs) gets SAVEPOINT support switched on because every
directory sync member is written inside a nested transaction.
"""

import ssl
import time
from threading import Lock
from typing import Any, AsyncGenerator, Dict

import structlog
from sqlalchemy import event, text
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.pool import StaticPool

from app.shared.core.config import Settings, get_settings

logger = structlog.get_logger()

# Ensure ORM mappings are registered for scripts that import the DB layer
# without importing `app/main.py`.
import app.models  # noqa: F401, E402

_IN_MEMORY_SQLITE = "sqlite+aiosqlite:///:memory:"
_SSL_MODES = ("disable", "require", "verify-ca", "verify-full")

_engine: AsyncEngine | None = None
_session_maker: async_sessionmaker[AsyncSession] | None = None
_init_lock = Lock()


def database_url(settings: Settings) -> str:
    url = (settings.DATABASE_URL or "").strip()
    if url.startswith("postgresql://"):
        url = "postgresql+asyncpg://" + url[len("postgresql://"):]
    if settings.TESTING and (not url or ("sqlite" not in url and not settings.ALLOW_TEST_DATABASE_URL)):
        # Tests never write to a real database unless explicitly allowed.
        return _IN_MEMORY_SQLITE
    return url


def _ssl_setting(settings: Settings) -> ssl.SSLContext | bool:
    mode = str(settings.DB_SSL_MODE).lower()
    if mode not in _SSL_MODES:
        raise ValueError(f"Invalid DB_SSL_MODE: {mode}. Use: {', '.join(_SSL_MODES)}")
    if mode == "disable":
        logger.warning("database_ssl_disabled", msg="SSL disabled - do not use in production")
        return False

    ca_cert = settings.DB_SSL_CA_CERT_PATH
    if mode == "require":
        context = ssl.create_default_context()
        if ca_cert:
            context.load_verify_locations(cafile=ca_cert)
        else:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
            logger.warning("database_ssl_unverified", msg="SSL enabled without CA verification")
        return context

    if not ca_cert:
        raise ValueError(f"DB_SSL_CA_CERT_PATH required for DB_SSL_MODE={mode}")
    context = ssl.create_default_context(cafile=ca_cert)
    context.verify_mode = ssl.CERT_REQUIRED
    context.check_hostname = mode == "verify-full"
    return context


def connect_args(settings: Settings, url: str) -> dict[str, Any]:
    if "postgresql" not in url:
        return {}
    # statement_cache_size=0 keeps asyncpg usable behind transaction poolers.
    return {"statement_cache_size": 0, "ssl": _ssl_setting(settings)}


def _engine_options(settings: Settings, url: str) -> dict[str, Any]:
    options: dict[str, Any] = {"pool_pre_ping": True, "echo": settings.DB_ECHO}
    if "sqlite" in url:
        options["poolclass"] = StaticPool
        return options

    options.update(
        pool_size=settings.DB_POOL_SIZE,
        max_overflow=settings.DB_MAX_OVERFLOW,
        pool_timeout=settings.DB_POOL_TIMEOUT,
        pool_recycle=settings.DB_POOL_RECYCLE,
    )
    options["connect_args"] = connect_args(settings, url)
    return options


def enable_sqlite_savepoints(engine: AsyncEngine) -> None:
    """
    pysqlite defers BEGIN until the first DML statement, which breaks SAVEPOINT
    handling. Take over transaction demarcation so nested transactions work.
    """

    @event.listens_for(engine.sync_engine, "connect")
    def _on_connect(dbapi_connection: Any, _connection_record: Any) -> None:
        dbapi_connection.isolation_level = None

    @event.listens_for(engine.sync_engine, "begin")
    def _on_begin(conn: Any) -> None:
        conn.exec_driver_sql("BEGIN")


def log_slow_queries(engine: AsyncEngine, threshold_seconds: float) -> None:
    @event.listens_for(engine.sync_engine, "before_cursor_execute")
    def _started(conn: Any, *_args: Any) -> None:
        conn.info.setdefault("query_start_time", []).append(time.perf_counter())

    @event.listens_for(engine.sync_engine, "after_cursor_execute")
    def _finished(conn: Any, _cursor: Any, statement: str, *_args: Any) -> None:
        elapsed = time.perf_counter() - conn.info["query_start_time"].pop(-1)
        if elapsed > threshold_seconds:
            logger.warning(
                "slow_query_detected",
                duration_seconds=round(elapsed, 3),
                threshold_seconds=threshold_seconds,
                statement=statement[:200],
            )


def _initialize() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    settings = get_settings()
    if not settings.DATABASE_URL and not settings.TESTING:
        raise ValueError("DATABASE_URL is not set. The application cannot start.")

    url = database_url(settings)
    engine = create_async_engine(url, **_engine_options(settings, url))
    if "sqlite" in url:
        enable_sqlite_savepoints(engine)
    log_slow_queries(engine, settings.DB_SLOW_QUERY_THRESHOLD_SECONDS)
    return engine, async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


def _runtime() -> tuple[AsyncEngine, async_sessionmaker[AsyncSession]]:
    global _engine, _session_maker
    if _engine is None or _session_maker is None:
        with _init_lock:
            if _engine is None or _session_maker is None:
                _engine, _session_maker = _initialize()
    return _engine, _session_maker


def get_engine() -> AsyncEngine:
    return _runtime()[0]


def async_session_maker() -> AsyncSession:
    """A new session from the process-wide factory."""
    return _runtime()[1]()


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """FastAPI dependency yielding a request-scoped session."""
    async with async_session_maker() as session:
        try:
            yield session
        finally:
            await session.close()


async def health_check() -> Dict[str, Any]:
    started = time.perf_counter()
    try:
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))
    except Exception as exc:  # noqa: BLE001 - reported as a down dependency
        logger.error("database_health_check_failed", error=str(exc))
        return {"status": "down", "error": str(exc)}
    return {"status": "up", "latency_ms": round((time.perf_counter() - started) * 1000, 2)}
