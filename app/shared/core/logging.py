import re
import sys
import structlog
import logging
from typing import Any, cast
from app.shared.core.config import get_settings

_EMAIL_REGEX = re.compile(r"[a-zA-Z0-9_.+-]+@[a-zA-Z0-9-]+\.[a-zA-Z0-9-.]+")
_PII_FIELDS = {
    "password",
    "token",
    "secret",
    "authorization",
    "access_token",
    "client_secret",
    "scim_token",
    "phone",
    "mobile_phone",
}
_PII_SUFFIXES = ("_token", "_secret", "_password", "_key")

# structlog bookkeeping keys, never redacted.
_ALLOWED_KEYS = {"event", "timestamp", "level"}


def pii_redactor(
    _logger: Any, _method_name: str, event_dict: dict[str, Any]
) -> dict[str, Any]:
    """
    Recursively redact secrets and contact data from logs.
    Directory payloads carry e-mail addresses and phone numbers of real people,
    so nothing from them should reach telemetry unmasked.
    """

    def is_sensitive_key(key: Any) -> bool:
        key_norm = str(key).lower().strip().replace("-", "_")
        if key_norm in _ALLOWED_KEYS:
            return False
        return key_norm in _PII_FIELDS or key_norm.endswith(_PII_SUFFIXES)

    def redact_recursive(data: Any) -> Any:
        if isinstance(data, dict):
            return {
                k: ("[REDACTED]" if is_sensitive_key(k) else redact_recursive(v))
                for k, v in data.items()
            }
        elif isinstance(data, (list, tuple)):
            return [redact_recursive(item) for item in data]
        elif isinstance(data, str):
            return _EMAIL_REGEX.sub("[EMAIL_REDACTED]", data)
        return data

    redacted = redact_recursive(event_dict)
    if isinstance(redacted, dict):
        return cast(dict[str, Any], redacted)
    return {}


def setup_logging() -> None:
    settings = get_settings()

    base_processors = [
        structlog.contextvars.merge_contextvars,  # Support async context (org_id binding)
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        pii_redactor,  # Redact PII before rendering
    ]

    if settings.DEBUG:
        renderer: Any = structlog.dev.ConsoleRenderer()
        processors = base_processors + [renderer]
        min_level = logging.DEBUG
    else:
        renderer = structlog.processors.JSONRenderer()
        processors = base_processors + [structlog.processors.dict_tracebacks, renderer]
        min_level = logging.INFO

    structlog.configure(
        processors=cast(Any, processors),
        logger_factory=structlog.PrintLoggerFactory(file=sys.stderr),
        cache_logger_on_first_use=True,
    )

    # Library logs (uvicorn, sqlalchemy) share the same stream.
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stderr,
        level=min_level,
    )


def audit_log(
    event: str,
    user_id: str,
    tenant_id: str,
    details: dict[str, Any] | None = None,
) -> None:
    """
    Standardized helper for security-relevant audit events.
    Enforces a consistent schema for SIEM ingestion.
    """
    logger = structlog.get_logger("audit")
    logger.info(
        event,
        user_id=str(user_id),
        tenant_id=str(tenant_id),
        metadata=details or {},
    )
