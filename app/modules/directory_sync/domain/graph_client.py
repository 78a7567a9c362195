"""
Microsoft Graph directory client

Client-credentials authentication against Entra ID plus the read-only group
and member queries directory sync needs.

Every public method degrades instead of raising: failures come back as an
empty list / None and the reason is kept on ``last_error`` (reset at the start
of each call) so the orchestrator can tell "nothing matched" apart from "the
call failed" and avoid destructive cleanup on a failed fetch.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Any, Callable

import httpx
import structlog
from pydantic import ValidationError

from app.modules.directory_sync.domain.graph_models import (
    RemoteGroup,
    RemoteUser,
    is_user_entry,
)
from app.modules.directory_sync.domain.patterns import (
    is_literal,
    literal_prefix,
    to_predicate,
)
from app.modules.directory_sync.domain.settings import DirectoryConfig
from app.modules.directory_sync.domain.token_cache import TokenCache
from app.shared.adapters.http_retry import execute_with_http_retry
from app.shared.core.config import Settings, get_settings
from app.shared.core.exceptions import ExternalAPIError
from app.shared.core.http import get_http_client
from app.shared.core.ops_metrics import GRAPH_API_CALLS_TOTAL

logger = structlog.get_logger()

_RETRYABLE_STATUS_CODES = {429, 500, 502, 503, 504}
_MAX_RETRIES = 3
# Concurrent per-user enrichment calls within one member listing.
_ENRICHMENT_CONCURRENCY = 8

GROUP_SELECT = "id,displayName,description"
MEMBER_SELECT = ",".join(
    [
        "id",
        "displayName",
        "mail",
        "userPrincipalName",
        "givenName",
        "surname",
        "accountEnabled",
        "jobTitle",
        "department",
        "officeLocation",
        "mobilePhone",
        "employeeHireDate",
        "employeeLeaveDateTime",
        "createdDateTime",
    ]
)
MANAGER_SELECT = "id,displayName,mail,userPrincipalName"
SECURITY_SELECT = "signInActivity,lastPasswordChangeDateTime"

# AADSTS codes that point at a specific misconfigured credential.
_TOKEN_ERROR_MESSAGES = {
    700016: "Invalid Client ID - application not found in the tenant",
    7000215: "Invalid Client Secret - the secret is incorrect or expired",
    90002: "Invalid Tenant ID - tenant not found",
    900023: "Invalid Tenant ID - tenant not found",
}


@dataclass(frozen=True, slots=True)
class CredentialCheck:
    valid: bool
    error: str | None = None


def odata_quote(value: str) -> str:
    return value.replace("'", "''")


def describe_token_error(payload: Any, status_code: int) -> str:
    """Turn an OAuth error payload into a message an admin can act on."""
    if not isinstance(payload, dict):
        return f"Token request failed with status {status_code}"

    codes = payload.get("error_codes")
    if isinstance(codes, list):
        for code in codes:
            if isinstance(code, int) and code in _TOKEN_ERROR_MESSAGES:
                return _TOKEN_ERROR_MESSAGES[code]

    description = str(payload.get("error_description") or "")
    for code, message in _TOKEN_ERROR_MESSAGES.items():
        if f"AADSTS{code}:" in description:
            return message

    if description:
        return description.splitlines()[0]
    error = payload.get("error")
    if error:
        return f"Token request failed: {error}"
    return f"Token request failed with status {status_code}"


class GraphDirectoryClient:
    def __init__(
        self,
        config: DirectoryConfig,
        *,
        token_cache: TokenCache,
        http_client: httpx.AsyncClient | None = None,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._token_cache = token_cache
        self._http_client = http_client
        self._settings = settings or get_settings()
        self._clock = clock
        self.last_error: str | None = None

    @property
    def _http(self) -> httpx.AsyncClient:
        return self._http_client or get_http_client()

    @property
    def _graph_base(self) -> str:
        return self._settings.GRAPH_API_BASE_URL.rstrip("/")

    @property
    def _beta_base(self) -> str:
        return self._settings.GRAPH_BETA_API_BASE_URL.rstrip("/")

    @property
    def token_url(self) -> str:
        base = self._settings.ENTRA_LOGIN_BASE_URL.rstrip("/")
        return f"{base}/{self._config.tenant_id}/oauth2/v2.0/token"

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------

    async def _request_token(self) -> tuple[str | None, float, str | None]:
        """One client-credentials exchange: (token, expires_at, error)."""
        form = {
            "client_id": self._config.client_id,
            "client_secret": self._config.client_secret,
            "scope": self._settings.GRAPH_SCOPE,
            "grant_type": "client_credentials",
        }
        try:
            response = await self._http.post(
                self.token_url,
                data=form,
                timeout=self._settings.GRAPH_TIMEOUT_SECONDS,
            )
        except httpx.HTTPError as exc:
            GRAPH_API_CALLS_TOTAL.labels(operation="token", status="transport_error").inc()
            return None, 0.0, f"Could not reach the Entra ID token endpoint: {exc}"

        try:
            payload = response.json()
        except ValueError:
            payload = None

        GRAPH_API_CALLS_TOTAL.labels(
            operation="token", status=str(response.status_code)
        ).inc()
        if response.status_code != 200:
            return None, 0.0, describe_token_error(payload, response.status_code)

        token = payload.get("access_token") if isinstance(payload, dict) else None
        if not isinstance(token, str) or not token:
            return None, 0.0, "Token response did not contain an access token"

        try:
            expires_in = float(payload.get("expires_in", 3600))
        except (TypeError, ValueError):
            expires_in = 3600.0
        return token, self._clock() + expires_in, None

    async def get_access_token(self) -> str | None:
        self.last_error = None
        cached = self._token_cache.get()
        if cached:
            return cached

        token, expires_at, error = await self._request_token()
        if token is None:
            self.last_error = error
            logger.error(
                "graph_token_request_failed",
                tenant_id=self._config.tenant_id,
                error=error,
            )
            return None

        self._token_cache.set(token, expires_at)
        logger.info("graph_token_acquired", tenant_id=self._config.tenant_id)
        return token

    async def validate_credentials(self) -> CredentialCheck:
        """Uncached exchange used when an admin tests the connection."""
        token, _expires_at, error = await self._request_token()
        if token is None:
            return CredentialCheck(valid=False, error=error)
        return CredentialCheck(valid=True)

    # ------------------------------------------------------------------
    # Transport
    # ------------------------------------------------------------------

    async def _get_json(
        self,
        url: str,
        *,
        token: str,
        params: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        headers = {"Authorization": f"Bearer {token}"}
        try:
            response = await execute_with_http_retry(
                request=lambda: self._http.get(
                    url,
                    headers=headers,
                    params=params,
                    timeout=self._settings.GRAPH_TIMEOUT_SECONDS,
                ),
                url=url,
                max_retries=_MAX_RETRIES,
                retryable_status_codes=_RETRYABLE_STATUS_CODES,
                retry_http_status_log_event="graph_retry_http_status",
                retry_transport_log_event="graph_retry_transport_error",
                error_prefix="Microsoft Graph request failed",
            )
        except ExternalAPIError as exc:
            status = exc.details.get("status_code", "transport_error")
            GRAPH_API_CALLS_TOTAL.labels(operation="get", status=str(status)).inc()
            raise
        GRAPH_API_CALLS_TOTAL.labels(
            operation="get", status=str(response.status_code)
        ).inc()
        try:
            payload = response.json()
        except ValueError as exc:
            raise ExternalAPIError("Microsoft Graph returned invalid JSON payload") from exc
        if not isinstance(payload, dict):
            raise ExternalAPIError("Microsoft Graph returned invalid payload shape")
        return payload

    async def _get_collection(
        self,
        url: str,
        *,
        token: str,
        params: dict[str, Any] | None = None,
        follow_next_link: bool = True,
    ) -> list[dict[str, Any]]:
        entries: list[dict[str, Any]] = []
        next_url: str | None = url
        next_params = params
        pages = 0
        while next_url and pages < self._settings.GRAPH_MAX_PAGES:
            payload = await self._get_json(next_url, token=token, params=next_params)
            pages += 1
            value = payload.get("value", [])
            if isinstance(value, list):
                entries.extend(item for item in value if isinstance(item, dict))
            if not follow_next_link:
                break
            link = payload.get("@odata.nextLink")
            next_url = link if isinstance(link, str) and link else None
            # nextLink already carries the query string
            next_params = None
        if next_url and follow_next_link and pages >= self._settings.GRAPH_MAX_PAGES:
            logger.warning("graph_page_limit_reached", url=url, pages=pages)
        return entries

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    async def fetch_groups(self, pattern: str | None) -> list[RemoteGroup]:
        """
        Groups whose display name matches ``pattern``.

        A literal prefix is pushed to Graph as a ``startswith`` filter and a
        fully literal pattern as an equality filter; anything else is one
        bounded page filtered locally.
        """
        token = await self.get_access_token()
        if token is None:
            return []

        url = f"{self._graph_base}/groups"
        params: dict[str, Any] = {"$select": GROUP_SELECT}
        prefix = literal_prefix(pattern)
        follow = True
        if pattern and is_literal(pattern):
            params["$filter"] = f"displayName eq '{odata_quote(pattern)}'"
        elif prefix:
            params["$filter"] = f"startswith(displayName,'{odata_quote(prefix)}')"
        else:
            params["$top"] = self._settings.GRAPH_GROUPS_PAGE_SIZE
            follow = False

        try:
            raw_groups = await self._get_collection(
                url, token=token, params=params, follow_next_link=follow
            )
        except (ExternalAPIError, httpx.HTTPError) as exc:
            self.last_error = f"Failed to fetch groups: {exc}"
            logger.warning("graph_groups_fetch_failed", pattern=pattern, error=str(exc))
            return []

        matches = to_predicate(pattern)
        groups: list[RemoteGroup] = []
        for raw in raw_groups:
            try:
                group = RemoteGroup.model_validate(raw)
            except ValidationError as exc:
                logger.warning(
                    "graph_group_record_invalid",
                    group_id=raw.get("id"),
                    error=str(exc),
                )
                continue
            if matches(group.display_name):
                groups.append(group)

        logger.info(
            "graph_groups_fetched",
            pattern=pattern,
            returned=len(raw_groups),
            matched=len(groups),
        )
        return groups

    # ------------------------------------------------------------------
    # Members
    # ------------------------------------------------------------------

    async def _fetch_manager(self, user_id: str, token: str) -> dict[str, Any] | None:
        try:
            payload = await self._get_json(
                f"{self._graph_base}/users/{user_id}/manager",
                token=token,
                params={"$select": MANAGER_SELECT},
            )
        except (ExternalAPIError, httpx.HTTPError) as exc:
            # 404 is the normal answer for a user without a manager.
            logger.debug("graph_manager_lookup_skipped", user_id=user_id, error=str(exc))
            return None
        return payload if payload.get("id") else None

    async def _fetch_security_info(self, user_id: str, token: str) -> dict[str, Any]:
        try:
            payload = await self._get_json(
                f"{self._beta_base}/users/{user_id}",
                token=token,
                params={"$select": SECURITY_SELECT},
            )
        except (ExternalAPIError, httpx.HTTPError) as exc:
            # Needs AuditLog.Read.All; absent permission just means absent data.
            logger.debug("graph_security_lookup_skipped", user_id=user_id, error=str(exc))
            return {}

        info: dict[str, Any] = {}
        activity = payload.get("signInActivity")
        if isinstance(activity, dict) and activity.get("lastSignInDateTime"):
            info["lastSignInDateTime"] = activity["lastSignInDateTime"]
        if payload.get("lastPasswordChangeDateTime"):
            info["lastPasswordChangeDateTime"] = payload["lastPasswordChangeDateTime"]
        return info

    async def _enrich(
        self, raw: dict[str, Any], token: str, semaphore: asyncio.Semaphore
    ) -> dict[str, Any]:
        user_id = str(raw.get("id") or "")
        if not user_id:
            return raw
        async with semaphore:
            manager, security = await asyncio.gather(
                self._fetch_manager(user_id, token),
                self._fetch_security_info(user_id, token),
            )
        enriched = {**raw, **security}
        if manager:
            enriched["manager"] = manager
        return enriched

    async def fetch_group_members(
        self, group_id: str, include_extended: bool = True
    ) -> list[RemoteUser]:
        """User members of a group; nested groups and devices are skipped."""
        token = await self.get_access_token()
        if token is None:
            return []

        try:
            raw_members = await self._get_collection(
                f"{self._graph_base}/groups/{group_id}/members",
                token=token,
                params={"$select": MEMBER_SELECT},
            )
        except (ExternalAPIError, httpx.HTTPError) as exc:
            self.last_error = f"Failed to fetch members for group {group_id}: {exc}"
            logger.warning(
                "graph_group_members_fetch_failed", group_id=group_id, error=str(exc)
            )
            return []

        raw_users = [entry for entry in raw_members if is_user_entry(entry)]
        if include_extended and raw_users:
            semaphore = asyncio.Semaphore(_ENRICHMENT_CONCURRENCY)
            raw_users = list(
                await asyncio.gather(
                    *(self._enrich(raw, token, semaphore) for raw in raw_users)
                )
            )

        users: list[RemoteUser] = []
        for raw in raw_users:
            try:
                users.append(RemoteUser.model_validate(raw))
            except ValidationError as exc:
                logger.warning(
                    "graph_member_record_skipped",
                    group_id=group_id,
                    user_id=raw.get("id"),
                    error=str(exc),
                )
        return users
