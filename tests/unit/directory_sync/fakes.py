"""Test doubles and seed helpers for directory sync tests."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any
from uuid import UUID, uuid4

from app.models.integration import Integration
from app.models.organization import Organization
from app.models.rbac import Role
from app.modules.directory_sync.domain.graph_models import RemoteGroup, RemoteUser
from app.modules.directory_sync.domain.patterns import to_predicate
from app.modules.directory_sync.domain.settings import DirectoryConfig
from app.shared.core.security import SecretsCodec


def remote_user(
    external_id: str,
    email: str,
    name: str | None = None,
    **extra: Any,
) -> RemoteUser:
    payload: dict[str, Any] = {
        "id": external_id,
        "mail": email,
        "displayName": name or email.split("@")[0].title(),
        "accountEnabled": True,
    }
    payload.update(extra)
    return RemoteUser.model_validate(payload)


def remote_group(external_id: str, name: str) -> RemoteGroup:
    return RemoteGroup.model_validate({"id": external_id, "displayName": name})


class FakeDirectory:
    """In-memory stand-in for the Graph client, shared across one test."""

    def __init__(self) -> None:
        self.groups: list[RemoteGroup] = []
        self.members: dict[str, list[RemoteUser]] = {}
        self.token_error: str | None = None
        self.groups_error: str | None = None
        self.member_errors: dict[str, str] = {}
        self.last_error: str | None = None
        self.configs: list[DirectoryConfig] = []
        self.patterns: list[str | None] = []

    def factory(self, config: DirectoryConfig) -> "FakeDirectory":
        self.configs.append(config)
        return self

    def add_group(
        self, external_id: str, name: str, members: list[RemoteUser] | None = None
    ) -> RemoteGroup:
        group = remote_group(external_id, name)
        self.groups.append(group)
        self.members[external_id] = list(members or [])
        return group

    def remove_group(self, external_id: str) -> None:
        self.groups = [g for g in self.groups if g.external_id != external_id]
        self.members.pop(external_id, None)

    async def get_access_token(self) -> str | None:
        self.last_error = None
        if self.token_error:
            self.last_error = self.token_error
            return None
        return "fake-token"

    async def fetch_groups(self, pattern: str | None) -> list[RemoteGroup]:
        self.last_error = None
        self.patterns.append(pattern)
        if self.groups_error:
            self.last_error = self.groups_error
            return []
        matches = to_predicate(pattern)
        return [group for group in self.groups if matches(group.display_name)]

    async def fetch_group_members(
        self, group_id: str, include_extended: bool = True
    ) -> list[RemoteUser]:
        self.last_error = None
        if group_id in self.member_errors:
            self.last_error = self.member_errors[group_id]
            return []
        return list(self.members.get(group_id, []))


@dataclass
class SeededOrg:
    org_id: UUID
    integration: Integration
    roles: dict[str, UUID] = field(default_factory=dict)


async def seed_org(
    db,
    *,
    group_pattern: str | None = "App-*",
    scim_enabled: bool = True,
    sync_people_enabled: bool = False,
    delete_people_on_user_delete: bool = True,
    role_slugs: tuple[str, ...] = ("user", "admin", "engineering"),
) -> SeededOrg:
    org = Organization(id=uuid4(), name="Acme")
    db.add(org)
    await db.flush()

    integration = Integration(
        org_id=org.id,
        provider="entra",
        status="connected",
        tenant_id="tenant-1",
        client_id="client-1",
        client_secret_encrypted=SecretsCodec().encrypt("client-secret"),
        scim_enabled=scim_enabled,
        scim_group_prefix=group_pattern,
        sync_people_enabled=sync_people_enabled,
        delete_people_on_user_delete=delete_people_on_user_delete,
    )
    db.add(integration)

    roles: dict[str, UUID] = {}
    for slug in role_slugs:
        role = Role(
            id=uuid4(),
            org_id=org.id,
            slug=slug,
            name=slug.title(),
            is_default=slug == "user",
        )
        db.add(role)
        roles[slug] = role.id
    await db.commit()
    return SeededOrg(org_id=org.id, integration=integration, roles=roles)


