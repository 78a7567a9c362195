"""
Independent People sync: directory users become Person records directly,
through the org's property mapping, without creating application users,
memberships or role grants.
"""

from __future__ import annotations

from uuid import UUID

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.person import PersonStatus
from app.modules.directory_sync.domain.dates import (
    safe_parse_date,
    safe_parse_datetime,
    utc_now,
)
from app.modules.directory_sync.domain.graph_models import RemoteGroup, RemoteUser
from app.modules.directory_sync.domain.resolvers import (
    PersonProfile,
    PersonResolution,
    apply_profile,
    find_person_by_email,
    insert_person,
    stamp_provenance,
)
from app.modules.directory_sync.domain.settings import PeoplePropertyMapping

logger = structlog.get_logger()

DEFAULT_PERSON_ROLE = "Employee"
_VALID_STATUSES = {status.value for status in PersonStatus}

# Graph property -> the Person field it is copied onto when the mapping allows it.
_TEXT_TARGETS = {
    "jobTitle": "role",
    "department": "team",
    "officeLocation": "location",
    "mobilePhone": "phone",
}


def normalize_status(value: str | None) -> str:
    if value in _VALID_STATUSES:
        return str(value)
    if value:
        logger.warning("people_sync_default_status_invalid", status=value)
    return PersonStatus.ACTIVE.value


def profile_from_mapping(
    remote: RemoteUser, mapping: PeoplePropertyMapping, default_status: str | None
) -> PersonProfile:
    profile = PersonProfile(
        name=remote.display_name or remote.email,
        email=remote.email.lower(),
        status=normalize_status(default_status),
    )
    for graph_field, target in _TEXT_TARGETS.items():
        value = remote.graph_value(graph_field)
        if value and getattr(mapping, graph_field) == target:
            setattr(profile, target, value)

    hire_date = safe_parse_date(remote.graph_value("employeeHireDate"))
    if hire_date is not None:
        if mapping.employeeHireDate == "hireDate":
            profile.hire_date = hire_date
        elif mapping.employeeHireDate == "startDate":
            profile.start_date = hire_date
    if mapping.employeeLeaveDateTime == "endDate":
        profile.end_date = safe_parse_date(remote.graph_value("employeeLeaveDateTime"))
    if mapping.createdDateTime == "entraCreatedAt":
        profile.entra_created_at = safe_parse_datetime(remote.graph_value("createdDateTime"))

    profile.last_sign_in_at = safe_parse_datetime(remote.last_sign_in_at)
    profile.last_password_change_at = safe_parse_datetime(remote.last_password_change_at)

    if not profile.role:
        profile.role = DEFAULT_PERSON_ROLE
    return profile


def tracks_managers(mapping: PeoplePropertyMapping) -> bool:
    return mapping.manager == "managerId"


async def upsert_directory_person(
    db: AsyncSession,
    org_id: UUID,
    remote: RemoteUser,
    group: RemoteGroup,
    profile: PersonProfile,
) -> PersonResolution:
    """Person for ``remote`` matched by email; created when missing."""
    now = utc_now()
    existing = await find_person_by_email(db, org_id, remote.email)
    if existing is not None:
        stamp_provenance(existing, remote.external_id, group, now)
        updated = apply_profile(existing, profile)
        await db.flush()
        return PersonResolution(person=existing, created=False, updated=updated)

    person, created = await insert_person(
        db, org_id, profile, external_id=remote.external_id, group=group, now=now
    )
    await db.flush()
    if created:
        logger.info("people_sync_person_created", org_id=str(org_id), person_id=str(person.id))
    return PersonResolution(person=person, created=created, updated=not created)
