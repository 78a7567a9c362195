"""
Find-or-create resolution of directory records into local rows.

Lookups are by the natural key the directory guarantees (email for users and
people, provider id for groups) and always case-insensitive on email. Inserts
run inside a SAVEPOINT; when a concurrent writer wins the unique constraint we
re-select the winner and link to it instead of failing the member.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.person import Person, PersonSource, PersonStatus
from app.models.rbac import Role
from app.models.scim_group import ScimGroup
from app.models.user import User, UserStatus
from app.modules.directory_sync.domain.dates import (
    safe_parse_date,
    safe_parse_datetime,
    start_date_or_today,
    utc_now,
)
from app.modules.directory_sync.domain.graph_models import RemoteGroup, RemoteUser
from app.modules.directory_sync.domain.patterns import extract_role_slug, matches_pattern

logger = structlog.get_logger()

DEFAULT_ROLE_SLUG = "user"
_SLUG_FALLBACK = "person"
_MAX_SLUG_ATTEMPTS = 1000


@dataclass(slots=True)
class UserResolution:
    user: User
    created: bool
    updated: bool = False


@dataclass(slots=True)
class PersonResolution:
    person: Person
    created: bool
    updated: bool = False


@dataclass(slots=True)
class PersonProfile:
    """Person attributes derived from one directory user."""

    name: str
    email: str
    role: str | None = None
    team: str | None = None
    location: str | None = None
    phone: str | None = None
    status: str = PersonStatus.ACTIVE.value
    start_date: date | None = None
    end_date: date | None = None
    hire_date: date | None = None
    entra_created_at: datetime | None = None
    last_sign_in_at: datetime | None = None
    last_password_change_at: datetime | None = None

    @classmethod
    def from_remote(cls, remote: RemoteUser) -> "PersonProfile":
        hire_date = safe_parse_date(remote.hire_date)
        return cls(
            name=remote.display_name or remote.email,
            email=remote.email,
            role=remote.job_title,
            team=remote.department,
            location=remote.office_location,
            phone=remote.mobile_phone,
            start_date=hire_date,
            hire_date=hire_date,
            entra_created_at=safe_parse_datetime(remote.created_at),
            last_sign_in_at=safe_parse_datetime(remote.last_sign_in_at),
            last_password_change_at=safe_parse_datetime(remote.last_password_change_at),
        )


# Overwritten only by a non-empty value that differs.
_MUTABLE_PERSON_FIELDS = ("name", "role", "team", "location", "phone")
# Overwritten whenever the directory supplied a parseable value.
_DIRECTORY_TIMESTAMP_FIELDS = (
    "entra_created_at",
    "hire_date",
    "last_sign_in_at",
    "last_password_change_at",
)


def normalize_email(email: str) -> str:
    return email.strip().lower()


def generate_slug(name: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", (name or "").lower()).strip("-")
    return slug or _SLUG_FALLBACK


async def unique_person_slug(db: AsyncSession, base: str) -> str:
    """``base``, or the first free ``base-N`` (N >= 2)."""
    taken = set(
        (
            await db.execute(
                select(Person.slug).where(
                    or_(Person.slug == base, Person.slug.like(f"{base}-%"))
                )
            )
        ).scalars()
    )
    if base not in taken:
        return base
    for suffix in range(2, _MAX_SLUG_ATTEMPTS):
        candidate = f"{base}-{suffix}"
        if candidate not in taken:
            return candidate
    raise ValueError(f"No free slug for {base!r}")


# ----------------------------------------------------------------------
# Users
# ----------------------------------------------------------------------


async def find_user_by_email(db: AsyncSession, org_id: UUID, email: str) -> User | None:
    return (
        await db.execute(
            select(User)
            .where(
                User.org_id == org_id,
                func.lower(User.email) == normalize_email(email),
            )
            .limit(1)
        )
    ).scalar_one_or_none()


def _patch_user(user: User, remote: RemoteUser) -> bool:
    changed = False
    if remote.display_name and remote.display_name != user.name:
        user.name = remote.display_name
        changed = True
    if not user.scim_provisioned:
        user.scim_provisioned = True
        changed = True
    if not user.external_id and remote.external_id:
        user.external_id = remote.external_id
        changed = True
    return changed


async def get_or_create_user(
    db: AsyncSession, org_id: UUID, remote: RemoteUser
) -> UserResolution:
    existing = await find_user_by_email(db, org_id, remote.email)
    if existing is not None:
        updated = _patch_user(existing, remote)
        if updated:
            await db.flush()
        return UserResolution(user=existing, created=False, updated=updated)

    email = normalize_email(remote.email)
    user = User(
        org_id=org_id,
        email=email,
        name=remote.display_name or email,
        external_id=remote.external_id,
        scim_provisioned=True,
        status=(
            UserStatus.ACTIVE.value
            if remote.account_enabled is not False
            else UserStatus.INVITED.value
        ),
        invited_at=utc_now(),
    )
    try:
        async with db.begin_nested():
            db.add(user)
            await db.flush()
    except IntegrityError:
        existing = await find_user_by_email(db, org_id, email)
        if existing is None:
            raise
        updated = _patch_user(existing, remote)
        if updated:
            await db.flush()
        return UserResolution(user=existing, created=False, updated=updated)

    logger.info("directory_user_created", org_id=str(org_id), user_id=str(user.id))
    return UserResolution(user=user, created=True)


# ----------------------------------------------------------------------
# People
# ----------------------------------------------------------------------


async def find_person_by_email(
    db: AsyncSession, org_id: UUID, email: str
) -> Person | None:
    return (
        await db.execute(
            select(Person)
            .where(
                Person.org_id == org_id,
                func.lower(Person.email) == normalize_email(email),
            )
            .limit(1)
        )
    ).scalar_one_or_none()


def stamp_provenance(
    person: Person,
    external_id: str,
    group: RemoteGroup | None,
    now: datetime,
) -> None:
    person.source = PersonSource.SYNC.value
    person.external_id = external_id
    if group is not None:
        person.external_group_id = group.external_id
        person.external_group_name = group.display_name
    person.last_synced_at = now
    person.sync_enabled = True


def apply_profile(person: Person, profile: PersonProfile) -> bool:
    """Copy changed profile values onto ``person``; True if any field moved."""
    changed = False
    for field in _MUTABLE_PERSON_FIELDS:
        value: Any = getattr(profile, field)
        if value and value != getattr(person, field):
            setattr(person, field, value)
            changed = True
    return apply_directory_timestamps(person, profile) or changed


def apply_directory_timestamps(person: Person, profile: PersonProfile) -> bool:
    changed = False
    for field in _DIRECTORY_TIMESTAMP_FIELDS:
        value = getattr(profile, field)
        if value is not None and value != _comparable(getattr(person, field)):
            setattr(person, field, value)
            changed = True
    return changed


def _comparable(value: Any) -> Any:
    # SQLite hands back naive datetimes for timezone-aware columns.
    if isinstance(value, datetime) and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


async def insert_person(
    db: AsyncSession,
    org_id: UUID,
    profile: PersonProfile,
    *,
    external_id: str,
    group: RemoteGroup | None,
    now: datetime,
) -> tuple[Person, bool]:
    """
    Insert a synced Person; on a unique-constraint race return the existing row
    (matched by email or slug) with provenance refreshed. Second item is True
    when a new row was written.
    """
    slug = await unique_person_slug(db, generate_slug(profile.name))
    person = Person(
        org_id=org_id,
        slug=slug,
        name=profile.name,
        email=normalize_email(profile.email),
        role=profile.role,
        team=profile.team,
        location=profile.location or None,
        phone=profile.phone or None,
        status=profile.status,
        start_date=profile.start_date or start_date_or_today(None),
        end_date=profile.end_date,
        hire_date=profile.hire_date,
        entra_created_at=profile.entra_created_at,
        last_sign_in_at=profile.last_sign_in_at,
        last_password_change_at=profile.last_password_change_at,
    )
    stamp_provenance(person, external_id, group, now)
    try:
        async with db.begin_nested():
            db.add(person)
            await db.flush()
        return person, True
    except IntegrityError:
        logger.warning(
            "directory_person_insert_conflict",
            org_id=str(org_id),
            slug=slug,
        )

    existing = (
        await db.execute(
            select(Person)
            .where(
                Person.org_id == org_id,
                or_(
                    func.lower(Person.email) == normalize_email(profile.email),
                    Person.slug == slug,
                ),
            )
            .limit(1)
        )
    ).scalar_one_or_none()
    if existing is None:
        raise ValueError(f"Could not create or locate person for slug {slug!r}")
    stamp_provenance(existing, external_id, group, now)
    apply_directory_timestamps(existing, profile)
    return existing, False


async def get_or_create_person(
    db: AsyncSession,
    org_id: UUID,
    user_id: UUID,
    remote: RemoteUser,
    group: RemoteGroup | None = None,
) -> PersonResolution:
    """
    Resolve the Person for a provisioned user.

    1. The user's linked Person: refresh provenance and changed fields.
    2. A Person with the same email: link it to the user, refresh provenance.
    3. Otherwise insert a new synced Person and link it.
    """
    now = utc_now()
    profile = PersonProfile.from_remote(remote)
    user = await db.get(User, user_id)
    if user is None:
        raise ValueError(f"User {user_id} not found")

    if user.person_id is not None:
        linked = await db.get(Person, user.person_id)
        if linked is not None:
            stamp_provenance(linked, remote.external_id, group, now)
            updated = apply_profile(linked, profile)
            await db.flush()
            return PersonResolution(person=linked, created=False, updated=updated)

    by_email = await find_person_by_email(db, org_id, remote.email)
    if by_email is not None:
        user.person_id = by_email.id
        stamp_provenance(by_email, remote.external_id, group, now)
        apply_directory_timestamps(by_email, profile)
        await db.flush()
        logger.info(
            "directory_person_linked",
            org_id=str(org_id),
            person_id=str(by_email.id),
            user_id=str(user_id),
        )
        return PersonResolution(person=by_email, created=False, updated=True)

    person, created = await insert_person(
        db, org_id, profile, external_id=remote.external_id, group=group, now=now
    )
    user.person_id = person.id
    await db.flush()
    if created:
        logger.info(
            "directory_person_created",
            org_id=str(org_id),
            person_id=str(person.id),
            user_id=str(user_id),
        )
    return PersonResolution(person=person, created=created, updated=not created)


# ----------------------------------------------------------------------
# Groups and roles
# ----------------------------------------------------------------------


async def get_or_create_scim_group(
    db: AsyncSession,
    org_id: UUID,
    remote_group: RemoteGroup,
    mapped_role_id: UUID | None,
) -> ScimGroup:
    stmt = select(ScimGroup).where(
        ScimGroup.org_id == org_id,
        ScimGroup.external_id == remote_group.external_id,
    )
    existing = (await db.execute(stmt)).scalar_one_or_none()
    if existing is not None:
        if (
            existing.display_name != remote_group.display_name
            or existing.mapped_role_id != mapped_role_id
        ):
            existing.display_name = remote_group.display_name
            existing.mapped_role_id = mapped_role_id
            await db.flush()
        return existing

    group = ScimGroup(
        org_id=org_id,
        external_id=remote_group.external_id,
        display_name=remote_group.display_name,
        mapped_role_id=mapped_role_id,
    )
    try:
        async with db.begin_nested():
            db.add(group)
            await db.flush()
        return group
    except IntegrityError:
        return (await db.execute(stmt)).scalar_one()


async def get_default_role(db: AsyncSession, org_id: UUID) -> Role | None:
    flagged = (
        await db.execute(
            select(Role).where(Role.org_id == org_id, Role.is_default.is_(True)).limit(1)
        )
    ).scalar_one_or_none()
    if flagged is not None:
        return flagged
    return (
        await db.execute(
            select(Role).where(Role.org_id == org_id, Role.slug == DEFAULT_ROLE_SLUG)
        )
    ).scalar_one_or_none()


async def map_group_to_role(
    db: AsyncSession, org_id: UUID, display_name: str, pattern: str | None
) -> Role | None:
    """Role whose slug the group name implies under ``pattern``, if it exists."""
    if pattern and not matches_pattern(display_name, pattern):
        return None
    slug = extract_role_slug(display_name, pattern)
    if not slug:
        return None
    return (
        await db.execute(select(Role).where(Role.org_id == org_id, Role.slug == slug))
    ).scalar_one_or_none()
