"""Create organization, identity, people and directory sync tables.

Revision ID: 5e1c2a9d7b30
Revises:
Create Date: 2026-09-28 00:00:00.000000
"""

from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = "5e1c2a9d7b30"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _uuid_pk() -> sa.Column:
    return sa.Column(
        "id",
        sa.UUID(),
        primary_key=True,
        nullable=False,
        server_default=sa.text("gen_random_uuid()"),
    )


def _org_fk() -> sa.Column:
    return sa.Column(
        "org_id",
        sa.UUID(),
        sa.ForeignKey("organizations.id", ondelete="CASCADE"),
        nullable=False,
    )


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table(
        "organizations",
        sa.Column("id", sa.UUID(), primary_key=True, nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )

    op.create_table(
        "rbac_roles",
        _uuid_pk(),
        _org_fk(),
        sa.Column("slug", sa.String(length=100), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("is_default", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("is_system", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
        sa.UniqueConstraint("org_id", "slug", name="uq_rbac_roles_org_slug"),
    )
    op.create_index("ix_rbac_roles_org_id", "rbac_roles", ["org_id"])

    op.create_table(
        "people_persons",
        _uuid_pk(),
        _org_fk(),
        sa.Column("slug", sa.String(length=255), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("role", sa.String(length=255), nullable=True),
        sa.Column("team", sa.String(length=255), nullable=True),
        sa.Column(
            "manager_id",
            sa.UUID(),
            sa.ForeignKey("people_persons.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("start_date", sa.Date(), nullable=False),
        sa.Column("end_date", sa.Date(), nullable=True),
        sa.Column("phone", sa.String(length=64), nullable=True),
        sa.Column("location", sa.String(length=255), nullable=True),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("external_group_id", sa.String(length=255), nullable=True),
        sa.Column("external_group_name", sa.String(length=255), nullable=True),
        sa.Column("last_synced_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("sync_enabled", sa.Boolean(), nullable=False, server_default=sa.text("true")),
        sa.Column("hire_date", sa.Date(), nullable=True),
        sa.Column("entra_created_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_sign_in_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_password_change_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "email", name="uq_people_persons_org_email"),
        sa.UniqueConstraint("slug", name="uq_people_persons_slug"),
    )
    op.create_index("ix_people_persons_org_id", "people_persons", ["org_id"])
    op.create_index("ix_people_persons_email", "people_persons", ["email"])
    op.create_index("ix_people_persons_manager_id", "people_persons", ["manager_id"])
    op.create_index("ix_people_persons_external_id", "people_persons", ["external_id"])

    op.create_table(
        "users",
        _uuid_pk(),
        _org_fk(),
        sa.Column("email", sa.String(length=320), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column(
            "scim_provisioned", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column(
            "person_id",
            sa.UUID(),
            sa.ForeignKey("people_persons.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("invited_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "email", name="uq_users_org_email"),
    )
    op.create_index("ix_users_org_id", "users", ["org_id"])
    op.create_index("ix_users_email", "users", ["email"])
    op.create_index("ix_users_external_id", "users", ["external_id"])
    op.create_index("ix_users_person_id", "users", ["person_id"])

    op.create_table(
        "core_integrations",
        _uuid_pk(),
        _org_fk(),
        sa.Column("provider", sa.String(length=32), nullable=False),
        sa.Column("status", sa.String(length=32), nullable=False),
        sa.Column("tenant_id", sa.String(length=255), nullable=True),
        sa.Column("client_id", sa.String(length=255), nullable=True),
        sa.Column("client_secret_encrypted", sa.Text(), nullable=True),
        sa.Column("scim_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("scim_token_encrypted", sa.Text(), nullable=True),
        sa.Column("scim_token_bidx", sa.String(length=64), nullable=True),
        sa.Column("scim_group_prefix", sa.String(length=255), nullable=True),
        sa.Column(
            "sync_people_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column(
            "delete_people_on_user_delete",
            sa.Boolean(),
            nullable=False,
            server_default=sa.text("true"),
        ),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("synced_user_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("synced_group_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("last_error_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "provider", name="uq_core_integrations_org_provider"),
    )
    op.create_index("ix_core_integrations_org_id", "core_integrations", ["org_id"])
    op.create_index(
        "ix_core_integrations_scim_token_bidx", "core_integrations", ["scim_token_bidx"]
    )

    op.create_table(
        "people_settings",
        _uuid_pk(),
        _org_fk(),
        sa.Column("sync_mode", sa.String(length=16), nullable=False),
        sa.Column("people_group_pattern", sa.String(length=255), nullable=True),
        sa.Column("property_mapping", postgresql.JSONB(astext_type=sa.Text()), nullable=True),
        sa.Column(
            "auto_delete_on_removal", sa.Boolean(), nullable=False, server_default=sa.text("false")
        ),
        sa.Column("default_status", sa.String(length=32), nullable=False),
        sa.Column("scim_enabled", sa.Boolean(), nullable=False, server_default=sa.text("false")),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column(
            "synced_people_count", sa.Integer(), nullable=False, server_default=sa.text("0")
        ),
        sa.Column("last_sync_error", sa.Text(), nullable=True),
        sa.Column("last_sync_error_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("org_id", name="uq_people_settings_org_id"),
    )
    op.create_index("ix_people_settings_org_id", "people_settings", ["org_id"])

    op.create_table(
        "scim_groups",
        _uuid_pk(),
        _org_fk(),
        sa.Column("external_id", sa.String(length=255), nullable=True),
        sa.Column("display_name", sa.String(length=255), nullable=False),
        sa.Column(
            "mapped_role_id",
            sa.UUID(),
            sa.ForeignKey("rbac_roles.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column("member_count", sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column("last_sync_at", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint("org_id", "external_id", name="uq_scim_groups_org_external_id"),
    )
    op.create_index("ix_scim_groups_org_id", "scim_groups", ["org_id"])
    op.create_index("ix_scim_groups_created_at", "scim_groups", ["created_at"])

    op.create_table(
        "user_scim_groups",
        sa.Column(
            "user_id",
            sa.UUID(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column(
            "scim_group_id",
            sa.UUID(),
            sa.ForeignKey("scim_groups.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column(
            "synced_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )
    op.create_index(
        "ix_user_scim_groups_scim_group_id", "user_scim_groups", ["scim_group_id"]
    )

    op.create_table(
        "rbac_user_roles",
        sa.Column(
            "user_id",
            sa.UUID(),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column(
            "role_id",
            sa.UUID(),
            sa.ForeignKey("rbac_roles.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("source", sa.String(length=16), nullable=False),
        sa.Column(
            "scim_group_id",
            sa.UUID(),
            sa.ForeignKey("scim_groups.id", ondelete="SET NULL"),
            nullable=True,
        ),
        sa.Column(
            "assigned_at",
            sa.DateTime(timezone=True),
            nullable=False,
            server_default=sa.text("now()"),
        ),
    )
    op.create_index("ix_rbac_user_roles_scim_group_id", "rbac_user_roles", ["scim_group_id"])

    op.create_table(
        "directory_sync_locks",
        sa.Column(
            "org_id",
            sa.UUID(),
            sa.ForeignKey("organizations.id", ondelete="CASCADE"),
            primary_key=True,
            nullable=False,
        ),
        sa.Column("holder_id", sa.String(length=64), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("directory_sync_locks")
    op.drop_index("ix_rbac_user_roles_scim_group_id", table_name="rbac_user_roles")
    op.drop_table("rbac_user_roles")
    op.drop_index("ix_user_scim_groups_scim_group_id", table_name="user_scim_groups")
    op.drop_table("user_scim_groups")
    op.drop_index("ix_scim_groups_created_at", table_name="scim_groups")
    op.drop_index("ix_scim_groups_org_id", table_name="scim_groups")
    op.drop_table("scim_groups")
    op.drop_index("ix_people_settings_org_id", table_name="people_settings")
    op.drop_table("people_settings")
    op.drop_index("ix_core_integrations_scim_token_bidx", table_name="core_integrations")
    op.drop_index("ix_core_integrations_org_id", table_name="core_integrations")
    op.drop_table("core_integrations")
    for name in (
        "ix_users_person_id",
        "ix_users_external_id",
        "ix_users_email",
        "ix_users_org_id",
    ):
        op.drop_index(name, table_name="users")
    op.drop_table("users")
    for name in (
        "ix_people_persons_external_id",
        "ix_people_persons_manager_id",
        "ix_people_persons_email",
        "ix_people_persons_org_id",
    ):
        op.drop_index(name, table_name="people_persons")
    op.drop_table("people_persons")
    op.drop_index("ix_rbac_roles_org_id", table_name="rbac_roles")
    op.drop_table("rbac_roles")
    op.drop_table("organizations")
