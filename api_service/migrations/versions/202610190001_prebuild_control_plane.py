"""Create account, project, workspace, prebuild and webhook tables."""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "202610190001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _json() -> sa.types.TypeEngine:
    return sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _created_at(name: str = "creation_time") -> sa.Column:
    return sa.Column(
        name,
        sa.DateTime(timezone=True),
        nullable=False,
        server_default=sa.text("CURRENT_TIMESTAMP"),
    )


ENUMS = {
    "teammemberrole": ("owner", "member"),
    "appinstallationstate": ("installed", "uninstalled"),
    "workspacetype": ("regular", "prebuild"),
    "workspaceinstancephase": (
        "preparing",
        "building",
        "pending",
        "creating",
        "initializing",
        "running",
        "interrupted",
        "stopping",
        "stopped",
    ),
    "prebuildstate": ("queued", "building", "aborted", "timeout", "available", "failed"),
    "webhookeventstatus": ("received", "processed", "ignored", "dismissed_unauthorized"),
    "webhookprebuildstatus": (
        "ignored_unconfigured",
        "prebuild_triggered",
        "prebuild_trigger_failed",
    ),
}


def _enum(name: str) -> postgresql.ENUM:
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def upgrade() -> None:
    """Create the control plane schema."""

    bind = op.get_bind()
    for name in ENUMS:
        _enum(name).create(bind, checkfirst=True)

    op.create_table(
        "user",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=True),
        sa.Column("avatar_url", sa.String(length=512), nullable=True),
        sa.Column("blocked", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("feature_flags", _json(), nullable=False),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_user"),
    )
    op.create_table(
        "identity",
        sa.Column("auth_provider_id", sa.String(length=255), nullable=False),
        sa.Column("auth_id", sa.String(length=255), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column("auth_name", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("primary_email", sa.String(length=255), nullable=True),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("auth_provider_id", "auth_id", name="pk_identity"),
    )
    op.create_index("ix_identity_user_id", "identity", ["user_id"], unique=False)
    op.create_table(
        "token",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("auth_provider_id", sa.String(length=255), nullable=False),
        sa.Column("auth_id", sa.String(length=255), nullable=False),
        # EncryptedType stores ciphertext as text.
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("scopes", _json(), nullable=False),
        sa.Column("expiry_date", sa.DateTime(timezone=True), nullable=True),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.ForeignKeyConstraint(
            ["auth_provider_id", "auth_id"],
            ["identity.auth_provider_id", "identity.auth_id"],
            ondelete="CASCADE",
        ),
        sa.PrimaryKeyConstraint("id", name="pk_token"),
    )
    op.create_index(
        "ix_token_identity", "token", ["auth_provider_id", "auth_id"], unique=False
    )
    op.create_table(
        "team",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=True),
        sa.Column("marked_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_team"),
        sa.UniqueConstraint("slug", name="uq_team_slug"),
    )
    op.create_table(
        "team_membership",
        sa.Column("team_id", sa.Uuid(), nullable=False),
        sa.Column("user_id", sa.Uuid(), nullable=False),
        sa.Column(
            "role",
            _enum("teammemberrole"),
            nullable=False,
            server_default=sa.text("'member'::teammemberrole"),
        ),
        _created_at(),
        sa.ForeignKeyConstraint(["team_id"], ["team.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("team_id", "user_id", name="pk_team_membership"),
    )
    op.create_table(
        "app_installation",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("platform", sa.String(length=32), nullable=False),
        sa.Column("installation_id", sa.String(length=64), nullable=False),
        sa.Column("owner_user_id", sa.Uuid(), nullable=True),
        sa.Column("platform_user_id", sa.String(length=64), nullable=True),
        sa.Column(
            "state",
            _enum("appinstallationstate"),
            nullable=False,
            server_default=sa.text("'installed'::appinstallationstate"),
        ),
        _created_at(),
        _created_at("last_update"),
        sa.ForeignKeyConstraint(["owner_user_id"], ["user.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id", name="pk_app_installation"),
        sa.UniqueConstraint(
            "platform", "installation_id", name="uq_app_installation_platform_id"
        ),
    )

    op.create_table(
        "project",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("name", sa.String(length=255), nullable=False),
        sa.Column("slug", sa.String(length=255), nullable=True),
        sa.Column("clone_url", sa.String(length=512), nullable=False),
        sa.Column("team_id", sa.Uuid(), nullable=True),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("app_installation_id", sa.String(length=64), nullable=True),
        sa.Column("settings", _json(), nullable=False),
        sa.Column("config", _json(), nullable=False),
        sa.Column("marked_deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.ForeignKeyConstraint(["team_id"], ["team.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["user_id"], ["user.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id", name="pk_project"),
    )
    op.create_index("ix_project_clone_url", "project", ["clone_url"], unique=False)
    op.create_table(
        "project_usage",
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("last_webhook_received", sa.DateTime(timezone=True), nullable=True),
        sa.Column("last_workspace_start", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["project_id"], ["project.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("project_id", name="pk_project_usage"),
    )

    op.create_table(
        "workspace",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column(
            "type",
            _enum("workspacetype"),
            nullable=False,
            server_default=sa.text("'regular'::workspacetype"),
        ),
        sa.Column("owner_id", sa.Uuid(), nullable=False),
        sa.Column("organization_id", sa.Uuid(), nullable=True),
        sa.Column("project_id", sa.Uuid(), nullable=True),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("clone_url", sa.String(length=512), nullable=True),
        sa.Column("context_url", sa.Text(), nullable=False, server_default=""),
        sa.Column("context", _json(), nullable=False),
        sa.Column("config", _json(), nullable=False),
        sa.Column("image_source", _json(), nullable=False),
        sa.Column("based_on_prebuild_id", sa.Uuid(), nullable=True),
        _created_at(),
        sa.Column("deleted", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("content_deleted_time", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["owner_id"], ["user.id"], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(["organization_id"], ["team.id"], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(["project_id"], ["project.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id", name="pk_workspace"),
    )
    op.create_index("ix_workspace_project_id", "workspace", ["project_id"], unique=False)
    op.create_index(
        "ix_workspace_clone_url_creation_time",
        "workspace",
        ["clone_url", "creation_time"],
        unique=False,
    )
    op.create_table(
        "workspace_instance",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("workspace_id", sa.Uuid(), nullable=False),
        sa.Column("region", sa.String(length=64), nullable=False, server_default="default"),
        sa.Column(
            "phase",
            _enum("workspaceinstancephase"),
            nullable=False,
            server_default=sa.text("'preparing'::workspaceinstancephase"),
        ),
        sa.Column("status_version", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        sa.Column("feature_flags", _json(), nullable=False),
        sa.Column("failed_reason", sa.Text(), nullable=True),
        _created_at(),
        sa.Column("started_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stopping_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("stopped_time", sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(["workspace_id"], ["workspace.id"], ondelete="CASCADE"),
        sa.PrimaryKeyConstraint("id", name="pk_workspace_instance"),
    )
    op.create_index(
        "ix_workspace_instance_workspace_id",
        "workspace_instance",
        ["workspace_id"],
        unique=False,
    )
    op.create_index(
        "ix_workspace_instance_phase", "workspace_instance", ["phase"], unique=False
    )

    op.create_table(
        "prebuilt_workspace",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("clone_url", sa.String(length=512), nullable=False),
        sa.Column("commit", sa.String(length=255), nullable=False),
        sa.Column("build_workspace_id", sa.Uuid(), nullable=False),
        sa.Column("branch", sa.String(length=255), nullable=True),
        sa.Column("project_id", sa.Uuid(), nullable=True),
        sa.Column(
            "state",
            _enum("prebuildstate"),
            nullable=False,
            server_default=sa.text("'queued'::prebuildstate"),
        ),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("status_version", sa.BigInteger(), nullable=False, server_default=sa.text("0")),
        _created_at(),
        sa.ForeignKeyConstraint(
            ["build_workspace_id"], ["workspace.id"], ondelete="CASCADE"
        ),
        sa.ForeignKeyConstraint(["project_id"], ["project.id"], ondelete="SET NULL"),
        sa.PrimaryKeyConstraint("id", name="pk_prebuilt_workspace"),
        sa.UniqueConstraint(
            "build_workspace_id", name="uq_prebuilt_workspace_build_workspace_id"
        ),
    )
    op.create_index(
        "ix_prebuilt_workspace_clone_url_commit",
        "prebuilt_workspace",
        ["clone_url", "commit"],
        unique=False,
    )
    op.create_index(
        "ix_prebuilt_workspace_project_branch_state",
        "prebuilt_workspace",
        ["project_id", "branch", "state"],
        unique=False,
    )
    op.create_index(
        "ix_prebuilt_workspace_creation_time",
        "prebuilt_workspace",
        ["creation_time"],
        unique=False,
    )
    op.create_table(
        "prebuild_info",
        sa.Column("prebuild_id", sa.Uuid(), nullable=False),
        sa.Column("build_workspace_id", sa.Uuid(), nullable=False),
        sa.Column("based_on_prebuild_id", sa.Uuid(), nullable=True),
        sa.Column("team_id", sa.Uuid(), nullable=True),
        sa.Column("user_id", sa.Uuid(), nullable=True),
        sa.Column("project_id", sa.Uuid(), nullable=False),
        sa.Column("project_name", sa.String(length=255), nullable=False),
        sa.Column("started_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("started_by", sa.String(length=255), nullable=False, server_default=""),
        sa.Column("clone_url", sa.String(length=512), nullable=False),
        sa.Column("branch", sa.String(length=255), nullable=False),
        sa.Column("change_author", sa.String(length=255), nullable=False),
        sa.Column("change_author_avatar", sa.String(length=512), nullable=True),
        sa.Column("change_date", sa.String(length=64), nullable=False, server_default=""),
        sa.Column("change_hash", sa.String(length=255), nullable=False),
        sa.Column("change_title", sa.Text(), nullable=False),
        sa.Column("change_url", sa.Text(), nullable=False, server_default=""),
        sa.ForeignKeyConstraint(
            ["prebuild_id"], ["prebuilt_workspace.id"], ondelete="CASCADE"
        ),
        sa.PrimaryKeyConstraint("prebuild_id", name="pk_prebuild_info"),
    )
    op.create_index(
        "ix_prebuild_info_project_id", "prebuild_info", ["project_id"], unique=False
    )

    op.create_table(
        "webhook_event",
        sa.Column("id", sa.Uuid(), nullable=False),
        sa.Column("type", sa.String(length=32), nullable=False),
        sa.Column(
            "status",
            _enum("webhookeventstatus"),
            nullable=False,
            server_default=sa.text("'received'::webhookeventstatus"),
        ),
        sa.Column("prebuild_status", _enum("webhookprebuildstatus"), nullable=True),
        sa.Column("message", sa.Text(), nullable=True),
        sa.Column("raw_event", sa.Text(), nullable=False, server_default=""),
        sa.Column("project_id", sa.Uuid(), nullable=True),
        sa.Column("clone_url", sa.String(length=512), nullable=True),
        sa.Column("branch", sa.String(length=255), nullable=True),
        sa.Column("commit", sa.String(length=255), nullable=True),
        sa.Column("authorized_user_id", sa.Uuid(), nullable=True),
        sa.Column("prebuild_id", sa.Uuid(), nullable=True),
        _created_at(),
        sa.PrimaryKeyConstraint("id", name="pk_webhook_event"),
    )
    op.create_index(
        "ix_webhook_event_project_creation",
        "webhook_event",
        ["project_id", "creation_time"],
        unique=False,
    )
    op.create_index(
        "ix_webhook_event_clone_url", "webhook_event", ["clone_url"], unique=False
    )


def downgrade() -> None:
    """Drop the control plane schema."""

    op.drop_index("ix_webhook_event_clone_url", table_name="webhook_event")
    op.drop_index("ix_webhook_event_project_creation", table_name="webhook_event")
    op.drop_table("webhook_event")
    op.drop_index("ix_prebuild_info_project_id", table_name="prebuild_info")
    op.drop_table("prebuild_info")
    op.drop_index("ix_prebuilt_workspace_creation_time", table_name="prebuilt_workspace")
    op.drop_index(
        "ix_prebuilt_workspace_project_branch_state", table_name="prebuilt_workspace"
    )
    op.drop_index("ix_prebuilt_workspace_clone_url_commit", table_name="prebuilt_workspace")
    op.drop_table("prebuilt_workspace")
    op.drop_index("ix_workspace_instance_phase", table_name="workspace_instance")
    op.drop_index("ix_workspace_instance_workspace_id", table_name="workspace_instance")
    op.drop_table("workspace_instance")
    op.drop_index("ix_workspace_clone_url_creation_time", table_name="workspace")
    op.drop_index("ix_workspace_project_id", table_name="workspace")
    op.drop_table("workspace")
    op.drop_table("project_usage")
    op.drop_index("ix_project_clone_url", table_name="project")
    op.drop_table("project")
    op.drop_table("app_installation")
    op.drop_table("team_membership")
    op.drop_table("team")
    op.drop_index("ix_token_identity", table_name="token")
    op.drop_table("token")
    op.drop_index("ix_identity_user_id", table_name="identity")
    op.drop_table("identity")
    op.drop_table("user")

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        _enum(name).drop(bind, checkfirst=True)
