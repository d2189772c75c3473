"""SQLAlchemy models for workspaces and their instances."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from api_service.db.models import (
    Base,
    enum_values,
    mutable_json_dict,
    mutable_json_list,
    utcnow,
)


class WorkspaceType(str, enum.Enum):
    REGULAR = "regular"
    PREBUILD = "prebuild"


class WorkspaceInstancePhase(str, enum.Enum):
    """Runtime phases reported for a workspace instance."""

    PREPARING = "preparing"
    BUILDING = "building"
    PENDING = "pending"
    CREATING = "creating"
    INITIALIZING = "initializing"
    RUNNING = "running"
    INTERRUPTED = "interrupted"
    STOPPING = "stopping"
    STOPPED = "stopped"

    @property
    def is_active(self) -> bool:
        return self is not WorkspaceInstancePhase.STOPPED


class StopWorkspacePolicy(str, enum.Enum):
    NORMALLY = "normally"
    IMMEDIATELY = "immediately"
    ABORT = "abort"


class Workspace(Base):
    """A workspace created from a commit context."""

    __tablename__ = "workspace"
    __table_args__ = (
        Index("ix_workspace_project_id", "project_id"),
        Index("ix_workspace_clone_url_creation_time", "clone_url", "creation_time"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    type: Mapped[WorkspaceType] = mapped_column(
        Enum(
            WorkspaceType,
            name="workspacetype",
            native_enum=True,
            validate_strings=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=WorkspaceType.REGULAR,
    )
    owner_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("user.id", ondelete="CASCADE"), nullable=False
    )
    organization_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("team.id", ondelete="SET NULL"), nullable=True
    )
    project_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("project.id", ondelete="SET NULL"), nullable=True
    )
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    clone_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    context_url: Mapped[str] = mapped_column(Text, nullable=False, default="")
    context: Mapped[dict[str, Any]] = mapped_column(
        mutable_json_dict(), nullable=False, default=dict
    )
    config: Mapped[dict[str, Any]] = mapped_column(
        mutable_json_dict(), nullable=False, default=dict
    )
    image_source: Mapped[dict[str, Any]] = mapped_column(
        mutable_json_dict(), nullable=False, default=dict
    )
    based_on_prebuild_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    creation_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Set once the workspace content has been garbage collected.
    content_deleted_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


class WorkspaceInstance(Base):
    """One run of a workspace on the runtime."""

    __tablename__ = "workspace_instance"
    __table_args__ = (
        Index("ix_workspace_instance_workspace_id", "workspace_id"),
        Index("ix_workspace_instance_phase", "phase"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    workspace_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("workspace.id", ondelete="CASCADE"), nullable=False
    )
    region: Mapped[str] = mapped_column(String(64), nullable=False, default="default")
    phase: Mapped[WorkspaceInstancePhase] = mapped_column(
        Enum(
            WorkspaceInstancePhase,
            name="workspaceinstancephase",
            native_enum=True,
            validate_strings=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=WorkspaceInstancePhase.PREPARING,
    )
    status_version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    feature_flags: Mapped[list[str]] = mapped_column(
        mutable_json_list(), nullable=False, default=list
    )
    failed_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    creation_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    started_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    stopping_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    stopped_time: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


__all__ = [
    "StopWorkspacePolicy",
    "Workspace",
    "WorkspaceInstance",
    "WorkspaceInstancePhase",
    "WorkspaceType",
]
