"""SQLAlchemy models and the state machine for prebuilt workspaces."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    String,
    Text,
    Uuid,
)
from sqlalchemy.orm import Mapped, mapped_column

from api_service.db.models import Base, enum_values, utcnow


class PrebuildTransitionError(ValueError):
    """Raised when a prebuild state change is not allowed."""

    def __init__(self, current: "PrebuildState", target: "PrebuildState") -> None:
        super().__init__(
            f"Prebuild cannot transition from {current.value} to {target.value}"
        )
        self.current = current
        self.target = target


class PrebuildState(str, enum.Enum):
    """Lifecycle states for a prebuild."""

    QUEUED = "queued"
    BUILDING = "building"
    ABORTED = "aborted"
    TIMEOUT = "timeout"
    AVAILABLE = "available"
    FAILED = "failed"

    @property
    def is_active(self) -> bool:
        return self in (PrebuildState.QUEUED, PrebuildState.BUILDING)

    @property
    def is_unsuccessful(self) -> bool:
        return self in (
            PrebuildState.ABORTED,
            PrebuildState.FAILED,
            PrebuildState.TIMEOUT,
        )

    def can_transition_to(self, target: "PrebuildState") -> bool:
        if target is self:
            return True
        return target in _TRANSITIONS[self]

    def ensure_transition(self, target: "PrebuildState") -> None:
        if not self.can_transition_to(target):
            raise PrebuildTransitionError(self, target)


# Unsuccessful prebuilds may only go back to queued (retrigger).
_TRANSITIONS: dict[PrebuildState, frozenset[PrebuildState]] = {
    PrebuildState.QUEUED: frozenset(
        {
            PrebuildState.BUILDING,
            PrebuildState.ABORTED,
            PrebuildState.FAILED,
            PrebuildState.TIMEOUT,
        }
    ),
    PrebuildState.BUILDING: frozenset(
        {
            PrebuildState.AVAILABLE,
            PrebuildState.FAILED,
            PrebuildState.TIMEOUT,
            PrebuildState.ABORTED,
        }
    ),
    PrebuildState.AVAILABLE: frozenset(),
    PrebuildState.FAILED: frozenset({PrebuildState.QUEUED}),
    PrebuildState.ABORTED: frozenset({PrebuildState.QUEUED}),
    PrebuildState.TIMEOUT: frozenset({PrebuildState.QUEUED}),
}


class PrebuiltWorkspace(Base):
    """A background build of a repository at one commit."""

    __tablename__ = "prebuilt_workspace"
    __table_args__ = (
        Index("ix_prebuilt_workspace_clone_url_commit", "clone_url", "commit"),
        Index(
            "ix_prebuilt_workspace_project_branch_state",
            "project_id",
            "branch",
            "state",
        ),
        Index("ix_prebuilt_workspace_creation_time", "creation_time"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    clone_url: Mapped[str] = mapped_column(String(512), nullable=False)
    # Commit SHA, or a hash over all revisions for multi-repository contexts.
    commit: Mapped[str] = mapped_column(String(255), nullable=False)
    build_workspace_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("workspace.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
    )
    branch: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    project_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("project.id", ondelete="SET NULL"), nullable=True
    )
    state: Mapped[PrebuildState] = mapped_column(
        Enum(
            PrebuildState,
            name="prebuildstate",
            native_enum=True,
            validate_strings=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=PrebuildState.QUEUED,
    )
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    status_version: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    creation_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class PrebuildInfo(Base):
    """Denormalized listing row describing the change a prebuild was built for."""

    __tablename__ = "prebuild_info"

    prebuild_id: Mapped[UUID] = mapped_column(
        Uuid,
        ForeignKey("prebuilt_workspace.id", ondelete="CASCADE"),
        primary_key=True,
    )
    build_workspace_id: Mapped[UUID] = mapped_column(Uuid, nullable=False)
    based_on_prebuild_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    team_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    user_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    project_id: Mapped[UUID] = mapped_column(Uuid, nullable=False, index=True)
    project_name: Mapped[str] = mapped_column(String(255), nullable=False)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    started_by: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    clone_url: Mapped[str] = mapped_column(String(512), nullable=False)
    branch: Mapped[str] = mapped_column(String(255), nullable=False)
    change_author: Mapped[str] = mapped_column(String(255), nullable=False)
    change_author_avatar: Mapped[Optional[str]] = mapped_column(
        String(512), nullable=True
    )
    change_date: Mapped[str] = mapped_column(String(64), nullable=False, default="")
    change_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    change_title: Mapped[str] = mapped_column(Text, nullable=False)
    change_url: Mapped[str] = mapped_column(Text, nullable=False, default="")


__all__ = [
    "PrebuildInfo",
    "PrebuildState",
    "PrebuildTransitionError",
    "PrebuiltWorkspace",
]
