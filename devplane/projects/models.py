"""SQLAlchemy models for projects and their usage bookkeeping."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import Boolean, DateTime, ForeignKey, Index, String, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from api_service.db.models import Base, mutable_json_dict, utcnow


class Project(Base):
    """A repository registered with an organization for prebuilds."""

    __tablename__ = "project"
    __table_args__ = (Index("ix_project_clone_url", "clone_url"),)

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    clone_url: Mapped[str] = mapped_column(String(512), nullable=False)
    team_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("team.id", ondelete="CASCADE"), nullable=True
    )
    user_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("user.id", ondelete="SET NULL"), nullable=True
    )
    app_installation_id: Mapped[Optional[str]] = mapped_column(
        String(64), nullable=True
    )
    # camelCase keys, e.g. {"prebuilds": {"enable": true, "branchStrategy": ...}}
    settings: Mapped[dict[str, Any]] = mapped_column(
        mutable_json_dict(), nullable=False, default=dict
    )
    # Stored configuration files keyed by file name (".gitpod.yml").
    config: Mapped[dict[str, Any]] = mapped_column(
        mutable_json_dict(), nullable=False, default=dict
    )
    marked_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    creation_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class ProjectUsage(Base):
    __tablename__ = "project_usage"

    project_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("project.id", ondelete="CASCADE"), primary_key=True
    )
    last_webhook_received: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_workspace_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )


__all__ = ["Project", "ProjectUsage"]
