"""Audit log of webhook deliveries and what they led to."""

from __future__ import annotations

import enum
from datetime import datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import DateTime, Enum, Index, String, Text, Uuid
from sqlalchemy.orm import Mapped, mapped_column

from api_service.db.models import Base, enum_values, utcnow


class WebhookEventStatus(str, enum.Enum):
    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"
    DISMISSED_UNAUTHORIZED = "dismissed_unauthorized"


class WebhookPrebuildStatus(str, enum.Enum):
    IGNORED_UNCONFIGURED = "ignored_unconfigured"
    PREBUILD_TRIGGERED = "prebuild_triggered"
    PREBUILD_TRIGGER_FAILED = "prebuild_trigger_failed"


class WebhookEvent(Base):
    __tablename__ = "webhook_event"
    __table_args__ = (
        Index("ix_webhook_event_project_creation", "project_id", "creation_time"),
        Index("ix_webhook_event_clone_url", "clone_url"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    type: Mapped[str] = mapped_column(String(32), nullable=False)
    status: Mapped[WebhookEventStatus] = mapped_column(
        Enum(
            WebhookEventStatus,
            name="webhookeventstatus",
            native_enum=True,
            validate_strings=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=WebhookEventStatus.RECEIVED,
    )
    prebuild_status: Mapped[Optional[WebhookPrebuildStatus]] = mapped_column(
        Enum(
            WebhookPrebuildStatus,
            name="webhookprebuildstatus",
            native_enum=True,
            validate_strings=True,
            values_callable=enum_values,
        ),
        nullable=True,
    )
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    raw_event: Mapped[str] = mapped_column(Text, nullable=False, default="")
    project_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    clone_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    branch: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    commit: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    authorized_user_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    prebuild_id: Mapped[Optional[UUID]] = mapped_column(Uuid, nullable=True)
    creation_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


__all__ = ["WebhookEvent", "WebhookEventStatus", "WebhookPrebuildStatus"]
