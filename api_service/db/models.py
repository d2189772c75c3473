"""Database models for accounts, organizations and app installations."""

from __future__ import annotations

import enum
from datetime import UTC, datetime
from typing import Optional
from uuid import UUID, uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    ForeignKey,
    ForeignKeyConstraint,
    Index,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.ext.mutable import MutableDict, MutableList
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship
from sqlalchemy_utils import EncryptedType

from api_service.core.encryption import get_encryption_key


class Base(DeclarativeBase):
    pass


def _json_variant() -> JSON:
    return JSON().with_variant(JSONB(astext_type=Text()), "postgresql")


def mutable_json_list() -> JSON:
    return MutableList.as_mutable(_json_variant())


def mutable_json_dict() -> JSON:
    return MutableDict.as_mutable(_json_variant())


def enum_values(enum_cls: type[enum.Enum]) -> list[str]:
    """Return enum values so SQLAlchemy persists lowercase labels, not names."""

    return [member.value for member in enum_cls]


def utcnow() -> datetime:
    return datetime.now(UTC)


class User(Base):
    __tablename__ = "user"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    avatar_url: Mapped[Optional[str]] = mapped_column(String(512), nullable=True)
    blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    feature_flags: Mapped[list[str]] = mapped_column(
        mutable_json_list(), nullable=False, default=list
    )
    creation_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    identities: Mapped[list["Identity"]] = relationship(
        "Identity",
        back_populates="user",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class Identity(Base):
    """A user's account on an auth provider (a git host or the platform itself)."""

    __tablename__ = "identity"

    auth_provider_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    auth_id: Mapped[str] = mapped_column(String(255), primary_key=True)
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("user.id", ondelete="CASCADE"), nullable=False, index=True
    )
    auth_name: Mapped[str] = mapped_column(String(255), nullable=False, default="")
    primary_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)

    user: Mapped[User] = relationship("User", back_populates="identities")


class Token(Base):
    """Token issued for an identity; the value is encrypted at rest."""

    __tablename__ = "token"
    __table_args__ = (
        ForeignKeyConstraint(
            ["auth_provider_id", "auth_id"],
            ["identity.auth_provider_id", "identity.auth_id"],
            ondelete="CASCADE",
        ),
        Index("ix_token_identity", "auth_provider_id", "auth_id"),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    auth_provider_id: Mapped[str] = mapped_column(String(255), nullable=False)
    auth_id: Mapped[str] = mapped_column(String(255), nullable=False)
    value: Mapped[str] = mapped_column(
        EncryptedType(Text, get_encryption_key), nullable=False
    )
    scopes: Mapped[list[str]] = mapped_column(
        mutable_json_list(), nullable=False, default=list
    )
    expiry_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    creation_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class TeamMemberRole(str, enum.Enum):
    OWNER = "owner"
    MEMBER = "member"


class Team(Base):
    """An organization; projects and their prebuilds belong to one."""

    __tablename__ = "team"

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    slug: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, unique=True)
    marked_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    creation_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class TeamMember(Base):
    __tablename__ = "team_membership"

    team_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("team.id", ondelete="CASCADE"), primary_key=True
    )
    user_id: Mapped[UUID] = mapped_column(
        Uuid, ForeignKey("user.id", ondelete="CASCADE"), primary_key=True
    )
    role: Mapped[TeamMemberRole] = mapped_column(
        Enum(
            TeamMemberRole,
            name="teammemberrole",
            native_enum=True,
            validate_strings=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=TeamMemberRole.MEMBER,
    )
    creation_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )


class AppInstallationState(str, enum.Enum):
    INSTALLED = "installed"
    UNINSTALLED = "uninstalled"


class AppInstallation(Base):
    """A GitHub app installation and the platform user who installed it."""

    __tablename__ = "app_installation"
    __table_args__ = (
        UniqueConstraint(
            "platform", "installation_id", name="uq_app_installation_platform_id"
        ),
    )

    id: Mapped[UUID] = mapped_column(Uuid, primary_key=True, default=uuid4)
    platform: Mapped[str] = mapped_column(String(32), nullable=False)
    installation_id: Mapped[str] = mapped_column(String(64), nullable=False)
    owner_user_id: Mapped[Optional[UUID]] = mapped_column(
        Uuid, ForeignKey("user.id", ondelete="SET NULL"), nullable=True
    )
    platform_user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    state: Mapped[AppInstallationState] = mapped_column(
        Enum(
            AppInstallationState,
            name="appinstallationstate",
            native_enum=True,
            validate_strings=True,
            values_callable=enum_values,
        ),
        nullable=False,
        default=AppInstallationState.INSTALLED,
    )
    creation_time: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    last_update: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )


__all__ = [
    "AppInstallation",
    "AppInstallationState",
    "Base",
    "Identity",
    "Team",
    "TeamMember",
    "TeamMemberRole",
    "Token",
    "User",
    "enum_values",
    "mutable_json_dict",
    "mutable_json_list",
    "utcnow",
]
