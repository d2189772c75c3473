"""Persistence helpers for users, identities, tokens, teams and app installations."""

from __future__ import annotations

from typing import Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api_service.db.models import (
    AppInstallation,
    AppInstallationState,
    Identity,
    Team,
    TeamMember,
    TeamMemberRole,
    Token,
    User,
)


class UserRepositoryError(Exception):
    """Base class for user repository errors."""


class UserNotFoundError(UserRepositoryError):
    def __init__(self, user_id: UUID) -> None:
        super().__init__(f"User {user_id} was not found")
        self.user_id = user_id


class UserRepository:
    """Lookups and writes for accounts and organization membership."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def commit(self) -> None:
        await self._session.commit()

    async def get_user(self, user_id: UUID) -> Optional[User]:
        return await self._session.get(User, user_id)

    async def require_user(self, user_id: UUID) -> User:
        user = await self.get_user(user_id)
        if user is None:
            raise UserNotFoundError(user_id)
        return user

    async def create_user(
        self,
        *,
        name: Optional[str] = None,
        avatar_url: Optional[str] = None,
        blocked: bool = False,
    ) -> User:
        user = User(name=name, avatar_url=avatar_url, blocked=blocked, identities=[])
        self._session.add(user)
        await self._session.flush()
        return user

    async def add_identity(
        self,
        user: User,
        *,
        auth_provider_id: str,
        auth_id: str,
        auth_name: str = "",
        primary_email: Optional[str] = None,
    ) -> Identity:
        identity = Identity(
            auth_provider_id=auth_provider_id,
            auth_id=auth_id,
            auth_name=auth_name,
            primary_email=primary_email,
        )
        user.identities.append(identity)
        await self._session.flush()
        return identity

    async def find_user_by_identity(
        self, auth_provider_id: str, auth_id: str
    ) -> Optional[User]:
        stmt = (
            select(User)
            .join(Identity, Identity.user_id == User.id)
            .where(
                Identity.auth_provider_id == auth_provider_id,
                Identity.auth_id == auth_id,
                Identity.deleted.is_(False),
            )
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def add_token(
        self,
        identity: Identity,
        *,
        value: str,
        scopes: Optional[list[str]] = None,
    ) -> Token:
        token = Token(
            auth_provider_id=identity.auth_provider_id,
            auth_id=identity.auth_id,
            value=value,
            scopes=list(scopes or []),
        )
        self._session.add(token)
        await self._session.flush()
        return token

    async def find_tokens_for_identity(
        self, auth_provider_id: str, auth_id: str
    ) -> list[Token]:
        """Return live tokens for an identity, newest first."""

        stmt = (
            select(Token)
            .where(
                Token.auth_provider_id == auth_provider_id,
                Token.auth_id == auth_id,
                Token.deleted.is_(False),
            )
            .order_by(Token.creation_time.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def create_team(self, *, name: str, slug: Optional[str] = None) -> Team:
        team = Team(name=name, slug=slug)
        self._session.add(team)
        await self._session.flush()
        return team

    async def add_team_member(
        self,
        team_id: UUID,
        user_id: UUID,
        *,
        role: TeamMemberRole = TeamMemberRole.MEMBER,
    ) -> TeamMember:
        member = TeamMember(team_id=team_id, user_id=user_id, role=role)
        self._session.add(member)
        await self._session.flush()
        return member

    async def find_team_members(
        self, team_id: UUID, *, role: Optional[TeamMemberRole] = None
    ) -> list[User]:
        stmt = (
            select(User)
            .join(TeamMember, TeamMember.user_id == User.id)
            .where(TeamMember.team_id == team_id)
            .order_by(TeamMember.creation_time.asc())
        )
        if role is not None:
            stmt = stmt.where(TeamMember.role == role)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def is_team_member(self, team_id: UUID, user_id: UUID) -> bool:
        membership = await self._session.get(
            TeamMember, {"team_id": team_id, "user_id": user_id}
        )
        return membership is not None

    async def find_app_installation(
        self, platform: str, installation_id: str
    ) -> Optional[AppInstallation]:
        stmt = select(AppInstallation).where(
            AppInstallation.platform == platform,
            AppInstallation.installation_id == installation_id,
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def record_app_installation(
        self,
        *,
        platform: str,
        installation_id: str,
        owner_user_id: Optional[UUID],
        platform_user_id: Optional[str],
    ) -> AppInstallation:
        installation = await self.find_app_installation(platform, installation_id)
        if installation is None:
            installation = AppInstallation(
                platform=platform,
                installation_id=installation_id,
            )
            self._session.add(installation)
        installation.owner_user_id = owner_user_id
        installation.platform_user_id = platform_user_id
        installation.state = AppInstallationState.INSTALLED
        await self._session.flush()
        return installation

    async def record_app_uninstallation(
        self, *, platform: str, installation_id: str
    ) -> Optional[AppInstallation]:
        installation = await self.find_app_installation(platform, installation_id)
        if installation is None:
            return None
        installation.state = AppInstallationState.UNINSTALLED
        await self._session.flush()
        return installation

    async def find_installation_owner(
        self, platform: str, installation_id: str
    ) -> Optional[User]:
        installation = await self.find_app_installation(platform, installation_id)
        if (
            installation is None
            or installation.state != AppInstallationState.INSTALLED
            or installation.owner_user_id is None
        ):
            return None
        return await self.get_user(installation.owner_user_id)


__all__ = ["UserNotFoundError", "UserRepository", "UserRepositoryError"]
