"""Persistence helpers for projects and project usage."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from api_service.db.models import utcnow
from devplane.hosts.repo_url import trim_repo_url
from devplane.projects.models import Project, ProjectUsage


class ProjectRepositoryError(Exception):
    """Base class for project repository errors."""


class ProjectNotFoundError(ProjectRepositoryError):
    def __init__(self, project_id: UUID) -> None:
        super().__init__(f"Project {project_id} was not found")
        self.project_id = project_id


def clone_url_variants(clone_url: str) -> list[str]:
    """Spellings of the same repository that may be stored as a project URL."""

    trimmed = trim_repo_url(clone_url)
    variants = [clone_url.strip(), f"{trimmed}.git", trimmed]
    return list(dict.fromkeys(item for item in variants if item))


class ProjectRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def commit(self) -> None:
        await self._session.commit()

    async def create_project(
        self,
        *,
        name: str,
        clone_url: str,
        team_id: Optional[UUID] = None,
        user_id: Optional[UUID] = None,
        slug: Optional[str] = None,
        app_installation_id: Optional[str] = None,
        settings: Optional[dict[str, Any]] = None,
        config: Optional[dict[str, Any]] = None,
    ) -> Project:
        project = Project(
            name=name,
            slug=slug,
            clone_url=clone_url,
            team_id=team_id,
            user_id=user_id,
            app_installation_id=app_installation_id,
            settings=dict(settings or {}),
            config=dict(config or {}),
        )
        self._session.add(project)
        await self._session.flush()
        return project

    async def get_project(self, project_id: UUID) -> Optional[Project]:
        project = await self._session.get(Project, project_id)
        if project is None or project.marked_deleted:
            return None
        return project

    async def require_project(self, project_id: UUID) -> Project:
        project = await self.get_project(project_id)
        if project is None:
            raise ProjectNotFoundError(project_id)
        return project

    async def find_projects_by_clone_url(
        self, clone_url: str, *, team_id: Optional[UUID] = None
    ) -> list[Project]:
        stmt = select(Project).where(
            Project.clone_url.in_(clone_url_variants(clone_url)),
            Project.marked_deleted.is_(False),
        )
        if team_id is not None:
            stmt = stmt.where(Project.team_id == team_id)
        stmt = stmt.order_by(Project.creation_time.asc())
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def update_settings(self, project: Project, settings: dict[str, Any]) -> Project:
        project.settings = dict(settings)
        await self._session.flush()
        return project

    async def get_usage(self, project_id: UUID) -> Optional[ProjectUsage]:
        return await self._session.get(ProjectUsage, project_id)

    async def _usage_for_update(self, project_id: UUID) -> ProjectUsage:
        usage = await self.get_usage(project_id)
        if usage is None:
            usage = ProjectUsage(project_id=project_id)
            self._session.add(usage)
        return usage

    async def mark_webhook_received(
        self, project_id: UUID, *, at: Optional[datetime] = None
    ) -> ProjectUsage:
        usage = await self._usage_for_update(project_id)
        usage.last_webhook_received = at or utcnow()
        await self._session.flush()
        return usage

    async def mark_workspace_started(
        self, project_id: UUID, *, at: Optional[datetime] = None
    ) -> ProjectUsage:
        usage = await self._usage_for_update(project_id)
        usage.last_workspace_start = at or utcnow()
        await self._session.flush()
        return usage


__all__ = [
    "ProjectNotFoundError",
    "ProjectRepository",
    "ProjectRepositoryError",
    "clone_url_variants",
]
