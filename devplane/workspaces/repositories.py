"""Repository helpers for workspaces, instances and prebuilds."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Optional
from uuid import UUID, uuid4

from sqlalchemy import Select, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from api_service.db.models import utcnow
from devplane.prebuilds.models import PrebuildInfo, PrebuildState, PrebuiltWorkspace
from devplane.workspaces.models import (
    Workspace,
    WorkspaceInstance,
    WorkspaceInstancePhase,
    WorkspaceType,
)


class WorkspaceRepositoryError(Exception):
    """Base class for workspace repository errors."""


class WorkspaceNotFoundError(WorkspaceRepositoryError):
    def __init__(self, workspace_id: UUID) -> None:
        super().__init__(f"Workspace {workspace_id} was not found")
        self.workspace_id = workspace_id


class PrebuildNotFoundError(WorkspaceRepositoryError):
    def __init__(self, prebuild_id: UUID) -> None:
        super().__init__(f"Prebuild {prebuild_id} was not found")
        self.prebuild_id = prebuild_id


class PrebuildVersionConflictError(WorkspaceRepositoryError):
    """Raised when a prebuild changed underneath a compare-and-swap update."""

    def __init__(self, prebuild_id: UUID, expected_version: int) -> None:
        super().__init__(
            f"Prebuild {prebuild_id} is no longer at status version {expected_version}"
        )
        self.prebuild_id = prebuild_id
        self.expected_version = expected_version


@dataclass(frozen=True, slots=True)
class PrebuildWithWorkspace:
    prebuild: PrebuiltWorkspace
    workspace: Workspace


@dataclass(frozen=True, slots=True)
class ActivePrebuild:
    prebuild: PrebuiltWorkspace
    instances: tuple[WorkspaceInstance, ...]


@dataclass(frozen=True, slots=True)
class PrebuildWithInfo:
    prebuild: PrebuiltWorkspace
    info: Optional[PrebuildInfo]


class WorkspaceRepository:
    """Storage for workspaces, their instances and prebuild records.

    Prebuild state changes go through compare-and-swap on ``status_version``.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def commit(self) -> None:
        """Persist transaction changes."""

        await self._session.commit()

    # Workspaces -----------------------------------------------------------

    async def store_workspace(self, workspace: Workspace) -> Workspace:
        if workspace.id is None:
            workspace.id = uuid4()
        self._session.add(workspace)
        await self._session.flush()
        return workspace

    async def find_by_id(self, workspace_id: UUID) -> Optional[Workspace]:
        workspace = await self._session.get(Workspace, workspace_id)
        if workspace is None or workspace.deleted:
            return None
        return workspace

    async def require_workspace(self, workspace_id: UUID) -> Workspace:
        workspace = await self.find_by_id(workspace_id)
        if workspace is None:
            raise WorkspaceNotFoundError(workspace_id)
        return workspace

    async def get_workspace_count_by_clone_url(
        self,
        clone_url: str,
        days: int,
        workspace_type: WorkspaceType = WorkspaceType.REGULAR,
    ) -> int:
        """Count workspaces of ``workspace_type`` created in the last ``days``."""

        since = utcnow() - timedelta(days=days)
        stmt = select(func.count(Workspace.id)).where(
            Workspace.clone_url == clone_url,
            Workspace.type == workspace_type,
            Workspace.creation_time >= since,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    # Instances ------------------------------------------------------------

    async def create_instance(
        self,
        workspace: Workspace,
        *,
        region: str,
        feature_flags: Optional[list[str]] = None,
    ) -> WorkspaceInstance:
        instance = WorkspaceInstance(
            id=uuid4(),
            workspace_id=workspace.id,
            region=region,
            phase=WorkspaceInstancePhase.PREPARING,
            status_version=0,
            feature_flags=list(feature_flags or []),
        )
        self._session.add(instance)
        await self._session.flush()
        return instance

    async def find_instance_by_id(self, instance_id: UUID) -> Optional[WorkspaceInstance]:
        return await self._session.get(WorkspaceInstance, instance_id)

    async def find_instances(self, workspace_id: UUID) -> list[WorkspaceInstance]:
        stmt = (
            select(WorkspaceInstance)
            .where(WorkspaceInstance.workspace_id == workspace_id)
            .order_by(WorkspaceInstance.creation_time.desc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def find_running_instance(self, workspace_id: UUID) -> Optional[WorkspaceInstance]:
        """Return the newest instance that has not stopped yet."""

        stmt = (
            select(WorkspaceInstance)
            .where(
                WorkspaceInstance.workspace_id == workspace_id,
                WorkspaceInstance.phase != WorkspaceInstancePhase.STOPPED,
            )
            .order_by(WorkspaceInstance.creation_time.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def update_instance_partial(
        self, instance_id: UUID, **fields: Any
    ) -> Optional[WorkspaceInstance]:
        instance = await self.find_instance_by_id(instance_id)
        if instance is None:
            return None
        for key, value in fields.items():
            if not hasattr(WorkspaceInstance, key):
                raise ValueError(f"Unknown workspace instance field '{key}'")
            setattr(instance, key, value)
        await self._session.flush()
        return instance

    # Prebuilds ------------------------------------------------------------

    async def store_prebuilt_workspace(self, prebuild: PrebuiltWorkspace) -> PrebuiltWorkspace:
        if prebuild.id is None:
            prebuild.id = uuid4()
        self._session.add(prebuild)
        await self._session.flush()
        return prebuild

    async def find_prebuilt_workspace_by_id(
        self, prebuild_id: UUID
    ) -> Optional[PrebuiltWorkspace]:
        return await self._session.get(PrebuiltWorkspace, prebuild_id)

    async def require_prebuild(self, prebuild_id: UUID) -> PrebuiltWorkspace:
        prebuild = await self.find_prebuilt_workspace_by_id(prebuild_id)
        if prebuild is None:
            raise PrebuildNotFoundError(prebuild_id)
        return prebuild

    async def find_prebuilt_workspace_by_commit(
        self, clone_url: str, commit: str
    ) -> Optional[PrebuiltWorkspace]:
        """Return the newest prebuild for ``(clone_url, commit)``."""

        stmt = (
            select(PrebuiltWorkspace)
            .where(
                PrebuiltWorkspace.clone_url == clone_url,
                PrebuiltWorkspace.commit == commit,
            )
            .order_by(PrebuiltWorkspace.creation_time.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def find_prebuild_by_workspace_id(
        self, workspace_id: UUID
    ) -> Optional[PrebuiltWorkspace]:
        stmt = select(PrebuiltWorkspace).where(
            PrebuiltWorkspace.build_workspace_id == workspace_id
        )
        result = await self._session.execute(stmt)
        return result.scalars().first()

    async def find_prebuilds_with_workspace(
        self, project_id: UUID
    ) -> list[PrebuildWithWorkspace]:
        """Pair a project's prebuilds with build workspaces that still have content."""

        stmt = (
            select(PrebuiltWorkspace, Workspace)
            .join(Workspace, Workspace.id == PrebuiltWorkspace.build_workspace_id)
            .where(
                PrebuiltWorkspace.project_id == project_id,
                Workspace.deleted.is_(False),
                Workspace.content_deleted_time.is_(None),
            )
            .order_by(PrebuiltWorkspace.creation_time.desc())
        )
        result = await self._session.execute(stmt)
        return [
            PrebuildWithWorkspace(prebuild=prebuild, workspace=workspace)
            for prebuild, workspace in result.all()
        ]

    async def find_active_prebuilt_workspaces_by_branch(
        self, project_id: UUID, branch: str
    ) -> list[ActivePrebuild]:
        stmt = (
            select(PrebuiltWorkspace)
            .where(
                PrebuiltWorkspace.project_id == project_id,
                PrebuiltWorkspace.branch == branch,
                PrebuiltWorkspace.state.in_(
                    [PrebuildState.QUEUED, PrebuildState.BUILDING]
                ),
            )
            .order_by(PrebuiltWorkspace.creation_time.desc())
        )
        result = await self._session.execute(stmt)
        active: list[ActivePrebuild] = []
        for prebuild in result.scalars().all():
            instances = [
                instance
                for instance in await self.find_instances(prebuild.build_workspace_id)
                if instance.phase != WorkspaceInstancePhase.STOPPED
            ]
            active.append(ActivePrebuild(prebuild=prebuild, instances=tuple(instances)))
        return active

    def _project_prebuilds_stmt(
        self, project_id: UUID, branch: Optional[str]
    ) -> Select[tuple[PrebuiltWorkspace, PrebuildInfo]]:
        stmt = (
            select(PrebuiltWorkspace, PrebuildInfo)
            .outerjoin(PrebuildInfo, PrebuildInfo.prebuild_id == PrebuiltWorkspace.id)
            .where(PrebuiltWorkspace.project_id == project_id)
        )
        if branch:
            stmt = stmt.where(PrebuiltWorkspace.branch == branch)
        return stmt

    async def find_prebuilt_workspaces_by_project(
        self,
        project_id: UUID,
        *,
        branch: Optional[str] = None,
        limit: int = 30,
    ) -> list[PrebuildWithInfo]:
        """Return a project's prebuilds with their listing info, newest first."""

        if limit < 1:
            raise ValueError("limit must be at least 1")
        stmt = (
            self._project_prebuilds_stmt(project_id, branch)
            .order_by(PrebuiltWorkspace.creation_time.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return [
            PrebuildWithInfo(prebuild=prebuild, info=info)
            for prebuild, info in result.all()
        ]

    async def count_unaborted_prebuilds_since(self, clone_url: str, since: datetime) -> int:
        stmt = select(func.count(PrebuiltWorkspace.id)).where(
            PrebuiltWorkspace.clone_url == clone_url,
            PrebuiltWorkspace.state != PrebuildState.ABORTED,
            PrebuiltWorkspace.creation_time >= since,
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())

    async def store_prebuild_info(self, info: PrebuildInfo) -> PrebuildInfo:
        merged = await self._session.merge(info)
        await self._session.flush()
        return merged

    async def find_prebuild_info(self, prebuild_id: UUID) -> Optional[PrebuildInfo]:
        return await self._session.get(PrebuildInfo, prebuild_id)

    async def update_prebuild_state(
        self,
        prebuild: PrebuiltWorkspace,
        state: PrebuildState,
        *,
        error: Optional[str] = None,
    ) -> PrebuiltWorkspace:
        """Move ``prebuild`` to ``state`` if nobody changed it since it was read.

        Raises ``PrebuildTransitionError`` for transitions the state machine
        forbids and ``PrebuildVersionConflictError`` when the stored
        ``status_version`` moved on.
        """

        current = PrebuildState(prebuild.state)
        current.ensure_transition(state)
        expected_version = prebuild.status_version
        stmt = (
            update(PrebuiltWorkspace)
            .where(
                PrebuiltWorkspace.id == prebuild.id,
                PrebuiltWorkspace.status_version == expected_version,
            )
            .values(
                state=state,
                error=error,
                status_version=PrebuiltWorkspace.status_version + 1,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        if result.rowcount == 0:
            raise PrebuildVersionConflictError(prebuild.id, expected_version)
        await self._session.refresh(prebuild)
        return prebuild

    async def apply_prebuild_status_report(
        self,
        prebuild_id: UUID,
        *,
        state: PrebuildState,
        error: Optional[str] = None,
    ) -> bool:
        """Apply a state reported by the runtime for the prebuild's build instance.

        Report ordering is checked on the instance; here the update only lands
        if the prebuild was not changed since it was read. Returns ``False``
        when it was.
        """

        prebuild = await self.require_prebuild(prebuild_id)
        try:
            await self.update_prebuild_state(prebuild, state, error=error)
        except PrebuildVersionConflictError:
            return False
        return True


__all__ = [
    "ActivePrebuild",
    "PrebuildNotFoundError",
    "PrebuildVersionConflictError",
    "PrebuildWithInfo",
    "PrebuildWithWorkspace",
    "WorkspaceNotFoundError",
    "WorkspaceRepository",
    "WorkspaceRepositoryError",
]
