"""Create prebuild workspaces and their prebuild records."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Optional
from uuid import UUID, uuid4

from devplane.prebuilds.models import PrebuildState, PrebuiltWorkspace
from devplane.telemetry import trace_span
from devplane.workspaces.config import WorkspaceConfig, resolve_image_source
from devplane.workspaces.context import CommitContext, compute_hash
from devplane.workspaces.models import Workspace, WorkspaceType
from devplane.workspaces.repositories import WorkspaceRepository

if TYPE_CHECKING:
    from api_service.db.models import User
    from devplane.prebuilds.incremental import IncrementalMatchService
    from devplane.projects.models import Project

logger = logging.getLogger(__name__)


class WorkspaceFactory:
    def __init__(
        self,
        workspaces: WorkspaceRepository,
        incremental: "IncrementalMatchService",
        *,
        default_image: str,
    ) -> None:
        self._workspaces = workspaces
        self._incremental = incremental
        self._default_image = default_image

    async def create_for_prebuild(
        self,
        user: "User",
        project: Optional["Project"],
        context: CommitContext,
        config: WorkspaceConfig,
        *,
        organization_id: Optional[UUID] = None,
    ) -> tuple[Workspace, PrebuiltWorkspace]:
        """Persist a ``prebuild`` workspace and its queued prebuild.

        When the context carries commit history, an available earlier prebuild
        of the same project becomes the incremental base.
        """

        with trace_span(
            "workspace_factory.create_for_prebuild",
            clone_url=context.repository.clone_url,
        ) as span:
            based_on_prebuild_id: Optional[UUID] = None
            history = context.attached_history()
            if history is not None and project is not None:
                base = await self._incremental.find_base_for_incremental_workspace(
                    context,
                    config,
                    history,
                    user,
                    project.id,
                    include_unfinished_prebuilds=False,
                )
                if base is not None:
                    based_on_prebuild_id = base.id
                    span.set_tag("based_on_prebuild_id", str(base.id))

            workspace = Workspace(
                id=uuid4(),
                type=WorkspaceType.PREBUILD,
                owner_id=user.id,
                organization_id=organization_id,
                project_id=project.id if project is not None else None,
                description=f'Prebuild of "{context.title}"',
                clone_url=context.repository.clone_url,
                context_url=context.normalized_context_url or "",
                context=context.to_storage(),
                config=config.to_storage(),
                image_source=resolve_image_source(
                    context, config, default_image=self._default_image
                ),
                based_on_prebuild_id=based_on_prebuild_id,
            )
            await self._workspaces.store_workspace(workspace)

            prebuild = PrebuiltWorkspace(
                id=uuid4(),
                clone_url=context.repository.clone_url,
                commit=compute_hash(context),
                build_workspace_id=workspace.id,
                branch=context.ref,
                project_id=project.id if project is not None else None,
                state=PrebuildState.QUEUED,
                status_version=0,
            )
            await self._workspaces.store_prebuilt_workspace(prebuild)
            logger.info(
                "Created prebuild workspace",
                extra={
                    "workspace_id": str(workspace.id),
                    "prebuild_id": str(prebuild.id),
                    "clone_url": context.repository.clone_url,
                },
            )
            return workspace, prebuild


__all__ = ["WorkspaceFactory"]
