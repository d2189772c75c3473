"""Create workspace instances and hand them to the runtime."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Iterable, Optional
from uuid import UUID

from api_service.db.models import utcnow
from devplane.prebuilds.models import PrebuildState
from devplane.telemetry import trace_span
from devplane.workspaces.models import (
    StopWorkspacePolicy,
    Workspace,
    WorkspaceInstance,
    WorkspaceInstancePhase,
    WorkspaceType,
)
from devplane.workspaces.repositories import WorkspaceRepository
from devplane.workspaces.runtime import StartWorkspaceRequest, WorkspaceRuntime

if TYPE_CHECKING:
    from api_service.db.models import User
    from devplane.projects.models import Project
    from devplane.projects.repositories import ProjectRepository

logger = logging.getLogger(__name__)


class WorkspaceStarter:
    def __init__(
        self,
        workspaces: WorkspaceRepository,
        runtime: WorkspaceRuntime,
        *,
        projects: Optional["ProjectRepository"] = None,
        default_region: str = "default",
        default_feature_flags: Iterable[str] = (),
    ) -> None:
        self._workspaces = workspaces
        self._runtime = runtime
        self._projects = projects
        self._default_region = default_region
        self._default_feature_flags = tuple(default_feature_flags)

    def _feature_flags(
        self, user: "User", exclude_feature_flags: Iterable[str]
    ) -> list[str]:
        excluded = set(exclude_feature_flags)
        flags = list(self._default_feature_flags) + list(user.feature_flags or [])
        return [flag for flag in dict.fromkeys(flags) if flag not in excluded]

    async def start_workspace(
        self,
        workspace: Workspace,
        user: "User",
        project: Optional["Project"] = None,
        *,
        exclude_feature_flags: Iterable[str] = (),
    ) -> WorkspaceInstance:
        """Create a new instance for ``workspace`` and ask the runtime to start it.

        A failed start marks the instance stopped and, for prebuild workspaces,
        aborts the prebuild before the error propagates.
        """

        with trace_span(
            "workspace_starter.start_workspace", workspace_id=str(workspace.id)
        ) as span:
            instance = await self._workspaces.create_instance(
                workspace,
                region=self._default_region,
                feature_flags=self._feature_flags(user, exclude_feature_flags),
            )
            span.set_tag("instance_id", str(instance.id))
            if project is not None and workspace.type == WorkspaceType.REGULAR and self._projects:
                await self._projects.mark_workspace_started(project.id)

            request = StartWorkspaceRequest(
                instance_id=instance.id,
                workspace_id=workspace.id,
                owner_id=workspace.owner_id,
                region=instance.region,
                workspace_type=WorkspaceType(workspace.type).value,
                image_source=dict(workspace.image_source or {}),
                context=dict(workspace.context or {}),
                config=dict(workspace.config or {}),
                feature_flags=tuple(instance.feature_flags or ()),
            )
            try:
                await self._runtime.start_workspace(request)
            except Exception as exc:
                await self._fail_instance_start(workspace, instance, exc)
                raise
            return instance

    async def _fail_instance_start(
        self, workspace: Workspace, instance: WorkspaceInstance, exc: Exception
    ) -> None:
        try:
            await self._workspaces.update_instance_partial(
                instance.id,
                phase=WorkspaceInstancePhase.STOPPED,
                stopped_time=utcnow(),
                failed_reason=str(exc),
            )
            if workspace.type != WorkspaceType.PREBUILD:
                return
            prebuild = await self._workspaces.find_prebuild_by_workspace_id(workspace.id)
            if (
                prebuild is not None
                and prebuild.state != PrebuildState.ABORTED
                and PrebuildState(prebuild.state).can_transition_to(PrebuildState.ABORTED)
            ):
                await self._workspaces.update_prebuild_state(
                    prebuild, PrebuildState.ABORTED, error=str(exc)
                )
        except Exception:
            logger.exception(
                "Cannot properly fail workspace instance during start",
                extra={
                    "workspace_id": str(workspace.id),
                    "instance_id": str(instance.id),
                    "user_id": str(workspace.owner_id),
                },
            )

    async def stop_workspace_instance(
        self,
        instance_id: UUID,
        region: str,
        reason: str,
        policy: StopWorkspacePolicy = StopWorkspacePolicy.NORMALLY,
    ) -> None:
        with trace_span(
            "workspace_starter.stop_workspace_instance",
            instance_id=str(instance_id),
            policy=policy.value,
        ):
            await self._runtime.stop_workspace(
                instance_id, region=region, reason=reason, policy=policy
            )
            await self._workspaces.update_instance_partial(
                instance_id,
                phase=WorkspaceInstancePhase.STOPPING,
                stopping_time=utcnow(),
            )


__all__ = ["WorkspaceStarter"]
