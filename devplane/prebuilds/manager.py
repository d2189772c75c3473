"""Coordinate prebuild triggers: dedup, supersede, incremental reuse and suppression."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING, Any, Iterable, Mapping, Optional
from uuid import UUID

from api_service.db.models import utcnow
from devplane.billing.entitlement import EntitlementService, UnlimitedEntitlementService
from devplane.errors import ApplicationError, ErrorCode, WorkspaceRunningError
from devplane.hosts.base import HostContextProvider
from devplane.hosts.repo_url import trim_repo_url
from devplane.prebuilds.history import CommitHistoryService
from devplane.prebuilds.incremental import IncrementalMatchService
from devplane.prebuilds.models import PrebuildInfo, PrebuildState, PrebuiltWorkspace
from devplane.prebuilds.precondition import (
    PrebuildPrecondition,
    check_prebuild_precondition,
)
from devplane.prebuilds.rate_limit import get_rate_limit_for_clone_url
from devplane.projects.prebuild_settings import (
    get_prebuild_every_nth_commit,
    get_project_settings,
)
from devplane.telemetry import get_metrics_client, trace_span
from devplane.workspaces.config import (
    ConfigResolver,
    WorkspaceConfig,
    filter_prebuild_tasks,
)
from devplane.workspaces.context import CommitContext, CommitInfo, compute_hash
from devplane.workspaces.factory import WorkspaceFactory
from devplane.workspaces.models import StopWorkspacePolicy, Workspace
from devplane.workspaces.repositories import WorkspaceRepository
from devplane.workspaces.starter import WorkspaceStarter

if TYPE_CHECKING:
    from api_service.db.models import User
    from devplane.projects.models import Project
    from devplane.projects.repositories import ProjectRepository
    from devplane.projects.service import ProjectsService

logger = logging.getLogger(__name__)

# Prebuild workspaces never back up their full content.
PREBUILD_EXCLUDED_FEATURE_FLAGS = ("full_workspace_backup",)

SUPERSEDED_STOP_REASON = (
    "prebuild cancelled because a newer commit was pushed to the same branch"
)
SUPERSEDED_ERROR = "A newer commit was pushed to the same branch."
RATE_LIMITED_ERROR = (
    "Prebuild is rate limited. Please contact support if you believe this "
    "happened in error."
)
INACTIVE_PROJECT_ERROR = (
    "Project is inactive. Please start a new workspace for this project to "
    "re-enable prebuilds."
)
INACTIVE_REPOSITORY_ERROR = (
    "Repository is inactive. Please create a project for this repository to "
    "re-enable prebuilds."
)
CANCELLED_STOP_REASON = "prebuild cancelled via API"


@dataclass(frozen=True, slots=True)
class StartPrebuildResult:
    """Outcome of a trigger; ``done`` means an existing prebuild covers the commit."""

    prebuild_id: UUID
    workspace_id: UUID
    done: bool


class PrebuildManager:
    """Entry point for starting, retriggering and cancelling prebuilds.

    Dedup and supersede are read-then-act without a lock, so concurrent
    deliveries for one commit can both create a prebuild.
    """

    def __init__(
        self,
        *,
        workspaces: WorkspaceRepository,
        factory: WorkspaceFactory,
        starter: WorkspaceStarter,
        config_resolver: ConfigResolver,
        history: CommitHistoryService,
        incremental: IncrementalMatchService,
        hosts: HostContextProvider,
        projects: Optional["ProjectRepository"] = None,
        projects_service: Optional["ProjectsService"] = None,
        entitlement: Optional[EntitlementService] = None,
        rate_limits: Optional[Mapping[str, Mapping[str, Any]]] = None,
        incremental_repository_passlist: Iterable[str] = (),
        inactivity_period_for_repos_days: Optional[int] = None,
    ) -> None:
        self._workspaces = workspaces
        self._factory = factory
        self._starter = starter
        self._config_resolver = config_resolver
        self._history = history
        self._incremental = incremental
        self._hosts = hosts
        self._projects = projects
        self._projects_service = projects_service
        self._entitlement = entitlement or UnlimitedEntitlementService()
        self._rate_limits = dict(rate_limits or {})
        self._incremental_passlist = tuple(incremental_repository_passlist)
        self._inactivity_period_for_repos_days = inactivity_period_for_repos_days
        self._metrics = get_metrics_client()

    async def fetch_config(
        self,
        user: "User",
        context: CommitContext,
        organization_id: Optional[UUID] = None,
    ) -> WorkspaceConfig:
        return await self._config_resolver.fetch_config(user, context, organization_id)

    def check_prebuild_precondition(
        self,
        config: Optional[WorkspaceConfig],
        project: Optional["Project"],
        context: CommitContext,
    ) -> PrebuildPrecondition:
        return check_prebuild_precondition(config, project, context)

    def should_prebuild_incrementally(
        self, clone_url: str, project: Optional["Project"] = None
    ) -> bool:
        if project is not None and get_project_settings(project).use_incremental_prebuilds:
            return True
        trimmed = trim_repo_url(clone_url)
        return any(trim_repo_url(url) == trimmed for url in self._incremental_passlist)

    async def start_prebuild(
        self,
        user: "User",
        context: CommitContext,
        project: Optional["Project"] = None,
        commit_info: Optional[CommitInfo] = None,
        force_prebuild: bool = False,
    ) -> StartPrebuildResult:
        """Create and start a prebuild for ``context`` unless one already covers it.

        Returns ``done=True`` when an existing prebuild for the commit (or,
        with an every-Nth-commit interval, a recent ancestor) is reused.
        Suppressed prebuilds are created in state ``aborted`` with an error
        and never reach the runtime.
        """

        clone_url = context.repository.clone_url
        with trace_span(
            "prebuild_manager.start_prebuild",
            clone_url=clone_url,
            commit=context.revision,
            project_id=str(project.id) if project is not None else None,
            force=force_prebuild,
        ) as span:
            if project is not None and self._projects is not None:
                try:
                    await self._projects.mark_webhook_received(project.id)
                except Exception:
                    logger.exception(
                        "Cannot record webhook receipt",
                        extra={"project_id": str(project.id)},
                    )

            if user.blocked:
                raise ApplicationError(
                    ErrorCode.USER_BLOCKED, f"Blocked users cannot start prebuilds ({user.id})"
                )

            organization_id = project.team_id if project is not None else None
            if organization_id is not None:
                await self._check_usage_limit(user, organization_id)

            config = await self.fetch_config(user, context, organization_id)
            commit_sha = compute_hash(context)

            if not force_prebuild:
                existing = await self._find_reusable_prebuild(clone_url, commit_sha, config)
                if existing is not None:
                    span.set_tag("outcome", "existing")
                    return StartPrebuildResult(
                        prebuild_id=existing.id,
                        workspace_id=existing.build_workspace_id,
                        done=True,
                    )

            if (
                project is not None
                and context.ref
                and not get_project_settings(project).keep_outdated_prebuilds_running
            ):
                try:
                    await self.abort_prebuilds_for_branch(project, user, context.ref)
                except Exception:
                    logger.exception(
                        "Cannot abort outdated prebuilds",
                        extra={"project_id": str(project.id), "branch": context.ref},
                    )

            history = await self._history.get_commit_history_for_context(context, user)
            prebuild_context = context
            every_nth_commit = get_prebuild_every_nth_commit(project)
            if every_nth_commit > 0 and not force_prebuild and project is not None:
                recent = await self._incremental.find_good_base_for_incremental_build(
                    context,
                    config,
                    history.truncated(every_nth_commit),
                    user,
                    project.id,
                    include_unfinished_prebuilds=True,
                )
                if recent is not None:
                    span.set_tag("outcome", "interval")
                    return StartPrebuildResult(
                        prebuild_id=recent.id,
                        workspace_id=recent.build_workspace_id,
                        done=True,
                    )
            elif self.should_prebuild_incrementally(clone_url, project):
                prebuild_context = context.with_commit_history(history)

            workspace, prebuild = await self._factory.create_for_prebuild(
                user,
                project,
                prebuild_context,
                config,
                organization_id=organization_id,
            )
            span.set_tag("prebuild_id", str(prebuild.id))

            if project is not None:
                await self._store_prebuild_info(
                    user, project, context, workspace, prebuild, commit_info
                )

            suppression = await self._suppression_error(project, clone_url)
            if suppression is not None:
                await self._workspaces.update_prebuild_state(
                    prebuild, PrebuildState.ABORTED, error=suppression
                )
                span.set_tag("outcome", "suppressed")
                self._metrics.increment("prebuilds.suppressed")
                logger.info(
                    "Prebuild suppressed",
                    extra={
                        "prebuild_id": str(prebuild.id),
                        "clone_url": clone_url,
                        "reason": suppression,
                    },
                )
            else:
                await self._starter.start_workspace(
                    workspace,
                    user,
                    project,
                    exclude_feature_flags=PREBUILD_EXCLUDED_FEATURE_FLAGS,
                )
                span.set_tag("outcome", "started")
                self._metrics.increment("prebuilds.started")

            return StartPrebuildResult(
                prebuild_id=prebuild.id, workspace_id=workspace.id, done=False
            )

    async def _check_usage_limit(self, user: "User", organization_id: UUID) -> None:
        try:
            result = await self._entitlement.may_start_workspace(
                user, organization_id, utcnow()
            )
        except Exception:
            logger.exception(
                "Cannot check usage limit; allowing prebuild",
                extra={"user_id": str(user.id), "organization_id": str(organization_id)},
            )
            return
        if result.usage_limit_reached_on_cost_center:
            raise ApplicationError(
                ErrorCode.PAYMENT_SPENDING_LIMIT_REACHED,
                "Increase usage limit and try again.",
                {"attributionId": result.usage_limit_reached_on_cost_center},
            )

    async def _find_reusable_prebuild(
        self, clone_url: str, commit_sha: str, config: WorkspaceConfig
    ) -> Optional[PrebuiltWorkspace]:
        existing = await self._workspaces.find_prebuilt_workspace_by_commit(
            clone_url, commit_sha
        )
        if existing is None or PrebuildState(existing.state).is_unsuccessful:
            return None
        workspace = await self._workspaces.find_by_id(existing.build_workspace_id)
        if workspace is None:
            return None
        existing_tasks = filter_prebuild_tasks((workspace.config or {}).get("tasks"))
        if existing_tasks != filter_prebuild_tasks(config.tasks):
            return None
        return existing

    async def _store_prebuild_info(
        self,
        user: "User",
        project: "Project",
        context: CommitContext,
        workspace: Workspace,
        prebuild: PrebuiltWorkspace,
        commit_info: Optional[CommitInfo],
    ) -> None:
        if commit_info is None:
            commit_info = await self._fetch_commit_info(user, context)
        await self._workspaces.store_prebuild_info(
            PrebuildInfo(
                prebuild_id=prebuild.id,
                build_workspace_id=workspace.id,
                based_on_prebuild_id=workspace.based_on_prebuild_id,
                team_id=project.team_id,
                user_id=project.user_id,
                project_id=project.id,
                project_name=project.name,
                started_at=prebuild.creation_time or utcnow(),
                started_by="",
                clone_url=context.repository.clone_url,
                branch=prebuild.branch or "unknown",
                change_author=commit_info.author,
                change_author_avatar=commit_info.author_avatar_url,
                change_date=commit_info.author_date or "",
                change_hash=commit_info.sha,
                change_title=commit_info.commit_message,
                change_url=workspace.context_url,
            )
        )

    async def _fetch_commit_info(self, user: "User", context: CommitContext) -> CommitInfo:
        repository = context.repository
        provider = self._hosts.get_repository_provider(repository.host)
        if provider is not None:
            try:
                info = await provider.get_commit_info(
                    user, repository.owner, repository.name, context.revision
                )
                if info is not None:
                    return info
            except Exception:
                logger.exception(
                    "Cannot fetch commit info",
                    extra={"clone_url": repository.clone_url, "commit": context.revision},
                )
        return CommitInfo.unknown(context.revision)

    async def _suppression_error(
        self, project: Optional["Project"], clone_url: str
    ) -> Optional[str]:
        if await self._should_rate_limit(clone_url):
            return RATE_LIMITED_ERROR
        if (
            project is not None
            and self._projects_service is not None
            and await self._projects_service.is_project_considered_inactive(project.id)
        ):
            return INACTIVE_PROJECT_ERROR
        if project is None and await self._is_repository_inactive(clone_url):
            return INACTIVE_REPOSITORY_ERROR
        return None

    async def _should_rate_limit(self, clone_url: str) -> bool:
        rate_limit = get_rate_limit_for_clone_url(self._rate_limits, clone_url)
        since = utcnow() - timedelta(seconds=rate_limit.period)
        try:
            count = await self._workspaces.count_unaborted_prebuilds_since(clone_url, since)
        except Exception:
            logger.exception(
                "Cannot count recent prebuilds; not rate limiting",
                extra={"clone_url": clone_url},
            )
            return False
        if count >= rate_limit.limit:
            logger.warning(
                "Prebuild rate limit exceeded",
                extra={
                    "clone_url": clone_url,
                    "count": count,
                    "limit": rate_limit.limit,
                    "period": rate_limit.period,
                },
            )
            self._metrics.increment("prebuilds.rate_limited")
            return True
        return False

    async def _is_repository_inactive(self, clone_url: str) -> bool:
        days = self._inactivity_period_for_repos_days
        if not days:
            return False
        try:
            count = await self._workspaces.get_workspace_count_by_clone_url(clone_url, days)
        except Exception:
            logger.exception(
                "Cannot count workspaces for repository",
                extra={"clone_url": clone_url},
            )
            return False
        return count == 0

    async def abort_prebuilds_for_branch(
        self, project: "Project", user: "User", branch: str
    ) -> int:
        """Abort queued and building prebuilds of ``branch``; returns how many were aborted."""

        with trace_span(
            "prebuild_manager.abort_prebuilds_for_branch",
            project_id=str(project.id),
            branch=branch,
        ) as span:
            aborted = 0
            active = await self._workspaces.find_active_prebuilt_workspaces_by_branch(
                project.id, branch
            )
            for item in active:
                for instance in item.instances:
                    try:
                        await self._starter.stop_workspace_instance(
                            instance.id,
                            instance.region,
                            SUPERSEDED_STOP_REASON,
                            StopWorkspacePolicy.ABORT,
                        )
                    except Exception:
                        logger.exception(
                            "Cannot stop superseded prebuild instance",
                            extra={
                                "prebuild_id": str(item.prebuild.id),
                                "instance_id": str(instance.id),
                            },
                        )
                try:
                    await self._workspaces.update_prebuild_state(
                        item.prebuild, PrebuildState.ABORTED, error=SUPERSEDED_ERROR
                    )
                    aborted += 1
                except Exception:
                    logger.exception(
                        "Cannot abort prebuild",
                        extra={
                            "prebuild_id": str(item.prebuild.id),
                            "project_id": str(project.id),
                            "user_id": str(user.id),
                        },
                    )
            span.set_tag("aborted", aborted)
            return aborted

    async def retrigger_prebuild(
        self, user: "User", project: Optional["Project"], workspace_id: UUID
    ) -> StartPrebuildResult:
        """Start the build workspace again, re-queueing an unsuccessful prebuild."""

        with trace_span(
            "prebuild_manager.retrigger_prebuild", workspace_id=str(workspace_id)
        ):
            workspace = await self._workspaces.find_by_id(workspace_id)
            if workspace is None:
                raise ApplicationError(
                    ErrorCode.NOT_FOUND, f"Workspace {workspace_id} not found."
                )
            instance = await self._workspaces.find_running_instance(workspace_id)
            if instance is not None:
                raise WorkspaceRunningError("Workspace is still running", instance)
            prebuild = await self._workspaces.find_prebuild_by_workspace_id(workspace_id)
            if prebuild is None:
                raise ApplicationError(
                    ErrorCode.NOT_FOUND,
                    f"No prebuild found for workspace {workspace_id}.",
                )
            if PrebuildState(prebuild.state).is_unsuccessful:
                await self._workspaces.update_prebuild_state(
                    prebuild, PrebuildState.QUEUED, error=None
                )
            await self._starter.start_workspace(
                workspace,
                user,
                project,
                exclude_feature_flags=PREBUILD_EXCLUDED_FEATURE_FLAGS,
            )
            return StartPrebuildResult(
                prebuild_id=prebuild.id, workspace_id=workspace.id, done=False
            )

    async def cancel_prebuild(self, user: "User", prebuild_id: UUID) -> PrebuiltWorkspace:
        """Stop the build instance and mark an active prebuild ``aborted``."""

        with trace_span("prebuild_manager.cancel_prebuild", prebuild_id=str(prebuild_id)):
            prebuild = await self._workspaces.find_prebuilt_workspace_by_id(prebuild_id)
            if prebuild is None:
                raise ApplicationError(
                    ErrorCode.NOT_FOUND, f"Prebuild {prebuild_id} not found."
                )
            if not PrebuildState(prebuild.state).is_active:
                return prebuild
            instance = await self._workspaces.find_running_instance(
                prebuild.build_workspace_id
            )
            if instance is not None:
                await self._starter.stop_workspace_instance(
                    instance.id,
                    instance.region,
                    CANCELLED_STOP_REASON,
                    StopWorkspacePolicy.ABORT,
                )
            logger.info(
                "Cancelling prebuild",
                extra={"prebuild_id": str(prebuild_id), "user_id": str(user.id)},
            )
            return await self._workspaces.update_prebuild_state(
                prebuild, PrebuildState.ABORTED
            )


__all__ = [
    "INACTIVE_PROJECT_ERROR",
    "INACTIVE_REPOSITORY_ERROR",
    "PrebuildManager",
    "RATE_LIMITED_ERROR",
    "SUPERSEDED_ERROR",
    "StartPrebuildResult",
]
