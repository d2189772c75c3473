"""Build the prebuild object graph for one database session."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from devplane.auth.authorizer import Authorizer
from devplane.billing.entitlement import EntitlementService, UnlimitedEntitlementService
from devplane.config.settings import AppSettings, settings
from devplane.hosts.base import HostContextProvider
from devplane.hosts.context_parser import ContextParser
from devplane.prebuilds.history import CommitHistoryService
from devplane.prebuilds.incremental import IncrementalMatchService
from devplane.prebuilds.manager import PrebuildManager
from devplane.prebuilds.service import PrebuildService
from devplane.prebuilds.status import PrebuildStatusUpdater
from devplane.projects.repositories import ProjectRepository
from devplane.projects.service import ProjectsService
from devplane.users.repositories import UserRepository
from devplane.users.service import UserAuthentication
from devplane.webhooks.bitbucket import BitbucketIngestor
from devplane.webhooks.bitbucket_server import BitbucketServerIngestor
from devplane.webhooks.events import WebhookEventRepository
from devplane.webhooks.github import GitHubAppIngestor
from devplane.webhooks.github_enterprise import GitHubEnterpriseIngestor
from devplane.webhooks.gitlab import GitLabIngestor
from devplane.workspaces.config import ConfigResolver
from devplane.workspaces.factory import WorkspaceFactory
from devplane.workspaces.repositories import WorkspaceRepository
from devplane.workspaces.runtime import WorkspaceRuntime, build_workspace_runtime
from devplane.workspaces.starter import WorkspaceStarter


@dataclass(slots=True)
class PrebuildComponents:
    users: UserRepository
    projects: ProjectRepository
    workspaces: WorkspaceRepository
    events: WebhookEventRepository
    hosts: HostContextProvider
    runtime: WorkspaceRuntime
    authentication: UserAuthentication
    authorizer: Authorizer
    context_parser: ContextParser
    projects_service: ProjectsService
    manager: PrebuildManager
    prebuild_service: PrebuildService
    github: GitHubAppIngestor
    github_enterprise: GitHubEnterpriseIngestor
    gitlab: GitLabIngestor
    bitbucket: BitbucketIngestor
    bitbucket_server: BitbucketServerIngestor
    owns_runtime: bool = False

    async def aclose(self) -> None:
        await self.hosts.aclose()
        closer = getattr(self.runtime, "aclose", None)
        if self.owns_runtime and closer is not None:
            await closer()


def build_prebuild_components(
    session: AsyncSession,
    *,
    app_settings: Optional[AppSettings] = None,
    hosts: Optional[HostContextProvider] = None,
    runtime: Optional[WorkspaceRuntime] = None,
    entitlement: Optional[EntitlementService] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> PrebuildComponents:
    """Wire repositories, services and webhook ingestors around ``session``.

    ``hosts`` and ``runtime`` may be injected; otherwise they are built from
    ``app_settings`` and closed by ``PrebuildComponents.aclose``.
    """

    app_settings = app_settings or settings
    prebuild_settings = app_settings.prebuilds
    workspace_settings = app_settings.workspaces
    webhook_settings = app_settings.webhooks

    users = UserRepository(session)
    projects = ProjectRepository(session)
    workspaces = WorkspaceRepository(session)
    events = WebhookEventRepository(session)

    if hosts is None:
        hosts = HostContextProvider.from_settings(
            app_settings.hosts, users=users, client=http_client
        )
    owns_runtime = runtime is None
    if runtime is None:
        runtime = build_workspace_runtime(
            workspace_settings.runtime_url,
            timeout_seconds=workspace_settings.runtime_timeout_seconds,
        )

    default_image = workspace_settings.default_image
    authentication = UserAuthentication(
        users, token_auth_provider_id=webhook_settings.webhook_token_auth_provider_id
    )
    authorizer = Authorizer(session)
    context_parser = ContextParser(hosts)
    config_resolver = ConfigResolver(hosts, projects=projects, default_image=default_image)
    history = CommitHistoryService(
        hosts, max_depth=prebuild_settings.max_commit_history_depth
    )
    incremental = IncrementalMatchService(workspaces, default_image=default_image)
    factory = WorkspaceFactory(workspaces, incremental, default_image=default_image)
    starter = WorkspaceStarter(
        workspaces,
        runtime,
        projects=projects,
        default_region=workspace_settings.default_region,
        default_feature_flags=workspace_settings.default_feature_flags,
    )
    projects_service = ProjectsService(
        projects,
        workspaces,
        hosts,
        inactivity_period_days=prebuild_settings.inactivity_period_for_projects_days,
    )
    manager = PrebuildManager(
        workspaces=workspaces,
        factory=factory,
        starter=starter,
        config_resolver=config_resolver,
        history=history,
        incremental=incremental,
        hosts=hosts,
        projects=projects,
        projects_service=projects_service,
        entitlement=entitlement or UnlimitedEntitlementService(),
        rate_limits=prebuild_settings.prebuild_rate_limits,
        incremental_repository_passlist=(
            prebuild_settings.incremental_prebuilds_repository_passlist
        ),
        inactivity_period_for_repos_days=prebuild_settings.inactivity_period_for_repos_days,
    )
    prebuild_service = PrebuildService(
        manager=manager,
        projects=projects,
        projects_service=projects_service,
        workspaces=workspaces,
        authorizer=authorizer,
        context_parser=context_parser,
        status_updater=PrebuildStatusUpdater(workspaces),
    )

    ingestor_kwargs = dict(
        events=events,
        users=users,
        authentication=authentication,
        projects=projects,
        projects_service=projects_service,
        context_parser=context_parser,
        manager=manager,
        hosts=hosts,
    )
    return PrebuildComponents(
        users=users,
        projects=projects,
        workspaces=workspaces,
        events=events,
        hosts=hosts,
        runtime=runtime,
        authentication=authentication,
        authorizer=authorizer,
        context_parser=context_parser,
        projects_service=projects_service,
        manager=manager,
        prebuild_service=prebuild_service,
        github=GitHubAppIngestor(
            enabled=webhook_settings.github_app_enabled,
            webhook_secret=webhook_settings.github_app_webhook_secret,
            auth_provider_id=webhook_settings.github_app_auth_provider_id,
            **ingestor_kwargs,
        ),
        github_enterprise=GitHubEnterpriseIngestor(
            prebuild_token_scope=webhook_settings.github_enterprise_prebuild_token_scope,
            token_auth_provider_id=webhook_settings.webhook_token_auth_provider_id,
            **ingestor_kwargs,
        ),
        gitlab=GitLabIngestor(
            prebuild_token_scope=webhook_settings.gitlab_prebuild_token_scope,
            **ingestor_kwargs,
        ),
        bitbucket=BitbucketIngestor(**ingestor_kwargs),
        bitbucket_server=BitbucketServerIngestor(**ingestor_kwargs),
        owns_runtime=owns_runtime,
    )


__all__ = ["PrebuildComponents", "build_prebuild_components"]
