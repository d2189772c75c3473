"""Shared push handling for the git host webhook ingestors."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Optional

from devplane.errors import ApplicationError
from devplane.hosts.base import HostContextProvider
from devplane.hosts.context_parser import ContextParser
from devplane.hosts.repo_url import parse_repo_url
from devplane.projects.repositories import ProjectRepository
from devplane.telemetry import get_metrics_client, trace_span
from devplane.users.repositories import UserRepository
from devplane.users.service import TokenAuthError, UserAuthentication
from devplane.webhooks.events import WebhookEventRepository
from devplane.webhooks.models import (
    WebhookEvent,
    WebhookEventStatus,
    WebhookPrebuildStatus,
)
from devplane.workspaces.context import CommitContext, CommitInfo

if TYPE_CHECKING:
    from api_service.db.models import User
    from devplane.prebuilds.manager import PrebuildManager, StartPrebuildResult
    from devplane.projects.models import Project
    from devplane.projects.service import ProjectsService

logger = logging.getLogger(__name__)

INVALID_PAYLOAD_MESSAGE = "invalid-payload"


@dataclass(frozen=True, slots=True)
class PushEvent:
    """A branch push reduced to what the prebuild trigger needs."""

    clone_url: str
    context_url: str
    commit: Optional[str] = None


@dataclass(slots=True)
class WebhookResult:
    """HTTP response to send back to the git host."""

    status_code: int = 200
    message: str = "OK"
    event_id: Optional[str] = None
    prebuild_ids: list[str] = field(default_factory=list)


class WebhookIngestor:
    """Base class: event log, secret token lookup and the per-project push loop."""

    event_type = "push"

    def __init__(
        self,
        *,
        events: WebhookEventRepository,
        users: UserRepository,
        authentication: UserAuthentication,
        projects: ProjectRepository,
        projects_service: "ProjectsService",
        context_parser: ContextParser,
        manager: "PrebuildManager",
        hosts: HostContextProvider,
    ) -> None:
        self._events = events
        self._users = users
        self._authentication = authentication
        self._projects = projects
        self._projects_service = projects_service
        self._context_parser = context_parser
        self._manager = manager
        self._hosts = hosts
        self._metrics = get_metrics_client()

    async def _record_event(self, payload: Any, type: Optional[str] = None) -> WebhookEvent:
        return await self._events.create_event(
            type=type or self.event_type, raw_event=payload
        )

    async def ignore_invalid_payload(self, body: bytes) -> WebhookResult:
        """Record a delivery whose body is not a JSON object and acknowledge it."""

        event = await self._events.create_event(
            type=self.event_type,
            raw_event=body.decode("utf-8", errors="replace"),
            status=WebhookEventStatus.IGNORED,
        )
        await self._events.update_event(event.id, message=INVALID_PAYLOAD_MESSAGE)
        await self._events.commit()
        return WebhookResult(message="Invalid payload.", event_id=str(event.id))

    async def _dismiss(self, event: WebhookEvent, status: WebhookEventStatus) -> None:
        await self._events.update_event(event.id, status=status)
        await self._events.commit()

    async def _find_user_by_token(
        self, secret_token: Optional[str], *, required_scopes: tuple[str, ...] = ()
    ) -> Optional["User"]:
        """Return the token owner, or ``None`` when the token is not acceptable."""

        try:
            return await self._authentication.find_user_by_secret_token(
                secret_token, required_scopes=required_scopes
            )
        except (TokenAuthError, ApplicationError) as exc:
            logger.info("Webhook secret token rejected: %s", exc)
            return None

    async def find_project_owner(self, project: "Project", webhook_user: "User") -> "User":
        """Pick the user prebuilds of ``project`` run as.

        The webhook user when they belong to the project's organization, else
        the first member with an identity on the project's git host, else the
        webhook user.
        """

        if project.team_id is None:
            return webhook_user
        try:
            members = await self._users.find_team_members(project.team_id)
            if any(member.id == webhook_user.id for member in members):
                return webhook_user
            parsed = parse_repo_url(project.clone_url)
            host_context = self._hosts.get(parsed.host) if parsed else None
            auth_provider_id = host_context.auth_provider_id if host_context else None
            for member in members:
                if any(
                    identity.auth_provider_id == auth_provider_id and not identity.deleted
                    for identity in member.identities
                ):
                    return member
        except Exception:
            logger.exception(
                "Cannot find project owner",
                extra={"project_id": str(project.id), "user_id": str(webhook_user.id)},
            )
        return webhook_user

    async def _commit_info(
        self, user: "User", clone_url: str, commit: str
    ) -> Optional[CommitInfo]:
        parsed = parse_repo_url(clone_url)
        if parsed is None:
            return None
        provider = self._hosts.get_repository_provider(parsed.host)
        if provider is None:
            return None
        try:
            return await provider.get_commit_info(user, parsed.owner, parsed.repo, commit)
        except Exception:
            logger.exception(
                "Cannot fetch commit info for push",
                extra={"clone_url": clone_url, "commit": commit},
            )
            return None

    async def handle_push(
        self, event: WebhookEvent, user: "User", push: PushEvent
    ) -> list["StartPrebuildResult"]:
        """Trigger prebuilds for every project of the pushed repository.

        Each project is handled on its own; a failure is logged and recorded
        in the event log without affecting the other projects.
        """

        results: list["StartPrebuildResult"] = []
        with trace_span(
            f"webhook.{self.__class__.__name__}.handle_push",
            clone_url=push.clone_url,
            context_url=push.context_url,
        ) as span:
            try:
                projects = await self._projects.find_projects_by_clone_url(push.clone_url)
                if not projects:
                    await self._events.update_event(
                        event.id,
                        status=WebhookEventStatus.PROCESSED,
                        prebuild_status=WebhookPrebuildStatus.IGNORED_UNCONFIGURED,
                        clone_url=push.clone_url,
                        authorized_user_id=user.id,
                        message="no-project-for-repository",
                    )
                    return results
                context: Optional[CommitContext] = None
                for project in projects:
                    try:
                        if context is None:
                            context = await self._context_parser.handle(
                                user, push.context_url
                            )
                        result = await self._handle_project(
                            event, user, project, context, push
                        )
                        if result is not None:
                            results.append(result)
                    except Exception as exc:
                        logger.exception(
                            "Error processing webhook event for project",
                            extra={
                                "project_id": str(project.id),
                                "event_id": str(event.id),
                            },
                        )
                        await self._events.update_event(
                            event.id,
                            status=WebhookEventStatus.PROCESSED,
                            prebuild_status=WebhookPrebuildStatus.PREBUILD_TRIGGER_FAILED,
                            message=str(exc),
                        )
                        self._metrics.increment("webhooks.prebuild_trigger_failed")
            except Exception:
                logger.exception(
                    "Error processing webhook event", extra={"event_id": str(event.id)}
                )
                await self._events.update_event(
                    event.id,
                    status=WebhookEventStatus.PROCESSED,
                    prebuild_status=WebhookPrebuildStatus.PREBUILD_TRIGGER_FAILED,
                )
            span.set_tag("prebuilds", len(results))
            return results

    async def _handle_project(
        self,
        event: WebhookEvent,
        user: "User",
        project: "Project",
        context: CommitContext,
        push: PushEvent,
    ) -> Optional["StartPrebuildResult"]:
        owner = await self.find_project_owner(project, user)
        await self._projects_service.revert_activity_based_trigger(project)
        await self._events.update_event(
            event.id,
            authorized_user_id=owner.id,
            project_id=project.id,
            clone_url=context.repository.clone_url,
            branch=context.ref,
            commit=context.revision,
        )

        config = await self._manager.fetch_config(owner, context, project.team_id)
        context = await self._context_parser.with_additional_repositories(
            owner, context, config
        )
        precondition = self._manager.check_prebuild_precondition(config, project, context)
        if not precondition.should_run:
            logger.info(
                "Push event: no prebuild",
                extra={"project_id": str(project.id), "reason": precondition.reason},
            )
            await self._events.update_event(
                event.id,
                status=WebhookEventStatus.PROCESSED,
                prebuild_status=WebhookPrebuildStatus.IGNORED_UNCONFIGURED,
                message=precondition.reason,
            )
            return None

        commit_info = await self._commit_info(
            owner, push.clone_url, push.commit or context.revision
        )
        try:
            result = await self._manager.start_prebuild(
                owner, context, project, commit_info
            )
        except Exception as exc:
            logger.exception(
                "Error while starting prebuild",
                extra={"project_id": str(project.id), "context_url": push.context_url},
            )
            await self._events.update_event(
                event.id,
                status=WebhookEventStatus.PROCESSED,
                prebuild_status=WebhookPrebuildStatus.PREBUILD_TRIGGER_FAILED,
                message=getattr(exc, "message", None) or str(exc),
            )
            self._metrics.increment("webhooks.prebuild_trigger_failed")
            return None

        if not result.done:
            await self._events.update_event(
                event.id,
                status=WebhookEventStatus.PROCESSED,
                prebuild_status=WebhookPrebuildStatus.PREBUILD_TRIGGERED,
                prebuild_id=result.prebuild_id,
            )
            self._metrics.increment("webhooks.prebuild_triggered")
        return result


__all__ = ["INVALID_PAYLOAD_MESSAGE", "PushEvent", "WebhookIngestor", "WebhookResult"]
