"""GitLab push hook ingestor authenticated by a scoped secret token."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional

from devplane.webhooks.base import PushEvent, WebhookIngestor, WebhookResult
from devplane.webhooks.github import branch_from_ref
from devplane.webhooks.models import WebhookEventStatus, WebhookPrebuildStatus

logger = logging.getLogger(__name__)

PUSH_HOOK_EVENT = "Push Hook"


def create_context_url(git_http_url: str, branch: str) -> str:
    repo_url = git_http_url[:-4] if git_http_url.endswith(".git") else git_http_url
    return f"{repo_url}/-/tree/{branch}"


class GitLabIngestor(WebhookIngestor):
    """GitLab disables hooks that answer with 4xx, so every outcome is a 2xx."""

    def __init__(self, *, prebuild_token_scope: str, **kwargs: Any) -> None:
        super().__init__(**kwargs)
        self._prebuild_token_scope = prebuild_token_scope

    async def handle(
        self,
        event_name: Optional[str],
        secret_token: Optional[str],
        payload: Mapping[str, Any],
    ) -> WebhookResult:
        event = await self._record_event(payload)
        if event_name != PUSH_HOOK_EVENT or not secret_token:
            logger.warning(
                "Unhandled GitLab event",
                extra={"event": event_name, "has_token": bool(secret_token)},
            )
            await self._dismiss(event, WebhookEventStatus.IGNORED)
            return WebhookResult(message="Unhandled event.", event_id=str(event.id))

        repository = payload.get("repository") or {}
        git_http_url = str(repository.get("git_http_url") or "")
        user = await self._find_user_by_token(
            secret_token, required_scopes=(self._prebuild_token_scope, git_http_url)
        )
        if user is None:
            await self._dismiss(event, WebhookEventStatus.DISMISSED_UNAUTHORIZED)
            return WebhookResult(message="Unauthorized.", event_id=str(event.id))

        branch = branch_from_ref(payload.get("ref"))
        if branch is None or not git_http_url:
            await self._events.update_event(
                event.id,
                status=WebhookEventStatus.PROCESSED,
                prebuild_status=WebhookPrebuildStatus.IGNORED_UNCONFIGURED,
            )
            await self._events.commit()
            return WebhookResult(status_code=201, event_id=str(event.id))

        push = PushEvent(
            clone_url=git_http_url,
            context_url=create_context_url(git_http_url, branch),
            commit=payload.get("after"),
        )
        results = await self.handle_push(event, user, push)
        await self._events.commit()
        return WebhookResult(
            status_code=201,
            message="Prebuild request handled.",
            event_id=str(event.id),
            prebuild_ids=[str(result.prebuild_id) for result in results],
        )


__all__ = ["GitLabIngestor", "PUSH_HOOK_EVENT", "create_context_url"]
