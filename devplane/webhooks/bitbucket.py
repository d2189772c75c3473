"""Bitbucket Cloud ``repo:push`` ingestor."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional
from urllib.parse import quote

from devplane.webhooks.base import PushEvent, WebhookIngestor, WebhookResult
from devplane.webhooks.models import WebhookEventStatus

logger = logging.getLogger(__name__)

PUSH_EVENT_KEY = "repo:push"


def parse_push(payload: Mapping[str, Any]) -> Optional[PushEvent]:
    """Read the first change of a push; ``None`` for branch deletions and the like."""

    changes = (payload.get("push") or {}).get("changes") or []
    new = (changes[0] or {}).get("new") if changes else None
    new = new or {}
    branch = new.get("name")
    commit = (new.get("target") or {}).get("hash")
    repo_url = (((payload.get("repository") or {}).get("links") or {}).get("html") or {}).get(
        "href"
    )
    if not branch or not commit or not repo_url:
        return None
    return PushEvent(
        clone_url=f"{repo_url}.git",
        context_url=f"{repo_url}/src/{commit}/?at={quote(branch, safe='')}",
        commit=commit,
    )


class BitbucketIngestor(WebhookIngestor):
    async def handle(
        self,
        event_key: Optional[str],
        secret_token: Optional[str],
        payload: Mapping[str, Any],
    ) -> WebhookResult:
        if event_key != PUSH_EVENT_KEY:
            logger.warning("Ignoring unsupported Bitbucket event %s", event_key)
            return WebhookResult(message="Unhandled event.")

        event = await self._record_event(payload)
        user = await self._find_user_by_token(secret_token) if secret_token else None
        if user is None:
            await self._dismiss(event, WebhookEventStatus.DISMISSED_UNAUTHORIZED)
            return WebhookResult(
                status_code=401, message="Unauthorized.", event_id=str(event.id)
            )

        push = parse_push(payload)
        if push is None:
            await self._events.commit()
            return WebhookResult(event_id=str(event.id))
        results = await self.handle_push(event, user, push)
        await self._events.commit()
        return WebhookResult(
            event_id=str(event.id),
            prebuild_ids=[str(result.prebuild_id) for result in results],
        )


__all__ = ["BitbucketIngestor", "PUSH_EVENT_KEY", "parse_push"]
