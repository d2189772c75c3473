"""Bitbucket Server ``repo:refs_changed`` ingestor."""

from __future__ import annotations

import logging
from typing import Any, Mapping, Optional
from urllib.parse import quote

from devplane.webhooks.base import PushEvent, WebhookIngestor, WebhookResult
from devplane.webhooks.models import WebhookEventStatus

logger = logging.getLogger(__name__)

REFS_CHANGED_EVENT_KEY = "repo:refs_changed"


def parse_refs_changed(payload: Mapping[str, Any]) -> Optional[PushEvent]:
    repository = payload.get("repository") or {}
    links = repository.get("links") or {}
    clone_url = next(
        (
            link.get("href")
            for link in links.get("clone") or []
            if (link or {}).get("name") == "http"
        ),
        None,
    )
    self_links = links.get("self") or []
    browse_url = (self_links[0] or {}).get("href") if self_links else None
    changes = payload.get("changes") or []
    change = changes[0] if changes else {}
    branch = ((change or {}).get("ref") or {}).get("displayId")
    if not clone_url or not browse_url or not branch:
        return None
    return PushEvent(
        clone_url=clone_url,
        context_url=f"{browse_url}?at={quote(branch, safe='')}",
        commit=(change or {}).get("toHash"),
    )


class BitbucketServerIngestor(WebhookIngestor):
    async def handle(
        self, secret_token: Optional[str], payload: Mapping[str, Any]
    ) -> WebhookResult:
        if payload.get("eventKey") != REFS_CHANGED_EVENT_KEY:
            logger.warning("Ignoring unsupported Bitbucket Server event")
            return WebhookResult(message="Unhandled event.")

        event = await self._record_event(payload)
        user = await self._find_user_by_token(secret_token) if secret_token else None
        if user is None:
            await self._dismiss(event, WebhookEventStatus.DISMISSED_UNAUTHORIZED)
            return WebhookResult(
                status_code=401, message="Unauthorized.", event_id=str(event.id)
            )

        push = parse_refs_changed(payload)
        if push is None:
            logger.error(
                "Bitbucket Server push event without clone URL or branch",
                extra={"event_id": str(event.id)},
            )
            await self._events.commit()
            return WebhookResult(event_id=str(event.id))
        results = await self.handle_push(event, user, push)
        await self._events.commit()
        return WebhookResult(
            event_id=str(event.id),
            prebuild_ids=[str(result.prebuild_id) for result in results],
        )


__all__ = ["BitbucketServerIngestor", "REFS_CHANGED_EVENT_KEY", "parse_refs_changed"]
