"""GitHub app webhook ingestor: pushes and installation lifecycle."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Mapping, Optional

from devplane.webhooks.base import PushEvent, WebhookIngestor, WebhookResult
from devplane.webhooks.models import WebhookEventStatus, WebhookPrebuildStatus

logger = logging.getLogger(__name__)

GITHUB_PLATFORM = "github"
SIGNATURE_HEADER = "X-Hub-Signature-256"
HEADS_PREFIX = "refs/heads/"


def verify_signature(secret: str, body: bytes, signature: Optional[str]) -> bool:
    """Check a ``sha256=<hex>`` HMAC of the raw request body."""

    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature[len("sha256="):])


def branch_from_ref(ref: Optional[str]) -> Optional[str]:
    if ref and ref.startswith(HEADS_PREFIX):
        return ref[len(HEADS_PREFIX):]
    return None


class GitHubAppIngestor(WebhookIngestor):
    def __init__(
        self,
        *,
        enabled: bool,
        webhook_secret: Optional[str],
        auth_provider_id: str,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._enabled = enabled
        self._webhook_secret = webhook_secret
        self._auth_provider_id = auth_provider_id

    async def handle(
        self,
        event_name: Optional[str],
        payload: Mapping[str, Any],
        *,
        body: bytes,
        signature: Optional[str],
    ) -> WebhookResult:
        if not self._enabled:
            return WebhookResult(message="GitHub app is not enabled.")
        if self._webhook_secret and not verify_signature(
            self._webhook_secret, body, signature
        ):
            logger.warning("Rejected GitHub delivery with invalid signature")
            return WebhookResult(message="Invalid signature.")

        action = payload.get("action")
        if event_name == "installation" and action == "created":
            await self._installation_created(payload)
            return WebhookResult()
        if event_name == "installation" and action == "deleted":
            await self._installation_deleted(payload)
            return WebhookResult()
        if event_name == "push":
            return await self._push(payload)
        logger.debug("Ignoring GitHub event %s", event_name)
        return WebhookResult(message="Unhandled event.")

    async def _installation_created(self, payload: Mapping[str, Any]) -> None:
        installation_id = str((payload.get("installation") or {}).get("id") or "")
        sender_id = str((payload.get("sender") or {}).get("id") or "")
        if not installation_id:
            return
        user = None
        if sender_id:
            user = await self._users.find_user_by_identity(self._auth_provider_id, sender_id)
        await self._users.record_app_installation(
            platform=GITHUB_PLATFORM,
            installation_id=installation_id,
            owner_user_id=user.id if user is not None else None,
            platform_user_id=sender_id or None,
        )
        await self._users.commit()
        logger.info(
            "New GitHub app installation recorded",
            extra={
                "installation_id": installation_id,
                "user_id": str(user.id) if user is not None else None,
            },
        )

    async def _installation_deleted(self, payload: Mapping[str, Any]) -> None:
        installation_id = str((payload.get("installation") or {}).get("id") or "")
        if not installation_id:
            return
        await self._users.record_app_uninstallation(
            platform=GITHUB_PLATFORM, installation_id=installation_id
        )
        await self._users.commit()

    async def _push(self, payload: Mapping[str, Any]) -> WebhookResult:
        event = await self._record_event(payload)
        installation_id = str((payload.get("installation") or {}).get("id") or "")
        owner = await self._users.find_installation_owner(GITHUB_PLATFORM, installation_id)
        if owner is None:
            logger.info(
                "No user for GitHub installation; probably an incomplete app installation",
                extra={"installation_id": installation_id},
            )
            await self._events.commit()
            return WebhookResult(event_id=str(event.id))
        if owner.blocked:
            logger.info("Blocked user tried to start prebuild", extra={"user_id": str(owner.id)})
            await self._dismiss(event, WebhookEventStatus.DISMISSED_UNAUTHORIZED)
            return WebhookResult(event_id=str(event.id))

        branch = branch_from_ref(payload.get("ref"))
        if branch is None:
            # Tag pushes land here.
            await self._events.update_event(
                event.id,
                status=WebhookEventStatus.PROCESSED,
                prebuild_status=WebhookPrebuildStatus.IGNORED_UNCONFIGURED,
            )
            await self._events.commit()
            return WebhookResult(event_id=str(event.id))

        repository = payload.get("repository") or {}
        push = PushEvent(
            clone_url=str(repository.get("clone_url") or ""),
            context_url=f"{repository.get('html_url')}/tree/{branch}",
            commit=payload.get("after"),
        )
        results = await self.handle_push(event, owner, push)
        await self._events.commit()
        return WebhookResult(
            event_id=str(event.id),
            prebuild_ids=[str(result.prebuild_id) for result in results],
        )


__all__ = ["GitHubAppIngestor", "branch_from_ref", "verify_signature"]
