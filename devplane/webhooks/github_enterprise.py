"""GitHub Enterprise push hook ingestor.

Enterprise installations post plain repository webhooks instead of app
deliveries. The hook secret is a project owner's ``userId|token`` secret, so
the acting user is found by checking the ``X-Hub-Signature-256`` HMAC
against the prebuild tokens of the project's owners.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import TYPE_CHECKING, Any, Mapping, Optional
from urllib.parse import urlparse

from api_service.db.models import TeamMemberRole
from devplane.webhooks.base import PushEvent, WebhookIngestor, WebhookResult
from devplane.webhooks.github import branch_from_ref
from devplane.webhooks.models import WebhookEventStatus, WebhookPrebuildStatus

if TYPE_CHECKING:
    from api_service.db.models import User

logger = logging.getLogger(__name__)


class GitHubEnterpriseIngestor(WebhookIngestor):
    def __init__(
        self,
        *,
        prebuild_token_scope: str,
        token_auth_provider_id: str,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self._prebuild_token_scope = prebuild_token_scope
        self._token_auth_provider_id = token_auth_provider_id

    async def handle(
        self,
        event_name: Optional[str],
        payload: Mapping[str, Any],
        *,
        body: bytes,
        signature: Optional[str],
        enterprise_host: Optional[str] = None,
    ) -> WebhookResult:
        if event_name != "push":
            logger.info("Unknown GitHub Enterprise event received: %s", event_name)
            return WebhookResult(message="Unhandled event.")

        event = await self._record_event(payload)
        try:
            user = await self.find_user(
                payload, body=body, signature=signature, enterprise_host=enterprise_host
            )
        except Exception:
            logger.exception(
                "Cannot find user for GitHub Enterprise push",
                extra={"event_id": str(event.id)},
            )
            user = None
        if user is None:
            await self._dismiss(event, WebhookEventStatus.DISMISSED_UNAUTHORIZED)
            return WebhookResult(
                status_code=401,
                message="Unauthorized: Cannot find authorized user.",
                event_id=str(event.id),
            )

        repository = payload.get("repository") or {}
        branch = branch_from_ref(payload.get("ref"))
        if branch is None:
            await self._events.update_event(
                event.id,
                status=WebhookEventStatus.PROCESSED,
                prebuild_status=WebhookPrebuildStatus.IGNORED_UNCONFIGURED,
            )
            await self._events.commit()
            return WebhookResult(event_id=str(event.id))

        push = PushEvent(
            clone_url=str(repository.get("clone_url") or ""),
            context_url=f"{repository.get('url')}/tree/{branch}",
            commit=payload.get("after"),
        )
        results = await self.handle_push(event, user, push)
        await self._events.commit()
        return WebhookResult(
            event_id=str(event.id),
            prebuild_ids=[str(result.prebuild_id) for result in results],
        )

    async def find_user(
        self,
        payload: Mapping[str, Any],
        *,
        body: bytes,
        signature: Optional[str],
        enterprise_host: Optional[str] = None,
    ) -> Optional["User"]:
        """Return the project owner whose prebuild token signed ``body``.

        Raises ``ValueError`` for unknown hosts, repositories without a project
        and blocked owners.
        """

        repository = payload.get("repository") or {}
        host = enterprise_host or urlparse(str(repository.get("url") or "")).hostname
        host_context = self._hosts.get(host or "")
        if host_context is None:
            raise ValueError(f"Unsupported GitHub Enterprise host: {host}")

        projects = await self._projects.find_projects_by_clone_url(
            str(repository.get("clone_url") or "")
        )
        if not projects or projects[0].team_id is None:
            raise ValueError("No project found.")
        owners = await self._users.find_team_members(
            projects[0].team_id, role=TeamMemberRole.OWNER
        )

        for owner in owners:
            if not any(
                identity.auth_provider_id == host_context.auth_provider_id
                for identity in owner.identities
            ):
                continue
            token_identity = next(
                (
                    identity
                    for identity in owner.identities
                    if identity.auth_provider_id == self._token_auth_provider_id
                    and not identity.deleted
                ),
                None,
            )
            if token_identity is None:
                continue
            tokens = await self._users.find_tokens_for_identity(
                token_identity.auth_provider_id, token_identity.auth_id
            )
            if any(
                self._prebuild_token_scope in (token.scopes or [])
                and signature_matches(f"{owner.id}|{token.value}", body, signature)
                for token in tokens
            ):
                if owner.blocked:
                    raise ValueError(f"Blocked user {owner.id} tried to start prebuild.")
                return owner
        return None


def signature_matches(secret: str, body: bytes, signature: Optional[str]) -> bool:
    expected = "sha256=" + hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected.encode("utf-8"), (signature or "").encode("utf-8"))


__all__ = ["GitHubEnterpriseIngestor", "signature_matches"]
