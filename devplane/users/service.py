"""Resolve acting users from webhook and API secret tokens."""

from __future__ import annotations

import hmac
import logging
from typing import Iterable, Optional
from uuid import UUID

from api_service.db.models import Token, User
from devplane.errors import ApplicationError, ErrorCode
from devplane.users.repositories import UserRepository

logger = logging.getLogger(__name__)


class TokenAuthError(ApplicationError):
    """Raised when a ``userId|token`` secret does not identify a usable user."""

    def __init__(self, message: str) -> None:
        super().__init__(ErrorCode.NOT_AUTHENTICATED, message)


def split_secret_token(secret_token: Optional[str]) -> tuple[UUID, str]:
    raw = (secret_token or "").strip()
    user_part, separator, token_value = raw.partition("|")
    if not separator or not user_part or not token_value:
        raise TokenAuthError("Secret token must have the form '<userId>|<token>'")
    try:
        user_id = UUID(user_part)
    except ValueError as exc:
        raise TokenAuthError("Secret token carries an invalid user id") from exc
    return user_id, token_value


class UserAuthentication:
    """Look up users by secret token, checking block state and token scopes."""

    def __init__(
        self,
        users: UserRepository,
        *,
        token_auth_provider_id: str = "Gitpod",
    ) -> None:
        self._users = users
        self._token_auth_provider_id = token_auth_provider_id

    async def find_user_by_secret_token(
        self,
        secret_token: Optional[str],
        *,
        required_scopes: Iterable[str] = (),
    ) -> User:
        user_id, token_value = split_secret_token(secret_token)
        user = await self._users.get_user(user_id)
        if user is None:
            raise TokenAuthError(f"No user found for id {user_id}")
        if user.blocked:
            raise ApplicationError(
                ErrorCode.USER_BLOCKED,
                f"Blocked user {user.id} tried to authenticate with a secret token",
            )

        identity = next(
            (
                item
                for item in user.identities
                if item.auth_provider_id == self._token_auth_provider_id
                and not item.deleted
            ),
            None,
        )
        if identity is None:
            raise TokenAuthError(f"User {user.id} has no token identity")

        tokens = await self._users.find_tokens_for_identity(
            identity.auth_provider_id, identity.auth_id
        )
        token = self._match_token(tokens, token_value)
        if token is None:
            raise TokenAuthError(f"Secret token is not valid for user {user.id}")

        missing = [scope for scope in required_scopes if scope not in (token.scopes or [])]
        if missing:
            logger.info(
                "Secret token lacks required scopes",
                extra={"user_id": str(user.id), "missing_scopes": missing},
            )
            raise TokenAuthError(
                f"Secret token for user {user.id} is missing scopes: {', '.join(missing)}"
            )
        return user

    @staticmethod
    def _match_token(tokens: Iterable[Token], token_value: str) -> Optional[Token]:
        for token in tokens:
            if hmac.compare_digest(
                str(token.value).encode("utf-8"), token_value.encode("utf-8")
            ):
                return token
        return None


__all__ = ["TokenAuthError", "UserAuthentication", "split_secret_token"]
