"""Tests for resolving users from ``<userId>|<token>`` secrets."""

from __future__ import annotations

from uuid import uuid4

import pytest

from devplane.errors import ApplicationError, ErrorCode
from devplane.users.repositories import UserRepository
from devplane.users.service import TokenAuthError, UserAuthentication, split_secret_token

pytestmark = [pytest.mark.asyncio]


def test_split_secret_token() -> None:
    user_id = uuid4()

    assert split_secret_token(f" {user_id}|abc|def ") == (user_id, "abc|def")
    for bad in (None, "", "no-separator", f"{user_id}|", "not-a-uuid|abc"):
        with pytest.raises(TokenAuthError) as exc_info:
            split_secret_token(bad)
        assert exc_info.value.code == ErrorCode.NOT_AUTHENTICATED


async def _user_with_token(users: UserRepository, *, blocked: bool = False, scopes=()):
    user = await users.create_user(name="dev", blocked=blocked)
    identity = await users.add_identity(user, auth_provider_id="Gitpod", auth_id=str(user.id))
    await users.add_token(identity, value="t0ken", scopes=list(scopes))
    return user


async def test_find_user_by_secret_token(sqlite_db) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            users = UserRepository(session)
            user = await _user_with_token(users, scopes=("function:triggerPrebuild",))
            authentication = UserAuthentication(users)

            found = await authentication.find_user_by_secret_token(
                f"{user.id}|t0ken", required_scopes=("function:triggerPrebuild",)
            )

            assert found.id == user.id


async def test_secret_token_rejections(sqlite_db) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            users = UserRepository(session)
            user = await _user_with_token(users)
            blocked = await _user_with_token(users, blocked=True)
            no_identity = await users.create_user(name="bare")
            authentication = UserAuthentication(users)

            for secret, scopes in (
                (f"{user.id}|wrong", ()),
                (f"{user.id}|t0ken", ("function:triggerPrebuild",)),
                (f"{uuid4()}|t0ken", ()),
                (f"{no_identity.id}|t0ken", ()),
            ):
                with pytest.raises(TokenAuthError):
                    await authentication.find_user_by_secret_token(
                        secret, required_scopes=scopes
                    )

            with pytest.raises(ApplicationError) as exc_info:
                await authentication.find_user_by_secret_token(f"{blocked.id}|t0ken")
            assert exc_info.value.code == ErrorCode.USER_BLOCKED


async def test_token_identity_provider_is_configurable(sqlite_db) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            users = UserRepository(session)
            user = await _user_with_token(users)

            with pytest.raises(TokenAuthError):
                await UserAuthentication(
                    users, token_auth_provider_id="Other"
                ).find_user_by_secret_token(f"{user.id}|t0ken")
