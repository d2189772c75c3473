"""Authentication dependencies for API callers."""

from __future__ import annotations

from typing import Optional

from fastapi import Depends, Header, HTTPException, status

from api_service.api.dependencies import get_prebuild_components
from api_service.db.models import User
from devplane.errors import ApplicationError, ErrorCode
from devplane.prebuilds.wiring import PrebuildComponents

BEARER_PREFIX = "bearer "


def _unauthorized(message: str) -> HTTPException:
    return HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail={"code": "not_authenticated", "message": message},
        headers={"WWW-Authenticate": "Bearer"},
    )


def get_current_user():
    """Return a dependency resolving ``Authorization: Bearer <userId>|<token>``."""

    async def _current_user(
        authorization: Optional[str] = Header(None),
        components: PrebuildComponents = Depends(get_prebuild_components),
    ) -> User:
        if not authorization or not authorization.lower().startswith(BEARER_PREFIX):
            raise _unauthorized("Missing bearer token.")
        secret_token = authorization[len(BEARER_PREFIX):].strip()
        try:
            return await components.authentication.find_user_by_secret_token(secret_token)
        except ApplicationError as exc:
            if exc.code == ErrorCode.USER_BLOCKED:
                raise HTTPException(
                    status_code=status.HTTP_403_FORBIDDEN,
                    detail={"code": exc.code.value, "message": exc.message},
                ) from exc
            raise _unauthorized(exc.message) from exc

    return _current_user
