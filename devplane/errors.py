"""Typed application errors shared by services, webhooks and routers."""

from __future__ import annotations

import enum
from typing import Any, Optional


class ErrorCode(str, enum.Enum):
    """Stable error codes surfaced to API callers."""

    BAD_REQUEST = "bad_request"
    NOT_AUTHENTICATED = "not_authenticated"
    PERMISSION_DENIED = "permission_denied"
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    PRECONDITION_FAILED = "precondition_failed"
    USER_BLOCKED = "user_blocked"
    PAYMENT_SPENDING_LIMIT_REACHED = "payment_spending_limit_reached"
    INTERNAL_SERVER_ERROR = "internal_server_error"


class ApplicationError(Exception):
    """Error carrying a stable ``code`` and optional structured ``data``."""

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        data: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.data = dict(data or {})

    def __repr__(self) -> str:
        return f"ApplicationError(code={self.code.value!r}, message={self.message!r})"


class WorkspaceRunningError(Exception):
    """Raised when an operation requires a workspace without a running instance."""

    def __init__(self, message: str, instance: Any) -> None:
        super().__init__(message)
        self.instance = instance


__all__ = ["ApplicationError", "ErrorCode", "WorkspaceRunningError"]
