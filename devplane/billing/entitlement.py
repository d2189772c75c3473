"""Usage entitlement gate consulted before prebuilds start."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import TYPE_CHECKING, Optional, Protocol
from uuid import UUID

if TYPE_CHECKING:
    from api_service.db.models import User


@dataclass(frozen=True, slots=True)
class MayStartWorkspaceResult:
    usage_limit_reached_on_cost_center: Optional[str] = None


class EntitlementService(Protocol):
    async def may_start_workspace(
        self,
        user: "User",
        organization_id: Optional[UUID],
        date: datetime,
    ) -> MayStartWorkspaceResult:
        ...


class UnlimitedEntitlementService:
    """Entitlement gate for installations without usage-based billing."""

    async def may_start_workspace(
        self,
        user: "User",
        organization_id: Optional[UUID],
        date: datetime,
    ) -> MayStartWorkspaceResult:
        return MayStartWorkspaceResult()


__all__ = [
    "EntitlementService",
    "MayStartWorkspaceResult",
    "UnlimitedEntitlementService",
]
