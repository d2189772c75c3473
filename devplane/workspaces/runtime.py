"""Client for the workspace runtime's start/stop API."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol
from uuid import UUID

import httpx

from devplane.workspaces.models import StopWorkspacePolicy

logger = logging.getLogger(__name__)


class WorkspaceRuntimeError(RuntimeError):
    """Raised when the workspace runtime rejects or fails a request."""


@dataclass(frozen=True, slots=True)
class StartWorkspaceRequest:
    instance_id: UUID
    workspace_id: UUID
    owner_id: UUID
    region: str
    workspace_type: str
    image_source: dict[str, Any] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    config: dict[str, Any] = field(default_factory=dict)
    feature_flags: tuple[str, ...] = ()

    def to_payload(self) -> dict[str, Any]:
        return {
            "instanceId": str(self.instance_id),
            "workspaceId": str(self.workspace_id),
            "ownerId": str(self.owner_id),
            "region": self.region,
            "type": self.workspace_type,
            "imageSource": self.image_source,
            "context": self.context,
            "config": self.config,
            "featureFlags": list(self.feature_flags),
        }


class WorkspaceRuntime(Protocol):
    async def start_workspace(self, request: StartWorkspaceRequest) -> None:
        ...

    async def stop_workspace(
        self,
        instance_id: UUID,
        *,
        region: str,
        reason: str,
        policy: StopWorkspacePolicy = StopWorkspacePolicy.NORMALLY,
    ) -> None:
        ...


class HttpWorkspaceRuntime:
    """JSON-over-HTTP runtime client; ``POST /instances`` and ``/instances/{id}/stop``."""

    def __init__(
        self,
        *,
        base_url: str,
        timeout_seconds: float = 30.0,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._base_url = base_url.rstrip("/")
        self._timeout_seconds = max(1.0, float(timeout_seconds))
        self._client = client
        self._owns_client = client is None

    async def aclose(self) -> None:
        """Close owned async client resources."""

        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _post(self, path: str, payload: dict[str, Any]) -> None:
        client = self._client
        if client is None:
            client = httpx.AsyncClient(timeout=self._timeout_seconds)
            self._client = client
            self._owns_client = True
        try:
            response = await client.post(f"{self._base_url}{path}", json=payload)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise WorkspaceRuntimeError(f"workspace runtime call {path} failed: {exc}") from exc

    async def start_workspace(self, request: StartWorkspaceRequest) -> None:
        await self._post("/instances", request.to_payload())

    async def stop_workspace(
        self,
        instance_id: UUID,
        *,
        region: str,
        reason: str,
        policy: StopWorkspacePolicy = StopWorkspacePolicy.NORMALLY,
    ) -> None:
        await self._post(
            f"/instances/{instance_id}/stop",
            {"region": region, "reason": reason, "policy": policy.value},
        )


class NoopWorkspaceRuntime:
    """Runtime stand-in used when no runtime URL is configured; only logs calls."""

    async def start_workspace(self, request: StartWorkspaceRequest) -> None:
        logger.warning(
            "No workspace runtime configured; instance %s stays preparing",
            request.instance_id,
            extra={"workspace_id": str(request.workspace_id)},
        )

    async def stop_workspace(
        self,
        instance_id: UUID,
        *,
        region: str,
        reason: str,
        policy: StopWorkspacePolicy = StopWorkspacePolicy.NORMALLY,
    ) -> None:
        logger.warning(
            "No workspace runtime configured; not stopping instance %s",
            instance_id,
            extra={"reason": reason, "policy": policy.value},
        )


def build_workspace_runtime(
    runtime_url: Optional[str],
    *,
    timeout_seconds: float = 30.0,
) -> WorkspaceRuntime:
    if runtime_url:
        return HttpWorkspaceRuntime(base_url=runtime_url, timeout_seconds=timeout_seconds)
    return NoopWorkspaceRuntime()


__all__ = [
    "HttpWorkspaceRuntime",
    "NoopWorkspaceRuntime",
    "StartWorkspaceRequest",
    "WorkspaceRuntime",
    "WorkspaceRuntimeError",
    "build_workspace_runtime",
]
