"""Request-scoped dependencies shared by the API routers."""

from __future__ import annotations

import logging
from typing import AsyncGenerator, Optional

import httpx
from fastapi import Depends, Request
from sqlalchemy.ext.asyncio import AsyncSession

from api_service.db.base import get_async_session
from devplane.prebuilds.wiring import PrebuildComponents, build_prebuild_components
from devplane.workspaces.runtime import WorkspaceRuntime

logger = logging.getLogger(__name__)


def get_http_client(request: Request) -> Optional[httpx.AsyncClient]:
    return getattr(request.app.state, "http_client", None)


def get_workspace_runtime(request: Request) -> Optional[WorkspaceRuntime]:
    return getattr(request.app.state, "workspace_runtime", None)


async def get_prebuild_components(
    session: AsyncSession = Depends(get_async_session),
    http_client: Optional[httpx.AsyncClient] = Depends(get_http_client),
    runtime: Optional[WorkspaceRuntime] = Depends(get_workspace_runtime),
) -> AsyncGenerator[PrebuildComponents, None]:
    """Build the prebuild services around the request's database session."""

    components = build_prebuild_components(
        session, runtime=runtime, http_client=http_client
    )
    try:
        yield components
    finally:
        await components.aclose()
