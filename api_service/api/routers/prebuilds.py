"""REST router for project prebuilds."""

from __future__ import annotations

import logging
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Query, status

from api_service.api.dependencies import get_prebuild_components
from api_service.auth_providers import get_current_user
from api_service.db.models import User
from devplane.errors import ApplicationError, ErrorCode, WorkspaceRunningError
from devplane.prebuilds.models import PrebuildTransitionError
from devplane.prebuilds.service import PrebuildService
from devplane.prebuilds.wiring import PrebuildComponents
from devplane.projects.repositories import ProjectNotFoundError
from devplane.projects.service import PrebuildWithStatus
from devplane.schemas.prebuild_models import (
    InstanceStatusReport,
    InstanceStatusResponse,
    PrebuildInfoModel,
    PrebuildListResponse,
    PrebuildModel,
    StartPrebuildResponse,
    TriggerPrebuildRequest,
)
from devplane.workspaces.repositories import (
    PrebuildNotFoundError,
    PrebuildVersionConflictError,
    WorkspaceNotFoundError,
)

router = APIRouter(prefix="/api", tags=["prebuilds"])
logger = logging.getLogger(__name__)

_STATUS_BY_CODE = {
    ErrorCode.BAD_REQUEST: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_AUTHENTICATED: status.HTTP_401_UNAUTHORIZED,
    ErrorCode.PERMISSION_DENIED: status.HTTP_403_FORBIDDEN,
    ErrorCode.USER_BLOCKED: status.HTTP_403_FORBIDDEN,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.CONFLICT: status.HTTP_409_CONFLICT,
    ErrorCode.PRECONDITION_FAILED: status.HTTP_412_PRECONDITION_FAILED,
    ErrorCode.PAYMENT_SPENDING_LIMIT_REACHED: status.HTTP_402_PAYMENT_REQUIRED,
    ErrorCode.INTERNAL_SERVER_ERROR: status.HTTP_500_INTERNAL_SERVER_ERROR,
}


async def _get_service(
    components: PrebuildComponents = Depends(get_prebuild_components),
) -> PrebuildService:
    return components.prebuild_service


def _serialize_prebuild(item: PrebuildWithStatus) -> PrebuildModel:
    prebuild = item.prebuild
    return PrebuildModel(
        id=prebuild.id,
        build_workspace_id=prebuild.build_workspace_id,
        project_id=prebuild.project_id,
        clone_url=prebuild.clone_url,
        commit=prebuild.commit,
        branch=prebuild.branch,
        status=item.status,
        error=item.error,
        creation_time=prebuild.creation_time,
        info=PrebuildInfoModel.model_validate(item.info) if item.info else None,
    )


def _to_http_exception(exc: Exception) -> HTTPException:
    if isinstance(exc, ApplicationError):
        return HTTPException(
            status_code=_STATUS_BY_CODE.get(
                exc.code, status.HTTP_500_INTERNAL_SERVER_ERROR
            ),
            detail={"code": exc.code.value, "message": exc.message, **exc.data},
        )
    if isinstance(exc, WorkspaceRunningError):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={
                "code": "workspace_running",
                "message": str(exc),
                "instanceId": str(getattr(exc.instance, "id", "")),
            },
        )
    if isinstance(exc, (ProjectNotFoundError, PrebuildNotFoundError, WorkspaceNotFoundError)):
        return HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"code": ErrorCode.NOT_FOUND.value, "message": str(exc)},
        )
    if isinstance(exc, (PrebuildTransitionError, PrebuildVersionConflictError)):
        return HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"code": "prebuild_state_conflict", "message": str(exc)},
        )
    logger.exception("Unhandled prebuild exception")
    return HTTPException(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        detail={
            "code": ErrorCode.INTERNAL_SERVER_ERROR.value,
            "message": "An unexpected prebuild error occurred.",
        },
    )


@router.get("/projects/{project_id}/prebuilds", response_model=PrebuildListResponse)
async def list_prebuilds(
    project_id: UUID,
    *,
    branch: Optional[str] = Query(None),
    limit: int = Query(30, ge=1, le=200),
    latest: bool = Query(False),
    service: PrebuildService = Depends(_get_service),
    user: User = Depends(get_current_user()),
) -> PrebuildListResponse:
    """List a project's prebuilds, newest first."""

    try:
        items = await service.list_prebuilds(
            user, project_id, branch=branch, limit=limit, latest=latest
        )
    except Exception as exc:
        raise _to_http_exception(exc) from exc
    return PrebuildListResponse(items=[_serialize_prebuild(item) for item in items])


@router.post(
    "/projects/{project_id}/prebuilds",
    response_model=StartPrebuildResponse,
    status_code=status.HTTP_201_CREATED,
)
async def trigger_prebuild(
    project_id: UUID,
    payload: TriggerPrebuildRequest,
    service: PrebuildService = Depends(_get_service),
    user: User = Depends(get_current_user()),
) -> StartPrebuildResponse:
    """Start a prebuild for a branch of the project."""

    try:
        result = await service.trigger_prebuild(
            user, project_id, branch=payload.branch_name, force=payload.force
        )
    except Exception as exc:
        raise _to_http_exception(exc) from exc
    return StartPrebuildResponse(
        prebuild_id=result.prebuild_id, workspace_id=result.workspace_id, done=result.done
    )


@router.get("/prebuilds/{prebuild_id}", response_model=PrebuildModel)
async def get_prebuild(
    prebuild_id: UUID,
    service: PrebuildService = Depends(_get_service),
    user: User = Depends(get_current_user()),
) -> PrebuildModel:
    try:
        item = await service.get_prebuild(user, prebuild_id)
    except Exception as exc:
        raise _to_http_exception(exc) from exc
    return _serialize_prebuild(item)


@router.post("/prebuilds/{prebuild_id}/retrigger", response_model=StartPrebuildResponse)
async def retrigger_prebuild(
    prebuild_id: UUID,
    service: PrebuildService = Depends(_get_service),
    user: User = Depends(get_current_user()),
) -> StartPrebuildResponse:
    """Restart the build workspace of a prebuild."""

    try:
        result = await service.retrigger_prebuild(user, prebuild_id)
    except Exception as exc:
        raise _to_http_exception(exc) from exc
    return StartPrebuildResponse(
        prebuild_id=result.prebuild_id, workspace_id=result.workspace_id, done=result.done
    )


@router.post("/prebuilds/{prebuild_id}/cancel", response_model=PrebuildModel)
async def cancel_prebuild(
    prebuild_id: UUID,
    service: PrebuildService = Depends(_get_service),
    user: User = Depends(get_current_user()),
) -> PrebuildModel:
    try:
        prebuild = await service.cancel_prebuild(user, prebuild_id)
    except Exception as exc:
        raise _to_http_exception(exc) from exc
    return _serialize_prebuild(
        PrebuildWithStatus(
            prebuild=prebuild, info=None, status=prebuild.state, error=prebuild.error
        )
    )


@router.post(
    "/workspace-instances/{instance_id}/status",
    response_model=InstanceStatusResponse,
)
async def report_instance_status(
    instance_id: UUID,
    payload: InstanceStatusReport,
    service: PrebuildService = Depends(_get_service),
) -> InstanceStatusResponse:
    """Apply a runtime phase report to the instance and its prebuild."""

    try:
        result = await service.report_instance_status(
            instance_id,
            phase=payload.phase,
            status_version=payload.status_version,
            failed_reason=payload.failed_reason,
            timed_out=payload.timed_out,
        )
    except Exception as exc:
        raise _to_http_exception(exc) from exc
    return InstanceStatusResponse(
        instance_updated=result.instance_updated,
        prebuild_status=result.prebuild_state,
    )
