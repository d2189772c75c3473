"""Pydantic schemas for prebuild REST endpoints."""

from __future__ import annotations

from datetime import datetime
from typing import Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from devplane.prebuilds.models import PrebuildState
from devplane.workspaces.models import WorkspaceInstancePhase


class TriggerPrebuildRequest(BaseModel):
    """Request body for a manual prebuild trigger."""

    model_config = ConfigDict(populate_by_name=True)

    branch_name: Optional[str] = Field(None, alias="branchName")
    force: bool = Field(False, alias="force")


class InstanceStatusReport(BaseModel):
    """Runtime report of an instance phase change."""

    model_config = ConfigDict(populate_by_name=True)

    phase: WorkspaceInstancePhase = Field(..., alias="phase")
    status_version: int = Field(..., alias="statusVersion", ge=0)
    failed_reason: Optional[str] = Field(None, alias="failedReason")
    timed_out: bool = Field(False, alias="timedOut")


class PrebuildInfoModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True, from_attributes=True)

    project_id: UUID = Field(..., alias="projectId")
    project_name: str = Field(..., alias="projectName")
    based_on_prebuild_id: Optional[UUID] = Field(None, alias="basedOnPrebuildId")
    started_at: datetime = Field(..., alias="startedAt")
    started_by: str = Field("", alias="startedBy")
    clone_url: str = Field(..., alias="cloneUrl")
    branch: str = Field(..., alias="branch")
    change_author: str = Field(..., alias="changeAuthor")
    change_author_avatar: Optional[str] = Field(None, alias="changeAuthorAvatar")
    change_date: str = Field("", alias="changeDate")
    change_hash: str = Field(..., alias="changeHash")
    change_title: str = Field(..., alias="changeTitle")
    change_url: str = Field("", alias="changeUrl")


class PrebuildModel(BaseModel):
    """Serialized prebuild with its listing info."""

    model_config = ConfigDict(populate_by_name=True)

    id: UUID = Field(..., alias="id")
    build_workspace_id: UUID = Field(..., alias="buildWorkspaceId")
    project_id: Optional[UUID] = Field(None, alias="projectId")
    clone_url: str = Field(..., alias="cloneUrl")
    commit: str = Field(..., alias="commit")
    branch: Optional[str] = Field(None, alias="branch")
    status: PrebuildState = Field(..., alias="status")
    error: Optional[str] = Field(None, alias="error")
    creation_time: datetime = Field(..., alias="creationTime")
    info: Optional[PrebuildInfoModel] = Field(None, alias="info")


class PrebuildListResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    items: list[PrebuildModel] = Field(default_factory=list, alias="items")


class StartPrebuildResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prebuild_id: UUID = Field(..., alias="prebuildId")
    workspace_id: UUID = Field(..., alias="workspaceId")
    done: bool = Field(..., alias="done")


class InstanceStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    instance_updated: bool = Field(..., alias="instanceUpdated")
    prebuild_status: Optional[PrebuildState] = Field(None, alias="prebuildStatus")


class WebhookResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str = Field("OK", alias="message")
    event_id: Optional[str] = Field(None, alias="eventId")
    prebuild_ids: list[str] = Field(default_factory=list, alias="prebuildIds")


__all__ = [
    "InstanceStatusReport",
    "InstanceStatusResponse",
    "PrebuildInfoModel",
    "PrebuildListResponse",
    "PrebuildModel",
    "StartPrebuildResponse",
    "TriggerPrebuildRequest",
    "WebhookResponse",
]
