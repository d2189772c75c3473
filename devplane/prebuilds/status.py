"""Apply runtime instance reports to workspace instances and their prebuilds."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional
from uuid import UUID

from api_service.db.models import utcnow
from devplane.prebuilds.models import PrebuildState, PrebuildTransitionError
from devplane.telemetry import trace_span
from devplane.workspaces.models import WorkspaceInstancePhase
from devplane.workspaces.repositories import WorkspaceRepository

logger = logging.getLogger(__name__)

TIMED_OUT_ERROR = "Prebuild timed out."


@dataclass(frozen=True, slots=True)
class StatusReportResult:
    instance_updated: bool
    prebuild_state: Optional[PrebuildState] = None


def prebuild_state_for_phase(
    phase: WorkspaceInstancePhase,
    *,
    failed_reason: Optional[str] = None,
    timed_out: bool = False,
) -> Optional[PrebuildState]:
    """Map an instance phase to the prebuild state it implies, if any."""

    if phase == WorkspaceInstancePhase.STOPPING:
        return None
    if phase != WorkspaceInstancePhase.STOPPED:
        return PrebuildState.BUILDING
    if timed_out:
        return PrebuildState.TIMEOUT
    if failed_reason:
        return PrebuildState.FAILED
    return PrebuildState.AVAILABLE


class PrebuildStatusUpdater:
    def __init__(self, workspaces: WorkspaceRepository) -> None:
        self._workspaces = workspaces

    async def apply_instance_report(
        self,
        instance_id: UUID,
        *,
        phase: WorkspaceInstancePhase,
        status_version: int,
        failed_reason: Optional[str] = None,
        timed_out: bool = False,
    ) -> Optional[StatusReportResult]:
        """Record a runtime report; stale ``status_version`` values are ignored.

        Returns ``None`` when the instance is unknown.
        """

        with trace_span(
            "prebuild_status.apply_instance_report",
            instance_id=str(instance_id),
            phase=phase.value,
        ) as span:
            instance = await self._workspaces.find_instance_by_id(instance_id)
            if instance is None:
                return None
            if status_version <= instance.status_version:
                span.set_tag("stale", True)
                return StatusReportResult(instance_updated=False)

            fields: dict[str, Any] = {"phase": phase, "status_version": status_version}
            if failed_reason:
                fields["failed_reason"] = failed_reason
            if phase == WorkspaceInstancePhase.RUNNING and instance.started_time is None:
                fields["started_time"] = utcnow()
            if phase == WorkspaceInstancePhase.STOPPED:
                fields["stopped_time"] = utcnow()
            await self._workspaces.update_instance_partial(instance_id, **fields)

            prebuild = await self._workspaces.find_prebuild_by_workspace_id(
                instance.workspace_id
            )
            if prebuild is None:
                return StatusReportResult(instance_updated=True)
            # Only the newest instance of a retriggered build drives the prebuild.
            instances = await self._workspaces.find_instances(instance.workspace_id)
            if instances and instances[0].id != instance.id:
                span.set_tag("superseded_instance", True)
                return StatusReportResult(
                    instance_updated=True, prebuild_state=PrebuildState(prebuild.state)
                )

            target = prebuild_state_for_phase(
                phase, failed_reason=failed_reason, timed_out=timed_out
            )
            if target is None or target == prebuild.state:
                return StatusReportResult(
                    instance_updated=True, prebuild_state=PrebuildState(prebuild.state)
                )

            error = None
            if target == PrebuildState.FAILED:
                error = failed_reason
            elif target == PrebuildState.TIMEOUT:
                error = failed_reason or TIMED_OUT_ERROR
            try:
                current = PrebuildState(prebuild.state)
                if (
                    current == PrebuildState.QUEUED
                    and not current.can_transition_to(target)
                    and PrebuildState.BUILDING.can_transition_to(target)
                ):
                    # The final report overtook the running one; the build did run.
                    span.set_tag("implied_building", True)
                    await self._workspaces.apply_prebuild_status_report(
                        prebuild.id, state=PrebuildState.BUILDING
                    )
                await self._workspaces.apply_prebuild_status_report(
                    prebuild.id, state=target, error=error
                )
            except PrebuildTransitionError as exc:
                logger.warning(
                    "Ignoring prebuild status report: %s",
                    exc,
                    extra={"prebuild_id": str(prebuild.id), "instance_id": str(instance_id)},
                )
            span.set_tag("prebuild_state", PrebuildState(prebuild.state).value)
            return StatusReportResult(
                instance_updated=True, prebuild_state=PrebuildState(prebuild.state)
            )


__all__ = ["PrebuildStatusUpdater", "StatusReportResult", "prebuild_state_for_phase"]
