"""Tests for applying runtime instance reports to prebuilds."""

from __future__ import annotations

from uuid import uuid4

import pytest

from api_service.db.models import TeamMemberRole
from devplane.prebuilds.models import PrebuildState
from devplane.prebuilds.status import TIMED_OUT_ERROR, PrebuildStatusUpdater
from devplane.prebuilds.wiring import build_prebuild_components
from devplane.projects.repositories import ProjectRepository
from devplane.users.repositories import UserRepository
from devplane.workspaces.context import CommitContext
from devplane.workspaces.models import WorkspaceInstancePhase

pytestmark = [pytest.mark.asyncio]

CLONE_URL = "https://github.com/acme/app.git"


async def _started_prebuild(session, fake_provider, fake_hosts, runtime):
    fake_provider.add_repo("acme", "app", config="tasks:\n  - init: make\n")
    users = UserRepository(session)
    user = await users.create_user(name="dev")
    team = await users.create_team(name="acme")
    await users.add_team_member(team.id, user.id, role=TeamMemberRole.OWNER)
    project = await ProjectRepository(session).create_project(
        name="app",
        clone_url=CLONE_URL,
        team_id=team.id,
        user_id=user.id,
        settings={"prebuilds": {"enable": True}},
    )
    components = build_prebuild_components(session, hosts=fake_hosts, runtime=runtime)
    result = await components.manager.start_prebuild(
        user,
        CommitContext(
            repository=fake_provider.repos[("acme", "app")], revision="c1", ref="main"
        ),
        project,
    )
    instance = await components.workspaces.find_running_instance(result.workspace_id)
    return user, project, components, result, instance


async def test_reports_drive_prebuild_to_available(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            _, _, components, started, instance = await _started_prebuild(
                session, fake_provider, fake_hosts, runtime
            )
            updater = PrebuildStatusUpdater(components.workspaces)

            running = await updater.apply_instance_report(
                instance.id, phase=WorkspaceInstancePhase.RUNNING, status_version=1
            )
            stopping = await updater.apply_instance_report(
                instance.id, phase=WorkspaceInstancePhase.STOPPING, status_version=2
            )
            stopped = await updater.apply_instance_report(
                instance.id, phase=WorkspaceInstancePhase.STOPPED, status_version=3
            )

            assert running.prebuild_state == PrebuildState.BUILDING
            assert stopping.prebuild_state == PrebuildState.BUILDING
            assert stopped.prebuild_state == PrebuildState.AVAILABLE
            refreshed = await components.workspaces.find_instance_by_id(instance.id)
            assert refreshed.started_time is not None
            assert refreshed.stopped_time is not None
            assert refreshed.status_version == 3


async def test_stale_reports_are_ignored(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            _, _, components, started, instance = await _started_prebuild(
                session, fake_provider, fake_hosts, runtime
            )
            updater = PrebuildStatusUpdater(components.workspaces)
            await updater.apply_instance_report(
                instance.id,
                phase=WorkspaceInstancePhase.STOPPED,
                status_version=5,
                failed_reason="tests failed",
            )

            late = await updater.apply_instance_report(
                instance.id, phase=WorkspaceInstancePhase.RUNNING, status_version=4
            )

            assert late.instance_updated is False
            prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                started.prebuild_id
            )
            assert prebuild.state == PrebuildState.FAILED
            assert prebuild.error == "tests failed"


async def test_stopped_report_before_running_report_completes_prebuild(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            _, _, components, started, instance = await _started_prebuild(
                session, fake_provider, fake_hosts, runtime
            )
            updater = PrebuildStatusUpdater(components.workspaces)

            stopped = await updater.apply_instance_report(
                instance.id, phase=WorkspaceInstancePhase.STOPPED, status_version=3
            )
            running = await updater.apply_instance_report(
                instance.id, phase=WorkspaceInstancePhase.RUNNING, status_version=1
            )

            assert stopped.prebuild_state == PrebuildState.AVAILABLE
            assert running.instance_updated is False
            prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                started.prebuild_id
            )
            assert prebuild.state == PrebuildState.AVAILABLE
            assert prebuild.error is None
            assert await components.workspaces.find_active_prebuilt_workspaces_by_branch(
                prebuild.project_id, "main"
            ) == []


async def test_timeout_report(sqlite_db, fake_provider, fake_hosts, runtime) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            _, _, components, started, instance = await _started_prebuild(
                session, fake_provider, fake_hosts, runtime
            )
            updater = PrebuildStatusUpdater(components.workspaces)

            result = await updater.apply_instance_report(
                instance.id,
                phase=WorkspaceInstancePhase.STOPPED,
                status_version=1,
                timed_out=True,
            )

            assert result.prebuild_state == PrebuildState.TIMEOUT
            prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                started.prebuild_id
            )
            assert prebuild.error == TIMED_OUT_ERROR


async def test_reports_cannot_revive_aborted_prebuild(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, _, components, started, instance = await _started_prebuild(
                session, fake_provider, fake_hosts, runtime
            )
            await components.manager.cancel_prebuild(user, started.prebuild_id)
            updater = PrebuildStatusUpdater(components.workspaces)

            result = await updater.apply_instance_report(
                instance.id, phase=WorkspaceInstancePhase.STOPPED, status_version=1
            )

            assert result.instance_updated is True
            assert result.prebuild_state == PrebuildState.ABORTED


async def test_superseded_instance_does_not_drive_prebuild(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project, components, started, first = await _started_prebuild(
                session, fake_provider, fake_hosts, runtime
            )
            updater = PrebuildStatusUpdater(components.workspaces)
            await updater.apply_instance_report(
                first.id,
                phase=WorkspaceInstancePhase.STOPPED,
                status_version=1,
                failed_reason="flaky",
            )
            await components.manager.retrigger_prebuild(
                user, project, started.workspace_id
            )

            late = await updater.apply_instance_report(
                first.id,
                phase=WorkspaceInstancePhase.STOPPED,
                status_version=2,
                failed_reason="flaky again",
            )

            assert late.prebuild_state == PrebuildState.QUEUED
            prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                started.prebuild_id
            )
            assert prebuild.state == PrebuildState.QUEUED
            assert prebuild.error is None


async def test_unknown_instance(sqlite_db, fake_provider, fake_hosts, runtime) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            _, _, components, _, _ = await _started_prebuild(
                session, fake_provider, fake_hosts, runtime
            )
            updater = PrebuildStatusUpdater(components.workspaces)

            assert (
                await updater.apply_instance_report(
                    uuid4(), phase=WorkspaceInstancePhase.RUNNING, status_version=1
                )
                is None
            )
