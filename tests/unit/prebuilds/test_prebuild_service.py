"""Tests for the permission-checked prebuild service used by the REST API."""

from __future__ import annotations

from uuid import uuid4

import pytest

from api_service.db.models import TeamMemberRole
from devplane.errors import ApplicationError, ErrorCode
from devplane.prebuilds.models import PrebuildState
from devplane.prebuilds.wiring import build_prebuild_components
from devplane.projects.repositories import ProjectRepository
from devplane.users.repositories import UserRepository
from devplane.workspaces.models import WorkspaceInstancePhase

pytestmark = [pytest.mark.asyncio]

CLONE_URL = "https://github.com/acme/app.git"


async def _setup(session, fake_provider, fake_hosts, runtime):
    fake_provider.add_repo(
        "acme",
        "app",
        branches={"main": "c1", "dev": "d1"},
        config="tasks:\n  - init: make\n",
    )
    users = UserRepository(session)
    owner = await users.create_user(name="owner")
    outsider = await users.create_user(name="outsider")
    team = await users.create_team(name="acme")
    await users.add_team_member(team.id, owner.id, role=TeamMemberRole.OWNER)
    project = await ProjectRepository(session).create_project(
        name="app",
        clone_url=CLONE_URL,
        team_id=team.id,
        user_id=owner.id,
        settings={
            "prebuilds": {"enable": True},
            "keepOutdatedPrebuildsRunning": True,
        },
    )
    components = build_prebuild_components(session, hosts=fake_hosts, runtime=runtime)
    return owner, outsider, project, components


async def test_trigger_defaults_to_the_default_branch(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            owner, _, project, components = await _setup(
                session, fake_provider, fake_hosts, runtime
            )
            service = components.prebuild_service

            default = await service.trigger_prebuild(owner, project.id)
            dev = await service.trigger_prebuild(owner, project.id, branch="dev")

            default_prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                default.prebuild_id
            )
            dev_prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                dev.prebuild_id
            )
            assert (default_prebuild.branch, default_prebuild.commit) == ("main", "c1")
            assert (dev_prebuild.branch, dev_prebuild.commit) == ("dev", "d1")
            info = await components.workspaces.find_prebuild_info(dev.prebuild_id)
            assert info.change_url == "https://github.com/acme/app/tree/dev"

        async with session_maker() as fresh:
            listed = await build_prebuild_components(
                fresh, hosts=fake_hosts, runtime=runtime
            ).prebuild_service.list_prebuilds(owner, project.id)
            assert {item.prebuild.commit for item in listed} == {"c1", "d1"}


async def test_trigger_unknown_branch(sqlite_db, fake_provider, fake_hosts, runtime) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            owner, _, project, components = await _setup(
                session, fake_provider, fake_hosts, runtime
            )

            with pytest.raises(ApplicationError) as exc_info:
                await components.prebuild_service.trigger_prebuild(
                    owner, project.id, branch="missing"
                )

            assert exc_info.value.code == ErrorCode.NOT_FOUND


async def test_outsiders_cannot_see_or_trigger_prebuilds(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            owner, outsider, project, components = await _setup(
                session, fake_provider, fake_hosts, runtime
            )
            service = components.prebuild_service
            started = await service.trigger_prebuild(owner, project.id)

            for call in (
                service.list_prebuilds(outsider, project.id),
                service.trigger_prebuild(outsider, project.id),
                service.get_prebuild(outsider, started.prebuild_id),
                service.cancel_prebuild(outsider, started.prebuild_id),
            ):
                with pytest.raises(ApplicationError) as exc_info:
                    await call
                assert exc_info.value.code == ErrorCode.NOT_FOUND


async def test_list_filters_and_latest(sqlite_db, fake_provider, fake_hosts, runtime) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            owner, _, project, components = await _setup(
                session, fake_provider, fake_hosts, runtime
            )
            service = components.prebuild_service
            await service.trigger_prebuild(owner, project.id)
            newest = await service.trigger_prebuild(owner, project.id, branch="dev")

            latest = await service.list_prebuilds(owner, project.id, latest=True)
            main_only = await service.list_prebuilds(owner, project.id, branch="main")

            assert [item.prebuild.id for item in latest] == [newest.prebuild_id]
            assert [item.prebuild.branch for item in main_only] == ["main"]
            assert main_only[0].status == PrebuildState.QUEUED
            assert main_only[0].info.change_hash == "c1"


async def test_get_cancel_and_retrigger(sqlite_db, fake_provider, fake_hosts, runtime) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            owner, _, project, components = await _setup(
                session, fake_provider, fake_hosts, runtime
            )
            service = components.prebuild_service
            started = await service.trigger_prebuild(owner, project.id)

            detail = await service.get_prebuild(owner, started.prebuild_id)
            cancelled = await service.cancel_prebuild(owner, started.prebuild_id)
            instance = (await components.workspaces.find_instances(started.workspace_id))[0]
            await service.report_instance_status(
                instance.id, phase=WorkspaceInstancePhase.STOPPED, status_version=1
            )
            retriggered = await service.retrigger_prebuild(owner, started.prebuild_id)

            assert detail.status == PrebuildState.QUEUED
            assert detail.info.project_name == "app"
            assert cancelled.state == PrebuildState.ABORTED
            assert retriggered.prebuild_id == started.prebuild_id
            prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                started.prebuild_id
            )
            assert prebuild.state == PrebuildState.QUEUED


async def test_unknown_ids_are_not_found(sqlite_db, fake_provider, fake_hosts, runtime) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            owner, _, _, components = await _setup(
                session, fake_provider, fake_hosts, runtime
            )
            service = components.prebuild_service

            for call in (
                service.list_prebuilds(owner, uuid4()),
                service.get_prebuild(owner, uuid4()),
                service.report_instance_status(
                    uuid4(), phase=WorkspaceInstancePhase.RUNNING, status_version=1
                ),
            ):
                with pytest.raises(ApplicationError) as exc_info:
                    await call
                assert exc_info.value.code == ErrorCode.NOT_FOUND
