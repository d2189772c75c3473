"""Tests for the prebuild trigger coordinator against an sqlite database."""

from __future__ import annotations

from datetime import timedelta
from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from api_service.db.models import TeamMemberRole, utcnow
from devplane.billing.entitlement import MayStartWorkspaceResult
from devplane.config.settings import settings
from devplane.errors import ApplicationError, ErrorCode, WorkspaceRunningError
from devplane.prebuilds.manager import (
    INACTIVE_PROJECT_ERROR,
    INACTIVE_REPOSITORY_ERROR,
    RATE_LIMITED_ERROR,
    SUPERSEDED_ERROR,
)
from devplane.prebuilds.models import PrebuildState
from devplane.prebuilds.wiring import build_prebuild_components
from devplane.projects.repositories import ProjectRepository
from devplane.users.repositories import UserRepository
from devplane.workspaces.context import CommitContext, CommitInfo
from devplane.workspaces.models import WorkspaceInstancePhase, WorkspaceType

pytestmark = [pytest.mark.asyncio]

CLONE_URL = "https://github.com/acme/app.git"
CONFIG = "tasks:\n  - init: make\n    command: make run\n"
ENABLED = {"prebuilds": {"enable": True, "branchStrategy": "all-branches"}}


def _settings(**prebuilds):
    return settings.model_copy(
        update={"prebuilds": settings.prebuilds.model_copy(update=prebuilds)}
    )


def _context(fake_provider, revision: str, ref: str = "main") -> CommitContext:
    return CommitContext(
        title=f"acme/app - {ref}",
        repository=fake_provider.repos[("acme", "app")],
        revision=revision,
        ref=ref,
        normalized_context_url=f"https://github.com/acme/app/tree/{ref}",
    )


async def _seed(session, fake_provider, *, project_settings=None, blocked=False):
    fake_provider.add_repo("acme", "app", branches={"main": "c1"}, config=CONFIG)
    users = UserRepository(session)
    projects = ProjectRepository(session)
    user = await users.create_user(name="dev", blocked=blocked)
    team = await users.create_team(name="acme")
    await users.add_team_member(team.id, user.id, role=TeamMemberRole.OWNER)
    project = await projects.create_project(
        name="app",
        clone_url=CLONE_URL,
        team_id=team.id,
        user_id=user.id,
        settings=ENABLED if project_settings is None else project_settings,
    )
    return user, project


async def _make_available(workspaces, prebuild_id):
    prebuild = await workspaces.find_prebuilt_workspace_by_id(prebuild_id)
    await workspaces.update_prebuild_state(prebuild, PrebuildState.BUILDING)
    await workspaces.update_prebuild_state(prebuild, PrebuildState.AVAILABLE)


async def test_start_prebuild_creates_and_starts_workspace(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(session, fake_provider)
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )

            result = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )

            assert result.done is False
            prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                result.prebuild_id
            )
            assert prebuild.state == PrebuildState.QUEUED
            assert prebuild.commit == "c1"
            assert prebuild.branch == "main"
            workspace = await components.workspaces.find_by_id(result.workspace_id)
            assert workspace.type == WorkspaceType.PREBUILD
            assert "commitHistory" not in workspace.context

            assert len(runtime.started) == 1
            request = runtime.started[0]
            assert request.workspace_id == result.workspace_id
            assert "full_workspace_backup" not in request.feature_flags

            info = await components.workspaces.find_prebuild_info(result.prebuild_id)
            assert info.change_hash == "c1"
            assert info.change_title == "commit c1"
            assert info.project_name == "app"

            usage = await components.projects.get_usage(project.id)
            assert usage.last_webhook_received is not None
            assert usage.last_workspace_start is None


async def test_provided_commit_info_is_stored(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(session, fake_provider)
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )
            commit_info = CommitInfo(
                sha="c1", author="Ada", commit_message="Add engine", author_date="2026-10-01"
            )

            result = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project, commit_info=commit_info
            )

            info = await components.workspaces.find_prebuild_info(result.prebuild_id)
            assert (info.change_author, info.change_title, info.change_date) == (
                "Ada",
                "Add engine",
                "2026-10-01",
            )


async def test_existing_prebuild_for_commit_is_reused(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(session, fake_provider)
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )
            first = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )

            second = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )

            assert second.done is True
            assert second.prebuild_id == first.prebuild_id
            assert second.workspace_id == first.workspace_id
            assert len(runtime.started) == 1


async def test_changed_tasks_or_force_create_a_new_prebuild(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(session, fake_provider)
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )
            first = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )

            fake_provider.files[("acme", "app", ".gitpod.yml")] = (
                "tasks:\n  - init: make all\n"
            )
            changed = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )
            forced = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project, force_prebuild=True
            )

            assert changed.done is False
            assert changed.prebuild_id != first.prebuild_id
            assert forced.done is False
            assert forced.prebuild_id not in (first.prebuild_id, changed.prebuild_id)


async def test_unsuccessful_prebuild_is_not_reused(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(session, fake_provider)
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )
            first = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )
            await components.manager.cancel_prebuild(user, first.prebuild_id)

            second = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )

            assert second.done is False
            assert second.prebuild_id != first.prebuild_id


async def test_newer_commit_aborts_running_prebuild_on_branch(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(session, fake_provider)
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )
            other_branch = await components.manager.start_prebuild(
                user, _context(fake_provider, "f1", ref="feature"), project
            )
            older = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )

            newer = await components.manager.start_prebuild(
                user, _context(fake_provider, "c2"), project
            )

            older_prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                older.prebuild_id
            )
            assert older_prebuild.state == PrebuildState.ABORTED
            assert older_prebuild.error == SUPERSEDED_ERROR
            assert "newer commit" in older_prebuild.error
            untouched = await components.workspaces.find_prebuilt_workspace_by_id(
                other_branch.prebuild_id
            )
            assert untouched.state == PrebuildState.QUEUED
            assert newer.done is False
            assert len(runtime.stopped) == 1
            assert runtime.stopped[0][3].value == "abort"


async def test_keep_outdated_prebuilds_running(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(
                session,
                fake_provider,
                project_settings={**ENABLED, "keepOutdatedPrebuildsRunning": True},
            )
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )
            older = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )

            await components.manager.start_prebuild(
                user, _context(fake_provider, "c2"), project
            )

            prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                older.prebuild_id
            )
            assert prebuild.state == PrebuildState.QUEUED
            assert runtime.stopped == []


async def _two_active_prebuilds(session, fake_provider, fake_hosts, runtime):
    user, project = await _seed(
        session,
        fake_provider,
        project_settings={**ENABLED, "keepOutdatedPrebuildsRunning": True},
    )
    components = build_prebuild_components(session, hosts=fake_hosts, runtime=runtime)
    older = await components.manager.start_prebuild(
        user, _context(fake_provider, "c1"), project
    )
    newer = await components.manager.start_prebuild(
        user, _context(fake_provider, "c2"), project
    )
    return user, project, components, older, newer


async def test_abort_marks_prebuild_aborted_when_stop_fails(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project, components, older, newer = await _two_active_prebuilds(
                session, fake_provider, fake_hosts, runtime
            )
            failing = await components.workspaces.find_running_instance(older.workspace_id)
            healthy = await components.workspaces.find_running_instance(newer.workspace_id)
            runtime.fail_stop_for.add(failing.id)

            aborted = await components.manager.abort_prebuilds_for_branch(
                project, user, "main"
            )

            assert aborted == 2
            for started in (older, newer):
                prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                    started.prebuild_id
                )
                assert prebuild.state == PrebuildState.ABORTED
                assert prebuild.error == SUPERSEDED_ERROR
            assert [item[0] for item in runtime.stopped] == [healthy.id]


async def test_abort_failure_for_one_prebuild_does_not_stop_others(
    sqlite_db, fake_provider, fake_hosts, runtime, monkeypatch
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project, components, older, newer = await _two_active_prebuilds(
                session, fake_provider, fake_hosts, runtime
            )
            update_prebuild_state = components.workspaces.update_prebuild_state

            async def flaky_update(prebuild, state, **kwargs):
                if prebuild.id == newer.prebuild_id:
                    raise RuntimeError("database unavailable")
                return await update_prebuild_state(prebuild, state, **kwargs)

            monkeypatch.setattr(
                components.workspaces, "update_prebuild_state", flaky_update
            )

            aborted = await components.manager.abort_prebuilds_for_branch(
                project, user, "main"
            )

            assert aborted == 1
            kept = await components.workspaces.find_prebuilt_workspace_by_id(
                newer.prebuild_id
            )
            superseded = await components.workspaces.find_prebuilt_workspace_by_id(
                older.prebuild_id
            )
            assert kept.state == PrebuildState.QUEUED
            assert superseded.state == PrebuildState.ABORTED
            assert len(runtime.stopped) == 2


async def test_rate_limited_prebuild_is_aborted_without_starting(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(
                session,
                fake_provider,
                project_settings={**ENABLED, "keepOutdatedPrebuildsRunning": True},
            )
            components = build_prebuild_components(
                session,
                hosts=fake_hosts,
                runtime=runtime,
                app_settings=_settings(
                    prebuild_rate_limits={CLONE_URL: {"limit": 2, "period": 60}}
                ),
            )
            first = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )
            second = await components.manager.start_prebuild(
                user, _context(fake_provider, "c2"), project
            )

            limited = await components.workspaces.find_prebuilt_workspace_by_id(
                second.prebuild_id
            )
            assert second.done is False
            assert limited.state == PrebuildState.ABORTED
            assert limited.error == RATE_LIMITED_ERROR
            assert [request.workspace_id for request in runtime.started] == [
                first.workspace_id
            ]


async def test_inactive_project_suppresses_prebuild(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(session, fake_provider)
            await ProjectRepository(session).mark_workspace_started(
                project.id, at=utcnow() - timedelta(days=30)
            )
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )

            result = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )

            prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                result.prebuild_id
            )
            assert prebuild.state == PrebuildState.ABORTED
            assert prebuild.error == INACTIVE_PROJECT_ERROR
            assert runtime.started == []


async def test_inactive_repository_suppresses_projectless_prebuild(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, _ = await _seed(session, fake_provider)
            components = build_prebuild_components(
                session,
                hosts=fake_hosts,
                runtime=runtime,
                app_settings=_settings(inactivity_period_for_repos_days=7),
            )

            result = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1")
            )

            prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                result.prebuild_id
            )
            assert prebuild.project_id is None
            assert prebuild.state == PrebuildState.ABORTED
            assert prebuild.error == INACTIVE_REPOSITORY_ERROR
            assert runtime.started == []


async def test_blocked_user_is_rejected(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(session, fake_provider, blocked=True)
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )

            with pytest.raises(ApplicationError) as exc_info:
                await components.manager.start_prebuild(
                    user, _context(fake_provider, "c1"), project
                )

            assert exc_info.value.code == ErrorCode.USER_BLOCKED
            assert runtime.started == []


async def test_spending_limit_rejects_and_entitlement_errors_fail_open(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(session, fake_provider)
            limited = SimpleNamespace(
                may_start_workspace=AsyncMock(
                    return_value=MayStartWorkspaceResult(
                        usage_limit_reached_on_cost_center=f"team:{project.team_id}"
                    )
                )
            )
            broken = SimpleNamespace(
                may_start_workspace=AsyncMock(side_effect=RuntimeError("billing down"))
            )

            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime, entitlement=limited
            )
            with pytest.raises(ApplicationError) as exc_info:
                await components.manager.start_prebuild(
                    user, _context(fake_provider, "c1"), project
                )
            assert exc_info.value.code == ErrorCode.PAYMENT_SPENDING_LIMIT_REACHED
            assert exc_info.value.data == {"attributionId": f"team:{project.team_id}"}

            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime, entitlement=broken
            )
            result = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )
            assert result.done is False
            assert len(runtime.started) == 1


async def test_every_nth_commit_reuses_recent_prebuild(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(
                session,
                fake_provider,
                project_settings={**ENABLED, "prebuildEveryNthCommit": 3},
            )
            fake_provider.set_history("c4", "c3", "c2", "c1")
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )
            first = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )
            await _make_available(components.workspaces, first.prebuild_id)

            within = await components.manager.start_prebuild(
                user, _context(fake_provider, "c2"), project
            )
            beyond = await components.manager.start_prebuild(
                user, _context(fake_provider, "c4"), project
            )

            assert within.done is True
            assert within.prebuild_id == first.prebuild_id
            assert beyond.done is False
            assert beyond.prebuild_id != first.prebuild_id


async def test_passlisted_repository_builds_incrementally(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(session, fake_provider)
            fake_provider.set_history("c2", "c1")
            components = build_prebuild_components(
                session,
                hosts=fake_hosts,
                runtime=runtime,
                app_settings=_settings(
                    incremental_prebuilds_repository_passlist=("https://github.com/acme/app",)
                ),
            )
            first = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )
            await _make_available(components.workspaces, first.prebuild_id)

            second = await components.manager.start_prebuild(
                user, _context(fake_provider, "c2"), project
            )

            workspace = await components.workspaces.find_by_id(second.workspace_id)
            assert workspace.based_on_prebuild_id == first.prebuild_id
            assert "commitHistory" not in workspace.context


async def test_incremental_setting_without_available_base(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(
                session,
                fake_provider,
                project_settings={**ENABLED, "useIncrementalPrebuilds": True},
            )
            fake_provider.set_history("c2", "c1")
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )
            await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )

            second = await components.manager.start_prebuild(
                user, _context(fake_provider, "c2"), project
            )

            workspace = await components.workspaces.find_by_id(second.workspace_id)
            assert workspace.based_on_prebuild_id is None


async def test_retrigger_requires_stopped_workspace_and_requeues(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(session, fake_provider)
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )
            started = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )

            with pytest.raises(WorkspaceRunningError):
                await components.manager.retrigger_prebuild(
                    user, project, started.workspace_id
                )

            instance = await components.workspaces.find_running_instance(
                started.workspace_id
            )
            await components.workspaces.update_instance_partial(
                instance.id,
                phase=WorkspaceInstancePhase.STOPPED,
                failed_reason="build failed",
            )
            prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                started.prebuild_id
            )
            await components.workspaces.update_prebuild_state(
                prebuild, PrebuildState.FAILED, error="build failed"
            )

            result = await components.manager.retrigger_prebuild(
                user, project, started.workspace_id
            )

            assert result.prebuild_id == started.prebuild_id
            assert result.done is False
            prebuild = await components.workspaces.find_prebuilt_workspace_by_id(
                started.prebuild_id
            )
            assert prebuild.state == PrebuildState.QUEUED
            assert prebuild.error is None
            assert len(runtime.started) == 2
            assert len(await components.workspaces.find_instances(started.workspace_id)) == 2


async def test_retrigger_unknown_workspace(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(session, fake_provider)
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )

            with pytest.raises(ApplicationError) as exc_info:
                await components.manager.retrigger_prebuild(user, project, project.id)

            assert exc_info.value.code == ErrorCode.NOT_FOUND


async def test_cancel_prebuild_stops_instance(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(session, fake_provider)
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )
            started = await components.manager.start_prebuild(
                user, _context(fake_provider, "c1"), project
            )

            cancelled = await components.manager.cancel_prebuild(user, started.prebuild_id)
            again = await components.manager.cancel_prebuild(user, started.prebuild_id)

            assert cancelled.state == PrebuildState.ABORTED
            assert cancelled.error is None
            assert again.state == PrebuildState.ABORTED
            assert len(runtime.stopped) == 1


async def test_runtime_start_failure_aborts_prebuild(
    sqlite_db, fake_provider, fake_hosts, runtime
) -> None:
    runtime.fail_start = True
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            user, project = await _seed(session, fake_provider)
            components = build_prebuild_components(
                session, hosts=fake_hosts, runtime=runtime
            )

            with pytest.raises(RuntimeError, match="runtime unavailable"):
                await components.manager.start_prebuild(
                    user, _context(fake_provider, "c1"), project
                )

            prebuild = await components.workspaces.find_prebuilt_workspace_by_commit(
                CLONE_URL, "c1"
            )
            assert prebuild.state == PrebuildState.ABORTED
            assert prebuild.error == "runtime unavailable"
            instances = await components.workspaces.find_instances(
                prebuild.build_workspace_id
            )
            assert instances[0].phase == WorkspaceInstancePhase.STOPPED
            assert instances[0].failed_reason == "runtime unavailable"
