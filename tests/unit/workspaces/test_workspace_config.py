"""Tests for workspace configuration parsing and resolution."""

from __future__ import annotations

import pytest

from devplane.errors import ErrorCode
from devplane.hosts.base import HostContextProvider
from devplane.projects.repositories import ProjectRepository
from devplane.workspaces.config import (
    ConfigOrigin,
    ConfigParseError,
    ConfigResolver,
    WorkspaceConfig,
    filter_prebuild_tasks,
    has_prebuild_task,
    parse_config,
    resolve_image_source,
)
from devplane.workspaces.context import CommitContext, Repository, compute_hash

pytestmark = [pytest.mark.asyncio]

CLONE_URL = "https://github.com/acme/app.git"


def _context(host: str = "github.com") -> CommitContext:
    return CommitContext(
        repository=Repository(
            host=host,
            owner="acme",
            name="app",
            clone_url=f"https://{host}/acme/app.git",
        ),
        revision="c1",
        ref="main",
    )


def test_parse_config_keeps_unknown_keys_and_origin() -> None:
    config = parse_config(
        "image: node:20\nports:\n  - port: 3000\ntasks:\n  - init: npm ci\n",
        origin=ConfigOrigin.REPO,
        source=CLONE_URL,
    )

    assert config.origin == ConfigOrigin.REPO
    assert config.image == "node:20"
    assert config.to_storage()["ports"] == [{"port": 3000}]
    assert WorkspaceConfig.from_storage(config.to_storage()) == config


@pytest.mark.parametrize(
    "content",
    ["tasks: [\n", "- just\n- a list\n", "tasks: make\n", "tasks:\n  - make\n"],
)
def test_parse_config_rejects_malformed_files(content: str) -> None:
    with pytest.raises(ConfigParseError) as exc_info:
        parse_config(content, origin=ConfigOrigin.REPO, source=CLONE_URL)

    assert exc_info.value.code == ErrorCode.BAD_REQUEST


def test_empty_config_has_no_tasks() -> None:
    config = parse_config("", origin=ConfigOrigin.REPO, source=CLONE_URL)

    assert config.tasks == ()
    assert has_prebuild_task(config) is False


def test_filter_prebuild_tasks() -> None:
    tasks = [
        {"name": "setup", "before": "nvm use", "init": "npm ci", "command": "npm start"},
        {"command": "tail -f log"},
        {"prebuild": "make warm"},
    ]

    assert filter_prebuild_tasks(tasks) == [
        {"before": "nvm use", "init": "npm ci"},
        {"prebuild": "make warm"},
    ]
    assert filter_prebuild_tasks(None) == []


def test_resolve_image_source() -> None:
    context = _context()

    assert resolve_image_source(context, None, default_image="base") == {
        "baseImageResolved": "base"
    }
    assert resolve_image_source(
        context, WorkspaceConfig(image="node:20"), default_image="base"
    ) == {"baseImageResolved": "node:20"}
    assert resolve_image_source(
        context, WorkspaceConfig(image={"file": ".gitpod.Dockerfile"}), default_image="base"
    ) == {
        "dockerFilePath": ".gitpod.Dockerfile",
        "dockerContext": ".",
        "dockerFileSource": {"cloneUrl": CLONE_URL},
    }


def test_compute_hash_covers_additional_repositories() -> None:
    context = _context()
    lib = CommitContext.model_validate(
        {
            **context.model_dump(by_alias=True),
            "additionalRepositoryCheckoutInfo": [
                {"repository": context.repository.model_dump(by_alias=True), "revision": "l1"}
            ],
        }
    )

    assert compute_hash(context) == "c1"
    assert len(compute_hash(lib)) == 64
    assert compute_hash(lib) != compute_hash(
        lib.model_copy(
            update={
                "additional_repository_checkout_info": (
                    lib.additional_repository_checkout_info[0].model_copy(
                        update={"revision": "l2"}
                    ),
                )
            }
        )
    )


async def test_resolver_prefers_repository_file(fake_provider, fake_hosts) -> None:
    fake_provider.add_repo("acme", "app", config="tasks:\n  - init: make\n")
    resolver = ConfigResolver(fake_hosts, default_image="base")

    config = await resolver.fetch_config(None, _context())

    assert config.origin == ConfigOrigin.REPO
    assert config.tasks == ({"init": "make"},)


async def test_resolver_falls_back_to_project_then_default(sqlite_db) -> None:
    async with sqlite_db() as session_maker:
        async with session_maker() as session:
            projects = ProjectRepository(session)
            await projects.create_project(
                name="app",
                clone_url="https://gitlab.example.com/acme/app",
                config={".gitpod.yml": "tasks:\n  - init: derived\n"},
            )
            resolver = ConfigResolver(
                HostContextProvider(), projects=projects, default_image="base"
            )

            derived = await resolver.fetch_config(None, _context("gitlab.example.com"))
            default = await resolver.fetch_config(None, _context("git.example.org"))

            assert derived.origin == ConfigOrigin.DERIVED
            assert derived.tasks == ({"init": "derived"},)
            assert default.origin == ConfigOrigin.DEFAULT
            assert default.image == "base"
            assert default.tasks == ()
