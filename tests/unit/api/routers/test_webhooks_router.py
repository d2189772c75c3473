"""Unit tests for the git host webhook endpoints."""

from __future__ import annotations

import json
from types import SimpleNamespace
from typing import Iterator
from unittest.mock import AsyncMock

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient

from api_service.api.dependencies import get_prebuild_components
from api_service.api.routers.webhooks import router
from devplane.webhooks.base import WebhookResult


@pytest.fixture
def client() -> Iterator[tuple[TestClient, SimpleNamespace]]:
    app = FastAPI()
    app.include_router(router)
    components = SimpleNamespace(
        github=AsyncMock(),
        github_enterprise=AsyncMock(),
        gitlab=AsyncMock(),
        bitbucket=AsyncMock(),
        bitbucket_server=AsyncMock(),
    )
    for ingestor in vars(components).values():
        ingestor.handle.return_value = WebhookResult()
        ingestor.ignore_invalid_payload.return_value = WebhookResult(
            message="Invalid payload.", event_id="ignored"
        )
    app.dependency_overrides[get_prebuild_components] = lambda: components

    with TestClient(app) as test_client:
        yield test_client, components
    app.dependency_overrides.clear()


def test_github_passes_raw_body_and_signature(
    client: tuple[TestClient, SimpleNamespace]
) -> None:
    test_client, components = client
    components.github.handle.return_value = WebhookResult(
        event_id="e1", prebuild_ids=["p1"]
    )
    body = json.dumps({"ref": "refs/heads/main"}).encode()

    response = test_client.post(
        "/apps/github",
        content=body,
        headers={
            "X-GitHub-Event": "push",
            "X-Hub-Signature-256": "sha256=abc",
            "Content-Type": "application/json",
        },
    )

    assert response.status_code == 200
    assert response.json() == {"message": "OK", "eventId": "e1", "prebuildIds": ["p1"]}
    components.github.handle.assert_awaited_once_with(
        "push", {"ref": "refs/heads/main"}, body=body, signature="sha256=abc"
    )


def test_gitlab_uses_token_header_and_status(
    client: tuple[TestClient, SimpleNamespace]
) -> None:
    test_client, components = client
    components.gitlab.handle.return_value = WebhookResult(status_code=201)

    response = test_client.post(
        "/apps/gitlab",
        json={"ref": "refs/heads/dev"},
        headers={"X-Gitlab-Event": "Push Hook", "X-Gitlab-Token": "u|t"},
    )

    assert response.status_code == 201
    components.gitlab.handle.assert_awaited_once_with(
        "Push Hook", "u|t", {"ref": "refs/heads/dev"}
    )


def test_bitbucket_endpoints_read_token_query(
    client: tuple[TestClient, SimpleNamespace]
) -> None:
    test_client, components = client
    components.bitbucket.handle.return_value = WebhookResult(
        status_code=401, message="Unauthorized."
    )

    cloud = test_client.post(
        "/apps/bitbucket",
        params={"token": "u|t"},
        json={"push": {}},
        headers={"X-Event-Key": "repo:push"},
    )
    server = test_client.post(
        "/apps/bitbucketserver",
        params={"token": "u|s"},
        json={"eventKey": "repo:refs_changed"},
    )

    assert cloud.status_code == 401
    assert cloud.json()["message"] == "Unauthorized."
    components.bitbucket.handle.assert_awaited_once_with("repo:push", "u|t", {"push": {}})
    assert server.status_code == 200
    components.bitbucket_server.handle.assert_awaited_once_with(
        "u|s", {"eventKey": "repo:refs_changed"}
    )


def test_github_enterprise_passes_host_and_signature(
    client: tuple[TestClient, SimpleNamespace]
) -> None:
    test_client, components = client
    components.github_enterprise.handle.return_value = WebhookResult(
        status_code=401, message="Unauthorized: Cannot find authorized user."
    )
    body = json.dumps({"ref": "refs/heads/main"}).encode()

    response = test_client.post(
        "/apps/ghe",
        content=body,
        headers={
            "X-GitHub-Event": "push",
            "X-Hub-Signature-256": "sha256=abc",
            "X-GitHub-Enterprise-Host": "ghe.example.com",
        },
    )

    assert response.status_code == 401
    components.github_enterprise.handle.assert_awaited_once_with(
        "push",
        {"ref": "refs/heads/main"},
        body=body,
        signature="sha256=abc",
        enterprise_host="ghe.example.com",
    )


@pytest.mark.parametrize(
    ("path", "ingestor"),
    [
        ("/apps/github", "github"),
        ("/apps/ghe", "github_enterprise"),
        ("/apps/gitlab", "gitlab"),
        ("/apps/bitbucket", "bitbucket"),
        ("/apps/bitbucketserver", "bitbucket_server"),
    ],
)
@pytest.mark.parametrize("body", [b"payload=not-json", b"[1, 2]"])
def test_unreadable_payload_is_acknowledged(
    client: tuple[TestClient, SimpleNamespace], path: str, ingestor: str, body: bytes
) -> None:
    test_client, components = client

    response = test_client.post(path, content=body)

    assert response.status_code == 200
    assert response.json() == {
        "message": "Invalid payload.",
        "eventId": "ignored",
        "prebuildIds": [],
    }
    target = getattr(components, ingestor)
    target.ignore_invalid_payload.assert_awaited_once_with(body)
    target.handle.assert_not_awaited()
