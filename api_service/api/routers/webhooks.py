"""Webhook endpoints for the supported git hosts."""

from __future__ import annotations

import json
import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header, Query, Request
from fastapi.responses import JSONResponse

from devplane.prebuilds.wiring import PrebuildComponents
from devplane.schemas.prebuild_models import WebhookResponse
from devplane.webhooks.base import WebhookResult
from api_service.api.dependencies import get_prebuild_components

router = APIRouter(prefix="/apps", tags=["webhooks"])
logger = logging.getLogger(__name__)


async def _read_payload(request: Request) -> tuple[bytes, Optional[dict[str, Any]]]:
    """Return the raw body and its JSON object, or ``None`` when it is not one."""

    body = await request.body()
    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        logger.warning(
            "Ignoring webhook delivery without a JSON object body on %s", request.url.path
        )
        return body, None
    return body, payload


def _respond(result: WebhookResult) -> JSONResponse:
    body = WebhookResponse(
        message=result.message,
        event_id=result.event_id,
        prebuild_ids=result.prebuild_ids,
    )
    return JSONResponse(
        status_code=result.status_code,
        content=body.model_dump(by_alias=True),
    )


@router.post("/github")
async def github_webhook(
    request: Request,
    x_github_event: Optional[str] = Header(None),
    x_hub_signature_256: Optional[str] = Header(None),
    components: PrebuildComponents = Depends(get_prebuild_components),
) -> JSONResponse:
    """Receive GitHub app deliveries."""

    body, payload = await _read_payload(request)
    if payload is None:
        return _respond(await components.github.ignore_invalid_payload(body))
    result = await components.github.handle(
        x_github_event, payload, body=body, signature=x_hub_signature_256
    )
    return _respond(result)


@router.post("/ghe")
async def github_enterprise_webhook(
    request: Request,
    x_github_event: Optional[str] = Header(None),
    x_hub_signature_256: Optional[str] = Header(None),
    x_github_enterprise_host: Optional[str] = Header(None),
    components: PrebuildComponents = Depends(get_prebuild_components),
) -> JSONResponse:
    """Receive GitHub Enterprise repository push hooks."""

    body, payload = await _read_payload(request)
    if payload is None:
        return _respond(await components.github_enterprise.ignore_invalid_payload(body))
    result = await components.github_enterprise.handle(
        x_github_event,
        payload,
        body=body,
        signature=x_hub_signature_256,
        enterprise_host=x_github_enterprise_host,
    )
    return _respond(result)


@router.post("/gitlab")
async def gitlab_webhook(
    request: Request,
    x_gitlab_event: Optional[str] = Header(None),
    x_gitlab_token: Optional[str] = Header(None),
    components: PrebuildComponents = Depends(get_prebuild_components),
) -> JSONResponse:
    body, payload = await _read_payload(request)
    if payload is None:
        return _respond(await components.gitlab.ignore_invalid_payload(body))
    result = await components.gitlab.handle(x_gitlab_event, x_gitlab_token, payload)
    return _respond(result)


@router.post("/bitbucket")
async def bitbucket_webhook(
    request: Request,
    token: Optional[str] = Query(None),
    x_event_key: Optional[str] = Header(None),
    components: PrebuildComponents = Depends(get_prebuild_components),
) -> JSONResponse:
    body, payload = await _read_payload(request)
    if payload is None:
        return _respond(await components.bitbucket.ignore_invalid_payload(body))
    result = await components.bitbucket.handle(x_event_key, token, payload)
    return _respond(result)


@router.post("/bitbucketserver")
async def bitbucket_server_webhook(
    request: Request,
    token: Optional[str] = Query(None),
    components: PrebuildComponents = Depends(get_prebuild_components),
) -> JSONResponse:
    body, payload = await _read_payload(request)
    if payload is None:
        return _respond(await components.bitbucket_server.ignore_invalid_payload(body))
    result = await components.bitbucket_server.handle(token, payload)
    return _respond(result)


__all__ = ["router"]
