"""Persistence for the webhook event log."""

from __future__ import annotations

import json
from typing import Any, Optional
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from devplane.webhooks.models import WebhookEvent, WebhookEventStatus

# Payload fields that carry whole commit lists and would bloat the log.
_TRIMMED_PAYLOAD_KEYS = ("commits", "head_commit")


class WebhookEventNotFoundError(Exception):
    def __init__(self, event_id: UUID) -> None:
        super().__init__(f"Webhook event {event_id} was not found")
        self.event_id = event_id


def serialize_raw_event(payload: Any) -> str:
    if isinstance(payload, dict):
        payload = {
            key: value
            for key, value in payload.items()
            if key not in _TRIMMED_PAYLOAD_KEYS
        }
    return json.dumps(payload, default=str)


class WebhookEventRepository:
    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def commit(self) -> None:
        await self._session.commit()

    async def create_event(
        self,
        *,
        type: str,
        raw_event: Any,
        status: WebhookEventStatus = WebhookEventStatus.RECEIVED,
    ) -> WebhookEvent:
        event = WebhookEvent(
            type=type,
            status=status,
            raw_event=serialize_raw_event(raw_event),
        )
        self._session.add(event)
        await self._session.flush()
        return event

    async def get_event(self, event_id: UUID) -> Optional[WebhookEvent]:
        return await self._session.get(WebhookEvent, event_id)

    async def update_event(self, event_id: UUID, **fields: Any) -> WebhookEvent:
        event = await self.get_event(event_id)
        if event is None:
            raise WebhookEventNotFoundError(event_id)
        for key, value in fields.items():
            if not hasattr(WebhookEvent, key):
                raise ValueError(f"Unknown webhook event field '{key}'")
            setattr(event, key, value)
        await self._session.flush()
        return event

    async def find_events_for_project(
        self, project_id: UUID, *, limit: int = 50
    ) -> list[WebhookEvent]:
        stmt = (
            select(WebhookEvent)
            .where(WebhookEvent.project_id == project_id)
            .order_by(WebhookEvent.creation_time.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


__all__ = [
    "WebhookEventNotFoundError",
    "WebhookEventRepository",
    "serialize_raw_event",
]
