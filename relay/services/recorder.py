from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from pydantic_core import to_jsonable_python
from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from relay.models.domain import PROMO_NAME_MAX, EmailLog, HistoryEntry, Post, ScheduleItem
from relay.services.redaction import redact_payload

log = logging.getLogger(__name__)


class DomainRecorder:
    """Side-effect rows written after a successful provider call."""

    def __init__(self, db: AsyncSession):
        self._db = db

    async def add_post(
        self,
        owner_id: str,
        brand_id: str,
        *,
        platform: str,
        posted_at: datetime,
        media_type: str,
        caption_used: str,
        promo_name: str | None = None,
        notes: str | None = None,
        provider_meta: dict[str, Any] | None = None,
    ) -> Post:
        post = Post(
            owner_id=owner_id,
            brand_id=brand_id,
            platform=platform,
            posted_at=posted_at,
            media_type=media_type,
            caption_used=caption_used,
            promo_name=promo_name[:PROMO_NAME_MAX] if promo_name else None,
            notes=notes,
            status="posted",
            provider_meta=to_jsonable_python(provider_meta or {}, fallback=str),
        )
        self._db.add(post)
        await self._db.flush()
        return post

    async def mark_schedule_posted(self, owner_id: str, brand_id: str, schedule_id: str) -> bool:
        res = await self._db.execute(
            update(ScheduleItem)
            .where(
                ScheduleItem.id == schedule_id,
                ScheduleItem.owner_id == owner_id,
                ScheduleItem.brand_id == brand_id,
            )
            .values(status="posted")
            .execution_options(synchronize_session=False)
        )
        return bool(res.rowcount)

    async def mark_email_sent(
        self,
        owner_id: str,
        brand_id: str,
        email_log_id: str,
        *,
        provider_id: str | None,
        sent_at: datetime,
    ) -> bool:
        res = await self._db.execute(
            update(EmailLog)
            .where(
                EmailLog.id == email_log_id,
                EmailLog.owner_id == owner_id,
                EmailLog.brand_id == brand_id,
            )
            .values(status="sent", provider_id=provider_id, sent_at=sent_at, error=None)
            .execution_options(synchronize_session=False)
        )
        return bool(res.rowcount)

    async def add_history(self, owner_id: str, brand_id: str, *, action: str, payload: Any, result: Any) -> None:
        # history must never fail a dispatch that already reached the provider;
        # a rejected row only rolls back its own savepoint
        try:
            entry = HistoryEntry(
                owner_id=owner_id,
                brand_id=brand_id,
                action=action,
                payload=_as_object(redact_payload(to_jsonable_python(payload, fallback=str))),
                result=_as_object(redact_payload(to_jsonable_python(result, fallback=str))),
            )
            async with self._db.begin_nested():
                self._db.add(entry)
                await self._db.flush()
        except Exception:
            log.exception("history write failed action=%s owner_id=%s brand_id=%s", action, owner_id, brand_id)


def _as_object(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value
    return {"value": value}
