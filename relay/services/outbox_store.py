from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Iterable

from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.ids import gen_lease_id
from relay.models.outbox import OutboxRecord
from relay.schemas.outbox import OutboxStatus, coerce_outbox_type

MAX_ERROR_CHARS = 1000


def truncate_error(message: str) -> str:
    return message[:MAX_ERROR_CHARS]


class OutboxStore:
    """
    Persistence for outbox records.

    State changes after a claim are conditional on the lease id, so a processor
    that lost its lease never overwrites another processor's write-back.
    """

    def __init__(self, db: AsyncSession):
        self._db = db

    async def enqueue(
        self,
        owner_id: str,
        brand_id: str,
        type_: str,
        payload: dict[str, Any] | None,
        scheduled_for: datetime | None = None,
        *,
        now: datetime,
    ) -> OutboxRecord:
        kind = coerce_outbox_type(type_)
        row = OutboxRecord(
            owner_id=owner_id,
            brand_id=brand_id,
            type=kind.value,
            payload=dict(payload or {}),
            status=OutboxStatus.queued.value,
            attempts=0,
            scheduled_for=scheduled_for or now,
        )
        self._db.add(row)
        await self._db.flush()
        return row

    async def get(self, owner_id: str, brand_id: str, outbox_id: str) -> OutboxRecord | None:
        stmt = select(OutboxRecord).where(
            OutboxRecord.id == outbox_id,
            OutboxRecord.owner_id == owner_id,
            OutboxRecord.brand_id == brand_id,
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def get_by_id(self, outbox_id: str) -> OutboxRecord | None:
        return await self._db.get(OutboxRecord, outbox_id, populate_existing=True)

    async def list_for_tenant(
        self,
        owner_id: str,
        brand_id: str,
        *,
        status: OutboxStatus | None = None,
        limit: int = 50,
    ) -> list[OutboxRecord]:
        stmt = select(OutboxRecord).where(
            OutboxRecord.owner_id == owner_id,
            OutboxRecord.brand_id == brand_id,
        )
        if status:
            stmt = stmt.where(OutboxRecord.status == status.value)
        stmt = stmt.order_by(OutboxRecord.created_at.desc(), OutboxRecord.id.desc()).limit(limit)
        return list((await self._db.execute(stmt)).scalars().all())

    async def list_due(
        self,
        now: datetime,
        *,
        limit: int = 20,
        types: Iterable[str] | None = None,
    ) -> list[str]:
        """Ids of queued records due at ``now``, oldest-due first."""
        stmt = select(OutboxRecord.id).where(
            OutboxRecord.status == OutboxStatus.queued.value,
            OutboxRecord.scheduled_for.is_not(None),
            OutboxRecord.scheduled_for <= now,
            or_(OutboxRecord.lease_expires_at.is_(None), OutboxRecord.lease_expires_at < now),
        )
        type_filter = [coerce_outbox_type(t).value for t in (types or ())]
        if type_filter:
            stmt = stmt.where(OutboxRecord.type.in_(type_filter))

        stmt = stmt.order_by(
            OutboxRecord.scheduled_for.asc(),
            OutboxRecord.created_at.asc(),
            OutboxRecord.id.asc(),
        ).limit(limit)
        return list((await self._db.execute(stmt)).scalars().all())

    async def claim(self, outbox_id: str, *, now: datetime, lease_seconds: int) -> str | None:
        """Take a lease on a due record. Returns the lease id, or None if someone else holds it."""
        lease_id = gen_lease_id()
        res = await self._db.execute(
            update(OutboxRecord)
            .where(
                OutboxRecord.id == outbox_id,
                OutboxRecord.status == OutboxStatus.queued.value,
                or_(OutboxRecord.lease_expires_at.is_(None), OutboxRecord.lease_expires_at < now),
            )
            .values(lease_id=lease_id, lease_expires_at=now + timedelta(seconds=lease_seconds))
            .execution_options(synchronize_session=False)
        )
        if not res.rowcount:
            return None
        return lease_id

    async def _write_back(self, outbox_id: str, lease_id: str, **values: Any) -> bool:
        res = await self._db.execute(
            update(OutboxRecord)
            .where(OutboxRecord.id == outbox_id, OutboxRecord.lease_id == lease_id)
            .values(lease_id=None, lease_expires_at=None, **values)
            .execution_options(synchronize_session=False)
        )
        return bool(res.rowcount)

    async def mark_sent(self, outbox_id: str, lease_id: str, *, attempts: int) -> bool:
        return await self._write_back(
            outbox_id,
            lease_id,
            status=OutboxStatus.sent.value,
            attempts=attempts,
            last_error=None,
            scheduled_for=None,
        )

    async def mark_retry(self, outbox_id: str, lease_id: str, *, attempts: int, error: str, retry_at: datetime) -> bool:
        return await self._write_back(
            outbox_id,
            lease_id,
            status=OutboxStatus.queued.value,
            attempts=attempts,
            last_error=truncate_error(error),
            scheduled_for=retry_at,
        )

    async def mark_failed(self, outbox_id: str, lease_id: str, *, attempts: int, error: str) -> bool:
        return await self._write_back(
            outbox_id,
            lease_id,
            status=OutboxStatus.failed.value,
            attempts=attempts,
            last_error=truncate_error(error),
            scheduled_for=None,
        )
