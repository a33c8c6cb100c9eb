from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.ext.asyncio import AsyncSession

from relay.api.deps import get_clock
from relay.core.clock import Clock
from relay.core.db import get_db
from relay.schemas.outbox import OutboxEnqueue, OutboxOut, OutboxStatus
from relay.services.outbox_store import OutboxStore
from relay.services.tenant import Tenant, get_tenant

router = APIRouter()


@router.post("/outbox", response_model=OutboxOut, status_code=201)
async def enqueue_outbox(
    body: OutboxEnqueue,
    tenant: Tenant = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
    clock: Clock = Depends(get_clock),
) -> OutboxOut:
    row = await OutboxStore(db).enqueue(
        tenant.owner_id,
        tenant.brand_id,
        body.type.value,
        body.payload,
        body.scheduled_for,
        now=clock.now(),
    )
    await db.commit()
    return OutboxOut.model_validate(row, from_attributes=True)


@router.get("/outbox", response_model=list[OutboxOut])
async def list_outbox(
    status: OutboxStatus | None = None,
    limit: int = Query(default=50, ge=1, le=200),
    tenant: Tenant = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
) -> list[OutboxOut]:
    rows = await OutboxStore(db).list_for_tenant(tenant.owner_id, tenant.brand_id, status=status, limit=limit)
    return [OutboxOut.model_validate(r, from_attributes=True) for r in rows]


@router.get("/outbox/{outbox_id}", response_model=OutboxOut)
async def get_outbox(
    outbox_id: str,
    tenant: Tenant = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
) -> OutboxOut:
    row = await OutboxStore(db).get(tenant.owner_id, tenant.brand_id, outbox_id)
    if not row:
        raise HTTPException(status_code=404, detail="Outbox record not found")
    return OutboxOut.model_validate(row, from_attributes=True)
