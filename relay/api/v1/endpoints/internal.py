from fastapi import APIRouter, Depends, Query

from relay.api.deps import get_outbox_runner
from relay.core.config import settings
from relay.schemas.outbox import OutboxType, ProcessSummary
from relay.services.internal_auth import require_cron_secret
from relay.services.runner import OutboxRunner

router = APIRouter()


@router.post(
    "/internal/outbox/process",
    response_model=ProcessSummary,
    dependencies=[Depends(require_cron_secret)],
)
async def process_outbox(
    limit: int | None = Query(default=None, ge=1, le=100),
    types: list[OutboxType] | None = Query(default=None),
    runner: OutboxRunner = Depends(get_outbox_runner),
) -> ProcessSummary:
    summary = await runner.tick(
        limit=limit or settings.outbox_batch_size,
        types=[t.value for t in types] if types else None,
    )
    # a run already in flight in this process
    return summary or ProcessSummary()
