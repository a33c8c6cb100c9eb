import asyncio
import logging

from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine

from worker.celery_app import celery
from relay.core.clock import system_clock
from relay.core.config import settings
from relay.core.crypto import get_vault
from relay.core.signing import StateSigner
import relay.models  # noqa: F401  # ensures Models are registered
from relay.providers.http import ProviderHttpClient
from relay.services.outbox_processor import build_outbox_processor

log = logging.getLogger(__name__)


async def _process_due_outbox(limit: int, types: list[str] | None) -> dict:
    # asyncio.run gives every task a fresh loop; engine and client must not outlive it
    engine = create_async_engine(settings.database_url, pool_pre_ping=True)
    Session = async_sessionmaker(engine, expire_on_commit=False)
    http = ProviderHttpClient(timeout_seconds=settings.provider_timeout_seconds)

    try:
        processor = build_outbox_processor(
            Session,
            http=http,
            vault=get_vault(),
            signer=StateSigner(settings.integration_secret_key.get_secret_value()),
            settings=settings,
            clock=system_clock,
        )
        summary = await processor.process_due(limit=limit, types=types)
    finally:
        await http.aclose()
        await engine.dispose()

    return summary.model_dump()


@celery.task(name="worker.tasks.process_due_outbox", bind=True)
def process_due_outbox(self, limit: int | None = None, types: list[str] | None = None) -> dict:
    result = asyncio.run(_process_due_outbox(limit or settings.outbox_batch_size, types))
    log.info("process_due_outbox %s", result)
    return result
