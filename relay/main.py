import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from relay.api.deps import get_signer
from relay.api.v1.router import router as v1_router
from relay.core.clock import system_clock
from relay.core.config import settings
from relay.core.crypto import get_vault
from relay.core.db import SessionLocal
from relay.core.telemetry import setup_telemetry
from relay.providers.http import close_http_client, get_http_client
from relay.services.outbox_processor import build_outbox_processor
from relay.services.runner import OutboxRunner

log = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    processor = build_outbox_processor(
        SessionLocal,
        http=get_http_client(),
        vault=get_vault(),
        signer=get_signer(),
        settings=settings,
        clock=system_clock,
    )
    runner = OutboxRunner(
        processor.process_due,
        interval_seconds=settings.outbox_runner_interval_seconds,
        enabled=settings.outbox_runner_enabled,
        clock=system_clock,
    )
    app.state.outbox_runner = runner
    runner.start()
    try:
        yield
    finally:
        await runner.stop()
        await close_http_client()


app = FastAPI(title="Relay API", version="0.1.0", lifespan=lifespan)

if settings.telemetry_enabled:
    setup_telemetry(app)
app.include_router(v1_router)
