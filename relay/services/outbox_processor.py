from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Literal

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from relay.core.clock import Clock
from relay.core.config import Settings
from relay.core.crypto import SecretVault
from relay.core.signing import StateSigner
from relay.core.telemetry import tracer
from relay.providers.http import ProviderHttpClient
from relay.schemas.outbox import ProcessSummary
from relay.services.digest import RecentPostsDigestRenderer
from relay.services.dispatcher import OutboxDispatcher
from relay.services.google_oauth import GoogleBusinessOAuth
from relay.services.outbox_store import OutboxStore
from relay.services.recorder import DomainRecorder
from relay.services.resolver import ProviderResolver
from relay.services.retry import compute_backoff

log = logging.getLogger(__name__)

DispatcherFactory = Callable[[AsyncSession], OutboxDispatcher]
Outcome = Literal["sent", "retry", "failed"]


@dataclass(frozen=True)
class _Attempt:
    outbox_id: str
    outcome: Outcome


class OutboxProcessor:
    """
    Drains due outbox records one at a time.

    Each record gets its own session: claim and commit, dispatch, write back and
    commit. Any dispatch failure is written back on the record as an attempt;
    errors from the claim or the write-back itself propagate to the caller.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        dispatcher_factory: DispatcherFactory,
        *,
        clock: Clock,
        max_attempts: int = 5,
        lease_seconds: int = 300,
    ):
        self._session_factory = session_factory
        self._dispatcher_factory = dispatcher_factory
        self._clock = clock
        self._max_attempts = max_attempts
        self._lease_seconds = lease_seconds

    async def process_due(self, limit: int = 20, types: Iterable[str] | None = None) -> ProcessSummary:
        async with self._session_factory() as db:
            due = await OutboxStore(db).list_due(self._clock.now(), limit=limit, types=types)

        summary = ProcessSummary()
        for outbox_id in due:
            attempt = await self._process_one(outbox_id)
            if attempt is None:
                continue
            summary.processed += 1
            if attempt.outcome == "sent":
                summary.sent += 1
            else:
                summary.failed += 1

        if summary.processed:
            log.info("outbox run processed=%s sent=%s failed=%s", summary.processed, summary.sent, summary.failed)
        return summary

    async def _process_one(self, outbox_id: str) -> _Attempt | None:
        async with self._session_factory() as db:
            store = OutboxStore(db)

            lease_id = await store.claim(outbox_id, now=self._clock.now(), lease_seconds=self._lease_seconds)
            if lease_id is None:
                await db.rollback()
                log.debug("outbox record already claimed outbox_id=%s", outbox_id)
                return None
            await db.commit()

            record = await store.get_by_id(outbox_id)
            if record is None:
                return None
            attempts = record.attempts + 1

            with tracer.start_as_current_span("outbox.dispatch") as span:
                span.set_attribute("outbox.id", outbox_id)
                span.set_attribute("outbox.type", record.type)
                span.set_attribute("outbox.attempt", attempts)

                try:
                    await self._dispatcher_factory(db).dispatch(record)
                except Exception as e:
                    # a row the database rejected mid-dispatch is a failed attempt like any
                    # other; only a failing rollback or write-back escapes
                    await db.rollback()
                    error = f"{type(e).__name__}: {e}"
                    span.record_exception(e)

                    if attempts >= self._max_attempts:
                        outcome: Outcome = "failed"
                        written = await store.mark_failed(outbox_id, lease_id, attempts=attempts, error=error)
                    else:
                        outcome = "retry"
                        retry_at = self._clock.now() + compute_backoff(attempts)
                        written = await store.mark_retry(
                            outbox_id, lease_id, attempts=attempts, error=error, retry_at=retry_at
                        )
                    await db.commit()

                    if not written:
                        self._lease_lost(span, outbox_id, lease_id)
                        return None
                    if outcome == "failed":
                        log.error("outbox record failed permanently outbox_id=%s attempts=%s error=%s", outbox_id, attempts, error)
                    else:
                        log.warning(
                            "outbox dispatch failed outbox_id=%s attempts=%s retry_at=%s error=%s",
                            outbox_id, attempts, retry_at.isoformat(), error,
                        )
                    span.set_attribute("outbox.outcome", outcome)
                    return _Attempt(outbox_id, outcome)

                written = await store.mark_sent(outbox_id, lease_id, attempts=attempts)
                await db.commit()
                if not written:
                    self._lease_lost(span, outbox_id, lease_id)
                    return None
                span.set_attribute("outbox.outcome", "sent")
                return _Attempt(outbox_id, "sent")

    @staticmethod
    def _lease_lost(span, outbox_id: str, lease_id: str) -> None:
        # another processor took the record over after our lease expired; its write-back wins
        log.warning("outbox lease lost before write-back outbox_id=%s lease_id=%s", outbox_id, lease_id)
        span.set_attribute("outbox.outcome", "lease_lost")


def build_outbox_processor(
    session_factory: async_sessionmaker[AsyncSession],
    *,
    http: ProviderHttpClient,
    vault: SecretVault,
    signer: StateSigner,
    settings: Settings,
    clock: Clock,
) -> OutboxProcessor:
    google_oauth = GoogleBusinessOAuth(http, settings=settings, vault=vault, signer=signer, clock=clock)

    def dispatcher_for(db: AsyncSession) -> OutboxDispatcher:
        resolver = ProviderResolver(
            db, http=http, vault=vault, settings=settings, clock=clock, google_oauth=google_oauth
        )
        return OutboxDispatcher(
            resolver,
            DomainRecorder(db),
            RecentPostsDigestRenderer(db, clock),
            clock=clock,
        )

    return OutboxProcessor(
        session_factory,
        dispatcher_for,
        clock=clock,
        max_attempts=settings.outbox_max_attempts,
        lease_seconds=settings.outbox_lease_seconds,
    )
