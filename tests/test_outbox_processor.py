import json
import logging
from datetime import timedelta
from urllib.parse import parse_qs

import httpx
import pytest
from sqlalchemy import event, select, update
from sqlalchemy.exc import DataError

from relay.models.domain import EmailLog, HistoryEntry, Post, ScheduleItem
from relay.models.outbox import OutboxRecord
from relay.schemas.integrations import ProviderKind
from relay.services.digest import DigestContent
from relay.services.dispatcher import OutboxDispatcher
from relay.services.google_oauth import GoogleBusinessOAuth
from relay.services.integrations import IntegrationStore
from relay.services.outbox_processor import OutboxProcessor
from relay.services.outbox_store import OutboxStore
from relay.services.recorder import DomainRecorder
from relay.services.resolver import ProviderResolver

from tests.conftest import BRAND, OWNER


class StaticDigest:
    def __init__(self, content: DigestContent):
        self.content = content
        self.calls: list[tuple] = []

    async def render(self, owner_id, brand_id, cadence):
        self.calls.append((owner_id, brand_id, cadence))
        return self.content


def _processor(session_factory, http, *, clock, vault, signer, settings, digest=None):
    google_oauth = GoogleBusinessOAuth(http, settings=settings, vault=vault, signer=signer, clock=clock)
    digest = digest or StaticDigest(DigestContent(subject="", html=""))

    def dispatcher_for(db):
        resolver = ProviderResolver(
            db, http=http, vault=vault, settings=settings, clock=clock, google_oauth=google_oauth
        )
        return OutboxDispatcher(resolver, DomainRecorder(db), digest, clock=clock)

    return OutboxProcessor(
        session_factory,
        dispatcher_for,
        clock=clock,
        max_attempts=settings.outbox_max_attempts,
        lease_seconds=settings.outbox_lease_seconds,
    )


async def _enqueue(session_factory, clock, type_, payload, **kwargs) -> str:
    async with session_factory() as db:
        row = await OutboxStore(db).enqueue(OWNER, BRAND, type_, payload, now=clock.now(), **kwargs)
        await db.commit()
        return row.id


async def _load(session_factory, outbox_id) -> OutboxRecord:
    async with session_factory() as db:
        return await db.get(OutboxRecord, outbox_id)


@pytest.mark.asyncio
async def test_missing_field_is_rescheduled_with_backoff(session_factory, make_http, clock, vault, signer, test_settings):
    http, transport = make_http()
    processor = _processor(session_factory, http, clock=clock, vault=vault, signer=signer, settings=test_settings)
    outbox_id = await _enqueue(session_factory, clock, "sms_send", {"to": "+15551112222", "message": ""})

    summary = await processor.process_due()

    assert (summary.processed, summary.sent, summary.failed) == (1, 0, 1)
    row = await _load(session_factory, outbox_id)
    assert row.status == "queued"
    assert row.attempts == 1
    assert row.last_error.startswith("PayloadValidationError: ")
    assert "missing message" in row.last_error
    assert row.scheduled_for == clock.now() + timedelta(minutes=2)
    assert row.lease_id is None
    assert transport.requests == []


@pytest.mark.asyncio
async def test_retry_budget_ends_in_failed_after_five_attempts(session_factory, make_http, clock, vault, signer, test_settings):
    http, _ = make_http()
    processor = _processor(session_factory, http, clock=clock, vault=vault, signer=signer, settings=test_settings)
    outbox_id = await _enqueue(session_factory, clock, "sms_send", {"to": "+15551112222", "message": ""})

    for expected_attempts in range(1, 5):
        summary = await processor.process_due()
        assert summary.processed == 1
        row = await _load(session_factory, outbox_id)
        assert (row.status, row.attempts) == ("queued", expected_attempts)

        # not due again until the backoff elapses
        assert (await processor.process_due()).processed == 0
        clock.advance(minutes=61)

    summary = await processor.process_due()
    assert (summary.processed, summary.failed) == (1, 1)
    row = await _load(session_factory, outbox_id)
    assert row.status == "failed"
    assert row.attempts == 5
    assert row.scheduled_for is None

    clock.advance(days=1)
    assert (await processor.process_due()).processed == 0


@pytest.mark.asyncio
async def test_missing_buffer_channel_is_rescheduled(session_factory, make_http, clock, vault, signer, test_settings):
    http, transport = make_http()
    async with session_factory() as db:
        await IntegrationStore(db).upsert(
            OWNER,
            BRAND,
            ProviderKind.buffer,
            config={"channelIdByPlatform": {"facebook": "ch_fb"}},
            secrets_enc=vault.encrypt_json({"access_token": "buf-token"}),
        )
        await db.commit()

    processor = _processor(session_factory, http, clock=clock, vault=vault, signer=signer, settings=test_settings)
    outbox_id = await _enqueue(session_factory, clock, "post_publish", {"caption": "Taco night", "platform": "tiktok"})

    await processor.process_due()

    row = await _load(session_factory, outbox_id)
    assert row.status == "queued"
    assert row.attempts == 1
    assert row.last_error.startswith("ConfigurationError: No Buffer channel configured for platform 'tiktok'")
    assert row.scheduled_for == clock.now() + timedelta(minutes=2)
    assert transport.requests == []


@pytest.mark.asyncio
async def test_post_publish_records_post_schedule_and_history(session_factory, make_http, clock, vault, signer, test_settings):
    http, transport = make_http(lambda r: httpx.Response(200, json={"updates": [{"id": "upd_7"}]}))
    async with session_factory() as db:
        await IntegrationStore(db).upsert(
            OWNER,
            BRAND,
            ProviderKind.buffer,
            config={"profiles": [{"id": "prof_ig", "service": "Instagram", "username": "shop"}]},
            secrets_enc=vault.encrypt_json({"accessToken": "buf-token"}),
        )
        db.add(ScheduleItem(id="sch_1", owner_id=OWNER, brand_id=BRAND, platform="instagram", caption="x"))
        await db.commit()

    processor = _processor(session_factory, http, clock=clock, vault=vault, signer=signer, settings=test_settings)
    outbox_id = await _enqueue(
        session_factory,
        clock,
        "post_publish",
        {"caption": "Taco night", "platform": "instagram", "scheduleId": "sch_1", "promoName": "Tuesday"},
    )

    summary = await processor.process_due()

    assert (summary.processed, summary.sent, summary.failed) == (1, 1, 0)
    assert len(transport.requests) == 1
    row = await _load(session_factory, outbox_id)
    assert (row.status, row.attempts, row.last_error, row.scheduled_for) == ("sent", 1, None, None)

    async with session_factory() as db:
        post = (await db.execute(select(Post))).scalar_one()
        assert (post.platform, post.media_type, post.promo_name) == ("instagram", "text", "Tuesday")
        assert post.provider_meta["outboxId"] == outbox_id
        assert (await db.get(ScheduleItem, "sch_1")).status == "posted"
        history = (await db.execute(select(HistoryEntry))).scalar_one()
        assert history.action == "publish"
        assert history.result["provider_message_id"] == "upd_7"


@pytest.mark.asyncio
async def test_digest_email_marks_log_sent(session_factory, make_http, clock, vault, signer, test_settings):
    http, transport = make_http(lambda r: httpx.Response(202, headers={"X-Message-Id": "sg-42"}))
    async with session_factory() as db:
        db.add(EmailLog(id="eml_1", owner_id=OWNER, brand_id=BRAND, to_email="owner@shop.test", subject="Digest"))
        await db.commit()

    digest = StaticDigest(DigestContent(subject="Weekly marketing digest", html="<p>Week</p>", text="Week"))
    processor = _processor(
        session_factory, http, clock=clock, vault=vault, signer=signer, settings=test_settings, digest=digest
    )
    outbox_id = await _enqueue(
        session_factory,
        clock,
        "email_send",
        {"toEmail": "owner@shop.test", "template": "digest", "cadence": "daily", "emailLogId": "eml_1"},
    )

    summary = await processor.process_due()

    assert summary.sent == 1
    assert digest.calls == [(OWNER, BRAND, "daily")]
    assert transport.requests[0].url.path == "/v3/mail/send"
    assert (await _load(session_factory, outbox_id)).status == "sent"
    async with session_factory() as db:
        log_row = await db.get(EmailLog, "eml_1")
        assert log_row.status == "sent"
        assert log_row.provider_id == "sg-42"
        assert log_row.sent_at == clock.now()


@pytest.mark.asyncio
async def test_empty_digest_is_a_failed_attempt(session_factory, make_http, clock, vault, signer, test_settings):
    http, transport = make_http()
    processor = _processor(session_factory, http, clock=clock, vault=vault, signer=signer, settings=test_settings)
    outbox_id = await _enqueue(session_factory, clock, "email_send", {"to": "owner@shop.test", "template": "digest"})

    await processor.process_due()

    row = await _load(session_factory, outbox_id)
    assert row.status == "queued"
    assert "missing subject/html" in row.last_error
    assert transport.requests == []


@pytest.mark.asyncio
async def test_claimed_record_is_skipped(session_factory, make_http, clock, vault, signer, test_settings):
    http, _ = make_http()
    processor = _processor(session_factory, http, clock=clock, vault=vault, signer=signer, settings=test_settings)
    outbox_id = await _enqueue(session_factory, clock, "sms_send", {"to": "+1555", "message": ""})

    async with session_factory() as db:
        assert await OutboxStore(db).claim(outbox_id, now=clock.now(), lease_seconds=300)
        await db.commit()

    assert (await processor.process_due()).processed == 0
    assert (await _load(session_factory, outbox_id)).attempts == 0

    # an expired lease is taken over
    clock.advance(seconds=301)
    assert (await processor.process_due()).processed == 1
    assert (await _load(session_factory, outbox_id)).attempts == 1


@pytest.mark.asyncio
async def test_due_order_limit_and_type_filter(session_factory, make_http, clock, vault, signer, test_settings):
    http, _ = make_http()
    processor = _processor(session_factory, http, clock=clock, vault=vault, signer=signer, settings=test_settings)

    later = await _enqueue(session_factory, clock, "sms_send", {"to": "+1", "message": ""}, scheduled_for=clock.now() - timedelta(minutes=1))
    earlier = await _enqueue(session_factory, clock, "sms_send", {"to": "+1", "message": ""}, scheduled_for=clock.now() - timedelta(minutes=5))
    future = await _enqueue(session_factory, clock, "sms_send", {"to": "+1", "message": ""}, scheduled_for=clock.now() + timedelta(hours=1))
    gbp = await _enqueue(session_factory, clock, "gbp_post", {"summary": ""})

    async with session_factory() as db:
        assert await OutboxStore(db).list_due(clock.now(), limit=10) == [earlier, later, gbp]
        assert await OutboxStore(db).list_due(clock.now(), limit=10, types=["gbp_post"]) == [gbp]

    summary = await processor.process_due(limit=1, types=["sms_send"])
    assert summary.processed == 1
    assert (await _load(session_factory, earlier)).attempts == 1
    assert (await _load(session_factory, later)).attempts == 0
    assert (await _load(session_factory, future)).attempts == 0
    assert (await _load(session_factory, gbp)).attempts == 0


async def _connect_buffer(session_factory, vault):
    async with session_factory() as db:
        await IntegrationStore(db).upsert(
            OWNER,
            BRAND,
            ProviderKind.buffer,
            config={"defaultChannelId": "ch_default"},
            secrets_enc=vault.encrypt_json({"access_token": "buf-token"}),
        )
        await db.commit()


def _by_host(request: httpx.Request) -> httpx.Response:
    if request.url.host == "api.bufferapp.com":
        return httpx.Response(200, json={"updates": [{"id": "upd_1"}]})
    return httpx.Response(201, json={"sid": "SM9"})


@pytest.mark.asyncio
@pytest.mark.parametrize("url_key", ["callToActionUrl", "ctaUrl", "url"])
async def test_gbp_post_records_google_business_post(session_factory, make_http, clock, vault, signer, test_settings, url_key):
    http, transport = make_http(lambda r: httpx.Response(200, json={"name": "accounts/1/locations/1/localPosts/9"}))
    async with session_factory() as db:
        await IntegrationStore(db).upsert(
            OWNER,
            BRAND,
            ProviderKind.google_business,
            config={"locationName": "accounts/1/locations/1"},
            secrets_enc=vault.encrypt_json(
                {"access_token": "gtok", "expires_at": (clock.now() + timedelta(hours=1)).isoformat()}
            ),
        )
        await db.commit()

    processor = _processor(session_factory, http, clock=clock, vault=vault, signer=signer, settings=test_settings)
    outbox_id = await _enqueue(
        session_factory, clock, "gbp_post", {"summary": "Live music tonight", "cta": "book", url_key: "https://shop.test/book"}
    )

    summary = await processor.process_due()

    assert (summary.processed, summary.sent, summary.failed) == (1, 1, 0)
    request = transport.requests[0]
    assert request.url.path == "/v4/accounts/1/locations/1/localPosts"
    assert json.loads(request.content)["callToAction"] == {"actionType": "BOOK", "url": "https://shop.test/book"}
    assert (await _load(session_factory, outbox_id)).status == "sent"

    async with session_factory() as db:
        post = (await db.execute(select(Post))).scalar_one()
        assert (post.platform, post.media_type, post.caption_used) == ("google_business", "text", "Live music tonight")
        assert post.provider_meta["providerPostId"] == "accounts/1/locations/1/localPosts/9"
        assert (await db.execute(select(HistoryEntry))).scalar_one().action == "gbp-post"


@pytest.mark.asyncio
async def test_sms_send_with_numeric_phone(session_factory, make_http, clock, vault, signer, test_settings):
    http, transport = make_http(_by_host)
    processor = _processor(session_factory, http, clock=clock, vault=vault, signer=signer, settings=test_settings)
    outbox_id = await _enqueue(session_factory, clock, "sms_send", {"to": 15551112222, "message": "See you at 7"})

    summary = await processor.process_due()

    assert (summary.processed, summary.sent, summary.failed) == (1, 1, 0)
    form = parse_qs(transport.requests[0].content.decode())
    assert form == {"To": ["15551112222"], "From": ["+15550001111"], "Body": ["See you at 7"]}
    row = await _load(session_factory, outbox_id)
    assert (row.status, row.attempts, row.lease_id) == ("sent", 1, None)

    async with session_factory() as db:
        twilio = await IntegrationStore(db).get(OWNER, BRAND, ProviderKind.twilio)
        assert (twilio.status, twilio.config) == ("connected", {"from_number": "+15550001111"})
        history = (await db.execute(select(HistoryEntry))).scalar_one()
        assert history.action == "sms-send"
        assert history.result["provider_message_id"] == "SM9"


@pytest.mark.asyncio
async def test_failed_record_does_not_stop_the_batch(session_factory, make_http, clock, vault, signer, test_settings):
    http, transport = make_http(_by_host)
    processor = _processor(session_factory, http, clock=clock, vault=vault, signer=signer, settings=test_settings)
    bad = await _enqueue(
        session_factory, clock, "sms_send", {"to": "+15551112222", "message": ""}, scheduled_for=clock.now() - timedelta(minutes=5)
    )
    good = await _enqueue(session_factory, clock, "sms_send", {"to": "+15551112222", "message": "hi"})

    summary = await processor.process_due()

    assert (summary.processed, summary.sent, summary.failed) == (2, 1, 1)
    assert len(transport.requests) == 1
    assert (await _load(session_factory, bad)).status == "queued"
    assert (await _load(session_factory, good)).status == "sent"


@pytest.mark.asyncio
async def test_rejected_post_row_is_a_failed_attempt(session_factory, make_http, clock, vault, signer, test_settings):
    def reject(mapper, connection, target):
        raise DataError("INSERT INTO posts", {}, Exception("value too long for type character varying(200)"))

    http, transport = make_http(_by_host)
    await _connect_buffer(session_factory, vault)
    processor = _processor(session_factory, http, clock=clock, vault=vault, signer=signer, settings=test_settings)
    post_id = await _enqueue(
        session_factory, clock, "post_publish", {"caption": "Taco night"}, scheduled_for=clock.now() - timedelta(minutes=5)
    )
    sms_id = await _enqueue(session_factory, clock, "sms_send", {"to": "+15551112222", "message": "hi"})

    event.listen(Post, "before_insert", reject)
    try:
        summary = await processor.process_due()
    finally:
        event.remove(Post, "before_insert", reject)

    assert (summary.processed, summary.sent, summary.failed) == (2, 1, 1)
    assert len(transport.requests) == 2
    row = await _load(session_factory, post_id)
    assert (row.status, row.attempts, row.lease_id) == ("queued", 1, None)
    assert row.last_error.startswith("DataError: ")
    assert row.scheduled_for == clock.now() + timedelta(minutes=2)
    assert (await _load(session_factory, sms_id)).status == "sent"

    async with session_factory() as db:
        assert (await db.execute(select(Post))).scalars().all() == []
        assert [h.action for h in (await db.execute(select(HistoryEntry))).scalars()] == ["sms-send"]


class LeaseTakeover:
    """Dispatcher that loses its lease to another processor mid-dispatch."""

    def __init__(self, db, *, fail: bool):
        self.db = db
        self.fail = fail

    async def dispatch(self, record):
        await self.db.execute(update(OutboxRecord).where(OutboxRecord.id == record.id).values(lease_id="lse_other"))
        await self.db.commit()
        if self.fail:
            raise RuntimeError("provider timed out")


@pytest.mark.asyncio
@pytest.mark.parametrize("fail", [False, True])
async def test_write_back_after_lost_lease_is_not_counted(session_factory, clock, caplog, fail):
    processor = OutboxProcessor(session_factory, lambda db: LeaseTakeover(db, fail=fail), clock=clock)
    outbox_id = await _enqueue(session_factory, clock, "sms_send", {"to": "+15551112222", "message": "hi"})

    with caplog.at_level(logging.WARNING, logger="relay.services.outbox_processor"):
        summary = await processor.process_due()

    assert (summary.processed, summary.sent, summary.failed) == (0, 0, 0)
    row = await _load(session_factory, outbox_id)
    assert (row.status, row.attempts, row.lease_id, row.last_error) == ("queued", 0, "lse_other", None)
    assert "outbox lease lost" in caplog.text
