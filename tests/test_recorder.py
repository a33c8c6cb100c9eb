from datetime import timedelta

import pytest
from sqlalchemy import event, select
from sqlalchemy.exc import DataError

from relay.models.domain import HistoryEntry, Post
from relay.providers.base import SmsResult
from relay.services.digest import RecentPostsDigestRenderer
from relay.services.recorder import DomainRecorder
from relay.services.redaction import REDACTED

from tests.conftest import BRAND, OWNER


@pytest.mark.asyncio
async def test_history_redacts_secrets(db_session):
    recorder = DomainRecorder(db_session)

    await recorder.add_history(
        OWNER,
        BRAND,
        action="sms-send",
        payload={"to": "+1555", "message": "hi", "accessToken": "leak", "nested": [{"api_key": "k"}]},
        result=SmsResult(raw={"sid": "SM1", "auth_token": "t"}, provider_message_id="SM1"),
    )
    await db_session.commit()

    entry = (await db_session.execute(select(HistoryEntry))).scalar_one()
    assert entry.payload["accessToken"] == REDACTED
    assert entry.payload["nested"] == [{"api_key": REDACTED}]
    assert entry.payload["message"] == "hi"
    assert entry.result["raw"] == {"sid": "SM1", "auth_token": REDACTED}
    assert entry.result["provider_message_id"] == "SM1"


@pytest.mark.asyncio
async def test_history_wraps_non_object_results(db_session):
    await DomainRecorder(db_session).add_history(OWNER, BRAND, action="publish", payload={}, result="ok")
    await db_session.commit()

    entry = (await db_session.execute(select(HistoryEntry))).scalar_one()
    assert entry.result == {"value": "ok"}


@pytest.mark.asyncio
async def test_digest_summarises_recent_posts(db_session, clock):
    recorder = DomainRecorder(db_session)
    for days_ago, platform, caption in [(2, "instagram", "Taco <night>"), (3, "facebook", "Brunch"), (20, "tiktok", "Old")]:
        await recorder.add_post(
            OWNER,
            BRAND,
            platform=platform,
            posted_at=clock.now() - timedelta(days=days_ago),
            media_type="text",
            caption_used=caption,
        )
    await db_session.commit()

    content = await RecentPostsDigestRenderer(db_session, clock).render(OWNER, BRAND, "weekly")

    assert content.subject == "Weekly marketing digest"
    assert "Taco &lt;night&gt;" in content.html
    assert "Old" not in content.html
    assert "Posts published in the last 7 days: 2" in content.text

    daily = await RecentPostsDigestRenderer(db_session, clock).render(OWNER, BRAND, "daily")
    assert daily.subject == "Daily marketing digest"
    assert "No posts published yet." in daily.html


@pytest.mark.asyncio
async def test_rejected_history_row_keeps_the_post(db_session, clock):
    def reject(mapper, connection, target):
        raise DataError("INSERT INTO history", {}, Exception("invalid byte sequence"))

    recorder = DomainRecorder(db_session)
    await recorder.add_post(
        OWNER, BRAND, platform="facebook", posted_at=clock.now(), media_type="text", caption_used="Brunch"
    )

    event.listen(HistoryEntry, "before_insert", reject)
    try:
        await recorder.add_history(OWNER, BRAND, action="publish", payload={"caption": "Brunch"}, result="ok")
    finally:
        event.remove(HistoryEntry, "before_insert", reject)
    await db_session.commit()

    assert (await db_session.execute(select(Post))).scalar_one().caption_used == "Brunch"
    assert (await db_session.execute(select(HistoryEntry))).scalars().all() == []


@pytest.mark.asyncio
async def test_long_promo_name_is_clipped(db_session, clock):
    post = await DomainRecorder(db_session).add_post(
        OWNER,
        BRAND,
        platform="instagram",
        posted_at=clock.now(),
        media_type="photo",
        caption_used="Sale",
        promo_name="x" * 250,
    )

    assert post.promo_name == "x" * 200
