from datetime import timedelta

import pytest

from relay.core.errors import PayloadValidationError, UnsupportedOutboxTypeError
from relay.schemas.outbox import (
    EmailSendPayload,
    GbpPostPayload,
    PostPublishPayload,
    SmsSendPayload,
    parse_outbox_payload,
)
from relay.services.retry import backoff_minutes, compute_backoff


def test_backoff_schedule():
    assert [backoff_minutes(n) for n in range(1, 9)] == [2, 4, 8, 16, 32, 60, 60, 60]
    assert compute_backoff(1) == timedelta(minutes=2)


def test_sms_payload_missing_message():
    with pytest.raises(PayloadValidationError) as exc:
        parse_outbox_payload("sms_send", {"to": "+15551234567", "message": ""})
    assert "missing message" in str(exc.value)


def test_sms_payload_missing_to():
    with pytest.raises(PayloadValidationError) as exc:
        parse_outbox_payload("sms_send", {"to": "   ", "message": "hi"})
    assert "missing to" in str(exc.value)


def test_numeric_fields_are_read_as_text():
    sms = parse_outbox_payload("sms_send", {"to": 15551112222, "message": 42})
    assert (sms.to, sms.message) == ("15551112222", "42")

    gbp = parse_outbox_payload("gbp_post", {"summary": 2026, "locationName": 7})
    assert (gbp.summary, gbp.location_name) == ("2026", "7")

    post = parse_outbox_payload("post_publish", {"caption": 1, "promoName": 3.5})
    assert (post.caption, post.promo_name) == ("1", "3.5")


def test_unknown_type_rejected():
    with pytest.raises(UnsupportedOutboxTypeError):
        parse_outbox_payload("fax_send", {})


def test_post_publish_defaults():
    payload = parse_outbox_payload("post_publish", {"caption": "Fresh bagels", "platform": None})
    assert isinstance(payload, PostPublishPayload)
    assert payload.platform == "other"
    assert payload.resolved_media_type == "text"


def test_post_publish_fields():
    payload = parse_outbox_payload(
        "post_publish",
        {
            "caption": "Fresh bagels",
            "platform": "TikTok",
            "mediaUrl": "https://cdn.test/a.jpg",
            "profileId": "p-1",
            "bufferProfileId": "",
            "scheduleId": "sch_1",
            "mediaType": "hologram",
            "source": "planner",
        },
    )
    assert payload.platform == "tiktok"
    assert payload.selected_profile_id == "p-1"
    assert payload.resolved_media_type == "photo"
    assert payload.schedule_id == "sch_1"


def test_post_publish_requires_caption():
    with pytest.raises(PayloadValidationError) as exc:
        parse_outbox_payload("post_publish", {"platform": "facebook"})
    assert "missing caption" in str(exc.value)


def test_gbp_cta_url_precedence():
    payload = parse_outbox_payload("gbp_post", {"summary": "Open late", "ctaUrl": "https://b", "url": "https://c"})
    assert isinstance(payload, GbpPostPayload)
    assert payload.action_url == "https://b"

    payload = parse_outbox_payload(
        "gbp_post", {"summary": "Open late", "callToActionUrl": "https://a", "ctaUrl": "https://b"}
    )
    assert payload.action_url == "https://a"


def test_email_recipient_and_text():
    payload = parse_outbox_payload(
        "email_send", {"to": " owner@shop.test ", "subject": "Hi", "html": "<p>x</p>", "textSummary": "x"}
    )
    assert isinstance(payload, EmailSendPayload)
    assert payload.recipient == "owner@shop.test"
    assert payload.body_text == "x"
    assert payload.cadence == "weekly"


def test_email_requires_recipient():
    with pytest.raises(PayloadValidationError) as exc:
        parse_outbox_payload("email_send", {"subject": "Hi", "html": "<p>x</p>"})
    assert "missing recipient" in str(exc.value)


def test_extra_keys_are_kept():
    payload = parse_outbox_payload("sms_send", {"to": "+1555", "message": "hi", "campaign": "spring"})
    assert isinstance(payload, SmsSendPayload)
    assert payload.model_extra == {"campaign": "spring"}
