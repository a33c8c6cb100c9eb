from __future__ import annotations

import logging

from relay.core.clock import Clock
from relay.core.errors import PayloadValidationError, UnsupportedOutboxTypeError
from relay.models.outbox import OutboxRecord
from relay.providers.base import (
    EmailResult,
    GbpPostInput,
    GbpPostResult,
    ProviderResult,
    PublishPostInput,
    PublishResult,
    SmsResult,
)
from relay.schemas.outbox import (
    EmailSendPayload,
    GbpPostPayload,
    PostPublishPayload,
    SmsSendPayload,
    parse_outbox_payload,
)
from relay.services.digest import DigestRenderer
from relay.services.recorder import DomainRecorder
from relay.services.resolver import ProviderResolver

log = logging.getLogger(__name__)


class OutboxDispatcher:
    """
    Turns one outbox record into exactly one provider call plus its side-effect rows.
    Never retries; the processor decides what happens on failure.
    """

    def __init__(
        self,
        resolver: ProviderResolver,
        recorder: DomainRecorder,
        digest_renderer: DigestRenderer,
        *,
        clock: Clock,
    ):
        self._resolver = resolver
        self._recorder = recorder
        self._digest = digest_renderer
        self._clock = clock

    async def dispatch(self, record: OutboxRecord) -> ProviderResult:
        payload = parse_outbox_payload(record.type, record.payload)

        if isinstance(payload, PostPublishPayload):
            return await self._post_publish(record, payload)
        if isinstance(payload, SmsSendPayload):
            return await self._sms_send(record, payload)
        if isinstance(payload, GbpPostPayload):
            return await self._gbp_post(record, payload)
        if isinstance(payload, EmailSendPayload):
            return await self._email_send(record, payload)
        raise UnsupportedOutboxTypeError(f"Unsupported outbox type: {record.type}")

    async def _post_publish(self, record: OutboxRecord, payload: PostPublishPayload) -> PublishResult:
        provider = await self._resolver.scheduler(record.owner_id, record.brand_id)
        result = await provider.publish_post(
            PublishPostInput(
                platform=payload.platform,
                caption=payload.caption,
                media_url=payload.media_url,
                link_url=payload.link_url,
                title=payload.title,
                profile_id=payload.selected_profile_id,
            )
        )

        await self._recorder.add_post(
            record.owner_id,
            record.brand_id,
            platform=payload.platform,
            posted_at=self._clock.now(),
            media_type=payload.resolved_media_type,
            caption_used=payload.caption,
            promo_name=payload.promo_name,
            notes=payload.notes or f"Published via Buffer (outbox: {record.id})",
            provider_meta={
                "outboxId": record.id,
                "bufferProfileId": payload.selected_profile_id,
                "source": payload.source,
                "providerResult": result.raw,
            },
        )
        if payload.schedule_id:
            await self._recorder.mark_schedule_posted(record.owner_id, record.brand_id, payload.schedule_id)

        await self._recorder.add_history(
            record.owner_id, record.brand_id, action="publish", payload=record.payload, result=result
        )
        return result

    async def _sms_send(self, record: OutboxRecord, payload: SmsSendPayload) -> SmsResult:
        provider = await self._resolver.sms(record.owner_id, record.brand_id)
        result = await provider.send_sms(to=payload.to, message=payload.message)

        await self._recorder.add_history(
            record.owner_id, record.brand_id, action="sms-send", payload=record.payload, result=result
        )
        return result

    async def _gbp_post(self, record: OutboxRecord, payload: GbpPostPayload) -> GbpPostResult:
        provider = await self._resolver.gbp(record.owner_id, record.brand_id)
        result = await provider.create_post(
            GbpPostInput(
                summary=payload.summary,
                location_name=payload.location_name,
                cta=payload.cta,
                call_to_action_url=payload.action_url,
                media_url=payload.media_url,
            )
        )

        await self._recorder.add_post(
            record.owner_id,
            record.brand_id,
            platform="google_business",
            posted_at=self._clock.now(),
            media_type="photo" if payload.media_url else "text",
            caption_used=payload.summary,
            notes=f"Published to Google Business Profile (outbox: {record.id})",
            provider_meta={"outboxId": record.id, "providerPostId": result.provider_post_id},
        )

        await self._recorder.add_history(
            record.owner_id, record.brand_id, action="gbp-post", payload=record.payload, result=result
        )
        return result

    async def _email_send(self, record: OutboxRecord, payload: EmailSendPayload) -> EmailResult:
        subject = (payload.subject or "").strip()
        html = payload.html or ""
        text = payload.body_text

        if payload.template == "digest":
            content = await self._digest.render(record.owner_id, record.brand_id, payload.cadence)
            subject = (content.subject or "").strip()
            html = content.html or ""
            text = content.text

        if not subject or not html:
            raise PayloadValidationError("Outbox email_send payload missing subject/html", context={"type": record.type})

        provider = await self._resolver.email(record.owner_id, record.brand_id)
        result = await provider.send_email(to=payload.recipient, subject=subject, html=html, text=text)

        if payload.email_log_id:
            updated = await self._recorder.mark_email_sent(
                record.owner_id,
                record.brand_id,
                payload.email_log_id,
                provider_id=result.provider_message_id,
                sent_at=self._clock.now(),
            )
            if not updated:
                log.warning("email log entry not found email_log_id=%s outbox_id=%s", payload.email_log_id, record.id)

        await self._recorder.add_history(
            record.owner_id, record.brand_id, action="email-digest", payload=record.payload, result=result
        )
        return result
