from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, StringConstraints, ValidationError, model_validator
from pydantic_core import PydanticCustomError

from relay.core.errors import PayloadValidationError, UnsupportedOutboxTypeError


class OutboxType(str, Enum):
    post_publish = "post_publish"
    sms_send = "sms_send"
    gbp_post = "gbp_post"
    email_send = "email_send"


class OutboxStatus(str, Enum):
    queued = "queued"
    sent = "sent"
    failed = "failed"


def _blank_to_none(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if not isinstance(value, str) or value.strip() == "":
        return None
    return value


def _platform(value: Any) -> Any:
    if not isinstance(value, str) or value.strip() == "":
        return "other"
    return value.strip().lower()


OptionalText = Annotated[str | None, BeforeValidator(_blank_to_none)]
RequiredText = Annotated[str, StringConstraints(min_length=1)]
RequiredTrimmed = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]

Platform = Literal["facebook", "instagram", "tiktok", "other"]
MediaType = Literal["photo", "reel", "story", "text"]
MEDIA_TYPES: tuple[str, ...] = ("photo", "reel", "story", "text")


class _Payload(BaseModel):
    # producers add their own bookkeeping keys; keep them for history.
    # phone numbers and ids sometimes arrive as JSON numbers
    model_config = ConfigDict(extra="allow", populate_by_name=True, frozen=True, coerce_numbers_to_str=True)


class PostPublishPayload(_Payload):
    platform: Annotated[Platform, BeforeValidator(_platform)] = "other"
    caption: RequiredText
    media_url: OptionalText = Field(default=None, alias="mediaUrl")
    link_url: OptionalText = Field(default=None, alias="linkUrl")
    title: OptionalText = None
    buffer_profile_id: OptionalText = Field(default=None, alias="bufferProfileId")
    profile_id: OptionalText = Field(default=None, alias="profileId")
    media_type: OptionalText = Field(default=None, alias="mediaType")
    promo_name: OptionalText = Field(default=None, alias="promoName")
    notes: OptionalText = None
    source: OptionalText = None
    schedule_id: OptionalText = Field(default=None, alias="scheduleId")

    @property
    def selected_profile_id(self) -> str | None:
        return self.buffer_profile_id or self.profile_id

    @property
    def resolved_media_type(self) -> str:
        if self.media_type in MEDIA_TYPES:
            return self.media_type
        return "photo" if self.media_url else "text"


class SmsSendPayload(_Payload):
    to: RequiredTrimmed
    message: RequiredText


class GbpPostPayload(_Payload):
    summary: RequiredText
    cta: OptionalText = None
    call_to_action_url: OptionalText = Field(default=None, alias="callToActionUrl")
    cta_url: OptionalText = Field(default=None, alias="ctaUrl")
    url: OptionalText = None
    media_url: OptionalText = Field(default=None, alias="mediaUrl")
    location_name: OptionalText = Field(default=None, alias="locationName")

    @property
    def action_url(self) -> str | None:
        # three payload generations named this field differently
        return self.call_to_action_url or self.cta_url or self.url


class EmailSendPayload(_Payload):
    to_email: OptionalText = Field(default=None, alias="toEmail")
    to: OptionalText = None
    subject: OptionalText = None
    html: OptionalText = None
    text: OptionalText = None
    text_summary: OptionalText = Field(default=None, alias="textSummary")
    template: OptionalText = None
    cadence: Annotated[Literal["daily", "weekly"], BeforeValidator(lambda v: "daily" if v == "daily" else "weekly")] = "weekly"
    email_log_id: OptionalText = Field(default=None, alias="emailLogId")

    @model_validator(mode="after")
    def _require_recipient(self) -> "EmailSendPayload":
        if not self.recipient:
            raise PydanticCustomError("missing_recipient", "missing recipient")
        return self

    @property
    def recipient(self) -> str | None:
        value = self.to_email or self.to
        return value.strip() if value else None

    @property
    def body_text(self) -> str | None:
        return self.text or self.text_summary


OutboxPayload = Union[PostPublishPayload, SmsSendPayload, GbpPostPayload, EmailSendPayload]

PAYLOAD_MODELS: dict[OutboxType, type[_Payload]] = {
    OutboxType.post_publish: PostPublishPayload,
    OutboxType.sms_send: SmsSendPayload,
    OutboxType.gbp_post: GbpPostPayload,
    OutboxType.email_send: EmailSendPayload,
}


def coerce_outbox_type(value: str) -> OutboxType:
    try:
        return OutboxType(value)
    except ValueError:
        raise UnsupportedOutboxTypeError(f"Unsupported outbox type: {value}", context={"type": value}) from None


def _describe(err: dict) -> str:
    field = ".".join(str(p) for p in err.get("loc", ()))
    if err.get("type") in ("missing", "string_too_short"):
        return f"missing {field}"
    if not field:
        return err.get("msg", "invalid payload")
    return f"invalid {field} ({err.get('msg')})"


def parse_outbox_payload(type_: str, payload: dict[str, Any] | None) -> OutboxPayload:
    """Validate a raw payload into the model for its outbox type."""
    kind = coerce_outbox_type(type_)
    try:
        return PAYLOAD_MODELS[kind].model_validate(payload or {})
    except ValidationError as e:
        problems = ", ".join(_describe(err) for err in e.errors())
        raise PayloadValidationError(
            f"Outbox {kind.value} payload {problems}",
            context={"type": kind.value},
        ) from None


class OutboxEnqueue(BaseModel):
    type: OutboxType
    payload: dict[str, Any] = Field(default_factory=dict)
    scheduled_for: datetime | None = None


class OutboxOut(BaseModel):
    id: str
    type: str
    status: str
    attempts: int
    last_error: str | None
    scheduled_for: datetime | None
    created_at: datetime
    updated_at: datetime


class ProcessSummary(BaseModel):
    processed: int = 0
    sent: int = 0
    failed: int = 0
