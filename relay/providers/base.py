from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Literal, Protocol, runtime_checkable


@dataclass(frozen=True)
class PublishPostInput:
    platform: str  # facebook | instagram | tiktok | other
    caption: str
    media_url: str | None = None
    link_url: str | None = None
    title: str | None = None
    profile_id: str | None = None
    scheduled_for: datetime | None = None  # None publishes now


@dataclass(frozen=True)
class PublishResult:
    status: Literal["sent", "queued"]
    raw: Any
    provider_message_id: str | None = None


@dataclass(frozen=True)
class SmsResult:
    raw: Any
    provider_message_id: str | None = None


@dataclass(frozen=True)
class GbpPostInput:
    summary: str
    location_name: str | None = None
    cta: str | None = None
    call_to_action_url: str | None = None
    media_url: str | None = None


@dataclass(frozen=True)
class GbpPostResult:
    raw: Any
    provider_post_id: str | None = None


@dataclass(frozen=True)
class EmailResult:
    raw: Any
    provider_message_id: str | None = None


ProviderResult = PublishResult | SmsResult | GbpPostResult | EmailResult


@runtime_checkable
class SchedulerProvider(Protocol):
    """Social scheduling service (Buffer)."""

    key: str

    async def publish_post(self, post: PublishPostInput) -> PublishResult:
        ...


@runtime_checkable
class SmsProvider(Protocol):
    key: str

    async def send_sms(self, *, to: str, message: str) -> SmsResult:
        ...


@runtime_checkable
class GbpProvider(Protocol):
    """Local business listing posts (Google Business Profile)."""

    key: str

    async def create_post(self, post: GbpPostInput) -> GbpPostResult:
        ...


@runtime_checkable
class EmailProvider(Protocol):
    key: str

    async def send_email(self, *, to: str, subject: str, html: str, text: str | None = None) -> EmailResult:
        ...


ProviderHandle = SchedulerProvider | SmsProvider | GbpProvider | EmailProvider
