from datetime import datetime

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from relay.core.ids import gen_id
from relay.models.base import AuditMixin, Base, JsonDict, UTCDateTime, utcnow


PROMO_NAME_MAX = 200


class Post(AuditMixin, Base):
    __tablename__ = "posts"
    __table_args__ = (Index("ix_posts_tenant_posted", "owner_id", "brand_id", "posted_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("pst"))
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    brand_id: Mapped[str] = mapped_column(String, nullable=False)

    platform: Mapped[str] = mapped_column(String(40), nullable=False)  # facebook/instagram/tiktok/other/google_business
    posted_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    media_type: Mapped[str] = mapped_column(String(20), nullable=False, default="text")  # photo/reel/story/text
    caption_used: Mapped[str] = mapped_column(Text, nullable=False, default="")
    promo_name: Mapped[str | None] = mapped_column(String(PROMO_NAME_MAX), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="posted")
    provider_meta: Mapped[dict] = mapped_column(JsonDict, nullable=False, default=dict)


class ScheduleItem(AuditMixin, Base):
    __tablename__ = "schedule_items"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("sch"))
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    brand_id: Mapped[str] = mapped_column(String, nullable=False)

    platform: Mapped[str] = mapped_column(String(40), nullable=False, default="other")
    caption: Mapped[str] = mapped_column(Text, nullable=False, default="")
    scheduled_for: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="planned")  # planned/posted/skipped


class EmailLog(Base):
    __tablename__ = "email_log"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("eml"))
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    brand_id: Mapped[str] = mapped_column(String, nullable=False)

    to_email: Mapped[str] = mapped_column(String(320), nullable=False)
    subject: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="queued")  # queued/sent/failed
    provider_id: Mapped[str | None] = mapped_column(String(200), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
    sent_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)


class HistoryEntry(Base):
    __tablename__ = "history"
    __table_args__ = (Index("ix_history_tenant_created", "owner_id", "brand_id", "created_at"),)

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("his"))
    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    brand_id: Mapped[str] = mapped_column(String, nullable=False)

    action: Mapped[str] = mapped_column(String(120), nullable=False)  # publish/sms-send/gbp-post/email-digest
    payload: Mapped[dict] = mapped_column(JsonDict, nullable=False, default=dict)
    result: Mapped[dict] = mapped_column(JsonDict, nullable=False, default=dict)

    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), nullable=False, default=utcnow)
