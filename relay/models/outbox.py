from datetime import datetime

from sqlalchemy import Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.types import Integer

from relay.core.ids import gen_id
from relay.models.base import AuditMixin, Base, JsonDict, UTCDateTime


class OutboxRecord(AuditMixin, Base):
    __tablename__ = "outbox"
    __table_args__ = (
        Index("ix_outbox_due", "status", "scheduled_for"),
        Index("ix_outbox_tenant", "owner_id", "brand_id", "created_at"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("obx"))

    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    brand_id: Mapped[str] = mapped_column(String, nullable=False)

    type: Mapped[str] = mapped_column(String(40), nullable=False)  # post_publish/sms_send/gbp_post/email_send
    payload: Mapped[dict] = mapped_column(JsonDict, nullable=False, default=dict)

    status: Mapped[str] = mapped_column(String(30), nullable=False, default="queued")  # queued/sent/failed
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    scheduled_for: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)

    # claim held by one processor while the record is being dispatched
    lease_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
