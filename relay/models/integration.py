from sqlalchemy import String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from relay.core.ids import gen_id
from relay.models.base import AuditMixin, Base, JsonDict


class IntegrationCredential(AuditMixin, Base):
    __tablename__ = "integrations"
    __table_args__ = (
        UniqueConstraint("owner_id", "brand_id", "provider", name="uq_integration_tenant_provider"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: gen_id("int"))

    owner_id: Mapped[str] = mapped_column(String, nullable=False)
    brand_id: Mapped[str] = mapped_column(String, nullable=False)

    # "buffer" | "twilio" | "google_business" | "sendgrid"
    provider: Mapped[str] = mapped_column(String(40), nullable=False)
    status: Mapped[str] = mapped_column(String(30), nullable=False, default="connected")

    # Non-secret config shown in dashboards (channel maps, locations, api base)
    config: Mapped[dict] = mapped_column(JsonDict, nullable=False, default=dict)

    # Vault ciphertext of the secrets JSON (never returned by API)
    secrets_enc: Mapped[str | None] = mapped_column(Text, nullable=True)
