from __future__ import annotations

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.config import Settings
from relay.core.errors import ConfigurationError
from relay.models.integration import IntegrationCredential
from relay.schemas.integrations import IntegrationStatus, ProviderKind

_FLAGS = {
    ProviderKind.buffer: ("enable_buffer_integration", "Buffer"),
    ProviderKind.twilio: ("enable_twilio_integration", "Twilio"),
    ProviderKind.google_business: ("enable_gbp_integration", "Google Business"),
    ProviderKind.sendgrid: ("enable_email_integration", "Email"),
}


def ensure_enabled(settings: Settings, kind: ProviderKind) -> None:
    flag, label = _FLAGS[kind]
    if not getattr(settings, flag):
        raise ConfigurationError(f"{label} integration is disabled. Set {flag.upper()}=true")


class IntegrationStore:
    """Tenant-scoped integration rows keyed by (owner, brand, provider)."""

    def __init__(self, db: AsyncSession):
        self._db = db

    async def get(self, owner_id: str, brand_id: str, provider: ProviderKind | str) -> IntegrationCredential | None:
        stmt = select(IntegrationCredential).where(
            IntegrationCredential.owner_id == owner_id,
            IntegrationCredential.brand_id == brand_id,
            IntegrationCredential.provider == ProviderKind(provider).value,
        )
        return (await self._db.execute(stmt)).scalar_one_or_none()

    async def list_for_tenant(self, owner_id: str, brand_id: str) -> list[IntegrationCredential]:
        stmt = select(IntegrationCredential).where(
            IntegrationCredential.owner_id == owner_id,
            IntegrationCredential.brand_id == brand_id,
        ).order_by(IntegrationCredential.provider.asc())
        return list((await self._db.execute(stmt)).scalars().all())

    async def upsert(
        self,
        owner_id: str,
        brand_id: str,
        provider: ProviderKind | str,
        *,
        config: dict,
        secrets_enc: str | None = None,
        status: IntegrationStatus = IntegrationStatus.connected,
    ) -> IntegrationCredential:
        """Create or update the row. Existing secrets are kept when ``secrets_enc`` is None."""
        row = await self.get(owner_id, brand_id, provider)
        if row:
            row.status = status.value
            row.config = dict(config)
            if secrets_enc is not None:
                row.secrets_enc = secrets_enc
        else:
            row = IntegrationCredential(
                owner_id=owner_id,
                brand_id=brand_id,
                provider=ProviderKind(provider).value,
                status=status.value,
                config=dict(config),
                secrets_enc=secrets_enc,
            )
            self._db.add(row)

        await self._db.flush()
        return row

    async def disconnect(self, owner_id: str, brand_id: str, provider: ProviderKind | str) -> bool:
        res = await self._db.execute(
            update(IntegrationCredential)
            .where(
                IntegrationCredential.owner_id == owner_id,
                IntegrationCredential.brand_id == brand_id,
                IntegrationCredential.provider == ProviderKind(provider).value,
            )
            .values(status=IntegrationStatus.disconnected.value, secrets_enc=None)
        )
        return bool(res.rowcount)
