from __future__ import annotations

import logging
from datetime import timedelta
from typing import TypeVar

from pydantic import BaseModel, ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.clock import Clock
from relay.core.config import Settings
from relay.core.crypto import SecretVault
from relay.core.errors import AuthExpiredError, ConfigurationError, NotConnectedError
from relay.models.integration import IntegrationCredential
from relay.providers.base import EmailProvider, GbpProvider, ProviderHandle, SchedulerProvider, SmsProvider
from relay.providers.buffer import BufferProvider
from relay.providers.google_business import GoogleBusinessProvider
from relay.providers.http import ProviderHttpClient
from relay.providers.sendgrid import SendgridProvider
from relay.providers.twilio import TwilioProvider
from relay.schemas.integrations import (
    BufferConfig,
    BufferSecrets,
    GoogleBusinessConfig,
    GoogleBusinessSecrets,
    IntegrationStatus,
    ProviderKind,
)
from relay.services.google_oauth import GoogleBusinessOAuth
from relay.services.integrations import IntegrationStore, ensure_enabled

log = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)


def build_channel_map(config: BufferConfig) -> dict[str, str]:
    """
    Explicit platform mappings win. Profiles stored at connect time fill the
    gaps by service name, first match wins; leftovers fill ``other``.
    """
    channels: dict[str, str] = {k: v for k, v in config.channel_id_by_platform.items() if v}

    for profile in config.profiles:
        service = profile.service.lower()
        if "instagram" in service and "instagram" not in channels:
            channels["instagram"] = profile.id
        elif "facebook" in service and "facebook" not in channels:
            channels["facebook"] = profile.id
        elif "tiktok" in service and "tiktok" not in channels:
            channels["tiktok"] = profile.id
        elif "other" not in channels:
            channels["other"] = profile.id

    return channels


def _validate(model: type[M], data: dict, *, label: str) -> M:
    try:
        return model.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) or "root" for err in e.errors())
        raise ConfigurationError(f"{label} is invalid: {fields}") from None


class ProviderResolver:
    """Builds a ready-to-use provider for a tenant from its stored credential."""

    def __init__(
        self,
        db: AsyncSession,
        *,
        http: ProviderHttpClient,
        vault: SecretVault,
        settings: Settings,
        clock: Clock,
        google_oauth: GoogleBusinessOAuth,
    ):
        self._db = db
        self._store = IntegrationStore(db)
        self._http = http
        self._vault = vault
        self._settings = settings
        self._clock = clock
        self._google_oauth = google_oauth

    async def resolve(self, owner_id: str, brand_id: str, kind: ProviderKind) -> ProviderHandle:
        ensure_enabled(self._settings, kind)

        if kind is ProviderKind.buffer:
            return await self._buffer(owner_id, brand_id)
        if kind is ProviderKind.twilio:
            return await self._twilio(owner_id, brand_id)
        if kind is ProviderKind.google_business:
            return await self._google_business(owner_id, brand_id)
        if kind is ProviderKind.sendgrid:
            return await self._sendgrid(owner_id, brand_id)
        raise ConfigurationError(f"Unknown provider: {kind}")

    async def scheduler(self, owner_id: str, brand_id: str) -> SchedulerProvider:
        return await self.resolve(owner_id, brand_id, ProviderKind.buffer)

    async def sms(self, owner_id: str, brand_id: str) -> SmsProvider:
        return await self.resolve(owner_id, brand_id, ProviderKind.twilio)

    async def gbp(self, owner_id: str, brand_id: str) -> GbpProvider:
        return await self.resolve(owner_id, brand_id, ProviderKind.google_business)

    async def email(self, owner_id: str, brand_id: str) -> EmailProvider:
        return await self.resolve(owner_id, brand_id, ProviderKind.sendgrid)

    async def _connected(self, owner_id: str, brand_id: str, kind: ProviderKind) -> IntegrationCredential:
        row = await self._store.get(owner_id, brand_id, kind)
        if not row or row.status != IntegrationStatus.connected.value:
            raise NotConnectedError(
                f"{kind.value} integration is not connected for this brand",
                context={"provider": kind.value, "brand_id": brand_id},
            )
        return row

    def _secrets(self, row: IntegrationCredential, model: type[M]) -> M:
        if not row.secrets_enc:
            raise ConfigurationError("Missing encrypted integration secrets", context={"provider": row.provider})
        return _validate(model, self._vault.decrypt_json(row.secrets_enc), label=f"{row.provider} secrets")

    async def _buffer(self, owner_id: str, brand_id: str) -> BufferProvider:
        row = await self._connected(owner_id, brand_id, ProviderKind.buffer)
        config = _validate(BufferConfig, row.config or {}, label="buffer config")
        secrets = self._secrets(row, BufferSecrets)

        return BufferProvider(
            self._http,
            access_token=secrets.access_token,
            channel_id_by_platform=build_channel_map(config),
            default_channel_id=config.default_channel_id,
            api_base_url=config.api_base_url or self._settings.buffer_api_base_url,
        )

    async def _google_business(self, owner_id: str, brand_id: str) -> GoogleBusinessProvider:
        row = await self._connected(owner_id, brand_id, ProviderKind.google_business)
        config = _validate(GoogleBusinessConfig, row.config or {}, label="google_business config")
        secrets = self._secrets(row, GoogleBusinessSecrets)

        threshold = self._clock.now() + timedelta(seconds=self._settings.token_refresh_skew_seconds)
        if secrets.expires_at is not None and secrets.expires_at <= threshold:
            if not secrets.refresh_token:
                raise AuthExpiredError(
                    "Google Business access token expired and no refresh token is stored; reconnect the integration",
                    context={"brand_id": brand_id},
                )

            tokens = await self._google_oauth.refresh_access_token(secrets.refresh_token)
            secrets = GoogleBusinessSecrets(
                access_token=tokens.access_token,
                refresh_token=tokens.refresh_token or secrets.refresh_token,
                expires_at=tokens.expires_at,
            )
            row.secrets_enc = self._vault.encrypt_json(secrets.to_storage())
            await self._db.commit()
            log.info("google business token refreshed owner_id=%s brand_id=%s", owner_id, brand_id)

        return GoogleBusinessProvider(
            self._http,
            access_token=secrets.access_token,
            location_name=config.primary_location,
            api_base_url=config.api_base_url,
        )

    async def _twilio(self, owner_id: str, brand_id: str) -> TwilioProvider:
        account_sid, auth_token, from_number = self._settings.require(
            "twilio_account_sid", "twilio_auth_token", "twilio_from_number"
        )
        await self._store.upsert(owner_id, brand_id, ProviderKind.twilio, config={"from_number": from_number})
        return TwilioProvider(self._http, account_sid=account_sid, auth_token=auth_token, from_number=from_number)

    async def _sendgrid(self, owner_id: str, brand_id: str) -> SendgridProvider:
        api_key, from_email = self._settings.require("sendgrid_api_key", "digest_from_email")
        reply_to = (self._settings.digest_reply_to_email or "").strip() or None

        config = {"from_email": from_email}
        if reply_to:
            config["reply_to_email"] = reply_to
        await self._store.upsert(owner_id, brand_id, ProviderKind.sendgrid, config=config)
        return SendgridProvider(self._http, api_key=api_key, from_email=from_email, reply_to_email=reply_to)
