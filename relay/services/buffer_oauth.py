from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.clock import Clock
from relay.core.config import Settings
from relay.core.crypto import SecretVault
from relay.core.errors import ProviderError
from relay.core.signing import StateSigner
from relay.models.integration import IntegrationCredential
from relay.providers.http import ProviderHttpClient, raise_for_result
from relay.schemas.integrations import BufferConfig, BufferConnect, BufferProfile, BufferSecrets, ProviderKind
from relay.services.integrations import IntegrationStore
from relay.services.oauth_state import OAuthState, issue_oauth_state, verify_oauth_state

log = logging.getLogger(__name__)

AUTHORIZE_URL = "https://buffer.com/oauth2/authorize"
API_BASE = "https://api.bufferapp.com/1"


def _profile_from(entry: Any) -> BufferProfile | None:
    if not isinstance(entry, dict):
        return None
    profile_id = entry.get("id")
    if not isinstance(profile_id, str) or not profile_id.strip():
        return None
    service = entry.get("service") if isinstance(entry.get("service"), str) else "other"
    username = ""
    for key in ("service_username", "formatted_username"):
        if isinstance(entry.get(key), str):
            username = entry[key]
            break
    return BufferProfile(id=profile_id, service=service, username=username)


class BufferOAuth:
    def __init__(
        self,
        http: ProviderHttpClient,
        *,
        settings: Settings,
        vault: SecretVault,
        signer: StateSigner,
        clock: Clock,
    ):
        self._http = http
        self._settings = settings
        self._vault = vault
        self._signer = signer
        self._clock = clock

    def create_state(self, user_id: str, brand_id: str) -> str:
        return issue_oauth_state(self._signer, user_id, brand_id, now=self._clock.now())

    def verify_state(self, token: str) -> OAuthState:
        return verify_oauth_state(
            self._signer,
            token,
            now=self._clock.now(),
            max_age_seconds=self._settings.oauth_state_max_age_seconds,
        )

    def build_authorize_url(self, state: str) -> str:
        client_id, redirect_uri = self._settings.require("buffer_client_id", "buffer_redirect_uri")
        params = {"client_id": client_id, "redirect_uri": redirect_uri, "response_type": "code", "state": state}
        return str(httpx.URL(AUTHORIZE_URL, params=params))

    async def exchange_code(self, code: str) -> dict[str, Any]:
        client_id, client_secret, redirect_uri = self._settings.require(
            "buffer_client_id", "buffer_client_secret", "buffer_redirect_uri"
        )
        result = await self._http.post_form(
            url=f"{API_BASE}/oauth2/token.json",
            form_body={
                "grant_type": "authorization_code",
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
            },
        )
        raise_for_result(result, provider=ProviderKind.buffer.value, action="Buffer token exchange")
        return result.json_dict()

    async def fetch_user(self, access_token: str) -> dict[str, Any]:
        result = await self._http.get(url=f"{API_BASE}/user.json", params={"access_token": access_token})
        raise_for_result(result, provider=ProviderKind.buffer.value, action="Buffer user fetch")
        return result.json_dict()

    async def fetch_profiles(self, access_token: str) -> list[BufferProfile]:
        result = await self._http.get(url=f"{API_BASE}/profiles.json", params={"access_token": access_token})
        raise_for_result(result, provider=ProviderKind.buffer.value, action="Buffer profile fetch")
        return [p for p in (_profile_from(e) for e in result.json_list()) if p is not None]

    async def complete_oauth_and_save(self, db: AsyncSession, *, code: str, state_token: str) -> OAuthState:
        state = self.verify_state(state_token)
        token = await self.exchange_code(code)

        access_token = str(token.get("access_token") or "").strip()
        if not access_token:
            raise ProviderError("Buffer access_token missing in token response", provider=ProviderKind.buffer.value)

        expires_at = None
        if isinstance(token.get("expires_in"), (int, float)):
            expires_at = self._clock.now() + timedelta(seconds=token["expires_in"])
        secrets = BufferSecrets(
            access_token=access_token,
            refresh_token=token.get("refresh_token") if isinstance(token.get("refresh_token"), str) else None,
            expires_at=expires_at,
        )

        user = await self.fetch_user(access_token)
        profiles = await self.fetch_profiles(access_token)

        store = IntegrationStore(db)
        existing = await store.get(state.user_id, state.brand_id, ProviderKind.buffer)
        previous = BufferConfig.model_validate(existing.config or {}) if existing else BufferConfig()

        config = previous.model_copy(
            update={
                "buffer_user_id": str(user.get("id") or "").strip() or None,
                "org_id": user.get("organization_id") if isinstance(user.get("organization_id"), str) else None,
                "connected_at": self._clock.now(),
                "profiles": profiles,
            }
        )
        await store.upsert(
            state.user_id,
            state.brand_id,
            ProviderKind.buffer,
            config=config.to_storage(),
            secrets_enc=self._vault.encrypt_json(secrets.to_storage()),
        )
        await db.commit()

        log.info("buffer connected owner_id=%s brand_id=%s profiles=%s", state.user_id, state.brand_id, len(profiles))
        return state


async def connect_buffer_integration(
    db: AsyncSession,
    vault: SecretVault,
    clock: Clock,
    owner_id: str,
    brand_id: str,
    body: BufferConnect,
) -> IntegrationCredential:
    """Connect Buffer with a token pasted by the owner instead of the OAuth round trip."""
    config = BufferConfig(
        connected_at=clock.now(),
        channel_id_by_platform={k: v.strip() for k, v in body.channel_id_by_platform.items() if v and v.strip()},
        default_channel_id=body.default_channel_id,
        api_base_url=body.api_base_url,
    )
    secrets = BufferSecrets(access_token=body.access_token)

    row = await IntegrationStore(db).upsert(
        owner_id,
        brand_id,
        ProviderKind.buffer,
        config=config.to_storage(),
        secrets_enc=vault.encrypt_json(secrets.to_storage()),
    )
    await db.commit()
    return row
