from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from urllib.parse import quote

import httpx
from sqlalchemy.ext.asyncio import AsyncSession

from relay.core.clock import Clock
from relay.core.config import Settings
from relay.core.crypto import SecretVault
from relay.core.errors import ConfigurationError, ProviderError
from relay.core.signing import StateSigner
from relay.providers.http import HttpResult, ProviderHttpClient, raise_for_result
from relay.schemas.integrations import (
    GoogleBusinessConfig,
    GoogleBusinessLocation,
    GoogleBusinessSecrets,
    ProviderKind,
)
from relay.services.integrations import IntegrationStore
from relay.services.oauth_state import OAuthState, issue_oauth_state, verify_oauth_state

log = logging.getLogger(__name__)

AUTHORIZE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
TOKEN_URL = "https://oauth2.googleapis.com/token"
BUSINESS_INFO_BASE = "https://mybusinessbusinessinformation.googleapis.com/v1"

DEFAULT_EXPIRES_IN = 3600
MIN_EXPIRES_IN = 60


@dataclass(frozen=True)
class GoogleTokens:
    access_token: str
    expires_at: datetime
    refresh_token: str | None = None


class GoogleBusinessOAuth:
    """Authorization-code flow, token refresh and location discovery for Google Business Profile."""

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
        client_id, redirect_uri = self._settings.require("google_client_id", "google_redirect_uri")
        scopes = (self._settings.google_oauth_scopes or "").strip() or "https://www.googleapis.com/auth/business.manage"
        params = {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": scopes,
            "access_type": "offline",
            "include_granted_scopes": "true",
            "prompt": "consent",
            "state": state,
        }
        return str(httpx.URL(AUTHORIZE_URL, params=params))

    def _tokens_from(self, result: HttpResult, *, action: str) -> GoogleTokens:
        raise_for_result(result, provider=ProviderKind.google_business.value, action=action)
        data = result.json_dict()

        access_token = str(data.get("access_token") or "").strip()
        if not access_token:
            raise ProviderError(f"{action} did not include access_token", provider=ProviderKind.google_business.value)

        expires_in = data.get("expires_in")
        if not isinstance(expires_in, (int, float)) or isinstance(expires_in, bool):
            expires_in = DEFAULT_EXPIRES_IN
        refresh_token = data.get("refresh_token")
        if not isinstance(refresh_token, str) or not refresh_token.strip():
            refresh_token = None

        return GoogleTokens(
            access_token=access_token,
            expires_at=self._clock.now() + timedelta(seconds=max(MIN_EXPIRES_IN, int(expires_in))),
            refresh_token=refresh_token,
        )

    async def exchange_code(self, code: str) -> GoogleTokens:
        client_id, client_secret, redirect_uri = self._settings.require(
            "google_client_id", "google_client_secret", "google_redirect_uri"
        )
        result = await self._http.post_form(
            url=TOKEN_URL,
            form_body={
                "code": code,
                "client_id": client_id,
                "client_secret": client_secret,
                "redirect_uri": redirect_uri,
                "grant_type": "authorization_code",
            },
        )
        return self._tokens_from(result, action="Google OAuth token exchange")

    async def refresh_access_token(self, refresh_token: str) -> GoogleTokens:
        client_id, client_secret = self._settings.require("google_client_id", "google_client_secret")
        result = await self._http.post_form(
            url=TOKEN_URL,
            form_body={
                "client_id": client_id,
                "client_secret": client_secret,
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
            },
        )
        return self._tokens_from(result, action="Google token refresh")

    async def list_locations(self, access_token: str) -> list[GoogleBusinessLocation]:
        auth = {"Authorization": f"Bearer {access_token}"}
        accounts_result = await self._http.get(url=f"{BUSINESS_INFO_BASE}/accounts", headers=auth)
        raise_for_result(accounts_result, provider=ProviderKind.google_business.value, action="Google Business accounts fetch")

        locations: list[GoogleBusinessLocation] = []
        for account in accounts_result.json_dict().get("accounts") or []:
            account_name = account.get("name") if isinstance(account, dict) else None
            if not isinstance(account_name, str) or not account_name:
                continue

            res = await self._http.get(
                url=f"{BUSINESS_INFO_BASE}/{quote(account_name, safe='/')}/locations",
                headers=auth,
                params={"readMask": "name,title", "pageSize": 100},
            )
            if not res.ok:
                log.warning("google locations fetch failed account=%s status=%s", account_name, res.status_code)
                continue

            for loc in res.json_dict().get("locations") or []:
                if not isinstance(loc, dict) or not isinstance(loc.get("name"), str) or not loc["name"]:
                    continue
                title = loc.get("title") if isinstance(loc.get("title"), str) else None
                locations.append(GoogleBusinessLocation(name=loc["name"], title=title))

        return locations

    async def complete_oauth_and_save(self, db: AsyncSession, *, code: str, state_token: str) -> OAuthState:
        state = self.verify_state(state_token)
        tokens = await self.exchange_code(code)

        locations = await self.list_locations(tokens.access_token)
        if not locations:
            raise ConfigurationError("Google OAuth succeeded but no Business Profile locations were found for this account")

        secrets = GoogleBusinessSecrets(
            access_token=tokens.access_token,
            refresh_token=tokens.refresh_token,
            expires_at=tokens.expires_at,
        )
        config = GoogleBusinessConfig(
            location_name=locations[0].name,
            locations=locations,
            connected_at=self._clock.now(),
        )

        await IntegrationStore(db).upsert(
            state.user_id,
            state.brand_id,
            ProviderKind.google_business,
            config=config.to_storage(),
            secrets_enc=self._vault.encrypt_json(secrets.to_storage()),
        )
        await db.commit()

        log.info("google business connected owner_id=%s brand_id=%s locations=%s", state.user_id, state.brand_id, len(locations))
        return state
