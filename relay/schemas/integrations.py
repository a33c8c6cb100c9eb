from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any

from pydantic import AliasChoices, BaseModel, BeforeValidator, ConfigDict, Field, StringConstraints

from relay.schemas.outbox import Platform


class ProviderKind(str, Enum):
    buffer = "buffer"
    twilio = "twilio"
    google_business = "google_business"
    sendgrid = "sendgrid"


class IntegrationStatus(str, Enum):
    connected = "connected"
    disconnected = "disconnected"


def _expiry(value: Any) -> Any:
    # older rows stored epoch milliseconds under expiry_date
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if isinstance(value, str) and value.strip() == "":
        return None
    return value


def _optional(value: Any) -> Any:
    if not isinstance(value, str) or value.strip() == "":
        return None
    return value


Token = Annotated[str, StringConstraints(strip_whitespace=True, min_length=1)]
OptionalToken = Annotated[str | None, BeforeValidator(_optional)]
Expiry = Annotated[datetime | None, BeforeValidator(_expiry)]


class _Stored(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    def to_storage(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


# ---- secrets (encrypted at rest) ----

class BufferSecrets(_Stored):
    access_token: Token = Field(validation_alias=AliasChoices("access_token", "accessToken"))
    refresh_token: OptionalToken = Field(default=None, validation_alias=AliasChoices("refresh_token", "refreshToken"))
    expires_at: Expiry = Field(default=None, validation_alias=AliasChoices("expires_at", "expiresAt"))


class GoogleBusinessSecrets(_Stored):
    access_token: Token = Field(validation_alias=AliasChoices("access_token", "accessToken"))
    refresh_token: OptionalToken = Field(default=None, validation_alias=AliasChoices("refresh_token", "refreshToken"))
    expires_at: Expiry = Field(default=None, validation_alias=AliasChoices("expires_at", "expiresAt", "expiry_date"))


# ---- config (plain JSON) ----

class BufferProfile(_Stored):
    id: Token
    service: str = "other"
    username: str = ""


class BufferConfig(_Stored):
    buffer_user_id: str | None = None
    org_id: str | None = None
    connected_at: datetime | None = Field(default=None, validation_alias=AliasChoices("connected_at", "connectedAt"))
    profiles: list[BufferProfile] = Field(default_factory=list)
    channel_id_by_platform: dict[Platform, str] = Field(
        default_factory=dict, validation_alias=AliasChoices("channel_id_by_platform", "channelIdByPlatform")
    )
    default_channel_id: OptionalToken = Field(
        default=None, validation_alias=AliasChoices("default_channel_id", "defaultChannelId")
    )
    api_base_url: OptionalToken = Field(default=None, validation_alias=AliasChoices("api_base_url", "apiBaseUrl"))


class GoogleBusinessLocation(_Stored):
    name: Token
    title: str | None = None


class GoogleBusinessConfig(_Stored):
    location_name: OptionalToken = Field(default=None, validation_alias=AliasChoices("location_name", "locationName"))
    locations: list[GoogleBusinessLocation] = Field(default_factory=list)
    connected_at: datetime | None = Field(default=None, validation_alias=AliasChoices("connected_at", "connectedAt"))
    api_base_url: OptionalToken = Field(default=None, validation_alias=AliasChoices("api_base_url", "apiBaseUrl"))

    @property
    def primary_location(self) -> str | None:
        if self.location_name:
            return self.location_name
        return self.locations[0].name if self.locations else None


# ---- API ----

class BufferConnect(BaseModel):
    access_token: str = Field(min_length=1)
    channel_id_by_platform: dict[Platform, str] = Field(default_factory=dict)
    default_channel_id: str | None = None
    api_base_url: str | None = None


class IntegrationOut(BaseModel):
    id: str
    provider: str
    status: str
    config: dict
    created_at: datetime
    updated_at: datetime


class OAuthStartOut(BaseModel):
    authorize_url: str
