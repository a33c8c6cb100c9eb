from __future__ import annotations

from datetime import timezone
from typing import Mapping

from relay.core.errors import ConfigurationError
from relay.providers.base import PublishPostInput, PublishResult
from relay.providers.http import ProviderHttpClient, raise_for_result

DEFAULT_API_BASE = "https://api.bufferapp.com/1"


class BufferProvider:
    key = "buffer"

    def __init__(
        self,
        http: ProviderHttpClient,
        *,
        access_token: str,
        channel_id_by_platform: Mapping[str, str] | None = None,
        default_channel_id: str | None = None,
        api_base_url: str | None = None,
    ):
        self._http = http
        self._access_token = access_token
        self._channels = dict(channel_id_by_platform or {})
        self._default_channel_id = default_channel_id
        self._api_base = (api_base_url or DEFAULT_API_BASE).rstrip("/")

    def resolve_channel_id(self, platform: str) -> str:
        mapped = self._channels.get(platform) or self._default_channel_id
        if not mapped or not mapped.strip():
            raise ConfigurationError(
                f"No Buffer channel configured for platform '{platform}'",
                context={"platform": platform},
            )
        return mapped.strip()

    async def publish_post(self, post: PublishPostInput) -> PublishResult:
        channel_id = post.profile_id or self.resolve_channel_id(post.platform)

        form: dict[str, object] = {
            "access_token": self._access_token,
            "text": post.caption,
            "profile_ids[]": [channel_id],
            "now": "false" if post.scheduled_for else "true",
        }
        if post.scheduled_for:
            scheduled_at = post.scheduled_for.astimezone(timezone.utc)
            form["scheduled_at"] = scheduled_at.isoformat(timespec="milliseconds").replace("+00:00", "Z")
        if post.media_url:
            form["media[photo]"] = post.media_url
        if post.link_url:
            form["media[link]"] = post.link_url
        if post.title:
            form["media[title]"] = post.title

        result = await self._http.post_form(url=f"{self._api_base}/updates/create.json", form_body=form)
        raise_for_result(result, provider=self.key, action="Buffer publish")

        updates = result.json_dict().get("updates")
        message_id = None
        if isinstance(updates, list) and updates and isinstance(updates[0], dict):
            message_id = str(updates[0].get("id") or "") or None

        # Buffer holds scheduled updates in its queue until scheduled_at
        status = "queued" if post.scheduled_for else "sent"
        return PublishResult(status=status, raw=result.raw(), provider_message_id=message_id)
