from __future__ import annotations

from typing import Any

from relay.core.errors import ConfigurationError
from relay.providers.base import GbpPostInput, GbpPostResult
from relay.providers.http import ProviderHttpClient, raise_for_result

DEFAULT_API_BASE = "https://mybusiness.googleapis.com/v4"


class GoogleBusinessProvider:
    key = "google_business"

    def __init__(
        self,
        http: ProviderHttpClient,
        *,
        access_token: str,
        location_name: str | None,
        api_base_url: str | None = None,
    ):
        self._http = http
        self._access_token = access_token
        self._location_name = location_name
        self._api_base = (api_base_url or DEFAULT_API_BASE).rstrip("/")

    async def create_post(self, post: GbpPostInput) -> GbpPostResult:
        location = post.location_name or self._location_name
        if not location:
            raise ConfigurationError("No Google Business location configured")

        body: dict[str, Any] = {
            "languageCode": "en-US",
            "summary": post.summary,
            "topicType": "STANDARD",
        }
        if post.call_to_action_url:
            body["callToAction"] = {
                "actionType": (post.cta or "LEARN_MORE").upper(),
                "url": post.call_to_action_url,
            }
        if post.media_url:
            body["media"] = [{"mediaFormat": "PHOTO", "sourceUrl": post.media_url}]

        result = await self._http.post_json(
            url=f"{self._api_base}/{location.lstrip('/')}/localPosts",
            headers={"Authorization": f"Bearer {self._access_token}"},
            json_body=body,
        )
        raise_for_result(result, provider=self.key, action="Google Business post")

        name = str(result.json_dict().get("name") or "")
        return GbpPostResult(raw=result.raw(), provider_post_id=name or None)
