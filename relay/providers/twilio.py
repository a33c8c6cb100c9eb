from __future__ import annotations

from urllib.parse import quote

from relay.providers.base import SmsResult
from relay.providers.http import ProviderHttpClient, raise_for_result

API_BASE = "https://api.twilio.com/2010-04-01"


class TwilioProvider:
    key = "twilio"

    def __init__(self, http: ProviderHttpClient, *, account_sid: str, auth_token: str, from_number: str):
        self._http = http
        self._account_sid = account_sid
        self._auth_token = auth_token
        self._from_number = from_number

    async def send_sms(self, *, to: str, message: str) -> SmsResult:
        result = await self._http.post_form(
            url=f"{API_BASE}/Accounts/{quote(self._account_sid, safe='')}/Messages.json",
            form_body={"To": to, "From": self._from_number, "Body": message},
            auth=(self._account_sid, self._auth_token),
        )
        raise_for_result(result, provider=self.key, action="Twilio SMS")

        sid = str(result.json_dict().get("sid") or "")
        return SmsResult(raw=result.raw(), provider_message_id=sid or None)
