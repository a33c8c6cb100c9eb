from __future__ import annotations

from typing import Any

from relay.providers.base import EmailResult
from relay.providers.http import ProviderHttpClient, raise_for_result

SEND_URL = "https://api.sendgrid.com/v3/mail/send"


class SendgridProvider:
    key = "sendgrid"

    def __init__(self, http: ProviderHttpClient, *, api_key: str, from_email: str, reply_to_email: str | None = None):
        self._http = http
        self._api_key = api_key
        self._from_email = from_email
        self._reply_to_email = reply_to_email

    async def send_email(self, *, to: str, subject: str, html: str, text: str | None = None) -> EmailResult:
        content = [{"type": "text/plain", "value": text}] if text else []
        content.append({"type": "text/html", "value": html})

        body: dict[str, Any] = {
            "personalizations": [{"to": [{"email": to}]}],
            "from": {"email": self._from_email},
            "subject": subject,
            "content": content,
        }
        if self._reply_to_email:
            body["reply_to"] = {"email": self._reply_to_email}

        result = await self._http.post_json(
            url=SEND_URL,
            headers={"Authorization": f"Bearer {self._api_key}"},
            json_body=body,
        )
        raise_for_result(result, provider=self.key, action="SendGrid email")

        # 202 Accepted with an empty body; the id comes back as a header
        raw = result.raw() or {"status": "accepted"}
        return EmailResult(raw=raw, provider_message_id=result.header("x-message-id"))
