from __future__ import annotations

import json
import time
from dataclasses import dataclass
from typing import Any, Mapping, Literal

import httpx

from relay.core.config import settings
from relay.core.errors import ProviderError


HttpMethod = Literal["GET", "POST", "PUT", "PATCH", "DELETE"]


@dataclass(frozen=True)
class JsonBody:
    data: Any


@dataclass(frozen=True)
class TextBody:
    text: str


ResponseBody = JsonBody | TextBody


@dataclass(frozen=True)
class HttpResult:
    ok: bool
    status_code: int | None
    body: ResponseBody

    error_code: str | None = None
    error_message: str | None = None
    retryable: bool = False

    elapsed_ms: int | None = None
    response_headers: dict[str, str] | None = None

    def json_dict(self) -> dict[str, Any]:
        if isinstance(self.body, JsonBody) and isinstance(self.body.data, dict):
            return self.body.data
        return {}

    def json_list(self) -> list[Any]:
        if isinstance(self.body, JsonBody) and isinstance(self.body.data, list):
            return self.body.data
        return []

    def raw(self) -> Any:
        """Body as stored in history: parsed JSON, or the text wrapped in a dict."""
        if isinstance(self.body, JsonBody):
            return self.body.data
        return {"raw": self.body.text} if self.body.text else {}

    def header(self, name: str) -> str | None:
        return (self.response_headers or {}).get(name.lower()) or None


def _is_json_response(resp: httpx.Response) -> bool:
    ct = (resp.headers.get("content-type") or "").lower()
    return "application/json" in ct or ct.endswith("+json")


def _cap_text(s: str, *, max_chars: int) -> str:
    if len(s) <= max_chars:
        return s
    return s[:max_chars] + f"...(truncated, {len(s)} chars)"


class ProviderHttpClient:
    """
    Shared HTTP client wrapper for provider adapters.

    - Uses one AsyncClient instance (connection pooling).
    - Does NOT retry; the outbox processor owns retries.
    - Decides JSON vs text once per response and returns a structured result.
    """

    def __init__(
        self,
        *,
        timeout_seconds: float = 20.0,
        max_response_body_chars: int = 20_000,
        default_headers: Mapping[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._timeout = httpx.Timeout(timeout_seconds)
        self._max_body = max_response_body_chars
        self._default_headers = dict(default_headers or {})
        self._client = httpx.AsyncClient(timeout=self._timeout, transport=transport)

    async def aclose(self) -> None:
        await self._client.aclose()

    async def request(
        self,
        *,
        method: HttpMethod,
        url: str,
        headers: Mapping[str, str] | None = None,
        params: Mapping[str, Any] | None = None,
        json_body: dict[str, Any] | None = None,
        form_body: Mapping[str, Any] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> HttpResult:
        # Merge headers (caller wins)
        h = dict(self._default_headers)
        if headers:
            h.update(dict(headers))

        started = time.perf_counter()
        try:
            resp = await self._client.request(
                method=method,
                url=url,
                headers=h,
                params=params,
                json=json_body,
                data=form_body,
                auth=auth,
            )
        except httpx.TimeoutException as e:
            return HttpResult(
                ok=False,
                status_code=None,
                body=TextBody(""),
                error_code="TIMEOUT",
                error_message=str(e) or "timeout",
                retryable=True,
            )
        except httpx.RequestError as e:
            # DNS errors, connection refused, TLS, etc.
            return HttpResult(
                ok=False,
                status_code=None,
                body=TextBody(""),
                error_code="REQUEST_ERROR",
                error_message=str(e) or type(e).__name__,
                retryable=True,
            )

        body: ResponseBody
        text = resp.text
        if _is_json_response(resp) and text:
            try:
                body = JsonBody(json.loads(text))
            except ValueError:
                body = TextBody(_cap_text(text, max_chars=self._max_body))
        else:
            body = TextBody(_cap_text(text, max_chars=self._max_body))

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        response_headers = {
            # small subset that is commonly useful
            "content-type": resp.headers.get("content-type", ""),
            "retry-after": resp.headers.get("retry-after", ""),
            "x-message-id": resp.headers.get("x-message-id", ""),
            "x-request-id": resp.headers.get("x-request-id", ""),
        }

        if 200 <= resp.status_code < 300:
            return HttpResult(
                ok=True,
                status_code=resp.status_code,
                body=body,
                elapsed_ms=elapsed_ms,
                response_headers=response_headers,
            )

        retryable = resp.status_code in (408, 429, 500, 502, 503, 504)

        return HttpResult(
            ok=False,
            status_code=resp.status_code,
            body=body,
            error_code=f"HTTP_{resp.status_code}",
            error_message=f"HTTP {resp.status_code}",
            retryable=retryable,
            elapsed_ms=elapsed_ms,
            response_headers=response_headers,
        )

    # helpers
    async def get(self, *, url: str, headers: Mapping[str, str] | None = None, params: Mapping[str, Any] | None = None) -> HttpResult:
        return await self.request(method="GET", url=url, headers=headers, params=params)

    async def post_json(self, *, url: str, headers: Mapping[str, str] | None = None, json_body: dict[str, Any] | None = None) -> HttpResult:
        return await self.request(method="POST", url=url, headers=headers, json_body=json_body)

    async def post_form(
        self,
        *,
        url: str,
        form_body: Mapping[str, Any],
        headers: Mapping[str, str] | None = None,
        auth: tuple[str, str] | None = None,
    ) -> HttpResult:
        return await self.request(method="POST", url=url, headers=headers, form_body=form_body, auth=auth)


def raise_for_result(result: HttpResult, *, provider: str, action: str) -> HttpResult:
    """Turn a failed HttpResult into a ProviderError; pass successes through."""
    if result.ok:
        return result

    if result.status_code is None:
        detail = f"{result.error_code}: {result.error_message}"
    else:
        detail = result.body.text if isinstance(result.body, TextBody) else json.dumps(result.body.data)
        detail = f"({result.status_code}): {_cap_text(detail, max_chars=500)}"

    raise ProviderError(
        f"{action} failed {detail}",
        provider=provider,
        status_code=result.status_code,
        retryable=result.retryable,
        context={"error_code": result.error_code},
    )


_client: ProviderHttpClient | None = None


def get_http_client() -> ProviderHttpClient:
    """Process-wide client shared by every adapter (one connection pool)."""
    global _client
    if _client is None:
        _client = ProviderHttpClient(timeout_seconds=settings.provider_timeout_seconds)
    return _client


async def close_http_client() -> None:
    global _client
    if _client is not None:
        await _client.aclose()
        _client = None
