import base64
import binascii
import hashlib
import hmac
import json
from typing import Any

from relay.core.crypto import MIN_SECRET_LENGTH
from relay.core.errors import SignatureError, VaultKeyError


def _b64url(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _b64url_decode(value: str) -> bytes:
    padded = value + "=" * (-len(value) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii"))
    except (binascii.Error, UnicodeEncodeError) as e:
        raise SignatureError("Invalid state token format") from e


class StateSigner:
    """
    HMAC-SHA256 signed, schema-agnostic state tokens: ``b64url(json).b64url(mac)``.
    Freshness is checked by callers.
    """

    def __init__(self, secret: str):
        if not secret or len(secret.strip()) < MIN_SECRET_LENGTH:
            raise VaultKeyError(f"INTEGRATION_SECRET_KEY must be set and at least {MIN_SECRET_LENGTH} characters")
        self._secret = secret.encode("utf-8")

    def _sign(self, encoded_payload: str) -> bytes:
        return hmac.new(self._secret, encoded_payload.encode("ascii"), hashlib.sha256).digest()

    def create_signed_state(self, payload: dict[str, Any]) -> str:
        encoded = _b64url(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
        return f"{encoded}.{_b64url(self._sign(encoded))}"

    def verify_signed_state(self, token: str) -> dict[str, Any]:
        parts = token.split(".") if isinstance(token, str) else []
        if len(parts) != 2 or not parts[0] or not parts[1]:
            raise SignatureError("Invalid state token format")

        encoded, signature = parts
        provided = _b64url_decode(signature)
        try:
            expected = self._sign(encoded)
        except UnicodeEncodeError as e:
            raise SignatureError("Invalid state token format") from e
        if len(provided) != len(expected) or not hmac.compare_digest(provided, expected):
            raise SignatureError("Invalid state token signature")

        try:
            payload = json.loads(_b64url_decode(encoded).decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise SignatureError("Invalid state token payload") from e
        if not isinstance(payload, dict):
            raise SignatureError("Invalid state token payload")
        return payload
