import base64
import binascii
import hashlib
import json
import os
from functools import lru_cache

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from relay.core.config import settings
from relay.core.errors import EncryptedPayloadAuthError, EncryptedPayloadFormatError, VaultKeyError

MIN_SECRET_LENGTH = 32
NONCE_BYTES = 12
TAG_BYTES = 16


def _b64decode(segment: str) -> bytes:
    try:
        return base64.b64decode(segment.encode("ascii"), validate=True)
    except (binascii.Error, UnicodeEncodeError) as e:
        raise EncryptedPayloadFormatError("Invalid encrypted payload format") from e


class SecretVault:
    """
    AES-256-GCM encryption for provider secrets.

    Output is ``b64(nonce).b64(tag).b64(ciphertext)``; every call draws a fresh
    nonce. The cipher key is SHA-256 of the configured secret.
    """

    def __init__(self, secret: str):
        if not secret or len(secret) < MIN_SECRET_LENGTH:
            raise VaultKeyError(f"INTEGRATION_SECRET_KEY must be set and at least {MIN_SECRET_LENGTH} characters long")
        self._aead = AESGCM(hashlib.sha256(secret.encode("utf-8")).digest())

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_BYTES)
        sealed = self._aead.encrypt(nonce, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_BYTES], sealed[-TAG_BYTES:]
        return ".".join(base64.b64encode(part).decode("ascii") for part in (nonce, tag, ciphertext))

    def decrypt(self, token: str) -> str:
        parts = token.split(".") if isinstance(token, str) else []
        if len(parts) != 3 or not parts[0] or not parts[1]:
            raise EncryptedPayloadFormatError("Invalid encrypted payload format")

        nonce, tag, ciphertext = (_b64decode(p) for p in parts)
        if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
            raise EncryptedPayloadFormatError("Invalid encrypted payload format")

        try:
            raw = self._aead.decrypt(nonce, ciphertext + tag, None)
        except InvalidTag as e:
            raise EncryptedPayloadAuthError("Encrypted payload failed authentication") from e
        return raw.decode("utf-8")

    def encrypt_json(self, data: dict) -> str:
        return self.encrypt(json.dumps(data, separators=(",", ":"), ensure_ascii=False))

    def decrypt_json(self, token: str) -> dict:
        data = json.loads(self.decrypt(token))
        if not isinstance(data, dict):
            raise EncryptedPayloadFormatError("Encrypted payload is not a JSON object")
        return data


@lru_cache(maxsize=1)
def get_vault() -> SecretVault:
    return SecretVault(settings.integration_secret_key.get_secret_value())
