from __future__ import annotations

from typing import Any, Dict, Optional


class RelayError(Exception):
    """
    Base error for every expected, controlled failure in relay.

    ``context`` carries non-secret diagnostic fields for logs.
    """

    def __init__(self, message: str = "", *, context: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = context or {}

    def __str__(self) -> str:  # pragma: no cover - trivial
        return self.message or self.__class__.__name__


class PayloadValidationError(RelayError):
    """
    Outbox payload is missing a required field or has the wrong shape.
    Retrying will fail identically; the producing feature must be fixed.
    """


class UnsupportedOutboxTypeError(RelayError):
    """Record type is outside the closed set of outbox types."""


class ConfigurationError(RelayError):
    """Integration disabled, not connected, or required config/env missing."""


class NotConnectedError(ConfigurationError):
    """No connected integration exists for the tenant and provider."""


class AuthExpiredError(RelayError):
    """
    Access token expired and there is no refresh path. The integration has to be
    reconnected out-of-band.
    """


class ProviderError(RelayError):
    """Third-party call failed (non-2xx response or network failure)."""

    def __init__(
        self,
        message: str = "",
        *,
        provider: str,
        status_code: int | None = None,
        retryable: bool = True,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, context=context)
        self.provider = provider
        self.status_code = status_code
        self.retryable = retryable


class CryptoError(RelayError):
    """Base class for vault and signature failures. Never ignored."""


class VaultKeyError(CryptoError):
    """Integration secret key is missing or too short."""


class EncryptedPayloadFormatError(CryptoError):
    """Encrypted payload is not a well-formed nonce.tag.ciphertext triplet."""


class EncryptedPayloadAuthError(CryptoError):
    """Authentication tag did not verify (tampered payload or wrong key)."""


class SignatureError(CryptoError):
    """Signed state token is malformed or its signature does not match."""


class StateTokenExpiredError(CryptoError):
    """Signed state token is older than the allowed window."""
