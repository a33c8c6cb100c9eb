from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from relay.core.errors import SignatureError, StateTokenExpiredError
from relay.core.signing import StateSigner


@dataclass(frozen=True)
class OAuthState:
    user_id: str
    brand_id: str
    issued_at: int  # epoch seconds


def issue_oauth_state(signer: StateSigner, user_id: str, brand_id: str, *, now: datetime) -> str:
    return signer.create_signed_state({"userId": user_id, "brandId": brand_id, "ts": int(now.timestamp())})


def verify_oauth_state(signer: StateSigner, token: str, *, now: datetime, max_age_seconds: int = 900) -> OAuthState:
    payload = signer.verify_signed_state(token)

    user_id = payload.get("userId")
    brand_id = payload.get("brandId")
    ts = payload.get("ts")
    if not isinstance(user_id, str) or not user_id or not isinstance(brand_id, str) or not brand_id:
        raise SignatureError("Invalid OAuth state payload")
    if not isinstance(ts, (int, float)) or isinstance(ts, bool):
        raise SignatureError("Invalid OAuth state payload")

    if int(now.timestamp()) - int(ts) > max_age_seconds:
        raise StateTokenExpiredError("OAuth state token expired", context={"brand_id": brand_id})

    return OAuthState(user_id=user_id, brand_id=brand_id, issued_at=int(ts))
