import hmac

from fastapi import Header, HTTPException, status

from relay.core.config import settings


async def require_cron_secret(x_cron_secret: str | None = Header(default=None)) -> None:
    expected = settings.outbox_cron_secret.get_secret_value()
    if not x_cron_secret or not hmac.compare_digest(x_cron_secret.encode("utf-8"), expected.encode("utf-8")):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Forbidden")
