from functools import lru_cache

from fastapi import Depends, HTTPException, Request

from relay.core.clock import Clock, system_clock
from relay.core.config import settings
from relay.core.crypto import SecretVault, get_vault
from relay.core.signing import StateSigner
from relay.providers.http import ProviderHttpClient, get_http_client
from relay.services.buffer_oauth import BufferOAuth
from relay.services.google_oauth import GoogleBusinessOAuth
from relay.services.runner import OutboxRunner


def get_clock() -> Clock:
    return system_clock


@lru_cache(maxsize=1)
def get_signer() -> StateSigner:
    return StateSigner(settings.integration_secret_key.get_secret_value())


def get_buffer_oauth(
    http: ProviderHttpClient = Depends(get_http_client),
    vault: SecretVault = Depends(get_vault),
    signer: StateSigner = Depends(get_signer),
    clock: Clock = Depends(get_clock),
) -> BufferOAuth:
    return BufferOAuth(http, settings=settings, vault=vault, signer=signer, clock=clock)


def get_google_oauth(
    http: ProviderHttpClient = Depends(get_http_client),
    vault: SecretVault = Depends(get_vault),
    signer: StateSigner = Depends(get_signer),
    clock: Clock = Depends(get_clock),
) -> GoogleBusinessOAuth:
    return GoogleBusinessOAuth(http, settings=settings, vault=vault, signer=signer, clock=clock)


def get_outbox_runner(request: Request) -> OutboxRunner:
    runner = getattr(request.app.state, "outbox_runner", None)
    if runner is None:
        raise HTTPException(status_code=503, detail="Outbox processor not initialised")
    return runner
