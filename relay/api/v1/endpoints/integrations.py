import logging

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from fastapi.responses import RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from relay.api.deps import get_buffer_oauth, get_clock, get_google_oauth
from relay.core.clock import Clock
from relay.core.config import settings
from relay.core.crypto import SecretVault, get_vault
from relay.core.db import get_db
from relay.core.errors import ConfigurationError, RelayError
from relay.schemas.integrations import BufferConnect, IntegrationOut, OAuthStartOut, ProviderKind
from relay.services.buffer_oauth import BufferOAuth, connect_buffer_integration
from relay.services.google_oauth import GoogleBusinessOAuth
from relay.services.integrations import IntegrationStore, ensure_enabled
from relay.services.tenant import Tenant, get_tenant

log = logging.getLogger(__name__)

router = APIRouter()


def _out(row) -> IntegrationOut:
    return IntegrationOut(
        id=row.id,
        provider=row.provider,
        status=row.status,
        config=row.config or {},
        created_at=row.created_at,
        updated_at=row.updated_at,
    )


def _enabled_or_400(kind: ProviderKind) -> None:
    try:
        ensure_enabled(settings, kind)
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/integrations", response_model=list[IntegrationOut])
async def list_integrations(
    tenant: Tenant = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
) -> list[IntegrationOut]:
    rows = await IntegrationStore(db).list_for_tenant(tenant.owner_id, tenant.brand_id)
    return [_out(r) for r in rows]


@router.delete("/integrations/{provider}", status_code=204)
async def disconnect_integration(
    provider: ProviderKind,
    tenant: Tenant = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
) -> Response:
    found = await IntegrationStore(db).disconnect(tenant.owner_id, tenant.brand_id, provider)
    if not found:
        raise HTTPException(status_code=404, detail="Integration not found")
    await db.commit()
    return Response(status_code=204)


@router.post("/integrations/buffer/connect", response_model=IntegrationOut)
async def connect_buffer(
    body: BufferConnect,
    tenant: Tenant = Depends(get_tenant),
    db: AsyncSession = Depends(get_db),
    vault: SecretVault = Depends(get_vault),
    clock: Clock = Depends(get_clock),
) -> IntegrationOut:
    _enabled_or_400(ProviderKind.buffer)
    row = await connect_buffer_integration(db, vault, clock, tenant.owner_id, tenant.brand_id, body)
    return _out(row)


@router.get("/integrations/buffer/oauth/start", response_model=OAuthStartOut)
async def buffer_oauth_start(
    tenant: Tenant = Depends(get_tenant),
    oauth: BufferOAuth = Depends(get_buffer_oauth),
) -> OAuthStartOut:
    _enabled_or_400(ProviderKind.buffer)
    try:
        url = oauth.build_authorize_url(oauth.create_state(tenant.owner_id, tenant.brand_id))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return OAuthStartOut(authorize_url=url)


@router.get("/integrations/buffer/oauth/callback")
async def buffer_oauth_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    oauth: BufferOAuth = Depends(get_buffer_oauth),
) -> RedirectResponse:
    if error or not code or not state:
        log.warning("buffer oauth callback rejected error=%s has_code=%s has_state=%s", error, bool(code), bool(state))
        return RedirectResponse(settings.oauth_failure_redirect, status_code=302)

    try:
        await oauth.complete_oauth_and_save(db, code=code, state_token=state)
    except RelayError as e:
        await db.rollback()
        log.warning("buffer oauth callback failed: %s: %s", type(e).__name__, e)
        return RedirectResponse(settings.oauth_failure_redirect, status_code=302)

    return RedirectResponse(settings.oauth_success_redirect, status_code=302)


@router.get("/integrations/google/oauth/start", response_model=OAuthStartOut)
async def google_oauth_start(
    tenant: Tenant = Depends(get_tenant),
    oauth: GoogleBusinessOAuth = Depends(get_google_oauth),
) -> OAuthStartOut:
    _enabled_or_400(ProviderKind.google_business)
    try:
        url = oauth.build_authorize_url(oauth.create_state(tenant.owner_id, tenant.brand_id))
    except ConfigurationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return OAuthStartOut(authorize_url=url)


@router.get("/integrations/google/oauth/callback")
async def google_oauth_callback(
    code: str | None = Query(default=None),
    state: str | None = Query(default=None),
    error: str | None = Query(default=None),
    db: AsyncSession = Depends(get_db),
    oauth: GoogleBusinessOAuth = Depends(get_google_oauth),
) -> RedirectResponse:
    if error or not code or not state:
        log.warning("google oauth callback rejected error=%s has_code=%s has_state=%s", error, bool(code), bool(state))
        return RedirectResponse(settings.oauth_failure_redirect, status_code=302)

    try:
        await oauth.complete_oauth_and_save(db, code=code, state_token=state)
    except RelayError as e:
        await db.rollback()
        log.warning("google oauth callback failed: %s: %s", type(e).__name__, e)
        return RedirectResponse(settings.oauth_failure_redirect, status_code=302)

    return RedirectResponse(settings.oauth_success_redirect, status_code=302)
