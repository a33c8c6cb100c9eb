from fastapi import APIRouter

from relay.api.v1.endpoints.health import router as health_router
from relay.api.v1.endpoints.outbox import router as outbox_router
from relay.api.v1.endpoints.internal import router as internal_router
from relay.api.v1.endpoints.integrations import router as integrations_router


router = APIRouter(prefix="/v1")
router.include_router(health_router, tags=["health"])
router.include_router(outbox_router, tags=["outbox"])
router.include_router(internal_router, tags=["internal"])
router.include_router(integrations_router, tags=["integrations"])
