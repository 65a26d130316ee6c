"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.admin import router as admin_router
from app.api.routes.drivers import router as drivers_router
from app.api.routes.orders import router as orders_router
from app.api.routes.wallets import router as wallets_router
from app.api.webhooks.gateway import router as gateway_webhook_router

router = APIRouter()

# Canonical webhook endpoint (documented); must precede the orders router
router.include_router(gateway_webhook_router, prefix="/webhooks/gateway", tags=["webhooks"])

# Backwards-compatible webhook endpoint
router.include_router(
    gateway_webhook_router,
    prefix="/orders/webhook",
    tags=["webhooks"],
    include_in_schema=False
)

router.include_router(orders_router, prefix="/orders", tags=["orders"])
router.include_router(wallets_router, prefix="/wallets", tags=["wallets"])
router.include_router(drivers_router, prefix="/drivers", tags=["drivers"])
router.include_router(admin_router, prefix="/admin", tags=["admin"])
