"""
Entitlement Endpoints Module

API routes for the entitlement engine.

Routers:
- webhooks: Stripe webhook processing
- entitlements: Consume, usage, verify, reconcile and cancel for the caller
- admin: Operator correction, batch reconciliation and task draining

Usage:
    from enhpix.src.entitlements.endpoints import entitlements_router

    app.include_router(entitlements_router, prefix=settings.FASTAPI_API_V1_PATH)
"""

from fastapi import APIRouter

from .admin import router as admin_router
from .dependencies import get_container, get_current_user, get_current_user_id, require_admin
from .entitlements import router as user_entitlements_router
from .webhooks import router as webhooks_router

# Create main entitlements router
entitlements_router = APIRouter()

# Include all sub-routers
entitlements_router.include_router(webhooks_router, prefix="/billing")
entitlements_router.include_router(user_entitlements_router)
entitlements_router.include_router(admin_router)

__all__ = [
    'entitlements_router',
    'admin_router',
    'user_entitlements_router',
    'webhooks_router',
    'get_container',
    'get_current_user',
    'get_current_user_id',
    'require_admin',
]
