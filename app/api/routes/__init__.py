"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.tickets import router as tickets_router
from app.api.routes.transactions import router as transactions_router
from app.api.routes.dashboard import router as dashboard_router
from app.api.webhooks.whatsapp import router as whatsapp_router
from app.api.webhooks.inbound import router as inbound_router
from app.api.webhooks.logs import router as webhook_logs_router

router = APIRouter()

router.include_router(tickets_router, prefix="/tickets", tags=["tickets"])
router.include_router(transactions_router, prefix="/transactions", tags=["transactions"])
router.include_router(dashboard_router, prefix="/dashboard", tags=["dashboard"])
router.include_router(whatsapp_router, prefix="/webhooks", tags=["webhooks"])
router.include_router(inbound_router, prefix="/webhooks", tags=["webhooks"])
router.include_router(webhook_logs_router, prefix="/webhooks", tags=["webhooks"])
