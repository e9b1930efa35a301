"""
FastAPI router for the payment lifecycle endpoints
"""
from fastapi import APIRouter

from paycycle.api.operations import router as operations_router
from paycycle.api.webhooks import router as webhooks_router

router = APIRouter()

router.include_router(webhooks_router)  # Provider webhooks (public, signature-checked)
router.include_router(operations_router)  # Operational controls (admin token)
