"""
API Routes
"""
from fastapi import APIRouter

from app.api.webhooks.telegram import router as telegram_router

router = APIRouter()

router.include_router(telegram_router, prefix="/telegram", tags=["webhooks"])
