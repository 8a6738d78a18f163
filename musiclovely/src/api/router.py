"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from src.api.cakto_webhook import router as cakto_webhook_router
from src.api.checkout import router as checkout_router
from src.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(cakto_webhook_router)
api_router.include_router(checkout_router)
api_router.include_router(health_router)
