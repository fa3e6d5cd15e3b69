"""
API Router
Combines all endpoint routers
"""
from fastapi import APIRouter
from voipcore.api.v1.endpoints import (
    webhooks,
    billing,
    dialer,
    dead_letters,
    tokens,
)

api_router = APIRouter()

# Provider callbacks
api_router.include_router(webhooks.router)

# Operator and dashboard surface
api_router.include_router(billing.router)
api_router.include_router(dialer.router)
api_router.include_router(dead_letters.router)
api_router.include_router(tokens.router)
