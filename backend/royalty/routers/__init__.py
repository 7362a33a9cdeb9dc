"""Royalty Engine - API Routers"""
from .accounts import router as accounts_router
from .admin import router as admin_router
from .events import router as events_router
from .scheduler import router as scheduler_router
from .webhooks import router as webhooks_router

__all__ = [
    "accounts_router",
    "admin_router",
    "events_router",
    "scheduler_router",
    "webhooks_router",
]
