"""API routes."""

from teamguard.api.auth import router as auth_router
from teamguard.api.permissions import router as permissions_router
from teamguard.api.integrations import router as integrations_router

__all__ = [
    "auth_router",
    "permissions_router",
    "integrations_router",
]
