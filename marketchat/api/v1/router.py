"""Main API router aggregating all v1 routes."""

from fastapi import APIRouter

from marketchat.api.v1 import conversations, notifications

api_router = APIRouter()

# Include all route modules
api_router.include_router(conversations.router)
api_router.include_router(notifications.router)
