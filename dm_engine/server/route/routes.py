from fastapi import APIRouter

from .v1 import conversations, health, messages, notifications, profiles, reactions, realtime, storage


router = APIRouter()
router.include_router(health.router)
router.include_router(profiles.router, prefix="/profiles", tags=["profiles"])
router.include_router(conversations.router, prefix="/conversations", tags=["conversations"])
router.include_router(messages.router, prefix="/messages", tags=["messages"])
router.include_router(reactions.router, prefix="/reactions", tags=["reactions"])
router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
router.include_router(storage.router, prefix="/storage", tags=["storage"])
router.include_router(realtime.router, prefix="/realtime", tags=["realtime"])
