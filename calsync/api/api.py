# calsync/api/api.py
from fastapi import APIRouter

from calsync.api.routes import (
    accounts,
    bookings,
    feeds,
    holds,
    ics,
    sync,
    webhooks,
)

api_router = APIRouter()
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(ics.router, prefix="/ics", tags=["ics"])
api_router.include_router(sync.router, prefix="/sync", tags=["sync"])
api_router.include_router(feeds.router, prefix="/calendar/feeds", tags=["feeds"])
api_router.include_router(accounts.router, prefix="/calendar", tags=["calendar"])
api_router.include_router(holds.router, prefix="/holds", tags=["holds"])
api_router.include_router(bookings.router, prefix="/bookings", tags=["bookings"])
