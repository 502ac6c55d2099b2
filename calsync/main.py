# calsync/main.py
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from calsync.api.api import api_router
from calsync.core.config import settings
from calsync.core.error_handlers import register_exception_handlers
from calsync.core.logging import setup_logging
from calsync.core.middleware import register_middlewares
from calsync.services import register_services
from calsync.services.holds import hold_manager
from calsync.services.webhooks import webhook_debouncer

# Set up the logger at the start
logger = setup_logging()


# Background task expiring slot holds
async def sweep_expired_holds():
    while True:
        try:
            removed = hold_manager.cleanup_expired()
            if removed:
                logger.debug(f"Hold sweep removed {removed} expired holds")
            await asyncio.sleep(settings.HOLD_SWEEP_INTERVAL_SECONDS)
        except Exception as e:
            logger.error(f"Error in hold sweep: {str(e)}", exc_info=True)
            await asyncio.sleep(settings.HOLD_SWEEP_INTERVAL_SECONDS)


def resync_after_holds_clear(project_id: int, account_ids) -> None:
    """Accounts whose events were skipped for a hold get another pass."""
    logger.info(
        f"Holds on project {project_id} cleared; re-syncing accounts {sorted(account_ids)}"
    )
    webhook_debouncer.schedule_threadsafe(account_ids)


# Context manager for startup/shutdown events
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting CalSync API {app.version}")

    register_services()
    logger.info("Services registered")

    webhook_debouncer.bind_loop(asyncio.get_running_loop())
    hold_manager.on_cleared(resync_after_holds_clear)
    background_task = asyncio.create_task(sweep_expired_holds())

    yield

    logger.info("Shutting down application and background tasks")
    hold_manager.on_cleared(None)
    background_task.cancel()
    try:
        await background_task
    except asyncio.CancelledError:
        logger.info("Background tasks cancelled successfully")
    await webhook_debouncer.shutdown()


app = FastAPI(
    title="CalSync API",
    description="Keeps bookings in sync with Google, Microsoft and ICS calendars",
    version="0.1.0",
    lifespan=lifespan,
)

# Register custom exception handlers
register_exception_handlers(app)

# Register middleware
register_middlewares(app)

# Set up CORS middleware
if settings.BACKEND_CORS_ORIGINS:
    allowed_origins = [str(origin) for origin in settings.BACKEND_CORS_ORIGINS]
    logger.info(f"Setting up CORS with allowed origins: {allowed_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

app.include_router(api_router, prefix=settings.API_V1_STR)


@app.get("/")
def root():
    return {"message": "Welcome to the CalSync API"}


def create_app():
    return app


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
