# calsync/api/routes/accounts.py
import logging
from typing import Any, List, Optional

from fastapi import APIRouter, Depends
from fastapi.responses import HTMLResponse

from calsync import models, schemas
from calsync.api import deps
from calsync.core.exceptions import BusinessException
from calsync.core.logging import log_context
from calsync.models.calendar import CalendarProvider
from calsync.services.calendar_account_service import CalendarAccountService

logger = logging.getLogger(__name__)

router = APIRouter()

PROVIDER_NAMES = {
    CalendarProvider.GOOGLE: "Google Calendar",
    CalendarProvider.MICROSOFT: "Outlook Calendar",
}


# HTML Templates
def get_success_page(provider: CalendarProvider) -> str:
    """Generate success HTML page"""
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <title>{PROVIDER_NAMES[provider]} Connected</title>
        <style>
            body {{ font-family: Arial, sans-serif; text-align: center; margin-top: 50px; }}
            .success {{ color: green; font-weight: bold; }}
        </style>
    </head>
    <body>
        <h2 class="success">{PROVIDER_NAMES[provider]} Successfully Connected!</h2>
        <p>Bookings will now stay in sync with this calendar.</p>
        <p>You can close this window and return to the app.</p>
    </body>
    </html>
    """


def get_error_page(provider: CalendarProvider, error_message: str) -> str:
    """Generate error HTML page"""
    return f"""
    <!DOCTYPE html>
    <html>
    <head>
        <title>Connection Error</title>
        <style>
            body {{ font-family: Arial, sans-serif; text-align: center; margin-top: 50px; }}
            .error {{ color: red; font-weight: bold; }}
        </style>
    </head>
    <body>
        <h2 class="error">{PROVIDER_NAMES[provider]} Connection Failed</h2>
        <p>Error: {error_message}</p>
        <p>Please try again or contact support if the problem persists.</p>
    </body>
    </html>
    """


@router.get("/accounts", response_model=List[schemas.CalendarAccount])
def list_accounts(
    current_user: models.User = Depends(deps.get_current_active_user),
    account_service: CalendarAccountService = Depends(deps.get_calendar_account_service),
) -> Any:
    return account_service.list_accounts(current_user.id)


@router.post("/accounts/ics", response_model=schemas.CalendarAccount, status_code=201)
def subscribe_ics(
    subscription: schemas.IcsSubscriptionCreate,
    current_user: models.User = Depends(deps.get_current_active_user),
    account_service: CalendarAccountService = Depends(deps.get_calendar_account_service),
) -> Any:
    """Import bookings from an ICS calendar URL (read-only)."""
    with log_context(user_id=current_user.id, action="subscribe_ics"):
        return account_service.subscribe_ics(current_user.id, subscription)


@router.delete("/accounts/{account_id}", response_model=schemas.CalendarAccount)
async def revoke_account(
    account_id: int,
    current_user: models.User = Depends(deps.get_current_active_user),
    account_service: CalendarAccountService = Depends(deps.get_calendar_account_service),
) -> Any:
    with log_context(user_id=current_user.id, action="revoke_account", account_id=account_id):
        return await account_service.revoke_account(current_user.id, account_id)


@router.post(
    "/accounts/{account_id}/mappings",
    response_model=schemas.CalendarMapping,
    status_code=201,
)
def add_mapping(
    account_id: int,
    mapping_in: schemas.CalendarMappingCreate,
    current_user: models.User = Depends(deps.get_current_active_user),
    account_service: CalendarAccountService = Depends(deps.get_calendar_account_service),
) -> Any:
    return account_service.add_mapping(current_user.id, account_id, mapping_in)


@router.post("/accounts/{account_id}/watch", response_model=schemas.WatchResponse)
async def watch_account(
    account_id: int,
    current_user: models.User = Depends(deps.get_current_active_user),
    account_service: CalendarAccountService = Depends(deps.get_calendar_account_service),
) -> Any:
    """Subscribe to provider push notifications for this account."""
    with log_context(user_id=current_user.id, action="watch_account", account_id=account_id):
        channel = await account_service.watch_account(current_user.id, account_id)
        return {"channel_id": channel.channel_id, "expires_at": channel.expires_at}


@router.get("/{provider}/authorize", response_model=schemas.AuthorizationUrl)
def authorize(
    provider: CalendarProvider,
    current_user: models.User = Depends(deps.get_current_active_user),
    account_service: CalendarAccountService = Depends(deps.get_calendar_account_service),
) -> Any:
    """Start the OAuth flow for Google or Microsoft."""
    url = account_service.start_oauth_flow(current_user.id, provider)
    return {"authorization_url": url}


@router.get("/{provider}/callback", response_class=HTMLResponse)
async def oauth_callback(
    provider: CalendarProvider,
    state: Optional[str] = None,
    code: Optional[str] = None,
    error: Optional[str] = None,
    account_service: CalendarAccountService = Depends(deps.get_calendar_account_service),
) -> Any:
    """
    Public OAuth callback endpoint - receives the provider's redirect.
    """
    if provider not in PROVIDER_NAMES:
        return HTMLResponse("Unsupported provider", status_code=404)
    if error:
        return get_error_page(provider, f"Authorization denied: {error}")
    if not code or not state:
        return get_error_page(provider, "Missing required parameters")

    try:
        await account_service.complete_oauth_flow(provider, state, code)
    except BusinessException as e:
        logger.error(f"Error completing {provider.value} OAuth: {e.message}")
        return get_error_page(provider, e.message)
    return get_success_page(provider)
