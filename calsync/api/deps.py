# calsync/api/deps.py
from fastapi import Depends, HTTPException, status
from fastapi.security import OAuth2PasswordBearer
from jose import jwt
from pydantic import ValidationError
from sqlalchemy.orm import Session

from calsync.core import security
from calsync.core.config import settings
from calsync.db.session import get_db
from calsync.models.user import User
from calsync.repositories.user_repository import UserRepository
from calsync.services.booking_service import BookingService
from calsync.services.calendar_account_service import CalendarAccountService
from calsync.services.holds import get_hold_manager
from calsync.services.ics_feed import IcsFeedService
from calsync.services.sync_service import SyncService
from calsync.services.webhooks import get_webhook_debouncer
from calsync.utils.dependencies import get_service

# OAuth2 password bearer scheme for token extraction
oauth2_scheme = OAuth2PasswordBearer(
    tokenUrl=f"{settings.API_V1_STR}/login/access-token"
)

# Service dependencies; module-level so tests can override them
get_booking_service = get_service(BookingService)
get_calendar_account_service = get_service(CalendarAccountService)
get_ics_feed_service = get_service(IcsFeedService)
get_sync_service = get_service(SyncService)

# Process-wide components
get_holds = get_hold_manager
get_debouncer = get_webhook_debouncer


# Authentication dependencies
async def get_current_user(
    db: Session = Depends(get_db),
    token: str = Depends(oauth2_scheme),
) -> User:
    """
    Get the current authenticated user.

    Args:
        db: Database session
        token: JWT token from the request

    Returns:
        Authenticated user object

    Raises:
        HTTPException: If authentication fails
    """
    try:
        # Verify the token and extract the subject (user id)
        payload = jwt.decode(
            token, settings.SECRET_KEY, algorithms=[security.ALGORITHM]
        )
        user_id = int(payload["sub"])
    except (jwt.JWTError, KeyError, ValueError, ValidationError):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Could not validate credentials",
        )

    user = UserRepository(db).get(user_id)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND, detail="User not found"
        )

    return user


async def get_current_active_user(
    current_user: User = Depends(get_current_user),
) -> User:
    """
    Get the current authenticated and active user.

    Raises:
        HTTPException: If the user is inactive
    """
    if not current_user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN, detail="Inactive user"
        )
    return current_user
