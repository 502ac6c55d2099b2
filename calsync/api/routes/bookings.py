# calsync/api/routes/bookings.py
import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends

from calsync import models, schemas
from calsync.api import deps
from calsync.core.logging import log_context
from calsync.schemas.booking import BookingCancel
from calsync.services.booking_service import BookingService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("", response_model=schemas.Booking, status_code=201)
async def create_booking(
    booking_in: schemas.BookingCreate,
    current_user: models.User = Depends(deps.get_current_active_user),
    booking_service: BookingService = Depends(deps.get_booking_service),
) -> Any:
    """
    Create a booking. A slot held by someone else is refused with 409 unless
    the request carries that hold's token.
    """
    with log_context(user_id=current_user.id, action="create_booking"):
        return await booking_service.create_booking(current_user.id, booking_in)


@router.get("/{booking_id}", response_model=schemas.Booking)
def read_booking(
    booking_id: int,
    current_user: models.User = Depends(deps.get_current_active_user),
    booking_service: BookingService = Depends(deps.get_booking_service),
) -> Any:
    return booking_service.get_booking(current_user.id, booking_id)


@router.post("/{booking_id}/cancel", response_model=schemas.Booking)
async def cancel_booking(
    booking_id: int,
    cancel_in: Optional[BookingCancel] = Body(None),
    current_user: models.User = Depends(deps.get_current_active_user),
    booking_service: BookingService = Depends(deps.get_booking_service),
) -> Any:
    with log_context(user_id=current_user.id, action="cancel_booking", booking_id=booking_id):
        return await booking_service.cancel_booking(
            current_user.id, booking_id, reason=cancel_in.reason if cancel_in else None
        )
