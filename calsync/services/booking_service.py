# calsync/services/booking_service.py
import logging
from typing import Optional

from sqlalchemy.orm import Session

from calsync.core.constants import ExportAction
from calsync.core.exceptions import (
    ResourceNotFoundException,
    SlotHeldException,
    ValidationException,
)
from calsync.models.booking import Booking, BookingStatus
from calsync.repositories.booking_repository import BookingRepository
from calsync.repositories.user_repository import UserRepository
from calsync.schemas.booking import BookingCreate
from calsync.services.export import ExportService
from calsync.services.holds import SlotHoldManager, hold_manager
from calsync.utils.timeutils import to_naive_utc

logger = logging.getLogger(__name__)


class BookingService:
    """Internal booking writes that respect slot holds and mirror to calendars."""

    def __init__(
        self,
        db: Session,
        holds: Optional[SlotHoldManager] = None,
        exporter: Optional[ExportService] = None,
    ):
        self.db = db
        self.repository = BookingRepository(db)
        self.users = UserRepository(db)
        self.holds = holds or hold_manager
        self.exporter = exporter or ExportService(db)

    def _get_owned(self, user_id: int, booking_id: int) -> Booking:
        booking = self.repository.get(booking_id)
        if booking is None or self.users.get_owned_project(user_id, booking.project_id) is None:
            raise ResourceNotFoundException("Booking not found")
        return booking

    async def create_booking(self, user_id: int, booking_in: BookingCreate) -> Booking:
        """
        Create a booking, refusing slots another caller is holding.

        A hold token presented with the request exempts its own hold and is
        released once the booking is stored.
        """
        if self.users.get_owned_project(user_id, booking_in.project_id) is None:
            raise ResourceNotFoundException("Project not found")

        slot_start = to_naive_utc(booking_in.slot_start)
        slot_end = to_naive_utc(booking_in.slot_end)

        if booking_in.hold_token:
            hold = self.holds.get_hold(booking_in.hold_token)
            if hold is None:
                raise ValidationException("Hold has expired or does not exist")
            if hold.project_id != booking_in.project_id:
                raise ValidationException("Hold belongs to a different project")

        if slot_start is not None and self.holds.has_active_hold(
            booking_in.project_id,
            slot_start,
            slot_end,
            exclude_token=booking_in.hold_token,
        ):
            raise SlotHeldException(
                "This time slot is being held by another booking",
                details={"project_id": booking_in.project_id},
            )

        values = booking_in.model_dump(exclude={"hold_token"})
        values.update(
            slot_start=slot_start,
            slot_end=slot_end,
            status=BookingStatus.BOOKED if slot_start else BookingStatus.PENDING,
        )
        booking = self.repository.create_booking(values)
        logger.info(
            f"Created booking {booking.id} for project {booking.project_id}",
            extra={"booking_id": booking.id, "user_id": user_id},
        )

        if booking_in.hold_token:
            self.holds.release_hold(booking_in.hold_token)

        await self.exporter.export_booking(booking.id, ExportAction.CREATE)
        return self.repository.get(booking.id)

    async def cancel_booking(
        self, user_id: int, booking_id: int, reason: Optional[str] = None
    ) -> Booking:
        booking = self._get_owned(user_id, booking_id)
        if booking.deleted_at is not None:
            return booking
        booking = self.repository.soft_delete_booking(booking.id)
        logger.info(
            f"Canceled booking {booking.id}" + (f": {reason}" if reason else ""),
            extra={"booking_id": booking.id, "user_id": user_id},
        )
        await self.exporter.export_booking(booking.id, ExportAction.DELETE)
        return booking

    def get_booking(self, user_id: int, booking_id: int) -> Booking:
        return self._get_owned(user_id, booking_id)
