# calsync/services/export.py
import logging
from typing import Callable, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from calsync.core.constants import BUSY_ONLY_TITLE, ExportAction, SyncStatus
from calsync.integrations.calendar.base import ProviderAdapter
from calsync.integrations.calendar.errors import ProviderError
from calsync.integrations.calendar.factory import get_adapter
from calsync.integrations.calendar.types import EventPayload
from calsync.models.booking import Booking
from calsync.models.calendar import (
    CalendarMapping,
    CalendarProvider,
    EventVisibility,
)
from calsync.repositories.booking_repository import BookingRepository
from calsync.repositories.calendar_repository import (
    CalendarAccountRepository,
    SyncLogRepository,
)
from calsync.services.credentials import CredentialManager

logger = logging.getLogger(__name__)


class ExportService:
    """Pushes internal booking changes to the mapped two-way calendar."""

    def __init__(
        self,
        db: Session,
        adapter_factory: Callable[[CalendarProvider], ProviderAdapter] = get_adapter,
        credentials: Optional[CredentialManager] = None,
    ):
        self.db = db
        self.bookings = BookingRepository(db)
        self.accounts = CalendarAccountRepository(db)
        self.sync_logs = SyncLogRepository(db)
        self.adapter_factory = adapter_factory
        self.credentials = credentials or CredentialManager(
            db, adapter_factory=adapter_factory
        )

    def _target_mapping(self, booking: Booking) -> Optional[CalendarMapping]:
        for mapping in self.accounts.export_mappings_for_project(booking.project_id):
            if mapping.technician_id is not None and mapping.technician_id != booking.technician_id:
                continue
            if mapping.account.needs_reauth:
                continue
            if not self.adapter_factory(mapping.account.provider).supports_write:
                continue
            return mapping
        return None

    @staticmethod
    def build_payload(booking: Booking, visibility: EventVisibility) -> EventPayload:
        if visibility == EventVisibility.BUSY_ONLY:
            return EventPayload(
                title=BUSY_ONLY_TITLE,
                start=booking.slot_start,
                end=booking.slot_end,
                visibility=visibility,
            )
        lines = [f"Customer: {booking.customer_name or 'Unknown'}"]
        if booking.customer_phone:
            lines.append(f"Phone: {booking.customer_phone}")
        if booking.notes:
            lines.append(booking.notes)
        return EventPayload(
            title=f"Service - {booking.customer_name or 'Customer'}",
            start=booking.slot_start,
            end=booking.slot_end,
            description="\n".join(lines),
            location=booking.address,
            visibility=visibility,
        )

    async def export_booking(self, booking_id: int, action: str) -> Optional[str]:
        """
        Mirror one booking change to its export calendar.

        Returns the resulting status (None when nothing was exported). Never
        raises; failures are written to the sync log.
        """
        booking = self.bookings.get(booking_id)
        if booking is None:
            return None
        if action != ExportAction.DELETE and not booking.is_scheduled:
            return None

        if action == ExportAction.CREATE or not booking.external_account_id:
            mapping = self._target_mapping(booking)
        else:
            # Updates and deletes go to the calendar that holds the event
            mapping = next(
                (
                    m
                    for m in self.accounts.export_mappings_for_project(booking.project_id)
                    if m.account_id == booking.external_account_id
                ),
                None,
            )
        if mapping is None:
            return None
        if action != ExportAction.CREATE and not booking.external_event_id:
            return None

        account = mapping.account
        adapter = self.adapter_factory(account.provider)
        status = SyncStatus.OK
        summary = f"{action} booking {booking.id}"
        try:
            account = await self.credentials.ensure_fresh_token(account)
            ctx = self.credentials.context_for(account, mapping)
            if action == ExportAction.CREATE:
                created = await adapter.create_event(
                    ctx, self.build_payload(booking, mapping.visibility)
                )
                self.bookings.update(
                    booking,
                    {
                        "external_provider": account.provider.value,
                        "external_account_id": account.id,
                        "external_event_id": created.external_id,
                        "external_uid": created.uid,
                    },
                )
            elif action == ExportAction.UPDATE:
                await adapter.update_event(
                    ctx,
                    booking.external_event_id,
                    self.build_payload(booking, mapping.visibility),
                )
            elif action == ExportAction.DELETE:
                await adapter.delete_event(ctx, booking.external_event_id)
            else:
                raise ValueError(f"Unknown export action: {action}")
        except (ProviderError, SQLAlchemyError, ValueError) as e:
            self.db.rollback()
            status = SyncStatus.ERROR
            summary = f"{summary} failed: {e}"
            logger.warning(
                f"Export of booking {booking_id} failed: {e}",
                extra={"booking_id": booking_id, "account_id": account.id},
            )

        self._record(account, booking, action, status, summary)
        return status

    def _record(self, account, booking: Booking, action: str, status: str, summary: str) -> None:
        try:
            self.sync_logs.record(
                user_id=account.user_id,
                account_id=account.id,
                project_id=booking.project_id,
                source=account.provider.value,
                direction="export",
                status=status,
                summary=summary,
                payload={"booking_id": booking.id, "action": action},
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record export outcome: {e}", exc_info=True)
