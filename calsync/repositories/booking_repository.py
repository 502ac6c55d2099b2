# calsync/repositories/booking_repository.py
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from calsync.models.booking import Booking, BookingStatus
from calsync.models.project import Project
from calsync.repositories.base_repository import BaseRepository
from calsync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BookingScope:
    """Which bookings a mapping or feed covers."""

    project_id: Optional[int] = None
    technician_id: Optional[int] = None
    owner_id: Optional[int] = None


class BookingRepository(BaseRepository[Booking]):
    """Booking store operations used by sync, export and feeds."""

    def __init__(self, db: Session):
        super().__init__(Booking, db)

    def _scoped(self, scope: BookingScope):
        query = self.db.query(Booking).filter(Booking.deleted_at.is_(None))
        if scope.project_id is not None:
            query = query.filter(Booking.project_id == scope.project_id)
        elif scope.owner_id is not None:
            query = query.join(Project, Project.id == Booking.project_id).filter(
                Project.owner_id == scope.owner_id
            )
        if scope.technician_id is not None:
            query = query.filter(Booking.technician_id == scope.technician_id)
        return query

    def find_bookings_in_window(
        self, scope: BookingScope, start: datetime, end: datetime
    ) -> List[Booking]:
        """Non-deleted, scheduled bookings overlapping ``[start, end)``."""
        return (
            self._scoped(scope)
            .filter(
                Booking.slot_start.isnot(None),
                Booking.slot_end.isnot(None),
                Booking.slot_start < end,
                Booking.slot_end > start,
            )
            .order_by(Booking.slot_start, Booking.id)
            .all()
        )

    def get_live_by_external_id(
        self, project_id: int, provider: str, external_event_id: str
    ) -> Optional[Booking]:
        return (
            self.db.query(Booking)
            .filter(
                Booking.project_id == project_id,
                Booking.external_provider == provider,
                Booking.external_event_id == external_event_id,
                Booking.deleted_at.is_(None),
            )
            .first()
        )

    def create_booking(self, values: Dict[str, Any]) -> Booking:
        return self.save(Booking(**values))

    def upsert_booking_by_external_id(
        self,
        project_id: int,
        provider: str,
        external_event_id: str,
        values: Dict[str, Any],
    ) -> Tuple[Booking, bool]:
        """
        Insert or update the live booking keyed by ``(project, provider, event id)``.

        Returns the booking and whether it was created. A concurrent insert of
        the same key loses on the unique index and is applied as an update.
        """
        existing = self.get_live_by_external_id(project_id, provider, external_event_id)
        if existing:
            return self.update(existing, values), False

        booking = Booking(
            project_id=project_id,
            external_provider=provider,
            external_event_id=external_event_id,
            **values,
        )
        self.db.add(booking)
        try:
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            logger.warning(
                f"Concurrent import of external event {external_event_id} "
                f"for project {project_id}; applying as update"
            )
            existing = self.get_live_by_external_id(
                project_id, provider, external_event_id
            )
            if existing is None:
                raise
            return self.update(existing, values), False

        self.db.refresh(booking)
        return booking, True

    def soft_delete_booking(
        self, booking_id: int, at: Optional[datetime] = None
    ) -> Optional[Booking]:
        """Cancel a booking and mark it deleted; the row is kept."""
        booking = self.get(booking_id)
        if booking is None:
            return None
        if booking.deleted_at is None:
            booking.status = BookingStatus.CANCELED
            booking.deleted_at = at or utcnow()
            booking = self.save(booking)
        return booking

    def get_live_by_uid(
        self, project_id: int, provider: str, uid: str
    ) -> Optional[Booking]:
        return (
            self.db.query(Booking)
            .filter(
                Booking.project_id == project_id,
                Booking.external_provider == provider,
                Booking.external_uid == uid,
                Booking.deleted_at.is_(None),
            )
            .first()
        )
