# calsync/services/ics_feed.py
import logging
from datetime import timedelta, timezone
from typing import List, Optional

from icalendar import Calendar, Event
from sqlalchemy.orm import Session

from calsync.core.config import settings
from calsync.core.exceptions import ResourceNotFoundException, ValidationException
from calsync.core.security import generate_feed_token
from calsync.models.booking import Booking, BookingStatus
from calsync.models.calendar import IcsFeed
from calsync.repositories.booking_repository import BookingRepository, BookingScope
from calsync.repositories.ics_feed_repository import IcsFeedRepository
from calsync.repositories.user_repository import UserRepository
from calsync.schemas.calendar import IcsFeedCreate
from calsync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


def feed_url(token: str) -> str:
    return f"{settings.SERVER_HOST}{settings.API_V1_STR}/ics/{token}"


def _utc(value):
    return value.replace(tzinfo=timezone.utc)


class IcsFeedService:
    """Publishes bookings as token-authenticated iCalendar feeds."""

    def __init__(self, db: Session):
        self.db = db
        self.repository = IcsFeedRepository(db)
        self.bookings = BookingRepository(db)
        self.users = UserRepository(db)

    def render_feed(self, token: str) -> Optional[str]:
        """
        Render the feed behind ``token``.

        Returns None for unknown and disabled tokens alike, so callers can
        answer both with the same 404.
        """
        feed = self.repository.get_by_token(token) if token else None
        if feed is None or not feed.enabled:
            return None

        now = utcnow()
        window_start = now - timedelta(days=settings.ICS_FEED_PAST_DAYS)
        window_end = now + timedelta(days=settings.ICS_FEED_FUTURE_DAYS)
        scope = BookingScope(
            project_id=feed.project_id,
            technician_id=feed.technician_id,
            owner_id=feed.user_id,
        )
        bookings = self.bookings.find_bookings_in_window(scope, window_start, window_end)

        calendar = Calendar()
        calendar.add("prodid", settings.ICS_PRODID)
        calendar.add("version", "2.0")
        calendar.add("calscale", "GREGORIAN")
        calendar.add("method", "PUBLISH")
        calendar.add("x-wr-calname", feed.name)
        for booking in bookings:
            calendar.add_component(self._to_vevent(feed, booking, now))

        logger.debug(f"Rendered feed {feed.id} with {len(bookings)} bookings")
        return calendar.to_ical().decode("utf-8")

    @staticmethod
    def _to_vevent(feed: IcsFeed, booking: Booking, now) -> Event:
        event = Event()
        event.add("uid", f"booking-{booking.id}@{settings.ICS_UID_DOMAIN}")
        event.add("dtstamp", _utc(now))
        event.add("dtstart", _utc(booking.slot_start))
        event.add("dtend", _utc(booking.slot_end))
        if booking.updated_at:
            event.add("last-modified", _utc(booking.updated_at))
        event.add("summary", f"Service - {booking.customer_name or 'Customer'}")
        if booking.address:
            event.add("location", booking.address)

        lines = []
        if booking.customer_name:
            lines.append(f"Customer: {booking.customer_name}")
        if booking.address:
            lines.append(f"Address: {booking.address}")
        if feed.include_phone and booking.customer_phone:
            lines.append(f"Phone: {booking.customer_phone}")
        if feed.include_notes and booking.notes:
            lines.append(f"Notes: {booking.notes}")
        if lines:
            event.add("description", "\n".join(lines))

        if booking.status == BookingStatus.CANCELED:
            event.add("status", "CANCELLED")
        else:
            event.add("status", "CONFIRMED")
        event.add("transp", "OPAQUE")
        return event

    def create_feed(self, user_id: int, feed_in: IcsFeedCreate) -> IcsFeed:
        if feed_in.project_id is not None:
            if self.users.get_owned_project(user_id, feed_in.project_id) is None:
                raise ResourceNotFoundException("Project not found")
        if feed_in.technician_id is not None:
            technician = self.users.get_technician(feed_in.technician_id)
            if technician is None or self.users.get_owned_project(
                user_id, technician.project_id
            ) is None:
                raise ResourceNotFoundException("Technician not found")
            if feed_in.project_id is not None and technician.project_id != feed_in.project_id:
                raise ValidationException("Technician does not belong to this project")

        feed = self.repository.create(
            {
                "user_id": user_id,
                "name": feed_in.name,
                "project_id": feed_in.project_id,
                "technician_id": feed_in.technician_id,
                "include_notes": feed_in.include_notes,
                "include_phone": feed_in.include_phone,
                "token": generate_feed_token(),
            }
        )
        logger.info(f"Created ICS feed {feed.id}", extra={"user_id": user_id})
        return feed

    def list_feeds(self, user_id: int) -> List[IcsFeed]:
        return self.repository.list_for_user(user_id)

    def _get_owned(self, user_id: int, feed_id: int) -> IcsFeed:
        feed = self.repository.get_user_feed(user_id, feed_id)
        if feed is None:
            raise ResourceNotFoundException("Feed not found")
        return feed

    def set_enabled(self, user_id: int, feed_id: int, enabled: bool) -> IcsFeed:
        feed = self._get_owned(user_id, feed_id)
        return self.repository.update(feed, {"enabled": enabled})

    def rotate_token(self, user_id: int, feed_id: int) -> IcsFeed:
        """Issue a new token; the old URL stops working immediately."""
        feed = self._get_owned(user_id, feed_id)
        feed = self.repository.update(
            feed, {"token": generate_feed_token(), "rotated_at": utcnow()}
        )
        logger.info(f"Rotated token of ICS feed {feed.id}", extra={"user_id": user_id})
        return feed
