# calsync/models/__init__.py
from calsync.models.user import User
from calsync.models.project import Project, Technician
from calsync.models.booking import Booking, BookingStatus
from calsync.models.calendar import (
    CalendarMapping,
    CalendarProvider,
    EventVisibility,
    ExternalCalendarAccount,
    IcsFeed,
    MappingDirection,
    SyncLog,
)
