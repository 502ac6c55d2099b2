# calsync/schemas/__init__.py
from calsync.schemas.booking import Booking, BookingCancel, BookingCreate
from calsync.schemas.calendar import (
    AuthorizationUrl,
    CalendarAccount,
    CalendarMapping,
    CalendarMappingCreate,
    IcsFeed,
    IcsFeedCreate,
    IcsSubscriptionCreate,
    WatchResponse,
)
from calsync.schemas.hold import HoldCreate, HoldReleaseResponse, HoldResponse
from calsync.schemas.sync import SyncAllResponse, SyncError, SyncOutcome, SyncRequest
