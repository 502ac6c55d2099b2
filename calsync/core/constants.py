# calsync/core/constants.py


# Outcome of a reconciliation pass
class SyncStatus:
    OK = "ok"
    PARTIAL = "partial"
    RETRY = "retry"
    ERROR = "error"


# Google push notification resource states (x-goog-resource-state)
class GoogleResourceState:
    SYNC = "sync"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


# Booking sources
class BookingSource:
    VOICE = "voice"
    MANUAL = "manual"
    CALENDAR_SYNC = "calendar_sync"


# Export actions
class ExportAction:
    CREATE = "create"
    UPDATE = "update"
    DELETE = "delete"


# Provider endpoints
GOOGLE_TOKEN_URI = "https://oauth2.googleapis.com/token"
GOOGLE_CALENDAR_SCOPES = ["https://www.googleapis.com/auth/calendar"]
MS_GRAPH_BASE = "https://graph.microsoft.com/v1.0"
MS_LOGIN_BASE = "https://login.microsoftonline.com"
MS_CALENDAR_SCOPES = "offline_access Calendars.ReadWrite User.Read"

# Generic titles used when a mapping only exposes busy time
BUSY_ONLY_TITLE = "Service Booking"
