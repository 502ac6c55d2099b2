from calsync.integrations.calendar.errors import (
    ProviderError,
    ReauthorizationRequired,
    TokenExpiredError,
    TransientProviderError,
)
from calsync.integrations.calendar.types import (
    AccountContext,
    CreatedEvent,
    EventError,
    EventListing,
    EventPayload,
    ExternalEvent,
    TokenSet,
    WebhookChannel,
)
