# calsync/integrations/calendar/base.py
from abc import ABC, abstractmethod
from datetime import datetime

from calsync.integrations.calendar.errors import ProviderError
from calsync.integrations.calendar.types import (
    AccountContext,
    CreatedEvent,
    EventListing,
    EventPayload,
    TokenSet,
    WebhookChannel,
)
from calsync.models.calendar import CalendarProvider


class ProviderAdapter(ABC):
    """
    Uniform interface over one calendar provider.

    Implementations own pagination, field mapping, auth headers and backoff.
    Times crossing this interface are naive UTC.
    """

    provider: CalendarProvider
    supports_write: bool = True
    supports_push: bool = False

    @abstractmethod
    async def list_events(
        self, ctx: AccountContext, window_start: datetime, window_end: datetime
    ) -> EventListing:
        """
        List events overlapping ``[window_start, window_end)``.

        Raises:
            TokenExpiredError: The access token was rejected
            ProviderError: The listing could not be started at all
        """

    @abstractmethod
    async def create_event(
        self, ctx: AccountContext, payload: EventPayload
    ) -> CreatedEvent:
        pass

    @abstractmethod
    async def update_event(
        self, ctx: AccountContext, external_id: str, payload: EventPayload
    ) -> None:
        pass

    @abstractmethod
    async def delete_event(self, ctx: AccountContext, external_id: str) -> None:
        """Delete an event; an already-missing event is not an error."""

    @abstractmethod
    async def refresh_token(self, refresh_token: str) -> TokenSet:
        """
        Exchange a refresh token for a new access token.

        Raises:
            ReauthorizationRequired: The grant is revoked or invalid
        """

    async def register_webhook(
        self, ctx: AccountContext, webhook_url: str
    ) -> WebhookChannel:
        raise ProviderError(
            "Push notifications are not supported", provider=self.provider.value
        )

    async def unregister_webhook(
        self, ctx: AccountContext, channel: WebhookChannel
    ) -> None:
        return None
