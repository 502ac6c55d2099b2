# calsync/integrations/google/calendar.py
import asyncio
import logging
import uuid
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from calsync.core.config import settings
from calsync.core.constants import BUSY_ONLY_TITLE
from calsync.integrations.calendar.base import ProviderAdapter
from calsync.integrations.calendar.errors import (
    ProviderError,
    TransientProviderError,
    error_for_status,
)
from calsync.integrations.calendar.retry import call_with_retry
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
from calsync.integrations.google.oauth import GoogleOAuthClient
from calsync.models.calendar import CalendarProvider, EventVisibility
from calsync.utils.timeutils import (
    from_epoch_ms,
    parse_datetime,
    to_epoch_ms,
    to_rfc3339,
    utcnow,
)

logger = logging.getLogger(__name__)

# Google caps push channels at 7 days
WATCH_TTL = timedelta(days=7)


class GoogleCalendarAdapter(ProviderAdapter):
    """Google Calendar v3 through google-api-python-client."""

    provider = CalendarProvider.GOOGLE
    supports_push = True

    def _service(self, ctx: AccountContext):
        credentials = GoogleOAuthClient.build_credentials(ctx.access_token)
        return build("calendar", "v3", credentials=credentials, cache_discovery=False)

    async def _execute(self, request, description: str) -> Dict[str, Any]:
        """Execute a prepared API request off the event loop, with retries."""

        async def attempt():
            try:
                return await asyncio.to_thread(request.execute)
            except HttpError as e:
                raise error_for_status(
                    e.resp.status,
                    f"Google Calendar API error: {e.reason}",
                    "google",
                    headers=e.resp,
                )
            except OSError as e:
                raise TransientProviderError(
                    f"Google Calendar API unreachable: {e}", provider="google"
                )

        return await call_with_retry(attempt, description)

    async def list_events(
        self, ctx: AccountContext, window_start: datetime, window_end: datetime
    ) -> EventListing:
        service = self._service(ctx)
        calendar_id = ctx.calendar_id or "primary"
        listing = EventListing()
        page_token: Optional[str] = None

        while True:
            request = service.events().list(
                calendarId=calendar_id,
                timeMin=to_rfc3339(window_start),
                timeMax=to_rfc3339(window_end),
                singleEvents=True,
                orderBy="startTime",
                maxResults=settings.PROVIDER_PAGE_SIZE,
                pageToken=page_token,
            )
            try:
                data = await self._execute(request, f"Google list {calendar_id}")
            except TransientProviderError as e:
                # Keep what was read; the window is no longer complete
                listing.complete = False
                listing.errors.append(EventError(message=e.message))
                break

            for item in data.get("items", []):
                if item.get("status") == "cancelled":
                    continue
                try:
                    listing.events.append(self.normalize_event(item))
                except (KeyError, TypeError, ValueError) as e:
                    listing.errors.append(
                        EventError(message=f"Malformed event: {e}", event_id=item.get("id"))
                    )

            page_token = data.get("nextPageToken")
            if not page_token:
                break

        return listing

    @staticmethod
    def normalize_event(item: Dict[str, Any]) -> ExternalEvent:
        """Map a Google event resource onto ``ExternalEvent``."""
        start_raw = item["start"].get("dateTime") or item["start"].get("date")
        end_raw = item["end"].get("dateTime") or item["end"].get("date")
        start = parse_datetime(start_raw)
        end = parse_datetime(end_raw)
        if start is None or end is None:
            raise ValueError("event has no start or end")
        if end < start:
            raise ValueError("event ends before it starts")

        attendee = _first_guest(item.get("attendees") or [])
        return ExternalEvent(
            external_id=item["id"],
            uid=item.get("iCalUID"),
            start=start,
            end=end,
            title=item.get("summary"),
            description=item.get("description"),
            location=item.get("location"),
            attendee_name=attendee.get("displayName"),
            attendee_email=attendee.get("email"),
            last_modified=parse_datetime(item.get("updated")),
            all_day="dateTime" not in item["start"],
            busy=item.get("transparency") != "transparent",
        )

    @staticmethod
    def to_google_event(payload: EventPayload) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "summary": payload.title,
            "start": {"dateTime": to_rfc3339(payload.start), "timeZone": "UTC"},
            "end": {"dateTime": to_rfc3339(payload.end), "timeZone": "UTC"},
            "transparency": "opaque",
        }
        if payload.visibility == EventVisibility.BUSY_ONLY:
            event["summary"] = BUSY_ONLY_TITLE
        else:
            if payload.description is not None:
                event["description"] = payload.description
            if payload.location is not None:
                event["location"] = payload.location
        return event

    async def create_event(
        self, ctx: AccountContext, payload: EventPayload
    ) -> CreatedEvent:
        service = self._service(ctx)
        request = service.events().insert(
            calendarId=ctx.calendar_id or "primary", body=self.to_google_event(payload)
        )
        created = await self._execute(request, "Google create event")
        logger.info(f"Created Google event {created.get('id')}")
        return CreatedEvent(external_id=created["id"], uid=created.get("iCalUID"))

    async def update_event(
        self, ctx: AccountContext, external_id: str, payload: EventPayload
    ) -> None:
        service = self._service(ctx)
        request = service.events().patch(
            calendarId=ctx.calendar_id or "primary",
            eventId=external_id,
            body=self.to_google_event(payload),
        )
        await self._execute(request, "Google update event")

    async def delete_event(self, ctx: AccountContext, external_id: str) -> None:
        service = self._service(ctx)
        request = service.events().delete(
            calendarId=ctx.calendar_id or "primary", eventId=external_id
        )
        try:
            await self._execute(request, "Google delete event")
        except ProviderError as e:
            if e.status_code in (404, 410):
                logger.info(f"Google event {external_id} already deleted")
                return
            raise

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        async def attempt():
            return await asyncio.to_thread(GoogleOAuthClient.refresh, refresh_token)

        return await call_with_retry(attempt, "Google token refresh")

    async def get_account_email(self, ctx: AccountContext) -> Optional[str]:
        """The primary calendar's id is the account's email address."""
        service = self._service(ctx)
        data = await self._execute(
            service.calendars().get(calendarId="primary"), "Google primary calendar"
        )
        return data.get("id")

    async def register_webhook(
        self, ctx: AccountContext, webhook_url: str
    ) -> WebhookChannel:
        service = self._service(ctx)
        expires_at = utcnow() + WATCH_TTL
        body = {
            "id": str(uuid.uuid4()),
            "type": "web_hook",
            "address": webhook_url,
            "expiration": to_epoch_ms(expires_at),
        }
        request = service.events().watch(
            calendarId=ctx.calendar_id or "primary", body=body
        )
        data = await self._execute(request, "Google watch")
        expiration = data.get("expiration")
        return WebhookChannel(
            channel_id=data["id"],
            resource_id=data.get("resourceId"),
            expires_at=from_epoch_ms(expiration)
            if expiration
            else expires_at,
        )

    async def unregister_webhook(
        self, ctx: AccountContext, channel: WebhookChannel
    ) -> None:
        if not channel.resource_id:
            logger.warning(f"Cannot stop Google channel {channel.channel_id} without resource id")
            return
        service = self._service(ctx)
        request = service.channels().stop(
            body={"id": channel.channel_id, "resourceId": channel.resource_id}
        )
        try:
            await self._execute(request, "Google channel stop")
        except ProviderError as e:
            logger.warning(f"Failed to stop Google channel {channel.channel_id}: {e.message}")


def _first_guest(attendees: List[Dict[str, Any]]) -> Dict[str, Any]:
    for attendee in attendees:
        if not attendee.get("self") and not attendee.get("organizer"):
            return attendee
    return {}
