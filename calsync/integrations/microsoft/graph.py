# calsync/integrations/microsoft/graph.py
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, Optional
from urllib.parse import quote

import httpx

from calsync.core.config import settings
from calsync.core.constants import BUSY_ONLY_TITLE, MS_GRAPH_BASE
from calsync.core.security import generate_client_state
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
from calsync.integrations.microsoft.oauth import MicrosoftOAuthClient
from calsync.models.calendar import CalendarProvider, EventVisibility
from calsync.utils.timeutils import parse_datetime, to_rfc3339, utcnow

logger = logging.getLogger(__name__)

# Graph rejects calendar subscriptions longer than ~3 days
SUBSCRIPTION_TTL = timedelta(days=2, hours=23)


class MicrosoftCalendarAdapter(ProviderAdapter):
    """Microsoft Graph calendar events over httpx."""

    provider = CalendarProvider.MICROSOFT
    supports_push = True

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport
        self.oauth = MicrosoftOAuthClient(transport=transport)

    def _events_path(self, ctx: AccountContext) -> str:
        if ctx.calendar_id:
            return f"/me/calendars/{quote(ctx.calendar_id, safe='')}"
        return "/me/calendar"

    async def _request(
        self,
        ctx: AccountContext,
        method: str,
        url: str,
        description: str,
        **kwargs,
    ) -> httpx.Response:
        headers = {
            "Authorization": f"Bearer {ctx.access_token}",
            "Prefer": 'outlook.timezone="UTC"',
        }

        async def attempt() -> httpx.Response:
            try:
                async with httpx.AsyncClient(
                    timeout=settings.PROVIDER_TIMEOUT, transport=self.transport
                ) as client:
                    response = await client.request(method, url, headers=headers, **kwargs)
            except httpx.TransportError as e:
                raise TransientProviderError(
                    f"Microsoft Graph unreachable: {e}", provider="microsoft"
                )
            if response.status_code >= 400:
                raise error_for_status(
                    response.status_code,
                    f"Microsoft Graph API error: {response.status_code} {response.reason_phrase}",
                    "microsoft",
                    headers=response.headers,
                )
            return response

        return await call_with_retry(attempt, description)

    async def list_events(
        self, ctx: AccountContext, window_start: datetime, window_end: datetime
    ) -> EventListing:
        listing = EventListing()
        url: Optional[str] = f"{MS_GRAPH_BASE}{self._events_path(ctx)}/calendarView"
        params: Optional[Dict[str, Any]] = {
            "startDateTime": to_rfc3339(window_start),
            "endDateTime": to_rfc3339(window_end),
            "$top": settings.PROVIDER_PAGE_SIZE,
            "$orderby": "start/dateTime",
        }

        while url:
            try:
                response = await self._request(
                    ctx, "GET", url, "Microsoft list events", params=params
                )
            except TransientProviderError as e:
                listing.complete = False
                listing.errors.append(EventError(message=e.message))
                break

            data = response.json()
            for item in data.get("value", []):
                if item.get("isCancelled"):
                    continue
                try:
                    listing.events.append(self.normalize_event(item))
                except (KeyError, TypeError, ValueError) as e:
                    listing.errors.append(
                        EventError(message=f"Malformed event: {e}", event_id=item.get("id"))
                    )

            # nextLink already carries the query string
            url = data.get("@odata.nextLink")
            params = None

        return listing

    @staticmethod
    def normalize_event(item: Dict[str, Any]) -> ExternalEvent:
        """Map a Graph event resource onto ``ExternalEvent``."""
        start = parse_datetime(item["start"]["dateTime"])
        end = parse_datetime(item["end"]["dateTime"])
        if start is None or end is None:
            raise ValueError("event has no start or end")
        if end < start:
            raise ValueError("event ends before it starts")

        attendees = item.get("attendees") or []
        address = attendees[0].get("emailAddress", {}) if attendees else {}
        body = item.get("body") or {}
        location = item.get("location") or {}
        return ExternalEvent(
            external_id=item["id"],
            uid=item.get("iCalUId"),
            start=start,
            end=end,
            title=item.get("subject"),
            description=body.get("content") or item.get("bodyPreview"),
            location=location.get("displayName") or None,
            attendee_name=address.get("name"),
            attendee_email=address.get("address"),
            last_modified=parse_datetime(item.get("lastModifiedDateTime")),
            all_day=bool(item.get("isAllDay")),
            busy=item.get("showAs") != "free",
        )

    @staticmethod
    def to_graph_event(payload: EventPayload) -> Dict[str, Any]:
        event: Dict[str, Any] = {
            "subject": payload.title,
            "start": {"dateTime": payload.start.isoformat(), "timeZone": "UTC"},
            "end": {"dateTime": payload.end.isoformat(), "timeZone": "UTC"},
            "showAs": "busy",
        }
        if payload.visibility == EventVisibility.BUSY_ONLY:
            event["subject"] = BUSY_ONLY_TITLE
        else:
            if payload.description is not None:
                event["body"] = {"contentType": "text", "content": payload.description}
            if payload.location is not None:
                event["location"] = {"displayName": payload.location}
        return event

    async def create_event(
        self, ctx: AccountContext, payload: EventPayload
    ) -> CreatedEvent:
        response = await self._request(
            ctx,
            "POST",
            f"{MS_GRAPH_BASE}{self._events_path(ctx)}/events",
            "Microsoft create event",
            json=self.to_graph_event(payload),
        )
        data = response.json()
        logger.info(f"Created Microsoft event {data.get('id')}")
        return CreatedEvent(external_id=data["id"], uid=data.get("iCalUId"))

    async def update_event(
        self, ctx: AccountContext, external_id: str, payload: EventPayload
    ) -> None:
        await self._request(
            ctx,
            "PATCH",
            f"{MS_GRAPH_BASE}/me/events/{quote(external_id, safe='')}",
            "Microsoft update event",
            json=self.to_graph_event(payload),
        )

    async def delete_event(self, ctx: AccountContext, external_id: str) -> None:
        try:
            await self._request(
                ctx,
                "DELETE",
                f"{MS_GRAPH_BASE}/me/events/{quote(external_id, safe='')}",
                "Microsoft delete event",
            )
        except ProviderError as e:
            if e.status_code in (404, 410):
                logger.info(f"Microsoft event {external_id} already deleted")
                return
            raise

    async def refresh_token(self, refresh_token: str) -> TokenSet:
        return await call_with_retry(
            lambda: self.oauth.refresh(refresh_token), "Microsoft token refresh"
        )

    async def register_webhook(
        self, ctx: AccountContext, webhook_url: str
    ) -> WebhookChannel:
        expires_at = utcnow() + SUBSCRIPTION_TTL
        client_state = generate_client_state()
        response = await self._request(
            ctx,
            "POST",
            f"{MS_GRAPH_BASE}/subscriptions",
            "Microsoft subscribe",
            json={
                "changeType": "created,updated,deleted",
                "notificationUrl": webhook_url,
                "resource": f"{self._events_path(ctx)}/events",
                "expirationDateTime": to_rfc3339(expires_at),
                "clientState": client_state,
            },
        )
        data = response.json()
        return WebhookChannel(
            channel_id=data["id"],
            expires_at=parse_datetime(data.get("expirationDateTime")) or expires_at,
            client_state=client_state,
        )

    async def unregister_webhook(
        self, ctx: AccountContext, channel: WebhookChannel
    ) -> None:
        try:
            await self._request(
                ctx,
                "DELETE",
                f"{MS_GRAPH_BASE}/subscriptions/{quote(channel.channel_id, safe='')}",
                "Microsoft unsubscribe",
            )
        except ProviderError as e:
            if e.status_code != 404:
                logger.warning(
                    f"Failed to remove Microsoft subscription {channel.channel_id}: {e.message}"
                )
