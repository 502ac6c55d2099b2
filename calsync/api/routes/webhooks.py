# calsync/api/routes/webhooks.py
import logging
from json import JSONDecodeError
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, Header, Request, Response
from fastapi.responses import PlainTextResponse

from calsync.api import deps
from calsync.services.webhooks import WebhookDebouncer

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/google/calendar")
async def google_calendar_notification(
    x_goog_channel_id: Optional[str] = Header(None),
    x_goog_resource_state: Optional[str] = Header(None),
    x_goog_resource_id: Optional[str] = Header(None),
    debouncer: WebhookDebouncer = Depends(deps.get_debouncer),
) -> Response:
    """
    Google push notification. Always acknowledged with an empty 200 so
    Google does not retry; stale channels are simply dropped.
    """
    result = debouncer.on_provider_notification(x_goog_channel_id, x_goog_resource_state)
    logger.debug(
        f"Google notification on channel {x_goog_channel_id}: {result}",
        extra={"resource_id": x_goog_resource_id},
    )
    return Response(status_code=200)


async def _json_body(request: Request) -> Dict[str, Any]:
    body = await request.body()
    if not body:
        return {}
    try:
        data = await request.json()
    except (JSONDecodeError, UnicodeDecodeError):
        logger.warning("Ignoring Microsoft notification with an unreadable body")
        return {}
    return data if isinstance(data, dict) else {}


@router.post("/microsoft/calendar")
async def microsoft_calendar_notification(
    request: Request,
    validationToken: Optional[str] = None,
    debouncer: WebhookDebouncer = Depends(deps.get_debouncer),
) -> Response:
    """
    Microsoft Graph change notification or subscription validation.

    The validation handshake is answered before anything else: the token is
    echoed back verbatim as ``text/plain``.
    """
    if validationToken is not None:
        return PlainTextResponse(content=validationToken, status_code=200)

    payload = await _json_body(request)
    if isinstance(payload.get("validationToken"), str):
        return PlainTextResponse(content=payload["validationToken"], status_code=200)

    for notification in payload.get("value") or []:
        if not isinstance(notification, dict):
            continue
        result = debouncer.on_provider_notification(
            notification.get("subscriptionId"),
            notification.get("changeType"),
            client_state=notification.get("clientState"),
        )
        logger.debug(
            f"Microsoft notification on subscription {notification.get('subscriptionId')}: {result}"
        )
    return Response(status_code=200)
