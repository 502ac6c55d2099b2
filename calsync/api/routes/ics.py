# calsync/api/routes/ics.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Response

from calsync.api import deps
from calsync.services.ics_feed import IcsFeedService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/{token}")
def read_ics_feed(
    token: str,
    feed_service: IcsFeedService = Depends(deps.get_ics_feed_service),
) -> Response:
    """Public, token-authenticated iCalendar feed."""
    body = feed_service.render_feed(token)
    if body is None:
        raise HTTPException(status_code=404, detail="Not found")
    return Response(
        content=body,
        media_type="text/calendar; charset=utf-8",
        headers={"Cache-Control": "no-cache, must-revalidate"},
    )
