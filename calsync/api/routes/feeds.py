# calsync/api/routes/feeds.py
from typing import Any, List

from fastapi import APIRouter, Depends

from calsync import models, schemas
from calsync.api import deps
from calsync.models.calendar import IcsFeed
from calsync.services.ics_feed import IcsFeedService, feed_url

router = APIRouter()


def _with_url(feed: IcsFeed) -> schemas.IcsFeed:
    result = schemas.IcsFeed.model_validate(feed)
    result.url = feed_url(feed.token)
    return result


@router.get("", response_model=List[schemas.IcsFeed])
def list_feeds(
    current_user: models.User = Depends(deps.get_current_active_user),
    feed_service: IcsFeedService = Depends(deps.get_ics_feed_service),
) -> Any:
    return [_with_url(feed) for feed in feed_service.list_feeds(current_user.id)]


@router.post("", response_model=schemas.IcsFeed, status_code=201)
def create_feed(
    feed_in: schemas.IcsFeedCreate,
    current_user: models.User = Depends(deps.get_current_active_user),
    feed_service: IcsFeedService = Depends(deps.get_ics_feed_service),
) -> Any:
    return _with_url(feed_service.create_feed(current_user.id, feed_in))


@router.post("/{feed_id}/disable", response_model=schemas.IcsFeed)
def disable_feed(
    feed_id: int,
    current_user: models.User = Depends(deps.get_current_active_user),
    feed_service: IcsFeedService = Depends(deps.get_ics_feed_service),
) -> Any:
    return _with_url(feed_service.set_enabled(current_user.id, feed_id, False))


@router.post("/{feed_id}/enable", response_model=schemas.IcsFeed)
def enable_feed(
    feed_id: int,
    current_user: models.User = Depends(deps.get_current_active_user),
    feed_service: IcsFeedService = Depends(deps.get_ics_feed_service),
) -> Any:
    return _with_url(feed_service.set_enabled(current_user.id, feed_id, True))


@router.post("/{feed_id}/rotate", response_model=schemas.IcsFeed)
def rotate_feed_token(
    feed_id: int,
    current_user: models.User = Depends(deps.get_current_active_user),
    feed_service: IcsFeedService = Depends(deps.get_ics_feed_service),
) -> Any:
    """Replace the feed's secret URL; subscribers must re-subscribe."""
    return _with_url(feed_service.rotate_token(current_user.id, feed_id))
