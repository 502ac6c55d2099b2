# calsync/repositories/ics_feed_repository.py
from typing import List, Optional
from sqlalchemy.orm import Session

from calsync.models.calendar import IcsFeed
from calsync.repositories.base_repository import BaseRepository


class IcsFeedRepository(BaseRepository[IcsFeed]):
    """Repository for published ICS feeds."""

    def __init__(self, db: Session):
        super().__init__(IcsFeed, db)

    def get_by_token(self, token: str) -> Optional[IcsFeed]:
        return self.get_by(token=token)

    def get_user_feed(self, user_id: int, feed_id: int) -> Optional[IcsFeed]:
        return (
            self.db.query(IcsFeed)
            .filter(IcsFeed.id == feed_id, IcsFeed.user_id == user_id)
            .first()
        )

    def list_for_user(self, user_id: int) -> List[IcsFeed]:
        return (
            self.db.query(IcsFeed)
            .filter(IcsFeed.user_id == user_id)
            .order_by(IcsFeed.created_at.desc(), IcsFeed.id.desc())
            .all()
        )
