# calsync/repositories/calendar_repository.py
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session, joinedload

from calsync.models.calendar import (
    CalendarMapping,
    CalendarProvider,
    ExternalCalendarAccount,
    SyncLog,
)
from calsync.repositories.base_repository import BaseRepository
from calsync.utils.timeutils import utcnow


class CalendarAccountRepository(BaseRepository[ExternalCalendarAccount]):
    """Repository for connected calendar accounts and their mappings."""

    def __init__(self, db: Session):
        super().__init__(ExternalCalendarAccount, db)

    def get_with_mappings(self, account_id: int) -> Optional[ExternalCalendarAccount]:
        return (
            self.db.query(ExternalCalendarAccount)
            .options(joinedload(ExternalCalendarAccount.mappings))
            .filter(ExternalCalendarAccount.id == account_id)
            .first()
        )

    def get_live_by_channel_id(
        self, channel_id: str, provider: Optional[CalendarProvider] = None
    ) -> Optional[ExternalCalendarAccount]:
        """Find the non-revoked account a push channel/subscription belongs to."""
        query = self.db.query(ExternalCalendarAccount).filter(
            ExternalCalendarAccount.webhook_channel_id == channel_id,
            ExternalCalendarAccount.revoked_at.is_(None),
        )
        if provider is not None:
            query = query.filter(ExternalCalendarAccount.provider == provider)
        return query.first()

    def get_live_by_identity(
        self,
        user_id: int,
        provider: CalendarProvider,
        account_email: Optional[str] = None,
        ics_url: Optional[str] = None,
    ) -> Optional[ExternalCalendarAccount]:
        return (
            self.db.query(ExternalCalendarAccount)
            .filter(
                ExternalCalendarAccount.user_id == user_id,
                ExternalCalendarAccount.provider == provider,
                ExternalCalendarAccount.account_email == account_email,
                ExternalCalendarAccount.ics_url == ics_url,
                ExternalCalendarAccount.revoked_at.is_(None),
            )
            .first()
        )

    def list_live_for_user(self, user_id: int) -> List[ExternalCalendarAccount]:
        return (
            self.db.query(ExternalCalendarAccount)
            .filter(
                ExternalCalendarAccount.user_id == user_id,
                ExternalCalendarAccount.revoked_at.is_(None),
            )
            .order_by(ExternalCalendarAccount.id)
            .all()
        )

    def update_tokens(
        self,
        account: ExternalCalendarAccount,
        access_token_encrypted: str,
        refresh_token_encrypted: Optional[str],
        token_expires_at: Optional[datetime],
    ) -> ExternalCalendarAccount:
        """Persist a refreshed token pair."""
        account.access_token_encrypted = access_token_encrypted
        if refresh_token_encrypted:
            account.refresh_token_encrypted = refresh_token_encrypted
        account.token_expires_at = token_expires_at
        account.needs_reauth = False
        return self.save(account)

    def flag_needs_reauth(self, account: ExternalCalendarAccount) -> ExternalCalendarAccount:
        account.needs_reauth = True
        return self.save(account)

    def mark_synced(
        self, account: ExternalCalendarAccount, status: str
    ) -> ExternalCalendarAccount:
        account.last_synced_at = utcnow()
        account.last_sync_status = status
        return self.save(account)

    def revoke(self, account: ExternalCalendarAccount) -> ExternalCalendarAccount:
        """Soft-invalidate an account and disable its mappings."""
        account.revoked_at = utcnow()
        account.webhook_channel_id = None
        account.webhook_client_state = None
        for mapping in account.mappings:
            mapping.enabled = False
        return self.save(account)

    def export_mappings_for_project(self, project_id: int) -> List[CalendarMapping]:
        """Enabled export/two-way mappings on live accounts, oldest first."""
        mappings = (
            self.db.query(CalendarMapping)
            .join(ExternalCalendarAccount)
            .options(joinedload(CalendarMapping.account))
            .filter(
                CalendarMapping.project_id == project_id,
                CalendarMapping.enabled.is_(True),
                ExternalCalendarAccount.revoked_at.is_(None),
            )
            .order_by(CalendarMapping.id)
            .all()
        )
        return [m for m in mappings if m.exports]

    def add_mapping(self, mapping: CalendarMapping) -> CalendarMapping:
        self.db.add(mapping)
        self.db.commit()
        self.db.refresh(mapping)
        return mapping


class SyncLogRepository(BaseRepository[SyncLog]):
    def __init__(self, db: Session):
        super().__init__(SyncLog, db)

    def record(self, **fields) -> SyncLog:
        return self.create(fields)
