# calsync/services/sync_service.py
import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from calsync.core.constants import SyncStatus
from calsync.core.exceptions import ResourceNotFoundException
from calsync.db.session import session_scope
from calsync.repositories.calendar_repository import CalendarAccountRepository
from calsync.schemas.sync import SyncOutcome
from calsync.services.reconciliation import ReconciliationEngine

logger = logging.getLogger(__name__)


class SyncService:
    """Manual and bulk entry points into the reconciliation engine."""

    def __init__(self, db: Session, engine: Optional[ReconciliationEngine] = None):
        self.db = db
        self.repository = CalendarAccountRepository(db)
        self.engine = engine or ReconciliationEngine(db)

    async def sync_account(
        self,
        user_id: int,
        account_id: int,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> SyncOutcome:
        account = self.repository.get(account_id)
        if account is None or account.user_id != user_id:
            raise ResourceNotFoundException("Calendar account not found")
        return await self.engine.import_from_external(user_id, account_id, since, until)

    async def sync_all(
        self,
        user_id: int,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> List[SyncOutcome]:
        """Sync every live account of a user, skipping ones awaiting re-auth."""
        results = []
        for account in self.repository.list_live_for_user(user_id):
            if account.needs_reauth:
                results.append(
                    SyncOutcome(
                        account_id=account.id,
                        status=SyncStatus.ERROR,
                        summary="Calendar account needs re-authorization",
                    )
                )
                continue
            results.append(
                await self.engine.import_from_external(
                    user_id, account.id, since, until
                )
            )
        return results


async def run_import(
    account_id: int,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
) -> SyncOutcome:
    """Run a pass outside any request, in its own session (timers, sweeps)."""
    with session_scope() as db:
        account = CalendarAccountRepository(db).get(account_id)
        if account is None:
            return SyncOutcome(
                account_id=account_id,
                status=SyncStatus.ERROR,
                summary="Calendar account not found",
            )
        engine = ReconciliationEngine(db)
        return await engine.import_from_external(account.user_id, account_id, since, until)
