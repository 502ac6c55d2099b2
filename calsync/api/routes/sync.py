# calsync/api/routes/sync.py
import logging
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends

from calsync import models, schemas
from calsync.api import deps
from calsync.core.logging import log_context
from calsync.services.sync_service import SyncService

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/{account_id}", response_model=schemas.SyncOutcome)
async def sync_account(
    account_id: int,
    window: Optional[schemas.SyncRequest] = Body(None),
    current_user: models.User = Depends(deps.get_current_active_user),
    sync_service: SyncService = Depends(deps.get_sync_service),
) -> Any:
    """
    Manually re-sync one calendar account.

    Failures are reported in the outcome's ``status`` and ``errors``.
    """
    window = window or schemas.SyncRequest()
    with log_context(user_id=current_user.id, action="manual_sync", account_id=account_id):
        logger.info(f"User {current_user.id} syncing account {account_id}")
        return await sync_service.sync_account(
            current_user.id, account_id, window.since, window.until
        )


@router.post("", response_model=schemas.SyncAllResponse)
async def sync_all_accounts(
    window: Optional[schemas.SyncRequest] = Body(None),
    current_user: models.User = Depends(deps.get_current_active_user),
    sync_service: SyncService = Depends(deps.get_sync_service),
) -> Any:
    """Re-sync every connected calendar account of the user."""
    window = window or schemas.SyncRequest()
    with log_context(user_id=current_user.id, action="sync_all"):
        results = await sync_service.sync_all(current_user.id, window.since, window.until)
        return {"results": results}
