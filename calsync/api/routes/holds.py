# calsync/api/routes/holds.py
import logging
from typing import Any

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from calsync import models, schemas
from calsync.api import deps
from calsync.core.exceptions import ResourceNotFoundException
from calsync.core.security import fingerprint_customer
from calsync.db.session import get_db
from calsync.repositories.user_repository import UserRepository
from calsync.services.holds import SlotHoldManager

logger = logging.getLogger(__name__)

router = APIRouter()


def _owned_hold(holds: SlotHoldManager, users: UserRepository, user_id: int, token: str):
    hold = holds.get_hold(token)
    if hold is None or users.get_owned_project(user_id, hold.project_id) is None:
        raise ResourceNotFoundException("Hold not found or expired")
    return hold


@router.post("", response_model=schemas.HoldResponse, status_code=201)
def create_hold(
    hold_in: schemas.HoldCreate,
    current_user: models.User = Depends(deps.get_current_active_user),
    holds: SlotHoldManager = Depends(deps.get_holds),
    db: Session = Depends(get_db),
) -> Any:
    """Tentatively claim a slot while a booking is being confirmed."""
    if UserRepository(db).get_owned_project(current_user.id, hold_in.project_id) is None:
        raise ResourceNotFoundException("Project not found")
    token = holds.create_hold(
        hold_in.project_id,
        hold_in.start,
        hold_in.end,
        capacity=hold_in.capacity,
        ttl_seconds=hold_in.ttl_seconds,
        customer_fingerprint=fingerprint_customer(
            hold_in.customer_phone, hold_in.customer_email
        ),
    )
    return holds.get_hold(token)


@router.get("/{token}", response_model=schemas.HoldResponse)
def read_hold(
    token: str,
    current_user: models.User = Depends(deps.get_current_active_user),
    holds: SlotHoldManager = Depends(deps.get_holds),
    db: Session = Depends(get_db),
) -> Any:
    return _owned_hold(holds, UserRepository(db), current_user.id, token)


@router.delete("/{token}", response_model=schemas.HoldReleaseResponse)
def release_hold(
    token: str,
    current_user: models.User = Depends(deps.get_current_active_user),
    holds: SlotHoldManager = Depends(deps.get_holds),
    db: Session = Depends(get_db),
) -> Any:
    _owned_hold(holds, UserRepository(db), current_user.id, token)
    return {"released": holds.release_hold(token)}
