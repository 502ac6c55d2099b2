# calsync/services/holds.py
import logging
import threading
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from calsync.core.config import settings
from calsync.core.exceptions import SlotHeldException, ValidationException
from calsync.core.security import generate_hold_token
from calsync.utils.timeutils import ranges_overlap, to_naive_utc, utcnow

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]
ClearedCallback = Callable[[int, Set[int]], None]


@dataclass(frozen=True)
class SlotHold:
    token: str
    project_id: int
    start: datetime
    end: datetime
    capacity: int
    expires_at: datetime
    customer_fingerprint: Optional[str] = None

    def is_active(self, now: datetime) -> bool:
        return now < self.expires_at

    def overlaps(self, start: datetime, end: datetime) -> bool:
        return ranges_overlap(self.start, self.end, start, end)


@dataclass(frozen=True)
class HoldSnapshot:
    """Holds of one project as they stood at ``taken_at``."""

    project_id: int
    taken_at: datetime
    holds: Tuple[SlotHold, ...] = ()

    def has_active_hold(self, start: datetime, end: datetime) -> bool:
        return any(
            hold.is_active(self.taken_at) and hold.overlaps(start, end)
            for hold in self.holds
        )


class SlotHoldManager:
    """
    In-process TTL reservations on time slots.

    Holds are advisory: booking writes still go through the booking store,
    but anything that would take or destroy a slot checks ``has_active_hold``
    first. Expiry is checked on every read and by a periodic sweep. Nothing
    survives a restart.
    """

    def __init__(self, clock: Clock = utcnow):
        self._clock = clock
        self._lock = threading.Lock()
        self._holds: Dict[str, SlotHold] = {}
        # Accounts whose import skipped events because of a hold, per project
        self._deferred: Dict[int, Set[int]] = {}
        self._on_cleared: Optional[ClearedCallback] = None

    def on_cleared(self, callback: Optional[ClearedCallback]) -> None:
        """Call ``callback(project_id, account_ids)`` once a project has no holds left."""
        self._on_cleared = callback

    def create_hold(
        self,
        project_id: int,
        start: datetime,
        end: datetime,
        capacity: int = 1,
        ttl_seconds: Optional[int] = None,
        customer_fingerprint: Optional[str] = None,
    ) -> str:
        """
        Claim ``[start, end)`` for a project and return the hold token.

        Raises:
            ValidationException: Empty window, capacity or TTL
            SlotHeldException: The overlapping holds already use up the capacity
        """
        start, end = to_naive_utc(start), to_naive_utc(end)
        ttl = settings.HOLD_DEFAULT_TTL_SECONDS if ttl_seconds is None else ttl_seconds
        if end <= start:
            raise ValidationException("Hold end must be after start")
        if capacity < 1 or ttl <= 0:
            raise ValidationException("Hold capacity and TTL must be positive")

        with self._lock:
            now = self._clock()
            self._purge_locked(now)
            overlapping = [
                h
                for h in self._holds.values()
                if h.project_id == project_id and h.overlaps(start, end)
            ]
            limit = min([capacity] + [h.capacity for h in overlapping])
            if len(overlapping) >= limit:
                raise SlotHeldException(
                    "This time slot is being held by another booking",
                    details={"project_id": project_id},
                )

            hold = SlotHold(
                token=generate_hold_token(),
                project_id=project_id,
                start=start,
                end=end,
                capacity=capacity,
                expires_at=now + timedelta(seconds=ttl),
                customer_fingerprint=customer_fingerprint,
            )
            self._holds[hold.token] = hold

        logger.info(
            f"Created hold on project {project_id} for {start.isoformat()}-{end.isoformat()}",
            extra={"project_id": project_id, "ttl_seconds": ttl},
        )
        return hold.token

    def get_hold(self, token: str) -> Optional[SlotHold]:
        with self._lock:
            hold = self._holds.get(token)
            if hold is None:
                return None
            if not hold.is_active(self._clock()):
                del self._holds[token]
                cleared = self._take_cleared_locked({hold.project_id})
            else:
                return hold
        self._notify(cleared)
        return None

    def release_hold(self, token: str) -> bool:
        with self._lock:
            hold = self._holds.pop(token, None)
            if hold is None:
                return False
            cleared = self._take_cleared_locked({hold.project_id})
        logger.info(f"Released hold on project {hold.project_id}")
        self._notify(cleared)
        return True

    def has_active_hold(
        self,
        project_id: int,
        start: datetime,
        end: datetime,
        exclude_token: Optional[str] = None,
    ) -> bool:
        """Whether any live hold of the project overlaps ``[start, end)``."""
        start, end = to_naive_utc(start), to_naive_utc(end)
        now = self._clock()
        with self._lock:
            return any(
                hold.project_id == project_id
                and hold.token != exclude_token
                and hold.is_active(now)
                and hold.overlaps(start, end)
                for hold in self._holds.values()
            )

    def snapshot(self, project_id: int) -> HoldSnapshot:
        now = self._clock()
        with self._lock:
            holds = tuple(
                h
                for h in self._holds.values()
                if h.project_id == project_id and h.is_active(now)
            )
        return HoldSnapshot(project_id=project_id, taken_at=now, holds=holds)

    def cleanup_expired(self) -> int:
        """Drop expired holds; returns how many were removed."""
        with self._lock:
            removed = self._purge_locked(self._clock())
            cleared = self._take_cleared_locked({h.project_id for h in removed})
        if removed:
            logger.debug(f"Expired {len(removed)} slot holds")
        self._notify(cleared)
        return len(removed)

    def defer_account(self, project_id: int, account_id: int) -> None:
        """Remember an account to re-sync once the project's holds clear."""
        with self._lock:
            self._deferred.setdefault(project_id, set()).add(account_id)
            # The blocking hold may already be gone
            cleared = self._take_cleared_locked({project_id})
        self._notify(cleared)

    def active_count(self) -> int:
        now = self._clock()
        with self._lock:
            return sum(1 for h in self._holds.values() if h.is_active(now))

    def clear(self) -> None:
        with self._lock:
            self._holds.clear()
            self._deferred.clear()

    def _purge_locked(self, now: datetime) -> List[SlotHold]:
        expired = [h for h in self._holds.values() if not h.is_active(now)]
        for hold in expired:
            del self._holds[hold.token]
        return expired

    def _take_cleared_locked(
        self, project_ids: Iterable[int]
    ) -> List[Tuple[int, Set[int]]]:
        cleared = []
        for project_id in project_ids:
            if project_id not in self._deferred:
                continue
            if any(h.project_id == project_id for h in self._holds.values()):
                continue
            cleared.append((project_id, self._deferred.pop(project_id)))
        return cleared

    def _notify(self, cleared: List[Tuple[int, Set[int]]]) -> None:
        if not cleared or self._on_cleared is None:
            return
        for project_id, account_ids in cleared:
            try:
                self._on_cleared(project_id, account_ids)
            except Exception as e:
                logger.error(f"Hold release callback failed for project {project_id}: {e}", exc_info=True)


# Process-wide hold table
hold_manager = SlotHoldManager()


def get_hold_manager() -> SlotHoldManager:
    return hold_manager
