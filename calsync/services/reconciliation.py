# calsync/services/reconciliation.py
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from calsync.core.config import settings
from calsync.core.constants import BookingSource, SyncStatus
from calsync.core.logging import log_context
from calsync.integrations.calendar.base import ProviderAdapter
from calsync.integrations.calendar.errors import (
    ProviderError,
    ReauthorizationRequired,
    TokenExpiredError,
    TransientProviderError,
)
from calsync.integrations.calendar.factory import get_adapter
from calsync.integrations.calendar.types import EventListing, ExternalEvent
from calsync.models.booking import Booking, BookingStatus
from calsync.models.calendar import (
    CalendarMapping,
    CalendarProvider,
    ExternalCalendarAccount,
)
from calsync.repositories.booking_repository import BookingRepository, BookingScope
from calsync.repositories.calendar_repository import (
    CalendarAccountRepository,
    SyncLogRepository,
)
from calsync.schemas.sync import SyncOutcome
from calsync.services.credentials import CredentialManager
from calsync.services.holds import HoldSnapshot, SlotHoldManager, hold_manager
from calsync.services.locks import AccountLockRegistry, SyncLockTimeout, account_locks
from calsync.utils.timeutils import to_naive_utc, utcnow

logger = logging.getLogger(__name__)


class SyncAborted(Exception):
    """Stops a pass early with a final status."""

    def __init__(self, status: str, message: str):
        self.status = status
        self.message = message
        super().__init__(message)


@dataclass
class _ScopeState:
    """Bookings of one mapping scope as loaded at the start of the pass."""

    scope: BookingScope
    holds: HoldSnapshot
    bookings: List[Booking]
    by_external_id: Dict[str, Booking] = field(default_factory=dict)
    by_uid: Dict[str, Booking] = field(default_factory=dict)
    complete: bool = True

    def index(self, booking: Booking) -> None:
        if booking.external_event_id:
            self.by_external_id[booking.external_event_id] = booking
        if booking.external_uid:
            self.by_uid[booking.external_uid] = booking

    def contains(self, booking: Booking) -> bool:
        if booking.project_id != self.scope.project_id:
            return False
        return (
            self.scope.technician_id is None
            or booking.technician_id == self.scope.technician_id
        )


@dataclass
class _PassState:
    """Account-wide bookkeeping shared by every mapping of one pass."""

    seen: Set[int] = field(default_factory=set)
    failed_ids: Set[str] = field(default_factory=set)
    failed_uids: Set[str] = field(default_factory=set)

    def mark_failed(self, external_id: Optional[str], uid: Optional[str] = None) -> None:
        if external_id:
            self.failed_ids.add(external_id)
        if uid:
            self.failed_uids.add(uid)

    def still_listed(self, booking: Booking) -> bool:
        """Matched this pass, or listed but unreadable."""
        return (
            booking.id in self.seen
            or booking.external_event_id in self.failed_ids
            or (booking.external_uid is not None and booking.external_uid in self.failed_uids)
        )


class ReconciliationEngine:
    """
    Imports one external calendar account into the booking store.

    A pass lists the account's events for a window, matches them to live
    bookings by external id (then by uid), creates or updates bookings, and
    soft-deletes bridged bookings whose events vanished. Holds are read once
    at the start of the pass; events colliding with a hold are skipped.
    Passes for the same account are serialized.
    """

    def __init__(
        self,
        db: Session,
        holds: Optional[SlotHoldManager] = None,
        locks: Optional[AccountLockRegistry] = None,
        adapter_factory: Callable[[CalendarProvider], ProviderAdapter] = get_adapter,
        credentials: Optional[CredentialManager] = None,
    ):
        self.db = db
        self.holds = holds or hold_manager
        self.locks = locks or account_locks
        self.adapter_factory = adapter_factory
        self.accounts = CalendarAccountRepository(db)
        self.bookings = BookingRepository(db)
        self.sync_logs = SyncLogRepository(db)
        self.credentials = credentials or CredentialManager(
            db, adapter_factory=adapter_factory
        )

    def default_window(
        self, since: Optional[datetime], until: Optional[datetime]
    ) -> Tuple[datetime, datetime]:
        now = utcnow()
        since = to_naive_utc(since) or now - timedelta(days=settings.SYNC_DEFAULT_PAST_DAYS)
        until = to_naive_utc(until) or now + timedelta(days=settings.SYNC_DEFAULT_FUTURE_DAYS)
        return since, until

    async def import_from_external(
        self,
        user_id: int,
        account_id: int,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
    ) -> SyncOutcome:
        """
        Run one reconciliation pass and return its outcome.

        Never raises for provider, network or lock failures; those end up in
        ``outcome.status`` and ``outcome.errors``.
        """
        since, until = self.default_window(since, until)
        outcome = SyncOutcome(account_id=account_id)
        account = None

        with log_context(account_id=account_id, user_id=user_id, action="import"):
            try:
                if until <= since:
                    raise SyncAborted(SyncStatus.ERROR, "Sync window is empty")
                async with self.locks.hold(account_id):
                    account = self._load_account(user_id, account_id)
                    await self._reconcile(outcome, account, since, until)
            except SyncLockTimeout as e:
                self._abort(outcome, SyncAborted(SyncStatus.RETRY, str(e)))
            except SyncAborted as e:
                self._abort(outcome, e)

            if not outcome.summary:
                outcome.summary = outcome.build_summary()
            logger.info(
                f"Import finished with status {outcome.status}: {outcome.summary}",
                extra={"status": outcome.status},
            )
            self._record(outcome, user_id, account)

        return outcome

    @staticmethod
    def _abort(outcome: SyncOutcome, reason: SyncAborted) -> None:
        outcome.status = reason.status
        outcome.add_error(reason.message)
        outcome.summary = reason.message

    def _load_account(self, user_id: int, account_id: int) -> ExternalCalendarAccount:
        account = self.accounts.get_with_mappings(account_id)
        if account is None or account.user_id != user_id:
            raise SyncAborted(SyncStatus.ERROR, "Calendar account not found")
        return account

    async def _reconcile(
        self,
        outcome: SyncOutcome,
        account: ExternalCalendarAccount,
        since: datetime,
        until: datetime,
    ) -> None:
        if not account.is_live:
            raise SyncAborted(SyncStatus.ERROR, "Calendar account has been revoked")
        if account.needs_reauth:
            raise SyncAborted(
                SyncStatus.ERROR, "Calendar account needs re-authorization"
            )

        mappings = [m for m in account.mappings if m.enabled and m.imports]
        if not mappings:
            outcome.summary = "No active import mappings"
            return

        try:
            account = await self.credentials.ensure_fresh_token(account)
        except ReauthorizationRequired:
            raise SyncAborted(
                SyncStatus.ERROR, "Calendar account needs re-authorization"
            )
        except TransientProviderError as e:
            raise SyncAborted(SyncStatus.RETRY, f"Token refresh failed: {e.message}")
        except ProviderError as e:
            raise SyncAborted(SyncStatus.ERROR, f"Token refresh failed: {e.message}")

        # Holds and bookings are read once, before any decision is made
        states: Dict[BookingScope, _ScopeState] = {}
        for mapping in mappings:
            scope = self._scope_for(mapping)
            if scope not in states:
                states[scope] = self._load_scope(scope, since, until)

        tracker = _PassState()
        refreshed = False
        for mapping in mappings:
            state = states[self._scope_for(mapping)]
            try:
                listing, account, refreshed = await self._pull(
                    account, mapping, since, until, refreshed
                )
            except (ReauthorizationRequired, TokenExpiredError):
                raise SyncAborted(
                    SyncStatus.ERROR, "Calendar account needs re-authorization"
                )
            except TransientProviderError as e:
                raise SyncAborted(SyncStatus.RETRY, f"Token refresh failed: {e.message}")
            except ProviderError as e:
                outcome.add_error(f"Mapping {mapping.id}: {e.message}")
                state.complete = False
                continue

            if not listing.complete:
                state.complete = False
            for error in listing.errors:
                outcome.add_error(error.message, event_id=error.event_id)
                if error.event_id:
                    tracker.mark_failed(error.event_id)
                else:
                    # An unidentified event could be any booking of the scope
                    state.complete = False

            for event in listing.events:
                try:
                    self._apply_event(outcome, account, mapping, state, tracker, event)
                except (SQLAlchemyError, ValueError) as e:
                    self.db.rollback()
                    logger.warning(
                        f"Failed to import event {event.external_id}: {e}",
                        extra={"event_id": event.external_id},
                    )
                    outcome.add_error(str(e), event_id=event.external_id)
                    tracker.mark_failed(event.external_id, event.uid)

        scopes = list(states.values())
        outcome.partial = any(not s.complete for s in scopes)
        self._remove_vanished(outcome, account, scopes, tracker)

        if outcome.partial:
            outcome.status = SyncStatus.PARTIAL

    @staticmethod
    def _scope_for(mapping: CalendarMapping) -> BookingScope:
        return BookingScope(
            project_id=mapping.project_id, technician_id=mapping.technician_id
        )

    def _load_scope(
        self, scope: BookingScope, since: datetime, until: datetime
    ) -> _ScopeState:
        state = _ScopeState(
            scope=scope,
            holds=self.holds.snapshot(scope.project_id),
            bookings=self.bookings.find_bookings_in_window(scope, since, until),
        )
        for booking in state.bookings:
            state.index(booking)
        return state

    async def _pull(
        self,
        account: ExternalCalendarAccount,
        mapping: CalendarMapping,
        since: datetime,
        until: datetime,
        refreshed: bool,
    ) -> Tuple[EventListing, ExternalCalendarAccount, bool]:
        """List a mapping's events, refreshing the token at most once per pass."""
        adapter = self.adapter_factory(account.provider)
        ctx = self.credentials.context_for(account, mapping)
        try:
            return await adapter.list_events(ctx, since, until), account, refreshed
        except TokenExpiredError:
            if refreshed:
                self.credentials.flag_needs_reauth(account, "token rejected after refresh")
                raise

        logger.info("Access token rejected; refreshing and retrying once")
        account = await self.credentials.force_refresh(account)
        ctx = self.credentials.context_for(account, mapping)
        try:
            listing = await adapter.list_events(ctx, since, until)
        except TokenExpiredError:
            self.credentials.flag_needs_reauth(account, "token rejected after refresh")
            raise
        return listing, account, True

    def _find_match(
        self,
        account: ExternalCalendarAccount,
        state: _ScopeState,
        event: ExternalEvent,
    ) -> Optional[Booking]:
        provider = account.provider.value
        project_id = state.scope.project_id
        booking = state.by_external_id.get(event.external_id)
        if booking is None:
            booking = self.bookings.get_live_by_external_id(
                project_id, provider, event.external_id
            )
        if booking is None and event.uid:
            booking = state.by_uid.get(event.uid) or self.bookings.get_live_by_uid(
                project_id, provider, event.uid
            )
        return booking

    def _apply_event(
        self,
        outcome: SyncOutcome,
        account: ExternalCalendarAccount,
        mapping: CalendarMapping,
        state: _ScopeState,
        tracker: _PassState,
        event: ExternalEvent,
    ) -> None:
        if event.end <= event.start and not event.all_day:
            raise ValueError("event has an empty time window")

        booking = self._find_match(account, state, event)
        if not event.busy:
            # Free time is not an appointment; a bridged booking stays as is
            logger.debug(
                f"Ignoring free event {event.external_id}",
                extra={"event_id": event.external_id},
            )
            if booking is not None:
                tracker.seen.add(booking.id)
                outcome.unchanged += 1
            return
        if booking is None:
            self._create_from_event(outcome, account, mapping, state, tracker, event)
            return

        tracker.seen.add(booking.id)
        self._update_from_event(outcome, state, booking, event)

    def _create_from_event(
        self,
        outcome: SyncOutcome,
        account: ExternalCalendarAccount,
        mapping: CalendarMapping,
        state: _ScopeState,
        tracker: _PassState,
        event: ExternalEvent,
    ) -> None:
        if state.holds.has_active_hold(event.start, event.end):
            logger.info(
                f"Skipping event {event.external_id}: slot is held",
                extra={"event_id": event.external_id},
            )
            outcome.skipped += 1
            self.holds.defer_account(mapping.project_id, account.id)
            return

        booking, created = self.bookings.upsert_booking_by_external_id(
            mapping.project_id,
            account.provider.value,
            event.external_id,
            {
                "technician_id": mapping.technician_id,
                "customer_name": event.attendee_name or event.title,
                "customer_email": event.attendee_email,
                "customer_phone": event.attendee_phone,
                "address": event.location,
                "notes": event.description,
                "slot_start": event.start,
                "slot_end": event.end,
                "status": BookingStatus.BOOKED,
                "source": BookingSource.CALENDAR_SYNC,
                "external_account_id": account.id,
                "external_uid": event.uid,
                "external_modified_at": event.last_modified,
            },
        )
        state.index(booking)
        tracker.seen.add(booking.id)
        if created:
            outcome.created += 1
        else:
            outcome.updated += 1

    def _update_from_event(
        self,
        outcome: SyncOutcome,
        state: _ScopeState,
        booking: Booking,
        event: ExternalEvent,
    ) -> None:
        values = {}
        if booking.external_event_id != event.external_id:
            # Provider rotated the opaque id; the uid still matches
            values["external_event_id"] = event.external_id
        if event.uid and not booking.external_uid:
            values["external_uid"] = event.uid

        stale = (
            event.last_modified is not None
            and booking.external_modified_at is not None
            and event.last_modified <= booking.external_modified_at
        )
        changes = {} if stale else self._changed_fields(booking, event)

        window_moves = "slot_start" in changes or "slot_end" in changes
        if window_moves and state.holds.has_active_hold(event.start, event.end):
            logger.info(
                f"Not moving booking {booking.id}: target slot is held",
                extra={"booking_id": booking.id},
            )
            outcome.skipped += 1
            if values:
                self.bookings.update(booking, values)
            return

        values.update(changes)
        if not stale and event.last_modified is not None:
            values["external_modified_at"] = event.last_modified

        if values:
            booking = self.bookings.update(booking, values)
            state.index(booking)
        if changes:
            outcome.updated += 1
        else:
            outcome.unchanged += 1

    @staticmethod
    def _changed_fields(booking: Booking, event: ExternalEvent) -> Dict[str, object]:
        """Scheduling and descriptive fields the calendar is authoritative for."""
        desired = {"slot_start": event.start, "slot_end": event.end}
        if event.description is not None:
            desired["notes"] = event.description
        if event.location is not None:
            desired["address"] = event.location
        return {
            name: value
            for name, value in desired.items()
            if getattr(booking, name) != value
        }

    def _remove_vanished(
        self,
        outcome: SyncOutcome,
        account: ExternalCalendarAccount,
        scopes: List[_ScopeState],
        tracker: _PassState,
    ) -> None:
        """
        Soft-delete bridged bookings whose events are no longer listed.

        A booking is judged once per pass, and only when every scope that
        covers it was listed completely.
        """
        candidates: Dict[int, Booking] = {}
        for state in scopes:
            for booking in state.bookings:
                candidates.setdefault(booking.id, booking)

        for booking in candidates.values():
            if booking.deleted_at is not None or tracker.still_listed(booking):
                continue
            if booking.external_account_id != account.id or not booking.external_event_id:
                continue
            covering = [s for s in scopes if s.contains(booking)]
            if not covering or not all(s.complete for s in covering):
                continue
            if covering[0].holds.has_active_hold(booking.slot_start, booking.slot_end):
                outcome.skipped += 1
                continue
            try:
                self.bookings.soft_delete_booking(booking.id)
            except SQLAlchemyError as e:
                self.db.rollback()
                outcome.add_error(str(e), event_id=booking.external_event_id)
                continue
            logger.info(
                f"Canceled booking {booking.id}: external event {booking.external_event_id} is gone",
                extra={"booking_id": booking.id},
            )
            outcome.deleted_count += 1

    def _record(
        self,
        outcome: SyncOutcome,
        user_id: int,
        account: Optional[ExternalCalendarAccount],
    ) -> None:
        try:
            if account is not None:
                self.accounts.mark_synced(account, outcome.status)
            self.sync_logs.record(
                user_id=user_id,
                account_id=outcome.account_id,
                source=account.provider.value if account is not None else "system",
                direction="import",
                status=outcome.status,
                summary=outcome.summary,
                payload=outcome.model_dump(mode="json"),
            )
        except SQLAlchemyError as e:
            self.db.rollback()
            logger.error(f"Failed to record sync outcome: {e}", exc_info=True)
