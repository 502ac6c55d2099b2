import asyncio
from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from calsync.core.constants import SyncStatus
from calsync.integrations.calendar.errors import (
    ProviderError,
    ReauthorizationRequired,
    TokenExpiredError,
)
from calsync.integrations.calendar.types import EventError
from calsync.models.booking import Booking, BookingStatus
from calsync.models.calendar import CalendarMapping, MappingDirection, SyncLog
from calsync.services.locks import AccountLockRegistry
from calsync.services.reconciliation import ReconciliationEngine
from tests.factories import BASE_TIME, WINDOW_END, WINDOW_START, make_event


def live_bookings(db):
    return db.query(Booking).filter(Booking.deleted_at.is_(None)).all()


async def run(reconciler, account):
    return await reconciler.import_from_external(
        account.user_id, account.id, WINDOW_START, WINDOW_END
    )


class TestImportFromExternal:
    """
    Test cases for the import pass
    """

    @pytest.mark.asyncio
    async def test_new_events_are_created(self, db, reconciler, adapter, make_account):
        account = make_account()
        adapter.events = [
            make_event("evt-1", description="Leaky tap", location="1 Main St"),
            make_event("evt-2", start=BASE_TIME + timedelta(hours=3)),
        ]

        outcome = await run(reconciler, account)

        assert outcome.status == SyncStatus.OK
        assert outcome.created == 2
        bookings = live_bookings(db)
        assert len(bookings) == 2
        first = next(b for b in bookings if b.external_event_id == "evt-1")
        assert first.external_provider == "google"
        assert first.external_account_id == account.id
        assert first.notes == "Leaky tap"
        assert first.address == "1 Main St"
        assert first.status == BookingStatus.BOOKED
        assert first.source == "calendar_sync"

    @pytest.mark.asyncio
    async def test_second_pass_is_idempotent(self, db, reconciler, adapter, make_account):
        account = make_account()
        adapter.events = [make_event("evt-1"), make_event("evt-2", start=BASE_TIME + timedelta(hours=2))]

        await run(reconciler, account)
        outcome = await run(reconciler, account)

        assert (outcome.created, outcome.updated, outcome.deleted_count) == (0, 0, 0)
        assert outcome.unchanged == 2
        assert len(live_bookings(db)) == 2

    @pytest.mark.asyncio
    async def test_concurrent_passes_do_not_duplicate(self, db, reconciler, adapter, make_account):
        account = make_account()
        adapter.events = [make_event("evt-1")]

        outcomes = await asyncio.gather(run(reconciler, account), run(reconciler, account))

        assert sum(o.created for o in outcomes) == 1
        external_ids = [b.external_event_id for b in live_bookings(db)]
        assert external_ids == ["evt-1"]

    @pytest.mark.asyncio
    async def test_event_in_held_slot_is_skipped(self, db, reconciler, adapter, holds, project, make_account):
        account = make_account()
        holds.create_hold(project.id, BASE_TIME, BASE_TIME + timedelta(hours=1))
        adapter.events = [make_event("evt-1")]

        outcome = await run(reconciler, account)

        assert outcome.skipped == 1
        assert outcome.created == 0
        assert outcome.errors == []
        assert live_bookings(db) == []

    @pytest.mark.asyncio
    async def test_skipped_account_is_resynced_when_hold_clears(
        self, reconciler, adapter, holds, project, make_account
    ):
        account = make_account()
        callback = MagicMock()
        holds.on_cleared(callback)
        token = holds.create_hold(project.id, BASE_TIME, BASE_TIME + timedelta(hours=1))
        adapter.events = [make_event("evt-1")]

        await run(reconciler, account)
        holds.release_hold(token)

        callback.assert_called_once_with(project.id, {account.id})

    @pytest.mark.asyncio
    async def test_vanished_event_is_soft_deleted_and_recreated_later(
        self, db, reconciler, adapter, make_account
    ):
        account = make_account()
        adapter.events = [make_event("evt-1")]
        await run(reconciler, account)
        original = live_bookings(db)[0]

        adapter.events = []
        outcome = await run(reconciler, account)

        assert outcome.deleted_count == 1
        db.refresh(original)
        assert original.status == BookingStatus.CANCELED
        assert original.deleted_at is not None

        adapter.events = [make_event("evt-1")]
        outcome = await run(reconciler, account)

        assert outcome.created == 1
        recreated = live_bookings(db)
        assert len(recreated) == 1
        assert recreated[0].id != original.id
        db.refresh(original)
        assert original.status == BookingStatus.CANCELED

    @pytest.mark.asyncio
    async def test_partial_listing_never_deletes(self, db, reconciler, adapter, make_account):
        account = make_account()
        adapter.events = [make_event("evt-1")]
        await run(reconciler, account)

        adapter.events = []
        adapter.complete = False
        outcome = await run(reconciler, account)

        assert outcome.status == SyncStatus.PARTIAL
        assert outcome.partial is True
        assert outcome.deleted_count == 0
        assert len(live_bookings(db)) == 1
        assert "partial" in outcome.summary

    @pytest.mark.asyncio
    async def test_held_booking_is_not_deleted(self, db, reconciler, adapter, holds, project, make_account):
        account = make_account()
        adapter.events = [make_event("evt-1")]
        await run(reconciler, account)

        holds.create_hold(project.id, BASE_TIME, BASE_TIME + timedelta(minutes=30))
        adapter.events = []
        outcome = await run(reconciler, account)

        assert outcome.deleted_count == 0
        assert outcome.skipped == 1
        assert len(live_bookings(db)) == 1

    @pytest.mark.asyncio
    async def test_manual_bookings_are_never_deleted(self, db, reconciler, adapter, make_account, make_booking):
        account = make_account()
        make_booking()
        adapter.events = []

        outcome = await run(reconciler, account)

        assert outcome.deleted_count == 0
        assert len(live_bookings(db)) == 1

    @pytest.mark.asyncio
    async def test_newer_event_updates_schedule_but_not_workflow_fields(
        self, db, reconciler, adapter, make_account, technician
    ):
        account = make_account()
        adapter.events = [make_event("evt-1", description="Old notes")]
        await run(reconciler, account)
        booking = live_bookings(db)[0]
        booking.technician_id = technician.id
        booking.status = BookingStatus.COMPLETED
        db.commit()

        moved = BASE_TIME + timedelta(hours=4)
        adapter.events = [
            make_event("evt-1", start=moved, description="New notes", last_modified=BASE_TIME)
        ]
        outcome = await run(reconciler, account)

        assert outcome.updated == 1
        db.refresh(booking)
        assert booking.slot_start == moved
        assert booking.notes == "New notes"
        assert booking.external_modified_at == BASE_TIME
        assert booking.technician_id == technician.id
        assert booking.status == BookingStatus.COMPLETED

    @pytest.mark.asyncio
    async def test_stale_event_does_not_overwrite(self, db, reconciler, adapter, make_account):
        account = make_account()
        adapter.events = [make_event("evt-1", last_modified=BASE_TIME)]
        await run(reconciler, account)

        adapter.events = [
            make_event(
                "evt-1",
                start=BASE_TIME + timedelta(hours=5),
                last_modified=BASE_TIME - timedelta(hours=1),
            )
        ]
        outcome = await run(reconciler, account)

        assert outcome.updated == 0
        assert outcome.unchanged == 1
        assert live_bookings(db)[0].slot_start == BASE_TIME

    @pytest.mark.asyncio
    async def test_move_into_held_slot_is_skipped(self, db, reconciler, adapter, holds, project, make_account):
        account = make_account()
        adapter.events = [make_event("evt-1")]
        await run(reconciler, account)

        target = BASE_TIME + timedelta(hours=6)
        holds.create_hold(project.id, target, target + timedelta(hours=1))
        adapter.events = [make_event("evt-1", start=target, last_modified=BASE_TIME)]
        outcome = await run(reconciler, account)

        assert outcome.skipped == 1
        assert live_bookings(db)[0].slot_start == BASE_TIME

    @pytest.mark.asyncio
    async def test_rotated_id_matches_by_uid(self, db, reconciler, adapter, make_account):
        account = make_account()
        adapter.events = [make_event("old-id", uid="stable-uid")]
        await run(reconciler, account)

        adapter.events = [make_event("new-id", uid="stable-uid")]
        outcome = await run(reconciler, account)

        assert outcome.created == 0
        assert outcome.deleted_count == 0
        bookings = live_bookings(db)
        assert len(bookings) == 1
        assert bookings[0].external_event_id == "new-id"

    @pytest.mark.asyncio
    async def test_bad_event_does_not_abort_window(self, db, reconciler, adapter, make_account):
        account = make_account()
        broken = make_event("broken")
        broken.end = broken.start
        adapter.events = [broken, make_event("evt-ok", start=BASE_TIME + timedelta(hours=2))]

        outcome = await run(reconciler, account)

        assert outcome.created == 1
        assert len(outcome.errors) == 1
        assert outcome.errors[0].event_id == "broken"

    @pytest.mark.asyncio
    async def test_unreadable_listed_event_keeps_its_booking(self, db, reconciler, adapter, make_account):
        account = make_account()
        adapter.events = [make_event("evt-1")]
        await run(reconciler, account)

        broken = make_event("evt-1", last_modified=BASE_TIME)
        broken.end = broken.start
        adapter.events = [broken]
        outcome = await run(reconciler, account)

        assert len(outcome.errors) == 1
        assert outcome.deleted_count == 0
        booking = db.query(Booking).filter(Booking.external_event_id == "evt-1").one()
        assert booking.deleted_at is None
        assert booking.status == BookingStatus.BOOKED

    @pytest.mark.asyncio
    async def test_event_reported_malformed_by_provider_keeps_its_booking(
        self, db, reconciler, adapter, make_account
    ):
        account = make_account()
        adapter.events = [make_event("evt-1")]
        await run(reconciler, account)

        adapter.events = []
        adapter.event_errors = [EventError(message="bad dates", event_id="evt-1")]
        outcome = await run(reconciler, account)

        assert outcome.errors[0].event_id == "evt-1"
        assert outcome.deleted_count == 0
        assert [b.external_event_id for b in live_bookings(db)] == ["evt-1"]

    @pytest.mark.asyncio
    async def test_unidentified_bad_event_blocks_deletes(self, db, reconciler, adapter, make_account):
        account = make_account()
        adapter.events = [make_event("evt-1")]
        await run(reconciler, account)

        adapter.events = []
        adapter.event_errors = [EventError(message="VEVENT without UID or DTSTART")]
        outcome = await run(reconciler, account)

        assert outcome.status == SyncStatus.PARTIAL
        assert outcome.deleted_count == 0
        assert len(live_bookings(db)) == 1

    @pytest.mark.asyncio
    async def test_overlapping_mappings_are_stable(self, db, reconciler, adapter, make_account, technician):
        account = make_account()
        project_mapping = account.mappings[0]
        project_mapping.provider_calendar_id = "cal-A"
        db.add(
            CalendarMapping(
                account_id=account.id,
                project_id=project_mapping.project_id,
                technician_id=technician.id,
                provider_calendar_id="cal-B",
                direction=MappingDirection.IMPORT,
            )
        )
        db.commit()
        adapter.calendars = {
            "cal-A": [make_event("a-1")],
            "cal-B": [make_event("b-1", start=BASE_TIME + timedelta(hours=2))],
        }

        first = await run(reconciler, account)
        second = await run(reconciler, account)
        third = await run(reconciler, account)

        assert first.created == 2
        for outcome in (second, third):
            assert (outcome.created, outcome.deleted_count) == (0, 0)
            assert outcome.unchanged == 2
        assert db.query(Booking).count() == 2
        tech_booking = db.query(Booking).filter(Booking.external_event_id == "b-1").one()
        assert tech_booking.technician_id == technician.id
        assert tech_booking.deleted_at is None

    @pytest.mark.asyncio
    async def test_vanished_technician_event_is_still_deleted(
        self, db, reconciler, adapter, make_account, technician
    ):
        account = make_account()
        account.mappings[0].provider_calendar_id = "cal-A"
        db.add(
            CalendarMapping(
                account_id=account.id,
                project_id=account.mappings[0].project_id,
                technician_id=technician.id,
                provider_calendar_id="cal-B",
                direction=MappingDirection.IMPORT,
            )
        )
        db.commit()
        adapter.calendars = {"cal-A": [], "cal-B": [make_event("b-1")]}
        await run(reconciler, account)

        adapter.calendars["cal-B"] = []
        outcome = await run(reconciler, account)

        assert outcome.deleted_count == 1
        assert live_bookings(db) == []

    @pytest.mark.asyncio
    async def test_free_events_are_not_imported(self, db, reconciler, adapter, make_account):
        account = make_account()
        adapter.events = [
            make_event("evt-busy"),
            make_event("evt-free", start=BASE_TIME + timedelta(hours=2), busy=False),
        ]

        outcome = await run(reconciler, account)

        assert outcome.created == 1
        assert [b.external_event_id for b in live_bookings(db)] == ["evt-busy"]

    @pytest.mark.asyncio
    async def test_event_marked_free_leaves_booking_alone(self, db, reconciler, adapter, make_account):
        account = make_account()
        adapter.events = [make_event("evt-1")]
        await run(reconciler, account)

        adapter.events = [
            make_event("evt-1", start=BASE_TIME + timedelta(hours=4), last_modified=BASE_TIME, busy=False)
        ]
        outcome = await run(reconciler, account)

        assert (outcome.updated, outcome.deleted_count) == (0, 0)
        booking = live_bookings(db)[0]
        assert booking.slot_start == BASE_TIME

    @pytest.mark.asyncio
    async def test_expired_token_refreshes_once_and_retries(self, reconciler, adapter, make_account):
        account = make_account()
        adapter.list_errors = [TokenExpiredError("401", status_code=401)]
        adapter.events = [make_event("evt-1")]

        outcome = await run(reconciler, account)

        assert outcome.created == 1
        assert adapter.refresh_calls == 1
        assert adapter.list_calls == 2
        assert adapter.tokens_seen == ["stored-access", "fresh-access-1"]

    @pytest.mark.asyncio
    async def test_token_rejected_after_refresh_flags_account(self, db, reconciler, adapter, make_account):
        account = make_account()
        adapter.list_errors = [
            TokenExpiredError("401", status_code=401),
            TokenExpiredError("401", status_code=401),
        ]

        outcome = await run(reconciler, account)

        assert outcome.status == SyncStatus.ERROR
        assert adapter.refresh_calls == 1
        db.refresh(account)
        assert account.needs_reauth is True

    @pytest.mark.asyncio
    async def test_revoked_refresh_flags_account(self, db, reconciler, adapter, make_account):
        account = make_account()
        adapter.list_errors = [TokenExpiredError("401", status_code=401)]
        adapter.refresh_result = ReauthorizationRequired("invalid_grant")

        outcome = await run(reconciler, account)

        assert outcome.status == SyncStatus.ERROR
        db.refresh(account)
        assert account.needs_reauth is True

    @pytest.mark.asyncio
    async def test_flagged_account_is_not_pulled(self, reconciler, adapter, make_account):
        account = make_account(needs_reauth=True)

        outcome = await run(reconciler, account)

        assert outcome.status == SyncStatus.ERROR
        assert adapter.list_calls == 0
        assert adapter.refresh_calls == 0

    @pytest.mark.asyncio
    async def test_provider_failure_is_reported_not_raised(self, db, reconciler, adapter, make_account):
        account = make_account()
        adapter.events = [make_event("evt-1")]
        await run(reconciler, account)

        adapter.list_errors = [ProviderError("calendar not found", status_code=404)]
        outcome = await run(reconciler, account)

        assert outcome.status == SyncStatus.PARTIAL
        assert outcome.deleted_count == 0
        assert len(outcome.errors) == 1
        assert len(live_bookings(db)) == 1

    @pytest.mark.asyncio
    async def test_lock_timeout_is_retryable(self, db, holds, adapter, make_account):
        locks = AccountLockRegistry(timeout=0.01)
        reconciler = ReconciliationEngine(
            db, holds=holds, locks=locks, adapter_factory=lambda provider: adapter
        )
        account = make_account()

        async with locks.hold(account.id):
            outcome = await run(reconciler, account)

        assert outcome.status == SyncStatus.RETRY
        assert outcome.retryable is True
        assert adapter.list_calls == 0

    @pytest.mark.asyncio
    async def test_unknown_account(self, reconciler, test_user):
        outcome = await reconciler.import_from_external(test_user.id, 999, WINDOW_START, WINDOW_END)

        assert outcome.status == SyncStatus.ERROR
        assert outcome.summary == "Calendar account not found"

    @pytest.mark.asyncio
    async def test_pass_is_recorded(self, db, reconciler, adapter, make_account):
        account = make_account()
        adapter.events = [make_event("evt-1")]

        await run(reconciler, account)

        log = db.query(SyncLog).one()
        assert log.account_id == account.id
        assert log.direction == "import"
        assert log.status == SyncStatus.OK
        assert log.payload["created"] == 1
        db.refresh(account)
        assert account.last_synced_at is not None
        assert account.last_sync_status == SyncStatus.OK
