from datetime import timedelta

import pytest

from calsync.core.exceptions import (
    ResourceNotFoundException,
    SlotHeldException,
    ValidationException,
)
from calsync.integrations.calendar.errors import TransientProviderError
from calsync.models.booking import BookingStatus
from calsync.models.calendar import EventVisibility, MappingDirection, SyncLog
from calsync.schemas.booking import BookingCreate
from calsync.services.booking_service import BookingService
from calsync.services.export import ExportService
from tests.factories import BASE_TIME


@pytest.fixture
def exporter(db, adapter):
    return ExportService(db, adapter_factory=lambda provider: adapter)


@pytest.fixture
def service(db, holds, exporter):
    return BookingService(db, holds=holds, exporter=exporter)


def _request(project_id, start=BASE_TIME, hours=1, **fields):
    return BookingCreate(
        project_id=project_id,
        customer_name="Jo Smith",
        customer_phone="+15550100",
        address="12 High St",
        slot_start=start,
        slot_end=start + timedelta(hours=hours),
        **fields,
    )


class TestBookingService:
    """
    Test cases for booking writes against slot holds
    """

    @pytest.mark.asyncio
    async def test_held_slot_is_refused(self, service, holds, test_user, project):
        holds.create_hold(project.id, BASE_TIME, BASE_TIME + timedelta(hours=1))

        with pytest.raises(SlotHeldException):
            await service.create_booking(
                test_user.id, _request(project.id, start=BASE_TIME + timedelta(minutes=30))
            )

    @pytest.mark.asyncio
    async def test_own_hold_allows_booking_and_is_released(
        self, service, holds, test_user, project
    ):
        token = holds.create_hold(project.id, BASE_TIME, BASE_TIME + timedelta(hours=1))

        booking = await service.create_booking(
            test_user.id, _request(project.id, hold_token=token)
        )

        assert booking.status == BookingStatus.BOOKED
        assert booking.slot_start == BASE_TIME
        assert holds.get_hold(token) is None

    @pytest.mark.asyncio
    async def test_expired_hold_token_is_rejected(
        self, service, holds, clock, test_user, project
    ):
        token = holds.create_hold(
            project.id, BASE_TIME, BASE_TIME + timedelta(hours=1), ttl_seconds=30
        )
        clock.advance(31)

        with pytest.raises(ValidationException):
            await service.create_booking(test_user.id, _request(project.id, hold_token=token))

    @pytest.mark.asyncio
    async def test_unscheduled_booking_is_pending(self, service, test_user, project):
        booking = await service.create_booking(
            test_user.id, BookingCreate(project_id=project.id, customer_name="Later")
        )

        assert booking.status == BookingStatus.PENDING
        assert booking.slot_start is None

    @pytest.mark.asyncio
    async def test_foreign_project_is_not_found(self, service, test_user):
        with pytest.raises(ResourceNotFoundException):
            await service.create_booking(test_user.id, _request(999))

    @pytest.mark.asyncio
    async def test_created_booking_is_exported(
        self, service, adapter, make_account, test_user, project
    ):
        account = make_account(direction=MappingDirection.TWO_WAY)

        booking = await service.create_booking(test_user.id, _request(project.id))

        assert len(adapter.created) == 1
        assert adapter.created[0].title == "Service - Jo Smith"
        assert booking.external_provider == "google"
        assert booking.external_account_id == account.id
        assert booking.external_event_id == "out-1"
        assert booking.external_uid == "uid-out-1"

    @pytest.mark.asyncio
    async def test_import_only_calendars_are_not_written(
        self, service, adapter, make_account, test_user, project
    ):
        make_account(direction=MappingDirection.IMPORT)

        booking = await service.create_booking(test_user.id, _request(project.id))

        assert adapter.created == []
        assert booking.external_event_id is None

    @pytest.mark.asyncio
    async def test_cancel_deletes_exported_event(
        self, service, adapter, make_account, test_user, project
    ):
        make_account(direction=MappingDirection.TWO_WAY)
        booking = await service.create_booking(test_user.id, _request(project.id))

        canceled = await service.cancel_booking(test_user.id, booking.id, reason="Customer called")

        assert canceled.status == BookingStatus.CANCELED
        assert canceled.deleted_at is not None
        assert adapter.deleted == ["out-1"]

    @pytest.mark.asyncio
    async def test_export_failure_keeps_booking(
        self, service, adapter, db, make_account, test_user, project
    ):
        make_account(direction=MappingDirection.TWO_WAY)

        async def failing_create(ctx, payload):
            raise TransientProviderError("503")

        adapter.create_event = failing_create

        booking = await service.create_booking(test_user.id, _request(project.id))

        assert booking.id is not None
        assert booking.external_event_id is None
        log = db.query(SyncLog).filter(SyncLog.direction == "export").one()
        assert log.status == "error"
        assert log.payload == {"booking_id": booking.id, "action": "create"}


class TestExportPayload:
    """
    Test cases for outbound event bodies
    """

    def test_busy_only_hides_customer(self, make_booking):
        booking = make_booking(customer_phone="+15550100", notes="Gate code 4321")

        payload = ExportService.build_payload(booking, EventVisibility.BUSY_ONLY)

        assert payload.title == "Service Booking"
        assert payload.description is None
        assert payload.location is None

    def test_details_include_customer(self, make_booking):
        booking = make_booking(customer_phone="+15550100", address="12 High St")

        payload = ExportService.build_payload(booking, EventVisibility.DETAILS)

        assert payload.title == "Service - Pat Customer"
        assert "Phone: +15550100" in payload.description
        assert payload.location == "12 High St"
