"""
Integration tests for push-triggered sync.
A provider notification travels through the webhook route and the debouncer
into a reconciliation pass, and a released hold re-triggers the import it
blocked.
"""
import asyncio
from datetime import timedelta

import httpx
import pytest
import pytest_asyncio

from calsync.api import deps
from calsync.main import app
from calsync.models.booking import Booking
from calsync.models.calendar import CalendarProvider
from calsync.services.webhooks import WebhookDebouncer
from tests.factories import BASE_TIME, WINDOW_END, WINDOW_START, make_event

DELAY = 0.05


@pytest.fixture
def debouncer(reconciler, holds, test_user):
    async def runner(account_id, since, until):
        return await reconciler.import_from_external(
            test_user.id, account_id, WINDOW_START, WINDOW_END
        )

    debouncer = WebhookDebouncer(sync_runner=runner, delay=DELAY)
    holds.on_cleared(lambda project_id, account_ids: debouncer.schedule_threadsafe(account_ids))
    app.dependency_overrides[deps.get_debouncer] = lambda: debouncer
    yield debouncer
    holds.on_cleared(None)
    app.dependency_overrides = {}


@pytest_asyncio.fixture
async def http():
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


def _live_bookings(db):
    db.expire_all()
    return db.query(Booking).filter(Booking.deleted_at.is_(None)).all()


async def _notify_google(http, channel_id):
    response = await http.post(
        "/api/v1/webhooks/google/calendar",
        headers={"X-Goog-Channel-ID": channel_id, "X-Goog-Resource-State": "exists"},
    )
    assert response.status_code == 200


class TestWebhookSyncFlow:
    """
    End-to-end: notification, debounce, reconcile
    """

    @pytest.mark.asyncio
    async def test_notification_burst_imports_once(
        self, http, debouncer, db, adapter, make_account
    ):
        make_account(webhook_channel_id="chan-42")
        adapter.events = [make_event("ev-1"), make_event("ev-2", start=BASE_TIME + timedelta(hours=3))]

        for _ in range(3):
            await _notify_google(http, "chan-42")
        assert debouncer.pending_count() == 1

        await asyncio.sleep(DELAY * 4)

        assert adapter.list_calls == 1
        assert sorted(b.external_event_id for b in _live_bookings(db)) == ["ev-1", "ev-2"]

    @pytest.mark.asyncio
    async def test_microsoft_notification_imports(
        self, http, debouncer, db, adapter, make_account
    ):
        make_account(webhook_channel_id="sub-7", webhook_client_state="state-7")
        adapter.events = [make_event("AAMk-1")]

        response = await http.post(
            "/api/v1/webhooks/microsoft/calendar",
            json={
                "value": [
                    {"subscriptionId": "sub-7", "changeType": "created", "clientState": "state-7"}
                ]
            },
        )
        assert response.status_code == 200

        await asyncio.sleep(DELAY * 4)

        assert [b.external_event_id for b in _live_bookings(db)] == ["AAMk-1"]

    @pytest.mark.asyncio
    async def test_forged_client_state_does_not_sync(self, http, debouncer, adapter, make_account):
        make_account(
            provider=CalendarProvider.MICROSOFT,
            webhook_channel_id="sub-7",
            webhook_client_state="state-7",
        )
        adapter.events = [make_event("AAMk-1")]

        for client_state in ("guessed", None):
            notification = {"subscriptionId": "sub-7", "changeType": "created"}
            if client_state:
                notification["clientState"] = client_state
            response = await http.post(
                "/api/v1/webhooks/microsoft/calendar", json={"value": [notification]}
            )
            assert response.status_code == 200
        await asyncio.sleep(DELAY * 3)

        assert adapter.list_calls == 0
        assert debouncer.pending_count() == 0

    @pytest.mark.asyncio
    async def test_stale_channel_does_not_sync(self, http, debouncer, adapter, make_account):
        make_account(webhook_channel_id="chan-42")

        await _notify_google(http, "chan-old")
        await asyncio.sleep(DELAY * 3)

        assert adapter.list_calls == 0

    @pytest.mark.asyncio
    async def test_released_hold_triggers_deferred_import(
        self, http, debouncer, db, adapter, holds, project, make_account
    ):
        make_account(webhook_channel_id="chan-42")
        token = holds.create_hold(project.id, BASE_TIME, BASE_TIME + timedelta(hours=1))
        adapter.events = [make_event("ev-1")]

        await _notify_google(http, "chan-42")
        await asyncio.sleep(DELAY * 4)

        assert adapter.list_calls == 1
        assert _live_bookings(db) == []

        holds.release_hold(token)
        await asyncio.sleep(DELAY * 4)

        assert adapter.list_calls == 2
        assert [b.external_event_id for b in _live_bookings(db)] == ["ev-1"]
