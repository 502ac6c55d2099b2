import pytest
from datetime import timedelta
from fastapi import status
from fastapi.testclient import TestClient
from unittest.mock import MagicMock

from calsync.api import deps
from calsync.db.session import get_db
from calsync.main import app
from calsync.schemas.calendar import IcsFeedCreate
from calsync.services.ics_feed import IcsFeedService
from calsync.services.webhooks import NotificationResult
from calsync.utils.timeutils import utcnow


@pytest.fixture
def debouncer():
    mock_debouncer = MagicMock()
    mock_debouncer.on_provider_notification.return_value = NotificationResult.SCHEDULED
    app.dependency_overrides[deps.get_debouncer] = lambda: mock_debouncer
    yield mock_debouncer
    app.dependency_overrides = {}


@pytest.fixture
def public_client(db):
    """Unauthenticated client bound to the test session."""

    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides = {}


class TestWebhookAPI:
    """
    Test cases for provider push notification endpoints
    """

    def test_microsoft_validation_is_echoed(self, client, debouncer):
        response = client.post(
            "/api/v1/webhooks/microsoft/calendar?validationToken=Validation%3A+abc+123"
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("text/plain")
        assert response.text == "Validation: abc 123"
        debouncer.on_provider_notification.assert_not_called()

    def test_microsoft_notifications_are_scheduled(self, client, debouncer):
        body = {
            "value": [
                {"subscriptionId": "sub-1", "changeType": "updated", "clientState": "s3cret"},
                {"subscriptionId": "sub-2", "changeType": "created"},
            ]
        }

        response = client.post("/api/v1/webhooks/microsoft/calendar", json=body)

        assert response.status_code == status.HTTP_200_OK
        assert [c.args for c in debouncer.on_provider_notification.call_args_list] == [
            ("sub-1", "updated"),
            ("sub-2", "created"),
        ]
        assert [c.kwargs for c in debouncer.on_provider_notification.call_args_list] == [
            {"client_state": "s3cret"},
            {"client_state": None},
        ]

    def test_microsoft_unreadable_body_is_acknowledged(self, client, debouncer):
        response = client.post(
            "/api/v1/webhooks/microsoft/calendar",
            content=b"not json",
            headers={"Content-Type": "application/json"},
        )

        assert response.status_code == status.HTTP_200_OK
        debouncer.on_provider_notification.assert_not_called()

    def test_google_notification(self, client, debouncer):
        response = client.post(
            "/api/v1/webhooks/google/calendar",
            headers={
                "X-Goog-Channel-ID": "channel-1",
                "X-Goog-Resource-State": "exists",
                "X-Goog-Resource-ID": "resource-1",
            },
        )

        assert response.status_code == status.HTTP_200_OK
        assert response.content == b""
        debouncer.on_provider_notification.assert_called_once_with("channel-1", "exists")

    def test_unknown_channel_is_still_acknowledged(self, client, debouncer):
        debouncer.on_provider_notification.return_value = NotificationResult.UNKNOWN_CHANNEL

        response = client.post(
            "/api/v1/webhooks/google/calendar",
            headers={"X-Goog-Channel-ID": "stale", "X-Goog-Resource-State": "exists"},
        )

        assert response.status_code == status.HTTP_200_OK


class TestIcsFeedAPI:
    """
    Test cases for the public ICS feed endpoint
    """

    def test_unknown_token_is_not_found(self, public_client):
        response = public_client.get("/api/v1/ics/not-a-token")

        assert response.status_code == status.HTTP_404_NOT_FOUND

    def test_feed_is_served_as_calendar(self, public_client, db, test_user, project, make_booking):
        start = utcnow().replace(microsecond=0) + timedelta(days=2)
        make_booking(slot_start=start, slot_end=start + timedelta(hours=1))
        feed = IcsFeedService(db).create_feed(
            test_user.id, IcsFeedCreate(name="Crew", project_id=project.id)
        )

        response = public_client.get(f"/api/v1/ics/{feed.token}")

        assert response.status_code == status.HTTP_200_OK
        assert response.headers["content-type"].startswith("text/calendar")
        assert "BEGIN:VCALENDAR" in response.text
        assert "SUMMARY:Service - Pat Customer" in response.text

    def test_disabled_feed_is_not_found(self, public_client, db, test_user, project):
        service = IcsFeedService(db)
        feed = service.create_feed(test_user.id, IcsFeedCreate(name="Crew", project_id=project.id))
        service.set_enabled(test_user.id, feed.id, False)

        response = public_client.get(f"/api/v1/ics/{feed.token}")

        assert response.status_code == status.HTTP_404_NOT_FOUND
