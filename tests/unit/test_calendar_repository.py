import pytest
from sqlalchemy.exc import IntegrityError

from calsync.models.calendar import CalendarProvider, ExternalCalendarAccount
from calsync.repositories.calendar_repository import CalendarAccountRepository


def _ics_account(user_id, url="https://example.com/jobs.ics"):
    return ExternalCalendarAccount(user_id=user_id, provider=CalendarProvider.ICS, ics_url=url)


class TestLiveIdentityIndex:
    """
    Test cases for the one-live-account-per-identity rule
    """

    def test_duplicate_ics_subscription_is_rejected(self, db, test_user):
        db.add(_ics_account(test_user.id))
        db.commit()

        db.add(_ics_account(test_user.id))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_duplicate_oauth_account_is_rejected(self, db, test_user):
        for _ in range(2):
            db.add(
                ExternalCalendarAccount(
                    user_id=test_user.id,
                    provider=CalendarProvider.GOOGLE,
                    account_email="tech@example.com",
                )
            )
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_revoked_account_frees_its_identity(self, db, test_user):
        repository = CalendarAccountRepository(db)
        first = _ics_account(test_user.id)
        first.webhook_client_state = "secret"
        db.add(first)
        db.commit()

        revoked = repository.revoke(first)
        db.add(_ics_account(test_user.id))
        db.commit()

        assert revoked.webhook_client_state is None
        assert db.query(ExternalCalendarAccount).count() == 2

    def test_different_feeds_coexist(self, db, test_user):
        db.add(_ics_account(test_user.id))
        db.add(_ics_account(test_user.id, url="https://example.com/other.ics"))
        db.commit()

        assert db.query(ExternalCalendarAccount).count() == 2
