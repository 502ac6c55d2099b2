# calsync/services/credentials.py
import logging
from datetime import datetime, timedelta
from typing import Callable, Optional

from sqlalchemy.orm import Session

from calsync.core.config import settings
from calsync.core.security import decrypt_token, encrypt_token
from calsync.integrations.calendar.base import ProviderAdapter
from calsync.integrations.calendar.errors import ReauthorizationRequired
from calsync.integrations.calendar.factory import get_adapter
from calsync.integrations.calendar.types import AccountContext
from calsync.models.calendar import (
    CalendarMapping,
    CalendarProvider,
    ExternalCalendarAccount,
)
from calsync.repositories.calendar_repository import CalendarAccountRepository
from calsync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)


class CredentialManager:
    """
    Keeps OAuth tokens of connected accounts usable.

    Tokens are refreshed shortly before they expire. A refresh rejected as
    revoked flags the account ``needs_reauth``; flagged accounts are never
    refreshed automatically again until a human reconnects them.
    """

    def __init__(
        self,
        db: Session,
        adapter_factory: Callable[[CalendarProvider], ProviderAdapter] = get_adapter,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.db = db
        self.repository = CalendarAccountRepository(db)
        self.adapter_factory = adapter_factory
        self.clock = clock

    def needs_refresh(self, account: ExternalCalendarAccount) -> bool:
        if account.provider == CalendarProvider.ICS:
            return False
        if not decrypt_token(account.access_token_encrypted):
            return True
        if account.token_expires_at is None:
            return False
        margin = timedelta(seconds=settings.TOKEN_REFRESH_MARGIN_SECONDS)
        return account.token_expires_at - self.clock() <= margin

    async def ensure_fresh_token(
        self, account: ExternalCalendarAccount
    ) -> ExternalCalendarAccount:
        """
        Return the account with an access token good for the next few minutes.

        Raises:
            ReauthorizationRequired: The account is (or just became) flagged
            TransientProviderError: The token endpoint is temporarily failing
        """
        if account.needs_reauth:
            raise ReauthorizationRequired(
                f"Calendar account {account.id} needs re-authorization",
                provider=account.provider.value,
            )
        if not self.needs_refresh(account):
            return account
        return await self.force_refresh(account)

    async def force_refresh(
        self, account: ExternalCalendarAccount
    ) -> ExternalCalendarAccount:
        """Refresh now, regardless of the stored expiry."""
        refresh_token = decrypt_token(account.refresh_token_encrypted)
        if not refresh_token:
            self.flag_needs_reauth(account, "no usable refresh token")
            raise ReauthorizationRequired(
                f"Calendar account {account.id} has no refresh token",
                provider=account.provider.value,
            )

        adapter = self.adapter_factory(account.provider)
        try:
            tokens = await adapter.refresh_token(refresh_token)
        except ReauthorizationRequired as e:
            self.flag_needs_reauth(account, e.message)
            raise

        account = self.repository.update_tokens(
            account,
            encrypt_token(tokens.access_token),
            encrypt_token(tokens.refresh_token),
            tokens.expires_at,
        )
        logger.info(
            f"Refreshed access token for calendar account {account.id}",
            extra={"account_id": account.id},
        )
        return account

    def flag_needs_reauth(self, account: ExternalCalendarAccount, reason: str) -> None:
        logger.warning(
            f"Calendar account {account.id} needs re-authorization: {reason}",
            extra={"account_id": account.id},
        )
        self.repository.flag_needs_reauth(account)

    def context_for(
        self,
        account: ExternalCalendarAccount,
        mapping: Optional[CalendarMapping] = None,
    ) -> AccountContext:
        return AccountContext(
            account_id=account.id,
            provider=account.provider,
            access_token=decrypt_token(account.access_token_encrypted),
            calendar_id=mapping.provider_calendar_id if mapping else None,
            ics_url=account.ics_url,
        )
