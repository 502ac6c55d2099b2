# calsync/services/calendar_account_service.py
import asyncio
import logging
import secrets
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy.orm import Session

from calsync.core.config import settings
from calsync.core.exceptions import (
    AuthorizationException,
    DuplicateResourceException,
    ExternalServiceException,
    RateLimitException,
    ReauthorizationRequiredException,
    ResourceNotFoundException,
    ValidationException,
)
from calsync.core.security import encrypt_token
from calsync.integrations.calendar.base import ProviderAdapter
from calsync.integrations.calendar.errors import (
    ProviderError,
    ReauthorizationRequired,
    TransientProviderError,
)
from calsync.integrations.calendar.factory import get_adapter
from calsync.integrations.calendar.types import (
    AccountContext,
    TokenSet,
    WebhookChannel,
)
from calsync.integrations.google.oauth import GoogleOAuthClient
from calsync.integrations.microsoft.oauth import MicrosoftOAuthClient
from calsync.models.calendar import (
    CalendarMapping,
    CalendarProvider,
    ExternalCalendarAccount,
    MappingDirection,
)
from calsync.repositories.calendar_repository import CalendarAccountRepository
from calsync.repositories.user_repository import UserRepository
from calsync.schemas.calendar import CalendarMappingCreate, IcsSubscriptionCreate
from calsync.services.credentials import CredentialManager

logger = logging.getLogger(__name__)

# Store OAuth states temporarily
# In production, use Redis or another distributed cache
OAUTH_STATES: Dict[str, Tuple[int, CalendarProvider]] = {}


def webhook_url(provider: CalendarProvider) -> str:
    return f"{settings.SERVER_HOST}{settings.API_V1_STR}/webhooks/{provider.value}/calendar"


class CalendarAccountService:
    """Connecting, mapping, watching and revoking external calendar accounts."""

    def __init__(
        self,
        db: Session,
        adapter_factory: Callable[[CalendarProvider], ProviderAdapter] = get_adapter,
        microsoft_oauth: Optional[MicrosoftOAuthClient] = None,
    ):
        self.db = db
        self.repository = CalendarAccountRepository(db)
        self.users = UserRepository(db)
        self.adapter_factory = adapter_factory
        self.microsoft_oauth = microsoft_oauth or MicrosoftOAuthClient()
        self.credentials = CredentialManager(db, adapter_factory=adapter_factory)

    def list_accounts(self, user_id: int) -> List[ExternalCalendarAccount]:
        return self.repository.list_live_for_user(user_id)

    def get_account(self, user_id: int, account_id: int) -> ExternalCalendarAccount:
        account = self.repository.get_with_mappings(account_id)
        if account is None or account.user_id != user_id or not account.is_live:
            raise ResourceNotFoundException("Calendar account not found")
        return account

    def _check_scope(
        self, user_id: int, project_id: int, technician_id: Optional[int]
    ) -> None:
        if self.users.get_owned_project(user_id, project_id) is None:
            raise ResourceNotFoundException("Project not found")
        if technician_id is not None:
            technician = self.users.get_technician(technician_id)
            if technician is None or technician.project_id != project_id:
                raise ValidationException("Technician does not belong to this project")

    def subscribe_ics(
        self, user_id: int, subscription: IcsSubscriptionCreate
    ) -> ExternalCalendarAccount:
        """Register an ICS feed URL as a read-only import source."""
        self._check_scope(user_id, subscription.project_id, subscription.technician_id)
        if self.repository.get_live_by_identity(
            user_id, CalendarProvider.ICS, ics_url=subscription.url
        ):
            raise DuplicateResourceException("This calendar feed is already connected")

        account = self.repository.save(
            ExternalCalendarAccount(
                user_id=user_id,
                provider=CalendarProvider.ICS,
                ics_url=subscription.url,
            )
        )
        self.repository.add_mapping(
            CalendarMapping(
                account_id=account.id,
                project_id=subscription.project_id,
                technician_id=subscription.technician_id,
                direction=MappingDirection.IMPORT,
            )
        )
        logger.info(f"Subscribed to ICS feed as account {account.id}", extra={"user_id": user_id})
        return self.get_account(user_id, account.id)

    def start_oauth_flow(self, user_id: int, provider: CalendarProvider) -> str:
        """Return the provider consent URL for a new connection."""
        state = secrets.token_urlsafe(32)
        try:
            if provider == CalendarProvider.GOOGLE:
                url = GoogleOAuthClient.authorization_url(state)
            elif provider == CalendarProvider.MICROSOFT:
                url = self.microsoft_oauth.authorization_url(state)
            else:
                raise ValidationException(f"{provider.value} does not use OAuth")
        except ProviderError as e:
            raise ExternalServiceException(e.message)
        OAUTH_STATES[state] = (user_id, provider)
        return url

    def _consume_state(self, state: str, provider: CalendarProvider) -> int:
        entry = OAUTH_STATES.pop(state, None)
        if entry is None or entry[1] != provider:
            raise AuthorizationException("Invalid or expired OAuth state")
        return entry[0]

    async def complete_oauth_flow(
        self, provider: CalendarProvider, state: str, code: str
    ) -> ExternalCalendarAccount:
        """Exchange the code, resolve the account email and store the tokens."""
        user_id = self._consume_state(state, provider)
        try:
            if provider == CalendarProvider.GOOGLE:
                credentials = await asyncio.to_thread(GoogleOAuthClient.exchange_code, code)
                tokens = TokenSet(
                    access_token=credentials.token,
                    refresh_token=credentials.refresh_token,
                    expires_at=GoogleOAuthClient.parse_expiry(credentials.expiry),
                )
                email = await self.adapter_factory(provider).get_account_email(
                    AccountContext(account_id=0, provider=provider, access_token=tokens.access_token)
                )
            else:
                tokens = await self.microsoft_oauth.exchange_code(code)
                email = await self.microsoft_oauth.get_account_email(tokens.access_token)
        except ProviderError as e:
            logger.error(f"Error completing {provider.value} OAuth: {e.message}")
            raise ExternalServiceException(
                f"Failed to complete {provider.value} authorization: {e.message}"
            )

        return self._store_oauth_account(user_id, provider, email, tokens)

    def _store_oauth_account(
        self,
        user_id: int,
        provider: CalendarProvider,
        email: Optional[str],
        tokens: TokenSet,
    ) -> ExternalCalendarAccount:
        account = self.repository.get_live_by_identity(
            user_id, provider, account_email=email
        )
        if account is None:
            account = ExternalCalendarAccount(
                user_id=user_id, provider=provider, account_email=email
            )
            self.repository.save(account)
            logger.info(
                f"Connected {provider.value} account {account.id}", extra={"user_id": user_id}
            )
        else:
            logger.info(
                f"Reconnected {provider.value} account {account.id}", extra={"user_id": user_id}
            )
        return self.repository.update_tokens(
            account,
            encrypt_token(tokens.access_token),
            encrypt_token(tokens.refresh_token),
            tokens.expires_at,
        )

    def add_mapping(
        self, user_id: int, account_id: int, mapping_in: CalendarMappingCreate
    ) -> CalendarMapping:
        account = self.get_account(user_id, account_id)
        self._check_scope(user_id, mapping_in.project_id, mapping_in.technician_id)
        if mapping_in.direction != MappingDirection.IMPORT:
            if not self.adapter_factory(account.provider).supports_write:
                raise ValidationException(
                    f"{account.provider.value} calendars are read-only"
                )
        return self.repository.add_mapping(
            CalendarMapping(account_id=account.id, **mapping_in.model_dump())
        )

    async def watch_account(self, user_id: int, account_id: int) -> WebhookChannel:
        """Register a push channel so calendar changes trigger a re-sync."""
        account = self.get_account(user_id, account_id)
        adapter = self.adapter_factory(account.provider)
        if not adapter.supports_push:
            raise ValidationException(
                f"{account.provider.value} calendars do not support push notifications"
            )

        try:
            account = await self.credentials.ensure_fresh_token(account)
            ctx = self.credentials.context_for(account)
            if account.webhook_channel_id:
                await adapter.unregister_webhook(ctx, self._channel_of(account))
            channel = await adapter.register_webhook(ctx, webhook_url(account.provider))
        except ReauthorizationRequired:
            raise ReauthorizationRequiredException(
                "Calendar account must be reconnected", details={"account_id": account.id}
            )
        except TransientProviderError as e:
            if e.status_code == 429:
                raise RateLimitException(f"{account.provider.value} is rate limiting requests")
            raise ExternalServiceException(f"Could not register push channel: {e.message}")
        except ProviderError as e:
            raise ExternalServiceException(f"Could not register push channel: {e.message}")

        account.webhook_channel_id = channel.channel_id
        account.webhook_resource_id = channel.resource_id
        account.webhook_expires_at = channel.expires_at
        account.webhook_client_state = channel.client_state
        self.repository.save(account)
        logger.info(
            f"Watching calendar account {account.id} on channel {channel.channel_id}",
            extra={"account_id": account.id},
        )
        return channel

    @staticmethod
    def _channel_of(account: ExternalCalendarAccount) -> WebhookChannel:
        return WebhookChannel(
            channel_id=account.webhook_channel_id,
            resource_id=account.webhook_resource_id,
            expires_at=account.webhook_expires_at,
            client_state=account.webhook_client_state,
        )

    async def revoke_account(self, user_id: int, account_id: int) -> ExternalCalendarAccount:
        """Disconnect an account; it is kept for audit with its mappings disabled."""
        account = self.get_account(user_id, account_id)
        if account.webhook_channel_id:
            adapter = self.adapter_factory(account.provider)
            try:
                await adapter.unregister_webhook(
                    self.credentials.context_for(account), self._channel_of(account)
                )
            except ProviderError as e:
                # The channel expires on its own
                logger.warning(f"Could not stop push channel of account {account.id}: {e.message}")
        account = self.repository.revoke(account)
        logger.info(f"Revoked calendar account {account.id}", extra={"user_id": user_id})
        return account
