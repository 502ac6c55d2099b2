# calsync/integrations/google/oauth.py
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple

from google.auth.exceptions import RefreshError, TransportError
from google.auth.transport.requests import Request
from google.oauth2.credentials import Credentials
from google_auth_oauthlib.flow import Flow

from calsync.core.config import settings
from calsync.core.constants import GOOGLE_CALENDAR_SCOPES, GOOGLE_TOKEN_URI
from calsync.integrations.calendar.errors import (
    ProviderError,
    ReauthorizationRequired,
    TransientProviderError,
)
from calsync.integrations.calendar.types import TokenSet
from calsync.utils.timeutils import to_naive_utc, utcnow

logger = logging.getLogger(__name__)

# Markers Google returns when consent was revoked or the grant expired
REVOKED_MARKERS = ("invalid_grant", "revoked", "unauthorized_client")


class GoogleOAuthClient:
    """Client for Google OAuth authentication."""

    @staticmethod
    def get_client_config() -> Tuple[str, str]:
        if not settings.GOOGLE_CLIENT_ID or not settings.GOOGLE_CLIENT_SECRET:
            logger.error("Google OAuth client is not configured")
            raise ProviderError("Google OAuth credentials not configured", provider="google")
        return settings.GOOGLE_CLIENT_ID, settings.GOOGLE_CLIENT_SECRET

    @staticmethod
    def redirect_uri() -> str:
        return f"{settings.SERVER_HOST}{settings.API_V1_STR}/calendar/google/callback"

    @staticmethod
    def create_oauth_flow(redirect_uri: Optional[str] = None) -> Flow:
        """Create the OAuth flow for Google Calendar from settings."""
        client_id, client_secret = GoogleOAuthClient.get_client_config()
        client_config: Dict[str, Any] = {
            "web": {
                "client_id": client_id,
                "client_secret": client_secret,
                "auth_uri": "https://accounts.google.com/o/oauth2/auth",
                "token_uri": GOOGLE_TOKEN_URI,
            }
        }
        return Flow.from_client_config(
            client_config,
            scopes=GOOGLE_CALENDAR_SCOPES,
            redirect_uri=redirect_uri or GoogleOAuthClient.redirect_uri(),
        )

    @staticmethod
    def authorization_url(state: str) -> str:
        flow = GoogleOAuthClient.create_oauth_flow()
        url, _ = flow.authorization_url(
            access_type="offline",
            include_granted_scopes="true",
            prompt="consent",
            state=state,
        )
        return url

    @staticmethod
    def exchange_code(code: str) -> Credentials:
        """Exchange authorization code for tokens."""
        flow = GoogleOAuthClient.create_oauth_flow()
        flow.fetch_token(code=code)
        return flow.credentials

    @staticmethod
    def build_credentials(access_token: Optional[str], refresh_token: Optional[str] = None) -> Credentials:
        """Create Google OAuth credentials around a stored token."""
        client_id, client_secret = GoogleOAuthClient.get_client_config()
        return Credentials(
            token=access_token,
            refresh_token=refresh_token,
            token_uri=GOOGLE_TOKEN_URI,
            client_id=client_id,
            client_secret=client_secret,
            scopes=GOOGLE_CALENDAR_SCOPES,
        )

    @staticmethod
    def refresh(refresh_token: str) -> TokenSet:
        """
        Refresh an access token (blocking; run it in a worker thread).

        Raises:
            ReauthorizationRequired: Google rejected the grant
            TransientProviderError: The token endpoint could not be reached
        """
        credentials = GoogleOAuthClient.build_credentials(None, refresh_token)
        try:
            credentials.refresh(Request())
        except RefreshError as e:
            message = str(e)
            if any(marker in message for marker in REVOKED_MARKERS):
                raise ReauthorizationRequired(
                    f"Google refresh rejected: {message}", provider="google"
                )
            raise ProviderError(f"Google refresh failed: {message}", provider="google")
        except TransportError as e:
            raise TransientProviderError(
                f"Google token endpoint unreachable: {e}", provider="google"
            )

        return TokenSet(
            access_token=credentials.token,
            refresh_token=credentials.refresh_token or refresh_token,
            expires_at=GoogleOAuthClient.parse_expiry(credentials.expiry),
        )

    @staticmethod
    def parse_expiry(expiry) -> datetime:
        """Parse expiry value into a naive UTC datetime."""
        if isinstance(expiry, datetime):
            return to_naive_utc(expiry)
        elif isinstance(expiry, (int, float)):
            return to_naive_utc(datetime.fromtimestamp(expiry, tz=timezone.utc))
        else:
            logger.warning(f"Unexpected type for expiry: {type(expiry)}")
            return utcnow() + timedelta(hours=1)
