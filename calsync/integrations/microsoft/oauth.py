# calsync/integrations/microsoft/oauth.py
import logging
from datetime import timedelta
from typing import Any, Dict, Optional
from urllib.parse import urlencode

import httpx

from calsync.core.config import settings
from calsync.core.constants import MS_CALENDAR_SCOPES, MS_GRAPH_BASE, MS_LOGIN_BASE
from calsync.integrations.calendar.errors import (
    ProviderError,
    ReauthorizationRequired,
    TransientProviderError,
)
from calsync.integrations.calendar.types import TokenSet
from calsync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

# Identity platform error codes that mean the grant is gone for good
REVOKED_ERRORS = {"invalid_grant", "interaction_required", "consent_required"}


class MicrosoftOAuthClient:
    """Client for the Microsoft identity platform (v2.0 endpoints)."""

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    @staticmethod
    def _base() -> str:
        return f"{MS_LOGIN_BASE}/{settings.MICROSOFT_TENANT}/oauth2/v2.0"

    @staticmethod
    def redirect_uri() -> str:
        return f"{settings.SERVER_HOST}{settings.API_V1_STR}/calendar/microsoft/callback"

    @staticmethod
    def _require_client() -> None:
        if not settings.MICROSOFT_CLIENT_ID or not settings.MICROSOFT_CLIENT_SECRET:
            logger.error("Microsoft OAuth client is not configured")
            raise ProviderError(
                "Microsoft OAuth credentials not configured", provider="microsoft"
            )

    def authorization_url(self, state: str) -> str:
        self._require_client()
        params = {
            "client_id": settings.MICROSOFT_CLIENT_ID,
            "response_type": "code",
            "redirect_uri": self.redirect_uri(),
            "response_mode": "query",
            "scope": MS_CALENDAR_SCOPES,
            "state": state,
            "prompt": "consent",
        }
        return f"{self._base()}/authorize?{urlencode(params)}"

    async def _token_request(self, data: Dict[str, str]) -> TokenSet:
        self._require_client()
        form = {
            "client_id": settings.MICROSOFT_CLIENT_ID,
            "client_secret": settings.MICROSOFT_CLIENT_SECRET,
            "scope": MS_CALENDAR_SCOPES,
            **data,
        }
        try:
            async with httpx.AsyncClient(
                timeout=settings.PROVIDER_TIMEOUT, transport=self.transport
            ) as client:
                response = await client.post(f"{self._base()}/token", data=form)
        except httpx.TransportError as e:
            raise TransientProviderError(
                f"Microsoft token endpoint unreachable: {e}", provider="microsoft"
            )

        if response.status_code >= 500 or response.status_code == 429:
            raise TransientProviderError(
                f"Microsoft token endpoint returned {response.status_code}",
                status_code=response.status_code,
                provider="microsoft",
            )
        payload: Dict[str, Any] = response.json() if response.content else {}
        if response.status_code != 200:
            error = payload.get("error", "")
            message = payload.get("error_description") or error or response.reason_phrase
            if error in REVOKED_ERRORS:
                raise ReauthorizationRequired(
                    f"Microsoft refresh rejected: {error}",
                    status_code=response.status_code,
                    provider="microsoft",
                )
            raise ProviderError(
                f"Microsoft token request failed: {message}",
                status_code=response.status_code,
                provider="microsoft",
            )

        return TokenSet(
            access_token=payload["access_token"],
            refresh_token=payload.get("refresh_token") or data.get("refresh_token"),
            expires_at=utcnow() + timedelta(seconds=int(payload.get("expires_in", 3600))),
        )

    async def exchange_code(self, code: str) -> TokenSet:
        return await self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.redirect_uri(),
            }
        )

    async def refresh(self, refresh_token: str) -> TokenSet:
        return await self._token_request(
            {"grant_type": "refresh_token", "refresh_token": refresh_token}
        )

    async def get_account_email(self, access_token: str) -> Optional[str]:
        async with httpx.AsyncClient(
            timeout=settings.PROVIDER_TIMEOUT, transport=self.transport
        ) as client:
            response = await client.get(
                f"{MS_GRAPH_BASE}/me",
                headers={"Authorization": f"Bearer {access_token}"},
            )
        if response.status_code != 200:
            raise ProviderError(
                "Could not read Microsoft profile",
                status_code=response.status_code,
                provider="microsoft",
            )
        profile = response.json()
        return profile.get("mail") or profile.get("userPrincipalName")
