# calsync/services/webhooks.py
import asyncio
import logging
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, Iterable, Optional, Set

from calsync.core.config import settings
from calsync.core.constants import GoogleResourceState
from calsync.core.security import client_state_matches
from calsync.db.session import session_scope
from calsync.repositories.calendar_repository import CalendarAccountRepository
from calsync.schemas.sync import SyncOutcome
from calsync.services.sync_service import run_import
from calsync.utils.timeutils import utcnow

logger = logging.getLogger(__name__)

SyncRunner = Callable[[int, datetime, datetime], Awaitable[SyncOutcome]]
ChannelLookup = Callable[[str, Optional[str]], Optional[int]]


class NotificationResult:
    SCHEDULED = "scheduled"
    IGNORED = "ignored"
    UNKNOWN_CHANNEL = "unknown_channel"


def lookup_account_by_channel(
    channel_id: str, client_state: Optional[str] = None
) -> Optional[int]:
    """Live account owning the channel, if the notification carries its secret."""
    with session_scope() as db:
        account = CalendarAccountRepository(db).get_live_by_channel_id(channel_id)
        if account is None:
            return None
        if not client_state_matches(account.webhook_client_state, client_state):
            logger.warning(
                f"Rejecting notification for channel {channel_id}: client state mismatch",
                extra={"account_id": account.id},
            )
            return None
        return account.id


class WebhookDebouncer:
    """
    Coalesces provider push notifications into delayed re-syncs.

    Each account has at most one pending timer. A new notification cancels
    the pending timer and arms a fresh one, so a burst produces one sync
    ``delay`` seconds after its last notification. A sync that comes back
    ``retry`` (lock timeout, provider trouble) is re-armed a bounded number
    of times.
    """

    def __init__(
        self,
        sync_runner: SyncRunner = run_import,
        channel_lookup: ChannelLookup = lookup_account_by_channel,
        delay: Optional[float] = None,
        max_reschedules: Optional[int] = None,
    ):
        self.sync_runner = sync_runner
        self.channel_lookup = channel_lookup
        self.delay = settings.WEBHOOK_DEBOUNCE_SECONDS if delay is None else delay
        self.max_reschedules = (
            settings.WEBHOOK_MAX_RESCHEDULES if max_reschedules is None else max_reschedules
        )
        self._timers: Dict[int, asyncio.TimerHandle] = {}
        self._reschedules: Dict[int, int] = {}
        self._running: Set[asyncio.Task] = set()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def on_provider_notification(
        self,
        channel_id: Optional[str],
        change_hint: Optional[str] = None,
        client_state: Optional[str] = None,
    ) -> str:
        """Handle one push notification; the provider is always acknowledged."""
        if change_hint == GoogleResourceState.SYNC:
            logger.info(f"Channel {channel_id} confirmed")
            return NotificationResult.IGNORED
        if not channel_id:
            return NotificationResult.UNKNOWN_CHANNEL

        account_id = self.channel_lookup(channel_id, client_state)
        if account_id is None:
            logger.info(f"Dropping notification for unknown channel {channel_id}")
            return NotificationResult.UNKNOWN_CHANNEL

        self.schedule(account_id)
        return NotificationResult.SCHEDULED

    def schedule(self, account_id: int) -> None:
        """Arm (or re-arm) the account's timer. Must run on the event loop."""
        loop = asyncio.get_running_loop()
        self._loop = loop
        pending = self._timers.pop(account_id, None)
        if pending is not None:
            pending.cancel()
        self._timers[account_id] = loop.call_later(self.delay, self._fire, account_id)
        logger.debug(f"Sync for account {account_id} due in {self.delay}s")

    def schedule_threadsafe(self, account_ids: Iterable[int]) -> None:
        """Schedule from any thread; a no-op before the first notification."""
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        for account_id in account_ids:
            loop.call_soon_threadsafe(self.schedule, account_id)

    def bind_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        self._loop = loop

    def pending_count(self) -> int:
        return len(self._timers)

    def is_pending(self, account_id: int) -> bool:
        return account_id in self._timers

    def _fire(self, account_id: int) -> None:
        self._timers.pop(account_id, None)
        task = asyncio.ensure_future(self._run(account_id))
        self._running.add(task)
        task.add_done_callback(self._running.discard)

    async def _run(self, account_id: int) -> None:
        now = utcnow()
        since = now - timedelta(days=settings.WEBHOOK_SYNC_PAST_DAYS)
        until = now + timedelta(days=settings.WEBHOOK_SYNC_FUTURE_DAYS)
        try:
            outcome = await self.sync_runner(account_id, since, until)
        except Exception as e:
            logger.error(
                f"Webhook-triggered sync of account {account_id} failed: {e}",
                exc_info=True,
            )
            return

        if not outcome.retryable:
            self._reschedules.pop(account_id, None)
            return

        attempts = self._reschedules.get(account_id, 0)
        if attempts >= self.max_reschedules:
            logger.warning(
                f"Giving up on account {account_id} after {attempts} re-schedules"
            )
            self._reschedules.pop(account_id, None)
            return
        self._reschedules[account_id] = attempts + 1
        if account_id not in self._timers:
            self.schedule(account_id)

    async def shutdown(self) -> None:
        """Cancel pending timers and let in-flight syncs finish."""
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()
        if self._running:
            await asyncio.gather(*self._running, return_exceptions=True)


# Process-wide debouncer used by the webhook routes
webhook_debouncer = WebhookDebouncer()


def get_webhook_debouncer() -> WebhookDebouncer:
    return webhook_debouncer
