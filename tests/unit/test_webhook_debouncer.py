import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from calsync.core.constants import SyncStatus
from calsync.schemas.sync import SyncOutcome
from calsync.services.webhooks import NotificationResult, WebhookDebouncer

DELAY = 0.05


def make_debouncer(runner, lookup=None, max_reschedules=3):
    return WebhookDebouncer(
        sync_runner=runner,
        channel_lookup=lookup or MagicMock(return_value=7),
        delay=DELAY,
        max_reschedules=max_reschedules,
    )


class TestWebhookDebouncer:
    """
    Test cases for notification coalescing
    """

    @pytest.mark.asyncio
    async def test_burst_triggers_one_sync(self):
        loop = asyncio.get_running_loop()
        fired_at = []

        async def record(account_id, since, until):
            fired_at.append(loop.time())
            return SyncOutcome(account_id=account_id)

        runner = AsyncMock(side_effect=record)
        debouncer = make_debouncer(runner)

        last = None
        for _ in range(5):
            debouncer.on_provider_notification("channel-1", "exists")
            last = loop.time()
            await asyncio.sleep(DELAY / 5)

        assert runner.await_count == 0
        assert debouncer.pending_count() == 1

        await asyncio.sleep(DELAY * 3)

        assert runner.await_count == 1
        account_id, since, until = runner.await_args.args
        assert account_id == 7
        assert since < until
        assert fired_at[0] - last >= DELAY * 0.9
        assert debouncer.pending_count() == 0
        await debouncer.shutdown()

    @pytest.mark.asyncio
    async def test_accounts_are_debounced_independently(self):
        runner = AsyncMock(return_value=SyncOutcome())
        lookup = MagicMock(side_effect=lambda channel, client_state: {"a": 1, "b": 2}[channel])
        debouncer = make_debouncer(runner, lookup)

        debouncer.on_provider_notification("a", "exists")
        debouncer.on_provider_notification("b", "exists")
        await asyncio.sleep(DELAY * 3)

        synced = sorted(call.args[0] for call in runner.await_args_list)
        assert synced == [1, 2]

    @pytest.mark.asyncio
    async def test_google_sync_state_is_ignored(self):
        runner = AsyncMock()
        lookup = MagicMock()
        debouncer = make_debouncer(runner, lookup)

        result = debouncer.on_provider_notification("channel-1", "sync")

        assert result == NotificationResult.IGNORED
        lookup.assert_not_called()
        assert debouncer.pending_count() == 0

    @pytest.mark.asyncio
    async def test_unknown_channel_is_dropped(self):
        runner = AsyncMock()
        debouncer = make_debouncer(runner, MagicMock(return_value=None))

        result = debouncer.on_provider_notification("stale-channel", "exists")

        assert result == NotificationResult.UNKNOWN_CHANNEL
        assert debouncer.pending_count() == 0

    @pytest.mark.asyncio
    async def test_retry_outcome_is_rescheduled_a_bounded_number_of_times(self):
        runner = AsyncMock(return_value=SyncOutcome(status=SyncStatus.RETRY))
        debouncer = make_debouncer(runner, max_reschedules=2)

        debouncer.schedule(7)
        await asyncio.sleep(DELAY * 10)

        assert runner.await_count == 3
        assert debouncer.pending_count() == 0

    @pytest.mark.asyncio
    async def test_failing_runner_does_not_break_later_syncs(self):
        runner = AsyncMock(side_effect=[RuntimeError("boom"), SyncOutcome()])
        debouncer = make_debouncer(runner)

        debouncer.schedule(7)
        await asyncio.sleep(DELAY * 3)
        debouncer.schedule(7)
        await asyncio.sleep(DELAY * 3)

        assert runner.await_count == 2

    @pytest.mark.asyncio
    async def test_shutdown_cancels_pending_timers(self):
        runner = AsyncMock()
        debouncer = make_debouncer(runner)

        debouncer.schedule(7)
        await debouncer.shutdown()
        await asyncio.sleep(DELAY * 2)

        runner.assert_not_called()
        assert debouncer.pending_count() == 0

    @pytest.mark.asyncio
    async def test_threadsafe_schedule_after_loop_is_bound(self):
        runner = AsyncMock(return_value=SyncOutcome())
        debouncer = make_debouncer(runner)
        debouncer.bind_loop(asyncio.get_running_loop())

        await asyncio.to_thread(debouncer.schedule_threadsafe, [3, 4])
        await asyncio.sleep(DELAY * 3)

        assert sorted(call.args[0] for call in runner.await_args_list) == [3, 4]
