"""Unit tests for ReconciliationScheduler."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from feedbridge.src.Models import RequestReason
from feedbridge.src.ReconciliationScheduler import (
    ReconciliationScheduler,
    price_deviation,
    seconds_to_next_minute,
)
from feedbridge.src.RoundObserver import latest_round_path

ACCOUNT = "agoric1oracleoperator"
NOW = 1_700_000_000.0


@pytest.fixture
def dispatcher() -> AsyncMock:
    return AsyncMock()


@pytest.fixture
def scheduler(store, observer, dispatcher) -> ReconciliationScheduler:
    return ReconciliationScheduler(
        store,
        observer,
        dispatcher,
        poll_interval=60,
        price_query_interval=12,
        deviation_threshold=1.0,
        align_start=False,
        clock=lambda: NOW,
    )


async def _seed(store, name="ATOM-USD", external_job_id="a1", **fields) -> None:
    async with store.transaction() as snapshot:
        job = snapshot.add_job(external_job_id, name)
        previous = snapshot.previous_results[name]
        job.request_id = fields.get("request_id", 0)
        job.last_request_sent_at = fields.get("sent_at", 0.0)
        job.last_reported_round = fields.get("watermark", 0)
        previous.result = fields.get("cached_price", 0.0)
        previous.last_request_id = fields.get("last_request_id", 0)


class TestHelpers:
    """Test deviation and alignment helpers."""

    def test_price_deviation(self) -> None:
        """Deviation should be the absolute percent change."""
        assert price_deviation(100, 102) == pytest.approx(2.0)
        assert price_deviation(100, 98) == pytest.approx(2.0)

    def test_unknown_prices_do_not_deviate(self) -> None:
        """A missing cached or latest price should be no deviation."""
        assert price_deviation(0, 102) == 0.0
        assert price_deviation(100, 0) == 0.0

    def test_seconds_to_next_minute(self) -> None:
        """Alignment should wait for the next whole minute."""
        assert seconds_to_next_minute(1_700_000_010.0) == pytest.approx(10.0)


class TestHeartbeat:
    """Test the heartbeat driver."""

    def test_requests_every_job(self, store, scheduler, dispatcher) -> None:
        """Each job should get a heartbeat request with a new id."""

        async def run():
            await _seed(store, "ATOM-USD", "a1", request_id=4)
            await _seed(store, "BLD-USD", "b2")
            requested = await scheduler.heartbeat_cycle()
            await scheduler.wait_for_requests()
            return requested

        assert asyncio.run(run()) == ["ATOM-USD", "BLD-USD"]
        dispatcher.send_request.assert_any_await("a1", 5, RequestReason.HEARTBEAT)
        dispatcher.send_request.assert_any_await("b2", 1, RequestReason.HEARTBEAT)

        job = store.load().get_job("ATOM-USD")
        assert job.request_id == 5
        assert job.last_request_sent_at == NOW

    def test_dispatch_unknown_job(self, scheduler, dispatcher) -> None:
        """Dispatching a removed job should do nothing."""
        assert asyncio.run(scheduler.dispatch("ATOM-USD", RequestReason.HEARTBEAT)) is None
        dispatcher.send_request.assert_not_awaited()


class TestCheckJob:
    """Test the round/deviation watch."""

    def _check(self, store, scheduler, **fields):
        async def run():
            await _seed(store, **fields)
            reason = await scheduler.check_job("ATOM-USD")
            await scheduler.wait_for_requests()
            return reason

        return asyncio.run(run())

    def test_new_round_triggers_request(self, ledger, store, scheduler, dispatcher) -> None:
        """A round newer than the watermark should trigger NEW_ROUND."""
        ledger.set_round("ATOM-USD", 5)
        ledger.set_price("ATOM-USD", 9.87)

        assert self._check(store, scheduler) is RequestReason.NEW_ROUND
        dispatcher.send_request.assert_awaited_once_with("a1", 1, RequestReason.NEW_ROUND)

        previous = store.load().previous_results["ATOM-USD"]
        assert previous.round.round_id == 5
        assert previous.round.submission_made is False
        assert previous.result == pytest.approx(9.87)

    def test_submitted_round_advances_watermark(
        self, ledger, store, scheduler, dispatcher
    ) -> None:
        """A newer round this account already closed should only move the watermark."""
        ledger.set_round("ATOM-USD", 5)
        ledger.record_push(ACCOUNT, 1001, 5)

        assert self._check(store, scheduler, watermark=3) is None
        dispatcher.send_request.assert_not_awaited()
        assert store.load().get_job("ATOM-USD").last_reported_round == 5

    def test_deviation_triggers_request(self, ledger, store, scheduler, dispatcher) -> None:
        """A price move above the threshold should trigger DEVIATION."""
        ledger.set_round("ATOM-USD", 5)
        ledger.set_price("ATOM-USD", 102)

        reason = self._check(store, scheduler, watermark=5, cached_price=100)

        assert reason is RequestReason.DEVIATION
        dispatcher.send_request.assert_awaited_once_with("a1", 1, RequestReason.DEVIATION)

    def test_small_move_does_not_trigger(self, ledger, store, scheduler, dispatcher) -> None:
        """A price move within the threshold should send nothing."""
        ledger.set_round("ATOM-USD", 5)
        ledger.set_price("ATOM-USD", 100.5)

        assert self._check(store, scheduler, watermark=5, cached_price=100) is None
        dispatcher.send_request.assert_not_awaited()
        assert store.load().previous_results["ATOM-USD"].result == pytest.approx(100.5)

    def test_new_round_wins_over_deviation(
        self, ledger, store, scheduler, dispatcher
    ) -> None:
        """With both conditions true the request should be NEW_ROUND."""
        ledger.set_round("ATOM-USD", 6)
        ledger.set_price("ATOM-USD", 110)

        reason = self._check(store, scheduler, watermark=5, cached_price=100)

        assert reason is RequestReason.NEW_ROUND

    def test_failed_price_read_keeps_cache(self, ledger, store, scheduler, dispatcher) -> None:
        """A zero price should neither overwrite the cache nor deviate."""
        ledger.set_round("ATOM-USD", 5)

        assert self._check(store, scheduler, watermark=5, cached_price=100) is None
        assert store.load().previous_results["ATOM-USD"].result == 100

    def test_outstanding_request_suppresses(
        self, ledger, store, scheduler, dispatcher
    ) -> None:
        """A recent unanswered request should hold back a new one."""
        ledger.set_round("ATOM-USD", 6)

        reason = self._check(
            store,
            scheduler,
            watermark=5,
            request_id=3,
            last_request_id=2,
            sent_at=NOW - 5,
        )

        assert reason is None
        dispatcher.send_request.assert_not_awaited()
        assert store.load().get_job("ATOM-USD").request_id == 3

    def test_overdue_request_is_replaced(self, ledger, store, scheduler, dispatcher) -> None:
        """An unanswered request older than one watch period should not block."""
        ledger.set_round("ATOM-USD", 6)

        reason = self._check(
            store,
            scheduler,
            watermark=5,
            request_id=3,
            last_request_id=2,
            sent_at=NOW - 30,
        )

        assert reason is RequestReason.NEW_ROUND
        dispatcher.send_request.assert_awaited_once_with("a1", 4, RequestReason.NEW_ROUND)


class TestWatchCycle:
    """Test that one failing job never stops the rest."""

    def test_failure_is_isolated(self, ledger, store, scheduler, dispatcher) -> None:
        """A failing round read should not prevent checking other jobs."""
        ledger.failing_paths.add(latest_round_path("ATOM-USD"))
        ledger.set_round("BLD-USD", 2)

        async def run():
            await _seed(store, "ATOM-USD", "a1")
            await _seed(store, "BLD-USD", "b2")
            results = await scheduler.watch_cycle()
            await scheduler.wait_for_requests()
            return results

        results = asyncio.run(run())

        assert results == {"ATOM-USD": None, "BLD-USD": RequestReason.NEW_ROUND}
        dispatcher.send_request.assert_awaited_once_with("b2", 1, RequestReason.NEW_ROUND)

    def test_stop_cancels_in_flight(self, store, scheduler, dispatcher) -> None:
        """Stopping should abandon requests still waiting on the executor."""
        started = []

        async def slow_request(*args):
            started.append(args)
            await asyncio.sleep(3600)

        dispatcher.send_request.side_effect = slow_request

        async def run():
            await _seed(store)
            await scheduler.dispatch("ATOM-USD", RequestReason.HEARTBEAT)
            await asyncio.sleep(0)
            await scheduler.stop()

        asyncio.run(asyncio.wait_for(run(), timeout=5))
        assert len(started) == 1
