"""ReconciliationScheduler: Decides when to ask the executor for a new price.

Two independent drivers run in the same event loop:

- heartbeat: every ``poll_interval`` seconds, request every job.
- round/deviation watch: every ``price_query_interval`` seconds, read each
  job's on-ledger price and round, refresh the cached copy and request the
  job when

  1. the ledger shows a round newer than the watermark that this account
     has not closed (``NEW_ROUND``); a newer round that this account already
     closed just advances the watermark, or
  2. the price moved more than ``deviation_threshold`` percent from the
     cached price (``DEVIATION``).

  Watch requests are held back while the previous request is still
  outstanding (its result has not been ingested), unless more than one
  watch period has passed since it was sent.

A dispatch bumps the job's request id, stamps the send time and persists
before the executor call is started in the background.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable

from .JobDispatcher import JobDispatcher
from .Models import RequestReason
from .RoundObserver import RoundObserver
from .StateStore import StateStore

logger = logging.getLogger(__name__)


def price_deviation(cached_price: float, latest_price: float) -> float:
    """Percent change from ``cached_price`` to ``latest_price``.

    An unset cached price or an unknown latest price (0) is no deviation.
    """
    if not cached_price or not latest_price:
        return 0.0
    return abs(latest_price - cached_price) / cached_price * 100


def seconds_to_next_minute(now: float) -> float:
    return 60 - (now % 60)


class ReconciliationScheduler:
    """Heartbeat and round/deviation drivers for all tracked jobs.

    :ivar store: Shared state store.
    :ivar observer: Ledger price/round observer.
    :ivar dispatcher: Executor request sender.
    :ivar poll_interval: Heartbeat period in seconds.
    :ivar price_query_interval: Watch period in seconds.
    :ivar deviation_threshold: Trigger threshold in percent.
    :ivar align_start: Start both drivers on the next whole minute.
    :ivar job_timeout: Upper bound on one job's watch check.
    """

    def __init__(
        self,
        store: StateStore,
        observer: RoundObserver,
        dispatcher: JobDispatcher,
        poll_interval: float = 60,
        price_query_interval: float = 12,
        deviation_threshold: float = 1.0,
        align_start: bool = True,
        job_timeout: float = 30.0,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.observer = observer
        self.dispatcher = dispatcher
        self.poll_interval = poll_interval
        self.price_query_interval = price_query_interval
        self.deviation_threshold = deviation_threshold
        self.align_start = align_start
        self.job_timeout = job_timeout
        self.clock = clock
        self._requests: set[asyncio.Task] = set()

    async def dispatch(self, job_name: str, reason: RequestReason) -> int | None:
        """Issue a new request for a job and send it in the background.

        :param job_name: Feed name.
        :param reason: Trigger reason.
        :returns: The new request id, or None if the job no longer exists.
        """
        async with self.store.transaction() as snapshot:
            job = snapshot.get_job(job_name)
            if job is None:
                return None
            request_id = job.next_request(self.clock())
            external_job_id = job.external_job_id

        self._start_request(external_job_id, request_id, reason)
        return request_id

    def _start_request(
        self, external_job_id: str, request_id: int, reason: RequestReason
    ) -> None:
        task = asyncio.create_task(
            self.dispatcher.send_request(external_job_id, request_id, reason),
            name=f"request-{external_job_id}-{request_id}",
        )
        self._requests.add(task)
        task.add_done_callback(self._requests.discard)

    async def heartbeat_cycle(self) -> list[str]:
        """Request every job once.

        :returns: Names of the jobs that were requested.
        """
        snapshot = await self.store.read()
        requested = []
        for job in snapshot.jobs:
            if await self.dispatch(job.name, RequestReason.HEARTBEAT) is not None:
                requested.append(job.name)
        return requested

    async def check_job(self, job_name: str) -> RequestReason | None:
        """Refresh one job's cached price/round and dispatch if warranted.

        :param job_name: Feed name.
        :returns: Reason of the dispatched request, or None if none was sent.
        :raises LedgerError: If the round cannot be read.
        """
        snapshot = await self.store.read()
        previous = snapshot.previous_results.get(job_name)
        if previous is None:
            return None
        cached_price = previous.result

        latest_price = await self.observer.observe_price(job_name)
        latest_round = await self.observer.observe_round(job_name)

        reason: RequestReason | None = None
        async with self.store.transaction() as snapshot:
            job = snapshot.get_job(job_name)
            previous = snapshot.previous_results.get(job_name)
            if job is None or previous is None:
                logger.info(f"{job_name} was removed while being checked")
                return None

            if latest_price:
                previous.result = latest_price
            previous.round = latest_round

            if latest_round.round_id > job.last_reported_round:
                if latest_round.submission_made:
                    job.advance_reported_round(latest_round.round_id)
                    logger.info(
                        f"{job_name}: round {latest_round.round_id} already submitted, "
                        "watermark advanced"
                    )
                else:
                    logger.info(f"{job_name}: found new round {latest_round.round_id}")
                    reason = RequestReason.NEW_ROUND

            deviation = price_deviation(cached_price, latest_price)
            if deviation > 0:
                logger.info(
                    f"Found a price deviation for {job_name} of {deviation}%. "
                    f"Latest price: {latest_price} Current Price: {cached_price}"
                )
            if reason is None and deviation > self.deviation_threshold:
                reason = RequestReason.DEVIATION

            if reason is None:
                return None

            now = self.clock()
            outstanding = job.request_id != previous.last_request_id
            overdue = now - job.last_request_sent_at > self.price_query_interval
            if outstanding and not overdue:
                logger.info(
                    f"{job_name}: not sending a new request, still waiting for request "
                    f"{job.request_id}; last finished request is {previous.last_request_id}"
                )
                return None

            request_id = job.next_request(now)
            external_job_id = job.external_job_id

        logger.info(f"{job_name}: initialising new request {request_id} ({reason.name})")
        self._start_request(external_job_id, request_id, reason)
        return reason

    async def watch_cycle(self) -> dict[str, RequestReason | None]:
        """Run :meth:`check_job` for every job; one failing job never stops the rest.

        :returns: Dispatch reason per checked job.
        """
        snapshot = await self.store.read()
        results: dict[str, RequestReason | None] = {}
        for job in snapshot.jobs:
            try:
                results[job.name] = await asyncio.wait_for(
                    self.check_job(job.name), timeout=self.job_timeout
                )
            except asyncio.TimeoutError:
                logger.error(f"{job.name}: round check timed out after {self.job_timeout}s")
                results[job.name] = None
            except Exception as e:
                logger.error(f"{job.name}: round check failed: {e}")
                results[job.name] = None
        return results

    async def _drive(
        self, name: str, period: float, cycle: Callable[[], object]
    ) -> None:
        loop = asyncio.get_running_loop()
        next_run = loop.time()
        while True:
            try:
                await cycle()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception(f"{name} cycle failed: {e}")
            next_run += period
            await asyncio.sleep(max(0.0, next_run - loop.time()))

    async def run(self) -> None:
        """Run both drivers until cancelled."""
        if self.align_start:
            delay = seconds_to_next_minute(self.clock())
            logger.info(f"Starting drivers in {delay:.0f}s on the next minute")
            await asyncio.sleep(delay)

        logger.info(
            f"Drivers started: heartbeat every {self.poll_interval}s, "
            f"round/deviation watch every {self.price_query_interval}s"
        )
        # The first tick of each driver fires one period after start.
        heartbeat = asyncio.create_task(self._delayed(
            self.poll_interval, "heartbeat", self.poll_interval, self.heartbeat_cycle
        ))
        watch = asyncio.create_task(self._delayed(
            self.price_query_interval, "watch", self.price_query_interval, self.watch_cycle
        ))
        try:
            await asyncio.gather(heartbeat, watch)
        finally:
            heartbeat.cancel()
            watch.cancel()
            await asyncio.gather(heartbeat, watch, return_exceptions=True)

    async def _delayed(
        self, delay: float, name: str, period: float, cycle: Callable[[], object]
    ) -> None:
        await asyncio.sleep(delay)
        await self._drive(name, period, cycle)

    async def stop(self) -> None:
        """Abandon in-flight executor requests."""
        for task in list(self._requests):
            task.cancel()
        if self._requests:
            await asyncio.gather(*self._requests, return_exceptions=True)
        self._requests.clear()

    async def wait_for_requests(self) -> None:
        """Wait until every in-flight executor request has finished."""
        while self._requests:
            await asyncio.gather(*list(self._requests), return_exceptions=True)
