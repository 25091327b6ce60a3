"""ResultHandler: Turns executor results into on-chain pushes.

Flow for one ingested result:
    1. Decide whether the result warrants an update: always for the first
       result, heartbeats and new rounds; for deviation requests only when
       the integer result still deviates from the cached price, scaled by
       ``10 ** decimal_places``, by more than the threshold.
    2. Pick the target round: the cached round if the watermark is below
       it, otherwise the one after it.
    3. Push only if the target is round 1, or the target is a new round not
       opened by this account, or the target is the cached round and this
       account has not closed it yet.
    4. On a confirmed push, advance the watermark. Always record the
       ingested request id.

Job registration and removal also live here since they are the executor's
other two inbound operations.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Any

from .Models import Job, PreviousResult, RequestReason, RoundSnapshot
from .PricePusher import PricePusher
from .StateStore import StateStore

logger = logging.getLogger(__name__)


def parse_result(value: Any) -> int | None:
    """Round an executor result to an integer; None if it is not a finite number."""
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(number):
        return None
    return int(round(number))


@dataclass
class AdapterResult:
    """A job run result posted by the executor.

    :ivar result: Integer result, None if the payload carried no valid number.
    :ivar request_id: Request id echoed by the executor.
    :ivar reason: Trigger reason, None if unknown.
    :ivar external_job_id: Executor-side job id.
    :ivar job_name: Feed name.
    """

    result: int | None
    request_id: int
    reason: RequestReason | None
    external_job_id: str
    job_name: str

    @property
    def valid(self) -> bool:
        return self.result is not None

    @classmethod
    def from_payload(cls, data: dict[str, Any]) -> AdapterResult:
        """Parse the ``data`` object of an adapter POST.

        :param data: ``{result, request_id, request_type, job, name}``.
        :returns: Parsed result; ``valid`` is False when ``result`` is unusable.
        """
        try:
            request_id = int(data.get("request_id") or 0)
        except (TypeError, ValueError):
            request_id = 0
        return cls(
            result=parse_result(data.get("result")),
            request_id=request_id,
            reason=RequestReason.parse(data.get("request_type")),
            external_job_id=str(data.get("job") or ""),
            job_name=str(data.get("name") or ""),
        )


def select_target_round(last_reported_round: int, cached_round_id: int) -> tuple[int, bool]:
    """Pick the round a result should be pushed into.

    :param last_reported_round: The job's watermark.
    :param cached_round_id: Latest observed round id.
    :returns: Tuple of (target round, whether it is a new round).
    """
    if last_reported_round < cached_round_id:
        target = cached_round_id
    else:
        target = cached_round_id + 1
    return target, target != cached_round_id


class ResultHandler:
    """Ingests executor results and manages job registrations.

    :ivar store: Shared state store.
    :ivar pusher: On-chain price pusher.
    :ivar account: This bridge's submitting account.
    :ivar decimal_places: Fixed-point decimals of executor results.
    :ivar deviation_threshold: Update threshold in percent.
    """

    def __init__(
        self,
        store: StateStore,
        pusher: PricePusher,
        account: str,
        decimal_places: int = 6,
        deviation_threshold: float = 1.0,
    ) -> None:
        self.store = store
        self.pusher = pusher
        self.account = account
        self.decimal_places = decimal_places
        self.deviation_threshold = deviation_threshold

    async def register_job(self, external_job_id: str, name: str) -> Job:
        async with self.store.transaction() as snapshot:
            job = snapshot.add_job(external_job_id, name)
        logger.info(f"Got new job {external_job_id} ({name})")
        return job

    async def remove_job(self, external_job_id: str) -> Job | None:
        async with self.store.transaction() as snapshot:
            job = snapshot.remove_job(external_job_id)
        if job is None:
            logger.warning(f"Asked to remove unknown job {external_job_id}")
        else:
            logger.info(f"Removed job {external_job_id} ({job.name})")
        return job

    def should_update(
        self, previous: PreviousResult, result: int, reason: RequestReason | None
    ) -> bool:
        """Decide whether an ingested result warrants a push."""
        if not previous.result:
            return True
        if reason in (RequestReason.HEARTBEAT, RequestReason.NEW_ROUND):
            return True
        if reason != RequestReason.DEVIATION:
            return False

        last_price = previous.result * (10 ** self.decimal_places)
        percent_change = abs(result - last_price) / last_price * 100
        logger.info(
            f"Price change is {percent_change}%. Result: {result}. "
            f"Last price: {last_price}"
        )
        return percent_change > self.deviation_threshold

    def should_push(
        self, target_round: int, is_new_round: bool, cached_round: RoundSnapshot | None
    ) -> bool:
        """Guard against pushing into a round we opened or already closed."""
        started_by = cached_round.started_by if cached_round else None
        submission_made = cached_round.submission_made if cached_round else False
        return (
            target_round == 1
            or (is_new_round and started_by != self.account)
            or (not is_new_round and not submission_made)
        )

    async def ingest(self, adapter_result: AdapterResult) -> bool:
        """Process one valid executor result.

        :param adapter_result: Parsed result; must be valid.
        :returns: True if a push for the target round is confirmed.
        """
        name = adapter_result.job_name
        result = adapter_result.result
        if result is None:
            return False

        snapshot = await self.store.read()
        job = snapshot.get_job(name)
        previous = snapshot.previous_results.get(name)
        if job is None or previous is None:
            logger.warning(f"Ignoring result for unknown job {name}")
            return False

        submitted = False
        target_round = None
        # The request id is recorded even when the push raises.
        try:
            if self.should_update(previous, result, adapter_result.reason):
                cached_round = previous.round
                cached_round_id = (
                    cached_round.round_id if cached_round else job.last_reported_round
                )
                target_round, is_new_round = select_target_round(
                    job.last_reported_round, cached_round_id
                )

                if self.should_push(target_round, is_new_round, cached_round):
                    logger.info(f"{name}: updating price for round {target_round}")
                    submitted = await self.pusher.push(
                        result, name, target_round, self.account
                    )
                else:
                    logger.info(
                        f"{name}: already started last round or submitted to round "
                        f"{target_round}"
                    )
        finally:
            await self._record_outcome(
                name, adapter_result.request_id, submitted, target_round
            )

        return submitted

    async def _record_outcome(
        self, name: str, request_id: int, submitted: bool, target_round: int | None
    ) -> None:
        """Persist the watermark and the last finished request id.

        The request id never moves backwards, so a late result for an older
        request does not mark a newer one as outstanding again.
        """
        async with self.store.transaction() as snapshot:
            job = snapshot.get_job(name)
            previous = snapshot.previous_results.get(name)
            if job is None or previous is None:
                logger.warning(f"{name} was removed while its result was processed")
                return
            if submitted and target_round is not None:
                job.advance_reported_round(target_round)
            previous.last_request_id = max(previous.last_request_id, request_id)

    async def ingest_safely(self, adapter_result: AdapterResult) -> None:
        """Run :meth:`ingest` after the HTTP ack; log instead of raising."""
        try:
            await self.ingest(adapter_result)
        except Exception as e:
            logger.exception(
                f"Failed to process result for {adapter_result.job_name} "
                f"(request {adapter_result.request_id}): {e}"
            )
