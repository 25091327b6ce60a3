"""PricePusher: Submits a price for a round, at most once per round.

Push loop:
    1. If the account already has a successful push for the round, stop
       (nothing is broadcast).
    2. Up to ``retry_policy.max_attempts`` times:
       a. Re-read the round. If the ledger has moved past the target round,
          abandon the push: the round is stale.
       b. Broadcast the PushPrice offer.
       c. Wait ``settlement_delay`` for the ledger to catch up.
       d. Re-check the wallet history; stop once the push shows up.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable

from .Config import ConfigError, OfferAnchorMap
from .ConflictChecker import PUSH_PRICE_INVITATION, ConflictChecker
from .LedgerClient import LedgerClient, LedgerError, LedgerSubmitError
from .Marshal import BigInt, MarshalError, serialize
from .RetryPolicy import RetryPolicy
from .RoundObserver import RoundObserver

logger = logging.getLogger(__name__)


def build_push_action(
    price: int, feed_offer_id: int | str, round_id: int, offer_id: int
) -> dict[str, Any]:
    """Build the wallet action that pushes ``price`` into ``round_id``.

    :param price: Integer price in the feed's fixed-point units.
    :param feed_offer_id: Anchor offer the push continues from.
    :param round_id: Round being closed.
    :param offer_id: Fresh id for this offer.
    :returns: Unserialized ``executeOffer`` action.
    """
    return {
        "method": "executeOffer",
        "offer": {
            "id": offer_id,
            "invitationSpec": {
                "source": "continuing",
                "previousOffer": feed_offer_id,
                "invitationMakerName": PUSH_PRICE_INVITATION,
                "invitationArgs": [{"unitPrice": BigInt(price), "roundId": round_id}],
            },
            "proposal": {},
        },
    }


class PricePusher:
    """Pushes prices on-chain with conflict avoidance and staleness abort.

    :ivar ledger: Ledger access for broadcasting.
    :ivar checker: Conflict checker.
    :ivar observer: Round observer for staleness checks.
    :ivar anchors: Job name to anchor offer map.
    :ivar retry_policy: Bounds the number of broadcast attempts.
    :ivar settlement_delay: Seconds to wait before confirming a broadcast.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        checker: ConflictChecker,
        observer: RoundObserver,
        anchors: OfferAnchorMap,
        retry_policy: RetryPolicy | None = None,
        settlement_delay: float = 13.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.ledger = ledger
        self.checker = checker
        self.observer = observer
        self.anchors = anchors
        self.retry_policy = retry_policy or RetryPolicy()
        self.settlement_delay = settlement_delay
        self._sleep = sleep

    @staticmethod
    def new_offer_id() -> int:
        return int(time.time() * 1000)

    async def push(self, price: int, job_name: str, round_id: int, account: str) -> bool:
        """Push ``price`` for ``job_name`` into ``round_id`` from ``account``.

        :param price: Integer price in the feed's fixed-point units.
        :param job_name: Feed name.
        :param round_id: Target round.
        :param account: Submitting account.
        :returns: True if a successful push for the round is on the ledger.
        :raises LedgerError: If the initial conflict check cannot be made.
        :raises ConfigError: If the job has no anchor offer when the push starts.
            An anchor removed during the retry loop ends the push with False.
        """
        feed_offer_id = self.anchors.get(job_name)

        submitted = await self.checker.has_submitted(account, feed_offer_id, round_id)
        if submitted:
            logger.info(f"{job_name}: round {round_id} already has a submission")
            return True

        attempts = self.retry_policy.max_attempts
        for attempt in range(attempts):
            try:
                latest_round = await self.observer.observe_round(job_name)
            except ConfigError as e:
                logger.error(f"{job_name}: anchor offer disappeared mid-push: {e}")
                return False
            except (LedgerError, MarshalError) as e:
                logger.warning(
                    f"{job_name}: round check failed before push: {e} "
                    f"(attempt {attempt + 1}/{attempts})"
                )
                await self.retry_policy.wait(attempt)
                continue

            if latest_round.round_id > round_id:
                logger.warning(
                    f"{job_name}: price failed to be submitted for old round {round_id} "
                    f"(ledger is at round {latest_round.round_id})"
                )
                return False

            action = build_push_action(
                price, feed_offer_id, round_id, offer_id=self.new_offer_id()
            )
            logger.info(
                f"{job_name}: submitting price {price} for round {round_id}, "
                f"try {attempt + 1}"
            )
            try:
                result = await self.ledger.submit_transaction(serialize(action), account)
            except LedgerSubmitError as e:
                logger.warning(f"{job_name}: broadcast failed: {e}")
                await self.retry_policy.wait(attempt)
                continue
            if not result.ok:
                logger.warning(
                    f"{job_name}: broadcast rejected ({result.tx_hash}): {result.raw_log}"
                )

            await self._sleep(self.settlement_delay)

            try:
                submitted = await self.checker.has_submitted(
                    account, feed_offer_id, round_id
                )
            except LedgerError as e:
                logger.warning(f"{job_name}: confirmation check failed: {e}")
                submitted = False
            if submitted:
                break

        if submitted:
            logger.info(f"{job_name}: price submitted successfully for round {round_id}")
        else:
            logger.error(f"{job_name}: price failed to be submitted for round {round_id}")
        return submitted
