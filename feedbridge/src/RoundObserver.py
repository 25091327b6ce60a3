"""RoundObserver: Reads a feed's current price and round from the ledger.

Price reads are best-effort: any failure is logged and reported as ``0``
("no new information"). Round reads are not: the round decides which round
a push targets, so failures propagate to the caller.
"""

from __future__ import annotations

import logging

from .Config import OfferAnchorMap
from .ConflictChecker import ConflictChecker
from .LedgerClient import LedgerClient, LedgerError
from .Marshal import MarshalError, deserialize, parse_stream_cell
from .Models import RoundSnapshot

logger = logging.getLogger(__name__)


def price_feed_path(job_name: str) -> str:
    return f"published.priceFeed.{job_name}_price_feed"


def latest_round_path(job_name: str) -> str:
    return f"{price_feed_path(job_name)}.latestRound"


class RoundObserver:
    """Polls the ledger for price and round metadata per job.

    :ivar ledger: Ledger access.
    :ivar checker: Conflict checker used to fill ``submission_made``.
    :ivar account: This bridge's submitting account.
    :ivar anchors: Job name to anchor offer map.
    """

    def __init__(
        self,
        ledger: LedgerClient,
        checker: ConflictChecker,
        account: str,
        anchors: OfferAnchorMap,
    ) -> None:
        self.ledger = ledger
        self.checker = checker
        self.account = account
        self.anchors = anchors

    async def _read_latest_value(self, path: str) -> object:
        text = await self.ledger.read_latest(path)
        if not text:
            raise MarshalError(f"No value published at {path}")
        _, capdatas = parse_stream_cell(text)
        if not capdatas:
            raise MarshalError(f"Empty stream cell at {path}")
        return deserialize(capdatas[-1])

    async def observe_price(self, job_name: str) -> float:
        """Read the latest published price for a job.

        :param job_name: Feed name (e.g. "ATOM-USD").
        :returns: amountOut / amountIn of the latest quote, or 0 on failure.
        """
        path = price_feed_path(job_name)
        try:
            quote = await self._read_latest_value(path)
            amount_in = quote["amountIn"]["value"]
            amount_out = quote["amountOut"]["value"]
            price = amount_out / amount_in
        except (LedgerError, MarshalError) as e:
            logger.warning(f"{job_name}: price query failed: {e}")
            return 0
        except (KeyError, TypeError, ZeroDivisionError) as e:
            logger.warning(f"{job_name}: unexpected price quote at {path}: {e!r}")
            return 0

        logger.info(f"{job_name} Price Query: {price}")
        return price

    async def observe_round(self, job_name: str) -> RoundSnapshot:
        """Read the latest round and whether this account already closed it.

        :param job_name: Feed name.
        :returns: Round snapshot.
        :raises LedgerError: If the round or the wallet history cannot be read.
        :raises MarshalError: If the round record is malformed.
        :raises ConfigError: If the job has no anchor offer configured.
        """
        path = latest_round_path(job_name)
        record = await self._read_latest_value(path)
        try:
            round_id = int(record["roundId"])
            started_by = record.get("startedBy")
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise MarshalError(f"Unexpected round record at {path}: {e!r}") from e

        feed_offer_id = self.anchors.get(job_name)
        submission_made = await self.checker.has_submitted(
            self.account, feed_offer_id, round_id
        )

        snapshot = RoundSnapshot(
            round_id=round_id,
            started_by=started_by if isinstance(started_by, str) else None,
            submission_made=submission_made,
        )
        logger.info(f"{job_name} Latest Round: {snapshot.round_id}")
        return snapshot
