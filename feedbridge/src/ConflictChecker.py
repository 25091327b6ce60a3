"""ConflictChecker: Did this account already close a round?

The account's wallet publishes an ``offerStatus`` update for every offer it
makes. A price push is an offer continuing the feed's anchor offer through
the ``PushPrice`` invitation, with ``roundId`` as its first argument.

Algorithm, newest entry first, over at most ``lookback`` entries:
    1. Skip anything that is not a PushPrice continuation of the anchor.
    2. Skip entries carrying an ``error``.
    3. Round equal to the target: submitted.
    4. Round below the target: not submitted. Rounds only move forward, so a
       successful push to an older round means the newer one was never
       pushed after it.

Limitation: if the target round's entry is older than the lookback window
the answer is "not submitted", which errs toward resubmitting.
"""

from __future__ import annotations

import logging
from typing import Any

from .LedgerClient import LedgerClient

logger = logging.getLogger(__name__)

HISTORY_LOOKBACK = 10
PUSH_PRICE_INVITATION = "PushPrice"
OFFER_STATUS_UPDATE = "offerStatus"


def wallet_path(account: str) -> str:
    return f"published.wallet.{account}"


def _offer_round(status: dict[str, Any]) -> int | None:
    args = (status.get("invitationSpec") or {}).get("invitationArgs") or []
    try:
        return int(args[0]["roundId"])
    except (IndexError, KeyError, TypeError, ValueError):
        return None


class ConflictChecker:
    """Looks up recent price pushes in an account's wallet history.

    :ivar ledger: Ledger access.
    :ivar lookback: Number of history entries inspected.
    """

    def __init__(self, ledger: LedgerClient, lookback: int = HISTORY_LOOKBACK) -> None:
        self.ledger = ledger
        self.lookback = lookback

    async def recent_offers(self, account: str) -> list[dict[str, Any]]:
        """Return offer statuses from the account's latest history entries.

        :param account: Wallet account address.
        :returns: Offer status records, newest first.
        :raises LedgerQueryError: If the history cannot be read.
        """
        entries = await self.ledger.read_history(wallet_path(account), self.lookback)
        return [
            entry["status"]
            for entry in entries
            if isinstance(entry, dict)
            and entry.get("updated") == OFFER_STATUS_UPDATE
            and isinstance(entry.get("status"), dict)
        ]

    @staticmethod
    def is_push_for(status: dict[str, Any], feed_offer_id: int | str) -> bool:
        spec = status.get("invitationSpec") or {}
        return (
            spec.get("invitationMakerName") == PUSH_PRICE_INVITATION
            and str(spec.get("previousOffer")) == str(feed_offer_id)
        )

    async def has_submitted(
        self, account: str, feed_offer_id: int | str, round_id: int
    ) -> bool:
        """Check whether ``account`` has a successful push for ``round_id``.

        :param account: Wallet account address.
        :param feed_offer_id: Anchor offer id of the feed.
        :param round_id: Round to check.
        :returns: True if a successful push for the round was found.
        :raises LedgerQueryError: If the history cannot be read.
        """
        for status in await self.recent_offers(account):
            if not self.is_push_for(status, feed_offer_id):
                continue
            if "error" in status:
                continue

            offer_round = _offer_round(status)
            if offer_round is None:
                continue
            if offer_round == round_id:
                return True
            if offer_round < round_id:
                return False

        logger.debug(
            f"No push for round {round_id} of offer {feed_offer_id} in the last "
            f"{self.lookback} entries of {account}"
        )
        return False
