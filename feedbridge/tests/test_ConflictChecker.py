"""Unit tests for ConflictChecker."""

import asyncio

import pytest

from feedbridge.src.ConflictChecker import ConflictChecker, wallet_path
from feedbridge.src.LedgerClient import LedgerQueryError

ACCOUNT = "agoric1oracleoperator"
ANCHOR = 1001


class TestHasSubmitted:
    """Test the newest-first history walk."""

    def test_exact_round_found(self, ledger, checker) -> None:
        """A successful push for the round should count as submitted."""
        ledger.record_push(ACCOUNT, ANCHOR, 3)
        ledger.record_push(ACCOUNT, ANCHOR, 5)

        assert asyncio.run(checker.has_submitted(ACCOUNT, ANCHOR, 5)) is True

    def test_older_round_short_circuits(self, ledger, checker) -> None:
        """A push to an older round should end the search."""
        ledger.record_push(ACCOUNT, ANCHOR, 3)
        ledger.record_push(ACCOUNT, ANCHOR, 5)

        assert asyncio.run(checker.has_submitted(ACCOUNT, ANCHOR, 4)) is False

    def test_failed_push_is_ignored(self, ledger, checker) -> None:
        """Entries carrying an error should not count."""
        ledger.record_push(ACCOUNT, ANCHOR, 6, error="Error: round closed")

        assert asyncio.run(checker.has_submitted(ACCOUNT, ANCHOR, 6)) is False

    def test_error_does_not_short_circuit(self, ledger, checker) -> None:
        """A failed newer push should not hide a successful one behind it."""
        ledger.record_push(ACCOUNT, ANCHOR, 6)
        ledger.record_push(ACCOUNT, ANCHOR, 6, error="Error: duplicate")

        assert asyncio.run(checker.has_submitted(ACCOUNT, ANCHOR, 6)) is True

    def test_other_feed_is_ignored(self, ledger, checker) -> None:
        """Pushes continuing another anchor offer should be skipped."""
        ledger.record_push(ACCOUNT, 2002, 5)
        ledger.record_push(ACCOUNT, ANCHOR, 4)

        assert asyncio.run(checker.has_submitted(ACCOUNT, ANCHOR, 5)) is False
        assert asyncio.run(checker.has_submitted(ACCOUNT, 2002, 5)) is True

    def test_anchor_compared_as_string(self, ledger, checker) -> None:
        """Numeric and string anchor ids should match each other."""
        ledger.record_push(ACCOUNT, "1001", 2)

        assert asyncio.run(checker.has_submitted(ACCOUNT, 1001, 2)) is True

    def test_non_offer_updates_are_skipped(self, ledger, checker) -> None:
        """Balance and other wallet updates should be ignored."""
        ledger.record_push(ACCOUNT, ANCHOR, 5)
        ledger.history[wallet_path(ACCOUNT)].insert(
            0, {"updated": "balance", "currentAmount": {"value": 10}}
        )

        assert asyncio.run(checker.has_submitted(ACCOUNT, ANCHOR, 5)) is True

    def test_outside_lookback(self, ledger) -> None:
        """A push older than the lookback window should not be found."""
        checker = ConflictChecker(ledger, lookback=2)
        ledger.record_push(ACCOUNT, ANCHOR, 5)
        ledger.record_push(ACCOUNT, 2002, 1)
        ledger.record_push(ACCOUNT, 2002, 2)

        assert asyncio.run(checker.has_submitted(ACCOUNT, ANCHOR, 5)) is False

    def test_empty_history(self, checker) -> None:
        """An account with no history has submitted nothing."""
        assert asyncio.run(checker.has_submitted(ACCOUNT, ANCHOR, 1)) is False

    def test_query_failure_propagates(self, ledger, checker) -> None:
        """History read failures should surface to the caller."""
        ledger.failing_paths.add(wallet_path(ACCOUNT))

        with pytest.raises(LedgerQueryError):
            asyncio.run(checker.has_submitted(ACCOUNT, ANCHOR, 1))
