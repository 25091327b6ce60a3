"""Unit tests for RoundObserver."""

import asyncio

import pytest

from feedbridge.src.Config import ConfigError
from feedbridge.src.LedgerClient import LedgerQueryError
from feedbridge.src.Marshal import BigInt, make_stream_cell
from feedbridge.src.RoundObserver import latest_round_path, price_feed_path

ACCOUNT = "agoric1oracleoperator"


def _quote(amount_out: int) -> dict:
    return {
        "amountIn": {"value": BigInt(1_000_000)},
        "amountOut": {"value": BigInt(amount_out)},
    }


class TestPaths:
    """Test storage path construction."""

    def test_paths(self) -> None:
        """Feed paths should follow the published layout."""
        assert price_feed_path("ATOM-USD") == "published.priceFeed.ATOM-USD_price_feed"
        assert latest_round_path("ATOM-USD") == (
            "published.priceFeed.ATOM-USD_price_feed.latestRound"
        )


class TestObservePrice:
    """Test best-effort price reads."""

    def test_price_from_quote(self, ledger, observer) -> None:
        """The price should be amountOut over amountIn."""
        ledger.set_price("ATOM-USD", 9.87)

        assert asyncio.run(observer.observe_price("ATOM-USD")) == pytest.approx(9.87)

    def test_missing_feed_returns_zero(self, observer) -> None:
        """An unpublished feed should read as zero."""
        assert asyncio.run(observer.observe_price("ATOM-USD")) == 0

    def test_query_failure_returns_zero(self, ledger, observer) -> None:
        """Transport failures should read as zero."""
        ledger.failing_paths.add(price_feed_path("ATOM-USD"))

        assert asyncio.run(observer.observe_price("ATOM-USD")) == 0

    def test_malformed_quote_returns_zero(self, ledger, observer) -> None:
        """A value without amounts should read as zero."""
        ledger.cells[price_feed_path("ATOM-USD")] = make_stream_cell([{"unexpected": 1}])

        assert asyncio.run(observer.observe_price("ATOM-USD")) == 0

    def test_latest_value_wins(self, ledger, observer) -> None:
        """With several values in a cell, the last one should be used."""
        ledger.cells[price_feed_path("ATOM-USD")] = make_stream_cell(
            [_quote(5_000_000), _quote(6_000_000)], block_height=9
        )

        assert asyncio.run(observer.observe_price("ATOM-USD")) == pytest.approx(6.0)


class TestObserveRound:
    """Test round reads."""

    def test_round_not_submitted(self, ledger, observer) -> None:
        """A fresh round should report no submission from this account."""
        ledger.set_round("ATOM-USD", 7, started_by="agoric1someoneelse")

        snapshot = asyncio.run(observer.observe_round("ATOM-USD"))

        assert snapshot.round_id == 7
        assert snapshot.started_by == "agoric1someoneelse"
        assert snapshot.submission_made is False

    def test_round_submitted(self, ledger, observer) -> None:
        """A round this account pushed to should be marked submitted."""
        ledger.set_round("ATOM-USD", 7)
        ledger.record_push(ACCOUNT, 1001, 7)

        assert asyncio.run(observer.observe_round("ATOM-USD")).submission_made is True

    def test_string_anchor_is_used(self, ledger, observer) -> None:
        """Digit-string anchors from the offers file should match numeric ids."""
        ledger.set_round("BLD-USD", 2)
        ledger.record_push(ACCOUNT, 1002, 2)

        assert asyncio.run(observer.observe_round("BLD-USD")).submission_made is True

    def test_round_failure_propagates(self, ledger, observer) -> None:
        """Round read failures should not be swallowed."""
        ledger.failing_paths.add(latest_round_path("ATOM-USD"))

        with pytest.raises(LedgerQueryError):
            asyncio.run(observer.observe_round("ATOM-USD"))

    def test_unknown_anchor(self, ledger, observer) -> None:
        """A job without an anchor offer should fail loudly."""
        ledger.set_round("OSMO-USD", 1)

        with pytest.raises(ConfigError, match="OSMO-USD"):
            asyncio.run(observer.observe_round("OSMO-USD"))
