"""Shared fixtures: an in-memory ledger and bridge components wired to it."""

import json
from typing import Any

import pytest

from feedbridge.src.Config import OfferAnchorMap
from feedbridge.src.ConflictChecker import ConflictChecker, wallet_path
from feedbridge.src.LedgerClient import LedgerClient, LedgerQueryError, TransactionResult
from feedbridge.src.Marshal import BigInt, BoardRemote, deserialize, make_stream_cell
from feedbridge.src.RoundObserver import RoundObserver, latest_round_path, price_feed_path
from feedbridge.src.StateStore import MemoryStateStore

ACCOUNT = "agoric1oracleoperator"
OTHER_ACCOUNT = "agoric1someoneelse"
ANCHORS = {"ATOM-USD": 1001, "BLD-USD": "1002"}


class FakeLedger(LedgerClient):
    """Ledger double holding stream cells and wallet histories in memory.

    Broadcasts are recorded; with ``confirm_pushes`` set, every broadcast
    push shows up in the signer's wallet history right away.
    """

    def __init__(self) -> None:
        self.cells: dict[str, str] = {}
        self.history: dict[str, list[Any]] = {}
        self.submissions: list[tuple[dict, str]] = []
        self.failing_paths: set[str] = set()
        self.confirm_pushes = True
        self.on_submit = None

    def set_price(self, job_name: str, price: float) -> None:
        quote = {
            "amountIn": {
                "brand": BoardRemote("board01", "Alleged: IN brand"),
                "value": BigInt(1_000_000),
            },
            "amountOut": {
                "brand": BoardRemote("board02", "Alleged: OUT brand"),
                "value": BigInt(int(round(price * 1_000_000))),
            },
        }
        self.cells[price_feed_path(job_name)] = make_stream_cell([quote])

    def set_round(self, job_name: str, round_id: int, started_by: str = OTHER_ACCOUNT) -> None:
        record = {
            "roundId": BigInt(round_id),
            "startedAt": {"absValue": BigInt(1700000000)},
            "startedBy": started_by,
        }
        self.cells[latest_round_path(job_name)] = make_stream_cell([record])

    def record_push(
        self, account: str, feed_offer_id: Any, round_id: int, error: str | None = None
    ) -> None:
        status = {
            "id": len(self.submissions) + 1,
            "invitationSpec": {
                "source": "continuing",
                "previousOffer": feed_offer_id,
                "invitationMakerName": "PushPrice",
                "invitationArgs": [{"unitPrice": 1, "roundId": round_id}],
            },
            "numWantsSatisfied": 1,
        }
        if error is not None:
            status["error"] = error
        entries = self.history.setdefault(wallet_path(account), [])
        entries.insert(0, {"updated": "offerStatus", "status": status})

    async def read_latest(self, path: str) -> str:
        if path in self.failing_paths:
            raise LedgerQueryError(f"Query {path} failed")
        return self.cells.get(path, "")

    async def read_history(self, path: str, limit: int) -> list[Any]:
        if path in self.failing_paths:
            raise LedgerQueryError(f"Query {path} failed")
        return list(self.history.get(path, []))[:limit]

    async def submit_transaction(self, payload: dict, signer: str) -> TransactionResult:
        self.submissions.append((payload, signer))
        if self.on_submit is not None:
            self.on_submit(payload, signer)
        if self.confirm_pushes:
            spec = deserialize(payload)["offer"]["invitationSpec"]
            self.record_push(
                signer, spec["previousOffer"], spec["invitationArgs"][0]["roundId"]
            )
        return TransactionResult(ok=True, tx_hash="A1B2C3", raw_log="[]")

    def pushed_rounds(self) -> list[int]:
        return [
            deserialize(payload)["offer"]["invitationSpec"]["invitationArgs"][0]["roundId"]
            for payload, _ in self.submissions
        ]


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture
def anchors(tmp_path) -> OfferAnchorMap:
    path = tmp_path / "offers.json"
    path.write_text(json.dumps(ANCHORS))
    return OfferAnchorMap(str(path))


@pytest.fixture
def store() -> MemoryStateStore:
    return MemoryStateStore()


@pytest.fixture
def checker(ledger) -> ConflictChecker:
    return ConflictChecker(ledger)


@pytest.fixture
def observer(ledger, checker, anchors) -> RoundObserver:
    return RoundObserver(ledger, checker, ACCOUNT, anchors)
