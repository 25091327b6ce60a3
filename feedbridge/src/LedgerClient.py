"""LedgerClient: Abstract ledger access plus the RPC/CLI implementation.

The bridge only needs three things from the ledger: the latest value at a
storage path, a bounded newest-first history of a path, and a way to submit
a signed wallet action.
"""

from __future__ import annotations

import asyncio
import base64
import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

import httpx

from .Marshal import MarshalError, deserialize, parse_stream_cell

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Base exception for ledger access errors."""

    pass


class LedgerQueryError(LedgerError):
    """Raised when a storage query fails or returns a non-zero code.

    :ivar code: ABCI response code when the node answered, None for
        transport or decoding failures.
    :ivar log: Node log text accompanying ``code``.
    """

    def __init__(self, message: str, code: int | None = None, log: str = "") -> None:
        self.code = code
        self.log = log
        super().__init__(message)


class LedgerSubmitError(LedgerError):
    """Raised when a transaction could not be broadcast."""

    pass


@dataclass
class TransactionResult:
    """Outcome of a broadcast.

    :ivar ok: True if the node accepted the transaction.
    :ivar tx_hash: Transaction hash, if reported.
    :ivar raw_log: Node log output.
    """

    ok: bool
    tx_hash: str | None = None
    raw_log: str = ""


class LedgerClient(ABC):
    """Abstract base class for ledger access."""

    @abstractmethod
    async def read_latest(self, path: str) -> str:
        """Read the latest raw storage value at a path.

        :param path: Dotted storage path, e.g. "published.priceFeed.ATOM-USD_price_feed".
        :returns: Raw storage value text.
        :raises LedgerQueryError: On transport or query failure.
        """
        pass

    @abstractmethod
    async def read_history(self, path: str, limit: int) -> list[Any]:
        """Read up to ``limit`` decoded values published at a path.

        :param path: Dotted storage path.
        :param limit: Maximum number of values to return.
        :returns: Decoded values, newest first.
        :raises LedgerQueryError: On transport or query failure.
        """
        pass

    @abstractmethod
    async def submit_transaction(
        self, payload: dict[str, Any], signer: str
    ) -> TransactionResult:
        """Broadcast a wallet action signed by ``signer``.

        :param payload: Serialized (capdata) wallet action.
        :param signer: Account or key name that signs.
        :returns: Broadcast result.
        :raises LedgerSubmitError: If the broadcast could not be made.
        """
        pass

    async def close(self) -> None:
        """Release any held connections."""
        pass


class LedgerClientRpc(LedgerClient):
    """Ledger access through a node's RPC endpoint and the chain CLI.

    Storage is read with ``abci_query`` on ``/custom/vstorage/data/<path>``.
    History walks back one stream cell at a time by querying at the height
    just below each cell's block height. Transactions are broadcast by
    spawning ``<cli> tx swingset wallet-action``.

    :ivar rpc_url: Node RPC URL.
    :ivar chain_id: Chain id passed to the CLI.
    :ivar cli_binary: Chain CLI executable.
    :ivar timeout: Per-query timeout in seconds.
    :ivar submit_timeout: Broadcast timeout in seconds.
    """

    DEFAULT_TIMEOUT = 10.0
    DEFAULT_SUBMIT_TIMEOUT = 60.0

    def __init__(
        self,
        rpc_url: str,
        chain_id: str,
        cli_binary: str = "agd",
        timeout: float = DEFAULT_TIMEOUT,
        submit_timeout: float = DEFAULT_SUBMIT_TIMEOUT,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        """Initialize the RPC client.

        :param rpc_url: Node RPC URL (e.g. "http://0.0.0.0:26657").
        :param chain_id: Chain id for transactions.
        :param cli_binary: Chain CLI executable (default: "agd").
        :param timeout: Query timeout in seconds (default: 10).
        :param submit_timeout: Broadcast timeout in seconds (default: 60).
        :param client: Optional preconfigured httpx client.
        """
        self.rpc_url = rpc_url.rstrip("/")
        self.chain_id = chain_id
        self.cli_binary = cli_binary
        self.timeout = timeout
        self.submit_timeout = submit_timeout
        self._client = client

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout, connect=5.0),
                limits=httpx.Limits(max_connections=20, max_keepalive_connections=10),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def _query(self, path: str, height: int | None = None) -> str:
        params = {
            "path": f'"/custom/vstorage/data/{path}"',
            "height": str(height or 0),
        }
        try:
            response = await self._get_client().get(
                f"{self.rpc_url}/abci_query", params=params
            )
            response.raise_for_status()
            result = response.json()["result"]["response"]
        except httpx.TimeoutException as e:
            raise LedgerQueryError(f"Query {path} timed out: {e}") from e
        except httpx.HTTPError as e:
            raise LedgerQueryError(f"Query {path} failed: {e}") from e
        except (KeyError, TypeError, ValueError) as e:
            raise LedgerQueryError(f"Unexpected response for {path}: {e}") from e

        code = result.get("code", 0)
        if code != 0:
            log = str(result.get("log", ""))
            raise LedgerQueryError(
                f"Query {path} returned code {code}: {log}", code=code, log=log
            )

        value = result.get("value")
        if not value:
            return ""
        return base64.b64decode(value).decode("utf-8")

    async def read_latest(self, path: str) -> str:
        return await self._query(path)

    async def read_at(self, path: str, height: int | None = None) -> tuple[int, list[dict]]:
        """Read the stream cell visible at a block height.

        :param path: Dotted storage path.
        :param height: Block height, None for the latest.
        :returns: Tuple of (cell block height, capdata list oldest first).
        """
        text = await self._query(path, height)
        if not text:
            return 0, []
        try:
            return parse_stream_cell(text)
        except MarshalError as e:
            raise LedgerQueryError(f"Cannot parse value at {path}: {e}") from e

    async def read_history(self, path: str, limit: int) -> list[Any]:
        history: list[Any] = []
        height: int | None = None

        while len(history) < limit:
            try:
                block_height, capdatas = await self.read_at(path, height)
            except LedgerQueryError as e:
                # A node refusing an older height has pruned it; stop there.
                if height is not None and e.code is not None:
                    logger.debug(f"History for {path} ends at height {height}: {e}")
                    break
                raise

            for capdata in reversed(capdatas):
                try:
                    history.append(deserialize(capdata))
                except MarshalError as e:
                    raise LedgerQueryError(f"Cannot decode value at {path}: {e}") from e
                if len(history) >= limit:
                    break

            if block_height <= 1 or not capdatas:
                break
            height = block_height - 1

        return history

    async def submit_transaction(
        self, payload: dict[str, Any], signer: str
    ) -> TransactionResult:
        args = [
            self.cli_binary,
            "tx",
            "swingset",
            "wallet-action",
            "--allow-spend",
            json.dumps(payload),
            "--from",
            signer,
            "--keyring-backend",
            "test",
            "--node",
            self.rpc_url,
            "--chain-id",
            self.chain_id,
            "--output",
            "json",
            "--yes",
        ]
        logger.debug(f"Broadcasting wallet action from {signer}")

        try:
            process = await asyncio.create_subprocess_exec(
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise LedgerSubmitError(f"Cannot run {self.cli_binary}: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(
                process.communicate(), timeout=self.submit_timeout
            )
        except asyncio.TimeoutError as e:
            process.kill()
            await process.wait()
            raise LedgerSubmitError(
                f"Broadcast timed out after {self.submit_timeout}s"
            ) from e

        if process.returncode != 0:
            raise LedgerSubmitError(
                f"{self.cli_binary} exited with {process.returncode}: "
                f"{stderr.decode(errors='replace').strip()}"
            )

        output = stdout.decode(errors="replace").strip()
        try:
            reply = json.loads(output)
        except json.JSONDecodeError:
            return TransactionResult(ok=True, raw_log=output)

        code = int(reply.get("code") or 0)
        return TransactionResult(
            ok=code == 0,
            tx_hash=reply.get("txhash"),
            raw_log=str(reply.get("raw_log", "")),
        )
