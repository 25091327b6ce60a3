"""Bridge: Main orchestrator tying the executor and the ledger together.

Architecture:
    - One shared StateStore (atomic JSON file) for every actor
    - ReconciliationScheduler drives heartbeat and round/deviation requests
    - The executor computes a price and posts it back to the HTTP surface
    - ResultHandler decides whether to push, PricePusher submits the price
    - RoundObserver and ConflictChecker read the ledger for both sides

Shutdown (SIGINT/SIGTERM stop the HTTP server) cancels both drivers and
any in-flight executor requests, then closes outbound clients. The last
completed save of the state file stays authoritative.
"""

from __future__ import annotations

import asyncio
import logging

import uvicorn

from .Api import create_app
from .Config import BridgeConfig, ExecutorCredentials, OfferAnchorMap
from .ConflictChecker import ConflictChecker
from .JobDispatcher import JobDispatcher
from .LedgerClient import LedgerClient, LedgerClientRpc
from .PricePusher import PricePusher
from .ReconciliationScheduler import ReconciliationScheduler
from .ResultHandler import ResultHandler
from .RetryPolicy import RetryPolicy
from .RoundObserver import RoundObserver
from .StateStore import FileStateStore, StateStore

logger = logging.getLogger(__name__)


class Bridge:
    """Wires and runs every bridge component.

    :ivar config: Bridge settings.
    :ivar store: Shared state store.
    :ivar ledger: Ledger access.
    :ivar scheduler: Request drivers.
    :ivar handler: Result ingestion and job registration.
    :ivar app: FastAPI application.
    """

    def __init__(
        self,
        config: BridgeConfig,
        credentials: ExecutorCredentials,
        ledger: LedgerClient | None = None,
        store: StateStore | None = None,
        dispatcher: JobDispatcher | None = None,
    ) -> None:
        """Initialize the bridge.

        :param config: Validated bridge settings.
        :param credentials: Executor credentials.
        :param ledger: Ledger access (default: RPC + CLI client from config).
        :param store: State store (default: file store at ``config.state_file``).
        :param dispatcher: Executor client (default: built from config).
        """
        self.config = config
        retry_policy = RetryPolicy(max_attempts=config.submit_retries)

        self.store = store or FileStateStore(config.state_file)
        self.ledger = ledger or LedgerClientRpc(
            config.ledger_rpc, config.chain_id, cli_binary=config.cli_binary
        )
        self.anchors = OfferAnchorMap(config.offers_file)

        self.checker = ConflictChecker(self.ledger)
        self.observer = RoundObserver(
            self.ledger, self.checker, config.account, self.anchors
        )
        self.dispatcher = dispatcher or JobDispatcher(
            config.executor_url, credentials, retry_policy=retry_policy
        )
        self.pusher = PricePusher(
            self.ledger,
            self.checker,
            self.observer,
            self.anchors,
            retry_policy=retry_policy,
            settlement_delay=config.settlement_delay,
        )
        self.scheduler = ReconciliationScheduler(
            self.store,
            self.observer,
            self.dispatcher,
            poll_interval=config.poll_interval,
            price_query_interval=config.price_query_interval,
            deviation_threshold=config.deviation_threshold,
            align_start=config.align_start,
            job_timeout=config.job_timeout,
        )
        self.handler = ResultHandler(
            self.store,
            self.pusher,
            config.account,
            decimal_places=config.decimal_places,
            deviation_threshold=config.deviation_threshold,
        )
        self.app = create_app(self.handler, self.store)
        self._server: uvicorn.Server | None = None

    def request_shutdown(self) -> None:
        """Ask the HTTP server to stop; :meth:`run` then winds everything down."""
        if self._server is not None:
            self._server.should_exit = True

    async def run(self) -> None:
        """Run until the HTTP server stops or a driver fails."""
        await self.store.initialise()

        self._server = uvicorn.Server(
            uvicorn.Config(
                self.app,
                host=self.config.host,
                port=self.config.port,
                log_level="info",
                lifespan="off",
            )
        )
        logger.info(f"External adapter listening on port {self.config.port}")

        server_task = asyncio.create_task(self._server.serve(), name="http")
        scheduler_task = asyncio.create_task(self.scheduler.run(), name="scheduler")
        try:
            done, _ = await asyncio.wait(
                {server_task, scheduler_task}, return_when=asyncio.FIRST_COMPLETED
            )
            for task in done:
                if not task.cancelled() and task.exception() is not None:
                    raise task.exception()
        finally:
            await self.shutdown(server_task, scheduler_task)

    async def shutdown(self, server_task: asyncio.Task, scheduler_task: asyncio.Task) -> None:
        logger.info("Shutting down bridge")
        scheduler_task.cancel()
        await asyncio.gather(scheduler_task, return_exceptions=True)
        await self.scheduler.stop()

        if self._server is None:
            server_task.cancel()
        else:
            self.request_shutdown()
        await asyncio.gather(server_task, return_exceptions=True)

        await self.dispatcher.close()
        await self.ledger.close()
        logger.info("Bridge stopped")
