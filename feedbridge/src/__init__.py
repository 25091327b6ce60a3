"""
feedbridge - Executor to Ledger Price-Feed Bridge

This module bridges an off-chain job executor and an on-ledger price oracle:
- Models / StateStore: Persisted jobs, cached prices and rounds, atomic saves
- Marshal: Capdata encoding of ledger values
- LedgerClient: Storage reads and transaction broadcast
- ConflictChecker / RoundObserver: Per-round submission tracking
- ReconciliationScheduler: Heartbeat and round/deviation request drivers
- JobDispatcher: Executor run requests with bounded retry
- ResultHandler / PricePusher: Result ingestion and at-most-once pushes
- Api / Bridge: HTTP surface and the main orchestrator
"""

from .Bridge import Bridge
from .Config import BridgeConfig, ConfigError, ExecutorCredentials, OfferAnchorMap
from .Models import Job, PreviousResult, RequestReason, RoundSnapshot, Snapshot
from .StateStore import FileStateStore, MemoryStateStore, StateStore

__all__ = [
    "Bridge",
    "BridgeConfig",
    "ConfigError",
    "ExecutorCredentials",
    "FileStateStore",
    "Job",
    "MemoryStateStore",
    "OfferAnchorMap",
    "PreviousResult",
    "RequestReason",
    "RoundSnapshot",
    "Snapshot",
    "StateStore",
]
