"""StateStore: Durable snapshot storage shared by every bridge component.

All reads and writes go through a store. Mutations use
:meth:`StateStore.transaction`, which holds the store lock for the whole
load-modify-save cycle so the heartbeat driver, the deviation driver and the
ingestion handler can never overwrite each other's changes.

.. code-block:: python

    >>> store = MemoryStateStore()
    >>> async with store.transaction() as snapshot:
    ...     snapshot.add_job("a1b2", "ATOM-USD")

Never await network I/O inside a transaction: the lock is shared by every
actor in the process.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from typing import AsyncIterator

from .Models import Snapshot

logger = logging.getLogger(__name__)


class StateStore(ABC):
    """Abstract snapshot store with serialized read-modify-write."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()

    @abstractmethod
    def load(self) -> Snapshot:
        """Load the latest snapshot, creating an empty one if none exists.

        :returns: A fresh Snapshot object owned by the caller.
        """
        pass

    @abstractmethod
    def save(self, snapshot: Snapshot) -> None:
        """Persist a snapshot synchronously.

        :param snapshot: Snapshot to persist.
        """
        pass

    async def read(self) -> Snapshot:
        """Load a consistent snapshot for read-only use.

        :returns: Snapshot copy; changes to it are never persisted.
        """
        async with self._lock:
            return self.load()

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[Snapshot]:
        """Load, yield for mutation, and save under the store lock.

        The snapshot is saved when the block exits normally (including an
        early ``return``) and discarded when it raises.
        """
        async with self._lock:
            snapshot = self.load()
            yield snapshot
            self.save(snapshot)

    async def initialise(self) -> Snapshot:
        """Load state at startup and restore the job/result pairing.

        :returns: The initialised snapshot.
        """
        async with self.transaction() as snapshot:
            repaired = snapshot.ensure_previous_results()
            for name in repaired:
                logger.warning(f"Initialised missing previous result for {name}")
        logger.info(f"State initialised with {len(snapshot.jobs)} jobs")
        return snapshot


class FileStateStore(StateStore):
    """JSON file store with atomic replace on every save.

    :ivar path: Path of the state file.
    """

    def __init__(self, path: str) -> None:
        """Initialize the file store.

        :param path: State file path; parent directories are created on save.
        """
        super().__init__()
        self.path = path

    def load(self) -> Snapshot:
        if not os.path.exists(self.path):
            logger.info(f"No state file at {self.path}, creating an empty one")
            snapshot = Snapshot()
            self.save(snapshot)
            return snapshot

        try:
            with open(self.path, "r") as f:
                return Snapshot.from_dict(json.load(f))
        except (json.JSONDecodeError, KeyError, TypeError, ValueError, OSError) as e:
            # Losing the file is preferable to refusing to start; make it loud.
            logger.error(
                f"State file {self.path} is unreadable ({e}); "
                "re-initialising an empty state"
            )
            snapshot = Snapshot()
            self.save(snapshot)
            return snapshot

    def save(self, snapshot: Snapshot) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)

        fd, tmp_path = tempfile.mkstemp(
            dir=directory, prefix=".state-", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w") as f:
                json.dump(snapshot.to_dict(), f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except BaseException:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class MemoryStateStore(StateStore):
    """In-process store; keeps a serialized copy to mimic persistence."""

    def __init__(self, snapshot: Snapshot | None = None) -> None:
        super().__init__()
        self._data = (snapshot or Snapshot()).to_dict()
        self.save_count = 0

    def load(self) -> Snapshot:
        return Snapshot.from_dict(json.loads(json.dumps(self._data)))

    def save(self, snapshot: Snapshot) -> None:
        self._data = json.loads(json.dumps(snapshot.to_dict()))
        self.save_count += 1
