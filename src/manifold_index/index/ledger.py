from __future__ import annotations

import threading
from typing import Iterable, Iterator, List

import pandas as pd

from manifold_index.contracts.snapshot import IndexSnapshot
from manifold_index.contracts.source import SnapshotSink
from manifold_index.exceptions.core import ChainConflictError
from manifold_index.utils.logger import get_logger, log_chain


class SnapshotLedger:
    """
    Append-only chain of committed snapshots, strictly increasing in time.

    Single writer: `commit` holds a lock while it checks the snapshot was
    chained from the current head, writes the sink and appends. Nothing is
    visible to later cycles until that has all succeeded.
    """

    _logger = get_logger(__name__)

    def __init__(self, sink: SnapshotSink | None = None, history: Iterable[IndexSnapshot] = ()):
        self._lock = threading.Lock()
        self._sink = sink
        self._snapshots: List[IndexSnapshot] = []
        for snap in history:
            self._check_extends(snap)
            self._snapshots.append(snap)

    @property
    def head(self) -> IndexSnapshot | None:
        with self._lock:
            return self._snapshots[-1] if self._snapshots else None

    def _check_extends(self, snapshot: IndexSnapshot) -> None:
        head = self._snapshots[-1] if self._snapshots else None
        base = snapshot.base
        if head is None:
            if base.timestamp is not None:
                raise ChainConflictError(
                    f"snapshot {snapshot.timestamp} chains from {base.timestamp} but the ledger is empty"
                )
            return
        if snapshot.timestamp <= head.timestamp:
            raise ChainConflictError(
                f"snapshot {snapshot.timestamp} is not after ledger head {head.timestamp}"
            )
        if base.timestamp != head.timestamp or base.value != head.value:
            raise ChainConflictError(
                f"snapshot {snapshot.timestamp} chains from {base.timestamp}, ledger head is {head.timestamp}"
            )

    def commit(self, snapshot: IndexSnapshot) -> IndexSnapshot:
        with self._lock:
            self._check_extends(snapshot)
            if self._sink is not None:
                self._sink.write(snapshot)
            self._snapshots.append(snapshot)
        log_chain(
            self._logger,
            "chain.committed",
            timestamp=snapshot.timestamp,
            value=snapshot.value,
            previous_timestamp=snapshot.base.timestamp,
            previous_value=snapshot.base.value,
            weighted_return=snapshot.weighted_return,
        )
        return snapshot

    def get(self, timestamp: int) -> IndexSnapshot | None:
        with self._lock:
            for snap in self._snapshots:
                if snap.timestamp == int(timestamp):
                    return snap
        return None

    def __len__(self) -> int:
        with self._lock:
            return len(self._snapshots)

    def __iter__(self) -> Iterator[IndexSnapshot]:
        with self._lock:
            snaps = list(self._snapshots)
        return iter(snaps)

    def values(self) -> pd.Series:
        """Index level series keyed by timestamp (epoch ms)."""
        snaps = list(self)
        return pd.Series(
            [s.value for s in snaps],
            index=pd.Index([s.timestamp for s in snaps], name="timestamp"),
            name="value",
            dtype=float,
        )
