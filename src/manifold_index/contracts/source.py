from __future__ import annotations

from typing import AbstractSet, Protocol, Sequence, runtime_checkable

from manifold_index.contracts.observation import Observation
from manifold_index.contracts.snapshot import IndexSnapshot


@runtime_checkable
class ObservationSource(Protocol):
    """
    Historical market data capability consumed by the engine.

    Returns every observation of `symbols` with start_ts <= timestamp <= end_ts
    (epoch ms). May return an empty or partial sequence; missing history is
    handled per symbol by the feature stage. Transient failures should raise
    DataSourceConnectionError (or a builtin ConnectionError).
    """

    def fetch_observations(self, symbols: AbstractSet[str], start_ts: int, end_ts: int) -> Sequence[Observation]:
        ...


@runtime_checkable
class SnapshotSink(Protocol):
    """Accepts committed snapshots, keyed by timestamp."""

    def write(self, snapshot: IndexSnapshot) -> None:
        ...
