from __future__ import annotations

import json
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterator, List

import pandas as pd

from manifold_index.contracts.snapshot import IndexSnapshot
from manifold_index.exceptions.core import ChainConflictError


class InMemorySnapshotSink:
    """Keeps written snapshots keyed by timestamp; re-writes overwrite."""

    def __init__(self):
        self._lock = threading.Lock()
        self._records: Dict[int, IndexSnapshot] = {}

    def write(self, snapshot: IndexSnapshot) -> None:
        with self._lock:
            self._records[int(snapshot.timestamp)] = snapshot

    def get(self, timestamp: int) -> IndexSnapshot | None:
        return self._records.get(int(timestamp))

    def __len__(self) -> int:
        return len(self._records)

    def __iter__(self) -> Iterator[IndexSnapshot]:
        for ts in sorted(self._records):
            yield self._records[ts]


def _snapshot_path(root: Path, timestamp: int) -> Path:
    dt = datetime.fromtimestamp(int(timestamp) / 1000.0, tz=timezone.utc)
    return root / dt.strftime("%Y") / dt.strftime("%Y_%m_%d") / f"{int(timestamp)}.parquet"


class ParquetSnapshotSink:
    """
    Append-only parquet writer using one file per snapshot.

    Path layout:
        <root>/<YYYY>/<YYYY_MM_DD>/<timestamp>.parquet

    One row per constituent; snapshot-level fields are repeated on every row
    and the full record is kept as JSON in `record` for exact reloads.
    Existing files are never rewritten: writing the identical snapshot again
    is a no-op, writing a different one for the same timestamp raises
    ChainConflictError.
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def path_for(self, timestamp: int) -> Path:
        return _snapshot_path(self.root, timestamp)

    def write(self, snapshot: IndexSnapshot) -> None:
        path = self.path_for(snapshot.timestamp)
        record = json.dumps(snapshot.to_dict(), sort_keys=True)
        if path.exists():
            stored = pd.read_parquet(path, columns=["record"])["record"]
            if stored.empty or stored.iloc[0] != record:
                raise ChainConflictError(f"{path} already holds a different snapshot for {snapshot.timestamp}")
            return

        path.parent.mkdir(parents=True, exist_ok=True)
        rows = [
            {
                "timestamp": int(snapshot.timestamp),
                "value": float(snapshot.value),
                "previous_timestamp": snapshot.previous_timestamp,
                "position": i,
                "symbol": c.symbol,
                "weight": float(c.weight),
                "reference_price": float(c.reference_price),
                "record": record,
            }
            for i, c in enumerate(snapshot.constituents)
        ]
        df = pd.DataFrame(rows)

        tmp = path.with_suffix(path.suffix + ".tmp")
        df.to_parquet(tmp, index=False)
        os.replace(tmp, path)

    def read(self, timestamp: int) -> IndexSnapshot | None:
        path = self.path_for(timestamp)
        if not path.exists():
            return None
        df = pd.read_parquet(path)
        if df.empty:
            return None
        return IndexSnapshot.from_dict(json.loads(df["record"].iloc[0]))

    def read_all(self) -> List[IndexSnapshot]:
        out = []
        for fp in sorted(self.root.rglob("*.parquet"), key=lambda p: int(p.stem)):
            df = pd.read_parquet(fp)
            if not df.empty:
                out.append(IndexSnapshot.from_dict(json.loads(df["record"].iloc[0])))
        return out
