from __future__ import annotations

import numbers
from datetime import datetime, timezone
from pathlib import Path
from typing import AbstractSet, Any, List, Sequence

import pandas as pd

from manifold_index.contracts.observation import Observation
from manifold_index.exceptions.core import DataSourceConnectionError
from manifold_index.utils.logger import get_logger, log_debug

"""
Frame columns expected by both sources:
    - symbol      : str
    - timestamp   : epoch ms int / seconds / datetime / str
    - price       : float
    - market_cap  : float
    - volume      : float
"""

OBSERVATION_COLUMNS = ["symbol", "timestamp", "price", "market_cap", "volume"]


def coerce_ts(x: Any) -> int:
    """Return unix epoch milliseconds as int. Accepts seconds/ms, datetime, pandas Timestamp, str."""
    if x is None:
        raise ValueError("timestamp is None")

    if isinstance(x, bool):
        raise ValueError("invalid timestamp type: bool")

    if isinstance(x, numbers.Real):
        v = float(x)
        # heuristic: seconds ~1e9, ms ~1e12
        if v < 10_000_000_000:
            return int(round(v * 1000.0))
        return int(round(v))

    if isinstance(x, datetime):
        dt = x if x.tzinfo else x.replace(tzinfo=timezone.utc)
        return int(round(dt.timestamp() * 1000.0))

    ts = pd.Timestamp(pd.to_datetime(x, utc=True, errors="raise"))
    return int(round(ts.to_pydatetime().timestamp() * 1000.0))


def _frame_to_observations(df: pd.DataFrame) -> List[Observation]:
    # Invalid values pass through untouched; the feature stage validates.
    out: List[Observation] = []
    for rec in df.to_dict(orient="records"):
        out.append(
            Observation(
                symbol=str(rec["symbol"]),
                price=float(rec["price"]),
                market_cap=float(rec["market_cap"]),
                volume=float(rec["volume"]),
                timestamp=int(rec["timestamp"]),
            )
        )
    return out


def _normalize_frame(df: pd.DataFrame) -> pd.DataFrame:
    missing = [c for c in OBSERVATION_COLUMNS if c not in df.columns]
    if missing:
        raise ValueError(f"observation frame missing columns: {missing}")
    out = df[OBSERVATION_COLUMNS].copy()
    out["timestamp"] = out["timestamp"].map(coerce_ts).astype("int64")
    out["symbol"] = out["symbol"].astype(str)
    return out.sort_values(["symbol", "timestamp"], kind="mergesort").reset_index(drop=True)


class FrameObservationSource:
    """
    In-memory source over a pandas DataFrame.

    Used for research, backfills and tests. The frame is copied and
    normalised once; fetches never mutate it.
    """

    _logger = get_logger(__name__)

    def __init__(self, frame: pd.DataFrame):
        self._frame = _normalize_frame(frame)

    @classmethod
    def from_observations(cls, observations: Sequence[Observation]) -> "FrameObservationSource":
        frame = pd.DataFrame([o.to_dict() for o in observations], columns=OBSERVATION_COLUMNS)
        return cls(frame)

    @property
    def symbols(self) -> tuple[str, ...]:
        return tuple(sorted(self._frame["symbol"].unique()))

    def fetch_observations(self, symbols: AbstractSet[str], start_ts: int, end_ts: int) -> List[Observation]:
        df = self._frame
        mask = (
            df["symbol"].isin(list(symbols))
            & (df["timestamp"] >= int(start_ts))
            & (df["timestamp"] <= int(end_ts))
        )
        selected = df.loc[mask]
        log_debug(self._logger, "source.frame.fetch", symbols=len(symbols), rows=len(selected))
        return _frame_to_observations(selected)


class ParquetObservationSource:
    """
    Observation source backed by local parquet files.

    Layout:
        root/
          └── <symbol>/
              ├── 2023.parquet
              ├── 2024.parquet
              └── ...

    Files need `timestamp, price, market_cap, volume`; `symbol` defaults to
    the directory name.
    """

    _logger = get_logger(__name__)

    def __init__(self, *, root: str | Path):
        self._root = Path(root)
        if not self._root.exists():
            raise FileNotFoundError(f"Observation root does not exist: {self._root}")

    def _read_symbol(self, symbol: str) -> pd.DataFrame:
        path = self._root / symbol
        files = sorted(path.glob("*.parquet")) if path.exists() else []
        if not files:
            return pd.DataFrame(columns=OBSERVATION_COLUMNS)
        frames = []
        for fp in files:
            try:
                df = pd.read_parquet(fp)
            except OSError as e:
                raise DataSourceConnectionError(f"Failed reading {fp}: {e}") from e
            if "symbol" not in df.columns:
                df["symbol"] = symbol
            frames.append(df)
        return pd.concat(frames, ignore_index=True)

    def fetch_observations(self, symbols: AbstractSet[str], start_ts: int, end_ts: int) -> List[Observation]:
        frames = [self._read_symbol(s) for s in sorted(symbols)]
        frames = [f for f in frames if not f.empty]
        if not frames:
            return []
        df = _normalize_frame(pd.concat(frames, ignore_index=True))
        df = df[(df["timestamp"] >= int(start_ts)) & (df["timestamp"] <= int(end_ts))]
        log_debug(self._logger, "source.parquet.fetch", root=self._root, symbols=len(symbols), rows=len(df))
        return _frame_to_observations(df)
