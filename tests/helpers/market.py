from __future__ import annotations

import threading
import time
from typing import AbstractSet, Any, Sequence

import numpy as np
import pandas as pd

from manifold_index.contracts.observation import Observation
from manifold_index.data.sources import FrameObservationSource
from manifold_index.utils.config import IndexConfig

DAY_MS = 86_400_000
T0 = 1_704_067_200_000  # 2024-01-01T00:00:00Z

SYMBOLS = ["BTCUSDT", "ETHUSDT", "SOLUSDT", "BNBUSDT", "XRPUSDT", "ADAUSDT", "DOGEUSDT", "AVAXUSDT", "LINKUSDT", "DOTUSDT"]


def synthetic_frame(
    symbols: Sequence[str],
    days: int,
    *,
    seed: int = 7,
    start_ts: int = T0,
    flat: bool = False,
) -> pd.DataFrame:
    """
    Daily observations. Each asset gets its own drift, volatility, supply and
    turnover so no feature column is constant. `flat=True` freezes prices and
    volumes (zero volatility everywhere).
    """
    rng = np.random.default_rng(seed)
    n = len(symbols)
    market = rng.normal(0.0, 0.02, size=days)
    rows: list[dict[str, Any]] = []
    for i, symbol in enumerate(symbols):
        sigma = 0.01 + 0.008 * i
        beta = 0.3 + 0.15 * i
        drift = 0.0005 * (i - n / 2)
        supply = 1_000_000.0 * (n - i)
        turnover = 0.02 + 0.01 * ((i * 7) % n)
        price = 10.0 * (i + 1)
        for d in range(days):
            if not flat and d > 0:
                price *= float(np.exp(drift + beta * market[d] + rng.normal(0.0, sigma)))
            cap = price * supply
            volume = cap * turnover * (1.0 if flat else float(1.0 + 0.2 * rng.random()))
            rows.append(
                {
                    "symbol": symbol,
                    "timestamp": start_ts + d * DAY_MS,
                    "price": price,
                    "market_cap": cap,
                    "volume": volume,
                }
            )
    return pd.DataFrame(rows)


def make_config(symbols: Sequence[str] = SYMBOLS, **overrides: Any) -> IndexConfig:
    data: dict[str, Any] = {
        "universe": list(symbols),
        "lookbackPeriod": 30,
        "constituentCount": 5,
        "updateFrequency": 7,
        "weightingMethod": "marketCap",
        "manifoldDimension": 2,
        "minObservations": 20,
        "baseIndexValue": 1000.0,
    }
    data.update(overrides)
    return IndexConfig.from_dict(data)


def observations_for(symbol: str, caps: Sequence[float], *, price: float = 1.0, volume: float = 1.0) -> list[Observation]:
    return [
        Observation(symbol=symbol, price=price, market_cap=float(c), volume=volume, timestamp=T0 + i * DAY_MS)
        for i, c in enumerate(caps)
    ]


class SlowSource:
    """Delegates after sleeping; used to trip the fetch timeout."""

    def __init__(self, inner: FrameObservationSource, delay: float):
        self.inner = inner
        self.delay = delay

    def fetch_observations(self, symbols: AbstractSet[str], start_ts: int, end_ts: int):
        time.sleep(self.delay)
        return self.inner.fetch_observations(symbols, start_ts, end_ts)


class FailingSource:
    def __init__(self, exc: BaseException | None = None):
        self.exc = exc or ConnectionError("exchange unreachable")

    def fetch_observations(self, symbols: AbstractSet[str], start_ts: int, end_ts: int):
        raise self.exc


class RecordingSource:
    """Thread-safe call recorder around another source."""

    def __init__(self, inner: FrameObservationSource):
        self.inner = inner
        self.calls: list[tuple[frozenset, int, int]] = []
        self._lock = threading.Lock()

    def fetch_observations(self, symbols: AbstractSet[str], start_ts: int, end_ts: int):
        with self._lock:
            self.calls.append((frozenset(symbols), int(start_ts), int(end_ts)))
        return self.inner.fetch_observations(symbols, start_ts, end_ts)
