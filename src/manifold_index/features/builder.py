from __future__ import annotations

import math
from collections import defaultdict
from concurrent.futures import Executor
from typing import Any, Dict, Iterable, List, Mapping, Sequence

import numpy as np
import pandas as pd

from manifold_index.contracts.features import FEATURE_COLUMNS, FeatureBuildResult, FeatureMatrix
from manifold_index.contracts.observation import Observation
from manifold_index.contracts.snapshot import Annotation
from manifold_index.exceptions.core import InsufficientData, ValidationError
from manifold_index.utils.logger import get_logger, log_data_integrity, log_debug
from manifold_index.utils.timer import window_bounds

STAGE = "features"


def _history_by_symbol(observations: Iterable[Observation]) -> Dict[str, List[Observation]]:
    grouped: Dict[str, List[Observation]] = defaultdict(list)
    for obs in observations:
        grouped[obs.symbol].append(obs)
    return grouped


def _dedupe_sorted(obs: Sequence[Observation]) -> tuple[Observation, ...]:
    """Sort by timestamp; on duplicate timestamps the last delivered point wins."""
    by_ts: Dict[int, Observation] = {}
    for o in obs:
        by_ts[int(o.timestamp)] = o
    return tuple(by_ts[ts] for ts in sorted(by_ts))


def _log_returns(history: Sequence[Observation]) -> pd.Series:
    prices = pd.Series(
        [float(o.price) for o in history],
        index=pd.Index([int(o.timestamp) for o in history], name="timestamp"),
        dtype=float,
    )
    return np.log(prices).diff().dropna()


def _correlation(a: pd.Series, b: pd.Series) -> float:
    joined = pd.concat([a, b], axis=1, join="inner").dropna()
    if len(joined) < 2:
        return 0.0
    x = joined.iloc[:, 0].to_numpy(dtype=float)
    y = joined.iloc[:, 1].to_numpy(dtype=float)
    if np.std(x) == 0.0 or np.std(y) == 0.0:
        return 0.0
    corr = float(np.corrcoef(x, y)[0, 1])
    return corr if math.isfinite(corr) else 0.0


class FeatureBuilder:
    """
    Raw observations -> FeatureMatrix for one lookback window.

    Pure: no state survives a call. Per-symbol statistics may fan out over an
    executor; results are merged by symbol key so completion order is
    irrelevant.
    """

    _logger = get_logger(__name__)

    def __init__(
        self,
        *,
        min_observations: int,
        periods_per_year: int = 365,
        executor: Executor | None = None,
    ):
        if min_observations <= 0:
            raise ValueError("min_observations must be positive")
        self.min_observations = int(min_observations)
        self.periods_per_year = int(periods_per_year)
        self.executor = executor

    @classmethod
    def from_config(cls, cfg: Any, executor: Executor | None = None) -> "FeatureBuilder":
        return cls(
            min_observations=cfg.min_observations,
            periods_per_year=cfg.periods_per_year,
            executor=executor,
        )

    # ------------------------------------------------------------------
    # Validation / windowing
    # ------------------------------------------------------------------

    def _clean(
        self,
        observations: Iterable[Observation],
        start_ts: int,
        end_ts: int,
        issues: List[Annotation],
    ) -> Dict[str, tuple[Observation, ...]]:
        kept: List[Observation] = []
        for obs in observations:
            try:
                obs.validate()
            except ValidationError as e:
                log_data_integrity(
                    self._logger,
                    "features.observation_dropped",
                    symbol=getattr(obs, "symbol", None),
                    data_ts=getattr(obs, "timestamp", None),
                    reason=str(e),
                )
                issues.append(Annotation.from_exception(e, stage=STAGE, symbol=getattr(obs, "symbol", None) or None))
                continue
            if not (start_ts <= int(obs.timestamp) <= end_ts):
                continue
            kept.append(obs)
        return {s: _dedupe_sorted(obs) for s, obs in _history_by_symbol(kept).items()}

    # ------------------------------------------------------------------
    # Per-symbol statistics
    # ------------------------------------------------------------------

    def _symbol_stats(
        self, item: tuple[str, tuple[Observation, ...]]
    ) -> tuple[str, Dict[str, Any] | InsufficientData | ValidationError]:
        symbol, history = item
        if len(history) < self.min_observations:
            return symbol, InsufficientData(symbol, len(history), self.min_observations)

        returns = _log_returns(history)
        if len(returns) < 2:
            return symbol, InsufficientData(symbol, len(returns), 2, reason="too few returns")

        vol = float(returns.std(ddof=1) * math.sqrt(self.periods_per_year))
        mean_cap = float(np.mean([o.market_cap for o in history]))
        mean_volume = float(np.mean([o.volume for o in history]))

        stats: Dict[str, Any] = {
            "volatility": vol,
            "liquidity": mean_volume / mean_cap if mean_cap > 0 else 0.0,
            "inverse_volatility": 1.0 / vol if vol > 0 else 0.0,
            "mean_return": float(returns.mean()),
        }
        # e.g. a subnormal market cap overflows the liquidity ratio
        overflowed = sorted(k for k, v in stats.items() if not math.isfinite(v))
        if overflowed:
            return symbol, ValidationError(f"{symbol}: non-finite {', '.join(overflowed)}")
        stats["returns"] = returns
        return symbol, stats

    def _compute_all(self, histories: Mapping[str, tuple[Observation, ...]]):
        items = sorted(histories.items())
        if self.executor is not None:
            return dict(self.executor.map(self._symbol_stats, items))
        return dict(map(self._symbol_stats, items))

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def build(
        self,
        observations: Iterable[Observation],
        timestamp: int,
        lookback_days: int,
        *,
        symbols: Iterable[str] | None = None,
    ) -> FeatureBuildResult:
        """
        Build the feature matrix over [timestamp - lookback_days, timestamp].

        `symbols` names the requested universe; requested symbols with no
        observations at all are reported as InsufficientData.
        """
        start_ts, end_ts = window_bounds(timestamp, lookback_days)
        issues: List[Annotation] = []

        histories = self._clean(observations, start_ts, end_ts, issues)
        if symbols is not None:
            for s in sorted(set(symbols) - set(histories)):
                histories[s] = ()

        stats = self._compute_all(histories)

        rows: Dict[str, Dict[str, Any]] = {}
        for symbol in sorted(stats):
            result = stats[symbol]
            if isinstance(result, InsufficientData):
                log_data_integrity(
                    self._logger,
                    "features.insufficient_data",
                    symbol=symbol,
                    count=result.count,
                    required=result.required,
                    reason=result.reason,
                )
                issues.append(Annotation.from_exception(result, stage=STAGE))
                continue
            if isinstance(result, ValidationError):
                log_data_integrity(self._logger, "features.non_finite", symbol=symbol, reason=str(result))
                issues.append(Annotation.from_exception(result, stage=STAGE, symbol=symbol))
                continue
            rows[symbol] = result

        if rows:
            market = pd.concat({s: r["returns"] for s, r in rows.items()}, axis=1).mean(axis=1, skipna=True)
            for r in rows.values():
                r["market_correlation"] = _correlation(r["returns"], market)

        frame = pd.DataFrame(
            [[rows[s][c] for c in FEATURE_COLUMNS] for s in rows],
            index=pd.Index(list(rows), name="symbol"),
            columns=list(FEATURE_COLUMNS),
            dtype=float,
        )
        matrix = FeatureMatrix(timestamp=int(timestamp), frame=frame)

        log_debug(
            self._logger,
            "features.built",
            timestamp=int(timestamp),
            n_assets=matrix.n_assets,
            excluded=len(histories) - matrix.n_assets,
        )
        return FeatureBuildResult(
            matrix=matrix,
            history={s: histories[s] for s in rows},
            issues=tuple(issues),
        )
