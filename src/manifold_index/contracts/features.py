from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict, Mapping

import numpy as np
import pandas as pd

from manifold_index.contracts.observation import Observation
from manifold_index.exceptions.core import ProjectionError

# Column order is part of the contract: every vector in one cycle uses it.
FEATURE_COLUMNS: tuple[str, ...] = (
    "volatility",
    "liquidity",
    "inverse_volatility",
    "mean_return",
    "market_correlation",
)


@dataclass(frozen=True, eq=False)
class FeatureMatrix:
    """
    Assets x features for one cycle.

    Invariants:
    - index is the sorted symbol list, columns are FEATURE_COLUMNS in order
    - all values finite
    """
    timestamp: int  # epoch ms
    frame: pd.DataFrame

    def __post_init__(self):
        frame = self.frame
        if tuple(frame.columns) != FEATURE_COLUMNS:
            raise ValueError(f"feature columns must be {FEATURE_COLUMNS}, got {tuple(frame.columns)}")
        if not frame.index.is_unique:
            raise ValueError("feature matrix has duplicate symbols")
        finite = np.isfinite(frame.to_numpy(dtype=float)).all(axis=1)
        if not finite.all():
            raise ProjectionError(f"non-finite features for {', '.join(map(str, frame.index[~finite]))}")

    @property
    def symbols(self) -> tuple[str, ...]:
        return tuple(str(s) for s in self.frame.index)

    @property
    def feature_names(self) -> tuple[str, ...]:
        return tuple(self.frame.columns)

    @property
    def values(self) -> np.ndarray:
        return self.frame.to_numpy(dtype=float, copy=True)

    @property
    def n_assets(self) -> int:
        return int(self.frame.shape[0])

    @property
    def n_features(self) -> int:
        return int(self.frame.shape[1])

    def __len__(self) -> int:
        return self.n_assets

    def __contains__(self, symbol: object) -> bool:
        return symbol in self.frame.index

    def vector(self, symbol: str) -> tuple[float, ...]:
        return tuple(float(v) for v in self.frame.loc[symbol].to_numpy())

    def column(self, name: str) -> Dict[str, float]:
        return {str(k): float(v) for k, v in self.frame[name].items()}

    def to_dict(self) -> Dict[str, list[float]]:
        return {s: list(self.vector(s)) for s in self.symbols}


@dataclass(frozen=True)
class FeatureBuildResult:
    """
    Feature stage output.

    `history` holds the validated, de-duplicated, time-sorted observations of
    every symbol that made it into the matrix; `latest` is its last point.
    """
    matrix: FeatureMatrix
    history: Mapping[str, tuple[Observation, ...]]
    issues: tuple = field(default_factory=tuple)  # tuple[Annotation, ...]

    @property
    def latest(self) -> Dict[str, Observation]:
        return {s: obs[-1] for s, obs in self.history.items() if obs}
