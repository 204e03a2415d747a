from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Protocol, Sequence

from manifold_index.contracts.observation import Observation
from manifold_index.contracts.features import FeatureMatrix


class WeightingMethod(str, Enum):
    """Closed set of weighting methodologies."""

    MARKET_CAP = "marketCap"
    VOLUME = "volume"
    LIQUIDITY = "liquidity"
    RISK_PARITY = "riskParity"


@dataclass(frozen=True)
class Exclusion:
    symbol: str
    basis: float
    reason: str


@dataclass(frozen=True)
class WeightResult:
    """
    Normalised weights for the surviving constituents, in selection order.
    `excluded` lists constituents dropped for an invalid basis.
    """
    method: WeightingMethod
    weights: Dict[str, float]
    excluded: tuple[Exclusion, ...] = field(default_factory=tuple)

    @property
    def symbols(self) -> tuple[str, ...]:
        return tuple(self.weights)

    def total(self) -> float:
        return float(sum(self.weights.values()))


class WeightBasisFn(Protocol):
    """Raw (unnormalised) basis per symbol for one methodology."""

    def __call__(
        self,
        symbols: Sequence[str],
        observations: Dict[str, Sequence[Observation]],
        features: FeatureMatrix | None,
    ) -> Dict[str, float]:
        ...
