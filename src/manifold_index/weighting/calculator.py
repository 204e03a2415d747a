from __future__ import annotations

import math
from typing import Any, Dict, List, Mapping, Sequence

import numpy as np

from manifold_index.contracts.features import FeatureMatrix
from manifold_index.contracts.observation import Observation
from manifold_index.contracts.snapshot import WEIGHT_TOLERANCE
from manifold_index.contracts.weighting import Exclusion, WeightBasisFn, WeightingMethod, WeightResult
from manifold_index.exceptions.core import ConfigError, WeightError
from manifold_index.utils.logger import get_logger, log_warn, log_weighting


# ----------------------------------------------------------------------
# Basis functions: (symbols, observations, features) -> raw basis
# Missing data yields NaN, which the calculator treats as an exclusion.
# ----------------------------------------------------------------------

def market_cap_basis(
    symbols: Sequence[str],
    observations: Mapping[str, Sequence[Observation]],
    features: FeatureMatrix | None = None,
) -> Dict[str, float]:
    """Latest market capitalisation."""
    out: Dict[str, float] = {}
    for s in symbols:
        hist = observations.get(s) or ()
        out[s] = float(hist[-1].market_cap) if hist else math.nan
    return out


def volume_basis(
    symbols: Sequence[str],
    observations: Mapping[str, Sequence[Observation]],
    features: FeatureMatrix | None = None,
) -> Dict[str, float]:
    """Trailing average traded volume over the window."""
    out: Dict[str, float] = {}
    for s in symbols:
        hist = observations.get(s) or ()
        out[s] = float(np.mean([o.volume for o in hist])) if hist else math.nan
    return out


def liquidity_basis(
    symbols: Sequence[str],
    observations: Mapping[str, Sequence[Observation]],
    features: FeatureMatrix | None = None,
) -> Dict[str, float]:
    """Trailing average volume / latest market cap."""
    out: Dict[str, float] = {}
    for s in symbols:
        hist = observations.get(s) or ()
        if not hist:
            out[s] = math.nan
            continue
        cap = float(hist[-1].market_cap)
        out[s] = float(np.mean([o.volume for o in hist])) / cap if cap > 0 else 0.0
    return out


def risk_parity_basis(
    symbols: Sequence[str],
    observations: Mapping[str, Sequence[Observation]],
    features: FeatureMatrix | None = None,
) -> Dict[str, float]:
    """
    Inverse volatility. Under a diagonal covariance this is the equal
    risk-contribution solution; cross-asset covariance is ignored.
    """
    if features is None:
        raise WeightError("risk-parity weighting needs the feature matrix (volatility)")
    vols = features.column("volatility")
    out: Dict[str, float] = {}
    for s in symbols:
        vol = vols.get(s, math.nan)
        out[s] = 1.0 / vol if vol > 0 else 0.0
    return out


def basis_function(method: WeightingMethod | str) -> WeightBasisFn:
    match method:
        case WeightingMethod.MARKET_CAP:
            return market_cap_basis
        case WeightingMethod.VOLUME:
            return volume_basis
        case WeightingMethod.LIQUIDITY:
            return liquidity_basis
        case WeightingMethod.RISK_PARITY:
            return risk_parity_basis
        case _:
            raise ConfigError(f"Unknown weighting method: {method!r}")


def apply_cap(weights: Mapping[str, float], cap: float) -> Dict[str, float]:
    """
    Cap each weight and hand the excess to the uncapped names pro rata,
    repeating until nothing exceeds the cap. A cap below 1/n is raised to 1/n.
    """
    w = dict(weights)
    n = len(w)
    if n == 0:
        return w
    eff = max(float(cap), 1.0 / n)
    capped: set[str] = set()
    for _ in range(n):
        over = [s for s, v in w.items() if s not in capped and v > eff]
        if not over:
            break
        excess = sum(w[s] - eff for s in over)
        for s in over:
            w[s] = eff
            capped.add(s)
        free_total = sum(v for s, v in w.items() if s not in capped)
        if free_total <= 0:
            break
        for s in list(w):
            if s not in capped:
                w[s] += excess * w[s] / free_total
    return w


class WeightCalculator:
    """Normalised constituent weights under one weighting method."""

    _logger = get_logger(__name__)

    def __init__(self, method: WeightingMethod | str, *, max_weight: float | None = None):
        try:
            self.method = WeightingMethod(method)
        except ValueError as e:
            raise ConfigError(f"Unknown weighting method: {method!r}") from e
        if max_weight is not None and not 0.0 < float(max_weight) <= 1.0:
            raise ConfigError("max_weight must be in (0, 1]")
        self.max_weight = max_weight
        self._basis = basis_function(self.method)

    @classmethod
    def from_config(cls, cfg: Any) -> "WeightCalculator":
        return cls(cfg.weighting_method, max_weight=cfg.max_weight)

    def compute(
        self,
        symbols: Sequence[str],
        observations: Mapping[str, Sequence[Observation]],
        features: FeatureMatrix | None = None,
    ) -> WeightResult:
        """
        Weights in `symbols` order. Constituents with a missing, non-finite or
        non-positive basis are excluded and the rest renormalised; WeightError
        if nothing survives.
        """
        basis = self._basis(symbols, observations, features)

        survivors: Dict[str, float] = {}
        excluded: List[Exclusion] = []
        for s in symbols:
            b = float(basis.get(s, math.nan))
            if not math.isfinite(b):
                excluded.append(Exclusion(symbol=s, basis=b, reason="missing weighting basis"))
            elif b <= 0.0:
                excluded.append(Exclusion(symbol=s, basis=b, reason="non-positive weighting basis"))
            else:
                survivors[s] = b

        for ex in excluded:
            log_warn(self._logger, "weighting.excluded", method=self.method, symbol=ex.symbol, basis=ex.basis, reason=ex.reason)

        total = sum(survivors.values())
        if not survivors or not total > 0.0:
            raise WeightError(f"{self.method.value}: no constituent has a positive weighting basis")

        weights = {s: b / total for s, b in survivors.items()}
        if self.max_weight is not None:
            weights = apply_cap(weights, self.max_weight)
            norm = sum(weights.values())
            weights = {s: w / norm for s, w in weights.items()}

        if abs(sum(weights.values()) - 1.0) > WEIGHT_TOLERANCE:
            raise WeightError(f"{self.method.value}: weights do not sum to 1 ({sum(weights.values())!r})")

        result = WeightResult(method=self.method, weights=weights, excluded=tuple(excluded))
        log_weighting(
            self._logger,
            "weighting.done",
            method=self.method,
            weights=weights,
            excluded=[ex.symbol for ex in excluded],
        )
        return result


def compute_weights(
    method: WeightingMethod | str,
    symbols: Sequence[str],
    observations: Mapping[str, Sequence[Observation]],
    features: FeatureMatrix | None = None,
    *,
    max_weight: float | None = None,
) -> WeightResult:
    return WeightCalculator(method, max_weight=max_weight).compute(symbols, observations, features)
