from __future__ import annotations

from typing import Any, Dict, List, Mapping

import numpy as np

from manifold_index.contracts.projection import Embedding
from manifold_index.contracts.selection import SelectionResult
from manifold_index.exceptions.core import DegradedSelection
from manifold_index.utils.logger import get_logger, log_selection

# Scores equal to this many decimals are ties.
_SCORE_DECIMALS = 12


def market_cap_ranks(market_caps: Mapping[str, float], symbols: tuple[str, ...]) -> Dict[str, int]:
    """0 = largest cap. Equal caps rank by symbol; unknown caps rank last."""
    known = sorted(
        (s for s in symbols if s in market_caps),
        key=lambda s: (-float(market_caps[s]), s),
    )
    ranks = {s: i for i, s in enumerate(known)}
    tail = sorted(s for s in symbols if s not in ranks)
    for s in tail:
        ranks[s] = len(ranks)
    return ranks


class ConstituentSelector:
    """
    Greedy diversity-weighted centrality selection in embedding space.

        centrality_i = 1 / (1 + mean_j d_ij)
        diversity_i  = 1 - exp(-min_{s in selected} d_is / scale)    (1 before any pick)
        score_i      = centrality_i * ((1 - lambda) + lambda * diversity_i)

    `scale` is the median pairwise distance. At each step the highest score
    wins; ties go to the lower market-cap rank, then the symbol.
    """

    _logger = get_logger(__name__)

    def __init__(self, *, count: int, diversity_weight: float = 0.5, metric: str = "embedding"):
        if int(count) <= 0:
            raise ValueError("count must be positive")
        if not 0.0 <= float(diversity_weight) <= 1.0:
            raise ValueError("diversity_weight must be in [0, 1]")
        if metric not in ("embedding", "feature"):
            raise ValueError(f"Unknown selection metric: {metric!r}")
        self.count = int(count)
        self.diversity_weight = float(diversity_weight)
        self.metric = metric

    @classmethod
    def from_config(cls, cfg: Any) -> "ConstituentSelector":
        return cls(
            count=cfg.constituent_count,
            diversity_weight=cfg.diversity_weight,
            metric=cfg.selection_metric,
        )

    def centrality(self, distances: np.ndarray) -> np.ndarray:
        n = distances.shape[0]
        if n <= 1:
            return np.ones(n)
        mean_dist = distances.sum(axis=1) / (n - 1)
        return 1.0 / (1.0 + mean_dist)

    def select(self, embedding: Embedding, market_caps: Mapping[str, float] | None = None) -> SelectionResult:
        symbols = embedding.symbols
        n = len(symbols)
        ranks = market_cap_ranks(market_caps or {}, symbols)

        if n == 0:
            return SelectionResult(symbols=(), requested=self.count, metric=self.metric)

        d = embedding.distances(self.metric)
        centrality = self.centrality(d)

        off_diag = d[np.triu_indices(n, k=1)]
        scale = float(np.median(off_diag)) if off_diag.size else 1.0
        if scale <= 0.0:
            scale = 1.0

        lam = self.diversity_weight
        nearest_selected = np.full(n, np.inf)
        remaining = set(range(n))
        picked: List[int] = []
        scores: Dict[str, float] = {}

        for _ in range(min(self.count, n)):
            diversity = np.where(np.isinf(nearest_selected), 1.0, 1.0 - np.exp(-nearest_selected / scale))
            score = centrality * ((1.0 - lam) + lam * diversity)
            best = min(
                remaining,
                key=lambda i: (-round(float(score[i]), _SCORE_DECIMALS), ranks[symbols[i]], symbols[i]),
            )
            picked.append(best)
            remaining.discard(best)
            scores[symbols[best]] = float(score[best])
            nearest_selected = np.minimum(nearest_selected, d[best])

        result = SelectionResult(
            symbols=tuple(symbols[i] for i in picked),
            requested=self.count,
            scores=scores,
            metric=self.metric,
        )
        log_selection(
            self._logger,
            "selection.done",
            selected=list(result.symbols),
            requested=result.requested,
            actual=result.actual_count,
            degraded=result.degraded,
        )
        return result

    @staticmethod
    def degradation(result: SelectionResult) -> DegradedSelection | None:
        if result.degraded:
            return DegradedSelection(result.requested, result.actual_count)
        return None
