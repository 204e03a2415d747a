from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol, runtime_checkable

import numpy as np
from scipy.spatial.distance import pdist, squareform


@runtime_checkable
class Projector(Protocol):
    """
    Dimensionality-reduction contract.

    Given an N x D standardised feature matrix, return an N x k embedding
    that approximately preserves neighbour rank-order. Implementations must
    be deterministic (same input -> same output, including component signs).
    """

    name: str

    def project(self, standardized: np.ndarray, k: int) -> np.ndarray:
        ...


class ProjectorBase:
    name = "base"

    def __init__(self, **kwargs):
        self.params = dict(kwargs)

    def project(self, standardized: np.ndarray, k: int) -> np.ndarray:
        raise NotImplementedError("Projector must implement project()")


@dataclass(frozen=True, eq=False)
class Embedding:
    """
    One point per asset in R^k, plus the symmetric distance matrix over the
    standardised original feature space.
    """
    symbols: tuple[str, ...]
    coords: np.ndarray             # N x k
    feature_distances: np.ndarray  # N x N
    method: str

    @property
    def dimension(self) -> int:
        return int(self.coords.shape[1])

    def __len__(self) -> int:
        return len(self.symbols)

    def embedding_distances(self) -> np.ndarray:
        """Euclidean distances between embedded points (computed on demand)."""
        if len(self.symbols) < 2:
            return np.zeros((len(self.symbols), len(self.symbols)))
        return squareform(pdist(self.coords, metric="euclidean"))

    def distances(self, metric: str = "embedding") -> np.ndarray:
        if metric == "embedding":
            return self.embedding_distances()
        if metric == "feature":
            return np.array(self.feature_distances, dtype=float, copy=True)
        raise ValueError(f"Unknown distance metric: {metric!r}")
