from __future__ import annotations

from typing import Any

import numpy as np
from scipy.spatial.distance import pdist, squareform

from manifold_index.contracts.features import FeatureMatrix
from manifold_index.contracts.projection import Embedding, Projector
from manifold_index.exceptions.core import ProjectionError
from manifold_index.projection.registry import build_projector
from manifold_index.projection.standardize import standardize
from manifold_index.utils.logger import get_logger, log_debug

# Concrete projectors self-register on import.
from manifold_index.projection import graph as _graph  # noqa: F401
from manifold_index.projection import linear as _linear  # noqa: F401


class ManifoldProjector:
    """
    FeatureMatrix -> Embedding.

    Standardises features, checks the input is embeddable, delegates the
    reduction to a Projector and attaches the feature-space distance matrix.
    Depends only on the Projector contract, never on a concrete algorithm.
    """

    _logger = get_logger(__name__)

    def __init__(self, projector: Projector, dimension: int):
        if int(dimension) < 1:
            raise ValueError("dimension must be >= 1")
        self.projector = projector
        self.dimension = int(dimension)

    @classmethod
    def from_config(cls, cfg: Any) -> "ManifoldProjector":
        projector = build_projector(cfg.projection_method, neighbors=cfg.neighbors)
        return cls(projector, cfg.manifold_dimension)

    def project(self, matrix: FeatureMatrix) -> Embedding:
        n, d = matrix.n_assets, matrix.n_features
        k = self.dimension

        if k >= d:
            raise ProjectionError(f"manifold dimension {k} must be below feature count {d}")
        if n < k + 1:
            raise ProjectionError(f"{n} assets cannot be embedded in {k} dimensions (need at least {k + 1})")

        z = standardize(matrix)

        coords = np.asarray(self.projector.project(z, k), dtype=np.float64)
        if coords.shape != (n, k):
            raise ProjectionError(
                f"projector '{self.projector.name}' returned shape {coords.shape}, expected {(n, k)}"
            )
        if not np.isfinite(coords).all():
            raise ProjectionError(f"projector '{self.projector.name}' returned non-finite coordinates")

        embedding = Embedding(
            symbols=matrix.symbols,
            coords=coords,
            feature_distances=squareform(pdist(z, metric="euclidean")),
            method=self.projector.name,
        )
        log_debug(self._logger, "projection.done", method=embedding.method, n_assets=n, dimension=k)
        return embedding
