from __future__ import annotations

import numpy as np
from sklearn.decomposition import PCA

from manifold_index.contracts.projection import ProjectorBase
from manifold_index.projection.registry import register_projector
from manifold_index.projection.standardize import orient_columns


@register_projector("pca")
class PCAProjector(ProjectorBase):
    """Principal component scores (full SVD solver, so repeat runs agree bit for bit)."""

    def __init__(self, **kwargs):
        # graph-only knobs such as `neighbors` are accepted and ignored
        super().__init__(**kwargs)

    def project(self, standardized: np.ndarray, k: int) -> np.ndarray:
        x = np.asarray(standardized, dtype=np.float64)
        scores = PCA(n_components=k, svd_solver="full").fit_transform(x)
        return orient_columns(scores)

    def explained_variance_ratio(self, standardized: np.ndarray) -> np.ndarray:
        x = np.asarray(standardized, dtype=np.float64)
        if not np.any(x - x.mean(axis=0)):
            return np.zeros(min(x.shape))
        return PCA(svd_solver="full").fit(x).explained_variance_ratio_
