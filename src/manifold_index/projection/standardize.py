from __future__ import annotations

from typing import Sequence

import numpy as np

from manifold_index.contracts.features import FeatureMatrix
from manifold_index.exceptions.core import ProjectionError

# Columns whose population std falls below this are treated as constant.
ZERO_VARIANCE_EPS = 1e-12


def standardize(
    data: FeatureMatrix | np.ndarray,
    feature_names: Sequence[str] | None = None,
) -> np.ndarray:
    """
    Z-score each feature column: (x - mean) / std, population std (ddof=0),
    so every output column has mean 0 and variance 1.

    Unlike a general-purpose normaliser this never maps a constant column to
    zeros: a zero-variance column means the feature space is degenerate and
    raises ProjectionError.
    """
    if isinstance(data, FeatureMatrix):
        feature_names = data.feature_names
        values = data.values
    else:
        values = np.asarray(data, dtype=np.float64)

    if values.ndim != 2:
        raise ProjectionError(f"feature matrix must be 2-D, got shape {values.shape}")
    if not np.isfinite(values).all():
        raise ProjectionError("feature matrix contains non-finite values")

    names = list(feature_names) if feature_names is not None else [str(i) for i in range(values.shape[1])]

    mean = values.mean(axis=0)
    std = values.std(axis=0, ddof=0)

    degenerate = [names[j] for j in range(values.shape[1]) if std[j] < ZERO_VARIANCE_EPS]
    if degenerate:
        raise ProjectionError(f"zero-variance feature column(s): {', '.join(degenerate)}")

    return (values - mean) / std


def orient_columns(coords: np.ndarray) -> np.ndarray:
    """
    Fix the sign ambiguity of SVD / eigen solvers: flip each column so its
    largest-magnitude entry is positive.
    """
    out = np.array(coords, dtype=np.float64, copy=True)
    for j in range(out.shape[1]):
        col = out[:, j]
        if not col.size:
            continue
        idx = int(np.argmax(np.abs(col)))
        if col[idx] < 0:
            out[:, j] = -col
    return out
