"""
Graph-neighbour projector (Isomap).

k-nearest-neighbour graph over standardised features -> geodesic distances
(shortest paths) -> classical MDS. Preserves local neighbourhoods along a
curved manifold where a linear projection would fold them together.
"""

from __future__ import annotations

import numpy as np
from scipy.sparse import csr_matrix
from scipy.sparse.csgraph import shortest_path
from scipy.spatial.distance import pdist, squareform
from sklearn.neighbors import kneighbors_graph

from manifold_index.contracts.projection import ProjectorBase
from manifold_index.projection.registry import register_projector
from manifold_index.projection.standardize import orient_columns

# Zero-length edges between duplicate points would vanish from the sparse graph.
_MIN_EDGE = 1e-12


def knn_graph(distances: np.ndarray, n_neighbors: int) -> csr_matrix:
    """Symmetric sparse adjacency of each point's n nearest neighbours."""
    graph = kneighbors_graph(
        distances,
        n_neighbors=n_neighbors,
        mode="distance",
        metric="precomputed",
        include_self=False,
    )
    graph.data = np.maximum(graph.data, _MIN_EDGE)
    return graph.maximum(graph.T).tocsr()


def geodesic_distances(distances: np.ndarray, n_neighbors: int) -> tuple[np.ndarray, int]:
    """
    Shortest-path distances over the kNN graph. The neighbourhood grows until
    the graph is connected (n - 1 neighbours is the complete graph).

    Returns (geodesics, neighbours actually used).
    """
    n = distances.shape[0]
    nn = max(1, min(int(n_neighbors), n - 1))
    while True:
        geo = shortest_path(knn_graph(distances, nn), method="D", directed=False)
        if np.isfinite(geo).all() or nn >= n - 1:
            return geo, nn
        nn += 1


def classical_mds(distances: np.ndarray, k: int) -> np.ndarray:
    n = distances.shape[0]
    j = np.eye(n) - np.full((n, n), 1.0 / n)
    b = -0.5 * j @ (distances ** 2) @ j
    b = (b + b.T) / 2.0
    vals, vecs = np.linalg.eigh(b)
    order = np.argsort(vals)[::-1][:k]
    vals = np.clip(vals[order], 0.0, None)
    return vecs[:, order] * np.sqrt(vals)


@register_projector("isomap")
class IsomapProjector(ProjectorBase):
    def __init__(self, neighbors: int = 5, **kwargs):
        super().__init__(neighbors=neighbors, **kwargs)
        if int(neighbors) < 1:
            raise ValueError("neighbors must be >= 1")
        self.neighbors = int(neighbors)

    def project(self, standardized: np.ndarray, k: int) -> np.ndarray:
        x = np.asarray(standardized, dtype=np.float64)
        if x.shape[0] < 2:
            return np.zeros((x.shape[0], k))
        d = squareform(pdist(x, metric="euclidean"))
        geo, _ = geodesic_distances(d, self.neighbors)
        return orient_columns(classical_mds(geo, k))
