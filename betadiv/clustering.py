"""Hierarchical clustering of samples from a distance matrix."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
from scipy.cluster.hierarchy import cophenet, fcluster, leaves_list, linkage

from .errors import InsufficientDataError
from .io import DistanceMatrix

LINKAGE_METHODS = ("single", "complete", "average", "weighted", "centroid", "median", "ward")


@dataclass
class ClusteringResult:
    """Linkage tree and dendrogram leaf order."""

    sample_ids: list[str]
    linkage: np.ndarray  # scipy linkage matrix, shape (n_samples - 1, 4)
    leaf_order: list[str]
    method: str
    cophenetic_correlation: float
    measure: str = ""

    def clusters(self, n_clusters: int) -> dict[str, int]:
        """Cut the tree into ``n_clusters`` flat clusters."""
        ids = fcluster(self.linkage, t=n_clusters, criterion="maxclust")
        return {sid: int(c) for sid, c in zip(self.sample_ids, ids)}


def cluster_samples(distance: DistanceMatrix, method: str = "complete") -> ClusteringResult:
    """Agglomerative clustering on the condensed distance matrix."""
    if method not in LINKAGE_METHODS:
        raise ValueError(f"method must be one of {LINKAGE_METHODS}, got {method!r}")
    if distance.n_samples < 2:
        raise InsufficientDataError("Clustering needs at least 2 samples")

    condensed = distance.condensed()
    Z = linkage(condensed, method=method)
    if np.any(condensed > 0):
        coph, _ = cophenet(Z, condensed)
    else:
        coph = np.nan
    return ClusteringResult(
        sample_ids=list(distance.sample_ids),
        linkage=Z,
        leaf_order=[distance.sample_ids[i] for i in leaves_list(Z)],
        method=method,
        cophenetic_correlation=float(coph),
        measure=distance.measure,
    )
