"""Beta diversity dissimilarity matrices from an abundance table."""

from __future__ import annotations

from typing import Callable, Sequence

import numpy as np
from scipy.spatial.distance import pdist, squareform

from .io import AbundanceTable, DistanceMatrix


def bray_curtis(table: AbundanceTable) -> DistanceMatrix:
    """Compute Bray-Curtis dissimilarity between all sample pairs."""
    # pdist expects rows=observations, so transpose: (n_samples, n_features)
    mat = table.abundances.T
    if np.any(mat.sum(axis=1) == 0):
        raise ValueError("Bray-Curtis is undefined for samples with zero total abundance")
    dm = squareform(pdist(mat, metric="braycurtis"))
    return DistanceMatrix(sample_ids=list(table.sample_ids), data=dm, measure="bray")


def jaccard(table: AbundanceTable) -> DistanceMatrix:
    """Compute Jaccard dissimilarity on presence/absence."""
    pa = (table.abundances > 0).T  # (n_samples, n_features)
    dm = squareform(pdist(pa, metric="jaccard"))
    # two empty samples: pdist yields nan, treat them as identical
    dm = np.nan_to_num(dm, nan=0.0)
    return DistanceMatrix(sample_ids=list(table.sample_ids), data=dm, measure="jaccard")


BETA_METRICS: dict[str, Callable[[AbundanceTable], DistanceMatrix]] = {
    "bray": bray_curtis,
    "jaccard": jaccard,
}


def compute_beta_diversity(
    table: AbundanceTable, measures: Sequence[str] = ("bray", "jaccard")
) -> dict[str, DistanceMatrix]:
    """Named collection of distance matrices, one per measure."""
    unknown = [m for m in measures if m not in BETA_METRICS]
    if unknown:
        raise ValueError(
            f"Unknown measure(s) {unknown}; choose from {sorted(BETA_METRICS)}"
        )
    return {m: BETA_METRICS[m](table) for m in measures}
