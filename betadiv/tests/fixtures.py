"""Synthetic data generation for beta-diversity tests."""

from __future__ import annotations

import numpy as np
from scipy.spatial.distance import pdist, squareform

from betadiv.beta import compute_beta_diversity
from betadiv.io import (
    AbundanceTable,
    Dataset,
    DistanceMatrix,
    SampleMetadata,
    TaxonomyRecord,
    TaxonomyTable,
)


def generate_synthetic_abundance_table(
    n_features: int = 20,
    n_samples: int = 12,
    n_groups: int = 3,
    seed: int = 42,
) -> tuple[AbundanceTable, SampleMetadata, TaxonomyTable]:
    """Generate synthetic data with planted group structure.

    Creates n_groups habitats with n_samples/n_groups samples each.
    Some features are group-specific (high in one group, low elsewhere),
    others are generalists (similar across groups).
    """
    rng = np.random.default_rng(seed)
    samples_per_group = n_samples // n_groups
    group_names = ["marsh", "lake", "river"][:n_groups]

    feature_ids = [f"OTU_{i:03d}" for i in range(n_features)]
    sample_ids = []
    metadata_records: dict[str, dict[str, str]] = {}

    for gi, g in enumerate(group_names):
        for rep in range(samples_per_group):
            sid = f"{g}_rep{rep+1}"
            sample_ids.append(sid)
            metadata_records[sid] = {
                "habitat": g,
                "replicate": str(rep + 1),
                "season": "wet" if rep % 2 == 0 else "dry",
            }

    abundances = np.zeros((n_features, n_samples), dtype=np.float64)
    per_class = n_features // 3

    for i in range(n_features):
        if i < per_class:
            target_group = 0
        elif i < 2 * per_class:
            target_group = 1
        else:
            target_group = -1  # generalist

        for gi in range(n_groups):
            start = gi * samples_per_group
            end = start + samples_per_group
            if target_group == gi:
                abundances[i, start:end] = rng.poisson(500, samples_per_group)
            elif target_group == -1:
                abundances[i, start:end] = rng.poisson(200, samples_per_group)
            else:
                abundances[i, start:end] = rng.poisson(10, samples_per_group)

    phyla = ["Proteobacteria", "Actinobacteriota", "Firmicutes", "Bacteroidota"]
    taxonomy_records = {
        fid: TaxonomyRecord(
            feature_id=fid,
            domain="Bacteria",
            phylum=phyla[i % len(phyla)],
            genus=f"Genus_{i % 7}",
        )
        for i, fid in enumerate(feature_ids)
    }

    return (
        AbundanceTable(feature_ids=feature_ids, sample_ids=sample_ids, abundances=abundances),
        SampleMetadata(records=metadata_records),
        TaxonomyTable(records=taxonomy_records),
    )


def generate_dataset(seed: int = 42, **kwargs) -> Dataset:
    """Dataset with bray and jaccard matrices over the synthetic table."""
    table, meta, tax = generate_synthetic_abundance_table(seed=seed, **kwargs)
    return Dataset(
        sample_table=meta,
        beta_diversity=compute_beta_diversity(table),
        abundance=table,
        taxonomy=tax,
    )


def euclidean_distance_matrix(
    coords: np.ndarray, sample_ids: list[str], measure: str = "euclidean"
) -> DistanceMatrix:
    return DistanceMatrix(
        sample_ids=sample_ids,
        data=squareform(pdist(coords, metric="euclidean")),
        measure=measure,
    )


def clustered_samples(
    group_sizes: dict[str, int],
    separation: float = 10.0,
    spread: float | dict[str, float] = 1.0,
    n_dims: int = 4,
    seed: int = 7,
) -> tuple[DistanceMatrix, SampleMetadata]:
    """Euclidean distances between Gaussian clusters, one per group."""
    rng = np.random.default_rng(seed)
    coords = []
    sample_ids = []
    records: dict[str, dict[str, str]] = {}
    for gi, (g, size) in enumerate(group_sizes.items()):
        sd = spread[g] if isinstance(spread, dict) else spread
        centre = np.zeros(n_dims)
        centre[gi % n_dims] = separation * (gi + 1)
        for rep in range(size):
            sid = f"{g}{rep + 1}"
            sample_ids.append(sid)
            records[sid] = {"group": g}
            coords.append(centre + rng.normal(scale=sd, size=n_dims))
    dm = euclidean_distance_matrix(np.array(coords), sample_ids)
    return dm, SampleMetadata(records=records)
