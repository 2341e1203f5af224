"""Data containers for beta-diversity analysis."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Sequence

import numpy as np
from scipy.spatial.distance import squareform

from .errors import MissingGroupError

logger = logging.getLogger(__name__)

TAXONOMY_RANKS = ("domain", "phylum", "class", "order", "family", "genus", "species")


@dataclass
class TaxonomyRecord:
    """Taxonomy annotation for a single feature."""

    feature_id: str
    domain: str = ""
    phylum: str = ""
    class_: str = ""
    order: str = ""
    family: str = ""
    genus: str = ""
    species: str = ""

    def rank(self, level: str) -> str:
        if level == "class":
            return self.class_
        return getattr(self, level)


@dataclass
class TaxonomyTable:
    """Collection of taxonomy records keyed by feature ID."""

    records: dict[str, TaxonomyRecord] = field(default_factory=dict)

    def get(self, feature_id: str) -> TaxonomyRecord | None:
        return self.records.get(feature_id)

    def lookup_columns(
        self,
        feature_ids: Sequence[str],
        ranks: Sequence[str] = TAXONOMY_RANKS,
    ) -> list[dict[str, str]]:
        """Return taxonomy columns for a list of feature IDs.

        Each entry is a dict mapping rank name -> taxon string.
        Missing features get empty strings for all ranks.
        """
        rows: list[dict[str, str]] = []
        for feature_id in feature_ids:
            rec = self.records.get(feature_id)
            if rec:
                rows.append({r: rec.rank(r) for r in ranks})
            else:
                rows.append({r: "" for r in ranks})
        return rows


@dataclass
class AbundanceTable:
    """Feature-by-sample abundance matrix."""

    feature_ids: list[str]
    sample_ids: list[str]
    abundances: np.ndarray  # shape (n_features, n_samples)

    def __post_init__(self) -> None:
        n_features, n_samples = self.abundances.shape
        if n_features != len(self.feature_ids):
            raise ValueError(
                f"Row count {n_features} != len(feature_ids) {len(self.feature_ids)}"
            )
        if n_samples != len(self.sample_ids):
            raise ValueError(
                f"Col count {n_samples} != len(sample_ids) {len(self.sample_ids)}"
            )
        if np.any(self.abundances < 0):
            raise ValueError("Abundances must be non-negative")

    @property
    def n_features(self) -> int:
        return len(self.feature_ids)

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)


@dataclass
class DistanceMatrix:
    """Symmetric sample-by-sample dissimilarity matrix.

    Rows and columns share ``sample_ids``. The data array is made
    read-only on construction; use :meth:`subset` to index by label.
    """

    sample_ids: list[str]
    data: np.ndarray  # shape (n_samples, n_samples)
    measure: str = ""

    def __post_init__(self) -> None:
        data = np.array(self.data, dtype=np.float64)
        if data.ndim != 2 or data.shape[0] != data.shape[1]:
            raise ValueError(f"Distance matrix must be square, got shape {data.shape}")
        if data.shape[0] != len(self.sample_ids):
            raise ValueError(
                f"Matrix size {data.shape[0]} != len(sample_ids) {len(self.sample_ids)}"
            )
        if len(set(self.sample_ids)) != len(self.sample_ids):
            raise ValueError("Sample IDs must be unique")
        if not np.all(np.isfinite(data)):
            raise ValueError("Distance matrix contains non-finite values")
        if not np.allclose(data, data.T):
            raise ValueError("Distance matrix must be symmetric")
        if np.any(data < 0):
            raise ValueError("Distances must be non-negative")
        if not np.allclose(np.diag(data), 0.0):
            raise ValueError("Distance matrix diagonal must be zero")
        # remove float asymmetry
        data = (data + data.T) / 2
        np.fill_diagonal(data, 0.0)
        data.setflags(write=False)
        self.data = data
        self.sample_ids = list(self.sample_ids)
        self._index = {s: i for i, s in enumerate(self.sample_ids)}

    @property
    def n_samples(self) -> int:
        return len(self.sample_ids)

    def __contains__(self, sample_id: object) -> bool:
        return sample_id in self._index

    def index_of(self, sample_ids: Sequence[str]) -> list[int]:
        """Positions of the given sample IDs (KeyError if absent)."""
        return [self._index[s] for s in sample_ids]

    def subset(self, sample_ids: Sequence[str]) -> DistanceMatrix:
        """Return the submatrix for ``sample_ids`` in the given order."""
        idx = self.index_of(sample_ids)
        return DistanceMatrix(
            sample_ids=list(sample_ids),
            data=self.data[np.ix_(idx, idx)],
            measure=self.measure,
        )

    def block(self, row_ids: Sequence[str], col_ids: Sequence[str]) -> np.ndarray:
        """Cross-distances between two sample sets, shape (len(rows), len(cols))."""
        return self.data[np.ix_(self.index_of(row_ids), self.index_of(col_ids))]

    def condensed(self) -> np.ndarray:
        """Upper-triangle values as a condensed vector."""
        return squareform(self.data, checks=False)


@dataclass
class SampleMetadata:
    """Sample metadata keyed by sample ID."""

    records: dict[str, dict[str, str]] = field(default_factory=dict)

    def get_groups(self, variable: str) -> dict[str, list[str]]:
        """Group sample IDs by a metadata variable.

        Returns dict mapping group_value -> list of sample_ids, in order of
        first appearance. Samples without a value are left out.
        """
        groups: dict[str, list[str]] = {}
        for sample_id, val in self.sample_groups(variable).items():
            groups.setdefault(val, []).append(sample_id)
        return groups

    def sample_groups(self, variable: str) -> dict[str, str]:
        """Map sample_id -> value of ``variable``, skipping unannotated samples."""
        self._check_variable(variable)
        groups: dict[str, str] = {}
        unannotated: list[str] = []
        for sid, meta in self.records.items():
            val = meta.get(variable)
            if val is None or val == "":
                unannotated.append(sid)
            else:
                groups[sid] = val
        if unannotated:
            logger.warning(
                "%d sample(s) have no value for '%s' and are ignored: %s",
                len(unannotated), variable, ", ".join(unannotated[:5]),
            )
        return groups

    def annotated(self, variables: Sequence[str], sample_ids: Sequence[str]) -> list[str]:
        """The ``sample_ids`` that have a value for every one of ``variables``."""
        for variable in variables:
            self._check_variable(variable)
        return [
            s for s in sample_ids
            if all(self.records.get(s, {}).get(v) not in (None, "") for v in variables)
        ]

    def labels(self, variable: str, sample_ids: Sequence[str]) -> list[str]:
        """Values of ``variable`` aligned to ``sample_ids``."""
        self._check_variable(variable)
        missing = [s for s in sample_ids if s not in self.records]
        if missing:
            raise ValueError(f"No metadata for samples: {', '.join(missing[:5])}")
        values = [self.records[s].get(variable, "") for s in sample_ids]
        blank = [s for s, v in zip(sample_ids, values) if v is None or v == ""]
        if blank:
            raise ValueError(
                f"Samples without a value for '{variable}': {', '.join(blank[:5])}"
            )
        return values

    @property
    def variables(self) -> list[str]:
        seen: dict[str, None] = {}
        for meta in self.records.values():
            for key in meta:
                seen.setdefault(key, None)
        return list(seen)

    @property
    def sample_ids(self) -> list[str]:
        return list(self.records.keys())

    def _check_variable(self, variable: str) -> None:
        if not variable:
            raise MissingGroupError("No grouping variable given")
        if variable not in self.variables:
            raise MissingGroupError(f"Unknown metadata variable '{variable}'")


@dataclass
class Dataset:
    """Sample table, abundance table and named distance matrices.

    Every matrix in ``beta_diversity`` must cover exactly the samples of
    ``sample_table`` (order does not matter).
    """

    sample_table: SampleMetadata
    beta_diversity: dict[str, DistanceMatrix] = field(default_factory=dict)
    abundance: AbundanceTable | None = None
    taxonomy: TaxonomyTable | None = None

    def __post_init__(self) -> None:
        expected = set(self.sample_table.sample_ids)
        for name, dm in self.beta_diversity.items():
            if set(dm.sample_ids) != expected:
                raise ValueError(
                    f"Distance matrix '{name}' samples do not match the sample table"
                )
        if self.abundance is not None and set(self.abundance.sample_ids) != expected:
            raise ValueError("Abundance table samples do not match the sample table")

    @property
    def measures(self) -> list[str]:
        return list(self.beta_diversity.keys())
