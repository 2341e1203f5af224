"""Beta-diversity analysis session over one dataset."""

from __future__ import annotations

import logging
from typing import Sequence

from .clustering import ClusteringResult, cluster_samples
from .errors import (
    BetaDiversityError,
    ConflictingOptionsError,
    MissingDistanceError,
    MissingGroupError,
)
from .group_distance import (
    GroupDistanceResult,
    PairSelection,
    between_group_distance,
    compare_group_distances,
    within_group_distance,
)
from .io import Dataset, DistanceMatrix
from .ordination import (
    NMDSConfig,
    OrdinationOptions,
    OrdinationResult,
    OrdinationRoute,
    compute_ordination,
)
from .stats import (
    DispersionResult,
    PairwiseComparisonResult,
    PermanovaResult,
    pairwise_permanova,
    permanova,
    permdisp,
)

logger = logging.getLogger(__name__)


class BetaAnalysis:
    """Ordination, group distances, PERMANOVA and PERMDISP on one dataset.

    Holds the selected distance measure and grouping variable, and caches
    the last result of each ``cal_*`` operation in a ``res_*`` attribute.
    A cache is only replaced once its computation succeeds.

    Example:
        analysis = BetaAnalysis(dataset, measure="bray", group="Group")
        analysis.cal_ordination("PCoA")
        analysis.cal_manova(manova_all=False)
    """

    def __init__(
        self,
        dataset: Dataset,
        measure: str | int | None = None,
        group: str | None = None,
    ):
        if dataset is None:
            raise ValueError("dataset is required")
        self.dataset = dataset
        self.sample_table = dataset.sample_table
        self.measure: str | None = None
        self.distance: DistanceMatrix | None = None
        if measure is not None:
            self.measure, self.distance = self._resolve_measure(measure)
        self.group = group
        self.ordination: OrdinationRoute | None = None

        self.res_ordination: OrdinationResult | None = None
        self.res_manova: PermanovaResult | PairwiseComparisonResult | None = None
        self.res_betadisper: DispersionResult | None = None
        self.res_group_distance: GroupDistanceResult | None = None
        self.res_group_distance_diff: PairwiseComparisonResult | None = None
        self.res_clustering: ClusteringResult | None = None

    def cal_ordination(
        self,
        ordination: str | OrdinationRoute = "PCoA",
        ncomp: int = 3,
        trans_otu: bool = False,
        scale_species: bool = False,
        nmds_config: NMDSConfig | None = None,
        correction: str = "auto",
    ) -> OrdinationResult:
        """PCA (on the abundance table), PCoA or NMDS (on the distance matrix).

        ``trans_otu`` square-root transforms abundances and
        ``scale_species`` rescales loadings; both apply to PCA only.
        ``correction`` is the PCoA correction for non-Euclidean distances
        (``"auto"``, ``"none"``, ``"lingoes"`` or ``"cailliez"``).
        """
        route = OrdinationRoute.parse(ordination)
        if route.needs_distance:
            self._require_distance()
        options = OrdinationOptions(
            sqrt_transform=trans_otu,
            scale_loadings=scale_species,
            pcoa_correction=correction,
            nmds=nmds_config or NMDSConfig(),
        )
        result = compute_ordination(
            route,
            abundance=self.dataset.abundance,
            distance=self.distance,
            dimensions=ncomp,
            options=options,
            taxonomy=self.dataset.taxonomy,
        )
        self.res_ordination = result
        self.ordination = route
        logger.info("The %s result is stored in res_ordination", route.value)
        return result

    def ordination_scores(self) -> dict[str, dict[str, object]]:
        """Coordinates of the last ordination joined with the sample table."""
        if self.res_ordination is None:
            raise BetaDiversityError("Run cal_ordination first")
        return self.res_ordination.scores_table(self.sample_table)

    def cal_manova(
        self,
        manova_all: bool = True,
        manova_set: str | None = None,
        group: str | None = None,
        p_adjust_method: str = "fdr",
        n_permutations: int = 999,
        seed: int = 42,
        numeric: Sequence[str] = (),
    ) -> PermanovaResult | PairwiseComparisonResult:
        """PERMANOVA on the selected distance matrix.

        ``manova_set`` (a formula such as ``"Group + Type"``) takes
        precedence; otherwise the group is tested globally
        (``manova_all=True``) or for every pair of its levels.
        """
        distance = self._require_distance()
        result: PermanovaResult | PairwiseComparisonResult
        if manova_set is not None:
            result = permanova(
                distance, self.sample_table, manova_set,
                n_permutations=n_permutations, seed=seed, numeric=numeric,
            )
        else:
            group = self._resolve_group(group)
            if manova_all:
                result = permanova(
                    distance, self.sample_table, group,
                    n_permutations=n_permutations, seed=seed, numeric=numeric,
                )
            else:
                result = pairwise_permanova(
                    distance, self.sample_table, group,
                    p_adjust_method=p_adjust_method,
                    n_permutations=n_permutations, seed=seed,
                )
        self.res_manova = result
        logger.info("The result is stored in res_manova")
        return result

    def cal_betadisper(
        self,
        group: str | None = None,
        centroid: str = "median",
        p_adjust_method: str = "fdr",
        n_permutations: int = 999,
        seed: int = 42,
    ) -> DispersionResult:
        """Homogeneity of multivariate dispersions with pairwise tests."""
        distance = self._require_distance()
        group = self._resolve_group(group)
        result = permdisp(
            distance, self.sample_table, group,
            centroid=centroid,
            n_permutations=n_permutations,
            seed=seed,
            p_adjust_method=p_adjust_method,
        )
        self.res_betadisper = result
        logger.info("The result is stored in res_betadisper")
        return result

    def cal_group_distance(
        self, within_group: bool = True, group: str | None = None
    ) -> GroupDistanceResult:
        """Sample distances within each group, or between each pair of groups."""
        distance = self._require_distance()
        group = self._resolve_group(group)
        sample_groups = self.sample_table.sample_groups(group)
        extract = within_group_distance if within_group else between_group_distance
        result = extract(distance, sample_groups, group_variable=group)
        self.res_group_distance = result
        logger.info("The result is stored in res_group_distance")
        return result

    def cal_group_distance_diff(
        self,
        method: str = "wilcox",
        match: str | None = None,
        select: Sequence[int] | None = None,
        selection: PairSelection | None = None,
        hide_ns: bool = False,
        hide_marks: Sequence[str] = ("ns",),
        p_adjust_method: str = "none",
    ) -> PairwiseComparisonResult:
        """Pairwise tests between the distance distributions of res_group_distance.

        Pairs are chosen by ``selection``, or equivalently by ``match`` (regex)
        or ``select`` (0-based pair positions); at most one of them may be set.
        """
        if self.res_group_distance is None:
            raise BetaDiversityError("Run cal_group_distance first")
        if selection is None:
            selection = PairSelection.from_options(match=match, select=select)
        elif match is not None or select is not None:
            raise ConflictingOptionsError(
                "Pass either a PairSelection or match/select, not both"
            )
        result = compare_group_distances(
            self.res_group_distance,
            method=method,
            p_adjust_method=p_adjust_method,
            selection=selection,
            hide_ns=hide_ns,
            hide_marks=hide_marks,
        )
        self.res_group_distance_diff = result
        logger.info("The result is stored in res_group_distance_diff")
        return result

    def cal_clustering(
        self, measure: str | int | None = None, method: str = "complete"
    ) -> ClusteringResult:
        """Hierarchical clustering of samples.

        Uses ``measure`` if given, else the selected matrix, else the first
        matrix of the dataset.
        """
        if measure is not None:
            _, distance = self._resolve_measure(measure)
        elif self.distance is not None:
            distance = self.distance
        elif self.dataset.beta_diversity:
            _, distance = self._resolve_measure(0)
        else:
            raise MissingDistanceError("Dataset has no distance matrix")
        result = cluster_samples(distance, method=method)
        self.res_clustering = result
        logger.info("The result is stored in res_clustering")
        return result

    def _resolve_measure(self, measure: str | int) -> tuple[str, DistanceMatrix]:
        collection = self.dataset.beta_diversity
        if isinstance(measure, int) and not isinstance(measure, bool):
            names = list(collection)
            if not 0 <= measure < len(names):
                raise MissingDistanceError(
                    f"Measure index {measure} out of range ({len(names)} matrices)"
                )
            measure = names[measure]
        if measure not in collection:
            raise MissingDistanceError(
                f"Measure {measure!r} is not one of the dataset's distance matrices "
                f"{list(collection)}"
            )
        return measure, collection[measure]

    def _require_distance(self) -> DistanceMatrix:
        if self.distance is None:
            raise MissingDistanceError(
                "No distance matrix selected; create the analysis with a measure"
            )
        return self.distance

    def _resolve_group(self, group: str | None) -> str:
        group = group or self.group
        if not group:
            raise MissingGroupError("Provide the group parameter")
        return group
