"""Permutation tests on distance matrices: PERMANOVA and PERMDISP."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from itertools import combinations
from typing import Sequence

import numpy as np
from statsmodels.stats.multitest import multipletests

from .errors import InsufficientDataError, MissingGroupError
from .formula import Term, build_design, parse_formula, term_name
from .io import DistanceMatrix, SampleMetadata
from .ordination import gower_centered, principal_coordinates

logger = logging.getLogger(__name__)

# absolute tolerance when comparing permuted statistics to the observed one
_EPS = float(np.sqrt(np.finfo(np.float64).eps))

# R p.adjust names -> statsmodels multipletests methods
P_ADJUST_METHODS: dict[str, str | None] = {
    "fdr": "fdr_bh",
    "BH": "fdr_bh",
    "BY": "fdr_by",
    "bonferroni": "bonferroni",
    "holm": "holm",
    "hochberg": "simes-hochberg",
    "hommel": "hommel",
    "none": None,
}

CENTROID_TYPES = ("median", "centroid")


@dataclass
class PairwiseComparison:
    """One group-pair test."""

    group_pair: str
    test_statistic: float
    effect_size: float
    raw_p: float
    adjusted_p: float
    significance_label: str


@dataclass
class SkippedComparison:
    """A pair that could not be tested, with the reason."""

    group_pair: str
    reason: str


@dataclass
class PairwiseComparisonResult:
    """All-pairs test results with batch-corrected p-values."""

    method: str
    p_adjust_method: str
    comparisons: list[PairwiseComparison] = field(default_factory=list)
    skipped: list[SkippedComparison] = field(default_factory=list)
    measure: str = ""

    def __len__(self) -> int:
        return len(self.comparisons)

    def records(self) -> list[dict[str, object]]:
        return [asdict(c) for c in self.comparisons]

    def get(self, group_pair: str) -> PairwiseComparison | None:
        for c in self.comparisons:
            if c.group_pair == group_pair:
                return c
        return None


@dataclass
class PermanovaTerm:
    """One row of a PERMANOVA table."""

    term: str
    df: int
    sum_of_squares: float
    r_squared: float
    f_statistic: float | None = None
    p_value: float | None = None


@dataclass
class PermanovaResult:
    """PERMANOVA table: one row per model term, then Residual and Total."""

    formula: str
    terms: list[PermanovaTerm]
    n_samples: int
    n_permutations: int
    measure: str = ""

    @property
    def model_terms(self) -> list[PermanovaTerm]:
        return [t for t in self.terms if t.term not in ("Residual", "Total")]

    @property
    def statistic(self) -> float:
        return self.model_terms[0].f_statistic

    @property
    def r_squared(self) -> float:
        return self.model_terms[0].r_squared

    @property
    def p_value(self) -> float:
        return self.model_terms[0].p_value

    def term(self, name: str) -> PermanovaTerm:
        for t in self.terms:
            if t.term == name:
                return t
        raise KeyError(name)


@dataclass
class DispersionResult:
    """PERMDISP: distances to group centre and their permutation ANOVA."""

    group_variable: str
    centroid: str
    sample_ids: list[str]
    labels: list[str]
    distances: np.ndarray  # per sample, distance to its group centre
    group_mean_distances: dict[str, float]
    f_statistic: float
    df: tuple[int, int]
    p_value: float
    n_permutations: int
    eigenvalues: np.ndarray
    pairwise: PairwiseComparisonResult
    measure: str = ""


def adjust_p_values(p_values: Sequence[float], method: str = "fdr") -> np.ndarray:
    """Multiple-comparison correction using R ``p.adjust`` method names."""
    if method not in P_ADJUST_METHODS:
        raise ValueError(
            f"Unknown p-value adjustment {method!r}; choose from {sorted(P_ADJUST_METHODS)}"
        )
    p = np.asarray(p_values, dtype=np.float64)
    sm_method = P_ADJUST_METHODS[method]
    if p.size == 0 or sm_method is None:
        return p.copy()
    _, adjusted, _, _ = multipletests(p, method=sm_method)
    return np.asarray(adjusted, dtype=np.float64)


def significance_label(p: float) -> str:
    if p <= 0.001:
        return "***"
    if p <= 0.01:
        return "**"
    if p <= 0.05:
        return "*"
    return ""


def permanova(
    distance: DistanceMatrix,
    metadata: SampleMetadata,
    formula: str,
    n_permutations: int = 999,
    seed: int = 42,
    numeric: Sequence[str] = (),
) -> PermanovaResult:
    """PERMANOVA: partition distance matrix variance by model terms.

    ``formula`` is a metadata variable or a formula right-hand side such as
    ``"Group + Type"`` or ``"Group * Type"``. Sums of squares are
    sequential; for a single factor

        F = (SS_between / (g-1)) / (SS_within / (n-g))

    The permutation test shuffles samples (rows and columns of the
    Gower-centred matrix together); p = (#{F* >= F} + 1) / (n_perm + 1).
    Samples without a value for a model variable are dropped.
    """
    if not formula:
        raise MissingGroupError("No grouping variable or formula given")
    if formula in metadata.variables:
        terms: list[Term] = [(formula,)]
    else:
        terms = parse_formula(formula)

    variables = list(dict.fromkeys(v for t in terms for v in t))
    keep = metadata.annotated(variables, distance.sample_ids)
    if len(keep) < distance.n_samples:
        logger.warning(
            "PERMANOVA %s: %d sample(s) without values for %s dropped",
            formula, distance.n_samples - len(keep), ", ".join(variables),
        )
        distance = distance.subset(keep)
    return _permanova(distance, metadata, terms, formula, n_permutations, seed, numeric)


def _permanova(
    distance: DistanceMatrix,
    metadata: SampleMetadata,
    terms: list[Term],
    formula: str,
    n_permutations: int,
    seed: int,
    numeric: Sequence[str] = (),
) -> PermanovaResult:
    n = distance.n_samples
    if n < 3:
        raise InsufficientDataError(f"PERMANOVA needs at least 3 samples, got {n}")

    design = build_design(terms, metadata, distance.sample_ids, numeric=numeric)
    G = gower_centered(distance.data)
    ss_total = float(np.trace(G))
    if ss_total <= 0:
        raise InsufficientDataError("All pairwise distances are zero")

    # Cumulative hat matrices, one per term
    X = np.ones((n, 1))
    prev_rank = 1
    hats: list[np.ndarray] = []
    dfs: list[int] = []
    for name, block in design:
        X = np.hstack([X, block])
        rank = int(np.linalg.matrix_rank(X))
        if rank == prev_rank:
            raise InsufficientDataError(
                f"Term '{name}' has no degrees of freedom (fewer than 2 levels?)"
            )
        hats.append(X @ np.linalg.pinv(X))
        dfs.append(rank - prev_rank)
        prev_rank = rank

    df_res = n - prev_rank
    if df_res <= 0:
        raise InsufficientDataError("No residual degrees of freedom")
    df_arr = np.array(dfs, dtype=np.float64)

    def partition(Gm: np.ndarray) -> tuple[np.ndarray, float]:
        # trace(H @ Gm) for symmetric matrices
        fitted = np.array([np.sum(H * Gm) for H in hats])
        ss_terms = np.diff(np.concatenate([[0.0], fitted]))
        return ss_terms, ss_total - fitted[-1]

    def f_stats(ss_terms: np.ndarray, ss_res: float) -> np.ndarray:
        with np.errstate(divide="ignore", invalid="ignore"):
            return (ss_terms / df_arr) / (ss_res / df_res)

    ss_terms, ss_res = partition(G)
    if ss_res <= ss_total * 1e-12:
        raise InsufficientDataError("Residual sum of squares is zero")
    observed_f = f_stats(ss_terms, ss_res)

    rng = np.random.default_rng(seed)
    counts = np.zeros(len(terms), dtype=np.int64)
    for _ in range(n_permutations):
        perm = rng.permutation(n)
        perm_f = f_stats(*partition(G[np.ix_(perm, perm)]))
        counts += perm_f >= observed_f - _EPS
    p_values = (counts + 1) / (n_permutations + 1)

    rows = [
        PermanovaTerm(
            term=term_name(t),
            df=int(df),
            sum_of_squares=float(ss),
            r_squared=float(ss / ss_total),
            f_statistic=float(f),
            p_value=float(p),
        )
        for t, df, ss, f, p in zip(terms, dfs, ss_terms, observed_f, p_values)
    ]
    rows.append(PermanovaTerm("Residual", df_res, float(ss_res), float(ss_res / ss_total)))
    rows.append(PermanovaTerm("Total", n - 1, ss_total, 1.0))

    logger.info(
        "PERMANOVA %s: F=%.4f, R2=%.4f, p=%.4g (%d permutations)",
        formula, rows[0].f_statistic, rows[0].r_squared, rows[0].p_value, n_permutations,
    )
    return PermanovaResult(
        formula=formula,
        terms=rows,
        n_samples=n,
        n_permutations=n_permutations,
        measure=distance.measure,
    )


def pairwise_permanova(
    distance: DistanceMatrix,
    metadata: SampleMetadata,
    grouping_var: str,
    p_adjust_method: str = "fdr",
    n_permutations: int = 999,
    seed: int = 42,
) -> PairwiseComparisonResult:
    """PERMANOVA between every pair of groups, corrected in one batch.

    Subsets the distance matrix for each pair and reruns PERMANOVA. A pair
    in which either group has fewer than two samples, or whose test is
    otherwise undefined, is skipped and listed in ``skipped``.
    """
    if not grouping_var:
        raise MissingGroupError("No grouping variable given")
    groups = _present_groups(distance, metadata, grouping_var)
    if len(groups) < 2:
        raise InsufficientDataError(
            f"Pairwise PERMANOVA needs at least 2 groups in '{grouping_var}'"
        )

    tested: list[tuple[str, float, float, float]] = []
    skipped: list[SkippedComparison] = []
    for g1, g2 in combinations(groups, 2):
        pair = f"{g1} vs {g2}"
        small = [g for g in (g1, g2) if len(groups[g]) < 2]
        if small:
            reason = f"group(s) {', '.join(small)} have fewer than 2 samples"
            skipped.append(SkippedComparison(pair, reason))
            logger.warning("Pairwise PERMANOVA %s skipped: %s", pair, reason)
            continue

        sids = groups[g1] + groups[g2]
        sub_meta = SampleMetadata(
            records={s: {grouping_var: g1 if s in groups[g1] else g2} for s in sids}
        )
        try:
            result = _permanova(
                distance.subset(sids), sub_meta, [(grouping_var,)], grouping_var,
                n_permutations, seed,
            )
        except InsufficientDataError as e:
            skipped.append(SkippedComparison(pair, str(e)))
            logger.warning("Pairwise PERMANOVA %s skipped: %s", pair, e)
            continue
        tested.append((pair, result.statistic, result.r_squared, result.p_value))

    adjusted = adjust_p_values([t[3] for t in tested], p_adjust_method)
    comparisons = [
        PairwiseComparison(
            group_pair=pair,
            test_statistic=f,
            effect_size=r2,
            raw_p=p,
            adjusted_p=float(q),
            significance_label=significance_label(q),
        )
        for (pair, f, r2, p), q in zip(tested, adjusted)
    ]
    return PairwiseComparisonResult(
        method="PERMANOVA",
        p_adjust_method=p_adjust_method,
        comparisons=comparisons,
        skipped=skipped,
        measure=distance.measure,
    )


def permdisp(
    distance: DistanceMatrix,
    metadata: SampleMetadata,
    grouping_var: str,
    centroid: str = "median",
    n_permutations: int = 999,
    seed: int = 42,
    p_adjust_method: str = "fdr",
) -> DispersionResult:
    """PERMDISP: test for homogeneity of multivariate dispersions.

    Embeds samples with all principal coordinates (real and imaginary
    axes), measures each sample's distance to its group centre (spatial
    median or centroid) and runs an ANOVA on those distances. The
    permutation test shuffles ANOVA residuals among samples; the same
    permutations give Welch t tests between every pair of groups.
    """
    if not grouping_var:
        raise MissingGroupError("No grouping variable given")
    if centroid not in CENTROID_TYPES:
        raise ValueError(f"centroid must be one of {CENTROID_TYPES}, got {centroid!r}")

    groups = _present_groups(distance, metadata, grouping_var)
    k = len(groups)
    if k < 2:
        raise InsufficientDataError(f"PERMDISP needs at least 2 groups in '{grouping_var}'")

    sample_ids = [s for members in groups.values() for s in members]
    sub = distance.subset(sample_ids)
    n = len(sample_ids)
    if n - k <= 0:
        raise InsufficientDataError("No residual degrees of freedom")
    if not np.any(sub.data > 0):
        raise InsufficientDataError("All pairwise distances are zero")

    names = list(groups)
    codes = np.repeat(np.arange(k), [len(groups[g]) for g in names])
    labels = [names[c] for c in codes]

    eigenvalues, vectors = principal_coordinates(sub.data)
    pos = eigenvalues > 0
    real = vectors[:, pos] * np.sqrt(eigenvalues[pos])
    imag = vectors[:, ~pos] * np.sqrt(-eigenvalues[~pos])

    centre = _spatial_median if centroid == "median" else _mean_centre
    distances = np.zeros(n)
    for c in range(k):
        mask = codes == c
        d_real = ((real[mask] - centre(real[mask])) ** 2).sum(axis=1)
        d_imag = ((imag[mask] - centre(imag[mask])) ** 2).sum(axis=1)
        distances[mask] = np.sqrt(np.abs(d_real - d_imag))

    counts_per_group = np.bincount(codes, minlength=k)
    group_means = np.bincount(codes, weights=distances, minlength=k) / counts_per_group
    residuals = distances - group_means[codes]

    pairs = list(combinations(range(k), 2))
    testable = [(a, b) for a, b in pairs if counts_per_group[a] >= 2 and counts_per_group[b] >= 2]

    observed_f = _anova_f(distances, codes, k)
    observed_t = np.array([_welch_t(distances, codes, a, b) for a, b in testable])

    rng = np.random.default_rng(seed)
    f_count = 0
    t_counts = np.zeros(len(testable), dtype=np.int64)
    for _ in range(n_permutations):
        # null model: equal group centres
        perm_d = residuals[rng.permutation(n)]
        if _anova_f(perm_d, codes, k) >= observed_f - _EPS:
            f_count += 1
        if testable:
            perm_t = np.array([_welch_t(perm_d, codes, a, b) for a, b in testable])
            t_counts += np.abs(perm_t) >= np.abs(observed_t) - _EPS
    p_value = (f_count + 1) / (n_permutations + 1)
    t_p = (t_counts + 1) / (n_permutations + 1)

    skipped: list[SkippedComparison] = []
    for a, b in pairs:
        if (a, b) not in testable:
            pair = f"{names[a]} vs {names[b]}"
            reason = "a group has fewer than 2 samples"
            skipped.append(SkippedComparison(pair, reason))
            logger.warning("Pairwise PERMDISP %s skipped: %s", pair, reason)

    adjusted = adjust_p_values(t_p, p_adjust_method)
    comparisons = [
        PairwiseComparison(
            group_pair=f"{names[a]} vs {names[b]}",
            test_statistic=float(t),
            effect_size=float(group_means[a] - group_means[b]),
            raw_p=float(p),
            adjusted_p=float(q),
            significance_label=significance_label(q),
        )
        for (a, b), t, p, q in zip(testable, observed_t, t_p, adjusted)
    ]

    logger.info(
        "PERMDISP %s: F=%.4f, p=%.4g (%d permutations)",
        grouping_var, observed_f, p_value, n_permutations,
    )
    return DispersionResult(
        group_variable=grouping_var,
        centroid=centroid,
        sample_ids=sample_ids,
        labels=labels,
        distances=distances,
        group_mean_distances={g: float(m) for g, m in zip(names, group_means)},
        f_statistic=float(observed_f),
        df=(k - 1, n - k),
        p_value=float(p_value),
        n_permutations=n_permutations,
        eigenvalues=eigenvalues,
        pairwise=PairwiseComparisonResult(
            method="PERMDISP",
            p_adjust_method=p_adjust_method,
            comparisons=comparisons,
            skipped=skipped,
            measure=distance.measure,
        ),
        measure=distance.measure,
    )


def _present_groups(
    distance: DistanceMatrix, metadata: SampleMetadata, grouping_var: str
) -> dict[str, list[str]]:
    """Group members present in the distance matrix, first-seen group order."""
    groups: dict[str, list[str]] = {}
    for grp, sids in metadata.get_groups(grouping_var).items():
        present = [s for s in sids if s in distance]
        if present:
            groups[grp] = present
    return groups


def _anova_f(values: np.ndarray, codes: np.ndarray, k: int) -> float:
    n = len(values)
    counts = np.bincount(codes, minlength=k)
    means = np.bincount(codes, weights=values, minlength=k) / counts
    fitted = means[codes]
    ss_between = float(((fitted - values.mean()) ** 2).sum())
    ss_within = float(((values - fitted) ** 2).sum())
    if ss_within == 0:
        return np.inf if ss_between > 0 else 0.0
    return (ss_between / (k - 1)) / (ss_within / (n - k))


def _welch_t(values: np.ndarray, codes: np.ndarray, a: int, b: int) -> float:
    x = values[codes == a]
    y = values[codes == b]
    se = np.sqrt(x.var(ddof=1) / len(x) + y.var(ddof=1) / len(y))
    diff = x.mean() - y.mean()
    if se == 0:
        return 0.0 if diff == 0 else float(np.copysign(np.inf, diff))
    return float(diff / se)


def _mean_centre(points: np.ndarray) -> np.ndarray:
    return points.mean(axis=0)


def _spatial_median(
    points: np.ndarray, tol: float = 1e-9, max_iter: int = 1000
) -> np.ndarray:
    """Weiszfeld iterations for the geometric median."""
    if points.shape[1] == 0:
        return np.zeros(0)
    median = points.mean(axis=0)
    for _ in range(max_iter):
        d = np.maximum(np.linalg.norm(points - median, axis=1), tol)
        w = 1.0 / d
        updated = (points * w[:, np.newaxis]).sum(axis=0) / w.sum()
        if np.linalg.norm(updated - median) < tol:
            return updated
        median = updated
    return median
