"""Within- and between-group sample distances and their comparison."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from itertools import combinations
from typing import Mapping, Sequence

import numpy as np
from scipy import stats as sp_stats

from .errors import ConflictingOptionsError, EmptyGroupError, InsufficientDataError
from .io import DistanceMatrix
from .stats import (
    PairwiseComparison,
    PairwiseComparisonResult,
    SkippedComparison,
    adjust_p_values,
    significance_label,
)

logger = logging.getLogger(__name__)

COMPARISON_METHODS = ("wilcox", "t.test", "kruskal", "anova")

# star thresholds for comparing distance distributions
STAR_CUTPOINTS = ((1e-4, "****"), (1e-3, "***"), (1e-2, "**"), (0.05, "*"))


@dataclass
class GroupDistanceResult:
    """Distance values labelled by group (within) or group pair (between)."""

    kind: str  # "within" or "between"
    group_variable: str
    labels: list[str]
    values: np.ndarray
    order: list[str]  # distinct labels in output order
    measure: str = ""

    def records(self) -> list[dict[str, object]]:
        return [
            {self.group_variable: label, "value": float(v)}
            for label, v in zip(self.labels, self.values)
        ]

    def by_label(self) -> dict[str, np.ndarray]:
        labels = np.array(self.labels, dtype=object)
        return {label: self.values[labels == label] for label in self.order}


@dataclass(frozen=True)
class PairSelection:
    """Which label pairs to compare: all, by regex match, or by position.

    Build with :meth:`all_pairs`, :meth:`by_pattern` or :meth:`by_index`.
    Positions are 0-based indices into the combination order of labels.
    """

    kind: str = "all"
    pattern: str | None = None
    indices: tuple[int, ...] = ()

    @classmethod
    def all_pairs(cls) -> PairSelection:
        return cls()

    @classmethod
    def by_pattern(cls, pattern: str) -> PairSelection:
        re.compile(pattern)
        return cls(kind="pattern", pattern=pattern)

    @classmethod
    def by_index(cls, indices: Sequence[int]) -> PairSelection:
        if any(isinstance(i, bool) or not isinstance(i, (int, np.integer)) for i in indices):
            raise ValueError("Pair indices must be integers")
        return cls(kind="index", indices=tuple(int(i) for i in indices))

    @classmethod
    def from_options(
        cls, match: str | None = None, select: Sequence[int] | None = None
    ) -> PairSelection:
        if match is not None and select is not None:
            raise ConflictingOptionsError(
                "Select pairs either by pattern or by index, not both"
            )
        if match is not None:
            return cls.by_pattern(match)
        if select is not None:
            return cls.by_index(select)
        return cls.all_pairs()

    def apply(self, pairs: list[tuple[str, str]]) -> list[tuple[str, str]]:
        if self.kind == "pattern":
            rx = re.compile(self.pattern)
            return [p for p in pairs if rx.search(p[0]) or rx.search(p[1])]
        if self.kind == "index":
            bad = [i for i in self.indices if not 0 <= i < len(pairs)]
            if bad:
                raise ValueError(f"Pair indices {bad} out of range for {len(pairs)} pairs")
            return [pairs[i] for i in self.indices]
        return list(pairs)


def within_group_distance(
    distance: DistanceMatrix,
    sample_groups: Mapping[str, str],
    group_variable: str = "group",
) -> GroupDistanceResult:
    """Distances between samples of the same group.

    A group with k members contributes k*(k-1)/2 values. Groups are
    reported in order of first appearance in ``sample_groups``.
    """
    groups = _group_members(distance, sample_groups)
    labels: list[str] = []
    chunks: list[np.ndarray] = []
    for grp, members in groups.items():
        vals = distance.subset(members).condensed()
        labels.extend([grp] * len(vals))
        chunks.append(vals)
    return GroupDistanceResult(
        kind="within",
        group_variable=group_variable,
        labels=labels,
        values=np.concatenate(chunks) if chunks else np.zeros(0),
        order=list(groups),
        measure=distance.measure,
    )


def between_group_distance(
    distance: DistanceMatrix,
    sample_groups: Mapping[str, str],
    group_variable: str = "group",
) -> GroupDistanceResult:
    """All cross-distances for every pair of groups, labelled "A vs B"."""
    groups = _group_members(distance, sample_groups)
    labels: list[str] = []
    order: list[str] = []
    chunks: list[np.ndarray] = []
    for g1, g2 in combinations(groups, 2):
        pair = f"{g1} vs {g2}"
        vals = distance.block(groups[g1], groups[g2]).ravel(order="F")
        labels.extend([pair] * len(vals))
        order.append(pair)
        chunks.append(vals)
    return GroupDistanceResult(
        kind="between",
        group_variable=group_variable,
        labels=labels,
        values=np.concatenate(chunks) if chunks else np.zeros(0),
        order=order,
        measure=distance.measure,
    )


def star_label(p: float) -> str:
    for cut, mark in STAR_CUTPOINTS:
        if p <= cut:
            return mark
    return "ns"


def compare_group_distances(
    result: GroupDistanceResult,
    method: str = "wilcox",
    p_adjust_method: str = "none",
    selection: PairSelection | None = None,
    hide_ns: bool = False,
    hide_marks: Sequence[str] = ("ns",),
) -> PairwiseComparisonResult:
    """Compare the distance distributions of every pair of labels.

    ``hide_ns`` drops pairs whose star label (from the raw p-value) is in
    ``hide_marks``; otherwise ``selection`` picks the pairs. Effect size is
    the difference in mean distance.
    """
    if method not in COMPARISON_METHODS:
        raise ValueError(f"method must be one of {COMPARISON_METHODS}, got {method!r}")
    selection = selection or PairSelection.all_pairs()
    by_label = result.by_label()
    if len(by_label) < 2:
        raise InsufficientDataError("Need at least two labels to compare distances")

    pairs = list(combinations(result.order, 2))
    if not hide_ns:
        pairs = selection.apply(pairs)
        if selection.kind == "index":
            logger.info(
                "Selected pairs: %s", " ".join(f"{a}-{b}" for a, b in pairs)
            )

    tested: list[tuple[str, float, float, float]] = []
    skipped: list[SkippedComparison] = []
    for a, b in pairs:
        pair = f"{a} vs {b}"
        x, y = by_label[a], by_label[b]
        if len(x) < 2 or len(y) < 2:
            reason = "fewer than 2 distance values on one side"
            skipped.append(SkippedComparison(pair, reason))
            logger.warning("Distance comparison %s skipped: %s", pair, reason)
            continue
        stat, p = _two_sample_test(method, x, y)
        if hide_ns and star_label(p) in hide_marks:
            continue
        tested.append((pair, stat, float(x.mean() - y.mean()), p))

    adjusted = adjust_p_values([t[3] for t in tested], p_adjust_method)
    comparisons = [
        PairwiseComparison(
            group_pair=pair,
            test_statistic=stat,
            effect_size=effect,
            raw_p=p,
            adjusted_p=float(q),
            significance_label=significance_label(q),
        )
        for (pair, stat, effect, p), q in zip(tested, adjusted)
    ]
    return PairwiseComparisonResult(
        method=method,
        p_adjust_method=p_adjust_method,
        comparisons=comparisons,
        skipped=skipped,
        measure=result.measure,
    )


def _two_sample_test(method: str, x: np.ndarray, y: np.ndarray) -> tuple[float, float]:
    if method == "wilcox":
        res = sp_stats.mannwhitneyu(x, y, alternative="two-sided")
    elif method == "t.test":
        res = sp_stats.ttest_ind(x, y, equal_var=False)
    elif method == "kruskal":
        res = sp_stats.kruskal(x, y)
    else:
        res = sp_stats.f_oneway(x, y)
    stat, p = float(res.statistic), float(res.pvalue)
    if np.isnan(p):
        p = 1.0
    return stat, p


def _group_members(
    distance: DistanceMatrix, sample_groups: Mapping[str, str]
) -> dict[str, list[str]]:
    """Group value -> member IDs present in the matrix, first-seen order."""
    groups: dict[str, list[str]] = {}
    for sid, grp in sample_groups.items():
        if grp is None:
            continue
        members = groups.setdefault(grp, [])
        if sid in distance:
            members.append(sid)
    empty = [g for g, members in groups.items() if not members]
    if empty:
        raise EmptyGroupError(
            f"Group(s) {', '.join(map(str, empty))} have no samples in the distance matrix"
        )
    return groups
