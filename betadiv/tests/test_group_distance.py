"""Tests for betadiv.group_distance module."""

import numpy as np
import pytest

from betadiv.errors import ConflictingOptionsError, EmptyGroupError, InsufficientDataError
from betadiv.group_distance import (
    PairSelection,
    between_group_distance,
    compare_group_distances,
    star_label,
    within_group_distance,
)
from betadiv.io import DistanceMatrix
from betadiv.tests.fixtures import clustered_samples


def _six_samples():
    ids = ["a1", "a2", "a3", "b1", "b2", "b3"]
    rng = np.random.default_rng(0)
    upper = np.triu(rng.uniform(0.1, 1.0, (6, 6)), k=1)
    dm = DistanceMatrix(sample_ids=ids, data=upper + upper.T, measure="bray")
    groups = {sid: sid[0].upper() for sid in ids}
    return dm, groups


class TestWithinGroupDistance:
    def test_counts(self):
        dm, groups = _six_samples()
        result = within_group_distance(dm, groups)
        by_label = result.by_label()
        assert result.kind == "within"
        assert result.order == ["A", "B"]
        assert len(by_label["A"]) == 3
        assert len(by_label["B"]) == 3
        assert result.measure == "bray"

    def test_values_match_matrix(self):
        dm, groups = _six_samples()
        within_a = within_group_distance(dm, groups).by_label()["A"]
        expected = [dm.data[0, 1], dm.data[0, 2], dm.data[1, 2]]
        np.testing.assert_allclose(np.sort(within_a), np.sort(expected))

    def test_unequal_group_sizes(self):
        dm, _ = clustered_samples({"A": 4, "B": 2, "C": 5})
        result = within_group_distance(dm, {sid: sid[0] for sid in dm.sample_ids})
        counts = {label: len(v) for label, v in result.by_label().items()}
        assert counts == {"A": 6, "B": 1, "C": 10}

    def test_records(self):
        dm, groups = _six_samples()
        records = within_group_distance(dm, groups, group_variable="Group").records()
        assert len(records) == 6
        assert set(records[0]) == {"Group", "value"}

    def test_empty_group(self):
        dm, groups = _six_samples()
        groups["ghost"] = "C"
        with pytest.raises(EmptyGroupError):
            within_group_distance(dm, groups)


class TestBetweenGroupDistance:
    def test_counts_and_label(self):
        dm, groups = _six_samples()
        result = between_group_distance(dm, groups)
        assert result.kind == "between"
        assert result.order == ["A vs B"]
        assert len(result.values) == 9
        np.testing.assert_allclose(
            np.sort(result.values), np.sort(dm.data[:3, 3:].ravel())
        )

    def test_swapping_groups_same_multiset(self):
        dm, groups = _six_samples()
        forward = between_group_distance(dm, groups)
        reordered = {sid: groups[sid] for sid in ["b1", "b2", "b3", "a1", "a2", "a3"]}
        backward = between_group_distance(dm, reordered)
        assert backward.order == ["B vs A"]
        np.testing.assert_allclose(np.sort(forward.values), np.sort(backward.values))

    def test_three_groups(self):
        dm, _ = clustered_samples({"A": 3, "B": 3, "C": 2})
        result = between_group_distance(dm, {sid: sid[0] for sid in dm.sample_ids})
        assert result.order == ["A vs B", "A vs C", "B vs C"]
        assert [len(v) for v in result.by_label().values()] == [9, 6, 6]


class TestPairSelection:
    PAIRS = [("A", "B"), ("A", "C"), ("B", "C")]

    def test_all(self):
        assert PairSelection.all_pairs().apply(self.PAIRS) == self.PAIRS

    def test_pattern(self):
        assert PairSelection.by_pattern("^C$").apply(self.PAIRS) == [("A", "C"), ("B", "C")]

    def test_index(self):
        assert PairSelection.by_index([2, 0]).apply(self.PAIRS) == [("B", "C"), ("A", "B")]

    def test_index_out_of_range(self):
        with pytest.raises(ValueError):
            PairSelection.by_index([3]).apply(self.PAIRS)

    def test_non_integer_index(self):
        with pytest.raises(ValueError):
            PairSelection.by_index(["1"])

    def test_conflicting_options(self):
        with pytest.raises(ConflictingOptionsError):
            PairSelection.from_options(match="A", select=[0])

    def test_from_options_default(self):
        assert PairSelection.from_options().kind == "all"


class TestStarLabel:
    @pytest.mark.parametrize("p,mark", [
        (0.00001, "****"), (0.0005, "***"), (0.005, "**"), (0.03, "*"), (0.2, "ns"),
    ])
    def test_cutpoints(self, p, mark):
        assert star_label(p) == mark


class TestCompareGroupDistances:
    def _within(self):
        dm, meta = clustered_samples(
            {"tight": 6, "loose": 6, "wide": 6},
            separation=0.0,
            spread={"tight": 0.1, "loose": 1.0, "wide": 1.05},
        )
        return within_group_distance(dm, meta.sample_groups("group"), group_variable="group")

    def test_all_pairs(self):
        result = compare_group_distances(self._within(), method="wilcox")
        assert len(result) == 3
        pair = result.get("tight vs loose")
        assert pair is not None
        assert pair.raw_p < 0.05
        assert pair.effect_size < 0
        assert result.p_adjust_method == "none"
        for comp in result.comparisons:
            assert comp.adjusted_p == pytest.approx(comp.raw_p)

    @pytest.mark.parametrize("method", ["wilcox", "t.test", "kruskal", "anova"])
    def test_methods(self, method):
        result = compare_group_distances(self._within(), method=method)
        assert result.method == method
        assert all(0.0 <= c.raw_p <= 1.0 for c in result.comparisons)

    def test_unknown_method(self):
        with pytest.raises(ValueError):
            compare_group_distances(self._within(), method="ks")

    def test_adjustment(self):
        result = compare_group_distances(self._within(), p_adjust_method="bonferroni")
        for comp in result.comparisons:
            assert comp.adjusted_p == pytest.approx(min(1.0, comp.raw_p * 3))

    def test_selection_by_index(self):
        result = compare_group_distances(
            self._within(), selection=PairSelection.by_index([1])
        )
        assert [c.group_pair for c in result.comparisons] == ["tight vs wide"]

    def test_selection_by_pattern(self):
        result = compare_group_distances(
            self._within(), selection=PairSelection.by_pattern("wide")
        )
        assert [c.group_pair for c in result.comparisons] == ["tight vs wide", "loose vs wide"]

    def test_hide_ns(self):
        within = self._within()
        shown = compare_group_distances(within, hide_ns=True)
        pairs = [c.group_pair for c in shown.comparisons]
        assert "tight vs loose" in pairs
        assert "tight vs wide" in pairs
        assert all(star_label(c.raw_p) != "ns" for c in shown.comparisons)

    def test_hide_all_marks(self):
        shown = compare_group_distances(
            self._within(), hide_ns=True, hide_marks=("ns", "*", "**", "***", "****")
        )
        assert len(shown) == 0

    def test_single_value_skipped(self):
        dm, _ = clustered_samples({"A": 4, "B": 2, "C": 4})
        within = within_group_distance(dm, {sid: sid[0] for sid in dm.sample_ids})
        result = compare_group_distances(within)
        assert [s.group_pair for s in result.skipped] == ["A vs B", "B vs C"]
        assert [c.group_pair for c in result.comparisons] == ["A vs C"]

    def test_needs_two_labels(self):
        dm, _ = clustered_samples({"A": 4, "B": 4})
        between = between_group_distance(dm, {sid: sid[0] for sid in dm.sample_ids})
        with pytest.raises(InsufficientDataError):
            compare_group_distances(between)
