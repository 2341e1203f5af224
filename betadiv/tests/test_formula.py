"""Tests for betadiv.formula module."""

import numpy as np
import pytest

from betadiv.errors import MissingGroupError
from betadiv.formula import build_design, parse_formula, term_name
from betadiv.io import SampleMetadata


class TestParseFormula:
    def test_single(self):
        assert parse_formula("Group") == [("Group",)]

    def test_additive(self):
        assert parse_formula("Group + Type") == [("Group",), ("Type",)]

    def test_crossed(self):
        assert parse_formula("A * B") == [("A",), ("B",), ("A", "B")]

    def test_three_way_crossed_order(self):
        terms = parse_formula("A*B*C")
        assert [len(t) for t in terms] == [1, 1, 1, 2, 2, 2, 3]
        assert terms[-1] == ("A", "B", "C")

    def test_interaction_only(self):
        assert parse_formula("A + A:B") == [("A",), ("A", "B")]

    def test_interactions_after_main_effects(self):
        assert parse_formula("A:B + C") == [("C",), ("A", "B")]

    def test_leading_tilde(self):
        assert parse_formula("~ Group + Type") == [("Group",), ("Type",)]

    def test_duplicates_collapsed(self):
        assert parse_formula("A + A * B") == [("A",), ("B",), ("A", "B")]

    def test_empty(self):
        with pytest.raises(MissingGroupError):
            parse_formula("  ")

    def test_malformed(self):
        with pytest.raises(ValueError):
            parse_formula("A + + B")

    def test_term_name(self):
        assert term_name(("A", "B")) == "A:B"


class TestBuildDesign:
    META = SampleMetadata(records={
        "s1": {"site": "x", "ph": "5.0"},
        "s2": {"site": "y", "ph": "6.5"},
        "s3": {"site": "z", "ph": "7.0"},
        "s4": {"site": "x", "ph": "8.0"},
    })

    def test_treatment_coding(self):
        blocks = build_design([("site",)], self.META, ["s1", "s2", "s3", "s4"])
        name, block = blocks[0]
        assert name == "site"
        np.testing.assert_array_equal(block, [[0, 0], [1, 0], [0, 1], [0, 0]])

    def test_numeric(self):
        blocks = build_design([("ph",)], self.META, ["s1", "s2"], numeric=["ph"])
        np.testing.assert_allclose(blocks[0][1], [[5.0], [6.5]])

    def test_numeric_rejects_text(self):
        with pytest.raises(ValueError):
            build_design([("site",)], self.META, ["s1"], numeric=["site"])

    def test_interaction_columns(self):
        blocks = build_design(
            [("site",), ("ph",), ("site", "ph")],
            self.META, ["s1", "s2", "s3", "s4"], numeric=["ph"],
        )
        _, inter = blocks[2]
        assert inter.shape == (4, 2)
        np.testing.assert_allclose(inter, [[0, 0], [6.5, 0], [0, 7.0], [0, 0]])

    def test_unknown_variable(self):
        with pytest.raises(MissingGroupError):
            build_design([("depth",)], self.META, ["s1"])
