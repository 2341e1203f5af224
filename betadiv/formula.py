"""Model formulas and design matrices for distance-based linear models.

Supports the right-hand side of R-style formulas: ``A + B`` (main
effects), ``A:B`` (interaction only) and ``A * B`` (main effects plus all
interactions). Terms are returned main effects first, then interactions in
increasing order, which is the order sequential sums of squares are
computed in.
"""

from __future__ import annotations

from itertools import combinations
from typing import Sequence

import numpy as np

from .errors import MissingGroupError
from .io import SampleMetadata


Term = tuple[str, ...]


def parse_formula(formula: str) -> list[Term]:
    """Expand a formula into model terms.

    >>> parse_formula("A * B")
    [('A',), ('B',), ('A', 'B')]
    """
    text = formula.strip() if formula else ""
    if "~" in text:
        text = text.split("~", 1)[1].strip()
    if not text:
        raise MissingGroupError("Empty model formula")

    terms: dict[Term, None] = {}
    for chunk in text.split("+"):
        chunk = chunk.strip()
        if not chunk:
            raise ValueError(f"Malformed formula {formula!r}")
        if "*" in chunk:
            factors = [_clean(f, formula) for f in chunk.split("*")]
            for size in range(1, len(factors) + 1):
                for combo in combinations(factors, size):
                    terms.setdefault(_dedupe(combo), None)
        else:
            factors = [_clean(f, formula) for f in chunk.split(":")]
            terms.setdefault(_dedupe(factors), None)

    # sorted() is stable, so terms of equal order keep formula order
    return sorted(terms, key=len)


def term_name(term: Term) -> str:
    return ":".join(term)


def build_design(
    terms: Sequence[Term],
    metadata: SampleMetadata,
    sample_ids: Sequence[str],
    numeric: Sequence[str] = (),
) -> list[tuple[str, np.ndarray]]:
    """Column blocks of the design matrix, one per term (intercept excluded).

    Categorical variables are treatment-coded against their first level
    (first appearance in ``sample_ids`` order). Variables listed in
    ``numeric`` enter as a single continuous column.
    """
    n = len(sample_ids)
    columns: dict[str, np.ndarray] = {}
    for term in terms:
        for variable in term:
            if variable not in columns:
                values = metadata.labels(variable, sample_ids)
                columns[variable] = (
                    _numeric_column(variable, values)
                    if variable in numeric
                    else _treatment_columns(values)
                )

    blocks: list[tuple[str, np.ndarray]] = []
    for term in terms:
        block = np.ones((n, 1))
        for variable in term:
            cols = columns[variable]
            block = np.einsum("ni,nj->nij", block, cols).reshape(n, -1)
        blocks.append((term_name(term), block))
    return blocks


def _treatment_columns(values: Sequence[str]) -> np.ndarray:
    levels = list(dict.fromkeys(values))
    cols = np.zeros((len(values), max(len(levels) - 1, 0)))
    for j, level in enumerate(levels[1:]):
        cols[:, j] = [v == level for v in values]
    return cols


def _numeric_column(variable: str, values: Sequence[str]) -> np.ndarray:
    try:
        col = np.array([float(v) for v in values])
    except ValueError as e:
        raise ValueError(f"Variable '{variable}' is not numeric: {e}") from e
    return col[:, np.newaxis]


def _clean(name: str, formula: str) -> str:
    name = name.strip()
    if not name:
        raise ValueError(f"Malformed formula {formula!r}")
    return name


def _dedupe(factors: Sequence[str]) -> Term:
    return tuple(dict.fromkeys(factors))
