"""Ordination methods (PCA, PCoA, NMDS) for beta-diversity analysis."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from enum import Enum

import numpy as np

from .errors import InsufficientDataError, InvalidRouteError, MissingDistanceError
from .io import AbundanceTable, DistanceMatrix, SampleMetadata, TaxonomyTable

logger = logging.getLogger(__name__)

MAX_PCOA_AXES = 10
LOADING_SCALE = 0.8
PCOA_CORRECTIONS = ("auto", "none", "lingoes", "cailliez")


class OrdinationRoute(str, Enum):
    """Supported ordination methods."""

    PCA = "PCA"
    PCOA = "PCoA"
    NMDS = "NMDS"

    @property
    def needs_distance(self) -> bool:
        return self is not OrdinationRoute.PCA

    @property
    def axis_prefix(self) -> str:
        return {"PCA": "PC", "PCoA": "PCo", "NMDS": "NMDS"}[self.value]

    @classmethod
    def parse(cls, value: str | OrdinationRoute) -> OrdinationRoute:
        """Case-insensitive lookup; raises InvalidRouteError."""
        if isinstance(value, OrdinationRoute):
            return value
        if isinstance(value, str):
            for route in cls:
                if route.value.lower() == value.strip().lower():
                    return route
        raise InvalidRouteError(
            f"Unknown ordination {value!r}; choose one of PCA, PCoA, NMDS"
        )


@dataclass
class NMDSConfig:
    """Configuration for non-metric multidimensional scaling.

    Attributes:
        n_restarts: Number of random starting configurations.
        max_iterations: Maximum SMACOF iterations per restart.
        tolerance: Stop when the relative stress improvement falls below this.
        random_seed: Base seed; each restart draws its own seed from it.
    """

    n_restarts: int = 20
    max_iterations: int = 300
    tolerance: float = 1e-4
    random_seed: int = 42


@dataclass
class OrdinationOptions:
    """Route-specific switches for :func:`compute_ordination`."""

    sqrt_transform: bool = False  # PCA only
    scale_loadings: bool = False  # PCA only
    pcoa_correction: str = "auto"  # PCoA only
    nmds: NMDSConfig = field(default_factory=NMDSConfig)


@dataclass
class FeatureLoadings:
    """PCA feature loadings, ranked by distance from the origin on axes 1-2."""

    feature_ids: list[str]
    values: np.ndarray  # shape (n_features, n_axes)
    dist: np.ndarray  # squared distance from origin on the first two axes
    taxonomy: list[dict[str, str]] | None = None


@dataclass
class OrdinationResult:
    """Ordination coordinates and diagnostics."""

    method: str
    sample_ids: list[str]
    axis_names: list[str]
    coordinates: np.ndarray  # shape (n_samples, n_axes)
    explained_variance: np.ndarray | None  # percent per returned axis (PCA/PCoA)
    stress: float | None  # NMDS only
    eigenvalues: np.ndarray | None = None  # all retained axes (PCA/PCoA)
    loadings: FeatureLoadings | None = None
    converged: bool = True
    warnings: list[str] = field(default_factory=list)
    correction: str = "none"  # PCoA distance correction actually applied

    @property
    def n_axes(self) -> int:
        return self.coordinates.shape[1]

    def explained_by_axis(self) -> dict[str, float]:
        if self.explained_variance is None:
            return {}
        return {a: float(v) for a, v in zip(self.axis_names, self.explained_variance)}

    def scores_table(
        self, metadata: SampleMetadata | None = None
    ) -> dict[str, dict[str, object]]:
        """Per-sample coordinates followed by the sample's metadata columns.

        Raises ValueError if a metadata column is named like an axis.
        """
        if metadata is not None:
            clash = [v for v in metadata.variables if v in self.axis_names]
            if clash:
                raise ValueError(
                    f"Metadata columns {clash} collide with ordination axis names"
                )
        rows: dict[str, dict[str, object]] = {}
        for i, sid in enumerate(self.sample_ids):
            row: dict[str, object] = {
                name: float(self.coordinates[i, j])
                for j, name in enumerate(self.axis_names)
            }
            if metadata is not None:
                for key, val in metadata.records.get(sid, {}).items():
                    row[key] = val
            rows[sid] = row
        return rows


def _double_centre(m: np.ndarray) -> np.ndarray:
    row_mean = m.mean(axis=1, keepdims=True)
    col_mean = m.mean(axis=0, keepdims=True)
    return m - row_mean - col_mean + m.mean()


def gower_centered(dm: np.ndarray) -> np.ndarray:
    """Gower-centred matrix -0.5 * J D^2 J of a distance matrix."""
    return _double_centre(-0.5 * dm**2)


def corrected_distances(dm: np.ndarray, correction: str) -> tuple[np.ndarray, float]:
    """Make a distance matrix Euclidean with a constant (Legendre & Legendre 1998).

    ``"lingoes"`` replaces d by sqrt(d^2 + 2c), with c the magnitude of the
    most negative Gower eigenvalue. ``"cailliez"`` replaces d by d + c, with
    c the largest real eigenvalue of the Cailliez block matrix. Diagonals
    stay zero. Returns the matrix and the constant; a matrix without
    negative eigenvalues comes back unchanged with constant 0.
    """
    if correction not in ("lingoes", "cailliez"):
        raise ValueError(f"Unknown PCoA correction {correction!r}")
    B = gower_centered(dm)
    eigenvalues = np.linalg.eigvalsh(B)
    tol = max(np.abs(eigenvalues).max(), 1.0) * 1e-10
    if eigenvalues.min() >= -tol:
        return dm, 0.0

    n = dm.shape[0]
    off_diagonal = ~np.eye(n, dtype=bool)
    if correction == "lingoes":
        c = float(-eigenvalues.min())
        corrected = np.where(off_diagonal, np.sqrt(dm**2 + 2 * c), 0.0)
    else:
        block = np.block([
            [np.zeros((n, n)), 2 * B],
            [-np.eye(n), -4 * _double_centre(-0.5 * dm)],
        ])
        c = float(np.linalg.eigvals(block).real.max())
        corrected = np.where(off_diagonal, dm + c, 0.0)
    return corrected, c


def principal_coordinates(dm: np.ndarray) -> tuple[np.ndarray, np.ndarray]:
    """Eigendecomposition of the Gower-centred matrix.

    Returns (eigenvalues, eigenvectors) sorted by decreasing eigenvalue.
    Numerically zero eigenvalues are dropped; negative ones are kept.
    """
    B = gower_centered(dm)
    eigenvalues, eigenvectors = np.linalg.eigh(B)

    idx = np.argsort(eigenvalues)[::-1]
    eigenvalues = eigenvalues[idx]
    eigenvectors = eigenvectors[:, idx]

    scale = np.abs(eigenvalues).max() if eigenvalues.size else 0.0
    keep = np.abs(eigenvalues) > max(scale, 1.0) * 1e-10
    return eigenvalues[keep], eigenvectors[:, keep]


def pca(
    table: AbundanceTable,
    n_axes: int = 3,
    sqrt_transform: bool = False,
    scale_loadings: bool = False,
    taxonomy: TaxonomyTable | None = None,
) -> OrdinationResult:
    """Principal Component Analysis of the sample-by-feature matrix.

    Explained variance is each eigenvalue as a percentage of the total
    variance, rounded to one decimal. With ``scale_loadings`` the loadings
    on axes 1 and 2 are stretched so their largest magnitude is 80% of the
    largest sample score on that axis.
    """
    from sklearn.decomposition import PCA

    X = table.abundances.T.astype(np.float64)
    if sqrt_transform:
        X = np.sqrt(X)
    n_samples, n_features = X.shape
    _check_sample_count(n_samples)
    max_axes = min(n_samples, n_features)
    if n_axes > max_axes:
        raise InsufficientDataError(
            f"PCA can return at most {max_axes} axes, {n_axes} requested"
        )
    if X.var(axis=0).sum() == 0:
        raise InsufficientDataError("Abundance table has no variance across samples")

    model = PCA(n_components=max_axes, svd_solver="full")
    scores = model.fit_transform(X)[:, :n_axes]
    explained = np.round(model.explained_variance_ratio_[:n_axes] * 100, 1)

    loadings = model.components_[:n_axes].T.copy()
    lead = min(2, n_axes)
    if scale_loadings:
        for a in range(lead):
            max_load = np.abs(loadings[:, a]).max()
            if max_load > 0:
                loadings[:, a] *= np.abs(scores[:, a]).max() / max_load * LOADING_SCALE

    dist = (loadings[:, :lead] ** 2).sum(axis=1)
    order = np.argsort(-dist, kind="stable")
    feature_ids = [table.feature_ids[i] for i in order]

    return OrdinationResult(
        method=OrdinationRoute.PCA.value,
        sample_ids=list(table.sample_ids),
        axis_names=_axis_names(OrdinationRoute.PCA, n_axes),
        coordinates=scores,
        explained_variance=explained,
        stress=None,
        eigenvalues=model.explained_variance_.copy(),
        loadings=FeatureLoadings(
            feature_ids=feature_ids,
            values=loadings[order],
            dist=dist[order],
            taxonomy=taxonomy.lookup_columns(feature_ids) if taxonomy else None,
        ),
    )


def pcoa(
    distance: DistanceMatrix, n_axes: int = 3, correction: str = "auto"
) -> OrdinationResult:
    """Principal Coordinates Analysis via classical MDS.

    Double-centers the squared distance matrix, eigendecomposes, and
    returns the top axes. Percent explained uses the sum of *all* retained
    eigenvalues as denominator, negative ones included, so the percentages
    of every retained axis sum to 100.

    ``correction`` handles non-Euclidean input: ``"none"`` keeps the raw
    eigenvalues, ``"lingoes"`` and ``"cailliez"`` correct the distances
    first (see :func:`corrected_distances`). ``"auto"`` stays uncorrected
    unless some axis would explain more than 100%, in which case the
    Lingoes correction is applied.
    """
    if correction not in PCOA_CORRECTIONS:
        raise ValueError(
            f"correction must be one of {PCOA_CORRECTIONS}, got {correction!r}"
        )
    _check_distance(distance)
    n = distance.n_samples

    data = distance.data
    applied, constant = "none", 0.0
    if correction in ("lingoes", "cailliez"):
        data, constant = corrected_distances(data, correction)
        if constant:
            applied = correction
    eigenvalues, eigenvectors = principal_coordinates(data)
    if correction == "auto" and np.any(np.abs(eigenvalues) > eigenvalues.sum()):
        data, constant = corrected_distances(data, "lingoes")
        applied = "lingoes"
        eigenvalues, eigenvectors = principal_coordinates(data)

    n_positive = int((eigenvalues > 0).sum())
    k = min(n_axes, MAX_PCOA_AXES, n - 1, n_positive)
    if k < 1:
        raise InsufficientDataError("Distance matrix has no positive principal axis")

    coords = eigenvectors[:, :k] * np.sqrt(eigenvalues[:k])[np.newaxis, :]
    explained = np.round(eigenvalues[:k] / eigenvalues.sum() * 100, 1)

    warnings: list[str] = []
    n_negative = int((eigenvalues < 0).sum())
    if n_negative:
        warnings.append(f"{n_negative} negative eigenvalues (non-Euclidean distances)")
        logger.debug("PCoA: %d negative eigenvalues retained", n_negative)
    if applied != "none":
        msg = f"PCoA: {applied} correction applied (constant {constant:.4g})"
        warnings.append(msg)
        logger.info(msg)

    return OrdinationResult(
        method=OrdinationRoute.PCOA.value,
        sample_ids=list(distance.sample_ids),
        axis_names=_axis_names(OrdinationRoute.PCOA, k),
        coordinates=coords,
        explained_variance=explained,
        stress=None,
        eigenvalues=eigenvalues,
        warnings=warnings,
        correction=applied,
    )


def nmds(
    distance: DistanceMatrix,
    n_axes: int = 2,
    config: NMDSConfig | None = None,
) -> OrdinationResult:
    """Non-metric Multidimensional Scaling with random restarts.

    Each restart runs non-metric SMACOF from a random configuration; the
    lowest-stress solution is centred and rotated to principal axes. A best
    run that stops at ``max_iterations`` is returned with
    ``converged=False`` rather than raising.
    """
    from sklearn.manifold import smacof

    cfg = config or NMDSConfig()
    _check_distance(distance)
    n = distance.n_samples
    if n_axes >= n:
        raise InsufficientDataError(
            f"NMDS needs more samples ({n}) than dimensions ({n_axes})"
        )

    dissimilarities = np.array(distance.data)
    base_rng = np.random.default_rng(cfg.random_seed)

    best_stress = np.inf
    best_coords = None
    best_converged = False
    best_iterations = 0
    restart_stress: list[float] = []

    for restart in range(cfg.n_restarts):
        seed = int(base_rng.integers(0, 2**31))
        rng = np.random.default_rng(seed)
        init = rng.uniform(size=(n, n_axes))

        coords, stress, n_iter = smacof(
            dissimilarities,
            metric=False,
            n_components=n_axes,
            init=init,
            n_init=1,
            max_iter=cfg.max_iterations + 1,
            eps=cfg.tolerance,
            random_state=seed,
            return_n_iter=True,
            normalized_stress=True,
        )
        stress = float(stress)
        # the spare iteration separates convergence on the last allowed step
        # from hitting the cap
        converged = n_iter <= cfg.max_iterations
        restart_stress.append(stress)

        if stress < best_stress:
            best_stress = stress
            best_coords = coords
            best_converged = converged
            best_iterations = min(int(n_iter), cfg.max_iterations)

        logger.debug(
            "NMDS restart %d/%d: stress=%.4f, %d iterations, converged=%s",
            restart + 1, cfg.n_restarts, stress, n_iter, converged,
        )

    if best_coords is None:
        raise InsufficientDataError("NMDS requires at least one restart")

    warnings: list[str] = []
    if not best_converged:
        msg = (
            f"NMDS best solution did not converge in {best_iterations} iterations "
            f"(stress={best_stress:.4f})"
        )
        warnings.append(msg)
        logger.warning(msg)

    return OrdinationResult(
        method=OrdinationRoute.NMDS.value,
        sample_ids=list(distance.sample_ids),
        axis_names=_axis_names(OrdinationRoute.NMDS, n_axes),
        coordinates=_principal_rotation(best_coords),
        explained_variance=None,
        stress=best_stress,
        converged=best_converged,
        warnings=warnings,
    )


def compute_ordination(
    route: str | OrdinationRoute,
    *,
    abundance: AbundanceTable | None = None,
    distance: DistanceMatrix | None = None,
    dimensions: int = 3,
    options: OrdinationOptions | None = None,
    taxonomy: TaxonomyTable | None = None,
) -> OrdinationResult:
    """Run one ordination route and return its common result shape."""
    route = OrdinationRoute.parse(route)
    options = options or OrdinationOptions()
    if dimensions < 1:
        raise InsufficientDataError(f"dimensions must be >= 1, got {dimensions}")

    if route.needs_distance and distance is None:
        raise MissingDistanceError(f"{route.value} requires a distance matrix")

    if route is OrdinationRoute.PCA:
        if abundance is None:
            raise InsufficientDataError("PCA requires an abundance table")
        return pca(
            abundance,
            n_axes=dimensions,
            sqrt_transform=options.sqrt_transform,
            scale_loadings=options.scale_loadings,
            taxonomy=taxonomy,
        )
    if route is OrdinationRoute.PCOA:
        return pcoa(distance, n_axes=dimensions, correction=options.pcoa_correction)
    return nmds(distance, n_axes=dimensions, config=options.nmds)


def _axis_names(route: OrdinationRoute, n_axes: int) -> list[str]:
    return [f"{route.axis_prefix}{i + 1}" for i in range(n_axes)]


def _principal_rotation(coords: np.ndarray) -> np.ndarray:
    """Centre a configuration and rotate it onto its principal axes."""
    centred = coords - coords.mean(axis=0, keepdims=True)
    _, _, vt = np.linalg.svd(centred, full_matrices=False)
    return centred @ vt.T


def _check_sample_count(n: int) -> None:
    if n < 3:
        raise InsufficientDataError(f"Ordination needs at least 3 samples, got {n}")


def _check_distance(distance: DistanceMatrix) -> None:
    _check_sample_count(distance.n_samples)
    if not np.any(distance.data > 0):
        raise InsufficientDataError("All pairwise distances are zero")
