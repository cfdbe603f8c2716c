"""
Point estimation and clustered bootstrap inference for matched-set estimators.

This module provides the weighted difference estimator, the unit-level
(cluster) bootstrap engine and the confidence interval builder that turns a
bootstrap distribution into standard errors, percentile intervals and
bias-corrected percentile intervals.
"""

import logging
import warnings
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Hashable, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from panel_estimate.weights import AugmentedPanel

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 250


# =============================================================================
# Difference Estimator
# =============================================================================


def weighted_difference(
    weights: np.ndarray,
    outcome: np.ndarray,
    indicators: np.ndarray,
) -> float:
    """
    Weighted average outcome difference for one lead.

    Computes ``sum(weights * outcome) / sum(indicators)`` over observations
    where the product is defined.

    Parameters
    ----------
    weights : np.ndarray
        Aggregated weight column for the lead.
    outcome : np.ndarray
        Outcome column.
    indicators : np.ndarray
        Aggregated treatment-count column.

    Returns
    -------
    float
        The estimate, or NaN when the indicator total is zero.
    """
    weights = np.asarray(weights, dtype=float)
    outcome = np.asarray(outcome, dtype=float)
    indicators = np.asarray(indicators, dtype=float)

    denom = np.nansum(indicators)
    if denom == 0:
        return np.nan
    with np.errstate(invalid="ignore"):
        products = weights * outcome
    return float(np.sum(products[np.isfinite(products)]) / denom)


def combine_ate(
    att: np.ndarray,
    atc: np.ndarray,
    n_att: np.ndarray,
    n_atc: np.ndarray,
) -> np.ndarray:
    """
    Combine ATT and ATC into the ATE.

    ``(att * n_att + atc * n_atc) / (n_att + n_atc)`` where ``n_att`` and
    ``n_atc`` are the indicator totals. A NaN on either side gives a NaN.
    """
    att = np.asarray(att, dtype=float)
    atc = np.asarray(atc, dtype=float)
    n_att = np.asarray(n_att, dtype=float)
    n_atc = np.asarray(n_atc, dtype=float)
    total = n_att + n_atc
    with np.errstate(divide="ignore", invalid="ignore"):
        ate = (att * n_att + atc * n_atc) / total
    return np.where(total == 0, np.nan, ate)


def side_estimates(panel: AugmentedPanel, qoi: str) -> np.ndarray:
    """Per-lead estimates of one side ("att" or "atc"), ATC negated."""
    sign = -1.0 if qoi == "atc" else 1.0
    outcome = panel.outcome
    indicators = panel.indicators(qoi)
    return np.array([
        sign * weighted_difference(panel.weights(qoi, lead), outcome, indicators)
        for lead in panel.leads
    ])


def point_estimates(panel: AugmentedPanel, qoi: str) -> np.ndarray:
    """
    Point estimates for every requested lead.

    Parameters
    ----------
    panel : AugmentedPanel
        Augmented panel holding the sides ``qoi`` needs.
    qoi : str
        "att", "atc" or "ate".

    Returns
    -------
    np.ndarray
        One estimate per lead, in the panel's lead order.
    """
    if qoi in ("att", "atc"):
        return side_estimates(panel, qoi)
    if qoi == "ate":
        return combine_ate(
            side_estimates(panel, "att"),
            side_estimates(panel, "atc"),
            np.sum(panel.indicators("att")),
            np.sum(panel.indicators("atc")),
        )
    raise ValueError(f"qoi must be 'att', 'atc' or 'ate', got '{qoi}'")


# =============================================================================
# Cluster resampling
# =============================================================================


def draw_clusters(
    n_clusters: int,
    n_iter: int,
    rng: np.random.Generator,
) -> np.ndarray:
    """
    Draw cluster indices uniformly with replacement for every replicate.

    Returns
    -------
    np.ndarray
        Integer array of shape (n_iter, n_clusters); row ``k`` holds the
        indices of the clusters making up replicate ``k``.
    """
    return rng.integers(0, n_clusters, size=(n_iter, n_clusters))


def resample_panel(
    data: pd.DataFrame,
    unit_id: str,
    units: Sequence[Hashable],
) -> pd.DataFrame:
    """
    Build a replicate panel from drawn units.

    All rows of each drawn unit are included, once per draw, in draw order.
    Within-unit row order is preserved.

    Examples
    --------
    >>> df = pd.DataFrame({"id": [1, 1, 2, 2], "y": [0.0, 1.0, 2.0, 3.0]})
    >>> resample_panel(df, "id", [2, 2])["y"].tolist()
    [2.0, 3.0, 2.0, 3.0]
    """
    positions = data.groupby(unit_id, sort=False).indices
    rows = [positions[u] for u in units]
    if not rows:
        return data.iloc[0:0]
    return data.iloc[np.concatenate(rows)].reset_index(drop=True)


@dataclass(frozen=True)
class _UnitTotals:
    """Per-unit sums that every replicate estimate is built from."""

    numerators: np.ndarray  # (n_clusters, n_leads), sum of Wit * Y
    counts: np.ndarray  # (n_clusters,), sum of dits


def _unit_totals(panel: AugmentedPanel, qoi: str, codes: np.ndarray, n_clusters: int) -> _UnitTotals:
    weights = panel.weight_matrix(qoi)
    outcome = panel.outcome
    with np.errstate(invalid="ignore"):
        products = weights * outcome[:, np.newaxis]
    products[~np.isfinite(products)] = 0.0

    numerators = np.zeros((n_clusters, products.shape[1]))
    np.add.at(numerators, codes, products)
    counts = np.bincount(codes, weights=panel.indicators(qoi), minlength=n_clusters)
    return _UnitTotals(numerators=numerators, counts=counts)


def _replicate_side(
    multiplicity: np.ndarray, totals: _UnitTotals, sign: float
) -> Tuple[np.ndarray, np.ndarray]:
    num = multiplicity @ totals.numerators
    den = multiplicity @ totals.counts
    with np.errstate(divide="ignore", invalid="ignore"):
        est = sign * num / den[:, np.newaxis]
    est[den == 0, :] = np.nan
    return est, den


# =============================================================================
# Bootstrap Engine
# =============================================================================


@dataclass(frozen=True)
class BootstrapRun:
    """
    Output of one bootstrap run.

    Attributes
    ----------
    estimates : np.ndarray
        Point estimates on the original panel, one per lead.
    distribution : np.ndarray
        Replicate estimates, shape (n_iter, n_leads); NaN marks degenerate
        replicates.
    clusters : np.ndarray
        Distinct cluster identifiers in order of first appearance.
    draws : np.ndarray
        Drawn cluster indices, shape (n_iter, n_clusters).
    """

    estimates: np.ndarray
    distribution: np.ndarray
    clusters: np.ndarray
    draws: np.ndarray = field(repr=False)

    def drawn_units(self, iteration: int) -> np.ndarray:
        """Cluster identifiers drawn for one replicate."""
        return self.clusters[self.draws[iteration]]


class ClusterBootstrap:
    """
    Unit-level (cluster) nonparametric bootstrap.

    Each replicate draws as many units as the panel has, uniformly with
    replacement, stacks all rows of every drawn unit and re-evaluates the
    weighted difference estimator for every lead.

    Parameters
    ----------
    n_iter : int, default=1000
        Number of bootstrap replicates.
    seed : int, optional
        Seed for the resampling draws. Runs with the same seed are
        bit-identical regardless of ``n_jobs``.
    n_jobs : int, default=1
        Number of worker threads evaluating replicate chunks.
    chunk_size : int, default=250
        Replicates evaluated per chunk.

    Attributes
    ----------
    state_ : str
        "idle", "initializing", "resampling" or "done".
    run_ : BootstrapRun
        Output of the last completed run.

    Notes
    -----
    Replicate estimates are computed from per-unit totals of ``Wit * Y``
    and ``dits`` weighted by how often each unit was drawn. This is exactly
    the estimator evaluated on the stacked replicate panel returned by
    :func:`resample_panel`, without materializing it.
    """

    def __init__(
        self,
        n_iter: int = 1000,
        seed: Optional[int] = None,
        n_jobs: int = 1,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
    ):
        if int(n_iter) != n_iter or n_iter < 1:
            raise ValueError(f"n_iter must be a positive integer, got {n_iter!r}")
        if n_jobs < 1:
            raise ValueError(f"n_jobs must be >= 1, got {n_jobs}")
        if chunk_size < 1:
            raise ValueError(f"chunk_size must be >= 1, got {chunk_size}")
        self.n_iter = int(n_iter)
        self.seed = seed
        self.n_jobs = n_jobs
        self.chunk_size = chunk_size
        self.state_ = "idle"
        self.run_: Optional[BootstrapRun] = None

    def run(self, panel: AugmentedPanel, qoi: str) -> BootstrapRun:
        """
        Compute point estimates and the bootstrap distribution.

        Parameters
        ----------
        panel : AugmentedPanel
            Augmented panel; read-only during the run.
        qoi : str
            "att", "atc" or "ate".

        Returns
        -------
        BootstrapRun
        """
        if self.n_iter < 50:
            warnings.warn(
                f"n_iter={self.n_iter} is low. Consider n_iter >= 199 for "
                "reliable inference. Percentile confidence intervals may be "
                "unreliable with few iterations.",
                UserWarning,
                stacklevel=3,
            )

        self.state_ = "initializing"
        estimates = point_estimates(panel, qoi)

        codes, clusters = pd.factorize(panel.units, sort=False)
        n_clusters = len(clusters)
        sides = ["att", "atc"] if qoi == "ate" else [qoi]
        totals = {side: _unit_totals(panel, side, codes, n_clusters) for side in sides}

        rng = np.random.default_rng(self.seed)
        draws = draw_clusters(n_clusters, self.n_iter, rng)

        self.state_ = "resampling"
        distribution = np.full((self.n_iter, len(panel.leads)), np.nan)
        bounds = [
            (start, min(start + self.chunk_size, self.n_iter))
            for start in range(0, self.n_iter, self.chunk_size)
        ]

        def evaluate(bound: Tuple[int, int]) -> None:
            start, stop = bound
            distribution[start:stop] = self._evaluate_chunk(
                draws[start:stop], n_clusters, totals, qoi
            )

        logger.debug(
            "Running %d bootstrap replicates over %d clusters (%d chunks, n_jobs=%d)",
            self.n_iter, n_clusters, len(bounds), self.n_jobs,
        )
        if self.n_jobs == 1 or len(bounds) == 1:
            for bound in bounds:
                evaluate(bound)
        else:
            with ThreadPoolExecutor(max_workers=self.n_jobs) as executor:
                list(executor.map(evaluate, bounds))

        n_missing = np.sum(~np.isfinite(distribution), axis=0)
        for lead, missing in zip(panel.leads, n_missing):
            if missing > 0:
                warnings.warn(
                    f"{missing}/{self.n_iter} bootstrap replicates for lead {lead} "
                    "are undefined (no matched sets drawn). They are excluded "
                    "from standard errors and intervals.",
                    RuntimeWarning,
                    stacklevel=3,
                )

        self.state_ = "done"
        self.run_ = BootstrapRun(
            estimates=estimates,
            distribution=distribution,
            clusters=np.asarray(clusters),
            draws=draws,
        )
        return self.run_

    @staticmethod
    def _evaluate_chunk(
        draws: np.ndarray,
        n_clusters: int,
        totals: dict,
        qoi: str,
    ) -> np.ndarray:
        n_rows = draws.shape[0]
        multiplicity = np.zeros((n_rows, n_clusters))
        np.add.at(multiplicity, (np.arange(n_rows)[:, np.newaxis], draws), 1.0)

        if qoi == "ate":
            att, n_att = _replicate_side(multiplicity, totals["att"], 1.0)
            atc, n_atc = _replicate_side(multiplicity, totals["atc"], -1.0)
            return combine_ate(att, atc, n_att[:, np.newaxis], n_atc[:, np.newaxis])

        sign = -1.0 if qoi == "atc" else 1.0
        est, _ = _replicate_side(multiplicity, totals[qoi], sign)
        return est


# =============================================================================
# Confidence Interval Builder
# =============================================================================


@dataclass(frozen=True)
class BootstrapSummary:
    """
    Per-lead bootstrap statistics.

    Attributes
    ----------
    se : np.ndarray
        Bootstrap standard errors (sample standard deviation).
    ci_lower, ci_upper : np.ndarray
        Percentile confidence interval bounds.
    bc_estimate : np.ndarray
        Bias-corrected estimates, ``2 * estimate - mean(bootstrap)``.
    bc_ci_lower, bc_ci_upper : np.ndarray
        Bias-corrected percentile interval bounds.
    n_valid : np.ndarray
        Number of finite replicates per lead.
    """

    se: np.ndarray
    ci_lower: np.ndarray
    ci_upper: np.ndarray
    bc_estimate: np.ndarray
    bc_ci_lower: np.ndarray
    bc_ci_upper: np.ndarray
    n_valid: np.ndarray


def percentile_levels(ci: float) -> Tuple[float, float]:
    """Lower and upper quantile levels of a two-sided ``ci`` interval."""
    return ((1 - ci) / 2, ci + (1 - ci) / 2)


def summarize_bootstrap(
    estimates: np.ndarray,
    distribution: np.ndarray,
    ci: float = 0.95,
) -> BootstrapSummary:
    """
    Standard errors and intervals from a bootstrap distribution.

    Each lead (column) is summarized on its own finite replicates:

    - standard error: sample standard deviation (ddof=1);
    - percentile interval: quantiles of the replicates at
      ``(1 - ci) / 2`` and ``ci + (1 - ci) / 2``;
    - bias-corrected estimate: ``2 * estimate - mean(replicates)``;
    - bias-corrected interval: the same quantiles of
      ``2 * estimate - replicates``.

    Parameters
    ----------
    estimates : np.ndarray
        Point estimates, shape (n_leads,).
    distribution : np.ndarray
        Replicates, shape (n_iter, n_leads); may contain NaN.
    ci : float, default=0.95
        Confidence level in (0, 1).

    Returns
    -------
    BootstrapSummary

    References
    ----------
    Efron, B., & Tibshirani, R. J. (1993). An Introduction to the Bootstrap.
    Chapman & Hall. (pp. 138, 170-171)
    """
    if not 0 < ci < 1:
        raise ValueError(f"ci must be in (0, 1), got {ci}")
    estimates = np.atleast_1d(np.asarray(estimates, dtype=float))
    distribution = np.asarray(distribution, dtype=float)
    if distribution.ndim == 1:
        distribution = distribution[:, np.newaxis]
    if distribution.shape[1] != estimates.shape[0]:
        raise ValueError(
            f"Bootstrap distribution has {distribution.shape[1]} columns but "
            f"{estimates.shape[0]} estimates were given"
        )

    probs = percentile_levels(ci)
    n_leads = estimates.shape[0]
    stats = {name: np.full(n_leads, np.nan) for name in (
        "se", "ci_lower", "ci_upper", "bc_estimate", "bc_ci_lower", "bc_ci_upper"
    )}
    n_valid = np.zeros(n_leads, dtype=int)

    for j in range(n_leads):
        column = distribution[:, j]
        column = column[np.isfinite(column)]
        n_valid[j] = column.size
        if column.size == 0:
            continue
        if column.size > 1:
            stats["se"][j] = np.std(column, ddof=1)
        stats["ci_lower"][j], stats["ci_upper"][j] = np.quantile(column, probs)
        stats["bc_estimate"][j] = 2 * estimates[j] - np.mean(column)
        reflected = 2 * estimates[j] - column
        stats["bc_ci_lower"][j], stats["bc_ci_upper"][j] = np.quantile(reflected, probs)

    return BootstrapSummary(n_valid=n_valid, **stats)
