"""
Results classes for matched-set panel estimation.

Provides statsmodels-style output with a more Pythonic interface.
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

import numpy as np
import pandas as pd

from panel_estimate.bootstrap import BootstrapSummary, summarize_bootstrap

QOI_NAMES = {
    "att": "Average Treatment Effect on the Treated (ATT)",
    "atc": "Average Treatment Effect on the Control (ATC)",
    "ate": "Average Treatment Effect (ATE)",
}

METHOD_TITLES = {
    "Maha": "Weighted Difference-in-Differences with Mahalanobis Distance",
    "Pscore": "Weighted Difference-in-Differences with Propensity Score",
    "Synth": "Weighted Difference-in-Differences with Synthetic Control",
    "CBPS": "Weighted Difference-in-Differences with Covariate Balancing Propensity Score",
}


@dataclass(frozen=True)
class PanelEstimateResults:
    """
    Results from bootstrap estimation over matched sets.

    Attributes
    ----------
    estimates : pd.Series
        Point estimate per lead, indexed by lead label (``t+0``, ``t-2``).
    bootstrap : np.ndarray
        Bootstrap replicates of shape (n_iter, n_leads). NaN marks replicates
        whose drawn units contained no matched set.
    n_iter : int
        Number of bootstrap replicates.
    method : str
        Matching method inherited from the matching step.
    lag : int
        Number of lags used for matching.
    lead : tuple of int
        Requested leads.
    ci_level : float
        Confidence level of the intervals.
    qoi : str
        Effective quantity of interest.
    requested_qoi : str
        Quantity of interest asked for, before any fallback.
    qoi_fallback : bool
        True when the effective qoi differs from the requested one because a
        matched-set collection had no matches.
    estimator : str
        "did" or "matching".
    n_clusters : int
        Number of units resampled in each replicate.
    seed : int, optional
        Seed used for the resampling draws.
    """

    estimates: pd.Series
    bootstrap: np.ndarray = field(repr=False)
    n_iter: int
    method: str
    lag: int
    lead: Tuple[int, ...]
    ci_level: float
    qoi: str
    requested_qoi: Optional[str] = None
    qoi_fallback: bool = False
    estimator: str = "did"
    n_clusters: int = 0
    seed: Optional[int] = None

    def __post_init__(self) -> None:
        # Stored as read-only copies of the inputs
        values = np.array(self.estimates, dtype=float)
        values.setflags(write=False)
        estimates = pd.Series(
            values, index=self.estimates.index.copy(), name=self.estimates.name, copy=False
        )
        boots = np.array(self.bootstrap, dtype=float)
        boots.setflags(write=False)
        object.__setattr__(self, "estimates", estimates)
        object.__setattr__(self, "bootstrap", boots)

    def __repr__(self) -> str:
        est = ", ".join(f"{k}={v:.4f}" for k, v in self.estimates.items())
        return (
            f"PanelEstimateResults(qoi={self.qoi!r}, {est}, "
            f"n_iter={self.n_iter})"
        )

    def bootstrap_summary(self, ci: Optional[float] = None) -> BootstrapSummary:
        """
        Bootstrap statistics per lead.

        Parameters
        ----------
        ci : float, optional
            Confidence level. Defaults to ``ci_level``.
        """
        return summarize_bootstrap(
            self.estimates.to_numpy(dtype=float),
            self.bootstrap,
            ci=self.ci_level if ci is None else ci,
        )

    @property
    def se(self) -> pd.Series:
        """Bootstrap standard errors."""
        return pd.Series(self.bootstrap_summary().se, index=self.estimates.index)

    @property
    def conf_int(self) -> pd.DataFrame:
        """Percentile confidence interval, columns ``lower`` and ``upper``."""
        s = self.bootstrap_summary()
        return pd.DataFrame(
            {"lower": s.ci_lower, "upper": s.ci_upper}, index=self.estimates.index
        )

    @property
    def bias_corrected(self) -> pd.Series:
        """Bias-corrected point estimates."""
        return pd.Series(self.bootstrap_summary().bc_estimate, index=self.estimates.index)

    @property
    def n_missing(self) -> pd.Series:
        """Undefined bootstrap replicates per lead."""
        return pd.Series(
            np.sum(~np.isfinite(self.bootstrap), axis=0), index=self.estimates.index
        )

    def summary_table(self, ci: Optional[float] = None) -> pd.DataFrame:
        """
        Point estimates, standard errors and intervals by lead.

        Parameters
        ----------
        ci : float, optional
            Confidence level. Defaults to ``ci_level``.

        Returns
        -------
        pd.DataFrame
            One column per lead and seven rows: point estimate, standard
            error, percentile bounds, bias-corrected estimate and
            bias-corrected bounds.
        """
        ci = self.ci_level if ci is None else ci
        s = self.bootstrap_summary(ci)
        pct = f"{ci * 100:g}%"
        rows = {
            "Point Estimate(s)": self.estimates.to_numpy(dtype=float),
            "Standard Error(s)": s.se,
            f"Lower Limit of {pct} Regular Confidence Interval": s.ci_lower,
            f"Upper Limit of {pct} Regular Confidence Interval": s.ci_upper,
            "Bias-corrected Estimate(s)": s.bc_estimate,
            f"Lower Limit of {pct} Bias-corrected Confidence Interval": s.bc_ci_lower,
            f"Upper Limit of {pct} Bias-corrected Confidence Interval": s.bc_ci_upper,
        }
        return pd.DataFrame.from_dict(
            rows, orient="index", columns=list(self.estimates.index)
        )

    def summary(self, ci: Optional[float] = None) -> str:
        """
        Generate a formatted summary of the estimation results.

        Parameters
        ----------
        ci : float, optional
            Confidence level. Defaults to ``ci_level``.

        Returns
        -------
        str
            Formatted summary table.
        """
        table = self.summary_table(ci)
        width = 85
        title = METHOD_TITLES.get(
            self.method, f"Weighted Difference-in-Differences ({self.method})"
        )
        lines = [
            "=" * width,
            title.center(width),
            "=" * width,
            "",
            f"{'Matches created with:':<35} {self.lag:>6} lags",
            f"{'Bootstrap samples:':<35} {self.n_iter:>6}",
            f"{'Units resampled:':<35} {self.n_clusters:>6}",
            f"{'Estimator:':<35} {self.estimator:>6}",
            "",
            f"Estimate of {QOI_NAMES[self.qoi]} by Period:",
            "-" * width,
            table.to_string(float_format=lambda v: f"{v:.4f}"),
            "-" * width,
        ]
        if self.qoi_fallback:
            lines.append(
                f"Note: requested qoi '{self.requested_qoi}' had no matched sets; "
                f"reporting '{self.qoi}' instead."
            )
        n_missing = int(self.n_missing.sum())
        if n_missing:
            lines.append(f"Note: {n_missing} undefined bootstrap replicate(s) excluded.")
        lines.append("=" * width)
        return "\n".join(lines)

    def print_summary(self, ci: Optional[float] = None) -> None:
        """Print the summary to stdout."""
        print(self.summary(ci))

    def to_dataframe(self) -> pd.DataFrame:
        """
        Convert results to a pandas DataFrame.

        Returns
        -------
        pd.DataFrame
            One row per lead with estimate, se, percentile and bias-corrected
            intervals and the number of valid replicates.
        """
        s = self.bootstrap_summary()
        return pd.DataFrame({
            "lead": list(self.lead),
            "estimate": self.estimates.to_numpy(dtype=float),
            "se": s.se,
            "ci_lower": s.ci_lower,
            "ci_upper": s.ci_upper,
            "bc_estimate": s.bc_estimate,
            "bc_ci_lower": s.bc_ci_lower,
            "bc_ci_upper": s.bc_ci_upper,
            "n_valid": s.n_valid,
        }, index=self.estimates.index)

    def to_dict(self) -> dict:
        """
        Convert results to a dictionary.

        Returns
        -------
        dict
            The point estimates, bootstrap matrix and run metadata.
        """
        return {
            "o_coef": self.estimates.to_dict(),
            "boots": self.bootstrap,
            "n_iter": self.n_iter,
            "method": self.method,
            "lag": self.lag,
            "lead": list(self.lead),
            "ci": self.ci_level,
            "qoi": self.qoi,
            "qoi_fallback": self.qoi_fallback,
        }


@dataclass
class WFEResults:
    """
    Results from the default weighted fixed-effects estimator.

    Attributes
    ----------
    coefficient : float
        Coefficient on the treatment variable.
    se : float
        Cluster-robust (unit) standard error.
    t_stat : float
        T-statistic.
    p_value : float
        Two-sided p-value.
    conf_int : tuple[float, float]
        Confidence interval.
    n_obs : int
        Observations with positive weight.
    n_units : int
        Units with positive weight.
    method : str
        "unit" or "time" demeaning.
    qoi : str
        Quantity of interest.
    formula : str
        Regression formula.
    """

    coefficient: float
    se: float
    t_stat: float
    p_value: float
    conf_int: Tuple[float, float]
    n_obs: int
    n_units: int
    method: str
    qoi: str
    formula: str
    ci_level: float = 0.95
    vcov: Optional[np.ndarray] = field(default=None, repr=False)

    def __repr__(self) -> str:
        return (
            f"WFEResults({self.qoi.upper()}={self.coefficient:.4f}, "
            f"SE={self.se:.4f}, p={self.p_value:.4f})"
        )

    def summary(self) -> str:
        """Formatted summary of the fit."""
        conf_level = f"{self.ci_level * 100:g}"
        lines = [
            "=" * 70,
            "Weighted Fixed Effects Estimation Results".center(70),
            "=" * 70,
            "",
            f"{'Formula:':<25} {self.formula:>30}",
            f"{'Demeaning:':<25} {self.method:>30}",
            f"{'Observations:':<25} {self.n_obs:>30}",
            f"{'Units:':<25} {self.n_units:>30}",
            "",
            "-" * 70,
            f"{'Parameter':<15} {'Estimate':>12} {'Std. Err.':>12} {'t-stat':>10} {'P>|t|':>10}",
            "-" * 70,
            f"{self.qoi.upper():<15} {self.coefficient:>12.4f} {self.se:>12.4f} "
            f"{self.t_stat:>10.3f} {self.p_value:>10.4f}",
            "-" * 70,
            "",
            f"{conf_level}% Confidence Interval: [{self.conf_int[0]:.4f}, {self.conf_int[1]:.4f}]",
            "=" * 70,
        ]
        return "\n".join(lines)

    def print_summary(self) -> None:
        """Print the summary to stdout."""
        print(self.summary())
