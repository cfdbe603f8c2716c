"""
Matched-set panel estimators with sklearn-like API.
"""

import logging
import warnings
from typing import Any, Dict, Iterable, Optional, Tuple, Union

import pandas as pd

from panel_estimate.bootstrap import ClusterBootstrap
from panel_estimate.matched_sets import (
    VALID_QOIS,
    MatchedSetCollection,
    PanelMatchResult,
    truncate_collection,
)
from panel_estimate.results import PanelEstimateResults
from panel_estimate.utils import (
    VALID_ESTIMATORS,
    VALID_INFERENCE,
    as_leads,
    lead_labels,
    validate_choice,
    validate_ci,
)
from panel_estimate.weights import AugmentedPanel, aggregate_leads
from panel_estimate.wfe import WFEEstimator, build_wfe_specification, fit_wfe

logger = logging.getLogger(__name__)


class PanelEstimate:
    """
    Treatment effect estimator over matched sets of panel observations.

    Converts the matched sets produced by a matching step into
    per-observation weights and estimates the average treatment effect on
    the treated (ATT), on the control (ATC) or overall (ATE) for each
    requested lead. Uncertainty comes from a unit-level (cluster) bootstrap
    or from a weighted fixed-effects regression.

    Parameters
    ----------
    lead : int or sequence of int, default=0
        Lead periods (relative to treatment onset) to estimate.
    inference : str, default="bootstrap"
        "bootstrap" for the cluster bootstrap, "wfe" for a weighted
        fixed-effects fit (single lead only).
    n_iter : int, default=1000
        Number of bootstrap replicates.
    estimator : str, default="did"
        "did" (difference-in-differences against the period before
        treatment) or "matching" (post-period differences only).
    df_adjustment : bool, default=False
        Degrees-of-freedom adjustment for the "wfe" standard error.
    qoi : str, optional
        "att", "atc" or "ate". Defaults to the qoi of the matching step.
    ci : float, default=0.95
        Confidence level of the bootstrap intervals.
    seed : int, optional
        Random seed for the bootstrap draws.
    n_jobs : int, default=1
        Worker threads for the bootstrap.
    wfe_estimator : callable, optional
        Weighted fixed-effects estimator used when ``inference="wfe"``;
        receives a :class:`~panel_estimate.wfe.WFESpecification`. Defaults to
        :func:`~panel_estimate.wfe.weighted_fixed_effects`.

    Attributes
    ----------
    results_ : PanelEstimateResults or object
        Bootstrap results, or the fitted model returned by the wfe
        estimator.
    panel_ : AugmentedPanel
        Panel with the aggregated weight and indicator columns.
    qoi_ : str
        Effective quantity of interest.
    is_fitted_ : bool
        Whether the model has been fitted.

    Examples
    --------
    >>> from panel_estimate import PanelEstimate, generate_matched_panel
    >>> matches = generate_matched_panel(n_units=40, n_periods=8, seed=1)
    >>> pe = PanelEstimate(lead=[0, 1, 2], n_iter=200, seed=0)
    >>> results = pe.fit(matches)
    >>> results.print_summary()

    Notes
    -----
    For a matched set with focal observation (i, t), normalized control
    weights w_j and lead F, the "did" estimate is

        (Y_{i,t+F} - Y_{i,t-1}) - sum_j w_j (Y_{j,t+F} - Y_{j,t-1})

    averaged over matched sets. ATC sets compare a control observation to
    treated units, so their average is negated. The ATE combines ATT and ATC
    weighted by their numbers of matched sets.

    References
    ----------
    Imai, K., Kim, I. S., & Wang, E. H. (2023). Matching Methods for Causal
    Inference with Time-Series Cross-Sectional Data. American Journal of
    Political Science, 67(3), 587-605.
    """

    def __init__(
        self,
        lead: Union[int, Iterable[int]] = 0,
        inference: str = "bootstrap",
        n_iter: int = 1000,
        estimator: str = "did",
        df_adjustment: bool = False,
        qoi: Optional[str] = None,
        ci: float = 0.95,
        seed: Optional[int] = None,
        n_jobs: int = 1,
        wfe_estimator: Optional[WFEEstimator] = None,
    ):
        self.lead = lead
        self.inference = inference
        self.n_iter = n_iter
        self.estimator = estimator
        self.df_adjustment = df_adjustment
        self.qoi = qoi
        self.ci = ci
        self.seed = seed
        self.n_jobs = n_jobs
        self.wfe_estimator = wfe_estimator

        self.is_fitted_ = False
        self.results_: Any = None
        self.panel_: Optional[AugmentedPanel] = None
        self.qoi_: Optional[str] = None
        self.bootstrap_: Optional[ClusterBootstrap] = None

    def fit(self, matched_sets: PanelMatchResult) -> Any:
        """
        Estimate the quantity of interest.

        Parameters
        ----------
        matched_sets : PanelMatchResult
            Output of the matching step.

        Returns
        -------
        PanelEstimateResults
            For ``inference="bootstrap"``.
        object
            For ``inference="wfe"``, whatever the wfe estimator returns
            (:class:`~panel_estimate.results.WFEResults` by default).

        Raises
        ------
        ValueError
            If parameters are invalid, the lead specification is not
            supported by the matched sets, or no matched sets remain.
        """
        leads = self._validate_params()
        self._check_preconditions(matched_sets, leads)

        requested_qoi = self.qoi if self.qoi is not None else matched_sets.qoi
        validate_choice(requested_qoi, "qoi", VALID_QOIS)

        collections = self._truncate(matched_sets, leads)
        qoi = resolve_qoi(requested_qoi, collections)
        fallback = qoi != requested_qoi
        if fallback:
            warnings.warn(
                f"No matched sets available for qoi='{requested_qoi}' after lead "
                f"truncation; estimating qoi='{qoi}' instead.",
                UserWarning,
                stacklevel=2,
            )
        logger.debug("Effective qoi: %s (requested %s)", qoi, requested_qoi)

        sides = ("att", "atc") if qoi == "ate" else (qoi,)
        panel = aggregate_leads(
            matched_sets.data,
            {side: collections[side] for side in sides},
            leads,
            unit_id=matched_sets.unit_id,
            time_id=matched_sets.time_id,
            dependent=matched_sets.dependent,
            estimator=self.estimator,
        )
        self.panel_ = panel
        self.qoi_ = qoi

        if self.inference == "wfe":
            spec = build_wfe_specification(
                panel,
                treatment=matched_sets.treatment,
                lead=leads[0],
                qoi=qoi,
                estimator=self.estimator,
                df_adjustment=self.df_adjustment,
                ci=self.ci,
            )
            self.results_ = fit_wfe(spec, self.wfe_estimator)
        else:
            self.results_ = self._fit_bootstrap(
                panel, matched_sets, leads, qoi, requested_qoi, fallback
            )

        self.is_fitted_ = True
        return self.results_

    def _fit_bootstrap(
        self,
        panel: AugmentedPanel,
        matched_sets: PanelMatchResult,
        leads: Tuple[int, ...],
        qoi: str,
        requested_qoi: str,
        fallback: bool,
    ) -> PanelEstimateResults:
        engine = ClusterBootstrap(n_iter=self.n_iter, seed=self.seed, n_jobs=self.n_jobs)
        run = engine.run(panel, qoi)
        self.bootstrap_ = engine

        distribution = run.distribution
        distribution.setflags(write=False)
        estimates = pd.Series(run.estimates, index=lead_labels(leads), name=qoi)

        return PanelEstimateResults(
            estimates=estimates,
            bootstrap=distribution,
            n_iter=engine.n_iter,
            method=matched_sets.method,
            lag=matched_sets.lag,
            lead=leads,
            ci_level=self.ci,
            qoi=qoi,
            requested_qoi=requested_qoi,
            qoi_fallback=fallback,
            estimator=self.estimator,
            n_clusters=len(run.clusters),
            seed=self.seed,
        )

    def _validate_params(self) -> Tuple[int, ...]:
        """Validate constructor arguments and return the normalized leads."""
        leads = as_leads(self.lead)
        validate_choice(self.inference, "inference", VALID_INFERENCE)
        validate_choice(self.estimator, "estimator", VALID_ESTIMATORS)
        validate_ci(self.ci)
        if self.qoi is not None:
            validate_choice(self.qoi, "qoi", VALID_QOIS)
        if isinstance(self.n_iter, bool) or int(self.n_iter) != self.n_iter or self.n_iter < 1:
            raise ValueError(f"n_iter must be a positive integer, got {self.n_iter!r}")
        if int(self.n_jobs) != self.n_jobs or self.n_jobs < 1:
            raise ValueError(f"n_jobs must be a positive integer, got {self.n_jobs!r}")
        return leads

    def _check_preconditions(
        self, matched_sets: PanelMatchResult, leads: Tuple[int, ...]
    ) -> None:
        """Reject lead/inference/restriction combinations the sets cannot support."""
        max_lead = matched_sets.max_lead
        if max(leads) > max_lead:
            raise ValueError(
                f"The requested leads {list(leads)} exceed the maximum lead used "
                f"when finding matched sets, which is {max_lead}."
            )
        if self.inference == "wfe" and len(leads) > 1:
            raise ValueError(
                "When inference='wfe', supply only one lead at a time. For "
                "example, fit with lead=1 and then with lead=2 rather than "
                "lead=[1, 2]."
            )
        if matched_sets.restricted and min(leads) >= 0:
            if len(leads) > 1 or leads[0] != max_lead:
                raise ValueError(
                    "Matched sets were built with restricted=True: supply only "
                    f"one lead, equal to max_lead={max_lead}."
                )
        if self.inference == "wfe" and not matched_sets.restricted:
            if leads != (0,):
                raise ValueError(
                    "Matched sets were built with restricted=False: wfe standard "
                    "errors are only supported for lead=0."
                )

    def _truncate(
        self, matched_sets: PanelMatchResult, leads: Tuple[int, ...]
    ) -> Dict[str, Optional[MatchedSetCollection]]:
        collections: Dict[str, Optional[MatchedSetCollection]] = {}
        for side in ("att", "atc"):
            collection = matched_sets.collection(side)
            if collection is not None:
                collection = truncate_collection(
                    collection,
                    matched_sets.data,
                    unit_id=matched_sets.unit_id,
                    time_id=matched_sets.time_id,
                    dependent=matched_sets.dependent,
                    leads=leads,
                    estimator=self.estimator,
                )
            collections[side] = collection
        return collections

    def get_params(self) -> Dict[str, Any]:
        """Get estimator parameters (sklearn-compatible)."""
        return {
            "lead": self.lead,
            "inference": self.inference,
            "n_iter": self.n_iter,
            "estimator": self.estimator,
            "df_adjustment": self.df_adjustment,
            "qoi": self.qoi,
            "ci": self.ci,
            "seed": self.seed,
            "n_jobs": self.n_jobs,
            "wfe_estimator": self.wfe_estimator,
        }

    def set_params(self, **params) -> "PanelEstimate":
        """Set estimator parameters (sklearn-compatible)."""
        valid = self.get_params()
        for key, value in params.items():
            if key in valid:
                setattr(self, key, value)
            else:
                raise ValueError(f"Unknown parameter: {key}")
        return self

    def summary(self) -> str:
        """Get summary of estimation results."""
        if not self.is_fitted_:
            raise RuntimeError("Model must be fitted before calling summary()")
        return self.results_.summary()

    def print_summary(self) -> None:
        """Print summary to stdout."""
        print(self.summary())


def resolve_qoi(
    requested: str, collections: Dict[str, Optional[MatchedSetCollection]]
) -> str:
    """
    Effective quantity of interest given which sides still have matches.

    A side whose collection is absent or holds no non-empty matched set
    cannot be estimated; the other side is used instead.

    Raises
    ------
    ValueError
        If neither side has matches.
    """
    available = {
        side: collection is not None and collection.has_matches
        for side, collection in collections.items()
    }
    if not any(available.values()):
        raise ValueError(
            "No matched sets with controls remain after lead truncation; "
            "nothing to estimate."
        )
    if requested == "ate":
        if not available["att"]:
            return "atc"
        if not available["atc"]:
            return "att"
        return "ate"
    if available[requested]:
        return requested
    return "atc" if requested == "att" else "att"


def panel_estimate(
    matched_sets: PanelMatchResult,
    lead: Union[int, Iterable[int]] = 0,
    inference: str = "bootstrap",
    n_iter: int = 1000,
    estimator: str = "did",
    df_adjustment: bool = False,
    qoi: Optional[str] = None,
    ci: float = 0.95,
    **kwargs,
) -> Any:
    """
    Estimate treatment effects over matched sets.

    Convenience wrapper around :class:`PanelEstimate`; extra keyword
    arguments (``seed``, ``n_jobs``, ``wfe_estimator``) are forwarded.

    Examples
    --------
    >>> results = panel_estimate(matches, lead=[0, 1], n_iter=500, seed=1)
    >>> results.summary_table()
    """
    return PanelEstimate(
        lead=lead,
        inference=inference,
        n_iter=n_iter,
        estimator=estimator,
        df_adjustment=df_adjustment,
        qoi=qoi,
        ci=ci,
        **kwargs,
    ).fit(matched_sets)
