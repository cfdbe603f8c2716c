"""
Weighted fixed-effects inference for matched-set estimators.

The adapter here prepares the augmented panel for a weighted fixed-effects
fit and hands it to an estimator callable; it does not interpret the fitted
model. :func:`weighted_fixed_effects` is the estimator used when none is
supplied.
"""

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

import numpy as np
import pandas as pd

from panel_estimate.linalg import solve_wls
from panel_estimate.results import WFEResults
from panel_estimate.utils import compute_confidence_interval, compute_p_value
from panel_estimate.weights import AugmentedPanel, WeightColumn

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WFESpecification:
    """
    Everything a weighted fixed-effects estimator needs.

    Attributes
    ----------
    formula : str
        ``"<dependent> ~ <treatment>"``.
    dependent, treatment : str
        Outcome and treatment columns.
    unit_index, time_index : str
        Panel index columns.
    method : str
        "unit" (demean within unit) or "time" (demean within period).
    qoi : str
        "att", "atc" or "ate".
    estimator : str, optional
        "did" or None.
    df_adjustment : bool
        Degrees-of-freedom adjustment for the standard error.
    weight_columns : tuple of str
        Lead-zero weight columns (``Wit_<qoi>0``) per aggregated side.
    indicator_columns : tuple of str
        Treatment-count columns per aggregated side.
    data : pd.DataFrame
        Augmented panel.
    ci : float
        Confidence level for the reported interval.
    """

    formula: str
    dependent: str
    treatment: str
    unit_index: str
    time_index: str
    method: str
    qoi: str
    estimator: Optional[str]
    df_adjustment: bool
    weight_columns: tuple
    indicator_columns: tuple
    data: pd.DataFrame
    ci: float = 0.95


WFEEstimator = Callable[[WFESpecification], Any]


def build_wfe_specification(
    panel: AugmentedPanel,
    treatment: str,
    lead: int,
    qoi: str,
    estimator: str = "did",
    df_adjustment: bool = False,
    ci: float = 0.95,
) -> WFESpecification:
    """
    Prepare a weighted fixed-effects fit for one lead.

    The requested lead's weights are copied into ``Wit_<qoi>0`` on a copy of
    the augmented panel so that the fit always reads lead-zero columns.

    Parameters
    ----------
    panel : AugmentedPanel
        Augmented panel holding the sides ``qoi`` needs.
    treatment : str
        Treatment column.
    lead : int
        The single requested lead.
    qoi : str
        "att", "atc" or "ate".
    estimator : str, default="did"
        "did" selects unit demeaning, anything else time demeaning.
    df_adjustment : bool, default=False
        Passed through to the estimator.
    ci : float, default=0.95
        Confidence level.

    Returns
    -------
    WFESpecification
    """
    sides = ("att", "atc") if qoi == "ate" else (qoi,)
    data = panel.data.copy()
    weight_columns = []
    for side in sides:
        target = WeightColumn(side, 0).name
        data[target] = panel.weights(side, lead)
        weight_columns.append(target)

    method = "unit" if estimator == "did" else "time"
    return WFESpecification(
        formula=f"{panel.dependent} ~ {treatment}",
        dependent=panel.dependent,
        treatment=treatment,
        unit_index=panel.unit_id,
        time_index=panel.time_id,
        method=method,
        qoi=qoi,
        estimator="did" if estimator == "did" else None,
        df_adjustment=df_adjustment,
        weight_columns=tuple(weight_columns),
        indicator_columns=tuple(panel.indicator_columns[s] for s in sides),
        data=data,
        ci=ci,
    )


def fit_wfe(
    spec: WFESpecification,
    wfe_estimator: Optional[WFEEstimator] = None,
) -> Any:
    """
    Delegate a prepared specification to a weighted fixed-effects estimator.

    Parameters
    ----------
    spec : WFESpecification
        Prepared fit.
    wfe_estimator : callable, optional
        ``wfe_estimator(spec) -> fitted``. Defaults to
        :func:`weighted_fixed_effects`.

    Returns
    -------
    Whatever ``wfe_estimator`` returns.
    """
    estimator = wfe_estimator if wfe_estimator is not None else weighted_fixed_effects
    logger.debug(
        "Fitting %s with %s demeaning (qoi=%s)", spec.formula, spec.method, spec.qoi
    )
    return estimator(spec)


def _weighted_demean(values: np.ndarray, weights: np.ndarray, groups: np.ndarray) -> np.ndarray:
    frame = pd.DataFrame({"wv": values * weights, "w": weights, "g": groups})
    sums = frame.groupby("g")[["wv", "w"]].transform("sum")
    return values - (sums["wv"] / sums["w"]).to_numpy()


def weighted_fixed_effects(spec: WFESpecification) -> WFEResults:
    """
    One-way weighted fixed-effects regression of outcome on treatment.

    Each observation is weighted by the magnitude of its matched-set weight
    plus its treatment count, so observations outside every matched set get
    weight zero and drop out. Outcome and treatment are demeaned within unit
    (``method="unit"``) or within period (``method="time"``) using weighted
    means, then the treatment coefficient is estimated by weighted least
    squares with unit-clustered standard errors.

    Parameters
    ----------
    spec : WFESpecification
        Prepared fit.

    Returns
    -------
    WFEResults
    """
    data = spec.data
    weights = np.zeros(len(data))
    for wcol, dcol in zip(spec.weight_columns, spec.indicator_columns):
        weights += np.abs(data[wcol].to_numpy(dtype=float)) + data[dcol].to_numpy(dtype=float)

    y = data[spec.dependent].to_numpy(dtype=float)
    d = data[spec.treatment].to_numpy(dtype=float)
    keep = (weights > 0) & np.isfinite(y) & np.isfinite(d)
    if not keep.any():
        raise ValueError("No observations carry positive weight; nothing to fit.")

    weights, y, d = weights[keep], y[keep], d[keep]
    units = data[spec.unit_index].to_numpy()[keep]
    group_col = spec.unit_index if spec.method == "unit" else spec.time_index
    groups = data[group_col].to_numpy()[keep]

    y_dm = _weighted_demean(y, weights, groups)
    d_dm = _weighted_demean(d, weights, groups)

    n_groups = len(pd.unique(groups))
    coef, _, vcov = solve_wls(
        d_dm[:, np.newaxis], y_dm, weights, units,
        absorbed_df=n_groups,
        df_adjustment=spec.df_adjustment,
        column_names=[spec.treatment],
    )
    beta = float(coef[0])
    se = float(np.sqrt(vcov[0, 0]))
    n_units = len(pd.unique(units))
    t_stat = beta / se if se > 0 else np.nan
    df = n_units - 1
    p_value = compute_p_value(t_stat, df=df) if np.isfinite(t_stat) else np.nan
    conf_int = compute_confidence_interval(beta, se, spec.ci, df=df)

    return WFEResults(
        coefficient=beta,
        se=se,
        t_stat=t_stat,
        p_value=p_value,
        conf_int=conf_int,
        n_obs=int(keep.sum()),
        n_units=n_units,
        method=spec.method,
        qoi=spec.qoi,
        formula=spec.formula,
        ci_level=spec.ci,
        vcov=vcov,
    )
