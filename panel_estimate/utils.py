"""
Utility functions for panel-estimate.
"""

from typing import Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np
from scipy import stats

VALID_INFERENCE = ("bootstrap", "wfe")
VALID_ESTIMATORS = ("did", "matching")


def as_leads(lead: Union[int, Iterable[int]]) -> Tuple[int, ...]:
    """
    Normalize a lead specification to a tuple of ints.

    Raises
    ------
    ValueError
        If no lead is given, a lead is not an integer, or leads repeat.
    """
    if np.isscalar(lead):
        values = [lead]
    else:
        values = list(lead)
    if len(values) == 0:
        raise ValueError("At least one lead must be supplied")

    leads = []
    for value in values:
        if isinstance(value, bool) or int(value) != value:
            raise ValueError(f"Leads must be integers, got {value!r}")
        leads.append(int(value))
    if len(set(leads)) != len(leads):
        raise ValueError(f"Leads must be unique, got {leads}")
    return tuple(leads)


def lead_labels(leads: Sequence[int]) -> List[str]:
    """
    Column labels for leads: ``t+0``, ``t+1`` for non-negative leads and
    ``t-2`` for negative ones.
    """
    return [f"t+{lead}" if lead >= 0 else f"t{lead}" for lead in leads]


def validate_choice(value: str, name: str, choices: Sequence[str]) -> None:
    if value not in choices:
        raise ValueError(
            f"{name} must be one of {tuple(choices)}, got '{value}'"
        )


def validate_ci(ci: float) -> None:
    if not isinstance(ci, (int, float)) or not 0 < ci < 1:
        raise ValueError(f"ci must be a number in (0, 1), got {ci!r}")


def compute_p_value(t_stat: float, df: Optional[int] = None, two_sided: bool = True) -> float:
    """
    Compute p-value for a t-statistic.

    Parameters
    ----------
    t_stat : float
        T-statistic.
    df : int, optional
        Degrees of freedom. If None, uses normal distribution.
    two_sided : bool
        Whether to compute two-sided p-value (default True).

    Returns
    -------
    float
        P-value.
    """
    if df is not None and df > 0:
        p_value = stats.t.sf(np.abs(t_stat), df)
    else:
        p_value = stats.norm.sf(np.abs(t_stat))

    if two_sided:
        p_value *= 2

    return float(p_value)


def compute_confidence_interval(
    estimate: float,
    se: float,
    ci: float = 0.95,
    df: Optional[int] = None,
) -> Tuple[float, float]:
    """
    Compute a symmetric confidence interval for an estimate.

    Parameters
    ----------
    estimate : float
        Point estimate.
    se : float
        Standard error.
    ci : float
        Confidence level (default 0.95).
    df : int, optional
        Degrees of freedom. If None, uses normal distribution.

    Returns
    -------
    tuple
        (lower_bound, upper_bound) of confidence interval.
    """
    alpha = 1 - ci
    if df is not None and df > 0:
        critical_value = stats.t.ppf(1 - alpha / 2, df)
    else:
        critical_value = stats.norm.ppf(1 - alpha / 2)

    lower = estimate - critical_value * se
    upper = estimate + critical_value * se

    return (float(lower), float(upper))
