"""
Synthetic data helpers for panel-estimate.

Generates staggered-adoption panels with a known treatment effect together
with matched sets built by exact matching on treatment history, the
starting point of every matching method before any refinement.
"""

from typing import Hashable, List, Optional

import numpy as np
import pandas as pd

from panel_estimate.matched_sets import MatchedSet, MatchedSetCollection, PanelMatchResult


def generate_staggered_panel(
    n_units: int = 50,
    n_periods: int = 10,
    treatment_effect: float = 3.0,
    never_treated_frac: float = 0.4,
    first_period: int = 3,
    unit_fe_sd: float = 2.0,
    time_trend: float = 0.5,
    noise_sd: float = 1.0,
    seed: Optional[int] = None,
) -> pd.DataFrame:
    """
    Generate a balanced staggered-adoption panel with a known effect.

    Treatment is absorbing: a unit first treated in period ``g`` stays
    treated afterwards.

    Parameters
    ----------
    n_units : int, default=50
        Number of units.
    n_periods : int, default=10
        Number of periods, labelled ``1..n_periods``.
    treatment_effect : float, default=3.0
        Constant effect of treatment on the outcome.
    never_treated_frac : float, default=0.4
        Fraction of units never treated.
    first_period : int, default=3
        Earliest adoption period.
    unit_fe_sd : float, default=2.0
        Standard deviation of unit fixed effects.
    time_trend : float, default=0.5
        Linear time trend coefficient.
    noise_sd : float, default=1.0
        Standard deviation of idiosyncratic noise.
    seed : int, optional
        Random seed for reproducibility.

    Returns
    -------
    pd.DataFrame
        Columns ``unit``, ``period``, ``treated``, ``outcome``.

    Examples
    --------
    >>> data = generate_staggered_panel(n_units=20, n_periods=6, seed=42)
    >>> len(data)
    120
    """
    if first_period < 2 or first_period > n_periods:
        raise ValueError(
            f"first_period must be in [2, n_periods], got {first_period}"
        )
    rng = np.random.default_rng(seed)

    n_never = int(round(n_units * never_treated_frac))
    adoption = np.full(n_units, np.inf)
    adoption[n_never:] = rng.integers(first_period, n_periods + 1, size=n_units - n_never)

    unit_fe = rng.normal(0, unit_fe_sd, n_units)
    units = np.repeat(np.arange(1, n_units + 1), n_periods)
    periods = np.tile(np.arange(1, n_periods + 1), n_units)
    treated = (periods >= np.repeat(adoption, n_periods)).astype(int)

    outcome = (
        10.0
        + np.repeat(unit_fe, n_periods)
        + time_trend * periods
        + treatment_effect * treated
        + rng.normal(0, noise_sd, len(units))
    )

    return pd.DataFrame({
        "unit": units,
        "period": periods,
        "treated": treated,
        "outcome": outcome,
    })


def build_history_matched_sets(
    data: pd.DataFrame,
    unit: str,
    time: str,
    treatment: str,
    lag: int,
    max_lead: int,
    qoi: str = "att",
) -> MatchedSetCollection:
    """
    Matched sets by exact matching on treatment history.

    For "att", every observation switching into treatment at ``t`` is
    matched to the units untreated at ``t`` that share its treatment history
    over ``t - lag .. t - 1``. For "atc", every untreated observation whose
    history is untreated is matched to the units with the same history that
    switch into treatment at ``t``. Controls get equal weight.

    Parameters
    ----------
    data : pd.DataFrame
        Balanced panel.
    unit, time, treatment : str
        Column names.
    lag : int
        History length.
    max_lead : int
        Largest lead the sets should support; focal periods later than
        ``last_period - max_lead`` are skipped.
    qoi : str, default="att"
        "att" or "atc".

    Returns
    -------
    MatchedSetCollection
    """
    if qoi not in ("att", "atc"):
        raise ValueError(f"qoi must be 'att' or 'atc', got '{qoi}'")
    wide = data.pivot(index=unit, columns=time, values=treatment)
    periods = list(wide.columns)
    last = max(periods)

    sets: List[MatchedSet] = []
    for t in periods:
        if t - lag < min(periods) or t + max_lead > last:
            continue
        history = wide.loc[:, [t - p for p in range(lag, 0, -1)]]
        now = wide[t]
        switchers = now.index[(now == 1) & (history.iloc[:, -1] == 0)]
        stayers = now.index[(now == 0) & (history.iloc[:, -1] == 0)]

        if qoi == "att":
            focal, pool = switchers, stayers
        else:
            focal, pool = stayers, switchers

        for i in focal:
            same_history = (history.loc[pool] == history.loc[i]).all(axis=1)
            controls = [j for j in pool[same_history.to_numpy()] if j != i]
            if controls:
                weights = {_native(j): 1.0 / len(controls) for j in controls}
                sets.append(MatchedSet(unit=_native(i), time=int(t), controls=weights))

    return MatchedSetCollection(sets, lag=lag, max_lead=max_lead, qoi=qoi, method="Maha")


def _native(value: Hashable) -> Hashable:
    return value.item() if isinstance(value, np.generic) else value


def generate_matched_panel(
    n_units: int = 50,
    n_periods: int = 10,
    lag: int = 2,
    max_lead: int = 2,
    qoi: str = "att",
    treatment_effect: float = 3.0,
    seed: Optional[int] = None,
    **kwargs,
) -> PanelMatchResult:
    """
    Synthetic panel plus matched sets, ready for :class:`PanelEstimate`.

    Extra keyword arguments are forwarded to
    :func:`generate_staggered_panel`.

    Examples
    --------
    >>> matches = generate_matched_panel(n_units=30, seed=7)
    >>> matches.att_matches.has_matches
    True
    """
    data = generate_staggered_panel(
        n_units=n_units,
        n_periods=n_periods,
        treatment_effect=treatment_effect,
        first_period=lag + 1,
        seed=seed,
        **kwargs,
    )
    sides = ("att", "atc") if qoi == "ate" else (qoi,)
    collections = {
        side: build_history_matched_sets(
            data, "unit", "period", "treated", lag=lag, max_lead=max_lead, qoi=side
        )
        for side in sides
    }
    return PanelMatchResult(
        lag=lag,
        max_lead=max_lead,
        data=data,
        dependent="outcome",
        treatment="treated",
        unit_id="unit",
        time_id="period",
        method="Maha",
        restricted=False,
        qoi=qoi,
        att_matches=collections.get("att"),
        atc_matches=collections.get("atc"),
    )
