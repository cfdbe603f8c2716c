"""
Weight extraction and lead aggregation.

Converts matched sets into per-observation regression weights ``Wit`` (one
column per lead) and treatment-indicator counts ``dits`` so that the effect
for a lead is a single weighted sum over the panel:

    effect(lead) = sum_it Wit(lead) * Y_it / sum_it dits

For a set with focal observation (i, t), normalized control weights w_j and
lead F, the contributions are

    matching:  +1 at (i, t+F),  -w_j at (j, t+F)
    did:       the above, plus -1 at (i, t-1) and +w_j at (j, t-1)

and ``dits`` gets 1 at (i, t).
"""

import logging
from dataclasses import dataclass
from typing import Dict, Hashable, List, NamedTuple, Optional, Sequence, Tuple

import numpy as np
import pandas as pd

from panel_estimate.matched_sets import MatchedSet, MatchedSetCollection

logger = logging.getLogger(__name__)

REFERENCE_LEAD = -1


class WeightColumn(NamedTuple):
    """Handle for the weight column of one (qoi, lead) pair."""

    qoi: str
    lead: int

    @property
    def name(self) -> str:
        return f"Wit_{self.qoi}{self.lead}"


def indicator_column(qoi: str) -> str:
    """Name of the treatment-count column for a qoi side."""
    return f"dits_{qoi}"


@dataclass(frozen=True)
class SetContribution:
    """
    Contribution of one matched set to the aggregate design.

    Attributes
    ----------
    wit : dict
        Lead -> (row positions, values) to add to that lead's weight column.
    dit_row : int or None
        Row position receiving the indicator count, None if the set is
        empty or invalid.
    """

    wit: Dict[int, Tuple[np.ndarray, np.ndarray]]
    dit_row: Optional[int]


class PanelIndex:
    """Row lookup for (unit, time) pairs of a panel."""

    def __init__(self, data: pd.DataFrame, unit_id: str, time_id: str):
        keys = pd.MultiIndex.from_arrays([data[unit_id].values, data[time_id].values])
        if keys.has_duplicates:
            dupes = keys[keys.duplicated()].unique()[:5].tolist()
            raise ValueError(
                f"Panel has duplicate ({unit_id}, {time_id}) rows, e.g. {dupes}. "
                "Each unit may appear at most once per period."
            )
        self._positions = {key: pos for pos, key in enumerate(keys)}
        self.n_rows = len(keys)

    def get(self, unit: Hashable, time: int) -> Optional[int]:
        return self._positions.get((unit, time))


def extract_set_weights(
    matched_set: MatchedSet,
    index: PanelIndex,
    leads: Sequence[int],
    estimator: str = "did",
) -> SetContribution:
    """
    Compute the weight and indicator contributions of one matched set.

    Parameters
    ----------
    matched_set : MatchedSet
        The set, already truncated to the lead window.
    index : PanelIndex
        Row lookup of the panel the contributions refer to.
    leads : sequence of int
        Requested leads.
    estimator : str
        "did" differences the baseline period ``t - 1``; "matching" does not.

    Returns
    -------
    SetContribution
        Row-aligned contributions. An empty or invalid set contributes no
        weight and a zero indicator.
    """
    if matched_set.is_empty:
        return SetContribution(wit={}, dit_row=None)

    unit, t = matched_set.unit, matched_set.time
    focal_row = index.get(unit, t)
    if focal_row is None:
        return SetContribution(wit={}, dit_row=None)

    weights = matched_set.normalized_weights()
    controls = list(weights.keys())
    ctrl_weights = np.array([weights[c] for c in controls], dtype=float)

    wit = {}
    for lead in leads:
        periods = [(t + lead, 1.0)]
        if estimator == "did":
            periods.append((t - 1, -1.0))

        rows: List[int] = []
        values: List[float] = []
        valid = True
        for period, sign in periods:
            treated_row = index.get(unit, period)
            control_rows = [index.get(c, period) for c in controls]
            if treated_row is None or any(r is None for r in control_rows):
                valid = False
                break
            rows.append(treated_row)
            values.append(sign)
            rows.extend(control_rows)
            values.extend(-sign * ctrl_weights)
        if not valid:
            return SetContribution(wit={}, dit_row=None)
        wit[lead] = (np.asarray(rows, dtype=np.int64), np.asarray(values, dtype=float))

    return SetContribution(wit=wit, dit_row=focal_row)


@dataclass(frozen=True)
class AugmentedPanel:
    """
    Panel with aggregated weight and indicator columns.

    The wrapped DataFrame is a copy of the input panel with the same rows in
    the same order; only columns are appended. It is treated as read-only
    once built.

    Attributes
    ----------
    data : pd.DataFrame
        Augmented panel.
    weight_columns : dict
        WeightColumn -> column name, for every requested lead of every
        aggregated side plus the reference lead -1.
    indicator_columns : dict
        qoi side -> indicator column name.
    leads : tuple of int
        Requested leads, in request order.
    sides : tuple of str
        Aggregated qoi sides ("att", "atc").
    unit_id, time_id, dependent : str
        Column names of the panel.
    """

    data: pd.DataFrame
    weight_columns: Dict[WeightColumn, str]
    indicator_columns: Dict[str, str]
    leads: Tuple[int, ...]
    sides: Tuple[str, ...]
    unit_id: str
    time_id: str
    dependent: str

    def weights(self, qoi: str, lead: int) -> np.ndarray:
        return self.data[self.weight_columns[WeightColumn(qoi, lead)]].to_numpy(dtype=float)

    def weight_matrix(self, qoi: str) -> np.ndarray:
        """Weights of one side as an (n_rows, n_leads) array."""
        cols = [self.weight_columns[WeightColumn(qoi, lead)] for lead in self.leads]
        return self.data[cols].to_numpy(dtype=float)

    def indicators(self, qoi: str) -> np.ndarray:
        return self.data[self.indicator_columns[qoi]].to_numpy(dtype=float)

    @property
    def outcome(self) -> np.ndarray:
        return self.data[self.dependent].to_numpy(dtype=float)

    @property
    def units(self) -> np.ndarray:
        return self.data[self.unit_id].to_numpy()


def aggregate_side(
    collection: MatchedSetCollection,
    index: PanelIndex,
    leads: Sequence[int],
    estimator: str = "did",
) -> Tuple[Dict[int, np.ndarray], np.ndarray]:
    """
    Sum the contributions of every matched set of one side.

    Returns
    -------
    wit : dict
        Lead -> aggregated weight vector of length ``index.n_rows``.
    dits : np.ndarray
        Aggregated indicator counts.
    """
    wit = {lead: np.zeros(index.n_rows) for lead in leads}
    dits = np.zeros(index.n_rows)
    n_used = 0

    for matched_set in collection:
        contribution = extract_set_weights(matched_set, index, leads, estimator)
        if contribution.dit_row is None:
            continue
        n_used += 1
        dits[contribution.dit_row] += 1.0
        for lead, (rows, values) in contribution.wit.items():
            np.add.at(wit[lead], rows, values)

    logger.debug(
        "Aggregated %d of %d matched sets (%s) over leads %s",
        n_used, len(collection), collection.qoi, list(leads),
    )
    return wit, dits


def aggregate_leads(
    data: pd.DataFrame,
    collections: Dict[str, MatchedSetCollection],
    leads: Sequence[int],
    unit_id: str,
    time_id: str,
    dependent: str,
    estimator: str = "did",
) -> AugmentedPanel:
    """
    Build the augmented panel for the given sides and leads.

    Parameters
    ----------
    data : pd.DataFrame
        Panel, one row per (unit, time). Not modified.
    collections : dict
        qoi side ("att"/"atc") -> matched sets for that side.
    leads : sequence of int
        Requested leads.
    unit_id, time_id, dependent : str
        Column names.
    estimator : str, default="did"
        "did" or "matching".

    Returns
    -------
    AugmentedPanel
        Copy of ``data`` with ``Wit_<qoi><lead>`` for every lead, the all-zero
        reference column ``Wit_<qoi>-1`` and ``dits_<qoi>`` per side.

    Notes
    -----
    ``Wit_<qoi>-1`` is all zeros only when lead -1 is not requested. When it
    is, the column holds the lead -1 weights, since the lead -1 estimate is
    read from it; blanking it would make that estimate zero under the
    "matching" estimator.
    """
    leads = tuple(int(lead) for lead in leads)
    index = PanelIndex(data, unit_id, time_id)
    augmented = data.copy()

    weight_columns: Dict[WeightColumn, str] = {}
    indicator_columns: Dict[str, str] = {}
    new_columns: Dict[str, np.ndarray] = {}

    for qoi, collection in collections.items():
        wit, dits = aggregate_side(collection, index, leads, estimator)
        for lead in leads:
            handle = WeightColumn(qoi, lead)
            weight_columns[handle] = handle.name
            new_columns[handle.name] = wit[lead]
        indicator_columns[qoi] = indicator_column(qoi)
        new_columns[indicator_column(qoi)] = dits
        reference = WeightColumn(qoi, REFERENCE_LEAD)
        if reference not in weight_columns:
            weight_columns[reference] = reference.name
            new_columns[reference.name] = np.zeros(index.n_rows)

    clashes = [name for name in new_columns if name in augmented.columns]
    if clashes:
        raise ValueError(
            f"Panel already contains reserved weight columns {clashes}; "
            "rename them before estimation."
        )
    augmented = pd.concat(
        [augmented, pd.DataFrame(new_columns, index=augmented.index)], axis=1
    )

    return AugmentedPanel(
        data=augmented,
        weight_columns=weight_columns,
        indicator_columns=indicator_columns,
        leads=leads,
        sides=tuple(collections.keys()),
        unit_id=unit_id,
        time_id=time_id,
        dependent=dependent,
    )
