"""
Matched sets and the matching-output record consumed by the estimators.

A matched set pairs one treated observation ``(unit, time)`` with a weighted
collection of comparison units judged similar on pre-treatment history. The
matching procedure that builds them lives upstream; this module only stores
them, validates them and truncates them to the lead window requested at
estimation time.
"""

import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Hashable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

VALID_QOIS = ("att", "atc", "ate")


@dataclass(frozen=True)
class MatchedSet:
    """
    One matched set.

    Attributes
    ----------
    unit : hashable
        Identifier of the treated (for ATT) or control (for ATC) unit.
    time : int
        Time period at which ``unit`` switches treatment status.
    controls : dict
        Ordered mapping from comparison unit identifier to a non-negative
        weight. Weights need not sum to one; they are normalized per set
        when weights are extracted.
    """

    unit: Hashable
    time: int
    controls: Dict[Hashable, float] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for ctrl, weight in self.controls.items():
            if not np.isfinite(weight) or weight < 0:
                raise ValueError(
                    f"Matched set ({self.unit}, {self.time}) has invalid weight "
                    f"{weight!r} for control unit {ctrl!r}. Weights must be "
                    "finite and non-negative."
                )

    @property
    def key(self) -> Tuple[Hashable, int]:
        return (self.unit, self.time)

    @property
    def is_empty(self) -> bool:
        """True when no control carries positive weight."""
        return self.total_weight <= 0

    @property
    def total_weight(self) -> float:
        return float(sum(self.controls.values()))

    def normalized_weights(self) -> Dict[Hashable, float]:
        """
        Control weights rescaled to sum to one.

        Raises
        ------
        ValueError
            If the set has no positive weight.
        """
        total = self.total_weight
        if total <= 0:
            raise ValueError(
                f"Cannot normalize weights of empty matched set ({self.unit}, {self.time})"
            )
        return {ctrl: w / total for ctrl, w in self.controls.items()}


class MatchedSetCollection:
    """
    Arena-indexed collection of matched sets for one quantity of interest.

    Sets keep their position for the lifetime of the collection, so a set
    emptied by lead truncation still occupies its slot.

    Parameters
    ----------
    sets : sequence of MatchedSet
        Matched sets in the order produced by the matching step.
    lag : int
        Number of pre-treatment periods used to form the sets.
    max_lead : int
        Largest lead the sets were built for.
    restricted : bool, default=False
        Whether matching was restricted to units observed through
        ``max_lead``.
    qoi : str, default="att"
        Quantity of interest the sets were built for ("att" or "atc").
    method : str, optional
        Matching method tag (e.g. "Maha", "Pscore", "CBPS", "Synth").
    """

    def __init__(
        self,
        sets: Sequence[MatchedSet],
        lag: int,
        max_lead: int,
        restricted: bool = False,
        qoi: str = "att",
        method: Optional[str] = None,
    ):
        self._sets: List[MatchedSet] = list(sets)
        keys = [s.key for s in self._sets]
        if len(set(keys)) != len(keys):
            raise ValueError("Matched sets must have unique (unit, time) keys")
        self.lag = lag
        self.max_lead = max_lead
        self.restricted = restricted
        self.qoi = qoi
        self.method = method

    @classmethod
    def from_dict(
        cls,
        sets: Mapping[Tuple[Hashable, int], Union[Mapping[Hashable, float], Sequence[Hashable]]],
        lag: int,
        max_lead: int,
        **kwargs: Any,
    ) -> "MatchedSetCollection":
        """
        Build a collection from ``{(unit, time): {control: weight}}``.

        A plain sequence of control identifiers is accepted in place of the
        weight mapping and gives every control weight 1.

        Examples
        --------
        >>> sets = MatchedSetCollection.from_dict(
        ...     {(1, 4): {2: 0.5, 3: 0.5}, (5, 6): [7]}, lag=2, max_lead=1
        ... )
        >>> len(sets)
        2
        """
        built = []
        for (unit, time), controls in sets.items():
            if isinstance(controls, Mapping):
                weights = {c: float(w) for c, w in controls.items()}
            else:
                weights = {c: 1.0 for c in controls}
            built.append(MatchedSet(unit=unit, time=time, controls=weights))
        return cls(built, lag=lag, max_lead=max_lead, **kwargs)

    def __len__(self) -> int:
        return len(self._sets)

    def __iter__(self) -> Iterator[MatchedSet]:
        return iter(self._sets)

    def __getitem__(self, index: int) -> MatchedSet:
        return self._sets[index]

    def __repr__(self) -> str:
        return (
            f"MatchedSetCollection(n_sets={len(self)}, "
            f"n_non_empty={len(self.non_empty())}, qoi={self.qoi!r}, "
            f"lag={self.lag}, max_lead={self.max_lead})"
        )

    def non_empty(self) -> List[MatchedSet]:
        return [s for s in self._sets if not s.is_empty]

    @property
    def has_matches(self) -> bool:
        """True when at least one set still has a weighted control."""
        return any(not s.is_empty for s in self._sets)

    def with_sets(self, sets: Sequence[MatchedSet]) -> "MatchedSetCollection":
        """Return a collection with the same metadata and new sets."""
        return MatchedSetCollection(
            sets,
            lag=self.lag,
            max_lead=self.max_lead,
            restricted=self.restricted,
            qoi=self.qoi,
            method=self.method,
        )


@dataclass
class PanelMatchResult:
    """
    Output of the matching step, as consumed by :class:`PanelEstimate`.

    Attributes
    ----------
    lag : int
        Number of pre-treatment periods used for matching.
    max_lead : int
        Largest lead the matched sets support.
    data : pd.DataFrame
        Panel with one row per (unit, time) observation.
    dependent : str
        Outcome column.
    treatment : str
        Binary treatment column.
    unit_id : str
        Unit identifier column.
    time_id : str
        Integer time column; consecutive periods differ by one.
    method : str
        Matching method tag, carried through to the results.
    restricted : bool
        Whether matching was restricted.
    qoi : str
        Default quantity of interest ("att", "atc" or "ate").
    att_matches, atc_matches : MatchedSetCollection, optional
        Matched sets for the treated and the control side.
    """

    lag: int
    max_lead: int
    data: pd.DataFrame
    dependent: str
    treatment: str
    unit_id: str
    time_id: str
    method: str = "Maha"
    restricted: bool = False
    qoi: str = "att"
    att_matches: Optional[MatchedSetCollection] = None
    atc_matches: Optional[MatchedSetCollection] = None

    def __post_init__(self) -> None:
        if int(self.lag) != self.lag or self.lag < 1:
            raise ValueError(f"lag must be a positive integer, got {self.lag!r}")
        if int(self.max_lead) != self.max_lead or self.max_lead < 0:
            raise ValueError(
                f"max_lead must be a non-negative integer, got {self.max_lead!r}"
            )
        if self.qoi not in VALID_QOIS:
            raise ValueError(f"qoi must be one of {VALID_QOIS}, got '{self.qoi}'")
        if not isinstance(self.data, pd.DataFrame):
            raise TypeError("data must be a pandas DataFrame")
        missing = [
            col
            for col in (self.dependent, self.treatment, self.unit_id, self.time_id)
            if col not in self.data.columns
        ]
        if missing:
            raise ValueError(f"Missing columns in data: {missing}")

    def collection(self, qoi: str) -> Optional[MatchedSetCollection]:
        """Matched sets for the "att" or "atc" side."""
        if qoi == "att":
            return self.att_matches
        if qoi == "atc":
            return self.atc_matches
        raise ValueError(f"No matched-set collection for qoi '{qoi}'")


def lead_window(
    time: int, leads: Sequence[int], estimator: str
) -> List[int]:
    """
    Time periods a matched set at ``time`` needs observed for ``leads``.

    The focal period ``time`` is always included, since it carries the
    set's treatment count. The "did" estimator also needs the baseline
    period ``time - 1``.
    """
    periods = {time} | {time + f for f in leads}
    if estimator == "did":
        periods.add(time - 1)
    return sorted(periods)


def take_out(
    matched_set: MatchedSet,
    observed: Mapping[Hashable, set],
    leads: Sequence[int],
    estimator: str = "did",
) -> MatchedSet:
    """
    Truncate a matched set to the lead window.

    Controls with zero weight, and controls without a non-missing outcome in
    every period the window needs, are dropped. If the focal unit itself
    lacks the window, every control is dropped.

    Parameters
    ----------
    matched_set : MatchedSet
        Set to truncate.
    observed : mapping
        Unit identifier -> set of periods with a non-missing outcome.
    leads : sequence of int
        Requested leads.
    estimator : str
        "did" or "matching".

    Returns
    -------
    MatchedSet
        A new set, possibly empty.
    """
    window = lead_window(matched_set.time, leads, estimator)
    unit_periods = observed.get(matched_set.unit, set())
    if not all(p in unit_periods for p in window):
        return replace(matched_set, controls={})

    kept = {
        ctrl: w
        for ctrl, w in matched_set.controls.items()
        if w > 0 and all(p in observed.get(ctrl, set()) for p in window)
    }
    return replace(matched_set, controls=kept)


def observed_periods(
    data: pd.DataFrame, unit_id: str, time_id: str, dependent: str
) -> Dict[Hashable, set]:
    """Map each unit to the periods where its outcome is observed."""
    valid = data.loc[data[dependent].notna(), [unit_id, time_id]]
    return {
        unit: set(group[time_id].tolist())
        for unit, group in valid.groupby(unit_id, sort=False)
    }


def truncate_collection(
    collection: MatchedSetCollection,
    data: pd.DataFrame,
    unit_id: str,
    time_id: str,
    dependent: str,
    leads: Sequence[int],
    estimator: str = "did",
) -> MatchedSetCollection:
    """
    Apply :func:`take_out` to every set of a collection.

    Set positions are preserved; emptied sets stay in place.
    """
    observed = observed_periods(data, unit_id, time_id, dependent)
    truncated = [take_out(s, observed, leads, estimator) for s in collection]
    n_before = len(collection.non_empty())
    result = collection.with_sets(truncated)
    logger.debug(
        "Lead truncation (%s): %d of %d non-empty matched sets remain",
        collection.qoi,
        len(result.non_empty()),
        n_before,
    )
    return result
