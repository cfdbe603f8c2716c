"""
Pytest configuration and shared fixtures for panel-estimate tests.

The hand-sized panel below is small enough that every estimate can be
checked against arithmetic done by hand:

    unit  period  treated  outcome
       1       1        0      1.0
       1       2        1      5.0
       2       1        0      2.0
       2       2        0      3.0
       3       1        0      4.0
       3       2        0      4.5

Unit 1 switches into treatment at period 2.
"""

import pandas as pd
import pytest

from panel_estimate import (
    MatchedSetCollection,
    PanelMatchResult,
    generate_matched_panel,
)


@pytest.fixture
def tiny_panel():
    """Three units observed over two periods."""
    return pd.DataFrame({
        "unit": [1, 1, 2, 2, 3, 3],
        "period": [1, 2, 1, 2, 1, 2],
        "treated": [0, 1, 0, 0, 0, 0],
        "outcome": [1.0, 5.0, 2.0, 3.0, 4.0, 4.5],
    })


@pytest.fixture
def make_matches(tiny_panel):
    """Factory for matching-step output over ``tiny_panel``."""

    def _make(att=None, atc=None, qoi="att", lag=1, max_lead=0,
              restricted=False, data=None):
        def _collection(sets, side):
            if sets is None:
                return None
            return MatchedSetCollection.from_dict(
                sets, lag=lag, max_lead=max_lead, qoi=side, restricted=restricted
            )

        return PanelMatchResult(
            lag=lag,
            max_lead=max_lead,
            data=tiny_panel if data is None else data,
            dependent="outcome",
            treatment="treated",
            unit_id="unit",
            time_id="period",
            method="Maha",
            restricted=restricted,
            qoi=qoi,
            att_matches=_collection(att, "att"),
            atc_matches=_collection(atc, "atc"),
        )

    return _make


@pytest.fixture
def tiny_att_matches(make_matches):
    """Unit 1 at period 2 matched to unit 2 with weight 1."""
    return make_matches(att={(1, 2): {2: 1.0}})


@pytest.fixture(scope="module")
def staggered_matches():
    """Synthetic staggered panel with ATT matched sets, true effect 3."""
    return generate_matched_panel(
        n_units=60, n_periods=10, lag=2, max_lead=2, qoi="att",
        treatment_effect=3.0, seed=123,
    )


@pytest.fixture(scope="module")
def staggered_ate_matches():
    """Synthetic staggered panel with ATT and ATC matched sets."""
    return generate_matched_panel(
        n_units=40, n_periods=8, lag=2, max_lead=1, qoi="ate",
        treatment_effect=3.0, seed=7,
    )
