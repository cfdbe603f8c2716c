"""
Tests for the bootstrap results object.
"""

import numpy as np
import pandas as pd
import pytest

from panel_estimate import PanelEstimateResults


@pytest.fixture
def results():
    rng = np.random.default_rng(0)
    boots = rng.normal([2.0, 2.5], 0.3, size=(500, 2))
    boots[0, 1] = np.nan
    return PanelEstimateResults(
        estimates=pd.Series([2.1, 2.4], index=["t+0", "t+1"], name="att"),
        bootstrap=boots,
        n_iter=500,
        method="Maha",
        lag=4,
        lead=(0, 1),
        ci_level=0.95,
        qoi="att",
        requested_qoi="att",
        n_clusters=50,
        seed=1,
    )


class TestPanelEstimateResults:
    def test_summary_table_layout(self, results):
        table = results.summary_table()
        assert list(table.columns) == ["t+0", "t+1"]
        assert list(table.index) == [
            "Point Estimate(s)",
            "Standard Error(s)",
            "Lower Limit of 95% Regular Confidence Interval",
            "Upper Limit of 95% Regular Confidence Interval",
            "Bias-corrected Estimate(s)",
            "Lower Limit of 95% Bias-corrected Confidence Interval",
            "Upper Limit of 95% Bias-corrected Confidence Interval",
        ]
        assert table.loc["Point Estimate(s)", "t+0"] == 2.1

    def test_summary_table_other_level(self, results):
        table = results.summary_table(ci=0.9)
        assert "Lower Limit of 90% Regular Confidence Interval" in table.index
        wide = results.summary_table()
        lower = "Lower Limit of {}% Regular Confidence Interval"
        assert (wide.loc[lower.format(95)] <= table.loc[lower.format(90)]).all()

    def test_se_and_intervals(self, results):
        boots = results.bootstrap
        assert results.se["t+0"] == pytest.approx(np.std(boots[:, 0], ddof=1))
        valid = boots[np.isfinite(boots[:, 1]), 1]
        assert results.conf_int.loc["t+1", "upper"] == pytest.approx(
            np.quantile(valid, 0.975)
        )
        assert results.bias_corrected["t+0"] == pytest.approx(
            2 * 2.1 - boots[:, 0].mean()
        )

    def test_n_missing(self, results):
        assert results.n_missing.tolist() == [0, 1]

    def test_summary_text(self, results):
        text = results.summary()
        assert "Mahalanobis" in text
        assert "Average Treatment Effect on the Treated (ATT)" in text
        assert "1 undefined bootstrap replicate" in text

    def test_summary_mentions_fallback(self, results):
        fallback = PanelEstimateResults(
            estimates=results.estimates,
            bootstrap=results.bootstrap,
            n_iter=500,
            method="CBPS",
            lag=4,
            lead=(0, 1),
            ci_level=0.95,
            qoi="att",
            requested_qoi="ate",
            qoi_fallback=True,
        )
        assert "requested qoi 'ate'" in fallback.summary()

    def test_to_dataframe(self, results):
        df = results.to_dataframe()
        assert list(df.index) == ["t+0", "t+1"]
        assert df["lead"].tolist() == [0, 1]
        assert df["n_valid"].tolist() == [500, 499]

    def test_to_dict(self, results):
        d = results.to_dict()
        assert d["o_coef"] == {"t+0": 2.1, "t+1": 2.4}
        assert d["boots"].shape == (500, 2)
        assert d["qoi"] == "att"
        assert d["lead"] == [0, 1]

    def test_repr(self, results):
        assert "t+0=2.1000" in repr(results)

    def test_estimates_are_read_only_copies(self):
        source = pd.Series([1.0, 2.0], index=["t+0", "t+1"], name="att")
        boots = np.zeros((60, 2))
        results = PanelEstimateResults(
            estimates=source, bootstrap=boots, n_iter=60, method="Maha", lag=1,
            lead=(0, 1), ci_level=0.95, qoi="att",
        )
        source.iloc[0] = 99.0
        boots[0, 0] = 99.0
        assert results.estimates["t+0"] == 1.0
        assert results.bootstrap[0, 0] == 0.0
        assert not results.estimates.values.flags.writeable
        with pytest.raises(ValueError):
            results.bootstrap[0, 0] = 1.0
