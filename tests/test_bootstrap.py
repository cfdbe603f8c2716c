"""
Tests for the difference estimator, the cluster bootstrap and the
confidence interval builder.
"""

import warnings

import numpy as np
import pytest

from panel_estimate import (
    ClusterBootstrap,
    MatchedSetCollection,
    aggregate_leads,
    combine_ate,
    draw_clusters,
    point_estimates,
    resample_panel,
    summarize_bootstrap,
    weighted_difference,
)
from panel_estimate.bootstrap import percentile_levels


def _panel(data, att=None, atc=None, leads=(0,), estimator="matching"):
    collections = {}
    if att is not None:
        collections["att"] = MatchedSetCollection.from_dict(att, lag=1, max_lead=0)
    if atc is not None:
        collections["atc"] = MatchedSetCollection.from_dict(
            atc, lag=1, max_lead=0, qoi="atc"
        )
    return aggregate_leads(
        data, collections, leads,
        unit_id="unit", time_id="period", dependent="outcome", estimator=estimator,
    )


@pytest.fixture(scope="module")
def staggered_panel(staggered_matches):
    return aggregate_leads(
        staggered_matches.data, {"att": staggered_matches.att_matches}, [0, 1, 2],
        unit_id="unit", time_id="period", dependent="outcome", estimator="did",
    )


class TestDifferenceEstimator:
    def test_weighted_difference(self):
        assert weighted_difference([1, -1, 0], [5.0, 3.0, 9.0], [1, 0, 0]) == 2.0

    def test_zero_denominator(self):
        assert np.isnan(weighted_difference([1, -1], [5.0, 3.0], [0, 0]))

    def test_missing_outcome_with_zero_weight_ignored(self):
        est = weighted_difference([1, -1, 0], [5.0, 3.0, np.nan], [1, 0, 0])
        assert est == 2.0

    def test_att_matching(self, tiny_panel):
        panel = _panel(tiny_panel, att={(1, 2): [2]})
        np.testing.assert_allclose(point_estimates(panel, "att"), [2.0])

    def test_att_did(self, tiny_panel):
        panel = _panel(tiny_panel, att={(1, 2): [2]}, estimator="did")
        np.testing.assert_allclose(point_estimates(panel, "att"), [3.0])

    def test_normalized_control_weights(self, tiny_panel):
        panel = _panel(tiny_panel, att={(1, 2): {2: 2.0, 3: 6.0}})
        # 5 - (0.25 * 3 + 0.75 * 4.5)
        np.testing.assert_allclose(point_estimates(panel, "att"), [0.875])

    def test_atc_sign(self, tiny_panel):
        panel = _panel(tiny_panel, atc={(3, 2): [1]})
        # Raw difference 4.5 - 5 = -0.5, reported as the effect 0.5
        np.testing.assert_allclose(point_estimates(panel, "atc"), [0.5])

    def test_ate_combination(self, tiny_panel):
        panel = _panel(tiny_panel, att={(1, 2): [2]}, atc={(3, 2): [1]})
        np.testing.assert_allclose(point_estimates(panel, "ate"), [1.25])

    def test_combine_ate_weights_by_counts(self):
        ate = combine_ate(np.array([2.0]), np.array([0.5]), 3, 1)
        np.testing.assert_allclose(ate, [(2.0 * 3 + 0.5) / 4])

    def test_combine_ate_nan_propagates(self):
        assert np.isnan(combine_ate(np.array([np.nan]), np.array([1.0]), 1, 1)[0])
        assert np.isnan(combine_ate(np.array([1.0]), np.array([1.0]), 0, 0)[0])

    def test_invalid_qoi(self, tiny_panel):
        panel = _panel(tiny_panel, att={(1, 2): [2]})
        with pytest.raises(ValueError, match="qoi"):
            point_estimates(panel, "ite")


class TestResampling:
    def test_draw_clusters_shape_and_range(self):
        draws = draw_clusters(7, 20, np.random.default_rng(0))
        assert draws.shape == (20, 7)
        assert draws.min() >= 0
        assert draws.max() < 7

    def test_resample_panel_repeats_units(self, tiny_panel):
        sample = resample_panel(tiny_panel, "unit", [3, 1, 3])
        assert sample["unit"].tolist() == [3, 3, 1, 1, 3, 3]
        assert sample["period"].tolist() == [1, 2, 1, 2, 1, 2]
        assert sample.index.tolist() == list(range(6))

    def test_resample_panel_empty(self, tiny_panel):
        assert len(resample_panel(tiny_panel, "unit", [])) == 0


class TestClusterBootstrap:
    def test_distribution_shape(self, staggered_panel):
        run = ClusterBootstrap(n_iter=60, seed=1).run(staggered_panel, "att")
        assert run.distribution.shape == (60, 3)
        assert run.draws.shape == (60, 60)
        assert len(run.clusters) == 60

    def test_seed_reproducibility(self, staggered_panel):
        run1 = ClusterBootstrap(n_iter=80, seed=42).run(staggered_panel, "att")
        run2 = ClusterBootstrap(n_iter=80, seed=42).run(staggered_panel, "att")
        np.testing.assert_array_equal(run1.draws, run2.draws)
        np.testing.assert_array_equal(run1.distribution, run2.distribution)

    def test_different_seeds_differ(self, staggered_panel):
        run1 = ClusterBootstrap(n_iter=80, seed=1).run(staggered_panel, "att")
        run2 = ClusterBootstrap(n_iter=80, seed=2).run(staggered_panel, "att")
        assert not np.array_equal(run1.distribution, run2.distribution)

    def test_parallel_matches_serial(self, staggered_panel):
        serial = ClusterBootstrap(n_iter=120, seed=5, chunk_size=25).run(
            staggered_panel, "att"
        )
        parallel = ClusterBootstrap(n_iter=120, seed=5, n_jobs=4, chunk_size=25).run(
            staggered_panel, "att"
        )
        np.testing.assert_array_equal(serial.distribution, parallel.distribution)

    def test_replicates_match_stacked_panel(self, staggered_matches, staggered_panel):
        run = ClusterBootstrap(n_iter=60, seed=11).run(staggered_panel, "att")
        for k in (0, 17, 59):
            sample = resample_panel(staggered_panel.data, "unit", run.drawn_units(k))
            for j, lead in enumerate(staggered_panel.leads):
                expected = weighted_difference(
                    sample[f"Wit_att{lead}"].to_numpy(),
                    sample["outcome"].to_numpy(),
                    sample["dits_att"].to_numpy(),
                )
                assert run.distribution[k, j] == pytest.approx(expected, nan_ok=True)

    def test_point_estimates_unchanged(self, staggered_panel):
        run = ClusterBootstrap(n_iter=60, seed=0).run(staggered_panel, "att")
        np.testing.assert_allclose(run.estimates, point_estimates(staggered_panel, "att"))

    def test_state_transitions(self, staggered_panel):
        engine = ClusterBootstrap(n_iter=60, seed=0)
        assert engine.state_ == "idle"
        engine.run(staggered_panel, "att")
        assert engine.state_ == "done"
        assert engine.run_ is not None

    def test_low_n_iter_warning(self, staggered_panel):
        with pytest.warns(UserWarning, match="n_iter=10"):
            ClusterBootstrap(n_iter=10, seed=0).run(staggered_panel, "att")

    def test_degenerate_replicates_are_nan(self, tiny_panel):
        panel = _panel(tiny_panel, att={(1, 2): [2]})
        with warnings.catch_warnings():
            warnings.simplefilter("ignore")
            run = ClusterBootstrap(n_iter=200, seed=3).run(panel, "att")
        drew_unit1 = np.array([(run.draws[k] == 0).any() for k in range(200)])
        assert np.isnan(run.distribution[~drew_unit1, 0]).all()
        assert np.isfinite(run.distribution[drew_unit1, 0]).all()

    def test_undefined_replicates_warn(self, tiny_panel):
        panel = _panel(tiny_panel, att={(1, 2): [2]})
        with pytest.warns(RuntimeWarning, match="undefined"):
            ClusterBootstrap(n_iter=200, seed=3).run(panel, "att")

    def test_ate_replicates(self, staggered_ate_matches):
        panel = aggregate_leads(
            staggered_ate_matches.data,
            {"att": staggered_ate_matches.att_matches,
             "atc": staggered_ate_matches.atc_matches},
            [0, 1],
            unit_id="unit", time_id="period", dependent="outcome",
        )
        run = ClusterBootstrap(n_iter=60, seed=9).run(panel, "ate")
        assert run.distribution.shape == (60, 2)
        assert np.isfinite(run.estimates).all()

    @pytest.mark.parametrize("kwargs", [
        {"n_iter": 0},
        {"n_jobs": 0},
        {"chunk_size": 0},
    ])
    def test_invalid_arguments(self, kwargs):
        with pytest.raises(ValueError):
            ClusterBootstrap(**kwargs)


class TestSummarizeBootstrap:
    def test_percentile_levels(self):
        lower, upper = percentile_levels(0.95)
        assert lower == pytest.approx(0.025)
        assert upper == pytest.approx(0.975)

    def test_statistics(self):
        rng = np.random.default_rng(0)
        boots = rng.normal(1.0, 0.5, size=(2000, 2))
        estimates = np.array([1.2, 0.9])
        s = summarize_bootstrap(estimates, boots, ci=0.9)

        np.testing.assert_allclose(s.se, boots.std(axis=0, ddof=1))
        np.testing.assert_allclose(s.ci_lower, np.quantile(boots, 0.05, axis=0))
        np.testing.assert_allclose(s.ci_upper, np.quantile(boots, 0.95, axis=0))
        np.testing.assert_allclose(s.bc_estimate, 2 * estimates - boots.mean(axis=0))
        np.testing.assert_allclose(
            s.bc_ci_lower, np.quantile(2 * estimates - boots, 0.05, axis=0)
        )
        np.testing.assert_array_equal(s.n_valid, [2000, 2000])

    def test_bias_correction_exact_when_centered(self):
        boots = np.array([[1.0], [2.0], [3.0]])
        s = summarize_bootstrap(np.array([2.0]), boots)
        assert s.bc_estimate[0] == pytest.approx(2.0)

    def test_wider_level_wider_interval(self):
        boots = np.random.default_rng(1).normal(size=(500, 1))
        narrow = summarize_bootstrap(np.array([0.0]), boots, ci=0.8)
        wide = summarize_bootstrap(np.array([0.0]), boots, ci=0.99)
        assert wide.ci_lower[0] <= narrow.ci_lower[0]
        assert wide.ci_upper[0] >= narrow.ci_upper[0]
        assert narrow.ci_lower[0] <= narrow.ci_upper[0]

    @pytest.mark.parametrize("ci", [0.9, 0.95])
    def test_intervals_bracket_estimate(self, ci):
        rng = np.random.default_rng(2024)
        estimates = np.array([1.0, -2.0, 0.0, 5.5])
        boots = estimates + rng.normal(0.0, 0.5, size=(4000, estimates.size))
        s = summarize_bootstrap(estimates, boots, ci=ci)

        assert np.all(s.ci_lower <= estimates)
        assert np.all(estimates <= s.ci_upper)
        assert np.all(s.bc_ci_lower <= estimates)
        assert np.all(estimates <= s.bc_ci_upper)

    def test_nan_replicates_excluded(self):
        boots = np.array([[1.0, np.nan], [3.0, np.nan], [np.nan, np.nan]])
        s = summarize_bootstrap(np.array([2.0, 1.0]), boots)
        assert s.se[0] == pytest.approx(np.sqrt(2.0))
        np.testing.assert_array_equal(s.n_valid, [2, 0])
        assert np.isnan(s.se[1])
        assert np.isnan(s.ci_lower[1])
        assert np.isnan(s.bc_estimate[1])

    def test_single_replicate_has_no_se(self):
        s = summarize_bootstrap(np.array([1.0]), np.array([[2.0]]))
        assert np.isnan(s.se[0])
        assert s.ci_lower[0] == 2.0

    def test_shape_mismatch(self):
        with pytest.raises(ValueError, match="columns"):
            summarize_bootstrap(np.array([1.0, 2.0]), np.zeros((10, 3)))

    @pytest.mark.parametrize("ci", [0.0, 1.0, 1.5])
    def test_invalid_ci(self, ci):
        with pytest.raises(ValueError, match="ci"):
            summarize_bootstrap(np.array([1.0]), np.zeros((10, 1)), ci=ci)
