"""
panel-estimate: treatment effect estimation over matched sets of panel data.

Turns matched sets of treated and comparison observations into lead-by-lead
estimates of the ATT, ATC or ATE, with unit-level bootstrap or weighted
fixed-effects inference.
"""

from panel_estimate.matched_sets import (
    MatchedSet,
    MatchedSetCollection,
    PanelMatchResult,
    take_out,
    truncate_collection,
)
from panel_estimate.weights import (
    AugmentedPanel,
    WeightColumn,
    aggregate_leads,
    extract_set_weights,
    indicator_column,
)
from panel_estimate.bootstrap import (
    BootstrapRun,
    BootstrapSummary,
    ClusterBootstrap,
    combine_ate,
    draw_clusters,
    point_estimates,
    resample_panel,
    summarize_bootstrap,
    weighted_difference,
)
from panel_estimate.results import PanelEstimateResults, WFEResults
from panel_estimate.wfe import (
    WFESpecification,
    build_wfe_specification,
    fit_wfe,
    weighted_fixed_effects,
)
from panel_estimate.estimators import PanelEstimate, panel_estimate
from panel_estimate.prep import (
    build_history_matched_sets,
    generate_matched_panel,
    generate_staggered_panel,
)

__version__ = "0.1.0"
__all__ = [
    # Estimators
    "PanelEstimate",
    "panel_estimate",
    # Results
    "PanelEstimateResults",
    "WFEResults",
    "BootstrapRun",
    "BootstrapSummary",
    # Matched sets
    "MatchedSet",
    "MatchedSetCollection",
    "PanelMatchResult",
    "take_out",
    "truncate_collection",
    # Weights
    "AugmentedPanel",
    "WeightColumn",
    "aggregate_leads",
    "extract_set_weights",
    "indicator_column",
    # Bootstrap inference
    "ClusterBootstrap",
    "combine_ate",
    "draw_clusters",
    "point_estimates",
    "resample_panel",
    "summarize_bootstrap",
    "weighted_difference",
    # Weighted fixed effects
    "WFESpecification",
    "build_wfe_specification",
    "fit_wfe",
    "weighted_fixed_effects",
    # Data preparation utilities
    "build_history_matched_sets",
    "generate_matched_panel",
    "generate_staggered_panel",
]
