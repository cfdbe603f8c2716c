"""
Weighted least squares with cluster-robust variance for panel-estimate.

Used by the default weighted fixed-effects estimator. Observations are
weighted by pre-scaling rows with the square root of their weight, after
which the problem is plain OLS; the sandwich variance computed on the scaled
design is the usual WLS cluster-robust variance.

Rank Deficiency Handling
------------------------
Linearly dependent columns are detected with pivoted QR (R's ``lm()``
tolerance of 1e-07), dropped from the solve and reported with NaN
coefficients, with a warning naming the dropped columns.
"""

import warnings
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd
from scipy.linalg import lstsq as scipy_lstsq
from scipy.linalg import qr


def _detect_rank_deficiency(
    X: np.ndarray,
    rcond: float = 1e-07,
) -> Tuple[int, np.ndarray]:
    """
    Detect linearly dependent columns using pivoted QR decomposition.

    Returns
    -------
    rank : int
        Numerical rank of ``X``.
    dropped_cols : ndarray of int
        Sorted indices of dependent columns; empty if full rank.
    """
    k = X.shape[1]
    _, R, pivot = qr(X, mode="economic", pivoting=True)
    r_diag = np.abs(np.diag(R))
    if r_diag.size == 0 or r_diag[0] == 0:
        rank = 0
    else:
        rank = int(np.sum(r_diag > rcond * r_diag[0]))

    if rank < k:
        dropped_cols = np.sort(pivot[rank:])
    else:
        dropped_cols = np.array([], dtype=int)
    return rank, dropped_cols


def _format_dropped_columns(
    dropped_cols: np.ndarray,
    column_names: Optional[List[str]] = None,
) -> str:
    if column_names is not None:
        names = [
            column_names[i] if i < len(column_names) else f"column {i}"
            for i in dropped_cols
        ]
        return ", ".join(f"'{n}'" for n in names)
    return ", ".join(f"column {i}" for i in dropped_cols)


def compute_cluster_vcov(
    X: np.ndarray,
    residuals: np.ndarray,
    cluster_ids: np.ndarray,
    absorbed_df: int = 0,
    df_adjustment: bool = False,
) -> np.ndarray:
    """
    Cluster-robust sandwich variance.

    Parameters
    ----------
    X : np.ndarray
        Design matrix of shape (n, k), already weighted.
    residuals : np.ndarray
        Residuals of shape (n,), already weighted.
    cluster_ids : np.ndarray
        Cluster identifier per row.
    absorbed_df : int, default=0
        Degrees of freedom consumed by absorbed fixed effects.
    df_adjustment : bool, default=False
        If True, scale by ``G/(G-1) * (n-1)/(n-k-absorbed_df)``; otherwise
        by ``G/(G-1)`` only.

    Returns
    -------
    np.ndarray
        Variance-covariance matrix of shape (k, k).
    """
    n, k = X.shape
    cluster_ids = np.asarray(cluster_ids)
    n_clusters = len(pd.unique(cluster_ids))
    if n_clusters < 2:
        raise ValueError(
            f"Need at least 2 clusters for cluster-robust SEs, got {n_clusters}"
        )

    adjustment = n_clusters / (n_clusters - 1)
    if df_adjustment:
        resid_df = n - k - absorbed_df
        if resid_df <= 0:
            raise ValueError(
                f"No residual degrees of freedom left (n={n}, k={k}, "
                f"absorbed={absorbed_df}); cannot apply df_adjustment."
            )
        adjustment *= (n - 1) / resid_df

    scores = X * residuals[:, np.newaxis]
    cluster_scores = pd.DataFrame(scores).groupby(cluster_ids).sum().values
    meat = cluster_scores.T @ cluster_scores

    XtX = X.T @ X
    try:
        temp = np.linalg.solve(XtX, meat)
        vcov = adjustment * np.linalg.solve(XtX, temp.T).T
    except np.linalg.LinAlgError as e:
        raise ValueError(
            "Design matrix is rank-deficient (singular X'X matrix). "
            "Check the weight column and the treatment variation within the "
            "demeaning groups."
        ) from e
    return vcov


def solve_wls(
    X: np.ndarray,
    y: np.ndarray,
    weights: np.ndarray,
    cluster_ids: np.ndarray,
    *,
    absorbed_df: int = 0,
    df_adjustment: bool = False,
    column_names: Optional[List[str]] = None,
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """
    Solve weighted least squares with clustered standard errors.

    Parameters
    ----------
    X : ndarray of shape (n, k)
        Design matrix.
    y : ndarray of shape (n,)
        Response vector.
    weights : ndarray of shape (n,)
        Non-negative observation weights.
    cluster_ids : ndarray of shape (n,)
        Cluster identifiers.
    absorbed_df : int, default=0
        Degrees of freedom consumed by absorbed fixed effects.
    df_adjustment : bool, default=False
        Apply the residual degrees-of-freedom correction to the variance.
    column_names : list of str, optional
        Column names for warning/error messages.

    Returns
    -------
    coefficients : ndarray of shape (k,)
        NaN for dropped columns.
    residuals : ndarray of shape (n,)
        Unweighted residuals ``y - X @ coefficients``.
    vcov : ndarray of shape (k, k)
        Cluster-robust variance, NaN for dropped rows/columns.
    """
    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y, dtype=np.float64)
    weights = np.asarray(weights, dtype=np.float64)

    if X.ndim != 2:
        raise ValueError(f"X must be 2-dimensional, got shape {X.shape}")
    if not (X.shape[0] == y.shape[0] == weights.shape[0]):
        raise ValueError(
            f"X, y and weights must have the same number of observations: "
            f"{X.shape[0]}, {y.shape[0]}, {weights.shape[0]}"
        )
    if np.any(weights < 0) or not np.isfinite(weights).all():
        raise ValueError("weights must be finite and non-negative")
    if not (np.isfinite(X).all() and np.isfinite(y).all()):
        raise ValueError("X and y must not contain NaN or Inf values")

    n, k = X.shape
    sqrt_w = np.sqrt(weights)
    Xw = X * sqrt_w[:, np.newaxis]
    yw = y * sqrt_w

    rank, dropped_cols = _detect_rank_deficiency(Xw)
    kept_cols = np.array([i for i in range(k) if i not in set(dropped_cols)], dtype=int)
    if len(dropped_cols) > 0:
        dropped_str = _format_dropped_columns(dropped_cols, column_names)
        warnings.warn(
            f"Rank-deficient design matrix: dropping {k - rank} of {k} columns "
            f"({dropped_str}). Coefficients for these columns are set to NA.",
            UserWarning,
            stacklevel=3,
        )

    coefficients = np.full(k, np.nan)
    vcov = np.full((k, k), np.nan)
    if len(kept_cols) == 0:
        return coefficients, y.copy(), vcov

    Xw_kept = Xw[:, kept_cols]
    coef_kept = scipy_lstsq(
        Xw_kept, yw, lapack_driver="gelsd", check_finite=False, cond=1e-07
    )[0]
    coefficients[kept_cols] = coef_kept

    residuals_w = yw - Xw_kept @ coef_kept
    vcov[np.ix_(kept_cols, kept_cols)] = compute_cluster_vcov(
        Xw_kept, residuals_w, cluster_ids,
        absorbed_df=absorbed_df, df_adjustment=df_adjustment,
    )
    residuals = y - X[:, kept_cols] @ coef_kept
    return coefficients, residuals, vcov
