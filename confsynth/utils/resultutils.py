import logging
import os
from typing import Optional, Dict, Any, Sequence

import numpy as np
import pandas as pd

from confsynth.exceptions import ShapeMismatchError
from .gridsearch import precision_decimals

logger = logging.getLogger(__name__)

SERIES_COLUMNS = ["date", "obs", "synth", "gap", "upper_ci", "lower_ci", "T0", "outcome", "treated"]


def build_series_frame(
    dates: Sequence[Any],
    observed: np.ndarray,
    synthetic: np.ndarray,
    gaps: np.ndarray,
    T0: int,
    outcome: Optional[str],
    treated: Optional[str],
    lower: Optional[np.ndarray] = None,
    upper: Optional[np.ndarray] = None,
) -> pd.DataFrame:
    """
    Flat result record of one estimation call.

    Confidence bound columns are NaN for the first ``T0`` rows and entirely
    NaN when no bounds are given.

    Parameters
    ----------
    dates : sequence
        Date of every row, length T0 + T1.
    observed, synthetic, gaps : np.ndarray
        Treated, synthetic and gap series, length T0 + T1.
    T0 : int
        Number of pre-treatment rows.
    outcome, treated : str or None
        Labels stored in every row.
    lower, upper : np.ndarray, optional
        Post-treatment bounds, length T1.

    Returns
    -------
    pd.DataFrame
        Columns ``date, obs, synth, gap, upper_ci, lower_ci, T0, outcome, treated``.
    """
    n_rows = len(observed)
    if not (len(dates) == len(synthetic) == len(gaps) == n_rows):
        raise ShapeMismatchError("dates, observed, synthetic and gaps must have the same length.")

    upper_ci = np.full(n_rows, np.nan)
    lower_ci = np.full(n_rows, np.nan)
    if lower is not None and upper is not None:
        n_post = n_rows - T0
        if len(lower) != n_post or len(upper) != n_post:
            raise ShapeMismatchError(f"Confidence bounds must have length T1 = {n_post}.")
        lower_ci[T0:] = lower
        upper_ci[T0:] = upper

    return pd.DataFrame(
        {
            "date": list(dates),
            "obs": np.asarray(observed, dtype=float),
            "synth": np.asarray(synthetic, dtype=float),
            "gap": np.asarray(gaps, dtype=float),
            "upper_ci": upper_ci,
            "lower_ci": lower_ci,
            "T0": T0,
            "outcome": outcome,
            "treated": treated,
        },
        columns=SERIES_COLUMNS,
    )


def summarize_fit(observed: np.ndarray, synthetic: np.ndarray, T0: int) -> Dict[str, float]:
    """Pre-treatment fit and average post-treatment effect of one estimation."""
    observed = np.asarray(observed, dtype=float)
    synthetic = np.asarray(synthetic, dtype=float)
    residuals_pre = observed[:T0] - synthetic[:T0]
    variance_pre = np.mean((observed[:T0] - np.mean(observed[:T0])) ** 2)
    gaps_post = observed[T0:] - synthetic[T0:]

    att = np.nan
    att_percent = np.nan
    if gaps_post.size:
        att = float(np.mean(gaps_post))
        mean_synthetic_post = float(np.mean(synthetic[T0:]))
        if mean_synthetic_post != 0:
            att_percent = 100 * att / mean_synthetic_post
    return {
        "att": att,
        "att_percent": att_percent,
        "rmse_pre": float(np.sqrt(np.mean(residuals_pre ** 2))),
        "r_squared_pre": float(1 - np.mean(residuals_pre ** 2) / variance_pre) if variance_pre != 0 else np.nan,
    }


def save_series(series: pd.DataFrame, results_dir: str, precision: float, compute_ci: bool) -> str:
    """
    Write the output table to ``<results_dir>/sc_series<suffix>.csv``.

    The suffix is the decimal digits of ``precision`` when intervals were
    computed (``_01`` for 0.01) and empty otherwise.
    """
    os.makedirs(results_dir, exist_ok=True)
    suffix = ""
    if compute_ci:
        suffix = "_" + f"{precision:.{precision_decimals(precision)}f}".split(".")[1]
    file_path = os.path.join(results_dir, f"sc_series{suffix}.csv")
    logger.info("Saving results to %s", file_path)
    series.to_csv(file_path, index=False)
    return file_path
