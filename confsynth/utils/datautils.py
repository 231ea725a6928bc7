import logging
from dataclasses import dataclass
from typing import Optional, List, Sequence, Union, Any

import numpy as np
import pandas as pd

from confsynth.config_models import OutcomeSpec, default_outcome_spec
from confsynth.exceptions import ConfigurationError, ShapeMismatchError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EstimationMatrices:
    """
    Aligned treated and donor matrices for one (treated unit, outcome) pair.

    Attributes
    ----------
    Y1 : np.ndarray
        Treated unit outcome, shape (T0 + T1,), ordered by date.
    Y0 : np.ndarray
        Donor outcomes, shape (T0 + T1, n_donors), same row order as ``Y1``.
    T0 : int
        Number of pre-treatment rows (the first ``T0`` rows).
    T1 : int
        Number of post-treatment rows (the last ``T1`` rows).
    dates : pd.Index
        Date of every row.
    donor_names : List[str]
        Entity code of every column of ``Y0``.
    treated : str
        Treated entity code.
    outcome : str
        Outcome column name.
    """
    Y1: np.ndarray
    Y0: np.ndarray
    T0: int
    T1: int
    dates: pd.Index
    donor_names: List[str]
    treated: str
    outcome: str

    @property
    def y1(self) -> np.ndarray:
        """Pre-treatment slice of ``Y1``."""
        return self.Y1[: self.T0]

    @property
    def y0(self) -> np.ndarray:
        """Pre-treatment slice of ``Y0``."""
        return self.Y0[: self.T0, :]


def check_matrix_shapes(Y1: np.ndarray, Y0: np.ndarray, T0: int, T1: int) -> None:
    """Raise ``ShapeMismatchError`` unless ``len(Y1) == T0 + T1 == Y0.shape[0]``."""
    if Y1.ndim != 1:
        raise ShapeMismatchError(f"Y1 must be one-dimensional. Got shape {Y1.shape}.")
    if Y0.ndim != 2:
        raise ShapeMismatchError(f"Y0 must be two-dimensional. Got shape {Y0.shape}.")
    if not (len(Y1) == T0 + T1 == Y0.shape[0]):
        raise ShapeMismatchError(
            f"len(Y1) == T0 + T1 == nrow(Y0) must hold. Got len(Y1)={len(Y1)}, "
            f"T0 + T1={T0 + T1}, nrow(Y0)={Y0.shape[0]}."
        )


def drop_incomplete_entities(
    panel: pd.DataFrame,
    outcome: str,
    entity_col: str = "entity",
) -> pd.DataFrame:
    """Remove every entity that has at least one missing value for ``outcome``."""
    incomplete = panel.loc[panel[outcome].isna(), entity_col].unique()
    if len(incomplete) > 0:
        logger.debug("Dropping entities with missing %s values: %s", outcome, ", ".join(map(str, incomplete)))
    return panel[~panel[entity_col].isin(incomplete)].reset_index(drop=True)


def build_matrices(
    panel: pd.DataFrame,
    outcome: str,
    treated: str,
    exclude: Union[str, Sequence[str], None],
    T0: int,
    outcome_spec: Optional[OutcomeSpec] = None,
    date_col: str = "date",
    entity_col: str = "entity",
    post_col: str = "post_treatment",
) -> EstimationMatrices:
    """Assemble the treated vector and donor matrix for one estimation.

    The other treated unit(s) are removed from the sample so that they cannot
    contaminate the counterfactual. Donors are pivoted into one column per
    entity (sorted by entity code) and only the trailing ``T0 + T1`` dates are
    kept, where ``T1`` is the number of distinct post-treatment dates.

    Parameters
    ----------
    panel : pd.DataFrame
        Long panel with one row per (date, entity).
    outcome : str
        Outcome column to estimate.
    treated : str
        Entity code of the treated unit.
    exclude : str or sequence of str or None
        Treated entities removed from the donor pool.
    T0 : int
        Number of pre-treatment periods.
    outcome_spec : OutcomeSpec, optional
        Outcome-class settings; defaults to ``default_outcome_spec(outcome)``.
    date_col, entity_col, post_col : str
        Column names of the panel.

    Returns
    -------
    EstimationMatrices

    Raises
    ------
    ConfigurationError
        If ``T0`` is not positive or exceeds the outcome cap, if the outcome
        is not a column of the panel, or if the treated unit is missing.
    ShapeMismatchError
        If the panel cannot be aligned: duplicates, no post-treatment dates,
        too few dates, or missing values in the retained range.
    """
    if outcome_spec is None:
        outcome_spec = default_outcome_spec(outcome)

    # Configuration checks come before any data manipulation.
    if T0 > outcome_spec.max_T0:
        raise ConfigurationError(f"{outcome} supports T0 up to {outcome_spec.max_T0}. Got {T0}.")
    if T0 < 1:
        raise ConfigurationError(f"T0 must be a positive integer. Got {T0}.")
    if outcome not in panel.columns or outcome in (date_col, entity_col, post_col):
        raise ConfigurationError(f"Outcome '{outcome}' is not supported.")

    if exclude is None:
        excluded = []
    elif isinstance(exclude, str):
        excluded = [exclude]
    else:
        excluded = list(exclude)
    if treated in excluded:
        raise ConfigurationError(f"Treated unit '{treated}' cannot also be excluded.")

    sample = panel[~panel[entity_col].isin(excluded)]
    if treated not in set(sample[entity_col]):
        raise ConfigurationError(f"Treated unit '{treated}' not found in panel.")

    if sample.duplicated([date_col, entity_col]).any():
        raise ShapeMismatchError(
            "Duplicate observations found. Ensure each combination of date and entity is unique."
        )

    T1 = int(sample.loc[sample[post_col].astype(bool), date_col].nunique())
    if T1 == 0:
        raise ShapeMismatchError("No post-treatment dates found in panel.")
    total_periods = T0 + T1

    wide = sample.pivot(index=date_col, columns=entity_col, values=outcome).sort_index()
    wide = wide.reindex(columns=sorted(wide.columns))
    if wide.shape[0] < total_periods:
        raise ShapeMismatchError(
            f"Panel has {wide.shape[0]} dates for {outcome}, fewer than T0 + T1 = {total_periods}."
        )
    wide = wide.iloc[-total_periods:]

    # The trailing window must end with exactly the post-treatment dates.
    post_dates = sample.loc[sample[post_col].astype(bool), date_col].unique()
    if not wide.index[T0:].isin(post_dates).all() or wide.index[:T0].isin(post_dates).any():
        raise ShapeMismatchError("Post-treatment dates are not the most recent dates of the panel.")

    donors = wide.drop(columns=[treated])
    if donors.shape[1] == 0:
        raise ShapeMismatchError("No donor units found after excluding treated units.")

    treated_series = wide[treated]
    if treated_series.isna().any():
        raise ShapeMismatchError(
            f"Treated unit '{treated}' has missing {outcome} values within the last {total_periods} dates."
        )
    missing = donors.columns[donors.isna().any()].tolist()
    if missing:
        raise ShapeMismatchError(
            f"Donor units with missing {outcome} values within the last {total_periods} dates: "
            f"{', '.join(map(str, missing))}"
        )

    Y1 = treated_series.to_numpy(dtype=float)
    Y0 = donors.to_numpy(dtype=float)
    check_matrix_shapes(Y1, Y0, T0, T1)

    return EstimationMatrices(
        Y1=Y1,
        Y0=Y0,
        T0=T0,
        T1=T1,
        dates=wide.index,
        donor_names=[str(c) for c in donors.columns],
        treated=treated,
        outcome=outcome,
    )


def prepare_panel(
    raw: pd.DataFrame,
    outcomes: Sequence[str],
    treated_units: Sequence[str],
    control_units: Sequence[str],
    treatment_date: Any,
    end_date: Any,
    time_col: str = "time",
    geo_col: str = "geo",
    variable_col: str = "coicop",
    value_col: str = "values",
) -> pd.DataFrame:
    """Turn a provider-style index table into the long panel schema.

    ``raw`` holds one row per (time, geo, variable). Only treated and control
    entities, the requested outcomes and dates up to ``end_date`` are kept.
    The result has columns ``date``, ``entity``, ``post_treatment`` and one
    column per outcome, sorted by (entity, date).
    """
    treatment_date = pd.Timestamp(treatment_date)
    end_date = pd.Timestamp(end_date)
    pool = set(treated_units) | set(control_units)

    frame = raw.copy()
    frame[time_col] = pd.to_datetime(frame[time_col])
    frame = frame[
        frame[geo_col].isin(pool)
        & frame[variable_col].isin(outcomes)
        & (frame[time_col] <= end_date)
    ]
    frame = frame.assign(post_treatment=frame[time_col] >= treatment_date)

    panel = frame.pivot_table(
        index=[time_col, geo_col, "post_treatment"],
        columns=variable_col,
        values=value_col,
        aggfunc="first",
    ).reset_index()
    panel.columns.name = None
    panel = panel.rename(columns={time_col: "date", geo_col: "entity"})
    return panel.sort_values(["entity", "date"]).reset_index(drop=True)
