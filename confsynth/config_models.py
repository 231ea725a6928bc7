from decimal import Decimal
from typing import List, Optional, Any, Sequence
import numbers
import warnings

import pandas as pd
from pydantic import BaseModel, Field, model_validator

from confsynth.exceptions import ConfigurationError, ShapeMismatchError


# Largest supported pre-treatment window per outcome class.
SHORT_HISTORY_MAX_T0 = 89
LONG_HISTORY_MAX_T0 = 114

VALID_FITTING_MODES = ("simplex", "nonneg", "affine")
VALID_PERMUTATION_METHODS = ("iid", "mb")


class StudyDefaults:
    """Default study design of the Iberian exception application.

    These are only defaults: every estimator takes the treated units, donor
    pool and dates as explicit configuration.
    """
    treated_units: List[str] = ["ES", "PT"]
    control_units: List[str] = [
        "AT", "BE", "BG", "CZ", "DE", "DK", "EE", "EL",
        "FI", "HR", "HU", "IE", "IT", "LT", "LU", "LV",
        "NL", "NO", "PL", "RO", "SE", "SI", "SK",
    ]
    treatment_date: str = "2022-06-01"
    end_date: str = "2023-06-01"
    short_history_outcomes: List[str] = ["DAA"]


class OutcomeSpec(BaseModel):
    """
    Outcome-class settings consumed by the panel builder and the grid search.

    Short-history outcomes (the day-ahead auction price) support fewer
    pre-treatment periods and use a narrower initial confidence interval grid.
    """
    name: str = Field(..., description="Outcome column name.")
    max_T0: int = Field(default=LONG_HISTORY_MAX_T0, description="Largest supported number of pre-treatment periods.")
    lower_widening: float = Field(default=0.4, description="Share of the gap range subtracted below the smallest post-treatment gap.")
    upper_widening: float = Field(default=0.2, description="Share of the gap range added above the largest post-treatment gap.")
    drop_incomplete_entities: bool = Field(default=False, description="Drop entities with any missing outcome value before assembly.")

    class Config:
        extra = "forbid"
        frozen = True

    @model_validator(mode="after")
    def check_values(self) -> "OutcomeSpec":
        if self.max_T0 < 1:
            raise ConfigurationError(f"max_T0 must be a positive integer. Got {self.max_T0}.")
        if self.lower_widening < 0 or self.upper_widening < 0:
            raise ConfigurationError("Grid widening factors must be non-negative.")
        return self


def default_outcome_spec(name: str, short_history_outcomes: Sequence[str] = ("DAA",)) -> OutcomeSpec:
    """Return the outcome-class settings for ``name``."""
    if name in short_history_outcomes:
        return OutcomeSpec(
            name=name,
            max_T0=SHORT_HISTORY_MAX_T0,
            lower_widening=0.2,
            upper_widening=0.1,
            drop_incomplete_entities=True,
        )
    return OutcomeSpec(name=name)


def validate_precision(precision: Any) -> float:
    """Check that the grid step lies strictly between 0 and 1."""
    if isinstance(precision, bool) or not isinstance(precision, (numbers.Real, Decimal)) or not (0 < precision < 1):
        raise ConfigurationError(f"precision must be a number between 0 and 1. Got {precision}.")
    # Through str so that np.float32(0.01) becomes 0.01, not 0.00999999977...
    return float(str(precision))


class InferenceConfig(BaseModel):
    """Settings of the conformal inference procedure and its grid search."""
    alpha: float = Field(default=0.1, description="Significance level; intervals have 1 - alpha coverage.")
    n_perm: int = Field(default=5000, description="Number of random permutations for the 'iid' scheme.")
    permutation_method: str = Field(default="iid", description="Permutation scheme: 'iid' or 'mb' (moving block).")
    q: float = Field(default=1.0, description="Norm of the test statistic.")
    seed: Optional[int] = Field(default=None, description="Seed of the permutation generator.")
    max_expansions: int = Field(default=50, description="Largest number of grid re-expansions before giving up.")
    expansion_factor: float = Field(default=0.2, description="Relative growth of a binding grid edge.")
    n_jobs: int = Field(default=1, description="Worker threads used for grid points.")

    class Config:
        extra = "forbid"

    @model_validator(mode="after")
    def check_values(self) -> "InferenceConfig":
        if not 0 < self.alpha < 1:
            raise ConfigurationError(f"alpha must be between 0 and 1. Got {self.alpha}.")
        if self.n_perm < 1:
            raise ConfigurationError(f"n_perm must be a positive integer. Got {self.n_perm}.")
        if self.permutation_method not in VALID_PERMUTATION_METHODS:
            raise ConfigurationError(
                f"permutation_method must be one of {VALID_PERMUTATION_METHODS}. Got '{self.permutation_method}'."
            )
        if self.q <= 0:
            raise ConfigurationError(f"q must be positive. Got {self.q}.")
        if self.max_expansions < 0:
            raise ConfigurationError(f"max_expansions must be non-negative. Got {self.max_expansions}.")
        if self.expansion_factor <= 0:
            raise ConfigurationError(f"expansion_factor must be positive. Got {self.expansion_factor}.")
        if self.n_jobs < 1:
            raise ConfigurationError(f"n_jobs must be at least 1. Got {self.n_jobs}.")
        return self


class SCCIConfig(BaseModel):
    """
    Configuration for the synthetic control study with conformal intervals (SCCI).

    One estimation is run for every treated unit and every (outcome, T0) pair.
    While a treated unit is estimated, all other treated units are removed
    from the donor pool.
    """
    df: pd.DataFrame = Field(..., description="Long panel with one row per date and entity.")
    outcomes: List[str] = Field(..., description="Outcome columns to estimate.")
    T0s: List[int] = Field(..., description="Pre-treatment window per outcome, same length as outcomes.")
    precision: float = Field(default=0.01, description="Step of the confidence interval grid, in (0, 1).")
    compute_ci: bool = Field(default=False, description="Whether to compute 1 - alpha confidence intervals.")
    fitting_mode: str = Field(default="simplex", description="Weight constraint set: 'simplex', 'nonneg' or 'affine'.")
    solver: str = Field(default="CLARABEL", description="cvxpy solver used for constrained fits.")
    treated_units: List[str] = Field(default_factory=lambda: list(StudyDefaults.treated_units), description="Treated entity codes.")
    date_col: str = Field(default="date", description="Date column.")
    entity_col: str = Field(default="entity", description="Entity code column.")
    post_col: str = Field(default="post_treatment", description="Boolean post-treatment flag column.")
    short_history_outcomes: List[str] = Field(
        default_factory=lambda: list(StudyDefaults.short_history_outcomes),
        description="Outcomes belonging to the short-history class.",
    )
    inference: InferenceConfig = Field(default_factory=InferenceConfig, description="Conformal inference settings.")
    skip_failed: bool = Field(default=False, description="Log and skip pairs whose fit or grid search fails.")
    save_csv: bool = Field(default=False, description="Write the output table to results_dir.")
    results_dir: str = Field(default="results", description="Directory of the saved output table.")

    class Config:
        arbitrary_types_allowed = True
        extra = "forbid"

    @model_validator(mode="after")
    def check_study(self) -> "SCCIConfig":
        df = self.df
        if df.empty:
            raise ShapeMismatchError("Input DataFrame 'df' cannot be empty.")

        required_columns = {self.date_col, self.entity_col, self.post_col}
        missing_columns = required_columns - set(df.columns)
        if missing_columns:
            raise ShapeMismatchError(
                f"Missing required columns in DataFrame 'df': {', '.join(sorted(missing_columns))}"
            )

        if len(self.outcomes) != len(self.T0s):
            raise ConfigurationError(
                f"T0s must be the same length as outcomes. Got {len(self.outcomes)} outcomes "
                f"and {len(self.T0s)} T0s."
            )
        if not self.outcomes:
            raise ConfigurationError("At least one outcome is required.")

        validate_precision(self.precision)

        if self.fitting_mode not in VALID_FITTING_MODES:
            raise ConfigurationError(
                f"fitting_mode must be one of {VALID_FITTING_MODES}. Got '{self.fitting_mode}'."
            )

        for outcome, T0 in zip(self.outcomes, self.T0s):
            outcome_spec = default_outcome_spec(outcome, self.short_history_outcomes)
            if T0 > outcome_spec.max_T0:
                raise ConfigurationError(f"{outcome} supports T0 up to {outcome_spec.max_T0}. Got {T0}.")
            if T0 < 1:
                raise ConfigurationError(f"T0 for {outcome} must be a positive integer. Got {T0}.")

        reserved = required_columns
        supported = [c for c in df.columns if c not in reserved]
        not_supported = [out for out in self.outcomes if out not in supported]
        if not_supported:
            label = "Outcome" if len(not_supported) == 1 else "Outcomes"
            raise ConfigurationError(
                f"{label} {', '.join(repr(o) for o in not_supported)} not supported.\n"
                f"Supported outcomes are: {', '.join(map(str, supported))}"
            )

        if not self.treated_units:
            raise ConfigurationError("At least one treated unit is required.")
        missing_units = [u for u in self.treated_units if u not in set(df[self.entity_col])]
        if missing_units:
            raise ConfigurationError(f"Treated units not found in panel: {', '.join(missing_units)}")

        if not df.sort_values([self.entity_col, self.date_col]).equals(df):
            warnings.warn(
                f"DataFrame was not sorted by [{self.entity_col}, {self.date_col}]. Auto-sorting applied.",
                UserWarning
            )
            self.df = df.sort_values([self.entity_col, self.date_col]).reset_index(drop=True)

        return self
