import logging
from dataclasses import dataclass, field
from typing import Dict, Optional, Union, List, Tuple, Any, Sequence

import numpy as np
import pandas as pd

from ..config_models import (
    SCCIConfig,
    InferenceConfig,
    OutcomeSpec,
    default_outcome_spec,
    validate_precision,
)
from ..exceptions import ConfigurationError, FittingError, NonConvergenceError
from ..utils.datautils import build_matrices, check_matrix_shapes, drop_incomplete_entities
from ..utils.gridsearch import GridSearchController, GridSearchResult
from ..utils.inferutils import ConformalIntervalEngine
from ..utils.optutils import SyntheticControlFitter
from ..utils.resultutils import SERIES_COLUMNS, build_series_frame, save_series, summarize_fit

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SCCIResult:
    """
    Result of one (treated unit, outcome) estimation.

    Attributes
    ----------
    series : pd.DataFrame
        Flat record with columns ``date, obs, synth, gap, upper_ci, lower_ci,
        T0, outcome, treated``.
    weights : Dict[str, float]
        Donor weights keyed by donor name.
    fit_summary : Dict[str, float]
        Pre-treatment RMSE and R-squared, ATT and percent ATT.
    p_value : float or None
        Conformal p-value of a zero effect; None when intervals are disabled.
    grid_search : GridSearchResult or None
        Trace of the confidence interval search; None when disabled.
    """
    series: pd.DataFrame
    weights: Dict[str, float]
    fit_summary: Dict[str, float]
    p_value: Optional[float] = None
    grid_search: Optional[GridSearchResult] = None


@dataclass(frozen=True)
class SCCIOutput:
    """
    Results of a full study.

    Attributes
    ----------
    series : pd.DataFrame
        Row-wise concatenation of every estimation's record.
    results : Dict[Tuple[str, str], SCCIResult]
        Per (treated unit, outcome) results.
    csv_path : str or None
        Location of the saved table, if any.
    """
    series: pd.DataFrame
    results: Dict[Tuple[str, str], SCCIResult] = field(default_factory=dict)
    csv_path: Optional[str] = None


def estimate(
    Y1: np.ndarray,
    Y0: np.ndarray,
    T0: int,
    T1: int,
    compute_ci: bool = False,
    precision: float = 0.01,
    fitting_mode: str = "simplex",
    dates: Optional[Sequence[Any]] = None,
    outcome: Optional[str] = None,
    treated: Optional[str] = None,
    donor_names: Optional[Sequence[str]] = None,
    outcome_spec: Optional[OutcomeSpec] = None,
    inference: Optional[InferenceConfig] = None,
    solver: str = "CLARABEL",
) -> SCCIResult:
    """
    Estimate the synthetic control and, optionally, conformal intervals.

    Parameters
    ----------
    Y1 : np.ndarray
        Treated outcome, shape (T0 + T1,).
    Y0 : np.ndarray
        Donor outcomes, shape (T0 + T1, n_donors).
    T0, T1 : int
        Number of pre- and post-treatment periods.
    compute_ci : bool, default False
        Run the conformal grid search for 1 - alpha pointwise intervals.
    precision : float, default 0.01
        Step of the interval grid, in (0, 1).
    fitting_mode : str, default "simplex"
        Weight constraint set.
    dates : sequence, optional
        Date of every row; positions 0..T0+T1-1 when omitted.
    outcome, treated : str, optional
        Labels stored in the record.
    donor_names : sequence of str, optional
        Names of the columns of ``Y0``.
    outcome_spec : OutcomeSpec, optional
        Grid widening of the outcome class; derived from ``outcome`` when omitted.
    inference : InferenceConfig, optional
        Conformal inference settings.
    solver : str, default "CLARABEL"
        CVXPY solver.

    Returns
    -------
    SCCIResult

    Raises
    ------
    ConfigurationError
        If ``precision`` is not in (0, 1), ``T0``/``T1`` are not positive, or
        ``T0`` exceeds the cap of the given outcome class.
    ShapeMismatchError
        If ``len(Y1) == T0 + T1 == nrow(Y0)`` does not hold.
    FittingError
        If the weights cannot be estimated.
    NonConvergenceError
        If the interval search does not stabilise.
    """
    precision = validate_precision(precision)
    if T0 < 1 or T1 < 1:
        raise ConfigurationError(f"T0 and T1 must be positive. Got T0={T0}, T1={T1}.")

    # Anonymous calls carry no outcome class and therefore no cap.
    capped = outcome is not None or outcome_spec is not None
    if outcome_spec is None:
        outcome_spec = default_outcome_spec(outcome if outcome is not None else "outcome")
    if capped and T0 > outcome_spec.max_T0:
        label = outcome if outcome is not None else outcome_spec.name
        raise ConfigurationError(f"{label} supports T0 up to {outcome_spec.max_T0}. Got {T0}.")

    Y1 = np.asarray(Y1, dtype=float).ravel()
    Y0 = np.asarray(Y0, dtype=float)
    if Y0.ndim == 1:
        Y0 = Y0.reshape(-1, 1)
    check_matrix_shapes(Y1, Y0, T0, T1)

    if dates is None:
        dates = list(range(T0 + T1))
    if donor_names is None:
        donor_names = [f"donor_{j}" for j in range(Y0.shape[1])]

    fitter = SyntheticControlFitter(fitting_mode=fitting_mode, solver=solver)
    sc_fit = fitter.fit(Y1[:T0], Y0[:T0, :], Y1, Y0)

    lower = upper = None
    p_value = None
    grid_search = None
    if compute_ci:
        if inference is None:
            inference = InferenceConfig()

        engine = ConformalIntervalEngine.from_config(Y1, Y0, T0, T1, inference, fitter=fitter)
        p_value = engine.point_estimate(0.0)

        logger.info("    Searching CI...")
        controller = GridSearchController(
            engine,
            precision,
            lower_widening=outcome_spec.lower_widening,
            upper_widening=outcome_spec.upper_widening,
            expansion_factor=inference.expansion_factor,
            max_expansions=inference.max_expansions,
        )
        grid_search = controller.run(sc_fit.gaps, T0)
        lower, upper = grid_search.lower, grid_search.upper

    series = build_series_frame(
        dates,
        Y1,
        sc_fit.counterfactual,
        sc_fit.gaps,
        T0,
        outcome,
        treated,
        lower=lower,
        upper=upper,
    )
    return SCCIResult(
        series=series,
        weights=dict(zip(map(str, donor_names), sc_fit.weights.tolist())),
        fit_summary=summarize_fit(Y1, sc_fit.counterfactual, T0),
        p_value=p_value,
        grid_search=grid_search,
    )


class SCCI:
    """
    Synthetic control with conformal confidence intervals (SCCI).

    Runs one synthetic control per treated unit and (outcome, T0) pair. While
    a treated unit is estimated, every other treated unit is excluded from
    the donor pool. Confidence intervals come from conformal inference with
    an adaptive grid search over effect values.

    Parameters
    ----------
    config : SCCIConfig or dict
        Configuration object or dictionary:
        - df : pd.DataFrame
            Long panel with date, entity, post-treatment flag and outcome columns.
        - outcomes : List[str]
            Outcome columns to estimate.
        - T0s : List[int]
            Pre-treatment window per outcome.
        - precision : float, default 0.01
            Grid step of the interval search.
        - compute_ci : bool, default False
            Whether to compute intervals; run-time increases considerably.
        - fitting_mode : str, default "simplex"
            Weight constraint set.
        - treated_units : List[str], default ["ES", "PT"]
            Treated entity codes.
        - inference : InferenceConfig
            Conformal inference settings.
        - save_csv : bool, default False
            Write the output table to ``results_dir``.

    References
    ----------
    Haro-Ruiz, M., Schult, C., and Wunder, C. (2023). "The effects of the
    Iberian exception mechanism on wholesale electricity prices and consumer
    inflation: A synthetic-controls-based analysis."

    Examples
    --------
    >>> from confsynth import SCCI
    >>> config = {
    ...     "df": panel,
    ...     "outcomes": ["DAA", "CP00"],
    ...     "T0s": [60, 100],
    ...     "precision": 0.01,
    ...     "compute_ci": True,
    ... }
    >>> output = SCCI(config).fit()  # doctest: +SKIP
    >>> output.series.head()  # doctest: +SKIP
    """

    def __init__(self, config: Union[SCCIConfig, dict]) -> None:
        if isinstance(config, dict):
            config = SCCIConfig(**config)
        self.config = config
        self.df: pd.DataFrame = config.df
        self.outcomes: List[str] = config.outcomes
        self.T0s: List[int] = config.T0s
        self.precision: float = config.precision
        self.compute_ci: bool = config.compute_ci
        self.fitting_mode: str = config.fitting_mode
        self.treated_units: List[str] = config.treated_units

    def _panel_for(self, outcome: str, outcome_spec: OutcomeSpec) -> pd.DataFrame:
        cfg = self.config
        panel = self.df[[cfg.date_col, cfg.entity_col, cfg.post_col, outcome]]
        if outcome_spec.drop_incomplete_entities:
            panel = drop_incomplete_entities(panel, outcome, cfg.entity_col)
        return panel

    def fit(self) -> SCCIOutput:
        """
        Estimate every (treated unit, outcome) pair.

        Returns
        -------
        SCCIOutput
            Concatenated records, per-pair results and the CSV path when saved.

        Raises
        ------
        ConfigurationError, ShapeMismatchError
            Raised for the first pair whose data cannot be assembled.
        FittingError, NonConvergenceError
            Raised unless ``skip_failed`` is set, in which case the pair is
            logged and skipped.
        """
        cfg = self.config
        results: Dict[Tuple[str, str], SCCIResult] = {}

        for treated in self.treated_units:
            logger.info("Treated unit: %s", treated)
            others = [u for u in self.treated_units if u != treated]

            for outcome, T0 in zip(self.outcomes, self.T0s):
                logger.info("  Outcome: %s - T0: %s", outcome, T0)
                outcome_spec = default_outcome_spec(outcome, cfg.short_history_outcomes)
                panel = self._panel_for(outcome, outcome_spec)

                matrices = build_matrices(
                    panel,
                    outcome,
                    treated,
                    others,
                    T0,
                    outcome_spec=outcome_spec,
                    date_col=cfg.date_col,
                    entity_col=cfg.entity_col,
                    post_col=cfg.post_col,
                )
                try:
                    results[(treated, outcome)] = estimate(
                        matrices.Y1,
                        matrices.Y0,
                        matrices.T0,
                        matrices.T1,
                        compute_ci=self.compute_ci,
                        precision=self.precision,
                        fitting_mode=self.fitting_mode,
                        dates=matrices.dates,
                        outcome=outcome,
                        treated=treated,
                        donor_names=matrices.donor_names,
                        outcome_spec=outcome_spec,
                        inference=cfg.inference,
                        solver=cfg.solver,
                    )
                except (FittingError, NonConvergenceError) as e:
                    if not cfg.skip_failed:
                        raise
                    logger.warning("Skipping %s / %s: %s", treated, outcome, e)

        if results:
            series = pd.concat([r.series for r in results.values()], ignore_index=True)
        else:
            series = pd.DataFrame(columns=SERIES_COLUMNS)

        csv_path = None
        if cfg.save_csv:
            csv_path = save_series(series, cfg.results_dir, self.precision, self.compute_ci)

        return SCCIOutput(series=series, results=results, csv_path=csv_path)
