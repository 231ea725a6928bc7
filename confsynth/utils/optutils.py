# optutils.py

import logging
from dataclasses import dataclass

import cvxpy as cp
import numpy as np
from scipy.optimize import lsq_linear

from confsynth.config_models import VALID_FITTING_MODES
from confsynth.exceptions import ConfigurationError, FittingError, ShapeMismatchError
from .opthelpers import OptHelpers

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SCFit:
    """
    Fitted synthetic control.

    Attributes
    ----------
    weights : np.ndarray
        Donor weights, shape (n_donors,).
    counterfactual : np.ndarray
        Synthetic series ``Y0 @ weights`` over the full horizon.
    gaps : np.ndarray
        Observed minus synthetic series over the full horizon.
    fitting_mode : str
        Constraint set used for the weights.
    """
    weights: np.ndarray
    counterfactual: np.ndarray
    gaps: np.ndarray
    fitting_mode: str


class SyntheticControlFitter:
    """
    Constrained least-squares synthetic control.

    Weights minimise the pre-treatment squared error ``||y1 - y0 w||^2``
    subject to the constraint set selected by ``fitting_mode``:

    - ``"simplex"``: w >= 0 and sum(w) == 1 (classic synthetic control)
    - ``"nonneg"``: w >= 0
    - ``"affine"``: sum(w) == 1

    Simplex and affine problems are solved with CVXPY, the non-negative
    problem with bounded-variable least squares from SciPy.

    Parameters
    ----------
    fitting_mode : str, default "simplex"
        Constraint set of the weights.
    solver : str, default "CLARABEL"
        CVXPY solver for the simplex and affine modes.
    """

    def __init__(self, fitting_mode: str = "simplex", solver: str = "CLARABEL") -> None:
        if fitting_mode not in VALID_FITTING_MODES:
            raise ConfigurationError(
                f"fitting_mode must be one of {VALID_FITTING_MODES}. Got '{fitting_mode}'."
            )
        self.fitting_mode = fitting_mode
        self.solver = solver

    def solve_weights(self, y1: np.ndarray, y0: np.ndarray) -> np.ndarray:
        """
        Estimate donor weights on the pre-treatment sample.

        Parameters
        ----------
        y1 : np.ndarray
            Pre-treatment treated outcome, shape (T0,).
        y0 : np.ndarray
            Pre-treatment donor outcomes, shape (T0, n_donors).

        Returns
        -------
        np.ndarray
            Weight vector of shape (n_donors,).

        Raises
        ------
        ShapeMismatchError
            If ``y1`` and ``y0`` have incompatible shapes.
        FittingError
            If the inputs are not finite or the solver fails.
        """
        y1 = np.asarray(y1, dtype=float).ravel()
        y0 = np.asarray(y0, dtype=float)
        if y0.ndim == 1:
            y0 = y0.reshape(-1, 1)
        if y0.shape[0] != y1.shape[0]:
            raise ShapeMismatchError(
                f"y1 and y0 must have the same number of rows. Got {y1.shape[0]} and {y0.shape[0]}."
            )
        if y0.shape[1] == 0:
            raise ShapeMismatchError("y0 has no donor columns.")
        if not (np.all(np.isfinite(y1)) and np.all(np.isfinite(y0))):
            raise FittingError("Pre-treatment data contain non-finite values.")

        n_donors = y0.shape[1]
        if n_donors == 1:
            return np.ones(1)

        # Common rescaling; the minimiser is unchanged.
        scale = max(np.max(np.abs(y0)), np.max(np.abs(y1)))
        if scale == 0:
            scale = 1.0
        y_scaled = y1 / scale
        X_scaled = y0 / scale

        if self.fitting_mode == "nonneg":
            result = lsq_linear(X_scaled, y_scaled, bounds=(0, np.inf), method="bvls")
            if not result.success:
                raise FittingError(f"Non-negative least squares failed: {result.message}")
            weights = np.clip(result.x, 0, None)
        else:
            weights = self._solve_cvxpy(y_scaled, X_scaled)

        logger.debug("Fitted %d donor weights (%s), %d non-zero", n_donors, self.fitting_mode, int(np.sum(weights > 1e-8)))
        return weights

    def _solve_cvxpy(self, y: np.ndarray, X: np.ndarray) -> np.ndarray:
        n_donors = X.shape[1]
        w = cp.Variable(n_donors)
        objective = cp.Minimize(OptHelpers.squared_loss(y, X, w))
        constraints = OptHelpers.build_constraints(w, self.fitting_mode)
        problem = cp.Problem(objective, constraints)

        try:
            problem.solve(solver=self.solver, verbose=False, **OptHelpers.get_solver_opts(self.solver))
        except cp.error.SolverError as e:
            raise FittingError(f"Solver {self.solver} failed: {e}") from e

        if problem.status not in (cp.OPTIMAL, cp.OPTIMAL_INACCURATE) or w.value is None:
            raise FittingError(f"Weight optimization did not converge (status: {problem.status}).")
        if problem.status == cp.OPTIMAL_INACCURATE:
            logger.debug("Solver %s returned an inaccurate solution", self.solver)

        weights = np.asarray(w.value, dtype=float).ravel()
        if self.fitting_mode == "simplex":
            # Remove solver round-off so the weights lie exactly on the simplex.
            weights = np.clip(weights, 0, None)
            total = weights.sum()
            if total <= 0:
                raise FittingError("Weight optimization returned an all-zero simplex solution.")
            weights = weights / total
        else:
            weights = weights + (1.0 - weights.sum()) / n_donors
        return weights

    def fit(self, y1: np.ndarray, y0: np.ndarray, Y1: np.ndarray, Y0: np.ndarray) -> SCFit:
        """
        Fit weights on the pre-treatment sample and project the counterfactual.

        Parameters
        ----------
        y1 : np.ndarray
            Pre-treatment treated outcome, shape (T0,).
        y0 : np.ndarray
            Pre-treatment donor outcomes, shape (T0, n_donors).
        Y1 : np.ndarray
            Treated outcome over the full horizon, shape (T0 + T1,).
        Y0 : np.ndarray
            Donor outcomes over the full horizon, shape (T0 + T1, n_donors).

        Returns
        -------
        SCFit
        """
        Y1 = np.asarray(Y1, dtype=float).ravel()
        Y0 = np.asarray(Y0, dtype=float)
        if Y0.ndim == 1:
            Y0 = Y0.reshape(-1, 1)
        if Y0.shape[0] != Y1.shape[0]:
            raise ShapeMismatchError(
                f"Y1 and Y0 must have the same number of rows. Got {Y1.shape[0]} and {Y0.shape[0]}."
            )

        weights = self.solve_weights(y1, y0)
        if weights.shape[0] != Y0.shape[1]:
            raise ShapeMismatchError(
                f"y0 has {weights.shape[0]} donors but Y0 has {Y0.shape[1]}."
            )

        counterfactual = Y0 @ weights
        gaps = Y1 - counterfactual
        return SCFit(weights=weights, counterfactual=counterfactual, gaps=gaps, fitting_mode=self.fitting_mode)
