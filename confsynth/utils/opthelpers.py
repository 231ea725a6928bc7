import cvxpy as cp
import numpy as np
from typing import Dict, Any, List

from confsynth.exceptions import ConfigurationError


class OptHelpers:
    """
    Helpers for building the objective and constraints of the synthetic
    control weight problem.

    These helpers do not solve anything. They return CVXPY expressions or
    constraint lists assembled by ``SyntheticControlFitter``.
    """

    @staticmethod
    def squared_loss(y: np.ndarray, X: np.ndarray, w: cp.Variable, scale: bool = True) -> cp.Expression:
        """
        Construct the squared-error loss ``||y - Xw||^2``.

        Parameters
        ----------
        y : np.ndarray
            Target outcome vector of shape (T,).
        X : np.ndarray
            Donor outcome matrix of shape (T, J).
        w : cp.Variable
            Weight vector of shape (J,).
        scale : bool, default True
            If True, divide the loss by the number of observations T.
        """
        loss = cp.sum_squares(y - X @ w)
        return loss / y.shape[0] if scale else loss

    @staticmethod
    def simplex_constraints(w: cp.Variable) -> List:
        """Constraints enforcing w >= 0 and sum(w) == 1."""
        return [w >= 0, cp.sum(w) == 1]

    @staticmethod
    def affine_constraints(w: cp.Variable) -> List:
        """Constraint enforcing sum(w) == 1."""
        return [cp.sum(w) == 1]

    @staticmethod
    def nonneg_constraints(w: cp.Variable) -> List:
        """Constraint enforcing w >= 0."""
        return [w >= 0]

    @staticmethod
    def build_constraints(w: cp.Variable, fitting_mode: str = "simplex") -> List:
        if fitting_mode == "simplex":
            return OptHelpers.simplex_constraints(w)
        if fitting_mode == "affine":
            return OptHelpers.affine_constraints(w)
        if fitting_mode == "nonneg":
            return OptHelpers.nonneg_constraints(w)
        raise ConfigurationError(f"Unknown fitting_mode: {fitting_mode}")

    @staticmethod
    def get_solver_opts(solver: str, tol_abs: float = 1e-8, tol_rel: float = 1e-8) -> Dict[str, Any]:
        """Tolerance keyword arguments understood by ``solver``."""
        solver = solver.upper()
        if solver == "CLARABEL":
            return {"tol_gap_abs": tol_abs, "tol_gap_rel": tol_rel, "tol_feas": tol_abs}
        if solver == "OSQP":
            return {"eps_abs": tol_abs, "eps_rel": tol_rel, "max_iter": 100000, "polish": True}
        if solver == "ECOS":
            return {"abstol": tol_abs, "reltol": tol_rel}
        return {}
