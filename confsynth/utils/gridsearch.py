import logging
import math
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Tuple, List, Any

import numpy as np

from confsynth.config_models import validate_precision
from confsynth.exceptions import NonConvergenceError

logger = logging.getLogger(__name__)


class SearchState(Enum):
    INITIALIZING = "initializing"
    SEARCHING = "searching"
    CONVERGED = "converged"


def precision_decimals(precision: float) -> int:
    """Number of decimals of ``precision`` (2 for 0.01, 3 for 0.005)."""
    exponent = Decimal(repr(float(precision))).normalize().as_tuple().exponent
    return max(0, -exponent)


@dataclass(frozen=True)
class GridSearchResult:
    """
    Outcome of the adaptive confidence interval search.

    Attributes
    ----------
    lower, upper : np.ndarray
        Confidence bounds per post-treatment period.
    grid : np.ndarray
        Grid of the final, converged search.
    n_iterations : int
        Number of engine calls.
    history : Tuple[Tuple[float, float, str], ...]
        (grid min, grid max, transition) of every iteration.
    state : SearchState
        Always ``SearchState.CONVERGED`` for a returned result.
    """
    lower: np.ndarray
    upper: np.ndarray
    grid: np.ndarray
    n_iterations: int
    history: Tuple[Tuple[float, float, str], ...]
    state: SearchState


class GridSearchController:
    """
    Adaptive grid search for conformal confidence bounds.

    The grid starts from the post-treatment gap extrema, widened
    asymmetrically. After every engine call, a bound sitting on the grid
    edge means the true bound may lie outside the grid, so the binding
    edge(s) move outwards by ``expansion_factor`` of their distance from the
    grid centre (at least one step). The step never changes and all grid
    points lie on the lattice ``k * precision``. The search stops when no
    bound touches an edge.

    Parameters
    ----------
    engine : object
        Anything with ``confidence_bounds(grid) -> (lower, upper)``, usually a
        ``ConformalIntervalEngine``.
    precision : float
        Grid step, in (0, 1).
    lower_widening, upper_widening : float
        Share of the gap range added below / above the post-treatment gap
        extrema for the initial grid.
    expansion_factor : float, default 0.2
        Relative growth of a binding edge.
    max_expansions : int, default 50
        Re-expansions allowed before ``NonConvergenceError`` is raised.
    """

    def __init__(
        self,
        engine: Any,
        precision: float,
        lower_widening: float = 0.4,
        upper_widening: float = 0.2,
        expansion_factor: float = 0.2,
        max_expansions: int = 50,
    ) -> None:
        self.engine = engine
        self.precision = validate_precision(precision)
        self.decimals = precision_decimals(self.precision)
        self.lower_widening = lower_widening
        self.upper_widening = upper_widening
        self.expansion_factor = expansion_factor
        self.max_expansions = max_expansions
        self.state = SearchState.INITIALIZING

    def grid_from_indices(self, lower_index: int, upper_index: int) -> np.ndarray:
        """Grid ``[lower_index, ..., upper_index] * precision`` rounded to the step's decimals."""
        return np.round(np.arange(lower_index, upper_index + 1) * self.precision, self.decimals)

    def initial_indices(self, gaps: np.ndarray, T0: int) -> Tuple[int, int]:
        """
        Lattice indices of the initial grid edges.

        The grid runs from the smallest post-treatment gap minus
        ``lower_widening`` times the gap range to the largest post-treatment
        gap plus ``upper_widening`` times the gap range, where the range is
        taken over the whole series.
        """
        gaps = np.asarray(gaps, dtype=float).ravel()
        post_gaps = gaps[T0:]
        max_gap = round(float(np.max(post_gaps)), self.decimals)
        min_gap = round(float(np.min(post_gaps)), self.decimals)
        range_gap = round(abs(float(np.max(gaps)) - float(np.min(gaps))), self.decimals)

        start = min_gap - self.lower_widening * range_gap
        stop = max_gap + self.upper_widening * range_gap
        lower_index = math.floor(start / self.precision + 1e-9)
        upper_index = math.ceil(stop / self.precision - 1e-9)
        if upper_index <= lower_index:
            upper_index = lower_index + 1
        return lower_index, upper_index

    def initial_grid(self, gaps: np.ndarray, T0: int) -> np.ndarray:
        return self.grid_from_indices(*self.initial_indices(gaps, T0))

    def _step_out(self, lower_index: int, upper_index: int) -> int:
        half_width = (upper_index - lower_index) / 2.0
        return max(1, math.ceil(self.expansion_factor * half_width - 1e-9))

    def binding_edges(self, grid: np.ndarray, lower: np.ndarray, upper: np.ndarray) -> Tuple[bool, bool]:
        """Whether any lower bound equals the grid minimum and any upper bound the grid maximum."""
        tol = self.precision * 1e-6
        lower_binding = bool(np.any(np.abs(lower[~np.isnan(lower)] - grid[0]) <= tol))
        upper_binding = bool(np.any(np.abs(upper[~np.isnan(upper)] - grid[-1]) <= tol))
        return lower_binding, upper_binding

    def run(self, gaps: np.ndarray, T0: int) -> GridSearchResult:
        """
        Search until no confidence bound lies on a grid edge.

        Parameters
        ----------
        gaps : np.ndarray
            Observed minus synthetic series over the full horizon.
        T0 : int
            Number of pre-treatment periods.

        Returns
        -------
        GridSearchResult

        Raises
        ------
        NonConvergenceError
            If bounds still touch an edge after ``max_expansions`` re-expansions.
        """
        self.state = SearchState.INITIALIZING
        lower_index, upper_index = self.initial_indices(gaps, T0)
        history: List[Tuple[float, float, str]] = []
        expansions = 0

        self.state = SearchState.SEARCHING
        while self.state is SearchState.SEARCHING:
            grid = self.grid_from_indices(lower_index, upper_index)
            logger.debug("Searching grid [%s, %s] with %d points", grid[0], grid[-1], grid.size)
            lower, upper = self.engine.confidence_bounds(grid)
            lower = np.asarray(lower, dtype=float)
            upper = np.asarray(upper, dtype=float)
            if np.isnan(lower).any():
                logger.warning("No grid value accepted for %d post-treatment period(s)", int(np.isnan(lower).sum()))

            lower_binding, upper_binding = self.binding_edges(grid, lower, upper)
            if not (lower_binding or upper_binding):
                history.append((float(grid[0]), float(grid[-1]), "converged"))
                self.state = SearchState.CONVERGED
                logger.info("    CI found!")
                break

            if expansions >= self.max_expansions:
                raise NonConvergenceError(
                    f"Confidence bounds still on the grid edge after {expansions} expansions "
                    f"(grid [{grid[0]}, {grid[-1]}]).",
                    grid=grid,
                    lower=lower,
                    upper=upper,
                )

            delta = self._step_out(lower_index, upper_index)
            if lower_binding and upper_binding:
                transition = "both"
                logger.info("      Both bounds updated")
                lower_index -= delta
                upper_index += delta
            elif upper_binding:
                transition = "upper"
                logger.info("      Upper bound updated")
                upper_index += delta
            else:
                transition = "lower"
                logger.info("      Lower bound updated")
                lower_index -= delta
            history.append((float(grid[0]), float(grid[-1]), transition))
            expansions += 1

        return GridSearchResult(
            lower=lower,
            upper=upper,
            grid=grid,
            n_iterations=len(history),
            history=tuple(history),
            state=self.state,
        )
