"""Custom exception classes for the confsynth library."""

class ConfsynthError(Exception):
    """Base class for all custom exceptions in the confsynth library."""
    pass

class ConfigurationError(ConfsynthError):
    """Exception raised for invalid configuration (T0 caps, precision, outcomes)."""
    pass

class ShapeMismatchError(ConfsynthError):
    """Exception raised when panel data cannot be aligned into estimation matrices."""
    pass

class FittingError(ConfsynthError):
    """Exception raised when synthetic control weights cannot be estimated."""
    pass

class NonConvergenceError(ConfsynthError):
    """Exception raised when the confidence interval grid search does not stabilize.

    Attributes
    ----------
    grid : np.ndarray or None
        The last grid that was searched.
    lower, upper : np.ndarray or None
        Bounds returned for that grid.
    """

    def __init__(self, message, grid=None, lower=None, upper=None):
        super().__init__(message)
        self.grid = grid
        self.lower = lower
        self.upper = upper
