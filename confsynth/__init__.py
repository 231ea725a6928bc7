from .estimators.scci import SCCI, estimate

# Define __all__ to specify the public API of the confsynth package
__all__ = [
    "SCCI",
    "estimate",
]
