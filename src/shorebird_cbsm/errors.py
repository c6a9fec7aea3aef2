"""
Exception types raised by the analysis pipeline.

Both are fatal to a run: data-quality problems would corrupt the model and
fitting failures are not recoverable without changing the input.
"""


class DataQualityError(ValueError):
    """Input table is missing columns or holds values the model cannot use."""


class ModelFitError(RuntimeError):
    """Penalized fit did not converge or the penalized Hessian is singular."""
