"""Exception hierarchy for the AGM sampler."""
from __future__ import annotations


class AGMError(Exception):
    """Base class for all errors raised by gradmatch."""


class ConfigurationError(AGMError, ValueError):
    """Invalid options or inconsistent inputs, reported before sampling."""


class GPNumericalError(AGMError):
    """A GP covariance matrix could not be made positive definite."""

    def __init__(self, message: str, variable: int | None = None):
        if variable is not None:
            message = f"variable {variable}: {message}"
        super().__init__(message)
        self.variable = variable


class ODEShapeError(AGMError, ValueError):
    """The ODE right-hand side returned an array of the wrong shape."""
