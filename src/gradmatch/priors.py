"""Independent log priors over ODE parameters.

A prior maps a ``(p,)`` parameter vector to ``(p,)`` log densities and must
return ``-inf`` (never raise) outside its support.
"""
from __future__ import annotations

from typing import Callable, Dict

import numpy as np
from scipy import stats

from .exceptions import ConfigurationError


def _gamma(params):
    return stats.gamma.logpdf(params, a=4.0, scale=1.0 / 0.5)


def _lognormal(params):
    return stats.lognorm.logpdf(params, s=1.0, scale=1.0)


def _uniform(params):
    return stats.uniform.logpdf(params, loc=0.0, scale=100.0)


def _flat(params):
    p = np.asarray(params, dtype=np.float64)
    return np.where(p > 0.0, 0.0, -np.inf)


BUILTIN_PRIORS: Dict[str, Callable] = {
    "gamma": _gamma,
    "lognormal": _lognormal,
    "uniform": _uniform,
    "flat": _flat,
}


class LogPrior:
    """Validated view of a built-in or user-supplied prior."""

    def __init__(self, prior, n_parameters: int):
        if isinstance(prior, str):
            key = prior.lower()
            if key not in BUILTIN_PRIORS:
                raise ConfigurationError(
                    f"unknown log_prior {prior!r}; choose from {sorted(BUILTIN_PRIORS)}"
                )
            self.name = key
            fn = BUILTIN_PRIORS[key]
        else:
            fn = getattr(prior, "log_density", prior)
            if not callable(fn):
                raise ConfigurationError("log_prior must be a name or a callable")
            self.name = getattr(prior, "__name__", type(prior).__name__)
        self._fn = fn
        self.n_parameters = int(n_parameters)

    def log_densities(self, params) -> np.ndarray:
        params = np.asarray(params, dtype=np.float64)
        with np.errstate(divide="ignore", invalid="ignore"):
            out = np.asarray(self._fn(params), dtype=np.float64).reshape(-1)
        if out.shape != (self.n_parameters,):
            raise ConfigurationError(
                f"log_prior returned {out.size} values for {self.n_parameters} parameters"
            )
        return np.where(np.isnan(out), -np.inf, out)

    def __call__(self, params) -> float:
        return float(np.sum(self.log_densities(params)))


def exponential_log_density(x, rate: float) -> np.ndarray:
    """log Exp(x | rate), used for free mismatch parameters."""
    x = np.asarray(x, dtype=np.float64)
    return np.where(x > 0.0, np.log(rate) - rate * x, -np.inf)
