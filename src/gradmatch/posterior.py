"""Joint log posterior for gradient matching and for explicit integration.

A posterior splits scoring in two steps so that exchanges between rungs can
re-use work:

* ``evaluate(theta, latent, gamma)`` computes everything that does not
  depend on the rung (data term, GP prior, priors, ODE residuals) and returns
  :class:`LogPosteriorTerms`.
* ``log_target(terms, beta, gamma)`` combines the terms for one rung.

Columns that are not observed contribute exactly zero data log-likelihood.
"""
from __future__ import annotations

from typing import NamedTuple

import numpy as np

from .data import Dataset
from .gradient_model import LOG_2PI, GradientModel
from .ode import ODEFunction
from .priors import LogPrior, exponential_log_density


class LogPosteriorTerms(NamedTuple):
    log_likelihood: float                 # data term, observed columns only
    gp_prior: float
    parameter_prior: float
    mismatch_prior: float
    residuals: np.ndarray | None = None   # (T, K) ODE minus GP derivative mean
    trajectory: np.ndarray | None = None  # (T, K) integrated states, explicit mode

    @property
    def finite(self) -> bool:
        return bool(np.isfinite(
            self.log_likelihood + self.gp_prior + self.parameter_prior + self.mismatch_prior
        ))


REJECTED = LogPosteriorTerms(-np.inf, -np.inf, -np.inf, -np.inf)


class _Posterior:
    has_latent = False

    def __init__(self, dataset: Dataset, ode: ODEFunction, prior: LogPrior, noise_variance):
        self.dataset = dataset
        self.ode = ode
        self.prior = prior
        self.noise_variance = np.broadcast_to(
            np.asarray(noise_variance, dtype=np.float64), (dataset.n_variables,)
        ).copy()

    @property
    def n_parameters(self) -> int:
        return self.prior.n_parameters

    def data_log_likelihood(self, X) -> np.ndarray:
        """Gaussian log-likelihood per column; 0.0 for unobserved columns."""
        out = np.zeros(self.dataset.n_variables)
        T = self.dataset.n_times
        for k in self.dataset.observed_indices:
            r = self.dataset.values[:, k] - X[:, k]
            var = self.noise_variance[k]
            out[k] = -0.5 * (np.dot(r, r) / var + T * (np.log(var) + LOG_2PI))
        return out


class GradientMatchingPosterior(_Posterior):
    """p(theta, X, gamma | Y) with the GP/ODE product-of-experts term.

    ``log_target = beta * (data + matching) + gp_prior + priors``; ``beta`` is
    1 on every rung when the mismatch parameter is tempered.
    """

    has_latent = True

    def __init__(self, dataset, ode, prior, noise_variance, gradient_model: GradientModel,
                 *, mismatch_prior_rate: float = 1.0):
        super().__init__(dataset, ode, prior, noise_variance)
        self.gradient_model = gradient_model
        self.mismatch_prior_rate = mismatch_prior_rate

    def mismatch_log_prior(self, gamma) -> float:
        if gamma is None:
            return 0.0
        return float(np.sum(exponential_log_density(gamma, self.mismatch_prior_rate)))

    def evaluate(self, theta, latent, gamma=None) -> LogPosteriorTerms:
        parameter_prior = self.prior(theta)
        mismatch_prior = self.mismatch_log_prior(gamma)
        if not np.isfinite(parameter_prior + mismatch_prior):
            return REJECTED
        F = self.ode.evaluate(self.dataset.time, latent, theta)
        if F is None:
            return REJECTED
        gm = self.gradient_model
        return LogPosteriorTerms(
            log_likelihood=float(np.sum(self.data_log_likelihood(latent))),
            gp_prior=float(np.sum(gm.log_prior(latent))),
            parameter_prior=parameter_prior,
            mismatch_prior=mismatch_prior,
            residuals=gm.residuals(latent, F),
        )

    def with_mismatch(self, terms: LogPosteriorTerms, gamma) -> LogPosteriorTerms:
        """Terms for a new free ``gamma``; the ODE is not re-evaluated."""
        if not terms.finite:
            return terms
        return terms._replace(mismatch_prior=self.mismatch_log_prior(gamma))

    def matching_log_density(self, terms: LogPosteriorTerms, gamma) -> float:
        return float(np.sum(self.gradient_model.matching_log_density(terms.residuals, gamma)))

    def log_target(self, terms: LogPosteriorTerms, beta: float, gamma) -> float:
        if not terms.finite:
            return -np.inf
        value = (
            beta * (terms.log_likelihood + self.matching_log_density(terms, gamma))
            + terms.gp_prior + terms.parameter_prior + terms.mismatch_prior
        )
        return value if np.isfinite(value) else -np.inf


class ExplicitPosterior(_Posterior):
    """Posterior over (theta, x0) with the ODE integrated numerically.

    The last K entries of the parameter vector are initial conditions with an
    independent Normal prior around ``initial_center``.
    """

    def __init__(self, dataset, ode, prior, noise_variance, *, initial_center, initial_sd: float = 10.0):
        super().__init__(dataset, ode, prior, noise_variance)
        self.initial_center = np.asarray(initial_center, dtype=np.float64)
        self.initial_sd = float(initial_sd)

    def initial_condition_log_prior(self, x0) -> float:
        z = (np.asarray(x0) - self.initial_center) / self.initial_sd
        return float(-0.5 * np.sum(z * z) - z.size * (np.log(self.initial_sd) + 0.5 * LOG_2PI))

    def evaluate(self, theta, latent=None, gamma=None) -> LogPosteriorTerms:
        p = self.n_parameters
        params, x0 = theta[:p], theta[p:]
        parameter_prior = self.prior(params) + self.initial_condition_log_prior(x0)
        if not np.isfinite(parameter_prior):
            return REJECTED
        X = self.ode.integrate(self.dataset.time, x0, params)
        if X is None:
            return REJECTED
        return LogPosteriorTerms(
            log_likelihood=float(np.sum(self.data_log_likelihood(X))),
            gp_prior=0.0,
            parameter_prior=parameter_prior,
            mismatch_prior=0.0,
            trajectory=X,
        )

    def log_target(self, terms: LogPosteriorTerms, beta: float, gamma=None) -> float:
        if not terms.finite:
            return -np.inf
        return beta * terms.log_likelihood + terms.parameter_prior
