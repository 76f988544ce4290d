"""Closed-form GP derivative distribution and the GP/ODE product of experts.

For a variable with latent trajectory ``x`` on the grid ``t`` and GP
covariance ``C``, GP calculus gives the conditional derivative distribution

    x' | x ~ N(m, A),   m = dC C^-1 (x - mu),   A = ddC - dC C^-1 dC^T.

The ODE expert is ``x' ~ N(f, gamma I)`` with ``f`` the ODE right-hand side.
Multiplying both experts and integrating the derivative out leaves

    N(f | m, A + gamma I),

which together with the GP prior ``N(x | mu, C)`` is the gradient-matching
contribution to the joint log posterior. ``A`` is eigendecomposed once so the
matching density is exact and cheap for any ``gamma``.
"""
from __future__ import annotations

import logging
from typing import Sequence

import numpy as np

from .exceptions import GPNumericalError
from .kernels import GPHyperparameters, rbf_derivative_blocks

logger = logging.getLogger(__name__)

LOG_2PI = float(np.log(2.0 * np.pi))


def safe_cholesky(M, *, variable=None, jitter=1e-6, max_tries=6):
    """Lower Cholesky factor of ``M`` with bounded jitter escalation.

    Jitter starts at ``jitter * mean(diag(M))`` and grows tenfold per retry,
    at most ``max_tries`` times.

    Returns
    -------
    (L, eps)
        The factor and the jitter that was added to the diagonal.

    Raises
    ------
    GPNumericalError
        If no factor exists after ``max_tries`` escalations.
    """
    M = 0.5 * (M + M.T)
    n = M.shape[0]
    scale = float(np.mean(np.diag(M)))
    if not np.isfinite(scale) or scale <= 0.0:
        raise GPNumericalError("covariance has a non-positive diagonal", variable)
    eye = np.eye(n)
    eps = 0.0
    for i in range(max_tries):
        eps = scale * jitter * 10.0 ** i
        try:
            L = np.linalg.cholesky(M + eps * eye)
        except np.linalg.LinAlgError:
            continue
        if eps > 1e-4 * scale:
            logger.warning(
                "variable %s: covariance needed jitter %.3g (relative %.1e)",
                variable, eps, eps / scale,
            )
        return L, eps
    raise GPNumericalError(
        f"covariance not positive definite after jitter {eps:.3g}", variable
    )


def _gaussian_log_density(quad, log_det, n):
    return -0.5 * (quad + log_det + n * LOG_2PI)


class VariableGradientModel:
    """Gradient-matching quantities for one state variable."""

    def __init__(self, time, hyperparameters: GPHyperparameters, *, variable=None):
        self.time = np.asarray(time, dtype=np.float64)
        self.hyperparameters = hyperparameters
        self.variable = variable
        self.mean = float(hyperparameters.mean)
        T = self.time.shape[0]

        C, dC, ddC = rbf_derivative_blocks(
            self.time, hyperparameters.signal_variance, hyperparameters.lengthscale
        )
        self.chol, self.jitter = safe_cholesky(C, variable=variable)
        eye = np.eye(T)
        # C^-1 via two triangular solves on the identity
        L_inv = np.linalg.solve(self.chol, eye)
        self.C_inv = L_inv.T @ L_inv
        self.log_det_C = 2.0 * float(np.sum(np.log(np.diag(self.chol))))

        self.D = dC @ self.C_inv
        A = ddC - self.D @ dC.T
        A = 0.5 * (A + A.T)
        w, Q = np.linalg.eigh(A)
        w_max = float(np.max(np.abs(w)))
        if not np.all(np.isfinite(w)) or w_max == 0.0:
            raise GPNumericalError("derivative covariance is degenerate", variable)
        if w.min() < -1e-3 * w_max:
            raise GPNumericalError(
                f"derivative covariance is indefinite (min eigenvalue {w.min():.3g})",
                variable,
            )
        self.eigvals = np.clip(w, 1e-12 * w_max, None)
        self.eigvecs = Q
        self.A = (Q * self.eigvals) @ Q.T

    @property
    def n_times(self) -> int:
        return self.time.shape[0]

    # (a) GP prior
    def gp_log_prior(self, x) -> float:
        z = np.asarray(x) - self.mean
        return _gaussian_log_density(z @ self.C_inv @ z, self.log_det_C, self.n_times)

    # (b) GP derivative expert
    def derivative_mean(self, x) -> np.ndarray:
        return self.D @ (np.asarray(x) - self.mean)

    def derivative_expert(self, x):
        """Mean and covariance of ``x' | x`` under the GP."""
        return self.derivative_mean(x), self.A

    def gp_derivative_log_density(self, dx, x) -> float:
        r = self.eigvecs.T @ (np.asarray(dx) - self.derivative_mean(x))
        return _gaussian_log_density(
            np.sum(r * r / self.eigvals), np.sum(np.log(self.eigvals)), self.n_times
        )

    # (c) ODE expert
    def ode_expert_log_density(self, f, dx, gamma: float) -> float:
        r = np.asarray(dx) - np.asarray(f)
        n = self.n_times
        return _gaussian_log_density(np.dot(r, r) / gamma, n * np.log(gamma), n)

    def product_of_experts(self, x, f, gamma: float):
        """Normalised product ``N(m, A) * N(f, gamma I)`` as (mean, cov)."""
        lam = self.eigvals
        Q = self.eigvecs
        m_hat = Q.T @ self.derivative_mean(x)
        f_hat = Q.T @ np.asarray(f)
        mean = Q @ ((gamma * m_hat + lam * f_hat) / (lam + gamma))
        cov = (Q * (lam * gamma / (lam + gamma))) @ Q.T
        return mean, cov

    # (d) both experts with the derivative integrated out
    def matching_log_density(self, residual, gamma: float) -> float:
        """log N(f | m, A + gamma I) given ``residual = f - m``."""
        s = self.eigvals + gamma
        r = self.eigvecs.T @ np.asarray(residual)
        return _gaussian_log_density(np.sum(r * r / s), np.sum(np.log(s)), self.n_times)


class GradientModel:
    """Per-variable gradient models, read-only while chains are sweeping."""

    def __init__(self, time, hyperparameters: Sequence[GPHyperparameters]):
        self.time = np.asarray(time, dtype=np.float64)
        self.hyperparameters = list(hyperparameters)
        self.variables = [
            VariableGradientModel(self.time, h, variable=k)
            for k, h in enumerate(self.hyperparameters)
        ]

    @property
    def n_variables(self) -> int:
        return len(self.variables)

    def replace(self, k: int, hyperparameters: GPHyperparameters) -> "GradientModel":
        """Copy with variable ``k`` rebuilt from new hyperparameters."""
        new = object.__new__(GradientModel)
        new.time = self.time
        new.hyperparameters = list(self.hyperparameters)
        new.hyperparameters[k] = hyperparameters
        new.variables = list(self.variables)
        new.variables[k] = VariableGradientModel(self.time, hyperparameters, variable=k)
        return new

    def log_prior(self, X) -> np.ndarray:
        """GP prior log density of every column, (K,)."""
        return np.array([vm.gp_log_prior(X[:, k]) for k, vm in enumerate(self.variables)])

    def residuals(self, X, F) -> np.ndarray:
        """ODE derivative minus GP derivative mean, (T, K)."""
        out = np.empty_like(np.asarray(F, dtype=np.float64))
        for k, vm in enumerate(self.variables):
            out[:, k] = F[:, k] - vm.derivative_mean(X[:, k])
        return out

    def matching_log_density(self, residuals, gamma) -> np.ndarray:
        """Product-of-experts log density per column, (K,)."""
        gamma = np.broadcast_to(np.asarray(gamma, dtype=np.float64), (self.n_variables,))
        return np.array([
            vm.matching_log_density(residuals[:, k], gamma[k])
            for k, vm in enumerate(self.variables)
        ])

    def posterior_mean(self, dataset, noise_variance) -> np.ndarray:
        """GP smoothing estimate of the latent states; prior mean where unobserved."""
        X = np.empty(dataset.values.shape)
        noise_variance = np.broadcast_to(noise_variance, (self.n_variables,))
        for k, vm in enumerate(self.variables):
            if not dataset.observed[k]:
                X[:, k] = vm.mean
                continue
            C = vm.chol @ vm.chol.T
            y = dataset.column(k) - vm.mean
            L, _ = safe_cholesky(C + noise_variance[k] * np.eye(vm.n_times), variable=k)
            alpha = np.linalg.solve(L.T, np.linalg.solve(L, y))
            X[:, k] = vm.mean + C @ alpha
        return X
