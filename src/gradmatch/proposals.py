"""Random-walk proposals and their step-size adaptation.

All moves are symmetric in the space they act on (original or log scale), so
the MH ratio needs at most a Jacobian term. Step sizes follow a diminishing
Robbins-Monro schedule on the log scale, evaluated once per adaptation
window::

    log s <- log s + eta / sqrt(k) * (acceptance_rate - target_accept)
"""
from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass
class AdaptConfig:
    target_accept: float = 0.25
    adapt_interval: int = 50       # iterations per adaptation window
    eta: float = 1.0               # Robbins-Monro adaptation rate
    scale_init: float = 0.1
    scale_min: float = 1e-8
    scale_max: float = 1e3
    shrink: float = 0.1
    jitter: float = 1e-6
    window_size: int = 5_000       # rolling history for block covariance


def _empirical_cov(x: np.ndarray, ddof: int = 1) -> np.ndarray:
    x = np.asarray(x)
    if x.shape[0] <= 1:
        d = x.shape[1]
        return np.eye(d, dtype=x.dtype) * 1e-3
    return np.atleast_2d(np.cov(x, rowvar=False, ddof=ddof))


def _shrink_spd(cov_hat: np.ndarray, shrink: float = 0.1, jitter: float = 1e-6) -> np.ndarray:
    cov_hat = np.asarray(cov_hat)
    d = np.diag(np.diag(cov_hat))
    cov = (1.0 - shrink) * cov_hat + shrink * d
    cov = 0.5 * (cov + cov.T)
    eps = float(max(np.max(np.diag(cov)), 1.0)) * jitter
    cov += eps * np.eye(cov.shape[0], dtype=cov.dtype)
    return cov


class AdaptiveScale:
    """Per-component step sizes with acceptance bookkeeping."""

    def __init__(self, cfg: AdaptConfig, n: int, init: float | None = None):
        self.cfg = cfg
        self.scales = np.full(n, cfg.scale_init if init is None else init, dtype=np.float64)
        self.n_accepted = np.zeros(n, dtype=np.int64)
        self.n_proposed = np.zeros(n, dtype=np.int64)
        self._window_accepted = np.zeros(n, dtype=np.int64)
        self._window_proposed = np.zeros(n, dtype=np.int64)
        self.n_adaptations = 0
        self.window_rate = np.zeros(n)     # acceptance in the last completed window

    def record(self, i: int, accepted: bool):
        self.n_proposed[i] += 1
        self._window_proposed[i] += 1
        if accepted:
            self.n_accepted[i] += 1
            self._window_accepted[i] += 1

    def adapt(self):
        self.n_adaptations += 1
        seen = self._window_proposed > 0
        rate = np.where(seen, self._window_accepted / np.maximum(self._window_proposed, 1), 0.0)
        self.window_rate = rate
        step = self.cfg.eta / np.sqrt(self.n_adaptations)
        log_s = np.log(self.scales) + np.where(seen, step * (rate - self.cfg.target_accept), 0.0)
        self.scales = np.clip(np.exp(log_s), self.cfg.scale_min, self.cfg.scale_max)
        self._window_accepted[:] = 0
        self._window_proposed[:] = 0

    @property
    def acceptance_rate(self) -> np.ndarray:
        return self.n_accepted / np.maximum(self.n_proposed, 1)


def propose_componentwise(rng: np.random.Generator, u: np.ndarray, i: int, scale: float) -> np.ndarray:
    """Gaussian random walk on coordinate ``i`` only."""
    out = u.copy()
    out[i] += scale * rng.standard_normal()
    return out


def propose_correlated(rng: np.random.Generator, x: np.ndarray, chol: np.ndarray, scale: float) -> np.ndarray:
    """x' = x + scale * L z, z ~ N(0, I)."""
    return x + scale * (chol @ rng.standard_normal(x.shape[0]))


class BlockCovariance:
    """Adaptive full-covariance random walk for the parameter block.

    x' ~ N(x, (cd * scale)^2 * cov), cd = 2.38 / sqrt(dim); ``cov`` is
    re-estimated from a rolling window of chain states with shrinkage and
    jitter.
    """

    def __init__(self, cfg: AdaptConfig, dim: int):
        self.cfg = cfg
        self.dim = dim
        self.cd = 2.38 / np.sqrt(dim)
        self.cov = np.eye(dim)
        self.chol = np.eye(dim)
        self.empirical = False
        self._history = []

    def observe(self, u: np.ndarray):
        self._history.append(np.array(u, copy=True))
        if len(self._history) > self.cfg.window_size:
            del self._history[0]

    def update(self) -> bool:
        """Refresh the covariance; True the first time it becomes empirical."""
        if len(self._history) < 2 * self.dim + 2:
            return False
        cov_hat = _empirical_cov(np.stack(self._history, axis=0), ddof=1)
        self.cov = _shrink_spd(cov_hat, shrink=self.cfg.shrink, jitter=self.cfg.jitter)
        self.chol = np.linalg.cholesky(self.cov)
        first = not self.empirical
        self.empirical = True
        return first

    def propose(self, rng: np.random.Generator, u: np.ndarray, scale: float) -> np.ndarray:
        return u + (self.cd * scale) * (self.chol @ rng.standard_normal(self.dim))
