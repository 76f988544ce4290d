"""Thinned cold-chain samples, log-posterior traces and the run result."""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Optional

import numpy as np

from .kernels import GPHyperparameters


class SampleArchive:
    """Accumulate per-iteration records into Python lists, stacked at the end."""

    def __init__(self, *, burn_in: int, thinning: int, trace_interval: int, keep_latent: bool = False):
        self.burn_in = burn_in
        self.thinning = thinning
        self.trace_interval = trace_interval
        self.keep_latent = keep_latent
        self.thetas = []
        self.gammas = []
        self.latents = []
        self.latent_sum = None
        self.n_latent = 0
        self.trace = []
        self.trace_iterations = []
        self.swap_rate_per_window = []
        self.accept_rate_per_window = []

    def wants_sample(self, iteration: int) -> bool:
        return iteration >= self.burn_in and (iteration - self.burn_in) % self.thinning == 0

    def add(self, iteration: int, population):
        """Record after iteration ``iteration`` (0-based) has completed."""
        if self.wants_sample(iteration):
            s = population.cold.state
            self.thetas.append(np.array(s.theta, copy=True))
            if s.gamma is not None:
                self.gammas.append(np.array(s.gamma, copy=True))
            X = s.trajectory
            if X is not None:
                self.latent_sum = X.copy() if self.latent_sum is None else self.latent_sum + X
                self.n_latent += 1
                if self.keep_latent:
                    self.latents.append(np.array(X, copy=True))
        if iteration % self.trace_interval == 0:
            self.trace.append(np.array([c.state.log_target for c in population.chains]))
            self.trace_iterations.append(iteration)

    def record_window(self, swap_decisions, accepted):
        sw = np.asarray(swap_decisions)
        self.swap_rate_per_window.append(float(sw.mean()) if sw.size else float("nan"))
        self.accept_rate_per_window.append(float(np.mean(accepted)))

    @property
    def n_samples(self) -> int:
        return len(self.thetas)

    def pack(self):
        return {
            "samples": np.stack(self.thetas, axis=0) if self.thetas else np.empty((0, 0)),
            "mismatch_samples": np.stack(self.gammas, axis=0) if self.gammas else None,
            "latent_samples": np.stack(self.latents, axis=0) if self.latents else None,
            "latent_mean": None if self.latent_sum is None else self.latent_sum / self.n_latent,
            "log_posterior_trace": np.stack(self.trace, axis=0) if self.trace else np.empty((0, 0)),
            "trace_iterations": np.asarray(self.trace_iterations, dtype=np.int64),
        }


@dataclass
class AGMResult:
    """Output of one run. Sample arrays are indexed (draw, ...)."""

    posterior_mean: np.ndarray
    samples: np.ndarray
    latent_mean: Optional[np.ndarray]
    log_posterior_trace: np.ndarray       # (n_trace, chain_num), hottest rung first
    trace_iterations: np.ndarray
    acceptance_rates: List[dict]          # per rung
    swap_rates: np.ndarray                # per adjacent edge
    hyperparameters: List[GPHyperparameters]
    replica_of_rung: np.ndarray
    latent_samples: Optional[np.ndarray] = None
    mismatch_samples: Optional[np.ndarray] = None
    time: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def n_samples(self) -> int:
        return self.samples.shape[0]

    def summary(self) -> dict:
        """Mean, sd and 2.5/50/97.5 percentiles of every sampled parameter."""
        s = self.samples
        q = np.percentile(s, [2.5, 50.0, 97.5], axis=0)
        return {
            "mean": s.mean(axis=0),
            "sd": s.std(axis=0, ddof=1) if s.shape[0] > 1 else np.zeros(s.shape[1]),
            "q2.5": q[0],
            "median": q[1],
            "q97.5": q[2],
        }
