"""A single Metropolis-within-Gibbs chain on one rung of the ladder."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import numpy as np

from .posterior import LogPosteriorTerms
from .proposals import (
    AdaptConfig,
    AdaptiveScale,
    BlockCovariance,
    propose_componentwise,
    propose_correlated,
)
from .tempering import Rung


@dataclass
class ChainState:
    theta: np.ndarray
    latent: Optional[np.ndarray]
    gamma: Optional[np.ndarray]   # free mismatch only
    terms: LogPosteriorTerms
    log_target: float
    replica: int

    @property
    def trajectory(self) -> Optional[np.ndarray]:
        """Latent states, or the integrated trajectory in explicit mode."""
        return self.latent if self.latent is not None else self.terms.trajectory


class Chain:
    """Updates theta, then X column by column, then a free gamma.

    The chain owns its step sizes and RNG; its state may be swapped with a
    neighbour by :class:`~gradmatch.tempering.Population`.
    """

    def __init__(
        self,
        posterior,
        rung: Rung,
        theta,
        rng: np.random.Generator,
        *,
        latent=None,
        gamma=None,
        replica: int = 0,
        adapt_cfg: AdaptConfig | None = None,
        theta_proposal: str = "componentwise",
        original_space: bool = True,
    ):
        self.posterior = posterior
        self.rung = rung
        self.rng = rng
        adapt_cfg = adapt_cfg or AdaptConfig()
        self.cfg = adapt_cfg
        self.theta_proposal = theta_proposal

        theta = np.array(theta, dtype=np.float64, copy=True)
        self.n_theta = theta.shape[0]
        # only the ODE parameters move on the log scale, never initial conditions
        self.log_mask = np.zeros(self.n_theta, dtype=bool)
        if not original_space:
            self.log_mask[: posterior.n_parameters] = True

        K = posterior.dataset.n_variables
        if theta_proposal == "block":
            self.block = BlockCovariance(adapt_cfg, self.n_theta)
            self.theta_scale = AdaptiveScale(adapt_cfg, 1, init=adapt_cfg.scale_init / self.block.cd)
        else:
            self.block = None
            self.theta_scale = AdaptiveScale(adapt_cfg, self.n_theta)
        self.latent_scale = AdaptiveScale(adapt_cfg, K) if posterior.has_latent else None
        self.gamma_scale = AdaptiveScale(adapt_cfg, K) if gamma is not None else None

        if latent is not None:
            latent = np.array(latent, dtype=np.float64, copy=True)
        if gamma is not None:
            gamma = np.array(gamma, dtype=np.float64, copy=True)
        terms = posterior.evaluate(theta, latent, gamma)
        self.state = ChainState(theta, latent, gamma, terms, -np.inf, replica)
        self.state.log_target = self.score(self.state)
        self.iteration = 0

    # ---- scoring ----
    def _gamma(self, state: ChainState):
        return self.rung.gamma if self.rung.gamma is not None else state.gamma

    def score(self, state: ChainState) -> float:
        """Log target of this rung at ``state``."""
        return self.posterior.log_target(state.terms, self.rung.beta, self._gamma(state))

    def set_state(self, state: ChainState, log_target: float):
        state.log_target = log_target
        self.state = state

    def rescore(self):
        """Re-evaluate the current state, e.g. after the gradient model changed."""
        s = self.state
        s.terms = self.posterior.evaluate(s.theta, s.latent, s.gamma)
        s.log_target = self.score(s)

    # ---- MH ----
    def _accept(self, log_target_new: float, log_jacobian: float = 0.0) -> bool:
        if not np.isfinite(log_target_new):
            return False
        log_alpha = log_target_new - self.state.log_target + log_jacobian
        return bool(np.log(self.rng.uniform()) < log_alpha)

    def _to_u(self, theta):
        with np.errstate(divide="ignore", invalid="ignore"):
            return np.where(self.log_mask, np.log(theta), theta)

    def _from_u(self, u):
        return np.where(self.log_mask, np.exp(u), u)

    def _try_theta(self, u, u_new) -> bool:
        s = self.state
        theta_new = self._from_u(u_new)
        terms = self.posterior.evaluate(theta_new, s.latent, s.gamma)
        lt = self.posterior.log_target(terms, self.rung.beta, self._gamma(s))
        log_jac = float(np.sum((u_new - u)[self.log_mask]))
        if self._accept(lt, log_jac):
            s.theta, s.terms, s.log_target = theta_new, terms, lt
            return True
        return False

    def _update_theta(self):
        if self.block is not None:
            u = self._to_u(self.state.theta)
            u_new = self.block.propose(self.rng, u, self.theta_scale.scales[0])
            self.theta_scale.record(0, self._try_theta(u, u_new))
            self.block.observe(self._to_u(self.state.theta))
            return
        for i in range(self.n_theta):
            u = self._to_u(self.state.theta)
            u_new = propose_componentwise(self.rng, u, i, self.theta_scale.scales[i])
            self.theta_scale.record(i, self._try_theta(u, u_new))

    def _update_latent(self):
        variables = self.posterior.gradient_model.variables
        for k, vm in enumerate(variables):
            s = self.state
            X_new = s.latent.copy()
            X_new[:, k] = propose_correlated(self.rng, s.latent[:, k], vm.chol, self.latent_scale.scales[k])
            terms = self.posterior.evaluate(s.theta, X_new, s.gamma)
            lt = self.posterior.log_target(terms, self.rung.beta, self._gamma(s))
            accepted = self._accept(lt)
            if accepted:
                s.latent, s.terms, s.log_target = X_new, terms, lt
            self.latent_scale.record(k, accepted)

    def _update_gamma(self):
        for k in range(self.state.gamma.shape[0]):
            s = self.state
            log_g = np.log(s.gamma)
            log_new = log_g.copy()
            log_new[k] += self.gamma_scale.scales[k] * self.rng.standard_normal()
            gamma_new = np.exp(log_new)
            terms = self.posterior.with_mismatch(s.terms, gamma_new)
            lt = self.posterior.log_target(terms, self.rung.beta, gamma_new)
            accepted = self._accept(lt, log_new[k] - log_g[k])
            if accepted:
                s.gamma, s.terms, s.log_target = gamma_new, terms, lt
            self.gamma_scale.record(k, accepted)

    def step(self):
        self._update_theta()
        if self.latent_scale is not None:
            self._update_latent()
        if self.gamma_scale is not None:
            self._update_gamma()
        self.iteration += 1
        if self.iteration % self.cfg.adapt_interval == 0:
            self._adapt()
        return self.state

    def _adapt(self):
        for scale in (self.theta_scale, self.latent_scale, self.gamma_scale):
            if scale is not None:
                scale.adapt()
        if self.block is not None and self.block.update():
            # scale is relative to the empirical covariance from here on
            self.theta_scale.scales[:] = 1.0

    def acceptance_rates(self) -> dict:
        out = {"theta": self.theta_scale.acceptance_rate}
        if self.latent_scale is not None:
            out["latent"] = self.latent_scale.acceptance_rate
        if self.gamma_scale is not None:
            out["gamma"] = self.gamma_scale.acceptance_rate
        return out
