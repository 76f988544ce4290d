"""Run driver: GP fitting, population set-up, the sampling loop and the result."""
from __future__ import annotations

import logging
from typing import List

import numpy as np
from tqdm import tqdm, trange

from .archive import AGMResult, SampleArchive
from .chain import Chain
from .config import AGMConfig
from .exceptions import GPNumericalError
from .gp_fit import FitReport, fit_all, fit_hyperparameters
from .gradient_model import GradientModel
from .kernels import GPHyperparameters
from .ode import ODEFunction
from .posterior import ExplicitPosterior, GradientMatchingPosterior
from .priors import LogPrior
from .tempering import Population, build_rungs

logger = logging.getLogger(__name__)

REPORT_EVERY = 10    # progress lines, in adaptation windows


class AdaptiveGradientMatching:
    """Adaptive gradient matching with population MCMC.

    Construction fits nothing; :meth:`run` fits the GP hyperparameters (unless
    ``explicit``), builds one chain per rung and samples.
    """

    def __init__(self, config: AGMConfig):
        self.config = config
        self.dataset = config.dataset
        K = self.dataset.n_variables
        self.ode = ODEFunction(config.ode_system, config.n_parameters, K, method=config.ode_method)
        self.prior = LogPrior(config.log_prior, config.n_parameters)
        self.hyperparameters: List[GPHyperparameters] = []
        self.fit_report: FitReport | None = None
        self.gradient_model: GradientModel | None = None
        self.population: Population | None = None

    # ---- set-up ----
    def fit_gradient_model(self) -> GradientModel:
        cfg = self.config
        self.hyperparameters, self.fit_report = fit_all(
            self.dataset,
            n_restarts=cfg.gp_restarts,
            max_steps=cfg.gp_max_steps,
            seed=cfg.seed,
            overrides=cfg.gp_hyperparameters,
        )
        self.gradient_model = GradientModel(self.dataset.time, self.hyperparameters)
        return self.gradient_model

    def noise_variance(self) -> np.ndarray:
        if self.config.noise_variance is not None:
            return self.config.noise_variance
        return np.array([h.noise_variance for h in self.hyperparameters])

    def build_posterior(self):
        cfg = self.config
        if cfg.explicit:
            return ExplicitPosterior(
                self.dataset, self.ode, self.prior, self.noise_variance(),
                initial_center=self._initial_state_guess(),
                initial_sd=cfg.initial_condition_sd,
            )
        return GradientMatchingPosterior(
            self.dataset, self.ode, self.prior, self.noise_variance(), self.gradient_model,
            mismatch_prior_rate=cfg.mismatch_prior_rate,
        )

    def _initial_state_guess(self) -> np.ndarray:
        first = self.dataset.values[0]
        return np.where(self.dataset.observed, first, 1.0)

    def initial_theta(self, rng: np.random.Generator) -> np.ndarray:
        cfg = self.config
        p = cfg.n_parameters
        if cfg.initial_parameters is not None:
            init = np.asarray(cfg.initial_parameters, dtype=np.float64).reshape(-1)
            params = init[:p].copy()
        else:
            init, params = None, np.ones(p)
        params = params * np.exp(0.1 * rng.standard_normal(p))
        if not cfg.explicit:
            return params
        if init is not None and init.shape[0] > p:
            x0 = init[p:].copy()
        else:
            x0 = self._initial_state_guess()
        return np.concatenate([params, x0])

    def _check_ode(self, theta, latent):
        p = self.config.n_parameters
        if latent is None:
            latent = np.tile(theta[p:], (self.dataset.n_times, 1))
        out = self.ode.check(self.dataset.time, latent, theta[:p])
        if out is None:
            logger.warning("ODE returned non-finite values at the initial state")

    def build_population(self) -> Population:
        cfg = self.config
        K = self.dataset.n_variables
        posterior = self.build_posterior()
        self.posterior = posterior

        seeds = np.random.SeedSequence(cfg.seed).spawn(cfg.chain_num + 1)
        rngs = [np.random.default_rng(s) for s in seeds]
        rungs = build_rungs(cfg.chain_num, cfg.ladder, cfg.max_temperature)

        latent = None
        if posterior.has_latent:
            latent = self.gradient_model.posterior_mean(self.dataset, posterior.noise_variance)
        gamma = np.full(K, cfg.initial_mismatch) if cfg.free_mismatch else None

        chains = []
        for rung, rng in zip(rungs, rngs[:-1]):
            theta = self.initial_theta(rng)
            if rung.index == 0:
                self._check_ode(theta, latent)
            chains.append(Chain(
                posterior, rung, theta, rng,
                latent=latent, gamma=gamma, replica=rung.index,
                adapt_cfg=cfg.adapt_config(),
                theta_proposal=cfg.theta_proposal,
                original_space=cfg.original_space,
            ))
        if not any(np.isfinite(c.state.log_target) for c in chains):
            logger.warning("every chain starts at a log target of -inf")
        self.population = Population(
            chains, rngs[-1],
            exchange_interval=cfg.exchange_interval,
            exchange_scheme=cfg.exchange_scheme,
            n_workers=cfg.n_workers,
        )
        return self.population

    # ---- refit ----
    def refit_unobserved(self):
        """Refit GP hyperparameters of unobserved columns to the cold chain's latent states."""
        cold = self.population.cold.state
        gm = self.gradient_model
        for k in self.dataset.unobserved_indices:
            if self.config.gp_hyperparameters is not None and self.config.gp_hyperparameters[k] is not None:
                continue
            hyp, _ = fit_hyperparameters(
                self.dataset.time, cold.latent[:, k],
                n_restarts=1, max_steps=self.config.gp_max_steps,
                seed=self.config.seed + int(k), variable=int(k),
            )
            try:
                gm = gm.replace(int(k), hyp)
            except GPNumericalError as err:
                logger.warning("refit skipped: %s", err)
                continue
            self.hyperparameters[k] = hyp
        self.gradient_model = gm
        self.posterior.gradient_model = gm
        for chain in self.population.chains:
            chain.rescore()

    # ---- sampling ----
    def run(self) -> AGMResult:
        cfg = self.config
        if not cfg.explicit:
            self.fit_gradient_model()
        population = self.build_population()
        archive = SampleArchive(
            burn_in=cfg.burn_in, thinning=cfg.thinning,
            trace_interval=cfg.trace_interval, keep_latent=cfg.keep_latent,
        )
        logger.info(
            "sampling %d iterations with %d chains (%s)",
            cfg.max_iterations, cfg.chain_num,
            "explicit" if cfg.explicit else ("mismatch tempering" if cfg.ladder is not None else "free mismatch"),
        )
        refit = (
            cfg.refit_interval is not None
            and not cfg.explicit
            and self.dataset.unobserved_indices.size > 0
        )
        window_swaps, window_acc = [], []
        try:
            for it in trange(cfg.max_iterations, desc="AGM", unit="it", disable=not cfg.show_progress):
                raster = population.sweep()
                if raster is not None:
                    window_swaps.append(raster)
                archive.add(it, population)
                if refit and it < cfg.burn_in and (it + 1) % cfg.refit_interval == 0:
                    self.refit_unobserved()
                if (it + 1) % cfg.adapt_interval == 0:
                    window_acc = [float(np.mean(c.theta_scale.window_rate)) for c in population.chains]
                    archive.record_window(np.concatenate(window_swaps) if window_swaps else [], window_acc)
                    window_swaps = []
                    n_windows = len(archive.swap_rate_per_window)
                    if cfg.show_progress and n_windows % REPORT_EVERY == 0:
                        tqdm.write(
                            f"Iteration {it + 1}/{cfg.max_iterations} | "
                            f"swap_rate={archive.swap_rate_per_window[-1]:.3f} | "
                            f"mean_acc={archive.accept_rate_per_window[-1]:.3f}"
                        )
        finally:
            population.close()

        packed = archive.pack()
        samples = packed["samples"]
        logger.info("kept %d samples; swap rates %s", samples.shape[0], np.round(population.swap_rates, 3))
        return AGMResult(
            posterior_mean=samples.mean(axis=0),
            samples=samples,
            latent_mean=packed["latent_mean"],
            log_posterior_trace=packed["log_posterior_trace"],
            trace_iterations=packed["trace_iterations"],
            acceptance_rates=[c.acceptance_rates() for c in population.chains],
            swap_rates=population.swap_rates,
            hyperparameters=list(self.hyperparameters),
            replica_of_rung=population.replica_of_rung,
            latent_samples=packed["latent_samples"],
            mismatch_samples=packed["mismatch_samples"],
            time=self.dataset.time,
        )


def agm(data, time, ode_system, n_parameters, **options) -> AGMResult:
    """Run adaptive gradient matching; keyword options are ``AGMConfig`` fields."""
    config = AGMConfig(data=data, time=time, ode_system=ode_system, n_parameters=n_parameters, **options)
    return AdaptiveGradientMatching(config).run()
