"""Run configuration: every recognised option, its default, and validation."""
from __future__ import annotations

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

import numpy as np

from .data import Dataset, make_dataset
from .exceptions import ConfigurationError
from .kernels import GPHyperparameters
from .proposals import AdaptConfig
from .tempering import mismatch_ladder, validate_mismatch_values

logger = logging.getLogger(__name__)

THETA_PROPOSALS = ("componentwise", "block")
EXCHANGE_SCHEMES = ("even_odd", "single")


@dataclass
class AGMConfig:
    """Options of one AGM run.

    ``data``, ``time``, ``ode_system`` and ``n_parameters`` are required. The
    remaining fields have defaults; everything is checked in
    ``__post_init__`` so an invalid configuration never reaches the sampler.
    """

    data: Any
    time: Any
    ode_system: Callable
    n_parameters: int

    # model
    noise_sd: float | Sequence[float] | None = 0.1
    observed_variables: Sequence[int] | None = None
    log_prior: str | Callable = "gamma"
    explicit: bool = False
    ode_method: str = "LSODA"
    initial_condition_sd: float = 10.0

    # population / tempering
    chain_num: int = 5
    temper_mismatch: bool = True
    default_tempering_scheme: str | None = "LB2"
    mismatch_values: Any = None
    max_temperature: float = 100.0
    mismatch_prior_rate: float = 1.0
    initial_mismatch: float = 1.0
    exchange_interval: int = 1
    exchange_scheme: str = "even_odd"
    n_workers: int = 1

    # sampling
    max_iterations: int = 10_000
    burn_in: int | None = None
    thinning: int = 10
    trace_interval: int = 50
    seed: int = 0
    initial_parameters: Sequence[float] | None = None
    theta_proposal: str = "componentwise"
    original_space: bool = True
    keep_latent: bool = False
    show_progress: bool = False

    # adaptation
    target_accept: float = 0.25
    adapt_interval: int = 50
    eta: float = 1.0
    initial_step: float = 0.1
    scale_min: float = 1e-8
    scale_max: float = 1e3

    # GP fitting
    gp_restarts: int = 3
    gp_max_steps: int = 200
    gp_hyperparameters: Sequence[GPHyperparameters | None] | None = None
    refit_interval: int | None = None

    dataset: Dataset = field(init=False, repr=False)
    noise_variance: np.ndarray | None = field(init=False, repr=False)
    ladder: np.ndarray | None = field(init=False, repr=False)

    def __post_init__(self):
        self.dataset = make_dataset(self.data, self.time, self.observed_variables)
        K = self.dataset.n_variables

        if int(self.n_parameters) != self.n_parameters or self.n_parameters < 1:
            raise ConfigurationError(f"n_parameters must be a positive integer, got {self.n_parameters}")
        self.n_parameters = int(self.n_parameters)
        if not callable(getattr(self.ode_system, "evaluate", self.ode_system)):
            raise ConfigurationError("ode_system must be callable or define evaluate()")

        for name in ("max_iterations", "chain_num", "thinning", "trace_interval",
                     "exchange_interval", "adapt_interval", "n_workers",
                     "gp_restarts", "gp_max_steps"):
            self._check_positive_int(name)
        if self.burn_in is None:
            self.burn_in = self.max_iterations // 2
        if not 0 <= int(self.burn_in) < self.max_iterations:
            raise ConfigurationError(
                f"burn_in must lie in [0, max_iterations), got {self.burn_in}"
            )
        self.burn_in = int(self.burn_in)
        if self.refit_interval is not None:
            self._check_positive_int("refit_interval")

        for name in ("max_temperature", "mismatch_prior_rate", "initial_mismatch",
                     "eta", "initial_step", "scale_min", "scale_max",
                     "initial_condition_sd"):
            value = getattr(self, name)
            if not np.isfinite(value) or value <= 0:
                raise ConfigurationError(f"{name} must be positive, got {value}")
        if self.max_temperature < 1.0:
            raise ConfigurationError("max_temperature must be >= 1")
        if self.scale_min >= self.scale_max:
            raise ConfigurationError("scale_min must be smaller than scale_max")
        if not 0.0 < self.target_accept < 1.0:
            raise ConfigurationError(f"target_accept must lie in (0, 1), got {self.target_accept}")
        if self.theta_proposal not in THETA_PROPOSALS:
            raise ConfigurationError(
                f"theta_proposal must be one of {THETA_PROPOSALS}, got {self.theta_proposal!r}"
            )
        if self.exchange_scheme not in EXCHANGE_SCHEMES:
            raise ConfigurationError(
                f"exchange_scheme must be one of {EXCHANGE_SCHEMES}, got {self.exchange_scheme!r}"
            )

        self.noise_variance = self._noise_variance(K)
        self.ladder = self._ladder(K)

        n_theta = self.n_parameters + (K if self.explicit else 0)
        if self.initial_parameters is not None:
            init = np.asarray(self.initial_parameters, dtype=np.float64).reshape(-1)
            if init.shape[0] not in (self.n_parameters, n_theta):
                raise ConfigurationError(
                    f"initial_parameters has {init.shape[0]} entries, expected {self.n_parameters}"
                )
            if not self.original_space and np.any(init[: self.n_parameters] <= 0):
                raise ConfigurationError("log-space sampling needs positive initial_parameters")

        if self.gp_hyperparameters is not None and len(self.gp_hyperparameters) != K:
            raise ConfigurationError(
                f"gp_hyperparameters has {len(self.gp_hyperparameters)} entries for {K} variables"
            )

    def _check_positive_int(self, name):
        value = getattr(self, name)
        if isinstance(value, bool) or int(value) != value or value < 1:
            raise ConfigurationError(f"{name} must be a positive integer, got {value!r}")
        setattr(self, name, int(value))

    def _noise_variance(self, K):
        if self.noise_sd is None:
            if self.explicit:
                raise ConfigurationError("explicit mode needs a fixed noise_sd")
            return None
        sd = np.asarray(self.noise_sd, dtype=np.float64).reshape(-1)
        if sd.size == 1:
            sd = np.full(K, sd[0])
        if sd.shape != (K,):
            raise ConfigurationError(f"noise_sd has {sd.size} entries for {K} variables")
        if not np.all(np.isfinite(sd)) or np.any(sd <= 0):
            raise ConfigurationError("noise_sd must be positive")
        return sd**2

    def _ladder(self, K):
        if self.explicit or not self.temper_mismatch:
            if self.mismatch_values is not None:
                logger.info("mismatch_values ignored: mismatch is not tempered in this mode")
            return None
        if self.mismatch_values is not None:
            return validate_mismatch_values(self.mismatch_values, self.chain_num, K)
        if self.default_tempering_scheme is None:
            raise ConfigurationError(
                "default_tempering_scheme is None but no mismatch_values were supplied"
            )
        return mismatch_ladder(self.default_tempering_scheme, self.chain_num, K)

    @property
    def free_mismatch(self) -> bool:
        return not self.explicit and not self.temper_mismatch

    def adapt_config(self) -> AdaptConfig:
        return AdaptConfig(
            target_accept=self.target_accept,
            adapt_interval=self.adapt_interval,
            eta=self.eta,
            scale_init=self.initial_step,
            scale_min=self.scale_min,
            scale_max=self.scale_max,
        )

    def replace(self, **changes) -> "AGMConfig":
        return dataclasses.replace(self, **changes)
