"""Temperature and mismatch ladders, and the population of tempered chains.

Rungs are ordered hottest first; the cold chain (beta = 1, smallest mismatch)
is always the last rung. Exchange moves swap whole chain states between
rungs; the adaptive step sizes of each chain stay with its rung.
"""
from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import NamedTuple, Sequence

import numpy as np

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)


# ------------------------- Ladders -------------------------

def temperature_ladder(n_temps: int, T_min: float = 1.0, T_max: float = 100.0) -> np.ndarray:
    """``n_temps`` temperatures spaced geometrically from ``T_min`` to ``T_max``, coldest first."""
    if n_temps == 1:
        return np.array([float(T_min)])
    return T_min * (T_max / T_min) ** (np.arange(n_temps) / (n_temps - 1))


SCHEMES = {
    "LB2": 2.0,
    "LB10": 10.0,
}


def mismatch_ladder(scheme: str, chain_num: int, n_variables: int) -> np.ndarray:
    """Named mismatch ladder, ``gamma_c = base**-c`` for every variable.

    Returns a ``(chain_num, n_variables)`` array; row 0 is the hottest rung.
    """
    if scheme not in SCHEMES:
        raise ConfigurationError(
            f"unknown tempering scheme {scheme!r}; choose from {sorted(SCHEMES)}"
        )
    base = SCHEMES[scheme]
    gamma = base ** -np.arange(chain_num, dtype=np.float64)
    return np.repeat(gamma[:, None], n_variables, axis=1)


def validate_mismatch_values(values, chain_num: int, n_variables: int) -> np.ndarray:
    """Check a user ladder and broadcast it to ``(chain_num, n_variables)``."""
    ladder = np.array(values, dtype=np.float64, copy=True)
    if ladder.ndim == 1:
        ladder = ladder[:, None]
    if ladder.ndim != 2 or ladder.shape[0] != chain_num:
        raise ConfigurationError(
            f"mismatch_values must have {chain_num} rows (one per chain), got shape {ladder.shape}"
        )
    if ladder.shape[1] == 1:
        ladder = np.repeat(ladder, n_variables, axis=1)
    if ladder.shape[1] != n_variables:
        raise ConfigurationError(
            f"mismatch_values has {ladder.shape[1]} columns for {n_variables} variables"
        )
    if not np.all(np.isfinite(ladder)) or np.any(ladder <= 0):
        raise ConfigurationError("mismatch_values must be positive and finite")
    if np.any(np.diff(ladder, axis=0) > 0):
        raise ConfigurationError(
            "mismatch_values must be non-increasing from the first to the last chain"
        )
    return ladder


class Rung(NamedTuple):
    index: int
    beta: float
    gamma: np.ndarray | None    # fixed mismatch row, None when gamma is free or unused


def build_rungs(chain_num: int, ladder: np.ndarray | None = None, max_temperature: float = 100.0):
    """Rungs from a mismatch ladder, or from a temperature ladder if ``ladder`` is None."""
    if ladder is not None:
        return [Rung(c, 1.0, np.asarray(ladder[c], dtype=np.float64)) for c in range(chain_num)]
    temps = temperature_ladder(chain_num, 1.0, max_temperature)[::-1]
    return [Rung(c, float(1.0 / T), None) for c, T in enumerate(temps)]


# ------------------------- Exchange -------------------------

def exchange_log_ratio(l_ii: float, l_jj: float, l_ij: float, l_ji: float) -> float:
    """log MH ratio of swapping the states of rungs i and j.

    ``l_ab`` is the log target of rung ``a`` evaluated at the state of rung ``b``.
    """
    return (l_ij + l_ji) - (l_ii + l_jj)


def exchange_probability(l_ii: float, l_jj: float, l_ij: float, l_ji: float) -> float:
    with np.errstate(invalid="ignore"):
        r = exchange_log_ratio(l_ii, l_jj, l_ij, l_ji)
    if np.isnan(r):
        return 0.0
    return float(np.exp(min(0.0, r)))


class Population:
    """Chains on a ladder of rungs, one chain per rung."""

    def __init__(
        self,
        chains: Sequence,
        rng: np.random.Generator,
        *,
        exchange_interval: int = 1,
        exchange_scheme: str = "even_odd",
        n_workers: int = 1,
    ):
        self.chains = list(chains)
        self.rng = rng
        self.exchange_interval = int(exchange_interval)
        self.exchange_scheme = exchange_scheme
        self.n_workers = int(n_workers)
        n_edges = max(len(self.chains) - 1, 0)
        self.swap_attempts = np.zeros(n_edges, dtype=np.int64)
        self.swap_accepts = np.zeros(n_edges, dtype=np.int64)
        self.n_sweeps = 0
        self._pool = ThreadPoolExecutor(max_workers=self.n_workers) if self.n_workers > 1 else None

    def __len__(self):
        return len(self.chains)

    @property
    def cold(self):
        return self.chains[-1]

    @property
    def replica_of_rung(self) -> np.ndarray:
        return np.array([chain.state.replica for chain in self.chains], dtype=np.int64)

    @property
    def swap_rates(self) -> np.ndarray:
        return self.swap_accepts / np.maximum(self.swap_attempts, 1)

    def sweep(self):
        """Advance every chain by one iteration; returns after all have finished."""
        if self._pool is None:
            for chain in self.chains:
                chain.step()
        else:
            futures = [self._pool.submit(chain.step) for chain in self.chains]
            for fut in futures:
                fut.result()
        self.n_sweeps += 1
        if len(self.chains) > 1 and self.n_sweeps % self.exchange_interval == 0:
            return self.exchange()
        return None

    def _pairs(self):
        n_edges = len(self.chains) - 1
        if self.exchange_scheme == "single":
            i = int(self.rng.integers(n_edges))
            return [i]
        parity = int(self.rng.integers(2))
        return list(range(parity, n_edges, 2))

    def exchange(self) -> np.ndarray:
        """Attempt exchanges on non-overlapping adjacent pairs.

        Returns a boolean raster over the ``C - 1`` edges marking accepted swaps.
        """
        raster = np.zeros(len(self.chains) - 1, dtype=bool)
        for i in self._pairs():
            lo, hi = self.chains[i], self.chains[i + 1]
            s_lo, s_hi = lo.state, hi.state
            l_ij = lo.score(s_hi)
            l_ji = hi.score(s_lo)
            p = exchange_probability(s_lo.log_target, s_hi.log_target, l_ij, l_ji)
            accept = self.rng.uniform() < p
            self.swap_attempts[i] += 1
            if accept:
                self.swap_accepts[i] += 1
                lo.set_state(s_hi, l_ij)
                hi.set_state(s_lo, l_ji)
                raster[i] = True
            logger.debug("exchange %d<->%d p=%.3g accepted=%s", i, i + 1, p, accept)
        return raster

    def close(self):
        if self._pool is not None:
            self._pool.shutdown(wait=True)
            self._pool = None
