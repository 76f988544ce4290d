"""Squared-exponential covariance and its time derivatives.

All functions are written against ``jax.numpy`` so that the marginal
likelihood in :mod:`gradmatch.gp_fit` can be differentiated; the gradient
model converts the results to host ``numpy`` arrays once per fit.

Importing this module switches JAX to 64-bit mode process-wide.
"""
from __future__ import annotations

from typing import NamedTuple, Tuple

import jax
import jax.numpy as jnp
import numpy as np

jax.config.update("jax_enable_x64", True)


class GPHyperparameters(NamedTuple):
    signal_variance: float
    lengthscale: float
    noise_variance: float
    mean: float = 0.0          # constant GP mean, the column is centred on it
    fallback: bool = False     # True when not fitted to data


def _sq_dist(t1, t2):
    d = jnp.asarray(t1)[:, None] - jnp.asarray(t2)[None, :]
    return d, d * d


def rbf(t1, t2, signal_variance, lengthscale):
    """k(t, t') = s2 * exp(-(t - t')^2 / (2 l^2)) for all pairs, (T1, T2)."""
    _, d2 = _sq_dist(t1, t2)
    return signal_variance * jnp.exp(-0.5 * d2 / lengthscale**2)


def rbf_with_noise(t, signal_variance, lengthscale, noise_variance):
    K = rbf(t, t, signal_variance, lengthscale)
    return K + noise_variance * jnp.eye(K.shape[0], dtype=K.dtype)


def rbf_derivative_blocks(
    t, signal_variance: float, lengthscale: float
) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Covariance blocks of a GP and its time derivative on the grid ``t``.

    Returns
    -------
    C:
        ``cov(x(t_i), x(t_j))``
    dC:
        ``cov(x'(t_i), x(t_j)) = -(t_i - t_j) / l^2 * C``
    ddC:
        ``cov(x'(t_i), x'(t_j)) = (1 / l^2 - (t_i - t_j)^2 / l^4) * C``
    """
    d, d2 = _sq_dist(t, t)
    inv_l2 = 1.0 / lengthscale**2
    C = signal_variance * jnp.exp(-0.5 * d2 * inv_l2)
    dC = -d * inv_l2 * C
    ddC = (inv_l2 - d2 * inv_l2**2) * C
    return np.asarray(C), np.asarray(dC), np.asarray(ddC)
