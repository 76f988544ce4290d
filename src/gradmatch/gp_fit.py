"""Per-variable GP hyperparameter fitting by marginal-likelihood maximisation.

Each observed column is centred and fitted with a squared-exponential plus
white-noise kernel. The three log hyperparameters are optimised with
``optax.lbfgs`` from several starts; the best restart wins. An iterate that
does not lower the loss ends its restart, so every recorded loss history is
non-increasing.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import List, Sequence

import jax
import jax.numpy as jnp
import numpy as np
import optax
from jax.scipy.linalg import cho_solve

from .data import Dataset
from .kernels import GPHyperparameters, rbf_with_noise

logger = logging.getLogger(__name__)

MIN_POINTS = 3
_VAR_FLOOR = 1e-10
_NOISE_FLOOR = 1e-8


@dataclass
class FitReport:
    """Loss histories of every restart, per variable (``None`` if not fitted)."""
    histories: List[List[np.ndarray] | None] = field(default_factory=list)
    best_restart: List[int | None] = field(default_factory=list)

    def best_history(self, k: int) -> np.ndarray | None:
        if self.histories[k] is None:
            return None
        return self.histories[k][self.best_restart[k]]


def negative_log_marginal_likelihood(log_params, t, y):
    """-log N(y | 0, K) with K = s2 R(l) + n2 I, params on the log scale."""
    s2 = jnp.exp(log_params[0])
    ell = jnp.exp(log_params[1])
    n2 = jnp.exp(log_params[2]) + _NOISE_FLOOR
    K = rbf_with_noise(t, s2, ell, n2)
    L = jnp.linalg.cholesky(K)
    alpha = cho_solve((L, True), y)
    n = y.shape[0]
    return (
        0.5 * jnp.dot(y, alpha)
        + jnp.sum(jnp.log(jnp.diag(L)))
        + 0.5 * n * jnp.log(2.0 * jnp.pi)
    )


def fallback_hyperparameters(time, values=None) -> GPHyperparameters:
    """Fixed hyperparameters for unobserved or degenerate columns."""
    t = np.asarray(time, dtype=np.float64)
    span = float(t[-1] - t[0]) if t.size > 1 else 1.0
    mean, var = 0.0, 1.0
    if values is not None:
        v = np.asarray(values, dtype=np.float64)
        v = v[np.isfinite(v)]
        if v.size:
            mean = float(v.mean())
        if v.size > 1 and v.var() > _VAR_FLOOR:
            var = float(v.var())
    return GPHyperparameters(
        signal_variance=var,
        lengthscale=max(span / 5.0, 1e-3),
        noise_variance=1e-2 * var,
        mean=mean,
        fallback=True,
    )


def _initial_points(t, y, n_restarts, rng):
    span = float(t[-1] - t[0])
    var = float(np.var(y))
    # deterministic first start, then jittered lengthscales and noise levels
    starts = [np.log([var, span / 4.0, 1e-2 * var])]
    for _ in range(max(0, n_restarts - 1)):
        starts.append(np.log([
            var * np.exp(rng.normal(0.0, 0.5)),
            span * np.exp(rng.uniform(np.log(0.02), np.log(1.0))),
            var * np.exp(rng.uniform(np.log(1e-4), np.log(0.3))),
        ]))
    return starts


def _make_lbfgs_step(fun):
    solver = optax.lbfgs()
    value_and_grad = optax.value_and_grad_from_state(fun)

    @jax.jit
    def step(params, state):
        value, grad = value_and_grad(params, state=state)
        updates, state = solver.update(
            grad, state, params, value=value, grad=grad, value_fn=fun
        )
        return optax.apply_updates(params, updates), state, value, grad

    return solver, step


def _run_lbfgs(fun, solver, step, x0, max_steps, tol):
    params = jnp.asarray(x0, dtype=jnp.float64)
    state = solver.init(params)
    best_params = params
    best_loss = float(fun(params))
    if not np.isfinite(best_loss):
        return np.asarray(x0), np.array([np.inf])
    history = [best_loss]
    for _ in range(max_steps):
        new_params, state, _, grad = step(params, state)
        loss = float(fun(new_params))
        if not np.isfinite(loss) or loss > best_loss:
            break
        improvement = best_loss - loss
        best_params, best_loss, params = new_params, loss, new_params
        history.append(loss)
        if improvement < tol or float(jnp.linalg.norm(grad)) < tol:
            break
    return np.asarray(best_params), np.asarray(history)


def fit_hyperparameters(
    time,
    values,
    *,
    n_restarts: int = 3,
    max_steps: int = 200,
    tol: float = 1e-8,
    seed: int = 0,
    variable: int | None = None,
):
    """Fit ``GPHyperparameters`` to one column.

    Returns
    -------
    (GPHyperparameters, list of loss histories or None)
        Histories are ``None`` when the fallback was used.
    """
    t = np.asarray(time, dtype=np.float64)
    v = np.asarray(values, dtype=np.float64)
    ok = np.isfinite(v)
    t, v = t[ok], v[ok]
    label = f"variable {variable}" if variable is not None else "column"

    if v.size < MIN_POINTS:
        logger.warning("%s has %d points; using fallback GP hyperparameters", label, v.size)
        return fallback_hyperparameters(time, values), None
    if np.var(v) <= _VAR_FLOOR * max(1.0, float(np.mean(v * v))):
        logger.warning("%s has zero variance; using fallback GP hyperparameters", label)
        return fallback_hyperparameters(time, values), None

    mean = float(v.mean())
    y = jnp.asarray(v - mean)
    tj = jnp.asarray(t)

    def fun(log_params):
        return negative_log_marginal_likelihood(log_params, tj, y)

    solver, step = _make_lbfgs_step(fun)
    rng = np.random.default_rng(seed)
    best, best_loss, histories = None, np.inf, []
    for x0 in _initial_points(t, v - mean, n_restarts, rng):
        params, history = _run_lbfgs(fun, solver, step, x0, max_steps, tol)
        histories.append(history)
        if history[-1] < best_loss:
            best, best_loss = params, history[-1]

    if best is None:
        logger.warning("%s: marginal likelihood not finite; using fallback", label)
        return fallback_hyperparameters(time, values), None

    s2, ell, n2 = np.exp(best)
    hyp = GPHyperparameters(
        signal_variance=float(s2),
        lengthscale=float(ell),
        noise_variance=float(n2 + _NOISE_FLOOR),
        mean=mean,
    )
    logger.info(
        "%s: s2=%.4g l=%.4g n2=%.4g (nlml=%.4f)",
        label, hyp.signal_variance, hyp.lengthscale, hyp.noise_variance, best_loss,
    )
    return hyp, histories


def fit_all(
    dataset: Dataset,
    *,
    n_restarts: int = 3,
    max_steps: int = 200,
    seed: int = 0,
    overrides: Sequence[GPHyperparameters | None] | None = None,
):
    """Hyperparameters for every column of ``dataset``.

    Unobserved columns get fallback hyperparameters. ``overrides`` may supply
    fixed records per column (``None`` entries are fitted as usual).
    """
    hyps, report = [], FitReport()
    for k in range(dataset.n_variables):
        if overrides is not None and overrides[k] is not None:
            hyps.append(GPHyperparameters(*overrides[k]))
            report.histories.append(None)
            report.best_restart.append(None)
            continue
        if not dataset.observed[k]:
            hyps.append(fallback_hyperparameters(dataset.time))
            report.histories.append(None)
            report.best_restart.append(None)
            continue
        hyp, histories = fit_hyperparameters(
            dataset.time, dataset.column(k),
            n_restarts=n_restarts, max_steps=max_steps, seed=seed + k, variable=k,
        )
        hyps.append(hyp)
        report.histories.append(histories)
        report.best_restart.append(
            None if histories is None else int(np.argmin([h[-1] for h in histories]))
        )
    return hyps, report
