"""Shared fixtures for gradmatch tests.

- ODE systems (Lotka-Volterra, exponential decay) in the vectorised
  ``f(time, state, params)`` form
- Simulated noisy datasets for recovery tests
"""

import numpy as np
import pytest
from scipy.integrate import solve_ivp


def lotka_volterra(time, state, params):
    x, y = state[:, 0], state[:, 1]
    a, b, c, d = params
    return np.column_stack([a * x - b * x * y, -c * y + d * x * y])


def decay(time, state, params):
    return -params[0] * state


def simulate(system, params, x0, time):
    def rhs(t, y):
        return system(np.array([t]), y[None, :], params).reshape(-1)

    sol = solve_ivp(rhs, (time[0], time[-1]), x0, t_eval=time, rtol=1e-9, atol=1e-11)
    return sol.y.T


# ══════════════════════════════════════════════════════════════════════════════
# DATA FIXTURES
# ══════════════════════════════════════════════════════════════════════════════


@pytest.fixture
def lv_system():
    return lotka_volterra


@pytest.fixture
def decay_system():
    return decay


@pytest.fixture(scope="session")
def lv_data():
    """Lotka-Volterra on t = 0..2 (step 0.1), theta = (2, 1, 4, 1), noise sd 0.1."""
    time = np.round(np.arange(0.0, 2.0 + 1e-9, 0.1), 10)
    true_params = np.array([2.0, 1.0, 4.0, 1.0])
    clean = simulate(lotka_volterra, true_params, np.array([5.0, 3.0]), time)
    rng = np.random.default_rng(42)
    noisy = clean + 0.1 * rng.standard_normal(clean.shape)
    return {
        "time": time,
        "clean": clean,
        "data": noisy,
        "true_params": true_params,
        "x0": np.array([5.0, 3.0]),
        "noise_sd": 0.1,
    }


@pytest.fixture(scope="session")
def decay_data():
    """x' = -a x with a = 0.5, x0 = 4 on t = 0..5, noise sd 0.05."""
    time = np.linspace(0.0, 5.0, 21)
    clean = 4.0 * np.exp(-0.5 * time)[:, None]
    rng = np.random.default_rng(7)
    noisy = clean + 0.05 * rng.standard_normal(clean.shape)
    return {
        "time": time,
        "clean": clean,
        "data": noisy,
        "true_params": np.array([0.5]),
        "x0": np.array([4.0]),
        "noise_sd": 0.05,
    }
