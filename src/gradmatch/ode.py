"""Adapter around the user's ODE right-hand side.

The user function is vectorised over time points::

    f(time: (T,), state: (T, K), params: (p,)) -> (T, K)

Shape is validated on every call; non-finite output is reported as ``None``
so that the caller can score the move at -inf instead of crashing.
"""
from __future__ import annotations

import logging
from typing import Callable

import numpy as np
from scipy.integrate import solve_ivp

from .exceptions import ConfigurationError, ODEShapeError

logger = logging.getLogger(__name__)


class ODEFunction:
    """Narrow wrapper exposing ``evaluate``, ``check`` and ``integrate``.

    ``system`` is either a plain callable or an object with an ``evaluate``
    method of the same signature.
    """

    def __init__(self, system, n_parameters: int, n_variables: int, *, method: str = "LSODA",
                 rtol: float = 1e-6, atol: float = 1e-8):
        fn = getattr(system, "evaluate", system)
        if not callable(fn):
            raise ConfigurationError("ode_system must be callable or define evaluate()")
        self._fn: Callable = fn
        self.n_parameters = int(n_parameters)
        self.n_variables = int(n_variables)
        self.method = method
        self.rtol = rtol
        self.atol = atol

    def evaluate(self, time, state, params):
        """ODE derivative at every time point, or ``None`` if non-finite."""
        out = np.asarray(self._fn(time, state, params), dtype=np.float64)
        expected = np.shape(state)
        if out.shape != expected:
            if out.size == int(np.prod(expected)) and out.ndim == 1 and expected[1] == 1:
                out = out.reshape(expected)
            else:
                raise ODEShapeError(
                    f"ODE returned shape {out.shape}, expected {expected}"
                )
        if not np.all(np.isfinite(out)):
            return None
        return out

    def check(self, time, state, params):
        """Validate the user function once before sampling starts.

        Any failure here, including an exception raised by the user function,
        is reported as a :class:`ConfigurationError`. During sampling the same
        exceptions propagate unchanged.
        """
        try:
            return self.evaluate(time, state, params)
        except ODEShapeError as err:
            raise ConfigurationError(str(err)) from err
        except Exception as err:
            raise ConfigurationError(
                f"ODE function failed at the initial state with {np.size(params)} parameters: {err}"
            ) from err

    def _rhs(self, params):
        def rhs(t, y):
            dy = self._fn(np.array([t]), y[None, :], params)
            return np.asarray(dy, dtype=np.float64).reshape(-1)
        return rhs

    def integrate(self, time, initial_state, params):
        """Solve the initial value problem on ``time``; ``None`` on failure."""
        time = np.asarray(time, dtype=np.float64)
        y0 = np.asarray(initial_state, dtype=np.float64)
        with np.errstate(all="ignore"):
            try:
                sol = solve_ivp(
                    self._rhs(params),
                    t_span=(float(time[0]), float(time[-1])),
                    y0=y0,
                    t_eval=time,
                    method=self.method,
                    rtol=self.rtol,
                    atol=self.atol,
                )
            except (ValueError, ArithmeticError) as err:
                logger.debug("integration raised %s", err)
                return None
        if not sol.success or sol.y.shape[1] != time.shape[0]:
            return None
        X = sol.y.T
        if not np.all(np.isfinite(X)):
            return None
        return X
