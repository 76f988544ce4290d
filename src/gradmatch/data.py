"""Time-series container with an explicit per-column observation mask."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence

import numpy as np

from .exceptions import ConfigurationError


@dataclass(frozen=True)
class Dataset:
    time: np.ndarray          # (T,)
    values: np.ndarray        # (T, K), NaN in unobserved columns
    observed: np.ndarray      # (K,) bool

    @property
    def n_times(self) -> int:
        return self.values.shape[0]

    @property
    def n_variables(self) -> int:
        return self.values.shape[1]

    @property
    def observed_indices(self) -> np.ndarray:
        return np.flatnonzero(self.observed)

    @property
    def unobserved_indices(self) -> np.ndarray:
        return np.flatnonzero(~self.observed)

    def column(self, k: int) -> np.ndarray:
        return self.values[:, k]


def make_dataset(
    data,
    time,
    observed_variables: Sequence[int] | None = None,
) -> Dataset:
    """Validate raw inputs and build a read-only :class:`Dataset`.

    Parameters
    ----------
    data:
        ``(T, K)`` array-like. Columns that are entirely NaN are unobserved.
        A 1-D array is treated as a single variable.
    time:
        Strictly increasing ``(T,)`` time points, arbitrary spacing.
    observed_variables:
        Optional indices of observed columns. Columns not listed are masked
        out regardless of their content.

    Raises
    ------
    ConfigurationError
        On shape mismatches, non-increasing time, partially missing columns,
        or an observed column with no data.
    """
    values = np.array(data, dtype=np.float64, copy=True)
    if values.ndim == 1:
        values = values[:, None]
    if values.ndim != 2:
        raise ConfigurationError(f"data must be a (T, K) matrix, got shape {values.shape}")

    t = np.array(time, dtype=np.float64, copy=True).reshape(-1)
    T, K = values.shape
    if t.shape[0] != T:
        raise ConfigurationError(
            f"time has {t.shape[0]} points but data has {T} rows"
        )
    if T < 2:
        raise ConfigurationError("at least two time points are required")
    if not np.all(np.isfinite(t)):
        raise ConfigurationError("time contains non-finite values")
    if np.any(np.diff(t) <= 0):
        raise ConfigurationError("time must be strictly increasing")

    missing = ~np.isfinite(values)
    all_missing = missing.all(axis=0)
    if observed_variables is None:
        observed = ~all_missing
    else:
        idx = np.asarray(list(observed_variables), dtype=int).reshape(-1)
        if idx.size and (idx.min() < 0 or idx.max() >= K):
            raise ConfigurationError(
                f"observed_variables {idx.tolist()} out of range for {K} variables"
            )
        observed = np.zeros(K, dtype=bool)
        observed[idx] = True
        bad = np.flatnonzero(observed & all_missing)
        if bad.size:
            raise ConfigurationError(
                f"variables {bad.tolist()} are listed as observed but contain no data"
            )

    partial = np.flatnonzero(observed & missing.any(axis=0))
    if partial.size:
        raise ConfigurationError(
            f"variables {partial.tolist()} are partially observed; "
            "only whole-column masking is supported"
        )
    if not observed.any():
        raise ConfigurationError("at least one variable must be observed")

    values[:, ~observed] = np.nan
    t.setflags(write=False)
    values.setflags(write=False)
    observed.setflags(write=False)
    return Dataset(time=t, values=values, observed=observed)
