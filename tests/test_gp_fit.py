"""GP hyperparameter fitting: monotone optimiser histories and fallbacks."""

import numpy as np
import pytest

from gradmatch.data import make_dataset
from gradmatch.gp_fit import (
    MIN_POINTS,
    fallback_hyperparameters,
    fit_all,
    fit_hyperparameters,
    negative_log_marginal_likelihood,
)


@pytest.fixture(scope="module")
def smooth_series():
    t = np.linspace(0.0, 4.0, 25)
    rng = np.random.default_rng(3)
    y = np.sin(1.5 * t) + 0.05 * rng.standard_normal(t.shape)
    return t, y


class TestFitHyperparameters:
    def test_histories_are_non_increasing(self, smooth_series):
        t, y = smooth_series
        hyp, histories = fit_hyperparameters(t, y, n_restarts=3, max_steps=100, seed=1)
        assert histories is not None and len(histories) == 3
        for h in histories:
            assert np.all(np.diff(h) <= 0.0)

    def test_fit_improves_on_first_start(self, smooth_series):
        t, y = smooth_series
        _, histories = fit_hyperparameters(t, y, n_restarts=1, max_steps=100)
        assert histories[0][-1] <= histories[0][0]

    def test_recovers_reasonable_values(self, smooth_series):
        t, y = smooth_series
        hyp, _ = fit_hyperparameters(t, y, n_restarts=3, max_steps=200)
        assert not hyp.fallback
        assert hyp.signal_variance > 0 and hyp.noise_variance > 0
        assert 0.1 < hyp.lengthscale < 4.0
        assert hyp.noise_variance < 0.1 * hyp.signal_variance
        assert hyp.mean == pytest.approx(float(np.mean(y)))

    def test_nlml_matches_scipy(self, smooth_series):
        from scipy import stats

        t, y = smooth_series
        y = y - y.mean()
        log_params = np.log([0.8, 0.6, 0.01])
        K = 0.8 * np.exp(-0.5 * (t[:, None] - t[None, :]) ** 2 / 0.6**2) + (0.01 + 1e-8) * np.eye(t.size)
        expected = -stats.multivariate_normal(np.zeros(t.size), K).logpdf(y)
        assert float(negative_log_marginal_likelihood(log_params, t, y)) == pytest.approx(expected, rel=1e-8)


class TestFallback:
    def test_too_few_points(self):
        t = np.arange(MIN_POINTS - 1, dtype=float)
        hyp, histories = fit_hyperparameters(t, np.array([1.0, 2.0]))
        assert hyp.fallback
        assert histories is None

    def test_constant_column(self):
        t = np.linspace(0.0, 1.0, 10)
        hyp, histories = fit_hyperparameters(t, np.full(10, 3.0))
        assert hyp.fallback and histories is None
        assert hyp.mean == pytest.approx(3.0)

    def test_fallback_values(self):
        hyp = fallback_hyperparameters(np.linspace(0.0, 10.0, 11))
        assert hyp.signal_variance == 1.0
        assert hyp.lengthscale == pytest.approx(2.0)
        assert hyp.mean == 0.0


class TestFitAll:
    def test_unobserved_column_gets_fallback(self, lv_data):
        data = lv_data["data"].copy()
        data[:, 1] = np.nan
        ds = make_dataset(data, lv_data["time"])
        hyps, report = fit_all(ds, n_restarts=1, max_steps=50)
        assert not hyps[0].fallback
        assert hyps[1].fallback
        assert report.histories[1] is None
        assert report.best_history(0) is not None

    def test_overrides_are_used(self, lv_data):
        ds = make_dataset(lv_data["data"], lv_data["time"])
        fixed = fallback_hyperparameters(ds.time)._replace(fallback=False)
        hyps, report = fit_all(ds, n_restarts=1, max_steps=20, overrides=[fixed, None])
        assert hyps[0] == fixed
        assert report.histories[0] is None
        assert report.histories[1] is not None
