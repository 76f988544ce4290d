"""Joint log posterior, missing variables and explicit mode."""

import numpy as np
import pytest
from scipy import stats

from gradmatch.data import make_dataset
from gradmatch.gradient_model import GradientModel
from gradmatch.kernels import GPHyperparameters
from gradmatch.ode import ODEFunction
from gradmatch.posterior import ExplicitPosterior, GradientMatchingPosterior
from gradmatch.priors import LogPrior

HYPS = [GPHyperparameters(4.0, 0.4, 0.01, 4.0), GPHyperparameters(2.0, 0.4, 0.01, 2.0)]


def _posterior(lv_system, data, time, **kwargs):
    ds = make_dataset(data, time)
    gm = GradientModel(ds.time, HYPS)
    return GradientMatchingPosterior(
        ds, ODEFunction(lv_system, 4, 2), LogPrior("gamma", 4), np.full(2, 0.01), gm, **kwargs
    )


class TestGradientMatchingPosterior:
    def test_data_term_matches_scipy(self, lv_system, lv_data):
        post = _posterior(lv_system, lv_data["data"], lv_data["time"])
        X = lv_data["clean"]
        expected = stats.norm(X, 0.1).logpdf(lv_data["data"]).sum(axis=0)
        np.testing.assert_allclose(post.data_log_likelihood(X), expected)

    def test_terms_and_target(self, lv_system, lv_data):
        post = _posterior(lv_system, lv_data["data"], lv_data["time"])
        theta, X = lv_data["true_params"], lv_data["clean"]
        gamma = np.array([0.1, 0.1])
        terms = post.evaluate(theta, X)
        assert terms.finite
        expected = (
            terms.log_likelihood
            + float(np.sum(post.gradient_model.matching_log_density(terms.residuals, gamma)))
            + terms.gp_prior
            + terms.parameter_prior
        )
        assert post.log_target(terms, 1.0, gamma) == pytest.approx(expected)

    def test_beta_scales_data_and_matching_only(self, lv_system, lv_data):
        post = _posterior(lv_system, lv_data["data"], lv_data["time"])
        terms = post.evaluate(lv_data["true_params"], lv_data["clean"])
        g = np.array([0.5, 0.5])
        full = post.log_target(terms, 1.0, g)
        half = post.log_target(terms, 0.5, g)
        priors = terms.gp_prior + terms.parameter_prior
        assert half - priors == pytest.approx(0.5 * (full - priors))

    def test_true_parameters_beat_wrong_ones(self, lv_system, lv_data):
        post = _posterior(lv_system, lv_data["data"], lv_data["time"])
        X = lv_data["clean"]
        good = post.log_target(post.evaluate(lv_data["true_params"], X), 1.0, 0.01)
        bad = post.log_target(post.evaluate(np.array([1.0, 2.0, 1.0, 2.0]), X), 1.0, 0.01)
        assert good > bad

    def test_outside_prior_support_is_minus_inf(self, lv_system, lv_data):
        post = _posterior(lv_system, lv_data["data"], lv_data["time"])
        terms = post.evaluate(np.array([-1.0, 1.0, 4.0, 1.0]), lv_data["clean"])
        assert not terms.finite
        assert post.log_target(terms, 1.0, 0.1) == -np.inf

    def test_non_finite_ode_is_minus_inf(self, lv_data):
        ds = make_dataset(lv_data["data"], lv_data["time"])
        post = GradientMatchingPosterior(
            ds, ODEFunction(lambda t, x, p: np.full_like(x, np.inf), 4, 2),
            LogPrior("gamma", 4), 0.01, GradientModel(ds.time, HYPS),
        )
        assert post.log_target(post.evaluate(np.ones(4), lv_data["clean"]), 1.0, 0.1) == -np.inf

    def test_free_mismatch_prior(self, lv_system, lv_data):
        post = _posterior(lv_system, lv_data["data"], lv_data["time"], mismatch_prior_rate=2.0)
        gamma = np.array([0.3, 0.7])
        terms = post.evaluate(lv_data["true_params"], lv_data["clean"], gamma)
        assert terms.mismatch_prior == pytest.approx(stats.expon(scale=0.5).logpdf(gamma).sum())
        moved = post.with_mismatch(terms, np.array([0.3, 1.5]))
        assert moved.log_likelihood == terms.log_likelihood
        assert moved.mismatch_prior == pytest.approx(stats.expon(scale=0.5).logpdf([0.3, 1.5]).sum())
        assert not post.with_mismatch(terms, np.array([-0.1, 1.0])).finite


class TestMissingVariable:
    def test_unobserved_column_contributes_zero(self, lv_system, lv_data):
        data = lv_data["data"].copy()
        data[:, 1] = np.nan
        post = _posterior(lv_system, data, lv_data["time"])
        ll = post.data_log_likelihood(lv_data["clean"])
        assert ll[1] == 0.0
        assert np.isfinite(ll[0])

    def test_data_term_ignores_unobserved_latent(self, lv_system, lv_data):
        """With a column unobserved, only its prior and matching terms see it."""
        data = lv_data["data"].copy()
        data[:, 1] = np.nan
        post = _posterior(lv_system, data, lv_data["time"])
        X1 = lv_data["clean"].copy()
        X2 = X1.copy()
        X2[:, 1] += 0.5
        a = post.evaluate(lv_data["true_params"], X1)
        b = post.evaluate(lv_data["true_params"], X2)
        assert a.log_likelihood == b.log_likelihood
        assert a.gp_prior != b.gp_prior


class TestExplicitPosterior:
    def _post(self, decay_system, decay_data):
        ds = make_dataset(decay_data["data"], decay_data["time"])
        return ExplicitPosterior(
            ds, ODEFunction(decay_system, 1, 1), LogPrior("gamma", 1), 0.05**2,
            initial_center=ds.values[0], initial_sd=10.0,
        )

    def test_likelihood_of_integrated_trajectory(self, decay_system, decay_data):
        post = self._post(decay_system, decay_data)
        theta = np.array([0.5, 4.0])
        terms = post.evaluate(theta)
        np.testing.assert_allclose(terms.trajectory, decay_data["clean"], rtol=1e-4)
        expected = stats.norm(terms.trajectory, 0.05).logpdf(decay_data["data"]).sum()
        assert terms.log_likelihood == pytest.approx(expected)

    def test_prior_includes_initial_condition(self, decay_system, decay_data):
        post = self._post(decay_system, decay_data)
        terms = post.evaluate(np.array([0.5, 4.0]))
        expected = (
            stats.gamma(a=4.0, scale=2.0).logpdf(0.5)
            + stats.norm(decay_data["data"][0, 0], 10.0).logpdf(4.0)
        )
        assert terms.parameter_prior == pytest.approx(expected)

    def test_tempered_target(self, decay_system, decay_data):
        post = self._post(decay_system, decay_data)
        terms = post.evaluate(np.array([0.5, 4.0]))
        assert post.log_target(terms, 0.25) == pytest.approx(
            0.25 * terms.log_likelihood + terms.parameter_prior
        )
        assert not post.has_latent
