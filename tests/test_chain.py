"""Single-chain updates: determinism, adaptation and log-space moves."""

import numpy as np
import pytest

from gradmatch.chain import Chain
from gradmatch.data import make_dataset
from gradmatch.gradient_model import GradientModel
from gradmatch.kernels import GPHyperparameters
from gradmatch.ode import ODEFunction
from gradmatch.posterior import ExplicitPosterior, GradientMatchingPosterior
from gradmatch.priors import LogPrior
from gradmatch.proposals import AdaptConfig
from gradmatch.tempering import Rung


@pytest.fixture
def decay_posterior(decay_system, decay_data):
    ds = make_dataset(decay_data["data"], decay_data["time"])
    gm = GradientModel(ds.time, [GPHyperparameters(4.0, 1.5, 0.0025, 1.5)])
    return GradientMatchingPosterior(ds, ODEFunction(decay_system, 1, 1), LogPrior("gamma", 1), 0.0025, gm)


def _chain(posterior, decay_data, seed=0, **kwargs):
    latent = posterior.gradient_model.posterior_mean(posterior.dataset, posterior.noise_variance)
    return Chain(
        posterior, Rung(0, 1.0, np.array([0.1])), np.array([1.0]),
        np.random.default_rng(seed), latent=latent, **kwargs,
    )


class TestChain:
    def test_initial_state_scored(self, decay_posterior, decay_data):
        chain = _chain(decay_posterior, decay_data)
        assert np.isfinite(chain.state.log_target)
        assert chain.state.log_target == pytest.approx(chain.score(chain.state))

    def test_chains_do_not_share_default_config(self, decay_posterior, decay_data):
        a = _chain(decay_posterior, decay_data)
        b = _chain(decay_posterior, decay_data)
        assert a.cfg is not b.cfg
        assert a.cfg == b.cfg

    def test_same_seed_same_path(self, decay_posterior, decay_data):
        a = _chain(decay_posterior, decay_data, seed=5)
        b = _chain(decay_posterior, decay_data, seed=5)
        for _ in range(30):
            a.step()
            b.step()
        np.testing.assert_array_equal(a.state.theta, b.state.theta)
        np.testing.assert_array_equal(a.state.latent, b.state.latent)

    def test_log_target_stays_consistent(self, decay_posterior, decay_data):
        chain = _chain(decay_posterior, decay_data)
        for _ in range(40):
            chain.step()
            assert chain.state.log_target == pytest.approx(chain.score(chain.state))

    def test_moves_toward_true_rate(self, decay_posterior, decay_data):
        chain = _chain(decay_posterior, decay_data, adapt_cfg=AdaptConfig(adapt_interval=20))
        draws = []
        for it in range(600):
            chain.step()
            if it >= 300:
                draws.append(chain.state.theta[0])
        assert np.mean(draws) == pytest.approx(0.5, abs=0.15)

    def test_adaptation_changes_step_sizes(self, decay_posterior, decay_data):
        chain = _chain(decay_posterior, decay_data, adapt_cfg=AdaptConfig(adapt_interval=10, scale_init=5.0))
        for _ in range(10):
            chain.step()
        assert chain.theta_scale.n_adaptations == 1
        assert chain.theta_scale.scales[0] != 5.0

    def test_log_space_keeps_parameters_positive(self, decay_posterior, decay_data):
        chain = _chain(decay_posterior, decay_data, original_space=False)
        for _ in range(50):
            chain.step()
            assert chain.state.theta[0] > 0

    def test_block_proposal(self, decay_posterior, decay_data):
        chain = _chain(decay_posterior, decay_data, theta_proposal="block", adapt_cfg=AdaptConfig(adapt_interval=10))
        for _ in range(40):
            chain.step()
        assert chain.block.empirical
        assert chain.theta_scale.n_proposed[0] == 40

    def test_free_mismatch_is_sampled(self, decay_posterior, decay_data):
        latent = decay_posterior.gradient_model.posterior_mean(decay_posterior.dataset, 0.0025)
        chain = Chain(
            decay_posterior, Rung(0, 1.0, None), np.array([1.0]), np.random.default_rng(0),
            latent=latent, gamma=np.array([1.0]),
        )
        for _ in range(50):
            chain.step()
        assert chain.state.gamma[0] > 0
        assert "gamma" in chain.acceptance_rates()
        assert chain.acceptance_rates()["gamma"][0] > 0

    def test_rescore_after_model_change(self, decay_posterior, decay_data):
        chain = _chain(decay_posterior, decay_data)
        before = chain.state.log_target
        decay_posterior.gradient_model = decay_posterior.gradient_model.replace(
            0, GPHyperparameters(4.0, 0.8, 0.0025, 1.5)
        )
        chain.rescore()
        assert chain.state.log_target != before
        assert chain.state.log_target == pytest.approx(chain.score(chain.state))


class TestExplicitChain:
    def test_no_latent_block(self, decay_system, decay_data):
        ds = make_dataset(decay_data["data"], decay_data["time"])
        post = ExplicitPosterior(
            ds, ODEFunction(decay_system, 1, 1), LogPrior("gamma", 1), 0.0025,
            initial_center=ds.values[0],
        )
        chain = Chain(post, Rung(0, 1.0, None), np.array([1.0, 4.0]), np.random.default_rng(0),
                      original_space=False)
        for _ in range(20):
            chain.step()
        assert chain.latent_scale is None
        assert chain.log_mask.tolist() == [True, False]
        assert chain.state.trajectory.shape == (21, 1)
