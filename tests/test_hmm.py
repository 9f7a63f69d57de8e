"""
Unit tests for seqhmm HMM module.

Tests cover:
- HiddenMarkovModel construction and validation
- Randomized initializers
- E-step posteriors and scoring
- Baum-Welch training (monotonicity, convergence, parameter recovery)
- Viterbi decoding and sampling
- Multi-restart training
"""
import logging

import pytest
import numpy as np

from seqhmm import (
    BernoulliRegression,
    ConfigurationError,
    DataShapeError,
    FitStatus,
    Gaussian,
    GaussianRegression,
    HiddenMarkovModel,
    Poisson,
    initialize_state_distribution,
    initialize_transition_matrix,
    train_model,
)


def _align_by_first_mean(model):
    """Relabel states by decreasing first mean coordinate."""
    order = np.argsort([-e.mean[0] for e in model.emissions_])
    return model.permute_states(order)


def _assert_stochastic(model):
    assert np.all(model.transmat_ >= 0)
    assert np.all(model.startprob_ >= 0)
    np.testing.assert_allclose(model.transmat_.sum(axis=1), 1.0, atol=1e-8)
    assert model.startprob_.sum() == pytest.approx(1.0, abs=1e-8)


class TestInitializers:
    def test_transition_matrix(self):
        A = initialize_transition_matrix(4, random_state=0)
        assert A.shape == (4, 4)
        assert np.all(A >= 0)
        np.testing.assert_allclose(A.sum(axis=1), 1.0)

    def test_state_distribution(self):
        pi = initialize_state_distribution(5, random_state=0)
        assert pi.shape == (5,)
        assert pi.sum() == pytest.approx(1.0)

    def test_reproducible(self):
        np.testing.assert_array_equal(initialize_transition_matrix(3, random_state=7),
                                      initialize_transition_matrix(3, random_state=7))

    def test_rows_independent(self):
        A = initialize_transition_matrix(3, random_state=1)
        assert not np.allclose(A[0], A[1])


class TestConstruction:
    def test_template_fills_states(self):
        model = HiddenMarkovModel(3, emission=Gaussian(output_dim=2), random_state=0)
        assert len(model.emissions_) == 3
        assert all(isinstance(e, Gaussian) for e in model.emissions_)
        _assert_stochastic(model)

    def test_states_do_not_share_emissions(self):
        template = Gaussian()
        model = HiddenMarkovModel(2, emission=template, random_state=0)
        assert model.emissions_[0] is not model.emissions_[1]
        assert model.emissions_[0] is not template

        model.emissions_[0].mean[0] = 7.0
        assert model.emissions_[1].mean[0] == 0.0
        assert template.mean[0] == 0.0

    def test_explicit_emissions_are_copied(self):
        g = Gaussian(mean=[1.0])
        model = HiddenMarkovModel(2, emissions=[g, Gaussian()], random_state=0)
        g.mean[0] = 50.0
        assert model.emissions_[0].mean[0] == 1.0

    def test_partial_emissions_completed_by_template(self):
        model = HiddenMarkovModel(3, emissions=[Gaussian(mean=[4.0])],
                                  emission=Gaussian(), random_state=0)
        assert model.emissions_[0].mean[0] == 4.0
        assert model.emissions_[2].mean[0] == 0.0

    @pytest.mark.parametrize("n_states", [0, -1, 2.5])
    def test_bad_state_count(self, n_states):
        with pytest.raises(ConfigurationError):
            HiddenMarkovModel(n_states, emission=Gaussian())

    def test_emission_count_mismatch(self):
        with pytest.raises(ConfigurationError, match="emission models"):
            HiddenMarkovModel(2, emissions=[Gaussian()])

    def test_mixed_emission_types(self):
        with pytest.raises(ConfigurationError, match="same type"):
            HiddenMarkovModel(2, emissions=[Gaussian(), Poisson()])

    def test_emissions_as_array(self):
        emissions = np.empty(2, dtype=object)
        emissions[0], emissions[1] = Poisson(rates=[1.0]), Poisson(rates=[4.0])
        model = HiddenMarkovModel(2, emissions=emissions, random_state=0)
        assert [e.rates[0] for e in model.emissions_] == [1.0, 4.0]

    def test_not_an_emission(self):
        with pytest.raises(ConfigurationError, match="not an EmissionModel"):
            HiddenMarkovModel(2, emissions=[Gaussian(), "gaussian"])

    def test_invalid_emission_parameters(self):
        with pytest.raises(ConfigurationError):
            HiddenMarkovModel(1, emissions=[Poisson(rates=[-1.0])])

    def test_non_stochastic_transmat(self):
        with pytest.raises(ConfigurationError, match="sum to 1"):
            HiddenMarkovModel(2, emission=Gaussian(),
                              transmat=np.array([[0.5, 0.4], [0.5, 0.5]]))

    def test_negative_transmat(self):
        with pytest.raises(ConfigurationError):
            HiddenMarkovModel(2, emission=Gaussian(),
                              transmat=np.array([[1.5, -0.5], [0.5, 0.5]]))

    def test_wrong_startprob_shape(self):
        with pytest.raises(ConfigurationError, match="startprob_"):
            HiddenMarkovModel(2, emission=Gaussian(), startprob=np.array([1.0]))

    def test_validation_idempotent(self, gaussian_model):
        before = gaussian_model.to_dict()
        gaussian_model.validate()
        gaussian_model.validate()
        assert gaussian_model.to_dict() == before

    def test_validation_catches_later_edits(self, gaussian_model):
        gaussian_model.transmat_ = np.array([[0.9, 0.2], [0.2, 0.8]])
        with pytest.raises(ConfigurationError):
            gaussian_model.validate()

    def test_repr(self, gaussian_model):
        assert repr(gaussian_model) == "HiddenMarkovModel(n_states=2, emission=Gaussian)"


class TestDataValidation:
    def test_wrong_dimension(self, gaussian_model):
        with pytest.raises(DataShapeError):
            gaussian_model.score(np.zeros((10, 3)))

    def test_no_data(self, gaussian_model):
        with pytest.raises(DataShapeError):
            gaussian_model.score()

    def test_empty_sequence(self, gaussian_model):
        with pytest.raises(DataShapeError):
            gaussian_model.predict(np.zeros((0, 2)))

    def test_regression_needs_responses(self, regression_model, covariates):
        with pytest.raises(DataShapeError):
            regression_model.score(covariates)

    def test_non_integer_counts(self):
        model = HiddenMarkovModel(2, emission=Poisson(), random_state=0)
        Y = np.array([[0.5], [1.5], [2.0], [3.5]])
        with pytest.raises(DataShapeError, match="integers"):
            model.score(Y)
        with pytest.raises(DataShapeError, match="integers"):
            model.fit(Y, max_iters=5)


class TestPosteriors:
    def test_log_likelihood_matrix(self, gaussian_model, gaussian_sequence):
        _, Y = gaussian_sequence
        loglik = gaussian_model.emission_log_likelihoods(Y)
        assert loglik.shape == (2, len(Y))
        np.testing.assert_allclose(loglik[1], gaussian_model.emissions_[1].log_likelihood(Y))

    def test_log_likelihood_matrix_threaded(self, gaussian_model, gaussian_sequence):
        _, Y = gaussian_sequence
        serial = gaussian_model.emission_log_likelihoods(Y)
        gaussian_model.n_jobs = 2
        np.testing.assert_array_equal(gaussian_model.emission_log_likelihoods(Y), serial)

    def test_predict_proba_normalized(self, gaussian_model, gaussian_sequence):
        _, Y = gaussian_sequence
        proba = gaussian_model.predict_proba(Y)
        assert proba.shape == (len(Y), 2)
        assert np.all(proba >= 0)
        np.testing.assert_allclose(proba.sum(axis=1), 1.0, atol=1e-10)

    def test_pair_posteriors_normalized(self, gaussian_model, gaussian_sequence):
        _, Y = gaussian_sequence
        post = gaussian_model.e_step(Y)
        assert post.log_xi.shape == (len(Y) - 1, 2, 2)
        np.testing.assert_allclose(np.exp(post.log_xi).sum(axis=(1, 2)), 1.0, atol=1e-10)

    def test_forward_backward_consistency(self, gaussian_model, gaussian_sequence):
        _, Y = gaussian_sequence
        post = gaussian_model.e_step(Y)
        per_step = np.logaddexp.reduce(post.log_alpha + post.log_beta, axis=1)
        np.testing.assert_allclose(per_step, post.log_likelihood, atol=1e-6)

    def test_score_matches_e_step(self, gaussian_model, gaussian_sequence):
        _, Y = gaussian_sequence
        assert gaussian_model.score(Y) == pytest.approx(gaussian_model.e_step(Y).log_likelihood)


class TestBaumWelch:
    def test_log_likelihood_monotone(self, gaussian_sequence):
        _, Y = gaussian_sequence
        model = HiddenMarkovModel(2, emission=Gaussian(output_dim=2), n_jobs=1,
                                  random_state=5)
        model.weighted_initialization(Y)
        model.fit(Y, max_iters=50, tol=1e-8)

        history = np.array(model.monitor_.history)
        assert len(history) >= 2
        assert np.all(np.diff(history) >= -1e-5)

    def test_stochastic_after_fit(self, poisson_model):
        _, Y = poisson_model.sample(n=300)
        model = HiddenMarkovModel(2, emission=Poisson(), n_jobs=1, random_state=6)
        model.weighted_initialization(Y)
        model.fit(Y, max_iters=20)
        _assert_stochastic(model)
        model.validate()

    def test_fit_returns_self(self, gaussian_model, gaussian_sequence):
        _, Y = gaussian_sequence
        assert gaussian_model.fit(Y, max_iters=2) is gaussian_model

    def test_concrete_two_state_scenario(self, gaussian_sequence, true_transmat):
        """K=2, 2-D Gaussians, 500 observations: converges and recovers A."""
        _, Y = gaussian_sequence
        model = HiddenMarkovModel(
            2,
            emissions=[Gaussian(output_dim=2, mean=Y[np.argmin(Y[:, 0])]),
                       Gaussian(output_dim=2, mean=Y[np.argmax(Y[:, 0])])],
            n_jobs=1,
            random_state=1,
        )
        model.fit(Y, max_iters=100, tol=1e-6)

        assert model.monitor_.converged
        assert model.monitor_.status is FitStatus.CONVERGED
        assert model.monitor_.n_iter < 100

        _align_by_first_mean(model)
        np.testing.assert_allclose(model.transmat_, true_transmat, atol=0.15)
        np.testing.assert_allclose(model.emissions_[0].mean, [3.0, 4.0], atol=0.3)
        np.testing.assert_allclose(model.emissions_[1].mean, [-5.0, 2.0], atol=0.3)

    def test_recovery_beats_true_parameters(self, gaussian_model):
        _, Y = gaussian_model.sample(n=1000)
        best, _ = train_model(2, Gaussian(output_dim=2), Y, n_restarts=3,
                              max_iters=100, n_jobs=1, seed=0)

        assert best.score(Y) >= gaussian_model.score(Y) - 1e-6

        _align_by_first_mean(best)
        np.testing.assert_allclose(best.emissions_[0].mean, [3.0, 4.0], atol=0.3)
        np.testing.assert_allclose(best.emissions_[1].mean, [-5.0, 2.0], atol=0.3)

    def test_max_iters_reached(self, gaussian_sequence):
        _, Y = gaussian_sequence
        model = HiddenMarkovModel(2, emission=Gaussian(output_dim=2), n_jobs=1,
                                  random_state=2)
        model.fit(Y, max_iters=1)
        assert model.monitor_.status is FitStatus.MAX_ITER_REACHED
        assert model.monitor_.n_iter == 1
        assert not model.monitor_.converged

    @pytest.mark.parametrize("kwargs", [
        {'max_iters': 0},
        {'max_iters': 2.5},
        {'tol': 0.0},
        {'tol': -1e-3},
    ])
    def test_bad_tunables(self, gaussian_model, gaussian_sequence, kwargs):
        _, Y = gaussian_sequence
        with pytest.raises(ValueError):
            gaussian_model.fit(Y, **kwargs)

    def test_unvisited_state_keeps_row(self):
        """A state with no posterior mass keeps its transition row."""
        rng = np.random.default_rng(0)
        Y = rng.normal(size=(50, 1))
        model = HiddenMarkovModel(
            2,
            emissions=[Gaussian(), Gaussian(mean=[1.0])],
            transmat=np.array([[1.0, 0.0], [0.3, 0.7]]),
            startprob=np.array([1.0, 0.0]),
            n_jobs=1,
        )
        model.fit(Y, max_iters=5)

        np.testing.assert_allclose(model.transmat_[0], [1.0, 0.0])
        np.testing.assert_allclose(model.transmat_[1], [0.3, 0.7])
        assert model.emissions_[1].mean[0] == 1.0
        assert np.all(np.isfinite(model.transmat_))

    def test_single_observation(self):
        model = HiddenMarkovModel(2, emission=Gaussian(), n_jobs=1, random_state=3)
        transmat = model.transmat_.copy()
        model.fit(np.array([[0.5]]), max_iters=3)
        np.testing.assert_array_equal(model.transmat_, transmat)
        _assert_stochastic(model)

    def test_threaded_fit_matches_serial(self, gaussian_sequence):
        _, Y = gaussian_sequence
        serial = HiddenMarkovModel(2, emission=Gaussian(output_dim=2), n_jobs=1,
                                   random_state=4).weighted_initialization(Y)
        threaded = HiddenMarkovModel(2, emission=Gaussian(output_dim=2), n_jobs=2,
                                     random_state=4).weighted_initialization(Y)
        serial.fit(Y, max_iters=10)
        threaded.fit(Y, max_iters=10)
        np.testing.assert_allclose(threaded.transmat_, serial.transmat_)
        assert threaded.score(Y) == pytest.approx(serial.score(Y))

    def test_regression_emissions(self, regression_model, covariates):
        _, Y = regression_model.sample(covariates)
        model = HiddenMarkovModel(2, emission=GaussianRegression(input_dim=1), n_jobs=1,
                                  random_state=5)
        model.weighted_initialization(covariates, Y)
        model.fit(covariates, Y, max_iters=50)

        history = np.array(model.monitor_.history)
        assert np.all(np.diff(history) >= -1e-5)
        assert history[-1] > history[0]

    def test_bernoulli_regression_emissions(self, covariates):
        rng = np.random.default_rng(6)
        y = rng.binomial(1, 0.5, size=len(covariates)).astype(float)
        model = HiddenMarkovModel(2, emission=BernoulliRegression(input_dim=1), n_jobs=1,
                                  random_state=6)
        model.weighted_initialization(covariates, y)
        model.fit(covariates, y, max_iters=10)
        _assert_stochastic(model)

    def test_logs_summary(self, gaussian_model, gaussian_sequence, caplog):
        _, Y = gaussian_sequence
        with caplog.at_level(logging.INFO, logger='seqhmm.core.hmm'):
            gaussian_model.fit(Y, max_iters=3)
        assert any("log-likelihood" in r.getMessage() for r in caplog.records)

    def test_verbose_progress(self, gaussian_model, gaussian_sequence):
        _, Y = gaussian_sequence
        gaussian_model.fit(Y, max_iters=2, verbose=True)
        assert gaussian_model.monitor_.n_iter >= 1


class TestWeightedInitialization:
    def test_resets_dynamics(self, gaussian_sequence):
        _, Y = gaussian_sequence
        model = HiddenMarkovModel(2, emission=Gaussian(output_dim=2), random_state=0)
        assert model.weighted_initialization(Y) is model

        np.testing.assert_allclose(model.transmat_, 0.5)
        np.testing.assert_allclose(model.startprob_, 0.5)
        for e in model.emissions_:
            assert not np.allclose(e.mean, 0.0)
        assert not np.allclose(model.emissions_[0].mean, model.emissions_[1].mean)

    def test_reproducible(self, gaussian_sequence):
        _, Y = gaussian_sequence
        a = HiddenMarkovModel(2, emission=Gaussian(output_dim=2), random_state=9)
        b = HiddenMarkovModel(2, emission=Gaussian(output_dim=2), random_state=9)
        a.weighted_initialization(Y)
        b.weighted_initialization(Y)
        np.testing.assert_array_equal(a.emissions_[0].mean, b.emissions_[0].mean)


class TestDecoding:
    def test_viterbi_agrees_with_truth(self, scalar_model):
        states, Y = scalar_model.sample(n=500)
        path = scalar_model.predict(Y)
        assert path.shape == states.shape
        assert np.mean(path == states) >= 0.9

    def test_decode_log_prob(self, scalar_model):
        _, Y = scalar_model.sample(n=100)
        path, log_prob = scalar_model.decode(Y)
        assert np.isfinite(log_prob)
        assert log_prob <= scalar_model.score(Y)

    def test_predict_with_confidence(self, scalar_model):
        _, Y = scalar_model.sample(n=100)
        path, confidence = scalar_model.predict_with_confidence(Y)
        np.testing.assert_array_equal(path, scalar_model.predict(Y))
        assert confidence.shape == (100,)
        assert np.all((confidence >= 0) & (confidence <= 1 + 1e-12))

    def test_deterministic(self, scalar_model):
        _, Y = scalar_model.sample(n=50)
        np.testing.assert_array_equal(scalar_model.predict(Y), scalar_model.predict(Y))


class TestSampling:
    def test_shapes(self, gaussian_model):
        states, Y = gaussian_model.sample(n=40)
        assert states.shape == (40,)
        assert Y.shape == (40, 2)
        assert set(np.unique(states)) <= {0, 1}

    def test_reproducible(self, gaussian_model):
        a = HiddenMarkovModel.from_dict(gaussian_model.to_dict(), random_state=11)
        b = HiddenMarkovModel.from_dict(gaussian_model.to_dict(), random_state=11)
        sa, ya = a.sample(n=30)
        sb, yb = b.sample(n=30)
        np.testing.assert_array_equal(sa, sb)
        np.testing.assert_array_equal(ya, yb)

    def test_observations_follow_states(self, gaussian_model):
        states, Y = gaussian_model.sample(n=300)
        assert Y[states == 0, 0].mean() == pytest.approx(3.0, abs=0.3)
        assert Y[states == 1, 0].mean() == pytest.approx(-5.0, abs=0.3)

    def test_absorbing_state(self):
        model = HiddenMarkovModel(
            2, emission=Gaussian(),
            transmat=np.array([[0.0, 1.0], [0.0, 1.0]]),
            startprob=np.array([1.0, 0.0]),
            random_state=0,
        )
        states, _ = model.sample(n=10)
        assert states[0] == 0
        np.testing.assert_array_equal(states[1:], 1)

    def test_regression_sampling(self, regression_model, covariates):
        states, Y = regression_model.sample(covariates)
        assert states.shape == (len(covariates),)
        assert Y.shape == (len(covariates), 1)

        states, Y = regression_model.sample(covariates, n=10)
        assert Y.shape == (10, 1)

    def test_regression_too_many_samples(self, regression_model, covariates):
        with pytest.raises(DataShapeError):
            regression_model.sample(covariates, n=len(covariates) + 1)

    def test_length_required_without_covariates(self, gaussian_model):
        with pytest.raises(ValueError):
            gaussian_model.sample()

    def test_non_positive_length(self, gaussian_model):
        with pytest.raises(ValueError):
            gaussian_model.sample(n=0)


class TestPermuteStates:
    def test_score_unchanged(self, gaussian_model, gaussian_sequence):
        _, Y = gaussian_sequence
        before = gaussian_model.score(Y)
        gaussian_model.permute_states([1, 0])
        assert gaussian_model.score(Y) == pytest.approx(before)
        np.testing.assert_allclose(gaussian_model.transmat_, [[0.8, 0.2], [0.1, 0.9]])
        np.testing.assert_array_equal(gaussian_model.emissions_[0].mean, [-5.0, 2.0])

    def test_invalid_order(self, gaussian_model):
        with pytest.raises(ConfigurationError):
            gaussian_model.permute_states([0, 0])


class TestSerialization:
    def test_dict_roundtrip(self, gaussian_model, gaussian_sequence):
        _, Y = gaussian_sequence
        rebuilt = HiddenMarkovModel.from_dict(gaussian_model.to_dict())
        assert rebuilt.score(Y) == pytest.approx(gaussian_model.score(Y))

    def test_missing_key(self, gaussian_model):
        d = gaussian_model.to_dict()
        del d['transmat']
        with pytest.raises(ConfigurationError, match="transmat"):
            HiddenMarkovModel.from_dict(d)


class TestTrainModel:
    def test_returns_best_of_restarts(self, poisson_model):
        _, Y = poisson_model.sample(n=200)
        best, all_models = train_model(2, Poisson(), Y, n_restarts=3, max_iters=30,
                                       n_jobs=1, seed=1)
        assert len(all_models) == 3
        assert best in all_models
        scores = [m.score(Y) for m in all_models]
        assert best.score(Y) == pytest.approx(max(scores))

    def test_restarts_differ(self, poisson_model):
        _, Y = poisson_model.sample(n=100)
        _, all_models = train_model(2, Poisson(), Y, n_restarts=2, max_iters=1,
                                    n_jobs=1, seed=0)
        assert not np.allclose(all_models[0].emissions_[0].rates,
                               all_models[1].emissions_[0].rates)

    def test_template_not_modified(self, poisson_model):
        _, Y = poisson_model.sample(n=100)
        template = Poisson(rates=[2.0])
        train_model(2, template, Y, n_restarts=1, max_iters=5, n_jobs=1)
        assert template.rates[0] == 2.0

    def test_bad_restart_count(self, poisson_model):
        _, Y = poisson_model.sample(n=20)
        with pytest.raises(ValueError):
            train_model(2, Poisson(), Y, n_restarts=0)
