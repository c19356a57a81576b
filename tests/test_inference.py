import math

import numpy as np
import pandas as pd
import pytest
import torch

from chsmm import ConfigurationError, Emission, HSMM, InvalidArgument, NumericalError, Sequences
from chsmm.constants import LOG_FLOOR
from chsmm.models import inference


# -------------------------
# Exhaustive enumeration of segmentations
# -------------------------
def enumerate_paths(model, codes):
    """(log joint probability, state path) of every segmentation of ``codes``."""
    log_init, log_trans, log_dur, log_surv = model.log_parameters()
    log_b = model.observation_log_likelihood(codes)
    T, J = log_b.shape
    D = log_dur.shape[1]
    out = []

    def extend(t, j, score, path):
        for d in range(1, min(D, T - t) + 1):
            seg = path + [j] * d
            emit = float(log_b[t:t + d, j].sum())
            if t + d == T:
                out.append((score + float(log_surv[j, d - 1]) + emit, seg))
                continue
            base = score + float(log_dur[j, d - 1]) + emit
            for k in range(J):
                if k != j:
                    extend(t + d, k, base + float(log_trans[j, k]), seg)

    for j in range(J):
        extend(0, j, float(log_init[j]), [])
    return out


def segments(path):
    runs, start = [], 0
    for t in range(1, len(path) + 1):
        if t == len(path) or path[t] != path[start]:
            runs.append((path[start], t - start))
            start = t
    return runs


@pytest.mark.parametrize("T", [1, 3, 6])
def test_likelihood_and_posteriors_match_enumeration(small_model, small_codes, T):
    codes = small_codes[:T]
    paths = enumerate_paths(small_model, codes)
    scores = torch.tensor([s for s, _ in paths], dtype=torch.float64)
    ll = float(torch.logsumexp(scores, dim=0))

    fb = inference.forward_backward(small_model, codes, seq_id="s")
    assert fb.log_likelihood == pytest.approx(ll, abs=1e-10)

    gamma = torch.zeros(T, 3, dtype=torch.float64)
    for score, path in paths:
        w = math.exp(score - ll)
        for t, j in enumerate(path):
            gamma[t, j] += w
    assert torch.allclose(fb.state_posterior(), gamma, atol=1e-10)


def test_sufficient_statistics_match_enumeration(small_model, small_codes):
    paths = enumerate_paths(small_model, small_codes)
    scores = torch.tensor([s for s, _ in paths], dtype=torch.float64)
    ll = float(torch.logsumexp(scores, dim=0))
    pmf = torch.exp(small_model.log_parameters()[2])
    J, D = pmf.shape

    transitions = torch.zeros(J, J, dtype=torch.float64)
    durations = torch.zeros(J, D, dtype=torch.float64)
    for score, path in paths:
        w = math.exp(score - ll)
        runs = segments(path)
        for (a, _), (b, _) in zip(runs, runs[1:]):
            transitions[a, b] += w
        for j, d in runs[:-1]:
            durations[j, d - 1] += w
        j, d = runs[-1]
        durations[j, d - 1:] += w * pmf[j, d - 1:] / pmf[j, d - 1:].sum()

    stats = inference.sufficient_statistics(small_model, small_codes)
    assert stats.log_likelihood == pytest.approx(ll, abs=1e-10)
    assert torch.allclose(stats.transitions, transitions, atol=1e-10)
    assert torch.allclose(stats.durations, durations, atol=1e-10)
    assert float(stats.init.sum()) == pytest.approx(1.0)
    assert float(stats.durations.sum()) == pytest.approx(float(stats.transitions.sum()) + 1.0)
    # emission counts add up to the number of observed entries
    assert float(stats.emissions[0].sum()) == pytest.approx(3.0)
    assert float(stats.emissions[1].sum()) == pytest.approx(4.0)


def test_viterbi_matches_enumeration(small_model, small_codes):
    paths = enumerate_paths(small_model, small_codes)
    best = max(paths, key=lambda p: p[0])[1]
    assert inference.viterbi(small_model, small_codes).tolist() == best


def test_forward_and_backward_agree(censored_model):
    X = censored_model.simulate(n_transitions=6, seed=8)
    codes = X.codes[0]
    fb = inference.forward_backward(censored_model, codes)
    log_init = censored_model.log_parameters()[0]
    assert float(torch.logsumexp(log_init + fb.Bs[0], dim=0)) == pytest.approx(fb.log_likelihood, rel=1e-9)
    assert torch.allclose(fb.end_posterior()[-1].sum(), torch.tensor(1.0, dtype=torch.float64))


# -------------------------
# Decoding
# -------------------------
def test_posterior_rows_sum_to_one(menses_model):
    X = menses_model.simulate(n_transitions=10, n_sequences=2, seed=9)
    decoding = menses_model.predict(X.strip())
    for r in decoding:
        assert torch.allclose(r.posterior.sum(dim=1), torch.ones(len(r), dtype=torch.float64))
        assert (r.posterior >= 0).all()
        assert torch.equal(r.states, r.posterior.argmax(dim=1))
        assert torch.allclose(r.probability, r.posterior.max(dim=1).values)


def test_menses_round_trip(menses_model):
    X = menses_model.simulate(n_transitions=20, n_sequences=4, seed=2024)
    decoding = menses_model.predict(X.strip())
    assert decoding.accuracy(X) > 0.95
    viterbi = menses_model.predict(X.strip(), algorithm="viterbi")
    assert viterbi.accuracy(X) > 0.95
    cm = decoding.confusion(X)
    assert cm.shape == (2, 2)
    assert cm.sum() == X.total_length


def test_decoding_table(menses_model):
    X = menses_model.simulate(n_transitions=5, n_sequences=2, seed=10)
    frame = menses_model.predict(menses_model.to_frame(X).drop(columns="state")).to_frame()
    assert list(frame.columns) == ["seq_id", "t", "state", "likelihood", "posterior_M", "posterior_C"]
    assert len(frame) == X.total_length
    assert set(frame["state"]) <= {"M", "C"}
    posterior = frame[["posterior_M", "posterior_C"]].to_numpy()
    assert np.allclose(posterior.sum(axis=1), 1.0)
    assert np.allclose(frame["likelihood"], posterior.max(axis=1))


def test_censoring_improves_decoding(censored_model):
    X = censored_model.simulate(n_transitions=20, n_sequences=4, seed=7)
    observed = X.strip()
    informative = censored_model.predict(observed).accuracy(X)
    ignorable = censored_model.replace(censoring=None).predict(observed).accuracy(X)
    assert informative > 0.9
    assert informative > ignorable


def test_parallel_decoding_matches_serial(menses_model):
    X = menses_model.simulate(n_transitions=6, n_sequences=4, seed=12)
    serial = menses_model.predict(X, n_jobs=1)
    parallel = menses_model.predict(X, n_jobs=3)
    assert [r.seq_id for r in parallel] == [1, 2, 3, 4]
    for a, b in zip(serial, parallel):
        assert torch.equal(a.states, b.states)
        assert a.log_likelihood == pytest.approx(b.log_likelihood)
    assert menses_model.score(X, n_jobs=2) == pytest.approx(serial.log_likelihood)


def test_unknown_variable_or_value(menses_model):
    with pytest.raises(ConfigurationError):
        menses_model.predict(pd.DataFrame({"bleeding": ["yes"], "spotting": ["no"]}))
    with pytest.raises(ConfigurationError):
        menses_model.predict(pd.DataFrame({"bleeding": ["yes", "maybe"]}))
    with pytest.raises(ConfigurationError):
        menses_model.predict(Sequences([torch.tensor([[0], [5]])], ("bleeding",)))


def test_invalid_decoding_requests(menses_model):
    X = menses_model.simulate(n_transitions=3, seed=1)
    with pytest.raises(InvalidArgument):
        menses_model.predict(X, algorithm="beam")
    with pytest.raises(InvalidArgument):
        menses_model.predict(X, n_jobs=0)
    with pytest.raises(InvalidArgument):
        menses_model.predict(X).accuracy(X.strip())


def test_fully_missing_sequence_falls_back_to_prior(menses_model):
    frame = pd.DataFrame({"bleeding": [None] * 5})
    decoding = menses_model.predict(frame)
    assert decoding[0].log_likelihood == pytest.approx(0.0, abs=1e-9)
    assert torch.allclose(decoding[0].posterior.sum(dim=1), torch.ones(5, dtype=torch.float64))


def test_numerical_error_reports_sequence_and_time(menses_model, monkeypatch):
    X = menses_model.simulate(n_transitions=3, seed=1)
    monkeypatch.setattr(
        HSMM,
        "observation_log_likelihood",
        lambda self, codes: torch.full((codes.shape[0], self.n_states), -float("inf"), dtype=torch.float64),
    )
    with pytest.raises(NumericalError) as err:
        inference.forward_backward(menses_model, X.codes[0], seq_id="abc")
    assert err.value.seq_id == "abc"
    assert err.value.t == 1


def test_impossible_viterbi_path_names_sequence(menses_model, monkeypatch):
    X = menses_model.simulate(n_transitions=3, seed=1)
    monkeypatch.setattr(
        HSMM,
        "observation_log_likelihood",
        lambda self, codes: torch.full((codes.shape[0], self.n_states), -float("inf"), dtype=torch.float64),
    )
    with pytest.raises(NumericalError) as err:
        inference.viterbi(menses_model, X.codes[0], seq_id="abc")
    assert err.value.seq_id == "abc"
    assert err.value.t == X.lengths[0]


def test_impossible_observations_stay_finite(menses_model):
    model = menses_model.replace(
        emissions={"bleeding": Emission(("yes", "no"), [[1.0, 0.0], [0.0, 1.0]])}
    )
    codes = torch.tensor([[0], [0], [1], [0]], dtype=torch.long)
    log_b = model.observation_log_likelihood(codes)
    assert float(log_b.min()) == LOG_FLOOR
    fb = inference.forward_backward(model, codes)
    assert math.isfinite(fb.log_likelihood)
