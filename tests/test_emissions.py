import math

import pytest
import torch

from chsmm import Censoring, ConfigurationError, Emission
from chsmm.constants import LOG_FLOOR
from chsmm.emissions import is_missing, observation_log_likelihood


A = Emission(("x", "y"), [[0.7, 0.2], [0.3, 0.8]])
B = Emission(("u", "v", "w"), [[0.5, 0.1], [0.3, 0.1], [0.2, 0.8]])
CENSORING = Censoring(p=[0.2, 0.5], q={"a": [0.1, 0.3]})


def test_encode_decode():
    codes = A.encode(["x", None, "y", float("nan")], name="a")
    assert codes.tolist() == [0, -1, 1, -1]
    assert A.decode(codes) == ["x", None, "y", None]
    assert A.probability("y", 1) == pytest.approx(0.8)
    with pytest.raises(ConfigurationError, match="a: value 'z'"):
        A.encode(["x", "z"], name="a")
    with pytest.raises(ConfigurationError):
        A.index("z")


def test_is_missing():
    assert is_missing(None)
    assert is_missing(float("nan"))
    assert not is_missing("no")
    assert not is_missing(0)


def test_missing_marker_cannot_be_a_value():
    with pytest.raises(ConfigurationError):
        Emission(("x", None), [[0.5, 0.5], [0.5, 0.5]])


def test_reestimate_keeps_empty_columns():
    counts = torch.tensor([[3.0, 0.0], [1.0, 0.0]], dtype=torch.float64)
    new = A.reestimate(counts)
    assert new.probs[:, 0].tolist() == pytest.approx([0.75, 0.25])
    assert new.probs[:, 1].tolist() == pytest.approx([0.2, 0.8])


def test_censoring_realized_missingness():
    assert CENSORING.missing_probability("a", 0) == pytest.approx(0.2 + 0.8 * 0.1)
    assert CENSORING.missing_probability("b", 1) == pytest.approx(0.5)
    q = CENSORING.q_matrix(["a", "b"])
    assert q.tolist() == pytest.approx([[0.1, 0.3], [0.0, 0.0]])
    assert Censoring.from_dict(CENSORING.to_dict()).to_dict() == CENSORING.to_dict()


# -------------------------
# Observation likelihood
# -------------------------
def loglik(codes, censoring=CENSORING):
    return observation_log_likelihood(torch.tensor(codes, dtype=torch.long), [A, B], censoring, ["a", "b"])


def test_likelihood_without_censoring_ignores_missing_values():
    out = loglik([[0, 2], [-1, 1], [-1, -1]], censoring=None)
    assert out[0].tolist() == pytest.approx([math.log(0.7 * 0.2), math.log(0.2 * 0.8)])
    assert out[1].tolist() == pytest.approx([math.log(0.3), math.log(0.1)])
    assert out[2].tolist() == pytest.approx([0.0, 0.0])


def test_likelihood_fully_missing_step():
    out = loglik([[-1, -1]])
    # q_b = 0, so the whole-vector missingness is the only route
    assert out[0].tolist() == pytest.approx([math.log(0.2), math.log(0.5)])


def test_likelihood_partially_missing_step():
    out = loglik([[-1, 0]])
    expected = [math.log((1 - 0.2) * 0.1 * 0.5), math.log((1 - 0.5) * 0.3 * 0.1)]
    assert out[0].tolist() == pytest.approx(expected)
    # not the per-variable product of realized missingness and b(x)
    per_variable = math.log(CENSORING.missing_probability("a", 0) * 0.5)
    assert out[0, 0].item() != pytest.approx(per_variable)


def test_likelihood_fully_observed_step():
    out = loglik([[1, 2]])
    expected = [math.log(0.8 * 0.9 * 0.3 * 0.2), math.log(0.5 * 0.7 * 0.8 * 0.8)]
    assert out[0].tolist() == pytest.approx(expected)


def test_impossible_missingness_is_floored():
    # b is never individually missing
    out = loglik([[0, -1]])
    assert out[0].tolist() == [LOG_FLOOR, LOG_FLOOR]
    assert torch.isfinite(out).all()


def test_not_applicable_variable():
    censoring = Censoring(p=[0.0, 0.0], q={"a": [1.0, 0.0]})
    out = loglik([[-1, 0], [0, 0]], censoring=censoring)
    # always missing in state 0: missing costs nothing, observed is impossible
    assert float(out[0, 0]) == pytest.approx(math.log(0.5))
    assert float(out[1, 0]) == LOG_FLOOR
    assert float(out[1, 1]) == pytest.approx(math.log(0.2 * 0.1))


def test_marginal_over_missingness_patterns_sums_to_one():
    total = torch.zeros(2, dtype=torch.float64)
    for a in (-1, 0, 1):
        for b in (-1, 0, 1, 2):
            out = loglik([[a, b]])
            if int(out[0, 0]) != int(LOG_FLOOR):
                total += torch.exp(out[0])
    assert total.tolist() == pytest.approx([1.0, 1.0])
