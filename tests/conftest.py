import pytest
import torch
from scipy import stats

from chsmm import HSMM, Censoring, Emission, Sojourn


# -------------------------
# Two-state menses/cycle model
# -------------------------
@pytest.fixture
def menses_model():
    return HSMM(
        n_states=2,
        names=["M", "C"],
        init=[0.5, 0.5],
        transition=[[0.0, 1.0], [1.0, 0.0]],
        sojourns=[
            Sojourn.from_distribution(stats.norm(4, 1.5), max_duration=10),
            Sojourn.from_distribution(stats.norm(24, 3), max_duration=40),
        ],
        emissions={"bleeding": Emission(("yes", "no"), [[0.97, 0.05], [0.03, 0.95]])},
    )


@pytest.fixture
def censored_model():
    """Weak emissions, informative missingness: cycle days are rarely logged."""
    return HSMM(
        n_states=2,
        names=["M", "C"],
        init=[0.5, 0.5],
        transition=[[0.0, 1.0], [1.0, 0.0]],
        sojourns=[
            Sojourn.from_distribution(stats.norm(4, 1.5), max_duration=10),
            Sojourn.from_distribution(stats.norm(24, 3), max_duration=40),
        ],
        emissions={"bleeding": Emission(("yes", "no"), [[0.55, 0.45], [0.45, 0.55]])},
        censoring=Censoring(p=[0.0, 0.8]),
    )


# -------------------------
# Three-state cycle: menses, follicular, luteal
# -------------------------
def cycle_model(m=(4, 1.5), f=(17, 2.5), l=(8, 2), bleeding=0.95, high=(0.3, 0.1, 0.9), max_durations=(10, 30, 20)):
    return HSMM(
        n_states=3,
        names=["M", "F", "L"],
        init=[1.0, 0.0, 0.0],
        transition=[[0.0, 1.0, 0.0], [0.0, 0.0, 1.0], [1.0, 0.0, 0.0]],
        sojourns=[
            Sojourn.from_distribution(stats.norm(*m), max_duration=max_durations[0]),
            Sojourn.from_distribution(stats.norm(*f), max_duration=max_durations[1]),
            Sojourn.from_distribution(stats.norm(*l), max_duration=max_durations[2]),
        ],
        emissions={
            "bleeding": Emission(
                ("yes", "no"), [[bleeding, 1 - bleeding, 1 - bleeding], [1 - bleeding, bleeding, bleeding]]
            ),
            "temperature": Emission(("low", "high"), [[1 - h for h in high], list(high)]),
        },
        censoring=Censoring(p=[0.05, 0.2, 0.2], q={"temperature": [0.1, 0.1, 0.1]}),
    )


@pytest.fixture
def true_cycle_model():
    return cycle_model()


@pytest.fixture
def start_cycle_model():
    return cycle_model(
        m=(5, 2.5), f=(13, 5), l=(12, 5), bleeding=0.8, high=(0.4, 0.3, 0.7), max_durations=(12, 30, 30)
    )


# -------------------------
# Small random model for exhaustive checks
# -------------------------
@pytest.fixture
def small_model():
    g = torch.Generator().manual_seed(0)
    J, D = 3, 4

    def rand(*shape):
        return torch.rand(*shape, generator=g, dtype=torch.float64) + 0.05

    init = rand(J)
    init = init / init.sum()
    trans = rand(J, J)
    trans.fill_diagonal_(0.0)
    trans = trans / trans.sum(dim=1, keepdim=True)
    sojourns = []
    for _ in range(J):
        pmf = rand(D)
        sojourns.append(Sojourn.nonparametric(pmf / pmf.sum()))
    a = rand(3, J)
    b = rand(2, J)

    return HSMM(
        n_states=J,
        init=init,
        transition=trans,
        sojourns=sojourns,
        emissions={
            "a": Emission(("x", "y", "z"), a / a.sum(dim=0, keepdim=True)),
            "b": Emission(("u", "v"), b / b.sum(dim=0, keepdim=True)),
        },
        censoring=Censoring(p=[0.1, 0.3, 0.2], q={"a": [0.2, 0.1, 0.4]}),
    )


@pytest.fixture
def small_codes():
    return torch.tensor([[0, 1], [-1, 0], [-1, -1], [2, 1], [1, 0], [-1, -1]], dtype=torch.long)
