# chsmm/models/simulation.py
from __future__ import annotations
from typing import TYPE_CHECKING, List, Optional

import torch

from chsmm.constants import DTYPE, InvalidArgument, logger
from chsmm.tools import SeedGenerator, Sequences

if TYPE_CHECKING:
    from chsmm.models.hsmm import HSMM


def _check_count(value: Optional[int], name: str):
    if value is None:
        return
    if isinstance(value, bool) or not isinstance(value, int) or value < 1:
        logger.error(f"{name} must be a positive integer, got {value!r}")
        raise InvalidArgument(f"{name} must be a positive integer, got {value!r}")


def simulate_states(
    model: "HSMM",
    generator: torch.Generator,
    n_transitions: Optional[int] = None,
    horizon: Optional[int] = None,
) -> torch.Tensor:
    """
    Sample a hidden state path sojourn by sojourn.

    Stops after ``n_transitions`` sojourns or once ``horizon`` steps are
    covered, whichever comes first; the last sojourn is cut at ``horizon``.
    """
    init, transition = model.init, model.transition
    pmfs = [s.pmf_vector for s in model.sojourns]

    path: List[int] = []
    state = int(torch.multinomial(init, 1, generator=generator))
    n_sojourns = 0
    while True:
        d = int(torch.multinomial(pmfs[state], 1, generator=generator)) + 1
        path.extend([state] * d)
        n_sojourns += 1
        if n_transitions is not None and n_sojourns >= n_transitions:
            break
        if horizon is not None and len(path) >= horizon:
            break
        state = int(torch.multinomial(transition[state], 1, generator=generator))

    if horizon is not None:
        path = path[:horizon]
    return torch.as_tensor(path, dtype=torch.long)


def simulate_observations(model: "HSMM", states: torch.Tensor, generator: torch.Generator) -> torch.Tensor:
    """
    Sample coded observations ``[T, V]`` for a state path.

    Each step is fully missing with probability ``p``; otherwise each variable
    is missing with probability ``q`` and drawn from its emission column.
    """
    T = states.shape[0]
    V = len(model.variables)
    codes = torch.empty(T, V, dtype=torch.long)

    censoring = model.censoring
    if censoring is not None:
        all_missing = torch.rand(T, generator=generator, dtype=DTYPE) < censoring.p[states]
        q = censoring.q_matrix(model.variables)
    else:
        all_missing = torch.zeros(T, dtype=torch.bool)
        q = None

    for v, em in enumerate(model.emissions.values()):
        columns = em.probs.T[states]  # [T, n_values]
        draws = torch.multinomial(columns, 1, generator=generator).squeeze(1)
        missing = all_missing.clone()
        if q is not None:
            missing |= torch.rand(T, generator=generator, dtype=DTYPE) < q[v, states]
        codes[:, v] = torch.where(missing, torch.full_like(draws, -1), draws)

    return codes


def simulate(
    model: "HSMM",
    n_transitions: Optional[int] = None,
    n_sequences: int = 1,
    seed: Optional[int] = None,
    horizon: Optional[int] = None,
) -> Sequences:
    """
    Simulate ``n_sequences`` independent sequences with ground-truth states.

    Args:
        model: validated HSMM.
        n_transitions: number of sojourns per sequence.
        n_sequences: number of sequences sharing the model.
        seed: base seed; every sequence gets its own split generator.
        horizon: optional number of time steps per sequence.

    Returns:
        Sequences with ids ``1..n_sequences`` and ground-truth states.
    """
    if n_transitions is None and horizon is None:
        logger.error("simulate needs n_transitions or horizon")
        raise InvalidArgument("simulate needs n_transitions or horizon")
    _check_count(n_transitions, "n_transitions")
    _check_count(horizon, "horizon")
    _check_count(n_sequences, "n_sequences")

    seed_gen = SeedGenerator(seed)
    codes, states = [], []
    for generator in seed_gen.split(n_sequences):
        path = simulate_states(model, generator, n_transitions=n_transitions, horizon=horizon)
        codes.append(simulate_observations(model, path, generator))
        states.append(path)

    logger.debug(f"Simulated {n_sequences} sequence(s), {sum(len(s) for s in states)} steps (seed={seed_gen.seed})")
    return Sequences(codes, model.variables, list(range(1, n_sequences + 1)), states)
