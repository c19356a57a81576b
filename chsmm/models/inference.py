# chsmm/models/inference.py
from __future__ import annotations
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Iterator, List, Literal, Sequence, TypeVar, Union

import numpy as np
import pandas as pd
import torch
from sklearn.metrics import accuracy_score, confusion_matrix

from chsmm.constants import DTYPE, SEQ_ID, STATE, TIME, InvalidArgument, NumericalError, logger
from chsmm.tools import Sequences

if TYPE_CHECKING:
    from chsmm.models.hsmm import HSMM

NEG_INF = -float("inf")
T_ = TypeVar("T_")


# -------------------------
# Recursions
# -------------------------
def _cumulative(log_b: torch.Tensor) -> torch.Tensor:
    """C[t] = sum of log_b[:t]; emission log-sum over [s, e] is C[e + 1] - C[s]."""
    zeros = torch.zeros(1, log_b.shape[1], dtype=DTYPE)
    return torch.cat([zeros, torch.cumsum(log_b, dim=0)], dim=0)


def forward(
    log_b: torch.Tensor,
    log_init: torch.Tensor,
    log_trans: torch.Tensor,
    log_dur: torch.Tensor,
    log_surv: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor]:
    """
    Explicit-duration forward pass in log space.

    Returns ``S[t, j]`` (observations before t, a sojourn of j starts at t) and
    ``F[t, j]`` (observations up to t, a sojourn of j ends at t). The sojourn
    covering the last step is right-censored and weighted by the survivor
    function instead of the pmf.
    """
    T, J = log_b.shape
    D = log_dur.shape[1]
    C = _cumulative(log_b)
    S = torch.full((T, J), NEG_INF, dtype=DTYPE)
    F = torch.full((T, J), NEG_INF, dtype=DTYPE)

    for t in range(T):
        if t == 0:
            S[0] = log_init
        else:
            S[t] = torch.logsumexp(F[t - 1].unsqueeze(1) + log_trans, dim=0)

        n = min(D, t + 1)
        starts = t - torch.arange(n)  # sojourn of length d starts at t - d + 1
        dur = (log_surv if t == T - 1 else log_dur)[:, :n].T  # [n, J]
        F[t] = torch.logsumexp(S[starts] + dur + (C[t + 1] - C[starts]), dim=0)

    return S, F


def backward(
    log_b: torch.Tensor,
    log_trans: torch.Tensor,
    log_dur: torch.Tensor,
    log_surv: torch.Tensor,
) -> tuple[torch.Tensor, torch.Tensor]:
    """
    Explicit-duration backward pass in log space.

    ``Bs[t, j]``: observations from t on, given a sojourn of j starts at t.
    ``Bf[t, j]``: observations after t, given a sojourn of j ends at t.
    """
    T, J = log_b.shape
    D = log_dur.shape[1]
    C = _cumulative(log_b)
    Bs = torch.full((T, J), NEG_INF, dtype=DTYPE)
    Bf = torch.full((T, J), NEG_INF, dtype=DTYPE)
    Bf[T - 1] = 0.0

    for t in reversed(range(T)):
        if t < T - 1:
            Bf[t] = torch.logsumexp(log_trans + Bs[t + 1].unsqueeze(0), dim=1)

        n = min(D, T - t)
        ends = t + torch.arange(n)
        dur = log_dur[:, :n].T.clone()  # [n, J]
        if t + n == T:
            dur[n - 1] = log_surv[:, n - 1]
        Bs[t] = torch.logsumexp(dur + (C[ends + 1] - C[t]) + Bf[ends], dim=0)

    return Bs, Bf


@dataclass
class ForwardBackward:
    """Forward/backward arrays of one sequence, all ``[T, J]`` in log space."""

    seq_id: Any
    log_b: torch.Tensor
    S: torch.Tensor
    F: torch.Tensor
    Bs: torch.Tensor
    Bf: torch.Tensor
    log_likelihood: float

    @property
    def length(self) -> int:
        return int(self.log_b.shape[0])

    def start_posterior(self) -> torch.Tensor:
        return torch.exp(self.S + self.Bs - self.log_likelihood)

    def end_posterior(self) -> torch.Tensor:
        return torch.exp(self.F + self.Bf - self.log_likelihood)

    def state_posterior(self) -> torch.Tensor:
        """
        Posterior occupancy ``[T, J]``.

        A state is occupied at t when one of its sojourns started at or before
        t and has not ended before t.
        """
        starts = torch.cumsum(self.start_posterior(), dim=0)
        ends = torch.cumsum(self.end_posterior(), dim=0)
        gamma = starts.clone()
        gamma[1:] -= ends[:-1]
        gamma = gamma.clamp_min(0.0)
        totals = gamma.sum(dim=1, keepdim=True)
        if (totals <= 0).any() or not torch.isfinite(totals).all():
            t = int(torch.nonzero((totals.squeeze(1) <= 0) | ~torch.isfinite(totals.squeeze(1)))[0])
            msg = f"Sequence {self.seq_id}: posterior vanished at t={t + 1}"
            logger.error(msg)
            raise NumericalError(msg, seq_id=self.seq_id, t=t + 1)
        return gamma / totals


def prefix_log_likelihood(log_b: torch.Tensor, S: torch.Tensor, log_surv: torch.Tensor) -> torch.Tensor:
    """Log-probability of the observations up to each step t, ``[T]``."""
    T = log_b.shape[0]
    D = log_surv.shape[1]
    C = _cumulative(log_b)
    out = torch.empty(T, dtype=DTYPE)
    for t in range(T):
        n = min(D, t + 1)
        starts = t - torch.arange(n)
        out[t] = torch.logsumexp((S[starts] + log_surv[:, :n].T + (C[t + 1] - C[starts])).flatten(), dim=0)
    return out


def _forward_checked(model: "HSMM", codes: torch.Tensor, seq_id: Any):
    log_init, log_trans, log_dur, log_surv = model.log_parameters()
    log_b = model.observation_log_likelihood(codes)

    S, F = forward(log_b, log_init, log_trans, log_dur, log_surv)
    ll = torch.logsumexp(F[-1], dim=0)
    if not torch.isfinite(ll):
        dead = torch.nonzero(~torch.isfinite(prefix_log_likelihood(log_b, S, log_surv)))
        t = int(dead[0]) + 1 if dead.numel() else int(log_b.shape[0])
        msg = f"Sequence {seq_id}: likelihood underflow at t={t}"
        logger.error(msg)
        raise NumericalError(msg, seq_id=seq_id, t=t)
    return log_b, S, F, float(ll)


def forward_backward(model: "HSMM", codes: torch.Tensor, seq_id: Any = None) -> ForwardBackward:
    """Forward and backward passes of one coded sequence; raises ``NumericalError`` on a zero likelihood."""
    log_b, S, F, ll = _forward_checked(model, codes, seq_id)
    log_init, log_trans, log_dur, log_surv = model.log_parameters()

    Bs, Bf = backward(log_b, log_trans, log_dur, log_surv)
    ll_back = float(torch.logsumexp(log_init + Bs[0], dim=0))
    if abs(ll_back - ll) > 1e-6 * max(1.0, abs(ll)):
        logger.debug(f"Sequence {seq_id}: forward/backward log-likelihood mismatch {ll:.6f} vs {ll_back:.6f}")

    return ForwardBackward(seq_id, log_b, S, F, Bs, Bf, ll)


# -------------------------
# Viterbi
# -------------------------
def viterbi(model: "HSMM", codes: torch.Tensor, seq_id: Any = None) -> torch.Tensor:
    """Most likely segmentation; the final sojourn is right-censored as in ``forward``."""
    log_init, log_trans, log_dur, log_surv = model.log_parameters()
    log_b = model.observation_log_likelihood(codes)
    T, J = log_b.shape
    D = log_dur.shape[1]
    C = _cumulative(log_b)

    Vs = torch.full((T, J), NEG_INF, dtype=DTYPE)
    Ve = torch.full((T, J), NEG_INF, dtype=DTYPE)
    prev_state = torch.full((T, J), -1, dtype=torch.long)
    best_dur = torch.ones((T, J), dtype=torch.long)

    for t in range(T):
        if t == 0:
            Vs[0] = log_init
        else:
            Vs[t], prev_state[t] = (Ve[t - 1].unsqueeze(1) + log_trans).max(dim=0)

        n = min(D, t + 1)
        starts = t - torch.arange(n)
        dur = (log_surv if t == T - 1 else log_dur)[:, :n].T
        Ve[t], idx = (Vs[starts] + dur + (C[t + 1] - C[starts])).max(dim=0)
        best_dur[t] = idx + 1

    if not torch.isfinite(Ve[-1]).any():
        msg = f"Sequence {seq_id}: Viterbi path has zero probability"
        logger.error(msg)
        raise NumericalError(msg, seq_id=seq_id, t=T)

    path = torch.empty(T, dtype=torch.long)
    t, j = T - 1, int(Ve[-1].argmax())
    while t >= 0:
        s = t - int(best_dur[t, j]) + 1
        path[s:t + 1] = j
        j = int(prev_state[s, j])
        t = s - 1
    return path


# -------------------------
# Sufficient statistics
# -------------------------
@dataclass
class SufficientStatistics:
    """Expected counts of one or more sequences; summable across sequences."""

    init: torch.Tensor          # [J]
    transitions: torch.Tensor   # [J, J]
    durations: torch.Tensor     # [J, D]
    emissions: List[torch.Tensor]  # per variable [n_values, J]
    log_likelihood: float = 0.0
    n_sequences: int = 1

    def __add__(self, other: "SufficientStatistics") -> "SufficientStatistics":
        return SufficientStatistics(
            init=self.init + other.init,
            transitions=self.transitions + other.transitions,
            durations=self.durations + other.durations,
            emissions=[a + b for a, b in zip(self.emissions, other.emissions)],
            log_likelihood=self.log_likelihood + other.log_likelihood,
            n_sequences=self.n_sequences + other.n_sequences,
        )


def sufficient_statistics(model: "HSMM", codes: torch.Tensor, seq_id: Any = None) -> SufficientStatistics:
    """E-step quantities of one sequence."""
    fb = forward_backward(model, codes, seq_id)
    _, log_trans, log_dur, log_surv = model.log_parameters()
    ll = fb.log_likelihood
    T, J = fb.log_b.shape
    D = log_dur.shape[1]
    C = _cumulative(fb.log_b)
    gamma = fb.state_posterior()

    if T > 1:
        log_xi = fb.F[:-1].unsqueeze(2) + log_trans.unsqueeze(0) + fb.Bs[1:].unsqueeze(1) - ll
        transitions = torch.exp(log_xi).sum(dim=0)
    else:
        transitions = torch.zeros(J, J, dtype=DTYPE)

    pmf, surv = torch.exp(log_dur), torch.exp(log_surv)
    durations = torch.zeros(J, D, dtype=DTYPE)
    for d in range(1, min(D, T) + 1):
        # complete sojourns of length d ending before the last step
        if T - d > 0:
            s = torch.arange(T - d)
            log_w = fb.S[s] + log_dur[:, d - 1] + (C[s + d] - C[s]) + fb.Bf[s + d - 1] - ll
            durations[:, d - 1] += torch.exp(log_w).sum(dim=0)
        # censored last sojourn seen for d steps: spread over lengths >= d
        s0 = T - d
        w = torch.exp(fb.S[s0] + log_surv[:, d - 1] + (C[T] - C[s0]) - ll)
        tail = surv[:, d - 1:d]
        ratio = torch.where(tail > 0, pmf[:, d - 1:] / tail.clamp_min(1e-300), torch.zeros_like(pmf[:, d - 1:]))
        durations[:, d - 1:] += w.unsqueeze(1) * ratio

    emissions = []
    for v, em in enumerate(model.emissions.values()):
        observed = codes[:, v] >= 0
        counts = torch.zeros(em.n_values, J, dtype=DTYPE)
        counts.index_add_(0, codes[observed, v], gamma[observed])
        emissions.append(counts)

    return SufficientStatistics(gamma[0].clone(), transitions, durations, emissions, ll, 1)


def map_sequences(fn: Callable[[torch.Tensor, Any], T_], seqs: Sequences, n_jobs: int = 1) -> List[T_]:
    """Apply ``fn(codes, seq_id)`` to every sequence, in threads when ``n_jobs > 1``."""
    if isinstance(n_jobs, bool) or not isinstance(n_jobs, int) or n_jobs < 1:
        raise InvalidArgument(f"n_jobs must be a positive integer, got {n_jobs!r}")
    items = list(zip(seqs.codes, seqs.seq_ids))
    if n_jobs == 1 or len(items) == 1:
        return [fn(c, sid) for c, sid in items]
    with ThreadPoolExecutor(max_workers=n_jobs) as executor:
        return list(executor.map(lambda item: fn(*item), items))


# -------------------------
# Decoding
# -------------------------
@dataclass
class DecodingResult:
    """Decoded states of one sequence."""

    seq_id: Any
    posterior: torch.Tensor     # [T, J], rows sum to 1
    states: torch.Tensor        # [T]
    probability: torch.Tensor   # [T], posterior of the decoded state
    log_likelihood: float

    def __len__(self) -> int:
        return int(self.states.shape[0])


@dataclass
class Decoding:
    """Decoding results of several sequences."""

    results: List[DecodingResult]
    state_names: Sequence[str]
    algorithm: str = "map"

    def __iter__(self) -> Iterator[DecodingResult]:
        return iter(self.results)

    def __len__(self) -> int:
        return len(self.results)

    def __getitem__(self, idx: int) -> DecodingResult:
        return self.results[idx]

    @property
    def log_likelihood(self) -> float:
        return float(sum(r.log_likelihood for r in self.results))

    @property
    def states(self) -> List[torch.Tensor]:
        return [r.states for r in self.results]

    def to_frame(self) -> pd.DataFrame:
        """One row per step: ``seq_id``, ``t``, ``state``, ``likelihood`` and per-state posteriors."""
        frames = []
        for r in self.results:
            T = len(r)
            data = {
                SEQ_ID: [r.seq_id] * T,
                TIME: np.arange(1, T + 1),
                STATE: [self.state_names[j] for j in r.states.tolist()],
                "likelihood": r.probability.numpy(),
            }
            for j, name in enumerate(self.state_names):
                data[f"posterior_{name}"] = r.posterior[:, j].numpy()
            frames.append(pd.DataFrame(data))
        return pd.concat(frames, ignore_index=True)

    def _aligned(self, truth: Sequences) -> tuple[np.ndarray, np.ndarray]:
        if not truth.has_states:
            raise InvalidArgument("Ground-truth states are required")
        if [len(s) for s in truth.states] != [len(r) for r in self.results]:
            raise InvalidArgument("Ground truth and decoding have different sequence lengths")
        y_true = torch.cat(truth.states).numpy()
        y_pred = torch.cat(self.states).numpy()
        return y_true, y_pred

    def accuracy(self, truth: Sequences) -> float:
        """Fraction of steps whose decoded state matches the ground truth."""
        y_true, y_pred = self._aligned(truth)
        return float(accuracy_score(y_true, y_pred))

    def confusion(self, truth: Sequences) -> np.ndarray:
        """Confusion matrix, rows = true states, columns = decoded states."""
        y_true, y_pred = self._aligned(truth)
        return confusion_matrix(y_true, y_pred, labels=list(range(len(self.state_names))))


def decode(
    model: "HSMM",
    X: Union[Sequences, pd.DataFrame],
    algorithm: Literal["map", "viterbi"] = "map",
    n_jobs: int = 1,
) -> Decoding:
    """
    Decode hidden states.

    ``map`` labels each step with its posterior arg-max; ``viterbi`` returns
    the most likely joint segmentation. Both report the posterior probability
    of the chosen state.
    """
    algorithm = algorithm.lower()
    if algorithm not in ("map", "viterbi"):
        raise InvalidArgument(f"Unknown decoding algorithm '{algorithm}'.")
    seqs = model.encode(X)

    def _decode_one(codes: torch.Tensor, seq_id: Any) -> DecodingResult:
        fb = forward_backward(model, codes, seq_id)
        gamma = fb.state_posterior()
        if algorithm == "viterbi":
            path = viterbi(model, codes, seq_id)
            prob = gamma.gather(1, path.unsqueeze(1)).squeeze(1)
        else:
            prob, path = gamma.max(dim=1)
        return DecodingResult(seq_id, gamma, path, prob, fb.log_likelihood)

    return Decoding(map_sequences(_decode_one, seqs, n_jobs), list(model.names), algorithm)


def score(model: "HSMM", X: Union[Sequences, pd.DataFrame], n_jobs: int = 1) -> float:
    """Total log-likelihood of all sequences."""
    seqs = model.encode(X)
    return float(sum(map_sequences(lambda codes, sid: _forward_checked(model, codes, sid)[3], seqs, n_jobs)))
