# chsmm/emissions.py
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
import torch

from chsmm.constants import DTYPE, LOG_FLOOR, ConfigurationError, logger
from chsmm.tools import constraints


def is_missing(value: Any) -> bool:
    try:
        return bool(pd.isna(value))
    except (TypeError, ValueError):
        return False


@dataclass(frozen=True, eq=False, init=False)
class Emission:
    """
    Categorical emission law of one observed variable.

    ``probs[k, j]`` is the probability of ``values[k]`` in state ``j``; every
    column sums to one. ``probs`` hands out a copy, the stored matrix cannot be
    written through it.
    """

    values: Tuple[Any, ...]
    _probs: torch.Tensor = field(repr=False)
    _index: Dict[Any, int] = field(repr=False)

    def __init__(self, values: Sequence[Any], probs: Any):
        values = tuple(values)
        if not values:
            raise ConfigurationError("emission: at least one categorical value is required")
        if any(is_missing(v) for v in values):
            raise ConfigurationError("emission: missing markers cannot be declared as values")
        if not constraints.distinct(values):
            raise ConfigurationError(f"emission: duplicate values in {values}")
        probs = constraints.as_tensor(probs, "emission probabilities", ndim=2)
        if probs.shape[0] != len(values):
            raise ConfigurationError(
                f"emission probabilities: expected {len(values)} rows (one per value), got {probs.shape[0]}"
            )
        constraints.check_stochastic(probs, "emission probabilities", dim=0)
        object.__setattr__(self, "values", values)
        object.__setattr__(self, "_probs", probs)
        object.__setattr__(self, "_index", {v: k for k, v in enumerate(values)})

    @property
    def probs(self) -> torch.Tensor:
        return self._probs.clone()

    @property
    def n_states(self) -> int:
        return int(self._probs.shape[1])

    @property
    def n_values(self) -> int:
        return len(self.values)

    @property
    def log_probs(self) -> torch.Tensor:
        return constraints.safe_log(self._probs)

    def probability(self, value: Any, state: int) -> float:
        return float(self._probs[self.index(value), state])

    def index(self, value: Any) -> int:
        try:
            return self._index[value]
        except (KeyError, TypeError):
            raise ConfigurationError(f"value {value!r} is not one of the declared values {self.values}") from None

    def encode(self, column: Iterable[Any], name: str = "variable") -> torch.Tensor:
        """Integer codes for a column of raw values; missing entries become -1."""
        codes = []
        for v in column:
            if is_missing(v):
                codes.append(-1)
                continue
            try:
                codes.append(self._index[v])
            except (KeyError, TypeError):
                msg = f"{name}: value {v!r} is not one of the declared values {self.values}"
                logger.error(msg)
                raise ConfigurationError(msg) from None
        return torch.as_tensor(codes, dtype=torch.long)

    def decode(self, codes: torch.Tensor) -> List[Any]:
        return [None if c < 0 else self.values[c] for c in codes.tolist()]

    def reestimate(self, counts: torch.Tensor, pseudo_count: float = 0.0) -> "Emission":
        """New emission law from expected (value, state) counts; empty columns are kept."""
        probs = constraints.normalize_counts(counts.to(DTYPE), self._probs > 0, pseudo_count, dim=0, fallback=self._probs)
        return Emission(self.values, probs)

    def to_dict(self) -> Dict[str, Any]:
        return {"values": list(self.values), "probs": self._probs.tolist()}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Emission":
        return cls(tuple(data["values"]), data["probs"])


@dataclass(frozen=True, eq=False, init=False)
class Censoring:
    """
    State-dependent missingness.

    ``p[j]``: probability that the whole observation vector is missing in
    state j. ``q[name][j]``: probability that variable ``name`` alone is
    missing given the vector is not fully missing. Variables absent from
    ``q`` are never individually missing. Both accessors return copies.
    """

    _p: torch.Tensor = field(repr=False)
    _q: Dict[str, torch.Tensor] = field(repr=False)

    def __init__(self, p: Any, q: Optional[Mapping[str, Any]] = None):
        p = constraints.as_tensor(p, "censoring p", ndim=1)
        constraints.check_unit_interval(p, "censoring p")
        rows = {}
        for name, row in dict(q or {}).items():
            row = constraints.as_tensor(row, f"censoring q[{name}]", ndim=1)
            if row.shape[0] != p.shape[0]:
                raise ConfigurationError(
                    f"censoring q[{name}]: expected {p.shape[0]} states, got {row.shape[0]}"
                )
            constraints.check_unit_interval(row, f"censoring q[{name}]")
            rows[name] = row
        object.__setattr__(self, "_p", p)
        object.__setattr__(self, "_q", rows)

    @property
    def p(self) -> torch.Tensor:
        return self._p.clone()

    @property
    def q(self) -> Dict[str, torch.Tensor]:
        return {k: v.clone() for k, v in self._q.items()}

    @property
    def n_states(self) -> int:
        return int(self._p.shape[0])

    def q_matrix(self, names: Sequence[str]) -> torch.Tensor:
        """[V, J] matrix of individual missingness ordered like ``names``."""
        J = self.n_states
        return torch.stack([self._q.get(n, torch.zeros(J, dtype=DTYPE)) for n in names]) if names else \
            torch.zeros(0, J, dtype=DTYPE)

    def missing_probability(self, name: str, state: int) -> float:
        """Realized probability that ``name`` is missing in ``state``: p + (1 - p) q."""
        p = float(self._p[state])
        q = float(self._q[name][state]) if name in self._q else 0.0
        return p + (1.0 - p) * q

    def to_dict(self) -> Dict[str, Any]:
        return {"p": self._p.tolist(), "q": {k: v.tolist() for k, v in self._q.items()}}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Censoring":
        return cls(data["p"], dict(data.get("q", {})))


def observation_log_likelihood(
    codes: torch.Tensor,
    emissions: Sequence[Emission],
    censoring: Optional[Censoring] = None,
    names: Optional[Sequence[str]] = None,
) -> torch.Tensor:
    """
    Per-step, per-state log-likelihood ``[T, J]`` of coded observations.

    With censoring this is the joint probability of the step under the
    two-level missingness draw used by the simulator. It is not the
    per-variable product where a missing variable contributes its realized
    missing probability ``p + (1 - p) * q`` and an observed one contributes
    ``b(x)`` alone; that product ignores that ``p`` is shared by all
    variables of the step. Here a fully missing step has probability
    ``p + (1 - p) * prod(q)``, and any other step contributes
    ``(1 - p) * prod_missing(q) * prod_observed((1 - q) * b(x))``.

    Without censoring a missing variable contributes a factor 1. Values are
    floored at ``LOG_FLOOR``.
    """
    T = codes.shape[0]
    J = emissions[0].n_states
    observed = codes >= 0

    if censoring is None:
        out = torch.zeros(T, J, dtype=DTYPE)
        for v, em in enumerate(emissions):
            contrib = em.log_probs[codes[:, v].clamp_min(0)]
            out = out + torch.where(observed[:, v, None], contrib, torch.zeros_like(contrib))
        return out.clamp_min(LOG_FLOOR)

    q = censoring.q_matrix(names) if names is not None else torch.zeros(len(emissions), J, dtype=DTYPE)
    log_q, log_1mq = constraints.safe_log(q), constraints.safe_log(1.0 - q)
    partial = constraints.safe_log(1.0 - censoring.p).expand(T, J).clone()
    for v, em in enumerate(emissions):
        seen = log_1mq[v] + em.log_probs[codes[:, v].clamp_min(0)]
        partial = partial + torch.where(observed[:, v, None], seen, log_q[v].expand(T, J))

    all_missing = ~observed.any(dim=1)
    out = torch.where(all_missing[:, None], torch.logaddexp(constraints.safe_log(censoring.p).expand(T, J), partial), partial)
    return out.clamp_min(LOG_FLOOR)


EmissionLike = Union[Emission, Mapping[str, Any]]


def as_emission(value: EmissionLike) -> Emission:
    if isinstance(value, Emission):
        return value
    return Emission.from_dict(value)
