# chsmm/models/hsmm.py
from __future__ import annotations
from types import MappingProxyType
from typing import Any, Dict, Literal, Mapping, Optional, Sequence, Tuple, Union

import pandas as pd
import torch
from matplotlib import colormaps
from matplotlib.colors import to_hex

from chsmm.constants import RESERVED_COLUMNS, ConfigurationError, logger
from chsmm.emissions import Censoring, Emission, EmissionLike, as_emission, observation_log_likelihood
from chsmm.sojourn import Sojourn
from chsmm.tools import Sequences, constraints
from chsmm.models import inference, learning, simulation


SojournLike = Union[Sojourn, Mapping[str, Any]]


def _fail(msg: str):
    logger.error(msg)
    raise ConfigurationError(msg)


class HSMM:
    """
    Hidden semi-Markov model with categorical emissions and state-dependent missingness.

    The model is validated on construction and immutable afterwards: accessors
    return copies, ``replace`` and ``fit`` return new models.

    Args:
        n_states: number of hidden states (at least 2).
        init: initial state distribution, length ``n_states``.
        transition: row-stochastic ``n_states x n_states`` matrix with a zero diagonal.
        sojourns: one ``Sojourn`` (or its dict form) per state, as a list or
            a mapping keyed by state name.
        emissions: mapping of variable name to ``Emission`` (or its dict form).
        censoring: optional ``Censoring``; without it missing values are ignorable.
        names: state names, default ``"1".."J"``.
        colors: display colors, default from the ``tab10`` colormap.
    """

    def __init__(
        self,
        n_states: int,
        init: Sequence[float],
        transition: Sequence[Sequence[float]],
        sojourns: Union[Sequence[SojournLike], Mapping[str, SojournLike]],
        emissions: Mapping[str, EmissionLike],
        censoring: Optional[Union[Censoring, Mapping[str, Any]]] = None,
        names: Optional[Sequence[str]] = None,
        colors: Optional[Sequence[str]] = None,
    ):
        if isinstance(n_states, bool) or not isinstance(n_states, int) or n_states < 2:
            _fail(f"n_states must be an integer >= 2, got {n_states!r}")
        J = n_states

        names = [str(j + 1) for j in range(J)] if names is None else [str(n) for n in names]
        if len(names) != J:
            _fail(f"names: expected {J} state names, got {len(names)}")
        if not constraints.distinct(names):
            _fail(f"names: state names must be distinct, got {names}")

        if colors is None:
            cmap = colormaps["tab10"]
            colors = [to_hex(cmap(j % cmap.N)) for j in range(J)]
        colors = list(colors)
        if len(colors) != J:
            _fail(f"colors: expected {J} colors, got {len(colors)}")

        init_t = constraints.as_tensor(init, "init", ndim=1)
        if init_t.shape[0] != J:
            _fail(f"init: expected {J} entries, got {init_t.shape[0]}")
        constraints.check_probability_vector(init_t, "init")

        trans_t = constraints.as_tensor(transition, "transition", ndim=2)
        if tuple(trans_t.shape) != (J, J):
            _fail(f"transition: expected shape {(J, J)}, got {tuple(trans_t.shape)}")
        constraints.check_semi_transition(trans_t, "transition")

        if isinstance(sojourns, Mapping):
            missing = [n for n in names if n not in sojourns]
            if missing:
                _fail(f"sojourns: no sojourn given for states {missing}")
            sojourns = [sojourns[n] for n in names]
        sojourns = [s if isinstance(s, Sojourn) else Sojourn.from_dict(s) for s in sojourns]
        if len(sojourns) != J:
            _fail(f"sojourns: expected {J} sojourn distributions, got {len(sojourns)}")

        if not emissions:
            _fail("emissions: at least one emission variable is required")
        emissions = {str(k): as_emission(v) for k, v in emissions.items()}
        for name, em in emissions.items():
            if name in RESERVED_COLUMNS:
                _fail(f"emissions: '{name}' is a reserved column name")
            if em.n_states != J:
                _fail(f"emissions[{name}]: expected {J} state columns, got {em.n_states}")

        if censoring is not None and not isinstance(censoring, Censoring):
            censoring = Censoring.from_dict(censoring)
        if censoring is not None:
            if censoring.n_states != J:
                _fail(f"censoring p: expected {J} states, got {censoring.n_states}")
            unknown = [k for k in censoring.q if k not in emissions]
            if unknown:
                _fail(f"censoring q: unknown variables {unknown}")

        self._n_states = J
        self._names: Tuple[str, ...] = tuple(names)
        self._colors: Tuple[str, ...] = tuple(colors)
        self._init = init_t
        self._transition = trans_t
        self._sojourns: Tuple[Sojourn, ...] = tuple(sojourns)
        self._emissions: Dict[str, Emission] = emissions
        self._censoring = censoring

        D = max(s.max_support() for s in self._sojourns)
        self._max_duration = D
        self._log_init = constraints.safe_log(init_t)
        self._log_transition = constraints.safe_log(trans_t)
        self._log_duration = torch.stack([s.log_pmf(D) for s in self._sojourns])
        self._log_survival = torch.stack([s.log_survival(D) for s in self._sojourns])
        self._frozen = True

    def __setattr__(self, key, value):
        if getattr(self, "_frozen", False):
            raise AttributeError("HSMM is immutable; use replace() to derive a new model")
        object.__setattr__(self, key, value)

    # ---------------- Accessors ----------------
    @property
    def n_states(self) -> int:
        return self._n_states

    @property
    def names(self) -> Tuple[str, ...]:
        return self._names

    @property
    def colors(self) -> Tuple[str, ...]:
        return self._colors

    @property
    def init(self) -> torch.Tensor:
        return self._init.clone()

    @property
    def transition(self) -> torch.Tensor:
        return self._transition.clone()

    @property
    def sojourns(self) -> Tuple[Sojourn, ...]:
        return self._sojourns

    @property
    def emissions(self) -> Mapping[str, Emission]:
        return MappingProxyType(self._emissions)

    @property
    def variables(self) -> Tuple[str, ...]:
        return tuple(self._emissions)

    @property
    def censoring(self) -> Optional[Censoring]:
        return self._censoring

    @property
    def max_duration(self) -> int:
        return self._max_duration

    def log_parameters(self) -> Tuple[torch.Tensor, torch.Tensor, torch.Tensor, torch.Tensor]:
        """(log init [J], log transition [J, J], log pmf [J, D], log survival [J, D]), as copies."""
        return (
            self._log_init.clone(),
            self._log_transition.clone(),
            self._log_duration.clone(),
            self._log_survival.clone(),
        )

    def state_index(self, name: str) -> int:
        try:
            return self._names.index(str(name))
        except ValueError:
            raise ConfigurationError(f"Unknown state {name!r}; states are {list(self._names)}") from None

    def mean_durations(self) -> Dict[str, float]:
        return {n: s.mean() for n, s in zip(self._names, self._sojourns)}

    def missing_probability(self, variable: str, state: Union[int, str]) -> float:
        """Realized probability that ``variable`` is missing in ``state``."""
        if variable not in self._emissions:
            raise ConfigurationError(f"Unknown variable {variable!r}")
        j = self.state_index(state) if isinstance(state, str) else int(state)
        if self._censoring is None:
            return 0.0
        return self._censoring.missing_probability(variable, j)

    @property
    def dof(self) -> int:
        """Number of free parameters (structural zeros excluded, censoring held fixed)."""
        free = lambda probs, dim: int(((probs > 0).sum(dim=dim) - 1).clamp_min(0).sum())
        n = free(self._init, 0) + free(self._transition, 1)
        n += sum(free(s.raw, 0) for s in self._sojourns)
        n += sum(free(em.probs, 0) for em in self._emissions.values())
        return n

    # ---------------- Copies ----------------
    def replace(self, **changes: Any) -> "HSMM":
        """New validated model with some constructor arguments changed."""
        kwargs = dict(
            n_states=self._n_states,
            init=self._init,
            transition=self._transition,
            sojourns=list(self._sojourns),
            emissions=dict(self._emissions),
            censoring=self._censoring,
            names=list(self._names),
            colors=list(self._colors),
        )
        unknown = set(changes) - set(kwargs)
        if unknown:
            raise TypeError(f"replace() got unexpected arguments {sorted(unknown)}")
        kwargs.update(changes)
        return HSMM(**kwargs)

    def to_dict(self) -> Dict[str, Any]:
        """Plain attribute set for external serializers."""
        return {
            "n_states": self._n_states,
            "names": list(self._names),
            "colors": list(self._colors),
            "init": self._init.tolist(),
            "transition": self._transition.tolist(),
            "sojourns": [s.to_dict() for s in self._sojourns],
            "emissions": {k: em.to_dict() for k, em in self._emissions.items()},
            "censoring": self._censoring.to_dict() if self._censoring is not None else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HSMM":
        return cls(
            n_states=data["n_states"],
            init=data["init"],
            transition=data["transition"],
            sojourns=data["sojourns"],
            emissions=data["emissions"],
            censoring=data.get("censoring"),
            names=data.get("names"),
            colors=data.get("colors"),
        )

    # ---------------- Data ----------------
    def encode(self, X: Union[Sequences, pd.DataFrame]) -> Sequences:
        """
        Validate observations against the model's variables and values.

        Tables are encoded via ``Sequences.from_frame``; coded sequences are
        re-ordered to the model's variable order (absent variables are missing).
        """
        if isinstance(X, pd.DataFrame):
            return Sequences.from_frame(X, self._emissions, self._names)
        if not isinstance(X, Sequences):
            raise TypeError(f"Expected Sequences or pandas DataFrame, got {type(X)}")

        unknown = [v for v in X.variables if v not in self._emissions]
        if unknown:
            _fail(f"Variables {unknown} are not emission variables of the model {list(self._emissions)}")
        for v, name in enumerate(X.variables):
            top = max(int(c[:, v].max()) for c in X.codes)
            if top >= self._emissions[name].n_values:
                _fail(f"{name}: value code {top} outside the {self._emissions[name].n_values} declared values")
            low = min(int(c[:, v].min()) for c in X.codes)
            if low < -1:
                _fail(f"{name}: value code {low} is neither a declared value nor the missing marker -1")
        labeled = [s for s in (X.states or []) if s is not None]
        if any(int(s.max()) >= self._n_states or int(s.min()) < 0 for s in labeled):
            _fail(f"Ground-truth states outside 0..{self._n_states - 1}")
        if X.variables == self.variables:
            return X

        order = [X.variables.index(n) if n in X.variables else None for n in self.variables]
        codes = []
        for c in X.codes:
            cols = [c[:, i] if i is not None else torch.full((c.shape[0],), -1, dtype=torch.long) for i in order]
            codes.append(torch.stack(cols, dim=1))
        return Sequences(codes, self.variables, list(X.seq_ids), X.states)

    def to_frame(self, X: Sequences) -> pd.DataFrame:
        return X.to_frame(self._emissions, self._names)

    def observation_log_likelihood(self, codes: torch.Tensor) -> torch.Tensor:
        """[T, J] log-likelihood of each coded time step under each state."""
        return observation_log_likelihood(codes, list(self._emissions.values()), self._censoring, self.variables)

    # ---------------- Engine ----------------
    def simulate(
        self,
        n_transitions: Optional[int] = None,
        n_sequences: int = 1,
        seed: Optional[int] = None,
        horizon: Optional[int] = None,
    ) -> Sequences:
        return simulation.simulate(self, n_transitions, n_sequences=n_sequences, seed=seed, horizon=horizon)

    def predict(
        self,
        X: Union[Sequences, pd.DataFrame],
        algorithm: Literal["map", "viterbi"] = "map",
        n_jobs: int = 1,
    ) -> "inference.Decoding":
        return inference.decode(self, X, algorithm=algorithm, n_jobs=n_jobs)

    def score(self, X: Union[Sequences, pd.DataFrame], n_jobs: int = 1) -> float:
        return inference.score(self, X, n_jobs=n_jobs)

    def fit(self, X: Union[Sequences, pd.DataFrame], **kwargs: Any) -> "learning.FitResult":
        return learning.fit(self, X, **kwargs)

    def info(
        self,
        X: Union[Sequences, pd.DataFrame],
        criterion: constraints.InformCriteria = constraints.InformCriteria.AIC,
    ) -> float:
        """Information criterion (AIC, BIC or HQC) of the model on ``X``."""
        seqs = self.encode(X)
        ll = self.score(seqs)
        return float(constraints.compute_information_criteria(seqs.total_length, ll, self.dof, criterion))

    def __repr__(self) -> str:
        return (
            f"HSMM(n_states={self._n_states}, names={list(self._names)}, "
            f"variables={list(self._emissions)}, max_duration={self._max_duration}, "
            f"censored={self._censoring is not None})"
        )
