import torch
import pandas as pd
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from chsmm.constants import SEQ_ID, STATE, TIME, RESERVED_COLUMNS, ConfigurationError, InvalidArgument, logger


# -----------------------------
# Sequences
# -----------------------------
@dataclass(frozen=False)
class Sequences:
    """
    Coded observation sequences.

    ``codes[i]`` is a ``[T_i, V]`` long tensor holding, for every time step
    and emission variable, the index of the observed value or ``-1`` when the
    value is missing. ``states[i]`` optionally carries the ground-truth state
    index of every step.
    """

    codes: List[torch.Tensor]
    variables: Tuple[str, ...]
    seq_ids: Optional[List[Any]] = None
    states: Optional[List[Optional[torch.Tensor]]] = None
    lengths: Optional[List[int]] = None

    def __post_init__(self):
        if not self.codes:
            raise InvalidArgument("`codes` cannot be empty.")
        if not all(isinstance(c, torch.Tensor) and c.ndim == 2 for c in self.codes):
            raise TypeError("All elements in `codes` must be 2-d torch.Tensor.")
        self.variables = tuple(self.variables)
        if any(c.shape[1] != len(self.variables) for c in self.codes):
            raise InvalidArgument("Every coded sequence needs one column per variable.")
        if any(c.shape[0] == 0 for c in self.codes):
            raise InvalidArgument("Sequences must contain at least one time step.")
        self.codes = [c.to(torch.long) for c in self.codes]

        seq_lengths = self.lengths or [c.shape[0] for c in self.codes]
        if any(c.shape[0] != l for c, l in zip(self.codes, seq_lengths)):
            raise InvalidArgument("Mismatch between sequence lengths and `lengths`.")
        self.lengths = list(seq_lengths)

        if self.seq_ids is None:
            self.seq_ids = list(range(1, len(self.codes) + 1))
        elif len(self.seq_ids) != len(self.codes):
            raise InvalidArgument("`seq_ids` length must match the number of sequences.")

        if self.states is not None:
            if len(self.states) != len(self.codes):
                raise InvalidArgument("`states` length must match the number of sequences.")
            for s, L in zip(self.states, self.lengths):
                if s is not None and s.shape[0] != L:
                    raise InvalidArgument("Each ground-truth state path must match its sequence length.")

    @property
    def n_sequences(self) -> int:
        return len(self.codes)

    @property
    def total_length(self) -> int:
        return sum(self.lengths)

    @property
    def has_states(self) -> bool:
        return self.states is not None and all(s is not None for s in self.states)

    def __len__(self) -> int:
        return self.n_sequences

    def __getitem__(self, idx: Union[int, slice]) -> "Sequences":
        pick = (lambda xs: xs[idx]) if isinstance(idx, slice) else (lambda xs: [xs[idx]])
        states = pick(self.states) if self.states is not None else None
        return Sequences(pick(self.codes), self.variables, pick(self.seq_ids), states)

    def strip(self) -> "Sequences":
        """Copy without ground truth."""
        return Sequences([c.clone() for c in self.codes], self.variables, list(self.seq_ids))

    def missing_rate(self) -> torch.Tensor:
        """Fraction of missing entries per variable."""
        allc = torch.cat(self.codes, dim=0)
        return (allc < 0).to(torch.float64).mean(dim=0)

    # -----------------------------
    # Tables
    # -----------------------------
    @classmethod
    def from_frame(
        cls,
        frame: pd.DataFrame,
        emissions: Mapping[str, Any],
        state_names: Optional[Sequence[str]] = None,
    ) -> "Sequences":
        """
        Encode a long-format table.

        Expected columns: ``seq_id`` (optional, one sequence if absent), ``t``
        (optional ordering), one column per emission variable (NaN/None is
        missing; absent columns are entirely missing) and optionally
        ``state`` holding state names.
        """
        if not isinstance(frame, pd.DataFrame):
            raise TypeError(f"Expected a pandas DataFrame, got {type(frame)}")
        if frame.empty:
            raise InvalidArgument("Observation table is empty.")

        unknown = [c for c in frame.columns if c not in RESERVED_COLUMNS and c not in emissions]
        if unknown:
            msg = f"Variables {unknown} are not emission variables of the model {list(emissions)}"
            logger.error(msg)
            raise ConfigurationError(msg)

        df = frame if SEQ_ID in frame.columns else frame.assign(**{SEQ_ID: 1})
        if TIME in df.columns:
            df = df.sort_values([SEQ_ID, TIME], kind="stable")

        names = tuple(emissions)
        state_index: Dict[str, int] = {n: j for j, n in enumerate(state_names or [])}
        use_states = STATE in df.columns and bool(state_index)

        codes, seq_ids, states = [], [], []
        for sid, group in df.groupby(SEQ_ID, sort=False):
            cols = []
            for name in names:
                if name in group.columns:
                    cols.append(emissions[name].encode(group[name].tolist(), name=name))
                else:
                    cols.append(torch.full((len(group),), -1, dtype=torch.long))
            codes.append(torch.stack(cols, dim=1))
            seq_ids.append(sid)
            if use_states:
                labels = group[STATE].tolist()
                if any(pd.isna(l) for l in labels):
                    # unlabeled steps leave the whole sequence without ground truth
                    states.append(None)
                    continue
                if any(l not in state_index for l in labels):
                    bad = sorted({str(l) for l in labels if l not in state_index})
                    msg = f"Unknown state labels {bad} in sequence {sid}"
                    logger.error(msg)
                    raise ConfigurationError(msg)
                states.append(torch.as_tensor([state_index[l] for l in labels], dtype=torch.long))

        if not any(s is not None for s in states):
            use_states = False
        return cls(codes, names, seq_ids, states if use_states else None)

    def to_frame(self, emissions: Mapping[str, Any], state_names: Optional[Sequence[str]] = None) -> pd.DataFrame:
        """Long-format table with decoded values (None where missing)."""
        frames = []
        for i, (sid, code) in enumerate(zip(self.seq_ids, self.codes)):
            T = code.shape[0]
            data: Dict[str, Any] = {SEQ_ID: [sid] * T, TIME: list(range(1, T + 1))}
            for v, name in enumerate(self.variables):
                data[name] = emissions[name].decode(code[:, v])
            if self.states is not None and self.states[i] is not None:
                path = self.states[i].tolist()
                data[STATE] = [state_names[s] for s in path] if state_names else path
            frames.append(pd.DataFrame(data))
        return pd.concat(frames, ignore_index=True)
