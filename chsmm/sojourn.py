# chsmm/sojourn.py
from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Sequence, Union

import numpy as np
import torch
from scipy import stats

from chsmm.constants import ATOL, DTYPE, EPS, ConfigurationError, logger
from chsmm.tools import constraints


class SojournType(Enum):
    NONPARAMETRIC = "nonparametric"
    KSMOOTHED = "ksmoothed_nonparametric"


def kernel_smooth(raw: torch.Tensor, bandwidth: float) -> torch.Tensor:
    """Convolve a pmf on 1..D with a Gaussian kernel and renormalize on 1..D."""
    d = np.arange(1, raw.shape[0] + 1, dtype=np.float64)
    kernel = stats.norm.pdf(d[:, None] - d[None, :], scale=bandwidth)
    smoothed = torch.as_tensor(kernel, dtype=DTYPE) @ raw.to(DTYPE)
    return smoothed / smoothed.sum().clamp_min(EPS)


@dataclass(frozen=True, eq=False, init=False)
class Sojourn:
    """
    Duration law of one state: a pmf over sojourn lengths 1..D_max.

    ``raw`` is the pmf as supplied (or as estimated by EM). For the
    ``KSMOOTHED`` variant the effective pmf is ``raw`` smoothed with a Gaussian
    kernel of width ``bandwidth``; for ``NONPARAMETRIC`` it is ``raw`` itself.
    """

    type: SojournType
    _raw: torch.Tensor = field(repr=False)
    bandwidth: Optional[float]
    _pmf: torch.Tensor = field(repr=False)

    def __init__(self, type: Union[str, SojournType], raw: Any, bandwidth: Optional[float] = None):
        kind = type if isinstance(type, SojournType) else SojournType(type)
        object.__setattr__(self, "type", kind)

        raw = constraints.as_tensor(raw, "sojourn pmf", ndim=1)
        if raw.numel() == 0:
            raise ConfigurationError("sojourn pmf: empty support")
        constraints.check_probability_vector(raw, "sojourn pmf", atol=ATOL)
        object.__setattr__(self, "_raw", raw)

        if kind is SojournType.KSMOOTHED:
            if bandwidth is None or not float(bandwidth) > 0:
                logger.error(f"ksmoothed sojourn requires a positive bandwidth, got {bandwidth}")
                raise ConfigurationError(f"ksmoothed sojourn requires a positive bandwidth, got {bandwidth}")
            object.__setattr__(self, "bandwidth", float(bandwidth))
            pmf = kernel_smooth(raw, self.bandwidth)
        else:
            object.__setattr__(self, "bandwidth", None)
            pmf = raw / raw.sum()
        object.__setattr__(self, "_pmf", pmf)

    @property
    def raw(self) -> torch.Tensor:
        return self._raw.clone()

    # ---------------- Constructors ----------------
    @classmethod
    def nonparametric(cls, pmf: Sequence[float]) -> "Sojourn":
        return cls(SojournType.NONPARAMETRIC, pmf)

    @classmethod
    def ksmoothed(cls, pmf: Sequence[float], bandwidth: float = 1.0) -> "Sojourn":
        return cls(SojournType.KSMOOTHED, pmf, bandwidth)

    @classmethod
    def from_distribution(
        cls,
        dist: Any,
        max_duration: int,
        type: Union[str, SojournType] = SojournType.NONPARAMETRIC,
        bandwidth: Optional[float] = None,
    ) -> "Sojourn":
        """
        Discretize a frozen ``scipy.stats`` distribution on 1..max_duration.

        Duration d receives the mass of (d - 0.5, d + 0.5]; the result is
        renormalized, so e.g. ``stats.norm(4, 1.5)`` becomes a truncated normal.
        """
        if max_duration < 1:
            raise ConfigurationError(f"max_duration must be >= 1, got {max_duration}")
        edges = np.arange(0.5, max_duration + 1.5)
        if hasattr(dist, "cdf"):
            mass = np.diff(dist.cdf(edges))
        else:
            mass = np.asarray(dist.pmf(np.arange(1, max_duration + 1)), dtype=np.float64)
        mass = np.clip(mass, 0.0, None)
        if mass.sum() <= 0:
            raise ConfigurationError("distribution puts no mass on 1..max_duration")
        return cls(type, mass / mass.sum(), bandwidth)

    @classmethod
    def from_samples(
        cls,
        durations: Sequence[int],
        max_duration: Optional[int] = None,
        type: Union[str, SojournType] = SojournType.NONPARAMETRIC,
        bandwidth: Optional[float] = None,
    ) -> "Sojourn":
        """Empirical pmf of observed sojourn lengths."""
        d = np.asarray(durations, dtype=np.int64)
        if d.size == 0 or (d < 1).any():
            raise ConfigurationError("durations must be a non-empty set of positive integers")
        D = int(max_duration or d.max())
        counts = np.bincount(np.clip(d, 1, D) - 1, minlength=D).astype(np.float64)
        return cls(type, counts / counts.sum(), bandwidth)

    # ---------------- Contract ----------------
    @property
    def pmf_vector(self) -> torch.Tensor:
        """Effective pmf over 1..max_support() (a copy)."""
        return self._pmf.clone()

    def pmf(self, d: int) -> float:
        if d < 1 or d > self.max_support():
            return 0.0
        return float(self._pmf[d - 1])

    def survival(self, d: int) -> float:
        """P(duration >= d)."""
        if d < 1:
            return 1.0
        if d > self.max_support():
            return 0.0
        return float(self._pmf[d - 1:].sum())

    def mean(self) -> float:
        d = torch.arange(1, self.max_support() + 1, dtype=DTYPE)
        return float((d * self._pmf).sum())

    def max_support(self) -> int:
        return int(self._pmf.shape[0])

    def log_pmf(self, max_duration: Optional[int] = None) -> torch.Tensor:
        """Log pmf padded with -inf up to ``max_duration``."""
        D = max_duration or self.max_support()
        out = torch.full((D,), -float("inf"), dtype=DTYPE)
        n = min(D, self.max_support())
        out[:n] = constraints.safe_log(self._pmf[:n])
        return out

    def log_survival(self, max_duration: Optional[int] = None) -> torch.Tensor:
        """Log of P(duration >= d) for d = 1..max_duration, padded with -inf."""
        D = max_duration or self.max_support()
        surv = torch.flip(torch.cumsum(torch.flip(self._pmf, [0]), 0), [0]).clamp(0.0, 1.0)
        out = torch.full((D,), -float("inf"), dtype=DTYPE)
        n = min(D, self.max_support())
        out[:n] = constraints.safe_log(surv[:n])
        return out

    # ---------------- EM ----------------
    def reestimate(self, counts: torch.Tensor, pseudo_count: float = 0.0) -> "Sojourn":
        """
        New sojourn of the same type from expected (duration) counts.

        Durations outside the current support get no pseudo-count. A state with
        no expected sojourns keeps its current law.
        """
        counts = counts[: self.max_support()].to(DTYPE)
        if float(counts.clamp_min(0.0).sum()) <= EPS:
            return self
        support = self._pmf > 0
        raw = constraints.normalize_counts(counts, support, pseudo_count)
        return Sojourn(self.type, raw, self.bandwidth)

    # ---------------- Plain attributes ----------------
    def to_dict(self) -> Dict[str, Any]:
        return {"type": self.type.value, "pmf": self._raw.tolist(), "bandwidth": self.bandwidth}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Sojourn":
        return cls(SojournType(data["type"]), data["pmf"], data.get("bandwidth"))

    def __repr__(self) -> str:
        bw = f", bandwidth={self.bandwidth}" if self.bandwidth is not None else ""
        return f"Sojourn({self.type.value}, D_max={self.max_support()}, mean={self.mean():.2f}{bw})"
