import torch
from enum import Enum
from typing import Optional, Sequence, Union

from chsmm.constants import ATOL, DTYPE, EPS, ConfigurationError, logger


# -------------------------------
# Enums
# -------------------------------
class InformCriteria(Enum):
    AIC = "AIC"
    BIC = "BIC"
    HQC = "HQC"


# -------------------------------
# Utilities
# -------------------------------
def _resolve_type(val, enum_type) -> str:
    if isinstance(val, enum_type):
        return val.value
    if isinstance(val, str):
        return val.upper()
    logger.error(f"Invalid type for _resolve_type: {type(val)}")
    raise ValueError(f"Expected {enum_type} or str, got {type(val)}")


def _fail(msg: str):
    logger.error(msg)
    raise ConfigurationError(msg)


def as_tensor(values, name: str, ndim: Optional[int] = None) -> torch.Tensor:
    """Convert array-like input into a detached float tensor and check its rank."""
    try:
        t = torch.as_tensor(values, dtype=DTYPE).detach().clone()
    except (TypeError, ValueError) as e:
        _fail(f"{name}: cannot convert to a numeric tensor ({e})")
    if ndim is not None and t.ndim != ndim:
        _fail(f"{name}: expected {ndim}-d array, got shape {tuple(t.shape)}")
    if not torch.isfinite(t).all():
        idx = torch.nonzero(~torch.isfinite(t))[0].tolist()
        _fail(f"{name}: non-finite entry at index {idx}")
    return t


def log_normalize(matrix: torch.Tensor, dim=-1) -> torch.Tensor:
    """Log-space normalization along a given axis."""
    return matrix - torch.logsumexp(matrix, dim=dim, keepdim=True)


def safe_log(probs: torch.Tensor) -> torch.Tensor:
    """Elementwise log; exact zeros map to -inf."""
    return torch.log(probs.clamp_min(0.0))


# -------------------------------
# Stochastic constraints
# -------------------------------
def check_nonnegative(probs: torch.Tensor, name: str):
    if (probs < 0).any():
        idx = torch.nonzero(probs < 0)[0].tolist()
        _fail(f"{name}: negative entry at index {idx}")


def check_unit_interval(probs: torch.Tensor, name: str):
    check_nonnegative(probs, name)
    if (probs > 1).any():
        idx = torch.nonzero(probs > 1)[0].tolist()
        _fail(f"{name}: entry above 1 at index {idx}")


def check_probability_vector(probs: torch.Tensor, name: str, atol: float = ATOL):
    check_nonnegative(probs, name)
    total = float(probs.sum())
    if abs(total - 1.0) > atol:
        _fail(f"{name}: entries sum to {total:.8f}, expected 1")


def check_stochastic(probs: torch.Tensor, name: str, dim: int = -1, atol: float = ATOL):
    """Check that ``probs`` sums to one along ``dim`` (rows for -1, columns for 0)."""
    check_nonnegative(probs, name)
    sums = probs.sum(dim=dim)
    bad = torch.nonzero((sums - 1.0).abs() > atol).flatten()
    if bad.numel() > 0:
        i = int(bad[0])
        kind = "row" if dim in (-1, probs.ndim - 1) else "column"
        _fail(f"{name}: {kind} {i} sums to {float(sums[i]):.8f}, expected 1")


def check_semi_transition(probs: torch.Tensor, name: str = "transition", atol: float = ATOL):
    """Row-stochastic with an exactly zero diagonal."""
    if probs.ndim != 2 or probs.shape[0] != probs.shape[1]:
        _fail(f"{name}: expected a square matrix, got shape {tuple(probs.shape)}")
    diag = probs.diagonal()
    if (diag != 0).any():
        i = int(torch.nonzero(diag != 0)[0])
        _fail(f"{name}: diagonal entry ({i}, {i}) is {float(diag[i])}, self-transitions are not allowed")
    check_stochastic(probs, name, dim=-1, atol=atol)


# -------------------------------
# Re-estimation
# -------------------------------
def normalize_counts(
    counts: torch.Tensor,
    support: torch.Tensor,
    pseudo_count: float,
    dim: int = -1,
    fallback: Optional[torch.Tensor] = None,
) -> torch.Tensor:
    """
    Turn expected counts into probabilities along ``dim``.

    A pseudo-count is added to every cell inside ``support`` and cells outside
    it stay at zero. Slices without expected counts fall back to ``fallback``.
    """
    counts = counts.clamp_min(0.0)
    smoothed = torch.where(support, counts + pseudo_count, torch.zeros_like(counts))
    totals = smoothed.sum(dim=dim, keepdim=True)
    probs = smoothed / totals.clamp_min(EPS)
    if fallback is not None:
        empty = (counts.sum(dim=dim, keepdim=True) <= EPS).expand_as(probs)
        probs = torch.where(empty, fallback.to(probs), probs)
    return probs


# -------------------------------
# Information Criteria
# -------------------------------
def compute_information_criteria(
    n_samples: int, log_likelihood: Union[float, torch.Tensor], dof: int, criterion: Union[str, InformCriteria]
) -> torch.Tensor:
    """Compute AIC/BIC/HQC for given log-likelihood and degrees of freedom."""
    c = _resolve_type(criterion, InformCriteria)
    log_likelihood = torch.as_tensor(log_likelihood, dtype=DTYPE)
    log_n = torch.log(torch.as_tensor(max(n_samples, 2), dtype=DTYPE))
    penalties = {
        InformCriteria.AIC.value: 2 * dof,
        InformCriteria.BIC.value: dof * log_n,
        InformCriteria.HQC.value: 2 * dof * torch.log(log_n),
    }
    if c not in penalties:
        logger.error(f"Invalid information criterion: {c}")
        raise ValueError(f"Invalid information criterion: {c}")
    return -2 * log_likelihood + penalties[c]


def distinct(values: Sequence) -> bool:
    return len(set(values)) == len(values)
