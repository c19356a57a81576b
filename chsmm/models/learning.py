# chsmm/models/learning.py
from __future__ import annotations
from dataclasses import dataclass
from functools import reduce
from operator import add
from typing import TYPE_CHECKING, Callable, List, Optional, Union

import pandas as pd
from tqdm.auto import trange

from chsmm.constants import InvalidArgument, logger
from chsmm.models.inference import SufficientStatistics, map_sequences, sufficient_statistics
from chsmm.tools import ConvergenceMonitor, Sequences, constraints

if TYPE_CHECKING:
    from chsmm.models.hsmm import HSMM


@dataclass
class FitResult:
    """Outcome of an EM run; ``log_likelihoods[0]`` belongs to the starting model."""

    model: "HSMM"
    log_likelihoods: List[float]
    converged: bool
    n_iter: int
    message: str
    monitor: ConvergenceMonitor

    @property
    def log_likelihood(self) -> float:
        return self.log_likelihoods[-1]


def _check_fit_args(tol, max_iter, pseudo_count, n_jobs):
    problems = []
    if not isinstance(tol, (int, float)) or isinstance(tol, bool) or not tol >= 0:
        problems.append(f"tol must be a non-negative number, got {tol!r}")
    if isinstance(max_iter, bool) or not isinstance(max_iter, int) or max_iter < 1:
        problems.append(f"max_iter must be a positive integer, got {max_iter!r}")
    if not isinstance(pseudo_count, (int, float)) or isinstance(pseudo_count, bool) or not pseudo_count >= 0:
        problems.append(f"pseudo_count must be a non-negative number, got {pseudo_count!r}")
    if isinstance(n_jobs, bool) or not isinstance(n_jobs, int) or n_jobs < 1:
        problems.append(f"n_jobs must be a positive integer, got {n_jobs!r}")
    if problems:
        msg = "; ".join(problems)
        logger.error(msg)
        raise InvalidArgument(msg)


def expectation(model: "HSMM", seqs: Sequences, n_jobs: int = 1) -> SufficientStatistics:
    """E-step: expected counts of every sequence, summed."""
    per_sequence = map_sequences(lambda codes, sid: sufficient_statistics(model, codes, sid), seqs, n_jobs)
    return reduce(add, per_sequence)


def maximization(model: "HSMM", stats: SufficientStatistics, pseudo_count: float = 1e-3) -> "HSMM":
    """
    M-step: a new model from summed expected counts.

    Only cells that are nonzero in ``model`` receive mass, so structural zeros
    (including the transition diagonal) are preserved. States and emission
    columns without expected counts keep their parameters; censoring is kept.
    """
    init, transition = model.init, model.transition

    new_init = constraints.normalize_counts(stats.init, init > 0, pseudo_count, fallback=init)
    new_transition = constraints.normalize_counts(
        stats.transitions, transition > 0, pseudo_count, dim=1, fallback=transition
    )

    idle = [n for n, mass in zip(model.names, stats.durations.sum(dim=1).tolist()) if mass <= 0]
    if idle:
        logger.warning(f"States {idle} have no expected sojourns; keeping their parameters")

    sojourns = [s.reestimate(stats.durations[j], pseudo_count) for j, s in enumerate(model.sojourns)]
    emissions = {
        name: em.reestimate(counts, pseudo_count)
        for (name, em), counts in zip(model.emissions.items(), stats.emissions)
    }
    return model.replace(init=new_init, transition=new_transition, sojourns=sojourns, emissions=emissions)


def fit(
    model: "HSMM",
    X: Union[Sequences, pd.DataFrame],
    tol: float = 1e-4,
    max_iter: int = 100,
    pseudo_count: float = 1e-3,
    n_jobs: int = 1,
    verbose: bool = False,
    progress: bool = False,
    callbacks: Optional[List[Callable]] = None,
) -> FitResult:
    """
    Fit a model by expectation-maximization.

    Args:
        model: starting model; it is never modified.
        X: observation sequences (coded or as a table). Ground truth is ignored.
        tol: stop once the summed log-likelihood changes by less than ``tol``.
        max_iter: maximum number of EM iterations.
        pseudo_count: added to every nonzero cell before normalizing.
        n_jobs: worker threads for the E-step.
        verbose: log every iteration through the package logger.
        progress: show a ``tqdm`` progress bar.
        callbacks: forwarded to the ``ConvergenceMonitor``.

    Returns:
        FitResult with the refitted model and the log-likelihood trajectory.
    """
    _check_fit_args(tol, max_iter, pseudo_count, n_jobs)
    seqs = model.encode(X)

    monitor = ConvergenceMonitor(max_iter=max_iter, tol=tol, verbose=verbose, callbacks=callbacks)
    stats = expectation(model, seqs, n_jobs)
    monitor.push_pull(stats.log_likelihood)

    current = model
    for _ in trange(1, max_iter + 1, desc="EM", disable=not progress, leave=False):
        current = maximization(current, stats, pseudo_count)
        stats = expectation(current, seqs, n_jobs)
        if monitor.push_pull(stats.log_likelihood):
            break

    if monitor.converged:
        message = f"Converged after {monitor.n_iter} iterations (tol={tol})"
    else:
        message = f"Did not converge within {max_iter} iterations (last delta {monitor.delta[-1]:.3e})"
        logger.warning(message)
    if verbose:
        logger.info(message)

    return FitResult(
        model=current,
        log_likelihoods=monitor.history,
        converged=monitor.converged,
        n_iter=monitor.n_iter,
        message=message,
        monitor=monitor,
    )
