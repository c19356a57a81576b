import json
import math
from threading import Lock
from typing import Callable, List, Optional

import matplotlib.pyplot as plt

from chsmm.constants import logger


class ConvergenceMonitor:
    """Tracks the log-likelihood trajectory of an EM run and decides when to stop."""

    def __init__(
        self,
        max_iter: int,
        tol: float = 1e-4,
        verbose: bool = False,
        callbacks: Optional[List[Callable]] = None,
    ):
        self.max_iter = int(max_iter)
        self.tol = float(tol)
        self.verbose = verbose
        self.callbacks = callbacks or []

        self.score: List[float] = []
        self.delta: List[float] = []
        self.converged = False
        self._lock = Lock()

    @property
    def n_iter(self) -> int:
        """Number of completed EM iterations (the starting score is iteration 0)."""
        return max(len(self.score) - 1, 0)

    @property
    def history(self) -> List[float]:
        return list(self.score)

    def push_pull(self, new_score: float) -> bool:
        """Push new score and check convergence."""
        self.push(new_score)
        return self.check_converged()

    def push(self, new_score: float):
        val = float(new_score)
        if self.score:
            self.delta.append(val - self.score[-1])
        else:
            self.delta.append(float("nan"))
        self.score.append(val)

    def check_converged(self) -> bool:
        """Converged once the last change in score is below ``tol``; the starting score never converges."""
        iteration = len(self.score) - 1
        last = self.delta[-1]
        conv = math.isfinite(last) and abs(last) < self.tol
        self.converged = conv
        self._trigger_callbacks(iteration, conv)

        if self.verbose:
            d = self.delta[-1]
            status = "converged" if conv else ""
            logger.info(f"Iter {iteration:03d} | log-likelihood: {self.score[-1]:.6f} | delta: {d:.3e} {status}")
        return conv

    def register_callback(self, fn: Callable):
        """Add a callback ``fn(monitor, iteration, score, delta, converged)``."""
        if fn not in self.callbacks:
            self.callbacks.append(fn)

    def _trigger_callbacks(self, iteration: int, conv: bool):
        with self._lock:
            for fn in self.callbacks:
                fn(self, iteration, self.score[-1], self.delta[-1], conv)

    def plot_convergence(self, show: bool = True, savepath: Optional[str] = None,
                         title: str = "Convergence Curve"):
        """Plot the log-likelihood trajectory."""
        plt.style.use("ggplot")
        fig, ax = plt.subplots(figsize=(9, 5))
        ax.plot(range(len(self.score)), self.score, marker="o", lw=1.5)
        ax.set_title(title)
        ax.set_xlabel("Iteration")
        ax.set_ylabel("Log-Likelihood")
        fig.tight_layout()
        if savepath:
            plt.savefig(savepath, bbox_inches="tight", dpi=200)
        if show:
            plt.show()
        else:
            plt.close(fig)
        return fig

    def export_log(self, path: str):
        """Export scores, deltas and convergence status to JSON."""
        data = {
            "tol": self.tol,
            "max_iter": self.max_iter,
            "scores": [x if math.isfinite(x) else None for x in self.score],
            "delta": [x if math.isfinite(x) else None for x in self.delta],
            "converged": self.converged,
        }
        with open(path, "w") as f:
            json.dump(data, f, indent=2)

    def reset(self):
        self.score.clear()
        self.delta.clear()
        self.converged = False
