from typing import List, Optional
import torch


class SeedGenerator:
    """
    Deterministic seed manager for simulation.

    Features:
        - Reproducible base `torch.Generator`.
        - Deterministic split generators, one per simulated sequence.
        - Easy reseeding.
    """

    def __init__(self, seed: Optional[int] = None):
        self._base_seed: int = int(seed if seed is not None else torch.initial_seed())
        self._generator: torch.Generator = torch.Generator().manual_seed(self._base_seed)
        self._last_split_seeds: List[int] = []

    def split(self, n: int) -> List[torch.Generator]:
        if n <= 0:
            raise ValueError("Number of splits must be positive")
        seeds = torch.randint(0, 2**62, (n,), dtype=torch.int64, generator=self._generator)
        generators = [torch.Generator().manual_seed(int(s)) for s in seeds]
        self._last_split_seeds = seeds.tolist()
        return generators

    def reseed(self, seed: Optional[int] = None) -> None:
        self._base_seed = int(seed if seed is not None else torch.initial_seed())
        self._generator = torch.Generator().manual_seed(self._base_seed)
        self._last_split_seeds = []

    @property
    def seed(self) -> int:
        return self._base_seed

    def last_split(self) -> List[int]:
        return list(self._last_split_seeds)

    def __repr__(self) -> str:
        return f"SeedGenerator(base_seed={self._base_seed})"
