from .convergence import ConvergenceMonitor
from .seed import SeedGenerator
from .utils import Sequences
from . import constraints
from . import utils


__all__ = [
    'ConvergenceMonitor',
    'SeedGenerator',
    'Sequences',
    'constraints',
    'utils',
]
