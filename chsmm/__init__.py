from .constants import ConfigurationError, HSMMError, InvalidArgument, NumericalError
from .tools import ConvergenceMonitor, SeedGenerator, Sequences, constraints, utils
from .sojourn import Sojourn, SojournType
from .emissions import Censoring, Emission
from .models import HSMM, Decoding, DecodingResult, FitResult, decode, fit, score, simulate

__all__ = [
    'HSMM',
    'Sojourn',
    'SojournType',
    'Emission',
    'Censoring',
    'Sequences',
    'Decoding',
    'DecodingResult',
    'FitResult',
    'simulate',
    'decode',
    'score',
    'fit',
    'ConvergenceMonitor',
    'SeedGenerator',
    'constraints',
    'utils',
    'HSMMError',
    'ConfigurationError',
    'InvalidArgument',
    'NumericalError',
]
