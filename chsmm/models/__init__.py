from .hsmm import HSMM
from .simulation import simulate
from .inference import Decoding, DecodingResult, decode, score
from .learning import FitResult, fit

__all__ = [
    'HSMM',
    'simulate',
    'decode',
    'score',
    'fit',
    'Decoding',
    'DecodingResult',
    'FitResult',
]
