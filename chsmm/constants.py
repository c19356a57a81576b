# chsmm/constants.py
import math
import torch
import logging
from typing import Optional

EPS = 1e-12
ATOL = 1e-6
DTYPE = torch.float64
LOG_FLOOR = math.log(1e-300)

SEQ_ID = "seq_id"
TIME = "t"
STATE = "state"
RESERVED_COLUMNS = (SEQ_ID, TIME, STATE)

# -------------------------
# Logger
# -------------------------
logger = logging.getLogger("chsmm")
if not logger.hasHandlers():
    logger.setLevel(logging.INFO)
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('[%(levelname)s] %(name)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)


class HSMMError(ValueError):
    """Base error class for the chsmm package."""
    pass


class ConfigurationError(HSMMError):
    """Malformed model, or data outside the model's declared domain."""
    pass


class InvalidArgument(HSMMError):
    """Malformed simulation or fitting request."""
    pass


class NumericalError(HSMMError):
    """Non-finite likelihood in the forward-backward recursions."""

    def __init__(self, message: str, seq_id: Optional[object] = None, t: Optional[int] = None):
        super().__init__(message)
        self.seq_id = seq_id
        self.t = t
