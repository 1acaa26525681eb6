"""Core module: labeled tensors, error taxonomy and random numbers."""

from ctqmcTensor.core.base import BaseTensor, BlockGf
from ctqmcTensor.core.errors import (
    CTQMCError,
    ConfigurationError,
    ConsistencyError,
    DegenerateMoveError,
    BudgetExceeded,
    ReductionError,
)
from ctqmcTensor.core.random import RandomSource, default_seed

__all__ = [
    "BaseTensor",
    "BlockGf",
    "CTQMCError",
    "ConfigurationError",
    "ConsistencyError",
    "DegenerateMoveError",
    "BudgetExceeded",
    "ReductionError",
    "RandomSource",
    "default_seed",
]
