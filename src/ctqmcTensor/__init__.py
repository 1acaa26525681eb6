"""
ctqmcTensor: PyTorch-based continuous-time quantum Monte Carlo.

Hybridization-expansion (CT-HYB) solver for quantum impurity problems,
with labeled imaginary-time tensors and multi-process Markov chains.
"""

from ctqmcTensor.core import BaseTensor, BlockGf
from ctqmcTensor.manybody import CTHYBSolver, FockSpace, HybridizationFunction, LocalHamiltonian
from ctqmcTensor.montecarlo import RunParameters, solve_parameters

__version__ = "0.0.1"

__all__ = [
    "BaseTensor",
    "BlockGf",
    "CTHYBSolver",
    "FockSpace",
    "HybridizationFunction",
    "LocalHamiltonian",
    "RunParameters",
    "solve_parameters",
]
