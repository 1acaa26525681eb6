"""Many-body module: impurity Hilbert space, bath coupling and solvers.

This module provides:
- Fock space with Jordan-Wigner creation/annihilation matrices
- Local Hamiltonian with quantum-number sectors
- Block-structured hybridization function Δ(τ)
- Impurity solvers (CT-HYB)
"""

from ctqmcTensor.manybody.operators import FockSpace, LocalHamiltonian, Sector
from ctqmcTensor.manybody.hybridization import HybridizationFunction

# Impurity solvers (ABC + implementations)
from ctqmcTensor.manybody.impSolvers import (
    ImpuritySolverABC,
    CTHYBSolver,
)

__all__ = [
    "FockSpace",
    "LocalHamiltonian",
    "Sector",
    "HybridizationFunction",
    "ImpuritySolverABC",
    "CTHYBSolver",
]
