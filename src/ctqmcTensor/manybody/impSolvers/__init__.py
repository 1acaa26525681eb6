"""Impurity solvers.

All solvers inherit from ImpuritySolverABC to ensure a consistent interface.

Available solvers:
- CTHYB: hybridization-expansion continuous-time quantum Monte Carlo

Usage Example:
    >>> from ctqmcTensor.manybody.impSolvers import CTHYBSolver, ImpuritySolverABC
    >>> solver = CTHYBSolver(beta=10.0, gf_struct={"up": [0], "down": [0]}, n_iw=50, n_tau=201)
    >>> assert isinstance(solver, ImpuritySolverABC)
    >>> G_tau = solver.solve(h_matrix, delta_tau=delta, n_cycles=10000)
"""

from .base import ImpuritySolverABC
from .cthyb import CTHYBSolver

__all__ = [
    "ImpuritySolverABC",
    "CTHYBSolver",
]
