"""Abstract base class for impurity solvers.

An impurity solver takes a local Hamiltonian and the coupling to a bath
(hybridization function) and returns the impurity Green's function. All
solvers inherit from ImpuritySolverABC so that a self-consistency loop can
use any of them through the same interface.

Available solvers:
- CTHYB: hybridization-expansion continuous-time quantum Monte Carlo

References:
    - Gull et al., "Continuous-time Monte Carlo methods for quantum impurity
      models", Rev. Mod. Phys. 83, 349 (2011)
    - Werner et al., Phys. Rev. Lett. 97, 076405 (2006)
"""

from abc import ABC, abstractmethod
from typing import Any


class ImpuritySolverABC(ABC):
    """Abstract base class for quantum impurity solvers.

    The impurity problem:

        H = H_loc + Σ_p ε_p b†_p b_p + Σ_pa (V_pa c†_a b_p + h.c.)

    Integrating out the bath leaves H_loc and the hybridization function
    Δ_ab(τ), from which the solver computes G_ab(τ) = -⟨T c_a(τ) c†_b(0)⟩.
    """

    @abstractmethod
    def solve(self, h_loc: Any, **kwargs) -> Any:
        """Solve the impurity problem.

        Args:
            h_loc: Local Hamiltonian of the impurity
            **kwargs: Solver-specific parameters

        Returns:
            The impurity Green's function

        Raises:
            NotImplementedError: Must be implemented by subclass
        """
        raise NotImplementedError("Impurity solvers must implement solve()")

    @property
    @abstractmethod
    def solver_name(self) -> str:
        """Return the name of this solver, used in printed output."""
        raise NotImplementedError("Impurity solvers must implement solver_name")

    @property
    @abstractmethod
    def supported_orbitals(self) -> int:
        """Return maximum number of orbitals (flavors) supported.

        Returns:
            -1 for unlimited, n for up to n orbitals
        """
        raise NotImplementedError("Impurity solvers must implement supported_orbitals")
