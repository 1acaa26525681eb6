"""Dense linear-algebra solvers."""

from ctqmcTensor.solvers.diag import diagonalize, diagonalize_sectors

__all__ = ["diagonalize", "diagonalize_sectors"]
