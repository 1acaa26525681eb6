"""Diagonalization of the local Hamiltonian sector by sector."""

from typing import List, Sequence, Tuple
import torch


def diagonalize(
    H: torch.Tensor,
    hermitian: bool = True,
) -> Tuple[torch.Tensor, torch.Tensor]:
    """
    Diagonalize a single Hamiltonian block.

    H |ψ_n⟩ = E_n |ψ_n⟩

    Args:
        H: Hamiltonian block, shape (d, d)
        hermitian: If True, use eigh (faster, assumes Hermitian).
                   If False, use eig (general diagonalization)

    Returns:
        eigenvalues: Eigenvalues E_n in ascending order, shape (d,)
        eigenvectors: Eigenvectors, shape (d, d); column n corresponds to E_n
    """
    if hermitian:
        eigenvalues, eigenvectors = torch.linalg.eigh(H)
    else:
        eigenvalues_complex, eigenvectors = torch.linalg.eig(H)
        eigenvalues = eigenvalues_complex.real
        eigenvectors = eigenvectors.real

    return eigenvalues, eigenvectors


def diagonalize_sectors(
    H: torch.Tensor,
    sectors: Sequence[Sequence[int]],
) -> List[Tuple[torch.Tensor, torch.Tensor]]:
    """
    Diagonalize H restricted to each invariant subspace.

    Each sector is a list of Fock-state indices; H must not couple different
    sectors, which is guaranteed by the partition of the local Hamiltonian.

    Args:
        H: Full Hamiltonian matrix, shape (dim, dim)
        sectors: Fock-state indices of every sector

    Returns:
        List of (eigenvalues, eigenvectors) per sector, eigenvectors expressed
        in the sector's own Fock states, shape (d_s, d_s)
    """
    result = []
    for states in sectors:
        idx = torch.tensor(list(states), dtype=torch.long)
        block = H[idx][:, idx]
        result.append(diagonalize(block))
    return result
