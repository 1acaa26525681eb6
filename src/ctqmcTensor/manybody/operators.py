"""Fock space, operator basis and local Hamiltonian of the impurity.

The impurity flavors are declared by a `gf_struct`, an ordered mapping from
block name to the list of inner indices of the block:

    gf_struct = {"up": [0], "down": [0]}

Every (block, inner position) pair is one fermionic flavor. Creation and
annihilation operators are built as dense matrices on the 2^N dimensional
Fock space with the Jordan-Wigner sign convention, so that products of the
matrices anticommute exactly like the operators.

The local Hamiltonian is decomposed into invariant subspaces ("sectors")
such that every creation/annihilation operator maps a sector into at most
one other sector. The trace over the local Hilbert space then only follows
sector chains instead of multiplying full matrices.

References:
    - P. Werner et al., Phys. Rev. Lett. 97, 076405 (2006)
    - E. Gull et al., Rev. Mod. Phys. 83, 349 (2011), Sec. III.B
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union
import math
import torch

from ctqmcTensor.core.errors import ConfigurationError
from ctqmcTensor.solvers.diag import diagonalize_sectors

# Dense Fock matrices of dimension 2^N
MAX_FLAVORS = 12

BlockKey = Union[int, str]


class FockSpace:
    """Fermionic Fock space of the flavors declared by `gf_struct`.

    Attributes:
        gf_struct: Ordered mapping block name -> inner indices
        block_names: Block names in order
        n_flavors: Total number of flavors N
        dim: Fock-space dimension 2^N
    """

    def __init__(self, gf_struct: Dict[str, Sequence[Any]]) -> None:
        if not gf_struct:
            raise ConfigurationError("gf_struct must declare at least one block")

        self.gf_struct: Dict[str, List[Any]] = {name: list(idx) for name, idx in gf_struct.items()}
        self.block_names: List[str] = list(self.gf_struct.keys())

        for name, indices in self.gf_struct.items():
            if len(indices) == 0:
                raise ConfigurationError(f"Block '{name}' of gf_struct is empty")

        # Linear flavor index of (block position, inner position)
        self._linindex: Dict[Tuple[int, int], int] = {}
        flavor = 0
        for b, name in enumerate(self.block_names):
            for inner in range(len(self.gf_struct[name])):
                self._linindex[(b, inner)] = flavor
                flavor += 1

        self.n_flavors = flavor
        if self.n_flavors > MAX_FLAVORS:
            raise ConfigurationError(
                f"{self.n_flavors} flavors exceed the dense Fock-space limit of {MAX_FLAVORS}"
            )
        self.dim = 2 ** self.n_flavors

        self._annihilators = [self._build_annihilator(f) for f in range(self.n_flavors)]

    def _build_annihilator(self, f: int) -> torch.Tensor:
        """c_f |s⟩ = (-1)^{Σ_{g<f} n_g} |s - 2^f⟩ if flavor f is occupied in s."""
        c = torch.zeros((self.dim, self.dim), dtype=torch.float64)
        lower_mask = (1 << f) - 1
        for state in range(self.dim):
            if (state >> f) & 1:
                sign = -1.0 if bin(state & lower_mask).count("1") % 2 else 1.0
                c[state ^ (1 << f), state] = sign
        return c

    def block_index(self, block: BlockKey) -> int:
        """Position of a block given by name or position."""
        if isinstance(block, int):
            if not 0 <= block < len(self.block_names):
                raise IndexError(f"Block position {block} out of range")
            return block
        if block not in self.gf_struct:
            raise KeyError(f"No block named '{block}' (blocks: {self.block_names})")
        return self.block_names.index(block)

    def block_size(self, block: BlockKey) -> int:
        """Number of inner indices of a block."""
        return len(self.gf_struct[self.block_names[self.block_index(block)]])

    def flavor(self, block: BlockKey, inner: int) -> int:
        """Linear flavor index of (block, inner position)."""
        key = (self.block_index(block), inner)
        if key not in self._linindex:
            raise IndexError(f"Inner position {inner} out of range for block {block}")
        return self._linindex[key]

    def c(self, block: BlockKey, inner: int) -> torch.Tensor:
        """Annihilation operator matrix."""
        return self._annihilators[self.flavor(block, inner)]

    def c_dag(self, block: BlockKey, inner: int) -> torch.Tensor:
        """Creation operator matrix."""
        return self._annihilators[self.flavor(block, inner)].T.contiguous()

    def n(self, block: BlockKey, inner: int) -> torch.Tensor:
        """Occupation number operator matrix."""
        return self.c_dag(block, inner) @ self.c(block, inner)

    def total_number(self) -> torch.Tensor:
        """Total particle number operator."""
        return sum(
            (a.T @ a for a in self._annihilators),
            torch.zeros((self.dim, self.dim), dtype=torch.float64),
        )

    def annihilator(self, flavor: int) -> torch.Tensor:
        """Annihilation operator of a linear flavor index."""
        return self._annihilators[flavor]

    def __repr__(self) -> str:
        return f"FockSpace(gf_struct={self.gf_struct}, dim={self.dim})"


@dataclass
class Sector:
    """Invariant subspace of the local Hamiltonian.

    Attributes:
        index: Position of the sector
        states: Fock-state indices spanning the sector
        energies: Eigenvalues shifted by the ground-state energy, ascending
        eigenvectors: Eigenvectors in the sector's Fock states, shape (d, d)
    """
    index: int
    states: List[int]
    energies: torch.Tensor
    eigenvectors: torch.Tensor

    @property
    def dim(self) -> int:
        return len(self.states)


def _find_root(parent: List[int], x: int) -> int:
    """Union-find root with path compression."""
    root = x
    while parent[root] != root:
        root = parent[root]
    while parent[x] != root:
        parent[x], x = root, parent[x]
    return root


def _union(parent: List[int], x: int, y: int) -> bool:
    rx, ry = _find_root(parent, x), _find_root(parent, y)
    if rx == ry:
        return False
    parent[max(rx, ry)] = min(rx, ry)
    return True


class LocalHamiltonian:
    """Local Hamiltonian in its sector-wise eigenbasis.

    The sector decomposition is either derived from quantum numbers (diagonal
    operators commuting with H) or found automatically from the sparsity
    pattern of H and of the creation/annihilation operators. In both cases
    the partition is closed under every c and c†: each operator maps a sector
    to at most one target sector.

    Energies are stored relative to the ground-state energy E0, so every
    trace carries an implicit factor exp(-β E0).

    Attributes:
        fock: The operator basis
        H: Dense Hamiltonian matrix, shape (dim, dim)
        sectors: List of Sector
        ground_state_energy: E0
    """

    def __init__(
        self,
        fock: FockSpace,
        h_matrix: torch.Tensor,
        quantum_numbers: Optional[Sequence[torch.Tensor]] = None,
        use_quantum_numbers: bool = False,
        autopartition: bool = True,
        atol: float = 1e-10,
    ) -> None:
        """Initialize the local Hamiltonian.

        Args:
            fock: Fock space the matrices act on
            h_matrix: Real symmetric Hamiltonian matrix, shape (dim, dim)
            quantum_numbers: Diagonal operators commuting with H
            use_quantum_numbers: Partition by quantum numbers instead of the
                automatic partition
            autopartition: If False (and quantum numbers are not used) the
                whole Fock space is a single sector
            atol: Threshold below which matrix elements count as zero

        Raises:
            ConfigurationError: If H has the wrong shape or is not symmetric,
                or if a quantum number is not diagonal / does not commute with H
        """
        self.fock = fock
        self.atol = atol
        H = torch.as_tensor(h_matrix, dtype=torch.float64)
        if H.shape != (fock.dim, fock.dim):
            raise ConfigurationError(
                f"h_loc must have shape ({fock.dim}, {fock.dim}), got {tuple(H.shape)}"
            )
        if not torch.allclose(H, H.T, atol=atol):
            raise ConfigurationError("h_loc must be a real symmetric matrix")
        self.H = H

        if use_quantum_numbers:
            if not quantum_numbers:
                raise ConfigurationError("use_quantum_numbers is set but no quantum numbers were given")
            partition = self._partition_by_quantum_numbers(quantum_numbers)
        elif autopartition:
            partition = self._partition_by_connectivity()
        else:
            partition = [list(range(fock.dim))]

        spectra = diagonalize_sectors(H, partition)
        self.ground_state_energy = min(float(e.min()) for e, _ in spectra)
        self.sectors: List[Sector] = [
            Sector(index=i, states=states, energies=e - self.ground_state_energy, eigenvectors=v)
            for i, (states, (e, v)) in enumerate(zip(partition, spectra))
        ]

        self._state_sector = [0] * fock.dim
        for sector in self.sectors:
            for s in sector.states:
                self._state_sector[s] = sector.index

        # (dagger, flavor) -> per source sector: target index or -1, and block matrix
        self._targets: Dict[Tuple[bool, int], List[int]] = {}
        self._blocks: Dict[Tuple[bool, int], List[Optional[torch.Tensor]]] = {}
        for flavor in range(fock.n_flavors):
            for dagger in (False, True):
                self._connect(dagger, flavor)

    # ------------------------------------------------------------------ #
    # Partition
    # ------------------------------------------------------------------ #

    def _operators(self) -> List[torch.Tensor]:
        ops = []
        for f in range(self.fock.n_flavors):
            c = self.fock.annihilator(f)
            ops.extend([c, c.T])
        return ops

    def _close_partition(self, parent: List[int]) -> None:
        """Merge sectors until every operator maps a sector to one sector."""
        ops = [torch.nonzero(op.abs() > self.atol).tolist() for op in self._operators()]
        changed = True
        while changed:
            changed = False
            for nonzeros in ops:
                first_target: Dict[int, int] = {}
                for row, col in nonzeros:
                    source = _find_root(parent, col)
                    target = _find_root(parent, row)
                    if source not in first_target:
                        first_target[source] = target
                    elif _find_root(parent, first_target[source]) != target:
                        changed |= _union(parent, first_target[source], target)

    def _collect(self, parent: List[int]) -> List[List[int]]:
        groups: Dict[int, List[int]] = {}
        for s in range(self.fock.dim):
            groups.setdefault(_find_root(parent, s), []).append(s)
        return sorted(groups.values(), key=lambda states: states[0])

    def _partition_by_connectivity(self) -> List[List[int]]:
        parent = list(range(self.fock.dim))
        for i, j in torch.nonzero(self.H.abs() > self.atol).tolist():
            _union(parent, i, j)
        self._close_partition(parent)
        return self._collect(parent)

    def _partition_by_quantum_numbers(self, quantum_numbers: Sequence[torch.Tensor]) -> List[List[int]]:
        diagonals = []
        for q in quantum_numbers:
            Q = torch.as_tensor(q, dtype=torch.float64)
            if Q.shape != self.H.shape:
                raise ConfigurationError(f"Quantum number must have shape {tuple(self.H.shape)}")
            if not torch.allclose(Q, torch.diag(torch.diagonal(Q)), atol=self.atol):
                raise ConfigurationError("Quantum numbers must be diagonal in the Fock basis")
            if not torch.allclose(Q @ self.H, self.H @ Q, atol=1e-8):
                raise ConfigurationError("Quantum numbers must commute with h_loc")
            diagonals.append(torch.diagonal(Q))

        parent = list(range(self.fock.dim))
        first_state: Dict[Tuple[float, ...], int] = {}
        for s in range(self.fock.dim):
            key = tuple(round(float(d[s]), 8) for d in diagonals)
            if key in first_state:
                _union(parent, first_state[key], s)
            else:
                first_state[key] = s
        self._close_partition(parent)
        return self._collect(parent)

    def _connect(self, dagger: bool, flavor: int) -> None:
        c = self.fock.annihilator(flavor)
        op = c.T if dagger else c
        targets, blocks = [], []
        for sector in self.sectors:
            cols = torch.tensor(sector.states, dtype=torch.long)
            image = op[:, cols]
            rows = torch.nonzero(image.abs().sum(dim=1) > self.atol).flatten().tolist()
            if not rows:
                targets.append(-1)
                blocks.append(None)
                continue
            target = self.sectors[self._state_sector[rows[0]]]
            t_rows = torch.tensor(target.states, dtype=torch.long)
            block = target.eigenvectors.T @ op[t_rows][:, cols] @ sector.eigenvectors
            targets.append(target.index)
            blocks.append(block)
        self._targets[(dagger, flavor)] = targets
        self._blocks[(dagger, flavor)] = blocks

    # ------------------------------------------------------------------ #
    # Access
    # ------------------------------------------------------------------ #

    @property
    def n_sectors(self) -> int:
        return len(self.sectors)

    def target_sector(self, dagger: bool, flavor: int, sector: int) -> int:
        """Sector reached by applying the operator to `sector` (-1 if none)."""
        return self._targets[(dagger, flavor)][sector]

    def operator_block(self, dagger: bool, flavor: int, sector: int) -> Optional[torch.Tensor]:
        """Eigenbasis matrix of the operator from `sector` to its target sector."""
        return self._blocks[(dagger, flavor)][sector]

    def partition_function(self, beta: float) -> float:
        """Σ_n exp(-β (E_n - E0)), the trace of the vacuum diagram."""
        return sum(float(torch.exp(-beta * s.energies).sum()) for s in self.sectors)

    def free_energy(self, beta: float) -> float:
        """Atomic free energy -ln(Z_loc)/β, ground-state shift included."""
        return self.ground_state_energy - math.log(self.partition_function(beta)) / beta

    def __repr__(self) -> str:
        dims = [s.dim for s in self.sectors]
        return f"LocalHamiltonian(dim={self.fock.dim}, n_sectors={self.n_sectors}, sector_dims={dims})"
