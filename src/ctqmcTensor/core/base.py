"""BaseTensor and BlockGf: labeled tensors for imaginary-time quantities."""

from typing import Optional, List, Dict, Iterator, Tuple
import torch


class BaseTensor:
    """
    Labeled tensor for Green's functions, hybridization functions and
    accumulators.

    Every dimension carries a semantic label (e.g. ['tau', 'orb_i', 'orb_j']).
    Imaginary-time objects also carry their mesh, the 1D tensor of τ points
    along the 'tau' axis.

    Attributes:
        tensor: Underlying PyTorch tensor data
        labels: Semantic labels for each dimension
        orbital_names: Names of the inner (orbital) indices of the block
        mesh: Points along the 'tau' axis, shape (n_tau,), or None
    """

    def __init__(
        self,
        tensor: torch.Tensor,
        labels: List[str],
        orbital_names: Optional[List[str]] = None,
        mesh: Optional[torch.Tensor] = None,
    ) -> None:
        """
        Initialize BaseTensor.

        Args:
            tensor: Underlying tensor data
            labels: Semantic labels for each dimension
            orbital_names: Names of the orbital indices (e.g., ['0', '1'])
            mesh: Points of the 'tau' axis; its length must match that axis
        """
        if len(labels) != tensor.ndim:
            raise ValueError(
                f"Number of labels ({len(labels)}) must match tensor.ndim ({tensor.ndim})"
            )
        if mesh is not None:
            if "tau" not in labels:
                raise ValueError("A mesh was given but 'tau' is not in labels")
            if mesh.shape[0] != tensor.shape[labels.index("tau")]:
                raise ValueError(
                    f"Mesh length ({mesh.shape[0]}) must match the 'tau' axis "
                    f"({tensor.shape[labels.index('tau')]})"
                )

        self.tensor = tensor
        self.labels = labels
        self.orbital_names = orbital_names
        self.mesh = mesh

    @classmethod
    def imaginary_time(
        cls,
        beta: float,
        n_tau: int,
        n_orb: int,
        orbital_names: Optional[List[str]] = None,
    ) -> "BaseTensor":
        """Zero-filled τ-object on the uniform mesh τ_k = kβ/(n_tau-1).

        Args:
            beta: Inverse temperature
            n_tau: Number of mesh points, both ends of [0, β] included
            n_orb: Block size
            orbital_names: Names of the inner indices

        Returns:
            BaseTensor with labels=['tau', 'orb_i', 'orb_j'], shape (n_tau, n_orb, n_orb)
        """
        mesh = torch.linspace(0.0, beta, n_tau, dtype=torch.float64)
        return cls(
            tensor=torch.zeros((n_tau, n_orb, n_orb), dtype=torch.float64),
            labels=["tau", "orb_i", "orb_j"],
            orbital_names=orbital_names,
            mesh=mesh,
        )

    def axis(self, label: str) -> int:
        """Index of the dimension carrying `label`."""
        if label not in self.labels:
            raise ValueError(f"'{label}' not in labels {self.labels}")
        return self.labels.index(label)

    def copy(self) -> "BaseTensor":
        """Deep copy (tensor and mesh are cloned)."""
        return BaseTensor(
            tensor=self.tensor.clone(),
            labels=list(self.labels),
            orbital_names=list(self.orbital_names) if self.orbital_names is not None else None,
            mesh=self.mesh.clone() if self.mesh is not None else None,
        )

    @property
    def shape(self) -> torch.Size:
        """Return tensor shape."""
        return self.tensor.shape

    @property
    def ndim(self) -> int:
        """Return number of dimensions."""
        return self.tensor.ndim

    @property
    def dtype(self) -> torch.dtype:
        """Return tensor dtype."""
        return self.tensor.dtype

    def __repr__(self) -> str:
        return f"BaseTensor(shape={self.shape}, labels={self.labels}, dtype={self.dtype})"


class BlockGf:
    """Ordered collection of BaseTensor blocks indexed by block name.

    Blocks can be looked up by name or by position, mirroring the block
    structure of `gf_struct`:

        >>> G = BlockGf({"up": g_up, "down": g_dn})
        >>> G["up"] is G[0]
        True
    """

    def __init__(self, blocks: Dict[str, BaseTensor]) -> None:
        self._names: List[str] = list(blocks.keys())
        self._blocks: List[BaseTensor] = [blocks[name] for name in self._names]

    @property
    def names(self) -> List[str]:
        """Block names in order."""
        return list(self._names)

    def __getitem__(self, key) -> BaseTensor:
        if isinstance(key, int):
            return self._blocks[key]
        try:
            return self._blocks[self._names.index(key)]
        except ValueError:
            raise KeyError(f"No block named '{key}' (blocks: {self._names})") from None

    def __setitem__(self, key, value: BaseTensor) -> None:
        index = key if isinstance(key, int) else self._names.index(key)
        if value.shape != self._blocks[index].shape:
            raise ValueError(
                f"Block shape mismatch: expected {tuple(self._blocks[index].shape)}, "
                f"got {tuple(value.shape)}"
            )
        self._blocks[index] = value

    def __len__(self) -> int:
        return len(self._blocks)

    def __iter__(self) -> Iterator[BaseTensor]:
        return iter(self._blocks)

    def items(self) -> Iterator[Tuple[str, BaseTensor]]:
        return zip(self._names, self._blocks)

    def __repr__(self) -> str:
        inner = ", ".join(f"{n}: {tuple(b.shape)}" for n, b in self.items())
        return f"BlockGf({inner})"
