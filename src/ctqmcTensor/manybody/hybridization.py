"""Block-structured hybridization function Δ(τ).

Δ(τ) is stored on the uniform mesh τ_k = kβ/(n_tau - 1), k = 0..n_tau-1,
one BaseTensor per block with labels ['tau', 'orb_i', 'orb_j']. Values in
between mesh points are linearly interpolated. Arguments in (-β, 0) are
mapped back with the fermionic antiperiodicity

    Δ(τ - β) = -Δ(τ)

The discontinuity at τ = 0/β must already be present in the data; building
Δ(τ) from G₀(iωₙ) is the job of the preprocessing step, not of this class.

For a discrete bath with levels ε_p and couplings V_pa:

    Δ_ab(τ) = -Σ_p V_pa V_pb e^{-ε_p τ} / (1 + e^{-β ε_p}),   0 < τ < β
"""

from typing import Dict, List, Optional, Sequence, Tuple, Union
import torch

from ctqmcTensor.core.base import BaseTensor, BlockGf
from ctqmcTensor.core.errors import ConfigurationError


class HybridizationFunction:
    """Immutable Δ(τ) used by the weight evaluation.

    Attributes:
        beta: Inverse temperature
        n_tau: Number of mesh points on [0, β]
        blocks: BlockGf of the Δ(τ) blocks
    """

    def __init__(
        self,
        beta: float,
        gf_struct: Dict[str, Sequence],
        delta_tau: Union[BlockGf, Dict[str, torch.Tensor]],
    ) -> None:
        """Initialize from per-block data.

        Args:
            beta: Inverse temperature
            gf_struct: Ordered mapping block name -> inner indices
            delta_tau: Δ(τ) per block, as a BlockGf or a dict of tensors of
                shape (n_tau, n, n)

        Raises:
            ConfigurationError: If blocks are missing or have the wrong shape
        """
        if beta <= 0:
            raise ConfigurationError(f"beta must be positive, got {beta}")
        self.beta = float(beta)

        tensors: List[torch.Tensor] = []
        n_tau: Optional[int] = None
        for name, indices in gf_struct.items():
            try:
                block = delta_tau[name]
            except KeyError:
                raise ConfigurationError(f"Delta_tau has no block '{name}'") from None
            data = block.tensor if isinstance(block, BaseTensor) else torch.as_tensor(block)
            data = data.to(torch.float64)
            n = len(indices)
            if data.ndim != 3 or data.shape[1:] != (n, n):
                raise ConfigurationError(
                    f"Delta_tau block '{name}' must have shape (n_tau, {n}, {n}), "
                    f"got {tuple(data.shape)}"
                )
            if n_tau is None:
                n_tau = data.shape[0]
            elif data.shape[0] != n_tau:
                raise ConfigurationError("All Delta_tau blocks must share the same tau mesh")
            tensors.append(data.clone())

        if n_tau is None or n_tau < 2:
            raise ConfigurationError("Delta_tau needs at least 2 tau points")

        self.n_tau = n_tau
        self._dtau = self.beta / (n_tau - 1)
        self._data = tensors
        mesh = torch.linspace(0.0, self.beta, n_tau, dtype=torch.float64)
        self.blocks = BlockGf({
            name: BaseTensor(
                tensor=data,
                labels=["tau", "orb_i", "orb_j"],
                orbital_names=[str(i) for i in indices],
                mesh=mesh,
            )
            for (name, indices), data in zip(gf_struct.items(), tensors)
        })

    @classmethod
    def zeros(cls, beta: float, gf_struct: Dict[str, Sequence], n_tau: int) -> "HybridizationFunction":
        """Δ(τ) = 0: the impurity is decoupled from the bath."""
        data = {
            name: torch.zeros((n_tau, len(idx), len(idx)), dtype=torch.float64)
            for name, idx in gf_struct.items()
        }
        return cls(beta, gf_struct, data)

    @classmethod
    def from_bath_levels(
        cls,
        beta: float,
        gf_struct: Dict[str, Sequence],
        bath: Dict[str, Sequence[Tuple[float, Sequence[float]]]],
        n_tau: int,
    ) -> "HybridizationFunction":
        """Closed-form Δ(τ) of a discrete bath.

        Args:
            beta: Inverse temperature
            gf_struct: Ordered mapping block name -> inner indices
            bath: Per block, a list of (ε_p, [V_p0, V_p1, ...]) with one
                coupling per inner index of the block
            n_tau: Number of mesh points

        Returns:
            HybridizationFunction with Δ_ab(τ) = -Σ_p V_pa V_pb f_p(τ)

        Example:
            >>> delta = HybridizationFunction.from_bath_levels(
            ...     beta=10.0, gf_struct={"up": [0]},
            ...     bath={"up": [(-1.0, [0.5]), (1.0, [0.5])]}, n_tau=201)
        """
        tau = torch.linspace(0.0, beta, n_tau, dtype=torch.float64)
        data = {}
        for name, indices in gf_struct.items():
            n = len(indices)
            block = torch.zeros((n_tau, n, n), dtype=torch.float64)
            for eps, couplings in bath.get(name, []):
                V = torch.as_tensor(couplings, dtype=torch.float64)
                if V.shape != (n,):
                    raise ConfigurationError(
                        f"Bath level of block '{name}' needs {n} couplings, got {tuple(V.shape)}"
                    )
                # e^{-ετ}/(1+e^{-βε}) written without overflow for either sign of ε
                if eps >= 0:
                    f = torch.exp(-eps * tau) / (1.0 + torch.exp(torch.tensor(-beta * eps)))
                else:
                    f = torch.exp(eps * (beta - tau)) / (1.0 + torch.exp(torch.tensor(beta * eps)))
                block -= f[:, None, None] * torch.outer(V, V)[None, :, :]
            data[name] = block
        return cls(beta, gf_struct, data)

    @property
    def n_blocks(self) -> int:
        return len(self._data)

    def block_size(self, block: int) -> int:
        return self._data[block].shape[-1]

    def evaluate(
        self,
        block: int,
        a: torch.Tensor,
        b: torch.Tensor,
        tau: torch.Tensor,
    ) -> torch.Tensor:
        """Vectorized Δ_ab(τ) for τ in (-β, β).

        Args:
            block: Block position
            a, b: Inner indices (long tensors broadcastable with tau)
            tau: Imaginary-time differences

        Returns:
            Tensor of Δ values, antiperiodically extended to negative τ
        """
        tau = torch.as_tensor(tau, dtype=torch.float64)
        negative = tau < 0
        t = torch.where(negative, tau + self.beta, tau)
        x = t / self._dtau
        i0 = torch.floor(x).long().clamp(0, self.n_tau - 2)
        w = x - i0.to(torch.float64)
        data = self._data[block]
        value = (1.0 - w) * data[i0, a, b] + w * data[i0 + 1, a, b]
        return torch.where(negative, -value, value)

    def __call__(self, block: int, a: int, b: int, tau: float) -> float:
        """Scalar Δ_ab(τ)."""
        value = self.evaluate(
            block,
            torch.tensor(a, dtype=torch.long),
            torch.tensor(b, dtype=torch.long),
            torch.tensor(tau, dtype=torch.float64),
        )
        return float(value)

    def __repr__(self) -> str:
        return f"HybridizationFunction(beta={self.beta}, n_tau={self.n_tau}, blocks={self.blocks.names})"
