"""Measurements of the hybridization expansion.

Measurements are called once per completed cycle with the current Monte
Carlo sign. They only read the configuration and only write their own
accumulators. Accumulators are raw sign-weighted sums: normalization
happens once, after all workers have been reduced, in the `finalize`
functions of this module.

Green's function estimator (removal of one hybridization line):

    G_ab(τ) = -(1/β) ⟨ Σ_ij M_ij δ⁻(τ, τ_i - τ'_j) ⟩,   a = a_i, b = a'_j

where M = D^{-1} and δ⁻ maps negative time differences to τ + β with a
minus sign (fermionic antiperiodicity).
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Dict, List, Optional, Union
import torch

from ctqmcTensor.core.base import BaseTensor
from ctqmcTensor.montecarlo.weight import WeightEvaluator


class MeasurementABC(ABC):
    """Interface of a Monte Carlo measurement."""

    @abstractmethod
    def accumulate(self, sign: float) -> None:
        """Sample the current configuration with Monte Carlo sign `sign`."""
        raise NotImplementedError("Measurements must implement accumulate()")

    @abstractmethod
    def collect_results(self) -> Dict[str, torch.Tensor]:
        """Raw accumulators of this worker, to be summed across workers.

        Every measurement reports at least 'z' (sum of signs) and
        'n_measures' (number of calls).
        """
        raise NotImplementedError("Measurements must implement collect_results()")


class MeasureGTau(MeasurementABC):
    """Accumulate G(τ) of one block on a histogram with n_tau points.

    The histogram uses half bins: point k collects time differences in
    [(k - 1/2)Δτ, (k + 1/2)Δτ), the first and last bins are half as wide.
    """

    def __init__(self, block: int, n_tau: int, data: WeightEvaluator) -> None:
        self.block = block
        self.n_tau = n_tau
        self.data = data
        self.beta = data.beta
        self._dtau = data.beta / (n_tau - 1)
        n = data.delta.block_size(block)
        self.acc = torch.zeros((n_tau, n, n), dtype=torch.float64)
        self.z = 0.0
        self.n_measures = 0

    def accumulate(self, sign: float) -> None:
        self.z += sign
        self.n_measures += 1

        det = self.data.dets[self.block]
        if det.size == 0:
            return
        row_tau, row_inner = det.row_data()
        col_tau, col_inner = det.col_data()

        # s[i, j] = τ_i (c) - τ'_j (c†), matching minv[i, j]
        s = col_tau[:, None] - row_tau[None, :]
        wrapped = s < 0
        s = torch.where(wrapped, s + self.beta, s)
        values = torch.where(wrapped, -det.minv, det.minv) * sign

        index = torch.round(s / self._dtau).long().clamp(0, self.n_tau - 1)
        a = col_inner[:, None].expand_as(index)
        b = row_inner[None, :].expand_as(index)
        self.acc.index_put_(
            (index.flatten(), a.flatten(), b.flatten()),
            values.flatten(),
            accumulate=True,
        )

    def collect_results(self) -> Dict[str, torch.Tensor]:
        return {
            "g_tau": self.acc.clone(),
            "z": torch.tensor(self.z, dtype=torch.float64),
            "n_measures": torch.tensor(self.n_measures, dtype=torch.float64),
        }


def finalize_g_tau(
    accumulators: Dict[str, torch.Tensor],
    beta: float,
    orbital_names: Optional[List[str]] = None,
) -> BaseTensor:
    """G(τ) from reduced accumulators: G = -acc / (β · bin width · z).

    An empty accumulator (z = 0) gives G = 0.
    """
    acc = accumulators["g_tau"]
    z = float(accumulators["z"])
    n_tau = acc.shape[0]
    dtau = beta / (n_tau - 1)

    width = torch.full((n_tau,), dtau, dtype=torch.float64)
    width[0] = width[-1] = dtau / 2

    G = BaseTensor.imaginary_time(beta, n_tau, acc.shape[-1], orbital_names=orbital_names)
    if z != 0.0:
        G.tensor = -acc / (beta * z * width[:, None, None])
    return G


class MeasurePerturbationHistogram(MeasurementABC):
    """Histogram of the number of (c, c†) pairs in one block."""

    def __init__(self, block: int, data: WeightEvaluator) -> None:
        self.block = block
        self.data = data
        self.hist = torch.zeros(1, dtype=torch.float64)
        self.z = 0.0
        self.n_measures = 0

    def accumulate(self, sign: float) -> None:
        self.z += sign
        self.n_measures += 1
        k = self.data.config.perturbation_order(self.block)
        if k >= self.hist.shape[0]:
            grown = torch.zeros(max(k + 1, 2 * self.hist.shape[0]), dtype=torch.float64)
            grown[: self.hist.shape[0]] = self.hist
            self.hist = grown
        self.hist[k] += sign

    def collect_results(self) -> Dict[str, torch.Tensor]:
        # Trailing empty bins are dropped; the aggregator pads to a common length
        nonzero = torch.nonzero(self.hist).flatten()
        length = int(nonzero.max()) + 1 if nonzero.numel() else 1
        return {
            "histogram": self.hist[:length].clone(),
            "z": torch.tensor(self.z, dtype=torch.float64),
            "n_measures": torch.tensor(self.n_measures, dtype=torch.float64),
        }


def finalize_perturbation_order(accumulators: Dict[str, torch.Tensor]) -> torch.Tensor:
    """Normalized perturbation-order histogram (sums to one)."""
    z = float(accumulators["z"])
    hist = accumulators["histogram"]
    if z == 0.0:
        return torch.zeros_like(hist)
    return hist / z


def save_histogram(histogram: torch.Tensor, path: Union[str, Path]) -> Path:
    """Write a histogram as a two-column table 'order value'.

    Returns:
        The path written to
    """
    path = Path(path)
    lines = [f"{k} {float(v):.16e}" for k, v in enumerate(histogram)]
    path.write_text("\n".join(lines) + "\n")
    return path
