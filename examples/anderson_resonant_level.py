#!/usr/bin/env python3
"""
CT-HYB - Resonant Level Example

Solves a non-interacting impurity level coupled to a single bath level and
compares the measured G(τ) with the exact solution.

    H = ε_d n_d + ε_b n_b + V (d† b + b† d),   ε_d = ε_b = 0, V = 1

Exact:
    G(τ) = -½ [e^{-τ}/(1 + e^{-β}) + e^{τ}/(1 + e^{β})]

Output:
- resonant_level.png: G(τ) with the exact curve, perturbation-order histogram
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

import math
import torch
import matplotlib.pyplot as plt

from ctqmcTensor.manybody import CTHYBSolver, HybridizationFunction
from ctqmcTensor.analysis import plot_g_tau, plot_perturbation_order, DEFAULT_FIGURE_SIZES, DEFAULT_STYLING

# =============================================================================
# Parameters
# =============================================================================

BETA = 2.0
GF_STRUCT = {"up": [0]}
N_IW = 50
N_TAU = 201


def exact_g_tau(tau: torch.Tensor, beta: float) -> torch.Tensor:
    """G(τ) of the d level hybridized with one bath level at ε = 0."""
    return -0.5 * (torch.exp(-tau) / (1.0 + math.exp(-beta)) + torch.exp(tau) / (1.0 + math.exp(beta)))


def main() -> None:
    print("=" * 70)
    print("CT-HYB: resonant level")
    print("=" * 70)

    delta = HybridizationFunction.from_bath_levels(
        BETA, GF_STRUCT, {"up": [(0.0, [1.0])]}, n_tau=1001
    )
    solver = CTHYBSolver(BETA, GF_STRUCT, n_iw=N_IW, n_tau=N_TAU)
    H = torch.zeros((2, 2), dtype=torch.float64)

    G = solver.solve(
        H,
        delta_tau=delta,
        n_cycles=20000,
        length_cycle=20,
        n_warmup_cycles=1000,
        measure_pert_order=True,
        verbosity=2,
    )

    G_up = G["up"]
    exact = exact_g_tau(G_up.mesh, BETA)
    mid = N_TAU // 2
    print(f"\nG(β/2): CTQMC = {float(G_up.tensor[mid, 0, 0]):.4f}, exact = {float(exact[mid]):.4f}")
    print(f"Average sign: {solver.average_sign:.4f}")

    output_dir = Path(__file__).parent
    fig, axes = plt.subplots(1, 2, figsize=DEFAULT_FIGURE_SIZES['dual'])
    plot_g_tau(G_up, ax=axes[0], reference=exact)
    plot_perturbation_order(solver.perturbation_order, ax=axes[1])
    plt.tight_layout()
    fig.savefig(output_dir / "resonant_level.png", dpi=DEFAULT_STYLING['dpi'])
    print(f"Saved: {output_dir / 'resonant_level.png'}")


if __name__ == "__main__":
    main()
