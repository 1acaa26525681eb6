"""Plots of the CTQMC output: G(τ) and perturbation-order histograms."""

from typing import Dict, Optional
import torch

from ctqmcTensor.core.base import BaseTensor
from ctqmcTensor.analysis.plotting_style import (
    DEFAULT_COLORS,
    DEFAULT_FIGURE_SIZES,
    DEFAULT_FONTSIZES,
    DEFAULT_STYLING,
    LINE_STYLES,
)

try:
    import matplotlib.pyplot as plt
    import matplotlib.axes as maxes
    MATPLOTLIB_AVAILABLE = True
except ImportError:
    MATPLOTLIB_AVAILABLE = False


def plot_g_tau(
    G: BaseTensor,
    ax: Optional["maxes.Axes"] = None,
    reference: Optional[torch.Tensor] = None,
    title: str = r"$G(\tau)$",
    fontsize: int = DEFAULT_FONTSIZES['labels'],
    **kwargs,
) -> "maxes.Axes":
    """
    Plot the diagonal components G_aa(τ) of one block.

    Args:
        G: BaseTensor with labels=['tau', 'orb_i', 'orb_j'] and a τ mesh
        ax: Matplotlib axis (if None, creates new figure)
        reference: Optional exact G(τ) of shape (n_tau,) or (n_tau, n, n)
        title: Plot title
        fontsize: Font size for labels
        **kwargs: Additional arguments for plot()

    Returns:
        Matplotlib axis with the G(τ) plot
    """
    if not MATPLOTLIB_AVAILABLE:
        raise ImportError("matplotlib is required for plotting")
    if G.mesh is None:
        raise ValueError("G has no tau mesh")

    if ax is None:
        fig, ax = plt.subplots(figsize=DEFAULT_FIGURE_SIZES['single'])

    tau = G.mesh.cpu().numpy()
    n = G.shape[-1]
    names = G.orbital_names or [str(a) for a in range(n)]
    kwargs.setdefault('linewidth', DEFAULT_STYLING['linewidth'])
    for a in range(n):
        ax.plot(tau, G.tensor[:, a, a].cpu().numpy(), label=f"$G_{{{names[a]}{names[a]}}}$", **kwargs)

    if reference is not None:
        ref = reference if reference.dim() == 1 else torch.diagonal(reference, dim1=-2, dim2=-1)
        ref = ref.reshape(ref.shape[0], -1)
        for a in range(ref.shape[1]):
            ax.plot(
                tau, ref[:, a].cpu().numpy(),
                color=DEFAULT_COLORS['reference'],
                linestyle=LINE_STYLES['dashed'],
                linewidth=DEFAULT_STYLING['reference_linewidth'],
                label="exact" if a == 0 else None,
            )

    ax.set_xlabel(r"$\tau$", fontsize=fontsize)
    ax.set_ylabel(r"$G(\tau)$", fontsize=fontsize)
    ax.set_title(title, fontsize=DEFAULT_FONTSIZES['titles'])
    ax.set_xlim(tau[0], tau[-1])
    ax.grid(True, alpha=DEFAULT_STYLING['grid_alpha'])
    ax.legend(fontsize=DEFAULT_FONTSIZES['legend'])
    return ax


def plot_perturbation_order(
    histograms: Dict[str, torch.Tensor],
    ax: Optional["maxes.Axes"] = None,
    title: str = "Perturbation order",
    fontsize: int = DEFAULT_FONTSIZES['labels'],
) -> "maxes.Axes":
    """
    Plot normalized perturbation-order histograms, one bar series per block.

    Args:
        histograms: Block name -> histogram tensor (bin k = order k)
        ax: Matplotlib axis (if None, creates new figure)
        title: Plot title
        fontsize: Font size for labels

    Returns:
        Matplotlib axis with the histogram plot
    """
    if not MATPLOTLIB_AVAILABLE:
        raise ImportError("matplotlib is required for plotting")
    if not histograms:
        raise ValueError("No histograms to plot")

    if ax is None:
        fig, ax = plt.subplots(figsize=DEFAULT_FIGURE_SIZES['single'])

    width = 0.8 / len(histograms)
    for i, (name, hist) in enumerate(histograms.items()):
        orders = torch.arange(hist.shape[0], dtype=torch.float64) + i * width
        ax.bar(orders.numpy(), hist.cpu().numpy(), width=width,
               alpha=DEFAULT_STYLING['bar_alpha'], label=name)

    ax.set_xlabel("order $k$", fontsize=fontsize)
    ax.set_ylabel("$P(k)$", fontsize=fontsize)
    ax.set_title(title, fontsize=DEFAULT_FONTSIZES['titles'])
    ax.grid(True, alpha=DEFAULT_STYLING['grid_alpha'])
    ax.legend(fontsize=DEFAULT_FONTSIZES['legend'])
    return ax
