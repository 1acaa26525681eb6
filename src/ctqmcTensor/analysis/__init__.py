"""Analysis module: plots of G(τ) and perturbation-order histograms."""

from ctqmcTensor.analysis.plotting import plot_g_tau, plot_perturbation_order
from ctqmcTensor.analysis.plotting_style import (
    DEFAULT_FIGURE_SIZES,
    DEFAULT_COLORS,
    DEFAULT_FONTSIZES,
    DEFAULT_STYLING,
    LINE_STYLES,
)

__all__ = [
    "plot_g_tau",
    "plot_perturbation_order",
    # Plotting style constants
    "DEFAULT_FIGURE_SIZES",
    "DEFAULT_COLORS",
    "DEFAULT_FONTSIZES",
    "DEFAULT_STYLING",
    "LINE_STYLES",
]
