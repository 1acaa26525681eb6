"""Standardized plotting style constants for ctqmcTensor.

All constants can be overridden via **kwargs in the plotting functions.

Example:
    >>> from ctqmcTensor.analysis.plotting_style import DEFAULT_COLORS
    >>> fig, ax = plt.subplots(figsize=DEFAULT_FIGURE_SIZES['single'])
    >>> ax.plot(tau, g, color=DEFAULT_COLORS['primary'])
"""

# Figure sizes for different plot types
DEFAULT_FIGURE_SIZES = {
    'single': (6, 5),
    'dual': (12, 5),
    'blocks': (5, 4),
}

# Color scheme for plots
DEFAULT_COLORS = {
    'primary': '#3498db',
    'reference': '#e74c3c',
    'secondary': '#2ecc71',
    'histogram': 'skyblue',
}

# Font sizes for different text elements
DEFAULT_FONTSIZES = {
    'labels': 12,
    'titles': 12,
    'legend': 10,
}

# Styling options for plot elements
DEFAULT_STYLING = {
    'grid_alpha': 0.3,
    'linewidth': 1.5,
    'reference_linewidth': 1.0,
    'bar_alpha': 0.8,
    'dpi': 150,
}

# Line styles for reference lines
LINE_STYLES = {
    'solid': '-',
    'dashed': '--',
}
