"""Exploratory QC visualizations for a genes × samples count matrix."""

from typing import Dict, Optional
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px
from plotly.subplots import make_subplots
from scipy.stats import gaussian_kde


def create_library_size_barplot(counts: pd.DataFrame) -> go.Figure:
    """
    Bar plot of total counts (library size) per sample, sorted descending.

    Args:
        counts: genes × samples DataFrame of raw counts

    Returns:
        Plotly Figure object
    """
    lib_sizes = counts.sum(axis=0).sort_values(ascending=False)
    mean_size = lib_sizes.mean()

    fig = go.Figure()
    fig.add_trace(
        go.Bar(
            x=lib_sizes.index.astype(str).tolist(),
            y=lib_sizes.values,
            marker_color="steelblue",
            name="Library Size",
        )
    )
    fig.add_hline(
        y=mean_size,
        line_dash="dash",
        line_color="red",
        annotation_text=f"Mean: {mean_size:,.0f}",
        annotation_position="top right",
    )
    fig.update_layout(
        title="Library Size per Sample",
        xaxis_title="Sample",
        yaxis_title="Total Counts",
        showlegend=False,
    )
    return fig


def create_count_distribution_boxplot(
    counts: pd.DataFrame, log_transform: bool = True
) -> go.Figure:
    """Box plot of count distribution per sample, log2(x+1) by default."""
    data = np.log2(counts + 1) if log_transform else counts

    fig = go.Figure()
    for sample in data.columns:
        fig.add_trace(go.Box(y=data[sample].values, name=str(sample), showlegend=False))

    fig.update_layout(
        title="Count Distribution per Sample",
        xaxis_title="Sample",
        yaxis_title="log₂(count + 1)" if log_transform else "Count",
    )
    return fig


def create_gene_detection_plot(counts: pd.DataFrame, threshold: int = 0) -> go.Figure:
    """Bar plot of genes with count > threshold per sample."""
    detected = (counts > threshold).sum(axis=0).sort_values(ascending=False)

    fig = go.Figure()
    fig.add_trace(
        go.Bar(
            x=detected.index.astype(str).tolist(),
            y=detected.values,
            marker_color="darkorange",
            name="Detected Genes",
        )
    )
    fig.update_layout(
        title=f"Genes Detected per Sample (count > {threshold})",
        xaxis_title="Sample",
        yaxis_title="Number of Genes",
        showlegend=False,
    )
    return fig


def create_sample_similarity_heatmap(
    log_cpm: pd.DataFrame, method: str = "spearman"
) -> go.Figure:
    """
    Pairwise sample correlation heatmap.

    Args:
        log_cpm: genes × samples expression matrix
        method: Correlation method ('spearman' or 'pearson')
    """
    corr_matrix = log_cpm.corr(method=method)
    text_vals = [[f"{v:.3f}" for v in row] for row in corr_matrix.values]

    fig = go.Figure(
        data=go.Heatmap(
            z=corr_matrix.values,
            x=corr_matrix.columns.astype(str).tolist(),
            y=corr_matrix.index.astype(str).tolist(),
            colorscale="Viridis",
            text=text_vals,
            texttemplate="%{text}",
            hovertemplate="Sample X: %{x}<br>Sample Y: %{y}<br>Correlation: %{z:.3f}<extra></extra>",
        )
    )
    fig.update_layout(
        title=f"Sample Similarity ({method.capitalize()} Correlation)",
        width=650,
        height=600,
    )
    return fig


def _density(values: np.ndarray, grid: np.ndarray) -> np.ndarray:
    values = values[np.isfinite(values)]
    if len(values) < 2 or np.ptp(values) == 0:
        return np.zeros_like(grid)
    return gaussian_kde(values)(grid)


def create_log_cpm_density_plot(
    before: pd.DataFrame, after: pd.DataFrame, cutoff: Optional[float] = None
) -> go.Figure:
    """
    Per-sample density of log-CPM values before and after low-count filtering.

    Args:
        before: genes × samples log-CPM of all genes
        after: genes × samples log-CPM of retained genes
        cutoff: log-CPM value of the filtering threshold, drawn as a line
    """
    if before is None or before.empty or after is None or after.empty:
        raise ValueError(
            "Cannot create log-CPM density plot: both the unfiltered and the filtered "
            "matrices must be non-empty. If no gene passed filtering, relax min_cpm."
        )

    lo = float(np.nanmin(before.values))
    hi = float(np.nanmax(before.values))
    grid = np.linspace(lo, hi, 256)
    colors = px.colors.qualitative.Plotly

    fig = make_subplots(
        rows=1, cols=2, shared_yaxes=True,
        subplot_titles=[f"All genes ({len(before):,})", f"Filtered ({len(after):,})"],
    )
    for col, data in enumerate([before, after], start=1):
        for i, sample in enumerate(data.columns):
            fig.add_trace(
                go.Scatter(
                    x=grid, y=_density(data[sample].values, grid), mode="lines",
                    line=dict(color=colors[i % len(colors)], width=1),
                    name=str(sample), legendgroup=str(sample), showlegend=col == 1,
                ),
                row=1, col=col,
            )
        if cutoff is not None:
            fig.add_vline(x=cutoff, line_dash="dash", line_color="gray", row=1, col=col)

    fig.update_xaxes(title_text="log-CPM")
    fig.update_yaxes(title_text="Density", row=1, col=1)
    fig.update_layout(title="Effect of low-count filtering", height=450)
    return fig


def create_normalization_comparison_plot(
    raw_log_cpm: pd.DataFrame,
    normalized_log_cpm: pd.DataFrame,
    sample_groups: Dict[str, str],
) -> go.Figure:
    """
    Side-by-side box plots of log-CPM before and after scaling normalization.

    Args:
        raw_log_cpm: genes × samples log-CPM using raw library sizes
        normalized_log_cpm: genes × samples log-CPM using effective library sizes
        sample_groups: Dict mapping sample → group label used for colour
    """
    fig = make_subplots(
        rows=1, cols=2,
        subplot_titles=["Unnormalized", "Normalized"],
        shared_yaxes=True,
    )

    colors = px.colors.qualitative.Set2
    groups = sorted(set(sample_groups.values()))
    group_color = {g: colors[i % len(colors)] for i, g in enumerate(groups)}
    shown = set()

    for col, data in enumerate([raw_log_cpm, normalized_log_cpm], start=1):
        for sample in data.columns:
            group = sample_groups.get(sample, "Unknown")
            fig.add_trace(
                go.Box(
                    y=data[sample].values,
                    name=str(sample),
                    marker_color=group_color.get(group, "gray"),
                    legendgroup=group,
                    legendgrouptitle_text=group,
                    showlegend=group not in shown,
                    boxpoints=False,
                ),
                row=1, col=col,
            )
            shown.add(group)

    fig.update_yaxes(title_text="log-CPM", row=1, col=1)
    fig.update_layout(title="Normalization Comparison", height=500)
    return fig
