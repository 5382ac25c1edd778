"""
Interactive figures comparing differential expression methods, using Plotly.

Provides p-value histograms, pairwise p-value scatter plots, correlation
heatmaps, overlap diagrams, volcano plots and the model diagnostics of the
count-based methods (voom mean-variance trend, BCV plot).
"""

from itertools import combinations
from typing import Dict, List, Optional
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px
from plotly.subplots import make_subplots
from sklearn.decomposition import PCA
from de_analysis import ensure_gene_column
from method_comparison import pvalue_matrix, neg_log10
from voom import VoomResult
from negative_binomial import DispersionEstimate


METHOD_COLORS = {
    "lm": "#636EFA",
    "limma_trend": "#EF553B",
    "voom_limma": "#00CC96",
    "edger_lrt": "#AB63FA",
    "edger_ql": "#FFA15A",
    "deseq2": "#19D3F3",
}


def _method_color(method: str, i: int) -> str:
    return METHOD_COLORS.get(method, px.colors.qualitative.Plotly[i % len(px.colors.qualitative.Plotly)])


def create_pvalue_histograms(comparison: pd.DataFrame, factor: str, bins: int = 40) -> go.Figure:
    """
    One p-value histogram per method for one factor.

    A well-calibrated test gives a flat histogram with a spike near zero; a
    hump toward 1 suggests a conservative test.
    """
    if comparison is None or comparison.empty:
        raise ValueError(
            "Cannot create p-value histograms: the comparison table is empty. "
            "Run the differential expression methods first."
        )
    pvals = pvalue_matrix(comparison, factor)
    methods = pvals.columns.tolist()

    cols = min(3, len(methods))
    rows = int(np.ceil(len(methods) / cols))
    fig = make_subplots(rows=rows, cols=cols, subplot_titles=methods)

    for i, method in enumerate(methods):
        fig.add_trace(
            go.Histogram(
                x=pvals[method].dropna(),
                xbins=dict(start=0, end=1, size=1 / bins),
                marker_color=_method_color(method, i),
                name=method,
                showlegend=False,
            ),
            row=i // cols + 1, col=i % cols + 1,
        )

    fig.update_xaxes(range=[0, 1], title_text="p-value")
    fig.update_layout(title=f"P-value distributions: {factor}", height=300 * rows, bargap=0.02)
    return fig


def create_pvalue_scatter_matrix(comparison: pd.DataFrame, factor: str) -> go.Figure:
    """Pairwise scatter of -log10 p-values between methods for one factor."""
    if comparison is None or comparison.empty:
        raise ValueError("Cannot create p-value scatter matrix: the comparison table is empty.")
    logp = neg_log10(pvalue_matrix(comparison, factor)).dropna()
    if logp.shape[1] < 2:
        raise ValueError(
            f"Cannot create p-value scatter matrix: need at least 2 methods for '{factor}', "
            f"got {logp.shape[1]}."
        )

    fig = go.Figure(
        go.Splom(
            dimensions=[dict(label=m, values=logp[m]) for m in logp.columns],
            text=logp.index,
            marker=dict(size=3, color="steelblue", opacity=0.5),
            diagonal_visible=False,
            showupperhalf=False,
            hovertemplate="<b>%{text}</b><extra></extra>",
        )
    )
    fig.update_layout(
        title=f"-log10 p-values across methods: {factor}",
        height=180 * logp.shape[1] + 100,
        width=180 * logp.shape[1] + 150,
    )
    return fig


def create_pvalue_correlation_heatmap(corr: pd.DataFrame, title: str = "Method agreement") -> go.Figure:
    """Heatmap of a method × method correlation matrix."""
    if corr is None or corr.empty:
        raise ValueError("Cannot create correlation heatmap: correlation matrix is empty.")

    fig = go.Figure(
        go.Heatmap(
            z=corr.values,
            x=corr.columns.tolist(),
            y=corr.index.tolist(),
            zmin=-1, zmax=1,
            colorscale="RdBu_r",
            text=np.round(corr.values, 2),
            texttemplate="%{text}",
            colorbar=dict(title="rho"),
        )
    )
    fig.update_layout(title=title, yaxis=dict(autorange="reversed"), height=450, width=550)
    return fig


def create_hits_barplot(summary: pd.DataFrame, padj_threshold: float = 0.05) -> go.Figure:
    """Grouped bars of significant gene counts, methods × factors."""
    if summary is None or summary.empty:
        raise ValueError("Cannot create hits barplot: the hit summary is empty.")

    fig = go.Figure()
    for i, method in enumerate(summary.index):
        fig.add_trace(
            go.Bar(
                x=summary.columns.tolist(),
                y=summary.loc[method].values,
                name=method,
                marker_color=_method_color(method, i),
                text=summary.loc[method].values,
                textposition="outside",
            )
        )
    fig.update_layout(
        title=f"Significant genes (padj < {padj_threshold})",
        barmode="group",
        xaxis_title="Factor",
        yaxis_title="Genes",
    )
    return fig


def create_volcano_plot(
    results_df: pd.DataFrame, lfc_threshold: float = 1.0, padj_threshold: float = 0.05,
    top_n_labels: int = 10, title: str = "Volcano Plot",
) -> go.Figure:
    """
    Create interactive volcano plot from DE results.

    Args:
        results_df: DataFrame with columns: gene, log2FoldChange, pvalue, padj
        lfc_threshold: Log2 fold change threshold for significance (default: 1.0)
        padj_threshold: Adjusted p-value threshold (default: 0.05)

    Returns:
        Plotly Figure object
    """
    if results_df is None or results_df.empty:
        raise ValueError(
            "Cannot create volcano plot: results_df is empty or None. "
            "Check the method's warnings; its model fit may have failed."
        )

    results_df = ensure_gene_column(results_df)

    required_cols = ["gene", "log2FoldChange", "pvalue", "padj"]
    missing = [col for col in required_cols if col not in results_df.columns]
    if missing:
        raise ValueError(
            f"Cannot create volcano plot: missing required columns {missing}. "
            f"Found columns: {', '.join(results_df.columns.tolist())}."
        )

    df = results_df.dropna(subset=["log2FoldChange", "pvalue"]).copy()
    if df.empty:
        raise ValueError(
            "Cannot create volcano plot: no gene has a fold change. "
            "Factors tested with several coefficients (F / likelihood ratio tests) "
            "have no single fold change; plot a two-level factor instead."
        )

    df["-log10_pvalue"] = -np.log10(df["pvalue"].clip(lower=1e-300))

    sig = df["padj"] < padj_threshold
    df["significance"] = "NS"
    df.loc[sig & (df["log2FoldChange"] > lfc_threshold), "significance"] = "Up"
    df.loc[sig & (df["log2FoldChange"] < -lfc_threshold), "significance"] = "Down"

    fig = px.scatter(
        df,
        x="log2FoldChange",
        y="-log10_pvalue",
        color="significance",
        hover_name="gene",
        hover_data={
            "log2FoldChange": ":.2f",
            "padj": ":.2e",
            "-log10_pvalue": False,
            "significance": False,
        },
        color_discrete_map={"Up": "red", "Down": "blue", "NS": "lightgray"},
        labels={"log2FoldChange": "log₂(Fold Change)", "-log10_pvalue": "-log₁₀(p-value)"},
    )

    fig.add_vline(x=lfc_threshold, line_dash="dash", line_color="gray")
    fig.add_vline(x=-lfc_threshold, line_dash="dash", line_color="gray")

    if top_n_labels > 0:
        top = df[sig].nsmallest(top_n_labels, "pvalue")
        if not top.empty:
            fig.add_trace(
                go.Scatter(
                    x=top["log2FoldChange"],
                    y=top["-log10_pvalue"],
                    mode="text",
                    text=top["gene"],
                    textposition="top center",
                    textfont=dict(size=9),
                    showlegend=False,
                    hoverinfo="skip",
                )
            )

    fig.update_layout(title=title, showlegend=True)
    return fig


def create_voom_trend_plot(voom_result: VoomResult) -> go.Figure:
    """voom mean-variance trend: sqrt residual SD against average log2 count."""
    if voom_result is None:
        raise ValueError("Cannot create voom trend plot: no voom result (did the voom fit fail?)")

    fig = go.Figure()
    fig.add_trace(
        go.Scattergl(
            x=voom_result.mean_log_count.values,
            y=voom_result.sqrt_sd.values,
            mode="markers",
            marker=dict(size=3, color="gray", opacity=0.5),
            text=voom_result.mean_log_count.index,
            name="genes",
            hovertemplate="<b>%{text}</b><br>log2 count: %{x:.2f}<br>sqrt(sd): %{y:.3f}<extra></extra>",
        )
    )
    fig.add_trace(
        go.Scatter(
            x=voom_result.trend_x,
            y=voom_result.trend_y,
            mode="lines",
            line=dict(color="red", width=2),
            name="lowess trend",
        )
    )
    fig.update_layout(
        title="voom: Mean-variance trend",
        xaxis_title="log2(count size + 0.5)",
        yaxis_title="Sqrt(standard deviation)",
    )
    return fig


def create_bcv_plot(dispersion: DispersionEstimate) -> go.Figure:
    """Biological coefficient of variation against abundance (tagwise, trended, common)."""
    if dispersion is None:
        raise ValueError("Cannot create BCV plot: no dispersion estimate (did the NB fit fail?)")

    x = dispersion.ave_log_cpm
    order = np.argsort(x)

    fig = go.Figure()
    fig.add_trace(
        go.Scattergl(
            x=x, y=np.sqrt(dispersion.tagwise),
            mode="markers", marker=dict(size=3, color="black", opacity=0.4), name="Tagwise",
        )
    )
    fig.add_trace(
        go.Scatter(
            x=x[order], y=np.sqrt(dispersion.trended)[order],
            mode="lines", line=dict(color="blue", width=2), name="Trend",
        )
    )
    fig.add_hline(
        y=dispersion.common_bcv, line_color="red", line_width=2,
        annotation_text=f"Common BCV = {dispersion.common_bcv:.3f}",
    )
    fig.update_layout(
        title="Biological coefficient of variation",
        xaxis_title="Average log CPM",
        yaxis_title="BCV",
    )
    return fig


def create_pca_plot(
    log_cpm: pd.DataFrame, metadata: pd.DataFrame, color_by: str,
    symbol_by: Optional[str] = None,
) -> go.Figure:
    """
    PCA of samples from a genes × samples log-CPM matrix.

    Args:
        log_cpm: genes × samples (log2 normalized)
        metadata: samples × factors
        color_by: Metadata column used for colour
        symbol_by: Optional metadata column used for marker symbol (e.g. batch)

    Returns:
        Plotly Figure object
    """
    if log_cpm is None or log_cpm.empty:
        raise ValueError("Cannot create PCA plot: log_cpm is empty or None.")
    if log_cpm.shape[1] < 3:
        raise ValueError(f"Cannot create PCA plot: requires at least 3 samples, got {log_cpm.shape[1]}.")
    for col in [color_by] + ([symbol_by] if symbol_by else []):
        if col not in metadata.columns:
            raise ValueError(f"Cannot create PCA plot: '{col}' is not a metadata column.")

    pca = PCA(n_components=2)
    coords = pca.fit_transform(log_cpm.T.values)

    pca_df = pd.DataFrame(coords, columns=["PC1", "PC2"], index=log_cpm.columns)
    pca_df[color_by] = metadata.loc[pca_df.index, color_by].astype(str).values
    if symbol_by:
        pca_df[symbol_by] = metadata.loc[pca_df.index, symbol_by].astype(str).values
    pca_df["sample"] = pca_df.index

    fig = px.scatter(
        pca_df, x="PC1", y="PC2", color=color_by, symbol=symbol_by, hover_name="sample",
        labels={
            "PC1": f"PC1 ({pca.explained_variance_ratio_[0] * 100:.1f}%)",
            "PC2": f"PC2 ({pca.explained_variance_ratio_[1] * 100:.1f}%)",
        },
    )
    fig.update_traces(marker=dict(size=10))
    fig.update_layout(title=f"PCA of log-CPM (colour: {color_by})")
    return fig


def create_gene_expression_plot(
    log_cpm: pd.DataFrame,
    metadata: pd.DataFrame,
    gene: str,
    factor: str,
    plot_type: str = "box",
) -> go.Figure:
    """
    Create box or violin plot of a single gene's log-CPM by the levels of a factor.

    Args:
        log_cpm: genes × samples
        metadata: samples × factors
        gene: Gene identifier (row of log_cpm)
        factor: Metadata column to group by
        plot_type: "box" or "violin"
    """
    if gene not in log_cpm.index:
        raise ValueError(
            f"Gene '{gene}' not found in expression data. "
            f"Available genes (first 5): {list(log_cpm.index[:5])}"
        )
    if factor not in metadata.columns:
        raise ValueError(f"Factor '{factor}' not found in metadata columns {list(metadata.columns)}")

    values = log_cpm.loc[gene]
    groups = metadata.loc[values.index, factor].astype(str)
    colors = px.colors.qualitative.Set2

    fig = go.Figure()
    for i, level in enumerate(pd.unique(groups)):
        mask = (groups == level).values
        trace_cls = go.Violin if plot_type == "violin" else go.Box
        extra = dict(points="all") if plot_type == "violin" else dict(boxpoints="all", jitter=0.3)
        fig.add_trace(trace_cls(
            y=values[mask].values,
            name=level,
            marker_color=colors[i % len(colors)],
            text=values.index[mask].tolist(),
            hovertemplate="<b>%{text}</b><br>log-CPM: %{y:.2f}<extra></extra>",
            **extra,
        ))

    fig.update_layout(
        title=f"Expression of {gene} by {factor}",
        xaxis_title=factor,
        yaxis_title="log2 CPM",
        showlegend=False,
    )
    return fig


def _circle_venn(set_names: List[str], counts: Dict[str, int], layout: Dict, title: str) -> go.Figure:
    colors = ["royalblue", "crimson", "forestgreen"]
    shapes = []
    for (x0, y0, x1, y1), color in zip(layout["circles"], colors):
        shapes.append(dict(
            type="circle", x0=x0, y0=y0, x1=x1, y1=y1,
            line=dict(color=color, width=2), fillcolor=color, opacity=0.15,
        ))
    annotations = [
        dict(x=x, y=y, text=str(counts[key]), showarrow=False, font=dict(size=16))
        for key, (x, y) in layout["regions"].items()
    ]
    annotations += [
        dict(x=x, y=y, text=name, showarrow=False, font=dict(size=13))
        for name, (x, y) in zip(set_names, layout["labels"])
    ]

    fig = go.Figure()
    fig.update_layout(
        title=title,
        shapes=shapes,
        annotations=annotations,
        xaxis=dict(visible=False, range=[0, 1]),
        yaxis=dict(visible=False, range=[0, 1], scaleanchor="x"),
        width=600, height=500,
    )
    return fig


VENN2_LAYOUT = {
    "circles": [(0.1, 0.15, 0.55, 0.85), (0.45, 0.15, 0.9, 0.85)],
    "regions": {"A": (0.25, 0.5), "AB": (0.5, 0.5), "B": (0.75, 0.5)},
    "labels": [(0.25, 0.9), (0.75, 0.9)],
}

VENN3_LAYOUT = {
    "circles": [(0.15, 0.25, 0.6, 0.9), (0.4, 0.25, 0.85, 0.9), (0.27, 0.1, 0.73, 0.65)],
    "regions": {
        "A": (0.28, 0.72), "B": (0.72, 0.72), "C": (0.5, 0.22),
        "AB": (0.5, 0.75), "AC": (0.35, 0.42), "BC": (0.65, 0.42), "ABC": (0.5, 0.52),
    },
    "labels": [(0.2, 0.93), (0.8, 0.93), (0.5, 0.07)],
}


def _exclusive_counts(sets: List[set]) -> Dict[str, int]:
    """Sizes of every exclusive region, keyed by letters of the member sets ("A", "AB", ...)."""
    letters = "ABCDEFGHIJ"
    counts = {}
    for r in range(1, len(sets) + 1):
        for combo in combinations(range(len(sets)), r):
            region = set.intersection(*[sets[i] for i in combo])
            for j in range(len(sets)):
                if j not in combo:
                    region = region - sets[j]
            counts["".join(letters[i] for i in combo)] = len(region)
    return counts


def create_venn_diagram(
    gene_sets: Dict[str, set],
    title: str = "Significant gene overlap",
) -> go.Figure:
    """
    Create Venn diagram for 2-3 gene sets, or UpSet-style plot for 4+ sets.

    Args:
        gene_sets: Dict mapping method name → set of significant genes
        title: Plot title
    """
    set_names = list(gene_sets.keys())
    sets = [set(gene_sets[k]) for k in set_names]
    n = len(set_names)

    if n < 2:
        raise ValueError("At least 2 gene sets are required for a Venn diagram.")

    counts = _exclusive_counts(sets)
    if n == 2:
        return _circle_venn(set_names, counts, VENN2_LAYOUT, title)
    if n == 3:
        return _circle_venn(set_names, counts, VENN3_LAYOUT, title)

    # 4+ sets: UpSet-style plot of the non-empty exclusive intersections
    letters = "ABCDEFGHIJ"
    intersections = sorted(
        ((key, size) for key, size in counts.items() if size > 0), key=lambda kv: kv[1], reverse=True
    )
    members = [[letters.index(ch) for ch in key] for key, _ in intersections]
    labels = [" & ".join(set_names[i] for i in m) for m in members]
    sizes = [size for _, size in intersections]

    fig = make_subplots(rows=2, cols=1, row_heights=[0.65, 0.35], shared_xaxes=True, vertical_spacing=0.02)
    fig.add_trace(
        go.Bar(
            x=list(range(len(sizes))), y=sizes, marker_color="steelblue", customdata=labels,
            hovertemplate="<b>%{customdata}</b><br>Count: %{y}<extra></extra>", showlegend=False,
        ),
        row=1, col=1,
    )

    xs, ys, dot_colors = [], [], []
    for col_idx, m in enumerate(members):
        for row_idx in range(n):
            xs.append(col_idx)
            ys.append(row_idx)
            dot_colors.append("steelblue" if row_idx in m else "lightgray")
        if len(m) > 1:
            fig.add_trace(
                go.Scatter(
                    x=[col_idx, col_idx], y=[min(m), max(m)], mode="lines",
                    line=dict(color="steelblue", width=2), showlegend=False, hoverinfo="skip",
                ),
                row=2, col=1,
            )
    fig.add_trace(
        go.Scatter(
            x=xs, y=ys, mode="markers", marker=dict(size=10, color=dot_colors),
            showlegend=False, hoverinfo="skip",
        ),
        row=2, col=1,
    )

    fig.update_layout(title=title, height=400 + n * 30, width=max(500, len(sizes) * 45 + 150))
    fig.update_yaxes(title_text="Intersection Size", row=1, col=1)
    fig.update_yaxes(tickvals=list(range(n)), ticktext=set_names, row=2, col=1)
    fig.update_xaxes(visible=False, row=1, col=1)
    fig.update_xaxes(visible=False, row=2, col=1)
    return fig
