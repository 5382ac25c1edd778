"""
Sample-level QC for the walkthrough.

Provides PCA of log-CPM values, outlier detection in PCA space and an
assessment of how much of each principal component is explained by each
metadata factor (genotype, stage, sex, sequencing batch).
All plots use Plotly.
"""

from typing import List, Dict, Tuple
import pandas as pd
import numpy as np
import plotly.graph_objects as go
import plotly.express as px
from sklearn.decomposition import PCA


class AdvancedQC:
    """
    Sample-level QC analyses.

    Features:
    - PCA of the most variable genes
    - Outlier detection in PCA space (Euclidean distance from centroid)
    - Factor effect assessment (variance decomposition per PC)
    """

    def run_pca(
        self,
        log_cpm: pd.DataFrame,
        n_components: int = 5,
        n_top_genes: int = 500,
    ) -> Tuple[pd.DataFrame, pd.Series]:
        """
        PCA of samples on the most variable genes.

        Parameters
        ----------
        log_cpm : pd.DataFrame
            genes × samples log-CPM matrix
        n_components : int
            Number of components to keep (capped at n_samples - 1)
        n_top_genes : int
            Number of highest-variance genes used

        Returns
        -------
        Tuple[pd.DataFrame, pd.Series]
            (samples × PC coordinates, explained variance ratio per PC)
        """
        n_samples = log_cpm.shape[1]
        if n_samples < 3:
            raise ValueError(f"PCA needs at least 3 samples, got {n_samples}")

        variances = log_cpm.var(axis=1)
        top = variances.nlargest(min(n_top_genes, len(variances))).index
        n_components = max(1, min(n_components, n_samples - 1, len(top)))

        pca = PCA(n_components=n_components)
        coords = pca.fit_transform(log_cpm.loc[top].T.values)
        names = [f"PC{i + 1}" for i in range(n_components)]

        pca_coords = pd.DataFrame(coords, index=log_cpm.columns, columns=names)
        explained = pd.Series(pca.explained_variance_ratio_, index=names)
        return pca_coords, explained

    def detect_outliers(
        self,
        pca_coords: pd.DataFrame,
        threshold_sd: float = 3.0
    ) -> Tuple[List[str], pd.Series]:
        """
        Detect outlier samples in PCA space.

        Samples whose distance from the PC1-PC2 centroid exceeds the median
        distance by more than threshold_sd standard deviations are flagged.

        Returns
        -------
        Tuple[List[str], pd.Series]
            (list of outlier sample names, Series of distances for all samples)
        """
        pcs = [c for c in ["PC1", "PC2"] if c in pca_coords.columns]
        pc_data = pca_coords[pcs]

        centroid = pc_data.mean()
        distances = np.sqrt(((pc_data - centroid) ** 2).sum(axis=1))

        threshold = distances.median() + threshold_sd * distances.std()
        outliers = distances[distances > threshold].index.tolist()

        return outliers, distances

    @staticmethod
    def _variance_explained(pc_values: pd.Series, labels: pd.Series) -> float:
        grand_mean = pc_values.mean()
        ss_total = ((pc_values - grand_mean) ** 2).sum()
        if ss_total <= 0:
            return 0.0
        ss_between = 0.0
        for level in labels.unique():
            group_vals = pc_values[labels == level]
            ss_between += len(group_vals) * (group_vals.mean() - grand_mean) ** 2
        return float(ss_between / ss_total)

    def assess_factor_effects(
        self,
        pca_coords: pd.DataFrame,
        metadata: pd.DataFrame,
        factors: List[str],
    ) -> pd.DataFrame:
        """
        Fraction of each PC's variance explained by each metadata factor.

        Uses a one-way sum-of-squares decomposition per (factor, PC).

        Returns
        -------
        pd.DataFrame
            factors × PCs, values in [0, 1]
        """
        common = pca_coords.index.intersection(metadata.index)
        pcs = [c for c in pca_coords.columns if str(c).startswith("PC")]
        table = pd.DataFrame(index=factors, columns=pcs, dtype=float)

        for factor in factors:
            if factor not in metadata.columns:
                raise ValueError(f"Factor '{factor}' is not a metadata column")
            labels = metadata.loc[common, factor].astype(str)
            for pc in pcs:
                table.loc[factor, pc] = self._variance_explained(pca_coords.loc[common, pc], labels)

        return table

    def create_outlier_plot(
        self,
        pca_coords: pd.DataFrame,
        sample_groups: Dict[str, str],
        outliers: List[str],
        distances: pd.Series,
        explained: pd.Series = None,
    ) -> go.Figure:
        """PCA scatter plot with outlier samples highlighted."""
        df = pca_coords[["PC1", "PC2"]].copy()
        df["group"] = [sample_groups.get(s, "Unknown") for s in df.index]
        df["distance"] = distances
        df["is_outlier"] = [s in outliers for s in df.index]
        df["sample"] = df.index

        labels = {}
        if explained is not None:
            labels = {pc: f"{pc} ({explained[pc] * 100:.1f}%)" for pc in ["PC1", "PC2"] if pc in explained}

        fig = px.scatter(
            df[~df["is_outlier"]],
            x="PC1", y="PC2",
            color="group",
            hover_name="sample",
            hover_data={"distance": ":.2f", "group": True, "PC1": ":.2f", "PC2": ":.2f"},
            labels=labels,
            title="PCA Outlier Detection",
        )

        if outliers:
            outlier_df = df[df["is_outlier"]]
            fig.add_trace(go.Scatter(
                x=outlier_df["PC1"],
                y=outlier_df["PC2"],
                mode="markers+text",
                marker=dict(size=14, color="red", symbol="x", line=dict(width=2, color="darkred")),
                text=outlier_df.index,
                textposition="top center",
                textfont=dict(size=10, color="red"),
                name="Outlier",
                customdata=outlier_df["distance"].values,
                hovertemplate="<b>%{text}</b><br>Distance: %{customdata:.2f}<extra>Outlier</extra>",
            ))

        fig.update_layout(showlegend=True)
        return fig

    def create_factor_effect_plot(self, effects: pd.DataFrame, concern_threshold: float = 0.3) -> go.Figure:
        """
        Heatmap of variance explained per (factor, PC).

        Cells above concern_threshold are marked with "!"; a nuisance factor such
        as the sequencing batch crossing it usually belongs in the design.
        """
        if effects is None or effects.empty:
            raise ValueError("Cannot create factor effect plot: no factor effects were computed.")

        values = effects.values.astype(float) * 100
        text = [[f"{v:.0f}%{' !' if v > concern_threshold * 100 else ''}" for v in row] for row in values]

        fig = go.Figure(
            go.Heatmap(
                z=values,
                x=effects.columns.tolist(),
                y=effects.index.tolist(),
                zmin=0, zmax=100,
                colorscale="Reds",
                text=text,
                texttemplate="%{text}",
                colorbar=dict(title="% var"),
                hovertemplate="%{y} explains %{z:.1f}% of %{x}<extra></extra>",
            )
        )
        fig.update_layout(
            title="Variance of each principal component explained by metadata factors",
            xaxis_title="Principal Component",
            yaxis_title="Factor",
        )
        return fig
