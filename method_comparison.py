"""
Comparison of per-gene results across differential expression methods.

All methods test the same filtered genes, so every result table for one factor
must have the same rows. The comparison table stacks them in long form keyed by
(gene, method, factor); the helpers below pivot it for plotting and counting.
"""

from typing import Any, Dict, List, Optional, Set, Tuple
import logging
import pandas as pd
import numpy as np

logger = logging.getLogger(__name__)

COMPARISON_COLUMNS = ["gene", "method", "factor", "log2FoldChange", "aveLogCPM", "stat", "pvalue", "padj"]


class ComparisonError(Exception):
    """Raised when result tables cannot be lined up across methods."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)


def build_comparison_table(results: Dict[Tuple[str, str], Any]) -> pd.DataFrame:
    """
    Stack every method's result table into one long table.

    Args:
        results: (method, factor) → DEResult, as returned by
            DEAnalysisEngine.run_all_methods

    Returns:
        DataFrame with COMPARISON_COLUMNS

    Raises:
        ComparisonError: if two methods report different genes for the same factor
    """
    frames = []
    genes_by_factor: Dict[str, Tuple[str, pd.Index]] = {}

    for (method, factor), result in results.items():
        df = result.results_df
        if df is None or df.empty:
            logger.warning(f"Skipping {method} / {factor}: no results")
            continue

        genes = pd.Index(df["gene"].astype(str))
        if factor in genes_by_factor:
            first_method, first_genes = genes_by_factor[factor]
            if len(genes) != len(first_genes):
                raise ComparisonError(
                    f"Result tables for '{factor}' have different row counts: "
                    f"{first_method} has {len(first_genes)}, {method} has {len(genes)}",
                    details={"factor": factor, first_method: len(first_genes), method: len(genes)},
                )
            if not genes.sort_values().equals(first_genes.sort_values()):
                raise ComparisonError(
                    f"Result tables for '{factor}' cover different genes ({first_method} vs {method})",
                    details={"factor": factor, "methods": [first_method, method]},
                )
        else:
            genes_by_factor[factor] = (method, genes)

        part = df.reindex(columns=["gene", "log2FoldChange", "aveLogCPM", "stat", "pvalue", "padj"]).copy()
        part["gene"] = part["gene"].astype(str)
        part.insert(1, "method", method)
        part.insert(2, "factor", factor)
        frames.append(part)

    if not frames:
        return pd.DataFrame(columns=COMPARISON_COLUMNS)

    return pd.concat(frames, ignore_index=True)[COMPARISON_COLUMNS]


def _factor_rows(comparison: pd.DataFrame, factor: str) -> pd.DataFrame:
    rows = comparison[comparison["factor"] == factor]
    if rows.empty:
        available = sorted(comparison["factor"].unique().tolist()) if not comparison.empty else []
        raise ValueError(f"No results for factor '{factor}'. Available factors: {available}")
    return rows


def pvalue_matrix(comparison: pd.DataFrame, factor: str, column: str = "pvalue") -> pd.DataFrame:
    """Genes × methods table of one result column for one factor."""
    rows = _factor_rows(comparison, factor)
    wide = rows.pivot(index="gene", columns="method", values=column)
    # Keep methods in the order they were run
    order = [m for m in pd.unique(rows["method"]) if m in wide.columns]
    wide = wide[order]
    wide.columns.name = None
    return wide


def neg_log10(pvalues: pd.DataFrame) -> pd.DataFrame:
    """-log10 p with zeros clipped to the smallest positive float."""
    return -np.log10(pvalues.clip(lower=np.finfo(float).tiny))


def pvalue_correlation(comparison: pd.DataFrame, factor: str, method: str = "spearman") -> pd.DataFrame:
    """Method × method correlation of -log10 p-values for one factor."""
    return neg_log10(pvalue_matrix(comparison, factor)).corr(method=method)


def significant_sets(
    comparison: pd.DataFrame, factor: str, padj_threshold: float = 0.05
) -> Dict[str, Set[str]]:
    """Genes called significant by each method for one factor."""
    rows = _factor_rows(comparison, factor)
    sets = {}
    for method in pd.unique(rows["method"]):
        sub = rows[rows["method"] == method]
        sets[method] = set(sub.loc[sub["padj"] < padj_threshold, "gene"])
    return sets


def overlap_table(sets: Dict[str, Set[str]]) -> pd.DataFrame:
    """Pairwise intersection sizes and Jaccard indices between gene sets."""
    rows = []
    names = list(sets.keys())
    for i, a in enumerate(names):
        for b in names[i + 1:]:
            inter = len(sets[a] & sets[b])
            union = len(sets[a] | sets[b])
            rows.append(
                {
                    "method_a": a,
                    "method_b": b,
                    "n_a": len(sets[a]),
                    "n_b": len(sets[b]),
                    "intersection": inter,
                    "jaccard": inter / union if union else np.nan,
                }
            )
    return pd.DataFrame(rows, columns=["method_a", "method_b", "n_a", "n_b", "intersection", "jaccard"])


def summarize_hits(comparison: pd.DataFrame, padj_threshold: float = 0.05) -> pd.DataFrame:
    """Methods × factors table of significant gene counts."""
    if comparison.empty:
        return pd.DataFrame()
    sig = comparison.assign(significant=comparison["padj"] < padj_threshold)
    summary = sig.pivot_table(index="method", columns="factor", values="significant", aggfunc="sum")
    methods = list(pd.unique(comparison["method"]))
    factors = list(pd.unique(comparison["factor"]))
    summary = summary.reindex(index=methods, columns=factors).fillna(0).astype(int)
    summary.columns.name = None
    return summary


def top_genes(comparison: pd.DataFrame, factor: str, method: str, n: int = 10) -> pd.DataFrame:
    """The n genes with the smallest p-value for one method and factor."""
    rows = _factor_rows(comparison, factor)
    sub = rows[rows["method"] == method]
    if sub.empty:
        raise ValueError(f"No results for method '{method}' and factor '{factor}'")
    return sub.sort_values(["pvalue", "gene"]).head(n).reset_index(drop=True)


def agreement_summary(
    comparison: pd.DataFrame, factors: List[str], padj_threshold: float = 0.05
) -> pd.DataFrame:
    """Per factor: genes called by every method, by at least one, and by exactly one."""
    rows = []
    for factor in factors:
        try:
            sets = significant_sets(comparison, factor, padj_threshold)
        except ValueError:
            continue
        if not sets:
            continue
        all_sets = list(sets.values())
        union = set().union(*all_sets)
        core = set.intersection(*all_sets)
        unique = sum(1 for g in union if sum(g in s for s in all_sets) == 1)
        rows.append(
            {"factor": factor, "all_methods": len(core), "any_method": len(union), "single_method": unique}
        )
    return pd.DataFrame(rows, columns=["factor", "all_methods", "any_method", "single_method"])
