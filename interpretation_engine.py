"""
Interpretation Engine for the differential expression walkthrough.

Turns filtering statistics, per-method results and cross-method comparisons
into short written commentary for the report.
"""

from dataclasses import dataclass, field
from typing import List, Dict, Any, Optional, Tuple
import pandas as pd
import numpy as np


@dataclass
class Interpretation:
    """Single interpretation or insight."""
    category: str       # 'filtering', 'de', 'comparison', 'qc', 'warning'
    level: str          # 'critical', 'important', 'informative'
    title: str
    description: str
    evidence: Dict[str, Any]
    recommendations: List[str] = field(default_factory=list)


class InterpretationEngine:
    """
    Automated commentary on the walkthrough's results.

    Every interpret_* method returns the interpretations it generated and also
    accumulates them for get_all_interpretations().
    """

    def __init__(self):
        self.interpretations: List[Interpretation] = []

    def interpret_filtering(
        self,
        n_before: int,
        n_after: int,
        lib_sizes: pd.Series,
        norm_factors: Optional[pd.Series] = None,
        min_cpm: Optional[float] = None,
    ) -> List[Interpretation]:
        """
        Comment on low-count filtering and scaling normalization.

        Args:
            n_before: Genes before filtering
            n_after: Genes retained
            lib_sizes: Library size per sample
            norm_factors: Scaling factors per sample (TMM etc.)
            min_cpm: CPM threshold used (None for filter_by_expr)
        """
        interpretations = []
        kept = n_after / n_before if n_before else 0.0

        threshold_text = f"CPM ≥ {min_cpm:g}" if min_cpm is not None else "an expression filter"
        interpretations.append(Interpretation(
            category='filtering',
            level='important',
            title='Low-count Filtering',
            description=(
                f"{n_after:,} of {n_before:,} genes ({kept * 100:.0f}%) passed {threshold_text}. "
                f"Genes with too few reads carry almost no information about differential expression "
                f"but still count toward the multiple-testing burden and distort the mean-variance trend."
            ),
            evidence={'n_before': n_before, 'n_after': n_after, 'fraction_kept': float(kept)},
        ))

        if n_before and kept < 0.3:
            interpretations.append(Interpretation(
                category='filtering',
                level='important',
                title='Aggressive Filtering',
                description=(
                    f"Only {kept * 100:.0f}% of genes were retained. Check that the CPM threshold "
                    f"matches the sequencing depth: 1 CPM is about {lib_sizes.min() / 1e6:.1f} reads "
                    f"in the smallest library."
                ),
                evidence={'fraction_kept': float(kept), 'min_lib_size': float(lib_sizes.min())},
                recommendations=["Lower min_cpm or use filter_by_expr, which scales the cutoff to library size"],
            ))

        if len(lib_sizes) > 1 and lib_sizes.min() > 0:
            ratio = float(lib_sizes.max() / lib_sizes.min())
            if ratio > 3:
                interpretations.append(Interpretation(
                    category='qc',
                    level='important',
                    title='Unequal Library Sizes',
                    description=(
                        f"The largest library is {ratio:.1f}x the smallest. Raw counts are not comparable "
                        f"between samples; CPM and the count models' offsets account for this, and voom "
                        f"weights absorb the extra variability of the small libraries."
                    ),
                    evidence={'max_min_ratio': ratio},
                ))

        if norm_factors is not None and len(norm_factors):
            spread = (float(norm_factors.min()), float(norm_factors.max()))
            level = 'important' if spread[0] < 0.7 or spread[1] > 1.4 else 'informative'
            interpretations.append(Interpretation(
                category='filtering',
                level=level,
                title='Scaling Normalization',
                description=(
                    f"Normalization factors range from {spread[0]:.2f} to {spread[1]:.2f}. Factors far from 1 "
                    f"mean a few highly expressed genes take up a different share of the library in some "
                    f"samples (composition bias)."
                ),
                evidence={'min_factor': spread[0], 'max_factor': spread[1]},
            ))

        self.interpretations.extend(interpretations)
        return interpretations

    def interpret_method_results(
        self, results: Dict[Tuple[str, str], Any], padj_threshold: float = 0.05
    ) -> List[Interpretation]:
        """Summarise each method's hits and report failed methods."""
        interpretations = []

        for (method, factor), result in results.items():
            if result.results_df is None or result.results_df.empty:
                interpretations.append(Interpretation(
                    category='de',
                    level='critical',
                    title=f'{method} failed for {factor}',
                    description="; ".join(result.warnings) or "No results were produced.",
                    evidence={'method': method, 'factor': factor},
                    recommendations=["Check the design matrix and the number of residual degrees of freedom"],
                ))
                continue

            df = result.results_df
            lfc = df['log2FoldChange']
            sig = df['padj'] < padj_threshold
            evidence = {
                'method': method,
                'factor': factor,
                'test': result.test,
                'n_tested': int(len(df)),
                'n_significant': int(sig.sum()),
            }
            text = (
                f"{method} ({result.test or 'test'}) called {int(sig.sum()):,} of {len(df):,} genes "
                f"significant for {factor} at padj < {padj_threshold}."
            )
            if lfc.notna().any() and sig.any():
                n_up = int((sig & (lfc > 0)).sum())
                evidence.update({'up': n_up, 'down': int(sig.sum()) - n_up})
                text += f" {n_up:,} up, {int(sig.sum()) - n_up:,} down."
            elif sig.any():
                text += " The factor has several coefficients, so the test has no single direction."

            interpretations.append(Interpretation(
                category='de', level='informative', title=f'{method}: {factor}',
                description=text, evidence=evidence,
            ))

        self.interpretations.extend(interpretations)
        return interpretations

    def interpret_method_agreement(
        self,
        correlation: pd.DataFrame,
        factor: str,
        overlap: Optional[pd.DataFrame] = None,
    ) -> List[Interpretation]:
        """
        Comment on how closely the methods agree for one factor.

        Args:
            correlation: method × method correlation of -log10 p-values
            factor: Factor the correlation refers to
            overlap: Output of method_comparison.overlap_table
        """
        interpretations = []
        if correlation is None or correlation.shape[0] < 2:
            return interpretations

        values = correlation.values.astype(float)
        upper = values[np.triu_indices_from(values, k=1)]
        upper = upper[np.isfinite(upper)]
        if len(upper) == 0:
            return interpretations

        stacked = correlation.where(np.triu(np.ones(correlation.shape, dtype=bool), k=1)).stack()
        weakest = stacked.idxmin()
        strongest = stacked.idxmax()

        level = 'important' if upper.min() < 0.7 else 'informative'
        interpretations.append(Interpretation(
            category='comparison',
            level=level,
            title=f'Method Agreement: {factor}',
            description=(
                f"Rank correlations of -log10 p-values range from {upper.min():.2f} "
                f"({weakest[0]} vs {weakest[1]}) to {upper.max():.2f} ({strongest[0]} vs {strongest[1]}). "
                f"Methods that share a model (the linear models, or the two negative binomial tests) "
                f"usually agree most closely; disagreement is concentrated in low-count genes, where the "
                f"log-CPM transformation and the count likelihood treat the data differently."
            ),
            evidence={
                'min_correlation': float(upper.min()),
                'max_correlation': float(upper.max()),
                'weakest_pair': list(weakest),
                'strongest_pair': list(strongest),
            },
        ))

        if overlap is not None and not overlap.empty and overlap['jaccard'].notna().any():
            low = overlap.loc[overlap['jaccard'].idxmin()]
            interpretations.append(Interpretation(
                category='comparison',
                level='informative',
                title=f'Significant Gene Overlap: {factor}',
                description=(
                    f"The least similar pair of hit lists is {low['method_a']} vs {low['method_b']} "
                    f"(Jaccard {low['jaccard']:.2f}; {int(low['intersection'])} shared of "
                    f"{int(low['n_a'])} and {int(low['n_b'])})."
                ),
                evidence={'min_jaccard': float(low['jaccard'])},
            ))

        self.interpretations.extend(interpretations)
        return interpretations

    def interpret_pvalue_distribution(
        self, pvalues: pd.Series, method: str, factor: str
    ) -> List[Interpretation]:
        """
        Diagnose the shape of one method's p-value histogram.

        Under the null, p-values are uniform, so twice the fraction above 0.5
        estimates the share of null genes (pi0). A ratio well above 1 means the
        test is conservative; a spike near zero with a flat remainder is the
        expected shape.
        """
        interpretations = []
        p = pd.Series(pvalues).dropna()
        if len(p) < 20:
            return interpretations

        pi0 = float(min(2 * (p > 0.5).mean(), 1.5))
        near_zero = float((p < 0.05).mean())
        upper_tail = float((p > 0.9).mean())
        evidence = {'pi0': pi0, 'fraction_below_0.05': near_zero, 'fraction_above_0.9': upper_tail}

        if upper_tail > 0.2:
            interpretations.append(Interpretation(
                category='de', level='important',
                title=f'Conservative p-values: {method} / {factor}',
                description=(
                    f"{upper_tail * 100:.0f}% of p-values are above 0.9, twice what a uniform null gives. "
                    f"The test is conservative, usually because variances are overestimated "
                    f"(low-count genes or too few residual degrees of freedom)."
                ),
                evidence=evidence,
                recommendations=["Compare with a method that models the mean-variance relationship"],
            ))
        elif near_zero > 0.05 * 1.5:
            interpretations.append(Interpretation(
                category='de', level='informative',
                title=f'Signal detected: {method} / {factor}',
                description=(
                    f"{near_zero * 100:.0f}% of p-values fall below 0.05 (5% expected under the null); "
                    f"an estimated {max(0.0, 1 - pi0) * 100:.0f}% of genes respond to {factor}."
                ),
                evidence=evidence,
            ))
        else:
            interpretations.append(Interpretation(
                category='de', level='informative',
                title=f'Little signal: {method} / {factor}',
                description=(
                    f"The p-value distribution of {method} for {factor} is close to uniform; "
                    f"few genes respond to this factor, or the experiment lacks power to see them."
                ),
                evidence=evidence,
            ))

        self.interpretations.extend(interpretations)
        return interpretations

    def interpret_factor_effects(
        self, effects: pd.DataFrame, nuisance: List[str], threshold: float = 0.3
    ) -> List[Interpretation]:
        """Warn when a nuisance factor (e.g. sequencing batch) drives a leading PC."""
        interpretations = []
        if effects is None or effects.empty:
            return interpretations

        for factor in nuisance:
            if factor not in effects.index:
                continue
            row = effects.loc[factor]
            flagged = row[row > threshold]
            if flagged.empty:
                continue
            interpretations.append(Interpretation(
                category='qc', level='important',
                title=f'{factor} structures the samples',
                description=(
                    f"{factor} explains {flagged.max() * 100:.0f}% of the variance of {flagged.idxmax()}. "
                    f"Unless it is part of the design, this variation ends up in the residuals and "
                    f"costs power."
                ),
                evidence={'factor': factor, 'flagged_pcs': {k: float(v) for k, v in flagged.items()}},
                recommendations=[f"Add {factor} to design_factors if it is not confounded with a factor of interest"],
            ))

        self.interpretations.extend(interpretations)
        return interpretations

    def generate_methods_text(self, params: Dict) -> str:
        """
        Generate a methods section describing the walkthrough.

        Args:
            params: Dictionary with analysis parameters:
                - design: Design formula
                - filter: Filtering description
                - norm_method: Normalization method (default: 'TMM')
                - methods: List of method names that ran
                - padj: Adjusted p-value threshold (default: 0.05)
                - n_samples / n_genes: Optional dataset size
        """
        design = params.get('design', '~ Group')
        filtering = params.get('filter') or 'CPM ≥ 1 in at least the smallest group size of samples'
        norm = params.get('norm_method', 'TMM')
        methods = params.get('methods', [])
        padj = params.get('padj', 0.05)
        size = ""
        if params.get('n_samples') and params.get('n_genes'):
            size = f" The filtered dataset comprised {params['n_genes']:,} genes in {params['n_samples']} samples."

        descriptions = {
            'lm': "ordinary least-squares linear models on log₂-CPM values with classical t / F tests",
            'limma_trend': "the same linear models with empirical Bayes moderation of gene-wise variances "
                           "toward an abundance-dependent prior (limma-trend)",
            'voom_limma': "voom precision weights from the mean-variance trend followed by weighted linear "
                          "models and empirical Bayes moderation",
            'edger_lrt': "negative binomial GLMs with Cox-Reid tagwise dispersions and likelihood ratio tests",
            'edger_ql': "negative binomial GLMs with trended dispersions and quasi-likelihood F tests with "
                        "empirical Bayes moderated QL dispersions",
            'deseq2': "PyDESeq2 negative binomial GLMs with Wald tests",
        }
        used = [descriptions[m] for m in methods if m in descriptions]
        method_list = "; ".join(f"({i + 1}) {d}" for i, d in enumerate(used))

        return f"""## Methods

### Preprocessing

Genes were retained when they passed {filtering}. Library sizes were scaled with {norm} normalization factors.{size}

### Differential Expression

All procedures used the additive design `{design}`. Factors with a single coefficient were tested with a t / Wald-type statistic and factors with several coefficients with an F or likelihood ratio test of all their coefficients. The procedures were: {method_list}. P-values were adjusted with the Benjamini-Hochberg method and genes with adjusted p-value < {padj} were called significant.

### Comparison

P-values were compared across procedures with Spearman correlations of -log10 p-values and overlaps of significant gene lists. All analyses were performed in Python with NumPy, SciPy and statsmodels; figures were generated with Plotly.
"""

    def get_all_interpretations(self) -> List[Interpretation]:
        """Return all accumulated interpretations."""
        return self.interpretations

    def clear(self):
        """Clear all accumulated interpretations."""
        self.interpretations = []
