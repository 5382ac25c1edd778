"""
The differential expression walkthrough as one orchestrated run.

Steps, in order:
1. load the metadata table and count matrix (or the simulated demo dataset)
2. filter low-count genes and compute scaling normalization factors
3. build the design matrix from the configured factors
4. run every configured method and test every factor of interest
5. compare the methods' p-values and significant gene lists

Each step can be called on its own (the Streamlit report does this to show
intermediate results); calling a step before the ones it depends on raises
RuntimeError.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple
import logging
import pandas as pd
import numpy as np
import plotly.graph_objects as go
from analysis_config import AnalysisConfig
from count_data import ExperimentData, load_experiment
from normalization import cpm, calc_norm_factors, filter_by_cpm, filter_by_expr, smallest_group_size
from design import DesignMatrix, build_design_matrix
from de_analysis import DEAnalysisEngine, DEMethod, DEResult
from method_comparison import (
    build_comparison_table,
    pvalue_correlation,
    significant_sets,
    overlap_table,
    summarize_hits,
    agreement_summary,
)
from interpretation_engine import InterpretationEngine, Interpretation
from advanced_qc import AdvancedQC
from demo_data import load_demo_dataset
import qc_plots
import visualizations

logger = logging.getLogger(__name__)


@dataclass
class WalkthroughResult:
    """Everything the walkthrough produced."""

    config: AnalysisConfig
    raw: ExperimentData  # all genes
    filtered: ExperimentData  # retained genes, with normalization factors
    design: DesignMatrix
    de_results: Dict[Tuple[str, str], DEResult]
    comparison: pd.DataFrame
    hit_summary: pd.DataFrame
    correlations: Dict[str, pd.DataFrame]
    overlaps: Dict[str, pd.DataFrame]
    agreement: pd.DataFrame
    qc: Dict[str, Any] = field(default_factory=dict)
    interpretations: List[Interpretation] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def factors(self) -> List[str]:
        return list(self.config.factors_of_interest)

    def method_status(self) -> pd.DataFrame:
        """One row per (method, factor): test used, genes tested, hits, warnings."""
        rows = []
        for (method, factor), res in self.de_results.items():
            rows.append({
                "method": method,
                "factor": factor,
                "test": res.test,
                "n_tested": len(res.results_df),
                "n_significant": res.n_significant,
                "status": "failed" if res.failed else "ok",
                "warnings": "; ".join(res.warnings),
            })
        return pd.DataFrame(rows)


class DEWalkthrough:
    """
    Runs the walkthrough for one AnalysisConfig.
    """

    def __init__(self, config: Optional[AnalysisConfig] = None):
        self.config = config or AnalysisConfig()
        self.config.validate()
        self.engine = DEAnalysisEngine(
            padj_threshold=self.config.padj_threshold,
            prior_count=self.config.prior_count,
            prior_df=self.config.prior_df,
            voom_span=self.config.voom_span,
        )
        self.interpreter = InterpretationEngine()

        self.raw: Optional[ExperimentData] = None
        self.filtered: Optional[ExperimentData] = None
        self.design: Optional[DesignMatrix] = None
        self.de_results: Optional[Dict[Tuple[str, str], DEResult]] = None
        self.comparison: Optional[pd.DataFrame] = None
        self.warnings: List[str] = []
        self.filter_text: Optional[str] = None  # set by filter_and_normalize()

    def _require(self, attr: str, step: str):
        if getattr(self, attr) is None:
            raise RuntimeError(f"{step} must be run first")
        return getattr(self, attr)

    # ---------------------------------------------------------------- steps

    def load(
        self,
        metadata_source: Any = None,
        counts_source: Any = None,
    ) -> ExperimentData:
        """
        Load inputs. Explicit sources (paths or uploads) win over the paths in
        the config; with neither, the demo dataset is used.
        """
        metadata_source = metadata_source or self.config.metadata_path
        counts_source = counts_source or self.config.counts_path

        if metadata_source and counts_source:
            self.raw = load_experiment(metadata_source, counts_source, sample_column=self.config.sample_column)
        else:
            logger.info("No input files configured; using the demo dataset")
            counts, metadata = load_demo_dataset()
            self.raw = ExperimentData.from_frames(counts, metadata)

        self.warnings = list(self.raw.warnings)
        self.filtered = self.design = self.de_results = self.comparison = None
        return self.raw

    def use_experiment(self, experiment: ExperimentData) -> ExperimentData:
        """Start from an already-built ExperimentData."""
        self.raw = experiment
        self.warnings = list(experiment.warnings)
        self.filtered = self.design = self.de_results = self.comparison = None
        return self.raw

    def _grouping(self) -> pd.Series:
        """Sample labels combining the factors of interest (cells of the experiment)."""
        meta = self.raw.metadata
        cols = [c for c in self.config.factors_of_interest if c in meta.columns]
        if not cols:
            return pd.Series("all", index=meta.index)
        return meta[cols].astype(str).agg("_".join, axis=1)

    def filter_and_normalize(self) -> ExperimentData:
        """Drop low-count genes, then compute normalization factors on the kept genes."""
        raw = self._require("raw", "load()")
        cfg = self.config
        groups = self._grouping()

        if cfg.filter_method == "filter_by_expr":
            keep = filter_by_expr(raw.counts, group=groups.values)
            self.filter_text = "the filterByExpr rule (about 10 reads in the smallest group, 15 reads in total)"
        else:
            min_samples = cfg.min_samples or smallest_group_size(groups.values)
            min_samples = min(min_samples, raw.n_samples)
            keep = filter_by_cpm(raw.counts, min_cpm=cfg.min_cpm, min_samples=min_samples)
            self.filter_text = f"CPM ≥ {cfg.min_cpm:g} in at least {min_samples} samples"

        if not keep.any():
            raise ValueError(
                "No gene passed the low-count filter. "
                "Suggestion: lower min_cpm / min_samples or check that the count matrix holds raw counts."
            )

        filtered = raw.subset_genes(keep.values)
        factors = calc_norm_factors(filtered.counts, method=cfg.norm_method)
        self.filtered = filtered.with_norm_factors(factors)

        logger.info(
            f"Kept {self.filtered.n_genes} of {raw.n_genes} genes; "
            f"{cfg.norm_method} factors {factors.min():.3f}-{factors.max():.3f}"
        )
        self.interpreter.interpret_filtering(
            raw.n_genes,
            self.filtered.n_genes,
            self.filtered.lib_size,
            self.filtered.norm_factors,
            min_cpm=cfg.min_cpm if cfg.filter_method == "cpm" else None,
        )
        return self.filtered

    def build_design(self) -> DesignMatrix:
        filtered = self._require("filtered", "filter_and_normalize()")
        cfg = self.config
        self.design = build_design_matrix(
            filtered.metadata,
            cfg.design_factors,
            reference_levels=cfg.reference_levels,
            numeric_factors=[f for f in cfg.numeric_factors if f in cfg.design_factors],
        )
        logger.info(f"Design {self.design.formula}: {self.design.n_coefficients} coefficients, "
                    f"{self.design.df_residual} residual df")
        return self.design

    def run_methods(self) -> Dict[Tuple[str, str], DEResult]:
        filtered = self._require("filtered", "filter_and_normalize()")
        design = self._require("design", "build_design()")
        methods = [DEMethod(m) for m in self.config.methods]

        self.de_results = self.engine.run_all_methods(
            filtered, design, self.config.factors_of_interest, methods
        )
        for (method, factor), res in self.de_results.items():
            for w in res.warnings:
                self.warnings.append(f"{method} / {factor}: {w}")
        self.interpreter.interpret_method_results(self.de_results, self.config.padj_threshold)
        return self.de_results

    def compare(self) -> pd.DataFrame:
        de_results = self._require("de_results", "run_methods()")
        self.comparison = build_comparison_table(de_results)
        return self.comparison

    def run(self) -> WalkthroughResult:
        """Run every step and collect the results."""
        self.interpreter.clear()
        print("=" * 60)
        print("DIFFERENTIAL EXPRESSION WALKTHROUGH")
        print("=" * 60)

        print("\n[1/5] Loading data...")
        raw = self.load() if self.raw is None else self.raw
        self.warnings = list(raw.warnings)
        print(f"    ✓ {raw.n_genes:,} genes × {raw.n_samples} samples")
        for w in raw.warnings:
            print(f"    ⚠ {w}")

        print("\n[2/5] Filtering and normalizing...")
        filtered = self.filter_and_normalize()
        print(f"    ✓ Kept {filtered.n_genes:,} genes ({self.config.norm_method} normalization)")
        try:
            qc = self.qc_summary(filtered)
            if qc["outliers"]:
                print(f"    ⚠ Potential outliers: {qc['outliers']}")
        except ValueError as e:
            logger.warning(f"Sample QC skipped: {e}")
            qc = {}

        print("\n[3/5] Building design matrix...")
        design = self.build_design()
        print(f"    ✓ {design.formula} ({design.n_coefficients} coefficients, {design.df_residual} residual df)")

        print("\n[4/5] Running differential expression methods...")
        de_results = self.run_methods()
        for (method, factor), res in de_results.items():
            if res.failed:
                print(f"    ✗ {method} / {factor}: {'; '.join(res.warnings)}")
            else:
                print(f"    ✓ {method} / {factor}: {res.n_significant} significant")

        print("\n[5/5] Comparing methods...")
        comparison = self.compare()
        padj = self.config.padj_threshold
        correlations: Dict[str, pd.DataFrame] = {}
        overlaps: Dict[str, pd.DataFrame] = {}
        compared = set(comparison["factor"]) if not comparison.empty else set()
        for factor in self.config.factors_of_interest:
            if factor not in compared:
                continue
            correlations[factor] = pvalue_correlation(comparison, factor)
            overlaps[factor] = overlap_table(significant_sets(comparison, factor, padj))
            self.interpreter.interpret_method_agreement(correlations[factor], factor, overlaps[factor])
            for method in pd.unique(comparison.loc[comparison["factor"] == factor, "method"]):
                pvals = comparison.loc[
                    (comparison["factor"] == factor) & (comparison["method"] == method), "pvalue"
                ]
                self.interpreter.interpret_pvalue_distribution(pvals, method, factor)

        hit_summary = summarize_hits(comparison, padj)
        agreement = agreement_summary(comparison, self.config.factors_of_interest, padj)
        print(f"    ✓ Compared {comparison['method'].nunique() if not comparison.empty else 0} methods")

        print("\n" + "=" * 60)
        print("WALKTHROUGH COMPLETE")
        print("=" * 60)

        return WalkthroughResult(
            config=self.config,
            raw=raw,
            filtered=filtered,
            design=design,
            de_results=de_results,
            comparison=comparison,
            hit_summary=hit_summary,
            correlations=correlations,
            overlaps=overlaps,
            agreement=agreement,
            qc=qc,
            interpretations=list(self.interpreter.get_all_interpretations()),
            warnings=list(self.warnings),
        )

    # ------------------------------------------------------------- outputs

    def log_cpm(self) -> pd.DataFrame:
        """Normalized log-CPM of the filtered genes."""
        filtered = self._require("filtered", "filter_and_normalize()")
        return self.engine.log_cpm(filtered)

    def qc_summary(self, filtered: ExperimentData) -> Dict[str, Any]:
        """PCA, outliers and per-PC factor effects on the normalized log-CPM."""
        qc = AdvancedQC()
        log_cpm = self.engine.log_cpm(filtered)
        coords, explained = qc.run_pca(log_cpm)
        outliers, distances = qc.detect_outliers(coords)

        cfg = self.config
        factors = [c for c in [cfg.group_column, cfg.stage_column, cfg.sex_column, cfg.batch_column]
                   if c in filtered.metadata.columns]
        effects = qc.assess_factor_effects(coords, filtered.metadata, factors)
        nuisance = [cfg.batch_column] if cfg.batch_column not in cfg.design_factors else []
        self.interpreter.interpret_factor_effects(effects, nuisance)

        return {
            "pca_coords": coords,
            "explained": explained,
            "outliers": outliers,
            "distances": distances,
            "factor_effects": effects,
        }

    def generate_figures(self, result: WalkthroughResult) -> Dict[str, go.Figure]:
        """All report figures. A figure that cannot be drawn is skipped with a warning."""
        cfg = self.config
        figures: Dict[str, go.Figure] = {}

        def add(name: str, build):
            try:
                figures[name] = build()
            except ValueError as e:
                logger.warning(f"Skipping figure '{name}': {e}")

        raw_log = cpm(result.raw.counts, log=True, prior_count=cfg.prior_count)
        filtered_log = self.engine.log_cpm(result.filtered)
        unnormalized = cpm(result.filtered.counts, lib_size=result.filtered.lib_size,
                           log=True, prior_count=cfg.prior_count)
        groups = result.filtered.metadata[cfg.group_column].astype(str).to_dict() \
            if cfg.group_column in result.filtered.metadata.columns else {}

        add("library_sizes", lambda: qc_plots.create_library_size_barplot(result.raw.counts))
        add("count_distribution", lambda: qc_plots.create_count_distribution_boxplot(result.raw.counts))
        add("gene_detection", lambda: qc_plots.create_gene_detection_plot(result.raw.counts))
        add("log_cpm_density", lambda: qc_plots.create_log_cpm_density_plot(
            raw_log, filtered_log, cutoff=np.log2(cfg.min_cpm) if cfg.min_cpm > 0 else None))
        add("normalization", lambda: qc_plots.create_normalization_comparison_plot(
            unnormalized, filtered_log, groups))
        add("sample_similarity", lambda: qc_plots.create_sample_similarity_heatmap(filtered_log))
        if cfg.group_column in result.filtered.metadata.columns:
            symbol = cfg.batch_column if cfg.batch_column in result.filtered.metadata.columns else None
            add("pca", lambda: visualizations.create_pca_plot(
                filtered_log, result.filtered.metadata, cfg.group_column, symbol_by=symbol))
        if result.qc:
            qc = AdvancedQC()
            add("outliers", lambda: qc.create_outlier_plot(
                result.qc["pca_coords"], groups, result.qc["outliers"], result.qc["distances"],
                result.qc["explained"]))
            add("factor_effects", lambda: qc.create_factor_effect_plot(result.qc["factor_effects"]))

        for (method, factor), res in result.de_results.items():
            model = res.model
            if model is None:
                continue
            if model.voom is not None and "voom_trend" not in figures:
                add("voom_trend", lambda: visualizations.create_voom_trend_plot(model.voom))
            if model.dispersion is not None and "bcv" not in figures:
                add("bcv", lambda: visualizations.create_bcv_plot(model.dispersion))

        if not result.comparison.empty:
            add("hits", lambda: visualizations.create_hits_barplot(result.hit_summary, cfg.padj_threshold))
            for factor in result.correlations:
                add(f"pvalue_histograms_{factor}",
                    lambda: visualizations.create_pvalue_histograms(result.comparison, factor))
                add(f"pvalue_scatter_{factor}",
                    lambda: visualizations.create_pvalue_scatter_matrix(result.comparison, factor))
                add(f"pvalue_correlation_{factor}",
                    lambda: visualizations.create_pvalue_correlation_heatmap(
                        result.correlations[factor], title=f"Method agreement: {factor}"))
                add(f"overlap_{factor}",
                    lambda: visualizations.create_venn_diagram(
                        significant_sets(result.comparison, factor, cfg.padj_threshold),
                        title=f"Significant genes: {factor}"))

        return figures

    @staticmethod
    def print_summary(result: WalkthroughResult, n_top: int = 10):
        """Print the tables a reader of the walkthrough looks at."""
        print("\nDesign matrix (first rows):")
        print(result.design.matrix.head(8).to_string())

        print("\nMethod status:")
        print(result.method_status().to_string(index=False))

        if not result.hit_summary.empty:
            print(f"\nSignificant genes (padj < {result.config.padj_threshold}):")
            print(result.hit_summary.to_string())

        for factor, corr in result.correlations.items():
            print(f"\nSpearman correlation of -log10 p-values, {factor}:")
            print(corr.round(3).to_string())

        if not result.agreement.empty:
            print("\nAgreement between methods:")
            print(result.agreement.to_string(index=False))

        for (method, factor), res in result.de_results.items():
            if res.failed:
                continue
            print(f"\nTop {n_top} genes: {method} / {factor}")
            top = res.results_df.sort_values("pvalue").head(n_top)
            print(top[["gene", "log2FoldChange", "aveLogCPM", "stat", "pvalue", "padj"]].to_string(index=False))

        for w in result.warnings:
            print(f"⚠ {w}")


if __name__ == "__main__":
    from analysis_config import load_config

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(name)s %(levelname)s: %(message)s")
    walkthrough = DEWalkthrough(load_config())
    result = walkthrough.run()
    DEWalkthrough.print_summary(result)
