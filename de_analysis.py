"""
Differential expression with five (plus one optional) statistical procedures.

Implements a "fit once, test many" model: each method fits its model to the
filtered, normalized counts once, then every factor of interest is tested
against that fit.

Methods:
- lm: ordinary least squares on log-CPM, classical t / F tests
- limma_trend: same fit, empirical Bayes moderated variances with an abundance trend
- voom_limma: voom precision weights, weighted least squares, empirical Bayes
- edger_lrt: negative binomial GLM with tagwise dispersions, likelihood ratio test
- edger_ql: negative binomial GLM with trended dispersions, quasi-likelihood F test
- deseq2: PyDESeq2 Wald test (two-level factors only)
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
import logging
import pandas as pd
import numpy as np
from count_data import ExperimentData
from design import DesignMatrix, DesignError
from normalization import cpm, ave_log_cpm
from linear_models import (
    lm_fit,
    ebayes,
    coefficient_test,
    moderated_test,
    build_results_table,
)
from voom import voom, VoomResult
from negative_binomial import (
    estimate_dispersions,
    glm_fit,
    glm_lrt,
    glm_ql_fit,
    glm_ql_ftest,
    DispersionEstimate,
)

logger = logging.getLogger(__name__)


class DEMethod(Enum):
    """Differential expression procedures available in the walkthrough."""

    LM = "lm"
    LIMMA_TREND = "limma_trend"
    VOOM = "voom_limma"
    EDGER_LRT = "edger_lrt"
    EDGER_QL = "edger_ql"
    DESEQ2 = "deseq2"

    @property
    def label(self) -> str:
        return METHOD_LABELS[self]


METHOD_LABELS = {
    DEMethod.LM: "Linear model (OLS)",
    DEMethod.LIMMA_TREND: "limma-trend (eBayes)",
    DEMethod.VOOM: "voom + limma",
    DEMethod.EDGER_LRT: "NB GLM likelihood ratio",
    DEMethod.EDGER_QL: "NB GLM quasi-likelihood F",
    DEMethod.DESEQ2: "DESeq2 Wald",
}


def ensure_gene_column(df: pd.DataFrame) -> pd.DataFrame:
    """
    Ensure DataFrame has a 'gene' column, handling various index/column naming conventions.

    Args:
        df: DataFrame that may have gene info in index or with non-standard column name

    Returns:
        DataFrame with a lowercase "gene" column containing gene identifiers
    """
    if "gene" in df.columns:
        return df

    gene_aliases = [
        "Gene", "GENE", "GeneSymbol", "gene_symbol", "gene_id", "SYMBOL",
        "GeneName", "gene_name", "ensembl_gene_id",
    ]
    for alias in gene_aliases:
        if alias in df.columns:
            df = df.copy()
            df.columns = ["gene" if col == alias else col for col in df.columns]
            return df

    if df.index.name and df.index.name.lower() in ["gene", "genesymbol", "gene_symbol", "symbol", "geneid", "gene_id"]:
        df = df.reset_index()
        df.columns = ["gene"] + list(df.columns[1:])
        return df

    # Unnamed string index holding gene ids
    if df.index.name is None and len(df) > 0 and isinstance(df.index[0], str):
        df = df.reset_index()
        df.columns = ["gene"] + list(df.columns[1:])
        return df

    return df


@dataclass
class DEResult:
    """Result of testing one factor with one method."""

    results_df: pd.DataFrame  # gene, log2FoldChange, aveLogCPM, stat, pvalue, padj (+ extras)
    method: DEMethod
    factor: str
    n_significant: int  # genes with padj < threshold
    warnings: List[str] = field(default_factory=list)
    test: str = ""  # "t", "F", "LRT", "QL F", "Wald"
    model: Optional["FittedModel"] = None

    @property
    def failed(self) -> bool:
        return self.results_df.empty


@dataclass
class FittedModel:
    """A method's model fitted once to the whole experiment."""

    method: DEMethod
    design: DesignMatrix
    ave_log_cpm: np.ndarray
    fit: Any  # LinearModelFit, ModeratedFit, NBGLMFit, QLFit or DeseqDataSet
    voom: Optional[VoomResult] = None
    dispersion: Optional[DispersionEstimate] = None
    offset: Optional[np.ndarray] = None


class DEAnalysisEngine:
    """Runs the differential expression procedures over a filtered experiment."""

    def __init__(
        self,
        padj_threshold: float = 0.05,
        prior_count: float = 2.0,
        prior_df: float = 10.0,
        voom_span: float = 0.5,
    ):
        self.padj_threshold = padj_threshold
        self.prior_count = prior_count
        self.prior_df = prior_df
        self.voom_span = voom_span

    def log_cpm(self, experiment: ExperimentData) -> pd.DataFrame:
        """Normalized log2-CPM matrix used by the linear-model methods."""
        return cpm(
            experiment.counts,
            lib_size=experiment.effective_lib_size,
            log=True,
            prior_count=self.prior_count,
        )

    def fit_method(
        self, method: DEMethod, experiment: ExperimentData, design: DesignMatrix
    ) -> FittedModel:
        """
        Fit a method's model ONCE. Factors are tested afterwards with test_factor.

        Raises:
            ValueError / RuntimeError / numpy LinAlgError if the fit fails
        """
        if list(design.matrix.index) != list(experiment.counts.columns):
            raise ValueError("Design matrix rows are not in count-column order")

        abundance = ave_log_cpm(experiment.counts, lib_size=experiment.effective_lib_size)

        if method in (DEMethod.LM, DEMethod.LIMMA_TREND):
            fit = lm_fit(self.log_cpm(experiment), design)
            if method == DEMethod.LIMMA_TREND:
                fit = ebayes(fit, trend=True)
            return FittedModel(method, design, abundance, fit)

        if method == DEMethod.VOOM:
            v = voom(experiment.counts, design, lib_size=experiment.effective_lib_size, span=self.voom_span)
            fit = ebayes(lm_fit(v.log_cpm, design, weights=v.weights))
            return FittedModel(method, design, abundance, fit, voom=v)

        if method in (DEMethod.EDGER_LRT, DEMethod.EDGER_QL):
            offset = np.log(experiment.effective_lib_size.values)
            disp = estimate_dispersions(
                experiment.counts, design, offset, ave_log_cpm=abundance, prior_df=self.prior_df
            )
            if method == DEMethod.EDGER_LRT:
                fit = glm_fit(experiment.counts, design, disp.tagwise, offset)
            else:
                fit = glm_ql_fit(experiment.counts, design, disp.trended, offset, abundance)
            return FittedModel(method, design, abundance, fit, dispersion=disp, offset=offset)

        if method == DEMethod.DESEQ2:
            return FittedModel(method, design, abundance, self._fit_deseq2(experiment, design))

        raise ValueError(f"Unknown method: {method}")

    def _fit_deseq2(self, experiment: ExperimentData, design: DesignMatrix):
        from pydeseq2.dds import DeseqDataSet

        metadata = experiment.metadata[design.factors].copy()
        for factor in design.factors:
            if factor in design.levels:
                metadata[factor] = metadata[factor].astype(str)

        dds = DeseqDataSet(
            counts=experiment.counts.T,  # PyDESeq2 expects samples × genes
            metadata=metadata,
            design=design.formula,
            refit_cooks=True,
            quiet=True,
        )
        dds.deseq2()
        return dds

    def test_factor(
        self, model: FittedModel, experiment: ExperimentData, factor: str
    ) -> DEResult:
        """
        Test one factor against a fitted model.

        Raises:
            DesignError if the factor is not in the design; ValueError when the
            method cannot test this factor
        """
        coefs = model.design.coefficients_for(factor)
        genes = experiment.counts.index
        method = model.method

        if method == DEMethod.LM:
            res = coefficient_test(model.fit, coefs)
            table = build_results_table(genes, res.effect, res.stat, res.pvalue, model.ave_log_cpm)
            test = res.test
        elif method in (DEMethod.LIMMA_TREND, DEMethod.VOOM):
            res = moderated_test(model.fit, coefs)
            table = build_results_table(genes, res.effect, res.stat, res.pvalue, model.ave_log_cpm)
            test = f"moderated {res.test}"
        elif method == DEMethod.EDGER_LRT:
            res = glm_lrt(
                experiment.counts, model.design, model.fit.dispersion, model.offset, factor,
                full_fit=model.fit,
            )
            table = build_results_table(
                genes, res.log2_fold_change, res.statistic, res.pvalue, model.ave_log_cpm,
                extra={"dispersion": model.fit.dispersion},
            )
            test = "LRT"
        elif method == DEMethod.EDGER_QL:
            res = glm_ql_ftest(model.fit, experiment.counts, factor)
            table = build_results_table(
                genes, res.log2_fold_change, res.statistic, res.pvalue, model.ave_log_cpm,
                extra={"ql_dispersion": model.fit.s2_post},
            )
            test = "QL F"
        elif method == DEMethod.DESEQ2:
            table = self._test_deseq2(model, factor)
            test = "Wald"
        else:
            raise ValueError(f"Unknown method: {method}")

        n_sig = int((table["padj"] < self.padj_threshold).sum())
        return DEResult(results_df=table, method=method, factor=factor, n_significant=n_sig, test=test)

    def _test_deseq2(self, model: FittedModel, factor: str) -> pd.DataFrame:
        from pydeseq2.ds import DeseqStats

        levels = model.design.levels.get(factor)
        if levels is None or len(levels) != 2:
            raise ValueError(
                f"DESeq2 Wald test here supports two-level factors only; "
                f"'{factor}' has {len(levels) if levels else 'continuous'} levels. "
                f"Use an LRT or F-test method for multi-level factors."
            )

        stat_res = DeseqStats(model.fit, contrast=[factor, levels[1], levels[0]], quiet=True)
        stat_res.summary()
        res = stat_res.results_df

        table = build_results_table(
            res.index, res["log2FoldChange"].values, res["stat"].values, res["pvalue"].values,
            model.ave_log_cpm,
            extra={"baseMean": res["baseMean"].values, "lfcSE": res["lfcSE"].values},
        )
        # Keep DESeq2's own adjusted p-values (independent filtering)
        table["padj"] = res["padj"].values
        return table

    def run_method(
        self,
        method: DEMethod,
        experiment: ExperimentData,
        design: DesignMatrix,
        factors: List[str],
    ) -> Dict[str, DEResult]:
        """
        Fit one method once and test every factor.

        Failed fits give every factor an empty result with the reason in
        warnings; a failed test only affects its own factor.
        """
        results = {}

        try:
            model = self.fit_method(method, experiment, design)
        except (ValueError, RuntimeError, TypeError, np.linalg.LinAlgError) as e:
            logger.error(f"{method.value} model fit failed: {str(e)}", exc_info=True)
            for factor in factors:
                results[factor] = DEResult(
                    results_df=pd.DataFrame(),
                    method=method,
                    factor=factor,
                    n_significant=0,
                    warnings=[f"Model fit failed: {str(e)}"],
                )
            return results

        for factor in factors:
            try:
                result = self.test_factor(model, experiment, factor)
                result.model = model
                results[factor] = result
            except (ValueError, RuntimeError, TypeError, DesignError, np.linalg.LinAlgError) as e:
                logger.error(f"{method.value} test of '{factor}' failed: {str(e)}", exc_info=True)
                results[factor] = DEResult(
                    results_df=pd.DataFrame(),
                    method=method,
                    factor=factor,
                    n_significant=0,
                    warnings=[f"Test failed: {str(e)}"],
                )

        return results

    def run_all_methods(
        self,
        experiment: ExperimentData,
        design: DesignMatrix,
        factors: List[str],
        methods: Optional[List[DEMethod]] = None,
    ) -> Dict[Tuple[str, str], DEResult]:
        """
        Main entry point: every method × every factor.

        Returns:
            Dict mapping (method value, factor) → DEResult
        """
        if methods is None:
            methods = [m for m in DEMethod if m != DEMethod.DESEQ2]

        results = {}
        for method in methods:
            logger.info(f"Running {method.label}")
            for factor, result in self.run_method(method, experiment, design, factors).items():
                results[(method.value, factor)] = result
        return results

    @staticmethod
    def filter_results(
        results_df: pd.DataFrame,
        padj_threshold: float = 0.05,
        lfc_threshold: float = 0.0,
    ) -> pd.DataFrame:
        """
        Filter DE results to significant genes.

        The fold-change cut is only applied where a fold change exists (tests
        of multi-coefficient factors report NaN).
        """
        sig = results_df["padj"] < padj_threshold
        if lfc_threshold > 0:
            lfc = results_df["log2FoldChange"]
            sig &= lfc.isna() | (lfc.abs() > lfc_threshold)
        return results_df[sig].copy()
