"""Tests for the method runner: fit each method once, test each factor."""
import numpy as np
import pandas as pd
import pytest

from conftest import simulate_two_group
from count_data import ExperimentData
from de_analysis import DEAnalysisEngine, DEMethod, DEResult, ensure_gene_column
from design import build_design_matrix
from normalization import calc_norm_factors

RESULT_COLUMNS = ["gene", "log2FoldChange", "aveLogCPM", "stat", "pvalue", "padj"]


@pytest.fixture
def engine():
    return DEAnalysisEngine(padj_threshold=0.05)


def test_ensure_gene_column_with_named_index():
    df = pd.DataFrame(
        {"log2FoldChange": [1.5, -2.0], "padj": [0.01, 0.05]},
        index=pd.Index(["Xist", "Sox9"], name="Gene"),
    )
    result = ensure_gene_column(df)
    assert list(result["gene"]) == ["Xist", "Sox9"]


def test_ensure_gene_column_symbol_alias():
    df = pd.DataFrame({"SYMBOL": ["Xist", "Amh"], "padj": [0.01, 0.05]})
    assert "gene" in ensure_gene_column(df).columns


def test_method_labels():
    assert DEMethod("voom_limma") is DEMethod.VOOM
    assert all(m.label for m in DEMethod)


@pytest.mark.parametrize(
    "method", [DEMethod.LM, DEMethod.LIMMA_TREND, DEMethod.VOOM, DEMethod.EDGER_LRT, DEMethod.EDGER_QL]
)
def test_each_method_finds_simulated_de_genes(engine, method, two_group, two_group_experiment, two_group_design):
    _, _, de_genes = two_group
    results = engine.run_method(method, two_group_experiment, two_group_design, ["Group"])
    res = results["Group"]

    assert isinstance(res, DEResult)
    assert not res.failed, res.warnings
    assert res.model is not None and res.model.method == method
    table = res.results_df
    assert list(table.columns[:6]) == RESULT_COLUMNS
    assert len(table) == two_group_experiment.n_genes
    assert table["pvalue"].between(0, 1).all()

    padj = table.set_index("gene")["padj"]
    assert (padj[de_genes] < 0.05).mean() > 0.6
    assert (padj.drop(de_genes) < 0.05).sum() <= 10
    assert res.n_significant == int((table["padj"] < 0.05).sum())

    lfc = table.set_index("gene")["log2FoldChange"]
    up = de_genes[0::2]  # even positions were simulated up in B
    assert (lfc[up] > 0).mean() > 0.9


def test_test_labels(engine, two_group_experiment, two_group_design):
    expected = {
        DEMethod.LM: "t",
        DEMethod.LIMMA_TREND: "moderated t",
        DEMethod.VOOM: "moderated t",
        DEMethod.EDGER_LRT: "LRT",
        DEMethod.EDGER_QL: "QL F",
    }
    results = engine.run_all_methods(two_group_experiment, two_group_design, ["Group"])
    assert set(results) == {(m.value, "Group") for m in expected}
    for method, label in expected.items():
        assert results[(method.value, "Group")].test == label


def test_method_extras(engine, two_group_experiment, two_group_design):
    lrt = engine.run_method(DEMethod.EDGER_LRT, two_group_experiment, two_group_design, ["Group"])["Group"]
    assert "dispersion" in lrt.results_df.columns
    assert lrt.model.dispersion is not None
    ql = engine.run_method(DEMethod.EDGER_QL, two_group_experiment, two_group_design, ["Group"])["Group"]
    assert "ql_dispersion" in ql.results_df.columns
    voom = engine.run_method(DEMethod.VOOM, two_group_experiment, two_group_design, ["Group"])["Group"]
    assert voom.model.voom is not None


@pytest.fixture
def three_stage():
    """Two-group counts relabelled with a 3-level stage factor crossed with the groups."""
    counts, metadata = simulate_two_group(n_genes=150, n_per_group=6, seed=9)
    metadata = metadata.assign(DPC=[11.5, 12.5, 13.5] * 4)
    exp = ExperimentData.from_frames(counts, metadata)
    exp = exp.with_norm_factors(calc_norm_factors(exp.counts))
    design = build_design_matrix(exp.metadata, ["Group", "DPC"], reference_levels={"Group": "A"})
    return exp, design


def test_multi_level_factor_uses_f_test(engine, three_stage):
    exp, design = three_stage
    results = engine.run_method(DEMethod.LIMMA_TREND, exp, design, ["Group", "DPC"])
    assert results["DPC"].test == "moderated F"
    assert results["DPC"].results_df["log2FoldChange"].isna().all()
    assert results["Group"].results_df["log2FoldChange"].notna().all()
    # DPC has no simulated effect
    assert results["DPC"].results_df["pvalue"].median() > 0.2


def test_unknown_factor_fails_only_that_factor(engine, two_group_experiment, two_group_design):
    results = engine.run_method(DEMethod.LM, two_group_experiment, two_group_design, ["Group", "Sex"])
    assert not results["Group"].failed
    assert results["Sex"].failed
    assert results["Sex"].warnings[0].startswith("Test failed")


def test_failed_fit_reported_for_every_factor(engine, two_group_experiment, two_group_design):
    shuffled = build_design_matrix(
        two_group_experiment.metadata.iloc[::-1], ["Group"], reference_levels={"Group": "A"}
    )
    results = engine.run_method(DEMethod.VOOM, two_group_experiment, shuffled, ["Group"])
    assert results["Group"].failed
    assert results["Group"].warnings[0].startswith("Model fit failed")
    assert results["Group"].n_significant == 0


def test_deseq2_two_level_factor(engine, two_group, two_group_experiment, two_group_design):
    pytest.importorskip("pydeseq2")
    _, _, de_genes = two_group
    res = engine.run_method(DEMethod.DESEQ2, two_group_experiment, two_group_design, ["Group"])["Group"]
    assert not res.failed, res.warnings
    assert res.test == "Wald"
    assert {"baseMean", "lfcSE"} <= set(res.results_df.columns)
    padj = res.results_df.set_index("gene")["padj"]
    assert (padj[de_genes] < 0.05).mean() > 0.7


def test_filter_results_keeps_multi_coefficient_rows():
    df = pd.DataFrame(
        {
            "gene": ["a", "b", "c", "d"],
            "log2FoldChange": [2.0, 0.2, np.nan, -3.0],
            "padj": [0.01, 0.01, 0.01, 0.5],
        }
    )
    out = DEAnalysisEngine.filter_results(df, padj_threshold=0.05, lfc_threshold=1.0)
    assert out["gene"].tolist() == ["a", "c"]


def test_log_cpm_uses_effective_library_sizes(engine, two_group_experiment):
    log_cpm = engine.log_cpm(two_group_experiment)
    assert log_cpm.shape == two_group_experiment.counts.shape
    assert np.all(np.isfinite(log_cpm.values))
