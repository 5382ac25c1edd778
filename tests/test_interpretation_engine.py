"""Tests for the written commentary of the walkthrough."""
import numpy as np
import pandas as pd
import pytest

from de_analysis import DEMethod, DEResult
from interpretation_engine import Interpretation, InterpretationEngine


@pytest.fixture
def engine():
    return InterpretationEngine()


def _de_result(method, factor, padj, lfc):
    df = pd.DataFrame({
        "gene": [f"g{i}" for i in range(len(padj))],
        "log2FoldChange": lfc,
        "pvalue": padj,
        "padj": padj,
    })
    return DEResult(df, DEMethod(method), factor, int((np.asarray(padj) < 0.05).sum()), test="t")


def test_interpret_filtering(engine):
    lib = pd.Series([1e6, 1.2e6, 0.9e6])
    interps = engine.interpret_filtering(10000, 8000, lib, pd.Series([0.95, 1.0, 1.05]), min_cpm=1.0)
    titles = [i.title for i in interps]
    assert "Low-count Filtering" in titles
    assert "Scaling Normalization" in titles
    assert "Aggressive Filtering" not in titles
    assert interps[0].evidence["fraction_kept"] == pytest.approx(0.8)


def test_interpret_filtering_warnings(engine):
    lib = pd.Series([5e6, 1e6])
    interps = engine.interpret_filtering(10000, 1000, lib, pd.Series([0.5, 2.0]))
    titles = [i.title for i in interps]
    assert "Aggressive Filtering" in titles
    assert "Unequal Library Sizes" in titles
    norm = next(i for i in interps if i.title == "Scaling Normalization")
    assert norm.level == "important"


def test_interpret_method_results(engine):
    results = {
        ("lm", "Group"): _de_result("lm", "Group", [0.01, 0.02, 0.5], [1.0, -1.0, 0.1]),
        ("lm", "DPC"): _de_result("lm", "DPC", [0.01, 0.5, 0.5], [np.nan] * 3),
        ("voom_limma", "Group"): DEResult(
            pd.DataFrame(), DEMethod.VOOM, "Group", 0, warnings=["Model fit failed: singular"]
        ),
    }
    interps = engine.interpret_method_results(results, 0.05)
    assert len(interps) == 3
    by_title = {i.title: i for i in interps}
    assert by_title["lm: Group"].evidence["up"] == 1
    assert "no single direction" in by_title["lm: DPC"].description
    failed = by_title["voom_limma failed for Group"]
    assert failed.level == "critical"
    assert "singular" in failed.description


def test_interpret_method_agreement(engine):
    corr = pd.DataFrame(
        [[1.0, 0.9, 0.5], [0.9, 1.0, 0.6], [0.5, 0.6, 1.0]],
        index=["lm", "limma_trend", "edger_ql"], columns=["lm", "limma_trend", "edger_ql"],
    )
    overlap = pd.DataFrame([
        {"method_a": "lm", "method_b": "limma_trend", "n_a": 10, "n_b": 12, "intersection": 9, "jaccard": 9 / 13},
        {"method_a": "lm", "method_b": "edger_ql", "n_a": 10, "n_b": 20, "intersection": 5, "jaccard": 0.2},
    ])
    interps = engine.interpret_method_agreement(corr, "Group", overlap)
    assert interps[0].level == "important"
    assert interps[0].evidence["weakest_pair"] == ["lm", "edger_ql"]
    assert interps[0].evidence["strongest_pair"] == ["lm", "limma_trend"]
    assert interps[1].evidence["min_jaccard"] == pytest.approx(0.2)


def test_interpret_method_agreement_single_method(engine):
    assert engine.interpret_method_agreement(pd.DataFrame([[1.0]]), "Group") == []


def test_pvalue_distribution_signal(engine):
    rng = np.random.default_rng(0)
    p = np.concatenate([rng.uniform(0, 1e-4, 300), rng.uniform(size=700)])
    interps = engine.interpret_pvalue_distribution(pd.Series(p), "lm", "Group")
    assert interps[0].title.startswith("Signal detected")


def test_pvalue_distribution_conservative(engine):
    rng = np.random.default_rng(1)
    p = rng.beta(5, 1, size=1000)
    interps = engine.interpret_pvalue_distribution(pd.Series(p), "lm", "DPC")
    assert interps[0].title.startswith("Conservative")
    assert interps[0].level == "important"


def test_pvalue_distribution_uniform(engine):
    p = np.linspace(0.001, 0.999, 1000)
    interps = engine.interpret_pvalue_distribution(pd.Series(p), "lm", "DPC")
    assert interps[0].title.startswith("Little signal")


def test_pvalue_distribution_too_few(engine):
    assert engine.interpret_pvalue_distribution(pd.Series([0.1, 0.2]), "lm", "Group") == []


def test_interpret_factor_effects(engine):
    effects = pd.DataFrame({"PC1": [0.7, 0.5], "PC2": [0.1, 0.05]}, index=["Group", "SeqRun"])
    interps = engine.interpret_factor_effects(effects, ["SeqRun"])
    assert len(interps) == 1
    assert interps[0].evidence["flagged_pcs"] == {"PC1": 0.5}
    assert engine.interpret_factor_effects(effects, ["Sex"]) == []


def test_methods_text(engine):
    text = engine.generate_methods_text({
        "design": "~ Group + Sex + DPC",
        "methods": ["lm", "voom_limma", "edger_ql"],
        "padj": 0.1,
        "n_samples": 24,
        "n_genes": 12000,
    })
    assert "~ Group + Sex + DPC" in text
    assert "voom precision weights" in text
    assert "quasi-likelihood" in text
    assert "DESeq2" not in text
    assert "12,000 genes in 24 samples" in text


def test_accumulate_and_clear(engine):
    engine.interpret_filtering(100, 90, pd.Series([1e6, 1e6]))
    assert all(isinstance(i, Interpretation) for i in engine.get_all_interpretations())
    assert len(engine.get_all_interpretations()) == 1
    engine.clear()
    assert engine.get_all_interpretations() == []


def test_filtering_threshold_is_inclusive(engine):
    interps = engine.interpret_filtering(100, 90, pd.Series([1e6, 1e6]), min_cpm=0.5)
    assert "passed CPM ≥ 0.5" in interps[0].description


def test_methods_text_describes_the_filter_used(engine):
    text = engine.generate_methods_text({"filter": "the filterByExpr rule", "methods": ["lm"]})
    assert "passed the filterByExpr rule" in text
    assert "CPM" not in text.split("### Differential Expression")[0]
