"""Tests for the Excel and HTML export of walkthrough results."""
import pytest
import pandas as pd
from openpyxl import load_workbook

from analysis_config import AnalysisConfig
from de_pipeline import DEWalkthrough
from export_engine import ExportEngine


@pytest.fixture(scope="module")
def walkthrough_and_result(demo_frames):
    from count_data import ExperimentData

    counts, metadata = demo_frames
    wt = DEWalkthrough(AnalysisConfig(methods=["lm", "limma_trend"], reference_levels={"Group": "WT"}))
    wt.use_experiment(ExperimentData.from_frames(counts, metadata))
    return wt, wt.run()


@pytest.fixture
def engine():
    return ExportEngine()


def test_sanitize_sheet_name(engine):
    assert engine.sanitize_sheet_name("a/b:c*d?e[f]g\\h") == "a_b_c_d_e_f_g_h"
    assert engine.sanitize_sheet_name("'quoted'") == "quoted"
    assert len(engine.sanitize_sheet_name("x" * 50)) == 31


def test_unique_sheet_name(engine):
    used = set()
    first = engine._unique_sheet_name("voom_limma_Group", used)
    second = engine._unique_sheet_name("VOOM_LIMMA_GROUP", used)
    assert first == "voom_limma_Group"
    assert second != first
    assert second.endswith("~2")
    long_a = engine._unique_sheet_name("y" * 40, used)
    long_b = engine._unique_sheet_name("y" * 40, used)
    assert len(long_b) == 31
    assert long_a != long_b


def test_export_excel(engine, walkthrough_and_result, tmp_path):
    _, result = walkthrough_and_result
    path = tmp_path / "results.xlsx"
    engine.export_excel(path, result)

    sheets = load_workbook(path, read_only=True).sheetnames
    for name in [
        "lm_Group", "lm_DPC", "limma_trend_Group", "limma_trend_DPC",
        "Comparison", "Hit Summary", "Agreement", "Correlation_Group", "Design", "Settings",
    ]:
        assert name in sheets, name

    table = pd.read_excel(path, sheet_name="lm_Group")
    assert list(table.columns) == list(result.de_results[("lm", "Group")].results_df.columns)
    assert table["pvalue"].is_monotonic_increasing


def test_settings_sheet(engine, walkthrough_and_result, tmp_path):
    _, result = walkthrough_and_result
    path = tmp_path / "results.xlsx"
    engine.export_excel(path, result)

    settings = pd.read_excel(path, sheet_name="Settings", header=None)
    values = dict(zip(settings[0].astype(str), settings[1].astype(str)))
    assert values["Design"] == "~ Group + Sex + DPC"
    assert values["Samples"] == "24"
    assert values["lm / Group"].startswith("SUCCESS (t,")
    assert "norm_method" in values


def test_export_excel_skips_failed_results(engine, walkthrough_and_result, tmp_path):
    from de_analysis import DEMethod, DEResult

    _, result = walkthrough_and_result
    result.de_results[("voom_limma", "Group")] = DEResult(
        pd.DataFrame(), DEMethod.VOOM, "Group", 0, warnings=["Model fit failed: test"]
    )
    try:
        path = tmp_path / "results.xlsx"
        engine.export_excel(path, result)
        sheets = load_workbook(path, read_only=True).sheetnames
        assert "voom_limma_Group" not in sheets
        settings = pd.read_excel(path, sheet_name="Settings", header=None)
        status = dict(zip(settings[0].astype(str), settings[1].astype(str)))
        assert status["voom_limma / Group"].startswith("FAILED")
    finally:
        del result.de_results[("voom_limma", "Group")]


def test_export_figures_html(engine, walkthrough_and_result, tmp_path):
    wt, result = walkthrough_and_result
    figures = wt.generate_figures(result)
    paths = engine.export_figures_html(tmp_path / "figures", figures)
    assert len(paths) == len(figures)
    assert all(p.exists() and p.suffix == ".html" for p in paths)
    assert (tmp_path / "figures" / "library_sizes.html").exists()
