"""Tests for design matrix construction."""
import numpy as np
import pandas as pd
import pytest

from design import INTERCEPT, DesignError, build_design_matrix


@pytest.fixture
def metadata():
    return pd.DataFrame(
        {
            "Group": ["WT", "KO", "WT", "KO", "WT", "KO", "WT", "KO"],
            "DPC": [11.5, 11.5, 12.5, 12.5, 13.5, 13.5, 11.5, 13.5],
            "Sex": ["F", "F", "M", "M", "F", "M", "M", "F"],
        },
        index=pd.Index([f"s{i}" for i in range(8)], name="Sample"),
    )


def test_treatment_coding_with_reference(metadata):
    design = build_design_matrix(metadata, ["Group"], reference_levels={"Group": "WT"})
    assert design.coefficient_names == [INTERCEPT, "GroupKO"]
    assert design.matrix["GroupKO"].tolist() == [0, 1, 0, 1, 0, 1, 0, 1]
    assert design.reference_levels == {"Group": "WT"}
    assert design.levels["Group"] == ["WT", "KO"]


def test_default_reference_is_first_level(metadata):
    design = build_design_matrix(metadata, ["Group"])
    # alphabetical: KO before WT
    assert design.coefficients_for("Group") == ["GroupWT"]


def test_numeric_levels_sorted_numerically(metadata):
    design = build_design_matrix(metadata, ["DPC"])
    assert design.coefficients_for("DPC") == ["DPC12.5", "DPC13.5"]
    assert design.levels["DPC"] == ["11.5", "12.5", "13.5"]


def test_numeric_factor_is_one_column(metadata):
    design = build_design_matrix(metadata, ["DPC"], numeric_factors=["DPC"])
    assert design.coefficients_for("DPC") == ["DPC"]
    assert np.allclose(design.matrix["DPC"].values, metadata["DPC"].values)


def test_additive_design_bookkeeping(metadata):
    design = build_design_matrix(metadata, ["Group", "Sex", "DPC"], reference_levels={"Group": "WT"})
    assert design.formula == "~ Group + Sex + DPC"
    assert design.n_coefficients == 5
    assert design.df_residual == 3
    assert design.coefficient_indices("DPC") == [3, 4]
    assert list(design.matrix.index) == list(metadata.index)


def test_drop_factor_gives_null_model(metadata):
    design = build_design_matrix(metadata, ["Group", "DPC"])
    reduced = design.drop_factor("DPC")
    assert reduced.factors == ["Group"]
    assert "DPC12.5" not in reduced.coefficient_names
    assert reduced.n_coefficients == 2


def test_coefficients_for_unknown_factor(metadata):
    design = build_design_matrix(metadata, ["Group"])
    with pytest.raises(DesignError):
        design.coefficients_for("Sex")


def test_no_intercept_keeps_all_levels_of_first_factor(metadata):
    design = build_design_matrix(metadata, ["Group"], intercept=False)
    assert design.coefficient_names == ["GroupKO", "GroupWT"]


def test_unknown_factor(metadata):
    with pytest.raises(DesignError) as exc_info:
        build_design_matrix(metadata, ["Genotype"])
    assert exc_info.value.details["factor"] == "Genotype"


def test_single_level_factor(metadata):
    meta = metadata.assign(Batch="Run1")
    with pytest.raises(DesignError):
        build_design_matrix(meta, ["Batch"])


def test_bad_reference_level(metadata):
    with pytest.raises(DesignError):
        build_design_matrix(metadata, ["Group"], reference_levels={"Group": "HET"})


def test_missing_values(metadata):
    meta = metadata.copy()
    meta.loc["s3", "Sex"] = np.nan
    with pytest.raises(DesignError):
        build_design_matrix(meta, ["Sex"])


def test_confounded_factors_are_rank_deficient(metadata):
    meta = metadata.assign(Genotype=metadata["Group"])
    with pytest.raises(DesignError) as exc_info:
        build_design_matrix(meta, ["Group", "Genotype"])
    assert "rank deficient" in exc_info.value.message


def test_no_residual_df():
    meta = pd.DataFrame({"Group": ["A", "B"]}, index=["s1", "s2"])
    with pytest.raises(DesignError):
        build_design_matrix(meta, ["Group"])


def test_non_numeric_numeric_factor(metadata):
    with pytest.raises(DesignError):
        build_design_matrix(metadata, ["Sex"], numeric_factors=["Sex"])
