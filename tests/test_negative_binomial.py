"""Tests for negative binomial GLMs, dispersion estimation and the LRT / QL F tests."""
import numpy as np
import pandas as pd
import pytest
import statsmodels.api as sm

from conftest import simulate_two_group
from count_data import ExperimentData
from design import DesignMatrix, build_design_matrix
from negative_binomial import (
    bcv,
    estimate_dispersions,
    glm_fit,
    glm_lrt,
    glm_ql_fit,
    glm_ql_ftest,
    nb_deviance,
    nb_unit_deviance,
)
from normalization import ave_log_cpm


@pytest.fixture(scope="module")
def nb_data():
    counts, metadata = simulate_two_group(n_genes=200, dispersion=0.1, seed=21)
    exp = ExperimentData.from_frames(counts, metadata)
    design = build_design_matrix(exp.metadata, ["Group"], reference_levels={"Group": "A"})
    offset = np.log(exp.lib_size.values)
    return exp, design, offset, list(counts.index[:30])


def test_unit_deviance_zero_at_saturation():
    y = np.array([[0.0, 3.0, 10.0]])
    assert np.allclose(nb_unit_deviance(y, y, np.array([0.1])), 0.0)
    assert np.allclose(nb_unit_deviance(y, y, np.array([0.0])), 0.0)


def test_deviance_tends_to_poisson():
    y = np.array([[2.0, 7.0, 0.0, 15.0]])
    mu = np.array([[3.0, 6.0, 1.0, 12.0]])
    poisson = nb_deviance(y, mu, np.array([0.0]))
    nearly = nb_deviance(y, mu, np.array([1e-6]))
    assert nearly == pytest.approx(poisson, rel=1e-4)


def test_glm_fit_matches_statsmodels(nb_data):
    exp, design, offset, _ = nb_data
    fit = glm_fit(exp.counts, design, 0.1, offset)
    assert fit.converged.all()
    for i in [0, 5, 50]:
        family = sm.families.NegativeBinomial(alpha=0.1)
        ref = sm.GLM(exp.counts.values[i], design.values, family=family, offset=offset).fit()
        assert np.allclose(fit.coefficients[i], ref.params, atol=1e-3)
        assert fit.deviance[i] == pytest.approx(ref.deviance, rel=1e-3)


def test_glm_fit_all_zero_gene_does_not_break():
    meta = pd.DataFrame({"Group": ["A", "A", "B", "B"]}, index=list("abcd"))
    design = build_design_matrix(meta, ["Group"])
    counts = pd.DataFrame([[0, 0, 0, 0], [10, 12, 30, 28]], index=["zero", "g"], columns=list("abcd"))
    fit = glm_fit(counts, design, 0.05, np.log(np.full(4, 1e6)))
    assert np.all(np.isfinite(fit.coefficients))
    assert fit.fitted_values[0].max() < 1e-3


def test_glm_fit_design_mismatch(nb_data):
    exp, design, offset, _ = nb_data
    with pytest.raises(ValueError):
        glm_fit(exp.counts.iloc[:, :4], design, 0.1, offset[:4])


def test_log2_coefficients(nb_data):
    exp, design, offset, _ = nb_data
    fit = glm_fit(exp.counts, design, 0.1, offset)
    log2 = fit.log2_coefficients
    assert list(log2.columns) == design.coefficient_names
    assert np.allclose(log2.values, fit.coefficients / np.log(2))


def test_estimate_dispersions(nb_data):
    exp, design, offset, _ = nb_data
    disp = estimate_dispersions(exp.counts, design, offset)
    assert 0.03 < disp.common < 0.3
    assert disp.common_bcv == pytest.approx(np.sqrt(disp.common))
    assert disp.trended.shape == disp.tagwise.shape == (exp.n_genes,)
    assert np.all(disp.tagwise > 0) and np.all(disp.trended > 0)
    assert disp.prior_n == pytest.approx(10 / design.df_residual)
    assert np.allclose(bcv(disp.tagwise), np.sqrt(disp.tagwise))


def test_estimate_dispersions_needs_residual_df():
    names = ["GroupA", "GroupB", "GroupC"]
    design = DesignMatrix(
        matrix=pd.DataFrame(np.eye(3), index=list("abc"), columns=names), terms={"Group": names}
    )
    counts = pd.DataFrame([[1, 2, 3], [4, 5, 6]], columns=list("abc"))
    with pytest.raises(ValueError):
        estimate_dispersions(counts, design, np.zeros(3))


def test_lrt_detects_de_genes(nb_data):
    exp, design, offset, de_genes = nb_data
    disp = estimate_dispersions(exp.counts, design, offset)
    res = glm_lrt(exp.counts, design, disp.tagwise, offset, "Group")
    assert res.df == 1
    assert np.all(res.statistic >= 0)
    pvalue = pd.Series(res.pvalue, index=exp.counts.index)
    assert pvalue[de_genes].median() < 1e-3
    assert pvalue.drop(de_genes).median() > 0.2
    # simulated |log2FC| is 2
    assert np.median(np.abs(res.log2_fold_change[:30])) == pytest.approx(2.0, abs=0.5)


def test_ql_ftest(nb_data):
    exp, design, offset, de_genes = nb_data
    abundance = ave_log_cpm(exp.counts)
    disp = estimate_dispersions(exp.counts, design, offset, ave_log_cpm=abundance)
    qlfit = glm_ql_fit(exp.counts, design, disp.trended, offset, abundance)
    assert np.all(qlfit.s2_post > 0)
    assert qlfit.df_prior > 0

    res = glm_ql_ftest(qlfit, exp.counts, "Group")
    assert res.df1 == 1
    assert np.all(res.df2 >= design.df_residual)
    pvalue = pd.Series(res.pvalue, index=exp.counts.index)
    assert pvalue[de_genes].median() < 1e-2


def test_multi_level_factor_has_no_fold_change():
    counts, _ = simulate_two_group(n_genes=60, n_per_group=6, seed=4)
    meta = pd.DataFrame(
        {"DPC": ["11.5", "12.5", "13.5"] * 4}, index=counts.columns
    )
    design = build_design_matrix(meta, ["DPC"])
    offset = np.log(counts.sum(axis=0).values.astype(float))
    res = glm_lrt(counts, design, 0.05, offset, "DPC")
    assert res.df == 2
    assert np.all(np.isnan(res.log2_fold_change))
    assert np.all((res.pvalue >= 0) & (res.pvalue <= 1))
