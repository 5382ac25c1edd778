"""Tests for gene-wise linear models, empirical Bayes moderation and BH adjustment."""
import numpy as np
import pandas as pd
import pytest
from scipy import stats
from scipy.special import polygamma
from statsmodels.stats.multitest import multipletests

from design import build_design_matrix
from linear_models import (
    bh_adjust,
    build_results_table,
    coefficient_test,
    ebayes,
    lm_fit,
    moderated_test,
    squeeze_var,
    trigamma_inverse,
)
from normalization import cpm


@pytest.fixture
def three_level():
    """Random log-expression for a 3-level factor, 4 samples per level."""
    rng = np.random.default_rng(11)
    meta = pd.DataFrame(
        {"DPC": ["11.5"] * 4 + ["12.5"] * 4 + ["13.5"] * 4},
        index=[f"s{i}" for i in range(12)],
    )
    design = build_design_matrix(meta, ["DPC"])
    expr = pd.DataFrame(
        rng.normal(5, 1, size=(50, 12)), index=[f"g{i}" for i in range(50)], columns=meta.index
    )
    return expr, design


def test_lm_fit_matches_least_squares(three_level):
    expr, design = three_level
    fit = lm_fit(expr, design)
    beta, _, _, _ = np.linalg.lstsq(design.values, expr.values.T, rcond=None)
    assert np.allclose(fit.coefficients.values, beta.T)
    assert list(fit.coefficients.columns) == design.coefficient_names
    assert np.allclose(fit.df_residual, 9)
    resid = expr.values - beta.T @ design.values.T
    assert np.allclose(fit.sigma.values, np.sqrt((resid ** 2).sum(axis=1) / 9))


def test_weighted_fit_with_unit_weights_equals_unweighted(three_level):
    expr, design = three_level
    plain = lm_fit(expr, design)
    weighted = lm_fit(expr, design, weights=np.ones(expr.shape))
    assert weighted.weighted
    assert np.allclose(plain.coefficients.values, weighted.coefficients.values)
    assert np.allclose(plain.sigma.values, weighted.sigma.values)


def test_lm_fit_rejects_bad_input(three_level):
    expr, design = three_level
    with pytest.raises(ValueError):
        lm_fit(expr.iloc[:, :5], design)
    bad = expr.copy()
    bad.iloc[0, 0] = np.inf
    with pytest.raises(ValueError):
        lm_fit(bad, design)
    with pytest.raises(ValueError):
        lm_fit(expr, design, weights=np.zeros(expr.shape))


def test_single_coefficient_t_test_matches_scipy():
    rng = np.random.default_rng(3)
    meta = pd.DataFrame({"Group": ["A"] * 4 + ["B"] * 4}, index=[f"s{i}" for i in range(8)])
    design = build_design_matrix(meta, ["Group"])
    expr = pd.DataFrame(rng.normal(size=(20, 8)), columns=meta.index)

    res = coefficient_test(lm_fit(expr, design), ["GroupB"])
    expected = stats.ttest_ind(expr.values[:, 4:], expr.values[:, :4], axis=1)
    assert res.test == "t"
    assert np.allclose(res.stat, expected.statistic)
    assert np.allclose(res.pvalue, expected.pvalue)


def test_multi_coefficient_f_test_matches_anova(three_level):
    expr, design = three_level
    res = coefficient_test(lm_fit(expr, design), design.coefficients_for("DPC"))
    groups = [expr.values[:, i * 4:(i + 1) * 4] for i in range(3)]
    expected = stats.f_oneway(*groups, axis=1)
    assert res.test == "F"
    assert res.df1 == 2
    assert np.all(np.isnan(res.effect))
    assert np.allclose(res.stat, expected.statistic)
    assert np.allclose(res.pvalue, expected.pvalue)


def test_unknown_coefficient(three_level):
    expr, design = three_level
    with pytest.raises(ValueError):
        coefficient_test(lm_fit(expr, design), ["GroupKO"])


def test_trigamma_inverse():
    y = np.array([0.5, 1.0, 5.0, 50.0])
    assert np.allclose(trigamma_inverse(polygamma(1, y)), y, rtol=1e-6)
    assert isinstance(trigamma_inverse(1.0), float)


def test_squeeze_var_recovers_prior():
    rng = np.random.default_rng(5)
    df, df_prior, s2_prior = 4.0, 8.0, 0.5
    true_var = s2_prior * df_prior / rng.chisquare(df_prior, size=5000)
    s2 = true_var * rng.chisquare(df, size=5000) / df
    squeezed = squeeze_var(s2, df)
    assert squeezed.df_prior == pytest.approx(df_prior, rel=0.3)
    assert squeezed.s2_prior == pytest.approx(s2_prior, rel=0.15)
    # posterior lies between the gene's own variance and the prior
    lo = np.minimum(s2, squeezed.s2_prior)
    hi = np.maximum(s2, squeezed.s2_prior)
    assert np.all((squeezed.s2_post >= lo - 1e-12) & (squeezed.s2_post <= hi + 1e-12))


def test_squeeze_var_identical_variances_give_infinite_prior_df():
    squeezed = squeeze_var(np.full(100, 0.3), 5.0)
    assert np.isinf(squeezed.df_prior)
    assert np.allclose(squeezed.s2_post, 0.3)


def test_ebayes_moderation(two_group_experiment, two_group_design):
    log_cpm = cpm(two_group_experiment.counts, lib_size=two_group_experiment.effective_lib_size, log=True)
    fit = lm_fit(log_cpm, two_group_design)
    mfit = ebayes(fit)
    assert np.isfinite(mfit.df_prior) and mfit.df_prior > 0
    assert np.all(mfit.df_total <= np.sum(fit.df_residual))
    assert np.all(mfit.df_total >= fit.df_residual)

    trended = ebayes(fit, trend=True)
    assert trended.trend
    assert np.ndim(trended.s2_prior) == 1
    assert len(trended.s2_prior) == len(log_cpm)


def test_moderated_test_finds_de_genes(two_group, two_group_experiment, two_group_design):
    _, _, de_genes = two_group
    log_cpm = cpm(two_group_experiment.counts, lib_size=two_group_experiment.effective_lib_size, log=True)
    res = moderated_test(ebayes(lm_fit(log_cpm, two_group_design), trend=True), ["GroupB"])
    padj = pd.Series(bh_adjust(res.pvalue), index=log_cpm.index)
    assert (padj[de_genes] < 0.05).mean() > 0.7
    assert (padj.drop(de_genes) < 0.05).mean() < 0.05


def test_bh_adjust_matches_statsmodels_and_keeps_nan():
    p = np.array([0.01, 0.04, np.nan, 0.03, 0.5])
    out = bh_adjust(p)
    expected = multipletests(p[~np.isnan(p)], method="fdr_bh")[1]
    assert np.isnan(out[2])
    assert np.allclose(out[~np.isnan(p)], expected)


def test_build_results_table_columns():
    table = build_results_table(
        pd.Index(["a", "b"]), np.array([1.0, np.nan]), np.array([2.0, 3.0]),
        np.array([0.01, 0.2]), np.array([5.0, 6.0]), extra={"dispersion": np.array([0.1, 0.2])},
    )
    assert list(table.columns) == [
        "gene", "log2FoldChange", "aveLogCPM", "stat", "pvalue", "padj", "dispersion"
    ]
    assert table["padj"].tolist() == pytest.approx([0.02, 0.2])
