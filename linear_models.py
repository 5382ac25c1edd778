"""
Gene-wise linear models on log-expression values.

Covers two of the walkthrough's procedures:
- ordinary least squares per gene with classical t / F tests
- the same fits with empirical Bayes moderated variances (limma's eBayes),
  where each gene's residual variance is shrunk toward a common or
  abundance-dependent prior estimated from all genes

Weighted fits (observation-level weights from voom) go through the same code.
"""

from dataclasses import dataclass
from typing import Dict, List, Optional, Union
import warnings
import logging
import pandas as pd
import numpy as np
from scipy import stats
from scipy.special import digamma, polygamma
from statsmodels.stats.multitest import multipletests
from design import DesignMatrix

logger = logging.getLogger(__name__)


@dataclass
class LinearModelFit:
    """Result of fitting the same linear model to every gene."""

    coefficients: pd.DataFrame  # genes × coefficients
    stdev_unscaled: pd.DataFrame  # genes × coefficients, sqrt(diag((X'WX)^-1))
    cov_unscaled: np.ndarray  # (p, p) shared, or (genes, p, p) for weighted fits
    sigma: pd.Series  # residual standard deviation per gene
    df_residual: np.ndarray  # residual degrees of freedom per gene
    amean: pd.Series  # average log-expression per gene
    design: DesignMatrix
    weighted: bool = False

    @property
    def genes(self) -> pd.Index:
        return self.coefficients.index


@dataclass
class SqueezedVariance:
    """Empirical Bayes posterior variances."""

    s2_prior: Union[float, np.ndarray]
    df_prior: float
    s2_post: np.ndarray


@dataclass
class ModeratedFit:
    """LinearModelFit with empirical Bayes moderated variances."""

    fit: LinearModelFit
    s2_prior: Union[float, np.ndarray]
    df_prior: float
    s2_post: np.ndarray
    df_total: np.ndarray
    trend: bool = False


@dataclass
class CoefficientTest:
    """Per-gene test of one or more coefficients."""

    effect: np.ndarray  # coefficient estimate (NaN for multi-coefficient tests)
    stat: np.ndarray  # t statistic (one coefficient) or F statistic
    pvalue: np.ndarray
    df1: int
    df2: np.ndarray
    test: str  # "t" or "F"


def lm_fit(
    expr: pd.DataFrame,
    design: DesignMatrix,
    weights: Optional[Union[pd.DataFrame, np.ndarray]] = None,
) -> LinearModelFit:
    """
    Fit a linear model to each gene by (weighted) least squares.

    Args:
        expr: genes × samples log-expression values
        design: Design matrix with samples in the same order as expr columns
        weights: Optional genes × samples positive observation weights

    Returns:
        LinearModelFit
    """
    y = np.asarray(expr, dtype=float)
    X = design.values
    n, p = X.shape

    if y.shape[1] != n:
        raise ValueError(
            f"Expression matrix has {y.shape[1]} samples but the design matrix has {n} rows"
        )
    if not np.all(np.isfinite(y)):
        raise ValueError("Expression matrix contains non-finite values")
    if n <= p:
        raise ValueError(f"No residual degrees of freedom ({n} samples, {p} coefficients)")

    if weights is None:
        cov = np.linalg.inv(X.T @ X)
        beta = y @ X @ cov
        resid = y - beta @ X.T
        stdev = np.tile(np.sqrt(np.diag(cov)), (y.shape[0], 1))
    else:
        w = np.asarray(weights, dtype=float)
        if w.shape != y.shape:
            raise ValueError(f"Weights shape {w.shape} does not match expression shape {y.shape}")
        if not np.all(np.isfinite(w)) or np.any(w <= 0):
            raise ValueError("Weights must be positive and finite")
        xtwx = np.einsum("gn,ni,nj->gij", w, X, X)
        xtwy = np.einsum("gn,ni,gn->gi", w, X, y)
        cov = np.linalg.inv(xtwx)
        beta = np.einsum("gij,gj->gi", cov, xtwy)
        resid = (y - beta @ X.T) * np.sqrt(w)
        stdev = np.sqrt(np.diagonal(cov, axis1=1, axis2=2))

    df_residual = np.full(y.shape[0], float(n - p))
    sigma = np.sqrt((resid ** 2).sum(axis=1) / df_residual)

    genes = expr.index if isinstance(expr, pd.DataFrame) else pd.RangeIndex(y.shape[0])
    coef_names = design.coefficient_names

    return LinearModelFit(
        coefficients=pd.DataFrame(beta, index=genes, columns=coef_names),
        stdev_unscaled=pd.DataFrame(stdev, index=genes, columns=coef_names),
        cov_unscaled=cov,
        sigma=pd.Series(sigma, index=genes),
        df_residual=df_residual,
        amean=pd.Series(y.mean(axis=1), index=genes),
        design=design,
        weighted=weights is not None,
    )


def _wald_statistics(
    fit: LinearModelFit, coefficients: List[str], s2: np.ndarray
) -> tuple:
    names = fit.design.coefficient_names
    unknown = [c for c in coefficients if c not in names]
    if unknown:
        raise ValueError(f"Unknown coefficients {unknown}; model has {names}")
    idx = [names.index(c) for c in coefficients]
    beta = fit.coefficients.values[:, idx]

    if len(idx) == 1:
        se = fit.stdev_unscaled.values[:, idx[0]] * np.sqrt(s2)
        return beta[:, 0], beta[:, 0] / se

    if fit.cov_unscaled.ndim == 2:
        sub_inv = np.linalg.inv(fit.cov_unscaled[np.ix_(idx, idx)])
        quad = np.einsum("gi,ij,gj->g", beta, sub_inv, beta)
    else:
        sub = fit.cov_unscaled[:, idx][:, :, idx]
        solved = np.linalg.solve(sub, beta[:, :, None])[:, :, 0]
        quad = np.einsum("gi,gi->g", beta, solved)

    f_stat = quad / (len(idx) * s2)
    return np.full(beta.shape[0], np.nan), f_stat


def coefficient_test(fit: LinearModelFit, coefficients: List[str]) -> CoefficientTest:
    """
    Classical test of one coefficient (t) or a group of coefficients (F)
    using each gene's own residual variance.
    """
    s2 = fit.sigma.values ** 2
    effect, stat = _wald_statistics(fit, coefficients, s2)
    df2 = fit.df_residual
    if len(coefficients) == 1:
        pvalue = 2 * stats.t.sf(np.abs(stat), df2)
        return CoefficientTest(effect, stat, pvalue, 1, df2, "t")
    q = len(coefficients)
    pvalue = stats.f.sf(stat, q, df2)
    return CoefficientTest(effect, stat, pvalue, q, df2, "F")


def trigamma_inverse(x: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
    """Solve trigamma(y) = x for y by Newton iteration."""
    scalar = np.ndim(x) == 0
    x = np.atleast_1d(np.asarray(x, dtype=float))
    out = np.full_like(x, np.nan)

    big = x > 1e7
    small = (x < 1e-6) & (x > 0)
    mid = (x > 0) & ~big & ~small
    out[big] = 1 / np.sqrt(x[big])
    out[small] = 1 / x[small]

    if mid.any():
        xm = x[mid]
        y = 0.5 + 1 / xm
        for _ in range(50):
            tri = polygamma(1, y)
            dif = tri * (1 - tri / xm) / polygamma(2, y)
            y = y + dif
            if np.max(-dif / y) < 1e-8:
                break
        else:
            warnings.warn("trigamma_inverse: iteration limit exceeded")
        out[mid] = y

    return float(out[0]) if scalar else out


def fit_f_dist(
    s2: np.ndarray, df1: Union[float, np.ndarray], covariate: Optional[np.ndarray] = None
) -> tuple:
    """
    Moment estimation of a scaled F distribution for gene-wise variances.

    The log variances are matched to the mean and variance of a log-F
    distribution. With a covariate (average abundance), the location is a cubic
    trend in the covariate instead of a constant.

    Returns:
        (scale, df2) where scale is a float or a per-gene array
    """
    x = np.asarray(s2, dtype=float).copy()
    df1 = np.broadcast_to(np.asarray(df1, dtype=float), x.shape)

    ok = np.isfinite(x) & np.isfinite(df1) & (df1 > 1e-15)
    n_ok = int(ok.sum())
    min_genes = 2 if covariate is None else 6
    if n_ok < min_genes:
        warnings.warn(f"Too few genes ({n_ok}) to estimate a variance prior; no moderation applied")
        scale = float(np.nanmean(x)) if n_ok else 1.0
        return scale, 0.0

    x = np.maximum(x, 0)
    m = np.median(x[ok])
    if m == 0:
        warnings.warn("More than half of residual variances are exactly zero: eBayes unreliable")
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    z = np.log(x)
    e = z - digamma(df1 / 2) + np.log(df1 / 2)

    if covariate is None:
        emean = float(np.mean(e[ok]))
        evar = float(np.sum((e[ok] - emean) ** 2) / (n_ok - 1))
    else:
        c = np.asarray(covariate, dtype=float)
        c_ok = c[ok]
        center, spread = c_ok.mean(), c_ok.std() or 1.0
        cs = (c - center) / spread
        degree = 3
        coeffs = np.polyfit(cs[ok], e[ok], degree)
        emean = np.polyval(coeffs, cs)
        evar = float(np.sum((e[ok] - emean[ok]) ** 2) / (n_ok - degree - 1))

    evar = evar - float(np.mean(polygamma(1, df1[ok] / 2)))

    if evar > 0:
        df2 = 2 * trigamma_inverse(evar)
        scale = np.exp(emean + digamma(df2 / 2) - np.log(df2 / 2))
    else:
        df2 = np.inf
        scale = float(np.mean(x[ok])) if covariate is None else np.exp(emean)

    return scale, float(df2)


def squeeze_var(
    s2: np.ndarray, df: Union[float, np.ndarray], covariate: Optional[np.ndarray] = None
) -> SqueezedVariance:
    """
    Shrink gene-wise variances toward a prior estimated from all genes.

    Posterior variance = (df * s2 + df_prior * s2_prior) / (df + df_prior).
    """
    s2 = np.asarray(s2, dtype=float)
    df = np.broadcast_to(np.asarray(df, dtype=float), s2.shape)
    s2_prior, df_prior = fit_f_dist(s2, df, covariate=covariate)

    if np.isinf(df_prior):
        s2_post = np.broadcast_to(s2_prior, s2.shape).astype(float).copy()
    else:
        s2_post = (df * s2 + df_prior * s2_prior) / (df + df_prior)

    return SqueezedVariance(s2_prior=s2_prior, df_prior=df_prior, s2_post=s2_post)


def ebayes(fit: LinearModelFit, trend: bool = False) -> ModeratedFit:
    """
    Empirical Bayes moderation of a LinearModelFit.

    Args:
        fit: Gene-wise linear model fit
        trend: Let the prior variance depend on average expression (limma-trend)

    Returns:
        ModeratedFit
    """
    s2 = fit.sigma.values ** 2
    covariate = fit.amean.values if trend else None
    squeezed = squeeze_var(s2, fit.df_residual, covariate=covariate)

    df_pooled = float(np.sum(fit.df_residual))
    df_total = np.minimum(fit.df_residual + squeezed.df_prior, df_pooled)

    logger.info(
        f"eBayes prior df = {squeezed.df_prior:.2f}, "
        f"prior variance = {np.median(np.atleast_1d(squeezed.s2_prior)):.4f}"
    )

    return ModeratedFit(
        fit=fit,
        s2_prior=squeezed.s2_prior,
        df_prior=squeezed.df_prior,
        s2_post=squeezed.s2_post,
        df_total=df_total,
        trend=trend,
    )


def moderated_test(mfit: ModeratedFit, coefficients: List[str]) -> CoefficientTest:
    """Moderated t (one coefficient) or moderated F (several) test."""
    effect, stat = _wald_statistics(mfit.fit, coefficients, mfit.s2_post)
    df2 = mfit.df_total
    if len(coefficients) == 1:
        pvalue = 2 * stats.t.sf(np.abs(stat), df2)
        return CoefficientTest(effect, stat, pvalue, 1, df2, "t")
    q = len(coefficients)
    pvalue = stats.f.sf(stat, q, df2)
    return CoefficientTest(effect, stat, pvalue, q, df2, "F")


def bh_adjust(pvalues: np.ndarray) -> np.ndarray:
    """Benjamini-Hochberg adjusted p-values; NaN entries stay NaN."""
    p = np.asarray(pvalues, dtype=float)
    out = np.full_like(p, np.nan)
    ok = np.isfinite(p)
    if ok.any():
        out[ok] = multipletests(p[ok], method="fdr_bh")[1]
    return out


def build_results_table(
    genes: pd.Index,
    effect: np.ndarray,
    stat: np.ndarray,
    pvalue: np.ndarray,
    ave_expr: np.ndarray,
    extra: Optional[Dict[str, np.ndarray]] = None,
) -> pd.DataFrame:
    """
    Canonical per-gene result table shared by every method.

    Columns: gene, log2FoldChange, aveLogCPM, stat, pvalue, padj (+ extra)
    """
    df = pd.DataFrame(
        {
            "gene": np.asarray(genes).astype(str),
            "log2FoldChange": np.asarray(effect, dtype=float),
            "aveLogCPM": np.asarray(ave_expr, dtype=float),
            "stat": np.asarray(stat, dtype=float),
            "pvalue": np.asarray(pvalue, dtype=float),
            "padj": bh_adjust(pvalue),
        }
    )
    for key, values in (extra or {}).items():
        df[key] = np.asarray(values)
    return df
