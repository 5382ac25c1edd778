"""
Negative binomial generalized linear models for RNA-seq counts.

Implements the edgeR-style workflow used by two of the walkthrough's
procedures:

- dispersion estimation: common dispersion by maximizing the summed Cox-Reid
  adjusted profile likelihood, an abundance-dependent trend, and gene-wise
  (tagwise) dispersions shrunk toward the trend by weighted likelihood
  empirical Bayes
- glm_fit: per-gene NB GLM by iteratively reweighted least squares
  (vectorized over genes, with step halving)
- glm_lrt: likelihood ratio test of a design factor
- glm_ql_fit / glm_ql_ftest: quasi-likelihood F test, where the QL dispersion
  (deviance / residual df) is squeezed toward an abundance trend with the
  same empirical Bayes machinery limma uses for variances

Variance model: Var(y) = mu + phi * mu^2, phi = dispersion, BCV = sqrt(phi).
"""

from dataclasses import dataclass
from typing import Optional, Tuple, Union
import logging
import pandas as pd
import numpy as np
from scipy import stats
from scipy.optimize import minimize_scalar
from scipy.special import gammaln
from design import DesignMatrix
from linear_models import squeeze_var
from normalization import ave_log_cpm as compute_ave_log_cpm

logger = logging.getLogger(__name__)

MAX_ETA = 50.0
MAX_HALVING = 12
POISSON_LIMIT = 1e-8


@dataclass
class NBGLMFit:
    """Per-gene negative binomial GLM fit."""

    coefficients: np.ndarray  # genes × coefficients, natural log scale
    fitted_values: np.ndarray  # genes × samples
    deviance: np.ndarray
    df_residual: np.ndarray
    dispersion: np.ndarray
    offset: np.ndarray  # samples, or genes × samples
    design: DesignMatrix
    genes: pd.Index
    converged: np.ndarray
    iterations: int

    @property
    def log2_coefficients(self) -> pd.DataFrame:
        return pd.DataFrame(
            self.coefficients / np.log(2), index=self.genes, columns=self.design.coefficient_names
        )


@dataclass
class DispersionEstimate:
    """Common, trended and tagwise NB dispersions."""

    common: float
    trended: np.ndarray
    tagwise: np.ndarray
    ave_log_cpm: np.ndarray
    prior_n: float
    span: float
    grid: np.ndarray  # dispersion values at which the APL was evaluated

    @property
    def common_bcv(self) -> float:
        return float(np.sqrt(self.common))


@dataclass
class LRTResult:
    """Likelihood ratio test of one design factor."""

    log2_fold_change: np.ndarray  # NaN when the factor has several coefficients
    statistic: np.ndarray  # LR = deviance(reduced) - deviance(full)
    df: int
    pvalue: np.ndarray
    full_fit: NBGLMFit
    reduced_fit: NBGLMFit


@dataclass
class QLFit:
    """NB GLM fit with squeezed quasi-likelihood dispersions."""

    fit: NBGLMFit
    s2: np.ndarray  # raw QL dispersion (deviance / df)
    s2_prior: Union[float, np.ndarray]
    df_prior: float
    s2_post: np.ndarray
    ave_log_cpm: np.ndarray


@dataclass
class QLFTestResult:
    """Quasi-likelihood F test of one design factor."""

    log2_fold_change: np.ndarray
    statistic: np.ndarray  # F statistic
    df1: int
    df2: np.ndarray
    pvalue: np.ndarray


def bcv(dispersion: Union[float, np.ndarray]) -> Union[float, np.ndarray]:
    """Biological coefficient of variation."""
    return np.sqrt(dispersion)


def _as_dispersion(dispersion, n_genes: int) -> np.ndarray:
    phi = np.broadcast_to(np.asarray(dispersion, dtype=float), (n_genes,)).copy()
    if np.any(phi < 0) or not np.all(np.isfinite(phi)):
        raise ValueError("Dispersions must be finite and non-negative")
    return phi


def nb_unit_deviance(y: np.ndarray, mu: np.ndarray, dispersion: np.ndarray) -> np.ndarray:
    """Unit deviances; Poisson deviance where the dispersion is ~0."""
    phi = np.broadcast_to(np.asarray(dispersion, dtype=float).reshape(-1, 1), y.shape)
    mu = np.maximum(mu, 1e-300)
    with np.errstate(divide="ignore", invalid="ignore"):
        y_log = np.where(y > 0, y * np.log(np.where(y > 0, y, 1.0) / mu), 0.0)

    poisson = 2 * (y_log - (y - mu))
    small = phi < POISSON_LIMIT
    phi_safe = np.where(small, 1.0, phi)
    nb = 2 * (y_log - (y + 1 / phi_safe) * (np.log1p(phi_safe * y) - np.log1p(phi_safe * mu)))
    return np.maximum(np.where(small, poisson, nb), 0.0)


def nb_deviance(y: np.ndarray, mu: np.ndarray, dispersion: np.ndarray) -> np.ndarray:
    """Total deviance per gene."""
    return nb_unit_deviance(y, mu, dispersion).sum(axis=1)


def nb_loglik(y: np.ndarray, mu: np.ndarray, dispersion: np.ndarray) -> np.ndarray:
    """Log-likelihood per gene."""
    phi = np.broadcast_to(np.asarray(dispersion, dtype=float).reshape(-1, 1), y.shape)
    mu = np.maximum(mu, 1e-300)
    small = phi < POISSON_LIMIT
    phi_safe = np.where(small, 1.0, phi)
    r = 1 / phi_safe

    poisson = y * np.log(mu) - mu - gammaln(y + 1)
    nb = (
        gammaln(y + r)
        - gammaln(r)
        - gammaln(y + 1)
        + y * (np.log(phi_safe * mu) - np.log1p(phi_safe * mu))
        - r * np.log1p(phi_safe * mu)
    )
    return np.where(small, poisson, nb).sum(axis=1)


def _mu_from(beta: np.ndarray, X: np.ndarray, offset: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    eta = np.clip(offset + beta @ X.T, -MAX_ETA, MAX_ETA)
    return eta, np.exp(eta)


def glm_fit(
    counts: Union[pd.DataFrame, np.ndarray],
    design: DesignMatrix,
    dispersion: Union[float, np.ndarray],
    offset: Union[float, np.ndarray],
    max_iter: int = 30,
    tol: float = 1e-6,
) -> NBGLMFit:
    """
    Fit a NB GLM with log link to every gene.

    Args:
        counts: genes × samples counts
        design: Design matrix
        dispersion: Scalar or per-gene dispersion
        offset: log effective library sizes (per sample, or genes × samples)
        max_iter: Maximum IRLS iterations
        tol: Relative deviance change for convergence

    Returns:
        NBGLMFit
    """
    y = np.asarray(counts, dtype=float)
    X = design.values
    n_genes, n_samples = y.shape
    if X.shape[0] != n_samples:
        raise ValueError(f"Design has {X.shape[0]} rows but counts have {n_samples} samples")

    phi = _as_dispersion(dispersion, n_genes)
    off = np.broadcast_to(np.asarray(offset, dtype=float), y.shape)

    # Start from a least squares fit on the log scale
    z0 = np.log(y + 0.5) - off
    beta = np.linalg.lstsq(X, z0.T, rcond=None)[0].T
    eta, mu = _mu_from(beta, X, off)
    dev = nb_deviance(y, mu, phi)

    converged = np.zeros(n_genes, dtype=bool)
    iteration = 0
    for iteration in range(1, max_iter + 1):
        w = mu / (1 + phi[:, None] * mu)
        z = (eta - off) + (y - mu) / mu
        xtwx = np.einsum("gn,ni,nj->gij", w, X, X)
        xtwz = np.einsum("gn,ni,gn->gi", w, X, z)
        beta_new = np.einsum("gij,gj->gi", np.linalg.pinv(xtwx), xtwz)

        step = beta_new - beta
        step[converged] = 0.0

        for _ in range(MAX_HALVING):
            beta_try = beta + step
            eta_try, mu_try = _mu_from(beta_try, X, off)
            dev_try = nb_deviance(y, mu_try, phi)
            worse = ~(dev_try <= dev + 1e-10 * (np.abs(dev) + 1))
            if not worse.any():
                break
            step[worse] /= 2
        accept = ~worse

        change = np.abs(dev - dev_try) / (np.abs(dev_try) + 0.1)
        beta[accept] = beta_try[accept]
        eta[accept] = eta_try[accept]
        mu[accept] = mu_try[accept]
        dev[accept] = dev_try[accept]

        # Genes whose step could not improve the deviance are at their optimum
        converged |= (accept & (change < tol)) | ~accept
        if converged.all():
            break

    if not converged.all():
        logger.warning(f"NB GLM did not converge for {int((~converged).sum())} genes")

    genes = counts.index if isinstance(counts, pd.DataFrame) else pd.RangeIndex(n_genes)
    return NBGLMFit(
        coefficients=beta,
        fitted_values=mu,
        deviance=dev,
        df_residual=np.full(n_genes, float(n_samples - X.shape[1])),
        dispersion=phi,
        offset=np.asarray(offset, dtype=float),
        design=design,
        genes=genes,
        converged=converged,
        iterations=iteration,
    )


def adjusted_profile_loglik(
    counts: Union[pd.DataFrame, np.ndarray],
    design: DesignMatrix,
    dispersion: Union[float, np.ndarray],
    offset: Union[float, np.ndarray],
) -> np.ndarray:
    """Cox-Reid adjusted profile log-likelihood of each gene at the given dispersion."""
    y = np.asarray(counts, dtype=float)
    fit = glm_fit(y, design, dispersion, offset)
    mu = fit.fitted_values
    phi = fit.dispersion

    loglik = nb_loglik(y, mu, phi)
    w = mu / (1 + phi[:, None] * mu)
    X = design.values
    xtwx = np.einsum("gn,ni,nj->gij", w, X, X)
    eig = np.linalg.eigvalsh(xtwx)
    logdet = np.log(np.maximum(eig, 1e-10)).sum(axis=1)
    return loglik - 0.5 * logdet


def _smooth_by_abundance(values: np.ndarray, covariate: np.ndarray, span: float) -> np.ndarray:
    """Moving average of each column over genes ordered by abundance."""
    n = values.shape[0]
    k = int(min(n, max(1, round(span * n))))
    order = np.argsort(covariate, kind="mergesort")
    ordered = values[order]

    csum = np.vstack([np.zeros((1, values.shape[1])), np.cumsum(ordered, axis=0)])
    lo = np.clip(np.arange(n) - k // 2, 0, n - k)
    hi = lo + k
    smoothed = (csum[hi] - csum[lo]) / k

    out = np.empty_like(smoothed)
    out[order] = smoothed
    return out


def _maximize_interpolant(x: np.ndarray, values: np.ndarray) -> np.ndarray:
    """Row-wise maximum of values over the uniform grid x, refined by a parabola through the top three points."""
    n_grid = x.size
    rows = np.arange(values.shape[0])
    imax = np.argmax(values, axis=1)
    i = np.clip(imax, 1, n_grid - 2)

    y0 = values[rows, i - 1]
    y1 = values[rows, i]
    y2 = values[rows, i + 1]
    denom = y0 - 2 * y1 + y2
    h = x[1] - x[0]
    with np.errstate(divide="ignore", invalid="ignore"):
        delta = np.where(denom < 0, 0.5 * (y0 - y2) / denom, 0.0)
    xmax = np.clip(x[i] + delta * h, x[i - 1], x[i + 1])

    at_edge = (imax == 0) | (imax == n_grid - 1)
    xmax[at_edge] = x[imax[at_edge]]
    return xmax


def estimate_dispersions(
    counts: Union[pd.DataFrame, np.ndarray],
    design: DesignMatrix,
    offset: np.ndarray,
    ave_log_cpm: Optional[np.ndarray] = None,
    prior_df: float = 10.0,
    grid_length: int = 21,
    grid_range: Tuple[float, float] = (-10.0, 10.0),
    span: Optional[float] = None,
) -> DispersionEstimate:
    """
    Estimate common, trended and tagwise NB dispersions.

    Args:
        counts: genes × samples counts (filtered)
        design: Design matrix
        offset: log effective library sizes per sample
        ave_log_cpm: Abundance covariate (computed from counts when None)
        prior_df: Prior degrees of freedom for tagwise shrinkage
        grid_length: Number of grid points (dispersion = 0.1 * 2^grid)
        grid_range: log2 range of the grid around 0.1
        span: Fraction of genes in each smoothing window (default (10/G)^0.23)

    Returns:
        DispersionEstimate
    """
    y = np.asarray(counts, dtype=float)
    n_genes = y.shape[0]
    df_residual = design.df_residual
    if df_residual < 1:
        raise ValueError("Dispersion estimation needs at least one residual degree of freedom")
    if n_genes < 2:
        raise ValueError("Dispersion estimation needs at least two genes")

    offset = np.asarray(offset, dtype=float)
    if ave_log_cpm is None:
        ave_log_cpm = compute_ave_log_cpm(y, lib_size=np.exp(offset))
    ave_log_cpm = np.asarray(ave_log_cpm, dtype=float)

    def neg_total_apl(log_phi: float) -> float:
        return -float(adjusted_profile_loglik(y, design, np.exp(log_phi), offset).sum())

    res = minimize_scalar(
        neg_total_apl, bounds=(np.log(1e-4), np.log(10.0)), method="bounded", options={"xatol": 1e-4}
    )
    common = float(np.exp(res.x))

    grid_pts = np.linspace(grid_range[0], grid_range[1], grid_length)
    grid_disp = 0.1 * 2 ** grid_pts
    apl = np.column_stack([adjusted_profile_loglik(y, design, d, offset) for d in grid_disp])

    if span is None:
        span = (10 / n_genes) ** 0.23 if n_genes > 10 else 1.0
    smoothed = _smooth_by_abundance(apl, ave_log_cpm, span)

    trended = 0.1 * 2 ** _maximize_interpolant(grid_pts, smoothed)
    prior_n = prior_df / df_residual
    tagwise = 0.1 * 2 ** _maximize_interpolant(grid_pts, apl + prior_n * smoothed)

    logger.info(
        f"Dispersion: common = {common:.4f} (BCV {np.sqrt(common):.3f}), "
        f"tagwise median = {np.median(tagwise):.4f}"
    )

    return DispersionEstimate(
        common=common,
        trended=trended,
        tagwise=tagwise,
        ave_log_cpm=ave_log_cpm,
        prior_n=prior_n,
        span=float(span),
        grid=grid_disp,
    )


def glm_lrt(
    counts: Union[pd.DataFrame, np.ndarray],
    design: DesignMatrix,
    dispersion: Union[float, np.ndarray],
    offset: np.ndarray,
    factor: str,
    full_fit: Optional[NBGLMFit] = None,
) -> LRTResult:
    """
    Likelihood ratio test that all coefficients of a factor are zero.

    The full fit can be passed in so that several factors are tested against
    one fitted model.
    """
    idx = design.coefficient_indices(factor)
    full = full_fit if full_fit is not None else glm_fit(counts, design, dispersion, offset)
    reduced = glm_fit(counts, design.drop_factor(factor), full.dispersion, offset)

    lr = np.maximum(reduced.deviance - full.deviance, 0.0)
    q = len(idx)
    pvalue = stats.chi2.sf(lr, q)
    if q == 1:
        lfc = full.coefficients[:, idx[0]] / np.log(2)
    else:
        lfc = np.full(lr.shape, np.nan)

    return LRTResult(
        log2_fold_change=lfc, statistic=lr, df=q, pvalue=pvalue, full_fit=full, reduced_fit=reduced
    )


def glm_ql_fit(
    counts: Union[pd.DataFrame, np.ndarray],
    design: DesignMatrix,
    dispersion: Union[float, np.ndarray],
    offset: np.ndarray,
    ave_log_cpm: np.ndarray,
) -> QLFit:
    """
    Fit NB GLMs (usually with trended dispersions) and moderate the
    quasi-likelihood dispersions with empirical Bayes along abundance.
    """
    fit = glm_fit(counts, design, dispersion, offset)
    s2 = fit.deviance / fit.df_residual
    squeezed = squeeze_var(s2, fit.df_residual, covariate=np.asarray(ave_log_cpm, dtype=float))
    logger.info(f"QL prior df = {squeezed.df_prior:.2f}")
    return QLFit(
        fit=fit,
        s2=s2,
        s2_prior=squeezed.s2_prior,
        df_prior=squeezed.df_prior,
        s2_post=squeezed.s2_post,
        ave_log_cpm=np.asarray(ave_log_cpm, dtype=float),
    )


def glm_ql_ftest(
    qlfit: QLFit, counts: Union[pd.DataFrame, np.ndarray], factor: str
) -> QLFTestResult:
    """Quasi-likelihood F test that all coefficients of a factor are zero."""
    full = qlfit.fit
    design = full.design
    idx = design.coefficient_indices(factor)
    reduced = glm_fit(counts, design.drop_factor(factor), full.dispersion, full.offset)

    lr = np.maximum(reduced.deviance - full.deviance, 0.0)
    q = len(idx)
    with np.errstate(divide="ignore", invalid="ignore"):
        f_stat = lr / q / qlfit.s2_post

    df_pooled = float(np.sum(full.df_residual))
    df2 = np.minimum(full.df_residual + qlfit.df_prior, df_pooled)
    pvalue = stats.f.sf(f_stat, q, df2)

    if q == 1:
        lfc = full.coefficients[:, idx[0]] / np.log(2)
    else:
        lfc = np.full(lr.shape, np.nan)

    return QLFTestResult(log2_fold_change=lfc, statistic=f_stat, df1=q, df2=df2, pvalue=pvalue)
