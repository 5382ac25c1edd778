"""
voom: precision weights from the mean-variance trend of log-CPM values.

Each gene is fitted once without weights; the square root of its residual
standard deviation is plotted against its average log-count, a lowess curve is
fitted through the cloud, and every observation gets the inverse of the
predicted variance at its fitted log-count as a weight. The weighted log-CPM
values then go through the ordinary limma pipeline (lm_fit with weights,
ebayes).

Reference: Law et al. (2014), Genome Biology 15:R29.
"""

from dataclasses import dataclass
from typing import Optional
import logging
import pandas as pd
import numpy as np
from statsmodels.nonparametric.smoothers_lowess import lowess
from design import DesignMatrix
from linear_models import lm_fit

logger = logging.getLogger(__name__)


@dataclass
class VoomResult:
    """voom-transformed expression and observation weights."""

    log_cpm: pd.DataFrame  # genes × samples, log2((y + 0.5) / (lib + 1) * 1e6)
    weights: pd.DataFrame  # genes × samples precision weights
    lib_size: pd.Series  # effective library sizes used
    mean_log_count: pd.Series  # x of the mean-variance plot
    sqrt_sd: pd.Series  # y of the mean-variance plot
    trend_x: np.ndarray  # lowess curve
    trend_y: np.ndarray


def voom(
    counts: pd.DataFrame,
    design: DesignMatrix,
    lib_size: Optional[pd.Series] = None,
    span: float = 0.5,
) -> VoomResult:
    """
    Compute voom log-CPM values and precision weights.

    Args:
        counts: genes × samples raw counts
        design: Design matrix (samples in count-column order)
        lib_size: Effective library sizes (lib size × norm factor); defaults to column sums
        span: Fraction of genes used for each lowess window

    Returns:
        VoomResult

    Raises:
        ValueError: if the trend cannot be estimated
    """
    y = counts.values.astype(float)
    n_genes, n_samples = y.shape

    if design.df_residual < 1:
        raise ValueError("voom needs at least one residual degree of freedom")

    if lib_size is None:
        lib = y.sum(axis=0)
    else:
        lib = np.asarray(lib_size.reindex(counts.columns) if isinstance(lib_size, pd.Series) else lib_size,
                         dtype=float)

    log_cpm = np.log2((y + 0.5) / (lib + 1) * 1e6)
    log_cpm_df = pd.DataFrame(log_cpm, index=counts.index, columns=counts.columns)

    fit = lm_fit(log_cpm_df, design)

    sx = fit.amean.values + np.mean(np.log2(lib + 1)) - np.log2(1e6)
    sy = np.sqrt(fit.sigma.values)

    informative = y.sum(axis=1) > 0
    if informative.sum() < 3:
        raise ValueError("voom needs at least 3 genes with non-zero counts to fit the mean-variance trend")

    curve = lowess(sy[informative], sx[informative], frac=span, return_sorted=True)
    trend_x, trend_y = curve[:, 0], curve[:, 1]
    if not np.all(np.isfinite(trend_y)):
        raise ValueError("voom mean-variance trend is not finite; too few distinct genes for lowess")

    # Collapse tied x values so np.interp sees a strictly increasing grid
    trend_x, first = np.unique(trend_x, return_index=True)
    trend_y = trend_y[first]

    fitted_values = fit.coefficients.values @ design.values.T
    fitted_cpm = 2 ** fitted_values
    fitted_count = 1e-6 * fitted_cpm * (lib + 1)
    fitted_logcount = np.log2(fitted_count)

    predicted = np.interp(fitted_logcount, trend_x, trend_y)
    predicted = np.maximum(predicted, 1e-8)
    weights = 1 / predicted ** 4

    logger.info(
        f"voom: trend over {int(informative.sum())} genes, "
        f"weights range {weights.min():.3g}-{weights.max():.3g}"
    )

    return VoomResult(
        log_cpm=log_cpm_df,
        weights=pd.DataFrame(weights, index=counts.index, columns=counts.columns),
        lib_size=pd.Series(lib, index=counts.columns),
        mean_log_count=pd.Series(sx, index=counts.index),
        sqrt_sd=pd.Series(sy, index=counts.index),
        trend_x=trend_x,
        trend_y=trend_y,
    )
