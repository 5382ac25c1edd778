"""
Count normalization and low-count filtering.

Implements counts-per-million (CPM), edgeR-style log-CPM with a library-size
scaled prior count, TMM / upper-quartile / RLE scaling factors, and the two
common gene filters (CPM threshold in a minimum number of samples, and the
filterByExpr rule).

All functions take genes × samples count matrices.
"""

from typing import Optional, Sequence, Union
import logging
import pandas as pd
import numpy as np
from scipy.stats import rankdata

logger = logging.getLogger(__name__)

ArrayLike = Union[pd.DataFrame, np.ndarray]


def _lib_sizes(counts: ArrayLike, lib_size: Optional[Union[pd.Series, np.ndarray]]) -> np.ndarray:
    if lib_size is None:
        return np.asarray(counts, dtype=float).sum(axis=0)
    return np.asarray(lib_size, dtype=float)


def cpm(
    counts: ArrayLike,
    lib_size: Optional[Union[pd.Series, np.ndarray]] = None,
    log: bool = False,
    prior_count: float = 2.0,
) -> ArrayLike:
    """
    Counts per million.

    In log mode the prior count is scaled by each library's size relative to
    the mean library size, and the library sizes are inflated by twice the
    prior, so that log-CPM of a zero count is similar across samples.

    Args:
        counts: genes × samples counts
        lib_size: Effective library sizes (defaults to column sums)
        log: Return log2-CPM
        prior_count: Average count added before taking logs

    Returns:
        Same type and shape as counts
    """
    y = np.asarray(counts, dtype=float)
    lib = _lib_sizes(counts, lib_size)
    if np.any(lib <= 0):
        raise ValueError("Library sizes must be positive; remove empty samples before computing CPM")

    if log:
        prior = prior_count * lib / lib.mean()
        out = np.log2((y + prior) / (lib + 2 * prior) * 1e6)
    else:
        out = y / lib * 1e6

    if isinstance(counts, pd.DataFrame):
        return pd.DataFrame(out, index=counts.index, columns=counts.columns)
    return out


def ave_log_cpm(
    counts: ArrayLike,
    lib_size: Optional[Union[pd.Series, np.ndarray]] = None,
    prior_count: float = 2.0,
) -> np.ndarray:
    """Average log2-CPM of each gene, the abundance covariate used by trends."""
    return np.asarray(cpm(counts, lib_size=lib_size, log=True, prior_count=prior_count)).mean(axis=1)


def _tmm_factor(
    obs: np.ndarray,
    ref: np.ndarray,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
    do_weighting: bool = True,
    a_cutoff: float = -1e10,
) -> float:
    n_o = obs.sum()
    n_r = ref.sum()

    with np.errstate(divide="ignore", invalid="ignore"):
        log_r = np.log2((obs / n_o) / (ref / n_r))
        abs_e = (np.log2(obs / n_o) + np.log2(ref / n_r)) / 2
        v = (n_o - obs) / n_o / obs + (n_r - ref) / n_r / ref

    fin = np.isfinite(log_r) & np.isfinite(abs_e) & (abs_e > a_cutoff)
    log_r = log_r[fin]
    abs_e = abs_e[fin]
    v = v[fin]

    if log_r.size == 0 or np.max(np.abs(log_r)) < 1e-6:
        return 1.0

    n = log_r.size
    lo_l = np.floor(n * logratio_trim) + 1
    hi_l = n + 1 - lo_l
    lo_s = np.floor(n * sum_trim) + 1
    hi_s = n + 1 - lo_s

    rank_r = rankdata(log_r)
    rank_e = rankdata(abs_e)
    keep = (rank_r >= lo_l) & (rank_r <= hi_l) & (rank_e >= lo_s) & (rank_e <= hi_s)

    if not keep.any():
        return 1.0

    if do_weighting:
        f = np.sum(log_r[keep] / v[keep]) / np.sum(1 / v[keep])
    else:
        f = np.mean(log_r[keep])

    if not np.isfinite(f):
        f = 0.0
    return float(2 ** f)


def calc_norm_factors(
    counts: pd.DataFrame,
    method: str = "TMM",
    ref_column: Optional[str] = None,
    logratio_trim: float = 0.3,
    sum_trim: float = 0.05,
) -> pd.Series:
    """
    Compute library scaling factors.

    Args:
        counts: genes × samples raw counts
        method: "TMM", "upperquartile", "RLE" or "none"
        ref_column: Reference sample for TMM (default: sample whose upper
            quartile fraction is closest to the mean)
        logratio_trim: Fraction trimmed from each tail of the M values (TMM)
        sum_trim: Fraction trimmed from each tail of the A values (TMM)

    Returns:
        Series of factors (one per sample) with geometric mean 1
    """
    if method not in ("TMM", "upperquartile", "RLE", "none"):
        raise ValueError(
            f"Unknown normalization method '{method}'. "
            f"Choose from 'TMM', 'upperquartile', 'RLE' or 'none'."
        )

    samples = counts.columns
    if method == "none":
        return pd.Series(1.0, index=samples)

    x = counts.values.astype(float)
    x = x[(x > 0).any(axis=1)]
    if x.shape[0] == 0:
        logger.warning("All genes have zero counts; normalization factors set to 1")
        return pd.Series(1.0, index=samples)

    lib = x.sum(axis=0)

    if method == "TMM":
        f75 = np.quantile(x / lib, 0.75, axis=0)
        if ref_column is None:
            ref_idx = int(np.argmin(np.abs(f75 - f75.mean())))
        elif ref_column in samples:
            ref_idx = list(samples).index(ref_column)
        else:
            raise ValueError(f"Reference sample '{ref_column}' is not a column of the count matrix")
        factors = np.array(
            [
                _tmm_factor(x[:, i], x[:, ref_idx], logratio_trim=logratio_trim, sum_trim=sum_trim)
                for i in range(x.shape[1])
            ]
        )
    elif method == "upperquartile":
        factors = np.quantile(x / lib, 0.75, axis=0)
        if np.any(factors == 0):
            raise ValueError(
                "Upper quartile is zero for at least one sample; "
                "filter low-count genes first or use method='TMM'"
            )
    else:  # RLE
        with np.errstate(divide="ignore"):
            log_gm = np.log(x).mean(axis=1)
        usable = np.isfinite(log_gm)
        gm = np.exp(log_gm[usable])
        factors = np.median(x[usable] / gm[:, None], axis=0) / lib

    factors = factors / np.exp(np.mean(np.log(factors)))
    return pd.Series(factors, index=samples)


def smallest_group_size(labels: Sequence) -> int:
    """Size of the smallest group in a vector of group labels."""
    counts = pd.Series(list(labels)).value_counts()
    if counts.empty:
        raise ValueError("Cannot determine group sizes from an empty label vector")
    return int(counts.min())


def filter_by_cpm(
    counts: pd.DataFrame,
    min_cpm: float = 1.0,
    min_samples: int = 3,
    lib_size: Optional[pd.Series] = None,
) -> pd.Series:
    """
    Keep genes with CPM >= min_cpm in at least min_samples samples.

    Returns:
        Boolean Series indexed by gene
    """
    if min_samples < 1 or min_samples > counts.shape[1]:
        raise ValueError(
            f"min_samples must be between 1 and the number of samples ({counts.shape[1]}), got {min_samples}"
        )
    expressed = cpm(counts, lib_size=lib_size) >= min_cpm
    keep = expressed.sum(axis=1) >= min_samples
    logger.info(f"CPM filter kept {int(keep.sum())} of {len(keep)} genes")
    return keep


def filter_by_expr(
    counts: pd.DataFrame,
    group: Optional[Sequence] = None,
    lib_size: Optional[pd.Series] = None,
    min_count: float = 10,
    min_total_count: float = 15,
    large_n: int = 10,
    min_prop: float = 0.7,
) -> pd.Series:
    """
    Keep genes with enough counts to be worth testing.

    A gene is kept when its CPM reaches the CPM equivalent of min_count (at the
    median library size) in at least the smallest group size of samples, and
    its total count is at least min_total_count. For large groups the minimum
    sample size is relaxed to large_n + (n - large_n) * min_prop.

    Returns:
        Boolean Series indexed by gene
    """
    lib = _lib_sizes(counts, lib_size)
    n_samples = counts.shape[1]

    if group is None:
        min_sample_size = float(n_samples)
    else:
        min_sample_size = float(smallest_group_size(group))
    if min_sample_size > large_n:
        min_sample_size = large_n + (min_sample_size - large_n) * min_prop

    median_lib = np.median(lib)
    cpm_cutoff = min_count / median_lib * 1e6
    tol = 1e-14
    expressed = (np.asarray(cpm(counts, lib_size=lib)) >= cpm_cutoff).sum(axis=1)
    keep = (expressed >= min_sample_size - tol) & (counts.values.sum(axis=1) >= min_total_count - tol)
    logger.info(f"filterByExpr kept {int(keep.sum())} of {len(keep)} genes (CPM cutoff {cpm_cutoff:.2f})")
    return pd.Series(keep, index=counts.index)
