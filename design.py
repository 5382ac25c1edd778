"""
Design matrix construction with treatment (reference-level) coding.

A categorical factor with levels [ref, a, b] contributes the columns
"{factor}a" and "{factor}b"; a numeric factor contributes one column named after
the factor. The mapping factor → columns is kept so that a factor can be tested
as a whole (t-test for one column, F / likelihood-ratio test for several).
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
import pandas as pd
import numpy as np


INTERCEPT = "(Intercept)"


class DesignError(Exception):
    """Raised when a design matrix cannot be built or is not estimable."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)


@dataclass
class DesignMatrix:
    """Design matrix plus the factor → coefficient bookkeeping."""

    matrix: pd.DataFrame  # samples × coefficients
    terms: Dict[str, List[str]]  # factor → coefficient column names
    reference_levels: Dict[str, str] = field(default_factory=dict)
    levels: Dict[str, List[str]] = field(default_factory=dict)

    @property
    def values(self) -> np.ndarray:
        return self.matrix.values.astype(float)

    @property
    def coefficient_names(self) -> List[str]:
        return self.matrix.columns.tolist()

    @property
    def n_coefficients(self) -> int:
        return self.matrix.shape[1]

    @property
    def n_samples(self) -> int:
        return self.matrix.shape[0]

    @property
    def df_residual(self) -> int:
        return self.n_samples - self.n_coefficients

    @property
    def factors(self) -> List[str]:
        return list(self.terms.keys())

    @property
    def formula(self) -> str:
        return "~ " + " + ".join(self.factors) if self.factors else "~ 1"

    def coefficients_for(self, factor: str) -> List[str]:
        if factor not in self.terms:
            raise DesignError(
                f"Factor '{factor}' is not part of the design ({self.formula})",
                details={"factors": self.factors},
            )
        return list(self.terms[factor])

    def coefficient_indices(self, factor: str) -> List[int]:
        names = self.coefficient_names
        return [names.index(c) for c in self.coefficients_for(factor)]

    def drop_factor(self, factor: str) -> "DesignMatrix":
        """Reduced design without the columns of one factor (the null model for that factor)."""
        dropped = self.coefficients_for(factor)
        terms = {k: v for k, v in self.terms.items() if k != factor}
        return DesignMatrix(
            matrix=self.matrix.drop(columns=dropped),
            terms=terms,
            reference_levels={k: v for k, v in self.reference_levels.items() if k != factor},
            levels={k: v for k, v in self.levels.items() if k != factor},
        )


def _ordered_levels(values: pd.Series) -> List[str]:
    """Unique levels in natural order (numeric when possible), as strings."""
    if isinstance(values.dtype, pd.CategoricalDtype):
        return [str(c) for c in values.cat.categories if c in set(values)]
    unique = values.dropna().unique().tolist()
    try:
        unique = sorted(unique, key=float)
    except (TypeError, ValueError):
        unique = sorted(unique, key=str)
    return [str(u) for u in unique]


def build_design_matrix(
    metadata: pd.DataFrame,
    factors: List[str],
    reference_levels: Optional[Dict[str, str]] = None,
    numeric_factors: Optional[List[str]] = None,
    intercept: bool = True,
) -> DesignMatrix:
    """
    Build an additive design matrix from metadata columns.

    Args:
        metadata: samples × columns metadata table
        factors: Metadata columns to include, in order
        reference_levels: factor → reference level (default: first level in natural order)
        numeric_factors: Factors to treat as continuous covariates
        intercept: Include an intercept column

    Returns:
        DesignMatrix

    Raises:
        DesignError: unknown factor, missing values, a single level, bad
            reference level, or a rank-deficient design
    """
    reference_levels = {k: str(v) for k, v in (reference_levels or {}).items()}
    numeric_factors = numeric_factors or []

    columns: Dict[str, np.ndarray] = {}
    terms: Dict[str, List[str]] = {}
    refs: Dict[str, str] = {}
    levels_by_factor: Dict[str, List[str]] = {}

    if intercept:
        columns[INTERCEPT] = np.ones(len(metadata))

    for factor in factors:
        if factor not in metadata.columns:
            raise DesignError(
                f"Design factor '{factor}' not found in metadata. "
                f"Available columns: {', '.join(map(str, metadata.columns))}",
                details={"factor": factor, "columns": metadata.columns.tolist()},
            )
        values = metadata[factor]
        if values.isna().any():
            missing = values[values.isna()].index.tolist()
            raise DesignError(
                f"Design factor '{factor}' has missing values for samples {missing}",
                details={"factor": factor, "samples": missing},
            )

        if factor in numeric_factors:
            try:
                numeric = pd.to_numeric(values).astype(float)
            except (TypeError, ValueError):
                raise DesignError(
                    f"Factor '{factor}' was declared numeric but has non-numeric values",
                    details={"factor": factor},
                )
            if numeric.nunique() < 2:
                raise DesignError(f"Numeric factor '{factor}' is constant", details={"factor": factor})
            columns[factor] = numeric.values
            terms[factor] = [factor]
            continue

        levels = _ordered_levels(values)
        if len(levels) < 2:
            raise DesignError(
                f"Factor '{factor}' has a single level ({levels}); it cannot be estimated",
                details={"factor": factor, "levels": levels},
            )

        ref = reference_levels.get(factor, levels[0])
        if ref not in levels:
            raise DesignError(
                f"Reference level '{ref}' is not a level of '{factor}' (levels: {levels})",
                details={"factor": factor, "levels": levels},
            )
        ordered = [ref] + [lvl for lvl in levels if lvl != ref]
        as_text = values.astype(str).values

        start = 0 if not intercept and not terms else 1
        names = []
        for level in ordered[start:]:
            name = f"{factor}{level}"
            columns[name] = (as_text == level).astype(float)
            names.append(name)

        terms[factor] = names
        refs[factor] = ordered[0] if start == 1 else ""
        levels_by_factor[factor] = ordered

    matrix = pd.DataFrame(columns, index=metadata.index)
    if matrix.shape[1] == 0:
        raise DesignError("Design matrix has no columns")

    rank = np.linalg.matrix_rank(matrix.values)
    if rank < matrix.shape[1]:
        raise DesignError(
            f"Design matrix is rank deficient (rank {rank} < {matrix.shape[1]} coefficients). "
            f"Suggestion: some factors are confounded (e.g. every sample of one batch shares a genotype); "
            f"drop one of them from design_factors.",
            details={"rank": int(rank), "coefficients": matrix.columns.tolist()},
        )
    if matrix.shape[0] <= matrix.shape[1]:
        raise DesignError(
            f"Design has {matrix.shape[1]} coefficients but only {matrix.shape[0]} samples; "
            f"no residual degrees of freedom remain",
            details={"samples": int(matrix.shape[0]), "coefficients": int(matrix.shape[1])},
        )

    return DesignMatrix(matrix=matrix, terms=terms, reference_levels=refs, levels=levels_by_factor)
