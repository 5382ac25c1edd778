"""
Input handling for the differential expression walkthrough.

Two inputs are read from the local filesystem (or file-like uploads):
- a CSV sample metadata table (sample id, developmental stage, sex, genotype group, batch)
- a tab-delimited gene-by-sample count matrix (first column = gene id)

Canonical in-memory shape for counts is genes × samples, the orientation every
statistical module of this repo works in. Metadata is samples × columns with the
same sample order as the count columns.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union
from os import PathLike
import logging
import pandas as pd
import numpy as np

logger = logging.getLogger(__name__)

FileSource = Union[str, PathLike, Any]  # path or file-like (e.g. Streamlit upload)


class DataValidationError(Exception):
    """Raised when an input table fails validation checks."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)


def _read_table(source: FileSource, sep: str, what: str) -> pd.DataFrame:
    try:
        df = pd.read_csv(source, sep=sep)
    except FileNotFoundError:
        raise DataValidationError(
            f"{what} file not found: {source}. "
            f"Suggestion: Check the path in config/analysis.yaml.",
            details={"path": str(source)},
        )
    except pd.errors.EmptyDataError:
        raise DataValidationError(f"{what} file is empty or contains no readable data.")
    except pd.errors.ParserError as e:
        raise DataValidationError(
            f"Failed to parse {what} file: {str(e)}. "
            f"Suggestion: Metadata must be comma-separated and counts tab-separated."
        )

    if df.empty:
        raise DataValidationError(f"{what} file has a header but no data rows.")
    return df


def load_metadata(source: FileSource, sample_column: str = "Sample") -> pd.DataFrame:
    """
    Read the sample metadata CSV.

    Args:
        source: Path or file-like object of the CSV
        sample_column: Column holding the sample identifiers

    Returns:
        DataFrame indexed by sample id (index name = sample_column)

    Raises:
        DataValidationError: missing sample column or duplicated sample ids
    """
    df = _read_table(source, sep=",", what="Metadata")

    if sample_column not in df.columns:
        raise DataValidationError(
            f"Metadata has no '{sample_column}' column. Found columns: {', '.join(map(str, df.columns))}. "
            f"Suggestion: set sample_column in the config to the column with sample identifiers.",
            details={"columns": df.columns.tolist()},
        )

    # Strip stray whitespace from text columns
    for col in df.select_dtypes(include=["object"]).columns:
        df[col] = df[col].str.strip()

    df[sample_column] = df[sample_column].astype(str)
    duplicated = df[sample_column][df[sample_column].duplicated()].tolist()
    if duplicated:
        raise DataValidationError(
            f"Metadata contains duplicated sample ids: {duplicated}",
            details={"duplicated": duplicated},
        )

    return df.set_index(sample_column)


def load_counts(source: FileSource) -> pd.DataFrame:
    """
    Read the tab-delimited gene-by-sample count matrix.

    Args:
        source: Path or file-like object of the TSV

    Returns:
        genes × samples integer DataFrame (index = gene id)

    Raises:
        DataValidationError: negative, missing or non-integer counts
    """
    df = _read_table(source, sep="\t", what="Count matrix")

    if len(df.columns) < 2:
        raise DataValidationError(
            f"Count matrix must have a gene column plus at least one sample column, "
            f"but found {len(df.columns)} column(s). "
            f"Suggestion: Check that the file is tab-delimited.",
            details={"columns": len(df.columns)},
        )

    gene_col = df.columns[0]
    df[gene_col] = df[gene_col].astype(str)
    df = df.set_index(gene_col)
    df.index.name = "gene"

    numeric_cols = list(df.select_dtypes(include=[np.number]).columns)
    dropped = [c for c in df.columns if c not in numeric_cols]
    if dropped:
        logger.warning(f"Dropping non-numeric count columns: {dropped}")
    df = df.loc[:, numeric_cols]

    if df.shape[1] == 0:
        raise DataValidationError("Count matrix has no numeric sample columns.")

    if df.isna().any().any():
        n_missing = int(df.isna().sum().sum())
        raise DataValidationError(
            f"Count matrix contains {n_missing} missing values.",
            details={"missing": n_missing},
        )

    if (df < 0).any().any():
        negative_count = int((df < 0).sum().sum())
        raise DataValidationError(
            f"Count matrices cannot contain negative values. Found {negative_count} negative values. "
            f"Suggestion: Check if your data has been log-transformed or normalized.",
            details={"negative_count": negative_count},
        )

    if not np.allclose(df.values, np.round(df.values), atol=1e-3):
        raise DataValidationError(
            "Count matrix contains non-integer values. Raw sequencing counts are required.",
        )

    if df.index.duplicated().any():
        n_dups = int(df.index.duplicated().sum())
        logger.warning(f"{n_dups} duplicated gene ids summed")
        df = df.groupby(level=0, sort=False).sum()
    else:
        n_dups = 0

    df.columns = df.columns.astype(str)
    counts = df.round().astype(np.int64)
    counts.attrs.update({"dropped_columns": dropped, "n_duplicates_summed": n_dups})
    return counts


@dataclass
class ExperimentData:
    """Count matrix + sample metadata with aligned sample order."""

    counts: pd.DataFrame  # genes × samples, integer counts
    metadata: pd.DataFrame  # samples × columns, rows in count-column order
    lib_size: pd.Series  # column sums of counts
    norm_factors: pd.Series  # scaling factors, 1.0 until normalized
    warnings: List[str] = field(default_factory=list)

    @classmethod
    def from_frames(cls, counts: pd.DataFrame, metadata: pd.DataFrame) -> "ExperimentData":
        """
        Build an ExperimentData, aligning metadata rows to the count columns.

        Samples present in only one of the tables are dropped with a warning.

        Raises:
            DataValidationError: if the two tables share no samples
        """
        warnings: List[str] = []
        dropped = counts.attrs.get("dropped_columns") or []
        if dropped:
            warnings.append(f"Non-numeric count columns were dropped: {list(dropped)}")
        n_dups = counts.attrs.get("n_duplicates_summed", 0)
        if n_dups:
            warnings.append(f"{n_dups} duplicated gene ids had their counts summed")

        counts = counts.copy()
        metadata = metadata.copy()
        counts.columns = counts.columns.astype(str)
        metadata.index = metadata.index.astype(str)

        common = [s for s in counts.columns if s in metadata.index]
        if not common:
            raise DataValidationError(
                "No sample ids are shared between the count matrix and the metadata. "
                "Suggestion: count column headers must match the metadata sample column.",
                details={
                    "count_samples": counts.columns.tolist()[:5],
                    "metadata_samples": metadata.index.tolist()[:5],
                },
            )

        only_counts = [s for s in counts.columns if s not in metadata.index]
        only_meta = [s for s in metadata.index if s not in counts.columns]
        alignment = []
        if only_counts:
            alignment.append(f"{len(only_counts)} count columns have no metadata and were dropped: {only_counts}")
        if only_meta:
            alignment.append(f"{len(only_meta)} metadata samples have no counts and were dropped: {only_meta}")
        for w in alignment:
            logger.warning(w)
        warnings.extend(alignment)

        counts = counts.loc[:, common]
        metadata = metadata.loc[common]

        return cls(
            counts=counts,
            metadata=metadata,
            lib_size=counts.sum(axis=0).astype(float),
            norm_factors=pd.Series(1.0, index=counts.columns),
            warnings=warnings,
        )

    @property
    def n_genes(self) -> int:
        return self.counts.shape[0]

    @property
    def n_samples(self) -> int:
        return self.counts.shape[1]

    @property
    def effective_lib_size(self) -> pd.Series:
        """Library sizes scaled by normalization factors."""
        return self.lib_size * self.norm_factors

    def subset_genes(self, mask: Union[pd.Series, np.ndarray]) -> "ExperimentData":
        """
        Keep genes where mask is True. Library sizes are recomputed from the kept
        genes and normalization factors are reset.
        """
        mask = np.asarray(mask, dtype=bool)
        if mask.shape[0] != self.n_genes:
            raise ValueError(
                f"Gene mask has {mask.shape[0]} entries but the count matrix has {self.n_genes} genes"
            )
        counts = self.counts.loc[mask]
        return ExperimentData(
            counts=counts,
            metadata=self.metadata,
            lib_size=counts.sum(axis=0).astype(float),
            norm_factors=pd.Series(1.0, index=counts.columns),
            warnings=list(self.warnings),
        )

    def with_norm_factors(self, norm_factors: pd.Series) -> "ExperimentData":
        return ExperimentData(
            counts=self.counts,
            metadata=self.metadata,
            lib_size=self.lib_size,
            norm_factors=norm_factors.reindex(self.counts.columns),
            warnings=list(self.warnings),
        )


def load_experiment(
    metadata_source: FileSource, counts_source: FileSource, sample_column: str = "Sample"
) -> ExperimentData:
    """Read both input files and align them."""
    metadata = load_metadata(metadata_source, sample_column=sample_column)
    counts = load_counts(counts_source)
    experiment = ExperimentData.from_frames(counts, metadata)
    logger.info(f"Loaded {experiment.n_genes} genes × {experiment.n_samples} samples")
    return experiment
