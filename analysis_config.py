"""
Analysis configuration for the differential expression walkthrough.

Settings live in a YAML file (config/analysis.yaml). Keys that are not given
fall back to the defaults on AnalysisConfig.
"""

from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Any, Dict, List, Optional
import warnings
import yaml


DEFAULT_METHODS = ["lm", "limma_trend", "voom_limma", "edger_lrt", "edger_ql"]
KNOWN_METHODS = DEFAULT_METHODS + ["deseq2"]
FILTER_METHODS = ["cpm", "filter_by_expr"]
NORM_METHODS = ["TMM", "upperquartile", "RLE", "none"]


class ConfigError(Exception):
    """Raised when the analysis configuration is invalid."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        self.message: str = message
        self.details: Dict[str, Any] = details or {}
        super().__init__(self.message)


@dataclass
class AnalysisConfig:
    """All user-tunable settings of the walkthrough."""

    # Input files (demo data is used when either is missing)
    metadata_path: Optional[str] = None
    counts_path: Optional[str] = None

    # Metadata column roles
    sample_column: str = "Sample"
    stage_column: str = "DPC"
    sex_column: str = "Sex"
    group_column: str = "Group"
    batch_column: str = "SeqRun"

    # Design
    design_factors: List[str] = field(default_factory=lambda: ["Group", "Sex", "DPC"])
    factors_of_interest: List[str] = field(default_factory=lambda: ["Group", "DPC"])
    numeric_factors: List[str] = field(default_factory=list)
    reference_levels: Dict[str, str] = field(default_factory=dict)

    # Filtering and normalization
    filter_method: str = "cpm"
    min_cpm: float = 1.0
    min_samples: Optional[int] = None  # None -> smallest group size
    norm_method: str = "TMM"
    prior_count: float = 2.0

    # Methods and thresholds
    methods: List[str] = field(default_factory=lambda: list(DEFAULT_METHODS))
    padj_threshold: float = 0.05
    lfc_threshold: float = 0.0

    # Model tuning
    prior_df: float = 10.0
    voom_span: float = 0.5

    def validate(self) -> None:
        """Check value ranges and cross-field consistency."""
        unknown = [m for m in self.methods if m not in KNOWN_METHODS]
        if unknown:
            raise ConfigError(
                f"Unknown methods {unknown}. Choose from {KNOWN_METHODS}.",
                details={"methods": unknown},
            )
        if not self.methods:
            raise ConfigError("At least one method must be configured.")
        if self.filter_method not in FILTER_METHODS:
            raise ConfigError(
                f"filter_method must be one of {FILTER_METHODS}, got '{self.filter_method}'",
                details={"filter_method": self.filter_method},
            )
        if self.norm_method not in NORM_METHODS:
            raise ConfigError(
                f"norm_method must be one of {NORM_METHODS}, got '{self.norm_method}'",
                details={"norm_method": self.norm_method},
            )
        if not 0 < self.padj_threshold < 1:
            raise ConfigError(
                f"padj_threshold must be between 0 and 1, got {self.padj_threshold}",
                details={"padj_threshold": self.padj_threshold},
            )
        if self.lfc_threshold < 0:
            raise ConfigError("lfc_threshold must be >= 0", details={"lfc_threshold": self.lfc_threshold})
        if self.min_cpm < 0:
            raise ConfigError("min_cpm must be >= 0", details={"min_cpm": self.min_cpm})
        if self.min_samples is not None and self.min_samples < 1:
            raise ConfigError("min_samples must be >= 1", details={"min_samples": self.min_samples})
        if self.prior_count <= 0:
            raise ConfigError("prior_count must be > 0", details={"prior_count": self.prior_count})
        if not 0 < self.voom_span <= 1:
            raise ConfigError("voom_span must be in (0, 1]", details={"voom_span": self.voom_span})

        missing = [f for f in self.factors_of_interest if f not in self.design_factors]
        if missing:
            raise ConfigError(
                f"Factors of interest {missing} are not part of design_factors {self.design_factors}",
                details={"factors_of_interest": missing},
            )

        stray = [f for f in self.numeric_factors if f not in self.design_factors]
        if stray:
            warnings.warn(f"numeric_factors {stray} are not in design_factors and will be ignored")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @property
    def has_input_files(self) -> bool:
        return bool(self.metadata_path) and bool(self.counts_path)


def load_config(config_path: str = "config/analysis.yaml") -> AnalysisConfig:
    """
    Load an AnalysisConfig from a YAML file.

    Args:
        config_path: Path to the YAML file

    Returns:
        Validated AnalysisConfig

    Raises:
        FileNotFoundError: if the file does not exist
        ConfigError: if the file has unknown keys or invalid values
    """
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Analysis config not found: {config_path}")

    with open(config_file, "r") as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigError(
            "Config file must contain a mapping of settings",
            details={"type": type(raw).__name__},
        )

    # Empty YAML values mean "use the default"
    raw = {k: v for k, v in raw.items() if v is not None}

    known = {f.name for f in fields(AnalysisConfig)}
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigError(f"Unknown config keys: {unknown}", details={"unknown_keys": unknown})

    # Relative input paths are resolved against the config file location
    for key in ("metadata_path", "counts_path"):
        value = raw.get(key)
        if value and not Path(value).is_absolute():
            raw[key] = str((config_file.parent / value).resolve())

    try:
        config = AnalysisConfig(**raw)
    except TypeError as e:
        raise ConfigError(f"Invalid config values: {e}") from e

    config.validate()
    return config
