"""Tests for the YAML analysis configuration."""
from pathlib import Path

import pytest

from analysis_config import AnalysisConfig, ConfigError, DEFAULT_METHODS, load_config


def test_defaults_validate():
    config = AnalysisConfig()
    config.validate()
    assert config.methods == DEFAULT_METHODS
    assert "deseq2" not in config.methods
    assert config.factors_of_interest == ["Group", "DPC"]
    assert not config.has_input_files


def test_load_config_resolves_relative_paths(config_file, demo_files):
    config = load_config(str(config_file))
    metadata_path, counts_path = demo_files
    assert Path(config.metadata_path) == metadata_path.resolve()
    assert Path(config.counts_path) == counts_path.resolve()
    assert config.has_input_files
    assert config.reference_levels == {"Group": "WT", "Sex": "F"}


def test_load_config_empty_value_uses_default(config_file):
    # min_samples is left blank in the fixture
    config = load_config(str(config_file))
    assert config.min_samples is None


def test_load_config_missing_file(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(str(tmp_path / "nope.yaml"))


def test_load_config_unknown_key(tmp_path):
    path = tmp_path / "bad.yaml"
    path.write_text("methods: [lm]\nalpha: 0.1\n")
    with pytest.raises(ConfigError) as exc_info:
        load_config(str(path))
    assert exc_info.value.details["unknown_keys"] == ["alpha"]


def test_load_config_not_a_mapping(tmp_path):
    path = tmp_path / "list.yaml"
    path.write_text("- lm\n- voom_limma\n")
    with pytest.raises(ConfigError):
        load_config(str(path))


def test_shipped_config_loads():
    root = Path(__file__).resolve().parent.parent
    config = load_config(str(root / "config" / "analysis.yaml"))
    assert config.reference_levels.get("Group") == "WT"


@pytest.mark.parametrize(
    "overrides",
    [
        {"methods": ["lm", "sleuth"]},
        {"methods": []},
        {"filter_method": "variance"},
        {"norm_method": "TPM"},
        {"padj_threshold": 1.5},
        {"lfc_threshold": -1},
        {"min_samples": 0},
        {"prior_count": 0},
        {"voom_span": 0},
        {"factors_of_interest": ["SeqRun"]},
    ],
)
def test_validate_rejects(overrides):
    with pytest.raises(ConfigError):
        AnalysisConfig(**overrides).validate()


def test_stray_numeric_factor_warns():
    with pytest.warns(UserWarning):
        AnalysisConfig(numeric_factors=["Age"]).validate()


def test_to_dict_round_trip():
    config = AnalysisConfig(methods=["lm"], min_cpm=0.5)
    assert AnalysisConfig(**config.to_dict()) == config
