"""
Pytest configuration and fixtures for the differential expression walkthrough tests.
"""

import pytest
import pandas as pd
import numpy as np

from count_data import ExperimentData
from demo_data import load_demo_dataset, write_demo_files
from design import build_design_matrix
from normalization import calc_norm_factors


# ============================================================================
# Simulated two-group experiment
# ============================================================================


def simulate_two_group(
    n_genes: int = 300, n_per_group: int = 4, n_de: int = 30, lfc: float = 2.0,
    dispersion: float = 0.05, seed: int = 7,
):
    """Negative binomial counts for a two-group design; the first n_de genes are DE."""
    rng = np.random.default_rng(seed)
    samples = [f"S{i + 1}" for i in range(2 * n_per_group)]
    group = np.array(["A"] * n_per_group + ["B"] * n_per_group)

    base = rng.lognormal(mean=5.0, sigma=1.2, size=n_genes)
    log2_fc = np.zeros(n_genes)
    log2_fc[:n_de] = np.where(np.arange(n_de) % 2 == 0, lfc, -lfc)
    depth = rng.uniform(0.7, 1.3, size=len(samples))

    mu = base[:, None] * depth[None, :] * np.where(group == "B", 2.0 ** log2_fc[:, None], 1.0)
    shape = 1.0 / dispersion
    counts = rng.poisson(rng.gamma(shape=shape, scale=mu / shape)).astype(np.int64)

    genes = pd.Index([f"G{i:04d}" for i in range(n_genes)], name="gene")
    counts_df = pd.DataFrame(counts, index=genes, columns=samples)
    metadata = pd.DataFrame({"Group": group}, index=pd.Index(samples, name="Sample"))
    return counts_df, metadata


@pytest.fixture
def two_group():
    """(counts, metadata, de_genes) for a 4 vs 4 design."""
    counts, metadata = simulate_two_group()
    return counts, metadata, list(counts.index[:30])


@pytest.fixture
def two_group_experiment(two_group):
    counts, metadata, _ = two_group
    experiment = ExperimentData.from_frames(counts, metadata)
    return experiment.with_norm_factors(calc_norm_factors(experiment.counts))


@pytest.fixture
def two_group_design(two_group_experiment):
    return build_design_matrix(two_group_experiment.metadata, ["Group"], reference_levels={"Group": "A"})


# ============================================================================
# Demo dataset fixtures
# ============================================================================


@pytest.fixture(scope="session")
def demo_frames():
    """Small demo dataset: (counts genes × samples, metadata)."""
    return load_demo_dataset(n_genes=400, seed=3)


@pytest.fixture
def demo_experiment(demo_frames):
    counts, metadata = demo_frames
    return ExperimentData.from_frames(counts, metadata)


@pytest.fixture
def demo_files(tmp_path):
    """Demo metadata.csv and counts.tsv written to a temporary directory."""
    return write_demo_files(tmp_path, n_genes=300, seed=5)


@pytest.fixture
def config_file(tmp_path, demo_files):
    """YAML config pointing at the demo files through relative paths."""
    metadata_path, counts_path = demo_files
    path = tmp_path / "analysis.yaml"
    path.write_text(
        "metadata_path: metadata.csv\n"
        "counts_path: counts.tsv\n"
        "design_factors: [Group, Sex, DPC]\n"
        "factors_of_interest: [Group, DPC]\n"
        "reference_levels:\n"
        "  Group: WT\n"
        "  Sex: F\n"
        "min_samples:\n"
        "methods: [lm, limma_trend, voom_limma]\n"
    )
    return path
