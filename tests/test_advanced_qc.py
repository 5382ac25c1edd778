"""Tests for sample-level QC: PCA, outliers and factor effects."""
import numpy as np
import pandas as pd
import pytest

from advanced_qc import AdvancedQC
from normalization import cpm


@pytest.fixture
def qc():
    return AdvancedQC()


@pytest.fixture
def demo_log_cpm(demo_experiment):
    return cpm(demo_experiment.counts, log=True)


def test_run_pca(qc, demo_log_cpm):
    coords, explained = qc.run_pca(demo_log_cpm, n_components=4, n_top_genes=200)
    assert coords.shape == (24, 4)
    assert list(coords.index) == list(demo_log_cpm.columns)
    assert list(explained.index) == ["PC1", "PC2", "PC3", "PC4"]
    assert explained.is_monotonic_decreasing
    assert 0 < explained.sum() <= 1


def test_run_pca_caps_components(qc, demo_log_cpm):
    coords, _ = qc.run_pca(demo_log_cpm.iloc[:, :4], n_components=10)
    assert coords.shape[1] == 3


def test_run_pca_needs_three_samples(qc, demo_log_cpm):
    with pytest.raises(ValueError):
        qc.run_pca(demo_log_cpm.iloc[:, :2])


def test_detect_outliers_flags_distant_sample(qc):
    rng = np.random.default_rng(0)
    coords = pd.DataFrame(rng.normal(size=(12, 2)), columns=["PC1", "PC2"], index=[f"s{i}" for i in range(12)])
    coords.loc["s11"] = [40.0, 40.0]
    outliers, distances = qc.detect_outliers(coords)
    assert outliers == ["s11"]
    assert distances.idxmax() == "s11"


def test_no_outliers_on_a_grid(qc):
    grid = [(x, y) for x in (-1.0, 0.0, 1.0) for y in (-1.0, 0.0, 1.0)]
    coords = pd.DataFrame(grid, columns=["PC1", "PC2"])
    outliers, _ = qc.detect_outliers(coords)
    assert outliers == []


def test_assess_factor_effects(qc, demo_log_cpm, demo_experiment):
    coords, _ = qc.run_pca(demo_log_cpm)
    effects = qc.assess_factor_effects(coords, demo_experiment.metadata, ["Sex", "Group", "SeqRun"])
    assert list(effects.index) == ["Sex", "Group", "SeqRun"]
    assert ((effects.values >= 0) & (effects.values <= 1 + 1e-12)).all()


def test_factor_effect_of_perfect_split(qc):
    coords = pd.DataFrame({"PC1": [-1.0, -1.0, 1.0, 1.0], "PC2": [0.5, -0.5, 0.5, -0.5]}, index=list("abcd"))
    meta = pd.DataFrame({"Group": ["A", "A", "B", "B"]}, index=list("abcd"))
    effects = qc.assess_factor_effects(coords, meta, ["Group"])
    assert effects.loc["Group", "PC1"] == pytest.approx(1.0)
    assert effects.loc["Group", "PC2"] == pytest.approx(0.0)


def test_assess_factor_effects_unknown_factor(qc, demo_log_cpm, demo_experiment):
    coords, _ = qc.run_pca(demo_log_cpm)
    with pytest.raises(ValueError):
        qc.assess_factor_effects(coords, demo_experiment.metadata, ["Genotype"])


def test_outlier_plot(qc, demo_log_cpm, demo_experiment):
    coords, explained = qc.run_pca(demo_log_cpm)
    outliers, distances = qc.detect_outliers(coords)
    groups = demo_experiment.metadata["Group"].to_dict()
    fig = qc.create_outlier_plot(coords, groups, [coords.index[0]], distances, explained)
    assert fig.data[-1].name == "Outlier"


def test_factor_effect_plot(qc):
    effects = pd.DataFrame({"PC1": [0.8, 0.1], "PC2": [0.05, 0.4]}, index=["Group", "SeqRun"])
    fig = qc.create_factor_effect_plot(effects)
    assert np.asarray(fig.data[0].z).shape == (2, 2)
    with pytest.raises(ValueError):
        qc.create_factor_effect_plot(pd.DataFrame())
