"""
Demo dataset generator for the differential expression walkthrough.

Simulates a developmental time-course experiment (mouse embryonic gonads at
three stages, both sexes, wild type vs knockout, sequenced on two runs) with
negative binomial counts and known differentially expressed genes.
"""

from pathlib import Path
from typing import Dict, Tuple
import pandas as pd
import numpy as np

STAGES = [11.5, 12.5, 13.5]
SEXES = ["F", "M"]
GROUPS = ["WT", "KO"]
REPLICATES = 2

# Named sex-linked genes: female-biased X gene and male-only Y genes
SEX_GENES = {"Xist": 6.0, "Ddx3y": -6.0, "Kdm5d": -6.0, "Eif2s3y": -6.0, "Uty": -5.0}


def _demo_design() -> pd.DataFrame:
    rows = []
    for stage in STAGES:
        for sex in SEXES:
            for group in GROUPS:
                for rep in range(1, REPLICATES + 1):
                    rows.append({
                        "Sample": f"{group}_{sex}_E{stage}_{rep}",
                        "DPC": stage,
                        "Sex": sex,
                        "Group": group,
                        # Alternate runs so the batch is not confounded with any factor
                        "SeqRun": "Run1" if (rep + len(rows) // 2) % 2 == 0 else "Run2",
                    })
    return pd.DataFrame(rows).set_index("Sample")


def load_demo_dataset(n_genes: int = 2000, seed: int = 42) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Generate the simulated walkthrough dataset.

    Returns:
        Tuple of (counts_df, metadata_df):
        - counts_df: genes × samples integer counts (index name "gene")
        - metadata_df: index = sample id ("Sample"), columns DPC, Sex, Group, SeqRun

    Dataset characteristics:
    - 24 samples: 3 stages × 2 sexes × 2 genotypes × 2 replicates
    - Negative binomial counts, dispersion decreasing with abundance (BCV ~0.2-0.5)
    - ~8% of genes respond to genotype (|log2FC| 1-2.5), ~10% to stage
    - Sex-linked genes (Xist, Ddx3y, ...) with large sex effects
    - Run2 libraries are shallower and carry a small gene-specific shift
    - Reproducible for a given seed
    """
    if n_genes < len(SEX_GENES) + 10:
        raise ValueError(f"n_genes must be at least {len(SEX_GENES) + 10}, got {n_genes}")

    rng = np.random.default_rng(seed)
    metadata = _demo_design()
    n_samples = len(metadata)

    genes = list(SEX_GENES) + [f"Gene{i:05d}" for i in range(1, n_genes - len(SEX_GENES) + 1)]
    base_log2 = rng.normal(loc=4.0, scale=2.2, size=n_genes)  # log2 mean count at 1x depth

    log2_mu = np.tile(base_log2[:, None], (1, n_samples))

    is_ko = (metadata["Group"] == "KO").values
    is_male = (metadata["Sex"] == "M").values
    stage_index = metadata["DPC"].map({s: i for i, s in enumerate(STAGES)}).values
    is_run2 = (metadata["SeqRun"] == "Run2").values

    background = np.arange(len(SEX_GENES), n_genes)
    shuffled = rng.permutation(background)
    n_group = int(0.08 * n_genes)
    n_stage = int(0.10 * n_genes)
    group_genes = shuffled[:n_group]
    stage_genes = shuffled[n_group:n_group + n_stage]

    group_lfc = rng.uniform(1.0, 2.5, size=n_group) * rng.choice([-1, 1], size=n_group)
    log2_mu[np.ix_(group_genes, np.where(is_ko)[0])] += group_lfc[:, None]

    # Monotone trend over stages: 0, s/2, s
    stage_slope = rng.uniform(0.8, 2.0, size=n_stage) * rng.choice([-1, 1], size=n_stage)
    log2_mu[stage_genes] += stage_slope[:, None] * (stage_index[None, :] / 2.0)

    for i, lfc in enumerate(SEX_GENES.values()):
        log2_mu[i] += np.where(is_male, -lfc / 2, lfc / 2)
        log2_mu[i] += 5.0

    # Sequencing batch: gene-specific shift on Run2
    batch_shift = rng.normal(0.0, 0.25, size=n_genes)
    log2_mu[:, is_run2] += batch_shift[:, None]

    depth = rng.uniform(0.8, 1.4, size=n_samples) * np.where(is_run2, 0.6, 1.0)
    mu = (2 ** log2_mu) * depth[None, :] * 20

    dispersion = 0.03 + 0.6 / np.sqrt(2 ** base_log2 * 20)
    shape = 1.0 / dispersion[:, None]
    lam = rng.gamma(shape=shape, scale=mu / shape)
    counts = rng.poisson(lam).astype(np.int64)

    counts_df = pd.DataFrame(counts, index=pd.Index(genes, name="gene"), columns=metadata.index.tolist())
    counts_df.attrs["truth"] = {
        "Group": [genes[i] for i in group_genes],
        "DPC": [genes[i] for i in stage_genes],
        "Sex": list(SEX_GENES),
    }
    return counts_df, metadata


def demo_truth(counts_df: pd.DataFrame) -> Dict[str, list]:
    """Genes simulated as responsive to each factor (empty if unknown)."""
    return counts_df.attrs.get("truth", {})


def write_demo_files(directory, n_genes: int = 2000, seed: int = 42) -> Tuple[Path, Path]:
    """
    Write the demo dataset in the walkthrough's input formats.

    Returns:
        (metadata.csv path, counts.tsv path)
    """
    directory = Path(directory)
    directory.mkdir(parents=True, exist_ok=True)
    counts_df, metadata = load_demo_dataset(n_genes=n_genes, seed=seed)

    metadata_path = directory / "metadata.csv"
    counts_path = directory / "counts.tsv"
    metadata.reset_index().to_csv(metadata_path, index=False)
    counts_df.to_csv(counts_path, sep="\t")
    return metadata_path, counts_path


def get_demo_description() -> str:
    """Markdown description of the demo dataset."""
    return f"""# Demo Dataset

Simulated gonad development time course.

## Experimental Design
- **Samples**: 24 ({len(STAGES)} stages × {len(SEXES)} sexes × {len(GROUPS)} genotypes × {REPLICATES} replicates)
- **DPC**: days post coitum, {', '.join(str(s) for s in STAGES)}
- **Sex**: F / M
- **Group**: WT (reference) / KO
- **SeqRun**: two sequencing runs, balanced against the other factors

## Built-in Signal
- ~8% of genes change with genotype (|log₂FC| 1-2.5)
- ~10% of genes change monotonically across stages
- Sex-linked genes: Xist (female), Ddx3y, Kdm5d, Eif2s3y, Uty (male)
- Run2 libraries are ~40% shallower with a small gene-specific shift (SD 0.25 log₂)

## Count Model
Negative binomial (gamma-Poisson) with dispersion decreasing with abundance,
so low-count genes are noisier, which is the mean-variance relationship voom
and the negative binomial methods model.
"""
