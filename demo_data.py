"""
Demo dataset generator.

Generates a reproducible two-group RNA-seq experiment for dermatology /
cosmetics research, with built-in differential expression patterns and a
matching gene-set catalog built from curated skin-biology panels.
"""

from dataclasses import dataclass
from typing import Dict, FrozenSet
import numpy as np
import pandas as pd

from count_preparation import SampleGroupAssignment
from gene_sets import GeneSet, catalog_from_mapping

DERMATOLOGY_PANELS = {
    "Anti-aging": ["COL1A1", "COL3A1", "ELN", "FBN1", "MMP1", "MMP2", "MMP9", "TIMP1"],
    "Skin Barrier": ["FLG", "LOR", "IVL", "CLDN1", "CLDN4", "TJP1", "AQP3", "HAS2", "HAS3"],
    "Anti-inflammation": ["IL1A", "IL1B", "IL6", "CXCL8", "TNF", "CXCL1", "CCL2", "PTGS2"],
    "Whitening/Melanogenesis": ["MITF", "TYR", "TYRP1", "DCT", "MC1R", "PMEL", "OCA2"],
    "Sebum Regulation": ["SREBF1", "PPARG", "FASN", "SCD", "DGAT2", "ELOVL6"],
    "Wound Healing": ["VEGFA", "FGF2", "TGFB1", "EGFR", "FN1", "KRT6A", "KRT16", "KRT17", "MMP3"],
}

# Upregulated in Treatment (wound healing response)
UPREGULATED = frozenset({"VEGFA", "FGF2", "TGFB1", "FN1", "KRT6A", "KRT16", "KRT17", "COL1A1"})
# Downregulated in Treatment (barrier disruption)
DOWNREGULATED = frozenset({"FLG", "LOR", "IVL", "CLDN1", "CLDN4", "AQP3"})

SAMPLE_NAMES = [
    "Control_Rep1",
    "Control_Rep2",
    "Control_Rep3",
    "Treatment_Rep1",
    "Treatment_Rep2",
    "Treatment_Rep3",
]


@dataclass(frozen=True)
class DemoDataset:
    counts: pd.DataFrame  # genes × samples raw integer counts
    groups: SampleGroupAssignment
    catalog: Dict[str, GeneSet]
    up_genes: FrozenSet[str]
    down_genes: FrozenSet[str]
    group_a: str = "Treatment"
    group_b: str = "Control"


def load_demo_dataset(
    seed: int = 42,
    n_background: int = 200,
    fold_change: float = 4.0,
    dispersion: float = 0.05,
) -> DemoDataset:
    """
    Generate the demo experiment.

    Args:
        seed: Random seed (same seed, same counts)
        n_background: Number of unchanged background genes
        fold_change: Planted fold change for up genes (down genes get 1/fold_change)
        dispersion: Negative-binomial dispersion of replicate noise

    Returns:
        DemoDataset with counts (genes × samples), sample groups
        (Control / Treatment, 3 replicates each) and a panel catalog
    """
    rng = np.random.default_rng(seed)

    panel_genes = sorted({g for genes in DERMATOLOGY_PANELS.values() for g in genes})
    background = [f"GENE_{i:03d}" for i in range(1, n_background + 1)]
    all_genes = panel_genes + background

    # Log-normal base means keep most genes well above the low-count filter
    base_means = rng.lognormal(mean=6.0, sigma=1.0, size=len(all_genes))
    is_treatment = np.array(["Treatment" in s for s in SAMPLE_NAMES])

    counts = np.zeros((len(all_genes), len(SAMPLE_NAMES)), dtype=np.int64)
    for i, gene in enumerate(all_genes):
        mu = np.full(len(SAMPLE_NAMES), base_means[i])
        if gene in UPREGULATED:
            mu[is_treatment] *= fold_change
        elif gene in DOWNREGULATED:
            mu[is_treatment] /= fold_change
        size = 1.0 / dispersion
        counts[i] = rng.negative_binomial(size, size / (size + mu))

    counts_df = pd.DataFrame(counts, index=all_genes, columns=SAMPLE_NAMES)
    counts_df.index.name = "gene_id"

    groups = SampleGroupAssignment(
        {s: ("Treatment" if t else "Control") for s, t in zip(SAMPLE_NAMES, is_treatment)}
    )

    # Background gene sets give the catalog a realistic null population
    mapping = {name: genes for name, genes in DERMATOLOGY_PANELS.items()}
    for k in range(10):
        mapping[f"Background set {k + 1}"] = list(
            rng.choice(background, size=15, replace=False)
        )
    catalog = catalog_from_mapping(mapping, source="demo_panels")

    return DemoDataset(
        counts=counts_df,
        groups=groups,
        catalog=catalog,
        up_genes=UPREGULATED,
        down_genes=DOWNREGULATED,
    )


def get_demo_description() -> str:
    """Markdown description of the demo dataset."""
    return """# RNA-seq Demo Dataset

## Experimental Design
- **Samples**: 6 total (3 Control replicates, 3 Treatment replicates)
- **Genes**: curated dermatology panel genes plus 200 background genes
- **Comparison**: Treatment vs Control

## Differential Expression Patterns
- **Upregulated in Treatment** (wound healing): VEGFA, FGF2, TGFB1, FN1, KRT6A, KRT16, KRT17, COL1A1
- **Downregulated in Treatment** (barrier disruption): FLG, LOR, IVL, CLDN1, CLDN4, AQP3
- Planted fold change: 4x by default

## Gene-set Catalog
One term per dermatology panel (Anti-aging, Skin Barrier, Anti-inflammation,
Whitening/Melanogenesis, Sebum Regulation, Wound Healing) plus ten random
background sets of 15 genes.

## Data Characteristics
- Negative-binomial counts (dispersion 0.05) around log-normal base means
- Reproducible: same seed, same counts
"""
