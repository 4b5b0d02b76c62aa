"""
Bulk RNA-seq pipeline - Test Configuration and Fixtures
"""
import os
import shutil
import sys
import pytest
import pandas as pd
import numpy as np
from pathlib import Path

import matplotlib
matplotlib.use("Agg")

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from bulk_rnaseq.utils.formats import write_gmt, write_rnk


@pytest.fixture(scope="session")
def project_root():
    """Return project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def sample_count_matrix():
    """Generate a small synthetic count matrix for testing."""
    np.random.seed(42)
    n_genes = 100
    n_samples = 10

    genes = [f"GENE{i}" for i in range(n_genes)]

    # 5 tumor, 5 normal
    samples = [f"TUMOR_{i}" for i in range(5)] + [f"NORMAL_{i}" for i in range(5)]

    counts = np.random.negative_binomial(n=10, p=0.3, size=(n_genes, n_samples))

    # First 20 genes upregulated in tumor
    counts[:20, :5] = counts[:20, :5] * 3
    # Genes 20-40 downregulated in tumor
    counts[20:40, :5] = counts[20:40, :5] // 3 + 1

    df = pd.DataFrame(counts, index=genes, columns=samples)
    df.index.name = "gene_id"
    return df


@pytest.fixture
def sample_metadata():
    """Generate matching metadata for sample_count_matrix."""
    samples = [f"TUMOR_{i}" for i in range(5)] + [f"NORMAL_{i}" for i in range(5)]
    conditions = ["tumor"] * 5 + ["normal"] * 5
    batches = ["batch1", "batch2"] * 5

    return pd.DataFrame({
        "sample_id": samples,
        "condition": conditions,
        "batch": batches
    })


@pytest.fixture
def sample_config():
    """DE config matching the sample data."""
    return {
        "counts_file": "counts.tsv",
        "metadata_file": "metadata.tsv",
        "contrast": ["tumor", "normal"],
        "padj_cutoff": 0.05,
        "log2fc_cutoff": 0.5
    }


@pytest.fixture
def deg_input_dir(tmp_path, sample_count_matrix, sample_metadata):
    """Input directory with a count table and metadata on disk."""
    input_dir = tmp_path / "input"
    input_dir.mkdir()
    sample_count_matrix.to_csv(input_dir / "counts.tsv", sep="\t")
    sample_metadata.to_csv(input_dir / "metadata.tsv", sep="\t", index=False)
    return input_dir


@pytest.fixture
def sample_ranking():
    """200 genes ranked from strongly up (G0) to strongly down (G199)."""
    genes = [f"G{i}" for i in range(200)]
    return pd.Series(np.linspace(3, -3, 200), index=genes, name="score")


@pytest.fixture
def sample_gene_sets():
    """Gene sets concentrated at the top, the bottom, and spread over the list."""
    return {
        "TOP_SET": [f"G{i}" for i in range(30)],
        "BOTTOM_SET": [f"G{i}" for i in range(170, 200)],
        "SPREAD_SET": [f"G{i}" for i in range(0, 200, 7)],
        "TOO_SMALL": ["G1", "G2", "G3"],
    }


@pytest.fixture
def gsea_input_dir(tmp_path, sample_ranking, sample_gene_sets):
    """Input directory with a .rnk and a .gmt file."""
    input_dir = tmp_path / "gsea_input"
    input_dir.mkdir()
    write_rnk(sample_ranking, input_dir / "ranked_genes.rnk")
    write_gmt(sample_gene_sets, input_dir / "gene_sets.gmt")
    return input_dir


@pytest.fixture
def gsea_config():
    """Fast GSEA settings for the synthetic ranking."""
    return {
        "min_size": 10,
        "max_size": 500,
        "permutation_num": 200,
        "seed": 42,
        "fdr_cutoff": 0.25,
        "contrast": ["tumor", "normal"],
    }


# Skip markers for tests requiring specific resources
requires_r = pytest.mark.skipif(
    shutil.which("R") is None,
    reason="R not installed"
)
