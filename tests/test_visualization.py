"""
Tests for Agent 3 - Visualization.
"""
import json
import warnings

import pytest
import numpy as np
import pandas as pd

from bulk_rnaseq.agents.agent3_visualization import VisualizationAgent


@pytest.fixture
def viz_input_dir(tmp_path):
    """Hand-made DE and GSEA outputs in the layout the upstream agents write."""
    rng = np.random.default_rng(0)
    input_dir = tmp_path / "viz_input"
    input_dir.mkdir()

    n_genes = 60
    genes = [f"ENSG{i:05d}" for i in range(n_genes)]
    samples = [f"T{i}" for i in range(3)] + [f"N{i}" for i in range(3)]

    log2fc = np.concatenate([np.full(10, 2.0), np.full(10, -2.0), rng.normal(0, 0.2, 40)])
    padj = np.concatenate([np.full(20, 1e-5), rng.uniform(0.2, 1, 39), [np.nan]])
    deg_all = pd.DataFrame({
        "gene_id": genes,
        "baseMean": rng.uniform(10, 1000, n_genes),
        "log2FC": log2fc,
        "lfcSE": 0.3,
        "stat": log2fc / 0.3,
        "pvalue": padj / 10,
        "padj": padj,
        "gene_name": [f"SYM{i}" for i in range(n_genes)],
    })
    deg_all.to_csv(input_dir / "deg_all_results.csv", index=False)

    sig = deg_all.head(20).copy()
    sig["direction"] = np.where(sig["log2FC"] > 0, "up", "down")
    sig.to_csv(input_dir / "deg_significant.csv", index=False)

    vst = pd.DataFrame(rng.normal(8, 1, (n_genes, 6)), index=genes, columns=samples)
    vst.iloc[:10, :3] += 2
    vst.rename_axis("gene_id").reset_index().to_csv(input_dir / "vst_counts.csv", index=False)

    pd.DataFrame({
        "gene_id": genes,
        "baseMean": deg_all["baseMean"],
        "genewise": rng.uniform(0.01, 0.5, n_genes),
        "fitted": 0.05 + 1 / deg_all["baseMean"],
        "final": rng.uniform(0.02, 0.3, n_genes),
    }).to_csv(input_dir / "dispersions.csv", index=False)

    pd.DataFrame({
        "sample_id": samples,
        "condition": ["tumor"] * 3 + ["normal"] * 3,
    }).to_csv(input_dir / "sample_metadata.csv", index=False)

    pd.DataFrame({
        "term": ["UP_SET", "DOWN_SET", "FLAT_SET"],
        "es": [0.8, -0.7, 0.1],
        "nes": [2.1, -1.9, 0.3],
        "pvalue": [0.001, 0.002, 0.8],
        "padj": [0.01, 0.02, 0.9],
        "fwer": [0.01, 0.03, 1.0],
        "set_size": [15, 15, 20],
        "leading_edge_size": [8, 7, 2],
        "leading_edge": ["SYM0;SYM1", "SYM10;SYM11", "SYM30"],
    }).to_csv(input_dir / "gsea_results.csv", index=False)

    ranking = sorted(deg_all["stat"].tolist(), reverse=True)
    res = np.concatenate([np.linspace(0, 0.8, 30), np.linspace(0.8, 0, 30)]).tolist()
    with open(input_dir / "gsea_curves.json", "w") as f:
        json.dump({
            "pheno_pos": "tumor",
            "pheno_neg": "normal",
            "ranking": ranking,
            "terms": {
                "UP_SET": {"hits": list(range(0, 15)), "RES": res,
                           "nes": 2.1, "pval": 0.001, "fdr": 0.01},
            },
        }, f)

    return input_dir


class TestVisualizationAgent:

    def test_all_figures(self, viz_input_dir, tmp_path):
        agent = VisualizationAgent(viz_input_dir, tmp_path / "agent3", {"figure_format": ["png"], "dpi": 50})
        results = agent.execute()

        figures = agent.figures_dir
        for name in ["ma_plot", "volcano_plot", "pca_plot", "dispersion_plot",
                     "sample_distance_heatmap", "heatmap_top_degs", "gsea_nes_barplot",
                     "gsea_enrichment_UP_SET"]:
            assert (figures / f"{name}.png").exists(), name

        assert results["failed_figures"] == []
        assert results["total_generated"] == 8

    def test_multiple_formats(self, viz_input_dir, tmp_path):
        agent = VisualizationAgent(viz_input_dir, tmp_path / "agent3",
                                   {"figure_format": ["png", "pdf"], "dpi": 50})
        agent.execute()

        assert (agent.figures_dir / "volcano_plot.png").exists()
        assert (agent.figures_dir / "volcano_plot.pdf").exists()

    def test_de_only(self, viz_input_dir, tmp_path):
        """GSEA figures are skipped when GSEA did not run."""
        (viz_input_dir / "gsea_results.csv").unlink()
        (viz_input_dir / "gsea_curves.json").unlink()

        agent = VisualizationAgent(viz_input_dir, tmp_path / "agent3", {"figure_format": ["png"], "dpi": 50})
        results = agent.execute()

        assert "gsea_nes_barplot" in results["failed_figures"]
        assert (agent.figures_dir / "volcano_plot.png").exists()

    def test_no_results(self, tmp_path):
        empty = tmp_path / "empty"
        empty.mkdir()
        agent = VisualizationAgent(empty, tmp_path / "agent3")

        with pytest.raises(ValueError, match="Input validation failed"):
            agent.execute()

    def test_sample_distances_cluster_on_condensed_matrix(self, viz_input_dir, tmp_path):
        """The clustermap is built from a precomputed linkage of the distances."""
        from scipy.cluster.hierarchy import ClusterWarning

        agent = VisualizationAgent(viz_input_dir, tmp_path / "agent3", {"figure_format": ["png"], "dpi": 50})
        assert agent.validate_inputs() is True

        with warnings.catch_warnings():
            warnings.simplefilter("error", ClusterWarning)
            saved = agent._plot_sample_distances()

        assert saved == [str(agent.figures_dir / "sample_distance_heatmap.png")]
