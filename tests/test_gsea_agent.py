"""
Tests for Agent 2 - Preranked GSEA.
"""
import json

import pytest
import pandas as pd

from bulk_rnaseq.agents.agent2_gsea import GSEAAgent, RESULT_COLUMNS
from bulk_rnaseq.utils.formats import write_gmt, write_rnk


@pytest.fixture
def gsea_run(gsea_input_dir, tmp_path, gsea_config):
    agent = GSEAAgent(gsea_input_dir, tmp_path / "agent2_gsea", gsea_config)
    results = agent.execute()
    return agent, results


class TestGeneSetMatching:
    """Identifier matching between the ranking and the gene sets."""

    def test_match_report(self, gsea_input_dir, tmp_path, gsea_config):
        agent = GSEAAgent(gsea_input_dir, tmp_path / "out", gsea_config)

        assert agent.validate_inputs() is True

        report = agent.match_report
        assert report["ranked_genes"] == 200
        assert report["gene_sets_total"] == 4
        # TOO_SMALL falls under min_size
        assert report["gene_sets_passing_size"] == 3

    def test_gene_case_upper(self, tmp_path, sample_ranking, sample_gene_sets, gsea_config):
        """Lower-case (mouse style) symbols match upper-case sets after folding."""
        input_dir = tmp_path / "mouse"
        input_dir.mkdir()
        write_rnk(sample_ranking.rename(lambda g: g.lower()), input_dir / "ranked_genes.rnk")
        write_gmt(sample_gene_sets, input_dir / "gene_sets.gmt")

        strict = GSEAAgent(input_dir, tmp_path / "strict", gsea_config)
        with pytest.raises(ValueError, match="size filter"):
            strict.validate_inputs()

        folded = GSEAAgent(input_dir, tmp_path / "folded", {**gsea_config, "gene_case": "upper"})
        assert folded.validate_inputs() is True
        # 80 of the 200 ranked genes belong to some set
        assert folded.match_report["genes_in_any_set"] == 80
        assert folded.match_report["match_rate"] == pytest.approx(0.4)

    def test_case_folding_keeps_largest_magnitude(self, tmp_path, sample_ranking,
                                                  sample_gene_sets, gsea_config):
        """Genes merged by case folding keep the score with the largest |score|."""
        input_dir = tmp_path / "mixed_case"
        input_dir.mkdir()
        ranking = pd.concat([sample_ranking, pd.Series({"g199": 0.1})])
        write_rnk(ranking, input_dir / "ranked_genes.rnk")
        write_gmt(sample_gene_sets, input_dir / "gene_sets.gmt")

        agent = GSEAAgent(input_dir, tmp_path / "out", {**gsea_config, "gene_case": "upper"})
        assert agent.validate_inputs() is True

        assert agent.ranking["G199"] == pytest.approx(-3.0)
        assert len(agent.ranking) == 200
        assert agent.ranking.is_monotonic_decreasing

    def test_missing_rnk(self, tmp_path, gsea_config):
        agent = GSEAAgent(tmp_path, tmp_path / "out", gsea_config)
        with pytest.raises(FileNotFoundError):
            agent.execute()

    def test_missing_gmt(self, gsea_input_dir, tmp_path, gsea_config):
        agent = GSEAAgent(gsea_input_dir, tmp_path / "out",
                          {**gsea_config, "gene_sets": "missing.gmt"})
        with pytest.raises(FileNotFoundError, match="missing.gmt"):
            agent.validate_inputs()

    def test_failure_written_to_meta(self, gsea_input_dir, tmp_path, gsea_config):
        agent = GSEAAgent(gsea_input_dir, tmp_path / "out", {**gsea_config, "min_size": 150})

        with pytest.raises(ValueError):
            agent.execute()

        meta = json.loads((tmp_path / "out" / "meta_agent2_gsea.json").read_text())
        assert meta["success"] is False


class TestPrerank:
    """Full preranked GSEA on the synthetic ranking."""

    def test_outputs_written(self, gsea_run):
        agent, _ = gsea_run
        for name in ["gsea_results.csv", "gsea_significant.csv", "gsea_leading_edge.csv",
                     "gsea_curves.json", "meta_agent2_gsea.json"]:
            assert (agent.output_dir / name).exists(), name

    def test_results_table(self, gsea_run):
        agent, results = gsea_run
        table = pd.read_csv(agent.output_dir / "gsea_results.csv")

        assert list(table.columns) == RESULT_COLUMNS
        assert set(table["term"]) == {"TOP_SET", "BOTTOM_SET", "SPREAD_SET"}
        assert results["gene_sets_tested"] == 3

    def test_enrichment_direction(self, gsea_run, gsea_config):
        agent, _ = gsea_run
        table = pd.read_csv(agent.output_dir / "gsea_results.csv").set_index("term")

        assert table.loc["TOP_SET", "nes"] > 0
        assert table.loc["BOTTOM_SET", "nes"] < 0
        assert table.loc["TOP_SET", "padj"] < gsea_config["fdr_cutoff"]
        assert table.loc["BOTTOM_SET", "padj"] < gsea_config["fdr_cutoff"]
        assert abs(table.loc["SPREAD_SET", "nes"]) < abs(table.loc["TOP_SET", "nes"])

    def test_significant_direction(self, gsea_run):
        agent, results = gsea_run
        sig = pd.read_csv(agent.output_dir / "gsea_significant.csv").set_index("term")

        assert sig.loc["TOP_SET", "direction"] == "up"
        assert sig.loc["BOTTOM_SET", "direction"] == "down"
        assert results["up_count"] >= 1
        assert results["down_count"] >= 1

    def test_leading_edge(self, gsea_run, sample_gene_sets):
        agent, _ = gsea_run
        le = pd.read_csv(agent.output_dir / "gsea_leading_edge.csv")
        top = le.loc[le["term"] == "TOP_SET", "gene"]

        assert len(top) > 0
        assert set(top) <= set(sample_gene_sets["TOP_SET"])
        table = pd.read_csv(agent.output_dir / "gsea_results.csv").set_index("term")
        assert table.loc["TOP_SET", "leading_edge_size"] == len(top)
        assert table.loc["TOP_SET", "set_size"] == 30

    def test_curves(self, gsea_run, gsea_config):
        agent, _ = gsea_run
        with open(agent.output_dir / "gsea_curves.json") as f:
            curves = json.load(f)

        assert curves["pheno_pos"] == "tumor"
        assert curves["pheno_neg"] == "normal"
        assert len(curves["ranking"]) == 200
        top = curves["terms"]["TOP_SET"]
        assert len(top["RES"]) == 200
        assert len(top["hits"]) == 30
        assert max(top["RES"]) > 0

    def test_seed_reproducible(self, gsea_input_dir, tmp_path, gsea_config):
        first = GSEAAgent(gsea_input_dir, tmp_path / "a", gsea_config)
        first.execute()
        second = GSEAAgent(gsea_input_dir, tmp_path / "b", gsea_config)
        second.execute()

        a = pd.read_csv(tmp_path / "a" / "gsea_results.csv")
        b = pd.read_csv(tmp_path / "b" / "gsea_results.csv")
        pd.testing.assert_frame_equal(a, b)
