"""
Tests for gene ID -> symbol annotation.
"""
import pytest
import pandas as pd

from bulk_rnaseq.utils.annotation import annotate_genes, load_annotation


@pytest.fixture
def annotation_file(tmp_path):
    path = tmp_path / "annotation.tsv"
    pd.DataFrame({
        "gene_id": ["ENSG01.3", "ENSG02.1", "ENSG03", "ENSG03"],
        "gene_name": ["TP53", "EGFR", "MYC", "MYC_DUP"],
    }).to_csv(path, sep="\t", index=False)
    return path


class TestLoadAnnotation:

    def test_versions_stripped(self, annotation_file):
        mapping = load_annotation(annotation_file)

        assert mapping["ENSG01"] == "TP53"
        assert mapping["ENSG03"] == "MYC"
        assert len(mapping) == 3

    def test_keep_versions(self, annotation_file):
        mapping = load_annotation(annotation_file, strip_version=False)
        assert "ENSG01.3" in mapping.index

    def test_missing_column(self, annotation_file):
        with pytest.raises(ValueError, match="symbol"):
            load_annotation(annotation_file, name_column="symbol")


class TestAnnotateGenes:

    def test_match_report(self, annotation_file):
        mapping = load_annotation(annotation_file)
        results = pd.DataFrame({
            "gene_id": ["ENSG01.7", "ENSG02.2", "ENSG99.1", "ENSG98"],
            "log2FC": [1.0, -1.0, 0.5, 0.1],
        })

        annotated, report = annotate_genes(results, mapping)

        assert annotated["gene_name"].tolist()[:2] == ["TP53", "EGFR"]
        assert annotated["gene_name"].isna().sum() == 2
        assert report["matched"] == 2
        assert report["total"] == 4
        assert report["match_rate"] == pytest.approx(0.5)
        assert report["unmatched_examples"] == ["ENSG99.1", "ENSG98"]
        # Original IDs are untouched
        assert annotated["gene_id"].tolist() == results["gene_id"].tolist()
