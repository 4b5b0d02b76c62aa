"""
Tests for the configuration module.
"""
import json
from datetime import date

import pytest

from bulk_rnaseq.config import (
    AGENT_ORDER,
    CONFIG_FILENAME,
    DEFAULT_N_CPUS,
    load_run_config,
    run_dir_name,
)


class TestRunConfig:
    """config.json merging."""

    def test_defaults_without_file(self, tmp_path):
        config = load_run_config(tmp_path)
        assert config == {"n_cpus": DEFAULT_N_CPUS}

    def test_file_then_overrides(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text(json.dumps({
            "contrast": ["kd", "ctrl"],
            "padj_cutoff": 0.1,
        }))

        config = load_run_config(tmp_path, {"padj_cutoff": 0.01})

        assert config["contrast"] == ["kd", "ctrl"]
        assert config["padj_cutoff"] == 0.01

    def test_non_object_rejected(self, tmp_path):
        (tmp_path / CONFIG_FILENAME).write_text("[1, 2]")

        with pytest.raises(ValueError):
            load_run_config(tmp_path)


class TestRunDirName:

    def test_date_only(self):
        assert run_dir_name(date(2024, 5, 1)) == "2024-05-01"

    def test_with_name(self):
        assert run_dir_name(date(2024, 5, 1), "knockdown") == "2024-05-01_knockdown"

    def test_agent_order(self):
        assert AGENT_ORDER == ["agent1_deg", "agent2_gsea", "agent3_visualization"]
