"""Configuration settings for the bulk RNA-seq pipeline."""
import json
import os
from datetime import date
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

load_dotenv()

# Paths
DEFAULT_RESULTS_DIR = Path(os.getenv("RNASEQ_RESULTS_DIR", "results"))

# Worker processes handed to PyDESeq2 and gseapy
DEFAULT_N_CPUS = int(os.getenv("RNASEQ_N_CPUS", "1"))

# Per-dataset settings file looked up in the input directory
CONFIG_FILENAME = "config.json"

# Agents in execution order
AGENT_ORDER = [
    "agent1_deg",
    "agent2_gsea",
    "agent3_visualization",
]


def load_run_config(
    input_dir: Path,
    overrides: Optional[Dict[str, Any]] = None
) -> Dict[str, Any]:
    """Merge ``config.json`` from the input directory with explicit overrides."""
    config: Dict[str, Any] = {"n_cpus": DEFAULT_N_CPUS}

    config_file = Path(input_dir) / CONFIG_FILENAME
    if config_file.exists():
        with open(config_file, "r", encoding="utf-8") as f:
            file_config = json.load(f)
        if not isinstance(file_config, dict):
            raise ValueError(f"{config_file} must contain a JSON object")
        config.update(file_config)

    config.update(overrides or {})
    return config


def run_dir_name(run_date: Optional[date] = None, analysis_name: Optional[str] = None) -> str:
    """Date-stamped results directory name: 2024-05-01 or 2024-05-01_knockdown."""
    stamp = (run_date or date.today()).isoformat()
    if analysis_name:
        return f"{stamp}_{analysis_name}"
    return stamp
