"""
Bulk RNA-seq Pipeline Orchestrator

Coordinates the differential expression -> GSEA -> visualization agents.

Usage:
    from bulk_rnaseq import BulkRNAseqPipeline

    pipeline = BulkRNAseqPipeline(
        input_dir="./data",
        output_dir="./results",
        config={"contrast": ["knockdown", "control"]}
    )

    # Run full pipeline
    results = pipeline.run()

    # Or run specific agents
    pipeline.run_agent("agent1_deg")
    pipeline.run_from("agent2_gsea")  # Resume from GSEA

Per-dataset settings (file names, column names, contrast, thresholds) live in
config.json in the input directory; explicit config passed here wins.
"""

import json
import logging
import shutil
from datetime import date, datetime
from pathlib import Path
from typing import Any, Dict, List, Optional

from .agents import DEGAgent, GSEAAgent, VisualizationAgent
from .config import AGENT_ORDER, DEFAULT_RESULTS_DIR, load_run_config, run_dir_name
from .utils.base_agent import LOG_FORMAT, AgentResult
from .utils.formats import write_gmt

# Initial inputs copied into the accumulated directory
INPUT_PATTERNS = ["*.csv", "*.tsv", "*.txt", "*.json", "*.rnk", "*.gmt"]


class BulkRNAseqPipeline:
    """Orchestrator for the bulk RNA-seq DE + GSEA pipeline."""

    AGENT_ORDER = AGENT_ORDER

    AGENT_CLASSES = {
        "agent1_deg": DEGAgent,
        "agent2_gsea": GSEAAgent,
        "agent3_visualization": VisualizationAgent,
    }

    # Outputs each agent needs from previous agents
    AGENT_DEPENDENCIES = {
        "agent1_deg": [],
        "agent2_gsea": ["ranked_genes.rnk"],
        "agent3_visualization": [
            "deg_all_results.csv", "deg_significant.csv", "vst_counts.csv",
            "dispersions.csv", "sample_metadata.csv",
            "gsea_results.csv", "gsea_curves.json",
        ],
    }

    def __init__(
        self,
        input_dir: Path,
        output_dir: Optional[Path] = None,
        config: Optional[Dict[str, Any]] = None,
        analysis_name: Optional[str] = None,
        run_date: Optional[date] = None
    ):
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir) if output_dir else DEFAULT_RESULTS_DIR
        self.config = load_run_config(self.input_dir, config)
        self.analysis_name = analysis_name or self.config.get("analysis_name")

        # Date-stamped results directory; same-day re-runs reuse it
        self.run_id = run_dir_name(run_date, self.analysis_name)
        self.run_dir = self.output_dir / self.run_id
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.logger = self._setup_logging()

        self.agent_results: Dict[str, AgentResult] = {}
        self.execution_state = {
            "run_id": self.run_id,
            "start_time": None,
            "end_time": None,
            "completed_agents": [],
            "failed_agents": [],
            "agent_results": {}
        }

    def _setup_logging(self) -> logging.Logger:
        """Setup pipeline-level logging."""
        logger = logging.getLogger("bulk_rnaseq.pipeline")
        logger.setLevel(logging.DEBUG)

        for handler in list(logger.handlers):
            handler.close()
            logger.removeHandler(handler)

        log_file = self.run_dir / "pipeline.log"
        fh = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        fh.setLevel(logging.DEBUG)

        ch = logging.StreamHandler()
        ch.setLevel(logging.INFO)

        formatter = logging.Formatter(LOG_FORMAT)
        fh.setFormatter(formatter)
        ch.setFormatter(formatter)

        logger.addHandler(fh)
        logger.addHandler(ch)
        logger.propagate = False

        return logger

    @property
    def accumulated_dir(self) -> Path:
        return self.run_dir / "accumulated"

    def _get_agent_input_dir(self, agent_name: str) -> Path:
        """Determine input directory for an agent."""
        if agent_name == "agent1_deg":
            return self.input_dir
        return self.accumulated_dir

    def _copy_initial_inputs(self) -> None:
        """Copy initial input files to accumulated directory."""
        self.accumulated_dir.mkdir(exist_ok=True)

        for pattern in INPUT_PATTERNS:
            for f in self.input_dir.glob(pattern):
                shutil.copy2(f, self.accumulated_dir / f.name)

    def _accumulate_outputs(self, agent_name: str) -> None:
        """Copy agent outputs to accumulated directory for next agents."""
        self.accumulated_dir.mkdir(exist_ok=True)

        agent_output_dir = self.run_dir / agent_name
        if not agent_output_dir.exists():
            return

        for pattern in ["*.csv", "*.json", "*.rnk"]:
            for f in agent_output_dir.glob(pattern):
                if f.name.startswith("meta_"):
                    continue
                shutil.copy2(f, self.accumulated_dir / f.name)

    def _check_dependencies(self, agent_name: str) -> List[str]:
        """Return upstream files this agent expects but cannot find."""
        input_dir = self._get_agent_input_dir(agent_name)
        return [
            name for name in self.AGENT_DEPENDENCIES.get(agent_name, [])
            if not (input_dir / name).exists()
        ]

    def run_agent(self, agent_name: str, config_override: Optional[Dict] = None) -> Dict[str, Any]:
        """Run a single agent."""
        if agent_name not in self.AGENT_CLASSES:
            raise ValueError(f"Unknown agent: {agent_name}")

        if not self.accumulated_dir.exists():
            self._copy_initial_inputs()

        self.logger.info(f"{'='*60}")
        self.logger.info(f"Running {agent_name}")
        self.logger.info(f"{'='*60}")

        missing = self._check_dependencies(agent_name)
        if missing:
            self.logger.warning(f"{agent_name}: upstream outputs not found: {missing}")

        agent_config = {**self.config, **(config_override or {})}

        input_dir = self._get_agent_input_dir(agent_name)
        output_dir = self.run_dir / agent_name

        AgentClass = self.AGENT_CLASSES[agent_name]
        agent = AgentClass(
            input_dir=input_dir,
            output_dir=output_dir,
            config=agent_config
        )

        try:
            results = agent.execute()
        except Exception as e:
            self.logger.error(f"Agent {agent_name} failed: {e}")
            self.execution_state["failed_agents"].append(agent_name)
            self.agent_results[agent_name] = AgentResult(
                agent_name, False, output_dir, {}, errors=agent.errors
            )
            raise

        self.execution_state["completed_agents"].append(agent_name)
        self.execution_state["agent_results"][agent_name] = results
        self.agent_results[agent_name] = AgentResult(agent_name, True, output_dir, results)

        self._accumulate_outputs(agent_name)

        return results

    def _run_sequence(self, agents_to_run: List[str]) -> None:
        for agent_name in agents_to_run:
            try:
                self.run_agent(agent_name)
            except Exception as e:
                self.logger.error(f"Pipeline stopped at {agent_name}: {e}")
                break

    def run(self, stop_after: Optional[str] = None) -> Dict[str, Any]:
        """Run the full pipeline or until a specific agent."""
        self.execution_state["start_time"] = datetime.now().isoformat()

        self.logger.info("Starting bulk RNA-seq pipeline")
        self.logger.info(f"Run directory: {self.run_dir}")

        self._copy_initial_inputs()

        if stop_after:
            if stop_after not in self.AGENT_ORDER:
                raise ValueError(f"Unknown agent: {stop_after}")
            agents_to_run = self.AGENT_ORDER[:self.AGENT_ORDER.index(stop_after) + 1]
        else:
            agents_to_run = list(self.AGENT_ORDER)

        self.logger.info(f"Agents to run: {agents_to_run}")
        self._run_sequence(agents_to_run)

        self.execution_state["end_time"] = datetime.now().isoformat()
        self._save_execution_state()

        self.logger.info(f"{'='*60}")
        self.logger.info("Pipeline Complete")
        self.logger.info(f"Completed: {len(self.execution_state['completed_agents'])} agents")
        self.logger.info(f"Failed: {len(self.execution_state['failed_agents'])} agents")
        self.logger.info(f"Results: {self.run_dir}")
        self.logger.info(f"{'='*60}")

        return self.execution_state

    def run_from(self, agent_name: str) -> Dict[str, Any]:
        """Resume pipeline from a specific agent."""
        if agent_name not in self.AGENT_ORDER:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.logger.info(f"Resuming from {agent_name}")
        self._run_sequence(self.AGENT_ORDER[self.AGENT_ORDER.index(agent_name):])

        self._save_execution_state()
        return self.execution_state

    def _save_execution_state(self) -> None:
        """Save execution state to JSON."""
        state_file = self.run_dir / "pipeline_summary.json"
        with open(state_file, 'w', encoding='utf-8') as f:
            json.dump(self.execution_state, f, indent=2, default=str)


def create_sample_data(output_dir: Path, n_genes: int = 1000, n_samples: int = 8) -> None:
    """Create a synthetic featureCounts-style dataset for trying the pipeline."""
    import numpy as np
    import pandas as pd

    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    rng = np.random.default_rng(42)

    gene_ids = [f"ENSG{i:011d}.{i % 3 + 1}" for i in range(n_genes)]
    symbols = [f"GENE{i}" for i in range(n_genes)]

    n_treated = n_samples // 2
    n_control = n_samples - n_treated
    samples = [f"treated_{i+1}" for i in range(n_treated)] + \
              [f"control_{i+1}" for i in range(n_control)]

    # Negative binomial counts with gene-specific means
    means = rng.lognormal(mean=5, sigma=1.2, size=n_genes)
    dispersion = 0.1
    fold = np.ones(n_genes)
    fold[:50] = 4.0    # Up in treated
    fold[50:100] = 0.25  # Down in treated

    counts = np.empty((n_genes, n_samples), dtype=int)
    for j in range(n_samples):
        mu = means * (fold if j < n_treated else 1.0)
        p = 1.0 / (1.0 + mu * dispersion)
        counts[:, j] = rng.negative_binomial(1.0 / dispersion, p)

    # featureCounts layout: BAM paths as sample headers plus annotation columns
    count_df = pd.DataFrame(counts, columns=[f"aligned/{s}.sorted.bam" for s in samples])
    count_df.insert(0, "Geneid", gene_ids)
    count_df.insert(1, "Chr", "chr1")
    count_df.insert(2, "Start", np.arange(n_genes) * 1000 + 1)
    count_df.insert(3, "End", np.arange(n_genes) * 1000 + 900)
    count_df.insert(4, "Strand", "+")
    count_df.insert(5, "Length", 900)

    counts_file = output_dir / "counts.tsv"
    with open(counts_file, "w", encoding="utf-8") as f:
        f.write("# Program:featureCounts v2.0.3; Command:\"featureCounts\" synthetic\n")
        count_df.to_csv(f, sep="\t", index=False)

    meta_df = pd.DataFrame({
        "sample_id": samples,
        "condition": ["treated"] * n_treated + ["control"] * n_control,
        "batch": [f"batch{i % 2 + 1}" for i in range(n_samples)],
    })
    meta_df.to_csv(output_dir / "metadata.tsv", sep="\t", index=False)

    annotation = pd.DataFrame({
        "gene_id": [g.split(".")[0] for g in gene_ids],
        "gene_name": symbols,
    })
    annotation.to_csv(output_dir / "annotation.tsv", sep="\t", index=False)

    gene_sets = {
        "TREATMENT_UP": symbols[:50],
        "TREATMENT_DOWN": symbols[50:100],
    }
    for k in range(8):
        picks = rng.choice(np.arange(100, n_genes), size=40, replace=False)
        gene_sets[f"BACKGROUND_SET_{k+1}"] = [symbols[i] for i in sorted(picks)]
    write_gmt(gene_sets, output_dir / "gene_sets.gmt")

    config = {
        "counts_file": "counts.tsv",
        "metadata_file": "metadata.tsv",
        "annotation_file": "annotation.tsv",
        "gene_sets": "gene_sets.gmt",
        "condition_column": "condition",
        "contrast": ["treated", "control"],
        "padj_cutoff": 0.05,
        "log2fc_cutoff": 1.0,
        "min_size": 10,
        "permutation_num": 1000
    }
    with open(output_dir / 'config.json', 'w', encoding='utf-8') as f:
        json.dump(config, f, indent=2)

    print(f"Sample data created in {output_dir}")
    print(f"  - counts.tsv: {n_genes} genes x {n_samples} samples")
    print(f"  - metadata.tsv, annotation.tsv, gene_sets.gmt, config.json")


def main(argv: Optional[List[str]] = None) -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Bulk RNA-seq DE + GSEA pipeline")
    parser.add_argument("--input", "-i", required=True, help="Input directory")
    parser.add_argument("--output", "-o", help="Results directory (default: $RNASEQ_RESULTS_DIR or ./results)")
    parser.add_argument("--name", "-n", help="Analysis name appended to the date-stamped run directory")
    parser.add_argument("--create-sample", action="store_true", help="Create sample data in --input")
    parser.add_argument("--agent", choices=AGENT_ORDER, help="Run specific agent only")
    parser.add_argument("--from-agent", choices=AGENT_ORDER, help="Resume from specific agent")
    parser.add_argument("--stop-after", choices=AGENT_ORDER, help="Stop after specific agent")

    args = parser.parse_args(argv)

    if args.create_sample:
        create_sample_data(Path(args.input))
        return

    pipeline = BulkRNAseqPipeline(
        input_dir=Path(args.input),
        output_dir=Path(args.output) if args.output else None,
        analysis_name=args.name,
    )

    if args.agent:
        pipeline.run_agent(args.agent)
    elif args.from_agent:
        pipeline.run_from(args.from_agent)
    else:
        pipeline.run(stop_after=args.stop_after)


if __name__ == "__main__":
    main()
