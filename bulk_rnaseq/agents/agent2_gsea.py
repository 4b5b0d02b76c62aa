"""
Agent 2: Gene Set Enrichment Analysis (GSEA)

Runs preranked GSEA (gseapy.prerank) on the ranked gene list from Agent 1
against gene sets from a .gmt file or an Enrichr library.

Input:
- ranked_genes.rnk: From Agent 1 (or any user-supplied .rnk)
- gene_sets.gmt: Gene set collection (or a library name in config)

Output:
- gsea_results.csv: All tested gene sets with ES, NES, p-value, FDR
- gsea_significant.csv: Gene sets passing the FDR cutoff
- gsea_leading_edge.csv: Gene to gene set leading-edge mapping
- gsea_curves.json: Running enrichment scores of the top gene sets
- meta_agent2_gsea.json: Execution metadata
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

import gseapy as gp

from ..utils.base_agent import BaseAgent
from ..utils.formats import collapse_ranking, read_rnk

RESULT_COLUMNS = [
    'term', 'es', 'nes', 'pvalue', 'padj', 'fwer',
    'set_size', 'leading_edge_size', 'leading_edge'
]


class GSEAAgent(BaseAgent):
    """Agent for preranked gene set enrichment analysis."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "rnk_file": "ranked_genes.rnk",
            "gene_sets": "gene_sets.gmt",  # .gmt path or Enrichr library name
            "organism": "Human",
            "gene_case": None,  # "upper" to match mouse symbols to human sets
            "min_size": 15,
            "max_size": 500,
            "permutation_num": 1000,
            "seed": 42,
            "n_cpus": 1,
            "fdr_cutoff": 0.25,
            "top_terms": 10,  # Gene sets kept for enrichment plots
            "contrast": ["treatment", "control"],
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent2_gsea", input_dir, output_dir, merged_config)

        self.ranking: Optional[pd.Series] = None
        self.gene_sets: Optional[Dict[str, List[str]]] = None

    def _load_gene_sets(self) -> Dict[str, List[str]]:
        """Load gene sets from a .gmt file or an Enrichr library."""
        source = str(self.config["gene_sets"])
        path = self.resolve_input(source)

        if path.exists():
            self.logger.info(f"Loading gene sets from {path.name}...")
            return gp.read_gmt(str(path))

        if source.lower().endswith(".gmt"):
            raise FileNotFoundError(f"Gene set file not found: {path}")

        self.logger.info(f"Fetching gene set library {source} ({self.config['organism']})...")
        return gp.get_library(name=source, organism=self.config["organism"])

    def _apply_gene_case(self, genes):
        if self.config["gene_case"] == "upper":
            return [str(g).upper() for g in genes]
        return [str(g) for g in genes]

    def check_matching(self) -> Dict[str, Any]:
        """Report how well ranked genes match the gene sets."""
        ranked = set(self.ranking.index)
        universe = set()
        passing = 0
        for genes in self.gene_sets.values():
            members = set(genes)
            universe |= members
            overlap = len(members & ranked)
            if self.config["min_size"] <= overlap <= self.config["max_size"]:
                passing += 1

        matched = len(ranked & universe)
        return {
            "ranked_genes": len(ranked),
            "genes_in_any_set": matched,
            "match_rate": matched / len(ranked) if ranked else 0.0,
            "gene_sets_total": len(self.gene_sets),
            "gene_sets_passing_size": passing,
        }

    def validate_inputs(self) -> bool:
        """Load the ranking and gene sets and check they overlap."""
        rnk_path = self.resolve_input(self.config["rnk_file"])
        if not rnk_path.exists():
            raise FileNotFoundError(f"Required input file not found: {rnk_path}")

        self.logger.info(f"Loading {rnk_path.name}...")
        ranking = read_rnk(rnk_path)
        ranking.index = self._apply_gene_case(ranking.index)
        # Case folding can merge genes
        self.ranking = collapse_ranking(ranking)

        if len(self.ranking) < self.config["min_size"]:
            self.logger.error(f"Ranked list has only {len(self.ranking)} genes")
            return False

        gene_sets = self._load_gene_sets()
        self.gene_sets = {
            term: self._apply_gene_case(genes) for term, genes in gene_sets.items()
        }

        self.match_report = self.check_matching()
        self.logger.info(
            f"Ranked genes found in gene sets: {self.match_report['genes_in_any_set']}/"
            f"{self.match_report['ranked_genes']} ({self.match_report['match_rate']:.1%})"
        )
        self.logger.info(
            f"Gene sets within size bounds [{self.config['min_size']}, {self.config['max_size']}]: "
            f"{self.match_report['gene_sets_passing_size']}/{self.match_report['gene_sets_total']}"
        )

        if self.match_report['match_rate'] < 0.5:
            self.logger.warning(
                "Fewer than half of the ranked genes appear in any gene set - "
                "check gene identifiers (symbols vs IDs, species, gene_case)"
            )

        if self.match_report['gene_sets_passing_size'] == 0:
            raise ValueError(
                "No gene sets pass the size filter - check gene identifiers or min_size/max_size"
            )

        return True

    def _tidy_results(self, res2d: pd.DataFrame) -> pd.DataFrame:
        """Standardize gseapy's report table."""
        results = res2d.rename(columns={
            'Term': 'term',
            'ES': 'es',
            'NES': 'nes',
            'NOM p-val': 'pvalue',
            'FDR q-val': 'padj',
            'FWER p-val': 'fwer',
            'Lead_genes': 'leading_edge',
        })
        for col in ['es', 'nes', 'pvalue', 'padj', 'fwer']:
            results[col] = pd.to_numeric(results[col], errors='coerce')

        # "Tag %" is "<leading edge hits>/<matched set size>"
        tags = results['Tag %'].astype(str).str.split('/', expand=True)
        results['leading_edge_size'] = pd.to_numeric(tags[0], errors='coerce').astype('Int64')
        results['set_size'] = pd.to_numeric(tags[1], errors='coerce').astype('Int64')
        results['leading_edge'] = results['leading_edge'].fillna('').astype(str)

        results['abs_nes'] = results['nes'].abs()
        results = results.sort_values(['padj', 'abs_nes'], ascending=[True, False])
        return results[RESULT_COLUMNS].reset_index(drop=True)

    def _leading_edge_table(self, results: pd.DataFrame) -> pd.DataFrame:
        """One row per (gene, gene set) leading-edge membership."""
        rows = []
        for _, row in results.iterrows():
            for gene in filter(None, row['leading_edge'].split(';')):
                rows.append({
                    'gene': gene.strip(),
                    'term': row['term'],
                    'nes': row['nes'],
                    'padj': row['padj'],
                })
        return pd.DataFrame(rows, columns=['gene', 'term', 'nes', 'padj'])

    def _curves(self, pre_res, results: pd.DataFrame) -> Dict[str, Any]:
        """Running enrichment scores for the top gene sets."""
        top = results.head(self.config["top_terms"])['term'].tolist()
        curves = {}
        for term in top:
            detail = pre_res.results.get(term)
            if detail is None:
                continue
            curves[term] = {
                'hits': [int(h) for h in detail['hits']],
                'RES': [float(x) for x in detail['RES']],
                'nes': float(detail['nes']),
                'pval': float(detail['pval']),
                'fdr': float(detail['fdr']),
            }

        ranking = pre_res.ranking
        return {
            'pheno_pos': self.config["contrast"][0],
            'pheno_neg': self.config["contrast"][1],
            'ranking': [float(x) for x in np.asarray(ranking)],
            'terms': curves,
        }

    def run(self) -> Dict[str, Any]:
        """Execute preranked GSEA."""
        self.logger.info(
            f"Running prerank GSEA: {len(self.ranking)} genes, "
            f"{self.config['permutation_num']} permutations, seed {self.config['seed']}"
        )
        rnk = self.ranking.rename_axis('gene').rename('score').reset_index()

        pre_res = gp.prerank(
            rnk=rnk,
            gene_sets=self.gene_sets,
            min_size=self.config["min_size"],
            max_size=self.config["max_size"],
            permutation_num=self.config["permutation_num"],
            seed=self.config["seed"],
            threads=self.config["n_cpus"],
            outdir=None,
            no_plot=True,
            verbose=False,
        )

        results = self._tidy_results(pre_res.res2d)
        self.save_csv(results, "gsea_results.csv")

        fdr_cutoff = self.config["fdr_cutoff"]
        significant = results[results['padj'] < fdr_cutoff].copy()
        significant['direction'] = np.where(significant['nes'] > 0, 'up', 'down')
        self.save_csv(significant, "gsea_significant.csv")

        self.save_csv(self._leading_edge_table(significant), "gsea_leading_edge.csv")
        self.save_json(self._curves(pre_res, results), "gsea_curves.json")

        up_count = int((significant['direction'] == 'up').sum())
        down_count = int((significant['direction'] == 'down').sum())

        self.logger.info("GSEA Complete:")
        self.logger.info(f"  Gene sets tested: {len(results)}")
        self.logger.info(f"  Significant (FDR < {fdr_cutoff}): {len(significant)}")
        self.logger.info(f"  Enriched in {self.config['contrast'][0]}: {up_count}")
        self.logger.info(f"  Enriched in {self.config['contrast'][1]}: {down_count}")

        return {
            "gene_sets_tested": len(results),
            "significant_count": len(significant),
            "up_count": up_count,
            "down_count": down_count,
            "fdr_cutoff": fdr_cutoff,
            "matching": self.match_report,
        }

    def validate_outputs(self) -> bool:
        """Validate GSEA outputs."""
        for filename in ["gsea_results.csv", "gsea_significant.csv", "gsea_curves.json"]:
            if not (self.output_dir / filename).exists():
                self.logger.error(f"Missing output file: {filename}")
                return False

        results = pd.read_csv(self.output_dir / "gsea_results.csv")
        if len(results) == 0:
            self.logger.error("GSEA returned no gene sets")
            return False

        if results['nes'].isna().all():
            self.logger.warning("All NES values are NA")

        return True
