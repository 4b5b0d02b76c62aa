"""
Agent 1: Differential Expression (DE) Analysis

Runs DESeq2-style differential expression with PyDESeq2 (default) or with
R DESeq2 through rpy2.

Input:
- counts.tsv: Raw count table (genes x samples, featureCounts output accepted)
- metadata.tsv: Sample metadata with a condition column
- annotation.tsv: Optional gene ID -> gene symbol table

Output:
- deg_all_results.csv: Full DE results (NA padj kept)
- deg_significant.csv: Genes passing padj / log2FC thresholds
- normalized_counts.csv: Size-factor normalized counts
- vst_counts.csv: Variance-stabilized counts (PCA, sample distances)
- size_factors.csv: Per-sample size factors
- dispersions.csv: Gene-wise, fitted, MAP and final dispersions
- sample_metadata.csv: Metadata of the samples that were analyzed
- ranked_genes.rnk: Ranked gene list for GSEA
- meta_agent1_deg.json: Execution metadata
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..utils.annotation import annotate_genes, load_annotation
from ..utils.base_agent import BaseAgent
from ..utils.formats import (
    align_samples,
    collapse_ranking,
    read_count_table,
    read_metadata,
    signed_log_pvalue,
    write_rnk,
)

# rpy2 is only needed for the R DESeq2 engine
try:
    import rpy2.robjects as ro
    from rpy2.robjects import pandas2ri
    from rpy2.robjects.packages import importr
    from rpy2.robjects.conversion import localconverter
    HAS_RPY2 = True
except ImportError:
    HAS_RPY2 = False

RESULT_COLUMNS = ['gene_id', 'baseMean', 'log2FC', 'lfcSE', 'stat', 'pvalue', 'padj']

RANK_METRICS = ("stat", "signed_pvalue", "log2FC")


class DEGAgent(BaseAgent):
    """Agent for DESeq2-based differential expression analysis."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "counts_file": "counts.tsv",
            "metadata_file": "metadata.tsv",
            "gene_id_column": None,  # First column when unset
            "sample_column": "sample_id",
            "sample_rename": {},  # {"raw_header": "sample_id"}
            "condition_column": "condition",
            "contrast": ["treatment", "control"],  # [treatment, control]
            "covariates": [],  # e.g. ["batch"] -> ~ batch + condition
            "subset_to_contrast": False,  # Drop samples from other conditions
            "min_count": 10,
            "min_samples": None,  # Smallest contrast group when unset
            "engine": "pydeseq2",  # or "rpy2"
            "alpha": 0.05,
            "padj_cutoff": 0.05,
            "log2fc_cutoff": 1.0,
            "shrink_lfc": True,
            "cooks_filter": True,
            "independent_filter": True,
            "refit_cooks": True,
            "n_cpus": 1,
            "annotation_file": None,
            "annotation_id_column": "gene_id",
            "annotation_name_column": "gene_name",
            "strip_gene_version": True,
            "rank_metric": "stat",
            "rank_by_symbol": True,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent1_deg", input_dir, output_dir, merged_config)

        self.counts: Optional[pd.DataFrame] = None
        self.metadata: Optional[pd.DataFrame] = None
        self.annotation: Optional[pd.Series] = None
        self.lfc_shrunk: bool = False

    def validate_inputs(self) -> bool:
        """Load count table and metadata and check they describe the contrast."""
        counts_path = self.resolve_input(self.config["counts_file"])
        meta_path = self.resolve_input(self.config["metadata_file"])
        for path in (counts_path, meta_path):
            if not path.exists():
                raise FileNotFoundError(f"Required input file not found: {path}")

        self.logger.info(f"Loading {counts_path.name}...")
        counts = read_count_table(
            counts_path,
            gene_id_column=self.config["gene_id_column"],
            sample_rename=self.config["sample_rename"],
        )
        self.logger.info(f"Loading {meta_path.name}...")
        metadata = read_metadata(meta_path, self.config["sample_column"])

        condition_col = self.config["condition_column"]
        if condition_col not in metadata.columns:
            self.logger.error(f"Condition column '{condition_col}' not in metadata")
            return False

        for covariate in self.config["covariates"]:
            if covariate not in metadata.columns:
                self.logger.error(f"Covariate '{covariate}' not in metadata")
                return False

        contrast = self.config["contrast"]
        if len(contrast) != 2 or contrast[0] == contrast[1]:
            self.logger.error(f"Contrast must name two different levels, got {contrast}")
            return False

        # Check to see if the matching has worked
        try:
            counts, metadata = align_samples(counts, metadata)
        except ValueError as e:
            self.logger.error(str(e))
            return False

        metadata[condition_col] = metadata[condition_col].astype(str)
        conditions = set(metadata[condition_col])
        if not all(c in conditions for c in contrast):
            self.logger.error(f"Contrast {contrast} not all in conditions {conditions}")
            return False

        if self.config["subset_to_contrast"]:
            keep = metadata[condition_col].isin(contrast)
            self.logger.info(f"Keeping {int(keep.sum())}/{len(metadata)} samples in the contrast")
            metadata = metadata.loc[keep]
            counts = counts[metadata.index]

        group_sizes = metadata[condition_col].value_counts()
        if any(group_sizes.get(c, 0) < 2 for c in contrast):
            self.logger.error(f"Each contrast group needs at least 2 replicates: {group_sizes.to_dict()}")
            return False

        self.counts = counts
        self.metadata = metadata

        annotation_file = self.config["annotation_file"]
        if annotation_file:
            annotation_path = self.resolve_input(annotation_file)
            if not annotation_path.exists():
                raise FileNotFoundError(f"Annotation file not found: {annotation_path}")
            self.annotation = load_annotation(
                annotation_path,
                id_column=self.config["annotation_id_column"],
                name_column=self.config["annotation_name_column"],
                strip_version=self.config["strip_gene_version"],
            )
            self.logger.info(f"Annotation: {len(self.annotation)} gene symbols")

        if self.config["rank_metric"] not in RANK_METRICS:
            self.logger.error(f"rank_metric must be one of {RANK_METRICS}")
            return False

        self.logger.info(f"Count table: {counts.shape[0]} genes, {counts.shape[1]} samples")
        self.logger.info(f"Conditions: {group_sizes.to_dict()}")

        return True

    def _filter_low_counts(self, counts: pd.DataFrame) -> pd.DataFrame:
        """Keep genes with at least min_count reads in min_samples samples."""
        min_count = self.config["min_count"]
        min_samples = self.config["min_samples"]
        if min_samples is None:
            condition_col = self.config["condition_column"]
            sizes = self.metadata[condition_col].value_counts()
            min_samples = int(min(sizes[c] for c in self.config["contrast"]))

        keep = (counts >= min_count).sum(axis=1) >= min_samples
        self.logger.info(
            f"After filtering (>= {min_count} reads in >= {min_samples} samples): "
            f"{int(keep.sum())}/{len(counts)} genes"
        )
        if keep.sum() == 0:
            raise ValueError("No genes left after low-count filtering")
        return counts.loc[keep]

    def _design_formula(self) -> str:
        terms = list(self.config["covariates"]) + [self.config["condition_column"]]
        return "~ " + " + ".join(terms)

    def _design_metadata(self) -> pd.DataFrame:
        """Metadata with the control level first so it is the reference."""
        condition_col = self.config["condition_column"]
        treatment, control = self.config["contrast"]
        meta = self.metadata[[*self.config["covariates"], condition_col]].copy()

        levels = [control, treatment] + sorted(
            set(meta[condition_col]) - {control, treatment}
        )
        meta[condition_col] = pd.Categorical(meta[condition_col], categories=levels)
        for covariate in self.config["covariates"]:
            if not pd.api.types.is_numeric_dtype(meta[covariate]):
                meta[covariate] = meta[covariate].astype(str)
        return meta

    def _find_contrast_coef(self, coef_names: List[str]) -> Optional[str]:
        """Find the model coefficient for treatment vs control."""
        condition_col = self.config["condition_column"]
        treatment, control = self.config["contrast"]

        candidates = [
            f"{condition_col}[T.{treatment}]",  # PyDESeq2 / formulaic
            f"{condition_col}_{treatment}_vs_{control}",  # R DESeq2 resultsNames
        ]
        for candidate in candidates:
            if candidate in coef_names:
                return candidate
        return None

    def _run_pydeseq2(self, counts: pd.DataFrame) -> Dict[str, pd.DataFrame]:
        """Run the DESeq2 workflow with PyDESeq2."""
        from pydeseq2.dds import DeseqDataSet
        from pydeseq2.default_inference import DefaultInference
        from pydeseq2.ds import DeseqStats

        condition_col = self.config["condition_column"]
        treatment, control = self.config["contrast"]
        design = self._design_formula()
        inference = DefaultInference(n_cpus=self.config["n_cpus"])

        self.logger.info(f"Creating DeseqDataSet with design: {design}")
        dds = DeseqDataSet(
            counts=counts.T,
            metadata=self._design_metadata(),
            design=design,
            refit_cooks=self.config["refit_cooks"],
            inference=inference,
            quiet=True,
        )

        self.logger.info("Fitting size factors, dispersions and LFCs...")
        dds.deseq2()

        self.logger.info(f"Wald test: {treatment} vs {control}")
        ds = DeseqStats(
            dds,
            contrast=[condition_col, treatment, control],
            alpha=self.config["alpha"],
            cooks_filter=self.config["cooks_filter"],
            independent_filter=self.config["independent_filter"],
            inference=inference,
            quiet=True,
        )
        ds.summary()
        results_df = ds.results_df.copy()
        unshrunk_lfc = results_df['log2FoldChange'].copy()

        if self.config["shrink_lfc"]:
            coef_names = [c for c in dds.varm["LFC"].columns if c != "Intercept"]
            self.logger.info(f"Available coefficients: {coef_names}")
            coef = self._find_contrast_coef(coef_names)
            if coef is None:
                self.logger.warning(f"No coefficient matches {treatment} vs {control}, using unshrunk LFC")
            else:
                try:
                    self.logger.info(f"Applying apeGLM LFC shrinkage to {coef}...")
                    ds.lfc_shrink(coeff=coef)
                    results_df = ds.results_df.copy()
                    self.lfc_shrunk = True
                except Exception as e:
                    self.logger.warning(f"LFC shrinkage failed: {e}. Using unshrunk LFC.")

        results_df = results_df.rename(columns={'log2FoldChange': 'log2FC'})
        results_df.insert(0, 'gene_id', results_df.index.astype(str))
        results_df = results_df[RESULT_COLUMNS].reset_index(drop=True)
        results_df['log2FC_unshrunk'] = unshrunk_lfc.to_numpy()

        norm_counts = pd.DataFrame(
            dds.layers["normed_counts"], index=dds.obs_names, columns=dds.var_names
        ).T

        size_factors = pd.Series(
            dds.obs["size_factors"].to_numpy(), index=dds.obs_names
        )

        dispersions = pd.DataFrame(index=dds.var_names)
        dispersions["baseMean"] = norm_counts.mean(axis=1)
        for key, column in [
            ("genewise_dispersions", "genewise"),
            ("fitted_dispersions", "fitted"),
            ("MAP_dispersions", "MAP"),
            ("dispersions", "final"),
        ]:
            if key in dds.varm:
                dispersions[column] = np.asarray(dds.varm[key])

        try:
            self.logger.info("Computing variance-stabilized counts...")
            dds.vst(use_design=False)
            vst_counts = pd.DataFrame(
                dds.layers["vst_counts"], index=dds.obs_names, columns=dds.var_names
            ).T
            vst_method = "vst"
        except Exception as e:
            self.logger.warning(f"VST failed: {e}. Using log2(normalized + 1).")
            vst_counts = np.log2(norm_counts + 1)
            vst_method = "log2_normalized"

        return {
            "results": results_df,
            "normalized_counts": norm_counts,
            "vst_counts": vst_counts,
            "size_factors": size_factors,
            "dispersions": dispersions,
            "vst_method": vst_method,
        }

    def _run_deseq2_r(self, counts: pd.DataFrame) -> Dict[str, pd.DataFrame]:
        """Run DESeq2 analysis via rpy2."""
        if not HAS_RPY2:
            raise ImportError("rpy2 not installed. Install with: pip install 'bulk-rnaseq-gsea[r]'")

        self.logger.info("Initializing R environment...")
        base = importr('base')
        deseq2 = importr('DESeq2')
        bioc_generics = importr('BiocGenerics')

        condition_col = self.config["condition_column"]
        treatment, control = self.config["contrast"]
        meta_df = self._design_metadata()
        meta_df[condition_col] = meta_df[condition_col].astype(str)

        with localconverter(ro.default_converter + pandas2ri.converter):
            counts_r = ro.conversion.py2rpy(counts.astype(int))
            meta_r = ro.conversion.py2rpy(meta_df)

        design = self._design_formula()
        self.logger.info(f"Creating DESeqDataSet with design: {design}")
        dds = deseq2.DESeqDataSetFromMatrix(
            countData=counts_r,
            colData=meta_r,
            design=ro.Formula(design.replace(" ", ""))
        )
        ro.globalenv["dds"] = dds
        ro.r(f'dds${condition_col} <- relevel(factor(dds${condition_col}), ref = "{control}")')
        dds = ro.globalenv["dds"]

        self.logger.info("Running DESeq2 (this may take a while)...")
        dds = deseq2.DESeq(dds, quiet=True)

        res = deseq2.results(
            dds,
            contrast=ro.StrVector([condition_col, treatment, control]),
            alpha=self.config["alpha"],
            independentFiltering=self.config["independent_filter"],
            cooksCutoff=self.config["cooks_filter"],
        )
        with localconverter(ro.default_converter + pandas2ri.converter):
            results_df = ro.conversion.rpy2py(base.as_data_frame(res))
        unshrunk_lfc = results_df['log2FoldChange'].to_numpy()

        if self.config["shrink_lfc"]:
            result_names = list(deseq2.resultsNames(dds))
            self.logger.info(f"Available coefficients: {result_names}")
            coef = self._find_contrast_coef([n for n in result_names if n != "Intercept"])
            if coef is None:
                self.logger.warning(f"No coefficient matches {treatment} vs {control}, using unshrunk LFC")
            else:
                try:
                    self.logger.info(f"Applying apeglm LFC shrinkage to {coef}...")
                    res_shrunk = deseq2.lfcShrink(dds, coef=coef, type="apeglm", res=res)
                    with localconverter(ro.default_converter + pandas2ri.converter):
                        shrunk_df = ro.conversion.rpy2py(base.as_data_frame(res_shrunk))
                    results_df['log2FoldChange'] = shrunk_df['log2FoldChange'].to_numpy()
                    results_df['lfcSE'] = shrunk_df['lfcSE'].to_numpy()
                    self.lfc_shrunk = True
                except Exception as e:
                    self.logger.warning(f"apeglm shrinkage failed: {e}. Using unshrunk LFC.")

        with localconverter(ro.default_converter + pandas2ri.converter):
            norm_counts = ro.conversion.rpy2py(
                base.as_data_frame(bioc_generics.counts(dds, normalized=True))
            )
            size_factors = np.asarray(ro.conversion.rpy2py(deseq2.sizeFactors(dds)))
            dispersions = np.asarray(ro.conversion.rpy2py(deseq2.dispersions(dds)))
            vst_counts = ro.conversion.rpy2py(
                base.as_data_frame(ro.r['assay'](deseq2.vst(dds, blind=True)))
            )

        norm_counts = pd.DataFrame(np.asarray(norm_counts), index=counts.index, columns=counts.columns)
        vst_counts = pd.DataFrame(np.asarray(vst_counts), index=counts.index, columns=counts.columns)

        results_df = results_df.rename(columns={'log2FoldChange': 'log2FC'})
        results_df.insert(0, 'gene_id', counts.index)
        results_df = results_df[RESULT_COLUMNS].reset_index(drop=True)
        results_df['log2FC_unshrunk'] = unshrunk_lfc

        disp_df = pd.DataFrame({
            "baseMean": norm_counts.mean(axis=1),
            "final": dispersions,
        }, index=counts.index)

        return {
            "results": results_df,
            "normalized_counts": norm_counts,
            "vst_counts": vst_counts,
            "size_factors": pd.Series(size_factors, index=counts.columns),
            "dispersions": disp_df,
            "vst_method": "vst",
        }

    def _rank_genes(self, results_df: pd.DataFrame) -> pd.Series:
        """Build the GSEA ranking from the DE results."""
        metric = self.config["rank_metric"]
        if metric == "stat":
            scores = results_df['stat']
        elif metric == "signed_pvalue":
            scores = signed_log_pvalue(results_df['log2FC_unshrunk'], results_df['pvalue'])
        else:
            scores = results_df['log2FC']

        key = 'gene_id'
        if self.config["rank_by_symbol"] and 'gene_name' in results_df.columns:
            key = 'gene_name'

        ranking = pd.Series(scores.to_numpy(), index=results_df[key].to_numpy())
        n_before = len(ranking)
        ranking = ranking[ranking.index.notna() & ranking.notna()]
        dropped = n_before - len(ranking)
        if dropped:
            self.logger.info(f"Ranking: dropped {dropped} genes with no {key} or score")

        ranking = collapse_ranking(ranking)
        ranking.index.name = 'gene'
        self.logger.info(f"Ranked {len(ranking)} genes by {metric}")
        return ranking

    def run(self) -> Dict[str, Any]:
        """Execute DE analysis."""
        counts = self._filter_low_counts(self.counts)

        engine = self.config["engine"]
        if engine == "pydeseq2":
            out = self._run_pydeseq2(counts)
        elif engine == "rpy2":
            out = self._run_deseq2_r(counts)
        else:
            raise ValueError(f"Unknown DE engine: {engine}")

        results_df = out["results"]

        match_report = None
        if self.annotation is not None:
            results_df, match_report = annotate_genes(
                results_df,
                self.annotation,
                strip_version=self.config["strip_gene_version"],
            )
            self.logger.info(
                f"Annotation matched {match_report['matched']}/{match_report['total']} genes "
                f"({match_report['match_rate']:.1%})"
            )
            if match_report['match_rate'] < 0.5:
                self.logger.warning(
                    f"Low annotation match rate; unmatched examples: {match_report['unmatched_examples']}"
                )

        na_count = int(results_df['padj'].isna().sum())
        self.logger.info(f"Genes tested: {len(results_df)}, NA padj: {na_count}")

        self.save_csv(results_df, "deg_all_results.csv")

        padj_cutoff = self.config["padj_cutoff"]
        log2fc_cutoff = self.config["log2fc_cutoff"]

        significant = results_df[
            (results_df['padj'] < padj_cutoff) &
            (np.abs(results_df['log2FC']) > log2fc_cutoff)
        ].copy()
        significant['direction'] = np.where(significant['log2FC'] > 0, 'up', 'down')
        significant = significant.sort_values('padj')

        sig_cols = ['gene_id'] + (['gene_name'] if 'gene_name' in significant.columns else [])
        sig_cols += ['baseMean', 'log2FC', 'lfcSE', 'pvalue', 'padj', 'direction']
        self.save_csv(significant[sig_cols], "deg_significant.csv")

        for name, table in [("normalized_counts.csv", out["normalized_counts"]),
                            ("vst_counts.csv", out["vst_counts"])]:
            table = table.copy()
            table.index.name = 'gene_id'
            self.save_csv(table.reset_index(), name)

        self.save_csv(
            out["size_factors"].rename_axis('sample_id').rename('size_factor').reset_index(),
            "size_factors.csv"
        )
        self.save_csv(out["dispersions"].rename_axis('gene_id').reset_index(), "dispersions.csv")
        self.save_csv(self.metadata.rename_axis('sample_id').reset_index(), "sample_metadata.csv")

        ranking = self._rank_genes(results_df)
        write_rnk(ranking, self.output_dir / "ranked_genes.rnk")
        self.logger.info(f"Saved ranked_genes.rnk: {len(ranking)} genes")

        up_count = int((significant['direction'] == 'up').sum())
        down_count = int((significant['direction'] == 'down').sum())

        self.logger.info("DE Analysis Complete:")
        self.logger.info(f"  Total genes analyzed: {len(results_df)}")
        self.logger.info(f"  Significant DEGs: {len(significant)}")
        self.logger.info(f"  Upregulated: {up_count}")
        self.logger.info(f"  Downregulated: {down_count}")

        return {
            "engine": engine,
            "design": self._design_formula(),
            "contrast": list(self.config["contrast"]),
            "lfc_shrunk": self.lfc_shrunk,
            "vst_method": out["vst_method"],
            "samples": len(self.metadata),
            "genes_input": len(self.counts),
            "total_genes": len(results_df),
            "na_padj": na_count,
            "deg_count": len(significant),
            "up_count": up_count,
            "down_count": down_count,
            "ranked_genes": len(ranking),
            "annotation_match": match_report,
            "padj_cutoff": padj_cutoff,
            "log2fc_cutoff": log2fc_cutoff
        }

    def validate_outputs(self) -> bool:
        """Validate DE outputs."""
        required_files = [
            "deg_all_results.csv",
            "deg_significant.csv",
            "normalized_counts.csv",
            "vst_counts.csv",
            "size_factors.csv",
            "ranked_genes.rnk",
        ]

        for filename in required_files:
            filepath = self.output_dir / filename
            if not filepath.exists():
                self.logger.error(f"Missing output file: {filename}")
                return False

        sig_df = pd.read_csv(self.output_dir / "deg_significant.csv")

        if len(sig_df) == 0:
            self.logger.warning("No significant DEGs found (this may be expected)")

        if sig_df['padj'].isna().any():
            self.logger.error("NA values found in padj column")
            return False

        return True
