"""
Agent 3: Visualization

Generates figures from the DE and GSEA results.

Input:
- deg_all_results.csv, deg_significant.csv: From Agent 1
- vst_counts.csv, dispersions.csv, sample_metadata.csv: From Agent 1
- gsea_results.csv, gsea_curves.json: From Agent 2

Output:
- figures/ma_plot.pdf
- figures/volcano_plot.pdf
- figures/pca_plot.pdf
- figures/dispersion_plot.pdf
- figures/sample_distance_heatmap.pdf
- figures/heatmap_top_degs.pdf
- figures/gsea_nes_barplot.pdf
- figures/gsea_enrichment_<term>.pdf
- meta_agent3_visualization.json
"""

import re

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

import matplotlib
matplotlib.use('Agg')  # Non-interactive backend
import matplotlib.pyplot as plt
import seaborn as sns
from gseapy import gseaplot
from scipy.cluster.hierarchy import linkage
from scipy.spatial.distance import pdist, squareform

from ..utils.base_agent import BaseAgent

SIGNIFICANCE_COLORS = {'Not Significant': 'lightgray', 'Up': '#E74C3C', 'Down': '#3498DB'}


class VisualizationAgent(BaseAgent):
    """Agent for generating DE and GSEA figures."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "figure_format": ["pdf"],
            "dpi": 300,
            "style": "whitegrid",
            "color_palette": "RdBu_r",
            "figsize": {
                "ma": (8, 6),
                "volcano": (10, 8),
                "pca": (8, 7),
                "dispersion": (8, 6),
                "distance": (9, 8),
                "heatmap": (12, 10),
                "nes": (10, 8),
            },
            "condition_column": "condition",
            "padj_cutoff": 0.05,
            "log2fc_cutoff": 1.0,
            "fdr_cutoff": 0.25,
            "label_top_genes": 10,
            "top_genes_heatmap": 50,
            "top_pathways": 20,
            "enrichment_plots": 5,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent3_visualization", input_dir, output_dir, merged_config)

        self.figures_dir = self.output_dir / "figures"
        self.figures_dir.mkdir(exist_ok=True)

        sns.set_style(self.config["style"])
        plt.rcParams['font.size'] = 12
        plt.rcParams['axes.labelsize'] = 14
        plt.rcParams['axes.titlesize'] = 16

    def validate_inputs(self) -> bool:
        """Load whichever upstream tables exist."""
        self.deg_all = self.load_table("deg_all_results.csv", required=False)
        self.deg_sig = self.load_table("deg_significant.csv", required=False)
        self.vst_counts = self.load_table("vst_counts.csv", required=False)
        self.dispersions = self.load_table("dispersions.csv", required=False)
        self.sample_metadata = self.load_table("sample_metadata.csv", required=False)
        self.gsea_results = self.load_table("gsea_results.csv", required=False)
        self.gsea_curves = self.load_json("gsea_curves.json", required=False)

        if self.deg_all is None and self.gsea_results is None:
            self.logger.error("No DE or GSEA results found")
            return False

        return True

    def _save_figure(self, fig: plt.Figure, name: str) -> List[str]:
        """Save figure in every configured format."""
        saved_files = []
        for fmt in self.config["figure_format"]:
            filepath = self.figures_dir / f"{name}.{fmt}"
            fig.savefig(filepath, dpi=self.config["dpi"], bbox_inches='tight',
                        facecolor='white', edgecolor='none')
            saved_files.append(str(filepath))
            self.logger.info(f"Saved {filepath.name}")
        plt.close(fig)
        return saved_files

    def _label_column(self, df: pd.DataFrame) -> str:
        if 'gene_name' in df.columns and df['gene_name'].notna().any():
            return 'gene_name'
        return 'gene_id'

    def _classify(self, df: pd.DataFrame) -> pd.Series:
        padj_cutoff = self.config["padj_cutoff"]
        log2fc_cutoff = self.config["log2fc_cutoff"]
        significance = pd.Series('Not Significant', index=df.index)
        significance[(df['padj'] < padj_cutoff) & (df['log2FC'] > log2fc_cutoff)] = 'Up'
        significance[(df['padj'] < padj_cutoff) & (df['log2FC'] < -log2fc_cutoff)] = 'Down'
        return significance

    def _plot_ma(self) -> Optional[List[str]]:
        """Generate MA plot (mean of normalized counts vs log2FC)."""
        if self.deg_all is None:
            self.logger.warning("Skipping MA plot - no DE results")
            return None

        self.logger.info("Generating MA plot...")
        df = self.deg_all[self.deg_all['baseMean'] > 0].copy()
        df['significance'] = self._classify(df)

        fig, ax = plt.subplots(figsize=self.config["figsize"]["ma"])
        for sig, color in SIGNIFICANCE_COLORS.items():
            subset = df[df['significance'] == sig]
            ax.scatter(subset['baseMean'], subset['log2FC'],
                       c=color, alpha=0.6, s=10, label=sig)

        ax.set_xscale('log')
        ax.axhline(y=0, color='black', linewidth=0.8)
        ax.set_xlabel('Mean of normalized counts')
        ax.set_ylabel('log2 Fold Change')
        ax.set_title('MA Plot')
        ax.legend(loc='upper right')

        return self._save_figure(fig, "ma_plot")

    def _plot_volcano(self) -> Optional[List[str]]:
        """Generate volcano plot."""
        if self.deg_all is None:
            self.logger.warning("Skipping volcano plot - no DE results")
            return None

        self.logger.info("Generating volcano plot...")

        df = self.deg_all.dropna(subset=['padj']).copy()
        df['neg_log10_padj'] = -np.log10(df['padj'].clip(lower=1e-300))
        df['significance'] = self._classify(df)

        padj_cutoff = self.config["padj_cutoff"]
        log2fc_cutoff = self.config["log2fc_cutoff"]

        fig, ax = plt.subplots(figsize=self.config["figsize"]["volcano"])

        for sig, color in SIGNIFICANCE_COLORS.items():
            subset = df[df['significance'] == sig]
            ax.scatter(subset['log2FC'], subset['neg_log10_padj'],
                       c=color, alpha=0.6, s=20, label=sig)

        ax.axhline(y=-np.log10(padj_cutoff), color='gray', linestyle='--', alpha=0.5)
        ax.axvline(x=log2fc_cutoff, color='gray', linestyle='--', alpha=0.5)
        ax.axvline(x=-log2fc_cutoff, color='gray', linestyle='--', alpha=0.5)

        label_col = self._label_column(df)
        labelled = df[df['significance'] != 'Not Significant'].nsmallest(
            self.config["label_top_genes"], 'padj'
        )
        for _, row in labelled.iterrows():
            label = row[label_col] if pd.notna(row[label_col]) else row['gene_id']
            ax.annotate(str(label), (row['log2FC'], row['neg_log10_padj']),
                        fontsize=8, ha='center', va='bottom')

        ax.set_xlabel('log2 Fold Change')
        ax.set_ylabel('-log10 Adjusted P-value')
        ax.set_title('Volcano Plot: Differential Expression')
        ax.legend(loc='upper right')

        n_up = (df['significance'] == 'Up').sum()
        n_down = (df['significance'] == 'Down').sum()
        ax.text(0.02, 0.98, f'Up: {n_up}\nDown: {n_down}',
                transform=ax.transAxes, verticalalignment='top',
                fontsize=10, bbox=dict(boxstyle='round', facecolor='white', alpha=0.8))

        return self._save_figure(fig, "volcano_plot")

    def _vst_matrix(self) -> Optional[pd.DataFrame]:
        if self.vst_counts is None:
            return None
        expr_df = self.vst_counts.set_index(self.vst_counts.columns[0])
        expr_df.index = expr_df.index.astype(str)
        return expr_df

    def _sample_conditions(self) -> Dict[str, str]:
        if self.sample_metadata is None:
            return {}
        condition_col = self.config["condition_column"]
        if condition_col not in self.sample_metadata.columns:
            return {}
        sample_col = self.sample_metadata.columns[0]
        return dict(zip(self.sample_metadata[sample_col].astype(str),
                        self.sample_metadata[condition_col].astype(str)))

    def _plot_pca(self) -> Optional[List[str]]:
        """Generate PCA of variance-stabilized counts, coloured by condition."""
        expr_df = self._vst_matrix()
        if expr_df is None:
            self.logger.warning("Skipping PCA - no variance-stabilized counts")
            return None

        self.logger.info("Generating PCA plot...")

        from sklearn.decomposition import PCA

        # DESeq2's plotPCA convention: top 500 most variable genes, centered only
        top_var = expr_df.var(axis=1).sort_values(ascending=False).index[:500]
        expr_t = expr_df.loc[top_var].T

        n_components = min(2, expr_t.shape[0], expr_t.shape[1])
        if n_components < 2:
            self.logger.warning("Skipping PCA - fewer than 2 samples or genes")
            return None

        pca = PCA(n_components=2)
        pca_result = pca.fit_transform(expr_t - expr_t.mean(axis=0))

        conditions = self._sample_conditions()
        labels = [conditions.get(str(s), 'unknown') for s in expr_t.index]

        fig, ax = plt.subplots(figsize=self.config["figsize"]["pca"])
        palette = dict(zip(sorted(set(labels)), sns.color_palette("Set1", len(set(labels)))))
        for condition, color in palette.items():
            mask = np.array(labels) == condition
            ax.scatter(pca_result[mask, 0], pca_result[mask, 1],
                       s=100, alpha=0.8, color=color, label=condition)

        for i, sample in enumerate(expr_t.index):
            ax.annotate(sample, (pca_result[i, 0], pca_result[i, 1]),
                        fontsize=8, ha='center', va='bottom')

        ax.set_xlabel(f'PC1 ({pca.explained_variance_ratio_[0]*100:.1f}%)')
        ax.set_ylabel(f'PC2 ({pca.explained_variance_ratio_[1]*100:.1f}%)')
        ax.set_title('PCA: Sample Distribution')
        ax.legend(title=self.config["condition_column"])

        ax.axhline(y=0, color='gray', linestyle='--', alpha=0.3)
        ax.axvline(x=0, color='gray', linestyle='--', alpha=0.3)

        return self._save_figure(fig, "pca_plot")

    def _plot_dispersion(self) -> Optional[List[str]]:
        """Plot dispersion estimates against mean normalized counts."""
        if self.dispersions is None:
            self.logger.warning("Skipping dispersion plot - no dispersion estimates")
            return None

        self.logger.info("Generating dispersion plot...")
        df = self.dispersions[self.dispersions['baseMean'] > 0]

        fig, ax = plt.subplots(figsize=self.config["figsize"]["dispersion"])
        layers = [
            ('genewise', 'black', 'gene-est', 4),
            ('final', '#3498DB', 'final', 4),
        ]
        for column, color, label, size in layers:
            if column in df.columns:
                ax.scatter(df['baseMean'], df[column], s=size, alpha=0.5,
                           color=color, label=label)
        if 'fitted' in df.columns:
            fitted = df.sort_values('baseMean')
            ax.plot(fitted['baseMean'], fitted['fitted'], color='#E74C3C',
                    linewidth=2, label='fitted')

        ax.set_xscale('log')
        ax.set_yscale('log')
        ax.set_xlabel('Mean of normalized counts')
        ax.set_ylabel('Dispersion')
        ax.set_title('Dispersion Estimates')
        ax.legend(loc='upper right')

        return self._save_figure(fig, "dispersion_plot")

    def _plot_sample_distances(self) -> Optional[List[str]]:
        """Clustered heatmap of Euclidean distances between samples."""
        expr_df = self._vst_matrix()
        if expr_df is None or expr_df.shape[1] < 2:
            self.logger.warning("Skipping sample distance heatmap - no variance-stabilized counts")
            return None

        self.logger.info("Generating sample distance heatmap...")
        condensed = pdist(expr_df.T.values, metric='euclidean')
        distances = pd.DataFrame(
            squareform(condensed), index=expr_df.columns, columns=expr_df.columns
        )
        # Cluster on the distances themselves, not on rows of the matrix
        sample_linkage = linkage(condensed, method='average')

        grid = sns.clustermap(distances, cmap='Blues_r',
                              row_linkage=sample_linkage, col_linkage=sample_linkage,
                              figsize=self.config["figsize"]["distance"],
                              cbar_kws={'label': 'Euclidean distance'})
        grid.fig.suptitle('Sample-to-Sample Distances', y=1.02)

        return self._save_figure(grid.fig, "sample_distance_heatmap")

    def _plot_heatmap(self) -> Optional[List[str]]:
        """Generate z-score heatmap of top DEGs."""
        expr_df = self._vst_matrix()
        if expr_df is None or self.deg_sig is None or len(self.deg_sig) == 0:
            self.logger.warning("Skipping heatmap - missing data")
            return None

        self.logger.info("Generating heatmap...")

        n_genes = min(self.config["top_genes_heatmap"], len(self.deg_sig))
        top = self.deg_sig.head(n_genes)
        expr_df = expr_df.loc[expr_df.index.isin(top['gene_id'].astype(str))]

        if len(expr_df) == 0:
            self.logger.warning("No matching genes for heatmap")
            return None

        label_col = self._label_column(top)
        names = dict(zip(top['gene_id'].astype(str), top[label_col].fillna(top['gene_id']).astype(str)))
        expr_df = expr_df.rename(index=names)

        expr_zscore = expr_df.sub(expr_df.mean(axis=1), axis=0).div(
            expr_df.std(axis=1).replace(0, np.nan), axis=0
        ).fillna(0)

        fig, ax = plt.subplots(figsize=self.config["figsize"]["heatmap"])

        sns.heatmap(expr_zscore, cmap=self.config["color_palette"],
                    center=0, ax=ax, xticklabels=True,
                    yticklabels=True if n_genes <= 50 else False,
                    cbar_kws={'label': 'Z-score'})

        ax.set_title(f'Heatmap: Top {n_genes} DEGs')
        ax.set_xlabel('Samples')
        ax.set_ylabel('Genes')

        plt.tight_layout()

        return self._save_figure(fig, "heatmap_top_degs")

    def _plot_nes_barplot(self) -> Optional[List[str]]:
        """Bar plot of NES for the top gene sets."""
        if self.gsea_results is None or len(self.gsea_results) == 0:
            self.logger.warning("Skipping NES barplot - no GSEA results")
            return None

        self.logger.info("Generating NES barplot...")

        n_terms = min(self.config["top_pathways"], len(self.gsea_results))
        top = self.gsea_results.dropna(subset=['nes']).head(n_terms).copy()
        if len(top) == 0:
            return None
        top = top.sort_values('nes')

        top['term_short'] = top['term'].apply(
            lambda x: x[:50] + '...' if len(str(x)) > 50 else x
        )
        fdr_cutoff = self.config["fdr_cutoff"]
        colors = [
            ('#E74C3C' if nes > 0 else '#3498DB') if padj < fdr_cutoff else 'lightgray'
            for nes, padj in zip(top['nes'], top['padj'])
        ]

        fig, ax = plt.subplots(figsize=self.config["figsize"]["nes"])
        ax.barh(range(len(top)), top['nes'], color=colors, alpha=0.9)
        ax.set_yticks(range(len(top)))
        ax.set_yticklabels(top['term_short'])
        ax.axvline(x=0, color='black', linewidth=0.8)
        ax.set_xlabel('Normalized Enrichment Score (NES)')
        ax.set_title(f'GSEA: Top Gene Sets (colored if FDR < {fdr_cutoff})')

        plt.tight_layout()

        return self._save_figure(fig, "gsea_nes_barplot")

    def _plot_enrichment_curves(self) -> Optional[List[str]]:
        """Classic GSEA running-score plots for the top gene sets."""
        if not self.gsea_curves or not self.gsea_curves.get('terms'):
            self.logger.warning("Skipping enrichment plots - no running scores")
            return None

        ranking = pd.Series(self.gsea_curves['ranking'])
        saved = []
        terms = list(self.gsea_curves['terms'].items())[:self.config["enrichment_plots"]]
        for term, curve in terms:
            self.logger.info(f"Generating enrichment plot for {term}...")
            slug = re.sub(r'[^A-Za-z0-9]+', '_', term).strip('_')[:60]
            for fmt in self.config["figure_format"]:
                filepath = self.figures_dir / f"gsea_enrichment_{slug}.{fmt}"
                gseaplot(
                    rank_metric=ranking,
                    term=term,
                    hits=curve['hits'],
                    nes=curve['nes'],
                    pval=curve['pval'],
                    fdr=curve['fdr'],
                    RES=curve['RES'],
                    pheno_pos=self.gsea_curves.get('pheno_pos', ''),
                    pheno_neg=self.gsea_curves.get('pheno_neg', ''),
                    ofname=str(filepath),
                )
                plt.close('all')
                saved.append(str(filepath))
                self.logger.info(f"Saved {filepath.name}")
        return saved

    def run(self) -> Dict[str, Any]:
        """Generate all visualizations."""
        generated_figures = []
        failed_figures = []

        figure_functions = [
            ("ma_plot", self._plot_ma),
            ("volcano_plot", self._plot_volcano),
            ("pca_plot", self._plot_pca),
            ("dispersion_plot", self._plot_dispersion),
            ("sample_distance_heatmap", self._plot_sample_distances),
            ("heatmap", self._plot_heatmap),
            ("gsea_nes_barplot", self._plot_nes_barplot),
            ("gsea_enrichment", self._plot_enrichment_curves),
        ]

        for name, func in figure_functions:
            try:
                result = func()
                if result:
                    generated_figures.extend(result)
                else:
                    failed_figures.append(name)
            except Exception as e:
                self.logger.error(f"Error generating {name}: {e}")
                failed_figures.append(name)
                plt.close('all')

        self.logger.info("Visualization Complete:")
        self.logger.info(f"  Generated: {len(generated_figures)} files")
        self.logger.info(f"  Failed/Skipped: {len(failed_figures)}")

        return {
            "figures_generated": generated_figures,
            "failed_figures": failed_figures,
            "total_generated": len(generated_figures)
        }

    def validate_outputs(self) -> bool:
        """Validate visualization outputs."""
        if not self.figures_dir.exists():
            self.logger.error("Figures directory not created")
            return False

        if not any(self.figures_dir.iterdir()):
            self.logger.warning("No figures generated")

        return True
