"""
Tabular file formats used at the pipeline boundary.

- Count tables (plain gene x sample tables or featureCounts output)
- Sample metadata tables
- Ranked gene lists (.rnk)
- Gene set files (.gmt, written here; read with gseapy.read_gmt)
"""

import logging
import re
from pathlib import Path
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)

TAB_SUFFIXES = {".tsv", ".txt", ".tab", ".rnk", ".gmt"}

# Annotation columns written by featureCounts next to Geneid
FEATURECOUNTS_COLUMNS = ["Chr", "Start", "End", "Strand", "Length"]

# Suffixes aligners leave on sample headers, longest first
SAMPLE_SUFFIXES = [
    "Aligned.sortedByCoord.out.bam",
    ".sorted.bam",
    ".bam",
    ".sorted",
]

_GENE_VERSION = re.compile(r"\.\d+$")


def table_separator(path) -> str:
    """Return the column separator implied by a file suffix."""
    suffixes = Path(path).suffixes
    # counts.tsv.gz -> .tsv
    for suffix in reversed(suffixes):
        if suffix in (".gz", ".bz2", ".zip"):
            continue
        return "\t" if suffix.lower() in TAB_SUFFIXES else ","
    return ","


def clean_sample_name(name: str) -> str:
    """Strip the directory and aligner suffixes from a sample header."""
    name = str(name).strip().replace("\\", "/").split("/")[-1]
    for suffix in SAMPLE_SUFFIXES:
        if name.endswith(suffix) and len(name) > len(suffix):
            name = name[: -len(suffix)]
            break
    return name.rstrip("._")


def strip_gene_version(ids: Iterable[str]) -> List[str]:
    """Drop Ensembl version suffixes: ENSG00000141510.17 -> ENSG00000141510."""
    return [_GENE_VERSION.sub("", str(g)) for g in ids]


def read_count_table(
    path,
    gene_id_column: Optional[str] = None,
    sample_rename: Optional[Mapping[str, str]] = None,
) -> pd.DataFrame:
    """
    Load a raw count table as an integer genes x samples DataFrame.

    Args:
        path: CSV/TSV count table. featureCounts output is accepted as is.
        gene_id_column: Column holding gene IDs (default: first column).
        sample_rename: Mapping applied to the cleaned sample names.

    Returns:
        DataFrame indexed by gene ID with one integer column per sample.
    """
    path = Path(path)
    df = pd.read_csv(path, sep=table_separator(path), comment="#")

    if gene_id_column is None:
        gene_id_column = df.columns[0]
    if gene_id_column not in df.columns:
        raise ValueError(f"Gene ID column '{gene_id_column}' not in {path.name}")

    annotation_cols = [c for c in FEATURECOUNTS_COLUMNS if c in df.columns]
    if annotation_cols:
        logger.info(f"Dropping featureCounts annotation columns: {annotation_cols}")
        df = df.drop(columns=annotation_cols)

    df = df.set_index(gene_id_column)
    df.index = df.index.astype(str)
    df.index.name = "gene_id"

    df.columns = [clean_sample_name(c) for c in df.columns]
    if sample_rename:
        df = df.rename(columns=dict(sample_rename))

    if df.columns.duplicated().any():
        dupes = df.columns[df.columns.duplicated()].tolist()
        raise ValueError(f"Duplicated sample columns after renaming: {dupes}")

    non_numeric = [c for c in df.columns if not pd.api.types.is_numeric_dtype(df[c])]
    if non_numeric:
        raise ValueError(f"Non-numeric sample columns in count table: {non_numeric}")

    if df.index.duplicated().any():
        n_dupes = int(df.index.duplicated().sum())
        logger.warning(f"Summing counts for {n_dupes} duplicated gene IDs")
        df = df.groupby(level=0, sort=False).sum()

    df = df.fillna(0)
    if (df < 0).any().any():
        raise ValueError("Count table contains negative values")

    return df.round().astype(int)


def read_metadata(path, sample_column: str = "sample_id") -> pd.DataFrame:
    """Load sample metadata indexed by sample ID."""
    path = Path(path)
    meta = pd.read_csv(path, sep=table_separator(path), comment="#")

    if sample_column not in meta.columns:
        raise ValueError(f"Sample column '{sample_column}' not in {path.name}")

    meta[sample_column] = meta[sample_column].astype(str).str.strip()
    if meta[sample_column].duplicated().any():
        dupes = meta.loc[meta[sample_column].duplicated(), sample_column].tolist()
        raise ValueError(f"Duplicated sample IDs in metadata: {dupes}")

    return meta.set_index(sample_column)


def align_samples(
    counts: pd.DataFrame,
    metadata: pd.DataFrame,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Order metadata rows to match count columns.

    Count samples without metadata are an error; metadata rows without counts
    are dropped.
    """
    missing = [s for s in counts.columns if s not in metadata.index]
    if missing:
        raise ValueError(f"Samples missing from metadata: {missing}")

    extra = [s for s in metadata.index if s not in counts.columns]
    if extra:
        logger.warning(f"Dropping {len(extra)} metadata rows with no counts: {extra}")

    return counts, metadata.loc[counts.columns].copy()


def read_rnk(path) -> pd.Series:
    """
    Load a ranked gene list.

    Genes with a missing score are dropped, duplicated genes keep the score
    with the largest magnitude. Returned in descending order.
    """
    path = Path(path)
    df = pd.read_csv(path, sep="\t", header=None, comment="#",
                     usecols=[0, 1], names=["gene", "score"])
    df["gene"] = df["gene"].astype(str).str.strip()
    df["score"] = pd.to_numeric(df["score"], errors="coerce")

    n_na = int(df["score"].isna().sum())
    if n_na:
        logger.warning(f"Dropping {n_na} genes with missing rank scores")
        df = df.dropna(subset=["score"])

    ranking = collapse_ranking(df.set_index("gene")["score"])
    ranking.name = "score"
    return ranking


def collapse_ranking(scores: pd.Series) -> pd.Series:
    """Keep one score per gene (largest |score|) and sort descending."""
    if scores.index.duplicated().any():
        n_dupes = int(scores.index.duplicated().sum())
        logger.warning(f"Collapsing {n_dupes} duplicated genes to their largest |score|")
        scores = scores.iloc[np.argsort(-scores.abs().to_numpy(), kind="stable")]
        scores = scores[~scores.index.duplicated(keep="first")]
    return scores.sort_values(ascending=False)


def write_rnk(ranking: pd.Series, path) -> Path:
    """Write a ranked list as a header-less two-column .rnk file."""
    path = Path(path)
    ranking = ranking.dropna().sort_values(ascending=False)
    ranking.to_csv(path, sep="\t", header=False)
    return path


def write_gmt(gene_sets: Dict[str, List[str]], path, description: str = "na") -> Path:
    """Write a {name: genes} mapping as a .gmt file."""
    path = Path(path)
    with open(path, "w", encoding="utf-8") as f:
        for name, genes in gene_sets.items():
            f.write("\t".join([name, description, *map(str, genes)]) + "\n")
    return path


def signed_log_pvalue(log2fc: pd.Series, pvalue: pd.Series) -> pd.Series:
    """sign(log2FC) * -log10(pvalue), the classic GSEA ranking from a DE table."""
    return np.sign(log2fc) * -np.log10(pvalue.clip(lower=1e-300))
