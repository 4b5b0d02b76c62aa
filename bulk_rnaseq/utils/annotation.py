"""Gene ID -> symbol annotation with a match report."""

import logging
from typing import Any, Dict, Tuple

import pandas as pd

from .formats import strip_gene_version, table_separator

logger = logging.getLogger(__name__)


def load_annotation(
    path,
    id_column: str = "gene_id",
    name_column: str = "gene_name",
    strip_version: bool = True,
) -> pd.Series:
    """Load a gene ID -> symbol mapping.

    Rows with an empty symbol are dropped; for repeated IDs the first symbol wins.
    """
    table = pd.read_csv(path, sep=table_separator(path), comment="#", dtype=str)
    for col in (id_column, name_column):
        if col not in table.columns:
            raise ValueError(f"Annotation column '{col}' not found in {path}")

    table = table[[id_column, name_column]].dropna()
    table = table[table[name_column].str.strip() != ""]
    ids = table[id_column].str.strip()
    if strip_version:
        ids = pd.Series(strip_gene_version(ids), index=table.index)

    mapping = pd.Series(table[name_column].str.strip().values, index=ids.values)
    mapping = mapping[~mapping.index.duplicated(keep="first")]
    mapping.index.name = "gene_id"
    mapping.name = "gene_name"
    return mapping


def annotate_genes(
    results: pd.DataFrame,
    annotation: pd.Series,
    id_column: str = "gene_id",
    strip_version: bool = True,
) -> Tuple[pd.DataFrame, Dict[str, Any]]:
    """Add a ``gene_name`` column to a results table.

    Returns the annotated copy and a report of how many IDs matched.
    """
    annotated = results.copy()
    keys = annotated[id_column].astype(str)
    if strip_version:
        keys = pd.Series(strip_gene_version(keys), index=annotated.index)

    annotated["gene_name"] = keys.map(annotation)

    matched = int(annotated["gene_name"].notna().sum())
    total = len(annotated)
    unmatched = annotated.loc[annotated["gene_name"].isna(), id_column]
    report = {
        "total": total,
        "matched": matched,
        "match_rate": matched / total if total else 0.0,
        "unmatched_examples": unmatched.head(10).astype(str).tolist(),
    }
    return annotated, report
