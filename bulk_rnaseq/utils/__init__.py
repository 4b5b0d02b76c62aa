"""Utility modules for the bulk RNA-seq pipeline."""

from .annotation import annotate_genes, load_annotation
from .base_agent import AgentResult, BaseAgent
from .formats import (
    align_samples,
    read_count_table,
    read_metadata,
    read_rnk,
    write_gmt,
    write_rnk,
)

__all__ = [
    "AgentResult",
    "BaseAgent",
    "align_samples",
    "annotate_genes",
    "load_annotation",
    "read_count_table",
    "read_metadata",
    "read_rnk",
    "write_gmt",
    "write_rnk",
]
