"""
Bulk RNA-seq Differential Expression + GSEA Pipeline

A modular pipeline with 3 agents:
1. Differential expression (PyDESeq2, or R DESeq2 via rpy2)
2. Gene Set Enrichment Analysis (gseapy prerank)
3. Visualization

Each agent has clear input/output files and can be run independently.
"""

__version__ = "1.0.0"

from .orchestrator import BulkRNAseqPipeline, create_sample_data

__all__ = ["BulkRNAseqPipeline", "create_sample_data"]
