"""
Bulk RNA-seq Pipeline Agents

Each agent handles a specific step of the analysis:
- Agent 1: Differential Expression (PyDESeq2 / DESeq2)
- Agent 2: Gene Set Enrichment Analysis (gseapy prerank)
- Agent 3: Visualization
"""

from .agent1_deg import DEGAgent
from .agent2_gsea import GSEAAgent
from .agent3_visualization import VisualizationAgent

__all__ = [
    "DEGAgent",
    "GSEAAgent",
    "VisualizationAgent",
]
