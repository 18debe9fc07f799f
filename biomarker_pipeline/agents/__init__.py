"""
Biomarker Pipeline Agents

Each agent handles a specific step of the analysis:
- Agent 0: Preprocessing & Alignment
- Agent 1: DEG Analysis (limma-style)
- Agent 2: PCA Gene Ranking
- Agent 3: Co-expression Network (WGCNA-style)
- Agent 4: Candidate Gene Sets
- Agent 5: GO Enrichment
- Agent 6: Survival Scoring & Shortlist
"""

from .agent0_preprocess import PreprocessAgent
from .agent1_deg import DEGAgent
from .agent2_pca import PCAAgent
from .agent3_network import NetworkAgent
from .agent4_candidates import CandidateAgent
from .agent5_enrichment import EnrichmentAgent
from .agent6_survival import SurvivalAgent

__all__ = [
    "PreprocessAgent",
    "DEGAgent",
    "PCAAgent",
    "NetworkAgent",
    "CandidateAgent",
    "EnrichmentAgent",
    "SurvivalAgent",
]
