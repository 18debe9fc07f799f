"""
Glioma Biomarker Discovery Pipeline

A modular pipeline for microarray cohort analysis with 7 stage agents:
0. Preprocessing & Alignment (probe mapping, sample alignment)
1. DEG Analysis (limma-style moderated t-test)
2. PCA Gene Ranking
3. Co-expression Network (WGCNA-style modules + module-trait correlation)
4. Candidate Gene Sets (DEG / PCA / module intersections)
5. Gene Ontology Enrichment
6. Survival Scoring & Biomarker Shortlist

Each agent has clear input/output specs and can be run independently.
"""

__version__ = "1.0.0"
__author__ = "BioInsight AI"
