"""
Pure statistical stages of the biomarker pipeline.

Agents are thin I/O shells around these modules:
- preprocessing: probe mapping, label normalization, sample alignment
- limma: moderated t-test with empirical Bayes variance shrinkage
- pca: principal components and loading-based gene ranking
- wgcna / tree_cut: co-expression network, modules, module-trait analysis
- gene_sets: candidate set intersections
- enrichment: GO term tabulation and over-representation
- survival / reconcile: Cox and importance scoring, identifier matching
"""

from .errors import (
    PipelineError,
    DataAlignmentError,
    NumericalDegeneracyError,
    SoftThresholdSelectionError,
)
from .models import UNASSIGNED_MODULE

__all__ = [
    "PipelineError",
    "DataAlignmentError",
    "NumericalDegeneracyError",
    "SoftThresholdSelectionError",
    "UNASSIGNED_MODULE",
]
