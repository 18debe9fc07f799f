"""
Typed result records passed between analysis stages.

Stage functions return these instead of mutating shared state; the
DataFrames they hold are treated as read-only by downstream stages.
"""

from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np
import pandas as pd

UNASSIGNED_MODULE = "grey"


@dataclass(frozen=True)
class AlignedData:
    """Expression matrix (genes x samples) with sample metadata in column order."""
    expression: pd.DataFrame
    metadata: pd.DataFrame
    dropped_samples: List[str] = field(default_factory=list)

    @property
    def n_genes(self) -> int:
        return self.expression.shape[0]

    @property
    def n_samples(self) -> int:
        return self.expression.shape[1]


@dataclass(frozen=True)
class DEGResult:
    """limma-style differential expression table ordered by B-statistic."""
    table: pd.DataFrame
    prior_df: float
    prior_var: float
    prior_var_coef: float
    contrast: Tuple[str, str]

    def significant(self, padj_cutoff: float, log2fc_cutoff: float) -> pd.DataFrame:
        mask = (self.table["padj"] < padj_cutoff) & (self.table["logFC"].abs() > log2fc_cutoff)
        sig = self.table.loc[mask].copy()
        sig["direction"] = np.where(sig["logFC"] > 0, "up", "down")
        return sig


@dataclass(frozen=True)
class PCAResult:
    scores: pd.DataFrame
    loadings: pd.DataFrame
    explained_variance_ratio: pd.Series


@dataclass(frozen=True)
class QualityReport:
    """Entities removed by the pre-correlation quality filter."""
    removed_genes: Dict[str, str] = field(default_factory=dict)
    removed_samples: Dict[str, str] = field(default_factory=dict)

    @property
    def all_ok(self) -> bool:
        return not self.removed_genes and not self.removed_samples

    def merge(self, other: "QualityReport") -> "QualityReport":
        return QualityReport(
            removed_genes={**self.removed_genes, **other.removed_genes},
            removed_samples={**self.removed_samples, **other.removed_samples},
        )

    def to_frame(self) -> pd.DataFrame:
        rows = [
            {"entity_type": "gene", "entity_id": k, "reason": v}
            for k, v in self.removed_genes.items()
        ] + [
            {"entity_type": "sample", "entity_id": k, "reason": v}
            for k, v in self.removed_samples.items()
        ]
        return pd.DataFrame(rows, columns=["entity_type", "entity_id", "reason"])


@dataclass(frozen=True)
class SoftThresholdResult:
    fit_table: pd.DataFrame
    power_estimate: Optional[int]
    target_r2: float


@dataclass(frozen=True)
class ModuleDetection:
    """Module assignment for every retained gene.

    ``labels`` is indexed by gene id; ``eigengenes`` is samples x modules
    (unassigned module included when present).
    """
    labels: pd.Series
    eigengenes: pd.DataFrame
    variance_explained: pd.Series
    soft_power: int
    n_blocks: int = 1
    linkages: List[np.ndarray] = field(default_factory=list)

    @property
    def module_sizes(self) -> pd.Series:
        return self.labels.value_counts()

    def members(self, module: str) -> List[str]:
        return self.labels.index[self.labels == module].tolist()

    def to_frame(self) -> pd.DataFrame:
        return pd.DataFrame({"gene_id": self.labels.index, "module": self.labels.values})


@dataclass(frozen=True)
class ModuleTraitResult:
    correlations: pd.DataFrame
    pvalues: pd.DataFrame
    n_observations: pd.Series
    ranking: pd.DataFrame
    excluded_traits: List[str] = field(default_factory=list)

    @property
    def selected_modules(self) -> List[str]:
        return self.ranking.loc[self.ranking["selected"], "module"].tolist()


@dataclass(frozen=True)
class SurvivalScores:
    table: pd.DataFrame
    n_samples: int
    event_assumed: bool = True
    failed_genes: List[str] = field(default_factory=list)
