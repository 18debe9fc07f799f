"""
Column schemas for the flat tables exchanged between stages.

Every exported table is keyed by ``gene_id`` (or ``sample_id`` for
per-sample tables). Agents check their outputs against these lists.
"""

from typing import List, Sequence

import pandas as pd

GENE_ID = "gene_id"
SAMPLE_ID = "sample_id"

METADATA_COLUMNS = [SAMPLE_ID, "disease"]

PROBE_MAPPING_COLUMNS = ["probe_id", GENE_ID]

DEG_COLUMNS = [GENE_ID, "logFC", "AveExpr", "t", "pvalue", "padj", "B", "rank"]
DEG_SIGNIFICANT_COLUMNS = [GENE_ID, "logFC", "padj", "B", "direction"]

PCA_RANKING_COLUMNS = [GENE_ID, "loading", "abs_loading", "rank"]

SOFT_THRESHOLD_COLUMNS = [
    "power", "r_squared", "slope", "signed_r_squared",
    "truncated_r_squared", "mean_k", "median_k", "max_k",
]
MODULE_ASSIGNMENT_COLUMNS = [GENE_ID, "module"]
MODULE_RANKING_COLUMNS = [
    "module", "size", "max_abs_correlation", "best_trait", "best_pvalue",
    "oversized", "selected",
]
MODULE_MEMBERSHIP_COLUMNS = [GENE_ID, "module", "kME", "kME_pvalue"]
HUB_GENE_COLUMNS = [GENE_ID, "module", "kWithin", "kME", "hub_rank"]

CANDIDATE_SET_COLUMNS = ["set_name", GENE_ID]
INTERSECTION_COLUMNS = ["set_combination", "n_sets", GENE_ID]

GENE_TERM_COLUMNS = [GENE_ID, "ontology", "term_id", "term_name"]
TERM_FREQUENCY_COLUMNS = ["gene_list", "ontology", "term_id", "term_name", "count", "fraction"]
ENRICHMENT_COLUMNS = [
    "gene_list", "ontology", "term_id", "term_name", "overlap",
    "list_size", "term_size", "background_size", "pvalue", "padj",
]

SURVIVAL_SCORE_COLUMNS = [
    GENE_ID, "cox_coef", "hazard_ratio", "cox_pvalue", "cox_rank",
    "matched_id", "match_similarity", "importance", "importance_rank",
]
GROUP_COMPARISON_COLUMNS = [
    GENE_ID, "n_high", "n_low", "median_survival_high",
    "median_survival_low", "logrank_statistic", "logrank_pvalue",
]
SHORTLIST_COLUMNS = [GENE_ID, "source", "cox_pvalue", "importance"]


def missing_columns(df: pd.DataFrame, columns: Sequence[str]) -> List[str]:
    """Return schema columns not present in ``df``."""
    return [c for c in columns if c not in df.columns]


def conform(df: pd.DataFrame, columns: Sequence[str]) -> pd.DataFrame:
    """Return ``df`` restricted to the schema, in schema order.

    Raises:
        KeyError: if a schema column is absent.
    """
    absent = missing_columns(df, columns)
    if absent:
        raise KeyError(f"Table is missing schema columns: {absent}")
    return df.loc[:, list(columns)]
