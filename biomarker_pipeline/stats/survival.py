"""
Per-gene survival scoring on the tumor cohort.

The clinical data record survival time only, with no censoring flag, so
every subject is treated as having had the event at its recorded time.
Scores built on this assumption are flagged with ``event_assumed=True``.
"""

import logging
import warnings
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from lifelines import CoxPHFitter, KaplanMeierFitter
from lifelines.exceptions import ConvergenceError
from lifelines.statistics import logrank_test
from sklearn.ensemble import RandomForestRegressor
from sklearn.inspection import permutation_importance

from .models import SurvivalScores
from .reconcile import reconcile_identifiers
from .. import config as settings

logger = logging.getLogger(__name__)

DEFAULT_EXCLUDED_GENES = ("---", "")


def survival_cohort(
    expression: pd.DataFrame,
    metadata: pd.DataFrame,
    time_column: str = "survival_months",
    disease_column: str = "disease",
    cohort_label: str = settings.TUMOR_LABEL,
) -> Tuple[pd.DataFrame, pd.Series]:
    """Tumor samples with a recorded, non-negative survival time.

    Returns:
        (expression restricted to the cohort, survival time per sample)
    """
    meta = metadata
    if disease_column in meta.columns:
        meta = meta[meta[disease_column] == cohort_label]
    time = pd.to_numeric(meta[time_column], errors="coerce")
    time = time[time.notna() & (time >= 0)]
    samples = [s for s in time.index if s in set(expression.columns)]
    logger.info(f"Survival cohort: {len(samples)} {cohort_label} samples with survival time")
    return expression[samples], time.loc[samples].astype(float)


def _rank(values: pd.Series, ascending: bool) -> pd.Series:
    """Dense 1..n rank with stable order on ties; missing values last."""
    key = values.to_numpy(dtype=float)
    key = np.where(np.isnan(key), np.inf, key if ascending else -key)
    order = np.argsort(key, kind="mergesort")
    ranks = np.empty(len(values), dtype=int)
    ranks[order] = np.arange(1, len(values) + 1)
    return pd.Series(ranks, index=values.index)


def cox_scores(
    expression: pd.DataFrame,
    time: pd.Series,
    genes: Optional[Iterable[str]] = None,
    standardize: bool = True,
    penalizer: float = 0.0,
) -> Tuple[pd.DataFrame, List[str]]:
    """Univariate Cox proportional-hazards fit per gene.

    Returns:
        (table ``gene_id, cox_coef, hazard_ratio, cox_pvalue, cox_rank``,
        genes whose fit failed)
    """
    genes = [g for g in (genes if genes is not None else expression.index) if g in expression.index]
    samples = list(time.index)
    rows, failed = [], []

    for gene in genes:
        x = expression.loc[gene, samples].to_numpy(dtype=float)
        if standardize:
            sd = x.std(ddof=1)
            x = (x - x.mean()) / sd if sd > 0 else np.full_like(x, np.nan)
        frame = pd.DataFrame({"expr": x, "T": time.to_numpy(), "E": 1})
        try:
            if frame["expr"].isna().any():
                raise ValueError("constant expression")
            cph = CoxPHFitter(penalizer=penalizer)
            with warnings.catch_warnings():
                warnings.simplefilter("ignore")
                cph.fit(frame, duration_col="T", event_col="E")
            summary = cph.summary.loc["expr"]
            rows.append({
                "gene_id": gene,
                "cox_coef": float(summary["coef"]),
                "hazard_ratio": float(summary["exp(coef)"]),
                "cox_pvalue": float(summary["p"]),
            })
        except (ValueError, ConvergenceError, np.linalg.LinAlgError, ZeroDivisionError) as e:
            logger.warning(f"Cox fit failed for {gene}: {e}")
            failed.append(gene)
            rows.append({"gene_id": gene, "cox_coef": np.nan, "hazard_ratio": np.nan, "cox_pvalue": np.nan})

    table = pd.DataFrame(rows, columns=["gene_id", "cox_coef", "hazard_ratio", "cox_pvalue"])
    table["cox_rank"] = _rank(table["cox_pvalue"], ascending=True).to_numpy()
    table = table.sort_values("cox_rank", kind="mergesort").reset_index(drop=True)
    return table, failed


def forest_importance(
    expression: pd.DataFrame,
    time: pd.Series,
    genes: Optional[Iterable[str]] = None,
    n_estimators: int = 500,
    permutation: bool = False,
    random_state: Optional[int] = settings.RANDOM_STATE,
    n_jobs: int = 1,
) -> pd.DataFrame:
    """Random-forest importance of each gene for predicting survival time."""
    genes = [g for g in (genes if genes is not None else expression.index) if g in expression.index]
    X = expression.loc[genes, list(time.index)].T.to_numpy(dtype=float)
    y = time.to_numpy(dtype=float)

    model = RandomForestRegressor(n_estimators=n_estimators, random_state=random_state, n_jobs=n_jobs)
    model.fit(X, y)
    if permutation:
        result = permutation_importance(model, X, y, n_repeats=10, random_state=random_state, n_jobs=n_jobs)
        importance = result.importances_mean
    else:
        importance = model.feature_importances_

    table = pd.DataFrame({"gene_id": genes, "importance": importance})
    return importance_table(table)


def importance_table(table: pd.DataFrame) -> pd.DataFrame:
    """Normalize an importance table to ``gene_id, importance, importance_rank``."""
    out = table[["gene_id", "importance"]].copy()
    out["gene_id"] = out["gene_id"].astype(str)
    out["importance"] = pd.to_numeric(out["importance"], errors="coerce")
    out["importance_rank"] = _rank(out["importance"], ascending=False).to_numpy()
    return out.sort_values("importance_rank", kind="mergesort").reset_index(drop=True)


def merge_survival_scores(
    cox_table: pd.DataFrame,
    importance: pd.DataFrame,
    q: int = 2,
    min_similarity: float = 0.5,
) -> pd.DataFrame:
    """Left-join importance onto Cox results through reconciled identifiers."""
    matches = reconcile_identifiers(cox_table["gene_id"], importance["gene_id"], q=q, min_similarity=min_similarity)
    by_id = importance.drop_duplicates("gene_id").set_index("gene_id")

    merged = cox_table.copy()
    merged["matched_id"] = matches["matched_id"].to_numpy()
    merged["match_similarity"] = matches["match_similarity"].to_numpy()
    merged["importance"] = merged["matched_id"].map(by_id["importance"])
    merged["importance_rank"] = merged["matched_id"].map(by_id["importance_rank"])
    return merged


def score_genes(
    expression: pd.DataFrame,
    time: pd.Series,
    genes: Optional[Sequence[str]] = None,
    external_importance: Optional[pd.DataFrame] = None,
    standardize: bool = True,
    penalizer: float = 0.0,
    n_estimators: int = 500,
    permutation: bool = False,
    q: int = 2,
    min_similarity: float = 0.5,
    random_state: Optional[int] = settings.RANDOM_STATE,
    n_jobs: int = 1,
) -> SurvivalScores:
    """Cox scores and importance for each gene, merged into one table."""
    logger.warning(
        "No event indicator available: every subject is treated as having "
        "the event at its recorded survival time"
    )
    cox_table, failed = cox_scores(expression, time, genes, standardize, penalizer)

    if external_importance is not None:
        logger.info(f"Using external importance table ({len(external_importance)} genes)")
        importance = importance_table(external_importance)
    else:
        importance = forest_importance(
            expression, time, genes, n_estimators=n_estimators,
            permutation=permutation, random_state=random_state, n_jobs=n_jobs,
        )

    table = merge_survival_scores(cox_table, importance, q=q, min_similarity=min_similarity)
    return SurvivalScores(table=table, n_samples=len(time), event_assumed=True, failed_genes=failed)


def biomarker_shortlist(
    scores: pd.DataFrame,
    top_n_cox: int = 10,
    top_n_importance: int = 10,
    exclude_genes: Iterable[str] = DEFAULT_EXCLUDED_GENES,
) -> pd.DataFrame:
    """Top genes by Cox p-value united with top genes by importance.

    Cox picks come first in Cox order, then importance-only picks.
    """
    excluded = {str(g) for g in exclude_genes}
    usable = scores[~scores["gene_id"].astype(str).isin(excluded)]

    by_cox = usable[usable["cox_pvalue"].notna()].sort_values("cox_rank", kind="mergesort")
    by_imp = usable[usable["importance"].notna()].sort_values("importance", ascending=False, kind="mergesort")
    cox_genes = by_cox["gene_id"].head(top_n_cox).tolist()
    imp_genes = by_imp["gene_id"].head(top_n_importance).tolist()

    lookup = usable.drop_duplicates("gene_id").set_index("gene_id")
    rows = []
    for gene in cox_genes + [g for g in imp_genes if g not in cox_genes]:
        sources = [name for name, picked in (("cox", cox_genes), ("importance", imp_genes)) if gene in picked]
        rows.append({
            "gene_id": gene,
            "source": "+".join(sources),
            "cox_pvalue": lookup.at[gene, "cox_pvalue"],
            "importance": lookup.at[gene, "importance"],
        })
    return pd.DataFrame(rows, columns=["gene_id", "source", "cox_pvalue", "importance"])


def group_comparison(
    expression: pd.DataFrame,
    time: pd.Series,
    genes: Iterable[str],
) -> pd.DataFrame:
    """Median split per gene with a log-rank test and group median survival."""
    columns = [
        "gene_id", "n_high", "n_low", "median_survival_high",
        "median_survival_low", "logrank_statistic", "logrank_pvalue",
    ]
    samples = list(time.index)
    rows = []
    for gene in genes:
        if gene not in expression.index:
            logger.warning(f"Gene {gene} not in expression matrix; skipped for group comparison")
            continue
        x = expression.loc[gene, samples].to_numpy(dtype=float)
        high = x > np.median(x)
        t_high, t_low = time.to_numpy()[high], time.to_numpy()[~high]
        row = {"gene_id": gene, "n_high": int(high.sum()), "n_low": int((~high).sum())}
        if row["n_high"] == 0 or row["n_low"] == 0:
            row.update({c: np.nan for c in columns[3:]})
            rows.append(row)
            continue

        test = logrank_test(
            t_high, t_low,
            event_observed_A=np.ones(len(t_high)),
            event_observed_B=np.ones(len(t_low)),
        )
        row.update({
            "median_survival_high": float(KaplanMeierFitter().fit(t_high, np.ones(len(t_high))).median_survival_time_),
            "median_survival_low": float(KaplanMeierFitter().fit(t_low, np.ones(len(t_low))).median_survival_time_),
            "logrank_statistic": float(test.test_statistic),
            "logrank_pvalue": float(test.p_value),
        })
        rows.append(row)
    return pd.DataFrame(rows, columns=columns)
