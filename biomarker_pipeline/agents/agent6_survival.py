"""
Agent 6: Survival Scoring & Biomarker Shortlist

Scores candidate genes against overall survival in the tumor cohort with
univariate Cox models and random-forest importance, reconciles gene ids
between the two score tables and proposes a shortlist.

No event indicator exists in the clinical data: every subject is treated
as having the event at its recorded time. The assumption is logged and
recorded in the metadata (``event_assumed``).

Input:
- expression_aligned.csv / metadata_aligned.csv: from agent 0
- candidate_sets.csv / candidate_intersections.csv: from agent 4
- external_importance.csv (optional): gene_id, importance

Output:
- survival_scores.csv: Cox and importance scores per gene
- biomarker_shortlist.csv: Top Cox genes united with top importance genes
- survival_group_comparison.csv: Median split log-rank per shortlisted gene
- meta_agent6_survival.json: Execution metadata
"""

import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..utils.base_agent import BaseAgent
from ..stats import survival
from ..stats.errors import NumericalDegeneracyError
from ..stats.gene_sets import union_sets
from ..stats.models import AlignedData
from ..stats.preprocessing import coerce_identifiers
from ..stats.schemas import (
    GROUP_COMPARISON_COLUMNS,
    SHORTLIST_COLUMNS,
    SURVIVAL_SCORE_COLUMNS,
    conform,
    missing_columns,
)
from .. import config as settings


class SurvivalAgent(BaseAgent):
    """Agent for per-gene survival scoring."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "time_column": "survival_months",
            "label_column": "disease",
            "gene_source": "union",  # "union", "intersection", "all" or a set name
            "min_cohort_size": 5,
            "standardize": True,
            "penalizer": 0.0,
            "n_estimators": 500,
            "permutation_importance": False,
            "match_q": 2,
            "min_match_similarity": 0.5,
            "top_n_cox": 10,
            "top_n_importance": 10,
            "exclude_genes": list(survival.DEFAULT_EXCLUDED_GENES),
            "random_state": settings.RANDOM_STATE,
            "n_jobs": settings.N_JOBS,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent6_survival", input_dir, output_dir, merged_config)

        self.data: Optional[AlignedData] = None
        self.sets: Optional[pd.DataFrame] = None
        self.intersections: Optional[pd.DataFrame] = None
        self.external_importance: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        self.data = self.load_aligned_data()
        self.sets = self.load_csv("candidate_sets.csv")
        self.intersections = self.load_csv("candidate_intersections.csv")
        self.external_importance = self.load_csv(settings.EXTERNAL_IMPORTANCE_FILE, required=False)

        time_col = self.config["time_column"]
        if time_col not in self.data.metadata.columns:
            self.logger.error(f"Metadata has no survival column '{time_col}'")
            return False

        if self.external_importance is not None:
            absent = missing_columns(self.external_importance, ["gene_id", "importance"])
            if absent:
                self.logger.error(f"external_importance.csv is missing columns: {absent}")
                return False
        return True

    def _candidate_genes(self) -> List[str]:
        source = self.config["gene_source"]
        if source == "all":
            return list(self.data.expression.index)

        named = {
            name: set(coerce_identifiers(group["gene_id"]))
            for name, group in self.sets.groupby("set_name", sort=False)
        }
        if source == "union":
            genes = union_sets(*named.values())
        elif source == "intersection":
            if len(self.intersections):
                widest = self.intersections["n_sets"].max()
                genes = set(coerce_identifiers(
                    self.intersections.loc[self.intersections["n_sets"] == widest, "gene_id"]
                ))
            else:
                genes = set()
        elif source in named:
            genes = named[source]
        else:
            raise ValueError(f"Unknown gene_source '{source}' (sets: {list(named)})")

        # Keep matrix order for reproducible forests
        return [g for g in self.data.expression.index if g in genes]

    def run(self) -> Dict[str, Any]:
        expr, time = survival.survival_cohort(
            self.data.expression,
            self.data.metadata,
            time_column=self.config["time_column"],
            disease_column=self.config["label_column"],
        )
        if len(time) < self.config["min_cohort_size"]:
            raise NumericalDegeneracyError(
                f"Only {len(time)} tumor samples with survival time "
                f"(need {self.config['min_cohort_size']})"
            )

        genes = self._candidate_genes()
        if not genes:
            raise NumericalDegeneracyError(f"No candidate genes from source '{self.config['gene_source']}'")
        self.logger.info(f"Scoring {len(genes)} genes on {len(time)} tumor samples")

        scores = survival.score_genes(
            expr,
            time,
            genes=genes,
            external_importance=self.external_importance,
            standardize=self.config["standardize"],
            penalizer=self.config["penalizer"],
            n_estimators=self.config["n_estimators"],
            permutation=self.config["permutation_importance"],
            q=self.config["match_q"],
            min_similarity=self.config["min_match_similarity"],
            random_state=self.config["random_state"],
            n_jobs=self.config["n_jobs"],
        )
        self.save_csv(conform(scores.table, SURVIVAL_SCORE_COLUMNS), "survival_scores.csv")

        shortlist = survival.biomarker_shortlist(
            scores.table,
            top_n_cox=self.config["top_n_cox"],
            top_n_importance=self.config["top_n_importance"],
            exclude_genes=self.config["exclude_genes"],
        )
        self.save_csv(shortlist, "biomarker_shortlist.csv")

        comparison = survival.group_comparison(expr, time, shortlist["gene_id"].tolist())
        self.save_csv(comparison, "survival_group_comparison.csv")

        n_unmatched = int(scores.table["matched_id"].isna().sum())
        self.logger.info("Survival Scoring Complete:")
        self.logger.info(f"  Cohort: {scores.n_samples} samples (event assumed for all)")
        self.logger.info(f"  Cox fits failed: {len(scores.failed_genes)}")
        self.logger.info(f"  Unmatched importance ids: {n_unmatched}")
        self.logger.info(f"  Shortlist: {shortlist['gene_id'].tolist()}")

        return {
            "n_samples": scores.n_samples,
            "n_genes_scored": len(scores.table),
            "event_assumed": scores.event_assumed,
            "failed_genes": scores.failed_genes,
            "n_unmatched_ids": n_unmatched,
            "importance_source": "external" if self.external_importance is not None else "random_forest",
            "shortlist": shortlist["gene_id"].tolist(),
        }

    def validate_outputs(self) -> bool:
        if not self.check_output_files([
            "survival_scores.csv", "biomarker_shortlist.csv", "survival_group_comparison.csv",
        ]):
            return False
        for filename, columns in [
            ("survival_scores.csv", SURVIVAL_SCORE_COLUMNS),
            ("biomarker_shortlist.csv", SHORTLIST_COLUMNS),
            ("survival_group_comparison.csv", GROUP_COMPARISON_COLUMNS),
        ]:
            if missing_columns(pd.read_csv(self.output_dir / filename), columns):
                self.logger.error(f"{filename} does not follow its schema")
                return False
        return True
