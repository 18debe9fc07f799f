"""
Survival scoring tests
"""
import pytest
import pandas as pd
import numpy as np

from biomarker_pipeline.stats.schemas import GROUP_COMPARISON_COLUMNS, SHORTLIST_COLUMNS
from biomarker_pipeline.stats.survival import (
    biomarker_shortlist,
    cox_scores,
    forest_importance,
    group_comparison,
    importance_table,
    merge_survival_scores,
    score_genes,
    survival_cohort,
)


@pytest.fixture
def survival_data():
    """30 tumor samples; RISK shortens survival, NOISE is unrelated, CONST is flat."""
    rng = np.random.default_rng(11)
    n = 30
    samples = [f"T{i:02d}" for i in range(n)]
    risk = rng.normal(0, 1, n)
    noise = rng.normal(0, 1, n)
    time = np.exp(3 - risk + rng.normal(0, 0.2, n))

    expression = pd.DataFrame(
        [risk, noise, np.full(n, 5.0)],
        index=pd.Index(["RISK", "NOISE", "CONST"], name="gene_id"),
        columns=samples,
    )
    return expression, pd.Series(time, index=samples, name="survival_months")


class TestCohort:

    def test_excludes_normals_and_missing_times(self, sample_expression, sample_metadata):
        meta = sample_metadata.set_index("sample_id")
        meta.loc["TUMOR_2", "survival_months"] = np.nan

        expr, time = survival_cohort(sample_expression, meta)

        assert list(time.index) == ["TUMOR_0", "TUMOR_1", "TUMOR_3", "TUMOR_4", "TUMOR_5"]
        assert list(expr.columns) == list(time.index)
        assert time.dtype == float


class TestCox:

    def test_risk_gene_ranks_first(self, survival_data):
        expression, time = survival_data
        table, failed = cox_scores(expression, time)
        row = table.set_index("gene_id").loc["RISK"]

        assert table.loc[0, "gene_id"] == "RISK"
        assert row["cox_rank"] == 1
        assert row["hazard_ratio"] > 1
        assert row["cox_pvalue"] < 0.05
        assert np.isclose(row["hazard_ratio"], np.exp(row["cox_coef"]))

    def test_constant_gene_fails(self, survival_data):
        expression, time = survival_data
        table, failed = cox_scores(expression, time)

        assert failed == ["CONST"]
        const = table.set_index("gene_id").loc["CONST"]
        assert np.isnan(const["cox_pvalue"])
        assert const["cox_rank"] == 3

    def test_gene_subset(self, survival_data):
        expression, time = survival_data
        table, _ = cox_scores(expression, time, genes=["NOISE", "MISSING"])
        assert list(table["gene_id"]) == ["NOISE"]


class TestImportance:

    def test_forest_importance(self, survival_data):
        expression, time = survival_data
        table = forest_importance(expression, time, n_estimators=100, random_state=0)

        assert list(table.columns) == ["gene_id", "importance", "importance_rank"]
        assert table.loc[0, "gene_id"] == "RISK"
        assert list(table["importance_rank"]) == [1, 2, 3]
        assert table["importance"].sum() == pytest.approx(1.0)

    def test_forest_is_seeded(self, survival_data):
        expression, time = survival_data
        first = forest_importance(expression, time, n_estimators=50, random_state=3)
        second = forest_importance(expression, time, n_estimators=50, random_state=3)
        pd.testing.assert_frame_equal(first, second)

    def test_importance_table_ranks(self):
        table = importance_table(pd.DataFrame({"gene_id": ["a", "b", "c"], "importance": [0.2, np.nan, 0.5]}))
        assert list(table["gene_id"]) == ["c", "a", "b"]
        assert list(table["importance_rank"]) == [1, 2, 3]


class TestMerge:

    def test_reconciled_external_importance(self, survival_data):
        expression, time = survival_data
        cox_table, _ = cox_scores(expression, time)
        external = importance_table(pd.DataFrame({"gene_id": ["risk", "noise"], "importance": [0.9, 0.1]}))

        merged = merge_survival_scores(cox_table, external).set_index("gene_id")

        assert merged.loc["RISK", "matched_id"] == "risk"
        assert merged.loc["RISK", "importance"] == pytest.approx(0.9)
        assert merged.loc["NOISE", "importance_rank"] == 2
        assert pd.isna(merged.loc["CONST", "importance"])
        assert len(merged) == 3

    def test_score_genes(self, survival_data):
        expression, time = survival_data
        scores = score_genes(expression, time, n_estimators=50)

        assert scores.event_assumed
        assert scores.n_samples == 30
        assert scores.failed_genes == ["CONST"]
        assert scores.table.loc[0, "gene_id"] == "RISK"
        assert scores.table.loc[0, "matched_id"] == "RISK"


class TestShortlist:

    def test_union_of_top_genes(self):
        scores = pd.DataFrame({
            "gene_id": ["---", "A", "B", "C"],
            "cox_pvalue": [0.0001, 0.001, 0.01, np.nan],
            "cox_rank": [1, 2, 3, 4],
            "importance": [0.9, 0.1, 0.5, 0.3],
        })

        shortlist = biomarker_shortlist(scores, top_n_cox=2, top_n_importance=2)

        assert list(shortlist.columns) == SHORTLIST_COLUMNS
        assert list(shortlist["gene_id"]) == ["A", "B", "C"]
        assert list(shortlist["source"]) == ["cox", "cox+importance", "importance"]

    def test_custom_exclusions(self):
        scores = pd.DataFrame({
            "gene_id": ["A", "B"],
            "cox_pvalue": [0.01, 0.02],
            "cox_rank": [1, 2],
            "importance": [0.5, 0.4],
        })
        shortlist = biomarker_shortlist(scores, top_n_cox=5, top_n_importance=5, exclude_genes=["A"])
        assert list(shortlist["gene_id"]) == ["B"]


class TestGroupComparison:

    def test_median_split(self, survival_data):
        expression, time = survival_data
        result = group_comparison(expression, time, ["RISK", "NOISE", "UNKNOWN"])
        row = result.set_index("gene_id").loc["RISK"]

        assert list(result.columns) == GROUP_COMPARISON_COLUMNS
        assert list(result["gene_id"]) == ["RISK", "NOISE"]
        assert row["n_high"] + row["n_low"] == 30
        assert row["logrank_pvalue"] < 0.05
        assert row["median_survival_high"] < row["median_survival_low"]

    def test_constant_gene_has_no_split(self, survival_data):
        expression, time = survival_data
        row = group_comparison(expression, time, ["CONST"]).iloc[0]
        assert row["n_high"] == 0
        assert np.isnan(row["logrank_pvalue"])
