"""
Identifier reconciliation tests
"""
import pytest
import pandas as pd

from biomarker_pipeline.stats.reconcile import (
    canonical_id,
    jaccard_similarity,
    qgrams,
    reconcile_identifiers,
)


class TestSimilarity:

    def test_qgrams(self):
        assert qgrams("tp53") == {"TP", "P5", "53"}
        assert qgrams("A") == {"A"}
        assert qgrams("") == set()

    def test_jaccard_bounds(self):
        assert jaccard_similarity("ABC", "ABC") == 1.0
        assert jaccard_similarity("AB", "CD") == 0.0
        assert jaccard_similarity("", "") == 0.0

    def test_jaccard_case_insensitive(self):
        assert jaccard_similarity("egfr", "EGFR") == 1.0

    def test_canonical_id(self):
        assert canonical_id("hla-dra") == "HLADRA"
        assert canonical_id("HLA.DRA") == "HLADRA"


class TestReconcile:

    def test_match_tiers(self):
        result = reconcile_identifiers(
            ["EGFR", "hla-dra", "TP53", "XYZ"],
            ["EGFR", "HLA.DRA", "TP53BP"],
        ).set_index("left_id")

        assert result.loc["EGFR", "match_type"] == "exact"
        assert result.loc["hla-dra", "matched_id"] == "HLA.DRA"
        assert result.loc["hla-dra", "match_type"] == "canonical"
        assert result.loc["TP53", "matched_id"] == "TP53BP"
        assert result.loc["TP53", "match_similarity"] == pytest.approx(0.6)
        assert result.loc["TP53", "match_type"] == "fuzzy"
        assert pd.isna(result.loc["XYZ", "matched_id"])
        assert result.loc["XYZ", "match_type"] == "unmatched"

    def test_tie_goes_to_first_candidate(self):
        result = reconcile_identifiers(["AB"], ["ABX", "ABY"])
        assert result.loc[0, "matched_id"] == "ABX"
        assert result.loc[0, "match_similarity"] == pytest.approx(0.5)

    def test_min_similarity(self):
        result = reconcile_identifiers(["TP53"], ["TP53BP"], min_similarity=0.7)
        assert result.loc[0, "match_type"] == "unmatched"

    def test_one_row_per_left_id(self):
        left = ["A1", "B2", "C3"]
        result = reconcile_identifiers(left, [])
        assert list(result["left_id"]) == left
        assert (result["match_type"] == "unmatched").all()
