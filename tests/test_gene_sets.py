"""
Candidate gene-set algebra tests
"""
from biomarker_pipeline.stats.gene_sets import (
    all_intersections,
    intersect_sets,
    intersections_to_frame,
    pairwise_intersections,
    sets_to_frame,
    union_sets,
)
from biomarker_pipeline.stats.schemas import CANDIDATE_SET_COLUMNS, INTERSECTION_COLUMNS

DEG = {"EGFR", "TP53", "IDH1", "PTEN"}
PCA = {"EGFR", "IDH1", "MGMT"}
NET = {"EGFR", "PTEN", "MGMT", "CDK4"}


class TestSetAlgebra:

    def test_intersection_commutative_and_associative(self):
        assert intersect_sets(DEG, PCA) == intersect_sets(PCA, DEG)
        assert intersect_sets(intersect_sets(DEG, PCA), NET) == intersect_sets(DEG, intersect_sets(PCA, NET))
        assert intersect_sets(DEG, PCA, NET) == {"EGFR"}

    def test_empty_input(self):
        assert intersect_sets() == set()
        assert union_sets() == set()
        assert intersect_sets(DEG, set()) == set()

    def test_union(self):
        assert union_sets(DEG, PCA) == {"EGFR", "TP53", "IDH1", "PTEN", "MGMT"}

    def test_pairwise(self):
        pairs = pairwise_intersections({"DEG": DEG, "PCA": PCA, "WGCNA": NET})
        assert list(pairs) == ["DEG & PCA", "DEG & WGCNA", "PCA & WGCNA"]
        assert pairs["PCA & WGCNA"] == {"EGFR", "MGMT"}

    def test_all_intersections(self):
        combos = all_intersections({"DEG": DEG, "PCA": PCA, "WGCNA": NET})
        assert len(combos) == 4
        assert combos["DEG & PCA & WGCNA"] == {"EGFR"}
        assert combos["DEG & WGCNA"] == {"EGFR", "PTEN"}

    def test_single_set_has_no_intersections(self):
        assert all_intersections({"DEG": DEG}) == {}


class TestFrames:

    def test_sets_to_frame(self):
        frame = sets_to_frame({"PCA": PCA, "DEG": ["b", "a", "a"]})
        assert list(frame.columns) == CANDIDATE_SET_COLUMNS
        assert list(frame.loc[frame["set_name"] == "DEG", "gene_id"]) == ["a", "b"]
        assert list(frame.loc[frame["set_name"] == "PCA", "gene_id"]) == ["EGFR", "IDH1", "MGMT"]

    def test_intersections_to_frame(self):
        combos = all_intersections({"DEG": DEG, "PCA": PCA, "WGCNA": NET})
        frame = intersections_to_frame(combos)

        assert list(frame.columns) == INTERSECTION_COLUMNS
        triple = frame[frame["set_combination"] == "DEG & PCA & WGCNA"]
        assert list(triple["gene_id"]) == ["EGFR"]
        assert set(triple["n_sets"]) == {3}
        assert set(frame.loc[frame["set_combination"] == "DEG & PCA", "n_sets"]) == {2}

    def test_empty_intersection_frame(self):
        frame = intersections_to_frame({"A & B": set()})
        assert frame.empty
        assert list(frame.columns) == INTERSECTION_COLUMNS
