"""
Co-expression network (WGCNA-style) tests
"""
import pytest
import pandas as pd
import numpy as np

from biomarker_pipeline.stats.errors import NumericalDegeneracyError
from biomarker_pipeline.stats.models import UNASSIGNED_MODULE
from biomarker_pipeline.stats.schemas import SOFT_THRESHOLD_COLUMNS
from biomarker_pipeline.stats.wgcna import (
    adjacency_from_correlation,
    blockwise_modules,
    correlation_matrix,
    correlation_pvalue,
    drop_undefined_correlations,
    encode_traits,
    good_samples_genes,
    hub_genes,
    intramodular_connectivity,
    label_modules,
    merge_close_modules,
    module_eigengenes,
    module_membership,
    module_trait_correlation,
    pick_soft_threshold,
    rank_modules,
    scale_free_fit_index,
    topological_overlap,
)

from conftest import BLOCK1, BLOCK2


@pytest.fixture
def filtered(two_block_expression):
    expr, _ = good_samples_genes(two_block_expression)
    return expr


@pytest.fixture
def detection(filtered):
    return blockwise_modules(filtered, soft_power=6, min_module_size=5)


def _block_labels(expression):
    labels = pd.Series(UNASSIGNED_MODULE, index=expression.index, name="module", dtype=object)
    labels[BLOCK1] = "turquoise"
    labels[BLOCK2] = "blue"
    return labels


class TestQualityFilter:
    """Pre-correlation sample/gene filtering."""

    def test_removes_constant_gene(self, two_block_expression):
        expr, report = good_samples_genes(two_block_expression)

        assert "CONST" not in expr.index
        assert report.removed_genes == {"CONST": "zero_variance"}
        assert not report.removed_samples
        assert expr.shape == (49, 20)

    def test_removes_sparse_gene_and_sample(self, two_block_expression):
        expr = two_block_expression.copy()
        expr.loc["N_0", expr.columns[:15]] = np.nan
        expr.loc[expr.index[:40], "S19"] = np.nan

        filtered, report = good_samples_genes(expr)

        assert "S19" in report.removed_samples
        assert report.removed_samples["S19"].startswith("missing_fraction")
        assert report.removed_genes["N_0"].startswith("missing_fraction")
        assert "S19" not in filtered.columns
        assert not report.all_ok

    def test_too_few_observations(self, two_block_expression):
        expr = two_block_expression.iloc[:, :5].copy()
        expr.loc["N_1", expr.columns[:2]] = np.nan
        _, report = good_samples_genes(expr, max_missing_fraction=0.5, min_n_samples=4)
        assert report.removed_genes["N_1"] == "n_observations=3"

    def test_all_constant_raises(self):
        expr = pd.DataFrame(np.ones((5, 6)))
        with pytest.raises(NumericalDegeneracyError):
            good_samples_genes(expr)

    def test_report_frame(self, two_block_expression):
        _, report = good_samples_genes(two_block_expression)
        frame = report.to_frame()
        assert list(frame.columns) == ["entity_type", "entity_id", "reason"]
        assert frame.iloc[0].tolist() == ["gene", "CONST", "zero_variance"]


class TestCorrelation:

    def test_matches_numpy(self, filtered):
        values = filtered.to_numpy()
        assert np.allclose(correlation_matrix(values), np.corrcoef(values))

    def test_pairwise_complete_matches_pandas(self, filtered):
        expr = filtered.copy()
        expr.iloc[3, 2] = np.nan
        expr.iloc[20, 7] = np.nan

        ours = correlation_matrix(expr.to_numpy())
        expected = expr.T.corr().to_numpy()
        assert np.allclose(ours, expected)

    def test_parallel_blocks_match_serial(self, filtered):
        values = filtered.to_numpy()
        serial = correlation_matrix(values, n_jobs=1)
        parallel = correlation_matrix(values, n_jobs=2, block_size=7)
        assert np.allclose(serial, parallel, atol=1e-12, rtol=0)

    def test_drop_undefined(self, two_block_expression):
        corr = correlation_matrix(two_block_expression.to_numpy())
        reduced, kept, dropped = drop_undefined_correlations(corr, list(two_block_expression.index))

        assert dropped == ["CONST"]
        assert "CONST" not in kept
        assert reduced.shape == (49, 49)
        assert np.isfinite(reduced).all()


class TestSoftThreshold:

    def test_fit_table(self, filtered):
        result = pick_soft_threshold(correlation_matrix(filtered.to_numpy()), powers=[1, 2, 4, 6])

        assert list(result.fit_table.columns) == SOFT_THRESHOLD_COLUMNS
        assert list(result.fit_table["power"]) == [1, 2, 4, 6]
        assert result.fit_table["mean_k"].is_monotonic_decreasing

    def test_unreachable_target(self, filtered):
        result = pick_soft_threshold(correlation_matrix(filtered.to_numpy()), powers=[1, 2], target_r2=2.0)
        assert result.power_estimate is None
        assert len(result.fit_table) == 2

    def test_constant_connectivity(self):
        fit = scale_free_fit_index(np.ones(10))
        assert np.isnan(fit["r_squared"])
        assert np.isnan(fit["slope"])


class TestAdjacencyTOM:

    def test_adjacency_properties(self, filtered):
        corr = correlation_matrix(filtered.to_numpy())
        for network_type in ["unsigned", "signed", "signed hybrid"]:
            adj = adjacency_from_correlation(corr, 6, network_type)
            assert np.allclose(adj, adj.T)
            assert np.all(np.diag(adj) == 0)
            assert adj.min() >= 0 and adj.max() <= 1

    def test_signed_formula(self):
        corr = np.array([[1.0, -0.5], [-0.5, 1.0]])
        adj = adjacency_from_correlation(corr, 2, "signed")
        assert adj[0, 1] == pytest.approx(0.0625)

    def test_invalid_network_type(self):
        with pytest.raises(ValueError):
            adjacency_from_correlation(np.eye(2), 6, "weird")

    def test_tom_properties(self, filtered):
        adj = adjacency_from_correlation(correlation_matrix(filtered.to_numpy()), 6)
        tom = topological_overlap(adj)
        assert np.allclose(tom, tom.T)
        assert np.all(np.diag(tom) == 1)
        assert tom.min() >= 0 and tom.max() <= 1

        idx = {g: i for i, g in enumerate(filtered.index)}
        within = tom[idx["B1_0"], idx["B1_1"]]
        between = tom[idx["B1_0"], idx["B2_0"]]
        assert within > 0.9
        assert between < 0.1


class TestModuleDetection:

    def test_blocks_recovered(self, detection, filtered):
        labels = detection.labels

        b1 = set(labels[BLOCK1])
        b2 = set(labels[BLOCK2])
        assert len(b1) == 1 and len(b2) == 1
        assert b1 != b2
        assert UNASSIGNED_MODULE not in b1 | b2
        assert detection.module_sizes.sum() == filtered.shape[0]
        assert labels.index.is_unique

    def test_colors_by_size(self, detection):
        sizes = detection.module_sizes.drop(UNASSIGNED_MODULE, errors="ignore")
        assert set(sizes.index) <= {"turquoise", "blue", "brown", "yellow"}
        if "blue" in sizes.index:
            assert sizes["turquoise"] >= sizes["blue"]

    def test_multiple_blocks(self, filtered):
        detection = blockwise_modules(filtered, soft_power=6, min_module_size=5, max_block_size=25)
        assert detection.n_blocks >= 2
        assert len(set(detection.labels[BLOCK1])) == 1
        assert UNASSIGNED_MODULE not in set(detection.labels[BLOCK1])

    def test_eigengenes_reproducible(self, detection, filtered):
        eigengenes, _ = module_eigengenes(filtered, detection.labels)
        pd.testing.assert_frame_equal(eigengenes, detection.eigengenes)

    def test_eigengene_standardized(self, filtered):
        eigengenes, variance = module_eigengenes(filtered, _block_labels(filtered))
        assert np.allclose(eigengenes.mean(), 0, atol=1e-12)
        assert np.allclose(eigengenes.std(ddof=1), 1)
        assert variance["turquoise"] > 0.99

    def test_merge_split_module(self, filtered):
        labels = _block_labels(filtered)
        labels[BLOCK1[:5]] = "a"
        labels[BLOCK1[5:]] = "b"
        labels[BLOCK2] = "c"

        merged, eigengenes, _ = merge_close_modules(filtered, labels, merge_cut_height=0.25)

        assert set(merged[BLOCK1]) == {"a"}
        assert set(merged[BLOCK2]) == {"c"}
        assert "b" not in eigengenes.columns

    def test_label_modules(self):
        labels = label_modules([2, 2, 1, 1, 1, 0], [f"g{i}" for i in range(6)])
        assert list(labels) == ["blue", "blue", "turquoise", "turquoise", "turquoise", "grey"]
        assert labels.index.name == "gene_id"

    def test_empty_network_raises(self):
        with pytest.raises(NumericalDegeneracyError):
            blockwise_modules(pd.DataFrame(columns=["S1", "S2"], dtype=float), soft_power=6)


class TestTraits:

    def test_encode_traits(self):
        meta = pd.DataFrame({
            "disease": ["tumor", "normal", "tumor", "normal"],
            "gender": ["M", "F", "F", "M"],
            "grade": ["IV", "II", "III", "II"],
            "age": [40, 50, 60, 70],
            "batch": ["A", "A", "A", "A"],
            "site": ["x", "y", "z", "x"],
        }, index=["s1", "s2", "s3", "s4"])

        traits, excluded = encode_traits(meta)

        assert list(traits["disease"]) == [1.0, 0.0, 1.0, 0.0]
        assert list(traits["gender"]) == [1.0, 0.0, 0.0, 1.0]
        assert list(traits["grade"]) == [4.0, 2.0, 3.0, 2.0]
        assert set(excluded) == {"batch", "site"}

    def test_grade_order(self):
        meta = pd.DataFrame({"grade": ["grade b", "grade a", "grade c"]})
        traits, _ = encode_traits(meta, grade_order=["grade a", "grade b", "grade c"])
        assert list(traits["grade"]) == [2.0, 1.0, 3.0]

    def test_correlation_pvalue(self):
        assert correlation_pvalue(1.0, 10) == 0.0
        assert np.isnan(correlation_pvalue(0.5, 2))
        assert 0 < correlation_pvalue(0.3, 20) < 1

    def test_module_trait_correlation(self, filtered, block_trait):
        eigengenes, _ = module_eigengenes(filtered, _block_labels(filtered))
        traits = block_trait.to_frame()

        cor, pval, nobs = module_trait_correlation(eigengenes, traits)

        assert UNASSIGNED_MODULE not in cor.index
        assert abs(cor.loc["turquoise", "block_trait"]) > 0.9
        assert pval.loc["turquoise", "block_trait"] < 0.05
        assert pval.loc["blue", "block_trait"] >= 0.05
        assert nobs.loc["turquoise", "block_trait"] == 20

    def test_detected_modules_track_trait(self, two_block_expression, block_trait):
        expr, _ = good_samples_genes(two_block_expression)
        det = blockwise_modules(expr, soft_power=6, min_module_size=10)

        cor, pval, _ = module_trait_correlation(det.eigengenes, block_trait.to_frame())
        first, second = det.labels["B1_0"], det.labels["B2_0"]

        assert first != UNASSIGNED_MODULE
        assert second != UNASSIGNED_MODULE
        assert first != second
        assert abs(cor.loc[first, "block_trait"]) > 0.9
        assert pval.loc[first, "block_trait"] < 0.05
        assert pval.loc[second, "block_trait"] >= 0.05

    def test_rank_modules(self):
        cor = pd.DataFrame(
            {"t1": [0.8, 0.9, 0.3], "t2": [-0.2, 0.1, 0.1]},
            index=["turquoise", "blue", "brown"],
        )
        pval = pd.DataFrame(0.01, index=cor.index, columns=cor.columns)
        sizes = pd.Series({"turquoise": 40, "blue": 100, "brown": 20})

        ranking = rank_modules(cor, pval, sizes, top_n_modules=1, max_module_size=50)

        assert list(ranking["module"]) == ["blue", "turquoise", "brown"]
        assert list(ranking["oversized"]) == [True, False, False]
        assert list(ranking["selected"]) == [False, True, False]
        assert ranking.loc[0, "best_trait"] == "t1"


class TestMembershipHubs:

    def test_module_membership(self, filtered, detection):
        membership = module_membership(filtered, detection.eigengenes, detection.labels)
        kme = membership.set_index("gene_id")["kME"]

        assert list(membership.columns) == ["gene_id", "module", "kME", "kME_pvalue"]
        assert (kme[BLOCK1].abs() > 0.8).all()
        assert (kme[BLOCK2].abs() > 0.8).all()

    def test_connectivity_decomposition(self, filtered, detection):
        adj = adjacency_from_correlation(correlation_matrix(filtered.to_numpy()), 6)
        conn = intramodular_connectivity(adj, detection.labels)
        assert np.allclose(conn["kTotal"], conn["kWithin"] + conn["kOut"])
        assert np.allclose(conn["kDiff"], conn["kWithin"] - conn["kOut"])

    def test_hub_genes(self, filtered, detection):
        adj = adjacency_from_correlation(correlation_matrix(filtered.to_numpy()), 6)
        membership = module_membership(filtered, detection.eigengenes, detection.labels)
        hubs = hub_genes(adj, detection.labels, membership, top_n=3)

        assert UNASSIGNED_MODULE not in set(hubs["module"])
        for _, group in hubs.groupby("module"):
            assert len(group) <= 3
            assert list(group["hub_rank"]) == list(range(1, len(group) + 1))
            assert group["kWithin"].is_monotonic_decreasing

        b1_module = detection.labels["B1_0"]
        assert set(hubs.loc[hubs["module"] == b1_module, "gene_id"]) <= set(BLOCK1)
