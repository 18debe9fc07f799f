"""
Preprocessing & alignment tests
"""
import pytest
import pandas as pd
import numpy as np

from biomarker_pipeline.stats.errors import DataAlignmentError
from biomarker_pipeline.stats.preprocessing import (
    align_expression_metadata,
    coerce_identifiers,
    make_unique,
    map_probes_to_symbols,
    normalize_labels,
    normalize_symbol_label,
)


class TestIdentifiers:
    """Join-key coercion and name disambiguation."""

    def test_coerce_identifiers(self):
        assert coerce_identifiers([101.0, " A ", 3, "7"]) == ["101", "A", "3", "7"]

    def test_coerce_keeps_non_integral_floats(self):
        assert coerce_identifiers([1.5]) == ["1.5"]

    def test_make_unique_first_keeps_name(self):
        result = make_unique(["A", "A", "A.1", "B", "A"])
        assert result[0] == "A"
        assert result[2] == "A.1"
        assert result[3] == "B"
        assert len(set(result)) == len(result)

    def test_make_unique_no_duplicates_untouched(self):
        assert make_unique(["X", "Y", "Z"]) == ["X", "Y", "Z"]

    def test_normalize_symbol_label(self):
        assert normalize_symbol_label(" TP53 ///  MDM2 ") == "TP53///MDM2"
        assert normalize_symbol_label("---") is None
        assert normalize_symbol_label(np.nan) is None
        assert normalize_symbol_label("EGFR /// ---") == "EGFR"


class TestProbeMapping:
    """Probe -> gene symbol replacement."""

    @pytest.fixture
    def probe_expression(self):
        return pd.DataFrame(
            np.arange(12, dtype=float).reshape(4, 3),
            index=["1", "2", "3", "4"],
            columns=["S1", "S2", "S3"],
        )

    def test_map_probes(self, probe_expression):
        annotation = pd.DataFrame({
            "probe_id": [1, 2, 3, 4],
            "gene_symbol": ["EGFR", "---", "EGFR", "A /// B"],
        })
        mapped, mapping = map_probes_to_symbols(probe_expression, annotation)

        assert list(mapped.index) == ["EGFR", "EGFR.1", "A///B"]
        assert mapped.index.name == "gene_id"
        assert list(mapping["probe_id"]) == ["1", "3", "4"]
        assert mapped.loc["EGFR.1", "S1"] == probe_expression.loc["3", "S1"]

    def test_missing_annotation_columns(self, probe_expression):
        with pytest.raises(DataAlignmentError):
            map_probes_to_symbols(probe_expression, pd.DataFrame({"id": [1]}))

    def test_nothing_maps(self, probe_expression):
        annotation = pd.DataFrame({"probe_id": ["x"], "gene_symbol": ["EGFR"]})
        with pytest.raises(DataAlignmentError):
            map_probes_to_symbols(probe_expression, annotation)


class TestAlignment:
    """Expression / metadata alignment."""

    def test_normalize_labels(self):
        meta = pd.DataFrame({
            "sample_id": ["a", "b", "c", "d"],
            "disease": ["Glioblastoma", "control", "tumor", "astrocytoma"],
        })
        out = normalize_labels(meta, label_map={"glioblastoma": "tumor", "control": "normal"})
        assert list(out["sample_id"]) == ["a", "b", "c"]
        assert list(out["disease"]) == ["tumor", "normal", "tumor"]

    def test_align_orders_columns_as_metadata(self, sample_expression, sample_metadata):
        shuffled = sample_expression[list(reversed(sample_expression.columns))]
        aligned = align_expression_metadata(shuffled, sample_metadata)

        assert list(aligned.expression.columns) == list(aligned.metadata.index)
        assert list(aligned.metadata.index) == list(sample_metadata["sample_id"])
        assert aligned.n_genes == sample_expression.shape[0]

    def test_align_drops_samples_with_missing_values(self, sample_expression, sample_metadata):
        expr = sample_expression.copy()
        expr.loc["GENE5", "TUMOR_0"] = np.nan
        aligned = align_expression_metadata(expr, sample_metadata)

        assert "TUMOR_0" not in aligned.expression.columns
        assert "TUMOR_0" not in aligned.metadata.index
        assert aligned.dropped_samples == ["TUMOR_0"]
        assert not aligned.expression.isna().any().any()

    def test_align_numeric_ids_match_strings(self):
        expr = pd.DataFrame([[1.0, 2.0, 3.0]], index=["G"], columns=["101", "102", "103"])
        meta = pd.DataFrame({"sample_id": [101, 102, 103], "disease": ["tumor", "normal", "tumor"]})
        aligned = align_expression_metadata(expr, meta)
        assert aligned.n_samples == 3

    def test_no_matching_ids(self, sample_expression, sample_metadata):
        meta = sample_metadata.assign(sample_id=[f"X{i}" for i in range(len(sample_metadata))])
        with pytest.raises(DataAlignmentError):
            align_expression_metadata(sample_expression, meta)

    def test_duplicate_ids(self, sample_expression, sample_metadata):
        meta = pd.concat([sample_metadata, sample_metadata.iloc[[0]]])
        with pytest.raises(DataAlignmentError):
            align_expression_metadata(sample_expression, meta)

    def test_missing_group(self, sample_expression, sample_metadata):
        meta = sample_metadata[sample_metadata["disease"] == "tumor"]
        with pytest.raises(DataAlignmentError):
            align_expression_metadata(sample_expression, meta)
