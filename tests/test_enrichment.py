"""
GO term tabulation and enrichment tests
"""
import pytest
import pandas as pd
import numpy as np
from scipy.stats import hypergeom

from biomarker_pipeline.stats.enrichment import (
    enrichment_for_lists,
    gene_term_table,
    hypergeometric_enrichment,
    parse_terms,
    term_frequencies,
)
from biomarker_pipeline.stats.schemas import ENRICHMENT_COLUMNS, TERM_FREQUENCY_COLUMNS


@pytest.fixture
def annotation():
    return pd.DataFrame({
        "gene_id": ["EGFR", "TP53", "PTEN", "MGMT", "CDK4", "GFAP"],
        "biological_process": [
            "GO:0001 // cell proliferation /// GO:0002 // signaling",
            "GO:0003 // apoptotic process /// GO:0001 // cell proliferation",
            "GO:0003 // apoptotic process",
            "GO:0004 // DNA repair",
            "GO:0001 // cell proliferation",
            "---",
        ],
        "molecular_function": [
            "GO:0100 // kinase activity",
            "GO:0101 // DNA binding",
            np.nan,
            "GO:0101 // DNA binding",
            "GO:0100 // kinase activity",
            "GO:0102 // structural molecule",
        ],
    })


@pytest.fixture
def gene_terms(annotation):
    return gene_term_table(annotation)


class TestParsing:

    def test_parse_terms(self):
        assert parse_terms("GO:1 // a // IEA /// GO:2 // b") == [("GO:1", "a"), ("GO:2", "b")]

    def test_parse_term_without_name(self):
        assert parse_terms("GO:7") == [("GO:7", "GO:7")]

    def test_parse_missing(self):
        assert parse_terms(np.nan) == []
        assert parse_terms(None) == []
        assert parse_terms("---") == []

    def test_gene_term_table(self, gene_terms):
        assert list(gene_terms.columns) == ["gene_id", "ontology", "term_id", "term_name"]
        assert len(gene_terms) == 12
        assert not gene_terms.duplicated(subset=["gene_id", "ontology", "term_id"]).any()
        assert "GFAP" not in set(gene_terms.loc[gene_terms["ontology"] == "biological_process", "gene_id"])

    def test_duplicate_terms_collapsed(self):
        ann = pd.DataFrame({"gene_id": ["A"], "biological_process": ["GO:1 // x /// GO:1 // x"]})
        assert len(gene_term_table(ann, ontologies=["biological_process"])) == 1


class TestFrequencies:

    def test_term_frequencies(self, gene_terms):
        freqs = term_frequencies(gene_terms, ["EGFR", "TP53", "CDK4"], gene_list="DEG")
        bp = freqs[freqs["ontology"] == "biological_process"]

        assert list(freqs.columns) == TERM_FREQUENCY_COLUMNS
        assert bp.iloc[0]["term_name"] == "cell proliferation"
        assert bp.iloc[0]["count"] == 3
        assert freqs["count"].is_monotonic_decreasing
        assert bp.iloc[0]["fraction"] == pytest.approx(1.0)
        assert set(freqs["gene_list"]) == {"DEG"}

    def test_ties_ordered_by_name(self, gene_terms):
        freqs = term_frequencies(gene_terms, ["EGFR", "TP53"])
        ones = freqs[freqs["count"] == 1]["term_name"].tolist()
        assert ones == sorted(ones)

    def test_no_annotated_genes(self, gene_terms):
        freqs = term_frequencies(gene_terms, ["UNKNOWN"])
        assert freqs.empty
        assert list(freqs.columns) == TERM_FREQUENCY_COLUMNS


class TestEnrichment:

    def test_hypergeometric_pvalue(self, gene_terms):
        result = hypergeometric_enrichment(gene_terms, ["EGFR", "TP53", "CDK4"], gene_list="DEG")
        assert list(result.columns) == ENRICHMENT_COLUMNS

        row = result[(result["ontology"] == "biological_process") & (result["term_id"] == "GO:0001")].iloc[0]
        # 5 genes annotated in BP, 3 carry GO:0001, all 3 selected
        assert row["background_size"] == 5
        assert row["term_size"] == 3
        assert row["list_size"] == 3
        assert row["overlap"] == 3
        assert row["pvalue"] == pytest.approx(hypergeom.sf(2, 5, 3, 3))
        assert (result["padj"] >= result["pvalue"] - 1e-12).all()

    def test_background_restricts_universe(self, gene_terms):
        result = hypergeometric_enrichment(
            gene_terms, ["EGFR", "TP53"], background=["EGFR", "TP53", "PTEN", "MGMT"],
        )
        assert set(result["background_size"]) <= {4, 3}
        assert "GO:0102" not in set(result["term_id"])

    def test_empty_selection(self, gene_terms):
        result = hypergeometric_enrichment(gene_terms, ["UNKNOWN"])
        assert result.empty
        assert list(result.columns) == ENRICHMENT_COLUMNS

    def test_enrichment_for_lists(self, gene_terms):
        freqs, enriched = enrichment_for_lists(
            gene_terms, {"DEG": ["EGFR", "TP53"], "PCA": ["MGMT"]},
        )
        assert set(freqs["gene_list"]) == {"DEG", "PCA"}
        assert set(enriched["gene_list"]) == {"DEG", "PCA"}
