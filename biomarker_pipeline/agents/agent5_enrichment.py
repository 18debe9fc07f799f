"""
Agent 5: Gene Ontology Enrichment

Tabulates GO terms for every candidate set and for the intersection of
all sets, and tests term over-representation against the annotated
background.

Input:
- go_annotation.csv: gene_id + biological_process / cellular_component /
  molecular_function fields
- candidate_sets.csv / candidate_intersections.csv: from agent 4
- expression_aligned.csv (optional): restricts the background to measured genes

Output:
- go_gene_terms.csv: gene_id, ontology, term_id, term_name
- go_term_frequencies.csv: term counts per gene list
- go_enrichment.csv: hypergeometric p-values per gene list
- meta_agent5_enrichment.json: Execution metadata
"""

import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..utils.base_agent import BaseAgent
from ..stats.enrichment import ONTOLOGIES, enrichment_for_lists, gene_term_table
from ..stats.preprocessing import coerce_identifiers
from ..stats.schemas import (
    ENRICHMENT_COLUMNS,
    GENE_TERM_COLUMNS,
    TERM_FREQUENCY_COLUMNS,
    missing_columns,
)
from .. import config as settings


class EnrichmentAgent(BaseAgent):
    """Agent for GO term tabulation and over-representation analysis."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "ontologies": list(ONTOLOGIES),
            "annotation_gene_column": "gene_id",
            "include_intersection": True,
            "restrict_background": True,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent5_enrichment", input_dir, output_dir, merged_config)

        self.annotation: Optional[pd.DataFrame] = None
        self.sets: Optional[pd.DataFrame] = None
        self.intersections: Optional[pd.DataFrame] = None
        self.measured: Optional[List[str]] = None

    def validate_inputs(self) -> bool:
        self.annotation = self.load_csv(settings.GO_ANNOTATION_FILE)
        self.sets = self.load_csv("candidate_sets.csv")
        self.intersections = self.load_csv("candidate_intersections.csv")

        gene_col = self.config["annotation_gene_column"]
        if gene_col not in self.annotation.columns:
            self.logger.error(f"GO annotation has no '{gene_col}' column")
            return False
        if not any(o in self.annotation.columns for o in self.config["ontologies"]):
            self.logger.error(f"GO annotation has none of the ontology columns {self.config['ontologies']}")
            return False

        if self.config["restrict_background"]:
            expr = self.load_csv("expression_aligned.csv", required=False, index_col=0)
            if expr is not None:
                self.measured = coerce_identifiers(expr.index)
        return True

    def _gene_lists(self) -> Dict[str, List[str]]:
        lists = {
            name: coerce_identifiers(group["gene_id"])
            for name, group in self.sets.groupby("set_name", sort=False)
        }
        if self.config["include_intersection"] and len(self.intersections):
            widest = self.intersections["n_sets"].max()
            full = self.intersections[self.intersections["n_sets"] == widest]
            name = full["set_combination"].iloc[0]
            lists[name] = coerce_identifiers(full["gene_id"])
        elif self.config["include_intersection"]:
            self.logger.warning("Candidate sets have no common genes; intersection list skipped")
        return lists

    def run(self) -> Dict[str, Any]:
        annotation = self.annotation.copy()
        gene_col = self.config["annotation_gene_column"]
        annotation[gene_col] = coerce_identifiers(annotation[gene_col])

        gene_terms = gene_term_table(annotation, gene_column=gene_col, ontologies=self.config["ontologies"])
        self.save_csv(gene_terms, "go_gene_terms.csv")

        background = None
        if self.measured is not None:
            background = set(gene_terms["gene_id"]) & set(self.measured)
            self.logger.info(f"Background: {len(background)} annotated and measured genes")

        lists = self._gene_lists()
        frequencies, enrichment = enrichment_for_lists(gene_terms, lists, background=background)
        if frequencies.empty:
            frequencies = pd.DataFrame(columns=TERM_FREQUENCY_COLUMNS)
        if enrichment.empty:
            enrichment = pd.DataFrame(columns=ENRICHMENT_COLUMNS)

        self.save_csv(frequencies, "go_term_frequencies.csv")
        self.save_csv(enrichment, "go_enrichment.csv")

        n_significant = int((enrichment["padj"] < 0.05).sum()) if len(enrichment) else 0
        self.logger.info("Enrichment Complete:")
        self.logger.info(f"  Gene lists: {list(lists)}")
        self.logger.info(f"  Annotated genes: {gene_terms['gene_id'].nunique()}")
        self.logger.info(f"  Enriched terms (padj < 0.05): {n_significant}")

        return {
            "gene_lists": {k: len(v) for k, v in lists.items()},
            "n_annotated_genes": int(gene_terms["gene_id"].nunique()),
            "n_terms": int(gene_terms["term_id"].nunique()),
            "n_significant_terms": n_significant,
        }

    def validate_outputs(self) -> bool:
        if not self.check_output_files(["go_gene_terms.csv", "go_term_frequencies.csv", "go_enrichment.csv"]):
            return False
        for filename, columns in [
            ("go_gene_terms.csv", GENE_TERM_COLUMNS),
            ("go_term_frequencies.csv", TERM_FREQUENCY_COLUMNS),
            ("go_enrichment.csv", ENRICHMENT_COLUMNS),
        ]:
            if missing_columns(pd.read_csv(self.output_dir / filename), columns):
                self.logger.error(f"{filename} does not follow its schema")
                return False
        return True
