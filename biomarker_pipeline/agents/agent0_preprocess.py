"""
Agent 0: Preprocessing & Alignment

Maps probes to gene symbols and aligns the expression matrix with the
clinical metadata so every later agent sees the same samples in the same
order.

Input:
- expression_matrix.csv: Probe x sample intensities (first column probe id)
- metadata.csv: Sample metadata (sample_id, disease, age, gender, ...)
- probe_annotation.csv (optional): probe_id -> gene_symbol
- config.json: Analysis parameters

Output:
- expression_aligned.csv: gene x sample matrix, no missing values
- metadata_aligned.csv: metadata rows in matrix column order
- probe_mapping.csv: probe_id -> gene_id actually used
- meta_agent0_preprocess.json: Execution metadata
"""

import pandas as pd
from pathlib import Path
from typing import Any, Dict, Optional

from ..utils.base_agent import BaseAgent
from ..stats.preprocessing import (
    align_expression_metadata,
    coerce_identifiers,
    make_unique,
    map_probes_to_symbols,
    normalize_labels,
)
from ..stats.schemas import PROBE_MAPPING_COLUMNS, missing_columns
from .. import config as settings


class PreprocessAgent(BaseAgent):
    """Agent for probe mapping and expression/metadata alignment."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "sample_column": "sample_id",
            "label_column": "disease",
            "label_map": {},  # e.g. {"glioblastoma": "tumor", "control": "normal"}
            "map_probes": True,
            "probe_column": "probe_id",
            "symbol_column": "gene_symbol",
            "symbol_delimiter": "///",
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent0_preprocess", input_dir, output_dir, merged_config)

        self.expression: Optional[pd.DataFrame] = None
        self.metadata: Optional[pd.DataFrame] = None
        self.annotation: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        """Load expression matrix, metadata and optional probe annotation."""
        self.expression = self.load_csv(settings.EXPRESSION_FILE, index_col=0)
        self.metadata = self.load_csv(settings.METADATA_FILE)

        sample_col = self.config["sample_column"]
        label_col = self.config["label_column"]
        absent = missing_columns(self.metadata, [sample_col, label_col])
        if absent:
            self.logger.error(f"Metadata is missing columns: {absent}")
            return False

        if self.expression.shape[0] == 0 or self.expression.shape[1] == 0:
            self.logger.error("Expression matrix is empty")
            return False

        if self.config["map_probes"]:
            self.annotation = self.load_csv(settings.PROBE_ANNOTATION_FILE, required=False)

        self.logger.info(
            f"Expression matrix: {self.expression.shape[0]} probes, {self.expression.shape[1]} samples"
        )
        return True

    def run(self) -> Dict[str, Any]:
        """Map probes, normalize labels and align samples."""
        if self.annotation is not None:
            expression, mapping = map_probes_to_symbols(
                self.expression,
                self.annotation,
                probe_column=self.config["probe_column"],
                symbol_column=self.config["symbol_column"],
                delimiter=self.config["symbol_delimiter"],
            )
            method_used = "probe_annotation"
        else:
            # Rows are already gene-level; only make the ids unique
            probes = coerce_identifiers(self.expression.index)
            genes = make_unique(probes)
            expression = self.expression.copy()
            expression.index = pd.Index(genes, name="gene_id")
            mapping = pd.DataFrame({"probe_id": probes, "gene_id": genes})
            method_used = "identity"

        metadata = normalize_labels(
            self.metadata,
            column=self.config["label_column"],
            label_map=self.config["label_map"],
        )
        aligned = align_expression_metadata(
            expression,
            metadata,
            sample_column=self.config["sample_column"],
            label_column=self.config["label_column"],
        )

        self.save_csv(aligned.expression, "expression_aligned.csv", index=True)
        self.save_csv(aligned.metadata, "metadata_aligned.csv", index=True)
        self.save_csv(mapping[mapping["gene_id"].isin(aligned.expression.index)], "probe_mapping.csv")

        group_counts = aligned.metadata[self.config["label_column"]].value_counts()
        self.logger.info("Preprocessing Complete:")
        self.logger.info(f"  Genes: {aligned.n_genes}")
        self.logger.info(f"  Samples: {aligned.n_samples}")
        for label, n in group_counts.items():
            self.logger.info(f"    {label}: {n}")

        return {
            "method_used": method_used,
            "n_probes": int(self.expression.shape[0]),
            "n_genes": aligned.n_genes,
            "n_samples": aligned.n_samples,
            "group_counts": {str(k): int(v) for k, v in group_counts.items()},
            "dropped_samples": aligned.dropped_samples,
        }

    def validate_outputs(self) -> bool:
        """Validate alignment outputs."""
        if not self.check_output_files([
            "expression_aligned.csv",
            "metadata_aligned.csv",
            "probe_mapping.csv",
        ]):
            return False

        expr = pd.read_csv(self.output_dir / "expression_aligned.csv", index_col=0)
        meta = pd.read_csv(self.output_dir / "metadata_aligned.csv", index_col=0)

        if expr.isna().any().any():
            self.logger.error("Aligned expression matrix contains missing values")
            return False

        if coerce_identifiers(expr.columns) != coerce_identifiers(meta.index):
            self.logger.error("Matrix columns and metadata rows are not in the same order")
            return False

        mapping = pd.read_csv(self.output_dir / "probe_mapping.csv")
        if missing_columns(mapping, PROBE_MAPPING_COLUMNS):
            self.logger.error("probe_mapping.csv does not follow its schema")
            return False

        return True
