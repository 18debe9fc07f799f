"""
Agent 1: Differential Expression Gene (DEG) Analysis

Two-group linear model with empirical Bayes moderated t-statistics
(limma lmFit/eBayes equivalent) on log-scale microarray intensities.

Input:
- expression_aligned.csv: gene x sample matrix from agent 0
- metadata_aligned.csv: sample metadata with disease column
- config.json: Analysis parameters

Output:
- deg_all_results.csv: Full results ordered by B-statistic
- deg_significant.csv: Filtered significant DEGs with direction
- meta_agent1_deg.json: Execution metadata
"""

import pandas as pd
from pathlib import Path
from typing import Any, Dict, Optional

from ..utils.base_agent import BaseAgent
from ..stats.limma import moderated_t_test
from ..stats.models import AlignedData
from ..stats.schemas import DEG_COLUMNS, DEG_SIGNIFICANT_COLUMNS, conform, missing_columns


class DEGAgent(BaseAgent):
    """Agent for limma-style differential expression analysis."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "contrast": ["tumor", "normal"],  # [treatment, control]
            "padj_cutoff": 0.05,
            "log2fc_cutoff": 1.0,
            "label_column": "disease",
            "proportion": 0.01,  # prior proportion of DE genes
            "stdev_coef_lim": [0.1, 4.0],
            "deg_top_n": None,  # cap on significant DEGs, by rank
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent1_deg", input_dir, output_dir, merged_config)

        self.data: Optional[AlignedData] = None

    def validate_inputs(self) -> bool:
        """Validate aligned matrix and metadata."""
        self.data = self.load_aligned_data()

        label_col = self.config["label_column"]
        if label_col not in self.data.metadata.columns:
            self.logger.error(f"Label column '{label_col}' not in metadata")
            return False

        if list(self.data.expression.columns) != list(self.data.metadata.index):
            self.logger.error("Expression columns and metadata rows are not aligned")
            return False

        conditions = set(self.data.metadata[label_col])
        contrast = self.config["contrast"]
        if not all(c in conditions for c in contrast):
            self.logger.error(f"Contrast {contrast} not all in conditions {conditions}")
            return False

        self.logger.info(f"Expression matrix: {self.data.n_genes} genes, {self.data.n_samples} samples")
        self.logger.info(f"Conditions: {conditions}")
        return True

    def run(self) -> Dict[str, Any]:
        """Execute DEG analysis."""
        groups = self.data.metadata[self.config["label_column"]].tolist()
        result = moderated_t_test(
            self.data.expression,
            groups,
            contrast=tuple(self.config["contrast"]),
            proportion=self.config["proportion"],
            stdev_coef_lim=tuple(self.config["stdev_coef_lim"]),
        )

        self.save_csv(conform(result.table, DEG_COLUMNS), "deg_all_results.csv")

        padj_cutoff = self.config["padj_cutoff"]
        log2fc_cutoff = self.config["log2fc_cutoff"]
        significant = result.significant(padj_cutoff, log2fc_cutoff)
        if self.config["deg_top_n"]:
            significant = significant.sort_values("rank").head(int(self.config["deg_top_n"]))

        self.save_csv(conform(significant, DEG_SIGNIFICANT_COLUMNS), "deg_significant.csv")

        up_count = (significant["direction"] == "up").sum()
        down_count = (significant["direction"] == "down").sum()

        self.logger.info("DEG Analysis Complete:")
        self.logger.info(f"  Total genes analyzed: {len(result.table)}")
        self.logger.info(f"  Significant DEGs: {len(significant)}")
        self.logger.info(f"  Upregulated: {up_count}")
        self.logger.info(f"  Downregulated: {down_count}")

        return {
            "method_used": "limma_moderated_t",
            "total_genes": len(result.table),
            "deg_count": len(significant),
            "up_count": int(up_count),
            "down_count": int(down_count),
            "padj_cutoff": padj_cutoff,
            "log2fc_cutoff": log2fc_cutoff,
            "prior_df": result.prior_df,
            "prior_var": result.prior_var,
        }

    def validate_outputs(self) -> bool:
        """Validate DEG outputs."""
        if not self.check_output_files(["deg_all_results.csv", "deg_significant.csv"]):
            return False

        all_df = pd.read_csv(self.output_dir / "deg_all_results.csv")
        sig_df = pd.read_csv(self.output_dir / "deg_significant.csv")

        if missing_columns(all_df, DEG_COLUMNS) or missing_columns(sig_df, DEG_SIGNIFICANT_COLUMNS):
            self.logger.error("DEG tables do not follow their schema")
            return False

        if len(sig_df) == 0:
            self.logger.warning("No significant DEGs found (this may be expected)")

        if all_df["padj"].isna().any():
            self.logger.error("NA values found in padj column")
            return False

        return True
