"""
Agent 3: Co-expression Network Analysis (WGCNA-style)

Builds a soft-thresholded co-expression network, detects modules with a
dynamic tree cut, summarizes them by eigengenes and correlates the
eigengenes with clinical traits.

Input:
- expression_aligned.csv: gene x sample matrix from agent 0
- metadata_aligned.csv: sample traits
- config.json: Analysis parameters (soft_power, min_module_size, ...)

Output:
- network_removed_entities.csv: Genes/samples excluded before correlation
- soft_threshold.csv: Scale-free fit per candidate power
- module_assignment.csv: gene_id -> module color
- module_eigengenes.csv: Module eigengenes per sample
- module_trait_cor.csv / module_trait_pvalue.csv: Module-trait matrices
- module_ranking.csv: Modules by strongest trait correlation
- module_membership.csv: kME and connectivity per gene
- hub_genes.csv: Top intramodular hubs per module
- meta_agent3_network.json: Execution metadata
"""

import numpy as np
import pandas as pd
from pathlib import Path
from typing import Any, Dict, Optional

from ..utils.base_agent import BaseAgent
from ..stats import wgcna
from ..stats.errors import NumericalDegeneracyError, SoftThresholdSelectionError
from ..stats.models import AlignedData, QualityReport
from ..stats.schemas import (
    HUB_GENE_COLUMNS,
    MODULE_ASSIGNMENT_COLUMNS,
    MODULE_MEMBERSHIP_COLUMNS,
    MODULE_RANKING_COLUMNS,
    SOFT_THRESHOLD_COLUMNS,
    conform,
    missing_columns,
)
from .. import config as settings


class NetworkAgent(BaseAgent):
    """Agent for weighted co-expression module detection and trait correlation."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            # Quality filter
            "max_missing_fraction": 0.5,
            "min_n_samples": 4,
            "top_variable_genes": None,  # restrict network to most variable genes
            # Soft threshold
            "soft_power": None,  # operator override; otherwise estimated
            "powers": wgcna.DEFAULT_POWERS,
            "target_r2": 0.9,
            "network_type": "unsigned",
            # Module detection
            "linkage_method": "average",
            "min_module_size": 30,
            "deep_split": 2,
            "cut_height": None,
            "pam_stage": True,
            "merge_cut_height": 0.25,
            "max_block_size": 5000,
            # Traits
            "traits": None,  # default: every metadata column
            "grade_order": None,
            "top_n_modules": 3,
            "max_module_size": None,
            "hub_top_n": 10,
            "n_jobs": settings.N_JOBS,
            "random_state": settings.RANDOM_STATE,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent3_network", input_dir, output_dir, merged_config)

        self.data: Optional[AlignedData] = None
        self.corr: Optional[np.ndarray] = None
        self.report = QualityReport()

    def validate_inputs(self) -> bool:
        """Validate aligned matrix and metadata."""
        self.data = self.load_aligned_data()

        if list(self.data.expression.columns) != list(self.data.metadata.index):
            self.logger.error("Expression columns and metadata rows are not aligned")
            return False

        if self.data.n_samples < self.config["min_n_samples"]:
            self.logger.error(
                f"Need at least {self.config['min_n_samples']} samples, got {self.data.n_samples}"
            )
            return False

        self.logger.info(f"Network input: {self.data.n_genes} genes, {self.data.n_samples} samples")
        return True

    def _filter(self) -> pd.DataFrame:
        """Quality filter, optional variance filter, undefined-correlation exclusion."""
        expr, report = wgcna.good_samples_genes(
            self.data.expression,
            max_missing_fraction=self.config["max_missing_fraction"],
            min_n_samples=self.config["min_n_samples"],
        )

        top_n = self.config["top_variable_genes"]
        if top_n and expr.shape[0] > top_n:
            variance = expr.var(axis=1, skipna=True)
            keep = variance.sort_values(ascending=False, kind="mergesort").index[:top_n]
            expr = expr.loc[[g for g in expr.index if g in set(keep)]]
            self.logger.info(f"Restricted network to the {top_n} most variable genes")

        self.corr = wgcna.correlation_matrix(expr.to_numpy(dtype=float), n_jobs=self.config["n_jobs"])
        self.corr, kept, dropped = wgcna.drop_undefined_correlations(self.corr, list(expr.index))
        report = report.merge(QualityReport(removed_genes={g: "undefined_correlation" for g in dropped}))
        if not kept:
            raise NumericalDegeneracyError("No gene has defined correlations")

        self.report = report
        return expr.loc[kept]

    def _select_power(self) -> int:
        sft = wgcna.pick_soft_threshold(
            self.corr,
            powers=self.config["powers"],
            network_type=self.config["network_type"],
            target_r2=self.config["target_r2"],
        )
        self.save_csv(conform(sft.fit_table, SOFT_THRESHOLD_COLUMNS), "soft_threshold.csv")

        if self.config["soft_power"] is not None:
            power = int(self.config["soft_power"])
            self.logger.info(f"Using configured soft power {power} (estimate: {sft.power_estimate})")
            return power

        if sft.power_estimate is None:
            raise SoftThresholdSelectionError(
                f"No power reached signed R^2 >= {sft.target_r2}; "
                "inspect soft_threshold.csv and set 'soft_power'",
                fit_table=sft.fit_table,
            )
        return sft.power_estimate

    def run(self) -> Dict[str, Any]:
        """Execute network analysis."""
        expr = self._filter()
        self.save_csv(self.report.to_frame(), "network_removed_entities.csv")
        self.logger.info(f"Network genes after filtering: {expr.shape[0]}")

        power = self._select_power()

        detection = wgcna.blockwise_modules(
            expr,
            soft_power=power,
            network_type=self.config["network_type"],
            linkage_method=self.config["linkage_method"],
            min_module_size=self.config["min_module_size"],
            deep_split=self.config["deep_split"],
            cut_height=self.config["cut_height"],
            pam_stage=self.config["pam_stage"],
            merge_cut_height=self.config["merge_cut_height"],
            max_block_size=self.config["max_block_size"],
            n_jobs=self.config["n_jobs"],
            random_state=self.config["random_state"],
            corr=self.corr,
        )
        self.save_csv(detection.to_frame(), "module_assignment.csv")

        eigengenes = detection.eigengenes.add_prefix("ME")
        eigengenes.index.name = "sample_id"
        self.save_csv(eigengenes, "module_eigengenes.csv", index=True)

        # Module-trait relationships
        metadata = self.data.metadata.loc[expr.columns]
        traits, excluded = wgcna.encode_traits(
            metadata,
            traits=self.config["traits"],
            grade_order=self.config["grade_order"],
        )
        trait_result = wgcna.module_trait_analysis(
            detection.eigengenes,
            traits,
            detection.module_sizes,
            top_n_modules=self.config["top_n_modules"],
            max_module_size=self.config["max_module_size"],
            excluded_traits=excluded,
        )
        cor = trait_result.correlations.copy()
        pval = trait_result.pvalues.copy()
        cor.index.name = pval.index.name = "module"
        self.save_csv(cor, "module_trait_cor.csv", index=True)
        self.save_csv(pval, "module_trait_pvalue.csv", index=True)
        self.save_csv(trait_result.ranking, "module_ranking.csv")

        # Membership, connectivity and hubs
        adjacency = wgcna.adjacency_from_correlation(self.corr, power, self.config["network_type"])
        membership = wgcna.module_membership(expr, detection.eigengenes, detection.labels)
        connectivity = wgcna.intramodular_connectivity(adjacency, detection.labels)
        membership = membership.merge(connectivity, left_on="gene_id", right_index=True, how="left")
        self.save_csv(membership, "module_membership.csv")

        hubs = wgcna.hub_genes(adjacency, detection.labels, membership, top_n=self.config["hub_top_n"])
        self.save_csv(hubs, "hub_genes.csv")

        selected = trait_result.selected_modules
        n_candidates = int(detection.labels.isin(selected).sum())

        self.logger.info("Network Analysis Complete:")
        self.logger.info(f"  Soft power: {power}")
        self.logger.info(f"  Modules: {len(detection.module_sizes)} (blocks: {detection.n_blocks})")
        self.logger.info(f"  Selected modules: {selected} ({n_candidates} genes)")

        return {
            "soft_power": power,
            "n_genes": int(expr.shape[0]),
            "n_removed_genes": len(self.report.removed_genes),
            "n_removed_samples": len(self.report.removed_samples),
            "n_blocks": detection.n_blocks,
            "module_sizes": {str(k): int(v) for k, v in detection.module_sizes.items()},
            "excluded_traits": excluded,
            "selected_modules": selected,
            "n_network_candidates": n_candidates,
        }

    def validate_outputs(self) -> bool:
        """Validate network outputs."""
        if not self.check_output_files([
            "network_removed_entities.csv",
            "soft_threshold.csv",
            "module_assignment.csv",
            "module_eigengenes.csv",
            "module_trait_cor.csv",
            "module_trait_pvalue.csv",
            "module_ranking.csv",
            "module_membership.csv",
            "hub_genes.csv",
        ]):
            return False

        schemas = {
            "module_assignment.csv": MODULE_ASSIGNMENT_COLUMNS,
            "module_ranking.csv": MODULE_RANKING_COLUMNS,
            "module_membership.csv": MODULE_MEMBERSHIP_COLUMNS,
            "hub_genes.csv": HUB_GENE_COLUMNS,
        }
        for filename, columns in schemas.items():
            df = pd.read_csv(self.output_dir / filename)
            if missing_columns(df, columns):
                self.logger.error(f"{filename} does not follow its schema")
                return False

        assignment = pd.read_csv(self.output_dir / "module_assignment.csv")
        if assignment["gene_id"].duplicated().any() or assignment["module"].isna().any():
            self.logger.error("Every retained gene must carry exactly one module label")
            return False

        return True
