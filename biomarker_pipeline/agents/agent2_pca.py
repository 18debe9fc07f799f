"""
Agent 2: PCA Gene Ranking

Principal component analysis of the samples; genes are ranked by the
magnitude of their loading on one component.

Input:
- expression_aligned.csv: gene x sample matrix from agent 0

Output:
- pca_scores.csv: Sample coordinates on each component
- pca_loadings.csv: Gene loadings on each component
- pca_gene_ranking.csv: Genes ranked by |loading|
- pca_variance.csv: Explained variance per component
- meta_agent2_pca.json: Execution metadata
"""

import pandas as pd
from pathlib import Path
from typing import Any, Dict, Optional

from ..utils.base_agent import BaseAgent
from ..stats.models import AlignedData
from ..stats.pca import rank_genes_by_loading, run_pca, top_k_genes
from ..stats.schemas import PCA_RANKING_COLUMNS, missing_columns
from .. import config as settings


class PCAAgent(BaseAgent):
    """Agent for PCA-based gene ranking."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "n_components": 5,
            "scale": True,
            "rank_component": "PC1",
            "pca_top_k": 100,
            "random_state": settings.RANDOM_STATE,
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent2_pca", input_dir, output_dir, merged_config)

        self.data: Optional[AlignedData] = None

    def validate_inputs(self) -> bool:
        self.data = self.load_aligned_data()
        if self.data.n_samples < 2:
            self.logger.error("PCA needs at least 2 samples")
            return False
        return True

    def run(self) -> Dict[str, Any]:
        result = run_pca(
            self.data.expression,
            n_components=self.config["n_components"],
            scale=self.config["scale"],
            random_state=self.config["random_state"],
        )

        component = self.config["rank_component"]
        if component not in result.loadings.columns:
            raise ValueError(f"Component {component} not computed (have {list(result.loadings.columns)})")
        ranking = rank_genes_by_loading(result.loadings, component)

        scores = result.scores.copy()
        scores.index.name = "sample_id"
        loadings = result.loadings.copy()
        loadings.index.name = "gene_id"
        variance = pd.DataFrame({
            "component": result.explained_variance_ratio.index,
            "explained_variance_ratio": result.explained_variance_ratio.values,
            "cumulative": result.explained_variance_ratio.cumsum().values,
        })

        self.save_csv(scores, "pca_scores.csv", index=True)
        self.save_csv(loadings, "pca_loadings.csv", index=True)
        self.save_csv(ranking, "pca_gene_ranking.csv")
        self.save_csv(variance, "pca_variance.csv")

        top = top_k_genes(ranking, self.config["pca_top_k"])
        self.logger.info(f"Top {component} genes: {top[:10]}")

        return {
            "n_components": int(result.scores.shape[1]),
            "rank_component": component,
            "explained_variance": {k: float(v) for k, v in result.explained_variance_ratio.items()},
            "pca_top_k": len(top),
        }

    def validate_outputs(self) -> bool:
        if not self.check_output_files([
            "pca_scores.csv", "pca_loadings.csv", "pca_gene_ranking.csv", "pca_variance.csv",
        ]):
            return False

        ranking = pd.read_csv(self.output_dir / "pca_gene_ranking.csv")
        if missing_columns(ranking, PCA_RANKING_COLUMNS):
            self.logger.error("pca_gene_ranking.csv does not follow its schema")
            return False
        if not ranking["abs_loading"].is_monotonic_decreasing:
            self.logger.error("Gene ranking is not ordered by |loading|")
            return False
        return True
