"""
Agent 4: Candidate Gene Sets

Collects the candidate gene set of each upstream method and intersects
them.

Input:
- deg_significant.csv: significant DEGs (agent 1)
- pca_gene_ranking.csv: genes ranked by PCA loading (agent 2)
- module_assignment.csv / module_ranking.csv: modules and their selection (agent 3)

Output:
- candidate_sets.csv: set_name, gene_id
- candidate_intersections.csv: set_combination, n_sets, gene_id
- meta_agent4_candidates.json: Execution metadata
"""

import pandas as pd
from pathlib import Path
from typing import Any, Dict, List, Optional, Set

from ..utils.base_agent import BaseAgent
from ..stats.gene_sets import all_intersections, intersections_to_frame, sets_to_frame, union_sets
from ..stats.pca import top_k_genes
from ..stats.preprocessing import coerce_identifiers
from ..stats.schemas import CANDIDATE_SET_COLUMNS, INTERSECTION_COLUMNS, missing_columns


class CandidateAgent(BaseAgent):
    """Agent for building and intersecting candidate gene sets."""

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        default_config = {
            "pca_top_k": 100,
            "set_names": {"deg": "DEG", "pca": "PCA", "network": "WGCNA"},
        }

        merged_config = {**default_config, **(config or {})}
        super().__init__("agent4_candidates", input_dir, output_dir, merged_config)

        self.deg: Optional[pd.DataFrame] = None
        self.pca_ranking: Optional[pd.DataFrame] = None
        self.modules: Optional[pd.DataFrame] = None
        self.module_ranking: Optional[pd.DataFrame] = None

    def validate_inputs(self) -> bool:
        self.deg = self.load_csv("deg_significant.csv")
        self.pca_ranking = self.load_csv("pca_gene_ranking.csv")
        self.modules = self.load_csv("module_assignment.csv")
        self.module_ranking = self.load_csv("module_ranking.csv")

        for name, df, columns in [
            ("deg_significant.csv", self.deg, ["gene_id"]),
            ("pca_gene_ranking.csv", self.pca_ranking, ["gene_id", "rank"]),
            ("module_assignment.csv", self.modules, ["gene_id", "module"]),
            ("module_ranking.csv", self.module_ranking, ["module", "selected"]),
        ]:
            absent = missing_columns(df, columns)
            if absent:
                self.logger.error(f"{name} is missing columns: {absent}")
                return False
        return True

    def _network_set(self) -> Set[str]:
        selected = self.module_ranking.loc[
            self.module_ranking["selected"].astype(str).str.lower() == "true", "module"
        ].tolist()
        self.logger.info(f"Selected modules: {selected}")
        genes = self.modules.loc[self.modules["module"].isin(selected), "gene_id"]
        return set(coerce_identifiers(genes))

    def run(self) -> Dict[str, Any]:
        names = self.config["set_names"]
        named = {
            names["deg"]: set(coerce_identifiers(self.deg["gene_id"])),
            names["pca"]: set(coerce_identifiers(top_k_genes(self.pca_ranking, self.config["pca_top_k"]))),
            names["network"]: self._network_set(),
        }
        for name, genes in named.items():
            self.logger.info(f"  {name}: {len(genes)} genes")

        intersections = all_intersections(named)
        full_key = " & ".join(named)
        core: List[str] = sorted(intersections.get(full_key, set()))

        self.save_csv(sets_to_frame(named), "candidate_sets.csv")
        self.save_csv(intersections_to_frame(intersections), "candidate_intersections.csv")

        self.logger.info("Candidate Sets Complete:")
        for combo, genes in intersections.items():
            self.logger.info(f"  {combo}: {len(genes)} genes")

        return {
            "set_sizes": {k: len(v) for k, v in named.items()},
            "intersection_sizes": {k: len(v) for k, v in intersections.items()},
            "union_size": len(union_sets(*named.values())),
            "core_genes": core,
        }

    def validate_outputs(self) -> bool:
        if not self.check_output_files(["candidate_sets.csv", "candidate_intersections.csv"]):
            return False
        sets = pd.read_csv(self.output_dir / "candidate_sets.csv")
        inter = pd.read_csv(self.output_dir / "candidate_intersections.csv")
        if missing_columns(sets, CANDIDATE_SET_COLUMNS) or missing_columns(inter, INTERSECTION_COLUMNS):
            self.logger.error("Candidate tables do not follow their schema")
            return False
        return True
