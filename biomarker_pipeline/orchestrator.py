"""
Biomarker Pipeline Orchestrator

Coordinates the execution of the glioma biomarker discovery pipeline.

Usage:
    from biomarker_pipeline.orchestrator import BiomarkerPipeline

    pipeline = BiomarkerPipeline(
        input_dir="./data",
        output_dir="./results",
        config={"soft_power": 6}
    )

    # Run full pipeline
    results = pipeline.run()

    # Or run specific agents
    pipeline.run_agent("agent1_deg")
    pipeline.run_from("agent3_network")  # Resume from agent 3

Pipeline:
=========
    Preprocess -> DEG -> PCA -> Network -> Candidates -> Enrichment -> Survival

Every agent writes to its own directory under the run directory; outputs
are copied to ``accumulated/`` where later agents read them.
"""

import json
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional
import logging

import numpy as np
import pandas as pd

from .agents import (
    PreprocessAgent,
    DEGAgent,
    PCAAgent,
    NetworkAgent,
    CandidateAgent,
    EnrichmentAgent,
    SurvivalAgent,
)
from .utils.base_agent import AgentResult
from . import config as settings


class BiomarkerPipeline:
    """Orchestrator for the biomarker discovery pipeline."""

    AGENT_ORDER = [
        "agent0_preprocess",
        "agent1_deg",
        "agent2_pca",
        "agent3_network",
        "agent4_candidates",
        "agent5_enrichment",
        "agent6_survival",
    ]

    AGENT_CLASSES = {
        "agent0_preprocess": PreprocessAgent,
        "agent1_deg": DEGAgent,
        "agent2_pca": PCAAgent,
        "agent3_network": NetworkAgent,
        "agent4_candidates": CandidateAgent,
        "agent5_enrichment": EnrichmentAgent,
        "agent6_survival": SurvivalAgent,
    }

    # Define which outputs each agent needs from previous agents
    AGENT_DEPENDENCIES = {
        "agent0_preprocess": [],
        "agent1_deg": ["expression_aligned.csv", "metadata_aligned.csv"],
        "agent2_pca": ["expression_aligned.csv", "metadata_aligned.csv"],
        "agent3_network": ["expression_aligned.csv", "metadata_aligned.csv"],
        "agent4_candidates": [
            "deg_significant.csv", "pca_gene_ranking.csv",
            "module_assignment.csv", "module_ranking.csv",
        ],
        "agent5_enrichment": [
            settings.GO_ANNOTATION_FILE, "candidate_sets.csv", "candidate_intersections.csv",
        ],
        "agent6_survival": [
            "expression_aligned.csv", "metadata_aligned.csv",
            "candidate_sets.csv", "candidate_intersections.csv",
        ],
    }

    def __init__(
        self,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None,
        run_dir: Optional[Path] = None
    ):
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)

        # Create output directory with timestamp, or reuse an existing run
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        if run_dir is not None:
            self.run_dir = Path(run_dir)
            timestamp = self.run_dir.name.replace("run_", "")
        else:
            self.run_dir = self.output_dir / f"run_{timestamp}"
        self.run_dir.mkdir(parents=True, exist_ok=True)

        self.logger = self._setup_logging()

        # config.json in the input directory sits under explicit config
        file_config = self._load_input_config()
        self.config = {**file_config, **(config or {})}

        # Track execution state
        self.agent_results: Dict[str, AgentResult] = {}
        self.execution_state = {
            "run_id": timestamp,
            "start_time": None,
            "end_time": None,
            "completed_agents": [],
            "failed_agents": [],
            "agent_results": {}
        }

    def _setup_logging(self) -> logging.Logger:
        """Setup pipeline-level logging."""
        logger = logging.getLogger("biomarker_pipeline")
        logger.setLevel(logging.DEBUG)

        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        # File handler
        log_file = self.run_dir / "pipeline.log"
        fh = logging.FileHandler(log_file, mode='a', encoding='utf-8')
        fh.setLevel(logging.DEBUG)

        # Console handler
        ch = logging.StreamHandler()
        ch.setLevel(getattr(logging, settings.LOG_LEVEL, logging.INFO))

        formatter = logging.Formatter(
            '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
        )
        fh.setFormatter(formatter)
        ch.setFormatter(formatter)

        logger.addHandler(fh)
        logger.addHandler(ch)

        return logger

    def _load_input_config(self) -> Dict[str, Any]:
        config_file = self.input_dir / settings.CONFIG_FILE
        if not config_file.exists():
            return {}
        with open(config_file, 'r', encoding='utf-8') as f:
            file_config = json.load(f)
        self.logger.info(f"Loaded {settings.CONFIG_FILE}: {sorted(file_config)}")
        return file_config

    def _get_agent_input_dir(self, agent_name: str) -> Path:
        """Determine input directory for an agent."""
        # First agent uses input
        if agent_name == "agent0_preprocess":
            return self.input_dir

        # For subsequent agents, use accumulated outputs
        return self.run_dir / "accumulated"

    def _accumulate_outputs(self, agent_name: str) -> None:
        """Copy agent outputs to accumulated directory for next agents."""
        accumulated_dir = self.run_dir / "accumulated"
        accumulated_dir.mkdir(exist_ok=True)

        agent_output_dir = self.run_dir / agent_name

        if not agent_output_dir.exists():
            return

        # A re-run replaces what the previous run of this agent left
        for pattern in ["*.csv", "*.json"]:
            for f in agent_output_dir.glob(pattern):
                shutil.copy2(f, accumulated_dir / f.name)

    def _copy_initial_inputs(self) -> None:
        """Copy initial input files to accumulated directory."""
        accumulated_dir = self.run_dir / "accumulated"
        accumulated_dir.mkdir(exist_ok=True)

        for pattern in ["*.csv", "*.json"]:
            for f in self.input_dir.glob(pattern):
                shutil.copy2(f, accumulated_dir / f.name)

    def _check_dependencies(self, agent_name: str) -> None:
        input_dir = self._get_agent_input_dir(agent_name)
        missing = [
            f for f in self.AGENT_DEPENDENCIES[agent_name]
            if not (input_dir / f).exists()
        ]
        if missing:
            raise FileNotFoundError(
                f"{agent_name} needs outputs of earlier agents that are missing in {input_dir}: {missing}"
            )

    def run_agent(self, agent_name: str, config_override: Optional[Dict] = None) -> Dict[str, Any]:
        """Run a single agent."""
        if agent_name not in self.AGENT_CLASSES:
            raise ValueError(f"Unknown agent: {agent_name}")

        self.logger.info(f"{'='*60}")
        self.logger.info(f"Running {agent_name}")
        self.logger.info(f"{'='*60}")

        if not (self.run_dir / "accumulated").exists():
            self._copy_initial_inputs()

        # Merge configs
        agent_config = {**self.config, **(config_override or {})}

        # Get directories
        input_dir = self._get_agent_input_dir(agent_name)
        output_dir = self.run_dir / agent_name

        try:
            self._check_dependencies(agent_name)

            AgentClass = self.AGENT_CLASSES[agent_name]
            agent = AgentClass(
                input_dir=input_dir,
                output_dir=output_dir,
                config=agent_config
            )
            results = agent.execute()
            self.execution_state["completed_agents"].append(agent_name)
            self.execution_state["agent_results"][agent_name] = results
            self.agent_results[agent_name] = AgentResult(
                agent_name, True, output_dir, agent.generate_metadata(**results)
            )

            # Accumulate outputs for next agents
            self._accumulate_outputs(agent_name)

            return results

        except Exception as e:
            self.logger.error(f"Agent {agent_name} failed: {e}")
            self.execution_state["failed_agents"].append(agent_name)
            self.agent_results[agent_name] = AgentResult(
                agent_name, False, output_dir, {}, errors=[str(e)]
            )
            raise

    def _run_agents(self, agents_to_run) -> None:
        self.logger.info(f"Agents to run: {agents_to_run}")
        for agent_name in agents_to_run:
            try:
                self.run_agent(agent_name)
            except Exception as e:
                self.logger.error(f"Pipeline stopped at {agent_name}: {e}")
                self.execution_state["error"] = f"{type(e).__name__}: {e}"
                break

    def run(self, stop_after: Optional[str] = None) -> Dict[str, Any]:
        """Run the full pipeline or until a specific agent."""
        self.execution_state["start_time"] = datetime.now().isoformat()

        self.logger.info("Starting Biomarker Pipeline")
        self.logger.info(f"Run directory: {self.run_dir}")

        # Copy initial inputs
        self._copy_initial_inputs()

        # Determine which agents to run
        if stop_after:
            if stop_after not in self.AGENT_ORDER:
                raise ValueError(f"Unknown agent: {stop_after}")
            stop_idx = self.AGENT_ORDER.index(stop_after) + 1
            agents_to_run = self.AGENT_ORDER[:stop_idx]
        else:
            agents_to_run = self.AGENT_ORDER

        self._run_agents(agents_to_run)

        # Finalize
        self.execution_state["end_time"] = datetime.now().isoformat()
        self._save_execution_state()

        self.logger.info(f"{'='*60}")
        self.logger.info("Pipeline Complete")
        self.logger.info(f"Completed: {len(self.execution_state['completed_agents'])} agents")
        self.logger.info(f"Failed: {len(self.execution_state['failed_agents'])} agents")
        self.logger.info(f"Results: {self.run_dir}")
        self.logger.info(f"{'='*60}")

        return self.execution_state

    def run_from(self, agent_name: str, stop_after: Optional[str] = None) -> Dict[str, Any]:
        """Resume pipeline from a specific agent."""
        if agent_name not in self.AGENT_ORDER:
            raise ValueError(f"Unknown agent: {agent_name}")

        start_idx = self.AGENT_ORDER.index(agent_name)
        stop_idx = self.AGENT_ORDER.index(stop_after) + 1 if stop_after else len(self.AGENT_ORDER)
        agents_to_run = self.AGENT_ORDER[start_idx:stop_idx]

        self.logger.info(f"Resuming from {agent_name}")
        self.execution_state["start_time"] = datetime.now().isoformat()

        self._run_agents(agents_to_run)

        self.execution_state["end_time"] = datetime.now().isoformat()
        self._save_execution_state()
        return self.execution_state

    def _save_execution_state(self) -> None:
        """Save execution state to JSON."""
        state_file = self.run_dir / "pipeline_summary.json"
        with open(state_file, 'w', encoding='utf-8') as f:
            json.dump(self.execution_state, f, indent=2, default=str)


# Glioma-relevant symbols used to name the synthetic genes
KNOWN_GENES = [
    'EGFR', 'PTEN', 'IDH1', 'TP53', 'CDKN2A', 'PDGFRA', 'MGMT', 'ATRX',
    'TERT', 'NF1', 'PIK3CA', 'CDK4', 'MDM2', 'OLIG2', 'SOX2', 'GFAP',
    'VEGFA', 'CHI3L1', 'POSTN', 'TOP2A',
]

GO_TERMS = {
    "module_1": (
        "GO:0007049 // cell cycle // inferred from electronic annotation /// "
        "GO:0006260 // DNA replication // traceable author statement",
        "GO:0005634 // nucleus // inferred from direct assay",
        "GO:0005524 // ATP binding // inferred from electronic annotation",
    ),
    "module_2": (
        "GO:0006955 // immune response // inferred from electronic annotation",
        "GO:0009986 // cell surface // inferred from direct assay",
        "GO:0004888 // transmembrane signaling receptor activity // IEA",
    ),
    "other": (
        "GO:0008150 // biological_process // no biological data available",
        "GO:0005737 // cytoplasm // inferred from electronic annotation",
        "GO:0005515 // protein binding // inferred from physical interaction",
    ),
}


def create_sample_data(output_dir: Path, n_genes: int = 300, n_samples: int = 40) -> None:
    """Create a synthetic glioma cohort for testing the pipeline.

    Two latent factors drive two co-expressed gene blocks; the first is
    shifted in tumors and shortens survival.
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    rng = np.random.default_rng(42)

    genes = KNOWN_GENES + [f'GENE{i}' for i in range(n_genes - len(KNOWN_GENES))]
    genes = genes[:n_genes]
    probes = [f'{1000 + i}_at' for i in range(n_genes)]

    n_tumor = n_samples // 2
    n_normal = n_samples - n_tumor
    samples = [f'GSM{100000 + i}' for i in range(n_samples)]
    is_tumor = np.array([True] * n_tumor + [False] * n_normal)

    block = max(n_genes // 8, 10)
    f1 = rng.normal(0, 1, n_samples) + np.where(is_tumor, 2.0, 0.0)
    f2 = rng.normal(0, 1, n_samples)

    expr = rng.normal(8, 0.5, size=(n_genes, n_samples))
    expr[:block] += 1.5 * f1 + rng.normal(0, 0.3, size=(block, n_samples))
    expr[block:2 * block] += 1.5 * f2 + rng.normal(0, 0.3, size=(block, n_samples))

    expr_df = pd.DataFrame(expr, columns=samples)
    expr_df.insert(0, 'probe_id', probes)

    # Probe annotation with the usual microarray quirks
    symbols = list(genes)
    symbols[-1] = '---'                        # no symbol
    symbols[-2] = symbols[-3]                  # duplicated symbol
    symbols[-4] = f'{symbols[-4]} /// {symbols[-5]}'  # multi-symbol probe
    annotation_df = pd.DataFrame({'probe_id': probes, 'gene_symbol': symbols})

    # Clinical metadata; survival shortens with the tumor factor
    survival = np.where(
        is_tumor,
        np.round(np.exp(3.0 - 0.4 * (f1 - 2.0) + rng.normal(0, 0.3, n_samples)), 1),
        np.nan,
    )
    grade = np.where(is_tumor, np.where(f1 > 2.0, 'IV', 'III'), 'II')
    meta_df = pd.DataFrame({
        'sample_id': samples,
        'disease': np.where(is_tumor, 'glioblastoma', 'control'),
        'age': rng.integers(25, 80, n_samples),
        'gender': rng.choice(['F', 'M'], n_samples),
        'survival_months': survival,
        'grade': grade,
    })

    go_rows = []
    for i, gene in enumerate(genes):
        key = "module_1" if i < block else "module_2" if i < 2 * block else "other"
        bp, cc, mf = GO_TERMS[key]
        go_rows.append({
            'gene_id': gene,
            'biological_process': bp,
            'cellular_component': cc,
            'molecular_function': mf,
        })
    go_df = pd.DataFrame(go_rows)

    expr_df.to_csv(output_dir / settings.EXPRESSION_FILE, index=False)
    annotation_df.to_csv(output_dir / settings.PROBE_ANNOTATION_FILE, index=False)
    meta_df.to_csv(output_dir / settings.METADATA_FILE, index=False)
    go_df.to_csv(output_dir / settings.GO_ANNOTATION_FILE, index=False)

    config = {
        "label_map": {"glioblastoma": "tumor", "control": "normal"},
        "padj_cutoff": 0.05,
        "log2fc_cutoff": 1.0,
        "soft_power": 6,
        "min_module_size": 10,
        "pca_top_k": 50,
        "n_estimators": 100,
    }
    with open(output_dir / settings.CONFIG_FILE, 'w') as f:
        json.dump(config, f, indent=2)

    print(f"Sample data created in {output_dir}")
    print(f"  - {settings.EXPRESSION_FILE}: {n_genes} probes x {n_samples} samples")
    print(f"  - {settings.METADATA_FILE}: {n_samples} samples")
    print(f"  - {settings.PROBE_ANNOTATION_FILE}, {settings.GO_ANNOTATION_FILE}")
    print(f"  - {settings.CONFIG_FILE}: analysis configuration")


def main(argv=None) -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Glioma Biomarker Discovery Pipeline")
    parser.add_argument("--input", "-i", default=str(settings.DEFAULT_INPUT_DIR), help="Input directory")
    parser.add_argument("--output", "-o", default=str(settings.DEFAULT_OUTPUT_DIR), help="Output directory")
    parser.add_argument("--create-sample", action="store_true", help="Create sample data")
    parser.add_argument("--agent", choices=BiomarkerPipeline.AGENT_ORDER, help="Run specific agent only")
    parser.add_argument("--from-agent", choices=BiomarkerPipeline.AGENT_ORDER, help="Resume from specific agent")
    parser.add_argument("--stop-after", choices=BiomarkerPipeline.AGENT_ORDER, help="Stop after specific agent")
    parser.add_argument("--run-dir", help="Existing run directory to reuse (with --agent/--from-agent)")
    parser.add_argument("--soft-power", type=int, help="Soft-thresholding power for the network")

    args = parser.parse_args(argv)

    if args.create_sample:
        create_sample_data(Path(args.input))
        return

    config = {}
    if args.soft_power is not None:
        config["soft_power"] = args.soft_power

    pipeline = BiomarkerPipeline(
        input_dir=Path(args.input),
        output_dir=Path(args.output),
        config=config,
        run_dir=Path(args.run_dir) if args.run_dir else None
    )

    if args.agent:
        pipeline.run_agent(args.agent)
    elif args.from_agent:
        pipeline.run_from(args.from_agent, stop_after=args.stop_after)
    else:
        pipeline.run(stop_after=args.stop_after)


# CLI interface
if __name__ == "__main__":
    main()
