"""
Shared stage wrapper for the biomarker pipeline

Every analysis stage (preprocessing, DEG, PCA, co-expression network,
candidate sets, GO enrichment, survival) is an agent that:
- reads its tables from the run's accumulated directory
- writes its tables and a log_<agent>.txt into its own directory
- leaves a meta_<agent>.json behind whether it succeeds or fails
"""

import json
import logging
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Sequence
import pandas as pd

from .. import __version__
from .. import config as settings
from ..stats.models import AlignedData
from ..stats.preprocessing import coerce_identifiers


class BaseAgent(ABC):
    """One pipeline stage with its own output directory and log."""

    def __init__(
        self,
        agent_name: str,
        input_dir: Path,
        output_dir: Path,
        config: Optional[Dict[str, Any]] = None
    ):
        self.agent_name = agent_name
        self.input_dir = Path(input_dir)
        self.output_dir = Path(output_dir)
        self.config = config or {}

        self.output_dir.mkdir(parents=True, exist_ok=True)
        self.logger = self._setup_logging()

        self.start_time: Optional[datetime] = None
        self.end_time: Optional[datetime] = None
        self.success: bool = False
        self.errors: list = []

    def _setup_logging(self) -> logging.Logger:
        """Stage logger: full DEBUG trace to file, BIOMARKER_LOG_LEVEL to console."""
        logger = logging.getLogger(self.agent_name)
        logger.setLevel(logging.DEBUG)

        # Re-running a stage in the same process must not duplicate handlers
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()

        log_file = self.output_dir / f"log_{self.agent_name}.txt"
        fh = logging.FileHandler(log_file, mode='w', encoding='utf-8')
        fh.setLevel(logging.DEBUG)

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

    def load_csv(
        self,
        filename: str,
        required: bool = True,
        index_col: Optional[int] = None
    ) -> Optional[pd.DataFrame]:
        """Read a table produced by an upstream stage (or supplied as pipeline input).

        Missing optional tables (probe annotation, external importance)
        return None with a warning.
        """
        filepath = self.input_dir / filename

        if not filepath.exists():
            if required:
                raise FileNotFoundError(f"Required input file not found: {filepath}")
            self.logger.warning(f"Optional table not found: {filepath}")
            return None

        self.logger.info(f"Loading {filename}...")
        df = pd.read_csv(filepath, index_col=index_col)
        self.logger.info(f"  -> {len(df)} rows, {len(df.columns)} columns")
        return df

    def save_csv(self, df: pd.DataFrame, filename: str, index: bool = False) -> Path:
        """Write a result table into this stage's directory."""
        filepath = self.output_dir / filename
        df.to_csv(filepath, index=index)
        self.logger.info(f"Saved {filename}: {len(df)} rows")
        return filepath

    def load_aligned_data(self) -> AlignedData:
        """Aligned genes x samples matrix and sample metadata from preprocessing."""
        expression = self.load_csv("expression_aligned.csv", index_col=0)
        metadata = self.load_csv("metadata_aligned.csv", index_col=0)

        # Ids that look numeric come back from CSV as numbers
        expression.columns = coerce_identifiers(expression.columns)
        expression.index = pd.Index(coerce_identifiers(expression.index), name="gene_id")
        metadata.index = pd.Index(coerce_identifiers(metadata.index), name="sample_id")
        return AlignedData(expression=expression, metadata=metadata)

    def save_json(self, data: Dict, filename: str) -> Path:
        filepath = self.output_dir / filename
        with open(filepath, 'w', encoding='utf-8') as f:
            json.dump(data, f, indent=2, ensure_ascii=False, default=str)
        self.logger.info(f"Saved {filename}")
        return filepath

    def check_output_files(self, filenames: Sequence[str]) -> bool:
        """True when every listed result table exists in the stage directory."""
        for filename in filenames:
            if not (self.output_dir / filename).exists():
                self.logger.error(f"Missing output file: {filename}")
                return False
        return True

    def generate_metadata(self, **kwargs) -> Dict[str, Any]:
        """Stage record written to meta_<agent>.json; stage results are merged in on success."""
        return {
            "agent_name": self.agent_name,
            "pipeline_version": __version__,
            "timestamp": datetime.now().isoformat(),
            "execution_time_seconds": (
                (self.end_time - self.start_time).total_seconds()
                if self.end_time and self.start_time else None
            ),
            "success": self.success,
            "errors": self.errors,
            "config_used": self.config,
            **kwargs
        }

    @abstractmethod
    def validate_inputs(self) -> bool:
        """Load upstream tables and check their columns."""
        pass

    @abstractmethod
    def run(self) -> Dict[str, Any]:
        """Run the stage's analysis and return the summary recorded in metadata."""
        pass

    @abstractmethod
    def validate_outputs(self) -> bool:
        """Check the stage's result tables were written."""
        pass

    def execute(self) -> Dict[str, Any]:
        """Validate, run and record the stage; errors are logged and re-raised."""
        self.start_time = datetime.now()
        self.logger.info(f"{'='*60}")
        self.logger.info(f"Starting {self.agent_name}")
        self.logger.info(f"{'='*60}")

        results: Dict[str, Any] = {}
        try:
            self.logger.info("Validating inputs...")
            if not self.validate_inputs():
                raise ValueError("Input validation failed")
            self.logger.info("Input validation passed")

            self.logger.info("Running analysis...")
            results = self.run()

            self.logger.info("Validating outputs...")
            if not self.validate_outputs():
                raise ValueError("Output validation failed")
            self.logger.info("Output validation passed")

            self.success = True
            self.logger.info(f"{self.agent_name} completed successfully!")

        except Exception as e:
            self.success = False
            self.errors.append(f"{type(e).__name__}: {e}")
            self.logger.error(f"Error in {self.agent_name}: {e}")
            raise

        finally:
            self.end_time = datetime.now()
            metadata = self.generate_metadata(**results if self.success else {})
            self.save_json(metadata, f"meta_{self.agent_name}.json")

        return results


class AgentResult:
    """Outcome of one stage as tracked by the orchestrator."""

    def __init__(
        self,
        agent_name: str,
        success: bool,
        output_dir: Path,
        metadata: Dict[str, Any],
        errors: Optional[list] = None
    ):
        self.agent_name = agent_name
        self.success = success
        self.output_dir = output_dir
        self.metadata = metadata
        self.errors = errors or []

    def __repr__(self):
        status = "SUCCESS" if self.success else "FAILED"
        return f"AgentResult({self.agent_name}: {status})"
