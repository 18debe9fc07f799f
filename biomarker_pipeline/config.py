"""Environment-level settings for the biomarker pipeline."""
import os
from pathlib import Path
from dotenv import load_dotenv

load_dotenv()

# Paths
BASE_DIR = Path(__file__).parent.parent
DEFAULT_INPUT_DIR = Path(os.getenv("BIOMARKER_INPUT_DIR", BASE_DIR / "data" / "input"))
DEFAULT_OUTPUT_DIR = Path(os.getenv("BIOMARKER_OUTPUT_DIR", BASE_DIR / "results"))

# Worker count for the gene-gene correlation fan-out (1 = sequential)
N_JOBS = int(os.getenv("BIOMARKER_N_JOBS", "1"))

# Console log level; file logs always capture DEBUG
LOG_LEVEL = os.getenv("BIOMARKER_LOG_LEVEL", "INFO").upper()

# Seed shared by PCA, k-means block partitioning and random forests
RANDOM_STATE = int(os.getenv("BIOMARKER_RANDOM_STATE", "42"))

# Standard input file names
EXPRESSION_FILE = "expression_matrix.csv"
METADATA_FILE = "metadata.csv"
PROBE_ANNOTATION_FILE = "probe_annotation.csv"
GO_ANNOTATION_FILE = "go_annotation.csv"
EXTERNAL_IMPORTANCE_FILE = "external_importance.csv"
CONFIG_FILE = "config.json"

# Disease labels retained after alignment
NORMAL_LABEL = "normal"
TUMOR_LABEL = "tumor"
