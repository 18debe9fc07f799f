"""
Biomarker Pipeline - Test Configuration and Fixtures
"""
import sys
import tempfile
import pytest
import pandas as pd
import numpy as np
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))


@pytest.fixture(scope="session")
def project_root():
    """Return project root directory."""
    return Path(__file__).parent.parent


@pytest.fixture
def temp_dir():
    """Create a temporary directory for test outputs."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


BLOCK1 = [f"B1_{i}" for i in range(10)]
BLOCK2 = [f"B2_{i}" for i in range(10)]


@pytest.fixture
def two_block_expression():
    """20 samples x 50 genes with two orthogonal co-expressed blocks.

    - B1_*: sine profile, 10 genes
    - B2_*: cosine profile (orthogonal to B1 over a full period), 10 genes
    - N_*: independent noise, 29 genes
    - CONST: zero variance
    """
    rng = np.random.default_rng(7)
    n_samples = 20
    t = np.arange(n_samples)
    sine = np.sin(2 * np.pi * t / n_samples)
    cosine = np.cos(2 * np.pi * t / n_samples)

    rows = {}
    for i, gene in enumerate(BLOCK1):
        rows[gene] = 5 + (1 + 0.1 * i) * sine + rng.normal(0, 0.01, n_samples)
    for i, gene in enumerate(BLOCK2):
        rows[gene] = 5 + (1 + 0.1 * i) * cosine + rng.normal(0, 0.01, n_samples)
    for i in range(29):
        rows[f"N_{i}"] = rng.normal(5, 1, n_samples)
    rows["CONST"] = np.full(n_samples, 3.0)

    samples = [f"S{j:02d}" for j in range(n_samples)]
    df = pd.DataFrame(rows, index=samples).T
    df.index.name = "gene_id"
    return df


@pytest.fixture
def block_trait(two_block_expression):
    """Trait following the B1 block profile."""
    trait = two_block_expression.loc[BLOCK1].mean(axis=0)
    trait.name = "block_trait"
    return trait


@pytest.fixture
def sample_expression():
    """Log-scale matrix: 200 genes x 12 samples, first 10 genes up in tumor."""
    rng = np.random.default_rng(42)
    n_genes = 200
    samples = [f"TUMOR_{i}" for i in range(6)] + [f"NORMAL_{i}" for i in range(6)]

    values = rng.normal(8, 1, size=(n_genes, len(samples)))
    values[:10, :6] += 5

    df = pd.DataFrame(values, index=[f"GENE{i}" for i in range(n_genes)], columns=samples)
    df.index.name = "gene_id"
    return df


@pytest.fixture
def sample_metadata():
    """Metadata matching sample_expression."""
    samples = [f"TUMOR_{i}" for i in range(6)] + [f"NORMAL_{i}" for i in range(6)]
    return pd.DataFrame({
        "sample_id": samples,
        "disease": ["tumor"] * 6 + ["normal"] * 6,
        "age": [45, 52, 61, 38, 70, 55, 41, 49, 63, 58, 36, 67],
        "gender": ["M", "F"] * 6,
        "survival_months": [12.0, 8.5, 20.1, 15.0, 6.2, 30.4] + [np.nan] * 6,
        "grade": ["IV", "IV", "III", "IV", "III", "IV"] + ["II"] * 6,
    })


@pytest.fixture
def sample_config():
    """Small-cohort config for pipeline runs."""
    return {
        "padj_cutoff": 0.05,
        "log2fc_cutoff": 1.0,
        "soft_power": 6,
        "min_module_size": 10,
        "pca_top_k": 30,
        "n_estimators": 50,
    }
