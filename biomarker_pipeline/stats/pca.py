"""PCA over samples and gene ranking by loading magnitude."""

import logging
from typing import List, Optional

import numpy as np
import pandas as pd
from sklearn.decomposition import PCA
from sklearn.preprocessing import StandardScaler

from .models import PCAResult

logger = logging.getLogger(__name__)


def run_pca(
    expression: pd.DataFrame,
    n_components: int = 5,
    scale: bool = True,
    random_state: Optional[int] = None,
) -> PCAResult:
    """Principal components of the samples (columns) of a genes x samples matrix.

    Genes are centered, and scaled to unit variance when ``scale`` is set.
    Loadings are indexed by gene, scores by sample.
    """
    n_genes, n_samples = expression.shape
    n_components = max(1, min(n_components, n_samples, n_genes))

    X = expression.T.to_numpy(dtype=float)
    X = StandardScaler(with_mean=True, with_std=scale).fit_transform(X)

    pca = PCA(n_components=n_components, random_state=random_state)
    scores = pca.fit_transform(X)

    pc_names = [f"PC{i + 1}" for i in range(n_components)]
    logger.info(
        "Explained variance: " +
        ", ".join(f"{n}={v:.1%}" for n, v in zip(pc_names, pca.explained_variance_ratio_))
    )

    return PCAResult(
        scores=pd.DataFrame(scores, index=expression.columns, columns=pc_names),
        loadings=pd.DataFrame(pca.components_.T, index=expression.index, columns=pc_names),
        explained_variance_ratio=pd.Series(pca.explained_variance_ratio_, index=pc_names),
    )


def rank_genes_by_loading(loadings: pd.DataFrame, component: str = "PC1") -> pd.DataFrame:
    """Rank genes by |loading| descending; equal magnitudes keep matrix row order."""
    values = loadings[component].to_numpy(dtype=float)
    order = np.argsort(-np.abs(values), kind="mergesort")
    ranking = pd.DataFrame({
        "gene_id": loadings.index.astype(str)[order],
        "loading": values[order],
        "abs_loading": np.abs(values[order]),
    })
    ranking["rank"] = np.arange(1, len(ranking) + 1)
    return ranking


def top_k_genes(ranking: pd.DataFrame, k: int) -> List[str]:
    return ranking.sort_values("rank").head(k)["gene_id"].tolist()
