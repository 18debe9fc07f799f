"""
Weighted gene co-expression network analysis.

Steps, each a pure function over genes x samples matrices:
    A. good_samples_genes         quality filter before any correlation
    -  correlation_matrix         Pearson, pairwise-complete when values are missing
    B. pick_soft_threshold        scale-free topology fit per candidate power
    C. adjacency / TOM            soft-thresholded adjacency, topological overlap
    D. blockwise_modules          hierarchical clustering + dynamic tree cut,
                                  eigengene-based merging, color labels
    E. eigengenes & traits        module eigengenes, module-trait correlation,
                                  module membership, hub genes
"""

import logging
import math
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import networkx as nx
import numpy as np
import pandas as pd
from joblib import Parallel, delayed
from scipy import stats
from scipy.cluster.hierarchy import fcluster, linkage
from scipy.spatial.distance import squareform
from sklearn.cluster import KMeans

from .errors import NumericalDegeneracyError
from .models import (
    UNASSIGNED_MODULE, ModuleDetection, ModuleTraitResult,
    QualityReport, SoftThresholdResult,
)
from .tree_cut import dynamic_tree_cut
from .. import config as settings

logger = logging.getLogger(__name__)

DEFAULT_POWERS = list(range(1, 11)) + list(range(12, 21, 2))
NETWORK_TYPES = ("unsigned", "signed", "signed hybrid")
CORRELATION_BLOCK_SIZE = 1000

# WGCNA standardColors(), in assignment order
STANDARD_COLORS = [
    "turquoise", "blue", "brown", "yellow", "green", "red", "black", "pink",
    "magenta", "purple", "greenyellow", "tan", "salmon", "cyan",
    "midnightblue", "lightcyan", "grey60", "lightgreen", "lightyellow",
    "royalblue", "darkred", "darkgreen", "darkturquoise", "darkgrey",
    "orange", "darkorange", "white", "skyblue", "saddlebrown", "steelblue",
    "paleturquoise", "violet", "darkolivegreen", "darkmagenta",
]

ROMAN_GRADES = {"I": 1, "II": 2, "III": 3, "IV": 4}


# =============================================================================
# Step A: quality filter
# =============================================================================

def good_samples_genes(
    expression: pd.DataFrame,
    max_missing_fraction: float = 0.5,
    min_n_samples: int = 4,
) -> Tuple[pd.DataFrame, QualityReport]:
    """Iteratively drop samples and genes unusable for correlation.

    Removes samples whose missing fraction exceeds ``max_missing_fraction``,
    genes whose missing fraction exceeds it, genes with fewer than
    ``min_n_samples`` observations and genes with zero variance. Repeats
    until nothing changes, since removing samples can make a gene constant.

    Raises:
        NumericalDegeneracyError: if no gene or no sample survives.
    """
    expr = expression.copy()
    removed_genes: Dict[str, str] = {}
    removed_samples: Dict[str, str] = {}

    while expr.shape[0] > 0 and expr.shape[1] > 0:
        changed = False

        sample_missing = expr.isna().mean(axis=0)
        bad_samples = sample_missing.index[sample_missing > max_missing_fraction]
        if len(bad_samples):
            for s in bad_samples:
                removed_samples[str(s)] = f"missing_fraction={sample_missing[s]:.2f}"
            expr = expr.drop(columns=bad_samples)
            changed = True

        gene_missing = expr.isna().mean(axis=1)
        n_obs = expr.notna().sum(axis=1)
        constant = (expr.max(axis=1) == expr.min(axis=1)) | expr.max(axis=1).isna()

        reasons = {}
        for g in gene_missing.index[gene_missing > max_missing_fraction]:
            reasons[g] = f"missing_fraction={gene_missing[g]:.2f}"
        for g in n_obs.index[n_obs < min_n_samples]:
            reasons.setdefault(g, f"n_observations={int(n_obs[g])}")
        for g in constant.index[constant]:
            reasons.setdefault(g, "zero_variance")

        if reasons:
            removed_genes.update({str(g): r for g, r in reasons.items()})
            expr = expr.drop(index=list(reasons))
            changed = True

        if not changed:
            break

    report = QualityReport(removed_genes=removed_genes, removed_samples=removed_samples)
    if removed_genes or removed_samples:
        logger.info(
            f"Quality filter removed {len(removed_genes)} genes and "
            f"{len(removed_samples)} samples"
        )
    if expr.shape[0] == 0 or expr.shape[1] == 0:
        raise NumericalDegeneracyError("No genes or samples left after quality filtering")
    return expr, report


# =============================================================================
# Correlation
# =============================================================================

def _standardize_rows(X: np.ndarray) -> np.ndarray:
    Z = X - X.mean(axis=1, keepdims=True)
    norms = np.sqrt((Z ** 2).sum(axis=1, keepdims=True))
    with np.errstate(divide="ignore", invalid="ignore"):
        return Z / norms


def cross_correlation(X: np.ndarray, Y: np.ndarray) -> np.ndarray:
    """Pearson correlation of every row of ``X`` with every row of ``Y``.

    Missing values are handled by using, for each pair of rows, only the
    columns observed in both.
    """
    X = np.asarray(X, dtype=float)
    Y = np.asarray(Y, dtype=float)
    mx, my = np.isfinite(X), np.isfinite(Y)

    if mx.all() and my.all():
        return _standardize_rows(X) @ _standardize_rows(Y).T

    # Centering first keeps the sum-of-squares differences well conditioned
    with np.errstate(invalid="ignore"):
        X = X - np.nanmean(np.where(mx, X, np.nan), axis=1, keepdims=True)
        Y = Y - np.nanmean(np.where(my, Y, np.nan), axis=1, keepdims=True)
    Mx, My = mx.astype(float), my.astype(float)
    X0, Y0 = np.where(mx, X, 0.0), np.where(my, Y, 0.0)

    n = Mx @ My.T
    sx = X0 @ My.T
    sy = Mx @ Y0.T
    sxx = (X0 ** 2) @ My.T
    syy = Mx @ (Y0 ** 2).T
    sxy = X0 @ Y0.T
    with np.errstate(divide="ignore", invalid="ignore"):
        cov = sxy - sx * sy / n
        vx = sxx - sx ** 2 / n
        vy = syy - sy ** 2 / n
        r = cov / np.sqrt(vx * vy)
    r[n < 3] = np.nan
    return r


def correlation_matrix(
    values: np.ndarray,
    n_jobs: int = 1,
    block_size: int = CORRELATION_BLOCK_SIZE,
) -> np.ndarray:
    """Gene x gene Pearson correlation.

    Row blocks are computed independently, optionally on ``n_jobs``
    workers, and stacked in order, so the result does not depend on the
    worker count.
    """
    X = np.asarray(values, dtype=float)
    n = X.shape[0]
    blocks = [slice(start, min(start + block_size, n)) for start in range(0, n, block_size)]

    if n_jobs == 1 or len(blocks) <= 1:
        parts = [cross_correlation(X[b], X) for b in blocks]
    else:
        parts = Parallel(n_jobs=n_jobs)(delayed(cross_correlation)(X[b], X) for b in blocks)

    C = np.vstack(parts) if parts else np.empty((0, 0))
    C = (C + C.T) / 2
    C = np.clip(C, -1.0, 1.0)
    diag = np.diag(C)
    np.fill_diagonal(C, np.where(np.isfinite(diag), 1.0, np.nan))
    return C


def drop_undefined_correlations(
    corr: np.ndarray,
    gene_ids: Sequence[str],
) -> Tuple[np.ndarray, List[str], List[str]]:
    """Greedily exclude genes with non-finite correlations, worst first.

    Returns:
        (reduced correlation matrix, kept gene ids, dropped gene ids)
    """
    C = np.asarray(corr, dtype=float)
    bad = ~np.isfinite(C)
    keep = np.ones(C.shape[0], dtype=bool)
    dropped = []

    while True:
        counts = (bad & keep[None, :]).sum(axis=1)
        counts[~keep] = 0
        if counts.size == 0 or counts.max() == 0:
            break
        worst = int(np.argmax(counts))
        keep[worst] = False
        dropped.append(str(gene_ids[worst]))

    if dropped:
        logger.warning(f"Excluded {len(dropped)} genes with undefined correlations: {dropped[:10]}")
    kept = [str(g) for g, k in zip(gene_ids, keep) if k]
    return C[np.ix_(keep, keep)], kept, dropped


# =============================================================================
# Step B: soft threshold
# =============================================================================

def _linear_fit(design: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, float]:
    coef, *_ = np.linalg.lstsq(design, y, rcond=None)
    residual = y - design @ coef
    ss_tot = float(((y - y.mean()) ** 2).sum())
    r2 = 1 - float((residual ** 2).sum()) / ss_tot if ss_tot > 0 else float("nan")
    return coef, r2


def scale_free_fit_index(k: np.ndarray, n_breaks: int = 10) -> Dict[str, float]:
    """Scale-free topology fit of a connectivity vector.

    ``k`` is cut into ``n_breaks`` equal-width right-closed bins. Bins are
    represented by the mean ``k`` of their members (the bin midpoint when
    empty or zero) and regressed as ``log10(p(k) + 1e-9) ~ log10(k)``.
    The truncated fit adds a linear ``k`` term and reports adjusted R^2.
    """
    k = np.asarray(k, dtype=float)
    nan_fit = {"r_squared": np.nan, "slope": np.nan, "truncated_r_squared": np.nan}
    k_min, k_max = float(k.min()), float(k.max())
    if not np.isfinite(k_min) or k_max <= k_min:
        return nan_fit

    edges = np.linspace(k_min, k_max, n_breaks + 1)
    bins = np.searchsorted(edges[1:-1], k, side="left")
    counts = np.bincount(bins, minlength=n_breaks).astype(float)
    sums = np.bincount(bins, weights=k, minlength=n_breaks)
    mids = (edges[:-1] + edges[1:]) / 2

    with np.errstate(divide="ignore", invalid="ignore"):
        dk = np.where(counts > 0, sums / counts, mids)
    dk = np.where(dk == 0, mids, dk)
    p_dk = counts / len(k)
    if (dk <= 0).any():
        return nan_fit

    log_dk = np.log10(dk)
    log_p = np.log10(p_dk + 1e-9)

    ones = np.ones_like(log_dk)
    coef, r2 = _linear_fit(np.column_stack([ones, log_dk]), log_p)
    _, r2_trunc = _linear_fit(np.column_stack([ones, log_dk, dk]), log_p)
    # Adjusted R^2 of the two-predictor truncated model
    n = len(log_p)
    r2_trunc_adj = 1 - (1 - r2_trunc) * (n - 1) / (n - 3) if n > 3 else np.nan

    return {"r_squared": r2, "slope": float(coef[1]), "truncated_r_squared": r2_trunc_adj}


def pick_soft_threshold(
    corr: np.ndarray,
    powers: Optional[Iterable[int]] = None,
    network_type: str = "unsigned",
    target_r2: float = 0.9,
    n_breaks: int = 10,
) -> SoftThresholdResult:
    """Evaluate scale-free topology fit for each candidate power.

    The power estimate is the smallest power whose signed R^2
    (``-sign(slope) * R^2``) reaches ``target_r2``; ``None`` if none does.
    """
    powers = list(powers) if powers is not None else list(DEFAULT_POWERS)
    rows = []
    for power in powers:
        k = adjacency_from_correlation(corr, power, network_type).sum(axis=1)
        fit = scale_free_fit_index(k, n_breaks)
        signed = -np.sign(fit["slope"]) * fit["r_squared"]
        rows.append({
            "power": power,
            "r_squared": fit["r_squared"],
            "slope": fit["slope"],
            "signed_r_squared": signed,
            "truncated_r_squared": fit["truncated_r_squared"],
            "mean_k": float(np.mean(k)),
            "median_k": float(np.median(k)),
            "max_k": float(np.max(k)),
        })
        logger.debug(f"power={power}: signed R^2={signed:.3f}, mean k={np.mean(k):.2f}")

    fit_table = pd.DataFrame(rows)
    qualifying = fit_table.loc[fit_table["signed_r_squared"] >= target_r2, "power"]
    estimate = int(qualifying.iloc[0]) if len(qualifying) else None
    if estimate is None:
        logger.warning(f"No power reached signed R^2 >= {target_r2}")
    else:
        logger.info(f"Soft-threshold power estimate: {estimate}")
    return SoftThresholdResult(fit_table=fit_table, power_estimate=estimate, target_r2=target_r2)


# =============================================================================
# Step C: adjacency and topological overlap
# =============================================================================

def adjacency_from_correlation(
    corr: np.ndarray,
    power: float,
    network_type: str = "unsigned",
) -> np.ndarray:
    C = np.asarray(corr, dtype=float)
    if network_type == "unsigned":
        A = np.abs(C) ** power
    elif network_type == "signed":
        A = ((1 + C) / 2) ** power
    elif network_type == "signed hybrid":
        A = np.where(C > 0, C, 0.0) ** power
    else:
        raise ValueError(f"network_type must be one of {NETWORK_TYPES}, got '{network_type}'")
    A = np.clip(A, 0.0, 1.0)
    np.fill_diagonal(A, 0.0)
    return A


def topological_overlap(adjacency: np.ndarray) -> np.ndarray:
    """TOM_ij = (sum_u a_iu a_uj + a_ij) / (min(k_i, k_j) + 1 - a_ij)."""
    A = np.asarray(adjacency, dtype=float)
    k = A.sum(axis=1)
    shared = A @ A
    denom = np.minimum.outer(k, k) + 1 - A
    tom = (shared + A) / denom
    tom = (tom + tom.T) / 2
    tom = np.clip(tom, 0.0, 1.0)
    np.fill_diagonal(tom, 1.0)
    return tom


def tom_dissimilarity(tom: np.ndarray) -> np.ndarray:
    diss = np.clip(1.0 - np.asarray(tom, dtype=float), 0.0, 1.0)
    np.fill_diagonal(diss, 0.0)
    return diss


def cluster_genes(dissimilarity: np.ndarray, method: str = "average") -> np.ndarray:
    if method not in ("average", "complete"):
        raise ValueError(f"Unsupported linkage method '{method}'")
    return linkage(squareform(dissimilarity, checks=False), method=method)


# =============================================================================
# Step D: module detection
# =============================================================================

def module_colors(n: int) -> List[str]:
    colors = STANDARD_COLORS[:n]
    colors += [f"module_{i}" for i in range(len(colors) + 1, n + 1)]
    return colors


def label_modules(labels: Sequence, gene_ids: Sequence[str], unassigned=0) -> pd.Series:
    """Replace arbitrary module labels with standard colors by decreasing size.

    Ties in size go to the module whose first member comes first.
    ``unassigned`` maps to ``grey``.
    """
    labels = np.asarray(list(labels), dtype=object)
    first_seen = {}
    for i, lab in enumerate(labels):
        if lab != unassigned and lab not in first_seen:
            first_seen[lab] = i
    sizes = {m: int((labels == m).sum()) for m in first_seen}
    ordered = sorted(first_seen, key=lambda m: (-sizes[m], first_seen[m]))

    mapping = dict(zip(ordered, module_colors(len(ordered))))
    mapping[unassigned] = UNASSIGNED_MODULE
    return pd.Series(
        [mapping[lab] for lab in labels],
        index=pd.Index([str(g) for g in gene_ids], name="gene_id"),
        name="module",
    )


def module_order(labels: pd.Series) -> List[str]:
    """Modules by decreasing size, first-member order on ties, grey last."""
    sizes = labels.value_counts()
    first = {}
    for i, m in enumerate(labels.values):
        first.setdefault(m, i)
    modules = [m for m in first if m != UNASSIGNED_MODULE]
    modules.sort(key=lambda m: (-sizes[m], first[m]))
    if UNASSIGNED_MODULE in first:
        modules.append(UNASSIGNED_MODULE)
    return modules


def enforce_min_module_size(labels: pd.Series, min_module_size: int) -> pd.Series:
    sizes = labels.value_counts()
    small = [m for m, n in sizes.items() if m != UNASSIGNED_MODULE and n < min_module_size]
    if small:
        logger.debug(f"Sending {len(small)} undersized modules to {UNASSIGNED_MODULE}")
    return labels.where(~labels.isin(small), UNASSIGNED_MODULE)


def module_eigengenes(
    expression: pd.DataFrame,
    labels: pd.Series,
) -> Tuple[pd.DataFrame, pd.Series]:
    """First principal component of each module's standardized profiles.

    The eigengene is the first right singular vector of the gene-standardized
    module matrix, signed to correlate positively with the module's average
    standardized profile and returned standardized.

    Returns:
        (samples x modules eigengenes, variance explained per module)
    """
    eigengenes = {}
    variance = {}
    for module in module_order(labels):
        members = labels.index[labels == module]
        sub = expression.loc[members].to_numpy(dtype=float)
        mean = np.nanmean(sub, axis=1, keepdims=True)
        sd = np.nanstd(sub, axis=1, ddof=1, keepdims=True)
        sd[sd == 0] = 1.0
        Z = np.nan_to_num((sub - mean) / sd)

        _, s, vt = np.linalg.svd(Z, full_matrices=False)
        me = vt[0]
        average = Z.mean(axis=0)
        if np.dot(me - me.mean(), average - average.mean()) < 0:
            me = -me
        me_sd = me.std(ddof=1)
        me = (me - me.mean()) / me_sd if me_sd > 0 else me - me.mean()

        eigengenes[module] = me
        total = float((s ** 2).sum())
        variance[module] = float(s[0] ** 2 / total) if total > 0 else float("nan")

    return (
        pd.DataFrame(eigengenes, index=expression.columns),
        pd.Series(variance, name="variance_explained"),
    )


def merge_close_modules(
    expression: pd.DataFrame,
    labels: pd.Series,
    merge_cut_height: float = 0.25,
) -> Tuple[pd.Series, pd.DataFrame, pd.Series]:
    """Merge modules whose eigengenes correlate above ``1 - merge_cut_height``.

    Eigengene dissimilarity ``1 - cor`` is clustered with average linkage
    and cut at ``merge_cut_height``; each merged group takes the label of
    its largest module. Repeats with recomputed eigengenes until stable.
    """
    labels = labels.copy()
    while True:
        eigengenes, variance = module_eigengenes(expression, labels)
        modules = [m for m in eigengenes.columns if m != UNASSIGNED_MODULE]
        if len(modules) < 2:
            return labels, eigengenes, variance

        me_corr = np.corrcoef(eigengenes[modules].to_numpy().T)
        diss = np.nan_to_num(1 - me_corr, nan=1.0)
        diss = np.clip((diss + diss.T) / 2, 0.0, 2.0)
        np.fill_diagonal(diss, 0.0)
        groups = fcluster(linkage(squareform(diss, checks=False), method="average"),
                          t=merge_cut_height, criterion="distance")
        if len(set(groups)) == len(modules):
            return labels, eigengenes, variance

        sizes = labels.value_counts()
        for g in np.unique(groups):
            group = [modules[i] for i in np.flatnonzero(groups == g)]
            if len(group) < 2:
                continue
            # modules is size-ordered, so the first entry is the largest
            target = group[0]
            logger.debug(f"Merging modules {group} into {target} ({sizes[target]} genes)")
            labels[labels.isin(group)] = target


def _block_tree_cut(
    expression: pd.DataFrame,
    soft_power: float,
    network_type: str,
    linkage_method: str,
    min_module_size: int,
    deep_split: int,
    cut_height: Optional[float],
    pam_stage: bool,
    n_jobs: int,
    corr: Optional[np.ndarray] = None,
) -> Tuple[np.ndarray, np.ndarray]:
    if corr is None:
        corr = correlation_matrix(expression.to_numpy(dtype=float), n_jobs=n_jobs)
    adjacency = adjacency_from_correlation(corr, soft_power, network_type)
    diss = tom_dissimilarity(topological_overlap(adjacency))
    tree = cluster_genes(diss, linkage_method)
    cut = dynamic_tree_cut(
        tree, diss,
        min_cluster_size=min_module_size,
        deep_split=deep_split,
        cut_height=cut_height,
        pam_stage=pam_stage,
    )
    return cut, tree


def partition_blocks(
    expression: pd.DataFrame,
    max_block_size: int,
    random_state: Optional[int] = None,
) -> List[List[str]]:
    """Pre-cluster genes with k-means and pack the clusters into blocks.

    Clusters are placed first-fit by decreasing size; a cluster larger than
    a block is split in gene order.
    """
    genes = [str(g) for g in expression.index]
    if len(genes) <= max_block_size:
        return [genes]

    n_centers = min(len(genes), 4 * math.ceil(len(genes) / max_block_size))
    Z = np.nan_to_num(_standardize_rows(expression.to_numpy(dtype=float)))
    km = KMeans(n_clusters=n_centers, n_init=10, random_state=random_state).fit(Z)

    clusters: List[List[str]] = []
    for c in range(n_centers):
        members = [g for g, lab in zip(genes, km.labels_) if lab == c]
        for start in range(0, len(members), max_block_size):
            clusters.append(members[start:start + max_block_size])
    clusters.sort(key=len, reverse=True)

    blocks: List[List[str]] = []
    for cluster in clusters:
        for block in blocks:
            if len(block) + len(cluster) <= max_block_size:
                block.extend(cluster)
                break
        else:
            blocks.append(list(cluster))
    return blocks


def blockwise_modules(
    expression: pd.DataFrame,
    soft_power: int,
    network_type: str = "unsigned",
    linkage_method: str = "average",
    min_module_size: int = 30,
    deep_split: int = 2,
    cut_height: Optional[float] = None,
    pam_stage: bool = True,
    merge_cut_height: float = 0.25,
    max_block_size: int = 5000,
    n_jobs: int = 1,
    random_state: Optional[int] = settings.RANDOM_STATE,
    corr: Optional[np.ndarray] = None,
) -> ModuleDetection:
    """Detect co-expression modules, block by block when the network is large.

    Each block is clustered and cut independently; block modules are then
    reconciled by one eigengene merge over all genes and relabelled with
    colors. ``corr`` may carry a precomputed correlation matrix for the
    single-block case.
    """
    if expression.shape[0] == 0:
        raise NumericalDegeneracyError("Cannot detect modules in an empty network")

    blocks = partition_blocks(expression, max_block_size, random_state)
    if len(blocks) > 1:
        logger.info(f"Splitting {expression.shape[0]} genes into {len(blocks)} blocks")

    raw = pd.Series(UNASSIGNED_MODULE, index=[str(g) for g in expression.index], dtype=object)
    linkages = []
    for b, block in enumerate(blocks):
        block_corr = corr if (corr is not None and len(blocks) == 1) else None
        cut, tree = _block_tree_cut(
            expression.loc[block], soft_power, network_type, linkage_method,
            min_module_size, deep_split, cut_height, pam_stage, n_jobs, block_corr,
        )
        raw.loc[block] = [f"b{b}_{c}" if c > 0 else UNASSIGNED_MODULE for c in cut]
        linkages.append(tree)
        logger.debug(f"Block {b}: {len(block)} genes, {len(set(cut) - {0})} modules")

    labels = enforce_min_module_size(raw, min_module_size)
    labels, _, _ = merge_close_modules(expression, labels, merge_cut_height)
    labels = label_modules(labels.values, labels.index, unassigned=UNASSIGNED_MODULE)
    eigengenes, variance = module_eigengenes(expression, labels)

    sizes = labels.value_counts()
    logger.info(
        f"Detected {len([m for m in sizes.index if m != UNASSIGNED_MODULE])} modules; "
        f"{int(sizes.get(UNASSIGNED_MODULE, 0))} genes unassigned"
    )
    return ModuleDetection(
        labels=labels,
        eigengenes=eigengenes,
        variance_explained=variance,
        soft_power=soft_power,
        n_blocks=len(blocks),
        linkages=linkages,
    )


# =============================================================================
# Step E: traits, membership and hubs
# =============================================================================

def encode_grade(values: pd.Series, grade_order: Optional[Sequence[str]] = None) -> pd.Series:
    """Ordinal grade: explicit order, numeric values or roman numerals."""
    order = {str(g).strip().upper(): i + 1 for i, g in enumerate(grade_order or [])}

    def _encode(v):
        if pd.isna(v):
            return np.nan
        text = str(v).strip().upper()
        if order:
            return float(order[text]) if text in order else np.nan
        try:
            return float(text)
        except ValueError:
            pass
        for prefix in ("WHO GRADE", "GRADE", "WHO"):
            if text.startswith(prefix):
                text = text[len(prefix):].strip()
        if text in ROMAN_GRADES:
            return float(ROMAN_GRADES[text])
        try:
            return float(text)
        except ValueError:
            return np.nan

    return values.map(_encode).astype(float)


def encode_traits(
    metadata: pd.DataFrame,
    traits: Optional[Sequence[str]] = None,
    disease_column: str = "disease",
    grade_column: str = "grade",
    grade_order: Optional[Sequence[str]] = None,
) -> Tuple[pd.DataFrame, List[str]]:
    """Numeric trait matrix (samples x traits).

    ``disease`` becomes 1 for tumor, binary categoricals 0/1 in sorted
    order, ``grade`` ordinal. Non-binary categoricals and constant traits
    are excluded.

    Returns:
        (encoded traits, excluded trait names)
    """
    columns = list(traits) if traits is not None else list(metadata.columns)
    encoded = {}
    excluded = []

    for col in columns:
        if col not in metadata.columns:
            logger.warning(f"Trait '{col}' not in metadata")
            excluded.append(col)
            continue
        s = metadata[col]
        if col == disease_column:
            enc = s.map(
                lambda v: np.nan if pd.isna(v) else float(str(v).strip().lower() == settings.TUMOR_LABEL)
            ).astype(float)
        elif col == grade_column:
            enc = encode_grade(s, grade_order)
        elif pd.api.types.is_numeric_dtype(s):
            enc = s.astype(float)
        else:
            numeric = pd.to_numeric(s, errors="coerce")
            if numeric.notna().sum() == s.notna().sum():
                enc = numeric.astype(float)
            else:
                categories = sorted(s.dropna().astype(str).str.strip().unique())
                if len(categories) != 2:
                    logger.warning(f"Trait '{col}' is not binary ({len(categories)} levels); excluded")
                    excluded.append(col)
                    continue
                enc = s.map(
                    lambda v: np.nan if pd.isna(v) else float(categories.index(str(v).strip()))
                ).astype(float)

        if enc.nunique(dropna=True) < 2:
            logger.warning(f"Trait '{col}' is constant; excluded")
            excluded.append(col)
            continue
        encoded[col] = enc

    return pd.DataFrame(encoded, index=metadata.index), excluded


def correlation_pvalue(r: float, n: int) -> float:
    """Two-sided Student p-value of a Pearson correlation over ``n`` pairs."""
    if not np.isfinite(r) or n < 3:
        return float("nan")
    if abs(r) >= 1:
        return 0.0
    t = r * math.sqrt(n - 2) / math.sqrt(1 - r ** 2)
    return float(2 * stats.t.sf(abs(t), n - 2))


def module_trait_correlation(
    eigengenes: pd.DataFrame,
    traits: pd.DataFrame,
    exclude: Sequence[str] = (UNASSIGNED_MODULE,),
) -> Tuple[pd.DataFrame, pd.DataFrame, pd.DataFrame]:
    """Pearson correlation of each module eigengene with each trait.

    Uses pairwise complete samples; modules or traits whose correlations
    are all undefined are dropped.

    Returns:
        (correlations, p-values, pairs used), each modules x traits
    """
    modules = [m for m in eigengenes.columns if m not in exclude]
    traits = traits.reindex(eigengenes.index)

    cor = pd.DataFrame(np.nan, index=modules, columns=traits.columns)
    pval = cor.copy()
    nobs = pd.DataFrame(0, index=modules, columns=traits.columns)

    for m in modules:
        x = eigengenes[m].to_numpy(dtype=float)
        for t in traits.columns:
            y = traits[t].to_numpy(dtype=float)
            ok = np.isfinite(x) & np.isfinite(y)
            n = int(ok.sum())
            nobs.loc[m, t] = n
            if n < 3 or np.std(x[ok]) == 0 or np.std(y[ok]) == 0:
                continue
            r = float(np.corrcoef(x[ok], y[ok])[0, 1])
            cor.loc[m, t] = r
            pval.loc[m, t] = correlation_pvalue(r, n)

    undefined_traits = cor.columns[cor.isna().all(axis=0)].tolist()
    undefined_modules = cor.index[cor.isna().all(axis=1)].tolist()
    if undefined_traits or undefined_modules:
        logger.warning(
            f"Dropping undefined correlations: traits={undefined_traits}, modules={undefined_modules}"
        )
    keep_rows = [m for m in cor.index if m not in undefined_modules]
    keep_cols = [t for t in cor.columns if t not in undefined_traits]
    return (
        cor.loc[keep_rows, keep_cols],
        pval.loc[keep_rows, keep_cols],
        nobs.loc[keep_rows, keep_cols],
    )


def rank_modules(
    correlations: pd.DataFrame,
    pvalues: pd.DataFrame,
    module_sizes: pd.Series,
    top_n_modules: int = 3,
    max_module_size: Optional[int] = None,
) -> pd.DataFrame:
    """Order modules by their strongest absolute trait correlation.

    Oversized modules and ``grey`` are never selected.
    """
    rows = []
    for m in correlations.index:
        if m == UNASSIGNED_MODULE:
            continue
        abs_r = correlations.loc[m].abs()
        if abs_r.notna().any():
            best = abs_r.idxmax()
            max_abs, best_p = float(abs_r[best]), float(pvalues.loc[m, best])
        else:
            best, max_abs, best_p = None, np.nan, np.nan
        size = int(module_sizes.get(m, 0))
        rows.append({
            "module": m,
            "size": size,
            "max_abs_correlation": max_abs,
            "best_trait": best,
            "best_pvalue": best_p,
            "oversized": bool(max_module_size is not None and size > max_module_size),
        })

    ranking = pd.DataFrame(rows, columns=[
        "module", "size", "max_abs_correlation", "best_trait", "best_pvalue", "oversized",
    ])
    order = np.argsort(-ranking["max_abs_correlation"].fillna(-1).to_numpy(), kind="mergesort")
    ranking = ranking.iloc[order].reset_index(drop=True)

    eligible = ~ranking["oversized"] & ranking["max_abs_correlation"].notna()
    ranking["selected"] = eligible & (eligible.cumsum() <= top_n_modules)
    return ranking


def module_trait_analysis(
    eigengenes: pd.DataFrame,
    traits: pd.DataFrame,
    module_sizes: pd.Series,
    top_n_modules: int = 3,
    max_module_size: Optional[int] = None,
    excluded_traits: Optional[List[str]] = None,
) -> ModuleTraitResult:
    cor, pval, nobs = module_trait_correlation(eigengenes, traits)
    ranking = rank_modules(cor, pval, module_sizes, top_n_modules, max_module_size)
    return ModuleTraitResult(
        correlations=cor,
        pvalues=pval,
        n_observations=nobs.max(axis=1) if not nobs.empty else pd.Series(dtype=int),
        ranking=ranking,
        excluded_traits=list(excluded_traits or []),
    )


def module_membership(
    expression: pd.DataFrame,
    eigengenes: pd.DataFrame,
    labels: pd.Series,
) -> pd.DataFrame:
    """kME of each gene with its own module eigengene, with p-values."""
    kme = cross_correlation(
        expression.loc[labels.index].to_numpy(dtype=float),
        eigengenes.to_numpy(dtype=float).T,
    )
    kme = pd.DataFrame(kme, index=labels.index, columns=eigengenes.columns)
    n = expression.loc[labels.index].notna().sum(axis=1)

    own = np.array([kme.at[g, m] for g, m in labels.items()])
    return pd.DataFrame({
        "gene_id": labels.index,
        "module": labels.values,
        "kME": own,
        "kME_pvalue": [correlation_pvalue(r, int(k)) for r, k in zip(own, n)],
    })


def gene_significance(expression: pd.DataFrame, trait: pd.Series) -> pd.Series:
    """Correlation of every gene with one trait."""
    y = trait.reindex(expression.columns).to_numpy(dtype=float)
    gs = cross_correlation(expression.to_numpy(dtype=float), y[None, :])[:, 0]
    return pd.Series(gs, index=expression.index, name=f"GS.{trait.name}")


def intramodular_connectivity(adjacency: np.ndarray, labels: pd.Series) -> pd.DataFrame:
    """Whole-network and within-module connectivity per gene."""
    A = np.asarray(adjacency, dtype=float)
    k_total = A.sum(axis=1)
    k_within = np.zeros_like(k_total)
    values = labels.to_numpy()
    for m in pd.unique(values):
        idx = np.flatnonzero(values == m)
        k_within[idx] = A[np.ix_(idx, idx)].sum(axis=1)
    k_out = k_total - k_within
    return pd.DataFrame(
        {"kTotal": k_total, "kWithin": k_within, "kOut": k_out, "kDiff": k_within - k_out},
        index=labels.index,
    )


def hub_genes(
    adjacency: np.ndarray,
    labels: pd.Series,
    membership: pd.DataFrame,
    top_n: int = 10,
) -> pd.DataFrame:
    """Top genes per module by weighted degree inside the module graph."""
    kme = membership.set_index("gene_id")["kME"]
    A = np.asarray(adjacency, dtype=float)
    genes = labels.index.tolist()
    rows = []

    for module in module_order(labels):
        if module == UNASSIGNED_MODULE:
            continue
        idx = np.flatnonzero(labels.to_numpy() == module)
        G = nx.from_numpy_array(A[np.ix_(idx, idx)])
        G = nx.relabel_nodes(G, {i: genes[j] for i, j in enumerate(idx)})
        degree = dict(G.degree(weight="weight"))

        members = [genes[j] for j in idx]
        k_within = np.array([degree.get(g, 0.0) for g in members])
        order = np.argsort(-k_within, kind="mergesort")[:top_n]
        for rank, i in enumerate(order, start=1):
            rows.append({
                "gene_id": members[i],
                "module": module,
                "kWithin": float(k_within[i]),
                "kME": float(kme.get(members[i], np.nan)),
                "hub_rank": rank,
            })

    return pd.DataFrame(rows, columns=["gene_id", "module", "kWithin", "kME", "hub_rank"])
