"""
Dynamic branch cut of a hierarchical clustering tree.

Instead of a single fixed height, each branch is judged by its shape:

* merges above ``cut_height`` are always split;
* below it a branch is a cluster when it has at least ``min_cluster_size``
  members, its core scatter (mean dissimilarity inside its tightest core)
  is small enough, and it is separated from its sibling by a large enough
  gap;
* a qualifying branch is split further only if both children qualify.

Scatter and gap limits are expressed relative to the tree heights with the
deep-split constants of the dynamicTreeCut hybrid method. Objects left
outside every cluster may be attached to the closest cluster afterwards
(``assign_unassigned``).

Labels: 0 = unassigned, 1..K clusters ordered by decreasing size.
"""

import logging
import math
from typing import Dict, Optional

import numpy as np
from scipy.cluster.hierarchy import ClusterNode, to_tree

logger = logging.getLogger(__name__)

# deep_split 0..4 -> max core scatter as a fraction of (cut_height - ref_height)
DEEP_SPLIT_CORE_SCATTER = (0.64, 0.73, 0.82, 0.91, 0.95)
REF_QUANTILE = 0.05


class _BranchJudge:
    """Core scatter / gap test for dendrogram branches."""

    def __init__(
        self,
        dissimilarity: np.ndarray,
        min_cluster_size: int,
        max_abs_core_scatter: float,
        min_abs_gap: float,
    ):
        self.dissimilarity = dissimilarity
        self.min_cluster_size = min_cluster_size
        self.max_abs_core_scatter = max_abs_core_scatter
        self.min_abs_gap = min_abs_gap
        self._scatter: Dict[int, float] = {}

    def core_scatter(self, node: ClusterNode) -> float:
        if node.id in self._scatter:
            return self._scatter[node.id]

        leaves = np.asarray(node.pre_order())
        size = len(leaves)
        core_size = int(self.min_cluster_size / 2 + math.sqrt(max(size - self.min_cluster_size / 2, 0)))
        core_size = min(max(core_size, 2), size)
        if size < 2:
            scatter = 0.0
        else:
            sub = self.dissimilarity[np.ix_(leaves, leaves)]
            # Tightest core: members closest on average to the rest of the branch
            mean_to_branch = sub.sum(axis=1) / (size - 1)
            core = np.argsort(mean_to_branch, kind="mergesort")[:core_size]
            core_sub = sub[np.ix_(core, core)]
            scatter = float(core_sub.sum() / (core_size * (core_size - 1)))

        self._scatter[node.id] = scatter
        return scatter

    def qualifies(self, node: ClusterNode, merge_height: float) -> bool:
        if node.count < self.min_cluster_size:
            return False
        scatter = self.core_scatter(node)
        if scatter > self.max_abs_core_scatter:
            return False
        return (merge_height - scatter) >= self.min_abs_gap


def reference_height(heights: np.ndarray) -> float:
    """Height of the merge at the 5% quantile of the sorted merge heights."""
    ordered = np.sort(heights)
    ref_merge = max(int(round(len(ordered) * REF_QUANTILE)), 1)
    return float(ordered[ref_merge - 1])


def default_cut_height(heights: np.ndarray) -> float:
    ref = reference_height(heights)
    return 0.99 * (float(np.max(heights)) - ref) + ref


def dynamic_tree_cut(
    linkage_matrix: np.ndarray,
    dissimilarity: np.ndarray,
    min_cluster_size: int = 20,
    deep_split: int = 2,
    cut_height: Optional[float] = None,
    pam_stage: bool = True,
) -> np.ndarray:
    """Cut a scipy linkage tree into shape-aware clusters.

    Args:
        linkage_matrix: output of ``scipy.cluster.hierarchy.linkage``
        dissimilarity: square dissimilarity matrix the tree was built from
        min_cluster_size: smallest admissible cluster
        deep_split: 0 (coarse) .. 4 (fine)
        cut_height: maximum joining height; default 99% of the tree range
        pam_stage: attach unassigned objects to the closest cluster

    Returns:
        Integer label per object, 0 = unassigned.
    """
    if deep_split not in range(len(DEEP_SPLIT_CORE_SCATTER)):
        raise ValueError(f"deep_split must be 0..{len(DEEP_SPLIT_CORE_SCATTER) - 1}")

    n = dissimilarity.shape[0]
    if n < 2 or linkage_matrix.shape[0] == 0:
        return np.zeros(n, dtype=int)

    heights = linkage_matrix[:, 2]
    ref_height = reference_height(heights)
    if cut_height is None:
        cut_height = default_cut_height(heights)

    core_fraction = DEEP_SPLIT_CORE_SCATTER[deep_split]
    gap_fraction = (1 - core_fraction) * 3 / 4
    span = max(cut_height - ref_height, 0.0)
    judge = _BranchJudge(
        dissimilarity,
        min_cluster_size=min_cluster_size,
        max_abs_core_scatter=ref_height + core_fraction * span,
        min_abs_gap=gap_fraction * span,
    )
    logger.debug(
        f"Tree cut: cut_height={cut_height:.4f}, ref_height={ref_height:.4f}, "
        f"max_core_scatter={judge.max_abs_core_scatter:.4f}, min_gap={judge.min_abs_gap:.4f}"
    )

    labels = np.zeros(n, dtype=int)
    next_label = 1
    root = to_tree(linkage_matrix)
    # Iterative walk: dendrogram depth can exceed the recursion limit
    stack = [(root, max(root.dist, cut_height))]
    while stack:
        node, merge_height = stack.pop()
        if node.count < min_cluster_size or node.is_leaf():
            continue

        left, right = node.get_left(), node.get_right()
        if node.dist > cut_height:
            stack.append((right, node.dist))
            stack.append((left, node.dist))
            continue

        if judge.qualifies(left, node.dist) and judge.qualifies(right, node.dist):
            stack.append((right, node.dist))
            stack.append((left, node.dist))
            continue

        if judge.qualifies(node, merge_height):
            labels[node.pre_order()] = next_label
            next_label += 1
            continue

        stack.append((right, node.dist))
        stack.append((left, node.dist))

    if pam_stage:
        labels = assign_unassigned(labels, dissimilarity, max_distance=cut_height)

    return relabel_by_size(labels)


def assign_unassigned(labels: np.ndarray, dissimilarity: np.ndarray, max_distance: float) -> np.ndarray:
    """Attach each unassigned object to the cluster with the lowest mean dissimilarity.

    Objects whose best mean dissimilarity is not below ``max_distance``
    stay unassigned.
    """
    labels = labels.copy()
    clusters = [c for c in np.unique(labels) if c != 0]
    unassigned = np.flatnonzero(labels == 0)
    if not clusters or len(unassigned) == 0:
        return labels

    mean_dist = np.column_stack([
        dissimilarity[np.ix_(unassigned, np.flatnonzero(labels == c))].mean(axis=1)
        for c in clusters
    ])
    best = np.argmin(mean_dist, axis=1)
    best_dist = mean_dist[np.arange(len(unassigned)), best]
    attach = best_dist < max_distance
    labels[unassigned[attach]] = np.asarray(clusters)[best[attach]]
    logger.debug(f"Attached {int(attach.sum())}/{len(unassigned)} unassigned objects")
    return labels


def relabel_by_size(labels: np.ndarray) -> np.ndarray:
    """Renumber clusters 1..K by decreasing size; ties by first member position."""
    clusters = [c for c in np.unique(labels) if c != 0]
    keyed = sorted(
        clusters,
        key=lambda c: (-int((labels == c).sum()), int(np.flatnonzero(labels == c)[0])),
    )
    out = np.zeros_like(labels)
    for new, old in enumerate(keyed, start=1):
        out[labels == old] = new
    return out
