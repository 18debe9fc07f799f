"""Set algebra over named candidate gene sets."""

from itertools import combinations
from typing import Dict, Iterable, List, Set

import pandas as pd


def intersect_sets(*sets: Iterable[str]) -> Set[str]:
    """Genes present in every set; empty when no set is given."""
    if not sets:
        return set()
    result = set(sets[0])
    for s in sets[1:]:
        result &= set(s)
    return result


def union_sets(*sets: Iterable[str]) -> Set[str]:
    result: Set[str] = set()
    for s in sets:
        result |= set(s)
    return result


def pairwise_intersections(named: Dict[str, Iterable[str]]) -> Dict[str, Set[str]]:
    return {
        f"{a} & {b}": intersect_sets(named[a], named[b])
        for a, b in combinations(named, 2)
    }


def all_intersections(named: Dict[str, Iterable[str]]) -> Dict[str, Set[str]]:
    """Intersection of every combination of two or more named sets.

    Keys join the set names with `` & `` in input order.
    """
    names = list(named)
    out = {}
    for size in range(2, len(names) + 1):
        for combo in combinations(names, size):
            out[" & ".join(combo)] = intersect_sets(*(named[n] for n in combo))
    return out


def sets_to_frame(named: Dict[str, Iterable[str]]) -> pd.DataFrame:
    """Long format ``set_name, gene_id``, genes sorted within each set."""
    rows = [
        {"set_name": name, "gene_id": gene}
        for name, genes in named.items()
        for gene in sorted(set(genes))
    ]
    return pd.DataFrame(rows, columns=["set_name", "gene_id"])


def intersections_to_frame(intersections: Dict[str, Iterable[str]]) -> pd.DataFrame:
    """Long format ``set_combination, n_sets, gene_id``."""
    rows: List[dict] = []
    for combo, genes in intersections.items():
        n_sets = len(combo.split(" & "))
        rows.extend(
            {"set_combination": combo, "n_sets": n_sets, "gene_id": g}
            for g in sorted(set(genes))
        )
    return pd.DataFrame(rows, columns=["set_combination", "n_sets", "gene_id"])
