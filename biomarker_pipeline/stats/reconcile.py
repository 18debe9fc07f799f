"""
Fuzzy matching of gene identifiers between tables.

Gene symbols from different sources disagree on case, punctuation and
suffixes (``HLA-DRA`` / ``HLA.DRA`` / ``hla_dra``). Matching tries, in
order: exact id, canonical id (upper-case, alphanumerics only), and best
Jaccard similarity over character q-grams.
"""

import logging
import re
from typing import Dict, Iterable, List, Set

import pandas as pd

logger = logging.getLogger(__name__)

_NON_ALNUM = re.compile(r"[^0-9A-Za-z]")


def canonical_id(identifier: str) -> str:
    return _NON_ALNUM.sub("", str(identifier)).upper()


def qgrams(text: str, q: int = 2) -> Set[str]:
    text = str(text).upper()
    if len(text) < q:
        return {text} if text else set()
    return {text[i:i + q] for i in range(len(text) - q + 1)}


def jaccard_similarity(a: str, b: str, q: int = 2) -> float:
    """|A & B| / |A | B| over the character q-grams of ``a`` and ``b``."""
    return _jaccard(qgrams(a, q), qgrams(b, q))


def _jaccard(ga: Set[str], gb: Set[str]) -> float:
    union = ga | gb
    return len(ga & gb) / len(union) if union else 0.0


def reconcile_identifiers(
    left: Iterable[str],
    right: Iterable[str],
    q: int = 2,
    min_similarity: float = 0.5,
) -> pd.DataFrame:
    """Map each ``left`` id onto at most one ``right`` id.

    Returns:
        DataFrame ``left_id, matched_id, match_similarity, match_type`` with
        one row per left id; unmatched rows have missing ``matched_id``.
        Ties in similarity go to the first candidate in ``right`` order.
    """
    right = [str(r) for r in right]
    exact = set(right)
    canonical: Dict[str, str] = {}
    for r in right:
        canonical.setdefault(canonical_id(r), r)
    right_grams = [(r, qgrams(r, q)) for r in right]

    rows: List[dict] = []
    unmatched = []
    for left_id in (str(x) for x in left):
        if left_id in exact:
            rows.append({"left_id": left_id, "matched_id": left_id, "match_similarity": 1.0, "match_type": "exact"})
            continue
        key = canonical_id(left_id)
        if key and key in canonical:
            rows.append({"left_id": left_id, "matched_id": canonical[key], "match_similarity": 1.0, "match_type": "canonical"})
            continue

        grams = qgrams(left_id, q)
        best_id, best_sim = None, -1.0
        for r, rg in right_grams:
            sim = _jaccard(grams, rg)
            if sim > best_sim:
                best_id, best_sim = r, sim
        if best_id is not None and best_sim >= min_similarity:
            rows.append({"left_id": left_id, "matched_id": best_id, "match_similarity": best_sim, "match_type": "fuzzy"})
        else:
            unmatched.append(left_id)
            rows.append({"left_id": left_id, "matched_id": None, "match_similarity": float("nan"), "match_type": "unmatched"})

    if unmatched:
        logger.info(f"{len(unmatched)} identifiers without a match: {unmatched[:10]}")
    return pd.DataFrame(rows, columns=["left_id", "matched_id", "match_similarity", "match_type"])
