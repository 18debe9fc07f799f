"""
Expression / clinical alignment and probe-to-symbol mapping.

Guarantees handed to every downstream stage:
- matrix column order equals metadata row order
- disease label restricted to {normal, tumor}
- no sample column with a missing value
- unique gene identifiers
"""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

import numpy as np
import pandas as pd

from .errors import DataAlignmentError
from .models import AlignedData
from .. import config as settings

logger = logging.getLogger(__name__)

MISSING_SYMBOLS = {"", "---", "nan", "NA", "None"}


def coerce_identifiers(values: Iterable) -> List[str]:
    """Cast join keys to stripped strings.

    Integral floats (``101.0``) become ``"101"`` so ids parsed as numbers
    in one table still match string ids from the other.
    """
    coerced = []
    for v in values:
        if isinstance(v, (float, np.floating)) and np.isfinite(v) and float(v).is_integer():
            v = int(v)
        coerced.append(str(v).strip())
    return coerced


def make_unique(names: Iterable[str], sep: str = ".") -> List[str]:
    """Disambiguate duplicates with a stable numeric suffix.

    The first occurrence keeps its name; later ones get ``.1``, ``.2``...
    Suffixed names never collide with names already present.
    """
    names = list(names)
    seen = set(names)
    counters: Dict[str, int] = {}
    used = set()
    result = []
    for name in names:
        if name not in used:
            used.add(name)
            result.append(name)
            continue
        k = counters.get(name, 0)
        while True:
            k += 1
            candidate = f"{name}{sep}{k}"
            if candidate not in seen and candidate not in used:
                break
        counters[name] = k
        used.add(candidate)
        result.append(candidate)
    return result


def normalize_symbol_label(raw, delimiter: str = "///") -> Optional[str]:
    """Clean a (possibly multi-valued) symbol field; None when no symbol."""
    if raw is None or (isinstance(raw, float) and np.isnan(raw)):
        return None
    parts = [p.strip() for p in str(raw).split(delimiter)]
    parts = [p for p in parts if p not in MISSING_SYMBOLS]
    if not parts:
        return None
    return delimiter.join(parts)


def map_probes_to_symbols(
    expression: pd.DataFrame,
    annotation: pd.DataFrame,
    probe_column: str = "probe_id",
    symbol_column: str = "gene_symbol",
    delimiter: str = "///",
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Replace probe ids with gene symbols.

    Probes without a symbol are dropped. Multi-symbol probes keep the
    combined label and duplicate symbols are made unique.

    Returns:
        (expression indexed by gene_id, probe_id -> gene_id mapping)
    """
    if probe_column not in annotation.columns or symbol_column not in annotation.columns:
        raise DataAlignmentError(
            f"Probe annotation needs columns '{probe_column}' and '{symbol_column}'"
        )

    ann = annotation[[probe_column, symbol_column]].copy()
    ann[probe_column] = coerce_identifiers(ann[probe_column])
    ann = ann.drop_duplicates(subset=probe_column, keep="first")
    symbol_of = dict(zip(ann[probe_column], ann[symbol_column]))

    probes = coerce_identifiers(expression.index)
    symbols = [normalize_symbol_label(symbol_of.get(p), delimiter) for p in probes]
    keep = np.array([s is not None for s in symbols])

    n_dropped = int((~keep).sum())
    if n_dropped:
        logger.info(f"Dropping {n_dropped} probes without a gene symbol")

    kept_probes = [p for p, k in zip(probes, keep) if k]
    kept_symbols = make_unique([s for s in symbols if s is not None])
    if not kept_symbols:
        raise DataAlignmentError("No probe could be mapped to a gene symbol")

    mapped = expression.loc[keep].copy()
    mapped.index = pd.Index(kept_symbols, name="gene_id")

    original = set(symbols)
    n_dup = sum(1 for s in kept_symbols if s not in original)
    if n_dup:
        logger.info(f"Disambiguated {n_dup} duplicate gene symbols")

    mapping = pd.DataFrame({"probe_id": kept_probes, "gene_id": kept_symbols})
    return mapped, mapping


def normalize_labels(
    metadata: pd.DataFrame,
    column: str = "disease",
    label_map: Optional[Dict[str, str]] = None,
    allowed: Tuple[str, str] = (settings.NORMAL_LABEL, settings.TUMOR_LABEL),
) -> pd.DataFrame:
    """Map raw disease labels onto the allowed set, dropping other rows."""
    if column not in metadata.columns:
        raise DataAlignmentError(f"Metadata has no '{column}' column")

    label_map = {str(k).strip().lower(): v for k, v in (label_map or {}).items()}
    raw = metadata[column].astype(str).str.strip()
    mapped = raw.str.lower().map(lambda v: label_map.get(v, v))

    out = metadata.copy()
    out[column] = mapped
    keep = out[column].isin(allowed)
    if (~keep).any():
        dropped = sorted(set(raw[~keep]))
        logger.info(f"Dropping {int((~keep).sum())} samples with labels outside {allowed}: {dropped}")
    return out.loc[keep]


def align_expression_metadata(
    expression: pd.DataFrame,
    metadata: pd.DataFrame,
    sample_column: str = "sample_id",
    label_column: str = "disease",
    require_groups: Tuple[str, ...] = (settings.NORMAL_LABEL, settings.TUMOR_LABEL),
) -> AlignedData:
    """Restrict matrix and metadata to shared samples in a common order.

    Raises:
        DataAlignmentError: on duplicate or non-matching ids, or when the
            aligned result is empty or lacks a required disease group.
    """
    if sample_column not in metadata.columns:
        raise DataAlignmentError(f"Metadata has no '{sample_column}' column")

    meta = metadata.copy()
    meta[sample_column] = coerce_identifiers(meta[sample_column])
    if meta[sample_column].duplicated().any():
        dups = meta.loc[meta[sample_column].duplicated(), sample_column].tolist()
        raise DataAlignmentError(f"Duplicate sample ids in metadata: {dups[:5]}")
    meta = meta.set_index(sample_column)

    expr = expression.copy()
    expr.columns = coerce_identifiers(expr.columns)
    if expr.columns.duplicated().any():
        dups = expr.columns[expr.columns.duplicated()].tolist()
        raise DataAlignmentError(f"Duplicate sample ids in expression matrix: {dups[:5]}")
    if expr.index.duplicated().any():
        raise DataAlignmentError("Expression matrix row identifiers are not unique")

    shared = [s for s in meta.index if s in set(expr.columns)]
    if not shared:
        raise DataAlignmentError(
            "No sample id matches between expression matrix and metadata "
            f"(matrix e.g. {list(expr.columns[:3])}, metadata e.g. {list(meta.index[:3])})"
        )

    only_meta = len(meta) - len(shared)
    only_expr = expr.shape[1] - len(shared)
    if only_meta or only_expr:
        logger.warning(
            f"Unmatched samples: {only_meta} only in metadata, {only_expr} only in matrix"
        )

    expr = expr[shared].apply(pd.to_numeric, errors="coerce")
    meta = meta.loc[shared]

    incomplete = expr.columns[expr.isna().any(axis=0)].tolist()
    if incomplete:
        logger.warning(f"Dropping {len(incomplete)} samples with missing expression values")
        expr = expr.drop(columns=incomplete)
        meta = meta.drop(index=incomplete)

    if expr.shape[1] == 0 or expr.shape[0] == 0:
        raise DataAlignmentError("Alignment produced an empty expression matrix")

    if label_column in meta.columns:
        present = set(meta[label_column])
        missing_groups = [g for g in require_groups if g not in present]
        if missing_groups:
            raise DataAlignmentError(f"Aligned data lacks disease group(s): {missing_groups}")

    meta.index.name = sample_column
    expr.index.name = "gene_id"
    logger.info(f"Aligned {expr.shape[0]} genes x {expr.shape[1]} samples")
    return AlignedData(expression=expr, metadata=meta, dropped_samples=incomplete)
