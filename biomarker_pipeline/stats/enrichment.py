"""
GO term tabulation for candidate gene lists.

Annotation fields hold several terms separated by ``///``; each term may
carry ``//``-separated sub-fields, e.g.::

    GO:0006915 // apoptotic process // inferred from electronic annotation
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
from scipy.stats import hypergeom
from statsmodels.stats.multitest import multipletests

logger = logging.getLogger(__name__)

ONTOLOGIES = ("biological_process", "cellular_component", "molecular_function")
TERM_SEPARATOR = "///"
FIELD_SEPARATOR = "//"


def parse_terms(field) -> List[Tuple[str, str]]:
    """Split an annotation field into (term_id, term_name) pairs.

    A term without sub-fields is used as both id and name.
    """
    if field is None or (isinstance(field, float) and np.isnan(field)):
        return []
    terms = []
    for raw in str(field).split(TERM_SEPARATOR):
        raw = raw.strip()
        if not raw or raw == "---":
            continue
        parts = [p.strip() for p in raw.split(FIELD_SEPARATOR)]
        term_id = parts[0]
        term_name = parts[1] if len(parts) > 1 and parts[1] else term_id
        terms.append((term_id, term_name))
    return terms


def gene_term_table(
    annotation: pd.DataFrame,
    gene_column: str = "gene_id",
    ontologies: Sequence[str] = ONTOLOGIES,
) -> pd.DataFrame:
    """Long format ``gene_id, ontology, term_id, term_name``; duplicates removed."""
    present = [o for o in ontologies if o in annotation.columns]
    missing = [o for o in ontologies if o not in annotation.columns]
    if missing:
        logger.warning(f"Annotation has no column for ontologies {missing}")

    rows = []
    for _, record in annotation.iterrows():
        gene = str(record[gene_column]).strip()
        for ontology in present:
            for term_id, term_name in parse_terms(record[ontology]):
                rows.append((gene, ontology, term_id, term_name))

    table = pd.DataFrame(rows, columns=["gene_id", "ontology", "term_id", "term_name"])
    return table.drop_duplicates(subset=["gene_id", "ontology", "term_id"]).reset_index(drop=True)


def term_frequencies(
    gene_terms: pd.DataFrame,
    genes: Iterable[str],
    gene_list: str = "genes",
) -> pd.DataFrame:
    """Count selected genes per term; count descending, then term name."""
    selected = set(genes)
    sub = gene_terms[gene_terms["gene_id"].isin(selected)]
    columns = ["gene_list", "ontology", "term_id", "term_name", "count", "fraction"]
    if sub.empty:
        return pd.DataFrame(columns=columns)

    counts = (
        sub.groupby(["ontology", "term_id", "term_name"])["gene_id"]
        .nunique()
        .reset_index(name="count")
    )
    n_annotated = sub["gene_id"].nunique()
    counts["fraction"] = counts["count"] / n_annotated
    counts["gene_list"] = gene_list
    counts = counts.sort_values(["count", "term_name", "term_id"], ascending=[False, True, True], kind="mergesort")
    return counts[columns].reset_index(drop=True)


def hypergeometric_enrichment(
    gene_terms: pd.DataFrame,
    genes: Iterable[str],
    gene_list: str = "genes",
    background: Optional[Iterable[str]] = None,
    min_overlap: int = 1,
) -> pd.DataFrame:
    """Over-representation of each term among ``genes`` versus the background.

    The background defaults to every annotated gene. p = P(X >= overlap)
    with X ~ Hypergeom(N, K, n); BH-adjusted within each ontology.
    """
    columns = [
        "gene_list", "ontology", "term_id", "term_name", "overlap",
        "list_size", "term_size", "background_size", "pvalue", "padj",
    ]
    universe = set(background) if background is not None else set(gene_terms["gene_id"])
    terms = gene_terms[gene_terms["gene_id"].isin(universe)]
    selected = set(genes) & universe
    if not selected or terms.empty:
        return pd.DataFrame(columns=columns)

    results = []
    for ontology, onto_terms in terms.groupby("ontology", sort=True):
        annotated = set(onto_terms["gene_id"])
        N = len(annotated)
        n = len(selected & annotated)
        if n == 0:
            continue

        rows = []
        for (term_id, term_name), members in onto_terms.groupby(["term_id", "term_name"], sort=True):
            term_genes = set(members["gene_id"])
            overlap = len(term_genes & selected)
            if overlap < min_overlap:
                continue
            K = len(term_genes)
            rows.append({
                "gene_list": gene_list,
                "ontology": ontology,
                "term_id": term_id,
                "term_name": term_name,
                "overlap": overlap,
                "list_size": n,
                "term_size": K,
                "background_size": N,
                "pvalue": float(hypergeom.sf(overlap - 1, N, K, n)),
            })
        if not rows:
            continue
        frame = pd.DataFrame(rows)
        frame["padj"] = multipletests(frame["pvalue"].to_numpy(), method="fdr_bh")[1]
        results.append(frame)

    if not results:
        return pd.DataFrame(columns=columns)
    out = pd.concat(results, ignore_index=True)
    out = out.sort_values(["ontology", "pvalue", "term_id"], kind="mergesort")
    return out[columns].reset_index(drop=True)


def enrichment_for_lists(
    gene_terms: pd.DataFrame,
    gene_lists: Dict[str, Iterable[str]],
    background: Optional[Iterable[str]] = None,
) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """Term frequencies and enrichment for several named gene lists."""
    freqs, enriched = [], []
    for name, genes in gene_lists.items():
        genes = list(genes)
        freqs.append(term_frequencies(gene_terms, genes, gene_list=name))
        enriched.append(hypergeometric_enrichment(gene_terms, genes, gene_list=name, background=background))
        logger.info(f"{name}: {len(genes)} genes, {len(freqs[-1])} terms")
    return (
        pd.concat(freqs, ignore_index=True) if freqs else pd.DataFrame(),
        pd.concat(enriched, ignore_index=True) if enriched else pd.DataFrame(),
    )
