"""
Two-group linear model with empirical Bayes variance moderation.

Follows limma's lmFit -> eBayes path for a ``tumor - normal`` contrast:
per-gene least squares, F-distribution prior on the residual variances,
moderated t, Benjamini-Hochberg adjusted p-values and the B-statistic
(log-odds of differential expression).
"""

import logging
import math
from typing import Sequence, Tuple

import numpy as np
import pandas as pd
from scipy import stats
from scipy.special import digamma, polygamma
from statsmodels.stats.multitest import multipletests

from .models import DEGResult

logger = logging.getLogger(__name__)


def trigamma_inverse(x: float, tol: float = 1e-8, max_iter: int = 50) -> float:
    """Solve trigamma(y) = x for y by Newton iteration."""
    if not np.isfinite(x) or x <= 0:
        return float("nan")
    if x > 1e7:
        return 1.0 / math.sqrt(x)
    if x < 1e-6:
        return 1.0 / x

    y = 0.5 + 1.0 / x
    for _ in range(max_iter):
        tri = float(polygamma(1, y))
        dif = tri * (1 - tri / x) / float(polygamma(2, y))
        y += dif
        if -dif / y < tol:
            break
    else:
        logger.warning("trigamma_inverse: iteration limit exceeded")
    return y


def fit_f_dist(s2: np.ndarray, df: float) -> Tuple[float, float]:
    """Moment estimates of the scaled-F prior for gene-wise variances.

    Returns:
        (prior variance s0^2, prior degrees of freedom d0). ``d0`` is
        ``inf`` when the observed variances show no extra dispersion.
    """
    x = np.asarray(s2, dtype=float)
    x = x[np.isfinite(x)]
    n = len(x)
    if n == 0:
        return float("nan"), 0.0
    if n == 1:
        return float(x[0]), 0.0

    # Zero variances would send log() to -inf
    x = np.maximum(x, 0)
    m = float(np.median(x))
    if m == 0:
        logger.warning("More than half of residual variances are exactly zero")
        m = 1.0
    x = np.maximum(x, 1e-5 * m)

    z = np.log(x)
    e = z - digamma(df / 2) + math.log(df / 2)
    emean = float(e.mean())
    evar = float(np.sum((e - emean) ** 2) / (n - 1))
    evar -= float(polygamma(1, df / 2))

    if evar > 0:
        d0 = 2 * trigamma_inverse(evar)
        s0 = math.exp(emean + digamma(d0 / 2) - math.log(d0 / 2))
    else:
        d0 = float("inf")
        s0 = math.exp(emean)
    return s0, d0


def squeeze_var(s2: np.ndarray, df: float, s0: float, d0: float) -> np.ndarray:
    """Posterior variances shrunk towards the prior."""
    if np.isinf(d0):
        return np.full_like(s2, s0, dtype=float)
    return (d0 * s0 + df * s2) / (d0 + df)


def tmixture(
    tstat: np.ndarray,
    stdev_unscaled: np.ndarray,
    df: float,
    proportion: float,
    v0_lim: Tuple[float, float],
) -> float:
    """Estimate the prior variance of non-zero coefficients from the top t-statistics."""
    ngenes = len(tstat)
    ntarget = math.ceil(proportion / 2 * ngenes)
    if ntarget < 1:
        return float("nan")
    p = max(ntarget / ngenes, proportion)

    abs_t = np.abs(tstat)
    order = np.argsort(-abs_t, kind="mergesort")[:ntarget]
    top_t = abs_t[order]
    v1 = np.broadcast_to(stdev_unscaled, abs_t.shape)[order] ** 2

    r = np.arange(1, ntarget + 1)
    p0 = 2 * stats.t.sf(top_t, df)
    ptarget = ((r - 0.5) / 2 / ngenes - (1 - p) * p0) / p

    v0 = np.zeros(ntarget)
    pos = ptarget > p0
    if pos.any():
        qtarget = stats.t.isf(ptarget[pos], df)
        v0[pos] = v1[pos] * ((top_t[pos] / qtarget) ** 2 - 1)
    v0 = np.clip(v0, v0_lim[0], v0_lim[1])
    return float(v0.mean())


def b_statistic(
    t: np.ndarray,
    stdev_unscaled: float,
    df_total: float,
    var_prior: float,
    proportion: float,
    prior_df: float,
) -> np.ndarray:
    """Log-odds that each gene is differentially expressed."""
    v = stdev_unscaled ** 2
    r = (v + var_prior) / v
    t2 = t ** 2
    if np.isinf(prior_df):
        kernel = t2 * (1 - 1 / r) / 2
    else:
        kernel = (1 + df_total) / 2 * np.log((t2 + df_total) / (t2 / r + df_total))
    return math.log(proportion / (1 - proportion)) - math.log(r) / 2 + kernel


def moderated_t_test(
    expression: pd.DataFrame,
    groups: Sequence[str],
    contrast: Tuple[str, str] = ("tumor", "normal"),
    proportion: float = 0.01,
    stdev_coef_lim: Tuple[float, float] = (0.1, 4.0),
) -> DEGResult:
    """Moderated t-test of ``contrast[0] - contrast[1]`` for every gene.

    Args:
        expression: genes x samples, log-scale intensities, no missing values
        groups: group label per sample column
        contrast: (treatment, control)
        proportion: assumed proportion of differentially expressed genes
        stdev_coef_lim: bounds on the prior SD of true log fold-changes

    Returns:
        DEGResult whose table is ordered by B descending (stable).
    """
    groups = np.asarray(list(groups), dtype=object)
    if len(groups) != expression.shape[1]:
        raise ValueError("groups must have one label per sample column")

    treat = groups == contrast[0]
    ctrl = groups == contrast[1]
    n1, n2 = int(treat.sum()), int(ctrl.sum())
    if n1 == 0 or n2 == 0:
        raise ValueError(f"Both contrast groups need samples (got {n1} '{contrast[0]}', {n2} '{contrast[1]}')")
    df = n1 + n2 - 2
    if df < 1:
        raise ValueError("Need at least 3 samples for residual variance")

    x = expression.to_numpy(dtype=float)
    if np.isnan(x[:, treat | ctrl]).any():
        raise ValueError("Expression matrix contains missing values; filter before testing")

    xt, xc = x[:, treat], x[:, ctrl]
    mt, mc = xt.mean(axis=1), xc.mean(axis=1)
    coef = mt - mc
    rss = ((xt - mt[:, None]) ** 2).sum(axis=1) + ((xc - mc[:, None]) ** 2).sum(axis=1)
    s2 = rss / df
    stdev_unscaled = math.sqrt(1.0 / n1 + 1.0 / n2)
    ave_expr = x[:, treat | ctrl].mean(axis=1)

    s0, d0 = fit_f_dist(s2, df)
    s2_post = squeeze_var(s2, df, s0, d0)
    logger.info(f"Empirical Bayes prior: d0={d0:.3f}, s0^2={s0:.4g}")

    t = coef / (stdev_unscaled * np.sqrt(s2_post))

    n_genes = len(coef)
    df_pooled = df * n_genes
    df_total = min(df + d0, df_pooled)
    pvalue = 2 * stats.t.sf(np.abs(t), df_total)
    padj = multipletests(pvalue, method="fdr_bh")[1]

    v0_lim = (stdev_coef_lim[0] ** 2 / s0, stdev_coef_lim[1] ** 2 / s0)
    var_prior = tmixture(t, np.asarray(stdev_unscaled), df_total, proportion, v0_lim)
    if not np.isfinite(var_prior):
        var_prior = 1.0 / s0
    b = b_statistic(t, stdev_unscaled, df_total, var_prior, proportion, d0)

    table = pd.DataFrame({
        "gene_id": expression.index.astype(str),
        "logFC": coef,
        "AveExpr": ave_expr,
        "t": t,
        "pvalue": pvalue,
        "padj": padj,
        "B": b,
    })
    order = np.argsort(-table["B"].to_numpy(), kind="mergesort")
    table = table.iloc[order].reset_index(drop=True)
    table["rank"] = np.arange(1, len(table) + 1)

    return DEGResult(
        table=table,
        prior_df=float(d0),
        prior_var=float(s0),
        prior_var_coef=float(var_prior),
        contrast=tuple(contrast),
    )
