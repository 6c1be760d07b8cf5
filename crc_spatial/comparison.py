"""Statistical comparison of marker expression between tumor and healthy tissue.

All comparisons use log-normalized expression (``adata.raw`` when present).
Spot-level tests treat spots as independent observations; see the report
caveats for why this overstates significance.
"""

from __future__ import annotations

import logging
from typing import Dict, Iterable, Mapping, Optional, Sequence

import anndata as ad
import numpy as np
import pandas as pd
import scanpy as sc
from scipy import sparse
from scipy.stats import mannwhitneyu, pearsonr, spearmanr
from statsmodels.stats.multitest import multipletests

from .config import HEALTHY, TUMOR, ComparisonConfig, MarkerPanel
from .markers import resolve_genes, score_column, shared_markers

logger = logging.getLogger(__name__)

UP = "up_in_tumor"
DOWN = "down_in_tumor"
NS = "ns"


def _dense(X) -> np.ndarray:
    if sparse.issparse(X):
        X = X.toarray()
    return np.asarray(X, dtype=float)


def expression_frame(adata, genes: Iterable[str]) -> pd.DataFrame:
    """Spots x genes DataFrame of log-normalized expression."""
    present, _ = resolve_genes(adata, genes)
    source = adata.raw if adata.raw is not None else adata
    X = _dense(source[:, present].X) if present else np.empty((adata.n_obs, 0))
    return pd.DataFrame(X, index=adata.obs_names, columns=present)


def _rank_test(x: np.ndarray, y: np.ndarray):
    """Two-sided Mann-Whitney U; returns (U, p, rank-biserial effect)."""
    n1, n2 = len(x), len(y)
    if n1 == 0 or n2 == 0:
        return np.nan, np.nan, np.nan
    values = np.concatenate([x, y])
    if np.ptp(values) == 0:
        u, p = n1 * n2 / 2.0, 1.0
    else:
        u, p = mannwhitneyu(x, y, alternative="two-sided")
    effect = 2.0 * float(u) / (n1 * n2) - 1.0
    return float(u), float(p), effect


def _adjust(pvals: Sequence[float], method: str) -> np.ndarray:
    pvals = np.asarray(pvals, dtype=float)
    adjusted = np.full_like(pvals, np.nan)
    ok = ~np.isnan(pvals)
    if ok.any():
        adjusted[ok] = multipletests(pvals[ok], method=method)[1]
    return adjusted


def _direction(p_adj: float, log2fc: float, config: ComparisonConfig) -> str:
    if np.isnan(p_adj) or p_adj >= config.alpha or abs(log2fc) < config.min_log2fc:
        return NS
    return UP if log2fc > 0 else DOWN


def compare_markers(
    tumor,
    healthy,
    genes: Iterable[str],
    config: Optional[ComparisonConfig] = None,
    gene_panels: Optional[Mapping[str, str]] = None,
) -> pd.DataFrame:
    """Per-gene tumor vs healthy comparison of marker expression.

    Parameters
    ----------
    tumor, healthy : AnnData
        Normalized datasets.
    genes : Iterable[str]
        Candidate marker genes; only genes measured in both are tested.
    config : ComparisonConfig, optional
        Test and calling thresholds.
    gene_panels : Mapping[str, str], optional
        Upper-case gene symbol to panel name, used to fill ``panel``.

    Returns
    -------
    pd.DataFrame
        One row per shared gene, in input order.

    Raises
    ------
    ValueError
        If no marker gene is present in both datasets.
    """
    config = config or ComparisonConfig()
    genes = list(genes)
    shared = shared_markers(tumor, healthy, genes)
    if not shared:
        raise ValueError(f"None of the {len(genes)} marker genes are measured in both datasets.")

    healthy_spelling, _ = resolve_genes(healthy, shared)
    t_expr = expression_frame(tumor, shared)
    h_expr = expression_frame(healthy, healthy_spelling)
    h_lookup = {g.upper(): g for g in h_expr.columns}

    rows = []
    for gene in shared:
        x = t_expr[gene].to_numpy()
        y = h_expr[h_lookup[gene.upper()]].to_numpy()
        u, p, effect = _rank_test(x, y)
        lin_t = float(np.expm1(x).mean())
        lin_h = float(np.expm1(y).mean())
        rows.append(
            {
                "gene": gene,
                "panel": (gene_panels or {}).get(gene.upper(), ""),
                "mean_tumor": float(x.mean()),
                "mean_healthy": float(y.mean()),
                "pct_tumor": float((x > 0).mean()),
                "pct_healthy": float((y > 0).mean()),
                "log2fc": float(np.log2((lin_t + config.pseudocount) / (lin_h + config.pseudocount))),
                "u_stat": u,
                "pval": p,
                "effect_size": effect,
            }
        )

    table = pd.DataFrame(rows)
    table["pval_adj"] = _adjust(table["pval"], config.correction)
    table["direction"] = [
        _direction(p, fc, config) for p, fc in zip(table["pval_adj"], table["log2fc"])
    ]
    logger.info(
        "Compared %d shared markers: %d up, %d down in tumor",
        len(table),
        int((table["direction"] == UP).sum()),
        int((table["direction"] == DOWN).sum()),
    )
    return table


def _correlate(a: np.ndarray, b: np.ndarray) -> Dict[str, float]:
    a = np.asarray(a, dtype=float)
    b = np.asarray(b, dtype=float)
    n = int(len(a))
    out = {"n": n, "pearson_r": np.nan, "pearson_p": np.nan, "spearman_r": np.nan, "spearman_p": np.nan}
    if n < 3 or np.ptp(a) == 0 or np.ptp(b) == 0:
        return out
    r, p = pearsonr(a, b)
    rho, p_rho = spearmanr(a, b)
    out.update(
        {"pearson_r": float(r), "pearson_p": float(p), "spearman_r": float(rho), "spearman_p": float(p_rho)}
    )
    return out


def profile_correlation(table: pd.DataFrame) -> Dict[str, float]:
    """Correlate tumor and healthy mean marker expression across genes."""
    return _correlate(table["mean_tumor"].to_numpy(), table["mean_healthy"].to_numpy())


def pseudobulk_means(adata) -> pd.Series:
    """Mean log-normalized expression per gene (index upper-cased)."""
    source = adata.raw if adata.raw is not None else adata
    means = np.asarray(source.X.mean(axis=0)).ravel()
    index = pd.Index([str(g).upper() for g in source.var_names])
    return pd.Series(means, index=index).groupby(level=0).first()


def shared_gene_correlation(tumor, healthy) -> Dict[str, float]:
    """Correlate pseudo-bulk profiles across every gene measured in both."""
    t = pseudobulk_means(tumor)
    h = pseudobulk_means(healthy)
    common = t.index.intersection(h.index)
    return _correlate(t.loc[common].to_numpy(), h.loc[common].to_numpy())


def coexpression(adata, genes: Iterable[str], method: str = "spearman") -> pd.DataFrame:
    """Spot-level gene x gene correlation matrix for the given markers."""
    if method not in ("pearson", "spearman", "kendall"):
        raise ValueError(f"Unsupported correlation method {method!r}")
    frame = expression_frame(adata, genes)
    return frame.corr(method=method)


def compare_panel_scores(
    tumor,
    healthy,
    panels: Sequence[MarkerPanel],
    config: Optional[ComparisonConfig] = None,
) -> pd.DataFrame:
    """Mann-Whitney test of each panel score between tumor and healthy spots."""
    config = config or ComparisonConfig()
    rows = []
    for panel in panels:
        col = score_column(panel.name)
        if col not in tumor.obs or col not in healthy.obs:
            continue
        x = tumor.obs[col].to_numpy(dtype=float)
        y = healthy.obs[col].to_numpy(dtype=float)
        u, p, effect = _rank_test(x, y)
        rows.append(
            {
                "panel": panel.name,
                "expected_in_tumor": panel.expected_in_tumor,
                "mean_tumor": float(x.mean()),
                "mean_healthy": float(y.mean()),
                "difference": float(x.mean() - y.mean()),
                "u_stat": u,
                "pval": p,
                "effect_size": effect,
            }
        )
    columns = [
        "panel", "expected_in_tumor", "mean_tumor", "mean_healthy",
        "difference", "u_stat", "pval", "effect_size", "pval_adj",
    ]
    if not rows:
        return pd.DataFrame(columns=columns)
    table = pd.DataFrame(rows)
    table["pval_adj"] = _adjust(table["pval"], config.correction)
    return table[columns]


def _lognorm_adata(adata):
    if adata.raw is not None:
        out = adata.raw.to_adata()
    else:
        out = adata.copy()
    out.obs = adata.obs[[c for c in adata.obs.columns if c not in ("condition",)]].copy()
    out.var_names = pd.Index([str(g).upper() for g in out.var_names])
    out.var_names_make_unique()
    return out


def combine_conditions(tumor, healthy):
    """Concatenate both datasets (shared genes only) with ``obs["condition"]``."""
    combined = ad.concat(
        [_lognorm_adata(tumor), _lognorm_adata(healthy)],
        join="inner",
        label="condition",
        keys=[TUMOR, HEALTHY],
        index_unique="-",
    )
    if combined.n_vars == 0:
        raise ValueError("Tumor and healthy datasets share no genes.")
    combined.uns["log1p"] = {"base": None}
    return combined


def condition_de(
    tumor,
    healthy,
    genes: Optional[Iterable[str]] = None,
    method: str = "wilcoxon",
) -> pd.DataFrame:
    """Differential expression of tumor vs the healthy reference.

    Restricts to ``genes`` when given. Returns scanpy's long table with
    ``names``, ``scores``, ``logfoldchanges``, ``pvals``, ``pvals_adj`` and
    detection fractions.
    """
    combined = combine_conditions(tumor, healthy)
    if genes is not None:
        present, _ = resolve_genes(combined, genes)
        if not present:
            raise ValueError("None of the requested genes are shared by both datasets.")
        combined = combined[:, present].copy()

    sc.tl.rank_genes_groups(
        combined,
        groupby="condition",
        groups=[TUMOR],
        reference=HEALTHY,
        method=method,
        use_raw=False,
        pts=True,
    )
    return sc.get.rank_genes_groups_df(combined, group=TUMOR)
