"""Marker gene lookup, panel scoring and cluster annotation."""

from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import numpy as np
import pandas as pd
import scanpy as sc

from .config import MarkerPanel

logger = logging.getLogger(__name__)

SCORE_SUFFIX = "_score"


def _gene_index(adata) -> pd.Index:
    return adata.raw.var_names if adata.raw is not None else adata.var_names


def resolve_genes(adata, genes: Iterable[str]) -> Tuple[List[str], List[str]]:
    """Match genes case-insensitively against the dataset.

    Returns ``(present, missing)`` in input order; present genes use the
    dataset's spelling.
    """
    lookup = {}
    for name in _gene_index(adata):
        lookup.setdefault(str(name).upper(), str(name))

    present, missing = [], []
    for gene in genes:
        hit = lookup.get(str(gene).upper())
        if hit is None:
            missing.append(gene)
        elif hit not in present:
            present.append(hit)
    return present, missing


def shared_markers(tumor, healthy, genes: Iterable[str]) -> List[str]:
    """Marker genes measured in both datasets (tumor spelling)."""
    in_tumor, _ = resolve_genes(tumor, genes)
    in_healthy, _ = resolve_genes(healthy, genes)
    healthy_upper = {g.upper() for g in in_healthy}
    return [g for g in in_tumor if g.upper() in healthy_upper]


def score_column(panel_name: str) -> str:
    return f"{panel_name}{SCORE_SUFFIX}"


def score_panels(adata, panels: Sequence[MarkerPanel], random_state: int = 0) -> Dict[str, str]:
    """Score every panel per spot with ``sc.tl.score_genes``.

    Writes ``obs["<panel>_score"]`` and returns ``{panel: column}`` for the
    panels that could be scored.
    """
    use_raw = adata.raw is not None
    n_genes = len(_gene_index(adata))
    scored = {}
    for panel in panels:
        present, missing = resolve_genes(adata, panel.genes)
        if not present:
            logger.warning("Panel %s: none of %s found, skipping", panel.name, panel.genes)
            continue
        if missing:
            logger.info("Panel %s: missing genes %s", panel.name, missing)
        col = score_column(panel.name)
        sc.tl.score_genes(
            adata,
            gene_list=present,
            score_name=col,
            ctrl_size=int(max(1, min(50, n_genes - len(present)))),
            random_state=random_state,
            use_raw=use_raw,
        )
        scored[panel.name] = col
    return scored


def annotate_clusters(
    adata,
    panels: Sequence[MarkerPanel],
    cluster_key: str = "leiden",
) -> pd.DataFrame:
    """Label each cluster with the panel whose score is most enriched in it.

    Per-cluster mean panel scores are z-scored across clusters; the panel
    with the highest z-score wins. Panels must have been scored first.
    """
    if cluster_key not in adata.obs:
        raise KeyError(f"No {cluster_key!r} column in obs; run clustering first.")
    cols = {p.name: score_column(p.name) for p in panels if score_column(p.name) in adata.obs}
    if not cols:
        raise ValueError("No panel scores found in obs; run score_panels first.")

    grouped = adata.obs.groupby(cluster_key, observed=True)
    means = grouped[list(cols.values())].mean()
    means.columns = list(cols.keys())
    std = means.std(axis=0, ddof=0).replace(0, np.nan)
    z = ((means - means.mean(axis=0)) / std).fillna(0.0)

    best = z.idxmax(axis=1)
    table = pd.DataFrame(
        {
            "cluster": means.index.astype(str),
            "panel": best.values,
            "z_score": [z.loc[c, p] for c, p in best.items()],
            "n_spots": grouped.size().reindex(means.index).values,
        }
    )
    mapping = dict(zip(table["cluster"], table["panel"]))
    adata.obs["panel_annotation"] = pd.Categorical(
        adata.obs[cluster_key].astype(str).map(mapping)
    )
    return table.reset_index(drop=True)


def flatten_rank_genes(result, n_genes: Optional[int] = None) -> pd.DataFrame:
    """Long table of a ``rank_genes_groups`` result, one row per group and gene."""
    dfs = []
    for g in result["names"].dtype.names:
        df = pd.DataFrame(
            {
                "names": result["names"][g][:n_genes],
                "scores": result["scores"][g][:n_genes],
                "logfoldchanges": result["logfoldchanges"][g][:n_genes],
                "pvals": result["pvals"][g][:n_genes],
                "pvals_adj": result["pvals_adj"][g][:n_genes],
            }
        )
        df["cluster"] = g
        dfs.append(df)
    return pd.concat(dfs, ignore_index=True)


def cluster_top_markers(adata, cluster_key: str = "leiden", n_genes: int = 20) -> pd.DataFrame:
    """Wilcoxon marker genes of every cluster vs the rest, as a long table."""
    if cluster_key not in adata.obs:
        raise KeyError(f"No {cluster_key!r} column in obs; run clustering first.")
    if adata.obs[cluster_key].nunique() < 2:
        raise ValueError("Need at least two clusters to rank marker genes.")

    sc.tl.rank_genes_groups(adata, groupby=cluster_key, reference="rest", method="wilcoxon")
    return flatten_rank_genes(adata.uns["rank_genes_groups"], n_genes)
