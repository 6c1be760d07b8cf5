"""Figures for the tumor vs healthy comparison.

Every function returns a matplotlib Figure and never calls ``show``; the
web app hands it to ``st.pyplot`` and the pipeline to :func:`save_figure`.
"""

from __future__ import annotations

from pathlib import Path
from typing import Mapping, Optional, Sequence, Union

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import scanpy as sc
from matplotlib.figure import Figure

from .comparison import DOWN, NS, UP
from .config import HEALTHY, TUMOR, MarkerPanel
from .io.loading import has_image, has_spatial
from .markers import resolve_genes, score_column

QC_METRICS = ["n_genes_by_counts", "total_counts", "pct_counts_mt"]
QC_LABELS = {
    "n_genes_by_counts": "Number of genes",
    "total_counts": "Total counts",
    "pct_counts_mt": "Mitochondrial %",
}

DIRECTION_COLORS = {UP: "firebrick", DOWN: "steelblue", NS: "lightgrey"}
CONDITION_COLORS = {TUMOR: "firebrick", HEALTHY: "seagreen"}


def qc_violins(adata) -> Figure:
    fig, axes = plt.subplots(1, 3, figsize=(15, 4))
    for i, metric in enumerate(QC_METRICS):
        sc.pl.violin(
            adata,
            keys=metric,
            groupby=None,
            jitter=0.4,
            multi_panel=False,
            ax=axes[i],
            show=False,
        )
        axes[i].set_title(QC_LABELS[metric])
    fig.tight_layout()
    return fig


def variance_elbow(adata, n_pcs: int = 20, target: Optional[float] = None) -> Figure:
    """Per-PC variance ratio with the cumulative curve on a twin axis."""
    vr = np.asarray(adata.uns["pca"]["variance_ratio"], dtype=float)[:n_pcs]
    pcs = np.arange(1, len(vr) + 1)

    fig, ax = plt.subplots(figsize=(7, 4))
    ax.plot(pcs, vr, "o-", color="black")
    ax.set_xlabel("Principal component")
    ax.set_ylabel("Variance ratio")
    ax2 = ax.twinx()
    ax2.plot(pcs, vr.cumsum(), "--", color="grey")
    ax2.set_ylabel("Cumulative variance ratio")
    ax2.set_ylim(0, 1)
    if target is not None:
        ax2.axhline(target, color="firebrick", lw=0.8)
    ax.set_title("Variance explained (Elbow plot)")
    fig.tight_layout()
    return fig


def spatial_map(adata, color: Union[str, None], title: Optional[str] = None, ax=None) -> Figure:
    """Colour spots on the tissue.

    Uses the H&E image when the dataset carries one; otherwise scatters the
    spot coordinates in ``obsm["spatial"]``.
    """
    if not has_spatial(adata):
        raise ValueError("Dataset has no spatial coordinates (obsm['spatial']).")
    if color is not None and color not in adata.obs:
        present, _ = resolve_genes(adata, [color])
        if not present:
            raise KeyError(f"{color!r} is neither an obs column nor a measured gene.")
        color = present[0]

    if ax is None:
        fig, ax = plt.subplots(figsize=(5, 5))
    else:
        fig = ax.figure

    if has_image(adata):
        sc.pl.spatial(adata, color=color, title=title, ax=ax, show=False)
    else:
        sc.pl.embedding(adata, basis="spatial", color=color, title=title, ax=ax, show=False)
        ax.invert_yaxis()
        ax.set_aspect("equal")
    return fig


def umap_map(adata, color: str = "leiden", title: Optional[str] = None) -> Figure:
    fig, ax = plt.subplots(figsize=(5, 5))
    sc.pl.umap(
        adata,
        color=color,
        title=title,
        legend_loc="on data" if color == "leiden" else "right margin",
        ax=ax,
        show=False,
    )
    return fig


def marker_dotplot(adata, genes: Sequence[str], groupby: str = "leiden") -> Figure:
    present, _ = resolve_genes(adata, genes)
    if not present:
        raise ValueError("None of the selected genes are measured in this dataset.")
    sc.pl.dotplot(adata, present, groupby=groupby, show=False)
    return plt.gcf()


def comparison_bars(table: pd.DataFrame) -> Figure:
    """Horizontal log2 fold-change bars, coloured by call."""
    ordered = table.sort_values("log2fc")
    fig, ax = plt.subplots(figsize=(7, max(3, 0.28 * len(ordered))))
    ax.barh(
        ordered["gene"],
        ordered["log2fc"],
        color=[DIRECTION_COLORS.get(d, "lightgrey") for d in ordered["direction"]],
    )
    ax.axvline(0, color="black", lw=0.8)
    ax.set_xlabel("log2 fold change (tumor / healthy)")
    ax.set_title("Marker expression: tumor vs healthy")
    handles = [plt.Rectangle((0, 0), 1, 1, color=c) for c in DIRECTION_COLORS.values()]
    ax.legend(handles, ["Up in tumor", "Down in tumor", "Not significant"], frameon=False, loc="lower right")
    fig.tight_layout()
    return fig


def mean_scatter(table: pd.DataFrame, corr: Optional[Mapping[str, float]] = None) -> Figure:
    """Tumor vs healthy mean expression per marker, with identity line."""
    fig, ax = plt.subplots(figsize=(6, 6))
    ax.scatter(
        table["mean_healthy"],
        table["mean_tumor"],
        c=[DIRECTION_COLORS.get(d, "lightgrey") for d in table["direction"]],
        s=30,
        edgecolors="black",
        linewidths=0.3,
    )
    for _, row in table.iterrows():
        ax.annotate(row["gene"], (row["mean_healthy"], row["mean_tumor"]), fontsize=7,
                    xytext=(3, 3), textcoords="offset points")
    upper = float(max(table["mean_tumor"].max(), table["mean_healthy"].max(), 0.1)) * 1.05
    ax.plot([0, upper], [0, upper], "--", color="grey", lw=0.8)
    ax.set_xlim(0, upper)
    ax.set_ylim(0, upper)
    ax.set_xlabel("Mean log expression (healthy)")
    ax.set_ylabel("Mean log expression (tumor)")
    title = "Marker mean expression"
    if corr is not None and not np.isnan(corr.get("spearman_r", np.nan)):
        title += f"\nSpearman rho = {corr['spearman_r']:.2f}, Pearson r = {corr['pearson_r']:.2f}"
    ax.set_title(title)
    fig.tight_layout()
    return fig


def coexpression_heatmap(matrix: pd.DataFrame, title: str = "Marker co-expression") -> Figure:
    n = len(matrix)
    fig, ax = plt.subplots(figsize=(max(4, 0.35 * n + 2), max(4, 0.35 * n + 1.5)))
    im = ax.imshow(matrix.to_numpy(dtype=float), cmap="RdBu_r", vmin=-1, vmax=1)
    ax.set_xticks(range(n))
    ax.set_xticklabels(matrix.columns, rotation=90, fontsize=7)
    ax.set_yticks(range(n))
    ax.set_yticklabels(matrix.index, fontsize=7)
    fig.colorbar(im, ax=ax, shrink=0.7, label="correlation")
    ax.set_title(title)
    fig.tight_layout()
    return fig


def panel_score_violins(tumor, healthy, panels: Sequence[MarkerPanel]) -> Figure:
    """Side-by-side score distributions for every panel scored in both datasets."""
    cols = [
        (p.name, score_column(p.name))
        for p in panels
        if score_column(p.name) in tumor.obs and score_column(p.name) in healthy.obs
    ]
    if not cols:
        raise ValueError("No panel scores shared by both datasets; score panels first.")

    n_cols = min(4, len(cols))
    n_rows = int(np.ceil(len(cols) / n_cols))
    fig, axes = plt.subplots(n_rows, n_cols, figsize=(3.2 * n_cols, 3 * n_rows), squeeze=False)
    for ax, (name, col) in zip(axes.flat, cols):
        parts = ax.violinplot(
            [tumor.obs[col].to_numpy(dtype=float), healthy.obs[col].to_numpy(dtype=float)],
            showmedians=True,
        )
        for body, cond in zip(parts["bodies"], (TUMOR, HEALTHY)):
            body.set_facecolor(CONDITION_COLORS[cond])
            body.set_alpha(0.6)
        ax.set_xticks([1, 2])
        ax.set_xticklabels([TUMOR, HEALTHY])
        ax.set_title(name)
    for ax in list(axes.flat)[len(cols):]:
        ax.axis("off")
    fig.tight_layout()
    return fig


def save_figure(fig: Figure, path: Union[str, Path], dpi: int = 150) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(path, dpi=dpi, bbox_inches="tight")
    plt.close(fig)
    return path
