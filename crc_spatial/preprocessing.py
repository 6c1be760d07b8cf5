"""Standard scanpy preprocessing for one spatial dataset.

QC -> filtering -> normalization -> HVG -> scaling -> PCA -> graph
(neighbors, Leiden, UMAP). Each step records itself in
``adata.uns["crc_spatial_steps"]`` and refuses to run before its
prerequisite.
"""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Dict, Optional, Tuple

import numpy as np
import scanpy as sc

from .config import AnalysisConfig, QCConfig

logger = logging.getLogger(__name__)

STEPS_KEY = "crc_spatial_steps"

PREREQUISITES = {
    "filter": "qc",
    "normalize": "qc",
    "hvg": "normalize",
    "scale": "hvg",
    "pca": "scale",
    "graph": "pca",
}

STEP_LABELS = {
    "qc": "QC metrics",
    "filter": "QC filtering",
    "normalize": "Normalization",
    "hvg": "HVG selection",
    "scale": "Scaling",
    "pca": "PCA",
    "graph": "Clustering & UMAP",
}


@dataclass
class QCSummary:
    n_spots_before: int = 0
    n_spots_after: int = 0
    n_genes_before: int = 0
    n_genes_after: int = 0
    removed_low_counts: int = 0
    removed_low_genes: int = 0
    removed_high_mt: int = 0

    def to_dict(self) -> Dict[str, int]:
        return asdict(self)


@dataclass
class PreprocessResult:
    qc: QCSummary = field(default_factory=QCSummary)
    n_hvg: int = 0
    n_comps: int = 0
    n_pcs_used: int = 0
    pcs_for_variance: int = 0
    cluster_sizes: Dict[str, int] = field(default_factory=dict)

    @property
    def n_clusters(self) -> int:
        return len(self.cluster_sizes)

    def to_dict(self) -> Dict[str, object]:
        out = asdict(self)
        out["n_clusters"] = self.n_clusters
        return out


def completed_steps(adata) -> list:
    return [str(s) for s in adata.uns.get(STEPS_KEY, [])]


def is_done(adata, step: str) -> bool:
    return step in completed_steps(adata)


def _mark(adata, step: str) -> None:
    steps = completed_steps(adata)
    if step not in steps:
        steps.append(step)
    adata.uns[STEPS_KEY] = steps


def _require(adata, step: str) -> None:
    needed = PREREQUISITES.get(step)
    if needed and not is_done(adata, needed):
        raise ValueError(
            f"{STEP_LABELS[step]} requires {STEP_LABELS[needed]} to be run first."
        )


def annotate_qc(adata, mt_prefix: str = "MT-") -> None:
    """Flag mitochondrial/ribosomal genes and compute per-spot QC metrics."""
    adata.var["mt"] = adata.var_names.str.upper().str.startswith(mt_prefix.upper())
    adata.var["ribo"] = adata.var_names.str.upper().str.match(r"^RP[SL]")
    sc.pp.calculate_qc_metrics(
        adata, qc_vars=["mt", "ribo"], percent_top=None, log1p=False, inplace=True
    )
    _mark(adata, "qc")


def filter_spots(adata, qc: QCConfig) -> Tuple[object, QCSummary]:
    """Drop low-quality spots and rarely detected genes.

    Returns a filtered copy and a summary of what was removed.
    """
    _require(adata, "filter")
    obs = adata.obs
    low_counts = obs["total_counts"] < qc.min_counts
    low_genes = obs["n_genes_by_counts"] < qc.min_genes
    high_mt = obs["pct_counts_mt"] > qc.max_pct_mt
    keep = ~(low_counts | low_genes | high_mt)

    summary = QCSummary(
        n_spots_before=int(adata.n_obs),
        n_genes_before=int(adata.n_vars),
        removed_low_counts=int(low_counts.sum()),
        removed_low_genes=int(low_genes.sum()),
        removed_high_mt=int(high_mt.sum()),
    )
    if not keep.any():
        raise ValueError(
            "QC filtering removed every spot; relax min_counts, min_genes or max_pct_mt."
        )

    filtered = adata[keep.to_numpy(), :].copy()
    sc.pp.filter_genes(filtered, min_cells=qc.min_spots_per_gene)
    if filtered.n_vars == 0:
        raise ValueError("Gene filtering removed every gene; lower min_spots_per_gene.")

    summary.n_spots_after = int(filtered.n_obs)
    summary.n_genes_after = int(filtered.n_vars)
    _mark(filtered, "filter")
    logger.info(
        "QC filtering: %d -> %d spots, %d -> %d genes",
        summary.n_spots_before,
        summary.n_spots_after,
        summary.n_genes_before,
        summary.n_genes_after,
    )
    return filtered, summary


def normalize(adata, target_sum: float = 1e4) -> None:
    """Depth-normalize and log-transform; keep counts and freeze ``raw``."""
    _require(adata, "normalize")
    if is_done(adata, "normalize"):
        raise ValueError("Normalization already performed; re-run QC filtering first.")
    adata.layers["counts"] = adata.X.copy()
    sc.pp.normalize_total(adata, target_sum=target_sum)
    sc.pp.log1p(adata)
    adata.raw = adata
    _mark(adata, "normalize")


def select_hvg(adata, n_top_genes: int = 2000, flavor: str = "seurat") -> int:
    _require(adata, "hvg")
    n_top = int(min(n_top_genes, adata.n_vars))
    sc.pp.highly_variable_genes(adata, n_top_genes=n_top, flavor=flavor)
    _mark(adata, "hvg")
    return int(adata.var["highly_variable"].sum())


def scale(adata, max_value: Optional[float] = 10.0) -> None:
    _require(adata, "scale")
    if is_done(adata, "scale"):
        raise ValueError("Scaling already performed; re-run QC filtering first.")
    sc.pp.scale(adata, max_value=max_value)
    _mark(adata, "scale")


def run_pca(adata, n_comps: int = 50, use_highly_variable: Optional[bool] = None) -> int:
    """Run PCA with the arpack solver.

    ``use_highly_variable=None`` uses HVGs when they have been selected.
    ``n_comps`` is clamped below the matrix rank limit. Returns the number
    of components computed.
    """
    _require(adata, "pca")
    has_hvg = "highly_variable" in adata.var.columns
    if use_highly_variable is None:
        use_highly_variable = has_hvg
    if use_highly_variable and not has_hvg:
        raise ValueError("PCA on HVGs requested but HVG selection has not been run.")

    n_features = int(adata.var["highly_variable"].sum()) if use_highly_variable else adata.n_vars
    n_comps = int(max(1, min(n_comps, min(adata.n_obs, n_features) - 1)))
    sc.tl.pca(
        adata,
        n_comps=n_comps,
        mask_var="highly_variable" if use_highly_variable else None,
        svd_solver="arpack",
    )
    _mark(adata, "pca")
    return n_comps


def pcs_for_variance(adata, target: float = 0.8) -> int:
    """Smallest number of PCs whose cumulative variance ratio reaches target."""
    if "pca" not in adata.uns:
        raise ValueError("PCA has not been run.")
    vr = np.asarray(adata.uns["pca"]["variance_ratio"], dtype=float)
    cum = vr.cumsum()
    return int(min(np.searchsorted(cum, target) + 1, len(vr)))


def cluster_and_embed(
    adata,
    n_pcs: int = 30,
    n_neighbors: int = 15,
    resolution: float = 1.0,
    random_state: int = 0,
) -> int:
    """Neighbors graph, Leiden clustering and UMAP. Returns the cluster count."""
    _require(adata, "graph")
    n_pcs = int(min(n_pcs, adata.obsm["X_pca"].shape[1]))
    n_neighbors = int(max(2, min(n_neighbors, adata.n_obs - 1)))
    sc.pp.neighbors(adata, n_neighbors=n_neighbors, n_pcs=n_pcs, random_state=random_state)
    sc.tl.leiden(
        adata,
        resolution=float(resolution),
        random_state=random_state,
        flavor="igraph",
        n_iterations=2,
        directed=False,
    )
    sc.tl.umap(adata, random_state=random_state)
    adata.uns["n_pcs_selected"] = n_pcs
    _mark(adata, "graph")
    return int(adata.obs["leiden"].nunique())


def run_standard_pipeline(
    adata,
    config: Optional[AnalysisConfig] = None,
    logger: Optional[logging.Logger] = None,
) -> Tuple[object, PreprocessResult]:
    """Run the whole preprocessing chain on a raw-count AnnData.

    The input is not modified; a processed copy is returned alongside a
    :class:`PreprocessResult`.
    """
    config = config or AnalysisConfig()
    log = logger or logging.getLogger(__name__)
    pp = config.preprocess
    label = adata.uns.get("condition", "dataset")

    adata = adata.copy()
    annotate_qc(adata, config.qc.mt_prefix)
    adata, qc_summary = filter_spots(adata, config.qc)
    log.info(
        "[%s] QC kept %d/%d spots and %d/%d genes",
        label,
        qc_summary.n_spots_after,
        qc_summary.n_spots_before,
        qc_summary.n_genes_after,
        qc_summary.n_genes_before,
    )

    normalize(adata, pp.target_sum)
    n_hvg = select_hvg(adata, pp.n_top_genes, pp.hvg_flavor)
    scale(adata, pp.scale_max_value)
    n_comps = run_pca(adata, pp.n_comps)
    n_var_pcs = pcs_for_variance(adata, pp.variance_target)
    log.info(
        "[%s] %d HVGs, %d PCs computed, %d PCs reach %.0f%% variance",
        label,
        n_hvg,
        n_comps,
        n_var_pcs,
        pp.variance_target * 100,
    )

    n_clusters = cluster_and_embed(
        adata,
        n_pcs=pp.n_pcs,
        n_neighbors=pp.n_neighbors,
        resolution=pp.resolution,
        random_state=pp.random_state,
    )
    log.info("[%s] Leiden (resolution=%.2f) found %d clusters", label, pp.resolution, n_clusters)

    return adata, describe(adata, qc_summary, pp.variance_target)


def describe(adata, qc_summary: Optional[QCSummary] = None, variance_target: float = 0.8) -> PreprocessResult:
    """Summarize what has been done to a processed dataset."""
    result = PreprocessResult(qc=qc_summary or QCSummary(
        n_spots_before=int(adata.n_obs),
        n_spots_after=int(adata.n_obs),
        n_genes_before=int(adata.n_vars),
        n_genes_after=int(adata.n_vars),
    ))
    if "highly_variable" in adata.var.columns:
        result.n_hvg = int(adata.var["highly_variable"].sum())
    if "X_pca" in adata.obsm:
        result.n_comps = int(adata.obsm["X_pca"].shape[1])
        result.pcs_for_variance = pcs_for_variance(adata, variance_target)
        result.n_pcs_used = int(adata.uns.get("n_pcs_selected", result.n_comps))
    if "leiden" in adata.obs:
        sizes = adata.obs["leiden"].value_counts().sort_index()
        result.cluster_sizes = {str(k): int(v) for k, v in sizes.items()}
    return result
