"""Linear tumor vs healthy analysis: load -> preprocess -> compare -> report."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import pandas as pd

from . import plotting
from .comparison import (
    DOWN,
    UP,
    coexpression,
    compare_markers,
    compare_panel_scores,
    condition_de,
    profile_correlation,
    shared_gene_correlation,
)
from .config import CONDITIONS, HEALTHY, TUMOR, AnalysisConfig
from .io.loading import dataset_summary, has_spatial, load_from_config
from .io.logging import write_run_metadata
from .markers import annotate_clusters, cluster_top_markers, resolve_genes, score_panels
from .preprocessing import PreprocessResult, run_standard_pipeline
from .report import ReportContext, build_report


@dataclass
class AnalysisResult:
    datasets: Dict[str, Any] = field(default_factory=dict)
    summaries: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    preprocess: Dict[str, PreprocessResult] = field(default_factory=dict)
    scored_panels: Dict[str, Dict[str, str]] = field(default_factory=dict)
    cluster_annotations: Dict[str, pd.DataFrame] = field(default_factory=dict)
    cluster_markers: Dict[str, pd.DataFrame] = field(default_factory=dict)
    missing_markers: Dict[str, List[str]] = field(default_factory=dict)
    marker_table: Optional[pd.DataFrame] = None
    marker_correlation: Dict[str, float] = field(default_factory=dict)
    genome_correlation: Dict[str, float] = field(default_factory=dict)
    coexpression: Dict[str, pd.DataFrame] = field(default_factory=dict)
    panel_table: Optional[pd.DataFrame] = None
    condition_de: Optional[pd.DataFrame] = None
    report: str = ""
    outputs: Dict[str, Path] = field(default_factory=dict)

    def report_context(self, config: AnalysisConfig) -> ReportContext:
        return ReportContext(
            panels=config.panels,
            marker_table=self.marker_table,
            marker_correlation=self.marker_correlation,
            genome_correlation=self.genome_correlation or None,
            panel_table=self.panel_table,
            summaries=self.summaries,
            preprocess={k: v.to_dict() for k, v in self.preprocess.items()},
            cluster_annotations=self.cluster_annotations,
            missing_markers=self.missing_markers,
            alpha=config.comparison.alpha,
            min_log2fc=config.comparison.min_log2fc,
        )


def compare_datasets(
    tumor,
    healthy,
    config: Optional[AnalysisConfig] = None,
    logger: Optional[logging.Logger] = None,
    result: Optional[AnalysisResult] = None,
) -> AnalysisResult:
    """Run the comparison on two preprocessed (clustered) datasets.

    Scores panels, annotates clusters and fills the statistical tables of
    ``result``. Shared by the pipeline and the web app.
    """
    config = config or AnalysisConfig()
    log = logger or logging.getLogger(__name__)
    result = result or AnalysisResult()
    datasets = {TUMOR: tumor, HEALTHY: healthy}
    result.datasets.update(datasets)

    genes = config.all_marker_genes()
    for cond, adata in datasets.items():
        _, missing = resolve_genes(adata, genes)
        result.missing_markers[cond] = missing
        if missing:
            log.warning("[%s] %d marker genes not measured: %s", cond, len(missing), ", ".join(missing))
        result.scored_panels[cond] = score_panels(adata, config.panels, config.preprocess.random_state)
        if "leiden" in adata.obs and result.scored_panels[cond]:
            result.cluster_annotations[cond] = annotate_clusters(adata, config.panels)

    result.marker_table = compare_markers(
        tumor, healthy, genes, config.comparison, gene_panels=config.gene_to_panel()
    )
    result.marker_correlation = profile_correlation(result.marker_table)
    result.genome_correlation = shared_gene_correlation(tumor, healthy)
    log.info(
        "Marker profile Spearman rho = %.3f, genome-wide rho = %.3f",
        result.marker_correlation["spearman_r"],
        result.genome_correlation["spearman_r"],
    )

    shared = result.marker_table["gene"].tolist()
    for cond, adata in datasets.items():
        result.coexpression[cond] = coexpression(adata, shared, config.comparison.coexpression_method)
    result.panel_table = compare_panel_scores(tumor, healthy, config.panels, config.comparison)
    result.condition_de = condition_de(tumor, healthy)
    return result


def _top_genes(table: pd.DataFrame, direction: str, n: int = 3) -> List[str]:
    rows = table[table["direction"] == direction]
    rows = rows.sort_values("log2fc", ascending=(direction == DOWN))
    return rows["gene"].head(n).tolist()


def _write_figures(result: AnalysisResult, config: AnalysisConfig, fig_dir: Path, log) -> Dict[str, Path]:
    dpi = config.figure_dpi
    written = {}

    def save(name, fig):
        written[name] = plotting.save_figure(fig, fig_dir / f"{name}.png", dpi=dpi)

    table = result.marker_table
    highlight = _top_genes(table, UP) + _top_genes(table, DOWN)

    for cond, adata in result.datasets.items():
        save(f"{cond}_qc_violins", plotting.qc_violins(adata))
        save(
            f"{cond}_pca_elbow",
            plotting.variance_elbow(adata, n_pcs=30, target=config.preprocess.variance_target),
        )
        save(f"{cond}_umap_leiden", plotting.umap_map(adata, "leiden", f"{cond}: Leiden clusters"))
        if "panel_annotation" in adata.obs:
            save(f"{cond}_umap_panel_annotation", plotting.umap_map(adata, "panel_annotation"))
        present, _ = resolve_genes(adata, table["gene"])
        if present:
            save(f"{cond}_marker_dotplot", plotting.marker_dotplot(adata, present, "leiden"))

        if not has_spatial(adata):
            log.warning("[%s] no spatial coordinates; skipping spatial maps", cond)
            continue
        save(f"{cond}_spatial_leiden", plotting.spatial_map(adata, "leiden", f"{cond}: Leiden clusters"))
        for gene in highlight:
            save(f"{cond}_spatial_{gene}", plotting.spatial_map(adata, gene, f"{cond}: {gene}"))
        for panel, col in result.scored_panels.get(cond, {}).items():
            save(f"{cond}_spatial_{col}", plotting.spatial_map(adata, col, f"{cond}: {panel} score"))

    save("marker_log2fc_bars", plotting.comparison_bars(table))
    save("marker_mean_scatter", plotting.mean_scatter(table, result.marker_correlation))
    for cond, matrix in result.coexpression.items():
        save(f"{cond}_coexpression", plotting.coexpression_heatmap(matrix, f"{cond}: marker co-expression"))
    if result.panel_table is not None and not result.panel_table.empty:
        save("panel_score_violins", plotting.panel_score_violins(
            result.datasets[TUMOR], result.datasets[HEALTHY], config.panels
        ))
    return written


def _write_tables(result: AnalysisResult, table_dir: Path) -> Dict[str, Path]:
    table_dir.mkdir(parents=True, exist_ok=True)
    written = {}

    def save(name, df, index=False):
        path = table_dir / f"{name}.csv"
        df.to_csv(path, index=index)
        written[name] = path

    save("marker_comparison", result.marker_table)
    save("panel_score_comparison", result.panel_table)
    save("condition_de", result.condition_de)
    save(
        "correlations",
        pd.DataFrame(
            [
                {"profile": "marker_means", **result.marker_correlation},
                {"profile": "pseudobulk_all_shared_genes", **result.genome_correlation},
            ]
        ),
    )
    for cond in CONDITIONS:
        if cond in result.coexpression:
            save(f"{cond}_coexpression", result.coexpression[cond], index=True)
        if cond in result.cluster_annotations:
            save(f"{cond}_cluster_annotation", result.cluster_annotations[cond])
        if cond in result.cluster_markers:
            save(f"{cond}_cluster_markers", result.cluster_markers[cond])
        if cond in result.preprocess:
            sizes = result.preprocess[cond].cluster_sizes
            save(
                f"{cond}_cluster_sizes",
                pd.DataFrame({"cluster": list(sizes), "n_spots": list(sizes.values())}),
            )
    return written


def run_analysis(
    config: Optional[AnalysisConfig] = None,
    outdir: Optional[Path] = None,
    logger: Optional[logging.Logger] = None,
    *,
    tumor=None,
    healthy=None,
    write_h5ad: bool = True,
) -> AnalysisResult:
    """Run the full analysis and write tables, figures and the report.

    Parameters
    ----------
    config : AnalysisConfig, optional
        Analysis settings; defaults are used when omitted.
    outdir : Path, optional
        Output root; defaults to ``config.output_dir``.
    logger : logging.Logger, optional
        Logger for progress messages.
    tumor, healthy : AnnData, optional
        Raw-count datasets to use instead of loading from ``config``.
    write_h5ad : bool
        Also write the processed AnnData objects.
    """
    config = config or AnalysisConfig()
    log = logger or logging.getLogger(__name__)
    outdir = Path(outdir or config.output_dir)
    outdir.mkdir(parents=True, exist_ok=True)

    raw = {
        TUMOR: tumor if tumor is not None else load_from_config(config.tumor),
        HEALTHY: healthy if healthy is not None else load_from_config(config.healthy),
    }

    result = AnalysisResult()
    processed = {}
    for cond, adata in raw.items():
        if "condition" not in adata.obs:
            adata.obs["condition"] = pd.Categorical([cond] * adata.n_obs)
        adata.uns.setdefault("condition", cond)
        result.summaries[cond] = dataset_summary(adata)
        processed[cond], result.preprocess[cond] = run_standard_pipeline(adata, config, log)

    compare_datasets(processed[TUMOR], processed[HEALTHY], config, log, result)

    for cond, adata in processed.items():
        try:
            result.cluster_markers[cond] = cluster_top_markers(adata, "leiden", n_genes=20)
        except ValueError as e:
            log.warning("[%s] skipping cluster markers: %s", cond, e)

    result.outputs.update(_write_tables(result, outdir / "tables"))
    result.outputs.update(_write_figures(result, config, outdir / "figures", log))

    result.report = build_report(result.report_context(config))
    report_path = outdir / "report.md"
    report_path.write_text(result.report, encoding="utf-8")
    result.outputs["report"] = report_path
    log.info("Wrote report to %s", report_path)

    if write_h5ad:
        for cond, adata in processed.items():
            path = outdir / "adata" / f"{cond}.h5ad"
            path.parent.mkdir(parents=True, exist_ok=True)
            adata.write_h5ad(path)
            result.outputs[f"{cond}_h5ad"] = path

    result.outputs["metadata"] = write_run_metadata(
        outdir / "logs" / "run_metadata.json",
        {
            "config": config.to_dict(),
            "outdir": str(outdir),
            "summaries": result.summaries,
            "preprocess": {k: v.to_dict() for k, v in result.preprocess.items()},
            "marker_correlation": result.marker_correlation,
            "genome_correlation": result.genome_correlation,
        },
    )
    return result
