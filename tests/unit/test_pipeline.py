"""Tests for the end-to-end analysis and its command line entry point."""

import json
import subprocess
import sys
from pathlib import Path

import pandas as pd
import pytest

from crc_spatial.cli import build_parser, config_from_args, main
from crc_spatial.comparison import DOWN, UP
from crc_spatial.pipeline import compare_datasets, run_analysis
from crc_spatial.report import build_report
from tests.fixtures import create_visium_adata

REPO_ROOT = Path(__file__).resolve().parents[2]

SMALL_CONFIG_YAML = """\
analysis:
  qc:
    min_counts: 50
    min_genes: 20
    max_pct_mt: 50.0
    min_spots_per_gene: 3
  preprocess:
    n_top_genes: 100
    n_comps: 15
    n_pcs: 10
    n_neighbors: 10
    resolution: 0.5
  figure_dpi: 40
"""


class TestCompareDatasets:
    def test_marker_calls(self, processed_pair, small_config):
        tumor, healthy = processed_pair
        result = compare_datasets(tumor, healthy, small_config)

        calls = result.marker_table.set_index("gene")["direction"]
        assert calls["CEACAM5"] == UP
        assert calls["MKI67"] == UP
        assert calls["CA1"] == DOWN
        assert calls["MUC2"] == DOWN
        assert "AXIN2" in result.missing_markers["tumor"]
        assert result.marker_table.set_index("gene").loc["CEACAM5", "panel"] == "epithelial_tumor"

        assert set(result.cluster_annotations) == {"tumor", "healthy"}
        assert set(result.coexpression["tumor"].columns) == set(result.marker_table["gene"])
        assert result.genome_correlation["n"] == tumor.raw.n_vars
        assert result.condition_de is not None

        report = build_report(result.report_context(small_config))
        assert "## Interpretation" in report


class TestRunAnalysis:
    def test_writes_artifacts(self, tmp_path, tumor_adata, healthy_adata, small_config):
        outdir = tmp_path / "out"
        result = run_analysis(
            small_config, outdir, tumor=tumor_adata, healthy=healthy_adata, write_h5ad=True
        )

        for rel in (
            "report.md",
            "tables/marker_comparison.csv",
            "tables/panel_score_comparison.csv",
            "tables/condition_de.csv",
            "tables/correlations.csv",
            "tables/tumor_cluster_annotation.csv",
            "tables/healthy_cluster_markers.csv",
            "tables/tumor_cluster_sizes.csv",
            "figures/marker_log2fc_bars.png",
            "figures/marker_mean_scatter.png",
            "figures/tumor_spatial_leiden.png",
            "figures/healthy_qc_violins.png",
            "figures/panel_score_violins.png",
            "adata/tumor.h5ad",
            "adata/healthy.h5ad",
            "logs/run_metadata.json",
        ):
            assert (outdir / rel).exists(), f"Missing expected artifact: {rel}"

        table = pd.read_csv(outdir / "tables/marker_comparison.csv")
        assert len(table) == len(result.marker_table)

        meta = json.loads((outdir / "logs/run_metadata.json").read_text())
        assert meta["config"]["qc"]["min_counts"] == 50
        assert set(meta["preprocess"]) == {"tumor", "healthy"}

        report = (outdir / "report.md").read_text()
        assert "## Caveats" in report
        assert "tumor" in report

    def test_skips_spatial_figures_without_coordinates(self, tmp_path, small_config):
        tumor = create_visium_adata("tumor", seed=3, include_spatial=False)
        healthy = create_visium_adata("healthy", seed=4, include_spatial=False)
        outdir = tmp_path / "out"
        run_analysis(small_config, outdir, tumor=tumor, healthy=healthy, write_h5ad=False)
        assert (outdir / "figures" / "tumor_umap_leiden.png").exists()
        assert not (outdir / "figures" / "tumor_spatial_leiden.png").exists()
        assert not (outdir / "adata").exists()


class TestCli:
    def test_config_from_args(self, tmp_path):
        args = build_parser().parse_args(
            ["--tumor", "t.h5ad", "--healthy", "h.h5ad", "--resolution", "0.4", "--n-pcs", "12"]
        )
        config = config_from_args(args)
        assert config.tumor.path == "t.h5ad"
        assert config.tumor.demo is None
        assert config.healthy.path == "h.h5ad"
        assert config.preprocess.resolution == 0.4
        assert config.preprocess.n_pcs == 12

    def test_missing_healthy_is_usage_error(self):
        with pytest.raises(SystemExit) as exc:
            main(["--tumor", "t.h5ad"])
        assert exc.value.code == 2

    def test_bad_resolution(self):
        with pytest.raises(SystemExit) as exc:
            main(["--tumor", "t.h5ad", "--healthy", "h.h5ad", "--resolution", "0"])
        assert exc.value.code == 2

    def test_missing_file_returns_1(self, tmp_path):
        code = main(
            [
                "--tumor", str(tmp_path / "missing_tumor.h5ad"),
                "--healthy", str(tmp_path / "missing_healthy.h5ad"),
                "--outdir", str(tmp_path / "out"),
            ]
        )
        assert code == 1
        assert list((tmp_path / "out" / "logs").glob("analysis_*.log"))

    def test_module_smoke(self, tmp_path):
        create_visium_adata("tumor", seed=0).write_h5ad(tmp_path / "tumor.h5ad")
        create_visium_adata("healthy", seed=1).write_h5ad(tmp_path / "healthy.h5ad")
        config = tmp_path / "config.yaml"
        config.write_text(SMALL_CONFIG_YAML)
        outdir = tmp_path / "outputs"

        cmd = [
            sys.executable,
            "-m",
            "crc_spatial",
            "--config", str(config),
            "--tumor", str(tmp_path / "tumor.h5ad"),
            "--healthy", str(tmp_path / "healthy.h5ad"),
            "--outdir", str(outdir),
            "--no-h5ad",
        ]
        subprocess.run(cmd, cwd=REPO_ROOT, check=True)

        for rel in ("report.md", "tables/marker_comparison.csv", "logs/run_metadata.json"):
            assert (outdir / rel).exists(), f"Missing expected artifact: {rel}"
        assert not (outdir / "adata").exists()
