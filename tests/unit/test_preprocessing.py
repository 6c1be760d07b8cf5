"""Unit tests for the preprocessing chain."""

import numpy as np
import pytest

from crc_spatial.config import QCConfig
from crc_spatial.preprocessing import (
    annotate_qc,
    cluster_and_embed,
    completed_steps,
    describe,
    filter_spots,
    is_done,
    normalize,
    pcs_for_variance,
    run_pca,
    run_standard_pipeline,
    scale,
    select_hvg,
)

LOOSE_QC = QCConfig(min_counts=50, min_genes=20, max_pct_mt=50.0, min_spots_per_gene=3)


class TestQC:
    def test_annotate_qc_flags(self, tumor_adata):
        annotate_qc(tumor_adata)
        assert tumor_adata.var.loc["MT-CO1", "mt"]
        assert tumor_adata.var.loc["RPS3", "ribo"]
        assert not tumor_adata.var.loc["EPCAM", "mt"]
        for col in ("total_counts", "n_genes_by_counts", "pct_counts_mt"):
            assert col in tumor_adata.obs
        assert is_done(tumor_adata, "qc")

    def test_filter_requires_qc(self, tumor_adata):
        with pytest.raises(ValueError, match="QC metrics"):
            filter_spots(tumor_adata, LOOSE_QC)

    def test_filter_removes_low_count_spots(self, tumor_adata):
        tumor_adata.X[:5] = 0
        tumor_adata.X[:5, 0] = 3
        annotate_qc(tumor_adata)
        filtered, summary = filter_spots(tumor_adata, LOOSE_QC)
        assert summary.n_spots_before == tumor_adata.n_obs
        assert summary.n_spots_after == tumor_adata.n_obs - 5
        assert summary.removed_low_counts == 5
        assert filtered.n_obs == summary.n_spots_after
        assert is_done(filtered, "filter")
        # input left untouched
        assert not is_done(tumor_adata, "filter")

    def test_filter_everything_raises(self, tumor_adata):
        annotate_qc(tumor_adata)
        with pytest.raises(ValueError, match="removed every spot"):
            filter_spots(tumor_adata, QCConfig(min_counts=10**9))


class TestStepOrder:
    def test_hvg_before_normalize(self, tumor_adata):
        annotate_qc(tumor_adata)
        with pytest.raises(ValueError, match="Normalization"):
            select_hvg(tumor_adata, 50)

    def test_normalize_twice(self, tumor_adata):
        annotate_qc(tumor_adata)
        normalize(tumor_adata)
        assert "counts" in tumor_adata.layers
        assert tumor_adata.raw is not None
        with pytest.raises(ValueError, match="already"):
            normalize(tumor_adata)

    def test_scale_before_hvg(self, tumor_adata):
        annotate_qc(tumor_adata)
        normalize(tumor_adata)
        with pytest.raises(ValueError, match="HVG"):
            scale(tumor_adata)
        assert not is_done(tumor_adata, "scale")

    def test_graph_before_pca(self, tumor_adata):
        annotate_qc(tumor_adata)
        normalize(tumor_adata)
        with pytest.raises(ValueError, match="PCA"):
            cluster_and_embed(tumor_adata)

    def test_steps_recorded_in_order(self, tumor_adata):
        annotate_qc(tumor_adata)
        adata, _ = filter_spots(tumor_adata, LOOSE_QC)
        normalize(adata)
        n_hvg = select_hvg(adata, n_top_genes=10**6)
        assert n_hvg <= adata.n_vars
        scale(adata)
        with pytest.raises(ValueError, match="already"):
            scale(adata)
        assert completed_steps(adata) == ["qc", "filter", "normalize", "hvg", "scale"]


class TestPCA:
    def _scaled(self, adata):
        annotate_qc(adata)
        normalize(adata)
        select_hvg(adata, n_top_genes=50)
        scale(adata)
        return adata

    def test_pca_before_scaling(self, tumor_adata):
        annotate_qc(tumor_adata)
        normalize(tumor_adata)
        select_hvg(tumor_adata, n_top_genes=50)
        with pytest.raises(ValueError, match="Scaling"):
            run_pca(tumor_adata, n_comps=5)
        assert "X_pca" not in tumor_adata.obsm

    def test_n_comps_clamped(self, tumor_adata):
        adata = self._scaled(tumor_adata[:20].copy())
        n = run_pca(adata, n_comps=50, use_highly_variable=False)
        assert n == 19
        assert adata.obsm["X_pca"].shape[1] == 19

    def test_hvg_required_when_forced(self, tumor_adata):
        adata = self._scaled(tumor_adata)
        del adata.var["highly_variable"]
        with pytest.raises(ValueError, match="HVG"):
            run_pca(adata, n_comps=5, use_highly_variable=True)

    def test_pcs_for_variance(self, tumor_adata):
        adata = tumor_adata
        adata.uns["pca"] = {"variance_ratio": np.array([0.5, 0.2, 0.1, 0.1, 0.05])}
        assert pcs_for_variance(adata, 0.5) == 1
        assert pcs_for_variance(adata, 0.75) == 3
        assert pcs_for_variance(adata, 0.99) == 5

    def test_pcs_for_variance_without_pca(self, tumor_adata):
        with pytest.raises(ValueError):
            pcs_for_variance(tumor_adata)


class TestStandardPipeline:
    def test_pipeline_outputs(self, tumor_adata, small_config):
        processed, result = run_standard_pipeline(tumor_adata, small_config)
        assert "leiden" in processed.obs
        assert "X_umap" in processed.obsm
        assert processed.raw is not None
        assert processed.layers["counts"].max() > 1
        assert result.n_clusters >= 2
        assert 0 < result.n_hvg == int(processed.var["highly_variable"].sum())
        assert result.n_pcs_used == 10
        assert 1 <= result.pcs_for_variance <= result.n_comps
        assert sum(result.cluster_sizes.values()) == processed.n_obs
        # raw counts input is not modified
        assert "leiden" not in tumor_adata.obs
        assert not completed_steps(tumor_adata)

    def test_describe_without_qc(self, processed_pair):
        tumor, _ = processed_pair
        result = describe(tumor)
        assert result.qc.n_spots_after == tumor.n_obs
        assert result.to_dict()["n_clusters"] == result.n_clusters
