"""Unit tests for the tumor vs healthy statistics."""

import numpy as np
import pandas as pd
import pytest

from crc_spatial.comparison import (
    DOWN,
    NS,
    UP,
    coexpression,
    combine_conditions,
    compare_markers,
    compare_panel_scores,
    condition_de,
    expression_frame,
    profile_correlation,
    pseudobulk_means,
    shared_gene_correlation,
)
from crc_spatial.config import ComparisonConfig, MarkerPanel
from crc_spatial.markers import score_panels
from tests.fixtures import HEALTHY_UP, TUMOR_UP

GENES = ["UPGENE", "DOWNGENE", "FLATGENE", "ZEROGENE", "TUMORONLY"]


class TestCompareMarkers:
    def test_directions(self, lognorm_pair):
        tumor, healthy = lognorm_pair
        table = compare_markers(tumor, healthy, GENES, gene_panels={"UPGENE": "p1"})
        assert table["gene"].tolist() == ["UPGENE", "DOWNGENE", "FLATGENE", "ZEROGENE"]
        calls = dict(zip(table["gene"], table["direction"]))
        assert calls == {"UPGENE": UP, "DOWNGENE": DOWN, "FLATGENE": NS, "ZEROGENE": NS}
        assert table.loc[0, "panel"] == "p1"
        assert table.loc[1, "panel"] == ""

    def test_columns(self, lognorm_pair):
        tumor, healthy = lognorm_pair
        table = compare_markers(tumor, healthy, GENES)
        assert list(table.columns) == [
            "gene", "panel", "mean_tumor", "mean_healthy", "pct_tumor", "pct_healthy",
            "log2fc", "u_stat", "pval", "effect_size", "pval_adj", "direction",
        ]

    def test_constant_genes(self, lognorm_pair):
        tumor, healthy = lognorm_pair
        table = compare_markers(tumor, healthy, GENES).set_index("gene")
        n = tumor.n_obs * healthy.n_obs
        for gene in ("FLATGENE", "ZEROGENE"):
            assert table.loc[gene, "pval"] == 1.0
            assert table.loc[gene, "u_stat"] == n / 2
            assert table.loc[gene, "effect_size"] == 0.0
            assert table.loc[gene, "log2fc"] == 0.0
        assert table.loc["ZEROGENE", "pct_tumor"] == 0.0
        assert table.loc["FLATGENE", "pct_healthy"] == 1.0

    def test_effect_size_and_fold_change(self, lognorm_pair):
        tumor, healthy = lognorm_pair
        table = compare_markers(tumor, healthy, GENES).set_index("gene")
        assert table.loc["UPGENE", "effect_size"] == pytest.approx(1.0)
        assert table.loc["DOWNGENE", "effect_size"] == pytest.approx(-1.0)

        x = tumor[:, "UPGENE"].X.ravel()
        y = healthy[:, "UPGENE"].X.ravel()
        expected = np.log2((np.expm1(x).mean() + 0.1) / (np.expm1(y).mean() + 0.1))
        assert table.loc["UPGENE", "log2fc"] == pytest.approx(expected)

    def test_adjusted_pvals_not_below_raw(self, lognorm_pair):
        tumor, healthy = lognorm_pair
        table = compare_markers(tumor, healthy, GENES)
        assert (table["pval_adj"] >= table["pval"] - 1e-12).all()

    def test_fold_change_threshold(self, lognorm_pair):
        tumor, healthy = lognorm_pair
        strict = ComparisonConfig(min_log2fc=100.0)
        table = compare_markers(tumor, healthy, GENES, config=strict)
        assert (table["direction"] == NS).all()

    def test_case_insensitive_match(self, lognorm_pair):
        tumor, healthy = lognorm_pair
        healthy.var_names = [g.lower() for g in healthy.var_names]
        table = compare_markers(tumor, healthy, ["upgene"])
        assert table["gene"].tolist() == ["UPGENE"]
        assert table.loc[0, "direction"] == UP

    def test_no_shared_genes(self, lognorm_pair):
        tumor, healthy = lognorm_pair
        with pytest.raises(ValueError, match="measured in both"):
            compare_markers(tumor, healthy, ["TUMORONLY", "MISSING"])


class TestCorrelation:
    def test_profile_correlation(self):
        table = pd.DataFrame({"mean_tumor": [1.0, 2.0, 3.0, 4.0], "mean_healthy": [2.0, 4.0, 6.0, 8.5]})
        corr = profile_correlation(table)
        assert corr["n"] == 4
        assert corr["spearman_r"] == pytest.approx(1.0)
        assert corr["pearson_r"] > 0.99

    def test_too_few_genes(self):
        table = pd.DataFrame({"mean_tumor": [1.0, 2.0], "mean_healthy": [2.0, 1.0]})
        corr = profile_correlation(table)
        assert corr["n"] == 2
        assert np.isnan(corr["spearman_r"])
        assert np.isnan(corr["pearson_p"])

    def test_constant_profile(self):
        table = pd.DataFrame({"mean_tumor": [1.0, 1.0, 1.0], "mean_healthy": [2.0, 1.0, 3.0]})
        assert np.isnan(profile_correlation(table)["pearson_r"])

    def test_shared_gene_correlation(self, lognorm_pair):
        tumor, healthy = lognorm_pair
        corr = shared_gene_correlation(tumor, healthy)
        assert corr["n"] == 6

    def test_pseudobulk_means_upper_case(self, lognorm_pair):
        tumor, _ = lognorm_pair
        tumor.var_names = [g.lower() for g in tumor.var_names]
        means = pseudobulk_means(tumor)
        assert "UPGENE" in means.index
        assert means["FLATGENE"] == pytest.approx(1.0)

    def test_coexpression(self, lognorm_pair):
        tumor, _ = lognorm_pair
        matrix = coexpression(tumor, ["UPGENE", "NOISE1", "NOISE2"])
        assert matrix.shape == (3, 3)
        assert np.allclose(np.diag(matrix), 1.0)
        assert np.allclose(matrix.values, matrix.values.T)

    def test_coexpression_bad_method(self, lognorm_pair):
        tumor, _ = lognorm_pair
        with pytest.raises(ValueError, match="Unsupported"):
            coexpression(tumor, ["UPGENE"], method="cosine")

    def test_expression_frame_prefers_raw(self, lognorm_pair):
        tumor, _ = lognorm_pair
        tumor.raw = tumor
        subset = tumor[:, ["NOISE1"]].copy()
        frame = expression_frame(subset, ["UPGENE"])
        assert list(frame.columns) == ["UPGENE"]
        assert frame.shape[0] == tumor.n_obs


class TestPanelScores:
    def test_panel_score_comparison(self, lognorm_pair):
        tumor, healthy = lognorm_pair
        rng = np.random.default_rng(0)
        panels = [
            MarkerPanel("tumor_program", ["UPGENE"], expected_in_tumor="up"),
            MarkerPanel("differentiation", ["DOWNGENE"], expected_in_tumor="down"),
            MarkerPanel("absent", ["NOTAGENE"]),
        ]
        tumor.obs["tumor_program_score"] = rng.normal(1.0, 0.3, tumor.n_obs)
        healthy.obs["tumor_program_score"] = rng.normal(0.0, 0.3, healthy.n_obs)
        tumor.obs["differentiation_score"] = rng.normal(-0.5, 0.3, tumor.n_obs)
        healthy.obs["differentiation_score"] = rng.normal(0.5, 0.3, healthy.n_obs)

        table = compare_panel_scores(tumor, healthy, panels).set_index("panel")
        assert list(table.index) == ["tumor_program", "differentiation"]
        assert table.loc["tumor_program", "difference"] > 0
        assert table.loc["differentiation", "difference"] < 0
        assert table.loc["tumor_program", "effect_size"] > 0.8
        assert table.loc["tumor_program", "pval_adj"] < 0.05
        assert table.loc["tumor_program", "expected_in_tumor"] == "up"

    def test_scored_panels_compare(self, processed_pair):
        tumor, healthy = processed_pair
        panels = [MarkerPanel("tumor_program", TUMOR_UP), MarkerPanel("differentiation", HEALTHY_UP)]
        score_panels(tumor, panels)
        score_panels(healthy, panels)
        table = compare_panel_scores(tumor, healthy, panels)
        assert len(table) == 2
        assert table["pval_adj"].between(0, 1).all()

    def test_no_scores(self, lognorm_pair):
        tumor, healthy = lognorm_pair
        table = compare_panel_scores(tumor, healthy, [MarkerPanel("p", ["UPGENE"])])
        assert table.empty
        assert "pval_adj" in table.columns


class TestConditionDE:
    def test_combine_conditions(self, lognorm_pair):
        tumor, healthy = lognorm_pair
        combined = combine_conditions(tumor, healthy)
        assert combined.n_obs == tumor.n_obs + healthy.n_obs
        assert "TUMORONLY" not in combined.var_names
        assert set(combined.obs["condition"]) == {"tumor", "healthy"}

    def test_condition_de_direction(self, processed_pair):
        tumor, healthy = processed_pair
        de = condition_de(tumor, healthy)
        assert {"names", "scores", "logfoldchanges", "pvals_adj"} <= set(de.columns)
        top = set(de.sort_values("scores", ascending=False)["names"].head(15))
        bottom = set(de.sort_values("scores")["names"].head(15))
        assert "CEACAM5" in top
        assert "CA1" in bottom

    def test_condition_de_restricted(self, lognorm_pair):
        tumor, healthy = lognorm_pair
        de = condition_de(tumor, healthy, genes=["upgene", "DOWNGENE"])
        assert set(de["names"]) == {"UPGENE", "DOWNGENE"}
        scores = de.set_index("names")["scores"]
        assert scores["UPGENE"] > 0 > scores["DOWNGENE"]

    def test_condition_de_no_genes(self, lognorm_pair):
        tumor, healthy = lognorm_pair
        with pytest.raises(ValueError):
            condition_de(tumor, healthy, genes=["MISSING"])
