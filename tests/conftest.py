"""Pytest configuration and shared fixtures."""

import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import pytest

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from crc_spatial.config import AnalysisConfig, ComparisonConfig, PreprocessConfig, QCConfig
from tests.fixtures import create_lognorm_pair, create_visium_adata


@pytest.fixture
def small_config() -> AnalysisConfig:
    """Thresholds sized for the 300-spot mock sections."""
    return AnalysisConfig(
        qc=QCConfig(min_counts=50, min_genes=20, max_pct_mt=50.0, min_spots_per_gene=3),
        preprocess=PreprocessConfig(
            n_top_genes=100, n_comps=15, n_pcs=10, n_neighbors=10, resolution=0.5
        ),
        comparison=ComparisonConfig(),
        figure_dpi=40,
    )


@pytest.fixture
def tumor_adata():
    return create_visium_adata("tumor", seed=0)


@pytest.fixture
def healthy_adata():
    return create_visium_adata("healthy", seed=1)


@pytest.fixture
def lognorm_pair():
    return create_lognorm_pair()


@pytest.fixture
def processed_pair(tumor_adata, healthy_adata, small_config):
    from crc_spatial.preprocessing import run_standard_pipeline

    tumor, _ = run_standard_pipeline(tumor_adata, small_config)
    healthy, _ = run_standard_pipeline(healthy_adata, small_config)
    return tumor, healthy
