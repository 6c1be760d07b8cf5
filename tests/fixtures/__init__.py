"""Synthetic Visium-like datasets for tests."""

from .mock_adata import (
    HEALTHY_UP,
    TUMOR_UP,
    create_lognorm_pair,
    create_visium_adata,
    write_10x_h5,
)

__all__ = [
    "HEALTHY_UP",
    "TUMOR_UP",
    "create_lognorm_pair",
    "create_visium_adata",
    "write_10x_h5",
]
