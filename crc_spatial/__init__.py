"""Spatial transcriptomics comparison of colorectal tumor and healthy intestine."""

__version__ = "0.1.0"

from .config import (
    CONDITIONS,
    DEFAULT_MARKER_PANELS,
    HEALTHY,
    TUMOR,
    AnalysisConfig,
    ComparisonConfig,
    DatasetConfig,
    MarkerPanel,
    PreprocessConfig,
    QCConfig,
)

__all__ = [
    "CONDITIONS",
    "DEFAULT_MARKER_PANELS",
    "HEALTHY",
    "TUMOR",
    "AnalysisConfig",
    "ComparisonConfig",
    "DatasetConfig",
    "MarkerPanel",
    "PreprocessConfig",
    "QCConfig",
]
