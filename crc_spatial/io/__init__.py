"""Dataset loading and logging helpers."""

from .loading import (
    dataset_summary,
    has_image,
    has_spatial,
    load_dataset,
    load_demo,
    load_from_config,
)
from .logging import get_logger, log_json, write_run_metadata

__all__ = [
    "dataset_summary",
    "has_image",
    "has_spatial",
    "load_dataset",
    "load_demo",
    "load_from_config",
    "get_logger",
    "log_json",
    "write_run_metadata",
]
