"""Logging utilities for the analysis pipeline.

Provides console plus timestamped file logging and JSON run records.
"""

from __future__ import annotations

import json
import logging
import platform
import sys
from datetime import datetime, timezone
from importlib import metadata
from pathlib import Path
from typing import Any, Dict, Optional, Union

PathLike = Union[str, Path]

LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

TRACKED_PACKAGES = [
    "scanpy",
    "anndata",
    "numpy",
    "pandas",
    "scipy",
    "statsmodels",
    "matplotlib",
    "leidenalg",
    "igraph",
    "umap-learn",
    "streamlit",
]


def get_timestamped_log_path(log_path: PathLike) -> Path:
    """Generate a timestamped log path from the base log path.

    Example: analysis.log -> analysis_20260118_080530.log
    """
    log_path = Path(log_path)
    timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
    suffix = log_path.suffix or ".log"
    return log_path.parent / f"{log_path.stem}_{timestamp}{suffix}"


def get_logger(
    name: str,
    log_path: Optional[PathLike] = None,
    level: int = logging.INFO,
    timestamped: bool = True,
) -> logging.Logger:
    """Return a logger writing to stderr and, optionally, to a file.

    Parameters
    ----------
    name : str
        Logger name.
    log_path : PathLike, optional
        Base path for the log file. No file handler when omitted.
    level : int
        Logging level (default: INFO).
    timestamped : bool
        Add a timestamp to the file name so previous logs are kept.

    Returns
    -------
    logging.Logger
        Configured logger. The file path, if any, is stored on
        ``logger.log_path``.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=DATE_FORMAT)

    stream = logging.StreamHandler()
    stream.setFormatter(formatter)
    logger.addHandler(stream)

    logger.log_path = None
    if log_path is not None:
        actual = get_timestamped_log_path(log_path) if timestamped else Path(log_path)
        actual.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(actual, mode="a", encoding="utf-8")
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)
        logger.log_path = actual

    return logger


def log_json(log_path: PathLike, record: Dict[str, Any]) -> None:
    """Append a JSON line to log_path."""
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("a", encoding="utf-8") as handle:
        handle.write(json.dumps(record, default=str))
        handle.write("\n")


def package_versions() -> Dict[str, Optional[str]]:
    versions = {}
    for pkg in TRACKED_PACKAGES:
        try:
            versions[pkg] = metadata.version(pkg)
        except metadata.PackageNotFoundError:
            versions[pkg] = None
    return versions


def write_run_metadata(path: PathLike, payload: Dict[str, Any]) -> Path:
    """Write run metadata (environment + payload) as pretty JSON."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    record = {
        "timestamp_utc": datetime.now(timezone.utc).isoformat(),
        "argv": sys.argv,
        "python_version": sys.version,
        "platform": platform.platform(),
        "packages": package_versions(),
    }
    record.update(payload)
    path.write_text(json.dumps(record, indent=2, sort_keys=True, default=str), encoding="utf-8")
    return path
