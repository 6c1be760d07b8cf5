"""Load tumor and healthy spatial datasets into AnnData."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import pandas as pd
import scanpy as sc

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]

VISIUM_COUNT_FILE = "filtered_feature_bc_matrix.h5"
SUPPORTED_SUFFIXES = (".h5ad", ".h5", ".loom")


def _tag(adata, condition: str, source: str):
    adata.var_names_make_unique()
    adata.obs["condition"] = pd.Categorical([condition] * adata.n_obs)
    adata.obs["sample"] = pd.Categorical([f"{condition}:{Path(source).name or source}"] * adata.n_obs)
    adata.uns["source"] = str(source)
    adata.uns["condition"] = condition
    return adata


def read_visium_dir(path: PathLike, library_id: Optional[str] = None):
    """Read a Space Ranger ``outs`` directory (counts + spatial folder)."""
    path = Path(path)
    if not (path / VISIUM_COUNT_FILE).exists():
        raise FileNotFoundError(
            f"{path} does not look like a Visium output directory "
            f"(missing {VISIUM_COUNT_FILE})"
        )
    return sc.read_visium(path, count_file=VISIUM_COUNT_FILE, library_id=library_id)


def load_dataset(source: PathLike, condition: str, *, library_id: Optional[str] = None):
    """Load one dataset and tag it with its condition.

    Parameters
    ----------
    source : PathLike
        Visium ``outs`` directory, or a ``.h5ad``, ``.h5`` or ``.loom`` file.
    condition : str
        Condition label stored in ``obs["condition"]`` (tumor or healthy).
    library_id : str, optional
        Library id for the Visium image metadata.

    Raises
    ------
    FileNotFoundError
        If the path does not exist.
    ValueError
        If the file type is not supported.
    """
    path = Path(source)
    if not path.exists():
        raise FileNotFoundError(f"Dataset not found: {path}")

    if path.is_dir():
        adata = read_visium_dir(path, library_id=library_id)
    elif path.suffix == ".h5ad":
        adata = sc.read_h5ad(path)
    elif path.suffix == ".h5":
        adata = sc.read_10x_h5(path)
    elif path.suffix == ".loom":
        adata = sc.read_loom(path)
    else:
        raise ValueError(
            f"Unsupported file type {path.suffix!r} for {path.name}; "
            f"expected a Visium directory or one of {', '.join(SUPPORTED_SUFFIXES)}"
        )

    logger.info("Loaded %s dataset from %s: %d spots x %d genes", condition, path, adata.n_obs, adata.n_vars)
    return _tag(adata, condition, str(path))


def load_demo(sample_id: str, condition: str):
    """Download (or reuse the cached copy of) a public 10x Visium sample."""
    adata = sc.datasets.visium_sge(sample_id=sample_id)
    logger.info("Loaded demo %s (%s): %d spots x %d genes", sample_id, condition, adata.n_obs, adata.n_vars)
    return _tag(adata, condition, sample_id)


def load_from_config(dataset) -> Any:
    """Load a dataset described by a :class:`~crc_spatial.config.DatasetConfig`."""
    if dataset.path:
        return load_dataset(dataset.path, dataset.label, library_id=dataset.library_id)
    if dataset.demo:
        return load_demo(dataset.demo, dataset.label)
    raise ValueError(f"No path or demo sample configured for the {dataset.label} dataset")


def has_spatial(adata) -> bool:
    return "spatial" in adata.obsm


def has_image(adata) -> bool:
    spatial = adata.uns.get("spatial", {})
    for lib in spatial.values():
        if lib.get("images"):
            return True
    return False


def dataset_summary(adata) -> Dict[str, Any]:
    return {
        "condition": adata.uns.get("condition"),
        "source": adata.uns.get("source"),
        "n_spots": int(adata.n_obs),
        "n_genes": int(adata.n_vars),
        "has_spatial": has_spatial(adata),
        "has_image": has_image(adata),
    }
