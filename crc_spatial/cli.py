"""Command line entry point for the headless analysis."""

from __future__ import annotations

import argparse
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional

_mpl_cache_dir = Path(tempfile.gettempdir()) / "matplotlib"
_mpl_cache_dir.mkdir(parents=True, exist_ok=True)
os.environ.setdefault("MPLCONFIGDIR", str(_mpl_cache_dir))

import matplotlib

matplotlib.use("Agg")

from .config import AnalysisConfig  # noqa: E402
from .io.logging import get_logger  # noqa: E402


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="crc_spatial",
        description="Compare marker expression between a colorectal tumor Visium "
        "section and a healthy intestine reference.",
    )
    parser.add_argument("--config", type=Path, default=None, help="YAML config file.")
    parser.add_argument("--tumor", type=Path, default=None,
                        help="Tumor dataset (Visium directory, .h5, .h5ad or .loom).")
    parser.add_argument("--tumor-demo", default=None,
                        help="10x demo sample id for the tumor (e.g. Parent_Visium_Human_ColorectalCancer).")
    parser.add_argument("--healthy", type=Path, default=None,
                        help="Healthy intestine dataset (Visium directory, .h5, .h5ad or .loom).")
    parser.add_argument("--outdir", type=Path, default=None, help="Output directory (default: outputs/).")
    parser.add_argument("--resolution", type=float, default=None, help="Leiden resolution.")
    parser.add_argument("--n-pcs", type=int, default=None, help="Number of PCs for the neighbor graph.")
    parser.add_argument("--no-h5ad", action="store_true", help="Do not write processed .h5ad files.")
    parser.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    return parser


def config_from_args(args: argparse.Namespace) -> AnalysisConfig:
    config = AnalysisConfig.from_yaml(args.config) if args.config else AnalysisConfig()
    if args.tumor is not None:
        config.tumor.path = str(args.tumor)
        config.tumor.demo = None
    elif args.tumor_demo:
        config.tumor.demo = args.tumor_demo
        config.tumor.path = None
    if args.healthy is not None:
        config.healthy.path = str(args.healthy)
    if args.outdir is not None:
        config.output_dir = str(args.outdir)
    if args.resolution is not None:
        if args.resolution <= 0:
            raise ValueError("--resolution must be positive.")
        config.preprocess.resolution = args.resolution
    if args.n_pcs is not None:
        if args.n_pcs <= 0:
            raise ValueError("--n-pcs must be a positive integer.")
        config.preprocess.n_pcs = args.n_pcs
    if not config.tumor.is_set:
        raise ValueError("No tumor dataset: pass --tumor, --tumor-demo or set tumor.path in the config.")
    if not config.healthy.is_set:
        raise ValueError("No healthy dataset: pass --healthy or set healthy.path in the config.")
    return config


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = config_from_args(args)
    except (FileNotFoundError, ValueError) as e:
        parser.error(str(e))

    outdir = Path(config.output_dir)
    logger = get_logger("crc_spatial", outdir / "logs" / "analysis.log", level=getattr(logging, args.log_level))

    from .pipeline import run_analysis

    try:
        result = run_analysis(config, outdir, logger, write_h5ad=not args.no_h5ad)
    except (FileNotFoundError, KeyError, ValueError) as e:
        logger.error("Analysis failed: %s", e)
        return 1

    print(f"Wrote analysis artifacts to {outdir}/ (report: {result.outputs['report']})")
    return 0
