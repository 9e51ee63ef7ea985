"""Headless command-line entry point for batch PSR quantification."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import List, Optional

from .batch import process_folder
from .models import CanvasPolicy, PSRQuantError, PipelineConfig, ThresholdSet, load_config

logger = logging.getLogger(__name__)


def _pair(text: str):
    try:
        lower, upper = (int(v) for v in text.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected LOWER,UPPER but got '{text}'") from None
    return lower, upper


def build_argparser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="psrquant", description="Quantify Picrosirius Red signal in tissue micrographs")
    g_io = p.add_argument_group("I/O")
    g_io.add_argument("input_dir", help="Folder of raw RGB micrographs")
    g_io.add_argument("--output_dir", default=None, help="Output folder (default: <input_dir>/psrquant_results)")
    g_io.add_argument("--config", default=None, help="JSON parameters file; flags below are ignored when given")
    g_io.add_argument("--subset", default=None, help="1-based image subset, e.g. '1-3,7'")
    g_io.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    defaults = ThresholdSet()
    g_psr = p.add_argument_group("PSR bandpass (HSB, 0-255)")
    g_psr.add_argument("--hue", type=_pair, default=defaults.hue)
    g_psr.add_argument("--saturation", type=_pair, default=defaults.saturation)
    g_psr.add_argument("--brightness", type=_pair, default=defaults.brightness)

    g_art = p.add_argument_group("Artifacts")
    g_art.add_argument("--green", type=_pair, default=defaults.green)
    g_art.add_argument("--artifact_sigma", type=float, default=defaults.artifact_sigma)
    g_art.add_argument("--artifact_min_area", type=int, default=defaults.artifact_min_area)
    g_art.add_argument("--artifact_auto_baseline", action="store_true")

    g_tis = p.add_argument_group("Tissue")
    g_tis.add_argument("--tissue_sigma", type=float, default=defaults.tissue_sigma)
    g_tis.add_argument(
        "--canvas",
        choices=[c.value for c in CanvasPolicy if c != CanvasPolicy.MANUAL],
        default=CanvasPolicy.CORNERS.value,
        help="Canvas recolour policy (manual needs the GUI)",
    )
    return p


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    if args.config:
        config = load_config(args.config)
        if args.subset is not None:
            config.image_subset = args.subset
        return config
    thresholds = ThresholdSet(
        hue=args.hue,
        saturation=args.saturation,
        brightness=args.brightness,
        green=args.green,
        tissue_sigma=args.tissue_sigma,
        artifact_sigma=args.artifact_sigma,
        artifact_min_area=args.artifact_min_area,
        artifact_auto_baseline=args.artifact_auto_baseline,
    )
    return PipelineConfig(
        thresholds=thresholds,
        canvas_policy=args.canvas,
        auto_trace=True,
        image_subset=args.subset,
    )


def main(argv: Optional[List[str]] = None) -> int:
    args = build_argparser().parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    output_dir = args.output_dir or os.path.join(args.input_dir, "psrquant_results")
    try:
        config = config_from_args(args)
        count, log_str, _ = process_folder(args.input_dir, output_dir, config)
    except PSRQuantError as exc:
        logger.error("%s", exc)
        return 2
    print(log_str)
    return 0 if count else 1


if __name__ == "__main__":
    sys.exit(main())
