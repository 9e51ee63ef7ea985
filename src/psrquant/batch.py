from __future__ import annotations

import datetime
import logging
import os
import time
from typing import Callable, List, Optional, Tuple

from .analysis import check_providers, process_image
from .export import (
    list_images,
    protect_existing_file,
    read_image,
    save_output_image,
    save_results_table,
    write_parameters,
)
from .models import ConfigurationError, PipelineConfig, SegmentationError, parse_image_subset

logger = logging.getLogger(__name__)

PSR_DIRNAME = "psr_signal"
TISSUE_DIRNAME = "total_tissue"
TABLES_DIRNAME = "tables"
RESULTS_FILENAME = "psr_results.csv"
PARAMETERS_FILENAME = "parameters_used.json"


def output_paths(output_folder: str) -> dict:
    return {
        "psr_signal": os.path.join(output_folder, PSR_DIRNAME),
        "total_tissue": os.path.join(output_folder, TISSUE_DIRNAME),
        "tables": os.path.join(output_folder, TABLES_DIRNAME),
        "results": os.path.join(output_folder, TABLES_DIRNAME, RESULTS_FILENAME),
        "parameters": os.path.join(output_folder, TABLES_DIRNAME, PARAMETERS_FILENAME),
    }


def process_folder(
    input_folder: str,
    output_folder: str,
    config: PipelineConfig,
    click_provider=None,
    selection_provider=None,
    progress: Optional[Callable[[int, int, str], None]] = None,
) -> Tuple[int, str, List[dict]]:
    """
    Quantify PSR signal for every image in `input_folder`.

    Images are processed one at a time. For each image the PSR-signal raster
    and the total-tissue mask are written as calibrated TIFFs and one row is
    appended to the results table, which is rewritten after every image so an
    interrupted run still leaves complete rows behind. A results file from an
    earlier run is renamed aside rather than overwritten.

    Args:
        input_folder: Directory containing the raw micrographs.
        output_folder: Destination for the psr_signal/, total_tissue/ and
            tables/ subfolders.
        config: Thresholds and canvas/trace policies for the run.
        click_provider: Answers manual canvas clicks (manual canvas policy).
        selection_provider: Answers manual tissue selection (auto_trace off).
        progress: Optional callback receiving (position, total, filename)
            before each image.

    Returns:
        A tuple `(count, log_str, rows)` where `count` is the number of images
        processed, `log_str` is a newline-separated log and `rows` are the
        results-table rows.

    Raises:
        ConfigurationError: Invalid subset, missing interactive provider or
            two selected images with the same filename stem; raised before
            any image is processed.
        SegmentationError: An image produced no tissue selection. The run
            stops; rows written so far stay in the results table.
    """
    log_lines: List[str] = []
    check_providers(config, click_provider, selection_provider)
    files = list_images(input_folder)
    if not files:
        log_lines.append(f"No images found in {input_folder}")
        return 0, "\n".join(log_lines), []
    selected = [files[i] for i in parse_image_subset(config.image_subset, len(files))]
    # Output names are keyed by the filename stem.
    seen = {}
    for fname in selected:
        stem = os.path.splitext(fname)[0]
        if stem in seen:
            raise ConfigurationError(
                f"Images {seen[stem]} and {fname} share the name '{stem}'; their outputs would overwrite each other"
            )
        seen[stem] = fname

    paths = output_paths(output_folder)
    for key in ("psr_signal", "total_tissue", "tables"):
        os.makedirs(paths[key], exist_ok=True)
    previous = protect_existing_file(paths["results"])
    if previous:
        log_lines.append(f"Previous results kept as {os.path.basename(previous)}")
    write_parameters(config, paths["parameters"])

    current_date = datetime.datetime.now().strftime("%Y-%m-%d")
    rows: List[dict] = []
    started = time.perf_counter()
    for position, fname in enumerate(selected, start=1):
        if progress is not None:
            progress(position, len(selected), fname)
        image_id = os.path.splitext(fname)[0]
        raster, scale = read_image(os.path.join(input_folder, fname))
        try:
            result = process_image(
                image_id,
                raster,
                config,
                scale=scale,
                click_provider=click_provider,
                selection_provider=selection_provider,
            )
        except SegmentationError as exc:
            log_lines.append(f"Aborted at {fname}: {exc}")
            logger.error("Aborting run at %s: %s", fname, exc)
            raise
        save_output_image(result.psr_signal, paths["psr_signal"])
        save_output_image(result.total_tissue, paths["total_tissue"])
        row = result.to_row()
        row["filename"] = fname
        row["date_analyzed"] = current_date
        rows.append(row)
        save_results_table(rows, paths["results"])
        log_lines.append(
            f"Processed {fname} | PSR IntDen={row['psr_integrated_density']:.0f}"
            f" | tissue area={row['tissue_area']} | fraction={row['fibrosis_fraction']:.4f}"
        )
    elapsed = time.perf_counter() - started
    log_lines.append(f"All images processed. Total: {len(rows)} in {elapsed:.1f}s")
    logger.info("Processed %d image(s) in %.1fs", len(rows), elapsed)
    return len(rows), "\n".join(log_lines), rows
