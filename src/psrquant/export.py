from __future__ import annotations

import datetime
import json
import logging
import os
import tempfile
from typing import List, Optional, Tuple

import cv2
import numpy as np
import pandas as pd
import tifffile as tiff

from .models import PACKAGE_VERSION, OutputImage, PipelineConfig, ScaleInfo

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = (".tif", ".tiff", ".png", ".jpg", ".jpeg", ".bmp")

RESULT_COLUMNS = [
    "image_id",
    "filename",
    "psr_integrated_density",
    "psr_area",
    "psr_mean",
    "tissue_integrated_density",
    "tissue_area",
    "tissue_pixel_total",
    "fibrosis_fraction",
    "pixel_width",
    "pixel_height",
    "unit",
    "date_analyzed",
]

# TIFF ResolutionUnit values
_RESOLUTION_UNITS = {2: "inch", 3: "cm"}


def list_images(folder: str) -> List[str]:
    """Sorted image filenames (not paths) directly inside `folder`."""
    return sorted(
        f for f in os.listdir(folder)
        if f.lower().endswith(IMAGE_EXTENSIONS) and os.path.isfile(os.path.join(folder, f))
    )


def _to_rgb8(data: np.ndarray) -> np.ndarray:
    """Coerce a decoded raster to (H, W, 3) uint8."""
    if data.dtype != np.uint8:
        # Integer rasters are scaled by their type range, never by content.
        if np.issubdtype(data.dtype, np.integer):
            data = (data.astype(np.float64) * (255.0 / np.iinfo(data.dtype).max)).round()
        data = np.clip(data, 0, 255).astype(np.uint8)
    if data.ndim == 2:
        return np.stack([data] * 3, axis=-1)
    if data.ndim == 3 and data.shape[2] >= 3:
        return np.ascontiguousarray(data[:, :, :3])
    raise ValueError(f"Unsupported image shape {data.shape}; expected a 3-channel raster")


def _scale_from_tiff(tif: "tiff.TiffFile") -> ScaleInfo:
    page = tif.pages[0]
    xres = page.tags.get("XResolution")
    yres = page.tags.get("YResolution")
    if xres is None or yres is None:
        return ScaleInfo()
    x_num, x_den = xres.value
    y_num, y_den = yres.value
    if not x_num or not y_num:
        return ScaleInfo()
    ij_meta = tif.imagej_metadata or {}
    unit = ij_meta.get("unit")
    if not unit:
        res_unit = page.tags.get("ResolutionUnit")
        unit = _RESOLUTION_UNITS.get(int(res_unit.value) if res_unit is not None else 1, "pixel")
    return ScaleInfo(pixel_width=x_den / x_num, pixel_height=y_den / y_num, unit=str(unit))


def read_image(path: str) -> Tuple[np.ndarray, ScaleInfo]:
    """Load an image as RGB uint8 together with its physical pixel size.

    TIFF files are read with tifffile so resolution tags and the ImageJ unit
    are kept. Other formats go through OpenCV and get the default scale.
    """
    if not os.path.exists(path):
        raise FileNotFoundError(f"Could not read image: {path}")
    if path.lower().endswith((".tif", ".tiff")):
        with tiff.TiffFile(path) as tif:
            data = tif.pages[0].asarray()
            scale = _scale_from_tiff(tif)
        return _to_rgb8(data), scale
    img = cv2.imread(path, cv2.IMREAD_COLOR)
    if img is None:
        raise FileNotFoundError(f"Could not read image: {path}")
    return cv2.cvtColor(img, cv2.COLOR_BGR2RGB), ScaleInfo()


def read_scale(path: str) -> ScaleInfo:
    if not path.lower().endswith((".tif", ".tiff")):
        return ScaleInfo()
    with tiff.TiffFile(path) as tif:
        return _scale_from_tiff(tif)


def save_output_image(output: OutputImage, folder: str) -> str:
    """Write a single-channel output raster as a calibrated ImageJ TIFF."""
    path = os.path.join(folder, f"{output.image_id}_{output.kind}.tif")
    scale = output.scale
    tiff.imwrite(
        path,
        output.pixels.astype(np.uint8),
        imagej=True,
        resolution=(1.0 / scale.pixel_width, 1.0 / scale.pixel_height),
        metadata={"unit": scale.unit},
    )
    return path


def protect_existing_file(path: str) -> Optional[str]:
    """Rename an existing file aside so a new run never overwrites it.

    Returns the new name, or None when there was nothing to protect.
    """
    if not os.path.exists(path):
        return None
    stem, ext = os.path.splitext(path)
    n = 1
    while os.path.exists(f"{stem}_partial_{n}{ext}"):
        n += 1
    new_path = f"{stem}_partial_{n}{ext}"
    os.rename(path, new_path)
    logger.info("Kept previous results file as %s", new_path)
    return new_path


def save_results_table(rows, path: str) -> pd.DataFrame:
    """Write results rows to CSV via a temp file and an atomic rename."""
    df = rows if isinstance(rows, pd.DataFrame) else pd.DataFrame(list(rows))
    extra_cols = [col for col in df.columns if col not in RESULT_COLUMNS]
    df = df.reindex(columns=RESULT_COLUMNS + extra_cols)
    directory = os.path.dirname(os.path.abspath(path))
    fd, tmp_path = tempfile.mkstemp(prefix=".psr_results_", suffix=".csv", dir=directory)
    os.close(fd)
    try:
        df.to_csv(tmp_path, index=False)
        os.replace(tmp_path, path)
    except Exception:
        if os.path.exists(tmp_path):
            os.remove(tmp_path)
        raise
    return df


def write_parameters(config: PipelineConfig, path: str) -> dict:
    """Persist the parameters used for a run next to its results."""
    record = {
        "config": config.to_dict(),
        "date": datetime.datetime.now().strftime("%Y-%m-%d %H:%M:%S"),
        "psrquant_version": PACKAGE_VERSION,
    }
    with open(path, "w", encoding="utf-8") as f:
        json.dump(record, f, indent=2)
    return record
