from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Iterable, Optional, Tuple

import cv2
import numpy as np

from .models import (
    BACKGROUND_RGB,
    CanvasPolicy,
    ConfigurationError,
    Measurement,
    OutputImage,
    PipelineConfig,
    PipelineResult,
    ProcessingContext,
    RetryPolicy,
    ScaleInfo,
    SegmentationError,
    ThresholdSet,
)

logger = logging.getLogger(__name__)

ClickProvider = Callable[[np.ndarray], Iterable[Tuple[int, int]]]
SelectionProvider = Callable[[np.ndarray, np.ndarray], Optional[np.ndarray]]


def as_mask(image: np.ndarray) -> np.ndarray:
    """Coerce any single-channel array to a 0/255 uint8 mask."""
    return np.where(image > 0, 255, 0).astype(np.uint8)


# -----------------------------------------------------------------------------
# Canvas normalization
# -----------------------------------------------------------------------------

def _flood_fill_background(image: np.ndarray, x: int, y: int) -> None:
    """Recolour the exact-colour region around (x, y) to background, in place."""
    cv2.floodFill(image, None, (int(x), int(y)), BACKGROUND_RGB, (0, 0, 0), (0, 0, 0), 4)


def normalize_canvas(raster: np.ndarray, policy, click_provider: Optional[ClickProvider] = None) -> np.ndarray:
    """Set canvas pixels to the background colour using the selected policy.

    Args:
        raster: RGB uint8 image.
        policy: A `CanvasPolicy` (or its string value).
        click_provider: Callable returning (x, y) clicks for the manual
            policy. It receives a copy of the raster for display and blocks
            until the user is done.

    Returns:
        A new RGB raster; the input is not modified.
    """
    policy = CanvasPolicy.parse(policy)
    out = np.ascontiguousarray(raster, dtype=np.uint8).copy()
    h, w = out.shape[:2]
    if policy == CanvasPolicy.NONE:
        return out
    if policy == CanvasPolicy.CORNERS:
        for x, y in ((0, 0), (w - 1, 0), (0, h - 1), (w - 1, h - 1)):
            if not out[y, x].any():
                _flood_fill_background(out, x, y)
        return out
    if policy == CanvasPolicy.GLOBAL:
        black = ~out.any(axis=2)
        out[black] = BACKGROUND_RGB
        return out
    # Manual
    if click_provider is None:
        raise ConfigurationError("Manual canvas policy requires a click provider")
    clicks = list(click_provider(out.copy()) or [])
    for x, y in clicks:
        if 0 <= x < w and 0 <= y < h:
            _flood_fill_background(out, x, y)
        else:
            logger.debug("Ignoring canvas click outside image: (%s, %s)", x, y)
    logger.debug("Manual canvas recolour applied %d click(s)", len(clicks))
    return out


# -----------------------------------------------------------------------------
# Tissue segmentation
# -----------------------------------------------------------------------------

@dataclass
class TissueSegmentation:
    tissue_roi: np.ndarray      # uint8, 0/255
    complement_roi: np.ndarray  # uint8, 0/255
    signal_mask: np.ndarray     # unsmoothed non-background pixels
    smoothed_mask: np.ndarray


def binarize_foreground(raster: np.ndarray) -> np.ndarray:
    """Mark every pixel that is not exactly the background colour."""
    foreground = np.any(raster != np.array(BACKGROUND_RGB, dtype=raster.dtype), axis=2)
    return as_mask(foreground)


def smooth_mask(mask: np.ndarray, sigma: float) -> np.ndarray:
    """Gaussian-blur a binary mask and re-binarize at the midpoint."""
    if sigma <= 0:
        return as_mask(mask)
    blurred = cv2.GaussianBlur(as_mask(mask), (0, 0), sigmaX=float(sigma), sigmaY=float(sigma))
    return as_mask(blurred > 127)


def fill_holes(mask: np.ndarray) -> np.ndarray:
    """Fill background regions that do not touch the image border."""
    mask = as_mask(mask)
    h, w = mask.shape
    padded = cv2.copyMakeBorder(mask, 1, 1, 1, 1, cv2.BORDER_CONSTANT, value=0)
    ff_mask = np.zeros((h + 4, w + 4), dtype=np.uint8)
    cv2.floodFill(padded, ff_mask, (0, 0), 255)
    holes = cv2.bitwise_not(padded)[1:-1, 1:-1]
    return cv2.bitwise_or(mask, holes)


def trace_region(mask: np.ndarray, point: Tuple[int, int]) -> np.ndarray:
    """Return the filled connected region of `mask` that contains `point`.

    The region follows the value found at `point`, so a seed on background
    selects the background component. Anything enclosed by the traced outline
    belongs to the region.
    """
    x, y = point
    h, w = mask.shape
    if not (0 <= x < w and 0 <= y < h):
        raise SegmentationError(f"Reference point {point} lies outside the {w}x{h} image")
    same_value = (mask == mask[y, x]).astype(np.uint8)
    _, labels = cv2.connectedComponents(same_value, connectivity=8)
    region = as_mask(labels == labels[y, x])
    return fill_holes(region)


def segment_tissue(
    raster: np.ndarray,
    sigma: float,
    reference_point: Tuple[int, int],
    auto_trace: bool = True,
    selection_provider: Optional[SelectionProvider] = None,
    retry: Optional[RetryPolicy] = None,
) -> TissueSegmentation:
    """Derive the tissue ROI and its complement from a canvas-normalized raster.

    The raw foreground is blurred with `sigma`, re-binarized and hole-filled.
    With `auto_trace` the region containing `reference_point` is traced
    automatically; otherwise `selection_provider` is asked for a manual
    selection, retried per `retry` before `SegmentationError` is raised.
    """
    signal = binarize_foreground(raster)
    smoothed = fill_holes(smooth_mask(signal, sigma))
    if auto_trace:
        roi = trace_region(smoothed, reference_point)
    else:
        if selection_provider is None:
            raise ConfigurationError("Manual tissue selection requires a selection provider")
        retry = retry or RetryPolicy()

        def _attempt():
            return selection_provider(raster.copy(), smoothed.copy())

        def _accept(selection) -> bool:
            if selection is None or selection.shape != smoothed.shape:
                logger.info("Empty or invalid tissue selection; asking again")
                return False
            return bool(np.any(selection > 0))

        roi = as_mask(retry.run(_attempt, _accept, "No tissue selection was made"))
    logger.debug("Tissue ROI: %d of %d pixels", int(np.count_nonzero(roi)), roi.size)
    return TissueSegmentation(
        tissue_roi=roi,
        complement_roi=cv2.bitwise_not(roi),
        signal_mask=signal,
        smoothed_mask=smoothed,
    )


# -----------------------------------------------------------------------------
# Colour thresholding
# -----------------------------------------------------------------------------

def to_hsb(raster: np.ndarray) -> np.ndarray:
    """RGB -> 8-bit hue/saturation/brightness, hue on the full 0-255 scale."""
    return cv2.cvtColor(np.ascontiguousarray(raster, dtype=np.uint8), cv2.COLOR_RGB2HSV_FULL)


def _in_range(channel: np.ndarray, bounds: Tuple[int, int]) -> np.ndarray:
    lower, upper = bounds
    return as_mask((channel >= lower) & (channel <= upper))


def classify_hsb(hsb: np.ndarray, thresholds: ThresholdSet) -> np.ndarray:
    """AND of the three inclusive per-channel bandpass tests."""
    hue_pass = _in_range(hsb[..., 0], thresholds.hue)
    sat_pass = _in_range(hsb[..., 1], thresholds.saturation)
    bright_pass = _in_range(hsb[..., 2], thresholds.brightness)
    return cv2.bitwise_and(cv2.bitwise_and(hue_pass, sat_pass), bright_pass)


def threshold_color(raster: np.ndarray, tissue_roi: np.ndarray, thresholds: ThresholdSet) -> np.ndarray:
    """PSR-candidate mask for the tissue ROI; pixels outside it are cleared first."""
    cleared = raster.copy()
    cleared[tissue_roi == 0] = BACKGROUND_RGB
    return classify_hsb(to_hsb(cleared), thresholds)


# -----------------------------------------------------------------------------
# Artifact detection
# -----------------------------------------------------------------------------

def filter_components(mask: np.ndarray, min_area: int) -> np.ndarray:
    """Keep 8-connected components whose pixel area is at least `min_area`."""
    num, labels, stats, _ = cv2.connectedComponentsWithStats(as_mask(mask), connectivity=8)
    keep = np.zeros(num, dtype=bool)
    keep[1:] = stats[1:, cv2.CC_STAT_AREA] >= min_area
    return as_mask(keep[labels])


def green_baseline(green: np.ndarray, tissue_roi: np.ndarray, candidates: np.ndarray) -> np.ndarray:
    """Otsu split of the ROI's green values.

    Returns the side of the split that holds most of the `candidates`, so the
    baseline narrows the configured green band and never inverts it.
    """
    values = green[tissue_roi > 0]
    if values.size == 0:
        return np.zeros_like(green)
    thresh, _ = cv2.threshold(values.reshape(-1, 1), 0, 255, cv2.THRESH_BINARY + cv2.THRESH_OTSU)
    above = green > thresh
    inside = candidates > 0
    if np.count_nonzero(inside & above) >= np.count_nonzero(inside & ~above):
        return as_mask(above)
    return as_mask(~above)


def detect_artifacts(raster: np.ndarray, tissue_roi: np.ndarray, thresholds: ThresholdSet) -> np.ndarray:
    """Mask of large over-saturated green-channel regions (255 = exclude).

    The green channel inside the tissue ROI is bandpassed with
    `thresholds.green`, blurred at `artifact_sigma` so each artifact becomes a
    single blob, hole-filled and size-filtered by `artifact_min_area`.
    """
    green = np.ascontiguousarray(raster[..., 1])
    candidates = cv2.bitwise_and(_in_range(green, thresholds.green), as_mask(tissue_roi))
    if thresholds.artifact_auto_baseline:
        candidates = cv2.bitwise_and(candidates, green_baseline(green, tissue_roi, candidates))
    blobs = fill_holes(smooth_mask(candidates, thresholds.artifact_sigma))
    artifacts = filter_components(blobs, thresholds.artifact_min_area)
    logger.debug("Artifact mask: %d pixels", int(np.count_nonzero(artifacts)))
    return artifacts


# -----------------------------------------------------------------------------
# Mask compositing
# -----------------------------------------------------------------------------

def _exclude_and_restrict(positive: np.ndarray, artifacts: np.ndarray, tissue_roi: np.ndarray) -> np.ndarray:
    # Excluded pixels are the non-positive ones plus artifacts; inverting and
    # clipping to the ROI leaves positive AND NOT artifact.
    excluded = cv2.bitwise_or(cv2.bitwise_not(as_mask(positive)), as_mask(artifacts))
    return cv2.bitwise_and(cv2.bitwise_not(excluded), as_mask(tissue_roi))


def composite_masks(
    psr_candidate: np.ndarray,
    artifacts: np.ndarray,
    tissue_signal: np.ndarray,
    tissue_roi: np.ndarray,
) -> Tuple[np.ndarray, np.ndarray]:
    """Return (psr_signal_mask, total_tissue_mask), both artifact-free within the ROI."""
    psr_signal = _exclude_and_restrict(psr_candidate, artifacts, tissue_roi)
    total_tissue = _exclude_and_restrict(tissue_signal, artifacts, tissue_roi)
    return psr_signal, total_tissue


# -----------------------------------------------------------------------------
# Debinarization and measurement
# -----------------------------------------------------------------------------

def debinarize(mask: np.ndarray, saturation: np.ndarray) -> np.ndarray:
    """Scale the saturation channel by mask/255, giving stain intensity on signal pixels."""
    weighted = (mask.astype(np.float32) / 255.0) * saturation.astype(np.float32)
    return np.clip(np.rint(weighted), 0, 255).astype(np.uint8)


def measure(raster: np.ndarray, roi: np.ndarray, scale: ScaleInfo, label: str) -> Measurement:
    """Integrated density and area of `raster` within `roi`."""
    inside = roi > 0
    area = int(np.count_nonzero(inside))
    integrated = float(raster[inside].sum(dtype=np.float64))
    return Measurement(
        label=label,
        integrated_density=integrated,
        area=area,
        mean=integrated / area if area else 0.0,
        calibrated_area=area * scale.pixel_area,
    )


# -----------------------------------------------------------------------------
# Full pipeline
# -----------------------------------------------------------------------------

def check_providers(config: PipelineConfig, click_provider=None, selection_provider=None) -> None:
    """Fail early when an interactive policy has nobody to answer it."""
    if config.canvas_policy == CanvasPolicy.MANUAL and click_provider is None:
        raise ConfigurationError("Manual canvas policy requires an interactive click provider")
    if not config.auto_trace and selection_provider is None:
        raise ConfigurationError("Manual tissue tracing requires an interactive selection provider")


def process_image(
    image_id: str,
    raster: np.ndarray,
    config: PipelineConfig,
    scale: Optional[ScaleInfo] = None,
    click_provider: Optional[ClickProvider] = None,
    selection_provider: Optional[SelectionProvider] = None,
    retry: Optional[RetryPolicy] = None,
) -> PipelineResult:
    """Run every stage on one RGB image and return its outputs and measurements.

    The per-image working set is released on return or on error.
    """
    check_providers(config, click_provider, selection_provider)
    thresholds = config.thresholds
    with ProcessingContext(image_id, raster, scale, config.reference_point) as ctx:
        canvas = ctx.keep("canvas", normalize_canvas(ctx.raster, config.canvas_policy, click_provider))
        seg = segment_tissue(
            canvas,
            thresholds.tissue_sigma,
            ctx.reference_point,
            auto_trace=config.auto_trace,
            selection_provider=selection_provider,
            retry=retry,
        )
        ctx.set_roi(seg.tissue_roi)
        tissue_signal = ctx.keep("tissue_signal", seg.signal_mask)
        candidate = ctx.keep("psr_candidate", threshold_color(canvas, ctx.tissue_roi, thresholds))
        artifacts = ctx.keep("artifacts", detect_artifacts(canvas, ctx.tissue_roi, thresholds))
        psr_mask, tissue_mask = composite_masks(candidate, artifacts, tissue_signal, ctx.tissue_roi)
        psr_signal = debinarize(psr_mask, to_hsb(canvas)[..., 1])

        psr_measurement = measure(psr_signal, ctx.tissue_roi, ctx.scale, f"{image_id}_psr_signal")
        tissue_measurement = measure(tissue_mask, ctx.tissue_roi, ctx.scale, f"{image_id}_total_tissue")
        result = PipelineResult(
            image_id=image_id,
            tissue_roi=ctx.tissue_roi.copy(),
            psr_signal=OutputImage(image_id, "psr_signal", psr_signal, ctx.scale),
            total_tissue=OutputImage(image_id, "total_tissue", tissue_mask, ctx.scale),
            psr_measurement=psr_measurement,
            tissue_measurement=tissue_measurement,
        )
    logger.info(
        "%s: PSR IntDen=%.0f, tissue IntDen=%.0f, fraction=%.4f",
        image_id,
        psr_measurement.integrated_density,
        tissue_measurement.integrated_density,
        result.fibrosis_fraction,
    )
    return result
