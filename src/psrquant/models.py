from __future__ import annotations

import json
import re
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Tuple

import numpy as np

PACKAGE_VERSION = "0.1.0"

# Canvas pixels are recoloured to white (RGB).
BACKGROUND_RGB = (255, 255, 255)


class PSRQuantError(Exception):
    """Base class for errors raised by the quantification pipeline."""


class ConfigurationError(PSRQuantError, ValueError):
    """Invalid run configuration. Raised before any image is processed."""


class SegmentationError(PSRQuantError):
    """No tissue region could be produced for an image."""


class CanvasPolicy(str, Enum):
    NONE = "none"
    CORNERS = "corners"
    GLOBAL = "global"
    MANUAL = "manual"

    @classmethod
    def parse(cls, value) -> "CanvasPolicy":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            choices = ", ".join(p.value for p in cls)
            raise ConfigurationError(f"Unknown canvas policy '{value}'. Expected one of: {choices}.") from None


def _check_range(name: str, bounds) -> Tuple[int, int]:
    try:
        lower, upper = bounds
        lower, upper = int(lower), int(upper)
    except (TypeError, ValueError):
        raise ConfigurationError(f"{name} range must be a (lower, upper) pair, got {bounds!r}") from None
    if not (0 <= lower <= upper <= 255):
        raise ConfigurationError(f"{name} range must satisfy 0 <= lower <= upper <= 255, got ({lower}, {upper})")
    return lower, upper


@dataclass
class ThresholdSet:
    """Thresholds for PSR bandpass classification and artifact removal.

    All ranges are inclusive and expressed in 8-bit units. Hue uses the full
    0-255 scale (0 and 255 are both red).
    """

    hue: Tuple[int, int] = (200, 255)
    saturation: Tuple[int, int] = (40, 255)
    brightness: Tuple[int, int] = (0, 255)
    green: Tuple[int, int] = (0, 60)
    tissue_sigma: float = 4.0
    artifact_sigma: float = 10.0
    artifact_min_area: int = 5000
    artifact_auto_baseline: bool = False

    def __post_init__(self) -> None:
        self.hue = _check_range("hue", self.hue)
        self.saturation = _check_range("saturation", self.saturation)
        self.brightness = _check_range("brightness", self.brightness)
        self.green = _check_range("green", self.green)
        for name in ("tissue_sigma", "artifact_sigma"):
            value = getattr(self, name)
            try:
                value = float(value)
            except (TypeError, ValueError):
                raise ConfigurationError(f"{name} must be numeric, got {value!r}") from None
            if value < 0:
                raise ConfigurationError(f"{name} must be >= 0, got {value}")
            setattr(self, name, value)
        try:
            min_area = int(self.artifact_min_area)
        except (TypeError, ValueError):
            raise ConfigurationError(f"artifact_min_area must be an integer, got {self.artifact_min_area!r}") from None
        if min_area < 0:
            raise ConfigurationError(f"artifact_min_area must be >= 0, got {min_area}")
        self.artifact_min_area = min_area
        self.artifact_auto_baseline = bool(self.artifact_auto_baseline)


@dataclass
class PipelineConfig:
    thresholds: ThresholdSet = field(default_factory=ThresholdSet)
    canvas_policy: CanvasPolicy = CanvasPolicy.CORNERS
    auto_trace: bool = True
    reference_point: Optional[Tuple[int, int]] = None
    image_subset: Optional[str] = None
    batch_mode: bool = True

    def __post_init__(self) -> None:
        self.canvas_policy = CanvasPolicy.parse(self.canvas_policy)
        if self.reference_point is not None:
            try:
                x, y = self.reference_point
                self.reference_point = (int(x), int(y))
            except (TypeError, ValueError):
                raise ConfigurationError(f"reference_point must be an (x, y) pair, got {self.reference_point!r}") from None

    def to_dict(self) -> dict:
        data = asdict(self)
        data["canvas_policy"] = self.canvas_policy.value
        data["thresholds"] = {
            k: list(v) if isinstance(v, tuple) else v for k, v in data["thresholds"].items()
        }
        if self.reference_point is not None:
            data["reference_point"] = list(self.reference_point)
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "PipelineConfig":
        data = dict(data)
        thresholds = data.pop("thresholds", {}) or {}
        known = set(cls.__dataclass_fields__)
        unknown = set(data) - known
        if unknown:
            raise ConfigurationError(f"Unknown configuration keys: {sorted(unknown)}")
        try:
            threshold_set = ThresholdSet(**{k: tuple(v) if isinstance(v, list) else v for k, v in thresholds.items()})
        except TypeError as exc:
            raise ConfigurationError(f"Invalid thresholds: {exc}") from None
        ref = data.get("reference_point")
        if isinstance(ref, list):
            data["reference_point"] = tuple(ref)
        return cls(thresholds=threshold_set, **data)


def load_config(path: str) -> PipelineConfig:
    """Read a PipelineConfig previously written by `save_config`."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except json.JSONDecodeError as exc:
        raise ConfigurationError(f"Could not parse configuration file {path}: {exc}") from None
    except OSError as exc:
        raise ConfigurationError(f"Could not read configuration file {path}: {exc}") from None
    if not isinstance(data, dict):
        raise ConfigurationError(f"Configuration file {path} must hold a JSON object")
    # Parameter records carry extra run metadata next to the config.
    if "config" in data:
        data = data["config"]
    return PipelineConfig.from_dict(data)


def save_config(config: PipelineConfig, path: str) -> None:
    with open(path, "w", encoding="utf-8") as f:
        json.dump(config.to_dict(), f, indent=2)


_SUBSET_TOKEN = re.compile(r"^\s*(\d+)\s*(?:-\s*(\d+)\s*)?$")


def parse_image_subset(subset: Optional[str], count: int) -> List[int]:
    """Parse a 1-based image subset such as "1-3,7" into sorted 0-based indices.

    An empty or missing subset selects every image.
    """
    if subset is None or not str(subset).strip():
        return list(range(count))
    indices = set()
    for token in str(subset).split(","):
        m = _SUBSET_TOKEN.match(token)
        if not m:
            raise ConfigurationError(f"Malformed image subset '{subset}' near '{token.strip()}'")
        start = int(m.group(1))
        end = int(m.group(2)) if m.group(2) else start
        if start > end:
            raise ConfigurationError(f"Reversed range '{token.strip()}' in image subset '{subset}'")
        if start < 1 or end > count:
            raise ConfigurationError(f"Image subset '{subset}' is out of range for {count} images")
        indices.update(range(start - 1, end))
    return sorted(indices)


@dataclass(frozen=True)
class ScaleInfo:
    pixel_width: float = 1.0
    pixel_height: float = 1.0
    unit: str = "pixel"

    @property
    def pixel_area(self) -> float:
        return self.pixel_width * self.pixel_height


@dataclass
class Measurement:
    label: str
    integrated_density: float
    area: int
    mean: float
    calibrated_area: float

    @property
    def pixel_total(self) -> float:
        """Selected-pixel count for a 0/255 mask measurement."""
        return self.integrated_density / 255.0


@dataclass
class OutputImage:
    image_id: str
    kind: str
    pixels: np.ndarray
    scale: ScaleInfo


@dataclass
class RetryPolicy:
    """Bounded retry for interactive steps; exhausting it raises `failure`."""

    max_retries: int = 2
    failure: type = SegmentationError

    @property
    def max_attempts(self) -> int:
        return self.max_retries + 1

    def run(self, attempt, accept, message: str):
        """Call `attempt()` until `accept(result)` holds or attempts run out."""
        for _ in range(self.max_attempts):
            result = attempt()
            if accept(result):
                return result
        raise self.failure(f"{message} (gave up after {self.max_attempts} attempts)")


class ProcessingContext:
    """Working set for one image: source raster, scale, ROIs and intermediates.

    Use as a context manager so every raster is dropped before the next image
    starts, even when a stage raises.
    """

    def __init__(self, image_id: str, raster: np.ndarray, scale: Optional[ScaleInfo] = None,
                 reference_point: Optional[Tuple[int, int]] = None):
        if raster.ndim != 3 or raster.shape[2] != 3:
            raise ValueError(f"Expected an RGB raster of shape (H, W, 3), got {raster.shape}")
        self.image_id = image_id
        self.raster = raster
        self.scale = scale or ScaleInfo()
        h, w = raster.shape[:2]
        self.reference_point = reference_point if reference_point is not None else (w // 2, h // 2)
        self.intermediates: Dict[str, np.ndarray] = {}
        self._tissue_roi: Optional[np.ndarray] = None
        self._complement_roi: Optional[np.ndarray] = None
        self.released = False

    @property
    def shape(self) -> Tuple[int, int]:
        return self.raster.shape[:2]

    def set_roi(self, tissue_roi: np.ndarray) -> None:
        self._check_live()
        if tissue_roi.shape != self.shape:
            raise ValueError(f"ROI shape {tissue_roi.shape} does not match raster shape {self.shape}")
        self._tissue_roi = np.where(tissue_roi > 0, 255, 0).astype(np.uint8)
        self._complement_roi = 255 - self._tissue_roi

    @property
    def tissue_roi(self) -> np.ndarray:
        self._check_live()
        if self._tissue_roi is None:
            raise RuntimeError("Tissue ROI has not been set for this image")
        return self._tissue_roi

    @property
    def complement_roi(self) -> np.ndarray:
        self._check_live()
        if self._complement_roi is None:
            raise RuntimeError("Tissue ROI has not been set for this image")
        return self._complement_roi

    def keep(self, name: str, raster: np.ndarray) -> np.ndarray:
        self._check_live()
        self.intermediates[name] = raster
        return raster

    def release(self) -> None:
        self.intermediates.clear()
        self._tissue_roi = None
        self._complement_roi = None
        self.raster = None
        self.released = True

    def _check_live(self) -> None:
        if self.released:
            raise RuntimeError(f"Processing context for {self.image_id} has been released")

    def __enter__(self) -> "ProcessingContext":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.release()


@dataclass
class PipelineResult:
    image_id: str
    tissue_roi: np.ndarray
    psr_signal: OutputImage
    total_tissue: OutputImage
    psr_measurement: Measurement
    tissue_measurement: Measurement

    @property
    def scale(self) -> ScaleInfo:
        return self.psr_signal.scale

    @property
    def fibrosis_fraction(self) -> float:
        denominator = self.tissue_measurement.integrated_density
        if denominator <= 0:
            return 0.0
        return self.psr_measurement.integrated_density / denominator

    def to_row(self) -> dict:
        """One complete results-table row for this image."""
        return {
            "image_id": self.image_id,
            "psr_integrated_density": self.psr_measurement.integrated_density,
            "psr_area": self.psr_measurement.area,
            "psr_mean": self.psr_measurement.mean,
            "tissue_integrated_density": self.tissue_measurement.integrated_density,
            "tissue_area": self.tissue_measurement.area,
            "tissue_pixel_total": self.tissue_measurement.pixel_total,
            "fibrosis_fraction": self.fibrosis_fraction,
            "pixel_width": self.scale.pixel_width,
            "pixel_height": self.scale.pixel_height,
            "unit": self.scale.unit,
        }
