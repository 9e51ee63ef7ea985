import json

import numpy as np
import pytest

from psrquant import models
from psrquant.models import (
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
    parse_image_subset,
)


@pytest.mark.parametrize(
    "kwargs",
    [
        {"hue": (200, 100)},
        {"saturation": (-1, 255)},
        {"brightness": (0, 256)},
        {"green": "60"},
        {"tissue_sigma": -1},
        {"artifact_sigma": "wide"},
        {"artifact_min_area": -5},
        {"artifact_min_area": "abc"},
    ],
)
def test_threshold_set_rejects_invalid_values(kwargs):
    with pytest.raises(ConfigurationError):
        ThresholdSet(**kwargs)


def test_configuration_error_is_value_error():
    with pytest.raises(ValueError):
        ThresholdSet(hue=(10, 5))


def test_threshold_set_normalizes_types():
    t = ThresholdSet(hue=[10, 20], tissue_sigma=3, artifact_auto_baseline=1)
    assert t.hue == (10, 20)
    assert isinstance(t.tissue_sigma, float)
    assert t.artifact_auto_baseline is True


def test_canvas_policy_parse():
    assert CanvasPolicy.parse(" Global ") is CanvasPolicy.GLOBAL
    assert CanvasPolicy.parse(CanvasPolicy.NONE) is CanvasPolicy.NONE
    with pytest.raises(ConfigurationError):
        CanvasPolicy.parse("edges")


@pytest.mark.parametrize(
    "subset, count, expected",
    [
        (None, 3, [0, 1, 2]),
        ("", 2, [0, 1]),
        ("2", 5, [1]),
        ("1-3,7", 8, [0, 1, 2, 6]),
        ("4, 1-2, 2", 4, [0, 1, 3]),
    ],
)
def test_parse_image_subset(subset, count, expected):
    assert parse_image_subset(subset, count) == expected


@pytest.mark.parametrize("subset", ["1-", "a", "3-1", "0", "1-9", "1;2"])
def test_parse_image_subset_rejects_malformed(subset):
    with pytest.raises(ConfigurationError):
        parse_image_subset(subset, 5)


def test_config_round_trip(tmp_path):
    config = PipelineConfig(
        thresholds=ThresholdSet(hue=(190, 250), artifact_min_area=1200, artifact_auto_baseline=True),
        canvas_policy="global",
        auto_trace=False,
        reference_point=(10, 20),
        image_subset="1-2",
        batch_mode=False,
    )
    path = tmp_path / "config.json"
    models.save_config(config, str(path))
    loaded = models.load_config(str(path))
    assert loaded == config


def test_load_config_accepts_parameters_record(tmp_path):
    path = tmp_path / "parameters.json"
    record = {"config": PipelineConfig().to_dict(), "date": "2024-01-01", "psrquant_version": "0.1.0"}
    path.write_text(json.dumps(record))
    assert models.load_config(str(path)) == PipelineConfig()


def test_config_rejects_unknown_keys_and_bad_json(tmp_path):
    with pytest.raises(ConfigurationError):
        PipelineConfig.from_dict({"canvas": "none"})
    with pytest.raises(ConfigurationError):
        PipelineConfig.from_dict({"thresholds": {"hues": [0, 1]}})
    path = tmp_path / "broken.json"
    path.write_text("{not json")
    with pytest.raises(ConfigurationError):
        models.load_config(str(path))


def test_retry_policy_counts_attempts():
    calls = []

    def attempt():
        calls.append(1)
        return len(calls)

    policy = RetryPolicy(max_retries=2)
    assert policy.run(attempt, lambda n: n == 3, "never") == 3
    assert len(calls) == 3

    calls.clear()
    with pytest.raises(SegmentationError):
        policy.run(attempt, lambda n: False, "nothing selected")
    assert len(calls) == 3


def test_processing_context_defaults_and_release():
    raster = np.zeros((40, 60, 3), dtype=np.uint8)
    with ProcessingContext("img", raster) as ctx:
        assert ctx.reference_point == (30, 20)
        assert ctx.scale == ScaleInfo()
        with pytest.raises(RuntimeError):
            _ = ctx.tissue_roi
        roi = np.zeros((40, 60), dtype=np.uint8)
        roi[5:10, 5:10] = 1
        ctx.set_roi(roi)
        assert ctx.tissue_roi.max() == 255
        assert np.array_equal(ctx.complement_roi, 255 - ctx.tissue_roi)
        ctx.keep("temp", roi)
    assert ctx.released
    assert ctx.intermediates == {}
    assert ctx.raster is None
    with pytest.raises(RuntimeError):
        _ = ctx.complement_roi


def test_processing_context_rejects_bad_shapes():
    with pytest.raises(ValueError):
        ProcessingContext("gray", np.zeros((10, 10), dtype=np.uint8))
    ctx = ProcessingContext("rgb", np.zeros((10, 10, 3), dtype=np.uint8))
    with pytest.raises(ValueError):
        ctx.set_roi(np.zeros((5, 5), dtype=np.uint8))


def _result(psr_intden, tissue_intden):
    scale = ScaleInfo(0.5, 0.5, "um")
    empty = np.zeros((2, 2), dtype=np.uint8)
    return PipelineResult(
        image_id="a",
        tissue_roi=empty,
        psr_signal=OutputImage("a", "psr_signal", empty, scale),
        total_tissue=OutputImage("a", "total_tissue", empty, scale),
        psr_measurement=Measurement("a_psr_signal", psr_intden, 4, psr_intden / 4, 1.0),
        tissue_measurement=Measurement("a_total_tissue", tissue_intden, 4, tissue_intden / 4, 1.0),
    )


def test_fibrosis_fraction_and_row():
    result = _result(510.0, 1020.0)
    assert result.fibrosis_fraction == pytest.approx(0.5)
    row = result.to_row()
    assert row["tissue_pixel_total"] == pytest.approx(4.0)
    assert row["unit"] == "um"
    assert row["pixel_width"] == 0.5


def test_fibrosis_fraction_zero_tissue():
    assert _result(0.0, 0.0).fibrosis_fraction == 0.0


def test_load_config_missing_or_non_object_file(tmp_path):
    with pytest.raises(ConfigurationError):
        models.load_config(str(tmp_path / "missing.json"))
    path = tmp_path / "list.json"
    path.write_text("[1, 2]")
    with pytest.raises(ConfigurationError):
        models.load_config(str(path))


def test_load_config_wraps_non_numeric_threshold(tmp_path):
    path = tmp_path / "bad_area.json"
    path.write_text(json.dumps({"thresholds": {"artifact_min_area": "abc"}}))
    with pytest.raises(ConfigurationError):
        models.load_config(str(path))
