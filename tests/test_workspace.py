import numpy as np
import pytest

from psrquant import analysis as analysis_mod
from psrquant import ui as app
from psrquant.models import CanvasPolicy, PipelineConfig

from .helpers import get_action, make_square_image, make_workspace_harness


def test_canvas_clicks_collected_and_cleared(qapp):
    img = make_square_image()
    ws = make_workspace_harness()

    def auto_action():
        handler = ws._viewer._click_handler
        handler(1, 1)
        handler(90, 5)
        get_action(ws, "Clear")()
        handler(2, 3)
        get_action(ws, "Accept")()

    ws._auto_actions.append(auto_action)
    assert ws.collect_canvas_clicks(img) == [(2, 3)]


def test_workspace_drives_manual_canvas_policy(qapp):
    img = np.full((20, 20, 3), 255, dtype=np.uint8)
    img[:5, :] = (60, 60, 60)
    ws = make_workspace_harness()

    def auto_action():
        ws._viewer._click_handler(3, 2)
        get_action(ws, "Accept")()

    ws._auto_actions.append(auto_action)
    out = analysis_mod.normalize_canvas(img, CanvasPolicy.MANUAL, click_provider=ws.collect_canvas_clicks)
    assert (out == 255).all()


def test_tissue_polygon_becomes_mask(qapp):
    img = make_square_image(size=50, square=20)
    smoothed = np.zeros((50, 50), dtype=np.uint8)
    ws = make_workspace_harness()
    ws.batch_mode = False

    def auto_action():
        handler = ws._viewer._click_handler
        handler(10, 10)
        handler(40, 10)
        handler(40, 40)
        handler(10, 40)
        get_action(ws, "Accept")()

    ws._auto_actions.append(auto_action)
    mask = ws.select_tissue(img, smoothed)
    assert mask.shape == (50, 50)
    assert mask[25, 25] == 255
    assert mask[5, 5] == 0
    assert set(np.unique(mask)) == {0, 255}


def test_tissue_selection_with_too_few_points_returns_none(qapp):
    img = make_square_image(size=50, square=20)
    ws = make_workspace_harness()

    def auto_action():
        handler = ws._viewer._click_handler
        handler(10, 10)
        handler(40, 10)
        get_action(ws, "Accept")()

    ws._auto_actions.append(auto_action)
    assert ws.select_tissue(img, np.zeros((50, 50), dtype=np.uint8)) is None


def test_reset_discards_vertices(qapp):
    img = make_square_image(size=50, square=20)
    ws = make_workspace_harness()

    def auto_action():
        handler = ws._viewer._click_handler
        for pt in ((10, 10), (40, 10), (40, 40)):
            handler(*pt)
        get_action(ws, "Reset")()
        get_action(ws, "Accept")()

    ws._auto_actions.append(auto_action)
    assert ws.select_tissue(img, np.zeros((50, 50), dtype=np.uint8)) is None


def test_run_analysis_requires_folder(qapp, monkeypatch):
    warnings = []
    monkeypatch.setattr(app.QMessageBox, "warning", lambda *args, **kwargs: warnings.append(args[2]))

    tab = app.AnalysisTab()
    tab.input_path = ""
    tab.run_analysis()

    assert any("Please select an images folder first." in w for w in warnings)


def test_run_analysis_invalid_ranges_do_not_call_process_folder(qapp, monkeypatch, tmp_path):
    called = {"process_folder": False}
    warnings = []

    def fake_process_folder(*args, **kwargs):
        called["process_folder"] = True
        return 0, "", []

    monkeypatch.setattr(app, "process_folder", fake_process_folder)
    monkeypatch.setattr(app.QMessageBox, "warning", lambda *args, **kwargs: warnings.append(args[1]))

    tab = app.AnalysisTab()
    tab.input_path = str(tmp_path)
    tab.hue_lower.setValue(250)
    tab.hue_upper.setValue(10)
    tab.run_analysis()

    assert called["process_folder"] is False
    assert warnings == ["Invalid parameters"]


def test_run_analysis_passes_form_and_providers(qapp, monkeypatch, tmp_path):
    captured = {}
    infos = []

    def fake_process_folder(input_folder, output_folder, config, click_provider=None,
                            selection_provider=None, progress=None):
        captured.update(
            input_folder=input_folder,
            output_folder=output_folder,
            config=config,
            click_provider=click_provider,
            selection_provider=selection_provider,
        )
        progress(1, 1, "slide.tif")
        return 1, "Processed slide.tif", []

    monkeypatch.setattr(app, "process_folder", fake_process_folder)
    monkeypatch.setattr(app.QMessageBox, "information", lambda *args, **kwargs: infos.append(args[1]))

    tab = app.AnalysisTab()
    shown = []
    tab.show_workspace_callback = shown.append
    tab.input_path = str(tmp_path)
    tab.subset_edit.setText(" 1-2 ")
    tab.sat_lower.setValue(60)
    tab.canvas_combo.setCurrentText("global")
    tab.auto_trace_check.setChecked(False)
    tab.batch_mode_check.setChecked(False)
    tab.run_analysis()

    config = captured["config"]
    assert isinstance(config, PipelineConfig)
    assert config.thresholds.saturation == (60, 255)
    assert config.canvas_policy == CanvasPolicy.GLOBAL
    assert config.auto_trace is False
    assert config.image_subset == "1-2"
    assert captured["output_folder"].endswith("psrquant_results")
    assert captured["selection_provider"] == tab.workspace.select_tissue
    assert tab.workspace.batch_mode is False
    assert shown == [True, False]
    assert tab.log_view.toPlainText() == "Processed slide.tif"
    assert infos == ["Analysis complete"]


def test_run_analysis_reports_aborted_run(qapp, monkeypatch, tmp_path):
    errors = []

    def fake_process_folder(*args, **kwargs):
        raise app.PSRQuantError("No tissue selection was made")

    monkeypatch.setattr(app, "process_folder", fake_process_folder)
    monkeypatch.setattr(app.QMessageBox, "critical", lambda *args, **kwargs: errors.append(args[2]))

    tab = app.AnalysisTab()
    tab.input_path = str(tmp_path)
    tab.run_analysis()
    assert errors == ["No tissue selection was made"]


@pytest.mark.parametrize("show, index", [(True, 1), (False, 0)])
def test_main_window_switches_pages(qapp, show, index):
    window = app.MainWindow()
    window.show_workspace(show)
    assert window.stack.currentIndex() == index


def test_canvas_preview_shows_fill_in_batch_mode(qapp):
    img = np.full((20, 20, 3), 255, dtype=np.uint8)
    img[:5, :] = (60, 60, 60)
    ws = make_workspace_harness()
    ws.batch_mode = True

    def auto_action():
        ws._viewer._click_handler(15, 2)
        preview = ws._viewer._image
        assert (preview[:5, :8] == 255).all()
        get_action(ws, "Accept")()

    ws._auto_actions.append(auto_action)
    assert ws.collect_canvas_clicks(img) == [(15, 2)]
