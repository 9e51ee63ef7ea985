from __future__ import annotations

import os
import traceback
from typing import List, Optional, Tuple

import cv2
import numpy as np
from PyQt5.QtCore import Qt, QEventLoop, QRect
from PyQt5.QtGui import QColor, QImage, QKeySequence, QPainter
from PyQt5.QtWidgets import (
    QApplication,
    QCheckBox,
    QComboBox,
    QDoubleSpinBox,
    QFileDialog,
    QFrame,
    QGridLayout,
    QHBoxLayout,
    QLabel,
    QLineEdit,
    QMainWindow,
    QMessageBox,
    QPushButton,
    QShortcut,
    QSizePolicy,
    QSpinBox,
    QStackedWidget,
    QStatusBar,
    QTextEdit,
    QVBoxLayout,
    QWidget,
)

from .analysis import as_mask
from .batch import process_folder
from .models import BACKGROUND_RGB, CanvasPolicy, ConfigurationError, PipelineConfig, PSRQuantError, ThresholdSet

DRAW_THICKNESS = 3

APP_STYLE_SHEET = """
QMainWindow { background: #F6F7FB; }
QLabel { color: #1F2937; }
QFrame[card="true"] { background: #FFFFFF; border: 1px solid #E5E7EB; border-radius: 8px; }
QLineEdit, QSpinBox, QDoubleSpinBox, QComboBox, QTextEdit {
    background: #FFFFFF;
    border: 1px solid #D1D5DB;
    border-radius: 6px;
    padding: 4px 6px;
}
QPushButton {
    background-color: #2563EB;
    color: #FFFFFF;
    border-radius: 6px;
    padding: 6px 10px;
}
QPushButton:disabled { background-color: #93C5FD; }
QPushButton[acceptAction="true"] {
    background-color: #9CA3AF;
    border: 1px solid #6B7280;
    font-weight: 600;
}
QPushButton[acceptAction="true"][ready="true"] {
    background-color: #0F766E;
    border: 1px solid #0B5E57;
}
QPushButton#primaryAction { background-color: #0F766E; }
QPushButton#secondaryAction { background-color: #1D4ED8; }
QStatusBar { background: #E5E7EB; color: #111827; }
"""


def create_card(title: str) -> Tuple[QFrame, QVBoxLayout]:
    """Create a styled container with a title for grouped UI controls."""
    card = QFrame()
    card.setProperty("card", True)
    card.setSizePolicy(QSizePolicy.Expanding, QSizePolicy.Fixed)
    outer_layout = QVBoxLayout(card)
    outer_layout.setContentsMargins(20, 12, 20, 16)
    outer_layout.setSpacing(10)
    title_label = QLabel(title)
    title_label.setStyleSheet("font-weight: 600; font-size: 12pt;")
    outer_layout.addWidget(title_label)
    content_layout = QVBoxLayout()
    content_layout.setSpacing(8)
    outer_layout.addLayout(content_layout)
    return card, content_layout


class ImagePane(QWidget):
    """Displays an RGB or grayscale raster with aspect-ratio preserving fit."""

    def __init__(self, parent=None):
        super().__init__(parent)
        self._image = None
        self._qimage = None
        self._display_rect = None
        self._click_handler = None
        self.setMinimumSize(320, 240)

    def set_image(self, image: Optional[np.ndarray]) -> None:
        self._image = image
        if image is None:
            self._qimage = None
        else:
            rgb = np.stack([image] * 3, axis=-1) if image.ndim == 2 else image
            rgb = np.ascontiguousarray(rgb, dtype=np.uint8)
            h, w = rgb.shape[:2]
            self._qimage = QImage(rgb.data, w, h, 3 * w, QImage.Format_RGB888).copy()
        self.update()

    def set_click_handler(self, handler) -> None:
        self._click_handler = handler

    def paintEvent(self, event):
        painter = QPainter(self)
        painter.fillRect(self.rect(), QColor("#F3F4F6"))
        if self._qimage is None:
            painter.setPen(QColor("#9CA3AF"))
            painter.drawText(self.rect(), Qt.AlignCenter, "No image")
            return
        target = self.rect()
        scaled = self._qimage.scaled(target.size(), Qt.KeepAspectRatio, Qt.SmoothTransformation)
        x = target.x() + (target.width() - scaled.width()) // 2
        y = target.y() + (target.height() - scaled.height()) // 2
        self._display_rect = QRect(x, y, scaled.width(), scaled.height())
        painter.drawImage(self._display_rect, scaled)

    def mousePressEvent(self, event):
        if self._image is None or self._display_rect is None or self._click_handler is None:
            return
        if not self._display_rect.contains(event.pos()):
            return
        img_h, img_w = self._image.shape[:2]
        rel_x = event.pos().x() - self._display_rect.x()
        rel_y = event.pos().y() - self._display_rect.y()
        x = int(rel_x * (img_w / self._display_rect.width()))
        y = int(rel_y * (img_h / self._display_rect.height()))
        self._click_handler(x, y)


class SelectionWorkspace(QWidget):
    """Interactive canvas-click and tissue-selection steps.

    Each `run_*` method blocks in a nested event loop until the user accepts,
    which lets the workspace act as the pipeline's click and selection
    provider.
    """

    def __init__(self, status_callback=None, parent=None):
        super().__init__(parent)
        self._status_callback = status_callback
        self._shortcuts = []
        self._action_buttons = {}
        self._pending_loop = None
        self._pending_result = None
        self.batch_mode = False
        self._progress_label = QLabel("")
        self._progress_label.setStyleSheet("color: #111827; font-size: 12pt; font-weight: 600;")
        self._action_row = QHBoxLayout()
        self._action_row.setSpacing(8)
        self._banner = QLabel("")
        self._banner.setStyleSheet("background:#FDE68A; color:#111827; padding:6px 10px; border-radius:6px;")
        self._banner.setWordWrap(True)
        self._viewer = ImagePane()
        layout = QVBoxLayout(self)
        layout.setContentsMargins(0, 0, 0, 0)
        layout.setSpacing(8)
        layout.addWidget(self._progress_label)
        layout.addLayout(self._action_row)
        layout.addWidget(self._banner)
        layout.addWidget(self._viewer, 1)

    def _set_status(self, text: str) -> None:
        if self._status_callback:
            self._status_callback(text)

    def set_progress(self, text: str) -> None:
        self._progress_label.setText(text)

    def _clear_shortcuts(self) -> None:
        for sc in self._shortcuts:
            sc.setEnabled(False)
        self._shortcuts = []

    def _register_shortcut(self, key: str, callback) -> None:
        sc = QShortcut(QKeySequence(key), self)
        sc.activated.connect(callback)
        self._shortcuts.append(sc)

    def _set_actions(self, actions: list, instruction: str) -> None:
        self._banner.setText(instruction)
        while self._action_row.count():
            item = self._action_row.takeAt(0)
            widget = item.widget()
            if widget:
                widget.setParent(None)
        self._action_buttons = {}
        for action in actions:
            btn = QPushButton(action["label"])
            btn.setToolTip(action.get("tooltip", ""))
            if action.get("role") == "accept":
                btn.setProperty("acceptAction", True)
                btn.setProperty("ready", bool(action.get("ready", False)))
            btn.clicked.connect(action["callback"])
            self._action_row.addWidget(btn)
            self._action_buttons[action["label"]] = btn
        self._action_row.addStretch(1)

    def _set_ready(self, label: str, ready: bool) -> None:
        btn = self._action_buttons.get(label)
        if btn is None:
            return
        btn.setProperty("ready", bool(ready))
        btn.style().unpolish(btn)
        btn.style().polish(btn)
        btn.update()

    def _wait_for_result(self):
        self._pending_loop = QEventLoop()
        self._pending_loop.exec_()
        result = self._pending_result
        self._pending_result = None
        return result

    def _finish_step(self, result):
        self._pending_result = result
        if self._pending_loop is not None:
            self._pending_loop.quit()

    # ------------------------------------------------------------------
    # Pipeline providers
    # ------------------------------------------------------------------

    def collect_canvas_clicks(self, image: np.ndarray) -> List[Tuple[int, int]]:
        """Click provider for the manual canvas policy."""
        return self.run_canvas_clicks(image)

    def select_tissue(self, image: np.ndarray, smoothed_mask: np.ndarray) -> Optional[np.ndarray]:
        """Selection provider used when automatic tracing is off."""
        return self.run_tissue_selection(image, smoothed_mask)

    def run_canvas_clicks(self, image: np.ndarray) -> List[Tuple[int, int]]:
        """Collect canvas clicks; each one is previewed as a background flood fill."""
        self._set_status("Canvas: click each canvas region to recolour it")
        points: List[Tuple[int, int]] = []

        def _redraw():
            frame = image.copy()
            for x, y in points:
                cv2.floodFill(frame, None, (x, y), BACKGROUND_RGB, (0, 0, 0), (0, 0, 0), 4)
            for x, y in points:
                cv2.circle(frame, (x, y), DRAW_THICKNESS * 2, (0, 120, 255), -1)
            self._viewer.set_image(frame)
            self._set_ready("Accept", True)

        def on_click(x, y):
            points.append((x, y))
            _redraw()

        def on_clear():
            points.clear()
            _redraw()

        def on_accept():
            self._finish_step(list(points))

        self._viewer.set_click_handler(on_click)
        self._clear_shortcuts()
        self._register_shortcut("C", on_clear)
        self._register_shortcut("A", on_accept)
        self._set_actions(
            [
                {"label": "Accept", "callback": on_accept, "role": "accept", "tooltip": "Apply clicks. Shortcut: A"},
                {"label": "Clear", "callback": on_clear, "tooltip": "Remove all clicks. Shortcut: C"},
            ],
            "Canvas: click on each canvas area that should become background, then Accept.",
        )
        _redraw()
        return self._wait_for_result() or []

    def run_tissue_selection(self, image: np.ndarray, smoothed_mask: np.ndarray) -> Optional[np.ndarray]:
        """Polygon selection of the tissue region.

        Accepting with fewer than three vertices returns None, which the
        pipeline treats as an empty selection.
        """
        self._set_status("Tissue: outline the tissue region")
        points: List[Tuple[int, int]] = []

        def _redraw():
            frame = image.copy()
            if not self.batch_mode:
                edges = cv2.Canny(smoothed_mask, 50, 150)
                frame[edges > 0] = (0, 160, 0)
            if len(points) > 1:
                cv2.polylines(frame, [np.array(points, dtype=np.int32)], len(points) >= 3, (255, 255, 0), DRAW_THICKNESS)
            for pt in points:
                cv2.circle(frame, pt, DRAW_THICKNESS, (255, 255, 0), -1)
            self._viewer.set_image(frame)
            self._set_ready("Accept", len(points) >= 3)

        def on_click(x, y):
            points.append((x, y))
            _redraw()

        def on_reset():
            points.clear()
            _redraw()

        def on_accept():
            if len(points) < 3:
                self._finish_step(None)
                return
            selection = np.zeros(image.shape[:2], dtype=np.uint8)
            cv2.fillPoly(selection, [np.array(points, dtype=np.int32)], 255)
            self._finish_step(as_mask(selection))

        self._viewer.set_click_handler(on_click)
        self._clear_shortcuts()
        self._register_shortcut("R", on_reset)
        self._register_shortcut("A", on_accept)
        self._set_actions(
            [
                {"label": "Accept", "callback": on_accept, "role": "accept", "tooltip": "Accept outline. Shortcut: A"},
                {"label": "Reset", "callback": on_reset, "tooltip": "Remove all vertices. Shortcut: R"},
            ],
            "Tissue: click vertices around the tissue section, then Accept.",
        )
        _redraw()
        return self._wait_for_result()


def _range_row(label: str, bounds: Tuple[int, int]) -> Tuple[QWidget, QSpinBox, QSpinBox]:
    row = QWidget()
    layout = QHBoxLayout(row)
    layout.setContentsMargins(0, 0, 0, 0)
    lower = QSpinBox()
    lower.setRange(0, 255)
    lower.setValue(bounds[0])
    upper = QSpinBox()
    upper.setRange(0, 255)
    upper.setValue(bounds[1])
    layout.addWidget(QLabel(label))
    layout.addWidget(lower)
    layout.addWidget(QLabel("to"))
    layout.addWidget(upper)
    layout.addStretch(1)
    return row, lower, upper


class AnalysisTab(QWidget):
    """Parameter page: folders, thresholds and policies for a batch run."""

    def __init__(self, workspace: Optional[SelectionWorkspace] = None, parent=None):
        super().__init__(parent)
        self.workspace = workspace or SelectionWorkspace()
        self.input_path = ""
        defaults = ThresholdSet()
        layout = QVBoxLayout(self)
        layout.setContentsMargins(0, 0, 0, 0)
        layout.setSpacing(6)

        input_card, input_layout = create_card("1) Input micrographs")
        self.input_btn = QPushButton("Select Images Folder")
        self.input_btn.setObjectName("secondaryAction")
        self.input_btn.clicked.connect(self.select_input)
        input_layout.addWidget(self.input_btn)
        subset_row = QHBoxLayout()
        subset_row.addWidget(QLabel("Image subset (e.g. 1-3,7):"))
        self.subset_edit = QLineEdit()
        self.subset_edit.setPlaceholderText("all images")
        subset_row.addWidget(self.subset_edit)
        input_layout.addLayout(subset_row)
        layout.addWidget(input_card)

        psr_card, psr_layout = create_card("2) PSR colour thresholds (HSB)")
        row, self.hue_lower, self.hue_upper = _range_row("Hue:", defaults.hue)
        psr_layout.addWidget(row)
        row, self.sat_lower, self.sat_upper = _range_row("Saturation:", defaults.saturation)
        psr_layout.addWidget(row)
        row, self.bright_lower, self.bright_upper = _range_row("Brightness:", defaults.brightness)
        psr_layout.addWidget(row)
        layout.addWidget(psr_card)

        tissue_card, tissue_layout = create_card("3) Tissue and artifacts")
        grid = QGridLayout()
        self.tissue_sigma_spin = QDoubleSpinBox()
        self.tissue_sigma_spin.setRange(0.0, 200.0)
        self.tissue_sigma_spin.setValue(defaults.tissue_sigma)
        self.artifact_sigma_spin = QDoubleSpinBox()
        self.artifact_sigma_spin.setRange(0.0, 200.0)
        self.artifact_sigma_spin.setValue(defaults.artifact_sigma)
        self.min_area_spin = QSpinBox()
        self.min_area_spin.setRange(0, 100000000)
        self.min_area_spin.setValue(defaults.artifact_min_area)
        grid.addWidget(QLabel("Tissue blur sigma:"), 0, 0)
        grid.addWidget(self.tissue_sigma_spin, 0, 1)
        grid.addWidget(QLabel("Artifact blur sigma:"), 0, 2)
        grid.addWidget(self.artifact_sigma_spin, 0, 3)
        grid.addWidget(QLabel("Artifact min area (px):"), 1, 0)
        grid.addWidget(self.min_area_spin, 1, 1)
        tissue_layout.addLayout(grid)
        row, self.green_lower, self.green_upper = _range_row("Artifact green range:", defaults.green)
        tissue_layout.addWidget(row)
        self.baseline_check = QCheckBox("Apply auto-threshold baseline to green channel")
        tissue_layout.addWidget(self.baseline_check)
        policy_row = QHBoxLayout()
        policy_row.addWidget(QLabel("Canvas policy:"))
        self.canvas_combo = QComboBox()
        self.canvas_combo.addItems([p.value for p in CanvasPolicy])
        self.canvas_combo.setCurrentText(CanvasPolicy.CORNERS.value)
        policy_row.addWidget(self.canvas_combo)
        self.auto_trace_check = QCheckBox("Trace tissue automatically")
        self.auto_trace_check.setChecked(True)
        policy_row.addWidget(self.auto_trace_check)
        self.batch_mode_check = QCheckBox("Batch mode (no previews)")
        self.batch_mode_check.setChecked(True)
        policy_row.addWidget(self.batch_mode_check)
        policy_row.addStretch(1)
        tissue_layout.addLayout(policy_row)
        layout.addWidget(tissue_card)

        run_card, run_layout = create_card("4) Run analysis")
        self.run_btn = QPushButton("Run Analysis")
        self.run_btn.setObjectName("primaryAction")
        self.run_btn.clicked.connect(self.run_analysis)
        run_layout.addWidget(self.run_btn)
        self.log_view = QTextEdit()
        self.log_view.setReadOnly(True)
        self.log_view.setMinimumHeight(120)
        run_layout.addWidget(self.log_view)
        layout.addWidget(run_card)
        layout.addStretch(1)
        self.show_workspace_callback = None

    def select_input(self):
        folder = QFileDialog.getExistingDirectory(self, "Select Images Folder", "")
        if folder:
            self.input_path = folder
            self.input_btn.setText(f"Images Folder: {folder}")

    def build_config(self) -> PipelineConfig:
        """Read the form into a PipelineConfig; raises ConfigurationError."""
        thresholds = ThresholdSet(
            hue=(self.hue_lower.value(), self.hue_upper.value()),
            saturation=(self.sat_lower.value(), self.sat_upper.value()),
            brightness=(self.bright_lower.value(), self.bright_upper.value()),
            green=(self.green_lower.value(), self.green_upper.value()),
            tissue_sigma=self.tissue_sigma_spin.value(),
            artifact_sigma=self.artifact_sigma_spin.value(),
            artifact_min_area=self.min_area_spin.value(),
            artifact_auto_baseline=self.baseline_check.isChecked(),
        )
        return PipelineConfig(
            thresholds=thresholds,
            canvas_policy=self.canvas_combo.currentText(),
            auto_trace=self.auto_trace_check.isChecked(),
            image_subset=self.subset_edit.text().strip() or None,
            batch_mode=self.batch_mode_check.isChecked(),
        )

    def _show_workspace(self, show: bool) -> None:
        if self.show_workspace_callback is not None:
            self.show_workspace_callback(show)

    def run_analysis(self):
        if not self.input_path:
            QMessageBox.warning(self, "No folder", "Please select an images folder first.")
            return
        try:
            config = self.build_config()
        except ConfigurationError as e:
            QMessageBox.warning(self, "Invalid parameters", str(e))
            return
        output_folder = os.path.join(self.input_path, "psrquant_results")
        self.workspace.batch_mode = config.batch_mode
        interactive = config.canvas_policy == CanvasPolicy.MANUAL or not config.auto_trace
        if interactive:
            self._show_workspace(True)
        QApplication.processEvents()

        def on_progress(position: int, total: int, fname: str) -> None:
            self.workspace.set_progress(f"Image {position}/{total}: {fname}")
            QApplication.processEvents()

        try:
            count, log_str, _ = process_folder(
                self.input_path,
                output_folder,
                config,
                click_provider=self.workspace.collect_canvas_clicks,
                selection_provider=self.workspace.select_tissue,
                progress=on_progress,
            )
        except PSRQuantError as e:
            QMessageBox.critical(self, "Analysis aborted", str(e))
            self._show_workspace(False)
            return
        except Exception as e:
            QMessageBox.critical(self, "Error", f"Error during analysis: {e}\n{traceback.format_exc()}")
            self._show_workspace(False)
            return
        self._show_workspace(False)
        self.log_view.setPlainText(log_str)
        QMessageBox.information(
            self,
            "Analysis complete",
            f"Analysis finished. Processed {count} images.\nResults saved in {output_folder}.",
        )


class MainWindow(QMainWindow):
    def __init__(self):
        super().__init__()
        self.setWindowTitle("PSRQuant")
        self.setMinimumSize(980, 600)
        status = QStatusBar()
        self.setStatusBar(status)
        self.workspace = SelectionWorkspace(status_callback=self.statusBar().showMessage)
        self.analysis_tab = AnalysisTab(self.workspace)
        self.analysis_tab.show_workspace_callback = self.show_workspace
        self.stack = QStackedWidget()
        self.stack.addWidget(self.analysis_tab)
        self.stack.addWidget(self.workspace)
        main_widget = QWidget()
        main_layout = QVBoxLayout(main_widget)
        main_layout.setContentsMargins(16, 16, 16, 16)
        main_layout.addWidget(self.stack)
        self.setCentralWidget(main_widget)
        self.statusBar().showMessage("Ready")

    def show_workspace(self, show: bool) -> None:
        self.stack.setCurrentIndex(1 if show else 0)
