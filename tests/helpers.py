import cv2
import numpy as np

# RGB colours with known HSB values (OpenCV HSV_FULL).
PSR_RGB = (200, 40, 80)        # hue 244, sat 204: PSR-positive, green 40
ARTIFACT_RGB = (120, 20, 60)   # PSR-positive with a very dark green channel
TISSUE_RGB = (230, 200, 210)   # sat 33: tissue but not PSR
PSR_SATURATION = 204


def make_square_image(size: int = 100, square: int = 40, color=(0, 0, 0)) -> np.ndarray:
    """White canvas with a centred filled square."""
    img = np.full((size, size, 3), 255, dtype=np.uint8)
    start = (size - square) // 2
    img[start:start + square, start:start + square] = color
    return img


def make_disc_image(size: int = 100, radius: int = 30, color=TISSUE_RGB, background=(255, 255, 255)) -> np.ndarray:
    img = np.full((size, size, 3), background, dtype=np.uint8)
    cv2.circle(img, (size // 2, size // 2), radius, color, -1)
    return img


def make_section_image() -> np.ndarray:
    """300x300 black-canvas slide with a tissue disc, a small PSR patch and a large artifact."""
    img = np.zeros((300, 300, 3), dtype=np.uint8)
    cv2.circle(img, (150, 150), 130, TISSUE_RGB, -1)
    img[80:90, 80:90] = PSR_RGB
    img[150:230, 150:230] = ARTIFACT_RGB
    return img


def centroid(mask: np.ndarray):
    ys, xs = np.nonzero(mask)
    return float(xs.mean()), float(ys.mean())


def get_action(workspace, label):
    button = workspace._action_buttons.get(label)
    if button is None:
        raise AssertionError(f"Action '{label}' not found: {list(workspace._action_buttons.keys())}")
    return button.click


class _HarnessMixin:
    """Auto-drives interactive steps instead of blocking in an event loop."""

    def _init_harness(self):
        self._auto_actions = []

    def _wait_for_result(self):
        if self._auto_actions:
            self._auto_actions.pop(0)()
        result = self._pending_result
        self._pending_result = None
        return result


def make_workspace_harness():
    from psrquant import ui

    class WorkspaceHarness(_HarnessMixin, ui.SelectionWorkspace):
        def __init__(self, *args, **kwargs):
            super().__init__(*args, **kwargs)
            self._init_harness()

    return WorkspaceHarness()
