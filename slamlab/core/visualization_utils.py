# visualization_utils.py
"""
visualization_utils.py
~~~~~~~~~~~~~~~~~~~~~~
OpenCV helpers for the match visualiser.

``CompositeCanvas``
    One image split into equal-height horizontal stripes; stripe *i*
    belongs to the *i*-th registered handler.

``annotate_panel(img, text)``
    Draw a caption in the top-left corner of a panel.
"""
from __future__ import annotations

import logging
from typing import Optional, Tuple

import cv2
import numpy as np

log = logging.getLogger("canvas")


# --------------------------------------------------------------------------- #
#  Composite canvas
# --------------------------------------------------------------------------- #
class CompositeCanvas:
    """Row-partitioned result image shared by the current handlers.

    The canvas is allocated on the first write, from that panel's size.  Later
    panels are resized into their stripe; the canvas never changes shape.
    """

    def __init__(self, num_stripes: int = 0) -> None:
        self.num_stripes = num_stripes
        self.image: Optional[np.ndarray] = None
        self.stripe_hw: Optional[Tuple[int, int]] = None

    def register(self) -> int:
        """Reserve the next stripe and return its index."""
        if self.image is not None:
            raise RuntimeError("cannot add stripes once the canvas is allocated")
        row = self.num_stripes
        self.num_stripes += 1
        return row

    def stripe_rows(self, row: int) -> Tuple[int, int]:
        """[start, end) pixel rows of stripe *row*."""
        if self.stripe_hw is None:
            raise RuntimeError("canvas not allocated yet")
        h = self.stripe_hw[0]
        return row * h, (row + 1) * h

    def write(self, row: int, panel: np.ndarray) -> None:
        if not 0 <= row < self.num_stripes:
            raise IndexError(f"stripe {row} out of range (0..{self.num_stripes - 1})")

        panel = _ensure_bgr_u8(panel)
        if self.image is None:
            h, w = panel.shape[:2]
            self.stripe_hw = (h, w)
            self.image = np.zeros((h * self.num_stripes, w, 3), np.uint8)
            log.debug("canvas allocated: %d stripes of %dx%d", self.num_stripes, w, h)

        h, w = self.stripe_hw
        if panel.shape[:2] != (h, w):
            panel = cv2.resize(panel, (w, h), interpolation=cv2.INTER_AREA)
        r0, r1 = self.stripe_rows(row)
        self.image[r0:r1] = panel

    def get_resulting_img(self, target_width: int) -> Optional[np.ndarray]:
        """Whole canvas scaled to *target_width* px wide (aspect kept); None before the first write."""
        if self.image is None:
            return None
        if target_width <= 0:
            raise ValueError("target_width must be positive")
        h, w = self.image.shape[:2]
        target_height = max(1, int(round(h * target_width / w)))
        interp = cv2.INTER_AREA if target_width < w else cv2.INTER_LINEAR
        return cv2.resize(self.image, (target_width, target_height), interpolation=interp)


def _ensure_bgr_u8(img: np.ndarray) -> np.ndarray:
    if img.dtype != np.uint8:
        img = np.clip(img, 0, 255).astype(np.uint8)
    if img.ndim == 2:
        img = cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)
    return img


# --------------------------------------------------------------------------- #
#  2‑D overlay helpers
# --------------------------------------------------------------------------- #
def annotate_panel(vis: np.ndarray, text: str) -> np.ndarray:
    """Caption *vis* in place (dark outline so it reads on any background)."""
    cv2.putText(vis, text, (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (0, 0, 0), 4)
    cv2.putText(vis, text, (10, 30), cv2.FONT_HERSHEY_SIMPLEX, 0.8, (255, 255, 255), 2)
    return vis
