# features_utils.py
"""
Detector + matcher pairings for the live match visualiser.

A ``DescHandler`` bundles one OpenCV detector with one descriptor matcher and
remembers its last observation (frame, keypoints, descriptors).  Two handlers
built with the same pairing are matched with a k=2 nearest-neighbour search
followed by Lowe's ratio test.
"""
from __future__ import annotations

import logging
from enum import Enum
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from slamlab.core.errors import (DetectorError, IncompatiblePairing,
                                 MatcherError, UnsupportedKind)
from slamlab.core.visualization_utils import CompositeCanvas, annotate_panel

log = logging.getLogger("features")


# --------------------------------------------------------------------------- #
#  Closed sets of detector / matcher kinds
# --------------------------------------------------------------------------- #
class DetectorKind(Enum):
    SIFT = "sift"
    SURF = "surf"
    ORB = "orb"

    @property
    def binary(self) -> bool:
        """True when the detector produces binary (Hamming) descriptors."""
        return self is DetectorKind.ORB


class MatcherKind(Enum):
    BF = "bf"          # brute force
    FLANN = "flann"    # approximate nearest neighbour


METRICS = ("auto", "l2", "hamming")

# FLANN index parameters
FLANN_INDEX_KDTREE = 1
FLANN_INDEX_LSH = 6


def _parse_kind(enum_cls, value):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        choices = ", ".join(k.value for k in enum_cls)
        raise UnsupportedKind(f"Unsupported {enum_cls.__name__}: {value!r} (choose from {choices})") from None


# --------------------------------------------------------------------------- #
#  Initialisation helpers
# --------------------------------------------------------------------------- #
def _get_opencv_detector(detector: DetectorKind, max_features: int = 2000):
    if detector is DetectorKind.ORB:
        return cv2.ORB_create(max_features)
    if detector is DetectorKind.SIFT:
        return cv2.SIFT_create()
    # SURF lives in the contrib non-free module
    return cv2.xfeatures2d.SURF_create(400)


def _resolve_metric(detector: DetectorKind, matcher: MatcherKind, metric: str) -> str:
    metric = str(metric).lower()
    if metric not in METRICS:
        raise UnsupportedKind(f"Unsupported metric: {metric!r} (choose from {', '.join(METRICS)})")
    wanted = "hamming" if detector.binary else "l2"
    if metric == "auto":
        return wanted
    if metric != wanted:
        kind = "binary" if detector.binary else "floating-point"
        raise IncompatiblePairing(
            f"{detector.value} produces {kind} descriptors; "
            f"{matcher.value} with {metric} distance cannot compare them")
    return metric


def _get_opencv_matcher(matcher: MatcherKind, metric: str):
    if matcher is MatcherKind.BF:
        norm = cv2.NORM_HAMMING if metric == "hamming" else cv2.NORM_L2
        return cv2.BFMatcher(norm, crossCheck=False)   # knnMatch needs crossCheck off
    if metric == "hamming":
        index_params = dict(algorithm=FLANN_INDEX_LSH, table_number=6,
                            key_size=12, multi_probe_level=1)
    else:
        index_params = dict(algorithm=FLANN_INDEX_KDTREE, trees=5)
    return cv2.FlannBasedMatcher(index_params, dict(checks=50))


# --------------------------------------------------------------------------- #
#  Ratio test
# --------------------------------------------------------------------------- #
def ratio_test(knn_matches: Iterable[Sequence[cv2.DMatch]], accept_ratio: float) -> List[cv2.DMatch]:
    """
    Lowe's ratio test.  A pair (m1, m2) survives iff a second neighbour
    exists and ``m1.distance < accept_ratio * m2.distance``.
    """
    good = []
    for pair in knn_matches:
        if len(pair) < 2:
            continue
        m, n = pair[0], pair[1]
        if m.distance < accept_ratio * n.distance:
            good.append(m)
    return good


# --------------------------------------------------------------------------- #
#  Handler
# --------------------------------------------------------------------------- #
class DescHandler:
    """One (detector, matcher) pairing plus its latest observation."""

    def __init__(self, detector: DetectorKind, matcher: MatcherKind, metric: str,
                 canvas: Optional[CompositeCanvas] = None, max_features: int = 2000):
        self.detector_kind = detector
        self.matcher_kind = matcher
        self.metric = metric

        self._detector_error: Optional[str] = None
        try:
            self.detector = _get_opencv_detector(detector, max_features)
        except (cv2.error, AttributeError) as exc:
            # reported on every detect_and_compute, the session keeps running
            self.detector = None
            self._detector_error = f"{detector.value} is not available in this OpenCV build ({exc})"
            log.warning("%s", self._detector_error)
        self.matcher = _get_opencv_matcher(matcher, metric)

        self.frame: Optional[np.ndarray] = None
        self.keypoints: List[cv2.KeyPoint] = []
        self.descriptors = self._empty_descriptors()
        self.last_matches: List[cv2.DMatch] = []

        self.canvas = canvas
        self.row = canvas.register() if canvas is not None else None

    # ------------------------------------------------------------------ #
    @classmethod
    def factory(cls,
                detector: Union[str, DetectorKind],
                matcher: Union[str, MatcherKind],
                canvas: Optional[CompositeCanvas] = None,
                *,
                metric: str = "auto",
                max_features: int = 2000) -> "DescHandler":
        """Build a handler by name, e.g. ``factory("orb", "flann")``."""
        det = _parse_kind(DetectorKind, detector)
        mat = _parse_kind(MatcherKind, matcher)
        return cls(det, mat, _resolve_metric(det, mat, metric), canvas, max_features)

    @property
    def name(self) -> str:
        return f"{self.detector_kind.value}+{self.matcher_kind.value}"

    def _empty_descriptors(self) -> np.ndarray:
        if self.detector_kind.binary:
            return np.empty((0, 32), np.uint8)
        width = 64 if self.detector_kind is DetectorKind.SURF else 128
        return np.empty((0, width), np.float32)

    # ------------------------------------------------------------------ #
    def detect_and_compute(self, frame: np.ndarray) -> None:
        """Detect keypoints + descriptors on *frame* and keep all three."""
        if self.detector is None:
            raise DetectorError(self._detector_error)
        if frame is None or frame.size == 0:
            raise DetectorError(f"[{self.name}] empty frame")

        gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY) if frame.ndim == 3 else frame
        try:
            kps, des = self.detector.detectAndCompute(gray, None)
        except cv2.error as exc:
            raise DetectorError(f"[{self.name}] detectAndCompute failed: {exc}") from exc

        kps = list(kps) if kps is not None else []
        if des is None:
            des = self._empty_descriptors()
        if len(kps) != des.shape[0]:
            raise DetectorError(f"[{self.name}] {len(kps)} keypoints but {des.shape[0]} descriptors")

        self.frame = frame
        self.keypoints = kps
        self.descriptors = des
        log.debug("[%s] %d keypoints", self.name, len(kps))

    def match(self, reference: "DescHandler", accept_ratio: float) -> List[cv2.DMatch]:
        """k=2 matching current → reference, filtered by the ratio test."""
        # fewer than two reference rows means no second neighbour for anybody
        if len(self.descriptors) == 0 or len(reference.descriptors) < 2:
            return []
        try:
            knn = self.matcher.knnMatch(self.descriptors, reference.descriptors, k=2)
        except cv2.error as exc:
            raise MatcherError(f"[{self.name}] knnMatch failed: {exc}") from exc
        return ratio_test(knn, accept_ratio)

    def match_and_draw(self, reference: "DescHandler", accept_ratio: float) -> List[cv2.DMatch]:
        """Match against *reference*, draw the result and copy it into this handler's stripe."""
        if not 0.0 <= accept_ratio <= 1.0:
            raise ValueError(f"accept_ratio must be in [0, 1], got {accept_ratio}")
        if self.frame is None or reference.frame is None:
            raise MatcherError(f"[{self.name}] match_and_draw before detect_and_compute")

        matches = self.match(reference, accept_ratio)
        self.last_matches = matches
        log.debug("[%s] ratio=%.1f  accepted=%d", self.name, accept_ratio, len(matches))

        if self.canvas is not None:
            try:
                panel = cv2.drawMatches(self.frame, self.keypoints,
                                        reference.frame, reference.keypoints,
                                        matches, None,
                                        flags=cv2.DrawMatchesFlags_NOT_DRAW_SINGLE_POINTS)
            except cv2.error as exc:
                raise MatcherError(f"[{self.name}] drawMatches failed: {exc}") from exc
            annotate_panel(panel, f"{self.name.upper()}  ratio={accept_ratio:.1f}  matches={len(matches)}")
            self.canvas.write(self.row, panel)
        return matches

    @staticmethod
    def get_resulting_img(canvas: CompositeCanvas, target_width: int) -> Optional[np.ndarray]:
        return canvas.get_resulting_img(target_width)

    def __repr__(self) -> str:
        return f"DescHandler({self.name}, metric={self.metric}, kps={len(self.keypoints)}, row={self.row})"


def parse_pairing(text: str) -> Tuple[str, str]:
    """'sift:bf' -> ('sift', 'bf')"""
    det, sep, mat = text.partition(":")
    if not sep or not det or not mat:
        raise UnsupportedKind(f"pairing must look like DETECTOR:MATCHER, got {text!r}")
    return det, mat


def create_handlers(pairings: Iterable[Tuple[str, str]],
                    canvas: Optional[CompositeCanvas] = None) -> List[DescHandler]:
    """One handler per pairing, in order (stripe i belongs to pairing i)."""
    return [DescHandler.factory(det, mat, canvas) for det, mat in pairings]
