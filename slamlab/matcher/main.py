# main.py
"""
Live descriptor-match visualiser
--------------------------------
$ slamlab-matcher                       # SIFT+BF, SURF+FLANN, ORB+FLANN
$ slamlab-matcher --pair orb:bf --pair sift:flann --camera 1

Every frame from the camera is matched against a fixed reference frame by
each (detector, matcher) pairing.  Results are stacked one pairing per row in
the "matches" window.

Keys:  f  take the current frame as reference
       u  raise the ratio-test threshold by 0.1
       d  lower it by 0.1
       q  quit
"""
import argparse
import logging
import sys
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence, Tuple

import cv2

from slamlab.core.errors import (CaptureUnavailable, DetectorError,
                                 MatcherError, SlamLabError)
from slamlab.core.features_utils import (DescHandler, create_handlers,
                                         parse_pairing)
from slamlab.core.visualization_utils import CompositeCanvas

log = logging.getLogger("matcher")

DEFAULT_PAIRINGS: Tuple[Tuple[str, str], ...] = (("sift", "bf"), ("surf", "flann"), ("orb", "flann"))
WINDOW_NAME = "matches"

BANNER = ("Press 'f' to change reference frame,\n"
          "'u' to increase match accept ratio,\n"
          "'d' to decrease match accept ratio,\n"
          "and 'q' to quit.")


# --------------------------------------------------------------------------- #
#  Key handling
# --------------------------------------------------------------------------- #
@dataclass
class LoopState:
    accept_ratio: float = 0.5


def apply_key(key: int, state: LoopState) -> Optional[str]:
    """
    Update *state* for one polled key code.
    Returns "rebind", "quit", "ratio" or None (no effect).
    """
    if key is None or key < 0:
        return None
    ch = chr(key & 0xFF).lower()
    if ch == "f":
        return "rebind"
    if ch == "u":
        # rounding keeps 0.1 steps exact after many presses
        state.accept_ratio = min(1.0, round(state.accept_ratio + 0.1, 1))
        return "ratio"
    if ch == "d":
        state.accept_ratio = max(0.0, round(state.accept_ratio - 0.1, 1))
        return "ratio"
    if ch == "q":
        return "quit"
    return None


# --------------------------------------------------------------------------- #
#  Frame loop
# --------------------------------------------------------------------------- #
class MatchVisualizer:
    """Owns the camera, both handler lists and the composite canvas."""

    def __init__(self,
                 pairings: Sequence[Tuple[str, str]] = DEFAULT_PAIRINGS,
                 *,
                 camera_index: int = 0,
                 display_width: int = 1000,
                 wait_ms: int = 10,
                 accept_ratio: float = 0.5,
                 capture_factory: Optional[Callable] = None,
                 wait_key: Optional[Callable[[int], int]] = None,
                 show: Optional[Callable] = None,
                 close_windows: Optional[Callable[[], None]] = None):
        self.camera_index = camera_index
        self.display_width = display_width
        self.wait_ms = wait_ms
        self.state = LoopState(accept_ratio)

        # None -> OpenCV default
        self._capture_factory = capture_factory or cv2.VideoCapture
        self._wait_key = wait_key or cv2.waitKey
        self._show = show or cv2.imshow
        self._close_windows = close_windows or cv2.destroyAllWindows

        # index i of both lists is the same pairing; only current handlers draw
        self.canvas = CompositeCanvas()
        self.cur_handlers: List[DescHandler] = create_handlers(pairings, self.canvas)
        self.ref_handlers: List[DescHandler] = create_handlers(pairings)

        self._reported = set()
        self.frames_shown = 0

    # ------------------------------------------------------------------ #
    def open_camera(self):
        cap = self._capture_factory(self.camera_index)
        if not cap.isOpened():
            cap.release()
            raise CaptureUnavailable(f"cannot open camera {self.camera_index}")
        return cap

    @staticmethod
    def grab(cap):
        ok, frame = cap.read()
        if not ok or frame is None:
            raise CaptureUnavailable("camera stopped delivering frames")
        return frame

    def _report(self, handler: DescHandler, exc: Exception) -> None:
        # first failure of a kind per handler is a warning, repeats are debug noise
        key = (handler.name, id(handler), type(exc))
        if key in self._reported:
            log.debug("%s", exc)
        else:
            self._reported.add(key)
            log.warning("%s (frame skipped)", exc)

    def detect_all(self, handlers: Sequence[DescHandler], frame) -> List[bool]:
        ok = []
        for h in handlers:
            try:
                h.detect_and_compute(frame)
                ok.append(True)
            except DetectorError as exc:
                self._report(h, exc)
                ok.append(False)
        return ok

    # ------------------------------------------------------------------ #
    def step(self, cap) -> bool:
        """One loop iteration; False once the user asked to quit."""
        frame = self.grab(cap)
        detected = self.detect_all(self.cur_handlers, frame)

        action = apply_key(self._wait_key(self.wait_ms), self.state)
        if action == "quit":
            return False
        if action == "rebind":
            log.info("set fixed reference result")
            self.detect_all(self.ref_handlers, frame)
        elif action == "ratio":
            log.info("accept ratio = %.1f", self.state.accept_ratio)

        for ok, cur, ref in zip(detected, self.cur_handlers, self.ref_handlers):
            if not ok or ref.frame is None:
                continue
            try:
                cur.match_and_draw(ref, self.state.accept_ratio)
            except MatcherError as exc:
                self._report(cur, exc)

        result = DescHandler.get_resulting_img(self.canvas, self.display_width)
        if result is not None:
            self._show(WINDOW_NAME, result)
            self.frames_shown += 1
        return True

    def run(self) -> None:
        cap = self.open_camera()
        try:
            # seed the reference with the very first frame
            self.detect_all(self.ref_handlers, self.grab(cap))
            while self.step(cap):
                pass
        finally:
            cap.release()
            self._close_windows()
            log.info("camera released")


# --------------------------------------------------------------------------- #
#  CLI
# --------------------------------------------------------------------------- #
def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser("Live descriptor matching against a fixed reference frame")
    p.add_argument('--camera', type=int, default=0, help='camera device index')
    p.add_argument('--width', type=int, default=1000, help='display width (px)')
    p.add_argument('--ratio', type=float, default=0.5, help='initial ratio-test threshold')
    p.add_argument('--wait_ms', type=int, default=10, help='key polling wait per frame')
    p.add_argument('--pair', action='append', metavar='DET:MAT',
                   help='detector:matcher pairing, repeatable (sift|surf|orb : bf|flann)')
    p.add_argument('--log_level', default='INFO',
                   choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'])
    return p


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _build_parser().parse_args(argv)
    logging.basicConfig(level=getattr(logging, args.log_level),
                        format="[%(levelname)s] %(name)s:%(funcName)s: %(message)s")
    print(BANNER)

    try:
        pairings = [parse_pairing(p) for p in args.pair] if args.pair else DEFAULT_PAIRINGS
        ratio = min(1.0, max(0.0, round(args.ratio, 1)))
        viz = MatchVisualizer(pairings,
                              camera_index=args.camera,
                              display_width=args.width,
                              wait_ms=args.wait_ms,
                              accept_ratio=ratio)
        viz.run()
    except SlamLabError as exc:
        log.error("%s", exc)
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
