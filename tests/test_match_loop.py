"""Tests for matcher/main.py: key handling and the capture → match → show loop.

The camera, key polling and window calls are replaced by fakes so the loop
runs head-less.

Run with:
    pytest tests/test_match_loop.py
"""
import cv2
import numpy as np
import pytest

from slamlab.core.errors import CaptureUnavailable
from slamlab.matcher import main as matcher_main
from slamlab.matcher.main import LoopState, MatchVisualizer, apply_key


# --------------------------------------------------------------------------- #
#  Fakes
# --------------------------------------------------------------------------- #
def _textured_image(seed, h=240, w=320):
    rng = np.random.default_rng(seed)
    cells = rng.integers(0, 256, (h // 40, w // 40), dtype=np.uint8)
    img = cv2.resize(cells, (w, h), interpolation=cv2.INTER_NEAREST)
    noise = rng.integers(0, 256, (h // 8, w // 8), dtype=np.uint8)
    noise = cv2.resize(noise, (w, h), interpolation=cv2.INTER_NEAREST)
    img = cv2.GaussianBlur(cv2.addWeighted(img, 0.7, noise, 0.3, 0), (3, 3), 0)
    return cv2.cvtColor(img, cv2.COLOR_GRAY2BGR)


class _Device:
    """A camera that only one capture may hold at a time."""

    def __init__(self, frames):
        self.frames = list(frames)
        self.busy = False
        self.opened = 0

    def capture(self, index):
        return _FakeCapture(self)


class _FakeCapture:
    def __init__(self, device):
        self.device = device
        self.ok = not device.busy
        if self.ok:
            device.busy = True
            device.opened += 1
        self._it = iter(device.frames)

    def isOpened(self):
        return self.ok

    def read(self):
        frame = next(self._it, None)
        return frame is not None, frame

    def release(self):
        if self.ok:
            self.device.busy = False
            self.ok = False


class _Window:
    def __init__(self):
        self.shown = []
        self.closed = 0

    def show(self, name, img):
        self.shown.append((name, img.shape))

    def close(self):
        self.closed += 1


def _visualizer(device, keys, pairings, window, **kw):
    key_iter = iter(keys)
    return MatchVisualizer(pairings,
                           capture_factory=device.capture,
                           wait_key=lambda ms: next(key_iter, -1),
                           show=window.show,
                           close_windows=window.close,
                           **kw)


# --------------------------------------------------------------------------- #
#  apply_key
# --------------------------------------------------------------------------- #
def test_ratio_keys_step_and_saturate():
    state = LoopState(0.5)
    for _ in range(7):
        assert apply_key(ord("u"), state) == "ratio"
    assert state.accept_ratio == 1.0
    for _ in range(12):
        apply_key(ord("d"), state)
    assert state.accept_ratio == 0.0
    apply_key(ord("u"), state)
    apply_key(ord("u"), state)
    apply_key(ord("u"), state)
    assert state.accept_ratio == 0.3


def test_keys_are_case_insensitive():
    state = LoopState(0.5)
    assert apply_key(ord("F"), state) == "rebind"
    assert apply_key(ord("Q"), state) == "quit"
    assert apply_key(ord("U"), state) == "ratio" and state.accept_ratio == 0.6
    assert apply_key(ord("D"), state) == "ratio" and state.accept_ratio == 0.5


def test_other_keys_and_no_key_are_ignored():
    state = LoopState(0.5)
    for key in (-1, ord("x"), ord(" "), 27):
        assert apply_key(key, state) is None
    assert state.accept_ratio == 0.5


def test_modifier_bits_are_masked():
    assert apply_key(0x100000 | ord("q"), LoopState()) == "quit"


# --------------------------------------------------------------------------- #
#  Frame loop
# --------------------------------------------------------------------------- #
def test_rebind_sets_reference_to_current_frame():
    a, b = _textured_image(0), _textured_image(1)
    device = _Device([a, a, b, b])
    window = _Window()
    viz = _visualizer(device, [-1, ord("f"), ord("q")],
                      [("orb", "bf"), ("sift", "bf")], window, accept_ratio=1.0)
    viz.run()

    assert viz.frames_shown == 2
    assert window.closed == 1 and not device.busy
    assert all(name == "matches" for name, _ in window.shown)
    assert all(shape[1] == 1000 for _, shape in window.shown)

    for cur, ref in zip(viz.cur_handlers, viz.ref_handlers):
        assert ref.frame is b
        assert len(cur.last_matches) > 0
        same = sum(np.allclose(cur.keypoints[m.queryIdx].pt, ref.keypoints[m.trainIdx].pt, atol=1.0)
                   for m in cur.last_matches)
        assert same / len(cur.last_matches) >= 0.9, cur.name


def test_ratio_keys_change_loop_threshold():
    a = _textured_image(3)
    device = _Device([a] * 5)
    viz = _visualizer(device, [ord("u"), ord("d"), ord("d"), ord("q")],
                      [("orb", "bf")], _Window())
    viz.run()
    assert viz.state.accept_ratio == 0.4
    assert viz.frames_shown == 3


def test_camera_released_and_reusable_after_quit():
    a = _textured_image(4)
    device = _Device([a] * 3)
    _visualizer(device, [ord("q")], [("orb", "flann")], _Window()).run()
    assert not device.busy

    viz = _visualizer(device, [ord("q")], [("orb", "flann")], _Window())
    cap = viz.open_camera()
    assert cap.isOpened()
    cap.release()
    assert device.opened == 2


def test_unopenable_camera_raises_capture_unavailable():
    device = _Device([])
    device.busy = True
    viz = _visualizer(device, [], [("orb", "bf")], _Window())
    with pytest.raises(CaptureUnavailable):
        viz.run()


def test_stream_ending_releases_camera():
    a = _textured_image(5)
    device = _Device([a, a])
    window = _Window()
    viz = _visualizer(device, [-1, -1, -1], [("orb", "bf")], window)
    with pytest.raises(CaptureUnavailable):
        viz.run()
    assert not device.busy and window.closed == 1


def test_unavailable_detector_skips_only_its_stripe():
    a = _textured_image(6)
    device = _Device([a, a, a])
    viz = _visualizer(device, [-1, ord("q")], [("orb", "bf"), ("orb", "flann")], _Window())
    viz.cur_handlers[1].detector = None
    viz.cur_handlers[1]._detector_error = "orb is not available"
    viz.run()

    r0, r1 = viz.canvas.stripe_rows(0)
    s0, s1 = viz.canvas.stripe_rows(1)
    assert viz.canvas.image[r0:r1].any()
    assert not viz.canvas.image[s0:s1].any()


# --------------------------------------------------------------------------- #
#  CLI
# --------------------------------------------------------------------------- #
def test_main_returns_nonzero_when_camera_missing(monkeypatch, capsys):
    device = _Device([])
    device.busy = True
    monkeypatch.setattr(cv2, "VideoCapture", device.capture)
    assert matcher_main.main(["--pair", "orb:bf"]) == 1
    assert "'q' to quit" in capsys.readouterr().out


def test_main_rejects_unknown_pairing():
    assert matcher_main.main(["--pair", "orb:knn"]) == 1
