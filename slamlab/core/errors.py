# errors.py
"""
Exception taxonomy shared by the match visualiser and the graph constructor.

Construction-time errors (``UnsupportedKind``, ``IncompatiblePairing``,
``CaptureUnavailable``) are fatal to a session.  ``DetectorError`` and
``MatcherError`` only cost the current frame.
"""


class SlamLabError(Exception):
    """Base class for every error raised by slamlab."""


class UnsupportedKind(SlamLabError, ValueError):
    """Detector or matcher name outside the supported set."""


class IncompatiblePairing(SlamLabError, ValueError):
    """Descriptor type cannot be compared with the requested matcher metric."""


class CaptureUnavailable(SlamLabError, RuntimeError):
    """Camera could not be opened or stopped delivering frames."""


class DetectorError(SlamLabError, RuntimeError):
    """Keypoint detection / descriptor computation failed."""


class MatcherError(SlamLabError, RuntimeError):
    """Descriptor matching failed."""


class VertexNotFound(SlamLabError, KeyError):
    """Graph lookup for a vertex id that was never added."""

    def __str__(self) -> str:
        # KeyError quotes its argument, keep the message readable
        return str(self.args[0]) if self.args else ""
