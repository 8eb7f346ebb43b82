"""Shared test helpers."""

from typing import List, Optional

import cv2
import numpy as np

from errors import DetectionUnavailable
from functions import FaceBox


class StubDetector:
    """Stands in for the YOLO detector; returns canned boxes."""

    def __init__(self, faces: Optional[List[FaceBox]] = None, fail: bool = False) -> None:
        self.faces = faces or []
        self.fail = fail
        self.calls = 0
        self.is_loaded = not fail

    def ensure_loaded(self):
        if self.fail:
            raise DetectionUnavailable("stub detector unavailable")
        return self

    def detect(self, image):
        self.calls += 1
        self.ensure_loaded()
        return list(self.faces)


def make_image(width: int, height: int, value: Optional[int] = None) -> np.ndarray:
    """BGR test image: a flat fill, or a diagonal gradient when ``value`` is None."""
    if value is not None:
        return np.full((height, width, 3), value, dtype=np.uint8)
    xs = np.linspace(0, 255, width, dtype=np.float32)[None, :]
    ys = np.linspace(0, 255, height, dtype=np.float32)[:, None]
    gray = ((xs + ys) / 2.0).astype(np.uint8)
    return np.dstack([gray, np.flipud(gray), np.full_like(gray, 128)])


def encode(image: np.ndarray, ext: str = ".png") -> bytes:
    ok, buf = cv2.imencode(ext, image)
    assert ok
    return buf.tobytes()
