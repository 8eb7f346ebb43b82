"""YOLO face detector shared by every request in the process.

The model weights are loaded lazily, exactly once, behind a lock so that
concurrent first requests wait for a single load instead of each starting
their own.  The ultralytics predictor keeps per-call state, so inference is
serialized on a second lock.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, List, Optional

import numpy as np

from errors import DetectionUnavailable
from functions import FaceBox

logger = logging.getLogger(__name__)

DEFAULT_MODEL_PATH = "./yolo-face.pt"
DEFAULT_CONFIDENCE = 0.5


class FaceDetector:
    def __init__(self,
                 model_path: str = DEFAULT_MODEL_PATH,
                 confidence: float = DEFAULT_CONFIDENCE) -> None:
        self.model_path = model_path
        self.confidence = confidence
        self._model: Optional[Any] = None
        self._load_error: Optional[BaseException] = None
        self._lock = threading.Lock()
        self._predict_lock = threading.Lock()

    @property
    def is_loaded(self) -> bool:
        return self._model is not None

    def _load_model(self) -> Any:
        from ultralytics import YOLO

        return YOLO(self.model_path)

    def ensure_loaded(self) -> Any:
        """Return the model, loading it on first use.

        Raises ``DetectionUnavailable`` if the load failed, now or earlier.
        """
        if self._model is None and self._load_error is None:
            with self._lock:
                if self._model is None and self._load_error is None:
                    logger.info("[Detect] Loading face model from %s", self.model_path)
                    try:
                        self._model = self._load_model()
                    except Exception as exc:
                        self._load_error = exc
                        logger.warning("[Detect] Could not load face model: %s", exc)
                    else:
                        logger.info("[Detect] Face model loaded")
        if self._model is None:
            raise DetectionUnavailable(f"Face model unavailable: {self._load_error}")
        return self._model

    def detect(self, image: np.ndarray) -> List[FaceBox]:
        """Run face detection on a BGR image and return boxes in pixel space."""

        model = self.ensure_loaded()
        with self._predict_lock:
            try:
                result = model.predict(image, conf=self.confidence, verbose=False)[0]
            except Exception as exc:
                raise DetectionUnavailable(f"Face detection failed: {exc}") from exc

            if result.boxes is None:
                return []
            boxes_xyxy = result.boxes.xyxy.detach().cpu().numpy()
            scores = result.boxes.conf.detach().cpu().numpy()

        faces: List[FaceBox] = []
        for (x1, y1, x2, y2), score in zip(boxes_xyxy, scores):
            faces.append(
                FaceBox(
                    x=float(x1),
                    y=float(y1),
                    width=float(x2 - x1),
                    height=float(y2 - y1),
                    confidence=float(score),
                )
            )
        return faces
