import threading
import time
from types import SimpleNamespace

import numpy as np
import pytest

from errors import DetectionUnavailable
from face_detector import FaceDetector


class _Tensor:
    def __init__(self, values) -> None:
        self._values = np.asarray(values, dtype=np.float32)

    def detach(self):
        return self

    def cpu(self):
        return self

    def numpy(self):
        return self._values


class _FakeModel:
    def __init__(self, boxes=None, fail=False) -> None:
        self.boxes = boxes
        self.fail = fail
        self.calls = []

    def predict(self, image, conf, verbose):
        self.calls.append(conf)
        if self.fail:
            raise RuntimeError("inference exploded")
        if self.boxes is None:
            return [SimpleNamespace(boxes=None)]
        xyxy = [b[:4] for b in self.boxes]
        conf_values = [b[4] for b in self.boxes]
        return [SimpleNamespace(boxes=SimpleNamespace(xyxy=_Tensor(xyxy), conf=_Tensor(conf_values)))]


class _CountingDetector(FaceDetector):
    def __init__(self, model=None, error=None, delay=0.0) -> None:
        super().__init__(model_path="unused.pt", confidence=0.4)
        self.model = model if model is not None else _FakeModel(boxes=[])
        self.error = error
        self.delay = delay
        self.loads = 0

    def _load_model(self):
        self.loads += 1
        time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.model


def test_concurrent_first_use_loads_model_once() -> None:
    detector = _CountingDetector(delay=0.05)
    barrier = threading.Barrier(8)

    def worker() -> None:
        barrier.wait()
        detector.ensure_loaded()

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert detector.loads == 1
    assert detector.is_loaded


def test_failed_load_is_reported_and_not_retried() -> None:
    detector = _CountingDetector(error=FileNotFoundError("no weights"))

    with pytest.raises(DetectionUnavailable):
        detector.detect(np.zeros((10, 10, 3), dtype=np.uint8))
    with pytest.raises(DetectionUnavailable):
        detector.ensure_loaded()

    assert detector.loads == 1
    assert not detector.is_loaded


def test_detect_converts_boxes_to_pixel_faces() -> None:
    model = _FakeModel(boxes=[(10, 20, 50, 80, 0.9), (0, 0, 5, 5, 0.6)])
    detector = _CountingDetector(model=model)

    faces = detector.detect(np.zeros((100, 100, 3), dtype=np.uint8))

    assert len(faces) == 2
    assert (faces[0].x, faces[0].y, faces[0].width, faces[0].height) == (10, 20, 40, 60)
    assert faces[0].confidence == pytest.approx(0.9)
    assert model.calls == [0.4]


def test_detect_without_boxes_returns_empty_list() -> None:
    detector = _CountingDetector(model=_FakeModel(boxes=None))
    assert detector.detect(np.zeros((10, 10, 3), dtype=np.uint8)) == []


def test_inference_error_becomes_detection_unavailable() -> None:
    detector = _CountingDetector(model=_FakeModel(fail=True))

    with pytest.raises(DetectionUnavailable):
        detector.detect(np.zeros((10, 10, 3), dtype=np.uint8))


class _OverlapModel(_FakeModel):
    def __init__(self) -> None:
        super().__init__(boxes=[(0, 0, 4, 4, 0.7)])
        self._guard = threading.Lock()
        self.active = 0
        self.max_active = 0

    def predict(self, image, conf, verbose):
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(0.02)
        try:
            return super().predict(image, conf, verbose)
        finally:
            with self._guard:
                self.active -= 1


def test_concurrent_detect_calls_do_not_overlap_on_shared_model() -> None:
    model = _OverlapModel()
    detector = _CountingDetector(model=model)
    detector.ensure_loaded()
    barrier = threading.Barrier(6)
    results = []

    def worker() -> None:
        barrier.wait()
        results.append(detector.detect(np.zeros((10, 10, 3), dtype=np.uint8)))

    threads = [threading.Thread(target=worker) for _ in range(6)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert model.max_active == 1
    assert len(results) == 6
    assert all(len(faces) == 1 for faces in results)
