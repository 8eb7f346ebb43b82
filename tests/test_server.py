import json

import pytest
from fastapi.testclient import TestClient

import server
from avatar_processor import AvatarProcessor
from functions import FaceBox
from tests.helpers import StubDetector, encode, make_image

SMALL_OUTPUT = json.dumps({"output": {"size": 64}})


@pytest.fixture
def client(monkeypatch):
    detector = StubDetector([FaceBox(x=90, y=60, width=40, height=50)])
    monkeypatch.setattr(server, "processor", AvatarProcessor(detector=detector))
    monkeypatch.setattr(server, "OUTPUT_DIR", None)
    return TestClient(server.app)


class _FakeResponse:
    def __init__(self, payload: bytes, ok: bool = True, chunk: int = 1024) -> None:
        self.payload = payload
        self.ok = ok
        self.chunk = chunk
        self.chunks_read = 0
        self.closed = False

    def iter_content(self, chunk_size):
        for start in range(0, len(self.payload), self.chunk):
            self.chunks_read += 1
            yield self.payload[start:start + self.chunk]

    def close(self) -> None:
        self.closed = True


def _upload(data: bytes, content_type: str = "image/png"):
    return {"image": ("portrait.png", data, content_type)}


def test_health(client) -> None:
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "ok"
    assert body["modelsLoaded"] is True
    assert "vibrant" in body["availablePresets"]


@pytest.mark.parametrize("path", ["/api/presets", "/presets"])
def test_list_presets(client, path) -> None:
    body = client.get(path).json()

    assert body["defaultPreset"] == "default"
    assert len(body["presets"]) == 5
    assert body["presets"][0]["config"]["cropping"]["tightCropDetection"]["looseCropSize"] == 0.95


def test_preset_detail_and_fallback(client) -> None:
    vibrant = client.get("/api/presets/vibrant").json()
    assert vibrant["preset"] == "vibrant"
    assert vibrant["config"]["sharpening"]["sigma"] == 1.5

    unknown = client.get("/api/presets/nope").json()
    assert unknown["preset"] == "default"
    assert unknown["requested"] == "nope"


def test_process_returns_png(client) -> None:
    response = client.post(
        "/process",
        files=_upload(encode(make_image(240, 200))),
        data={"preset": "natural", "customSettings": SMALL_OUTPUT},
    )

    assert response.status_code == 200
    assert response.headers["content-type"] == "image/png"
    assert response.headers["x-preset-used"] == "natural"
    assert response.headers["x-crop-strategy"] in {"face", "tight_face"}
    assert int(response.headers["x-processing-time"]) >= 0
    assert response.content.startswith(b"\x89PNG")


def test_process_with_unknown_preset_and_bad_json(client) -> None:
    response = client.post(
        "/process",
        files=_upload(encode(make_image(120, 120))),
        data={"preset": "sepia", "customSettings": "{not json"},
    )

    assert response.status_code == 200
    assert response.headers["x-preset-used"] == "default"


def test_process_rejects_wrong_content_type(client) -> None:
    response = client.post("/process", files=_upload(b"hello", "text/plain"))
    assert response.status_code == 400


def test_process_rejects_undecodable_image(client) -> None:
    response = client.post("/process", files=_upload(b"not really a png"))
    assert response.status_code == 400


def test_process_rejects_oversized_upload(client, monkeypatch) -> None:
    monkeypatch.setattr(server, "MAX_UPLOAD_BYTES", 10)
    response = client.post("/process", files=_upload(encode(make_image(50, 50))))
    assert response.status_code == 413


def test_incomplete_config_is_unprocessable(client) -> None:
    response = client.post(
        "/process",
        files=_upload(encode(make_image(60, 60))),
        data={"customSettings": json.dumps({"color": {"hue": None}})},
    )
    assert response.status_code == 422


def test_transform_failure_reports_stage(client) -> None:
    response = client.post(
        "/process",
        files=_upload(encode(make_image(60, 60))),
        data={"customSettings": json.dumps({"contrast": {"gamma": 0}, "output": {"size": 32}})},
    )

    assert response.status_code == 500
    assert response.json()["detail"]["stage"] == "color_correct"


def test_process_url(client, monkeypatch) -> None:
    fetched = _FakeResponse(encode(make_image(100, 80)))
    seen = {}

    def fake_get(url, timeout, stream):
        seen["url"] = url
        seen["stream"] = stream
        return fetched

    monkeypatch.setattr(server.requests, "get", fake_get)
    response = client.post(
        "/process-url",
        json={"imageUrl": "https://example.com/me.png", "preset": "subtle", "customSettings": {"output": {"size": 48}}},
    )

    assert response.status_code == 200
    assert response.headers["x-preset-used"] == "subtle"
    assert seen == {"url": "https://example.com/me.png", "stream": True}
    assert fetched.closed


def test_process_url_fetch_failure(client, monkeypatch) -> None:
    monkeypatch.setattr(server.requests, "get", lambda url, timeout, stream: _FakeResponse(b"", ok=False))
    response = client.post("/process-url", json={"imageUrl": "https://example.com/missing.png"})
    assert response.status_code == 400


def test_processed_output_is_saved_when_configured(client, monkeypatch, tmp_path) -> None:
    monkeypatch.setattr(server, "OUTPUT_DIR", str(tmp_path))
    response = client.post(
        "/process",
        files=_upload(encode(make_image(80, 80))),
        data={"customSettings": SMALL_OUTPUT},
    )

    assert response.status_code == 200
    assert len(list(tmp_path.glob("processed_*.png"))) == 1


def test_process_url_stops_reading_past_upload_limit(client, monkeypatch) -> None:
    fetched = _FakeResponse(b"\x00" * 10_000, chunk=100)
    monkeypatch.setattr(server, "MAX_UPLOAD_BYTES", 250)
    monkeypatch.setattr(server.requests, "get", lambda url, timeout, stream: fetched)

    response = client.post("/process-url", json={"imageUrl": "https://example.com/huge.png"})

    assert response.status_code == 413
    assert fetched.chunks_read == 3
    assert fetched.closed
