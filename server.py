"""FastAPI application exposing the avatar preprocessing service."""

from __future__ import annotations

import json
import logging
import os
import threading
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import requests
from fastapi import FastAPI, File, Form, HTTPException, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel

from avatar_processor import AvatarProcessor, AvatarResult
from errors import ConfigError, DetectionUnavailable, InvalidImageMetadata, TransformFailure
from face_detector import DEFAULT_CONFIDENCE, DEFAULT_MODEL_PATH, FaceDetector
from presets import DEFAULT_PRESET, PRESETS, canonical_preset_name, config_to_dict, list_presets

logger = logging.getLogger(__name__)

SERVICE_NAME = "avatar-photo-prep"
SERVICE_VERSION = "1.0.0"

MODEL_PATH = os.environ.get("AVATAR_MODEL_PATH", DEFAULT_MODEL_PATH)
DETECTION_CONFIDENCE = float(os.environ.get("AVATAR_DETECTION_CONFIDENCE", DEFAULT_CONFIDENCE))
MAX_UPLOAD_BYTES = int(float(os.environ.get("AVATAR_MAX_UPLOAD_MB", "10")) * 1024 * 1024)
# Processed images are only written to disk when this is set.
OUTPUT_DIR = os.environ.get("AVATAR_OUTPUT_DIR")
FETCH_TIMEOUT_S = 15.0
FETCH_CHUNK_BYTES = 64 * 1024

ALLOWED_CONTENT_TYPES = {"image/jpeg", "image/jpg", "image/png", "image/webp"}

processor = AvatarProcessor(detector=FaceDetector(MODEL_PATH, DETECTION_CONFIDENCE))


def _warm_up_detector() -> None:
    try:
        processor.detector.ensure_loaded()
    except DetectionUnavailable as exc:
        logger.warning("%s; service will use heuristic positioning", exc)


@asynccontextmanager
async def lifespan(_: FastAPI):
    threading.Thread(target=_warm_up_detector, name="face-model-loader", daemon=True).start()
    yield


app = FastAPI(title="Avatar Photo Preprocessing Service", version=SERVICE_VERSION, lifespan=lifespan)
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


class ProcessUrlRequest(BaseModel):
    imageUrl: str
    preset: str = DEFAULT_PRESET
    customSettings: Optional[Dict[str, Any]] = None


def _parse_custom_settings(raw: Optional[str]) -> Dict[str, Any]:
    """Decode the ``customSettings`` form field; bad JSON is ignored."""

    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError as exc:
        logger.warning("Invalid customSettings JSON (%s); using preset values", exc)
        return {}
    if not isinstance(value, dict):
        logger.warning("customSettings must be a JSON object; using preset values")
        return {}
    return value


def _read_upload(upload: UploadFile) -> bytes:
    if upload.content_type not in ALLOWED_CONTENT_TYPES:
        raise HTTPException(
            status_code=400,
            detail="Invalid file type. Only JPEG, PNG, and WebP images are allowed.",
        )
    data = upload.file.read(MAX_UPLOAD_BYTES + 1)
    if not data:
        raise HTTPException(status_code=400, detail="Uploaded file is empty")
    if len(data) > MAX_UPLOAD_BYTES:
        raise HTTPException(
            status_code=413,
            detail=f"File too large. Maximum size is {MAX_UPLOAD_BYTES // (1024 * 1024)}MB.",
        )
    return data


def _fetch_image(url: str) -> bytes:
    """Download ``url``, giving up as soon as the body exceeds the upload limit."""

    try:
        fetched = requests.get(url, timeout=FETCH_TIMEOUT_S, stream=True)
    except requests.RequestException as exc:
        raise HTTPException(status_code=400, detail=f"Failed to fetch image from URL: {exc}")
    try:
        if not fetched.ok:
            raise HTTPException(status_code=400, detail="Failed to fetch image from URL")
        data = bytearray()
        try:
            for chunk in fetched.iter_content(chunk_size=FETCH_CHUNK_BYTES):
                data.extend(chunk)
                if len(data) > MAX_UPLOAD_BYTES:
                    raise HTTPException(status_code=413, detail="Fetched image is too large")
        except requests.RequestException as exc:
            raise HTTPException(status_code=400, detail=f"Failed to fetch image from URL: {exc}")
    finally:
        fetched.close()
    if not data:
        raise HTTPException(status_code=400, detail="Fetched image is empty")
    return bytes(data)


def _save_output(result: AvatarResult) -> None:
    out_dir = Path(OUTPUT_DIR)
    out_dir.mkdir(parents=True, exist_ok=True)
    path = out_dir / f"processed_{int(time.time() * 1000)}.png"
    path.write_bytes(result.image_bytes)
    logger.info("Processed image saved to %s", path)


def _run_processing(data: bytes, preset: Optional[str], overrides: Dict[str, Any]) -> Response:
    started = time.perf_counter()
    try:
        result = processor.process_bytes(data, preset=preset, overrides=overrides)
    except ConfigError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except InvalidImageMetadata as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    except TransformFailure as exc:
        logger.error("Processing failed in stage '%s': %s", exc.stage, exc)
        raise HTTPException(
            status_code=500,
            detail={"error": "Failed to process image", "stage": exc.stage, "message": str(exc)},
        )
    elapsed_ms = int((time.perf_counter() - started) * 1000)
    logger.info("Image processed in %dms", elapsed_ms)

    if OUTPUT_DIR:
        _save_output(result)

    headers = {
        "Content-Disposition": 'inline; filename="processed-image.png"',
        "X-Processing-Time": str(elapsed_ms),
        "X-Preset-Used": result.preset,
        "X-Crop-Strategy": result.decision.strategy,
    }
    return Response(content=result.image_bytes, media_type="image/png", headers=headers)


@app.get("/health")
async def health() -> Dict[str, Any]:
    return {
        "status": "ok",
        "service": SERVICE_NAME,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "modelsLoaded": processor.detector.is_loaded,
        "availablePresets": list(PRESETS),
        "version": SERVICE_VERSION,
    }


@app.get("/api/presets", summary="List the published presets")
@app.get("/presets", include_in_schema=False)
async def presets() -> Dict[str, Any]:
    return {
        "success": True,
        "presets": list_presets(),
        "defaultPreset": DEFAULT_PRESET,
        "modelsLoaded": processor.detector.is_loaded,
    }


@app.get("/api/presets/{name}", summary="Get a preset configuration")
async def preset_detail(name: str) -> Dict[str, Any]:
    resolved = canonical_preset_name(name)
    return {
        "success": True,
        "preset": resolved,
        "requested": name,
        "config": config_to_dict(PRESETS[resolved]),
    }


@app.post("/process", summary="Process an uploaded image", response_description="Processed PNG image")
def process_image(
    image: UploadFile = File(...),
    preset: str = Form(DEFAULT_PRESET),
    customSettings: Optional[str] = Form(None),
) -> Response:
    """Crop around the most prominent face and apply the preset enhancements."""
    data = _read_upload(image)
    overrides = _parse_custom_settings(customSettings)
    logger.info(
        "Processing upload %s (%d bytes) with preset '%s'",
        image.filename,
        len(data),
        preset,
    )
    return _run_processing(data, preset, overrides)


@app.post("/process-url", summary="Process an image fetched from a URL", response_description="Processed PNG image")
def process_image_url(body: ProcessUrlRequest) -> Response:
    data = _fetch_image(body.imageUrl)
    logger.info("Processing image from URL with preset '%s'", body.preset)
    return _run_processing(data, body.preset, body.customSettings or {})


if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    uvicorn.run(app, host="0.0.0.0", port=int(os.environ.get("PORT", "8080")))
