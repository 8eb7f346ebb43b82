"""High-level interface for the avatar preprocessing pipeline.

``AvatarProcessor`` is the reusable entry-point shared by the CLI and the
HTTP server.  It decodes the upload, asks the shared face detector for the
most prominent face, resolves the requested preset and overrides, and then
runs ``AvatarPipeline`` which applies the three fixed stages:

1. crop         - tight-crop analysis, crop planning, cover-resize
2. color_correct - adaptive brightness, saturation/hue, gamma and contrast
3. final_adjust  - sharpening, final brightness/saturation nudge, PNG encode

Every request builds its own pipeline and config; nothing is shared except
the detector.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, Dict, Optional

import cv2
import numpy as np

import image_ops
from debug import draw_crop_decision
from errors import DetectionUnavailable, InvalidImageMetadata, TransformFailure
from face_detector import FaceDetector
from functions import (
    CropRegion,
    FaceBox,
    ImageMetadata,
    TightCropVerdict,
    analyze_face_geometry,
    choose_crop_strategy,
    classify_luminance,
    plan_crop_region,
    select_largest_face,
)
from presets import ResolvedConfig, canonical_preset_name, resolve_config

logger = logging.getLogger(__name__)

STAGE_DECODE = "decode"
STAGE_CROP = "crop"
STAGE_COLOR_CORRECT = "color_correct"
STAGE_FINAL_ADJUST = "final_adjust"


@dataclass(frozen=True)
class CropDecision:
    image: ImageMetadata
    face_box: Optional[FaceBox]
    verdict: Optional[TightCropVerdict]
    region: CropRegion
    strategy: str


@dataclass
class AvatarResult:
    """Structured output for one processed image."""

    image_bytes: bytes
    preset: str
    decision: CropDecision
    avg_luminance: float
    brightness_multiplier: float

    def to_dict(self) -> Dict[str, Any]:
        """Return the scalar diagnostics (everything but the image bytes)."""

        verdict = self.decision.verdict
        face = self.decision.face_box
        return {
            "preset": self.preset,
            "image_width": self.decision.image.width,
            "image_height": self.decision.image.height,
            "strategy": self.decision.strategy,
            "crop": {
                "left": self.decision.region.left,
                "top": self.decision.region.top,
                "width": self.decision.region.width,
                "height": self.decision.region.height,
            },
            "face": None if face is None else {
                "x": face.x,
                "y": face.y,
                "width": face.width,
                "height": face.height,
                "confidence": face.confidence,
            },
            "face_ratio": None if verdict is None else verdict.face_ratio,
            "min_edge_distance": None if verdict is None else verdict.min_edge_distance,
            "is_tight": None if verdict is None else verdict.is_tight,
            "avg_luminance": self.avg_luminance,
            "brightness_multiplier": self.brightness_multiplier,
            "output_bytes": len(self.image_bytes),
        }


class AvatarPipeline:
    def __init__(self,
                 img: np.ndarray,
                 image_meta: ImageMetadata,
                 face_box: Optional[FaceBox],
                 config: ResolvedConfig,
                 logdir: str = "./logs",
                 save_debug: bool = False) -> None:
        self.img = img
        self.image_meta = image_meta
        self.face_box = face_box
        self.config = config
        self.logdir = logdir
        self.save_debug = save_debug

        self.decision: Optional[CropDecision] = None
        self.avg_luminance: Optional[float] = None
        self.brightness_multiplier: Optional[float] = None

    def run(self) -> bytes:
        cropped = self._crop()
        corrected = self._color_correct(cropped)
        return self._final_adjust(corrected)

    # Stage 1 -----------------------------------------------------------------
    def decide_crop(self) -> CropDecision:
        verdict = None
        if self.face_box is not None:
            verdict = analyze_face_geometry(
                self.face_box,
                self.image_meta,
                self.config.cropping.tight_crop_detection,
            )
            logger.info(
                "[Crop] Face ratio %.2f%%, min edge distance %.1f%% -> %s",
                verdict.face_ratio * 100.0,
                verdict.min_edge_distance * 100.0,
                "tight" if verdict.is_tight else "not tight",
            )
        region = plan_crop_region(self.face_box, self.image_meta, self.config, verdict)
        return CropDecision(
            image=self.image_meta,
            face_box=self.face_box,
            verdict=verdict,
            region=region,
            strategy=choose_crop_strategy(self.face_box, verdict),
        )

    def _crop(self) -> np.ndarray:
        self.decision = self.decide_crop()
        region = self.decision.region
        logger.info(
            "[Crop] %s crop %dx%d at (%d, %d) from %dx%d",
            self.decision.strategy,
            region.width,
            region.height,
            region.left,
            region.top,
            self.image_meta.width,
            self.image_meta.height,
        )
        if self.save_debug:
            self._save_crop_debug()
        try:
            return image_ops.extract_and_resize(self.img, region, self.config.output.size)
        except Exception as exc:
            raise TransformFailure(STAGE_CROP, exc) from exc

    # Stage 2 -----------------------------------------------------------------
    def _color_correct(self, img: np.ndarray) -> np.ndarray:
        try:
            self.avg_luminance = image_ops.average_luminance(img)
        except Exception as exc:
            raise TransformFailure(STAGE_COLOR_CORRECT, exc) from exc

        self.brightness_multiplier = classify_luminance(self.avg_luminance, self.config.brightness)
        logger.info(
            "[Color] Brightness adjustment %.2fx (avg luminance %.0f)",
            self.brightness_multiplier,
            self.avg_luminance,
        )
        params = image_ops.ColorCorrection(
            brightness=self.brightness_multiplier,
            saturation=self.config.color.saturation,
            hue=self.config.color.hue,
            gamma=self.config.contrast.gamma,
            linear_multiplier=self.config.contrast.linear_multiplier,
            linear_offset=self.config.contrast.linear_offset,
        )
        try:
            return image_ops.modulate_and_contrast(img, params)
        except Exception as exc:
            raise TransformFailure(STAGE_COLOR_CORRECT, exc) from exc

    # Stage 3 -----------------------------------------------------------------
    def _final_adjust(self, img: np.ndarray) -> bytes:
        params = image_ops.FinalAdjustment(
            sigma=self.config.sharpening.sigma,
            flat=self.config.sharpening.flat,
            jagged=self.config.sharpening.jagged,
            brightness=self.config.brightness.final,
            saturation=self.config.color.final_saturation,
            quality=self.config.output.quality,
            compression_level=self.config.output.compression_level,
        )
        try:
            encoded = image_ops.sharpen_and_encode(img, params)
        except Exception as exc:
            raise TransformFailure(STAGE_FINAL_ADJUST, exc) from exc
        logger.info("[Final] Encoded %d bytes", len(encoded))
        return encoded

    # Debug helpers -----------------------------------------------------------
    def _save_crop_debug(self) -> None:
        os.makedirs(self.logdir, exist_ok=True)
        path = os.path.join(self.logdir, "crop_decision.jpg")
        vis = draw_crop_decision(
            self.img,
            self.decision.region,
            self.decision.face_box,
            self.decision.verdict,
            self.decision.strategy,
        )
        cv2.imwrite(path, vis)
        logger.info("[Crop] Debug saved -> %s", path)


class AvatarProcessor:
    """Reusable facade: bytes in, processed PNG bytes out."""

    def __init__(self, detector: Optional[FaceDetector] = None) -> None:
        self.detector = detector if detector is not None else FaceDetector()

    def find_face(self, image: np.ndarray) -> Optional[FaceBox]:
        """Return the most prominent face, or None when there is none or detection fails."""

        try:
            faces = self.detector.detect(image)
        except DetectionUnavailable as exc:
            logger.warning("[Detect] %s; falling back to heuristic positioning", exc)
            return None

        face = select_largest_face(faces)
        if face is None:
            logger.info("[Detect] No faces detected, using heuristic positioning")
        else:
            cx, cy = face.center
            logger.info(
                "[Detect] Using largest of %d face(s) centred at (%.0f, %.0f)",
                len(faces),
                cx,
                cy,
            )
        return face

    def process_array(
        self,
        image: np.ndarray,
        *,
        preset: Optional[str] = None,
        overrides: Optional[Mapping] = None,
        logdir: str = "./logs",
        save_debug: bool = False,
    ) -> AvatarResult:
        """Run the pipeline on an already-decoded BGR image."""

        preset_name = canonical_preset_name(preset)
        config = resolve_config(preset_name, overrides)
        return self._run(image, preset_name, config, logdir=logdir, save_debug=save_debug)

    def _run(self,
             image: np.ndarray,
             preset_name: str,
             config: ResolvedConfig,
             *,
             logdir: str,
             save_debug: bool) -> AvatarResult:
        height, width = image.shape[:2]
        image_meta = ImageMetadata(width=int(width), height=int(height))
        logger.info("Processing %dx%d image with preset '%s'", width, height, preset_name)

        pipeline = AvatarPipeline(
            img=image,
            image_meta=image_meta,
            face_box=self.find_face(image),
            config=config,
            logdir=logdir,
            save_debug=save_debug,
        )
        encoded = pipeline.run()
        return AvatarResult(
            image_bytes=encoded,
            preset=preset_name,
            decision=pipeline.decision,
            avg_luminance=pipeline.avg_luminance,
            brightness_multiplier=pipeline.brightness_multiplier,
        )

    def process_bytes(
        self,
        data: bytes,
        *,
        preset: Optional[str] = None,
        overrides: Optional[Mapping] = None,
        logdir: str = "./logs",
        save_debug: bool = False,
    ) -> AvatarResult:
        # Resolve first so a bad override fails before any pixel work.
        preset_name = canonical_preset_name(preset)
        config = resolve_config(preset_name, overrides)
        try:
            image, _ = image_ops.decode(data)
        except InvalidImageMetadata:
            raise
        except Exception as exc:
            raise TransformFailure(STAGE_DECODE, exc) from exc
        return self._run(image, preset_name, config, logdir=logdir, save_debug=save_debug)

    def process(self,
                data: bytes,
                preset: Optional[str] = None,
                overrides: Optional[Mapping] = None) -> bytes:
        """Process raw image bytes and return the encoded PNG."""

        return self.process_bytes(data, preset=preset, overrides=overrides).image_bytes

    def process_path(
        self,
        img_path: str,
        *,
        preset: Optional[str] = None,
        overrides: Optional[Mapping] = None,
        logdir: str = "./logs",
        save_debug: bool = False,
    ) -> AvatarResult:
        """Read an image from disk and process it."""

        with open(img_path, "rb") as fh:
            data = fh.read()
        return self.process_bytes(
            data,
            preset=preset,
            overrides=overrides,
            logdir=logdir,
            save_debug=save_debug,
        )
