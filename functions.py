"""Crop geometry helpers: face selection, tight-crop analysis, crop planning
and luminance bucketing.

Everything here is pure arithmetic on image dimensions and face boxes; no
pixels are touched.  Coordinates use a top-left origin in source-image pixel
space.
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Iterable, Optional, Tuple

from errors import InvalidImageMetadata
from presets import BrightnessConfig, ResolvedConfig, ThresholdConfig

STRATEGY_TIGHT_FACE = "tight_face"
STRATEGY_FACE = "face"
STRATEGY_FALLBACK = "fallback"


@dataclass(frozen=True)
class ImageMetadata:
    width: int
    height: int

    def __post_init__(self) -> None:
        for name in ("width", "height"):
            value = getattr(self, name)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                raise InvalidImageMetadata(f"Image {name} must be a positive integer, got {value!r}")

    @property
    def aspect_ratio(self) -> float:
        return self.width / self.height


@dataclass(frozen=True)
class FaceBox:
    x: float
    y: float
    width: float
    height: float
    confidence: Optional[float] = None

    @property
    def area(self) -> float:
        return self.width * self.height

    @property
    def center(self) -> Tuple[float, float]:
        return self.x + self.width / 2.0, self.y + self.height / 2.0


@dataclass(frozen=True)
class CropRegion:
    left: int
    top: int
    width: int
    height: int

    def as_box(self) -> Tuple[int, int, int, int]:
        """Return the region as ``(x1, y1, x2, y2)``."""
        return self.left, self.top, self.left + self.width, self.top + self.height


@dataclass(frozen=True)
class TightCropVerdict:
    face_ratio: float
    left_distance: float
    right_distance: float
    top_distance: float
    bottom_distance: float
    min_edge_distance: float
    is_tight: bool


def select_largest_face(boxes: Iterable[FaceBox]) -> Optional[FaceBox]:
    """Pick the box with the largest area; on equal areas the first one wins."""

    largest: Optional[FaceBox] = None
    for box in boxes:
        if largest is None or box.area > largest.area:
            largest = box
    return largest


def analyze_face_geometry(face_box: FaceBox,
                          image: ImageMetadata,
                          thresholds: ThresholdConfig) -> TightCropVerdict:
    """Measure how closely the image is already framed around ``face_box``.

    The image counts as a tight crop when the face covers more than
    ``face_to_image_ratio_threshold`` of the image area, or when the face
    centre sits closer than ``face_edge_distance_threshold`` (as a fraction of
    the matching dimension) to any edge.  Disabling detection forces
    ``is_tight`` to False while still reporting the measurements.
    """
    face_ratio = face_box.area / float(image.width * image.height)
    cx, cy = face_box.center

    left = cx / image.width
    right = 1.0 - left
    top = cy / image.height
    bottom = 1.0 - top
    min_edge = min(left, right, top, bottom)

    is_tight = bool(thresholds.enabled) and (
        face_ratio > thresholds.face_to_image_ratio_threshold
        or min_edge < thresholds.face_edge_distance_threshold
    )
    return TightCropVerdict(
        face_ratio=face_ratio,
        left_distance=left,
        right_distance=right,
        top_distance=top,
        bottom_distance=bottom,
        min_edge_distance=min_edge,
        is_tight=is_tight,
    )


def choose_crop_strategy(face_box: Optional[FaceBox],
                         verdict: Optional[TightCropVerdict]) -> str:
    if face_box is None:
        return STRATEGY_FALLBACK
    if verdict is not None and verdict.is_tight:
        return STRATEGY_TIGHT_FACE
    return STRATEGY_FACE


def _square_side(image: ImageMetadata, size_ratio: float) -> int:
    return max(1, math.floor(min(image.width, image.height) * size_ratio))


def nominal_crop(face_box: Optional[FaceBox],
                 image: ImageMetadata,
                 config: ResolvedConfig,
                 verdict: Optional[TightCropVerdict]) -> Tuple[int, int, int]:
    """Return the unclamped ``(left, top, side)`` of the square crop."""

    cropping = config.cropping
    strategy = choose_crop_strategy(face_box, verdict)

    if strategy == STRATEGY_FALLBACK:
        side = _square_side(image, cropping.fallback_size)
        left = math.floor((image.width - side) / 2.0)
        if image.aspect_ratio > cropping.landscape_threshold:
            top = math.floor(image.height * cropping.fallback_landscape_top)
        else:
            top = math.floor(image.height * cropping.fallback_portrait_top)
        return left, top, side

    cx, cy = face_box.center
    if strategy == STRATEGY_TIGHT_FACE:
        # Loosened crop stays centred; the vertical offset would push it off the face.
        side = _square_side(image, cropping.tight_crop_detection.loose_crop_size)
        return math.floor(cx - side / 2.0), math.floor(cy - side / 2.0), side

    side = _square_side(image, cropping.face_detected_size)
    left = math.floor(cx - side / 2.0)
    top = math.floor(cy - side / 2.0)
    top = math.floor(top + side * cropping.face_vertical_offset)
    return left, top, side


def clamp_crop_region(left: int,
                      top: int,
                      width: int,
                      height: int,
                      image: ImageMetadata) -> CropRegion:
    """Shift a crop inside the image, then shrink whatever still overhangs."""

    left = max(0, min(left, image.width - width))
    top = max(0, min(top, image.height - height))
    return CropRegion(
        left=left,
        top=top,
        width=max(1, min(width, image.width - left)),
        height=max(1, min(height, image.height - top)),
    )


def plan_crop_region(face_box: Optional[FaceBox],
                     image: ImageMetadata,
                     config: ResolvedConfig,
                     verdict: Optional[TightCropVerdict] = None) -> CropRegion:
    """Choose the square crop for ``image``.

    With a face the crop is centred on the face centre: tight images get the
    wider ``loose_crop_size`` frame, the rest get ``face_detected_size`` with
    the face nudged upwards by ``face_vertical_offset``.  Without a face a
    centred ``fallback_size`` crop is placed using the landscape/portrait
    heuristic.  The result always lies inside the image.
    """
    if face_box is not None and verdict is None:
        verdict = analyze_face_geometry(face_box, image, config.cropping.tight_crop_detection)
    left, top, side = nominal_crop(face_box, image, config, verdict)
    return clamp_crop_region(left, top, side, side, image)


def classify_luminance(avg_luminance: float, brightness: BrightnessConfig) -> float:
    """Map an average luminance (0-255) to a brightness multiplier.

    Checks run in a fixed order and the first match wins, even when the
    thresholds overlap.
    """
    if avg_luminance < brightness.dark_threshold:
        return brightness.dark_images
    if avg_luminance < brightness.medium_threshold:
        return brightness.medium_dark_images
    if avg_luminance > brightness.bright_threshold:
        return brightness.bright_images
    return brightness.base
