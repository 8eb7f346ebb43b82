"""Pixel operations used by the avatar pipeline.

Images travel between stages as OpenCV BGR ``uint8`` arrays.  Colour
modulation works in HSV, sharpening works on the lightness channel of LAB so
edges get crisper without colour fringes.  Encoding goes through Pillow.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from typing import Tuple

import cv2
import numpy as np
from PIL import Image

from errors import InvalidImageMetadata
from functions import CropRegion, ImageMetadata

# Sharpening limits, expressed on the 0-100 L* scale.
SHARPEN_FLAT_THRESHOLD = 2.0
SHARPEN_MAX_BRIGHTEN = 10.0
SHARPEN_MAX_DARKEN = 20.0
_L_SCALE = 255.0 / 100.0


@dataclass(frozen=True)
class ColorCorrection:
    brightness: float
    saturation: float
    hue: float
    gamma: float
    linear_multiplier: float
    linear_offset: float


@dataclass(frozen=True)
class FinalAdjustment:
    sigma: float
    flat: float
    jagged: float
    brightness: float
    saturation: float
    quality: int
    compression_level: int


def decode(data: bytes) -> Tuple[np.ndarray, ImageMetadata]:
    if not data:
        raise InvalidImageMetadata("Image data is empty")
    buffer = np.frombuffer(data, dtype=np.uint8)
    image = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
    if image is None:
        raise InvalidImageMetadata("Data is not a decodable image")
    height, width = image.shape[:2]
    return image, ImageMetadata(width=int(width), height=int(height))


def extract_and_resize(image: np.ndarray, region: CropRegion, size: int) -> np.ndarray:
    """Cut ``region`` out of ``image`` and cover-resize it to ``size`` x ``size``."""

    if size <= 0:
        raise ValueError(f"Output size must be positive, got {size}")
    x1, y1, x2, y2 = region.as_box()
    crop = image[y1:y2, x1:x2]
    if crop.size == 0:
        raise ValueError(f"Crop region {region} is empty for image {image.shape[1]}x{image.shape[0]}")

    h, w = crop.shape[:2]
    scale = max(size / float(w), size / float(h))
    new_w = max(size, int(round(w * scale)))
    new_h = max(size, int(round(h * scale)))
    interpolation = cv2.INTER_AREA if scale < 1.0 else cv2.INTER_CUBIC
    resized = cv2.resize(crop, (new_w, new_h), interpolation=interpolation)

    off_x = (new_w - size) // 2
    off_y = (new_h - size) // 2
    return np.ascontiguousarray(resized[off_y:off_y + size, off_x:off_x + size])


def average_luminance(image: np.ndarray) -> float:
    """Mean of the per-channel means, on the 0-255 scale."""

    channel_means = image.reshape(-1, image.shape[-1])[:, :3].mean(axis=0)
    return float(channel_means.mean())


def modulate(image: np.ndarray, brightness: float, saturation: float, hue: float) -> np.ndarray:
    hsv = cv2.cvtColor(image.astype(np.float32) / 255.0, cv2.COLOR_BGR2HSV)
    hsv[..., 0] = (hsv[..., 0] + hue) % 360.0
    hsv[..., 1] = np.clip(hsv[..., 1] * saturation, 0.0, 1.0)
    hsv[..., 2] = np.clip(hsv[..., 2] * brightness, 0.0, 1.0)
    bgr = cv2.cvtColor(hsv, cv2.COLOR_HSV2BGR)
    return np.clip(np.rint(bgr * 255.0), 0, 255).astype(np.uint8)


def apply_gamma(image: np.ndarray, gamma: float) -> np.ndarray:
    if gamma <= 0:
        raise ValueError(f"Gamma must be positive, got {gamma}")
    if gamma == 1.0:
        return image
    lut = np.clip(np.rint(((np.arange(256) / 255.0) ** (1.0 / gamma)) * 255.0), 0, 255).astype(np.uint8)
    return cv2.LUT(image, lut)


def apply_linear(image: np.ndarray, multiplier: float, offset: float) -> np.ndarray:
    out = image.astype(np.float32) * multiplier + offset
    return np.clip(np.rint(out), 0, 255).astype(np.uint8)


def sharpen(image: np.ndarray, sigma: float, flat: float, jagged: float) -> np.ndarray:
    """Unsharp mask on lightness; ``flat`` gains smooth areas, ``jagged`` gains edges."""

    if sigma <= 0:
        return image
    lab = cv2.cvtColor(image, cv2.COLOR_BGR2LAB).astype(np.float32)
    lightness = lab[..., 0]
    detail = lightness - cv2.GaussianBlur(lightness, (0, 0), sigmaX=sigma)
    gain = np.where(np.abs(detail) <= SHARPEN_FLAT_THRESHOLD * _L_SCALE, flat, jagged)
    boost = np.clip(detail * gain, -SHARPEN_MAX_DARKEN * _L_SCALE, SHARPEN_MAX_BRIGHTEN * _L_SCALE)
    lab[..., 0] = np.clip(lightness + boost, 0, 255)
    return cv2.cvtColor(np.rint(lab).astype(np.uint8), cv2.COLOR_LAB2BGR)


def encode_png(image: np.ndarray, quality: int, compression_level: int) -> bytes:
    """Encode as PNG; a quality below 100 switches to a 256-colour palette."""

    rgb = cv2.cvtColor(image, cv2.COLOR_BGR2RGB)
    pil = Image.fromarray(rgb)
    if quality < 100:
        pil = pil.quantize(colors=256, dither=Image.Dither.FLOYDSTEINBERG)
    buf = io.BytesIO()
    pil.save(buf, format="PNG", compress_level=int(np.clip(compression_level, 0, 9)))
    return buf.getvalue()


def modulate_and_contrast(image: np.ndarray, params: ColorCorrection) -> np.ndarray:
    out = modulate(image, params.brightness, params.saturation, params.hue)
    out = apply_gamma(out, params.gamma)
    return apply_linear(out, params.linear_multiplier, params.linear_offset)


def sharpen_and_encode(image: np.ndarray, params: FinalAdjustment) -> bytes:
    out = sharpen(image, params.sigma, params.flat, params.jagged)
    out = modulate(out, params.brightness, params.saturation, 0.0)
    return encode_png(out, params.quality, params.compression_level)
