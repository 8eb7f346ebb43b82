"""Enhancement presets and per-request configuration resolution.

Every request starts from one of the published presets and may carry a
partial override structure (usually parsed JSON) shaped like the preset
groups.  ``resolve_config`` validates those overrides and merges them onto the
preset, producing a frozen ``ResolvedConfig`` that the rest of the pipeline
treats as the single source of truth for the request.

Multipliers follow the usual convention: ``1.0`` leaves the image unchanged,
values above one increase the effect and values below one reduce it.
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Mapping
from dataclasses import dataclass, fields, is_dataclass, replace
from typing import Any, Dict, List, Optional

from errors import ConfigIncomplete, InvalidConfigValue

logger = logging.getLogger(__name__)

DEFAULT_PRESET = "default"


@dataclass(frozen=True)
class BrightnessConfig:
    base: float
    dark_images: float
    medium_dark_images: float
    bright_images: float
    dark_threshold: float
    medium_threshold: float
    bright_threshold: float
    final: float


@dataclass(frozen=True)
class ColorConfig:
    saturation: float
    final_saturation: float
    hue: float


@dataclass(frozen=True)
class ContrastConfig:
    gamma: float
    linear_multiplier: float
    linear_offset: float


@dataclass(frozen=True)
class SharpeningConfig:
    sigma: float
    flat: float
    jagged: float


@dataclass(frozen=True)
class ThresholdConfig:
    """Tight-crop detection knobs.

    ``skip_crop_size`` is carried through resolution but no crop path reads
    it yet.
    """

    enabled: bool
    face_to_image_ratio_threshold: float
    face_edge_distance_threshold: float
    loose_crop_size: float
    skip_crop_size: float


@dataclass(frozen=True)
class CroppingConfig:
    face_detected_size: float
    fallback_size: float
    face_vertical_offset: float
    landscape_threshold: float
    fallback_landscape_top: float
    fallback_portrait_top: float
    tight_crop_detection: ThresholdConfig


@dataclass(frozen=True)
class OutputConfig:
    quality: int
    compression_level: int
    size: int


@dataclass(frozen=True)
class ResolvedConfig:
    brightness: BrightnessConfig
    color: ColorConfig
    contrast: ContrastConfig
    sharpening: SharpeningConfig
    cropping: CroppingConfig
    output: OutputConfig


DEFAULT_CONFIG = ResolvedConfig(
    brightness=BrightnessConfig(
        base=1.2,
        dark_images=1.16,
        medium_dark_images=1.12,
        bright_images=1.05,
        dark_threshold=100.0,
        medium_threshold=140.0,
        bright_threshold=180.0,
        final=1.01,
    ),
    color=ColorConfig(saturation=0.85, final_saturation=1.04, hue=-8.0),
    contrast=ContrastConfig(gamma=1.0, linear_multiplier=1.07, linear_offset=1.5),
    sharpening=SharpeningConfig(sigma=0.9, flat=1.0, jagged=2.0),
    cropping=CroppingConfig(
        face_detected_size=0.65,
        fallback_size=0.8,
        face_vertical_offset=0.1,
        landscape_threshold=1.2,
        fallback_landscape_top=0.25,
        fallback_portrait_top=0.2,
        tight_crop_detection=ThresholdConfig(
            enabled=True,
            face_to_image_ratio_threshold=0.03,
            face_edge_distance_threshold=0.20,
            loose_crop_size=0.95,
            skip_crop_size=1.0,
        ),
    ),
    output=OutputConfig(quality=95, compression_level=6, size=1024),
)

PRESETS: Dict[str, ResolvedConfig] = {
    "default": DEFAULT_CONFIG,
    "brighten": replace(
        DEFAULT_CONFIG,
        brightness=replace(
            DEFAULT_CONFIG.brightness,
            base=1.20,
            dark_images=1.25,
            medium_dark_images=1.18,
            final=1.05,
        ),
        contrast=replace(DEFAULT_CONFIG.contrast, gamma=1.25, linear_multiplier=1.15),
    ),
    "subtle": replace(
        DEFAULT_CONFIG,
        brightness=replace(
            DEFAULT_CONFIG.brightness,
            base=1.05,
            dark_images=1.08,
            medium_dark_images=1.06,
            final=1.0,
        ),
        color=replace(DEFAULT_CONFIG.color, saturation=1.05, final_saturation=1.02),
    ),
    "vibrant": replace(
        DEFAULT_CONFIG,
        brightness=replace(DEFAULT_CONFIG.brightness, base=1.15),
        color=replace(DEFAULT_CONFIG.color, saturation=1.20, final_saturation=1.08),
        contrast=replace(DEFAULT_CONFIG.contrast, gamma=1.30, linear_multiplier=1.12),
        sharpening=replace(DEFAULT_CONFIG.sharpening, sigma=1.5, jagged=2.5),
    ),
    "natural": replace(
        DEFAULT_CONFIG,
        brightness=replace(DEFAULT_CONFIG.brightness, base=1.08, final=1.0),
        color=replace(DEFAULT_CONFIG.color, saturation=1.08, final_saturation=1.02),
        contrast=replace(DEFAULT_CONFIG.contrast, gamma=1.10, linear_multiplier=1.05),
        sharpening=replace(DEFAULT_CONFIG.sharpening, sigma=0.8, jagged=1.5),
    ),
}

PRESET_DESCRIPTIONS: Dict[str, str] = {
    "default": "Balanced processing for typical portraits",
    "brighten": "Lifts dark or underexposed photos",
    "subtle": "Light touch for already well-lit photos",
    "vibrant": "High contrast, saturated colours and crisper edges",
    "natural": "Soft, natural look with gentle sharpening",
}

FLAT_GROUPS = ("brightness", "color", "contrast", "sharpening", "output")

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def _snake_case(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def _camel_case(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


def canonical_preset_name(name: Optional[str]) -> str:
    """Return ``name`` if it is a published preset, otherwise the default."""

    if name and name in PRESETS:
        return name
    if name:
        logger.info("Unknown preset '%s'; using '%s'", name, DEFAULT_PRESET)
    return DEFAULT_PRESET


def get_preset(name: Optional[str]) -> ResolvedConfig:
    return PRESETS[canonical_preset_name(name)]


def list_presets() -> List[Dict[str, Any]]:
    """Describe every published preset in wire (camelCase) form."""

    return [
        {
            "name": name,
            "description": PRESET_DESCRIPTIONS.get(name, f"{name} preset"),
            "config": config_to_dict(config),
        }
        for name, config in PRESETS.items()
    ]


def config_to_dict(config: Any) -> Dict[str, Any]:
    """Render a config dataclass (or group) with camelCase keys."""

    out: Dict[str, Any] = {}
    for f in fields(config):
        value = getattr(config, f.name)
        out[_camel_case(f.name)] = config_to_dict(value) if is_dataclass(value) else value
    return out


def _coerce(value: Any, expected: str, path: str) -> Any:
    if expected == "bool":
        if isinstance(value, bool):
            return value
        if isinstance(value, str) and value.strip().lower() in {"true", "false"}:
            return value.strip().lower() == "true"
        raise InvalidConfigValue(path, value, "a boolean")

    if isinstance(value, bool):
        raise InvalidConfigValue(path, value, "a number")
    try:
        number = float(value)
    except (TypeError, ValueError):
        raise InvalidConfigValue(path, value, "a number") from None
    if not math.isfinite(number):
        raise InvalidConfigValue(path, value, "a finite number")

    if expected == "int":
        if not number.is_integer():
            raise InvalidConfigValue(path, value, "an integer")
        return int(number)
    return number


def _merge_group(base: Any, overrides: Any, path: str) -> Any:
    """Replace the fields of one flat group that ``overrides`` names."""

    if not isinstance(overrides, Mapping):
        raise InvalidConfigValue(path, overrides, "an object")

    known = {f.name: f for f in fields(base)}
    values: Dict[str, Any] = {}
    for raw_key, raw_value in overrides.items():
        name = _snake_case(str(raw_key))
        field_path = f"{path}.{raw_key}"
        spec = known.get(name)
        if spec is None or is_dataclass(getattr(base, name)):
            logger.warning("Ignoring unknown config field '%s'", field_path)
            continue
        if raw_value is None:
            raise ConfigIncomplete(path, name)
        values[name] = _coerce(raw_value, str(spec.type), field_path)

    for name in known:
        if name not in values and getattr(base, name) is None:
            raise ConfigIncomplete(path, name)
    return replace(base, **values) if values else base


def _merge_cropping(base: CroppingConfig, overrides: Any) -> CroppingConfig:
    """Merge the cropping group, descending one extra level into the thresholds."""

    if not isinstance(overrides, Mapping):
        raise InvalidConfigValue("cropping", overrides, "an object")

    flat: Dict[str, Any] = {}
    threshold_overrides: Any = None
    for raw_key, raw_value in overrides.items():
        if _snake_case(str(raw_key)) == "tight_crop_detection":
            if raw_value is None:
                raise ConfigIncomplete("cropping", "tight_crop_detection")
            threshold_overrides = raw_value
        else:
            flat[raw_key] = raw_value

    merged = _merge_group(base, flat, "cropping")
    if threshold_overrides is not None:
        thresholds = _merge_group(
            base.tight_crop_detection,
            threshold_overrides,
            "cropping.tightCropDetection",
        )
        merged = replace(merged, tight_crop_detection=thresholds)
    return merged


def merge_config(base: ResolvedConfig, overrides: Optional[Mapping]) -> ResolvedConfig:
    """Apply a partial override structure on top of ``base``."""

    if not overrides:
        return base
    if not isinstance(overrides, Mapping):
        raise InvalidConfigValue("overrides", overrides, "an object")

    groups: Dict[str, Any] = {}
    for raw_key, raw_value in overrides.items():
        group = _snake_case(str(raw_key))
        if group == "cropping":
            groups[group] = _merge_cropping(base.cropping, raw_value)
        elif group in FLAT_GROUPS:
            groups[group] = _merge_group(getattr(base, group), raw_value, group)
        else:
            logger.warning("Ignoring unknown config field '%s'", raw_key)
    return replace(base, **groups) if groups else base


def resolve_config(preset_name: Optional[str] = None, overrides: Optional[Mapping] = None) -> ResolvedConfig:
    """Resolve ``preset_name`` plus ``overrides`` into a complete config.

    Raises ``ConfigIncomplete`` when an override blanks a required field and
    ``InvalidConfigValue`` when an override has the wrong type.
    """

    return merge_config(get_preset(preset_name), overrides)
