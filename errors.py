"""Exception types raised by the avatar preprocessing pipeline."""

from __future__ import annotations

from typing import Optional


class ProcessingError(Exception):
    """Base class for every error surfaced to callers of the pipeline."""


class ConfigError(ProcessingError):
    """The requested configuration could not be resolved."""


class ConfigIncomplete(ConfigError):
    def __init__(self, group: str, field_name: str) -> None:
        super().__init__(f"Missing value for config field '{group}.{field_name}'")
        self.group = group
        self.field_name = field_name


class InvalidConfigValue(ConfigError):
    def __init__(self, path: str, value: object, expected: str) -> None:
        super().__init__(f"Config field '{path}' expects {expected}, got {value!r}")
        self.path = path
        self.value = value
        self.expected = expected


class InvalidImageMetadata(ProcessingError):
    """Image dimensions are unusable or the bytes could not be decoded."""


class DetectionUnavailable(ProcessingError):
    """The face detector could not produce a result for this image."""


class TransformFailure(ProcessingError):
    """A pixel operation failed; ``stage`` names the pipeline stage."""

    def __init__(self, stage: str, cause: Optional[BaseException] = None) -> None:
        detail = f": {cause}" if cause is not None else ""
        super().__init__(f"Image transform failed during '{stage}' stage{detail}")
        self.stage = stage
        self.cause = cause
