"""
Retention configuration for a log stream.

Options accept both the snake_case names used in code and the json-file
logging driver spellings (``max-size``, ``max-file``) used in compose files.
"""

import re
from dataclasses import asdict, dataclass, replace
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from logkeeper.core.errors import InvalidConfigError


class CompressionType(str, Enum):
    """Codecs available for rotated segments."""

    GZIP = "gzip"
    LZ4 = "lz4"

    @property
    def extension(self) -> str:
        return ".gz" if self is CompressionType.GZIP else ".lz4"


SUPPORTED_COMPRESSION = tuple(codec.value for codec in CompressionType)

_SIZE_PATTERN = re.compile(r"^\s*(\d+)\s*([kmg]?)b?\s*$", re.IGNORECASE)
_SIZE_UNITS = {"": 1, "k": 1024, "m": 1024 ** 2, "g": 1024 ** 3}

_ALIASES = {
    "max-size": "max_segment_size",
    "max_size": "max_segment_size",
    "max-file": "max_segment_count",
    "max_file": "max_segment_count",
    "max-age": "max_segment_age",
}


def parse_size(value: Union[int, str]) -> int:
    """
    Parse a byte size.

    Args:
        value: Integer byte count or a string such as ``"512k"``, ``"10m"``, ``"1g"``

    Returns:
        Size in bytes

    Raises:
        InvalidConfigError: If the value cannot be parsed
    """
    if isinstance(value, bool):
        raise InvalidConfigError(f"Invalid size: {value!r}")

    if isinstance(value, int):
        return value

    match = _SIZE_PATTERN.match(str(value))
    if not match:
        raise InvalidConfigError(f"Invalid size: {value!r}")

    number, unit = match.groups()
    return int(number) * _SIZE_UNITS[unit.lower()]


def _parse_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str) and value.strip().lower() in ("true", "yes", "1", "on"):
        return True
    if isinstance(value, str) and value.strip().lower() in ("false", "no", "0", "off"):
        return False
    if isinstance(value, int):
        return bool(value)
    raise InvalidConfigError(f"Invalid boolean: {value!r}")


def _parse_int(name: str, value: Any) -> int:
    if isinstance(value, bool):
        raise InvalidConfigError(f"{name} must be an integer, got {value!r}")
    try:
        return int(value)
    except (TypeError, ValueError):
        raise InvalidConfigError(f"{name} must be an integer, got {value!r}")


def _parse_seconds(name: str, value: Any) -> Optional[float]:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        raise InvalidConfigError(f"{name} must be a number of seconds, got {value!r}")


@dataclass(frozen=True)
class RetentionConfig:
    """
    Rotation, compression and retention limits for one stream.

    Attributes:
        max_segment_size: Active segment size in bytes that triggers rotation
        max_segment_count: Number of rotated segments kept
        compress: Whether rotated segments are compressed
        compression: Compression codec (gzip or lz4)
        max_segment_age: Active segment age in seconds that triggers rotation
        max_retained_age: Age in seconds after which rotated segments are deleted
        rotation_timeout: Seconds to wait for the stream's write lock
        compression_timeout: Seconds allowed to compress one segment
        sweep_interval: Seconds between timer-triggered retention sweeps
        fsync_on_append: Whether to fsync after each append
    """
    max_segment_size: int = 10 * 1024 * 1024
    max_segment_count: int = 3
    compress: bool = True
    compression: str = "gzip"
    max_segment_age: Optional[float] = None
    max_retained_age: Optional[float] = None
    rotation_timeout: float = 5.0
    compression_timeout: float = 60.0
    sweep_interval: Optional[float] = None
    fsync_on_append: bool = False

    def validate(self) -> "RetentionConfig":
        """
        Check the configuration.

        Returns:
            self, for chaining

        Raises:
            InvalidConfigError: If any limit is out of range
        """
        if self.max_segment_size <= 0:
            raise InvalidConfigError(
                f"max_segment_size must be > 0, got {self.max_segment_size}"
            )

        if self.max_segment_count < 0:
            raise InvalidConfigError(
                f"max_segment_count must be >= 0, got {self.max_segment_count}"
            )

        if self.compression not in SUPPORTED_COMPRESSION:
            raise InvalidConfigError(
                f"compression must be one of {SUPPORTED_COMPRESSION}, got {self.compression!r}"
            )

        for name in ("max_segment_age", "max_retained_age", "sweep_interval"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise InvalidConfigError(f"{name} must be > 0 when set, got {value}")

        for name in ("rotation_timeout", "compression_timeout"):
            value = getattr(self, name)
            if value is None or value <= 0:
                raise InvalidConfigError(f"{name} must be > 0, got {value}")

        return self

    @property
    def codec(self) -> CompressionType:
        return CompressionType(self.compression)

    @property
    def extension(self) -> str:
        """File extension appended to compressed segments."""
        return self.codec.extension

    def with_changes(self, **changes: Any) -> "RetentionConfig":
        """Return a validated copy with some fields replaced."""
        return replace(self, **changes).validate()

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, options: Optional[Mapping[str, Any]] = None) -> "RetentionConfig":
        """
        Build a validated configuration from a mapping.

        Unknown keys are rejected so that typos in YAML do not silently fall
        back to defaults.

        Args:
            options: Option mapping, e.g. one entry from the YAML ``streams`` section

        Returns:
            Validated configuration

        Raises:
            InvalidConfigError: If an option is unknown or invalid
        """
        fields: Dict[str, Any] = {}

        for key, value in (options or {}).items():
            name = _ALIASES.get(key, key)

            if name == "max_segment_size":
                fields[name] = parse_size(value)
            elif name == "max_segment_count":
                fields[name] = _parse_int(name, value)
            elif name in ("compress", "fsync_on_append"):
                fields[name] = _parse_bool(value)
            elif name == "compression":
                fields[name] = str(value).lower()
            elif name in (
                "max_segment_age",
                "max_retained_age",
                "sweep_interval",
                "rotation_timeout",
                "compression_timeout",
            ):
                fields[name] = _parse_seconds(name, value)
            else:
                raise InvalidConfigError(f"Unknown retention option: {key!r}")

        return cls(**fields).validate()
