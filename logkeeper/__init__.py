"""
LogKeeper - log rotation and retention for containerized services.

Implements in software what a container runtime's json-file logging driver
offers as flags:
- Size-triggered rotation with sequence renumbering
- Background compression of rotated segments
- Count- and age-bounded retention
- Safe concurrent writers, one stream per service
"""

__version__ = "0.1.0"

from logkeeper.core.config import RetentionConfig
from logkeeper.core.errors import (
    CompressionError,
    InvalidConfigError,
    LogKeeperError,
    RetentionError,
    RotationError,
    StreamExistsError,
    UnknownStreamError,
)
from logkeeper.core.events import CompressionResult, RotationEvent, SweepResult
from logkeeper.supervisor.stream import LogStream
from logkeeper.supervisor.supervisor import LogStreamSupervisor

__all__ = [
    "CompressionError",
    "CompressionResult",
    "InvalidConfigError",
    "LogKeeperError",
    "LogStream",
    "LogStreamSupervisor",
    "RetentionConfig",
    "RetentionError",
    "RotationError",
    "RotationEvent",
    "StreamExistsError",
    "SweepResult",
    "UnknownStreamError",
]
