"""
Core log stream storage.

This package provides:
- Segment descriptors and the on-disk naming convention
- The append-only writer for the active segment
- Rotation policy and the segment manager
- Crash recovery for existing segment directories
"""

from logkeeper.core.appender import WriteAppender
from logkeeper.core.config import CompressionType, RetentionConfig
from logkeeper.core.manager import SegmentLease, SegmentManager
from logkeeper.core.policy import RotationPolicy
from logkeeper.core.recovery import SegmentRecovery
from logkeeper.core.segment import Segment

__all__ = [
    "CompressionType",
    "RetentionConfig",
    "RotationPolicy",
    "Segment",
    "SegmentLease",
    "SegmentManager",
    "SegmentRecovery",
    "WriteAppender",
]
