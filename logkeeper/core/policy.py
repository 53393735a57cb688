"""
Rotation decision logic.
"""

from logkeeper.core.config import RetentionConfig


class RotationPolicy:
    """
    Decides when an active segment should be rotated.

    Rotation triggers when the segment reaches ``max_segment_size``. When
    ``max_segment_age`` is configured, a non-empty segment older than that is
    rotated too.

    The check runs after an append has completed, so a segment can exceed the
    size limit by at most one write.
    """

    @staticmethod
    def should_rotate(current_size: int, current_age: float, config: RetentionConfig) -> bool:
        """
        Check whether a segment should rotate.

        Args:
            current_size: Active segment size in bytes
            current_age: Seconds since the active segment was opened
            config: Limits in effect

        Returns:
            True if rotation is needed
        """
        if current_size >= config.max_segment_size:
            return True

        if config.max_segment_age is not None and current_size > 0:
            return current_age >= config.max_segment_age

        return False
