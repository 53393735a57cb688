"""Background workers for rotated segments."""

from logkeeper.workers.compression import CompressionWorker, Compressor
from logkeeper.workers.retention import RetentionSweeper

__all__ = ["CompressionWorker", "Compressor", "RetentionSweeper"]
