"""Stream supervision and the command-line entry point."""

from logkeeper.supervisor.stream import LogStream
from logkeeper.supervisor.supervisor import LogStreamSupervisor

__all__ = ["LogStream", "LogStreamSupervisor"]
