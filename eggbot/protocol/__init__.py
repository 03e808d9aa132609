"""Protocol layer for the EBB line protocol shared by every transport."""

from .framer import LineFramer
from .classifier import (
    Classification,
    Verdict,
    classify_line,
    is_ok_line,
    is_unknown_command_line,
)
from .command_queue import CommandQueue, DEFAULT_COMMAND_TIMEOUT_MS

__all__ = [
    "LineFramer",
    "Classification",
    "Verdict",
    "classify_line",
    "is_ok_line",
    "is_unknown_command_line",
    "CommandQueue",
    "DEFAULT_COMMAND_TIMEOUT_MS",
]
