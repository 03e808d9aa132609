"""Response classification for EBB commands.

Decides what one response line means for the active command.
Pure functions with no side effects.
"""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Union

from ..models import CommandMode

OK_SENTINEL = "ok"
UNKNOWN_COMMAND_MARKER = "unknown cmd"


class Verdict(Enum):
    """Effect of a line on the active command."""
    RESOLVE = "resolve"
    REJECT = "reject"
    ACCUMULATE = "accumulate"


@dataclass
class Classification:
    """Outcome of classifying one line.

    Attributes:
        verdict: Whether the command resolves, rejects or keeps waiting
        value: Resolution value (a line in LINE mode, lines in EXPECT_OK
            mode) or the error payload when rejecting
    """
    verdict: Verdict
    value: Union[str, List[str], None] = None


def is_ok_line(line: str) -> bool:
    """True for the end-of-response sentinel, in any letter case."""
    return line.strip().lower() == OK_SENTINEL


def is_unknown_command_line(line: str) -> bool:
    """True for lines the firmware sends when it rejects a command."""
    return UNKNOWN_COMMAND_MARKER in line.lower()


def classify_line(mode: CommandMode, accumulated: List[str], line: str) -> Classification:
    """Classify one line for a command in the given mode.

    Args:
        mode: Mode of the active command
        accumulated: Lines already collected for the command (not modified)
        line: Trimmed, non-empty response line

    Returns:
        Classification describing how the command should settle

    Examples:
        >>> classify_line(CommandMode.LINE, [], "V,2.9.1").value
        'V,2.9.1'
        >>> classify_line(CommandMode.EXPECT_OK, ["L1", "L2"], "OK").value
        ['L1', 'L2']
        >>> classify_line(CommandMode.EXPECT_OK, ["L1"], "Unknown CMD: XYZ").verdict
        <Verdict.REJECT: 'reject'>
    """
    if mode is CommandMode.LINE:
        return Classification(Verdict.RESOLVE, line)

    if is_ok_line(line):
        return Classification(Verdict.RESOLVE, list(accumulated))

    if is_unknown_command_line(line):
        return Classification(Verdict.REJECT, list(accumulated) + [line])

    return Classification(Verdict.ACCUMULATE, line)
