"""Data models shared by the protocol, transport and controller layers.

Enums describe the small closed sets the link layer switches on; the
CommandRequest is the unit of work owned by a CommandQueue.
"""
from __future__ import annotations

import threading
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional

COMMAND_TERMINATOR = "\r"


class CommandMode(Enum):
    """How response lines settle a command."""
    LINE = "line"
    EXPECT_OK = "expect-ok"


class ConnectionState(Enum):
    """Connection lifecycle of one transport adapter."""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class TransportKind(Enum):
    """Transport variants a controller can route to."""
    SERIAL = "serial"
    BLE = "ble"
    WIFI = "wifi"

    @classmethod
    def normalize(cls, value) -> TransportKind:
        """Map any user-supplied value onto a kind, defaulting to SERIAL.

        Examples:
            >>> TransportKind.normalize(" BLE ")
            <TransportKind.BLE: 'ble'>
            >>> TransportKind.normalize("usb")
            <TransportKind.SERIAL: 'serial'>
        """
        if isinstance(value, cls):
            return value
        text = str(value or "").strip().lower()
        for kind in cls:
            if kind.value == text:
                return kind
        return cls.SERIAL


class WriteMode(Enum):
    """GATT write primitive chosen for the RX characteristic."""
    WITHOUT_RESPONSE = "write-without-response"
    WITH_RESPONSE = "write"
    DEFAULT = "default"


def with_command_terminator(command) -> str:
    """Append the CR terminator unless the command already ends with one.

    Examples:
        >>> with_command_terminator("SM,1000,100,0")
        'SM,1000,100,0\\r'
        >>> with_command_terminator("v\\r")
        'v\\r'
    """
    text = "" if command is None else str(command)
    return text if text.endswith(COMMAND_TERMINATOR) else text + COMMAND_TERMINATOR


@dataclass(eq=False)
class CommandRequest:
    """One queued command and its one-shot completion future.

    Attributes:
        command_text: CR-terminated text written to the device
        mode: LINE resolves on the first line, EXPECT_OK waits for "ok"
        timeout_ms: Milliseconds the command may stay active
        lines: Lines accumulated while waiting for "ok"
        future: Completion future settled exactly once by the queue
    """
    command_text: str
    mode: CommandMode = CommandMode.LINE
    timeout_ms: int = 1200
    lines: List[str] = field(default_factory=list)
    future: Future = field(default_factory=Future)
    timer: Optional[threading.Timer] = field(default=None, repr=False)

    @property
    def done(self) -> bool:
        return self.future.done()
