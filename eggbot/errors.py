"""Exception types raised by the EggBot link layer."""
from __future__ import annotations

from typing import List, Optional


class EggBotError(RuntimeError):
    """Base class for every error raised by this package."""
    pass


class UnsupportedTransportError(EggBotError):
    """Raised when the capability a transport needs is not available."""
    pass


class TransportConnectError(EggBotError):
    """Raised when a transport link could not be opened."""
    pass


class ConnectionStageError(TransportConnectError):
    """Raised when one tagged stage of a multi-stage connect fails.

    The message reads ``"<transport> <stage> failed: <reason>"``.
    """
    def __init__(self, transport: str, stage: str, reason: str):
        super().__init__(f"{transport} {stage} failed: {reason}")
        self.transport = transport
        self.stage = stage
        self.reason = reason


class PortNotFoundError(TransportConnectError):
    """Raised when no matching serial port could be found."""
    pass


class MultiplePortsError(TransportConnectError):
    """Raised when more than one matching serial port is found."""
    def __init__(self, message, ports):
        super().__init__(message)
        self.ports = ports  # list[PortInfo]


class NotConnectedError(EggBotError):
    """Raised when a command is issued while the transport is disconnected."""
    pass


class TransportWriteError(EggBotError):
    """Raised when the underlying transport rejected a write."""
    pass


class CommandTimeoutError(EggBotError):
    """Raised when no settling response line arrived in time."""
    def __init__(self, command: str = "", timeout_ms: Optional[int] = None):
        super().__init__("EggBot response timeout")
        self.command = command
        self.timeout_ms = timeout_ms


class UnknownCommandError(EggBotError):
    """Raised when the firmware answers with ``unknown CMD``.

    ``payload`` holds every line received for the command, the error line
    included.
    """
    def __init__(self, payload: List[str]):
        super().__init__("\n".join(payload) or "unknown CMD")
        self.payload = list(payload)


class DisconnectedError(EggBotError):
    """Used to flush active and queued commands when a link goes away."""
    pass
